"""
Sync Scheduler Module
Runs sync cycles for every eligible account on a fixed interval

Accounts are synced in groups of ``max_concurrent_accounts``; inside a group
each account runs as its own task. A single asyncio.Lock guards the set of
accounts currently syncing, so a manual sync and a scheduled one can never
claim the same account at once.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Set

from .account_directory import AccountDirectory
from .models import Account, SyncMode, SyncResult, utcnow
from .sync_alerts import SyncAlertSystem
from .sync_orchestrator import SyncOrchestrator
from ..utils.config import SyncConfig
from ..utils.metrics import SyncMetrics
from ..utils.sanitization import redact_email, sanitize_for_logging


OrchestratorFactory = Callable[[Account], SyncOrchestrator]


def chunked(items: List[Any], size: int) -> List[List[Any]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class SyncScheduler:
    """
    Periodic multi-account sync with per-account failure tracking

    After each account cycle the directory is updated: success clears the
    error state, failure increments ``error_count`` and disables the
    account once it reaches ``max_account_errors``.
    """

    def __init__(
        self,
        directory: AccountDirectory,
        orchestrator_factory: OrchestratorFactory,
        sync_config: Optional[SyncConfig] = None,
        alerts: Optional[SyncAlertSystem] = None,
        metrics: Optional[SyncMetrics] = None,
    ):
        self.directory = directory
        self.orchestrator_factory = orchestrator_factory
        self.config = sync_config or SyncConfig()
        self.alerts = alerts
        self.metrics = metrics or SyncMetrics()
        self.logger = logging.getLogger("SyncScheduler")

        self._active: Set[str] = set()
        self._active_lock = asyncio.Lock()
        self._orchestrators: Dict[str, SyncOrchestrator] = {}
        self._cycle_running = False
        self._running = False
        self._stopping = False
        self._stop_event: Optional[asyncio.Event] = None
        self._cycle_count = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def active_syncs(self) -> List[str]:
        return sorted(self._active)

    async def _claim(self, account_id: str) -> bool:
        async with self._active_lock:
            if account_id in self._active:
                return False
            self._active.add(account_id)
            return True

    async def _release(self, account_id: str) -> None:
        async with self._active_lock:
            self._active.discard(account_id)

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    async def run_cycle(self) -> Dict[str, Optional[SyncResult]]:
        """
        Sync every eligible account once

        Returns:
            account id -> SyncResult (None when the account was already
            syncing). Empty when a previous cycle is still running.
        """
        if self._cycle_running:
            self.logger.warning("Previous sync cycle still running, skipping this one")
            return {}

        self._cycle_running = True
        self._cycle_count += 1
        try:
            self.logger.info(f"=== Sync Cycle {self._cycle_count} ===")
            accounts = await asyncio.to_thread(
                self.directory.eligible_accounts, self.config.max_account_errors
            )
            if not accounts:
                self.logger.info("No accounts eligible for sync")
                return {}

            self.logger.info(f"Syncing {len(accounts)} accounts")
            results: Dict[str, Optional[SyncResult]] = {}
            for group in chunked(accounts, self.config.max_concurrent_accounts):
                if self._stopping:
                    self.logger.info("Stop requested, skipping remaining accounts")
                    break
                outcomes = await asyncio.gather(*(self.sync_account(a) for a in group))
                for account, outcome in zip(group, outcomes):
                    results[account.account_id] = outcome
            return results
        finally:
            self._cycle_running = False

    async def sync_account_now(
        self, account_id: str, mode: SyncMode = SyncMode.INCREMENTAL
    ) -> Optional[SyncResult]:
        """
        Manual sync of one account, outside the schedule

        Returns:
            The result, or None if the account is already syncing

        Raises:
            KeyError: Unknown account
        """
        account = await asyncio.to_thread(self.directory.get_account, account_id)
        if account is None:
            raise KeyError(account_id)
        return await self.sync_account(account, mode)

    async def sync_account(
        self, account: Account, mode: SyncMode = SyncMode.INCREMENTAL
    ) -> Optional[SyncResult]:
        account_id = account.account_id
        if not await self._claim(account_id):
            self.logger.info(f"Account {account_id} is already syncing, skipping")
            return None

        try:
            self.logger.info(f"Syncing account {account_id} ({redact_email(account.email)})")
            try:
                orchestrator = self.orchestrator_factory(account)
                self._orchestrators[account_id] = orchestrator
                result = await orchestrator.run(mode)
            except Exception as e:
                # A crash fails this account only
                self.logger.exception(f"Sync crashed for account {account_id}")
                result = SyncResult(errors=[f"{type(e).__name__}: {e}"])

            self.metrics.record_cycle(result.elapsed_seconds, result.succeeded)
            try:
                if result.succeeded:
                    await self._record_success(account_id)
                else:
                    await self._record_failure(account, result)
            except Exception as e:
                self.logger.error(
                    f"Could not record sync outcome for account {account_id}: {e}", exc_info=True
                )
            return result
        finally:
            self._orchestrators.pop(account_id, None)
            await self._release(account_id)

    async def _record_success(self, account_id: str) -> None:
        await asyncio.to_thread(
            self.directory.update_sync_state,
            account_id,
            last_sync_at=utcnow(),
            error_message=None,
            error_count=0,
        )
        self.logger.info(
            f"Account {account_id} synced successfully",
            extra={"extra_fields": {"account_id": account_id}},
        )

    async def _record_failure(self, account: Account, result: SyncResult) -> None:
        current = await asyncio.to_thread(self.directory.get_account, account.account_id)
        error_count = (current or account).error_count + 1
        message = result.errors[0]
        if len(result.errors) > 1:
            message = f"{message} (+{len(result.errors) - 1} more)"

        fields: Dict[str, Any] = {"error_message": message, "error_count": error_count}
        disable = error_count >= self.config.max_account_errors
        if disable:
            fields["sync_enabled"] = False

        await asyncio.to_thread(
            self.directory.update_sync_state, account.account_id, **fields
        )
        self.logger.error(
            f"Sync failed for account {account.account_id} "
            f"({error_count}/{self.config.max_account_errors}): {sanitize_for_logging(message)}",
            extra={"extra_fields": {"account_id": account.account_id, "error_count": error_count}},
        )

        if disable:
            self.logger.error(
                f"Disabling sync for account {account.account_id} after {error_count} consecutive failures"
            )
            if self.alerts is not None:
                await self.alerts.account_disabled(
                    account.account_id, account.email, error_count, message
                )

    # ------------------------------------------------------------------
    # Service loop
    # ------------------------------------------------------------------

    async def run_forever(self) -> None:
        """Run a cycle now, then one every ``interval_minutes`` until stop()"""
        if self._running:
            self.logger.warning("Scheduler is already running")
            return

        self._running = True
        self._stopping = False
        self._stop_event = asyncio.Event()
        interval = self.config.interval_minutes
        self.logger.info(f"Starting sync scheduler (every {interval} minutes)")

        try:
            while not self._stopping:
                try:
                    await self.run_cycle()
                except Exception as e:
                    self.logger.error(f"Error in sync cycle: {e}", exc_info=True)
                if self._stopping:
                    break
                self.logger.info(f"Waiting {interval} minutes until next cycle...")
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=interval * 60)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._running = False
            self.logger.info("Sync scheduler stopped")

    def stop(self) -> None:
        """
        Ask the scheduler to stop

        Syncs in flight finish their current batch first. Safe to call from
        a signal handler.
        """
        self._stopping = True
        for orchestrator in list(self._orchestrators.values()):
            orchestrator.request_stop()
        if self._stop_event is not None:
            self._stop_event.set()

    def status(self) -> Dict[str, Any]:
        """Scheduler state plus per-account sync bookkeeping"""
        interval = timedelta(minutes=self.config.interval_minutes)
        accounts = []
        for account in self.directory.list_accounts():
            next_sync = account.last_sync_at + interval if account.last_sync_at else None
            accounts.append({
                "id": account.account_id,
                "email": redact_email(account.email),
                "isActive": account.is_active,
                "syncEnabled": account.sync_enabled,
                "lastSyncAt": account.last_sync_at.isoformat() if account.last_sync_at else None,
                "errorMessage": account.error_message,
                "errorCount": account.error_count,
                "nextSyncAt": next_sync.isoformat() if next_sync else None,
                "syncing": account.account_id in self._active,
            })

        return {
            "isRunning": self._running,
            "syncIntervalMinutes": self.config.interval_minutes,
            "activeSyncs": self.active_syncs,
            "accounts": accounts,
            "metrics": self.metrics.get_summary(),
        }
