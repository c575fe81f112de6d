"""
Sync Orchestrator Module
Runs one sync cycle for one account: folders in priority order, each through
discovery, batch fetch and persistence

PATTERN RECOGNITION: This is the coordinator in a pipeline. It owns no
protocol or storage logic itself; it decides order, retries and when to
give up, and turns everything that went wrong into a flat error list.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, List, Optional, Sequence

from .attachment_store import AttachmentStore
from .batch_fetcher import BatchFetcher
from .email_parser import MessageParser
from .exceptions import (
    DiscoveryError,
    FolderError,
    PersistenceError,
    SyncConnectionError,
)
from .folder_enumerator import FolderEnumerator
from .imap_connection import ConnectionManager
from .message_discovery import MessageDiscovery
from .models import Account, FolderProgress, SyncMode, SyncResult
from .persister import Persister
from .storage import SyncStorage
from ..utils.config import SyncConfig
from ..utils.metrics import SyncMetrics
from ..utils.sanitization import sanitize_for_logging


def order_folders(
    folders: Sequence[str],
    primary: Sequence[str] = ("INBOX",),
    secondary: Sequence[str] = (),
) -> List[str]:
    """
    Primary folders first, then secondary ones, then the rest

    Primary names match exactly and secondary names match as substrings,
    both case-insensitively. Server order is kept inside each group.

    Example:
        >>> order_folders(["Archive", "Sent", "INBOX"], secondary=["Sent"])
        ['INBOX', 'Sent', 'Archive']
    """
    primary_lower = [name.lower() for name in primary]
    secondary_lower = [name.lower() for name in secondary]

    def rank(name: str) -> int:
        lowered = name.lower()
        if lowered in primary_lower:
            return 0
        if any(candidate in lowered for candidate in secondary_lower):
            return 1
        return 2

    return sorted(folders, key=rank)


class SyncOrchestrator:
    """
    One account, one cycle

    Errors are accumulated rather than raised. Once the list reaches
    ``max_folder_errors`` the remaining folders are left for the next cycle.
    """

    def __init__(
        self,
        account: Account,
        connection: ConnectionManager,
        storage: SyncStorage,
        attachment_store: AttachmentStore,
        sync_config: Optional[SyncConfig] = None,
        max_email_size: Optional[int] = None,
        metrics: Optional[SyncMetrics] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.account = account
        self.connection = connection
        self.config = sync_config or SyncConfig()
        self.metrics = metrics or SyncMetrics()
        self._sleep = sleep or asyncio.sleep
        self._stop_requested = False
        self.logger = logging.getLogger(f"SyncOrchestrator.{account.account_id}")

        self.persister = Persister(storage, account.account_id)
        self.enumerator = FolderEnumerator(connection, account.account_id)
        self.discovery = MessageDiscovery(connection, self.persister, account.account_id)
        self.fetcher = BatchFetcher(
            connection=connection,
            parser=MessageParser(account.account_id),
            attachment_store=attachment_store,
            persister=self.persister,
            account_id=account.account_id,
            batch_size=self.config.batch_size,
            batch_delay=self.config.batch_delay,
            batch_timeout=self.config.batch_timeout,
            max_email_size=max_email_size,
            metrics=self.metrics,
            sleep=self._sleep,
        )

    def request_stop(self) -> None:
        """Finish the batch in flight, then stop before the next one"""
        self._stop_requested = True

    async def run(self, mode: SyncMode = SyncMode.INCREMENTAL) -> SyncResult:
        """
        Sync every folder of the account

        The session is always closed (and the storage handle released)
        before this returns.
        """
        started = time.monotonic()
        result = SyncResult()
        folder_delay = (
            self.config.full_sync_folder_delay if mode is SyncMode.FULL
            else self.config.folder_delay
        )

        self.logger.info(f"Starting {mode.value} sync")
        try:
            await self.connection.connect()
            folders = order_folders(
                await self.enumerator.list_folders(),
                primary=self.config.primary_folders,
                secondary=self.config.secondary_folders,
            )

            for position, folder in enumerate(folders):
                if self._stop_requested:
                    self.logger.info("Stop requested, skipping remaining folders")
                    break

                if not await self._run_folder(folder, mode, result, started):
                    break

                if len(result.errors) >= self.config.max_folder_errors:
                    self.logger.error(
                        f"Maximum errors reached ({self.config.max_folder_errors}). Stopping sync."
                    )
                    break

                if position < len(folders) - 1 and folder_delay > 0:
                    await self._sleep(folder_delay)

        except (SyncConnectionError, FolderError) as e:
            result.errors.append(f"Connection error: {e}")
            self.metrics.record_error("connection")
            self.logger.error(f"Sync failed: {e}")
        finally:
            await self.connection.disconnect()

        result.elapsed_seconds = round(time.monotonic() - started, 3)
        self.logger.info(
            f"Sync complete: {result.total_new_messages} new messages, "
            f"{len(result.errors)} errors in {result.elapsed_seconds:.1f}s"
        )
        return result

    async def _run_folder(
        self, folder: str, mode: SyncMode, result: SyncResult, started: float
    ) -> bool:
        """
        Sync one folder into ``result``

        Returns:
            False when the session is gone and the cycle cannot continue
        """
        safe_folder = sanitize_for_logging(folder)
        progress = FolderProgress(folder=folder)
        self.logger.info(f"Starting {mode.value} sync for folder: {safe_folder}")

        try:
            await self.sync_folder(folder, mode, progress)
            result.folders_synced += 1
            self.logger.info(f"Synced {progress.new_messages} new messages from folder {safe_folder}")
        except (SyncConnectionError, FolderError, DiscoveryError, PersistenceError) as e:
            progress.errors.append(f"Failed to sync folder {folder}: {e}")
            self.metrics.record_error(type(e).__name__)
            self.logger.error(f"Failed to sync folder {safe_folder}: {e}")
        finally:
            result.total_new_messages += progress.new_messages
            result.errors.extend(progress.errors)

        elapsed = int(time.monotonic() - started)
        self.logger.info(
            f"Progress: {result.total_new_messages} total new messages, "
            f"{elapsed // 60}m {elapsed % 60}s elapsed"
        )

        if not self.connection.is_authenticated:
            self.logger.error("Connection lost, abandoning remaining folders")
            return False
        return True

    async def sync_folder(
        self,
        folder: str,
        mode: SyncMode = SyncMode.INCREMENTAL,
        progress: Optional[FolderProgress] = None,
    ) -> FolderProgress:
        """
        Sync one folder, reconnecting and retrying on session failures

        Progress (new message count, per-message errors) carries over
        between attempts because committed batches stay committed.

        Raises:
            SyncConnectionError: Every attempt failed or reconnect gave up
            FolderError, DiscoveryError, PersistenceError: Not retried
        """
        progress = progress or FolderProgress(folder=folder)
        attempts = self.connection.reconnect_policy.max_attempts

        for attempt in range(1, attempts + 1):
            try:
                await self._sync_folder_attempt(folder, mode, progress)
                return progress
            except SyncConnectionError as e:
                if not e.retryable or attempt == attempts:
                    self.logger.error(f"Max retries reached for folder {sanitize_for_logging(folder)}")
                    raise
                self.logger.warning(
                    f"Sync attempt {attempt} failed for folder {sanitize_for_logging(folder)}: {e}. "
                    f"Retrying (attempt {attempt + 1}/{attempts})..."
                )
                await self.connection.reconnect()

        return progress

    async def _sync_folder_attempt(
        self, folder: str, mode: SyncMode, progress: FolderProgress
    ) -> None:
        status = await self.connection.select_folder(folder)
        cursor = await self.persister.load_cursor(status)

        if status.exists == 0:
            self.logger.info(f"Folder {sanitize_for_logging(folder)} is empty")
            return

        discovered = await self.discovery.discover(status, cursor, mode)
        if not discovered.uids:
            self.logger.info(f"No new messages in {sanitize_for_logging(folder)}")
            return

        self.logger.info(
            f"Found {len(discovered.uids)} new messages in {sanitize_for_logging(folder)} "
            f"({discovered.strategy.value})"
        )
        await self.fetcher.fetch_folder(
            status, discovered.uids, cursor, progress, should_stop=lambda: self._stop_requested
        )
