#!/usr/bin/env python3
"""
MailVault Sync Service
Wires configuration, logging, the account directory and the scheduler together
"""

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Dict, Optional

from .modules.account_directory import AccountDirectory, SqliteAccountDirectory
from .modules.attachment_store import AttachmentStore
from .modules.imap_connection import ConnectionManager
from .modules.models import Account, SyncMode, SyncResult
from .modules.retry_policy import ReconnectPolicy
from .modules.scheduler import SyncScheduler
from .modules.storage import SqliteStorage
from .modules.sync_alerts import SyncAlertSystem
from .modules.sync_orchestrator import SyncOrchestrator
from .utils.config import AccountConfig, Config
from .utils.logging_formatter import ColoredFormatter
from .utils.metrics import SyncMetrics
from .utils.security_validators import calculate_max_email_size, sanitize_path_component
from .utils.structured_logging import JSONFormatter


class MailVaultService:
    """Main service object"""

    def __init__(self, config_file: str = ".env", directory: Optional[AccountDirectory] = None):
        """
        Initialize the service

        Args:
            config_file: Path to configuration file
            directory: Account directory to use instead of the SQLite one
        """
        self.config = Config(config_file)

        self._setup_logging()

        self.logger = logging.getLogger("MailVaultService")
        self.logger.info("Initializing MailVault sync service")

        self.metrics = SyncMetrics()
        self.directory = directory or SqliteAccountDirectory(self.config.storage.accounts_db)
        self.alerts = SyncAlertSystem(self.config.alerts)
        self.scheduler = SyncScheduler(
            directory=self.directory,
            orchestrator_factory=self.build_orchestrator,
            sync_config=self.config.sync,
            alerts=self.alerts,
            metrics=self.metrics,
        )

    def _setup_logging(self):
        """Setup logging configuration"""
        log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

        log_path = Path(self.config.system.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        level_name = str(self.config.system.log_level).upper()
        level = logging.getLevelName(level_name)
        if not isinstance(level, int):
            level = logging.INFO

        file_handler = logging.FileHandler(self.config.system.log_file)
        console_handler = logging.StreamHandler(sys.stdout)

        if self.config.system.log_format == "json":
            file_handler.setFormatter(JSONFormatter())
            console_handler.setFormatter(JSONFormatter())
        else:
            file_handler.setFormatter(logging.Formatter(log_format))
            console_handler.setFormatter(ColoredFormatter(log_format))

        logging.basicConfig(level=level, handlers=[file_handler, console_handler], force=True)

        if not isinstance(logging.getLevelName(level_name), int):
            logging.getLogger("MailVaultService").warning(
                "Invalid log level '%s'; defaulting to INFO",
                self.config.system.log_level
            )

    def account_from_config(self, account_config: AccountConfig) -> Account:
        db_name = f"{sanitize_path_component(account_config.account_id)}.db"
        return Account(
            account_id=account_config.account_id,
            email=account_config.email,
            imap_server=account_config.imap_server,
            imap_port=account_config.imap_port,
            username=account_config.username,
            password=account_config.password,
            use_tls=account_config.use_tls,
            verify_ssl=account_config.verify_ssl,
            is_active=account_config.enabled,
            db_path=str(Path(self.config.storage.data_dir) / db_name),
        )

    def seed_accounts(self) -> Dict[str, Account]:
        """Upsert every configured account into the directory"""
        seeded = {}
        for account_config in self.config.accounts:
            account = self.directory.upsert_account(self.account_from_config(account_config))
            seeded[account.account_id] = account
        self.logger.info(f"Loaded {len(seeded)} configured accounts")
        return seeded

    def build_orchestrator(self, account: Account) -> SyncOrchestrator:
        """Fresh connection, storage handle and orchestrator for one cycle"""
        sync = self.config.sync
        storage = SqliteStorage(account.db_path)
        connection = ConnectionManager(
            account,
            storage=storage,
            connect_timeout=sync.connect_timeout,
            command_timeout=sync.command_timeout,
            reconnect_policy=ReconnectPolicy(
                max_attempts=sync.reconnect_attempts,
                delay_seconds=sync.reconnect_delay,
            ),
        )
        attachment_store = AttachmentStore(
            self.config.storage.attachments_dir,
            account.account_id,
            max_attachment_size=self.config.storage.max_attachment_size,
        )
        return SyncOrchestrator(
            account,
            connection,
            storage,
            attachment_store,
            sync_config=sync,
            max_email_size=calculate_max_email_size(self.config.storage.max_attachment_size),
            metrics=self.metrics,
        )

    def start(self):
        """Validate configuration, then run the scheduler until stopped"""
        try:
            self.config.validate()
            self.seed_accounts()
            self.logger.info("Starting MailVault sync service")
            asyncio.run(self._serve())
        except KeyboardInterrupt:
            self.logger.info("Received shutdown signal")
            self.stop()
        except Exception as e:
            self.logger.error(f"Fatal error: {e}", exc_info=True)
            self.stop()
            sys.exit(1)

    async def _serve(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.scheduler.stop)
            except NotImplementedError:
                # add_signal_handler is unavailable on Windows event loops
                pass
        await self.scheduler.run_forever()

    def stop(self):
        """Stop the service"""
        self.logger.info("Stopping MailVault sync service")
        self.scheduler.stop()
        self.logger.info("Service stopped")

    def sync_once(self, account_id: str, mode: SyncMode = SyncMode.INCREMENTAL) -> Optional[SyncResult]:
        """
        Run a single manual sync for one account

        Raises:
            KeyError: If the account is not configured
        """
        self.config.validate()
        self.seed_accounts()
        return asyncio.run(self.scheduler.sync_account_now(account_id, mode))

    def status(self) -> Dict:
        self.seed_accounts()
        return self.scheduler.status()


def main():
    """Main entry point"""
    from .app_runner import AppRunner
    AppRunner().run()


if __name__ == "__main__":
    main()
