"""
Configuration Management Module
Handles loading and validation of environment variables and settings
"""

import os
from typing import List, Optional
from dataclasses import dataclass, field
from dotenv import load_dotenv

from .security_validators import is_safe_webhook_url


DEFAULT_SECONDARY_FOLDERS = "Sent,Drafts,Important,[Gmail]/Sent Mail,[Gmail]/Drafts"


class ConfigurationError(ValueError):
    """Raised when the environment describes an unusable configuration"""


@dataclass
class AccountConfig:
    """Connection settings for a single mailbox, seeded from the environment"""
    account_id: str
    email: str
    imap_server: str
    imap_port: int
    username: str
    password: str
    use_tls: bool = True
    verify_ssl: bool = True
    enabled: bool = True


@dataclass
class SyncConfig:
    """Tuning knobs for the sync engine and scheduler"""
    interval_minutes: int = 30
    max_account_errors: int = 5
    max_folder_errors: int = 10
    batch_size: int = 5
    batch_delay: float = 1.0
    batch_timeout: float = 60.0
    reconnect_delay: float = 5.0
    reconnect_attempts: int = 3
    folder_delay: float = 1.0
    full_sync_folder_delay: float = 3.0
    max_concurrent_accounts: int = 3
    connect_timeout: float = 30.0
    command_timeout: float = 120.0
    primary_folders: List[str] = field(default_factory=lambda: ["INBOX"])
    secondary_folders: List[str] = field(
        default_factory=lambda: DEFAULT_SECONDARY_FOLDERS.split(",")
    )


@dataclass
class StorageConfig:
    """Where synced data lands on disk"""
    attachments_dir: str = "./data/attachments"
    max_attachment_size: int = 50 * 1024 * 1024
    data_dir: str = "./data/accounts"
    accounts_db: str = "./data/accounts.db"


@dataclass
class AlertConfig:
    """Notification channels used when an account is disabled"""
    webhook_enabled: bool = False
    webhook_url: Optional[str] = None
    slack_enabled: bool = False
    slack_webhook: Optional[str] = None


@dataclass
class SystemConfig:
    """Configuration for system settings"""
    log_level: str = "INFO"
    log_file: str = "logs/mailvault.log"
    log_format: str = "text"


class Config:
    """Main configuration class"""

    def __init__(self, env_file: str = ".env"):
        """
        Initialize configuration from environment file

        Args:
            env_file: Path to environment file (default: .env)
        """
        load_dotenv(env_file)

        self.accounts = self._load_accounts()
        self.sync = self._load_sync_config()
        self.storage = self._load_storage_config()
        self.alerts = self._load_alert_config()
        self.system = self._load_system_config()

    def _load_accounts(self) -> List[AccountConfig]:
        """
        Load account definitions

        MAIL_ACCOUNTS lists account ids; every id reads its own block of
        variables, e.g. WORK_EMAIL, WORK_IMAP_SERVER, WORK_PASSWORD.
        """
        accounts = []

        for account_id in self._parse_list(os.getenv("MAIL_ACCOUNTS", "")):
            prefix = self._env_prefix(account_id)
            email = os.getenv(f"{prefix}_EMAIL", "")
            accounts.append(AccountConfig(
                account_id=account_id,
                email=email,
                imap_server=os.getenv(f"{prefix}_IMAP_SERVER", ""),
                imap_port=self._get_int(f"{prefix}_IMAP_PORT", 993),
                username=os.getenv(f"{prefix}_USERNAME", "") or email,
                password=os.getenv(f"{prefix}_PASSWORD", ""),
                use_tls=self._get_bool(f"{prefix}_USE_TLS", True),
                verify_ssl=self._get_bool(f"{prefix}_VERIFY_SSL", True),
                enabled=self._get_bool(f"{prefix}_ENABLED", True),
            ))

        return accounts

    def _load_sync_config(self) -> SyncConfig:
        """Load sync engine configuration"""
        return SyncConfig(
            interval_minutes=self._get_int("SYNC_INTERVAL_MINUTES", 30),
            max_account_errors=self._get_int("MAX_SYNC_ERRORS", 5),
            max_folder_errors=self._get_int("MAX_FOLDER_ERRORS", 10),
            batch_size=self._get_int("SYNC_BATCH_SIZE", 5),
            batch_delay=self._get_float("SYNC_BATCH_DELAY", 1.0),
            batch_timeout=self._get_float("SYNC_BATCH_TIMEOUT", 60.0),
            reconnect_delay=self._get_float("SYNC_RECONNECT_DELAY", 5.0),
            reconnect_attempts=self._get_int("SYNC_RECONNECT_ATTEMPTS", 3),
            folder_delay=self._get_float("SYNC_FOLDER_DELAY", 1.0),
            max_concurrent_accounts=self._get_int("SYNC_MAX_CONCURRENT", 3),
            connect_timeout=self._get_float("CONNECT_TIMEOUT", 30.0),
            secondary_folders=self._parse_list(
                os.getenv("SYNC_SECONDARY_FOLDERS", DEFAULT_SECONDARY_FOLDERS)
            ),
        )

    def _load_storage_config(self) -> StorageConfig:
        """Load storage locations"""
        return StorageConfig(
            attachments_dir=os.getenv("ATTACHMENTS_DIR", "./data/attachments"),
            max_attachment_size=self._get_int("MAX_ATTACHMENT_SIZE", 50 * 1024 * 1024),
            data_dir=os.getenv("DATA_DIR", "./data/accounts"),
            accounts_db=os.getenv("ACCOUNTS_DB", "./data/accounts.db"),
        )

    def _load_alert_config(self) -> AlertConfig:
        """Load alert configuration"""
        return AlertConfig(
            webhook_enabled=self._get_bool("ALERT_WEBHOOK_ENABLED", False),
            webhook_url=os.getenv("ALERT_WEBHOOK_URL"),
            slack_enabled=self._get_bool("ALERT_SLACK_ENABLED", False),
            slack_webhook=os.getenv("ALERT_SLACK_WEBHOOK"),
        )

    def _load_system_config(self) -> SystemConfig:
        """Load system configuration"""
        return SystemConfig(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_file=os.getenv("LOG_FILE", "logs/mailvault.log"),
            log_format=os.getenv("LOG_FORMAT", "text").strip().lower(),
        )

    @staticmethod
    def _env_prefix(account_id: str) -> str:
        """Turn an account id into its environment variable prefix."""
        return "".join(ch if ch.isalnum() else "_" for ch in account_id).upper()

    @staticmethod
    def _parse_list(value: str) -> List[str]:
        """Normalize a comma/newline separated string into a clean list."""
        if not value:
            return []

        return [
            item.strip()
            for item in value.replace("\n", ",").split(",")
            if item.strip()
        ]

    @staticmethod
    def _get_bool(key: str, default: bool = False) -> bool:
        """Convert environment variable to boolean"""
        value = os.getenv(key, str(default)).lower()
        return value in ('true', '1', 'yes', 'on')

    @staticmethod
    def _get_int(key: str, default: int) -> int:
        """Read an integer, reporting the variable name when it is malformed"""
        raw = os.getenv(key)
        if raw is None or not raw.strip():
            return default
        try:
            return int(raw)
        except ValueError:
            raise ConfigurationError(f"{key} must be an integer, got {raw!r}")

    @staticmethod
    def _get_float(key: str, default: float) -> float:
        raw = os.getenv(key)
        if raw is None or not raw.strip():
            return default
        try:
            return float(raw)
        except ValueError:
            raise ConfigurationError(f"{key} must be a number, got {raw!r}")

    def validate(self) -> bool:
        """
        Validate configuration

        Returns:
            True if configuration is valid

        Raises:
            ConfigurationError: If configuration is invalid
        """
        for account in self.accounts:
            if not account.imap_server:
                raise ConfigurationError(f"Missing IMAP server for account '{account.account_id}'")
            if not account.username or not account.password:
                raise ConfigurationError(f"Missing credentials for account '{account.account_id}'")

        if self.sync.batch_size < 1:
            raise ConfigurationError("SYNC_BATCH_SIZE must be at least 1")
        if self.sync.max_concurrent_accounts < 1:
            raise ConfigurationError("SYNC_MAX_CONCURRENT must be at least 1")
        if self.sync.interval_minutes < 1:
            raise ConfigurationError("SYNC_INTERVAL_MINUTES must be at least 1")
        if self.sync.max_account_errors < 1:
            raise ConfigurationError("MAX_SYNC_ERRORS must be at least 1")

        if self.alerts.webhook_enabled:
            self._validate_webhook("Webhook", self.alerts.webhook_url)
        if self.alerts.slack_enabled:
            self._validate_webhook("Slack", self.alerts.slack_webhook)

        return True

    @staticmethod
    def _validate_webhook(channel: str, url: Optional[str]) -> None:
        if not url:
            raise ConfigurationError(f"{channel} alerts enabled but no URL provided")
        is_safe, reason = is_safe_webhook_url(url)
        if not is_safe:
            raise ConfigurationError(f"{channel} URL rejected: {reason}")
