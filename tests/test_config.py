"""
Configuration Tests
Environment parsing, per-account blocks and validation
"""

import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from mailvault.utils.config import Config, ConfigurationError, SyncConfig


BASE_ENV = {
    "MAIL_ACCOUNTS": "work, home-box",
    "WORK_EMAIL": "me@work.example.com",
    "WORK_IMAP_SERVER": "imap.work.example.com",
    "WORK_PASSWORD": "s3cret",
    "HOME_BOX_EMAIL": "me@home.example.com",
    "HOME_BOX_IMAP_SERVER": "imap.home.example.com",
    "HOME_BOX_IMAP_PORT": "143",
    "HOME_BOX_USERNAME": "me",
    "HOME_BOX_PASSWORD": "pw",
    "HOME_BOX_USE_TLS": "false",
    "HOME_BOX_ENABLED": "no",
}

MISSING_ENV_FILE = str(Path(tempfile.gettempdir()) / "mailvault-no-such-file.env")


def _config(**env):
    values = dict(BASE_ENV)
    values.update(env)
    with patch.dict(os.environ, values, clear=True):
        return Config(MISSING_ENV_FILE)


class TestAccountLoading(unittest.TestCase):

    def test_accounts_are_read_per_prefix(self):
        config = _config()

        work, home = config.accounts
        self.assertEqual(work.account_id, "work")
        self.assertEqual(work.imap_port, 993)
        self.assertEqual(work.username, "me@work.example.com")
        self.assertTrue(work.use_tls)
        self.assertTrue(work.enabled)

        self.assertEqual(home.account_id, "home-box")
        self.assertEqual(home.imap_port, 143)
        self.assertEqual(home.username, "me")
        self.assertFalse(home.use_tls)
        self.assertFalse(home.enabled)

    def test_no_accounts(self):
        self.assertEqual(_config(MAIL_ACCOUNTS="").accounts, [])


class TestSyncSettings(unittest.TestCase):

    def test_defaults(self):
        sync = _config().sync

        self.assertEqual(sync.interval_minutes, 30)
        self.assertEqual(sync.max_account_errors, 5)
        self.assertEqual(sync.batch_size, 5)
        self.assertEqual(sync.batch_delay, 1.0)
        self.assertEqual(sync.reconnect_delay, 5.0)
        self.assertEqual(sync.reconnect_attempts, 3)
        self.assertEqual(sync.max_concurrent_accounts, 3)
        self.assertEqual(sync.primary_folders, ["INBOX"])
        self.assertIn("[Gmail]/Sent Mail", sync.secondary_folders)

    def test_overrides(self):
        sync = _config(
            SYNC_INTERVAL_MINUTES="15",
            SYNC_BATCH_SIZE="20",
            SYNC_BATCH_DELAY="0.5",
            SYNC_SECONDARY_FOLDERS="Sent\nArchive",
        ).sync

        self.assertEqual(sync.interval_minutes, 15)
        self.assertEqual(sync.batch_size, 20)
        self.assertEqual(sync.batch_delay, 0.5)
        self.assertEqual(sync.secondary_folders, ["Sent", "Archive"])

    def test_malformed_number_names_the_variable(self):
        with self.assertRaises(ConfigurationError) as ctx:
            _config(SYNC_BATCH_SIZE="five")

        self.assertIn("SYNC_BATCH_SIZE", str(ctx.exception))

    def test_dataclass_defaults_match_environment_defaults(self):
        self.assertEqual(SyncConfig().batch_timeout, _config().sync.batch_timeout)

    def test_log_format_is_normalized(self):
        self.assertEqual(_config(LOG_FORMAT=" JSON ").system.log_format, "json")


class TestValidation(unittest.TestCase):

    def test_valid_configuration(self):
        self.assertTrue(_config().validate())

    def test_missing_server(self):
        with self.assertRaises(ConfigurationError) as ctx:
            _config(WORK_IMAP_SERVER="").validate()

        self.assertIn("work", str(ctx.exception))

    def test_missing_password(self):
        with self.assertRaises(ConfigurationError):
            _config(WORK_PASSWORD="").validate()

    def test_zero_batch_size(self):
        with self.assertRaises(ConfigurationError):
            _config(SYNC_BATCH_SIZE="0").validate()

    def test_zero_concurrency(self):
        with self.assertRaises(ConfigurationError):
            _config(SYNC_MAX_CONCURRENT="0").validate()

    def test_webhook_enabled_without_url(self):
        with self.assertRaises(ConfigurationError):
            _config(ALERT_WEBHOOK_ENABLED="true").validate()

    @patch("mailvault.utils.config.is_safe_webhook_url", return_value=(False, "resolves to a non-public address"))
    def test_unsafe_webhook_is_rejected(self, _mock_check):
        with self.assertRaises(ConfigurationError) as ctx:
            _config(ALERT_SLACK_ENABLED="true", ALERT_SLACK_WEBHOOK="https://internal/hook").validate()

        self.assertIn("Slack URL rejected", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
