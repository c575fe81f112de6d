"""
Account Directory Module
Where the scheduler finds accounts and records the outcome of each cycle

The sync engine may only write four fields back: last_sync_at,
error_message, error_count and sync_enabled. Connection parameters are
owned by configuration.
"""

import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .models import Account, utcnow


logger = logging.getLogger(__name__)

WRITABLE_FIELDS = frozenset({"last_sync_at", "error_message", "error_count", "sync_enabled"})


def _check_writable(fields: Dict[str, Any]) -> None:
    forbidden = set(fields) - WRITABLE_FIELDS
    if forbidden:
        raise ValueError(f"Account fields are read-only: {', '.join(sorted(forbidden))}")


class AccountDirectory(ABC):
    """Listing of accounts plus the sync bookkeeping written after each cycle"""

    @abstractmethod
    def list_accounts(self) -> List[Account]:
        """Every known account in a stable order"""

    @abstractmethod
    def get_account(self, account_id: str) -> Optional[Account]:
        """One account, or None"""

    @abstractmethod
    def update_sync_state(self, account_id: str, **fields: Any) -> Account:
        """
        Write sync bookkeeping fields

        Raises:
            ValueError: If a field outside the writable set is passed
            KeyError: If the account is unknown
        """

    @abstractmethod
    def upsert_account(self, account: Account) -> Account:
        """
        Create an account or refresh its connection parameters

        Existing sync bookkeeping is left untouched.
        """

    def eligible_accounts(self, max_errors: int) -> List[Account]:
        return [a for a in self.list_accounts() if a.is_eligible(max_errors)]


class InMemoryAccountDirectory(AccountDirectory):
    """Directory kept in a dict, used by tests and single-shot runs"""

    def __init__(self, accounts: Optional[List[Account]] = None):
        self._accounts: Dict[str, Account] = {}
        for account in accounts or []:
            self._accounts[account.account_id] = account

    def list_accounts(self) -> List[Account]:
        return list(self._accounts.values())

    def get_account(self, account_id: str) -> Optional[Account]:
        return self._accounts.get(account_id)

    def update_sync_state(self, account_id: str, **fields: Any) -> Account:
        _check_writable(fields)
        updated = replace(self._accounts[account_id], **fields)
        self._accounts[account_id] = updated
        return updated

    def upsert_account(self, account: Account) -> Account:
        existing = self._accounts.get(account.account_id)
        if existing is not None:
            account = replace(
                account,
                sync_enabled=existing.sync_enabled,
                error_count=existing.error_count,
                error_message=existing.error_message,
                last_sync_at=existing.last_sync_at,
            )
        self._accounts[account.account_id] = account
        return account


ACCOUNTS_SCHEMA = """
CREATE TABLE IF NOT EXISTS imap_accounts (
    id TEXT NOT NULL PRIMARY KEY,
    email TEXT NOT NULL,
    imapServer TEXT NOT NULL,
    imapPort INTEGER NOT NULL DEFAULT 993,
    imapUsername TEXT NOT NULL,
    useTls INTEGER NOT NULL DEFAULT 1,
    verifySsl INTEGER NOT NULL DEFAULT 1,
    isActive INTEGER NOT NULL DEFAULT 1,
    syncEnabled INTEGER NOT NULL DEFAULT 1,
    lastSyncAt TEXT,
    dbPath TEXT NOT NULL,
    errorMessage TEXT,
    errorCount INTEGER NOT NULL DEFAULT 0,
    createdAt TEXT NOT NULL,
    updatedAt TEXT NOT NULL
);
"""

_COLUMNS = {
    "last_sync_at": "lastSyncAt",
    "error_message": "errorMessage",
    "error_count": "errorCount",
    "sync_enabled": "syncEnabled",
}


class SqliteAccountDirectory(AccountDirectory):
    """
    Accounts persisted in an ``imap_accounts`` table

    SECURITY STORY: Passwords are never written to disk. They are held in
    memory, supplied from the environment each time an account is seeded.
    """

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._passwords: Dict[str, str] = {}
        self._conn = sqlite3.connect(str(self.db_path), timeout=30.0, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        with self._conn:
            self._conn.execute(ACCOUNTS_SCHEMA)

    def _row_to_account(self, row: Any) -> Account:
        last_sync = row["lastSyncAt"]
        return Account(
            account_id=row["id"],
            email=row["email"],
            imap_server=row["imapServer"],
            imap_port=int(row["imapPort"]),
            username=row["imapUsername"],
            password=self._passwords.get(row["id"], ""),
            use_tls=bool(row["useTls"]),
            verify_ssl=bool(row["verifySsl"]),
            is_active=bool(row["isActive"]),
            sync_enabled=bool(row["syncEnabled"]),
            error_count=int(row["errorCount"]),
            error_message=row["errorMessage"],
            last_sync_at=datetime.fromisoformat(last_sync) if last_sync else None,
            db_path=row["dbPath"],
        )

    def list_accounts(self) -> List[Account]:
        with self._lock:
            rows = self._conn.execute("SELECT * FROM imap_accounts ORDER BY rowid").fetchall()
        return [self._row_to_account(row) for row in rows]

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM imap_accounts WHERE id = ?", (account_id,)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def update_sync_state(self, account_id: str, **fields: Any) -> Account:
        _check_writable(fields)
        assignments = []
        values: List[Any] = []
        for name, value in fields.items():
            assignments.append(f"{_COLUMNS[name]} = ?")
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, bool):
                value = int(value)
            values.append(value)
        assignments.append("updatedAt = ?")
        values.extend([utcnow().isoformat(), account_id])

        with self._lock, self._conn:
            cursor = self._conn.execute(
                f"UPDATE imap_accounts SET {', '.join(assignments)} WHERE id = ?", values
            )
        if cursor.rowcount == 0:
            raise KeyError(account_id)
        return self.get_account(account_id)

    def upsert_account(self, account: Account) -> Account:
        self._passwords[account.account_id] = account.password
        now = utcnow().isoformat()
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO imap_accounts (
                    id, email, imapServer, imapPort, imapUsername, useTls, verifySsl,
                    isActive, syncEnabled, dbPath, errorCount, createdAt, updatedAt
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    email=excluded.email, imapServer=excluded.imapServer,
                    imapPort=excluded.imapPort, imapUsername=excluded.imapUsername,
                    useTls=excluded.useTls, verifySsl=excluded.verifySsl,
                    isActive=excluded.isActive, dbPath=excluded.dbPath,
                    updatedAt=excluded.updatedAt
                """,
                (
                    account.account_id, account.email, account.imap_server,
                    account.imap_port, account.username, int(account.use_tls),
                    int(account.verify_ssl), int(account.is_active),
                    int(account.sync_enabled), account.db_path, now, now,
                ),
            )
        return self.get_account(account.account_id)

    def eligible_accounts(self, max_errors: int) -> List[Account]:
        """Eligible accounts that were seeded with credentials by this process"""
        eligible = []
        for account in super().eligible_accounts(max_errors):
            if account.account_id not in self._passwords:
                logger.warning(
                    f"Skipping account {account.account_id}: not in the current configuration"
                )
                continue
            eligible.append(account)
        return eligible

    def close(self) -> None:
        with self._lock:
            self._conn.close()
