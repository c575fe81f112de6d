"""
Sync Storage Module
Per-account persistence boundary for messages and folder cursors

PATTERN RECOGNITION: Storage is an injected interface (SyncStorage). The
engine only ever talks to the interface, so tests run against
InMemoryStorage while the service runs against one SQLite file per account.

The only write path is commit_batch(): message upserts and the cursor
update for a batch land together or not at all.
"""

import json
import logging
import sqlite3
import threading
import uuid
from abc import ABC, abstractmethod
from copy import deepcopy
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from .exceptions import PersistenceError
from .models import (
    AttachmentMetadata,
    ContentType,
    MailMessage,
    SyncCursor,
    UpsertReport,
    utcnow,
)


logger = logging.getLogger(__name__)


def _validation_error(message: MailMessage) -> Optional[str]:
    """Reason a single row cannot be stored, or None"""
    if not message.message_id or not message.message_id.strip():
        return "missing message id"
    if not message.folder:
        return f"{message.message_id}: missing folder"
    return None


class SyncStorage(ABC):
    """What the sync engine needs from an account's storage partition"""

    @abstractmethod
    def existing_message_ids(self, folder: str) -> Set[str]:
        """Message ids already stored for ``folder``"""

    @abstractmethod
    def get_cursor(self, folder: str) -> Optional[SyncCursor]:
        """The folder's cursor, or None before its first sync"""

    @abstractmethod
    def save_cursor(self, cursor: SyncCursor) -> None:
        """Create or replace a folder cursor"""

    @abstractmethod
    def commit_batch(
        self,
        folder: str,
        messages: List[MailMessage],
        cursor: Optional[SyncCursor] = None,
    ) -> UpsertReport:
        """
        Upsert messages by message id and store ``cursor``, as one unit

        Rows that fail validation are reported in ``rejected`` and do not
        affect the rest of the batch.

        Raises:
            PersistenceError: The storage itself failed; nothing was written
        """

    @abstractmethod
    def get_message(self, message_id: str) -> Optional[MailMessage]:
        """Look up one stored message"""

    @abstractmethod
    def count_messages(self, folder: Optional[str] = None) -> int:
        """Number of stored messages, optionally for one folder"""

    def close(self) -> None:
        """Release the underlying handle"""


class InMemoryStorage(SyncStorage):
    """Dictionary-backed storage for tests and dry runs"""

    def __init__(self):
        self.messages: Dict[str, MailMessage] = {}
        self.cursors: Dict[str, SyncCursor] = {}
        self.closed = False

    def existing_message_ids(self, folder: str) -> Set[str]:
        return {mid for mid, msg in self.messages.items() if msg.folder == folder}

    def get_cursor(self, folder: str) -> Optional[SyncCursor]:
        cursor = self.cursors.get(folder)
        return deepcopy(cursor) if cursor else None

    def save_cursor(self, cursor: SyncCursor) -> None:
        self.cursors[cursor.folder] = deepcopy(cursor)

    def commit_batch(
        self,
        folder: str,
        messages: List[MailMessage],
        cursor: Optional[SyncCursor] = None,
    ) -> UpsertReport:
        report = UpsertReport()
        staged = dict(self.messages)

        for message in messages:
            problem = _validation_error(message)
            if problem:
                report.rejected.append(problem)
                continue
            if message.message_id in staged:
                report.updated += 1
            else:
                report.inserted += 1
            staged[message.message_id] = deepcopy(message)

        self.messages = staged
        if cursor is not None:
            self.save_cursor(cursor)
        return report

    def get_message(self, message_id: str) -> Optional[MailMessage]:
        return self.messages.get(message_id)

    def count_messages(self, folder: Optional[str] = None) -> int:
        if folder is None:
            return len(self.messages)
        return len(self.existing_message_ids(folder))

    def close(self) -> None:
        self.closed = True


EMAILS_SCHEMA = """
CREATE TABLE IF NOT EXISTS emails (
    id TEXT NOT NULL PRIMARY KEY,
    messageId TEXT NOT NULL UNIQUE,
    uid INTEGER,
    subject TEXT,
    fromAddress TEXT,
    fromName TEXT,
    toAddresses TEXT,
    ccAddresses TEXT,
    bccAddresses TEXT,
    bodyText TEXT,
    bodyHtml TEXT,
    contentType TEXT NOT NULL DEFAULT 'PLAIN',
    folder TEXT NOT NULL,
    flags TEXT,
    date TEXT,
    size INTEGER,
    attachments TEXT,
    attachmentsPath TEXT,
    hasAttachments INTEGER NOT NULL DEFAULT 0,
    createdAt TEXT NOT NULL,
    updatedAt TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS emails_folder_idx ON emails(folder);
CREATE INDEX IF NOT EXISTS emails_folder_uid_idx ON emails(folder, uid);
CREATE INDEX IF NOT EXISTS emails_date_idx ON emails(date);
"""

SYNC_STATE_SCHEMA = """
CREATE TABLE IF NOT EXISTS sync_state (
    id TEXT PRIMARY KEY,
    folder TEXT UNIQUE NOT NULL,
    uidValidity INTEGER,
    highestUid INTEGER NOT NULL DEFAULT 0,
    lastSyncAt TEXT,
    createdAt TEXT NOT NULL,
    updatedAt TEXT NOT NULL
);
"""

UPSERT_EMAIL = """
INSERT INTO emails (
    id, messageId, uid, subject, fromAddress, fromName, toAddresses,
    ccAddresses, bccAddresses, bodyText, bodyHtml, contentType, folder,
    flags, date, size, attachments, attachmentsPath, hasAttachments,
    createdAt, updatedAt
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(messageId) DO UPDATE SET
    uid=excluded.uid, subject=excluded.subject,
    fromAddress=excluded.fromAddress, fromName=excluded.fromName,
    toAddresses=excluded.toAddresses, ccAddresses=excluded.ccAddresses,
    bccAddresses=excluded.bccAddresses, bodyText=excluded.bodyText,
    bodyHtml=excluded.bodyHtml, contentType=excluded.contentType,
    folder=excluded.folder, flags=excluded.flags, date=excluded.date,
    size=excluded.size, attachments=excluded.attachments,
    attachmentsPath=excluded.attachmentsPath,
    hasAttachments=excluded.hasAttachments, updatedAt=excluded.updatedAt
"""

UPSERT_CURSOR = """
INSERT INTO sync_state (id, folder, uidValidity, highestUid, lastSyncAt, createdAt, updatedAt)
VALUES (?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(folder) DO UPDATE SET
    uidValidity=excluded.uidValidity, highestUid=excluded.highestUid,
    lastSyncAt=excluded.lastSyncAt, updatedAt=excluded.updatedAt
"""


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SqliteStorage(SyncStorage):
    """
    One SQLite file per account

    The connection is shared with worker threads (the engine calls into
    storage through asyncio.to_thread), so every statement runs under a
    lock and transactions are managed explicitly.
    """

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(
                str(self.db_path),
                timeout=30.0,
                isolation_level=None,
                check_same_thread=False,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.executescript(EMAILS_SCHEMA + SYNC_STATE_SCHEMA)
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not open storage {self.db_path}: {e}") from e

    def existing_message_ids(self, folder: str) -> Set[str]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT messageId FROM emails WHERE folder = ?", (folder,)
            ).fetchall()
        return {row["messageId"] for row in rows}

    def get_cursor(self, folder: str) -> Optional[SyncCursor]:
        with self._lock:
            row = self._conn.execute(
                "SELECT folder, uidValidity, highestUid, lastSyncAt FROM sync_state WHERE folder = ?",
                (folder,),
            ).fetchone()
        if row is None:
            return None
        return SyncCursor(
            folder=row["folder"],
            uid_validity=row["uidValidity"],
            highest_uid=int(row["highestUid"] or 0),
            last_sync_at=_from_iso(row["lastSyncAt"]),
        )

    def save_cursor(self, cursor: SyncCursor) -> None:
        with self._lock:
            try:
                self._write_cursor(cursor)
            except sqlite3.Error as e:
                raise PersistenceError(f"Could not save cursor for {cursor.folder}: {e}") from e

    def _write_cursor(self, cursor: SyncCursor) -> None:
        now = utcnow().isoformat()
        self._conn.execute(UPSERT_CURSOR, (
            str(uuid.uuid4()),
            cursor.folder,
            cursor.uid_validity,
            cursor.highest_uid,
            _to_iso(cursor.last_sync_at),
            now,
            now,
        ))

    def commit_batch(
        self,
        folder: str,
        messages: List[MailMessage],
        cursor: Optional[SyncCursor] = None,
    ) -> UpsertReport:
        report = UpsertReport()

        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
                for message in messages:
                    problem = _validation_error(message)
                    if problem:
                        report.rejected.append(problem)
                        continue
                    self._upsert_row(message, report)
                if cursor is not None:
                    self._write_cursor(cursor)
                self._conn.execute("COMMIT")
            except sqlite3.Error as e:
                if self._conn.in_transaction:
                    self._conn.execute("ROLLBACK")
                raise PersistenceError(
                    f"Batch write for folder {folder} rolled back: {e}"
                ) from e

        return report

    def _upsert_row(self, message: MailMessage, report: UpsertReport) -> None:
        """Write one row inside its own savepoint so a bad row stays isolated"""
        self._conn.execute("SAVEPOINT message_row")
        try:
            existed = self._conn.execute(
                "SELECT 1 FROM emails WHERE messageId = ?", (message.message_id,)
            ).fetchone() is not None
            self._conn.execute(UPSERT_EMAIL, self._row_params(message))
        except (sqlite3.IntegrityError, sqlite3.InterfaceError) as e:
            self._conn.execute("ROLLBACK TO SAVEPOINT message_row")
            self._conn.execute("RELEASE SAVEPOINT message_row")
            report.rejected.append(f"{message.message_id}: {e}")
            return

        self._conn.execute("RELEASE SAVEPOINT message_row")
        if existed:
            report.updated += 1
        else:
            report.inserted += 1

    @staticmethod
    def _row_params(message: MailMessage) -> tuple:
        now = utcnow().isoformat()
        return (
            str(uuid.uuid4()),
            message.message_id,
            message.uid,
            message.subject,
            message.from_address,
            message.from_name,
            json.dumps(message.to_addresses),
            json.dumps(message.cc_addresses),
            json.dumps(message.bcc_addresses),
            message.body_text,
            message.body_html,
            message.content_type.value,
            message.folder,
            json.dumps(message.flags),
            _to_iso(message.date),
            message.size,
            json.dumps([a.to_dict() for a in message.attachments]),
            message.attachments_path,
            int(message.has_attachments),
            now,
            now,
        )

    def get_message(self, message_id: str) -> Optional[MailMessage]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM emails WHERE messageId = ?", (message_id,)
            ).fetchone()
        return self._row_to_message(row) if row else None

    @staticmethod
    def _row_to_message(row: Any) -> MailMessage:
        def _json_list(value: Optional[str]) -> List[Any]:
            return json.loads(value) if value else []

        return MailMessage(
            message_id=row["messageId"],
            folder=row["folder"],
            uid=row["uid"],
            subject=row["subject"] or "",
            from_address=row["fromAddress"] or "",
            from_name=row["fromName"] or "",
            to_addresses=_json_list(row["toAddresses"]),
            cc_addresses=_json_list(row["ccAddresses"]),
            bcc_addresses=_json_list(row["bccAddresses"]),
            body_text=row["bodyText"] or "",
            body_html=row["bodyHtml"] or "",
            content_type=ContentType(row["contentType"]),
            date=_from_iso(row["date"]),
            flags=_json_list(row["flags"]),
            size=row["size"] or 0,
            has_attachments=bool(row["hasAttachments"]),
            attachments_path=row["attachmentsPath"],
            attachments=[AttachmentMetadata.from_dict(a) for a in _json_list(row["attachments"])],
        )

    def count_messages(self, folder: Optional[str] = None) -> int:
        with self._lock:
            if folder is None:
                row = self._conn.execute("SELECT COUNT(*) FROM emails").fetchone()
            else:
                row = self._conn.execute(
                    "SELECT COUNT(*) FROM emails WHERE folder = ?", (folder,)
                ).fetchone()
        return int(row[0])

    def close(self) -> None:
        with self._lock:
            self._conn.close()
        logger.debug(f"Closed storage {self.db_path}")
