"""
Sync Data Model
Dataclasses exchanged between the sync engine components
"""

from dataclasses import dataclass, field, asdict, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ContentType(str, Enum):
    """Body flavour stored with each message"""
    HTML = "HTML"
    PLAIN = "PLAIN"


class SyncMode(str, Enum):
    """INCREMENTAL uses the folder cursor; FULL always scans headers"""
    INCREMENTAL = "incremental"
    FULL = "full"


@dataclass
class Account:
    """
    A remote mailbox plus its sync bookkeeping

    Only ``last_sync_at``, ``error_message``, ``error_count`` and
    ``sync_enabled`` are ever written back by the engine.
    """
    account_id: str
    email: str
    imap_server: str
    imap_port: int
    username: str
    password: str
    use_tls: bool = True
    verify_ssl: bool = True
    is_active: bool = True
    sync_enabled: bool = True
    error_count: int = 0
    error_message: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    db_path: str = ""

    def is_eligible(self, max_errors: int) -> bool:
        return self.is_active and self.sync_enabled and self.error_count < max_errors


@dataclass
class Folder:
    """A node of the server's folder hierarchy (never persisted)"""
    name: str
    delimiter: str = "/"
    selectable: bool = True
    children: List["Folder"] = field(default_factory=list)


@dataclass
class FolderStatus:
    """What SELECT told us about a folder"""
    name: str
    exists: int
    uid_validity: Optional[int] = None
    uid_next: Optional[int] = None


@dataclass
class SyncCursor:
    """
    Per-folder sync watermark

    ``highest_uid`` only ever moves forward for a given ``uid_validity``;
    a different ``uid_validity`` means every recorded UID is meaningless.
    """
    folder: str
    uid_validity: Optional[int] = None
    highest_uid: int = 0
    last_sync_at: Optional[datetime] = None

    def advanced_to(self, uid: int, when: Optional[datetime] = None) -> "SyncCursor":
        return replace(
            self,
            highest_uid=max(self.highest_uid, uid),
            last_sync_at=when or utcnow(),
        )

    def reset_for(self, uid_validity: Optional[int]) -> "SyncCursor":
        return SyncCursor(folder=self.folder, uid_validity=uid_validity)


@dataclass
class AttachmentPayload:
    """An attachment as found in the MIME tree, before it is written out"""
    filename: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class AttachmentMetadata:
    """What is kept in storage about an attachment written to disk"""
    original_name: str
    saved_name: str
    size: int
    content_type: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "originalName": self.original_name,
            "savedName": self.saved_name,
            "size": self.size,
            "contentType": self.content_type,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AttachmentMetadata":
        return cls(
            original_name=data.get("originalName", ""),
            saved_name=data.get("savedName", ""),
            size=int(data.get("size", 0)),
            content_type=data.get("contentType", "application/octet-stream"),
        )


@dataclass
class FetchedMessage:
    """Raw message bytes plus the FETCH attributes that came with them"""
    uid: int
    raw: bytes
    flags: List[str] = field(default_factory=list)
    size: int = 0


@dataclass
class ParsedMessage:
    """A decoded message, attachments still in memory"""
    message_id: str
    subject: str
    from_address: str
    from_name: str
    to_addresses: List[str]
    cc_addresses: List[str]
    bcc_addresses: List[str]
    body_text: str
    body_html: str
    date: datetime
    attachments: List[AttachmentPayload] = field(default_factory=list)


@dataclass
class MailMessage:
    """The stored form of one physical message, keyed by ``message_id``"""
    message_id: str
    folder: str
    uid: Optional[int] = None
    subject: str = ""
    from_address: str = ""
    from_name: str = ""
    to_addresses: List[str] = field(default_factory=list)
    cc_addresses: List[str] = field(default_factory=list)
    bcc_addresses: List[str] = field(default_factory=list)
    body_text: str = ""
    body_html: str = ""
    content_type: ContentType = ContentType.PLAIN
    date: Optional[datetime] = None
    flags: List[str] = field(default_factory=list)
    size: int = 0
    has_attachments: bool = False
    attachments_path: Optional[str] = None
    attachments: List[AttachmentMetadata] = field(default_factory=list)


@dataclass
class UpsertReport:
    """Outcome of writing one batch to storage"""
    inserted: int = 0
    updated: int = 0
    rejected: List[str] = field(default_factory=list)


@dataclass
class FolderProgress:
    """Running totals for one folder, kept across retry attempts"""
    folder: str
    new_messages: int = 0
    batches_completed: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class SyncResult:
    """Summary handed back to the scheduler after one account cycle"""
    total_new_messages: int = 0
    errors: List[str] = field(default_factory=list)
    elapsed_seconds: float = 0.0
    folders_synced: int = 0

    @property
    def succeeded(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        return {
            "totalNewMessages": data["total_new_messages"],
            "errors": data["errors"],
            "elapsedSeconds": data["elapsed_seconds"],
        }
