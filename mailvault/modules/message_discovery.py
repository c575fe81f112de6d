"""
Message Discovery Module
Works out which UIDs in a selected folder still need to be fetched

Strategies, tried in this order for an incremental sync:

1. UID cursor: the folder's UIDVALIDITY matches the cursor, so every UID
   above ``highest_uid`` is new (``UID SEARCH UID n+1:*``).
2. Date cursor: no usable UID watermark but a previous sync time exists,
   so search ``SINCE`` that day and drop ids already stored.
3. Full header scan: fetch every Message-ID header and subtract the ids
   already stored for the folder.

A server refusing either search (DiscoveryError) drops through to the full
scan. Full sync mode always goes straight to the full scan.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, List, Optional, Set, Tuple

from .email_parser import fallback_message_id, normalize_message_id
from .exceptions import DiscoveryError
from .models import FolderStatus, SyncCursor, SyncMode
from .persister import Persister
from ..utils.sanitization import sanitize_for_logging


MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
          "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


class DiscoveryStrategy(str, Enum):
    EMPTY = "empty"
    UID = "uid"
    DATE = "date"
    FULL_SCAN = "full_scan"


@dataclass
class DiscoveryResult:
    """UIDs to fetch, ascending, and how they were found"""
    strategy: DiscoveryStrategy
    uids: List[int] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.uids)


def imap_date(value: Any) -> str:
    """IMAP date token (``dd-Mon-yyyy``) independent of the process locale"""
    return f"{value.day:02d}-{MONTHS[value.month - 1]}-{value.year}"


class MessageDiscovery:
    """Finds new message handles for one account's folders"""

    def __init__(self, connection: Any, persister: Persister, account_id: str):
        self.connection = connection
        self.persister = persister
        self.logger = logging.getLogger(f"MessageDiscovery.{account_id}")

    async def discover(
        self,
        folder: FolderStatus,
        cursor: SyncCursor,
        mode: SyncMode = SyncMode.INCREMENTAL,
    ) -> DiscoveryResult:
        """
        Args:
            folder: SELECT result for the folder currently open
            cursor: The folder's cursor, already reconciled with UIDVALIDITY
            mode: FULL skips both cursor strategies

        Raises:
            SyncConnectionError: Transport failure during any strategy
            FolderError: The full header scan itself was refused
        """
        safe_folder = sanitize_for_logging(folder.name)

        if folder.exists == 0:
            return DiscoveryResult(DiscoveryStrategy.EMPTY)

        if mode is SyncMode.INCREMENTAL:
            try:
                if self._uid_cursor_usable(folder, cursor):
                    return await self._discover_by_uid(cursor)
                if cursor.last_sync_at is not None:
                    return await self._discover_by_date(folder, cursor)
            except DiscoveryError as e:
                self.logger.warning(
                    f"Search failed in {safe_folder}, falling back to full scan: {e}"
                )

        return await self._full_scan(folder)

    @staticmethod
    def _uid_cursor_usable(folder: FolderStatus, cursor: SyncCursor) -> bool:
        return (
            cursor.highest_uid > 0
            and cursor.uid_validity is not None
            and cursor.uid_validity == folder.uid_validity
        )

    async def _discover_by_uid(self, cursor: SyncCursor) -> DiscoveryResult:
        # "n:*" always matches the last message, even when its UID is below n
        found = await self.connection.uid_search("UID", f"{cursor.highest_uid + 1}:*")
        uids = [uid for uid in found if uid > cursor.highest_uid]
        self.logger.info(f"UID search found {len(uids)} new messages above UID {cursor.highest_uid}")
        return DiscoveryResult(DiscoveryStrategy.UID, uids)

    async def _discover_by_date(
        self, folder: FolderStatus, cursor: SyncCursor
    ) -> DiscoveryResult:
        since = imap_date(cursor.last_sync_at)
        candidates = await self.connection.uid_search("SINCE", since)
        if not candidates:
            return DiscoveryResult(DiscoveryStrategy.DATE)

        headers = await self.connection.fetch_message_ids(candidates)
        uids = await self._subtract_existing(folder, headers)
        self.logger.info(
            f"Date search since {since} matched {len(candidates)} messages, {len(uids)} new"
        )
        return DiscoveryResult(DiscoveryStrategy.DATE, uids)

    async def _full_scan(self, folder: FolderStatus) -> DiscoveryResult:
        headers = await self.connection.fetch_message_ids()
        uids = await self._subtract_existing(folder, headers)
        self.logger.info(
            f"Header scan of {sanitize_for_logging(folder.name)}: "
            f"{len(headers)} messages, {len(uids)} new"
        )
        return DiscoveryResult(DiscoveryStrategy.FULL_SCAN, uids)

    async def _subtract_existing(
        self, folder: FolderStatus, headers: Iterable[Tuple[int, Optional[str]]]
    ) -> List[int]:
        existing: Set[str] = await self.persister.existing_ids(folder.name)
        new_uids = set()
        for uid, raw_id in headers:
            message_id = normalize_message_id(raw_id) or fallback_message_id(
                folder.uid_validity, uid, folder.name
            )
            if message_id not in existing:
                new_uids.add(uid)
        return sorted(new_uids)
