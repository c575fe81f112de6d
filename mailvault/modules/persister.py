"""
Persister Module
Moves finished batches into storage and keeps each folder's cursor honest

All storage calls run on a worker thread so a slow disk never stalls the
event loop driving other accounts.
"""

import asyncio
import logging
from typing import List, Optional, Set, Tuple

from .models import FolderStatus, MailMessage, SyncCursor, UpsertReport, utcnow
from .storage import SyncStorage
from ..utils.sanitization import sanitize_for_logging


class Persister:
    """Cursor bookkeeping and batch upserts for one account"""

    def __init__(self, storage: SyncStorage, account_id: str):
        self.storage = storage
        self.account_id = account_id
        self.logger = logging.getLogger(f"Persister.{account_id}")

    async def existing_ids(self, folder: str) -> Set[str]:
        return await asyncio.to_thread(self.storage.existing_message_ids, folder)

    async def load_cursor(self, folder: FolderStatus) -> SyncCursor:
        """
        Cursor for a freshly selected folder

        A missing cursor is created. A cursor recorded under a different
        UIDVALIDITY is reset, because its UIDs no longer identify anything.
        """
        cursor = await asyncio.to_thread(self.storage.get_cursor, folder.name)
        safe_folder = sanitize_for_logging(folder.name)

        if cursor is None:
            cursor = SyncCursor(folder=folder.name, uid_validity=folder.uid_validity)
            await asyncio.to_thread(self.storage.save_cursor, cursor)
            self.logger.debug(f"Created sync cursor for {safe_folder}")
            return cursor

        if (
            folder.uid_validity is not None
            and cursor.uid_validity is not None
            and cursor.uid_validity != folder.uid_validity
        ):
            self.logger.warning(
                f"UIDVALIDITY of {safe_folder} changed "
                f"({cursor.uid_validity} -> {folder.uid_validity}); resetting cursor"
            )
            cursor = cursor.reset_for(folder.uid_validity)
            await asyncio.to_thread(self.storage.save_cursor, cursor)
        elif cursor.uid_validity is None and folder.uid_validity is not None:
            cursor.uid_validity = folder.uid_validity

        return cursor

    async def persist_batch(
        self,
        folder: str,
        messages: List[MailMessage],
        cursor: SyncCursor,
        highest_uid: Optional[int],
    ) -> Tuple[UpsertReport, SyncCursor]:
        """
        Upsert ``messages`` and advance the cursor to ``highest_uid`` in one write

        Returns:
            The storage report and the cursor as it now stands

        Raises:
            PersistenceError: Nothing was written and the cursor did not move
        """
        advanced = cursor
        if highest_uid is not None:
            advanced = cursor.advanced_to(highest_uid, utcnow())

        report = await asyncio.to_thread(
            self.storage.commit_batch, folder, messages, advanced
        )

        for reason in report.rejected:
            self.logger.error(f"Storage rejected message: {sanitize_for_logging(reason)}")
        self.logger.debug(
            f"Batch stored for {sanitize_for_logging(folder)}: {report.inserted} new, "
            f"{report.updated} updated, cursor at UID {advanced.highest_uid}",
            extra={"extra_fields": {
                "account_id": self.account_id,
                "folder": folder,
                "highest_uid": advanced.highest_uid,
            }},
        )
        return report, advanced
