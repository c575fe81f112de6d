"""
Batch Fetcher Module
Downloads discovered messages in small throttled batches and hands them to storage

Per-message problems (unparseable bytes, rejected rows, oversized messages)
are recorded on the folder's progress and the batch carries on. Anything
that breaks the session (socket errors, the per-batch timeout) aborts the
remaining batches and propagates as SyncConnectionError so the
orchestrator can reconnect and retry the folder.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional

from .attachment_store import AttachmentStore, StoredAttachments
from .content_classifier import classify
from .email_parser import MessageParser
from .exceptions import BatchTimeoutError, ParseError
from .models import (
    FetchedMessage,
    FolderProgress,
    FolderStatus,
    MailMessage,
    ParsedMessage,
    SyncCursor,
)
from .persister import Persister
from ..utils.metrics import SyncMetrics
from ..utils.sanitization import sanitize_for_logging


def split_batches(uids: List[int], batch_size: int) -> List[List[int]]:
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")
    return [uids[i:i + batch_size] for i in range(0, len(uids), batch_size)]


class BatchFetcher:
    """
    Fetch, parse, store: one batch at a time

    MAINTENANCE WISDOM: The cursor moves only inside Persister.persist_batch,
    together with the rows of the batch it covers. If anything here raises
    before that call, the next attempt rediscovers the same UIDs.
    """

    def __init__(
        self,
        connection: Any,
        parser: MessageParser,
        attachment_store: AttachmentStore,
        persister: Persister,
        account_id: str,
        batch_size: int = 5,
        batch_delay: float = 1.0,
        batch_timeout: float = 60.0,
        max_email_size: Optional[int] = None,
        metrics: Optional[SyncMetrics] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.connection = connection
        self.parser = parser
        self.attachment_store = attachment_store
        self.persister = persister
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self.batch_timeout = batch_timeout
        self.max_email_size = max_email_size
        self.metrics = metrics or SyncMetrics()
        self._sleep = sleep or asyncio.sleep
        self.logger = logging.getLogger(f"BatchFetcher.{account_id}")

    async def fetch_folder(
        self,
        folder: FolderStatus,
        uids: List[int],
        cursor: SyncCursor,
        progress: FolderProgress,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> SyncCursor:
        """
        Process every discovered UID of the selected folder

        Returns:
            The cursor after the last committed batch

        Raises:
            SyncConnectionError: Session failure or batch timeout
            PersistenceError: Storage failed; later batches were not attempted
        """
        safe_folder = sanitize_for_logging(folder.name)
        batches = split_batches(uids, self.batch_size)

        for index, batch in enumerate(batches, start=1):
            if should_stop is not None and should_stop():
                self.logger.info(f"Stop requested, leaving {safe_folder} after batch {index - 1}")
                break

            if index > 1 and self.batch_delay > 0:
                await self._sleep(self.batch_delay)

            self.logger.info(
                f"Processing batch {index}/{len(batches)} of {safe_folder} ({len(batch)} messages)"
            )
            try:
                cursor = await asyncio.wait_for(
                    self._process_batch(folder, batch, cursor, progress),
                    timeout=self.batch_timeout,
                )
            except asyncio.TimeoutError as e:
                self.connection.mark_broken()
                raise BatchTimeoutError(
                    f"Batch {index} of {safe_folder} timed out after {self.batch_timeout}s"
                ) from e

        return cursor

    async def _process_batch(
        self,
        folder: FolderStatus,
        batch: List[int],
        cursor: SyncCursor,
        progress: FolderProgress,
    ) -> SyncCursor:
        to_fetch = await self._drop_oversized(batch)
        fetched = await self.connection.fetch_messages(to_fetch)

        messages: List[MailMessage] = []
        for item in fetched:
            message = await self._build_message(folder, item, progress)
            if message is not None:
                messages.append(message)

        report, cursor = await self.persister.persist_batch(
            folder.name, messages, cursor, max(batch)
        )

        for reason in report.rejected:
            progress.errors.append(
                f"Failed to store message in {folder.name}: {sanitize_for_logging(reason)}"
            )
            self.metrics.record_error("persistence")

        progress.new_messages += report.inserted
        progress.batches_completed += 1
        self.metrics.record_messages_synced(report.inserted)
        return cursor

    async def _drop_oversized(self, batch: List[int]) -> List[int]:
        """Skip messages above the size ceiling before downloading them"""
        if not self.max_email_size:
            return batch

        sizes = await self.connection.fetch_sizes(batch)
        kept = []
        for uid in batch:
            size = sizes.get(uid, 0)
            if size > self.max_email_size:
                self.logger.warning(
                    f"Skipping message UID {uid}: {size} bytes exceeds "
                    f"limit of {self.max_email_size} bytes"
                )
                self.metrics.record_message_skipped()
                continue
            kept.append(uid)
        return kept

    async def _build_message(
        self, folder: FolderStatus, item: FetchedMessage, progress: FolderProgress
    ) -> Optional[MailMessage]:
        try:
            parsed = self.parser.parse(item.raw, item.uid, folder.name, folder.uid_validity)
        except ParseError as e:
            self.logger.error(f"Skipping message UID {item.uid} in {sanitize_for_logging(folder.name)}: {e}")
            progress.errors.append(f"Failed to parse message UID {item.uid} in {folder.name}: {e}")
            self.metrics.record_error("parse")
            return None

        classification = classify(parsed)
        stored = StoredAttachments()
        if classification.has_attachments:
            stored = await self.attachment_store.save(parsed.message_id, parsed.attachments)
            if stored.warnings:
                self.metrics.record_attachment_skipped(len(stored.warnings))

        return self._to_mail_message(folder.name, item, parsed, classification.content_type, stored)

    @staticmethod
    def _to_mail_message(
        folder: str,
        item: FetchedMessage,
        parsed: ParsedMessage,
        content_type: Any,
        stored: StoredAttachments,
    ) -> MailMessage:
        return MailMessage(
            message_id=parsed.message_id,
            folder=folder,
            uid=item.uid,
            subject=parsed.subject,
            from_address=parsed.from_address,
            from_name=parsed.from_name,
            to_addresses=parsed.to_addresses,
            cc_addresses=parsed.cc_addresses,
            bcc_addresses=parsed.bcc_addresses,
            body_text=parsed.body_text,
            body_html=parsed.body_html,
            content_type=content_type,
            date=parsed.date,
            flags=item.flags,
            size=item.size,
            has_attachments=bool(stored.attachments),
            attachments_path=stored.path,
            attachments=stored.attachments,
        )
