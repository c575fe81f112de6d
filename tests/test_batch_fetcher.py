"""
Tests for BatchFetcher

The pipeline runs against FakeIMAP and InMemoryStorage, so each test sees
exactly which rows and which cursor value reached storage.
"""

import asyncio
import tempfile
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

from fake_imap import FakeFolder, FakeIMAP, make_account, make_message

from mailvault.modules.attachment_store import AttachmentStore
from mailvault.modules.batch_fetcher import BatchFetcher, split_batches
from mailvault.modules.email_parser import MessageParser
from mailvault.modules.exceptions import BatchTimeoutError, PersistenceError
from mailvault.modules.imap_connection import ConnectionManager
from mailvault.modules.models import ContentType, FolderProgress, FolderStatus, SyncCursor
from mailvault.modules.persister import Persister
from mailvault.modules.storage import InMemoryStorage
from mailvault.utils.metrics import SyncMetrics


class TestSplitBatches(unittest.TestCase):

    def test_split(self):
        self.assertEqual(split_batches([1, 2, 3, 4, 5, 6, 7], 3), [[1, 2, 3], [4, 5, 6], [7]])

    def test_empty(self):
        self.assertEqual(split_batches([], 5), [])

    def test_invalid_size(self):
        with self.assertRaises(ValueError):
            split_batches([1], 0)


class TestBatchFetcher(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)

        self.inbox = FakeFolder(uid_validity=3)
        self.fake = FakeIMAP({"INBOX": self.inbox})
        self.connection = ConnectionManager(
            make_account(), session_factory=lambda a: self.fake, sleep=AsyncMock()
        )
        await self.connection.connect()

        self.storage = InMemoryStorage()
        self.persister = Persister(self.storage, "work")
        self.metrics = SyncMetrics()
        self.sleep = AsyncMock()
        self.attachments = AttachmentStore(self.tmp.name, "work")

    async def asyncTearDown(self):
        await self.connection.disconnect()

    def _fetcher(self, **kwargs):
        kwargs.setdefault("batch_size", 5)
        return BatchFetcher(
            connection=self.connection,
            parser=MessageParser("work"),
            attachment_store=self.attachments,
            persister=self.persister,
            account_id="work",
            metrics=self.metrics,
            sleep=self.sleep,
            **kwargs,
        )

    async def _run(self, fetcher, uids, cursor=None, should_stop=None):
        status = await self.connection.select_folder("INBOX")
        cursor = cursor or await self.persister.load_cursor(status)
        progress = FolderProgress("INBOX")
        cursor = await fetcher.fetch_folder(status, uids, cursor, progress, should_stop)
        return cursor, progress

    async def test_unparseable_message_is_recorded_and_skipped(self):
        for uid in range(1, 11):
            self.inbox.add(uid, b"" if uid == 5 else make_message(f"<m{uid}@x>"))

        cursor, progress = await self._run(self._fetcher(), list(range(1, 11)))

        self.assertEqual(self.storage.count_messages("INBOX"), 9)
        self.assertEqual(progress.new_messages, 9)
        self.assertEqual(len(progress.errors), 1)
        self.assertIn("UID 5", progress.errors[0])
        self.assertEqual(cursor.highest_uid, 10)
        self.assertEqual(self.storage.get_cursor("INBOX").highest_uid, 10)
        self.assertEqual(progress.batches_completed, 2)
        self.sleep.assert_awaited_once_with(1.0)

    async def test_stored_fields(self):
        self.inbox.add(101, make_message(
            "<abc@x>",
            html="<p>Hi</p>",
            attachments=[("report.pdf", b"%PDF-1.4", "application", "pdf")],
        ))

        await self._run(self._fetcher(), [101])

        stored = self.storage.get_message("<abc@x>")
        self.assertEqual(stored.folder, "INBOX")
        self.assertEqual(stored.uid, 101)
        self.assertEqual(stored.content_type, ContentType.HTML)
        self.assertEqual(stored.flags, ["\\Seen"])
        self.assertTrue(stored.has_attachments)
        self.assertEqual(stored.attachments[0].saved_name, "report.pdf")
        self.assertTrue((Path(stored.attachments_path) / "report.pdf").is_file())

    async def test_oversized_message_is_skipped_before_download(self):
        self.inbox.add(1, make_message("<small@x>"))
        self.inbox.add(2, make_message("<big@x>", body="y" * 20000))

        cursor, progress = await self._run(self._fetcher(max_email_size=5000), [1, 2])

        self.assertIsNotNone(self.storage.get_message("<small@x>"))
        self.assertIsNone(self.storage.get_message("<big@x>"))
        self.assertEqual(self.metrics.messages_skipped, 1)
        self.assertEqual(cursor.highest_uid, 2)
        fetched = [c for c in self.fake.commands if c[0] == "FETCH" and "BODY.PEEK[]" in c[2]]
        self.assertEqual(fetched[0][1], "1")

    async def test_persistence_failure_stops_remaining_batches(self):
        for uid in range(1, 7):
            self.inbox.add(uid, make_message(f"<m{uid}@x>"))
        fetcher = self._fetcher(batch_size=3)

        with patch.object(self.storage, "commit_batch", side_effect=PersistenceError("disk full")):
            with self.assertRaises(PersistenceError):
                await self._run(fetcher, list(range(1, 7)))

        bodies = [c for c in self.fake.commands if c[0] == "FETCH" and "BODY.PEEK[]" in c[2]]
        self.assertEqual(len(bodies), 1)
        self.assertEqual(self.storage.get_cursor("INBOX").highest_uid, 0)

    async def test_stop_request_is_honoured_between_batches(self):
        for uid in range(1, 7):
            self.inbox.add(uid, make_message(f"<m{uid}@x>"))
        progress_checks = []

        def should_stop():
            progress_checks.append(True)
            return len(progress_checks) > 1

        cursor, progress = await self._run(self._fetcher(batch_size=3), list(range(1, 7)), should_stop=should_stop)

        self.assertEqual(progress.new_messages, 3)
        self.assertEqual(cursor.highest_uid, 3)

    async def test_rejected_row_is_recorded(self):
        self.inbox.add(1, make_message("<m1@x>"))

        with patch("mailvault.modules.batch_fetcher.MailMessage") as mail_message:
            mail_message.side_effect = lambda **kw: MagicMock(message_id="", folder="INBOX")
            cursor, progress = await self._run(self._fetcher(), [1])

        self.assertEqual(progress.new_messages, 0)
        self.assertEqual(len(progress.errors), 1)
        self.assertIn("Failed to store message", progress.errors[0])
        self.assertEqual(cursor.highest_uid, 1)


class TestBatchTimeout(unittest.IsolatedAsyncioTestCase):

    async def test_hung_batch_times_out_and_breaks_session(self):
        async def hang(uids):
            await asyncio.sleep(5)

        connection = MagicMock()
        connection.fetch_messages = hang
        storage = InMemoryStorage()
        fetcher = BatchFetcher(
            connection=connection,
            parser=MessageParser("work"),
            attachment_store=MagicMock(),
            persister=Persister(storage, "work"),
            account_id="work",
            batch_timeout=0.05,
        )
        cursor = SyncCursor("INBOX", uid_validity=1, highest_uid=10)

        with self.assertRaises(BatchTimeoutError):
            await fetcher.fetch_folder(
                FolderStatus("INBOX", exists=2, uid_validity=1), [11, 12], cursor, FolderProgress("INBOX")
            )

        connection.mark_broken.assert_called_once()
        self.assertIsNone(storage.get_cursor("INBOX"))


if __name__ == "__main__":
    unittest.main()
