"""
Unit tests for mailvault/modules/email_parser.py

SECURITY STORY: The parser is the boundary between raw, untrusted message
bytes and storage. These tests check the defences it owns:

  1. MIME bomb prevention   - stop walking after MAX_MIME_PARTS parts
  2. Header size limits     - truncate oversized subjects
  3. Encoding fallbacks     - unknown charsets never raise
  4. Identity               - every message gets a stable Message-ID
"""

import unittest
from datetime import timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from unittest.mock import MagicMock

from fake_imap import make_message

from mailvault.modules.email_parser import (
    MessageParser,
    fallback_message_id,
    normalize_message_id,
)
from mailvault.modules.exceptions import ParseError
from mailvault.utils.security_validators import MAX_MIME_PARTS, MAX_SUBJECT_LENGTH


def _make_parser(**kwargs) -> MessageParser:
    parser = MessageParser("work", **kwargs)
    # Silence warning noise during tests
    parser.logger = MagicMock()
    return parser


class TestMessageIdNormalization(unittest.TestCase):

    def test_angle_brackets_are_kept(self):
        self.assertEqual(normalize_message_id("<abc@x>"), "<abc@x>")

    def test_whitespace_and_comments_are_dropped(self):
        self.assertEqual(normalize_message_id("  <abc@x>  (comment)"), "<abc@x>")

    def test_bare_id_gets_brackets(self):
        self.assertEqual(normalize_message_id("abc@x"), "<abc@x>")

    def test_folded_header_is_unfolded(self):
        self.assertEqual(normalize_message_id("\r\n <abc@x>"), "<abc@x>")

    def test_empty_values(self):
        self.assertIsNone(normalize_message_id(None))
        self.assertIsNone(normalize_message_id(""))
        self.assertIsNone(normalize_message_id("<>"))

    def test_fallback_id_is_deterministic(self):
        first = fallback_message_id(7, 12, "INBOX")
        second = fallback_message_id(7, 12, "INBOX")

        self.assertEqual(first, second)
        self.assertEqual(first, "<7.12.INBOX@mailvault.local>")

    def test_fallback_id_differs_per_folder_and_generation(self):
        self.assertNotEqual(fallback_message_id(7, 12, "INBOX"), fallback_message_id(7, 12, "Sent"))
        self.assertNotEqual(fallback_message_id(7, 12, "INBOX"), fallback_message_id(8, 12, "INBOX"))

    def test_fallback_id_without_uid_validity(self):
        self.assertEqual(
            fallback_message_id(None, 3, "Sent Items"),
            "<0.3.Sent_Items@mailvault.local>",
        )


class TestParse(unittest.TestCase):

    def setUp(self):
        self.parser = _make_parser()

    def test_plain_message(self):
        raw = make_message("<abc@x>", subject="Quarterly report", body="See attached numbers")

        parsed = self.parser.parse(raw, uid=101, folder="INBOX", uid_validity=1)

        self.assertEqual(parsed.message_id, "<abc@x>")
        self.assertEqual(parsed.subject, "Quarterly report")
        self.assertEqual(parsed.from_address, "alice@example.com")
        self.assertEqual(parsed.from_name, "Alice Example")
        self.assertEqual(parsed.to_addresses, ["bob@example.com"])
        self.assertIn("See attached numbers", parsed.body_text)
        self.assertEqual(parsed.body_html, "")
        self.assertEqual(parsed.attachments, [])

    def test_date_is_timezone_aware(self):
        parsed = self.parser.parse(make_message(), uid=1, folder="INBOX")

        self.assertIsNotNone(parsed.date.tzinfo)
        self.assertEqual(parsed.date.astimezone(timezone.utc).year, 2025)

    def test_unparseable_date_falls_back_to_now(self):
        raw = make_message(date="not a date")

        parsed = self.parser.parse(raw, uid=1, folder="INBOX")

        self.assertIsNotNone(parsed.date.tzinfo)

    def test_html_alternative(self):
        raw = make_message(html="<p>Hello <b>there</b></p>")

        parsed = self.parser.parse(raw, uid=1, folder="INBOX")

        self.assertIn("<b>there</b>", parsed.body_html)
        self.assertIn("Plain body", parsed.body_text)

    def test_attachments_are_collected(self):
        raw = make_message(attachments=[("report.pdf", b"%PDF-1.4 data", "application", "pdf")])

        parsed = self.parser.parse(raw, uid=1, folder="INBOX")

        self.assertEqual(len(parsed.attachments), 1)
        attachment = parsed.attachments[0]
        self.assertEqual(attachment.filename, "report.pdf")
        self.assertEqual(attachment.content_type, "application/pdf")
        self.assertEqual(attachment.data, b"%PDF-1.4 data")
        self.assertNotIn("PDF-1.4", parsed.body_text)

    def test_cc_and_bcc(self):
        msg = MIMEText("body")
        msg["From"] = "a@example.com"
        msg["To"] = "b@example.com, C Person <c@example.com>"
        msg["Cc"] = "d@example.com"
        msg["Bcc"] = "e@example.com"

        parsed = self.parser.parse(msg.as_bytes(), uid=1, folder="INBOX")

        self.assertEqual(parsed.to_addresses, ["b@example.com", "c@example.com"])
        self.assertEqual(parsed.cc_addresses, ["d@example.com"])
        self.assertEqual(parsed.bcc_addresses, ["e@example.com"])

    def test_encoded_subject_is_decoded(self):
        msg = MIMEText("body")
        msg["Subject"] = "=?utf-8?b?UmVwb3J0IOKAkyBRMw==?="

        parsed = self.parser.parse(msg.as_bytes(), uid=1, folder="INBOX")

        self.assertEqual(parsed.subject, "Report – Q3")

    def test_missing_message_id_uses_fallback(self):
        raw = make_message(message_id=None)

        parsed = self.parser.parse(raw, uid=9, folder="Archive", uid_validity=55)

        self.assertEqual(parsed.message_id, "<55.9.Archive@mailvault.local>")

    def test_empty_bytes_raise_parse_error(self):
        with self.assertRaises(ParseError) as ctx:
            self.parser.parse(b"", uid=5, folder="INBOX")

        self.assertEqual(ctx.exception.handle, 5)

    def test_whitespace_only_bytes_raise_parse_error(self):
        with self.assertRaises(ParseError):
            self.parser.parse(b"\r\n\r\n", uid=5, folder="INBOX")


class TestSecurityLimits(unittest.TestCase):

    def setUp(self):
        self.parser = _make_parser()

    def test_subject_is_truncated(self):
        msg = MIMEText("body")
        msg["Subject"] = "A" * (MAX_SUBJECT_LENGTH + 500)

        with self.assertNoLogs("mailvault.utils.security_validators", level="WARNING"):
            parsed = self.parser.parse(msg.as_bytes(), uid=1, folder="INBOX")

        self.assertEqual(len(parsed.subject), MAX_SUBJECT_LENGTH)
        self.parser.logger.warning.assert_called_once()

    def test_mime_parts_beyond_limit_are_ignored(self):
        msg = MIMEMultipart()
        msg["Subject"] = "Wide MIME bomb"
        for i in range(MAX_MIME_PARTS + 20):
            msg.attach(MIMEText(f"Part {i}\n", "plain"))

        parsed = self.parser.parse(msg.as_bytes(), uid=1, folder="INBOX")

        self.assertIn("Part 0", parsed.body_text)
        self.assertNotIn(f"Part {MAX_MIME_PARTS + 19}", parsed.body_text)
        warnings = " ".join(str(c) for c in self.parser.logger.warning.call_args_list)
        self.assertIn("max MIME parts", warnings)

    def test_deep_nesting_does_not_crash(self):
        wrapper = MIMEText("leaf content", "plain")
        for _ in range(MAX_MIME_PARTS + 10):
            outer = MIMEMultipart()
            outer.attach(wrapper)
            wrapper = outer
        wrapper["Subject"] = "Deep MIME bomb"

        parsed = self.parser.parse(wrapper.as_bytes(), uid=1, folder="INBOX")

        self.assertEqual(parsed.subject, "Deep MIME bomb")

    def test_body_is_truncated(self):
        parser = _make_parser(max_body_size=10)
        raw = make_message(body="x" * 100)

        parsed = parser.parse(raw, uid=1, folder="INBOX")

        self.assertEqual(len(parsed.body_text), 10)

    def test_unknown_charset_falls_back_to_utf8(self):
        raw = (
            b"From: a@example.com\r\n"
            b"Subject: charset\r\n"
            b"Content-Type: text/plain; charset=x-made-up\r\n"
            b"\r\n"
            b"caf\xc3\xa9\r\n"
        )

        parsed = self.parser.parse(raw, uid=1, folder="INBOX")

        self.assertIn("café", parsed.body_text)

    def test_invalid_bytes_are_replaced(self):
        raw = (
            b"From: a@example.com\r\n"
            b"Content-Type: text/plain; charset=utf-8\r\n"
            b"\r\n"
            b"ok \xff\xfe end\r\n"
        )

        parsed = self.parser.parse(raw, uid=1, folder="INBOX")

        self.assertIn("ok", parsed.body_text)
        self.assertIn("end", parsed.body_text)


if __name__ == "__main__":
    unittest.main()
