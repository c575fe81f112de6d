"""
Email Parser Module
Turns raw RFC 5322 bytes fetched over IMAP into ParsedMessage objects

PATTERN RECOGNITION: This follows the Parser pattern - unstructured bytes in,
a structured object out, with no I/O of its own. The fetch layer hands over
bytes and gets back either a ParsedMessage or a ParseError.

SECURITY STORY: Message bytes are untrusted. MIME part counts, subject
length and body size are bounded here, and every header is decoded with
replacement rather than strict error handling.
"""

import email
import logging
import re
from datetime import datetime, timezone
from email.header import decode_header, make_header
from email.message import Message
from email.utils import getaddresses, parseaddr, parsedate_to_datetime
from typing import List, Optional, Tuple

from .exceptions import ParseError
from .models import AttachmentPayload, ParsedMessage, utcnow
from ..utils.sanitization import sanitize_for_logging
from ..utils.security_validators import (
    MAX_MIME_PARTS,
    MAX_SUBJECT_LENGTH,
    validate_subject_length,
)


logger = logging.getLogger(__name__)

MESSAGE_ID_PATTERN = re.compile(r"<[^<>\s]+>")
FALLBACK_DOMAIN = "mailvault.local"


def normalize_message_id(value: Optional[str]) -> Optional[str]:
    """
    Canonical form of a Message-ID header: one ``<local@domain>`` token

    Example:
        >>> normalize_message_id('  <abc@x>  (comment)')
        '<abc@x>'
        >>> normalize_message_id('abc@x')
        '<abc@x>'
    """
    if not value:
        return None

    text = " ".join(str(value).split())
    match = MESSAGE_ID_PATTERN.search(text)
    if match:
        return match.group(0)

    token = text.strip("<> ")
    if not token:
        return None
    return f"<{token.split()[0]}>"


def fallback_message_id(uid_validity: Optional[int], uid: int, folder: str) -> str:
    """
    Deterministic id for messages without a Message-ID header

    Re-fetching the same UID in the same folder generation yields the same id,
    so the storage upsert still deduplicates.
    """
    folder_token = re.sub(r"[\s<>@]+", "_", folder) or "folder"
    return f"<{uid_validity or 0}.{uid}.{folder_token}@{FALLBACK_DOMAIN}>"


class MessageParser:
    """
    Parses fetched message bytes into ParsedMessage objects

    MAINTENANCE WISDOM: Keep parsing separate from I/O. Tests parse literal
    byte strings without any IMAP server.
    """

    def __init__(self, account_id: str, max_body_size: int = 1024 * 1024):
        """
        Args:
            account_id: Used for the logger name only
            max_body_size: Maximum characters kept for each of text and HTML body
        """
        self.max_body_size = max_body_size
        self.logger = logging.getLogger(f"MessageParser.{account_id}")

    def parse(
        self,
        raw: bytes,
        uid: int,
        folder: str,
        uid_validity: Optional[int] = None,
    ) -> ParsedMessage:
        """
        Parse one message

        Raises:
            ParseError: If the bytes cannot be turned into a message
        """
        if not raw or not raw.strip():
            raise ParseError(f"Message UID {uid} is empty", handle=uid)

        try:
            msg = email.message_from_bytes(raw)
            if not msg.keys() and not msg.get_payload():
                raise ParseError(f"Message UID {uid} has no headers or body", handle=uid)

            message_id = normalize_message_id(msg.get("Message-ID"))
            if message_id is None:
                message_id = fallback_message_id(uid_validity, uid, folder)
                self.logger.debug(
                    f"UID {uid} in {sanitize_for_logging(folder)} has no Message-ID, "
                    f"using {message_id}"
                )

            from_name, from_address = parseaddr(self._decode_header_value(msg.get("From", "")))
            body_text, body_html, attachments = self._extract_content(msg, uid)

            return ParsedMessage(
                message_id=message_id,
                subject=self._extract_subject(msg, uid),
                from_address=from_address,
                from_name=from_name,
                to_addresses=self._extract_addresses(msg, "To"),
                cc_addresses=self._extract_addresses(msg, "Cc"),
                bcc_addresses=self._extract_addresses(msg, "Bcc"),
                body_text=body_text,
                body_html=body_html,
                date=self._extract_date(msg),
                attachments=attachments,
            )
        except ParseError:
            raise
        except Exception as e:
            raise ParseError(
                f"Could not parse message UID {uid}: {sanitize_for_logging(str(e))}",
                handle=uid,
            ) from e

    def _extract_subject(self, msg: Message, uid: int) -> str:
        subject = self._decode_header_value(msg.get("Subject", ""))
        if len(subject) > MAX_SUBJECT_LENGTH:
            self.logger.warning(f"Subject truncated for message UID {uid}")
        return validate_subject_length(subject)

    @staticmethod
    def _extract_date(msg: Message) -> datetime:
        """Date header as an aware datetime, current time when unusable"""
        date_str = msg.get("Date", "")
        try:
            parsed = parsedate_to_datetime(date_str)
        except (TypeError, ValueError, IndexError):
            return utcnow()
        if parsed is None:
            return utcnow()
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    @classmethod
    def _extract_addresses(cls, msg: Message, header: str) -> List[str]:
        values = [cls._decode_header_value(v) for v in msg.get_all(header, [])]
        return [address for _, address in getaddresses(values) if address]

    def _extract_content(
        self, msg: Message, uid: int
    ) -> Tuple[str, str, List[AttachmentPayload]]:
        """
        Body text, body HTML and attachments

        SECURITY STORY: Parts beyond MAX_MIME_PARTS are ignored so a MIME bomb
        cannot make a single message consume unbounded time.
        """
        text_parts: List[str] = []
        html_parts: List[str] = []
        attachments: List[AttachmentPayload] = []

        for index, part in enumerate(msg.walk(), start=1):
            if index > MAX_MIME_PARTS:
                self.logger.warning(
                    f"Message UID {uid} exceeds max MIME parts ({MAX_MIME_PARTS}). "
                    f"Ignoring remaining parts."
                )
                break

            if part.is_multipart():
                continue

            content_type = part.get_content_type()
            disposition = str(part.get("Content-Disposition", "")).lower()
            filename = self._decode_header_value(part.get_filename() or "")

            if "attachment" in disposition or (filename and not content_type.startswith("text/")):
                payload = part.get_payload(decode=True) or b""
                attachments.append(AttachmentPayload(
                    filename=filename or "unnamed_attachment",
                    content_type=content_type,
                    data=payload,
                ))
            elif content_type == "text/plain":
                text_parts.append(self._decode_part_payload(part))
            elif content_type == "text/html":
                html_parts.append(self._decode_part_payload(part))

        body_text = self._truncate("".join(text_parts), "Body text", uid)
        body_html = self._truncate("".join(html_parts), "Body HTML", uid)
        return body_text, body_html, attachments

    def _truncate(self, body: str, body_type: str, uid: int) -> str:
        if len(body) <= self.max_body_size:
            return body
        self.logger.warning(
            f"{body_type} truncated to {self.max_body_size} chars for message UID {uid}"
        )
        return body[:self.max_body_size]

    @staticmethod
    def _decode_header_value(value: str) -> str:
        """Decode an RFC 2047 header, falling back to the raw value"""
        if not value:
            return ""
        try:
            return str(make_header(decode_header(str(value))))
        except (LookupError, UnicodeError, ValueError):
            return str(value)

    @staticmethod
    def _decode_part_payload(part: Message) -> str:
        payload = part.get_payload(decode=True)
        if not payload:
            return ""
        return MessageParser._decode_bytes(payload, part.get_content_charset())

    @staticmethod
    def _decode_bytes(data: bytes, charset: Optional[str]) -> str:
        """
        Decode with replacement so malformed bodies still yield text

        Unknown charsets fall back to UTF-8.
        """
        try:
            return data.decode(charset or "utf-8", errors="replace")
        except LookupError:
            return data.decode("utf-8", errors="replace")
