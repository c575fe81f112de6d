"""
Attachment Store Module
Writes attachment payloads to ``{root}/{account}/{message}/{filename}``

SECURITY STORY: Filenames come from untrusted MIME headers. Every name is
reduced to an allow-listed character set, the account and message
directories are derived from sanitized ids, and the final resolved path must
still sit inside the attachment root before anything is written.
"""

import asyncio
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Set

from .exceptions import AttachmentError
from .models import AttachmentMetadata, AttachmentPayload
from ..utils.sanitization import sanitize_for_logging
from ..utils.security_validators import sanitize_filename, sanitize_path_component


DEFAULT_MAX_ATTACHMENT_SIZE = 50 * 1024 * 1024


@dataclass
class StoredAttachments:
    """Outcome of saving one message's attachments"""
    path: Optional[str] = None
    attachments: List[AttachmentMetadata] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


class AttachmentStore:
    """Per-account attachment writer"""

    def __init__(
        self,
        root: str,
        account_id: str,
        max_attachment_size: int = DEFAULT_MAX_ATTACHMENT_SIZE,
    ):
        self.root = Path(root).resolve()
        self.account_id = account_id
        self.max_attachment_size = max_attachment_size
        self.logger = logging.getLogger(f"AttachmentStore.{account_id}")

    def message_dir(self, message_id: str) -> Path:
        return (
            self.root
            / sanitize_path_component(self.account_id)
            / sanitize_path_component(message_id)
        )

    async def save(
        self, message_id: str, attachments: List[AttachmentPayload]
    ) -> StoredAttachments:
        """
        Write every acceptable attachment of a message

        Oversized or unwritable attachments are skipped and reported in
        ``warnings``; the message itself is never failed here. ``path`` is
        None when nothing was written.
        """
        if not attachments:
            return StoredAttachments()
        return await asyncio.to_thread(self._save_all, message_id, attachments)

    def _save_all(
        self, message_id: str, attachments: List[AttachmentPayload]
    ) -> StoredAttachments:
        directory = self.message_dir(message_id)
        result = StoredAttachments()
        used_names: Set[str] = set()

        for attachment in attachments:
            try:
                metadata = self._save_one(directory, attachment, used_names)
            except AttachmentError as e:
                self.logger.warning(str(e))
                result.warnings.append(str(e))
                continue
            result.attachments.append(metadata)

        if result.attachments:
            result.path = str(directory)
        return result

    def _save_one(
        self, directory: Path, attachment: AttachmentPayload, used_names: Set[str]
    ) -> AttachmentMetadata:
        safe_original = sanitize_for_logging(attachment.filename)

        if attachment.size > self.max_attachment_size:
            raise AttachmentError(
                f"Skipping attachment {safe_original}: {attachment.size} bytes exceeds "
                f"limit of {self.max_attachment_size} bytes"
            )

        saved_name = self._unique_name(sanitize_filename(attachment.filename), used_names)
        target = (directory / saved_name).resolve()
        if not target.is_relative_to(self.root):
            raise AttachmentError(f"Refusing to write {safe_original} outside attachment root")

        try:
            directory.mkdir(parents=True, exist_ok=True)
            with open(target, "wb") as handle:
                handle.write(attachment.data)
        except OSError as e:
            raise AttachmentError(f"Could not write attachment {safe_original}: {e}") from e

        used_names.add(saved_name)
        self.logger.debug(f"Saved attachment {saved_name} ({attachment.size} bytes)")
        return AttachmentMetadata(
            original_name=attachment.filename,
            saved_name=saved_name,
            size=attachment.size,
            content_type=attachment.content_type,
        )

    @staticmethod
    def _unique_name(name: str, used_names: Set[str]) -> str:
        if name not in used_names:
            return name
        stem, ext = os.path.splitext(name)
        counter = 1
        while f"{stem}_{counter}{ext}" in used_names:
            counter += 1
        return f"{stem}_{counter}{ext}"
