"""Attachment handling for notes.

In embedded mode attachments are inline data URLs kept in
``note.attachments``. In vault mode they are real files in the note's
assets directory and ``note.attachments`` holds note-relative paths.
"""

import datetime
import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Tuple

from kol_noter_store.exceptions import KolNoterError
from kol_noter_store.storage.base import AttachmentPayload, StorageAdapter
from kol_noter_store.utils import (
    encode_data_url,
    extension_for_mime_type,
    is_data_url,
    mime_type_for_filename,
    mime_type_from_data_url,
    sanitize_filename,
)

logger = logging.getLogger(__name__)

WIKI_IMAGE_PATTERN = re.compile(r"!\[\[([^\]]+)\]\]")
MARKDOWN_IMAGE_PATTERN = re.compile(r"!\[([^\]]*)\]\(([^)]+)\)")


def generate_filename(
    original_name: Optional[str] = None,
    extension: str = "png",
    now: Optional[datetime.datetime] = None,
) -> str:
    """Build a timestamp-prefixed attachment filename.

    Args:
        original_name: Name supplied by the user; sanitized and appended
            after the timestamp when given
        extension: Extension for generated names (no original name)
        now: Clock tick, defaults to the current local time

    Returns:
        ``YYYYMMDDHHMMSS-<sanitized name>`` or ``Pasted-image-YYYYMMDDHHMMSS.<ext>``
    """
    stamp = (now or datetime.datetime.now()).strftime("%Y%m%d%H%M%S")
    if original_name:
        return f"{stamp}-{sanitize_filename(original_name)}"
    return f"Pasted-image-{stamp}.{extension}"


def parse_wiki_images(content: str) -> List[str]:
    """Targets of ``![[target]]`` references, in order of appearance."""
    return WIKI_IMAGE_PATTERN.findall(content)


def parse_markdown_images(content: str) -> List[Tuple[str, str]]:
    """``(alt, path)`` pairs of ``![alt](path)`` references."""
    return MARKDOWN_IMAGE_PATTERN.findall(content)


@dataclass
class SaveAttachmentResult:
    """Outcome of one attachment write. ``error`` is set when ``success`` is False."""

    success: bool
    filename: str
    path: str
    error: Optional[str] = None


class AttachmentManager:
    """Saves, resolves and migrates note attachments on the active adapter.

    ``adapter`` may be an adapter or a zero-argument callable returning the
    active one, so the manager follows backend switches.
    """

    def __init__(self, adapter):
        self._adapter = adapter

    @property
    def adapter(self) -> StorageAdapter:
        return self._adapter() if callable(self._adapter) else self._adapter

    def save_attachment(
        self, owner_id: str, data: AttachmentPayload, filename: Optional[str] = None
    ) -> SaveAttachmentResult:
        """Store raw bytes or an inline data URL for a note.

        Never raises: every failure is reported in the returned result so bulk
        callers can collect per-item errors.
        """
        try:
            if isinstance(data, bytes):
                mime_type = mime_type_for_filename(filename) if filename else "application/octet-stream"
                payload = encode_data_url(data, mime_type)
            elif is_data_url(data):
                mime_type = mime_type_from_data_url(data)
                payload = data
            else:
                raise ValueError("Attachment payload must be bytes or a data URL")

            final_name = filename or generate_filename(extension=extension_for_mime_type(mime_type))
            path = self.adapter.save_attachment(owner_id, final_name, payload)
            logger.debug(f"Saved attachment {final_name} for {owner_id}")
            return SaveAttachmentResult(success=True, filename=final_name, path=path)
        except (KolNoterError, ValueError, OSError) as e:
            logger.warning(f"Failed to save attachment for {owner_id}: {e}")
            return SaveAttachmentResult(
                success=False, filename=filename or "unknown", path="", error=str(e)
            )

    def get_attachment(self, owner_id: str, filename: str) -> str:
        return self.adapter.get_attachment(owner_id, filename)

    def delete_attachment(self, owner_id: str, filename: str) -> None:
        self.adapter.delete_attachment(owner_id, filename)

    def resolve_attachment_url(
        self, owner_id: str, path: str, inline_map: Optional[Mapping[str, str]] = None
    ) -> str:
        """Turn a content reference into something renderable.

        Order: inline data URL from ``inline_map``, then the adapter lookup,
        then the unresolved ``path`` as a placeholder.
        """
        filename = path.rsplit("/", 1)[-1] or path
        if inline_map:
            inline = inline_map.get(filename)
            if inline and is_data_url(inline):
                return inline
        try:
            return self.get_attachment(owner_id, filename)
        except KolNoterError as e:
            logger.debug(f"Unresolved attachment {path} for {owner_id}: {e}")
            return path

    def migrate_attachments(self, owner_id: str, inline_map: Mapping[str, str]) -> Dict[str, str]:
        """Write every inline attachment of a note as a vault file.

        Returns:
            filename -> new reference. Entries that were already paths are
            kept, failed writes are left out. Pass-through on the embedded store.
        """
        if not self.adapter.is_vault:
            return dict(inline_map)

        migrated: Dict[str, str] = {}
        for filename, value in inline_map.items():
            if not is_data_url(value):
                migrated[filename] = value
                continue
            result = self.save_attachment(owner_id, value, filename)
            if result.success:
                migrated[filename] = result.path
        return migrated

    def resolve_images_in_content(
        self, content: str, owner_id: str, inline_map: Optional[Mapping[str, str]] = None
    ) -> str:
        """Return a copy of ``content`` with ``![[file]]`` rewritten to ``![](url)``."""
        resolved = content
        for target in parse_wiki_images(content):
            url = self.resolve_attachment_url(owner_id, target, inline_map)
            resolved = resolved.replace(f"![[{target}]]", f"![]({url})", 1)
        return resolved
