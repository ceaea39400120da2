"""Conflict packaging and resolution for notes edited on both sides.

Nothing here runs in the background and nothing is merged: the resolver
packages the local and external versions side by side and applies the
caller's choice.
"""

import logging
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from kol_noter_store.models.schema import (
    ChangeType,
    ExternalChangeEvent,
    ItemType,
    Note,
)
from kol_noter_store.storage.vault_adapter import VaultAdapter

logger = logging.getLogger(__name__)


class ConflictResolution(str, Enum):
    KEEP_LOCAL = "keep-local"
    KEEP_EXTERNAL = "keep-external"
    KEEP_BOTH = "keep-both"


class ConflictData(BaseModel):
    """Both versions of a conflicted note."""

    note_id: str
    path: str = Field(..., description="Vault-relative path of the note file")
    title: str
    local_content: str
    local_timestamp: int
    external_content: str
    external_timestamp: int

    @property
    def newer(self) -> str:
        """``"local"`` or ``"external"``; ties count as external."""
        return "local" if self.local_timestamp > self.external_timestamp else "external"


class ResolutionOutcome(BaseModel):
    resolution: ConflictResolution
    note: Note
    backup_path: Optional[str] = None


class ConflictResolver:
    """Detects and resolves note conflicts against a vault adapter."""

    def __init__(self, adapter: VaultAdapter):
        self.adapter = adapter

    def detect(
        self, event: ExternalChangeEvent, local_note: Optional[Note], last_synced_at: int
    ) -> Optional[ConflictData]:
        """Package a conflict if ``event`` touched a note that is also dirty locally.

        Args:
            event: Watcher event for the note file
            local_note: In-memory copy, if the consumer holds one
            last_synced_at: Time of the last known-good sync of that note

        Returns:
            None when the event is not a note update, the local copy has no
            edits since ``last_synced_at``, or both versions hold the same content.
        """
        if event.item_type != ItemType.NOTE or event.type != ChangeType.UPDATED:
            return None
        if local_note is None or local_note.updated_at <= last_synced_at:
            return None

        external_text = self.adapter.read_file(event.path)
        external_note = self.adapter.read_note_file(event.path)
        if external_note.title == local_note.title and external_note.content == local_note.content:
            logger.debug(f"No conflict for {event.path}: contents are equal")
            return None

        local_text, _ = self.adapter.serializer.render_note(local_note)
        conflict = ConflictData(
            note_id=local_note.id,
            path=event.path,
            title=local_note.title,
            local_content=local_text,
            local_timestamp=local_note.updated_at,
            external_content=external_text,
            external_timestamp=event.timestamp,
        )
        logger.info(f"Conflict detected for {event.path} ({conflict.newer} is newer)")
        return conflict

    def resolve(
        self, conflict: ConflictData, resolution: ConflictResolution, local_note: Note
    ) -> ResolutionOutcome:
        """Apply the caller's choice.

        keep-local overwrites the external file, keep-external reloads it
        and drops the local edit, keep-both backs up the external version
        under ``.kol-noter/conflicts/`` before writing the local one.
        """
        resolution = ConflictResolution(resolution)
        backup_path = None

        if resolution == ConflictResolution.KEEP_EXTERNAL:
            note = self.adapter.read_note_file(conflict.path)
        else:
            if resolution == ConflictResolution.KEEP_BOTH:
                backup_path = self.adapter.write_backup(
                    conflict.path, conflict.external_content, conflict.external_timestamp
                )
            note = self.adapter.save_note(local_note)

        logger.info(f"Resolved conflict for {conflict.path}: {resolution.value}")
        return ResolutionOutcome(resolution=resolution, note=note, backup_path=backup_path)
