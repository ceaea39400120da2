"""Storage adapter interface shared by the embedded store and the vault."""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, List, Union

from kol_noter_store.models.schema import (
    ExternalChangeEvent,
    Note,
    Project,
    System,
    TrashEntry,
)

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[ExternalChangeEvent], None]
Unsubscribe = Callable[[], None]
AttachmentPayload = Union[bytes, str]


@dataclass
class VaultSnapshot:
    """Full snapshot returned by ``load_all``."""

    systems: List[System] = field(default_factory=list)
    notes: List[Note] = field(default_factory=list)
    trash: List[TrashEntry] = field(default_factory=list)


class ChangeListeners:
    """Subscription list for external change callbacks.

    Delivery is synchronous. A failing callback is logged and never stops
    delivery to the remaining subscribers.
    """

    def __init__(self):
        self._callbacks: List[ChangeCallback] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: ChangeCallback) -> Unsubscribe:
        with self._lock:
            self._callbacks.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return unsubscribe

    def emit(self, event: ExternalChangeEvent) -> None:
        with self._lock:
            callbacks = list(self._callbacks)
        for callback in callbacks:
            try:
                callback(event)
            except Exception:
                logger.exception(f"Change listener failed for {event.kind} {event.path}")

    def clear(self) -> None:
        with self._lock:
            self._callbacks.clear()

    def __len__(self) -> int:
        return len(self._callbacks)


class StorageAdapter(ABC):
    """Polymorphic persistence contract.

    All ``save_*`` calls are upserts: the same id overwrites, repeated calls
    with identical data never duplicate anything.
    """

    #: True for the filesystem vault, False for the embedded store
    is_vault: bool = False

    @abstractmethod
    def load_all(self) -> VaultSnapshot:
        """Read every system, note and trash entry.

        Raises:
            KolNoterError: A read error for any single entity aborts the
                whole snapshot.
        """

    @abstractmethod
    def save_system(self, system: System) -> None:
        """Upsert a system (its ``projects`` list is not written here)."""

    @abstractmethod
    def save_project(self, system_id: str, project: Project) -> None:
        """Upsert a project under an existing system."""

    @abstractmethod
    def save_note(self, note: Note) -> Note:
        """Upsert a note.

        Returns:
            The note as it now reads back from storage, which is what
            any index must be fed.
        """

    @abstractmethod
    def load_note(self, note_id: str) -> Note:
        """Read one note back from storage.

        Raises:
            EntityNotFoundError: No note with that id is stored.
        """

    @abstractmethod
    def delete_system(self, system_id: str) -> None:
        """Remove a system with its projects and notes."""

    @abstractmethod
    def delete_project(self, project_id: str) -> None:
        """Remove a project with its notes."""

    @abstractmethod
    def delete_note(self, note_id: str) -> TrashEntry:
        """Soft-delete a note into the trash and return the trash entry."""

    @abstractmethod
    def restore_note(self, note_id: str) -> Note:
        """Move a trashed note back into its project."""

    @abstractmethod
    def permanently_delete_note(self, note_id: str) -> None:
        """Purge one trash entry."""

    @abstractmethod
    def empty_trash(self) -> None:
        """Purge every trash entry."""

    @abstractmethod
    def save_trash_entry(self, entry: TrashEntry) -> None:
        """Write a trash entry as-is (used when migrating between adapters)."""

    @abstractmethod
    def save_attachment(self, owner_id: str, filename: str, payload: AttachmentPayload) -> str:
        """Store an attachment for a note.

        Args:
            owner_id: Id of the owning note
            filename: Target filename
            payload: Raw bytes, an inline data URL, or plain text

        Returns:
            The stored reference path.
        """

    @abstractmethod
    def get_attachment(self, owner_id: str, filename: str) -> str:
        """Return the attachment as an inline data URL."""

    @abstractmethod
    def delete_attachment(self, owner_id: str, filename: str) -> None:
        """Remove an attachment."""

    @abstractmethod
    def clear(self) -> None:
        """Remove every entity. Only migration cleanup calls this."""

    def on_external_change(self, callback: ChangeCallback) -> Unsubscribe:
        """Subscribe to external change events. The embedded store never fires."""
        return lambda: None

    def notify_change(self, event: ExternalChangeEvent) -> None:
        """Deliver an external change event to subscribers."""

    def close(self) -> None:
        """Release resources held by the adapter."""
