"""Embedded storage adapter backed by a process-wide key-value store.

Every collection is one JSON document under a fixed key, mirroring how the
application keeps its data before a vault is chosen. The store is volatile:
it lives exactly as long as the process (or the mapping passed in).
"""

import json
import logging
from typing import Any, Dict, List, MutableMapping, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from kol_noter_store.exceptions import EntityNotFoundError, SerializationError
from kol_noter_store.models.schema import Note, Project, System, TrashEntry
from kol_noter_store.storage.base import (
    AttachmentPayload,
    StorageAdapter,
    VaultSnapshot,
)
from kol_noter_store.utils import (
    encode_data_url,
    is_data_url,
    mime_type_for_filename,
    now_ms,
)

logger = logging.getLogger(__name__)

STORAGE_KEYS = {
    "systems": "kol-noter-systems",
    "notes": "kol-noter-notes",
    "trash": "kol-noter-trash",
}

# Shared by every EmbeddedAdapter created without an explicit store
_PROCESS_STORE: Dict[str, str] = {}

M = TypeVar("M", bound=BaseModel)


class EmbeddedAdapter(StorageAdapter):
    """Storage adapter over a ``MutableMapping[str, str]`` of JSON documents."""

    is_vault = False

    def __init__(self, store: Optional[MutableMapping[str, str]] = None):
        self._store = _PROCESS_STORE if store is None else store

    # ------------------------------------------------------------------
    # Raw collection access
    # ------------------------------------------------------------------

    def _read(self, key: str, model: Type[M]) -> List[M]:
        raw = self._store.get(STORAGE_KEYS[key])
        if raw is None:
            return []
        try:
            return [model.model_validate(item) for item in json.loads(raw)]
        except (json.JSONDecodeError, TypeError, ValidationError) as e:
            raise SerializationError(
                f"Embedded store key '{STORAGE_KEYS[key]}' is corrupted: {e}",
                path=STORAGE_KEYS[key],
                original_error=e,
            ) from e

    def _write(self, key: str, items: List[BaseModel]) -> None:
        self._store[STORAGE_KEYS[key]] = json.dumps(
            [item.model_dump(mode="json", by_alias=True) for item in items],
            ensure_ascii=False,
        )

    def _systems(self) -> List[System]:
        return self._read("systems", System)

    def _notes(self) -> List[Note]:
        return self._read("notes", Note)

    def _trash(self) -> List[TrashEntry]:
        return self._read("trash", TrashEntry)

    def _require_note(self, notes: List[Note], note_id: str) -> Note:
        for note in notes:
            if note.id == note_id:
                return note
        raise EntityNotFoundError("note", note_id)

    # ------------------------------------------------------------------
    # StorageAdapter
    # ------------------------------------------------------------------

    def load_all(self) -> VaultSnapshot:
        return VaultSnapshot(systems=self._systems(), notes=self._notes(), trash=self._trash())

    def save_system(self, system: System) -> None:
        systems = self._systems()
        for index, existing in enumerate(systems):
            if existing.id == system.id:
                systems[index] = system.model_copy(update={"projects": existing.projects})
                break
        else:
            systems.append(system.model_copy(update={"projects": []}))
        self._write("systems", systems)

    def save_project(self, system_id: str, project: Project) -> None:
        systems = self._systems()
        for system in systems:
            if system.id == system_id:
                projects = [p for p in system.projects if p.id != project.id]
                position = next(
                    (i for i, p in enumerate(system.projects) if p.id == project.id),
                    len(projects),
                )
                projects.insert(position, project)
                system.projects = projects
                self._write("systems", systems)
                return
        raise EntityNotFoundError("system", system_id)

    def save_note(self, note: Note) -> Note:
        notes = self._notes()
        for index, existing in enumerate(notes):
            if existing.id == note.id:
                notes[index] = note
                break
        else:
            notes.insert(0, note)
        self._write("notes", notes)
        return note

    def load_note(self, note_id: str) -> Note:
        return self._require_note(self._notes(), note_id)

    def delete_system(self, system_id: str) -> None:
        systems = self._systems()
        remaining = [s for s in systems if s.id != system_id]
        if len(remaining) == len(systems):
            logger.warning(f"delete_system: system {system_id} not found")
            return
        self._write("systems", remaining)
        self._write("notes", [n for n in self._notes() if n.system_id != system_id])

    def delete_project(self, project_id: str) -> None:
        systems = self._systems()
        for system in systems:
            system.projects = [p for p in system.projects if p.id != project_id]
        self._write("systems", systems)
        self._write("notes", [n for n in self._notes() if n.project_id != project_id])

    def delete_note(self, note_id: str) -> TrashEntry:
        notes = self._notes()
        note = self._require_note(notes, note_id)
        entry = TrashEntry(id=note.id, note=note, deleted_at=now_ms())
        trash = [t for t in self._trash() if t.id != note_id]
        trash.insert(0, entry)
        self._write("trash", trash)
        self._write("notes", [n for n in notes if n.id != note_id])
        return entry

    def restore_note(self, note_id: str) -> Note:
        trash = self._trash()
        entry = next((t for t in trash if t.id == note_id), None)
        if entry is None:
            raise EntityNotFoundError("trash entry", note_id)
        note = self.save_note(entry.note)
        self._write("trash", [t for t in trash if t.id != note_id])
        return note

    def permanently_delete_note(self, note_id: str) -> None:
        self._write("trash", [t for t in self._trash() if t.id != note_id])

    def empty_trash(self) -> None:
        self._write("trash", [])

    def save_trash_entry(self, entry: TrashEntry) -> None:
        trash = [t for t in self._trash() if t.id != entry.id]
        trash.insert(0, entry)
        self._write("trash", trash)

    def save_attachment(self, owner_id: str, filename: str, payload: AttachmentPayload) -> str:
        """Store the attachment inline in ``note.attachments`` as a data URL."""
        notes = self._notes()
        note = self._require_note(notes, owner_id)
        if isinstance(payload, bytes):
            data_url = encode_data_url(payload, mime_type_for_filename(filename))
        elif is_data_url(payload):
            data_url = payload
        else:
            data_url = encode_data_url(payload.encode("utf-8"), "text/plain")
        note.attachments = {**note.attachments, filename: data_url}
        self._write("notes", notes)
        return filename

    def get_attachment(self, owner_id: str, filename: str) -> str:
        note = self._require_note(self._notes(), owner_id)
        data_url = note.attachments.get(filename)
        if not data_url:
            raise EntityNotFoundError("attachment", f"{owner_id}/{filename}")
        return data_url

    def delete_attachment(self, owner_id: str, filename: str) -> None:
        notes = self._notes()
        note = self._require_note(notes, owner_id)
        if filename in note.attachments:
            note.attachments = {k: v for k, v in note.attachments.items() if k != filename}
            self._write("notes", notes)

    def clear(self) -> None:
        for key in STORAGE_KEYS.values():
            self._store.pop(key, None)
        logger.info("Embedded store cleared")

    # ------------------------------------------------------------------
    # Snapshot import/export
    # ------------------------------------------------------------------

    def has_data(self) -> bool:
        return any(self._store.get(key) not in (None, "[]") for key in STORAGE_KEYS.values())

    def size_bytes(self) -> int:
        """Approximate size of the stored documents (UTF-16, like a browser store)."""
        return sum(
            (len(key) + len(self._store.get(key, ""))) * 2
            for key in STORAGE_KEYS.values()
            if key in self._store
        )

    def dump_json(self) -> Dict[str, Any]:
        snapshot = self.load_all()
        return {
            "systems": [s.model_dump(mode="json", by_alias=True) for s in snapshot.systems],
            "notes": [n.model_dump(mode="json", by_alias=True) for n in snapshot.notes],
            "trash": [t.model_dump(mode="json", by_alias=True) for t in snapshot.trash],
        }

    def load_json(self, data: Dict[str, Any]) -> VaultSnapshot:
        """Replace the store contents with a ``{systems, notes, trash}`` document."""
        try:
            snapshot = VaultSnapshot(
                systems=[System.model_validate(s) for s in data.get("systems", [])],
                notes=[Note.model_validate(n) for n in data.get("notes", [])],
                trash=[TrashEntry.model_validate(t) for t in data.get("trash", [])],
            )
        except ValidationError as e:
            raise SerializationError(f"Invalid snapshot document: {e}", original_error=e) from e
        self._write("systems", snapshot.systems)
        self._write("notes", snapshot.notes)
        self._write("trash", snapshot.trash)
        return snapshot
