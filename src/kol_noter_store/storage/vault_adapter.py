"""Filesystem vault adapter.

Layout, relative to the vault root::

    <system>/system.meta
    <system>/<project>/project.meta
    <system>/<project>/<note>.md
    <system>/<project>/<note>.visual.json      (visual notes only)
    <system>/<project>/assets/<note>/<file>    (attachments)
    .kol-noter/config.json                     (vault metadata)
    .kol-noter/id-map.json                     (id -> relative path)
    .kol-noter/trash/<note-id>.json
    .kol-noter/conflicts/...                   (keep-both backups)

Markdown files are authoritative. The id map is a lookup cache that is
rebuilt from the directory tree on every ``load_all``.
"""

import hashlib
import json
import logging
import os
import shutil
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from kol_noter_store.exceptions import (
    EntityNotFoundError,
    ErrorCode,
    FileSystemError,
    SerializationError,
    VaultError,
)
from kol_noter_store.models.schema import (
    ExternalChangeEvent,
    Note,
    Project,
    System,
    TrashEntry,
)
from kol_noter_store.storage.base import (
    AttachmentPayload,
    ChangeCallback,
    ChangeListeners,
    StorageAdapter,
    Unsubscribe,
    VaultSnapshot,
)
from kol_noter_store.storage.serializer import MarkdownSerializer
from kol_noter_store.utils import (
    decode_data_url,
    encode_data_url,
    ensure_unique_slug,
    generate_slug,
    is_data_url,
    mime_type_for_filename,
    now_ms,
)

logger = logging.getLogger(__name__)

CONFIG_DIR = ".kol-noter"
CONFIG_FILE = "config.json"
ID_MAP_FILE = "id-map.json"
SEARCH_INDEX_FILE = "search-index.json"
INDEX_DB_FILE = "index.db"
TRASH_DIR = "trash"
CONFLICTS_DIR = "conflicts"
SYSTEM_METADATA = "system.meta"
PROJECT_METADATA = "project.meta"
ASSETS_DIR = "assets"
NOTE_SUFFIX = ".md"
VISUAL_SIDECAR_SUFFIX = ".visual.json"
VAULT_FORMAT_VERSION = "1.0.0"


def empty_id_map() -> Dict[str, Dict[str, str]]:
    return {"notes": {}, "systems": {}, "projects": {}}


def is_valid_vault(vault_path: Path) -> bool:
    """A vault is any directory holding ``.kol-noter/config.json``."""
    return (Path(vault_path) / CONFIG_DIR / CONFIG_FILE).is_file()


def _posix(*parts: str) -> str:
    return "/".join(p for p in parts if p)


def _parent(rel_path: str) -> str:
    return rel_path.rsplit("/", 1)[0] if "/" in rel_path else ""


def _basename(rel_path: str) -> str:
    return rel_path.rsplit("/", 1)[-1]


def _note_stem(rel_path: str) -> str:
    return _basename(rel_path)[: -len(NOTE_SUFFIX)]


def _matches_slug(name: str, slug: str) -> bool:
    """True if ``name`` is ``slug`` or one of its ``slug-N`` variants."""
    if name == slug:
        return True
    prefix = f"{slug}-"
    return name.startswith(prefix) and name[len(prefix):].isdigit()


class VaultAdapter(StorageAdapter):
    """Storage adapter mapping the hierarchy onto a directory tree."""

    is_vault = True

    def __init__(self, vault_path: Path, serializer: Optional[MarkdownSerializer] = None):
        """Attach to an existing vault. Use ``open``/``create`` for validation."""
        self.vault_path = Path(vault_path)
        self.serializer = serializer or MarkdownSerializer()
        self._listeners = ChangeListeners()
        self._lock = threading.RLock()
        self.id_map = self._read_id_map()

    # ------------------------------------------------------------------
    # Vault lifecycle
    # ------------------------------------------------------------------

    @classmethod
    def create(cls, vault_path: Path) -> "VaultAdapter":
        """Initialize a vault at ``vault_path`` (or open it if already initialized)."""
        vault_path = Path(vault_path)
        if is_valid_vault(vault_path):
            return cls.open(vault_path)
        config_dir = vault_path / CONFIG_DIR
        try:
            (config_dir / TRASH_DIR).mkdir(parents=True, exist_ok=True)
            now = now_ms()
            metadata = {"version": VAULT_FORMAT_VERSION, "created": now, "lastModified": now}
            (config_dir / CONFIG_FILE).write_text(json.dumps(metadata, indent=2), encoding="utf-8")
            (config_dir / ID_MAP_FILE).write_text(
                json.dumps(empty_id_map(), indent=2), encoding="utf-8"
            )
        except PermissionError as e:
            raise VaultError(
                f"Permission denied creating vault at {vault_path}",
                vault_path=str(vault_path),
                code=ErrorCode.VAULT_PERMISSION_DENIED,
            ) from e
        except OSError as e:
            raise FileSystemError.from_os_error(e, str(vault_path), "write") from e
        logger.info(f"Created vault at {vault_path}")
        return cls(vault_path)

    @classmethod
    def open(cls, vault_path: Path) -> "VaultAdapter":
        """Open an existing vault.

        Raises:
            VaultError: VAULT_NOT_FOUND if the directory does not exist,
                VAULT_INVALID if it is not a vault or its metadata is
                unreadable, VAULT_PERMISSION_DENIED if it cannot be read.
        """
        vault_path = Path(vault_path)
        if not vault_path.is_dir():
            raise VaultError(
                f"Vault directory not found: {vault_path}",
                vault_path=str(vault_path),
                code=ErrorCode.VAULT_NOT_FOUND,
            )
        if not os.access(vault_path, os.R_OK | os.X_OK):
            raise VaultError(
                f"Permission denied reading vault: {vault_path}",
                vault_path=str(vault_path),
                code=ErrorCode.VAULT_PERMISSION_DENIED,
            )
        if not is_valid_vault(vault_path):
            raise VaultError(
                f"Not a vault (missing {CONFIG_DIR}/{CONFIG_FILE}): {vault_path}",
                vault_path=str(vault_path),
                code=ErrorCode.VAULT_INVALID,
            )
        try:
            metadata = json.loads((vault_path / CONFIG_DIR / CONFIG_FILE).read_text(encoding="utf-8"))
        except PermissionError as e:
            raise VaultError(
                f"Permission denied reading vault metadata: {vault_path}",
                vault_path=str(vault_path),
                code=ErrorCode.VAULT_PERMISSION_DENIED,
            ) from e
        except (OSError, json.JSONDecodeError) as e:
            raise VaultError(
                f"Vault metadata is unreadable: {e}",
                vault_path=str(vault_path),
                code=ErrorCode.VAULT_INVALID,
            ) from e
        if not isinstance(metadata, dict) or "version" not in metadata:
            raise VaultError(
                "Vault metadata has no version",
                vault_path=str(vault_path),
                code=ErrorCode.VAULT_INVALID,
            )
        logger.info(f"Opened vault {vault_path} (format {metadata['version']})")
        return cls(vault_path)

    @property
    def config_dir(self) -> Path:
        return self.vault_path / CONFIG_DIR

    @property
    def index_db_path(self) -> Path:
        return self.config_dir / INDEX_DB_FILE

    def read_vault_metadata(self) -> Dict[str, Any]:
        return json.loads(self._read_text(_posix(CONFIG_DIR, CONFIG_FILE)))

    def _touch_vault_metadata(self) -> None:
        try:
            metadata = self.read_vault_metadata()
        except (FileSystemError, json.JSONDecodeError):
            return
        metadata["lastModified"] = now_ms()
        self._write_text(_posix(CONFIG_DIR, CONFIG_FILE), json.dumps(metadata, indent=2))

    # ------------------------------------------------------------------
    # File helpers: every OSError becomes a typed FileSystemError
    # ------------------------------------------------------------------

    def _abs(self, rel_path: str) -> Path:
        return self.vault_path / rel_path

    def _read_text(self, rel_path: str) -> str:
        try:
            return self._abs(rel_path).read_text(encoding="utf-8")
        except OSError as e:
            raise FileSystemError.from_os_error(e, rel_path, "read") from e

    def _read_bytes(self, rel_path: str) -> bytes:
        try:
            return self._abs(rel_path).read_bytes()
        except OSError as e:
            raise FileSystemError.from_os_error(e, rel_path, "read") from e

    def _write_text(self, rel_path: str, text: str) -> None:
        self._write_bytes(rel_path, text.encode("utf-8"))

    def _write_bytes(self, rel_path: str, data: bytes) -> None:
        """Write through a staging file so readers never see a partial file."""
        target = self._abs(rel_path)
        staging = target.with_name(f".{target.name}.tmp")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            staging.write_bytes(data)
            os.replace(staging, target)
        except OSError as e:
            staging.unlink(missing_ok=True)
            raise FileSystemError.from_os_error(e, rel_path, "write") from e

    def _remove_file(self, rel_path: str) -> None:
        try:
            self._abs(rel_path).unlink(missing_ok=True)
        except OSError as e:
            raise FileSystemError.from_os_error(e, rel_path, "delete") from e

    def _remove_tree(self, rel_path: str) -> None:
        try:
            shutil.rmtree(self._abs(rel_path))
        except FileNotFoundError:
            logger.debug(f"Directory already gone: {rel_path}")
        except OSError as e:
            raise FileSystemError.from_os_error(e, rel_path, "delete") from e

    def _move(self, old_rel: str, new_rel: str) -> None:
        if old_rel == new_rel or not self._abs(old_rel).exists():
            return
        try:
            self._abs(new_rel).parent.mkdir(parents=True, exist_ok=True)
            os.replace(self._abs(old_rel), self._abs(new_rel))
        except OSError as e:
            raise FileSystemError.from_os_error(e, old_rel, "write") from e

    def _child_names(self, rel_dir: str) -> List[str]:
        directory = self._abs(rel_dir)
        if not directory.is_dir():
            return []
        return [p.name for p in directory.iterdir()]

    # ------------------------------------------------------------------
    # Id map
    # ------------------------------------------------------------------

    def _read_id_map(self) -> Dict[str, Dict[str, str]]:
        path = self.config_dir / ID_MAP_FILE
        if not path.exists():
            return empty_id_map()
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            # Rebuilt from the directory tree on the next load_all
            logger.warning(f"Ignoring unreadable id map: {e}")
            return empty_id_map()
        id_map = empty_id_map()
        for key in id_map:
            if isinstance(data.get(key), dict):
                id_map[key] = dict(data[key])
        return id_map

    def _save_id_map(self) -> None:
        self._write_text(_posix(CONFIG_DIR, ID_MAP_FILE), json.dumps(self.id_map, indent=2, sort_keys=True))

    def _rewrite_prefix(self, old_prefix: str, new_prefix: str) -> None:
        """Repoint every project/note path under a renamed or moved folder."""
        for section in ("projects", "notes"):
            for entity_id, path in self.id_map[section].items():
                if path == old_prefix or path.startswith(old_prefix + "/"):
                    self.id_map[section][entity_id] = new_prefix + path[len(old_prefix):]

    def _drop_prefix(self, prefix: str) -> None:
        for section in ("projects", "notes"):
            self.id_map[section] = {
                entity_id: path
                for entity_id, path in self.id_map[section].items()
                if not (path == prefix or path.startswith(prefix + "/"))
            }

    def note_path(self, note_id: str) -> Optional[str]:
        """Vault-relative path of a note file."""
        return self.id_map["notes"].get(note_id)

    def note_id_for_path(self, rel_path: str) -> Optional[str]:
        for note_id, path in self.id_map["notes"].items():
            if path == rel_path:
                return note_id
        return None

    def _owner_ids_for_folder(self, project_rel: str) -> Tuple[str, str]:
        project_id = next(
            (pid for pid, path in self.id_map["projects"].items() if path == project_rel), None
        )
        system_id = next(
            (sid for sid, path in self.id_map["systems"].items() if path == _parent(project_rel)),
            None,
        )
        if project_id is None or system_id is None:
            raise EntityNotFoundError("project", project_rel, f"No project folder at '{project_rel}'")
        return system_id, project_id

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load_all(self) -> VaultSnapshot:
        """Read the whole vault. Any unreadable entity aborts the snapshot."""
        with self._lock:
            id_map = empty_id_map()
            systems: List[System] = []
            notes: List[Note] = []

            for system_dir in self._content_dirs(""):
                meta_rel = _posix(system_dir, SYSTEM_METADATA)
                if not self._abs(meta_rel).is_file():
                    continue
                system = self.serializer.parse_system(self._read_text(meta_rel), path=meta_rel)
                id_map["systems"][system.id] = system_dir
                projects: List[Project] = []

                for project_name in self._content_dirs(system_dir):
                    project_dir = _posix(system_dir, project_name)
                    project_meta = _posix(project_dir, PROJECT_METADATA)
                    if not self._abs(project_meta).is_file():
                        continue
                    project = self.serializer.parse_project(
                        self._read_text(project_meta), path=project_meta
                    )
                    projects.append(project)
                    id_map["projects"][project.id] = project_dir

                    for file_name in sorted(self._child_names(project_dir)):
                        if not file_name.endswith(NOTE_SUFFIX) or file_name.startswith(("_", ".")):
                            continue
                        note_rel = _posix(project_dir, file_name)
                        note = self._load_note_file(note_rel, system.id, project.id)
                        id_map["notes"][note.id] = note_rel
                        notes.append(note)

                system.projects = projects
                systems.append(system)

            trash = self._load_trash()

            if id_map != self.id_map:
                self.id_map = id_map
                self._save_id_map()

            logger.info(
                f"Loaded vault {self.vault_path}: {len(systems)} systems, "
                f"{len(notes)} notes, {len(trash)} trashed"
            )
            return VaultSnapshot(systems=systems, notes=notes, trash=trash)

    def _content_dirs(self, rel_dir: str) -> List[str]:
        return sorted(
            name
            for name in self._child_names(rel_dir)
            if not name.startswith(".") and name != ASSETS_DIR and self._abs(_posix(rel_dir, name)).is_dir()
        )

    def _load_note_file(self, note_rel: str, system_id: str, project_id: str) -> Note:
        stem = _note_stem(note_rel)
        project_dir = _parent(note_rel)
        sidecar_rel = _posix(project_dir, stem + VISUAL_SIDECAR_SUFFIX)
        sidecar = None
        if self._abs(sidecar_rel).is_file():
            sidecar = self.serializer.parse_sidecar(self._read_text(sidecar_rel), path=sidecar_rel)

        # Hand-written files without an id get a stable one derived from the path
        fallback_id = self.note_id_for_path(note_rel) or (
            "note-" + hashlib.sha1(note_rel.encode("utf-8")).hexdigest()[:12]
        )
        asset_dir = _posix(ASSETS_DIR, stem)
        note = self.serializer.parse_note(
            self._read_text(note_rel),
            system_id=system_id,
            project_id=project_id,
            sidecar=sidecar,
            filename=stem,
            fallback_id=fallback_id,
            asset_dir=asset_dir,
            path=note_rel,
        )

        # Files dropped into the assets folder by hand still show up
        known = set(note.attachments) | {p.name for p in note.photos} | {
            v.name for v in note.voice_recordings
        }
        extra = {
            name: _posix(asset_dir, name)
            for name in sorted(self._child_names(_posix(project_dir, asset_dir)))
            if name not in known and not name.startswith(".")
        }
        if extra:
            note.attachments = {**note.attachments, **extra}
        return note

    def read_note_file(self, rel_path: str) -> Note:
        """Parse the note currently on disk at ``rel_path``."""
        system_id, project_id = self._owner_ids_for_folder(_parent(rel_path))
        return self._load_note_file(rel_path, system_id, project_id)

    def load_note(self, note_id: str) -> Note:
        note_rel = self.id_map["notes"].get(note_id)
        if note_rel is None:
            raise EntityNotFoundError("note", note_id)
        return self.read_note_file(note_rel)

    def read_file(self, rel_path: str) -> str:
        return self._read_text(rel_path)

    def _load_trash(self) -> List[TrashEntry]:
        trash_rel = _posix(CONFIG_DIR, TRASH_DIR)
        entries = []
        for name in sorted(self._child_names(trash_rel)):
            if not name.endswith(".json"):
                continue
            rel = _posix(trash_rel, name)
            try:
                entries.append(TrashEntry.model_validate_json(self._read_text(rel)))
            except ValidationError as e:
                raise SerializationError(
                    f"Unreadable trash entry: {e.error_count()} field error(s)",
                    path=rel,
                    original_error=e,
                ) from e
        entries.sort(key=lambda entry: entry.deleted_at, reverse=True)
        return entries

    # ------------------------------------------------------------------
    # Systems and projects
    # ------------------------------------------------------------------

    def save_system(self, system: System) -> None:
        with self._lock:
            slug = generate_slug(system.name)
            folder = self.id_map["systems"].get(system.id)
            if folder is None or not _matches_slug(folder, slug):
                siblings = [n for n in self._child_names("") if n != folder]
                new_folder = ensure_unique_slug(slug, siblings + [ASSETS_DIR])
                if folder is not None:
                    self._move(folder, new_folder)
                    self._rewrite_prefix(folder, new_folder)
                    logger.info(f"Renamed system folder {folder} -> {new_folder}")
                folder = new_folder

            self._write_text(_posix(folder, SYSTEM_METADATA), self.serializer.render_system(system))
            self.id_map["systems"][system.id] = folder
            self._save_id_map()

    def save_project(self, system_id: str, project: Project) -> None:
        with self._lock:
            system_folder = self.id_map["systems"].get(system_id)
            if system_folder is None:
                raise EntityNotFoundError("system", system_id)

            slug = generate_slug(project.name)
            current = self.id_map["projects"].get(project.id)
            if (
                current is None
                or _parent(current) != system_folder
                or not _matches_slug(_basename(current), slug)
            ):
                siblings = [n for n in self._child_names(system_folder) if _posix(system_folder, n) != current]
                new_path = _posix(system_folder, ensure_unique_slug(slug, siblings + [ASSETS_DIR]))
                if current is not None:
                    self._move(current, new_path)
                    self._rewrite_prefix(current, new_path)
                    logger.info(f"Moved project folder {current} -> {new_path}")
                current = new_path

            self._write_text(_posix(current, PROJECT_METADATA), self.serializer.render_project(project))
            self.id_map["projects"][project.id] = current
            self._save_id_map()

    def delete_system(self, system_id: str) -> None:
        with self._lock:
            folder = self.id_map["systems"].pop(system_id, None)
            if folder is None:
                logger.warning(f"delete_system: system {system_id} not found")
                return
            self._remove_tree(folder)
            self._drop_prefix(folder)
            self._save_id_map()

    def delete_project(self, project_id: str) -> None:
        with self._lock:
            folder = self.id_map["projects"].pop(project_id, None)
            if folder is None:
                logger.warning(f"delete_project: project {project_id} not found")
                return
            self._remove_tree(folder)
            self._drop_prefix(folder)
            self._save_id_map()

    # ------------------------------------------------------------------
    # Notes
    # ------------------------------------------------------------------

    def save_note(self, note: Note) -> Note:
        with self._lock:
            project_dir = self.id_map["projects"].get(note.project_id)
            if project_dir is None:
                raise EntityNotFoundError("project", note.project_id)

            # (a) resolve or create the file path
            note_rel = self._resolve_note_path(note, project_dir)
            stem = _note_stem(note_rel)

            # (b) serialize content, with its sidecar for visual notes
            markdown, sidecar = self.serializer.render_note(note)
            self._write_text(note_rel, markdown)
            sidecar_rel = _posix(project_dir, stem + VISUAL_SIDECAR_SUFFIX)
            if sidecar is not None:
                self._write_text(sidecar_rel, self.serializer.render_sidecar(sidecar))
            else:
                self._remove_file(sidecar_rel)

            # (c) inline payloads go to the assets directory
            inline = {name: value for name, value in note.attachments.items() if is_data_url(value)}
            for item in list(note.photos) + list(note.voice_recordings):
                if is_data_url(item.data_url):
                    inline[item.name] = item.data_url
            for name, data_url in inline.items():
                self._write_asset(project_dir, stem, name, data_url)

            # (d) record the path
            self.id_map["notes"][note.id] = note_rel
            self._save_id_map()
            return self._load_note_file(note_rel, note.system_id, note.project_id)

    def _resolve_note_path(self, note: Note, project_dir: str) -> str:
        slug = generate_slug(note.title)
        current = self.id_map["notes"].get(note.id)
        if (
            current is not None
            and _parent(current) == project_dir
            and _matches_slug(_note_stem(current), slug)
        ):
            return current

        taken = [
            name[: -len(NOTE_SUFFIX)]
            for name in self._child_names(project_dir)
            if name.endswith(NOTE_SUFFIX) and _posix(project_dir, name) != current
        ]
        new_rel = _posix(project_dir, ensure_unique_slug(slug, taken) + NOTE_SUFFIX)
        if current is not None:
            # Title or project changed: carry the file, sidecar and assets along
            old_dir, old_stem, new_stem = _parent(current), _note_stem(current), _note_stem(new_rel)
            self._move(current, new_rel)
            self._move(
                _posix(old_dir, old_stem + VISUAL_SIDECAR_SUFFIX),
                _posix(project_dir, new_stem + VISUAL_SIDECAR_SUFFIX),
            )
            self._move(_posix(old_dir, ASSETS_DIR, old_stem), _posix(project_dir, ASSETS_DIR, new_stem))
            logger.info(f"Moved note {note.id}: {current} -> {new_rel}")
        return new_rel

    def delete_note(self, note_id: str) -> TrashEntry:
        """Snapshot the note into the trash, then remove its files.

        Attachment files stay in place.
        """
        with self._lock:
            note_rel = self.id_map["notes"].get(note_id)
            if note_rel is None:
                raise EntityNotFoundError("note", note_id)
            note = self.read_note_file(note_rel)
            entry = TrashEntry(id=note_id, note=note, deleted_at=now_ms())
            self.save_trash_entry(entry)

            self._remove_file(note_rel)
            self._remove_file(_posix(_parent(note_rel), _note_stem(note_rel) + VISUAL_SIDECAR_SUFFIX))
            del self.id_map["notes"][note_id]
            self._save_id_map()
            return entry

    def restore_note(self, note_id: str) -> Note:
        with self._lock:
            trash_rel = self._trash_rel(note_id)
            if not self._abs(trash_rel).is_file():
                raise EntityNotFoundError("trash entry", note_id)
            try:
                entry = TrashEntry.model_validate_json(self._read_text(trash_rel))
            except ValidationError as e:
                raise SerializationError(
                    "Unreadable trash entry", path=trash_rel, original_error=e
                ) from e
            note = self.save_note(entry.note)
            self._remove_file(trash_rel)
            return note

    def permanently_delete_note(self, note_id: str) -> None:
        with self._lock:
            self._remove_file(self._trash_rel(note_id))

    def empty_trash(self) -> None:
        with self._lock:
            trash_dir = _posix(CONFIG_DIR, TRASH_DIR)
            for name in self._child_names(trash_dir):
                if name.endswith(".json"):
                    self._remove_file(_posix(trash_dir, name))

    def save_trash_entry(self, entry: TrashEntry) -> None:
        self._write_text(self._trash_rel(entry.id), entry.model_dump_json(by_alias=True, indent=2))

    @staticmethod
    def _trash_rel(note_id: str) -> str:
        return _posix(CONFIG_DIR, TRASH_DIR, f"{note_id}.json")

    def get_note_size(self, note_id: str) -> int:
        note_rel = self.id_map["notes"].get(note_id)
        if note_rel is None:
            raise EntityNotFoundError("note", note_id)
        try:
            return self._abs(note_rel).stat().st_size
        except OSError as e:
            raise FileSystemError.from_os_error(e, note_rel, "read") from e

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    def _asset_rel(self, owner_id: str, filename: str) -> Tuple[str, str]:
        """``(vault-relative file path, note-relative reference)``."""
        note_rel = self.id_map["notes"].get(owner_id)
        if note_rel is None:
            raise EntityNotFoundError("note", owner_id)
        reference = _posix(ASSETS_DIR, _note_stem(note_rel), filename)
        return _posix(_parent(note_rel), reference), reference

    def _write_asset(self, project_dir: str, stem: str, filename: str, payload: AttachmentPayload) -> None:
        rel = _posix(project_dir, ASSETS_DIR, stem, filename)
        if isinstance(payload, bytes):
            data = payload
        elif is_data_url(payload):
            try:
                data, _ = decode_data_url(payload)
            except ValueError as e:
                raise SerializationError(f"Cannot decode attachment {filename}: {e}", path=rel) from e
        else:
            data = payload.encode("utf-8")
        self._write_bytes(rel, data)

    def save_attachment(self, owner_id: str, filename: str, payload: AttachmentPayload) -> str:
        with self._lock:
            file_rel, reference = self._asset_rel(owner_id, filename)
            note_rel = self.id_map["notes"][owner_id]
            self._write_asset(_parent(note_rel), _note_stem(note_rel), filename, payload)
            logger.debug(f"Saved attachment {file_rel}")
            return reference

    def get_attachment(self, owner_id: str, filename: str) -> str:
        file_rel, _ = self._asset_rel(owner_id, filename)
        return encode_data_url(self._read_bytes(file_rel), mime_type_for_filename(filename))

    def delete_attachment(self, owner_id: str, filename: str) -> None:
        with self._lock:
            file_rel, _ = self._asset_rel(owner_id, filename)
            self._remove_file(file_rel)

    # ------------------------------------------------------------------
    # Conflict backups
    # ------------------------------------------------------------------

    def write_backup(self, rel_path: str, text: str, timestamp: int) -> str:
        """Store a copy of ``text`` outside the content tree and return its path."""
        stem = rel_path[: -len(NOTE_SUFFIX)] if rel_path.endswith(NOTE_SUFFIX) else rel_path
        backup_rel = _posix(CONFIG_DIR, CONFLICTS_DIR, f"{stem}.{timestamp}{NOTE_SUFFIX}")
        self._write_text(backup_rel, text)
        logger.info(f"Wrote conflict backup {backup_rel}")
        return backup_rel

    # ------------------------------------------------------------------
    # Bulk
    # ------------------------------------------------------------------

    def clear(self) -> None:
        with self._lock:
            for folder in list(self.id_map["systems"].values()):
                self._remove_tree(folder)
            self.empty_trash()
            self.id_map = empty_id_map()
            self._save_id_map()
            self._touch_vault_metadata()
            logger.info(f"Vault {self.vault_path} cleared")

    # ------------------------------------------------------------------
    # External changes
    # ------------------------------------------------------------------

    def on_external_change(self, callback: ChangeCallback) -> Unsubscribe:
        return self._listeners.subscribe(callback)

    def notify_change(self, event: ExternalChangeEvent) -> None:
        self._listeners.emit(event)

    def close(self) -> None:
        self._listeners.clear()
