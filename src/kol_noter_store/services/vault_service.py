"""Consumer-facing facade over the active storage backend.

Every successful adapter write is mirrored by one relational index upsert
and one search index update. Switching backends tears down the watcher and
the index connection of the previous one first.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, MutableMapping, Optional

from kol_noter_store.config import KolNoterConfig, config
from kol_noter_store.exceptions import ErrorCode, KolNoterError, VaultError, with_retry
from kol_noter_store.models.schema import (
    ExternalChangeEvent,
    Note,
    Project,
    System,
    TrashEntry,
)
from kol_noter_store.observability import timed_operation, traced
from kol_noter_store.services.attachment_manager import (
    AttachmentManager,
    SaveAttachmentResult,
)
from kol_noter_store.services.conflict_resolver import (
    ConflictData,
    ConflictResolution,
    ConflictResolver,
    ResolutionOutcome,
)
from kol_noter_store.services.file_watcher import FileWatcher
from kol_noter_store.services.migration_exporter import (
    MigrationExporter,
    MigrationOptions,
    MigrationResult,
    ValidationReport,
)
from kol_noter_store.services.search_index import SearchHit, SearchIndex, SearchOptions
from kol_noter_store.storage.base import (
    AttachmentPayload,
    ChangeCallback,
    ChangeListeners,
    StorageAdapter,
    Unsubscribe,
    VaultSnapshot,
)
from kol_noter_store.storage.embedded_adapter import EmbeddedAdapter
from kol_noter_store.storage.relational_index import RelationalIndex
from kol_noter_store.storage.vault_adapter import VaultAdapter

logger = logging.getLogger(__name__)

# Vault-open failures the user has to act on; anything else falls back to embedded
_USER_FACING_VAULT_CODES = {
    ErrorCode.VAULT_NOT_FOUND,
    ErrorCode.VAULT_INVALID,
    ErrorCode.VAULT_PERMISSION_DENIED,
}


class VaultService:
    """Storage, indexing, search, watching and migration behind one object."""

    def __init__(self, settings: Optional[KolNoterConfig] = None):
        self.settings = settings or config
        self.adapter: Optional[StorageAdapter] = None
        self.index = RelationalIndex()
        self.search_index = SearchIndex(fuzzy=self.settings.search_fuzzy)
        self.watcher = FileWatcher(debounce_ms=self.settings.watch_debounce_ms)
        self.attachments = AttachmentManager(lambda: self._require_adapter())
        self.conflicts: Optional[ConflictResolver] = None
        self._listeners = ChangeListeners()
        self._unsubscribe_watcher: Optional[Unsubscribe] = None

    @classmethod
    def from_config(cls, settings: Optional[KolNoterConfig] = None) -> "VaultService":
        """Build a service for the configured backend.

        A vault that is missing, invalid or unreadable raises, so the user can
        pick another folder. Any other failure to open it falls back to the
        embedded store.
        """
        service = cls(settings)
        settings = service.settings
        if settings.storage_backend != "filesystem":
            service.use_embedded()
            return service
        try:
            service.open_vault(settings.get_absolute_path(settings.vault_path))
        except VaultError as e:
            if e.code in _USER_FACING_VAULT_CODES:
                raise
            logger.error(f"Cannot open vault, using the embedded store: {e}")
            service.use_embedded()
        except KolNoterError as e:
            logger.error(f"Cannot open vault, using the embedded store: {e}")
            service.use_embedded()
        return service

    # ------------------------------------------------------------------
    # Backend lifecycle
    # ------------------------------------------------------------------

    def open_vault(self, vault_path: Path, create: bool = False) -> VaultSnapshot:
        """Switch to the vault at ``vault_path`` and index it.

        Raises:
            VaultError: The vault cannot be located, opened or created.
        """
        self.close()
        adapter = VaultAdapter.create(vault_path) if create else VaultAdapter.open(vault_path)
        self.adapter = adapter
        self.conflicts = ConflictResolver(adapter)
        self.index.open(str(adapter.index_db_path))

        snapshot = self._load_snapshot()
        self.index.full_reindex(snapshot)
        if not self.search_index.load_cache(adapter.vault_path):
            self.search_index.build_index(snapshot.notes, snapshot.systems)
            self.search_index.save_cache(adapter.vault_path)

        if self.settings.watch_enabled:
            if self.watcher.start(adapter.vault_path):
                self._unsubscribe_watcher = self.watcher.on_file_change(self._on_external_change)
            else:
                logger.warning(f"External changes to {adapter.vault_path} will not be detected")
        return snapshot

    def use_embedded(self, store: Optional[MutableMapping[str, str]] = None) -> VaultSnapshot:
        """Switch to the embedded store with a private in-memory index."""
        self.close()
        self.adapter = EmbeddedAdapter(store)
        self.index.open(":memory:")
        return self.rebuild_index()

    def close(self) -> None:
        """Stop watching, flush the search cache and release the index connection."""
        if self._unsubscribe_watcher is not None:
            self._unsubscribe_watcher()
            self._unsubscribe_watcher = None
        self.watcher.stop()
        if isinstance(self.adapter, VaultAdapter):
            self.search_index.save_cache(self.adapter.vault_path)
        self.index.close()
        if self.adapter is not None:
            self.adapter.close()
        self.adapter = None
        self.conflicts = None
        self.search_index.clear()

    @property
    def is_vault(self) -> bool:
        return self.adapter is not None and self.adapter.is_vault

    def _require_adapter(self) -> StorageAdapter:
        if self.adapter is None:
            raise VaultError("No storage backend is open", code=ErrorCode.VAULT_NOT_OPEN)
        return self.adapter

    def _require_conflicts(self) -> ConflictResolver:
        if self.conflicts is None:
            raise VaultError(
                "Conflict handling needs an open vault", code=ErrorCode.VAULT_NOT_OPEN
            )
        return self.conflicts

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------

    def _load_snapshot(self) -> VaultSnapshot:
        # External editors may still be writing when a reindex starts
        return with_retry(
            self._require_adapter().load_all,
            max_attempts=self.settings.retry_attempts,
            delay=self.settings.retry_delay_ms / 1000.0,
            backoff=self.settings.retry_backoff,
        )

    @traced("rebuild_index")
    def rebuild_index(self) -> VaultSnapshot:
        """Full clear-and-replay of the relational and search indexes."""
        snapshot = self._load_snapshot()
        self.index.full_reindex(snapshot)
        self.search_index.build_index(snapshot.notes, snapshot.systems)
        if isinstance(self.adapter, VaultAdapter):
            self.search_index.save_cache(self.adapter.vault_path)
        return snapshot

    def _on_external_change(self, event: ExternalChangeEvent) -> None:
        logger.info(f"External change: {event.kind} {event.path}")
        if self.settings.reindex_on_external_change:
            try:
                self.rebuild_index()
            except KolNoterError as e:
                logger.error(f"Reindex after external change failed: {e}")
        self._listeners.emit(event)

    def subscribe_to_external_changes(self, callback: ChangeCallback) -> Unsubscribe:
        """Receive watcher events after the indexes have caught up with them."""
        return self._listeners.subscribe(callback)

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    def load_all(self) -> VaultSnapshot:
        return self._require_adapter().load_all()

    def save_system(self, system: System) -> None:
        self._require_adapter().save_system(system)
        self.index.upsert_system(system)
        self.search_index.update_system(system)

    def save_project(self, system_id: str, project: Project) -> None:
        self._require_adapter().save_project(system_id, project)
        self.index.upsert_project(system_id, project)
        self.search_index.update_project(project, system_id)

    def save_note(self, note: Note) -> Note:
        stored = self._require_adapter().save_note(note)
        self.index.upsert_note(stored)
        self.search_index.update_note(stored)
        return stored

    def delete_system(self, system_id: str) -> None:
        self._require_adapter().delete_system(system_id)
        self.index.delete_system(system_id)
        self.search_index.remove_by_owner(system_id=system_id)

    def delete_project(self, project_id: str) -> None:
        self._require_adapter().delete_project(project_id)
        self.index.delete_project(project_id)
        self.search_index.remove_by_owner(project_id=project_id)

    def delete_note(self, note_id: str) -> TrashEntry:
        entry = self._require_adapter().delete_note(note_id)
        self.index.delete_note(note_id)
        self.index.upsert_trash_entry(entry)
        self.search_index.remove(note_id)
        return entry

    def restore_note(self, note_id: str) -> Note:
        note = self._require_adapter().restore_note(note_id)
        self.index.delete_trash_entry(note_id)
        self.index.upsert_note(note)
        self.search_index.update_note(note)
        return note

    def permanently_delete_note(self, note_id: str) -> None:
        self._require_adapter().permanently_delete_note(note_id)
        self.index.delete_trash_entry(note_id)

    def empty_trash(self) -> None:
        self._require_adapter().empty_trash()
        self.index.clear_trash()

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    def save_attachment(
        self, owner_id: str, data: AttachmentPayload, filename: Optional[str] = None
    ) -> SaveAttachmentResult:
        result = self.attachments.save_attachment(owner_id, data, filename)
        if result.success:
            self._refresh_note(owner_id)
        return result

    def get_attachment(self, owner_id: str, filename: str) -> str:
        return self.attachments.get_attachment(owner_id, filename)

    def delete_attachment(self, owner_id: str, filename: str) -> None:
        self.attachments.delete_attachment(owner_id, filename)
        self._refresh_note(owner_id)

    def _refresh_note(self, note_id: str) -> None:
        note = self._require_adapter().load_note(note_id)
        self.index.upsert_note(note)
        self.search_index.update_note(note)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(self, query: str, options: Optional[SearchOptions] = None) -> List[SearchHit]:
        """Ranked hits. Failures are logged and reported as no results."""
        options = options or SearchOptions(
            limit=self.settings.search_limit, fuzzy=self.settings.search_fuzzy
        )
        try:
            with timed_operation("search", query=query[:50]) as op:
                hits = self.search_index.search(query, options)
                op["result_count"] = len(hits)
                return hits
        except Exception as e:
            logger.error(f"Search failed for '{query}': {e}")
            return []

    def suggest(self, query: str) -> List[str]:
        try:
            return self.search_index.suggest(query, limit=self.settings.suggest_limit)
        except Exception as e:
            logger.error(f"Suggest failed for '{query}': {e}")
            return []

    def search_stats(self) -> Dict[str, Any]:
        return self.search_index.stats()

    # ------------------------------------------------------------------
    # Migration
    # ------------------------------------------------------------------

    def validate_source_data(self) -> ValidationReport:
        return MigrationExporter(self._require_adapter()).validate()

    def export_to_vault(self, vault_path: Path, options: Optional[MigrationOptions] = None) -> MigrationResult:
        """Export the active backend into the vault at ``vault_path``."""
        with timed_operation("export_to_vault", vault=str(vault_path)) as op:
            result = MigrationExporter(self._require_adapter()).export_to_vault(vault_path, options)
            op["success"] = result.success
            op["error_count"] = len(result.errors)
        if options is not None and options.clear_source and result.success:
            self.rebuild_index()
        return result

    # ------------------------------------------------------------------
    # Conflicts
    # ------------------------------------------------------------------

    def detect_conflict(
        self, event: ExternalChangeEvent, local_note: Optional[Note], last_synced_at: int
    ) -> Optional[ConflictData]:
        return self._require_conflicts().detect(event, local_note, last_synced_at)

    def resolve_conflict(
        self, conflict: ConflictData, resolution: ConflictResolution, local_note: Note
    ) -> ResolutionOutcome:
        outcome = self._require_conflicts().resolve(conflict, resolution, local_note)
        self.index.upsert_note(outcome.note)
        self.search_index.update_note(outcome.note)
        return outcome
