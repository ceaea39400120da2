"""One-way bulk export from a source adapter into a filesystem vault.

The export is best effort, not a transaction: every item that fails is
recorded and the run carries on. The source is only cleared when the whole
run finished without a single error.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from kol_noter_store.exceptions import KolNoterError, MigrationError, parse_error
from kol_noter_store.models.schema import Note
from kol_noter_store.services.attachment_manager import AttachmentManager
from kol_noter_store.storage.base import StorageAdapter, VaultSnapshot
from kol_noter_store.storage.vault_adapter import VaultAdapter
from kol_noter_store.utils import format_bytes, is_data_url

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MigrationPhase(str, Enum):
    PREPARING = "preparing"
    SYSTEMS = "systems"
    PROJECTS = "projects"
    NOTES = "notes"
    ATTACHMENTS = "attachments"
    TRASH = "trash"
    CLEANUP = "cleanup"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass
class MigrationProgress:
    phase: MigrationPhase
    current: int
    total: int
    current_item: Optional[str] = None
    error: Optional[str] = None


ProgressCallback = Callable[[MigrationProgress], None]


@dataclass
class MigrationOptions:
    clear_source: bool = False
    skip_attachments: bool = False
    on_progress: Optional[ProgressCallback] = None


@dataclass
class ValidationReport:
    valid: bool
    systems: int = 0
    projects: int = 0
    notes: int = 0
    attachments: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class MigrationResult:
    """Counts of exported items. ``success`` is True only with no errors."""

    success: bool
    systems_exported: int = 0
    projects_exported: int = 0
    notes_exported: int = 0
    attachments_exported: int = 0
    trash_exported: int = 0
    errors: List[str] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def counts(self) -> Dict[str, int]:
        return {
            "systems": self.systems_exported,
            "projects": self.projects_exported,
            "notes": self.notes_exported,
            "attachments": self.attachments_exported,
            "trash": self.trash_exported,
        }

    def raise_on_failure(self) -> None:
        """Raise a MigrationError summarizing the run if anything failed."""
        if not self.success:
            raise MigrationError(
                f"Migration finished with {len(self.errors)} error(s)",
                errors=self.errors,
                counts=self.counts,
            )


def count_items(snapshot: VaultSnapshot) -> Dict[str, int]:
    return {
        "systems": len(snapshot.systems),
        "projects": sum(len(system.projects) for system in snapshot.systems),
        "notes": len(snapshot.notes),
        "attachments": sum(len(note.attachments) for note in snapshot.notes),
        "trash": len(snapshot.trash),
    }


def _fold(
    items: Iterable[T],
    write: Callable[[T], None],
    describe: Callable[[T], str],
    on_success: Callable[[int, T], None],
) -> Tuple[int, List[str]]:
    """Apply ``write`` to every item, collecting ``(successes, failures)``."""
    exported = 0
    failures: List[str] = []
    for item in items:
        try:
            write(item)
        except (KolNoterError, OSError, ValueError) as e:
            failures.append(f"Failed to export {describe(item)}: {e}")
            logger.warning(failures[-1])
            continue
        exported += 1
        on_success(exported, item)
    return exported, failures


class MigrationExporter:
    """Validates a source adapter and exports it into a vault."""

    def __init__(self, source: StorageAdapter):
        self.source = source

    def validate(self) -> ValidationReport:
        """Check every note's system and project reference without writing anything."""
        try:
            snapshot = self.source.load_all()
        except KolNoterError as e:
            return ValidationReport(valid=False, errors=[f"Cannot read source data: {e.message}"])

        errors = []
        system_ids = {system.id for system in snapshot.systems}
        project_ids = {project.id for system in snapshot.systems for project in system.projects}
        for note in snapshot.notes:
            if note.system_id not in system_ids:
                errors.append(f'Note "{note.title}" has invalid systemId: {note.system_id}')
            if note.project_id not in project_ids:
                errors.append(f'Note "{note.title}" has invalid projectId: {note.project_id}')

        counts = count_items(snapshot)
        return ValidationReport(
            valid=not errors,
            systems=counts["systems"],
            projects=counts["projects"],
            notes=counts["notes"],
            attachments=counts["attachments"],
            errors=errors,
        )

    def has_source_data(self) -> bool:
        snapshot = self.source.load_all()
        return bool(snapshot.systems or snapshot.notes)

    def source_size(self) -> str:
        """Human readable size of the embedded source, when it can tell."""
        size_bytes = getattr(self.source, "size_bytes", None)
        return format_bytes(size_bytes()) if size_bytes else "unknown"

    def export_to_vault(self, vault_path: Path, options: Optional[MigrationOptions] = None) -> MigrationResult:
        """Create (or open) the vault at ``vault_path`` and export into it."""
        options = options or MigrationOptions()
        started = time.monotonic()
        try:
            destination = VaultAdapter.create(vault_path)
        except KolNoterError as e:
            self._report(options, MigrationProgress(MigrationPhase.ERROR, 0, 0, error=str(e)))
            return MigrationResult(
                success=False, errors=[str(e)], duration_ms=int((time.monotonic() - started) * 1000)
            )
        return self.export(destination, options)

    def export(self, destination: StorageAdapter, options: Optional[MigrationOptions] = None) -> MigrationResult:
        """Run every phase in order against ``destination``.

        Phases: preparing, systems, projects, notes (with their attachments),
        trash, then cleanup when requested and nothing failed.
        """
        options = options or MigrationOptions()
        started = time.monotonic()
        result = MigrationResult(success=False)

        def report(*args, **kwargs) -> None:
            self._report(options, MigrationProgress(*args, **kwargs))

        try:
            report(MigrationPhase.PREPARING, 0, 1, "Loading source data...")
            snapshot = self.source.load_all()
            counts = count_items(snapshot)
            total = counts["systems"] + counts["projects"] + counts["notes"] + counts["trash"]
            if not options.skip_attachments:
                total += counts["attachments"]

            report(MigrationPhase.SYSTEMS, 0, counts["systems"], "Exporting systems...")
            result.systems_exported, errors = _fold(
                snapshot.systems,
                destination.save_system,
                lambda s: f'system "{s.name}"',
                lambda n, s: report(MigrationPhase.SYSTEMS, n, counts["systems"], s.name),
            )
            result.errors.extend(errors)

            report(MigrationPhase.PROJECTS, 0, counts["projects"], "Exporting projects...")
            owned = [(system, project) for system in snapshot.systems for project in system.projects]
            result.projects_exported, errors = _fold(
                owned,
                lambda pair: destination.save_project(pair[0].id, pair[1]),
                lambda pair: f'project "{pair[1].name}"',
                lambda n, pair: report(
                    MigrationPhase.PROJECTS, n, counts["projects"], f"{pair[0].name} / {pair[1].name}"
                ),
            )
            result.errors.extend(errors)

            report(MigrationPhase.NOTES, 0, counts["notes"], "Exporting notes...")
            attachments = AttachmentManager(destination)
            for note in snapshot.notes:
                try:
                    # Inline payloads follow as separate attachment writes
                    destination.save_note(note.model_copy(update={"attachments": {}}))
                except (KolNoterError, OSError, ValueError) as e:
                    result.errors.append(f'Failed to export note "{note.title}": {e}')
                    logger.warning(result.errors[-1])
                    continue
                result.notes_exported += 1
                report(MigrationPhase.NOTES, result.notes_exported, counts["notes"], note.title)
                if not options.skip_attachments:
                    self._export_attachments(note, attachments, result, counts["attachments"], report)

            report(MigrationPhase.TRASH, 0, counts["trash"], "Exporting trash...")
            result.trash_exported, errors = _fold(
                snapshot.trash,
                destination.save_trash_entry,
                lambda t: f'trashed note "{t.note.title}"',
                lambda n, t: report(MigrationPhase.TRASH, n, counts["trash"], t.note.title),
            )
            result.errors.extend(errors)

            if options.clear_source and not result.errors:
                report(MigrationPhase.CLEANUP, 0, 1, "Clearing source data...")
                self.source.clear()
            elif options.clear_source:
                logger.warning(
                    f"Skipping source cleanup: {len(result.errors)} item(s) failed to export"
                )

            report(MigrationPhase.COMPLETE, total, total)
            result.success = not result.errors
        except Exception as e:
            # Unrecoverable failure outside a single item (e.g. the source is unreadable)
            typed = parse_error(e)
            logger.error(f"Migration aborted: {typed}")
            report(MigrationPhase.ERROR, 0, 0, error=typed.message)
            result.errors.append(typed.message)
            result.success = False

        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Migration {'succeeded' if result.success else 'finished with errors'} "
            f"in {result.duration_ms} ms: {result.counts}, {len(result.errors)} error(s)"
        )
        return result

    @staticmethod
    def _export_attachments(
        note: Note,
        attachments: AttachmentManager,
        result: MigrationResult,
        total: int,
        report: Callable[..., None],
    ) -> None:
        for filename, payload in note.attachments.items():
            if not is_data_url(payload):
                logger.debug(f"Attachment {filename} of {note.id} is already a reference")
                continue
            saved = attachments.save_attachment(note.id, payload, filename)
            if not saved.success:
                result.errors.append(f'Failed to export attachment "{filename}": {saved.error}')
                continue
            result.attachments_exported += 1
            report(MigrationPhase.ATTACHMENTS, result.attachments_exported, total, filename)

    @staticmethod
    def _report(options: MigrationOptions, progress: MigrationProgress) -> None:
        if options.on_progress is None:
            return
        try:
            options.on_progress(progress)
        except Exception:
            logger.exception("Migration progress callback failed")
