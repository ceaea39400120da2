"""Tests for note conflict detection and resolution."""

import pytest

from kol_noter_store.models.schema import ChangeType, ExternalChangeEvent, ItemType
from kol_noter_store.services.conflict_resolver import (
    ConflictData,
    ConflictResolution,
    ConflictResolver,
)
from tests.fakes import FIXED_TS, build_note

NOTE_PATH = "work-stuff/alpha/meeting-notes.md"


def _event(change_type=ChangeType.UPDATED, item_type=ItemType.NOTE, timestamp=FIXED_TS + 500):
    return ExternalChangeEvent(type=change_type, path=NOTE_PATH, item_type=item_type, timestamp=timestamp)


@pytest.fixture
def edited_vault(vault_with_project):
    """Vault whose note file was rewritten by another program."""
    vault_with_project.save_note(build_note())
    file_path = vault_with_project.vault_path / NOTE_PATH
    text = file_path.read_text()
    file_path.write_text(text.replace("Discussed the roadmap.", "Edited elsewhere."))
    return vault_with_project


@pytest.fixture
def local_note():
    return build_note(content="Edited here.", updated_at=FIXED_TS + 100)


class TestNewer:
    def _conflict(self, local_ts, external_ts):
        return ConflictData(
            note_id="n", path=NOTE_PATH, title="T", local_content="a",
            local_timestamp=local_ts, external_content="b", external_timestamp=external_ts,
        )

    def test_external_newer(self):
        assert self._conflict(140, 150).newer == "external"

    def test_local_newer(self):
        assert self._conflict(160, 150).newer == "local"

    def test_tie_counts_as_external(self):
        assert self._conflict(150, 150).newer == "external"


class TestDetect:
    def test_conflict_packaged(self, edited_vault, local_note):
        conflict = ConflictResolver(edited_vault).detect(_event(), local_note, last_synced_at=FIXED_TS)
        assert conflict is not None
        assert conflict.note_id == "note-1"
        assert "Edited elsewhere." in conflict.external_content
        assert "Edited here." in conflict.local_content
        assert conflict.local_timestamp == FIXED_TS + 100
        assert conflict.external_timestamp == FIXED_TS + 500
        assert conflict.newer == "external"

    def test_clean_local_copy(self, edited_vault):
        clean = build_note(updated_at=FIXED_TS)
        assert ConflictResolver(edited_vault).detect(_event(), clean, last_synced_at=FIXED_TS) is None

    def test_no_local_copy(self, edited_vault):
        assert ConflictResolver(edited_vault).detect(_event(), None, last_synced_at=FIXED_TS) is None

    def test_equal_contents(self, edited_vault):
        same = build_note(content="Edited elsewhere.", updated_at=FIXED_TS + 100)
        assert ConflictResolver(edited_vault).detect(_event(), same, last_synced_at=FIXED_TS) is None

    @pytest.mark.parametrize(
        "change_type,item_type",
        [
            (ChangeType.CREATED, ItemType.NOTE),
            (ChangeType.DELETED, ItemType.NOTE),
            (ChangeType.UPDATED, ItemType.PROJECT),
        ],
    )
    def test_other_events_ignored(self, edited_vault, local_note, change_type, item_type):
        event = _event(change_type=change_type, item_type=item_type)
        assert ConflictResolver(edited_vault).detect(event, local_note, last_synced_at=FIXED_TS) is None


class TestResolve:
    @pytest.fixture
    def conflict(self, edited_vault, local_note):
        return ConflictResolver(edited_vault).detect(_event(), local_note, last_synced_at=FIXED_TS)

    def test_keep_local(self, edited_vault, local_note, conflict):
        outcome = ConflictResolver(edited_vault).resolve(conflict, ConflictResolution.KEEP_LOCAL, local_note)
        assert outcome.note == local_note
        assert outcome.backup_path is None
        assert edited_vault.read_note_file(NOTE_PATH).content == "Edited here."

    def test_keep_external(self, edited_vault, local_note, conflict):
        outcome = ConflictResolver(edited_vault).resolve(conflict, "keep-external", local_note)
        assert outcome.resolution == ConflictResolution.KEEP_EXTERNAL
        assert outcome.note.content == "Edited elsewhere."
        assert "Edited elsewhere." in edited_vault.read_file(NOTE_PATH)

    def test_keep_both(self, edited_vault, local_note, conflict):
        outcome = ConflictResolver(edited_vault).resolve(conflict, ConflictResolution.KEEP_BOTH, local_note)
        assert outcome.backup_path == f".kol-noter/conflicts/work-stuff/alpha/meeting-notes.{FIXED_TS + 500}.md"
        backup = edited_vault.vault_path / outcome.backup_path
        assert backup.read_text() == conflict.external_content
        assert edited_vault.read_note_file(NOTE_PATH).content == "Edited here."
        # The backup never shows up as a note
        assert [n.id for n in edited_vault.load_all().notes] == ["note-1"]

    def test_unknown_resolution(self, edited_vault, local_note, conflict):
        with pytest.raises(ValueError):
            ConflictResolver(edited_vault).resolve(conflict, "merge", local_note)
