"""Tests for the filesystem vault adapter."""

import json
import os

import pytest

from kol_noter_store.exceptions import (
    EntityNotFoundError,
    ErrorCode,
    SerializationError,
    VaultError,
)
from kol_noter_store.models.schema import Photo, TrashEntry
from kol_noter_store.storage.vault_adapter import VaultAdapter, is_valid_vault
from tests.fakes import (
    build_modular_note,
    build_note,
    build_project,
    build_system,
    build_visual_note,
    seed,
)


class TestVaultLifecycle:
    def test_create_initializes_config(self, temp_vault_dir):
        adapter = VaultAdapter.create(temp_vault_dir)
        assert is_valid_vault(temp_vault_dir)
        metadata = adapter.read_vault_metadata()
        assert metadata["version"] == "1.0.0"
        assert (temp_vault_dir / ".kol-noter" / "trash").is_dir()
        id_map = json.loads((temp_vault_dir / ".kol-noter" / "id-map.json").read_text())
        assert id_map == {"notes": {}, "systems": {}, "projects": {}}

    def test_create_on_existing_vault_opens_it(self, vault_with_project):
        again = VaultAdapter.create(vault_with_project.vault_path)
        assert [s.id for s in again.load_all().systems] == ["sys-1"]

    def test_open_missing_directory(self, temp_vault_dir):
        with pytest.raises(VaultError) as exc_info:
            VaultAdapter.open(temp_vault_dir / "nowhere")
        assert exc_info.value.code == ErrorCode.VAULT_NOT_FOUND

    def test_open_plain_directory(self, temp_vault_dir):
        with pytest.raises(VaultError) as exc_info:
            VaultAdapter.open(temp_vault_dir)
        assert exc_info.value.code == ErrorCode.VAULT_INVALID

    def test_open_unreadable_metadata(self, temp_vault_dir):
        (temp_vault_dir / ".kol-noter").mkdir()
        (temp_vault_dir / ".kol-noter" / "config.json").write_text("{not json")
        with pytest.raises(VaultError) as exc_info:
            VaultAdapter.open(temp_vault_dir)
        assert exc_info.value.code == ErrorCode.VAULT_INVALID

    @pytest.mark.skipif(os.geteuid() == 0, reason="root ignores permissions")
    def test_open_without_permission(self, vault_adapter):
        os.chmod(vault_adapter.vault_path, 0)
        try:
            with pytest.raises(VaultError) as exc_info:
                VaultAdapter.open(vault_adapter.vault_path)
            assert exc_info.value.code == ErrorCode.VAULT_PERMISSION_DENIED
        finally:
            os.chmod(vault_adapter.vault_path, 0o755)


class TestFolders:
    def test_layout(self, vault_with_project):
        root = vault_with_project.vault_path
        assert (root / "work-stuff" / "system.meta").is_file()
        assert (root / "work-stuff" / "alpha" / "project.meta").is_file()
        assert vault_with_project.id_map["systems"] == {"sys-1": "work-stuff"}
        assert vault_with_project.id_map["projects"] == {"proj-1": "work-stuff/alpha"}

    def test_slug_collisions_get_suffix(self, vault_adapter):
        vault_adapter.save_system(build_system("a", "Same Name"))
        vault_adapter.save_system(build_system("b", "Same Name"))
        assert vault_adapter.id_map["systems"] == {"a": "same-name", "b": "same-name-1"}

    def test_resave_keeps_suffixed_folder(self, vault_adapter):
        vault_adapter.save_system(build_system("a", "Same Name"))
        vault_adapter.save_system(build_system("b", "Same Name"))
        vault_adapter.save_system(build_system("b", "Same Name", description="changed"))
        assert vault_adapter.id_map["systems"]["b"] == "same-name-1"

    def test_rename_system_moves_folder_and_children(self, vault_with_project):
        vault_with_project.save_note(build_note())
        vault_with_project.save_system(build_system(name="Day Job"))
        root = vault_with_project.vault_path
        assert not (root / "work-stuff").exists()
        assert (root / "day-job" / "alpha" / "meeting-notes.md").is_file()
        assert vault_with_project.note_path("note-1") == "day-job/alpha/meeting-notes.md"
        assert vault_with_project.load_all().notes[0].id == "note-1"

    def test_move_project_to_other_system(self, vault_with_project):
        vault_with_project.save_note(build_note())
        vault_with_project.save_system(build_system("sys-2", "Side"))
        vault_with_project.save_project("sys-2", build_project())
        root = vault_with_project.vault_path
        assert (root / "side" / "alpha" / "meeting-notes.md").is_file()
        assert not (root / "work-stuff" / "alpha").exists()
        note = vault_with_project.load_all().notes[0]
        assert note.system_id == "sys-2"

    def test_project_for_unknown_system(self, vault_adapter):
        with pytest.raises(EntityNotFoundError):
            vault_adapter.save_project("ghost", build_project())

    def test_delete_project_removes_tree(self, vault_with_project):
        vault_with_project.save_note(build_note())
        vault_with_project.delete_project("proj-1")
        assert not (vault_with_project.vault_path / "work-stuff" / "alpha").exists()
        assert vault_with_project.id_map["notes"] == {}
        assert vault_with_project.load_all().systems[0].projects == []

    def test_delete_system_removes_tree(self, vault_with_project):
        vault_with_project.delete_system("sys-1")
        assert not (vault_with_project.vault_path / "work-stuff").exists()
        assert vault_with_project.load_all().systems == []


class TestNotes:
    def test_round_trip_standard(self, vault_with_project):
        note = build_note(tags=["work"])
        vault_with_project.save_note(note)
        loaded = vault_with_project.load_all().notes
        assert len(loaded) == 1
        assert loaded[0].id == "note-1"
        assert loaded[0].content == note.content
        assert loaded[0].tags == ["work"]
        assert loaded[0].updated_at == note.updated_at

    def test_round_trip_modular_and_visual(self, vault_with_project):
        modular, visual = build_modular_note(), build_visual_note()
        vault_with_project.save_note(modular)
        vault_with_project.save_note(visual)
        project_dir = vault_with_project.vault_path / "work-stuff" / "alpha"
        assert (project_dir / "release-flow.visual.json").is_file()
        loaded = {n.id: n for n in vault_with_project.load_all().notes}
        assert loaded["note-mod"].content == modular.content
        assert loaded["note-vis"].content == visual.content

    def test_retitle_moves_file_and_assets(self, vault_with_project):
        vault_with_project.save_note(build_note())
        vault_with_project.save_attachment("note-1", "pic.png", b"png")
        vault_with_project.save_note(build_note(title="Kickoff"))
        project_dir = vault_with_project.vault_path / "work-stuff" / "alpha"
        assert not (project_dir / "meeting-notes.md").exists()
        assert (project_dir / "kickoff.md").is_file()
        assert (project_dir / "assets" / "kickoff" / "pic.png").read_bytes() == b"png"

    def test_same_title_gets_suffix(self, vault_with_project):
        vault_with_project.save_note(build_note("a"))
        vault_with_project.save_note(build_note("b"))
        assert vault_with_project.note_path("b") == "work-stuff/alpha/meeting-notes-1.md"
        vault_with_project.save_note(build_note("b", content="edited"))
        assert vault_with_project.note_path("b") == "work-stuff/alpha/meeting-notes-1.md"

    def test_save_note_in_unknown_project(self, vault_with_project):
        with pytest.raises(EntityNotFoundError):
            vault_with_project.save_note(build_note(project_id="ghost"))

    def test_writes_leave_no_staging_files(self, vault_with_project):
        vault_with_project.save_note(build_note())
        leftovers = [p for p in vault_with_project.vault_path.rglob("*.tmp")]
        assert leftovers == []

    def test_hand_written_note_gets_stable_id(self, vault_with_project):
        path = vault_with_project.vault_path / "work-stuff" / "alpha" / "my-idea.md"
        path.write_text("Just a thought\n")
        first = vault_with_project.load_all().notes[0]
        second = vault_with_project.load_all().notes[0]
        assert first.id.startswith("note-")
        assert first.id == second.id
        assert first.title == "My Idea"
        assert vault_with_project.note_path(first.id) == "work-stuff/alpha/my-idea.md"

    def test_ignored_files_and_folders(self, vault_with_project):
        root = vault_with_project.vault_path
        (root / "work-stuff" / "alpha" / "_draft.md").write_text("skip")
        (root / "work-stuff" / "alpha" / ".hidden.md").write_text("skip")
        (root / "loose-folder").mkdir()
        (root / "loose-folder" / "note.md").write_text("no system.meta here")
        snapshot = vault_with_project.load_all()
        assert snapshot.notes == []
        assert [s.id for s in snapshot.systems] == ["sys-1"]

    def test_corrupt_note_aborts_load(self, vault_with_project):
        path = vault_with_project.vault_path / "work-stuff" / "alpha" / "bad.md"
        path.write_text("---\nid: [oops\n---\nbody")
        with pytest.raises(SerializationError):
            vault_with_project.load_all()

    def test_id_map_rebuilt_from_tree(self, vault_with_project):
        vault_with_project.save_note(build_note())
        (vault_with_project.vault_path / ".kol-noter" / "id-map.json").write_text("garbage")
        reopened = VaultAdapter.open(vault_with_project.vault_path)
        assert reopened.id_map["notes"] == {}
        reopened.load_all()
        assert reopened.note_path("note-1") == "work-stuff/alpha/meeting-notes.md"

    def test_note_size(self, vault_with_project):
        vault_with_project.save_note(build_note())
        assert vault_with_project.get_note_size("note-1") > 0
        with pytest.raises(EntityNotFoundError):
            vault_with_project.get_note_size("ghost")


class TestTrash:
    def test_delete_moves_snapshot_to_trash(self, vault_with_project):
        vault_with_project.save_note(build_note())
        entry = vault_with_project.delete_note("note-1")
        root = vault_with_project.vault_path
        assert entry.note.title == "Meeting Notes"
        assert not (root / "work-stuff" / "alpha" / "meeting-notes.md").exists()
        assert (root / ".kol-noter" / "trash" / "note-1.json").is_file()
        snapshot = vault_with_project.load_all()
        assert snapshot.notes == []
        assert [t.id for t in snapshot.trash] == ["note-1"]

    def test_restore(self, vault_with_project):
        vault_with_project.save_note(build_note())
        vault_with_project.delete_note("note-1")
        restored = vault_with_project.restore_note("note-1")
        assert restored.id == "note-1"
        snapshot = vault_with_project.load_all()
        assert [n.id for n in snapshot.notes] == ["note-1"]
        assert snapshot.trash == []

    def test_restore_unknown(self, vault_with_project):
        with pytest.raises(EntityNotFoundError):
            vault_with_project.restore_note("ghost")

    def test_trash_sorted_newest_first(self, vault_with_project):
        vault_with_project.save_trash_entry(TrashEntry(id="old", note=build_note("old"), deleted_at=1))
        vault_with_project.save_trash_entry(TrashEntry(id="new", note=build_note("new"), deleted_at=2))
        assert [t.id for t in vault_with_project.load_all().trash] == ["new", "old"]

    def test_permanent_delete_and_empty(self, vault_with_project):
        seed_ids = ["a", "b"]
        for nid in seed_ids:
            vault_with_project.save_note(build_note(nid, title=f"Note {nid}"))
            vault_with_project.delete_note(nid)
        vault_with_project.permanently_delete_note("a")
        assert [t.id for t in vault_with_project.load_all().trash] == ["b"]
        vault_with_project.empty_trash()
        assert vault_with_project.load_all().trash == []


class TestAttachments:
    def test_save_returns_note_relative_reference(self, vault_with_project):
        vault_with_project.save_note(build_note())
        ref = vault_with_project.save_attachment("note-1", "pic.png", b"\x89PNG")
        assert ref == "assets/meeting-notes/pic.png"
        path = vault_with_project.vault_path / "work-stuff" / "alpha" / ref
        assert path.read_bytes() == b"\x89PNG"

    def test_get_returns_data_url(self, vault_with_project):
        vault_with_project.save_note(build_note())
        vault_with_project.save_attachment("note-1", "pic.png", b"\x89PNG")
        assert vault_with_project.get_attachment("note-1", "pic.png") == "data:image/png;base64,iVBORw=="

    def test_loose_asset_files_are_attached(self, vault_with_project):
        vault_with_project.save_note(build_note())
        vault_with_project.save_attachment("note-1", "pic.png", b"x")
        note = vault_with_project.load_all().notes[0]
        assert note.attachments == {"pic.png": "assets/meeting-notes/pic.png"}

    def test_inline_payloads_written_on_save(self, vault_with_project):
        note = build_note(
            attachments={"doc.txt": "data:text/plain;base64,aGk="},
            photos=[Photo(id="p1", name="shot.png", data_url="data:image/png;base64,iVBORw==")],
        )
        vault_with_project.save_note(note)
        assets = vault_with_project.vault_path / "work-stuff" / "alpha" / "assets" / "meeting-notes"
        assert (assets / "doc.txt").read_bytes() == b"hi"
        assert (assets / "shot.png").read_bytes() == b"\x89PNG"
        loaded = vault_with_project.load_all().notes[0]
        assert loaded.attachments == {"doc.txt": "assets/meeting-notes/doc.txt"}
        assert loaded.photos[0].name == "shot.png"

    def test_save_returns_note_as_stored(self, vault_with_project):
        stored = vault_with_project.save_note(
            build_note(
                attachments={"doc.txt": "data:text/plain;base64,aGk="},
                photos=[Photo(id="p1", name="shot.png", data_url="data:image/png;base64,iVBORw==")],
            )
        )
        assert stored.attachments == {"doc.txt": "assets/meeting-notes/doc.txt"}
        assert stored.photos[0].data_url == ""
        assert vault_with_project.load_note("note-1") == stored
        assert vault_with_project.load_all().notes == [stored]

    def test_load_unknown_note(self, vault_with_project):
        with pytest.raises(EntityNotFoundError):
            vault_with_project.load_note("missing")

    def test_delete_note_keeps_assets(self, vault_with_project):
        vault_with_project.save_note(build_note())
        vault_with_project.save_attachment("note-1", "pic.png", b"x")
        vault_with_project.delete_note("note-1")
        assert (
            vault_with_project.vault_path / "work-stuff" / "alpha" / "assets" / "meeting-notes" / "pic.png"
        ).is_file()

    def test_attachment_for_unknown_note(self, vault_with_project):
        with pytest.raises(EntityNotFoundError):
            vault_with_project.save_attachment("ghost", "a.png", b"x")


class TestBulk:
    def test_clear(self, vault_adapter):
        seed(vault_adapter, systems=2, projects=1, notes=1)
        vault_adapter.delete_note("note-1-1-1")
        vault_adapter.clear()
        snapshot = vault_adapter.load_all()
        assert (snapshot.systems, snapshot.notes, snapshot.trash) == ([], [], [])
        assert is_valid_vault(vault_adapter.vault_path)

    def test_write_backup(self, vault_with_project):
        rel = vault_with_project.write_backup("work-stuff/alpha/meeting-notes.md", "old text", 123)
        assert rel == ".kol-noter/conflicts/work-stuff/alpha/meeting-notes.123.md"
        assert (vault_with_project.vault_path / rel).read_text() == "old text"
        # Backups live outside the content tree
        assert vault_with_project.load_all().notes == []
