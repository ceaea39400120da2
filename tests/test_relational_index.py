"""Tests for the SQLite relational index."""

import pytest
from sqlalchemy import text

from kol_noter_store.exceptions import ErrorCode, SearchIndexError
from kol_noter_store.models.db_models import SCHEMA_VERSION, init_db, run_migrations
from kol_noter_store.models.schema import TrashEntry
from kol_noter_store.storage.base import VaultSnapshot
from kol_noter_store.storage.relational_index import RelationalIndex
from tests.fakes import build_modular_note, build_note, build_project, build_system


def _snapshot():
    systems = [
        build_system("sys-1", "Work", tags=["job"], projects=[build_project("p1", "One"), build_project("p2", "Two")]),
        build_system("sys-2", "Home", projects=[build_project("p3", "Three", tags=["job"])]),
    ]
    notes = [
        build_note("n1", "Alpha note", system_id="sys-1", project_id="p1", tags=["job", "q3"], updated_at=3),
        build_note("n2", "Beta note", system_id="sys-1", project_id="p2", updated_at=2),
        build_note("n3", "Gamma 100% done", system_id="sys-2", project_id="p3", tags=["q3"], updated_at=1),
        build_modular_note("n4"),
    ]
    trash = [TrashEntry(id="t1", note=build_note("t1", "Gone"), deleted_at=9)]
    return VaultSnapshot(systems=systems, notes=notes, trash=trash)


@pytest.fixture
def populated_index(relational_index):
    relational_index.full_reindex(_snapshot())
    return relational_index


class TestLifecycle:
    def test_schema_version_recorded(self, relational_index):
        assert relational_index.get_schema_version() == SCHEMA_VERSION

    def test_closed_index_raises(self):
        index = RelationalIndex()
        with pytest.raises(SearchIndexError) as exc_info:
            index.get_note("x")
        assert exc_info.value.code == ErrorCode.INDEX_FAILED

    def test_reopen_replaces_engine(self, temp_vault_dir):
        index = RelationalIndex()
        index.open(str(temp_vault_dir / "a.db"))
        index.upsert_note(build_note())
        index.open(str(temp_vault_dir / "b.db"))
        assert index.get_note("note-1") is None
        index.open(str(temp_vault_dir / "a.db"))
        assert index.get_note("note-1").title == "Meeting Notes"
        index.close()
        assert not index.is_open

    def test_migration_adds_missing_column(self, temp_vault_dir):
        db_path = str(temp_vault_dir / "old.db")
        engine = init_db(db_path)
        with engine.begin() as conn:
            conn.execute(text("DROP TABLE notes"))
            conn.execute(
                text(
                    "CREATE TABLE notes (id VARCHAR PRIMARY KEY, system_id VARCHAR NOT NULL, "
                    "project_id VARCHAR NOT NULL, title VARCHAR NOT NULL, preview TEXT, date VARCHAR, "
                    "editor_type VARCHAR NOT NULL, content_json TEXT, favorite INTEGER, color VARCHAR, "
                    "icon VARCHAR, cover_photo_id VARCHAR, custom_type VARCHAR, custom_field1 TEXT, "
                    "custom_field2 TEXT, custom_field3 TEXT, detail_notes TEXT, tags_json TEXT, "
                    "tag_colors_json TEXT, attachments_json TEXT, photos_json TEXT, "
                    "voice_recordings_json TEXT, links_json TEXT, contacts_json TEXT, metrics_json TEXT, "
                    "created_at INTEGER NOT NULL, updated_at INTEGER NOT NULL)"
                )
            )
            conn.execute(text("DELETE FROM _meta"))
        assert run_migrations(engine) == SCHEMA_VERSION
        # Idempotent
        assert run_migrations(engine) == SCHEMA_VERSION
        engine.dispose()

        index = RelationalIndex()
        index.open(db_path)
        index.upsert_note(build_note(pages=[{"id": "page-1"}]))
        assert index.get_note("note-1").pages == [{"id": "page-1"}]
        index.close()


class TestUpserts:
    def test_upsert_is_idempotent(self, relational_index):
        relational_index.upsert_system(build_system())
        relational_index.upsert_project("sys-1", build_project())
        note = build_note(tags=["a", "b"])
        relational_index.upsert_note(note)
        relational_index.upsert_note(note)
        counts = relational_index.count_rows()
        assert counts["notes"] == 1
        assert counts["entity_tags"] == 2

    def test_duplicate_tags_stored_once(self, relational_index):
        relational_index.upsert_note(build_note(tags=["a", "a", "b"]))
        assert relational_index.get_tags_with_counts() == {"a": 1, "b": 1}

    def test_retag_replaces_membership(self, relational_index):
        relational_index.upsert_note(build_note(tags=["old"]))
        relational_index.upsert_note(build_note(tags=["new"]))
        assert relational_index.get_tags_with_counts() == {"new": 1}

    def test_resaving_system_keeps_projects(self, relational_index):
        relational_index.upsert_system(build_system())
        relational_index.upsert_project("sys-1", build_project())
        relational_index.upsert_system(build_system(name="Renamed"))
        assert relational_index.count_rows()["projects"] == 1

    def test_note_fields_survive(self, relational_index):
        note = build_modular_note()
        relational_index.upsert_note(note)
        assert relational_index.get_note("note-mod") == note


class TestDeletes:
    def test_delete_system_cascades(self, populated_index):
        populated_index.delete_system("sys-1")
        counts = populated_index.count_rows()
        assert counts["systems"] == 1
        assert counts["projects"] == 1
        assert [n.id for n in populated_index.get_recent_notes(10)] == ["n3"]
        assert populated_index.get_entity_ids_by_tag("job") == ["p3"]

    def test_delete_project(self, populated_index):
        populated_index.delete_project("p1")
        assert populated_index.get_note("n1") is None
        assert populated_index.get_note("n2") is not None
        assert "n1" not in populated_index.get_entity_ids_by_tag("q3")

    def test_trash_rows(self, populated_index):
        populated_index.upsert_trash_entry(TrashEntry(id="t2", note=build_note("t2"), deleted_at=10))
        assert populated_index.count_rows()["trash"] == 2
        populated_index.delete_trash_entry("t1")
        assert populated_index.count_rows()["trash"] == 1
        populated_index.clear_trash()
        assert populated_index.count_rows()["trash"] == 0

    def test_clear(self, populated_index):
        populated_index.clear()
        assert set(populated_index.count_rows().values()) == {0}


class TestFullReindex:
    def test_counts(self, relational_index):
        counts = relational_index.full_reindex(_snapshot())
        assert counts == {"systems": 2, "projects": 3, "notes": 4, "trash": 1}

    def test_reindex_is_deterministic(self, relational_index):
        relational_index.full_reindex(_snapshot())
        first = relational_index.dump_tables()
        relational_index.full_reindex(_snapshot())
        assert relational_index.dump_tables() == first

        other = RelationalIndex()
        other.open(":memory:")
        other.full_reindex(_snapshot())
        assert other.dump_tables() == first
        other.close()

    def test_reindex_drops_stale_rows(self, populated_index):
        populated_index.upsert_note(build_note("stale"))
        populated_index.full_reindex(_snapshot())
        assert populated_index.get_note("stale") is None


class TestQueries:
    def test_notes_by_project_newest_first(self, populated_index):
        populated_index.upsert_note(build_note("n5", system_id="sys-1", project_id="p1", updated_at=7))
        notes = populated_index.get_notes_by_project("sys-1", "p1")
        assert [n.id for n in notes] == ["n5", "n1"]

    def test_recent_notes_limit(self, populated_index):
        recent = populated_index.get_recent_notes(limit=2)
        assert len(recent) == 2
        assert recent[0].updated_at >= recent[1].updated_at

    def test_entity_ids_by_tag(self, populated_index):
        assert populated_index.get_entity_ids_by_tag("job") == ["n1", "p3", "sys-1"]
        assert populated_index.get_entity_ids_by_tag("job", entity_type="note") == ["n1"]

    def test_tags_with_counts(self, populated_index):
        assert populated_index.get_tags_with_counts() == {"job": 3, "q3": 2}

    def test_search_titles(self, populated_index):
        assert [n.id for n in populated_index.search_titles("NOTE")] == ["n1", "n2"]

    def test_search_titles_escapes_wildcards(self, populated_index):
        assert [n.id for n in populated_index.search_titles("100%")] == ["n3"]
        assert populated_index.search_titles("_") == []
