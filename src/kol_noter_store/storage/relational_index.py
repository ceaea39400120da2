"""Relational index: a SQLite cache mirroring the active storage adapter."""

import logging
import threading
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, func, insert, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine

from kol_noter_store.exceptions import ErrorCode, SearchIndexError
from kol_noter_store.models.db_models import (
    DBEntityTag,
    DBNote,
    DBProject,
    DBSystem,
    DBTrashEntry,
    get_schema_version,
    get_session_factory,
    init_db,
)
from kol_noter_store.models.schema import Note, Project, System, TrashEntry, _Container
from kol_noter_store.storage.base import VaultSnapshot
from kol_noter_store.utils import escape_like_pattern

logger = logging.getLogger(__name__)

# Delete order respects the projects -> systems foreign key
_TABLES_CHILD_FIRST = (DBEntityTag, DBTrashEntry, DBNote, DBProject, DBSystem)


def _container_row(item: _Container) -> Dict[str, Any]:
    data = item.model_dump(mode="json", by_alias=True)
    return {
        "id": item.id,
        "name": item.name,
        "description": item.description,
        "color": item.color,
        "icon": item.icon,
        "detail_notes": item.detail_notes,
        "custom_type": item.custom_type,
        "custom_field1": item.custom_field1,
        "custom_field2": item.custom_field2,
        "custom_field3": item.custom_field3,
        "tags_json": data["tags"],
        "tag_colors_json": data["tagColors"],
        "photos_json": data["photos"],
        "voice_recordings_json": data["voiceRecordings"],
        "links_json": data["links"],
        "contacts_json": data["contacts"],
        "attachments_json": data["attachments"],
        "metrics_json": data["metrics"],
        "created_at": item.created_at,
        "updated_at": item.updated_at,
    }


def _note_row(note: Note) -> Dict[str, Any]:
    data = note.model_dump(mode="json", by_alias=True)
    return {
        "id": note.id,
        "system_id": note.system_id,
        "project_id": note.project_id,
        "title": note.title,
        "preview": note.preview,
        "date": note.date,
        "editor_type": note.editor_type.value,
        "content_json": data["content"],
        "favorite": 1 if note.favorite else 0,
        "color": note.color,
        "icon": note.icon,
        "cover_photo_id": note.cover_photo_id,
        "custom_type": note.custom_type,
        "custom_field1": note.custom_field1,
        "custom_field2": note.custom_field2,
        "custom_field3": note.custom_field3,
        "detail_notes": note.detail_notes,
        "tags_json": data["tags"],
        "tag_colors_json": data["tagColors"],
        "attachments_json": data["attachments"],
        "photos_json": data["photos"],
        "voice_recordings_json": data["voiceRecordings"],
        "links_json": data["links"],
        "contacts_json": data["contacts"],
        "pages_json": data["pages"],
        "metrics_json": data["metrics"],
        "created_at": note.created_at,
        "updated_at": note.updated_at,
    }


def _row_to_note(row: DBNote) -> Note:
    return Note.model_validate(
        {
            "id": row.id,
            "systemId": row.system_id,
            "projectId": row.project_id,
            "title": row.title,
            "preview": row.preview or "",
            "date": row.date or "",
            "editorType": row.editor_type,
            "content": row.content_json if row.content_json is not None else "",
            "favorite": bool(row.favorite),
            "color": row.color,
            "icon": row.icon,
            "coverPhotoId": row.cover_photo_id,
            "customType": row.custom_type,
            "customField1": row.custom_field1,
            "customField2": row.custom_field2,
            "customField3": row.custom_field3,
            "detailNotes": row.detail_notes,
            "tags": row.tags_json or [],
            "tagColors": row.tag_colors_json or {},
            "attachments": row.attachments_json or {},
            "photos": row.photos_json or [],
            "voiceRecordings": row.voice_recordings_json or [],
            "links": row.links_json or [],
            "contacts": row.contacts_json or [],
            "pages": row.pages_json or [],
            "metrics": row.metrics_json,
            "createdAt": row.created_at,
            "updatedAt": row.updated_at,
        }
    )


class RelationalIndex:
    """Queryable SQLite mirror of every entity plus a tag join table.

    One engine per open vault. ``open`` on a new path disposes the previous
    engine first. Writes are serialized through a lock because watcher
    callbacks and user writes arrive on different threads.
    """

    def __init__(self):
        self.db_path: Optional[str] = None
        self.engine: Optional[Engine] = None
        self.session_factory = None
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self, db_path: str = ":memory:") -> None:
        """Open (or create) the index database and run pending migrations."""
        with self._lock:
            if self.engine is not None:
                self.close()
            self.engine = init_db(db_path)
            self.session_factory = get_session_factory(self.engine)
            self.db_path = db_path
            logger.info(f"Relational index opened at {db_path}")

    def close(self) -> None:
        with self._lock:
            if self.engine is not None:
                self.engine.dispose()
                logger.debug(f"Relational index closed ({self.db_path})")
            self.engine = None
            self.session_factory = None
            self.db_path = None

    @property
    def is_open(self) -> bool:
        return self.engine is not None

    def _session(self):
        if self.session_factory is None:
            raise SearchIndexError("Relational index is not open", code=ErrorCode.INDEX_FAILED)
        return self.session_factory()

    # ------------------------------------------------------------------
    # Incremental upserts
    # ------------------------------------------------------------------

    @staticmethod
    def _upsert(session, model, row: Dict[str, Any]) -> None:
        # ON CONFLICT DO UPDATE keeps the row, so children never cascade away
        stmt = sqlite_insert(model).values(**row)
        stmt = stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={key: stmt.excluded[key] for key in row if key != "id"},
        )
        session.execute(stmt)

    @staticmethod
    def _sync_tags(session, entity_type: str, entity_id: str, tags: Iterable[str]) -> None:
        """Replace the tag membership of one entity (delete then insert)."""
        session.execute(
            delete(DBEntityTag).where(
                DBEntityTag.entity_type == entity_type, DBEntityTag.entity_id == entity_id
            )
        )
        unique_tags = list(dict.fromkeys(tags))
        if unique_tags:
            session.execute(
                insert(DBEntityTag),
                [{"entity_type": entity_type, "entity_id": entity_id, "tag": tag} for tag in unique_tags],
            )

    def upsert_system(self, system: System) -> None:
        with self._lock, self._session() as session:
            self._upsert(session, DBSystem, _container_row(system))
            self._sync_tags(session, "system", system.id, system.tags)
            session.commit()

    def upsert_project(self, system_id: str, project: Project) -> None:
        with self._lock, self._session() as session:
            row = _container_row(project)
            row["system_id"] = system_id
            self._upsert(session, DBProject, row)
            self._sync_tags(session, "project", project.id, project.tags)
            session.commit()

    def upsert_note(self, note: Note) -> None:
        with self._lock, self._session() as session:
            self._upsert(session, DBNote, _note_row(note))
            self._sync_tags(session, "note", note.id, note.tags)
            session.commit()

    def upsert_trash_entry(self, entry: TrashEntry) -> None:
        with self._lock, self._session() as session:
            self._upsert(
                session,
                DBTrashEntry,
                {
                    "id": entry.id,
                    "note_json": entry.note.model_dump(mode="json", by_alias=True),
                    "deleted_at": entry.deleted_at,
                },
            )
            session.commit()

    # ------------------------------------------------------------------
    # Deletes
    # ------------------------------------------------------------------

    def delete_system(self, system_id: str) -> None:
        """Remove a system with its projects (FK cascade) and notes."""
        with self._lock, self._session() as session:
            project_ids = session.scalars(
                select(DBProject.id).where(DBProject.system_id == system_id)
            ).all()
            note_ids = session.scalars(select(DBNote.id).where(DBNote.system_id == system_id)).all()
            session.execute(delete(DBNote).where(DBNote.system_id == system_id))
            session.execute(delete(DBSystem).where(DBSystem.id == system_id))
            self._delete_tags(session, "system", [system_id])
            self._delete_tags(session, "project", project_ids)
            self._delete_tags(session, "note", note_ids)
            session.commit()

    def delete_project(self, project_id: str) -> None:
        with self._lock, self._session() as session:
            note_ids = session.scalars(select(DBNote.id).where(DBNote.project_id == project_id)).all()
            session.execute(delete(DBNote).where(DBNote.project_id == project_id))
            session.execute(delete(DBProject).where(DBProject.id == project_id))
            self._delete_tags(session, "project", [project_id])
            self._delete_tags(session, "note", note_ids)
            session.commit()

    def delete_note(self, note_id: str) -> None:
        with self._lock, self._session() as session:
            session.execute(delete(DBNote).where(DBNote.id == note_id))
            self._delete_tags(session, "note", [note_id])
            session.commit()

    def delete_trash_entry(self, note_id: str) -> None:
        with self._lock, self._session() as session:
            session.execute(delete(DBTrashEntry).where(DBTrashEntry.id == note_id))
            session.commit()

    def clear_trash(self) -> None:
        with self._lock, self._session() as session:
            session.execute(delete(DBTrashEntry))
            session.commit()

    @staticmethod
    def _delete_tags(session, entity_type: str, entity_ids: List[str]) -> None:
        if entity_ids:
            session.execute(
                delete(DBEntityTag).where(
                    DBEntityTag.entity_type == entity_type, DBEntityTag.entity_id.in_(entity_ids)
                )
            )

    # ------------------------------------------------------------------
    # Full reindex
    # ------------------------------------------------------------------

    def clear(self) -> None:
        with self._lock, self._session() as session:
            for model in _TABLES_CHILD_FIRST:
                session.execute(delete(model))
            session.commit()

    def full_reindex(self, snapshot: VaultSnapshot) -> Dict[str, int]:
        """Clear every table and replay ``snapshot`` (systems, projects, notes, trash).

        Runs in one transaction, so a failed replay leaves the previous
        contents in place.
        """
        with self._lock, self._session() as session:
            for model in _TABLES_CHILD_FIRST:
                session.execute(delete(model))
            project_count = 0
            for system in snapshot.systems:
                self._upsert(session, DBSystem, _container_row(system))
                self._sync_tags(session, "system", system.id, system.tags)
            for system in snapshot.systems:
                for project in system.projects:
                    row = _container_row(project)
                    row["system_id"] = system.id
                    self._upsert(session, DBProject, row)
                    self._sync_tags(session, "project", project.id, project.tags)
                    project_count += 1
            for note in snapshot.notes:
                self._upsert(session, DBNote, _note_row(note))
                self._sync_tags(session, "note", note.id, note.tags)
            for entry in snapshot.trash:
                self._upsert(
                    session,
                    DBTrashEntry,
                    {
                        "id": entry.id,
                        "note_json": entry.note.model_dump(mode="json", by_alias=True),
                        "deleted_at": entry.deleted_at,
                    },
                )
            session.commit()

        counts = {
            "systems": len(snapshot.systems),
            "projects": project_count,
            "notes": len(snapshot.notes),
            "trash": len(snapshot.trash),
        }
        logger.info(f"Full reindex complete: {counts}")
        return counts

    # ------------------------------------------------------------------
    # Queries (cache only, never the filesystem)
    # ------------------------------------------------------------------

    def get_note(self, note_id: str) -> Optional[Note]:
        with self._session() as session:
            row = session.get(DBNote, note_id)
            return _row_to_note(row) if row else None

    def get_notes_by_project(self, system_id: str, project_id: str) -> List[Note]:
        with self._session() as session:
            rows = session.scalars(
                select(DBNote)
                .where(DBNote.system_id == system_id, DBNote.project_id == project_id)
                .order_by(DBNote.updated_at.desc(), DBNote.id)
            ).all()
            return [_row_to_note(row) for row in rows]

    def get_recent_notes(self, limit: int = 10) -> List[Note]:
        with self._session() as session:
            rows = session.scalars(
                select(DBNote).order_by(DBNote.updated_at.desc(), DBNote.id).limit(limit)
            ).all()
            return [_row_to_note(row) for row in rows]

    def get_entity_ids_by_tag(self, tag: str, entity_type: Optional[str] = None) -> List[str]:
        query = select(DBEntityTag.entity_id).where(DBEntityTag.tag == tag)
        if entity_type:
            query = query.where(DBEntityTag.entity_type == entity_type)
        with self._session() as session:
            return list(session.scalars(query.order_by(DBEntityTag.entity_id)).all())

    def get_tags_with_counts(self) -> Dict[str, int]:
        with self._session() as session:
            result = session.execute(
                select(DBEntityTag.tag, func.count())
                .group_by(DBEntityTag.tag)
                .order_by(DBEntityTag.tag)
            ).all()
            return {tag: count for tag, count in result}

    def search_titles(self, text: str, limit: int = 50) -> List[Note]:
        """Case-insensitive substring match on note titles."""
        pattern = f"%{escape_like_pattern(text)}%"
        with self._session() as session:
            rows = session.scalars(
                select(DBNote)
                .where(DBNote.title.ilike(pattern, escape="\\"))
                .order_by(DBNote.updated_at.desc(), DBNote.id)
                .limit(limit)
            ).all()
            return [_row_to_note(row) for row in rows]

    def get_schema_version(self) -> int:
        if self.engine is None:
            raise SearchIndexError("Relational index is not open", code=ErrorCode.INDEX_FAILED)
        return get_schema_version(self.engine)

    def count_rows(self) -> Dict[str, int]:
        with self._session() as session:
            return {
                model.__tablename__: session.scalar(select(func.count()).select_from(model))
                for model in reversed(_TABLES_CHILD_FIRST)
            }

    def dump_tables(self) -> Dict[str, List[tuple]]:
        """Every row of every entity table, ordered by primary key."""
        dump = {}
        with self._session() as session:
            for model in reversed(_TABLES_CHILD_FIRST):
                table = model.__table__
                columns = sorted(table.columns, key=lambda c: c.name)
                order = [c for c in table.primary_key.columns]
                rows = session.execute(select(*columns).order_by(*order)).all()
                dump[table.name] = [tuple(row) for row in rows]
        return dump
