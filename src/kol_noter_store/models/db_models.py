"""SQLAlchemy database models for the relational index.

The index is a cache of the active storage adapter: every table can be
rebuilt by replaying the adapter's entities. Nested arrays and objects are
stored as JSON text columns rather than normalized child tables.
"""

import json
import logging
from typing import Any, Optional

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    PrimaryKeyConstraint,
    String,
    Text,
    create_engine,
    event,
    inspect,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

# Additive column migrations, keyed by the schema version that introduced them
MIGRATIONS = {
    2: [("notes", "pages_json", "TEXT DEFAULT '[]'")],
}

Base = declarative_base()


class JSONText(TypeDecorator):
    """Codec column: JSON-serializable values stored as TEXT.

    ``None`` stays NULL so that optional blobs (metrics) are distinguishable
    from empty ones.
    """

    impl = Text
    cache_ok = True

    def process_bind_param(self, value: Any, dialect) -> Optional[str]:
        if value is None:
            return None
        return json.dumps(value, ensure_ascii=False)

    def process_result_value(self, value: Optional[str], dialect) -> Any:
        if value is None:
            return None
        return json.loads(value)


class DBMeta(Base):
    """Key/value table holding the schema version."""

    __tablename__ = "_meta"
    key = Column(String, primary_key=True)
    value = Column(Text)


class _ContainerColumns:
    """Columns shared by systems and projects."""

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(Text)
    color = Column(String)
    icon = Column(String)
    detail_notes = Column(Text)
    custom_type = Column(String)
    custom_field1 = Column(Text)
    custom_field2 = Column(Text)
    custom_field3 = Column(Text)
    tags_json = Column(JSONText, default=list)
    tag_colors_json = Column(JSONText, default=dict)
    photos_json = Column(JSONText, default=list)
    voice_recordings_json = Column(JSONText, default=list)
    links_json = Column(JSONText, default=list)
    contacts_json = Column(JSONText, default=list)
    attachments_json = Column(JSONText, default=list)
    metrics_json = Column(JSONText)
    created_at = Column(Integer, nullable=False)
    updated_at = Column(Integer, nullable=False)


class DBSystem(_ContainerColumns, Base):
    """Database model for a system."""

    __tablename__ = "systems"

    def __repr__(self) -> str:
        return f"<System(id='{self.id}', name='{self.name}')>"


class DBProject(_ContainerColumns, Base):
    """Database model for a project. Deleting the system cascades here."""

    __tablename__ = "projects"
    system_id = Column(
        String, ForeignKey("systems.id", ondelete="CASCADE"), nullable=False, index=True
    )

    def __repr__(self) -> str:
        return f"<Project(id='{self.id}', system_id='{self.system_id}', name='{self.name}')>"


class DBNote(Base):
    """Database model for a note."""

    __tablename__ = "notes"
    id = Column(String, primary_key=True)
    system_id = Column(String, nullable=False)
    project_id = Column(String, nullable=False)
    title = Column(String, nullable=False, default="Untitled")
    preview = Column(Text, default="")
    date = Column(String, default="")
    editor_type = Column(String, nullable=False, default="standard")
    content_json = Column(JSONText)
    favorite = Column(Integer, default=0)
    color = Column(String)
    icon = Column(String)
    cover_photo_id = Column(String)
    custom_type = Column(String)
    custom_field1 = Column(Text)
    custom_field2 = Column(Text)
    custom_field3 = Column(Text)
    detail_notes = Column(Text)
    tags_json = Column(JSONText, default=list)
    tag_colors_json = Column(JSONText, default=dict)
    attachments_json = Column(JSONText, default=dict)
    photos_json = Column(JSONText, default=list)
    voice_recordings_json = Column(JSONText, default=list)
    links_json = Column(JSONText, default=list)
    contacts_json = Column(JSONText, default=list)
    pages_json = Column(JSONText, default=list)
    metrics_json = Column(JSONText)
    created_at = Column(Integer, nullable=False)
    updated_at = Column(Integer, nullable=False)

    __table_args__ = (Index("idx_notes_project", "system_id", "project_id"),)

    def __repr__(self) -> str:
        return f"<Note(id='{self.id}', title='{self.title}')>"


Index("idx_notes_updated", DBNote.__table__.c.updated_at.desc())


class DBTrashEntry(Base):
    """Database model for a soft-deleted note snapshot."""

    __tablename__ = "trash"
    id = Column(String, primary_key=True)
    note_json = Column(JSONText, nullable=False)
    deleted_at = Column(Integer, nullable=False)


class DBEntityTag(Base):
    """Denormalized tag membership: (entity_type, entity_id, tag)."""

    __tablename__ = "entity_tags"
    entity_type = Column(String, nullable=False)
    entity_id = Column(String, nullable=False)
    tag = Column(String, nullable=False)

    __table_args__ = (
        PrimaryKeyConstraint("entity_type", "entity_id", "tag"),
        Index("idx_tags_tag", "tag"),
    )


def create_index_engine(db_path: str) -> Engine:
    """Create an engine for the index database.

    ``":memory:"`` gives a private in-memory index shared by every session
    of this engine (used for the embedded backend).
    """
    if db_path == ":memory:":
        engine = create_engine(
            "sqlite://",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        # Watcher callbacks run on timer threads
        engine = create_engine(
            f"sqlite:///{db_path}",
            connect_args={"check_same_thread": False, "timeout": 30},
        )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        # WAL mode: writes go to separate journal, preventing corruption on crash
        cursor.execute("PRAGMA journal_mode=WAL")
        # ON DELETE CASCADE from systems to projects needs this per connection
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine


def init_db(db_path: str) -> Engine:
    """Create the engine, the tables and run pending migrations."""
    engine = create_index_engine(db_path)
    Base.metadata.create_all(engine)
    run_migrations(engine)
    return engine


def get_schema_version(engine: Engine) -> int:
    """Schema version recorded in ``_meta`` (1 when never recorded)."""
    with engine.connect() as conn:
        row = conn.execute(
            text("SELECT value FROM _meta WHERE key = 'schema_version'")
        ).fetchone()
    return int(row[0]) if row else 1


def run_migrations(engine: Engine) -> int:
    """Apply every additive migration newer than the recorded schema version.

    SQLite doesn't support IF NOT EXISTS for ADD COLUMN, so we check
    the schema first and also tolerate "duplicate column" errors. This is
    idempotent and safe to run multiple times.

    Returns:
        The schema version after migrating.
    """
    current = get_schema_version(engine)
    for version in range(current + 1, SCHEMA_VERSION + 1):
        for table, column, ddl in MIGRATIONS.get(version, []):
            columns = [col["name"] for col in inspect(engine).get_columns(table)]
            if column in columns:
                logger.debug(f"Migration v{version}: {table}.{column} already present")
                continue
            try:
                with engine.begin() as conn:
                    conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}"))
                logger.info(f"Migration v{version}: added {table}.{column}")
            except OperationalError as e:
                if "duplicate column" not in str(e).lower():
                    raise
                logger.debug(f"Migration v{version}: {table}.{column} already applied")

    if current != SCHEMA_VERSION:
        with engine.begin() as conn:
            conn.execute(
                text(
                    "INSERT INTO _meta (key, value) VALUES ('schema_version', :v) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value"
                ),
                {"v": str(SCHEMA_VERSION)},
            )
    return SCHEMA_VERSION


def get_session_factory(engine: Engine):
    """Get a session factory for the index database."""
    return sessionmaker(bind=engine)
