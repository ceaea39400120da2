"""Data models for the Kol Noter storage layer.

Plain pydantic definitions for the System -> Project -> Note hierarchy and
its value-typed children. Models carry no storage behavior. Field names are
snake_case in Python and dump with camelCase aliases so that serialized
snapshots keep the application's JSON shape.
"""

import os
import re
import threading
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, ValidationInfo, field_validator
from pydantic.alias_generators import to_camel

from kol_noter_store.utils import now_ms

# Characters that would let an id escape its directory when used as a filename
_UNSAFE_ID_PATTERN = re.compile(r"[/\\\x00]")


def validate_entity_id(value: str, field_name: str = "id") -> str:
    """Validate that an id is safe to use as a filename component.

    Raises:
        ValueError: If the id is empty or could traverse out of a directory.
    """
    if not value or not value.strip():
        raise ValueError(f"{field_name} cannot be empty")
    if ".." in value:
        raise ValueError(f"{field_name} cannot contain '..' (path traversal)")
    if _UNSAFE_ID_PATTERN.search(value):
        raise ValueError(f"{field_name} cannot contain path separators")
    return value


_id_lock = threading.Lock()
_last_timestamp = 0
_counter = (os.getpid() * 7) % 1_000  # PID-based seed prevents multiprocess collisions


def generate_id(prefix: str = "") -> str:
    """Generate a unique, time-ordered id such as ``note-1718000000000123``.

    Millisecond timestamp followed by a 3-digit counter that increments
    within the same millisecond.
    """
    global _last_timestamp, _counter

    with _id_lock:
        current = now_ms()
        if current == _last_timestamp:
            _counter = (_counter + 1) % 1_000
        else:
            _last_timestamp = current
            _counter = (os.getpid() * 7) % 1_000
        body = f"{current}{_counter:03d}"
    return f"{prefix}-{body}" if prefix else body


class EditorType(str, Enum):
    """How a note's content is authored and stored."""

    STANDARD = "standard"  # Markdown string
    MODULAR = "modular"  # Ordered block list
    VISUAL = "visual"  # Flowchart node list


class BlockType(str, Enum):
    HEADING = "heading"
    PARAGRAPH = "paragraph"
    CODE = "code"
    LIST = "list"
    IMAGE = "image"
    SECTION = "section"


class HealthStatus(str, Enum):
    GOOD = "good"
    WARNING = "warning"
    CRITICAL = "critical"


class PriorityLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ItemStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    BLOCKED = "blocked"


class ChangeType(str, Enum):
    """Filesystem event classification emitted by the watcher."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class ItemType(str, Enum):
    NOTE = "note"
    SYSTEM = "system"
    PROJECT = "project"


class _Model(BaseModel):
    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "validate_assignment": True,
        "extra": "ignore",
    }

    def to_json_dict(self) -> Dict[str, Any]:
        """Dump with camelCase keys, dropping unset optional values."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ItemMetrics(_Model):
    """Status metrics shown on systems, projects and notes."""

    health: Optional[HealthStatus] = None
    priority: Optional[PriorityLevel] = None
    lead: Optional[str] = None
    target_date: Optional[str] = None
    status: Optional[ItemStatus] = None


class Attachment(_Model):
    """A file, image or link attached to a System or Project."""

    id: str
    type: Literal["image", "file", "link"] = "file"
    url: str = Field(default="", description="Inline data URL for uploads, external URL for links")
    name: str
    created_at: int = Field(default_factory=now_ms)
    size: Optional[int] = None
    mime_type: Optional[str] = None


class Photo(_Model):
    id: str
    name: str
    data_url: str = ""
    added_at: int = Field(default_factory=now_ms)


class VoiceRecording(_Model):
    id: str
    name: str
    data_url: str = ""
    duration: Optional[str] = None
    added_at: int = Field(default_factory=now_ms)


class SavedLink(_Model):
    id: str
    url: str
    title: Optional[str] = None
    auto_extracted: Optional[bool] = None
    added_at: int = Field(default_factory=now_ms)


class Contact(_Model):
    id: str
    name: str
    role: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    socials: Optional[str] = None
    image_url: Optional[str] = None


class Reminder(_Model):
    date: str
    text: str


class BlockMetadata(_Model):
    level: Optional[int] = None
    language: Optional[str] = None
    list_type: Optional[Literal["bullet", "numbered"]] = None
    columns: Optional[Literal[1, 2]] = None


class Block(_Model):
    """One block of a modular note."""

    id: str
    type: BlockType
    content: str = ""
    metadata: Optional[BlockMetadata] = None


class VisualNode(_Model):
    """One flowchart node of a visual note."""

    id: str
    type: Literal["start", "process", "decision", "end"] = "process"
    label: str = ""
    x: float = 0
    y: float = 0
    connections: Optional[List[str]] = None


NoteContent = Union[str, List[Block], List[VisualNode]]


class _Container(_Model):
    """Fields shared by Systems and Projects."""

    id: str
    name: str
    description: Optional[str] = None
    color: Optional[str] = None
    icon: Optional[str] = None
    detail_notes: Optional[str] = None
    custom_type: Optional[str] = None
    custom_field1: Optional[str] = None
    custom_field2: Optional[str] = None
    custom_field3: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    tag_colors: Dict[str, str] = Field(default_factory=dict)
    attachments: List[Attachment] = Field(default_factory=list)
    photos: List[Photo] = Field(default_factory=list)
    voice_recordings: List[VoiceRecording] = Field(default_factory=list)
    links: List[SavedLink] = Field(default_factory=list)
    contacts: List[Contact] = Field(default_factory=list)
    mentions: List[str] = Field(default_factory=list)
    reminders: List[Reminder] = Field(default_factory=list)
    metrics: Optional[ItemMetrics] = None
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        return validate_entity_id(v)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Name cannot be empty")
        return v


class Project(_Container):
    """A project, owned by exactly one System."""


class System(_Container):
    """Root container. Owns its Projects."""

    projects: List[Project] = Field(default_factory=list)

    def get_project(self, project_id: str) -> Optional[Project]:
        for project in self.projects:
            if project.id == project_id:
                return project
        return None


class Note(_Model):
    """A note. ``system_id``/``project_id`` are weak references, looked up not owned."""

    id: str
    system_id: str
    project_id: str
    title: str = "Untitled"
    preview: str = ""
    date: str = ""
    editor_type: EditorType = EditorType.STANDARD
    content: NoteContent = ""
    favorite: bool = False
    color: Optional[str] = None
    icon: Optional[str] = None
    cover_photo_id: Optional[str] = None
    custom_type: Optional[str] = None
    custom_field1: Optional[str] = None
    custom_field2: Optional[str] = None
    custom_field3: Optional[str] = None
    detail_notes: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    tag_colors: Dict[str, str] = Field(default_factory=dict)
    attachments: Dict[str, str] = Field(
        default_factory=dict, description="filename -> payload reference"
    )
    photos: List[Photo] = Field(default_factory=list)
    voice_recordings: List[VoiceRecording] = Field(default_factory=list)
    links: List[SavedLink] = Field(default_factory=list)
    contacts: List[Contact] = Field(default_factory=list)
    pages: List[Dict[str, Any]] = Field(default_factory=list)
    metrics: Optional[ItemMetrics] = None
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        return validate_entity_id(v)

    @field_validator("content", mode="before")
    @classmethod
    def coerce_content(cls, v: Any, info: ValidationInfo) -> Any:
        """Pick the list item model from the editor type instead of guessing."""
        if isinstance(v, str) or not isinstance(v, list):
            return v
        editor_type = info.data.get("editor_type", EditorType.STANDARD)
        if editor_type == EditorType.VISUAL:
            return [VisualNode.model_validate(item) if isinstance(item, dict) else item for item in v]
        return [Block.model_validate(item) if isinstance(item, dict) else item for item in v]


class TrashEntry(_Model):
    """A soft-deleted note, recoverable until purged."""

    id: str
    note: Note
    deleted_at: int = Field(default_factory=now_ms)


class ExternalChangeEvent(BaseModel):
    """A change made to vault files outside this application. Never persisted."""

    type: ChangeType
    path: str = Field(..., description="Path relative to the vault root, '/' separated")
    item_type: ItemType
    timestamp: int = Field(default_factory=now_ms)

    model_config = {"frozen": True}

    @property
    def kind(self) -> str:
        """Combined kind such as ``note-updated``."""
        return f"{self.item_type.value}-{self.type.value}"


def flatten_content(content: NoteContent) -> str:
    """Flatten note content into plain text for indexing and previews."""
    if isinstance(content, str):
        return content
    parts = []
    for item in content:
        if isinstance(item, Block):
            parts.append(item.content)
        elif isinstance(item, VisualNode):
            parts.append(item.label)
    return " ".join(p for p in parts if p)


class SearchDocument(BaseModel):
    """Read projection of a Note/System/Project for full-text indexing."""

    id: str
    type: ItemType
    title: str
    content: str = ""
    tags: List[str] = Field(default_factory=list)
    system_id: Optional[str] = None
    project_id: Optional[str] = None
    updated_at: int = 0

    @classmethod
    def from_note(cls, note: Note) -> "SearchDocument":
        return cls(
            id=note.id,
            type=ItemType.NOTE,
            title=note.title,
            content=flatten_content(note.content),
            tags=list(note.tags),
            system_id=note.system_id,
            project_id=note.project_id,
            updated_at=note.updated_at,
        )

    @classmethod
    def from_system(cls, system: System) -> "SearchDocument":
        return cls(
            id=system.id,
            type=ItemType.SYSTEM,
            title=system.name,
            content=_describe(system),
            tags=list(system.tags),
            system_id=system.id,
            updated_at=system.updated_at,
        )

    @classmethod
    def from_project(cls, project: Project, system_id: str) -> "SearchDocument":
        return cls(
            id=project.id,
            type=ItemType.PROJECT,
            title=project.name,
            content=_describe(project),
            tags=list(project.tags),
            system_id=system_id,
            project_id=project.id,
            updated_at=project.updated_at,
        )


def _describe(item: _Container) -> str:
    return " ".join(p for p in (item.description, item.detail_notes) if p)
