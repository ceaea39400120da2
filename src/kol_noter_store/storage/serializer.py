"""Markdown serialization for vault entities.

Handles conversion between System/Project/Note objects and markdown files
with YAML frontmatter. Modular notes are rendered as readable markdown with
block markers so they can be parsed back; visual notes get a readable stub
plus a JSON sidecar holding the flowchart nodes.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional, Tuple, Type, TypeVar

import yaml
from frontmatter.default_handlers import YAMLHandler
from pydantic import ValidationError

from kol_noter_store.exceptions import ErrorCode, SerializationError
from kol_noter_store.models.schema import (
    Block,
    BlockMetadata,
    BlockType,
    EditorType,
    Note,
    Project,
    System,
    VisualNode,
    _Container,
)
from kol_noter_store.utils import iso_to_ms, ms_to_iso

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 100

# <!-- block:<type>:<param>:<id> -->, param may be empty
_BLOCK_MARKER = re.compile(r"^<!--\s*block:(\w+):([^:]*):(.+?)\s*-->$")
_HEADING_LINE = re.compile(r"^(#{1,6})\s+(.*)$")
_LIST_LINE = re.compile(r"^(?:[-*]|\d+\.)\s+")
_IMAGE_LINE = re.compile(r"!\[[^\]]*\]\(([^)]*)\)")
_TITLE_HEADING = re.compile(r"^#\s+(.+)$", re.MULTILINE)
# Opening and closing "---" lines around the YAML header
_FRONTMATTER = re.compile(r"\A---[ \t]*\r?\n(.*?\r?\n)?---[ \t]*(?:\r?\n|\Z)", re.DOTALL)

C = TypeVar("C", bound=_Container)

# Fields that never go to note frontmatter: stored in the body, derived
# from the location on disk, or written to the assets directory.
_NOTE_BODY_FIELDS = {"content", "system_id", "project_id", "attachments"}

# Written even when empty, so loading never re-derives them from the body
_ALWAYS_WRITTEN = {"title", "preview"}


def deslugify(slug: str) -> str:
    """Turn ``my-cool-note`` into ``My Cool Note``."""
    return " ".join(word.capitalize() for word in slug.replace("_", "-").split("-") if word)


def extract_title(markdown: str) -> Optional[str]:
    """First level-one heading, if any."""
    match = _TITLE_HEADING.search(markdown)
    return match.group(1).strip() if match else None


def extract_preview(markdown: str) -> str:
    """Plain-text preview: headings, images and link targets removed."""
    text = re.sub(r"^#+\s+", "", markdown, flags=re.MULTILINE)
    text = _IMAGE_LINE.sub("", text)
    text = re.sub(r"\[([^\]]+)\]\([^)]*\)", r"\1", text)
    return text[:PREVIEW_LENGTH].strip()


class MarkdownSerializer:
    """Parses and serializes vault entities as markdown with frontmatter."""

    # ------------------------------------------------------------------
    # Notes
    # ------------------------------------------------------------------

    def render_note(self, note: Note) -> Tuple[str, Optional[List[Dict[str, Any]]]]:
        """Convert a note to markdown with frontmatter.

        Returns:
            ``(markdown, sidecar)`` where ``sidecar`` is the visual node list
            for visual notes and None otherwise.
        """
        metadata = self._to_frontmatter(note, exclude=_NOTE_BODY_FIELDS)
        # Inline payloads live in the assets directory, not in frontmatter
        for key in ("photos", "voiceRecordings"):
            for item in metadata.get(key, []):
                item.pop("dataUrl", None)
        if note.attachments:
            metadata["files"] = sorted(note.attachments)

        sidecar = None
        if note.editor_type == EditorType.MODULAR:
            body = self._render_blocks(note.content if isinstance(note.content, list) else [])
        elif note.editor_type == EditorType.VISUAL:
            nodes = note.content if isinstance(note.content, list) else []
            body = self._render_visual_stub(note.title, nodes)
            sidecar = [node.to_json_dict() for node in nodes]
        else:
            body = note.content if isinstance(note.content, str) else ""

        return self._dump(body, metadata), sidecar

    def parse_note(
        self,
        text: str,
        system_id: str,
        project_id: str,
        sidecar: Optional[List[Dict[str, Any]]] = None,
        filename: Optional[str] = None,
        fallback_id: Optional[str] = None,
        asset_dir: Optional[str] = None,
        path: Optional[str] = None,
    ) -> Note:
        """Parse a note from markdown content with YAML frontmatter.

        Args:
            text: Raw file content
            system_id: Owning system, derived from the file location
            project_id: Owning project, derived from the file location
            sidecar: Visual node list read from the sidecar file
            filename: File stem, used as a title fallback
            fallback_id: Id for hand-written files without frontmatter
            asset_dir: Vault-relative assets directory of this note
            path: Vault-relative path, for error reporting

        Raises:
            SerializationError: Unreadable frontmatter or invalid field values.
        """
        metadata, body = self._load(text, path)
        data = self._from_frontmatter(metadata)
        data.setdefault("id", fallback_id)
        data["systemId"] = system_id
        data["projectId"] = project_id

        files = data.pop("files", None) or []
        data["attachments"] = {
            name: f"{asset_dir}/{name}" if asset_dir else "" for name in files
        }

        editor_type = data.get("editorType", EditorType.STANDARD.value)
        if editor_type == EditorType.MODULAR.value:
            blocks = self._parse_blocks(body)
            data["content"] = blocks
            heading = next((b.content for b in blocks if b.type == BlockType.HEADING), None)
            data.setdefault("title", heading or (deslugify(filename) if filename else "Untitled"))
            first = next((b for b in blocks if b.content and b.type != BlockType.SECTION), None)
            data.setdefault("preview", first.content[:PREVIEW_LENGTH] if first else "")
        elif editor_type == EditorType.VISUAL.value:
            nodes = sidecar or []
            data["content"] = nodes
            stub_title = extract_title(body)
            data.setdefault("title", stub_title or (deslugify(filename) if filename else "Flowchart"))
            data.setdefault("preview", f"Flowchart with {len(nodes)} nodes")
        else:
            data["content"] = body
            data.setdefault(
                "title", extract_title(body) or (deslugify(filename) if filename else "Untitled")
            )
            data.setdefault("preview", extract_preview(body))

        return self._validate(Note, data, path)

    # ------------------------------------------------------------------
    # Systems and projects
    # ------------------------------------------------------------------

    def render_system(self, system: System) -> str:
        return self._render_container(system, exclude={"projects"})

    def parse_system(self, text: str, path: Optional[str] = None) -> System:
        """Parse a system metadata file. ``projects`` is filled by the adapter."""
        return self._parse_container(System, text, path)

    def render_project(self, project: Project) -> str:
        return self._render_container(project, exclude=set())

    def parse_project(self, text: str, path: Optional[str] = None) -> Project:
        return self._parse_container(Project, text, path)

    def _render_container(self, item: _Container, exclude: set) -> str:
        metadata = self._to_frontmatter(item, exclude=exclude | {"detail_notes"})
        body = "\n\n".join(p for p in (f"# {item.name}", item.description, item.detail_notes) if p)
        return self._dump(body, metadata)

    def _parse_container(self, model: Type[C], text: str, path: Optional[str]) -> C:
        metadata, body = self._load(text, path)
        data = self._from_frontmatter(metadata)

        # Body is "# name", the description, then free-form detail notes
        rest = body.strip()
        first_line = rest.split("\n", 1)[0]
        if first_line.startswith("# "):
            data.setdefault("name", first_line[2:].strip())
            rest = rest[len(first_line):].strip()
        description = data.get("description")
        if description and rest.startswith(description.strip()):
            rest = rest[len(description.strip()):].strip()
        if rest:
            data["detailNotes"] = rest
        return self._validate(model, data, path)

    # ------------------------------------------------------------------
    # Visual sidecar
    # ------------------------------------------------------------------

    def render_sidecar(self, nodes: List[Dict[str, Any]]) -> str:
        return json.dumps(nodes, indent=2, ensure_ascii=False)

    def parse_sidecar(self, text: str, path: Optional[str] = None) -> List[Dict[str, Any]]:
        try:
            nodes = json.loads(text)
        except json.JSONDecodeError as e:
            raise SerializationError(
                f"Visual sidecar is not valid JSON: {e}", path=path, original_error=e
            ) from e
        if not isinstance(nodes, list):
            raise SerializationError("Visual sidecar must contain a node list", path=path)
        return nodes

    # ------------------------------------------------------------------
    # Modular blocks
    # ------------------------------------------------------------------

    def _render_blocks(self, blocks: List[Block]) -> str:
        lines: List[str] = []
        for block in blocks:
            meta = block.metadata or BlockMetadata()
            param = ""
            if block.type == BlockType.HEADING and meta.level:
                param = str(meta.level)
            elif block.type == BlockType.CODE and meta.language:
                param = meta.language
            elif block.type == BlockType.LIST and meta.list_type:
                param = meta.list_type
            lines.append(f"<!-- block:{block.type.value}:{param}:{block.id} -->")

            if block.type == BlockType.HEADING:
                lines.append(f"{'#' * (meta.level or 1)} {block.content}")
            elif block.type == BlockType.CODE:
                lines.extend([f"```{meta.language or ''}", block.content, "```"])
            elif block.type == BlockType.LIST:
                prefix = "1." if meta.list_type == "numbered" else "-"
                lines.extend(f"{prefix} {item}" for item in block.content.split("\n"))
            elif block.type == BlockType.IMAGE:
                lines.append(f"![]({block.content})")
            elif block.type == BlockType.SECTION:
                lines.extend(["---", f"**{block.content}**"])
            else:
                lines.append(block.content)
            lines.append("")
        return "\n".join(lines).strip()

    def _parse_blocks(self, markdown: str) -> List[Block]:
        blocks: List[Block] = []
        current: Optional[Dict[str, Any]] = None
        content_lines: List[str] = []
        in_code = False

        def finish() -> None:
            nonlocal current, content_lines
            if current is not None:
                current["content"] = self._clean_block_content(
                    current["type"], "\n".join(content_lines).strip()
                )
                blocks.append(Block.model_validate(current))
            current = None
            content_lines = []

        for line in markdown.split("\n"):
            marker = None if in_code else _BLOCK_MARKER.match(line.strip())
            if marker:
                finish()
                block_type, param, block_id = marker.groups()
                current = {
                    "id": block_id,
                    "type": block_type,
                    "metadata": self._marker_metadata(block_type, param),
                }
                continue

            if line.startswith("```"):
                in_code = not in_code

            if current is not None:
                content_lines.append(line)
            elif line.strip():
                # Hand-written content without a marker: infer the block type
                current = self._infer_block(line, len(blocks))
                content_lines.append(line)

        finish()
        return blocks

    @staticmethod
    def _marker_metadata(block_type: str, param: str) -> Optional[Dict[str, Any]]:
        if not param:
            return None
        if block_type == BlockType.HEADING.value and param.isdigit():
            return {"level": int(param)}
        if block_type == BlockType.CODE.value:
            return {"language": param}
        if block_type == BlockType.LIST.value and param in ("bullet", "numbered"):
            return {"listType": param}
        return None

    @staticmethod
    def _infer_block(line: str, position: int) -> Dict[str, Any]:
        block_id = f"block-{position + 1}"
        heading = _HEADING_LINE.match(line)
        if heading:
            return {"id": block_id, "type": "heading", "metadata": {"level": len(heading.group(1))}}
        if line.startswith("```"):
            language = line[3:].strip()
            return {
                "id": block_id,
                "type": "code",
                "metadata": {"language": language} if language else None,
            }
        if _LIST_LINE.match(line):
            list_type = "numbered" if line[0].isdigit() else "bullet"
            return {"id": block_id, "type": "list", "metadata": {"listType": list_type}}
        if _IMAGE_LINE.fullmatch(line.strip()):
            return {"id": block_id, "type": "image", "metadata": None}
        return {"id": block_id, "type": "paragraph", "metadata": None}

    @staticmethod
    def _clean_block_content(block_type: str, content: str) -> str:
        if block_type == BlockType.HEADING.value:
            return re.sub(r"^#+\s*", "", content)
        if block_type == BlockType.CODE.value:
            content = re.sub(r"^```[^\n]*\n?", "", content)
            return re.sub(r"\n?```$", "", content)
        if block_type == BlockType.LIST.value:
            return "\n".join(_LIST_LINE.sub("", item) for item in content.split("\n"))
        if block_type == BlockType.SECTION.value:
            content = re.sub(r"^---\n?", "", content)
            return re.sub(r"^\*\*(.*)\*\*$", r"\1", content, flags=re.DOTALL)
        if block_type == BlockType.IMAGE.value:
            match = _IMAGE_LINE.search(content)
            return match.group(1) if match else content
        return content

    @staticmethod
    def _render_visual_stub(title: str, nodes: List[VisualNode]) -> str:
        lines = [
            f"# {title or 'Flowchart'}",
            "",
            "> This is a visual note. Open it in Kol Noter to edit the flowchart.",
            "",
            "## Nodes",
            "",
        ]
        lines.extend(f"- **{node.type}**: {node.label}" for node in nodes)
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Frontmatter plumbing
    # ------------------------------------------------------------------

    @staticmethod
    def _to_frontmatter(model: Any, exclude: set) -> Dict[str, Any]:
        data = model.model_dump(mode="json", by_alias=True, exclude_none=True, exclude=exclude)
        created = data.pop("createdAt")
        updated = data.pop("updatedAt")
        metadata: Dict[str, Any] = {"id": data.pop("id")}
        # Empty collections and default flags only add noise to the file
        metadata.update(
            (k, v) for k, v in data.items() if k in _ALWAYS_WRITTEN or v not in ([], {}, "", False)
        )
        metadata["created"] = ms_to_iso(created)
        metadata["updated"] = ms_to_iso(updated)
        return metadata

    @staticmethod
    def _from_frontmatter(metadata: Dict[str, Any]) -> Dict[str, Any]:
        data = dict(metadata)
        for source, target in (("created", "createdAt"), ("updated", "updatedAt")):
            if source in data:
                value = data.pop(source)
                try:
                    data[target] = iso_to_ms(value)
                except (TypeError, ValueError):
                    logger.warning(f"Ignoring unreadable '{source}' timestamp: {value!r}")
        return data

    @staticmethod
    def _dump(body: str, metadata: Dict[str, Any]) -> str:
        """Frontmatter, one blank line, then the body exactly as given."""
        header = YAMLHandler().export(metadata, sort_keys=False)
        return f"---\n{header}\n---\n\n{body}\n"

    @staticmethod
    def _load(text: str, path: Optional[str]) -> Tuple[Dict[str, Any], str]:
        """Split a file into its metadata and body.

        Undoes the separator newlines added by ``_dump`` and nothing more, so
        a body keeps its own leading and trailing whitespace.
        """
        match = _FRONTMATTER.match(text)
        if match is None:
            metadata, body = {}, text
        else:
            try:
                metadata = YAMLHandler().load(match.group(1) or "") or {}
            except yaml.YAMLError as e:
                raise SerializationError(
                    f"Malformed frontmatter: {e}", path=path, original_error=e
                ) from e
            if not isinstance(metadata, dict):
                raise SerializationError("Frontmatter must be a mapping", path=path)
            body = text[match.end():]
            if body.startswith("\n"):
                body = body[1:]
        if body.endswith("\n"):
            body = body[:-1]
        return dict(metadata), body

    @staticmethod
    def _validate(model: Type[Any], data: Dict[str, Any], path: Optional[str]) -> Any:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise SerializationError(
                f"Invalid {model.__name__.lower()} data: {e.error_count()} field error(s)",
                path=path,
                code=ErrorCode.SERIALIZATION_PARSE_FAILED,
                original_error=e,
            ) from e
