"""Utility functions for the Kol Noter storage layer."""

import base64
import binascii
import datetime
import re
import time
import unicodedata
from typing import Iterable, Tuple, Union
from urllib.parse import unquote_to_bytes

_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9.\-]")
_REPEATED_DASHES = re.compile(r"-+")


def now_ms() -> int:
    """Current time as integer epoch milliseconds."""
    return int(time.time() * 1000)


def ms_to_iso(timestamp_ms: int) -> str:
    """Format epoch milliseconds as an ISO-8601 UTC string.

    Millisecond precision is kept so that ``iso_to_ms(ms_to_iso(x)) == x``.
    """
    dt = datetime.datetime.fromtimestamp(timestamp_ms / 1000, tz=datetime.timezone.utc)
    return dt.isoformat(timespec="milliseconds")


def iso_to_ms(value: Union[str, int, float, datetime.datetime, datetime.date]) -> int:
    """Parse a frontmatter timestamp back into epoch milliseconds.

    Accepts ISO strings, numbers (already milliseconds) and the datetime
    objects YAML produces for unquoted timestamps in hand-edited files.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, datetime.datetime):
        dt = value
    elif isinstance(value, datetime.date):
        dt = datetime.datetime(value.year, value.month, value.day)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    return int(round(dt.timestamp() * 1000))


def sanitize_filename(name: str) -> str:
    """Make an attachment filename safe for any filesystem.

    Anything outside ``[a-zA-Z0-9.-]`` becomes a dash, dash runs collapse,
    and the result is lowercased.

    Examples:
        "My Photo (1).PNG" -> "my-photo-1-.png"
        "report__final.pdf" -> "report-final.pdf"
    """
    cleaned = _UNSAFE_FILENAME_CHARS.sub("-", name)
    return _REPEATED_DASHES.sub("-", cleaned).lower()


def escape_like_pattern(value: str) -> str:
    """Escape SQL LIKE wildcards to treat them as literals.

    Prevents SQL LIKE pattern injection where user input containing
    '%' or '_' could match unintended patterns.

    Example:
        >>> escape_like_pattern("100% complete")
        '100\\% complete'
    """
    escape_table = str.maketrans(
        {
            "\\": "\\\\",  # Escape backslash first
            "%": "\\%",
            "_": "\\_",
        }
    )
    return value.translate(escape_table)


def format_bytes(size: int) -> str:
    """Human-readable byte count (``0 B``, ``1 KB``, ``1.5 KB``)."""
    if size <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB"]
    value = float(size)
    unit = 0
    while value >= 1024 and unit < len(units) - 1:
        value /= 1024
        unit += 1
    return f"{round(value, 1):g} {units[unit]}"


EXTENSION_TO_MIME = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "webp": "image/webp",
    "svg": "image/svg+xml",
    "pdf": "application/pdf",
    "txt": "text/plain",
    "json": "application/json",
}

MIME_TO_EXTENSION = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/svg+xml": "svg",
    "application/pdf": "pdf",
    "text/plain": "txt",
    "application/json": "json",
}

_DATA_URL = re.compile(r"^data:([^;,]+)(;base64)?,(.*)$", re.DOTALL)


def is_data_url(value: str) -> bool:
    return value.startswith("data:")


def mime_type_for_filename(filename: str) -> str:
    """MIME type from the file extension, octet-stream when unknown."""
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    return EXTENSION_TO_MIME.get(ext, "application/octet-stream")


def extension_for_mime_type(mime_type: str) -> str:
    return MIME_TO_EXTENSION.get(mime_type, "bin")


def mime_type_from_data_url(data_url: str) -> str:
    match = _DATA_URL.match(data_url)
    return match.group(1) if match else "application/octet-stream"


def decode_data_url(data_url: str) -> Tuple[bytes, str]:
    """Decode an inline data URL into ``(payload, mime_type)``.

    Raises:
        ValueError: If the value is not a well-formed data URL.
    """
    match = _DATA_URL.match(data_url)
    if not match:
        raise ValueError("Invalid data URL format")
    mime_type, is_base64, body = match.groups()
    if is_base64:
        try:
            return base64.b64decode(body, validate=True), mime_type
        except binascii.Error as e:
            raise ValueError(f"Invalid base64 payload: {e}") from e
    return unquote_to_bytes(body), mime_type


def encode_data_url(payload: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(payload).decode('ascii')}"


def generate_slug(text: str) -> str:
    """Lowercase, ASCII-only, dash-separated folder/file name.

    Examples:
        "Work Stuff" -> "work-stuff"
        "Café: Plans & Notes" -> "cafe-plans-notes"
        "???" -> "untitled"
    """
    normalized = unicodedata.normalize("NFKD", text or "")
    ascii_text = normalized.encode("ascii", "ignore").decode("ascii").lower()
    slug = re.sub(r"[^a-z0-9]+", "-", ascii_text).strip("-")
    return slug or "untitled"


def ensure_unique_slug(base: str, existing: Iterable[str]) -> str:
    """Append ``-1``, ``-2``, ... until ``base`` no longer collides."""
    taken = set(existing)
    if base not in taken:
        return base
    counter = 1
    while f"{base}-{counter}" in taken:
        counter += 1
    return f"{base}-{counter}"
