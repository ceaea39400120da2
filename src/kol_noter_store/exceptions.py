"""Custom exceptions for the Kol Noter storage layer.

Provides a structured exception hierarchy with error codes, a
``recoverable`` flag and machine-readable error information, plus the
opt-in retry and error-capture helpers callers compose around I/O.
"""

import errno
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Vault errors (1xxx)
    VAULT_NOT_FOUND = 1001
    VAULT_INVALID = 1002
    VAULT_PERMISSION_DENIED = 1003
    VAULT_ALREADY_EXISTS = 1004
    VAULT_NOT_OPEN = 1005

    # Filesystem errors (2xxx)
    FS_READ_FAILED = 2001
    FS_WRITE_FAILED = 2002
    FS_DELETE_FAILED = 2003
    FS_PERMISSION_DENIED = 2004
    FS_NOT_FOUND = 2005
    FS_DISK_FULL = 2006

    # Serialization errors (3xxx)
    SERIALIZATION_PARSE_FAILED = 3001
    SERIALIZATION_WRITE_FAILED = 3002

    # Migration errors (4xxx)
    MIGRATION_VALIDATION_FAILED = 4001
    MIGRATION_PARTIAL = 4002
    MIGRATION_FAILED = 4003

    # Search / index errors (5xxx)
    SEARCH_FAILED = 5001
    SEARCH_CACHE_INVALID = 5002
    INDEX_FAILED = 5003

    # Entity errors (6xxx)
    ENTITY_NOT_FOUND = 6001
    ENTITY_INVALID = 6002

    # Anything we could not classify
    UNKNOWN = 9001


ERROR_MESSAGES: Dict[str, str] = {
    "vault_not_found": "The selected folder could not be found.",
    "vault_invalid": "The selected folder is not a Kol Noter vault.",
    "vault_permission_denied": "Permission denied. Choose another folder.",
    "vault_unexpected": "The vault could not be opened. Reload or continue in embedded mode.",
    "save_failed": "Failed to save changes.",
    "load_failed": "Failed to load data.",
    "delete_failed": "Failed to delete item.",
    "disk_full": "Not enough disk space.",
    "migration_failed": "Migration failed. Your data is still in the embedded store.",
    "migration_partial": "Some items could not be migrated.",
    "parse_failed": "Failed to read file content.",
    "search_failed": "Search is temporarily unavailable.",
}


class KolNoterError(Exception):
    """Base exception for all storage-layer errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        recoverable: False only for catastrophic, unclassified failures
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.UNKNOWN,
        recoverable: bool = True,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.recoverable = recoverable
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "recoverable": self.recoverable,
            "details": self.details,
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class VaultError(KolNoterError):
    """Raised when a vault cannot be located, opened, or has an invalid format."""

    def __init__(
        self,
        message: str,
        vault_path: Optional[str] = None,
        code: ErrorCode = ErrorCode.VAULT_INVALID,
        recoverable: bool = True,
    ):
        details = {}
        if vault_path:
            details["vault_path"] = vault_path
        super().__init__(message, code=code, recoverable=recoverable, details=details)
        self.vault_path = vault_path


class FileSystemError(KolNoterError):
    """Raised for read/write/delete failures. Always carries the offending path."""

    def __init__(
        self,
        message: str,
        path: str,
        operation: Optional[str] = None,
        code: ErrorCode = ErrorCode.FS_READ_FAILED,
        original_error: Optional[BaseException] = None,
    ):
        details: Dict[str, Any] = {"path": path}
        if operation:
            details["operation"] = operation
        if original_error:
            details["original_error"] = str(original_error)[:200]
        super().__init__(message, code=code, details=details)
        self.path = path
        self.operation = operation
        self.original_error = original_error

    @classmethod
    def from_os_error(
        cls, error: OSError, path: str, operation: str
    ) -> "FileSystemError":
        """Classify an OSError by errno into a typed FileSystemError."""
        if error.errno in (errno.EACCES, errno.EPERM):
            code = ErrorCode.FS_PERMISSION_DENIED
            message = f"Permission denied while trying to {operation} {path}"
        elif error.errno == errno.ENOENT:
            code = ErrorCode.FS_NOT_FOUND
            message = f"Path not found while trying to {operation} {path}"
        elif error.errno == errno.ENOSPC:
            code = ErrorCode.FS_DISK_FULL
            message = f"Disk full while trying to {operation} {path}"
        else:
            code = {
                "write": ErrorCode.FS_WRITE_FAILED,
                "delete": ErrorCode.FS_DELETE_FAILED,
            }.get(operation, ErrorCode.FS_READ_FAILED)
            message = f"Failed to {operation} {path}: {error}"
        return cls(message, path=path, operation=operation, code=code, original_error=error)


class SerializationError(KolNoterError):
    """Raised when content cannot be parsed or produced in its on-disk shape."""

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        code: ErrorCode = ErrorCode.SERIALIZATION_PARSE_FAILED,
        original_error: Optional[BaseException] = None,
    ):
        details = {}
        if path:
            details["path"] = path
        if original_error:
            details["original_error"] = str(original_error)[:200]
        super().__init__(message, code=code, details=details)
        self.path = path
        self.original_error = original_error


class MigrationError(KolNoterError):
    """Batch-level migration failure summary.

    Attributes:
        errors: Every per-item error message (full list)
        counts: Successful item counts per entity kind

    Note:
        The ``details`` dict truncates ``errors`` to 10 entries for safe
        serialization. Access ``self.errors`` for the complete list.
    """

    def __init__(
        self,
        message: str,
        errors: Optional[List[str]] = None,
        counts: Optional[Dict[str, int]] = None,
        code: ErrorCode = ErrorCode.MIGRATION_PARTIAL,
    ):
        self.errors: List[str] = list(errors) if errors else []
        self.counts: Dict[str, int] = dict(counts) if counts else {}
        details: Dict[str, Any] = {"error_count": len(self.errors), **self.counts}
        if self.errors:
            details["errors"] = self.errors[:10]
        super().__init__(message, code=code, details=details)


class SearchIndexError(KolNoterError):
    """Raised for search index build, query and cache errors."""

    def __init__(
        self,
        message: str,
        query: Optional[str] = None,
        code: ErrorCode = ErrorCode.SEARCH_FAILED,
    ):
        details = {}
        if query:
            details["query"] = query[:100]
        super().__init__(message, code=code, details=details)
        self.query = query


class EntityNotFoundError(KolNoterError):
    """Raised when a system, project, note or attachment does not exist."""

    def __init__(self, entity_type: str, entity_id: str, message: Optional[str] = None):
        super().__init__(
            message or f"{entity_type.capitalize()} with ID '{entity_id}' not found",
            code=ErrorCode.ENTITY_NOT_FOUND,
            details={"entity_type": entity_type, "entity_id": entity_id},
        )
        self.entity_type = entity_type
        self.entity_id = entity_id


def parse_error(error: BaseException) -> KolNoterError:
    """Convert any exception into a typed KolNoterError.

    Typed errors pass through unchanged. OSErrors are classified by errno;
    anything else is wrapped as a non-recoverable unknown error.
    """
    if isinstance(error, KolNoterError):
        return error
    if isinstance(error, OSError):
        path = error.filename if isinstance(error.filename, str) else ""
        return FileSystemError.from_os_error(error, path, "access")
    return KolNoterError(
        str(error) or error.__class__.__name__,
        code=ErrorCode.UNKNOWN,
        recoverable=False,
        details={"type": error.__class__.__name__},
    )


def with_retry(
    fn: Callable[[], T],
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``fn`` until it succeeds, sleeping ``delay * backoff**n`` between tries.

    Only recoverable failures are retried. The last error is re-raised
    once the attempts are used up.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    current_delay = delay
    for attempt in range(1, max_attempts + 1):
        try:
            return fn()
        except Exception as e:
            typed = parse_error(e)
            if attempt == max_attempts or not typed.recoverable:
                raise
            logger.warning(
                f"Attempt {attempt}/{max_attempts} failed: {typed.message}; "
                f"retrying in {current_delay:.2f}s"
            )
            if on_retry:
                on_retry(attempt, e)
            sleep(current_delay)
            current_delay *= backoff
    raise AssertionError("unreachable")


def with_error_handling(
    fn: Callable[[], T],
    on_error: Optional[Callable[[KolNoterError], None]] = None,
) -> Tuple[Optional[T], Optional[KolNoterError]]:
    """Run ``fn`` and capture its failure as a typed error instead of raising."""
    try:
        return fn(), None
    except Exception as e:
        typed = parse_error(e)
        logger.error(f"Operation failed: {typed}")
        if on_error:
            on_error(typed)
        return None, typed
