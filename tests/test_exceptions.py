"""Tests for the exception hierarchy and error helpers."""

import errno

import pytest

from kol_noter_store.exceptions import (
    ERROR_MESSAGES,
    EntityNotFoundError,
    ErrorCode,
    FileSystemError,
    KolNoterError,
    MigrationError,
    VaultError,
    parse_error,
    with_error_handling,
    with_retry,
)


class TestKolNoterError:
    def test_to_dict(self):
        error = VaultError("gone", vault_path="/v", code=ErrorCode.VAULT_NOT_FOUND)
        assert error.to_dict() == {
            "error": "VaultError",
            "code": 1001,
            "code_name": "VAULT_NOT_FOUND",
            "message": "gone",
            "recoverable": True,
            "details": {"vault_path": "/v"},
        }

    def test_str_includes_details(self):
        error = EntityNotFoundError("note", "n1")
        assert str(error) == "[ENTITY_NOT_FOUND] Note with ID 'n1' not found (entity_type=note, entity_id=n1)"

    def test_user_messages_present(self):
        assert "disk_full" in ERROR_MESSAGES
        assert "migration_partial" in ERROR_MESSAGES


class TestFromOsError:
    @pytest.mark.parametrize(
        "err,operation,code",
        [
            (errno.EACCES, "read", ErrorCode.FS_PERMISSION_DENIED),
            (errno.EPERM, "write", ErrorCode.FS_PERMISSION_DENIED),
            (errno.ENOENT, "read", ErrorCode.FS_NOT_FOUND),
            (errno.ENOSPC, "write", ErrorCode.FS_DISK_FULL),
            (errno.EIO, "write", ErrorCode.FS_WRITE_FAILED),
            (errno.EIO, "delete", ErrorCode.FS_DELETE_FAILED),
            (errno.EIO, "read", ErrorCode.FS_READ_FAILED),
        ],
    )
    def test_codes(self, err, operation, code):
        error = FileSystemError.from_os_error(OSError(err, "boom"), "a/b.md", operation)
        assert error.code == code
        assert error.path == "a/b.md"
        assert error.details["operation"] == operation


class TestParseError:
    def test_typed_errors_pass_through(self):
        error = VaultError("bad")
        assert parse_error(error) is error

    def test_os_error(self):
        typed = parse_error(OSError(errno.ENOSPC, "full", "x.md"))
        assert isinstance(typed, FileSystemError)
        assert typed.code == ErrorCode.FS_DISK_FULL
        assert typed.path == "x.md"

    def test_unknown_error_is_not_recoverable(self):
        typed = parse_error(RuntimeError("weird"))
        assert typed.code == ErrorCode.UNKNOWN
        assert not typed.recoverable
        assert typed.details == {"type": "RuntimeError"}


class TestWithRetry:
    def test_retries_recoverable_failures(self):
        attempts = []
        sleeps = []

        def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise OSError(errno.EIO, "busy")
            return "ok"

        assert with_retry(flaky, max_attempts=3, delay=0.5, backoff=2, sleep=sleeps.append) == "ok"
        assert sleeps == [0.5, 1.0]

    def test_gives_up_after_max_attempts(self):
        calls = []

        def always_fails():
            calls.append(1)
            raise OSError(errno.EIO, "busy")

        with pytest.raises(OSError):
            with_retry(always_fails, max_attempts=2, delay=0, sleep=lambda _: None)
        assert len(calls) == 2

    def test_unrecoverable_not_retried(self):
        calls = []

        def broken():
            calls.append(1)
            raise RuntimeError("bug")

        with pytest.raises(RuntimeError):
            with_retry(broken, max_attempts=5, delay=0, sleep=lambda _: None)
        assert len(calls) == 1

    def test_on_retry_called(self):
        seen = []
        outcomes = iter([OSError(errno.EIO, "busy"), None])

        def fn():
            error = next(outcomes)
            if error:
                raise error
            return 1

        with_retry(fn, delay=0, sleep=lambda _: None, on_retry=lambda n, e: seen.append(n))
        assert seen == [1]

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            with_retry(lambda: 1, max_attempts=0)


class TestWithErrorHandling:
    def test_success(self):
        assert with_error_handling(lambda: 5) == (5, None)

    def test_failure_captured(self):
        captured = []

        def fail():
            raise OSError(errno.ENOENT, "missing", "n.md")

        result, error = with_error_handling(fail, on_error=captured.append)
        assert result is None
        assert isinstance(error, KolNoterError)
        assert error.code == ErrorCode.FS_NOT_FOUND
        assert captured == [error]


class TestMigrationError:
    def test_details_truncate_errors(self):
        errors = [f"item {i}" for i in range(25)]
        error = MigrationError("partial", errors=errors, counts={"notes": 3})
        assert len(error.errors) == 25
        assert error.details["errors"] == errors[:10]
        assert error.details["error_count"] == 25
        assert error.details["notes"] == 3
        assert error.code == ErrorCode.MIGRATION_PARTIAL
