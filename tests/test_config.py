"""Tests for environment-driven configuration."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from kol_noter_store.config import KolNoterConfig


@pytest.fixture
def clean_env(monkeypatch):
    for name in (
        "KOL_NOTER_STORAGE",
        "KOL_NOTER_VAULT_PATH",
        "KOL_NOTER_WATCH",
        "KOL_NOTER_WATCH_DEBOUNCE_MS",
        "KOL_NOTER_SEARCH_FUZZY",
        "KOL_NOTER_RETRY_ATTEMPTS",
        "KOL_NOTER_LOG_DIR",
    ):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestDefaults:
    def test_defaults(self, clean_env):
        settings = KolNoterConfig()
        assert settings.storage_backend == "embedded"
        assert settings.vault_path is None
        assert settings.watch_enabled is True
        assert settings.watch_debounce_ms == 300
        assert settings.search_fuzzy == 0.2
        assert settings.log_dir is None


class TestEnvironment:
    def test_filesystem_backend(self, clean_env, temp_vault_dir):
        clean_env.setenv("KOL_NOTER_STORAGE", "FileSystem")
        clean_env.setenv("KOL_NOTER_VAULT_PATH", str(temp_vault_dir))
        settings = KolNoterConfig()
        assert settings.storage_backend == "filesystem"
        assert settings.vault_path == temp_vault_dir

    @pytest.mark.parametrize("raw,expected", [("false", False), ("0", False), ("YES", True)])
    def test_watch_flag(self, clean_env, raw, expected):
        clean_env.setenv("KOL_NOTER_WATCH", raw)
        assert KolNoterConfig().watch_enabled is expected

    def test_numeric_values(self, clean_env):
        clean_env.setenv("KOL_NOTER_WATCH_DEBOUNCE_MS", "50")
        clean_env.setenv("KOL_NOTER_RETRY_ATTEMPTS", "5")
        settings = KolNoterConfig()
        assert settings.watch_debounce_ms == 50
        assert settings.retry_attempts == 5


class TestValidation:
    def test_filesystem_requires_vault_path(self, clean_env):
        with pytest.raises(ValidationError):
            KolNoterConfig(storage_backend="filesystem")

    def test_unknown_backend(self, clean_env):
        with pytest.raises(ValidationError):
            KolNoterConfig(storage_backend="cloud")

    @pytest.mark.parametrize(
        "overrides",
        [
            {"watch_debounce_ms": -1},
            {"search_fuzzy": 1.5},
            {"search_limit": 0},
            {"retry_attempts": 0},
        ],
    )
    def test_out_of_range(self, clean_env, overrides):
        with pytest.raises(ValidationError):
            KolNoterConfig(**overrides)


class TestPaths:
    def test_relative_path_resolved_against_cwd(self, clean_env, temp_vault_dir):
        clean_env.chdir(temp_vault_dir)
        assert KolNoterConfig().get_absolute_path(Path("vault")) == temp_vault_dir / "vault"

    def test_absolute_path_unchanged(self, clean_env, temp_vault_dir):
        assert KolNoterConfig().get_absolute_path(temp_vault_dir) == temp_vault_dir
