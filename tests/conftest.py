"""Common test fixtures for the Kol Noter storage layer."""

import tempfile
from pathlib import Path

import pytest

from kol_noter_store.config import config
from kol_noter_store.services.vault_service import VaultService
from kol_noter_store.storage.embedded_adapter import EmbeddedAdapter
from kol_noter_store.storage.relational_index import RelationalIndex
from kol_noter_store.storage.vault_adapter import VaultAdapter
from tests.fakes import build_project, build_system


@pytest.fixture
def temp_vault_dir():
    """Create a temporary directory to hold a vault."""
    with tempfile.TemporaryDirectory() as vault_dir:
        yield Path(vault_dir)


@pytest.fixture
def test_config(monkeypatch):
    """Fast, quiet settings (auto-restored even on crash)."""
    monkeypatch.setattr(config, "watch_enabled", False)
    monkeypatch.setattr(config, "watch_debounce_ms", 50)
    monkeypatch.setattr(config, "retry_attempts", 1)
    monkeypatch.setattr(config, "retry_delay_ms", 0)
    monkeypatch.setattr(config, "log_dir", None)
    yield config


@pytest.fixture
def embedded_adapter():
    """Embedded adapter over a private store."""
    return EmbeddedAdapter(store={})


@pytest.fixture
def vault_adapter(temp_vault_dir):
    """A freshly created, empty vault."""
    adapter = VaultAdapter.create(temp_vault_dir)
    yield adapter
    adapter.close()


@pytest.fixture
def vault_with_project(vault_adapter):
    """Vault holding system ``sys-1`` ("Work Stuff") with project ``proj-1`` ("Alpha")."""
    vault_adapter.save_system(build_system())
    vault_adapter.save_project("sys-1", build_project())
    return vault_adapter


@pytest.fixture
def relational_index():
    """Private in-memory relational index."""
    index = RelationalIndex()
    index.open(":memory:")
    yield index
    index.close()


@pytest.fixture
def vault_service(test_config, temp_vault_dir):
    """Service with a new vault open and the watcher disabled."""
    service = VaultService(test_config)
    service.open_vault(temp_vault_dir, create=True)
    yield service
    service.close()
