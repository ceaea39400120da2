"""Storage layer: adapters, the markdown codec and the relational index."""

from kol_noter_store.storage.base import StorageAdapter, VaultSnapshot
from kol_noter_store.storage.embedded_adapter import EmbeddedAdapter
from kol_noter_store.storage.relational_index import RelationalIndex
from kol_noter_store.storage.vault_adapter import VaultAdapter, is_valid_vault

__all__ = [
    "StorageAdapter",
    "VaultSnapshot",
    "EmbeddedAdapter",
    "VaultAdapter",
    "RelationalIndex",
    "is_valid_vault",
]
