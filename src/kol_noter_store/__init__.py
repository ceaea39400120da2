"""
kol-noter-store - local-first persistence and indexing for Kol Noter.

Keeps the System -> Project -> Note hierarchy in either an embedded
key-value store or a plain-file vault, mirrors it into a SQLite index,
watches the vault for external edits and maintains a full-text search index.

This version uses synchronous operations.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("kol-noter-store")
except PackageNotFoundError:
    __version__ = "0.1.0"
