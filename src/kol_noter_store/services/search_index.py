"""In-memory full-text index over notes, systems and projects.

Each document is split into three fields (title, content, tags). Scoring is
BM25 per field, multiplied by the field boost and by a weight for how the
query term matched: exactly, as a prefix of an indexed term, or within the
allowed edit distance.
"""

import json
import logging
import math
import re
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from pydantic import ValidationError

from kol_noter_store.exceptions import ErrorCode, SearchIndexError
from kol_noter_store.models.schema import (
    ItemType,
    Note,
    Project,
    SearchDocument,
    System,
)
from kol_noter_store.utils import now_ms

logger = logging.getLogger(__name__)

CACHE_VERSION = 1
CACHE_DIR = ".kol-noter"
CACHE_FILE = "search-index.json"
FIELDS = ("title", "content", "tags")
PREVIEW_LENGTH = 150

DEFAULT_BOOST = {"title": 2.0, "content": 1.0, "tags": 1.5}
PREFIX_WEIGHT = 0.375
FUZZY_WEIGHT = 0.45
BM25_K1 = 1.2
BM25_B = 0.7

_TOKEN_SPLIT = re.compile(r"[\W_]+", re.UNICODE)


def tokenize(text: str) -> List[str]:
    return [token for token in _TOKEN_SPLIT.split(text.lower()) if token]


def edit_distance(a: str, b: str, max_distance: int) -> int:
    """Levenshtein distance, or ``max_distance + 1`` once it is exceeded."""
    if abs(len(a) - len(b)) > max_distance:
        return max_distance + 1
    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, 1):
        current = [i]
        for j, char_b in enumerate(b, 1):
            current.append(
                min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + (char_a != char_b))
            )
        if min(current) > max_distance:
            return max_distance + 1
        previous = current
    return previous[-1]


@dataclass
class SearchOptions:
    """Query options. ``types`` of None matches every document type."""

    types: Optional[List[ItemType]] = None
    system_id: Optional[str] = None
    project_id: Optional[str] = None
    limit: int = 50
    fuzzy: float = 0.2
    prefix: bool = True
    boost: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_BOOST))


@dataclass
class SearchHit:
    id: str
    type: ItemType
    title: str
    preview: str
    tags: List[str]
    score: float
    matches: Dict[str, List[str]]
    system_id: Optional[str] = None
    project_id: Optional[str] = None


class SearchIndex:
    """Inverted index with a versioned JSON cache file."""

    def __init__(self, fuzzy: float = 0.2, boost: Optional[Dict[str, float]] = None):
        self.fuzzy = fuzzy
        self.boost = dict(boost or DEFAULT_BOOST)
        self._lock = threading.RLock()
        self._documents: Dict[str, SearchDocument] = {}
        # term -> doc id -> field -> term frequency
        self._postings: Dict[str, Dict[str, Dict[str, int]]] = {}
        # doc id -> field -> token count
        self._lengths: Dict[str, Dict[str, int]] = {}
        self.is_dirty = False

    # ------------------------------------------------------------------
    # Building
    # ------------------------------------------------------------------

    def build_index(self, notes: Iterable[Note], systems: Iterable[System]) -> int:
        """Clear and re-add every document. Projects are owned by their system."""
        with self._lock:
            self._clear()
            for note in notes:
                self._add(SearchDocument.from_note(note))
            for system in systems:
                self._add(SearchDocument.from_system(system))
                for project in system.projects:
                    self._add(SearchDocument.from_project(project, system.id))
            self.is_dirty = True
            logger.info(f"Search index built: {len(self._documents)} documents")
            return len(self._documents)

    def update_note(self, note: Note) -> None:
        self.add_document(SearchDocument.from_note(note))

    def update_system(self, system: System) -> None:
        self.add_document(SearchDocument.from_system(system))

    def update_project(self, project: Project, system_id: str) -> None:
        self.add_document(SearchDocument.from_project(project, system_id))

    def add_document(self, document: SearchDocument) -> None:
        """Insert or replace one document (remove then reinsert)."""
        with self._lock:
            self._remove(document.id)
            self._add(document)
            self.is_dirty = True

    def remove(self, doc_id: str) -> bool:
        with self._lock:
            removed = self._remove(doc_id)
            if removed:
                self.is_dirty = True
            return removed

    def remove_by_owner(self, system_id: Optional[str] = None, project_id: Optional[str] = None) -> int:
        """Remove every document belonging to a system or project."""
        with self._lock:
            doomed = [
                doc.id
                for doc in self._documents.values()
                if (system_id and doc.system_id == system_id)
                or (project_id and doc.project_id == project_id)
            ]
            for doc_id in doomed:
                self._remove(doc_id)
            if doomed:
                self.is_dirty = True
            return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._clear()
            self.is_dirty = True

    def _clear(self) -> None:
        self._documents.clear()
        self._postings.clear()
        self._lengths.clear()

    def _field_tokens(self, document: SearchDocument) -> Dict[str, List[str]]:
        return {
            "title": tokenize(document.title),
            "content": tokenize(document.content),
            "tags": [token for tag in document.tags for token in tokenize(tag)],
        }

    def _add(self, document: SearchDocument) -> None:
        self._documents[document.id] = document
        lengths = {}
        for field_name, tokens in self._field_tokens(document).items():
            lengths[field_name] = len(tokens)
            for token in tokens:
                per_doc = self._postings.setdefault(token, {}).setdefault(document.id, {})
                per_doc[field_name] = per_doc.get(field_name, 0) + 1
        self._lengths[document.id] = lengths

    def _remove(self, doc_id: str) -> bool:
        document = self._documents.pop(doc_id, None)
        if document is None:
            return False
        for tokens in self._field_tokens(document).values():
            for token in tokens:
                postings = self._postings.get(token)
                if postings is None:
                    continue
                postings.pop(doc_id, None)
                if not postings:
                    del self._postings[token]
        self._lengths.pop(doc_id, None)
        return True

    # ------------------------------------------------------------------
    # Querying
    # ------------------------------------------------------------------

    def _expand(self, query_term: str, fuzzy: float, prefix: bool) -> List[Tuple[str, float]]:
        """Indexed terms matching ``query_term`` with their match weight."""
        weights: Dict[str, float] = {}
        if query_term in self._postings:
            weights[query_term] = 1.0
        max_distance = round(fuzzy * len(query_term)) if fuzzy else 0
        for term in self._postings:
            if term == query_term:
                continue
            weight = 0.0
            if prefix and term.startswith(query_term):
                weight = PREFIX_WEIGHT * len(query_term) / len(term)
            if max_distance:
                distance = edit_distance(query_term, term, max_distance)
                if distance <= max_distance:
                    weight = max(weight, FUZZY_WEIGHT * len(query_term) / (len(query_term) + distance))
            if weight:
                weights[term] = weight
        return sorted(weights.items())

    def _average_lengths(self) -> Dict[str, float]:
        count = len(self._lengths) or 1
        return {
            field_name: (sum(lengths[field_name] for lengths in self._lengths.values()) / count) or 1.0
            for field_name in FIELDS
        }

    def _score(
        self, query: str, fuzzy: float, prefix: bool, boost: Dict[str, float]
    ) -> Dict[str, Tuple[float, Dict[str, Set[str]]]]:
        total = len(self._documents)
        averages = self._average_lengths()
        scores: Dict[str, float] = defaultdict(float)
        matches: Dict[str, Dict[str, Set[str]]] = defaultdict(lambda: defaultdict(set))

        for query_term in dict.fromkeys(tokenize(query)):
            for term, weight in self._expand(query_term, fuzzy, prefix):
                postings = self._postings[term]
                idf = math.log(1 + (total - len(postings) + 0.5) / (len(postings) + 0.5))
                for doc_id in sorted(postings):
                    for field_name in FIELDS:
                        tf = postings[doc_id].get(field_name, 0)
                        if not tf:
                            continue
                        length = self._lengths[doc_id][field_name]
                        norm = BM25_K1 * (1 - BM25_B + BM25_B * length / averages[field_name])
                        bm25 = idf * tf * (BM25_K1 + 1) / (tf + norm)
                        scores[doc_id] += bm25 * boost.get(field_name, 1.0) * weight
                        matches[doc_id][term].add(field_name)
        return {doc_id: (scores[doc_id], matches[doc_id]) for doc_id in scores}

    def search(self, query: str, options: Optional[SearchOptions] = None) -> List[SearchHit]:
        """Ranked hits, best first; ties are ordered by id."""
        options = options or SearchOptions(fuzzy=self.fuzzy, boost=dict(self.boost))
        if not query.strip():
            return []

        with self._lock:
            scored = self._score(query, options.fuzzy, options.prefix, options.boost)
            hits = []
            for doc_id, (score, matched) in scored.items():
                document = self._documents[doc_id]
                if options.types and document.type not in options.types:
                    continue
                if options.system_id and document.system_id != options.system_id:
                    continue
                if options.project_id and document.project_id != options.project_id:
                    continue
                hits.append(
                    SearchHit(
                        id=doc_id,
                        type=document.type,
                        title=document.title,
                        preview=document.content[:PREVIEW_LENGTH],
                        tags=list(document.tags),
                        score=score,
                        matches={term: sorted(fields) for term, fields in sorted(matched.items())},
                        system_id=document.system_id,
                        project_id=document.project_id,
                    )
                )

        hits.sort(key=lambda hit: (-hit.score, hit.id))
        if options.limit:
            hits = hits[: options.limit]
        return hits

    def suggest(self, query: str, limit: int = 5) -> List[str]:
        """Autocomplete phrases built from the indexed terms the query matched."""
        if not query.strip():
            return []
        with self._lock:
            scored = self._score(query, self.fuzzy, True, self.boost)

        suggestions: Dict[str, float] = defaultdict(float)
        for score, matched in scored.values():
            suggestions[" ".join(sorted(matched))] += score
        ranked = sorted(suggestions.items(), key=lambda item: (-item[1], item[0]))
        return [phrase for phrase, _ in ranked[:limit]]

    def get_document(self, doc_id: str) -> Optional[SearchDocument]:
        return self._documents.get(doc_id)

    def stats(self) -> Dict[str, Any]:
        return {
            "document_count": len(self._documents),
            "term_count": len(self._postings),
            "dirty": self.is_dirty,
        }

    def __len__(self) -> int:
        return len(self._documents)

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "version": CACHE_VERSION,
                "timestamp": now_ms(),
                "index": {"postings": self._postings, "lengths": self._lengths},
                "documents": [doc.model_dump(mode="json") for doc in self._documents.values()],
            }

    def from_dict(self, data: Dict[str, Any]) -> None:
        """Replace the index with a cached snapshot.

        Raises:
            SearchIndexError: SEARCH_CACHE_INVALID on a version mismatch or a
                malformed snapshot.
        """
        if not isinstance(data, dict) or data.get("version") != CACHE_VERSION:
            raise SearchIndexError(
                f"Search cache version mismatch (expected {CACHE_VERSION})",
                code=ErrorCode.SEARCH_CACHE_INVALID,
            )
        try:
            documents = {
                doc.id: doc for doc in (SearchDocument.model_validate(d) for d in data["documents"])
            }
            postings = {
                term: {doc_id: dict(fields) for doc_id, fields in per_doc.items()}
                for term, per_doc in data["index"]["postings"].items()
            }
            lengths = {doc_id: dict(l) for doc_id, l in data["index"]["lengths"].items()}
        except (KeyError, TypeError, AttributeError, ValidationError) as e:
            raise SearchIndexError(
                f"Search cache is malformed: {e}", code=ErrorCode.SEARCH_CACHE_INVALID
            ) from e

        with self._lock:
            self._documents = documents
            self._postings = postings
            self._lengths = lengths
            self.is_dirty = False

    @staticmethod
    def cache_path(vault_path: Path) -> Path:
        return Path(vault_path) / CACHE_DIR / CACHE_FILE

    def save_cache(self, vault_path: Path) -> bool:
        """Write the cache file if anything changed since the last save or load."""
        if not self.is_dirty:
            return False
        path = self.cache_path(vault_path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(self.to_dict(), ensure_ascii=False), encoding="utf-8")
        except OSError as e:
            logger.error(f"Failed to cache search index at {path}: {e}")
            return False
        self.is_dirty = False
        logger.debug(f"Search index cached ({len(self._documents)} documents)")
        return True

    def load_cache(self, vault_path: Path) -> bool:
        """Load the cache file. False means the caller must rebuild."""
        path = self.cache_path(vault_path)
        if not path.is_file():
            return False
        try:
            self.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, json.JSONDecodeError, SearchIndexError) as e:
            logger.info(f"Search index cache unusable, rebuilding: {e}")
            return False
        logger.info(f"Search index loaded from cache: {len(self._documents)} documents")
        return True
