"""
File-backed vector index with cosine similarity search.

``VectorIndex`` is the interface callers depend on; ``LocalVectorIndex`` is
a linear-scan implementation suitable for tens of thousands of entries.
An approximate nearest-neighbour index can be swapped in behind the same
interface.

Persistence:
  - the whole index is written as one JSON document (temp file + rename)
  - writes happen every ``flush_interval`` upserted entries, on delete and
    on explicit ``flush()``
  - entries upserted since the last write are lost if the process dies
  - an unreadable file on startup is logged and the index starts empty
"""

import json
import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import numpy as np

from .errors import DimensionMismatch, InvalidInput, PersistenceError

logger = logging.getLogger(__name__)

_RANGE_OPERATORS = {
    "$gte": lambda a, b: a >= b,
    ">=": lambda a, b: a >= b,
    "$lte": lambda a, b: a <= b,
    "<=": lambda a, b: a <= b,
    "$gt": lambda a, b: a > b,
    ">": lambda a, b: a > b,
    "$lt": lambda a, b: a < b,
    "<": lambda a, b: a < b,
}


def cosine_similarity(a, b) -> float:
    """Cosine similarity in [-1, 1]; 0.0 when either vector has zero norm."""
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    if va.shape != vb.shape:
        raise DimensionMismatch(len(va), len(vb))
    norm = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if norm == 0:
        return 0.0
    return float(np.clip(np.dot(va, vb) / norm, -1.0, 1.0))


def matches_filter(metadata: Optional[dict], filter: Optional[dict]) -> bool:
    """
    Check metadata against a filter.

    Plain values match exactly; dict values hold range operators
    (``$gte``/``>=``, ``$lte``/``<=``, ``$gt``/``>``, ``$lt``/``<``).
    A missing field never matches.
    """
    if not filter:
        return True
    if not metadata:
        return False
    for key, expected in filter.items():
        if key not in metadata:
            return False
        actual = metadata[key]
        if isinstance(expected, dict):
            for op, bound in expected.items():
                compare = _RANGE_OPERATORS.get(op)
                if compare is None:
                    raise InvalidInput(f"Unsupported filter operator: {op}")
                try:
                    if not compare(actual, bound):
                        return False
                except TypeError:
                    return False
        elif actual != expected:
            return False
    return True


@dataclass
class IndexEntry:
    id: str
    vector: list[float]
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class IndexMatch:
    id: str
    score: float
    metadata: Optional[dict[str, Any]] = None


class VectorIndex(ABC):
    """Key → (vector, metadata) store with similarity search."""

    dimensions: int

    @abstractmethod
    def upsert(self, entries: list[IndexEntry]) -> int: ...

    @abstractmethod
    def query(
        self,
        vector: list[float],
        top_k: int = 5,
        filter: Optional[dict] = None,
        include_metadata: bool = True,
    ) -> list[IndexMatch]: ...

    @abstractmethod
    def delete(self, ids: list[str]) -> int: ...

    @abstractmethod
    def get(self, id: str) -> Optional[IndexEntry]: ...

    @abstractmethod
    def list_ids(self, filter: Optional[dict] = None, limit: Optional[int] = None) -> list[str]: ...

    @abstractmethod
    def flush(self) -> None: ...

    @abstractmethod
    def __len__(self) -> int: ...


class LocalVectorIndex(VectorIndex):
    """
    Linear-scan cosine index persisted to a JSON file.

    Entries keep insertion order; re-upserting an id updates it in place
    without changing its position. When ``max_entries`` is exceeded the
    oldest inserted entries are evicted.
    """

    def __init__(
        self,
        dimensions: int,
        path: Optional[Path] = None,
        flush_interval: int = 100,
        max_entries: int = 100_000,
    ):
        if dimensions <= 0:
            raise ValueError("dimensions must be positive")
        self.dimensions = dimensions
        self.path = Path(path) if path else None
        self.flush_interval = flush_interval
        self.max_entries = max_entries
        self._entries: OrderedDict[str, IndexEntry] = OrderedDict()
        self._unflushed = 0
        self._lock = threading.RLock()
        self.stats = {
            "total_queries": 0,
            "average_query_ms": 0.0,
            "last_saved": None,
            "evicted": 0,
        }
        self._load()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, id: str) -> bool:
        return id in self._entries

    # ── writes ──

    def upsert(self, entries: list[IndexEntry]) -> int:
        """Insert or replace entries; the whole batch is validated first."""
        prepared = [self._prepare(entry) for entry in entries]
        with self._lock:
            for entry in prepared:
                self._entries[entry.id] = entry
            evicted = 0
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
                evicted += 1
            if evicted:
                self.stats["evicted"] += evicted
                logger.info("Evicted %d oldest vectors (capacity %d)", evicted, self.max_entries)

            self._unflushed += len(prepared)
            if self.path and self.flush_interval > 0 and self._unflushed >= self.flush_interval:
                self.flush()

        logger.debug("Upserted %d vectors", len(prepared))
        return len(prepared)

    def delete(self, ids) -> int:
        if isinstance(ids, str):
            ids = [ids]
        with self._lock:
            deleted = 0
            for id in ids:
                if self._entries.pop(id, None) is not None:
                    deleted += 1
            if deleted:
                logger.debug("Deleted %d vectors", deleted)
                if self.path:
                    self.flush()
        return deleted

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._unflushed = 0
            if self.path and self.path.exists():
                try:
                    self.path.unlink()
                except OSError as e:
                    raise PersistenceError(f"Failed to remove index file: {e}") from e
        logger.info("Vector index cleared")

    # ── reads ──

    def get(self, id: str) -> Optional[IndexEntry]:
        entry = self._entries.get(id)
        if entry is None:
            return None
        return IndexEntry(entry.id, list(entry.vector), dict(entry.metadata))

    def list_ids(self, filter: Optional[dict] = None, limit: Optional[int] = None) -> list[str]:
        ids = []
        with self._lock:
            for id, entry in self._entries.items():
                if matches_filter(entry.metadata, filter):
                    ids.append(id)
                    if limit and len(ids) >= limit:
                        break
        return ids

    def query(
        self,
        vector: list[float],
        top_k: int = 5,
        filter: Optional[dict] = None,
        include_metadata: bool = True,
    ) -> list[IndexMatch]:
        """
        Return the ``top_k`` most similar entries, best first.

        Equal scores keep insertion order (earlier entries win), so
        repeated queries return identical rankings.
        """
        query_vec = self._as_vector(vector, where="query vector")
        if top_k <= 0:
            return []

        start = time.monotonic()
        with self._lock:
            candidates = [
                entry for entry in self._entries.values()
                if matches_filter(entry.metadata, filter)
            ]
            if not candidates:
                return []

            matrix = np.asarray([entry.vector for entry in candidates], dtype=float)
            norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query_vec)
            dots = matrix @ query_vec
            scores = np.divide(dots, norms, out=np.zeros_like(dots), where=norms != 0)
            scores = np.clip(scores, -1.0, 1.0)

            order = np.argsort(-scores, kind="stable")[:top_k]
            matches = [
                IndexMatch(
                    id=candidates[i].id,
                    score=float(scores[i]),
                    metadata=dict(candidates[i].metadata) if include_metadata else None,
                )
                for i in order
            ]

        elapsed = (time.monotonic() - start) * 1000
        self.stats["total_queries"] += 1
        n = self.stats["total_queries"]
        self.stats["average_query_ms"] += (elapsed - self.stats["average_query_ms"]) / n
        logger.debug("Query completed in %.1fms, found %d matches", elapsed, len(matches))
        return matches

    def get_stats(self) -> dict:
        return {
            **self.stats,
            "total_vectors": len(self._entries),
            "unflushed": self._unflushed,
            "dimensions": self.dimensions,
            "path": str(self.path) if self.path else None,
        }

    # ── persistence ──

    def flush(self) -> None:
        """Write the index to disk atomically."""
        if not self.path:
            return
        with self._lock:
            payload = {
                "dimensions": self.dimensions,
                "saved_at": time.time(),
                "entries": [
                    {"id": e.id, "vector": e.vector, "metadata": e.metadata}
                    for e in self._entries.values()
                ],
            }
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                tmp = self.path.with_suffix(self.path.suffix + ".tmp")
                tmp.write_text(json.dumps(payload), encoding="utf-8")
                os.replace(tmp, self.path)
            except (OSError, TypeError, ValueError) as e:
                raise PersistenceError(f"Failed to save vector index: {e}") from e
            self._unflushed = 0
            self.stats["last_saved"] = payload["saved_at"]
        logger.debug("Saved %d vectors to %s", len(self._entries), self.path)

    def export(self) -> dict:
        """Backup of every entry, in insertion order."""
        with self._lock:
            return {
                "dimensions": self.dimensions,
                "exported_at": time.time(),
                "stats": dict(self.stats),
                "entries": [
                    {"id": e.id, "vector": list(e.vector), "metadata": dict(e.metadata)}
                    for e in self._entries.values()
                ],
            }

    def import_(self, backup: dict, replace: bool = True) -> int:
        """
        Load entries from an ``export()`` backup and persist them.

        With ``replace`` the current entries are discarded first; otherwise
        backup entries are upserted over them. The backup is validated in
        full before anything changes.
        """
        try:
            dimensions = backup["dimensions"]
            raw_entries = backup.get("entries") or []
            entries = [
                IndexEntry(raw["id"], raw["vector"], raw.get("metadata") or {})
                for raw in raw_entries
            ]
        except (KeyError, TypeError, AttributeError) as e:
            raise InvalidInput(f"Malformed vector index backup: {e}") from e
        if dimensions != self.dimensions:
            raise DimensionMismatch(self.dimensions, dimensions, "backup")
        prepared = [self._prepare(entry) for entry in entries]

        with self._lock:
            if replace:
                self._entries = OrderedDict()
            for entry in prepared:
                self._entries[entry.id] = entry
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
                self.stats["evicted"] += 1
            self._unflushed += len(prepared)
            if self.path:
                self.flush()

        logger.info("Imported %d vectors from backup", len(prepared))
        return len(prepared)

    def _load(self) -> None:
        if not self.path or not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            if data.get("dimensions") != self.dimensions:
                logger.warning(
                    "Index file %s has dimensions %s, expected %d; starting fresh",
                    self.path, data.get("dimensions"), self.dimensions,
                )
                return
            loaded: OrderedDict[str, IndexEntry] = OrderedDict()
            for raw in data.get("entries", []):
                entry = IndexEntry(raw["id"], raw["vector"], raw.get("metadata") or {})
                loaded[entry.id] = self._prepare(entry)
            self._entries = loaded
            logger.info("Loaded %d vectors from %s", len(loaded), self.path)
        except (OSError, ValueError, KeyError, TypeError, InvalidInput, DimensionMismatch) as e:
            logger.warning("Failed to load vectors from %s, starting fresh: %s", self.path, e)
            self._entries = OrderedDict()

    # ── validation ──

    def _as_vector(self, vector, where: str = "vector") -> np.ndarray:
        if vector is None or isinstance(vector, (str, bytes)):
            raise InvalidInput(f"{where} is required and must be a sequence of numbers")
        try:
            arr = np.asarray(vector, dtype=float)
        except (TypeError, ValueError) as e:
            raise InvalidInput(f"{where} must contain only numbers") from e
        if arr.ndim != 1 or arr.size == 0:
            raise InvalidInput(f"{where} must be a non-empty flat sequence")
        if arr.size != self.dimensions:
            raise DimensionMismatch(self.dimensions, int(arr.size), where)
        if not np.all(np.isfinite(arr)):
            raise InvalidInput(f"{where} contains non-finite values")
        return arr

    def _prepare(self, entry: IndexEntry) -> IndexEntry:
        if not isinstance(entry.id, str) or not entry.id:
            raise InvalidInput("Invalid vector entry: missing id")
        arr = self._as_vector(entry.vector, where=f"vector '{entry.id}'")
        metadata = dict(entry.metadata or {})
        return IndexEntry(entry.id, arr.tolist(), metadata)
