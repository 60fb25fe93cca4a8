"""
Memory orchestrator: durable, semantically searchable memories.

Composes the embedding generator, the vector index and the text compressor:

  store_memory      → embed → compress to max_memory_tokens → upsert
  retrieve_memories → embed query → index query → threshold on raw score
                      → re-rank by relevance (recency + importance boosts)

Write-path failures (embedding, persistence) propagate to the caller.
Read-path failures while loading state at startup are logged and degrade
to a cold start.
"""

import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .checkpoints import CheckpointStore
from .compressor import TextCompressor
from .config import MemoryConfig
from .embeddings import EmbeddingGenerator
from .errors import InvalidInput, PersistenceError
from .vector_index import IndexEntry, LocalVectorIndex, VectorIndex

logger = logging.getLogger(__name__)

IMPORTANCE_LEVELS = ("low", "medium", "high", "critical")
IMPORTANCE_BOOST = {"critical": 1.3, "high": 1.1}
RECENCY_HALF_LIFE = 7 * 24 * 60 * 60  # one week, in seconds
RECENCY_WEIGHT = 0.2

_CONTENT_KEYS = ("content", "original_content")


@dataclass
class MemoryRecord:
    id: str
    content: str
    original_content: str
    embedding: list[float]
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class RetrievedMemory:
    id: str
    content: str
    score: float
    relevance: float
    metadata: dict[str, Any] = field(default_factory=dict)


def calculate_relevance(score: float, metadata: dict, now: float) -> float:
    """Raw similarity boosted by recency (1 week half-life) and importance."""
    relevance = score
    timestamp = metadata.get("timestamp")
    if isinstance(timestamp, (int, float)):
        age = max(0.0, now - timestamp)
        relevance *= 1 + RECENCY_WEIGHT * 0.5 ** (age / RECENCY_HALF_LIFE)
    relevance *= IMPORTANCE_BOOST.get(metadata.get("importance"), 1.0)
    return relevance


def _to_text(value) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, default=str)


class MemorySystem:
    """
    Stores and retrieves memories for one agent session.

    Usage:
        memory = MemorySystem.from_config(MemoryConfig.from_env())
        memory.store_interaction("How do I ...?", "You can ...")
        hits = memory.retrieve_memories("how to ...", limit=3)
    """

    def __init__(
        self,
        embeddings: EmbeddingGenerator,
        index: VectorIndex,
        compressor: Optional[TextCompressor] = None,
        checkpoints: Optional[CheckpointStore] = None,
        state_path: Optional[Path] = None,
        session_id: Optional[str] = None,
        max_memory_tokens: int = 2000,
        conversation_log_limit: int = 100,
        default_limit: int = 5,
        default_threshold: float = 0.7,
        clock=time.time,
    ):
        self.embeddings = embeddings
        self.index = index
        self.compressor = compressor or TextCompressor()
        self.checkpoints = checkpoints
        self.state_path = Path(state_path) if state_path else None
        self.max_memory_tokens = max_memory_tokens
        self.conversation_log_limit = conversation_log_limit
        self.default_limit = default_limit
        self.default_threshold = default_threshold
        self._clock = clock
        self._lock = threading.RLock()

        self._session_id = session_id
        self.conversation_history: list[dict] = []
        self.memory_ids: list[str] = []  # memories written by this session
        self.stats = {
            "total_memories": 0,
            "total_retrievals": 0,
            "average_retrieval_ms": 0.0,
            "compression_savings": 0,
            "interactions": 0,
        }
        self.load_state()

    @classmethod
    def from_config(cls, config: MemoryConfig, session_id: Optional[str] = None) -> "MemorySystem":
        storage = Path(config.storage_dir)
        embeddings = EmbeddingGenerator.from_config(config)
        embeddings.load_cache()
        index = LocalVectorIndex(
            dimensions=config.embedding_dimensions,
            path=storage / f"{config.index_name}.json",
            flush_interval=config.index_flush_interval,
            max_entries=config.max_index_entries,
        )
        return cls(
            embeddings=embeddings,
            index=index,
            checkpoints=CheckpointStore(storage / "checkpoints"),
            state_path=storage / "current-state.json",
            session_id=session_id,
            max_memory_tokens=config.max_memory_tokens,
            conversation_log_limit=config.conversation_log_limit,
            default_limit=config.recall_top_k,
            default_threshold=config.recall_threshold,
        )

    @property
    def session_id(self) -> str:
        if not self._session_id:
            self._session_id = f"session_{int(self._clock() * 1000)}_{uuid.uuid4().hex[:9]}"
        return self._session_id

    # ── store ──

    def store_memory(self, content: str, metadata: Optional[dict] = None) -> str:
        """Embed, compress and index ``content``; returns the new memory id."""
        if not isinstance(content, str) or not content.strip():
            raise InvalidInput("Memory content must be a non-empty string")
        extra = dict(metadata or {})
        try:
            json.dumps(extra)
        except (TypeError, ValueError) as e:
            raise InvalidInput(f"Memory metadata must be JSON-serializable: {e}") from e

        embedding = self.embeddings.generate(content)
        compressed = self.compressor.compress(content, self.max_memory_tokens)

        record = MemoryRecord(
            id=f"mem_{int(self._clock() * 1000)}_{uuid.uuid4().hex[:9]}",
            content=compressed.text,
            original_content=content,
            embedding=embedding,
            metadata={
                "timestamp": self._clock(),
                "session_id": self.session_id,
                "type": "conversation",
                "importance": "medium",
                "compression_ratio": compressed.ratio,
                **extra,
            },
        )

        self.index.upsert([
            IndexEntry(
                id=record.id,
                vector=record.embedding,
                metadata={
                    **record.metadata,
                    "content": record.content,
                    "original_content": record.original_content,
                },
            )
        ])

        with self._lock:
            self.memory_ids.append(record.id)
            self.stats["total_memories"] += 1
            self.stats["compression_savings"] += compressed.savings

        logger.debug("Memory stored: %s (%s)", record.id, record.metadata["type"])
        return record.id

    def store_interaction(self, request, response, context: Optional[dict] = None) -> tuple[str, str]:
        """Store a request/response pair as two high-importance memories."""
        project = (context or {}).get("project_name", "general")

        request_id = self.store_memory(
            _to_text(request),
            {"type": "request", "importance": "high", "context": project},
        )
        response_meta = {"type": "response", "importance": "high", "context": project}
        if isinstance(response, dict):
            for key in ("provider", "model"):
                if isinstance(response.get(key), str):
                    response_meta[key] = response[key]
        response_id = self.store_memory(_to_text(response), response_meta)

        with self._lock:
            self.conversation_history.append({
                "timestamp": self._clock(),
                "request": request,
                "response": response,
                "memory_ids": [request_id, response_id],
            })
            # Drop the older half once the log overflows
            if len(self.conversation_history) > self.conversation_log_limit:
                keep = self.conversation_log_limit // 2
                self.conversation_history = self.conversation_history[-keep:]
            self.stats["interactions"] += 1

        return request_id, response_id

    # ── retrieve ──

    def retrieve_memories(
        self,
        query: str,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
        filter: Optional[dict] = None,
        session_id: Optional[str] = None,
        type: Optional[str] = None,
        time_range: Optional[tuple[float, float]] = None,
    ) -> list[RetrievedMemory]:
        """
        Semantic search over stored memories.

        Matches whose raw similarity is below ``threshold`` are dropped
        before the relevance boosts are applied; survivors are sorted by
        relevance.
        """
        limit = self.default_limit if limit is None else limit
        threshold = self.default_threshold if threshold is None else threshold
        if limit <= 0:
            return []

        start = time.monotonic()
        query_vector = self.embeddings.generate(query)
        conditions = self._build_filter(filter, session_id, type, time_range)
        matches = self.index.query(
            query_vector, top_k=limit * 2, filter=conditions, include_metadata=True
        )

        now = self._clock()
        memories = []
        for match in matches:
            if match.score < threshold:
                continue
            metadata = dict(match.metadata or {})
            content = metadata.get("content", "")
            for key in _CONTENT_KEYS:
                metadata.pop(key, None)
            memories.append(RetrievedMemory(
                id=match.id,
                content=content,
                score=match.score,
                relevance=calculate_relevance(match.score, metadata, now),
                metadata=metadata,
            ))
        memories.sort(key=lambda m: m.relevance, reverse=True)
        memories = memories[:limit]

        elapsed = (time.monotonic() - start) * 1000
        with self._lock:
            self.stats["total_retrievals"] += 1
            n = self.stats["total_retrievals"]
            self.stats["average_retrieval_ms"] += (elapsed - self.stats["average_retrieval_ms"]) / n
        logger.debug("Retrieved %d memories in %.1fms", len(memories), elapsed)
        return memories

    def search_memories(self, query: str, **options) -> list[RetrievedMemory]:
        """Looser retrieval (default threshold 0.6)."""
        options.setdefault("threshold", 0.6)
        return self.retrieve_memories(query, **options)

    def get_memory(self, memory_id: str) -> Optional[MemoryRecord]:
        entry = self.index.get(memory_id)
        if entry is None:
            return None
        metadata = dict(entry.metadata)
        content = metadata.pop("content", "")
        original = metadata.pop("original_content", content)
        return MemoryRecord(memory_id, content, original, entry.vector, metadata)

    def get_conversation_history(self, limit: int = 10) -> list[dict]:
        with self._lock:
            return list(self.conversation_history[-limit:]) if limit > 0 else []

    @staticmethod
    def _build_filter(base, session_id, type, time_range) -> dict:
        conditions = dict(base or {})
        if session_id:
            conditions["session_id"] = session_id
        if type:
            conditions["type"] = type
        if time_range:
            start, end = time_range
            conditions["timestamp"] = {"$gte": start, "$lte": end}
        return conditions

    # ── checkpoints ──

    def save_checkpoint(self, name: str, description: str = "", window=None) -> str:
        """
        Write a named snapshot of the session (and optionally a context window).

        Returns the id of the checkpoint memory indexed alongside the file.
        """
        if self.checkpoints is None:
            raise InvalidInput("No checkpoint store configured")

        with self._lock:
            payload = {
                "kind": "memory",
                "description": description,
                "timestamp": self._clock(),
                "session_id": self.session_id,
                "conversation_history": list(self.conversation_history),
                "memory_ids": list(self.memory_ids),
                "stats": dict(self.stats),
            }
        if window is not None:
            payload["window"] = window.snapshot()

        self.checkpoints.write(name, payload)
        checkpoint_id = self.store_memory(
            f"Checkpoint {name}: {description or 'session snapshot'} "
            f"({len(payload['conversation_history'])} interactions)",
            {"type": "checkpoint", "importance": "critical", "checkpoint_name": name},
        )
        logger.info("Checkpoint created: %s", name)
        return checkpoint_id

    def restore_checkpoint(self, name: str, window=None) -> dict:
        """
        Replace session state with a named checkpoint.

        Raises CheckpointNotFound (state untouched) for an unknown name.
        """
        if self.checkpoints is None:
            raise InvalidInput("No checkpoint store configured")
        data = self.checkpoints.read(name)

        history = list(data.get("conversation_history") or [])
        memory_ids = [str(i) for i in data.get("memory_ids") or []]
        stats = {**self.stats, **(data.get("stats") or {})}

        if window is not None:
            if "window" in data:
                window.load_snapshot(data["window"])
            else:
                logger.warning("Checkpoint %s has no window state; window left as is", name)

        with self._lock:
            self.conversation_history = history
            self.memory_ids = memory_ids
            self.stats = stats
            if data.get("session_id"):
                self._session_id = data["session_id"]

        logger.info("Restored from checkpoint: %s", name)
        return data

    # ── persistence ──

    def save_state(self) -> None:
        if not self.state_path:
            return
        with self._lock:
            state = {
                "session_id": self.session_id,
                "timestamp": self._clock(),
                "conversation_history": self.conversation_history,
                "memory_ids": self.memory_ids,
                "stats": self.stats,
            }
        try:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.state_path.with_suffix(".tmp")
            tmp.write_text(
                json.dumps(state, indent=2, ensure_ascii=False, default=str),
                encoding="utf-8",
            )
            tmp.replace(self.state_path)
        except OSError as e:
            raise PersistenceError(f"Failed to save memory state: {e}") from e
        logger.debug("Memory state saved to %s", self.state_path)

    def load_state(self) -> bool:
        """Load the previous session state; any failure means a cold start."""
        if not self.state_path or not self.state_path.exists():
            return False
        try:
            state = json.loads(self.state_path.read_text(encoding="utf-8"))
            history = list(state.get("conversation_history") or [])
            memory_ids = [str(i) for i in state.get("memory_ids") or []]
            stats = {**self.stats, **(state.get("stats") or {})}
        except (OSError, ValueError, TypeError, AttributeError) as e:
            logger.warning("Failed to load previous session, starting fresh: %s", e)
            return False
        with self._lock:
            self.conversation_history = history
            self.memory_ids = memory_ids
            self.stats = stats
        logger.info("Previous session state loaded (%d interactions)", len(history))
        return True

    # ── maintenance ──

    def prune_memories(self, max_age_days: int = 30, importance: str = "low") -> int:
        """Delete memories of the given importance older than ``max_age_days``."""
        cutoff = self._clock() - max_age_days * 24 * 60 * 60
        ids = self.index.list_ids({"importance": importance, "timestamp": {"$lt": cutoff}})
        if not ids:
            return 0
        deleted = self.index.delete(ids)
        with self._lock:
            removed = set(ids)
            self.memory_ids = [i for i in self.memory_ids if i not in removed]
        logger.info("Pruned %d %s-importance memories older than %d days", deleted, importance, max_age_days)
        return deleted

    def get_stats(self) -> dict:
        with self._lock:
            return {
                **self.stats,
                "conversation_history_size": len(self.conversation_history),
                "session_id": self.session_id,
                "indexed_vectors": len(self.index),
            }

    def close(self) -> None:
        """Flush the index, persist the embedding cache and session state."""
        self.index.flush()
        self.embeddings.save_cache()
        self.save_state()
        logger.info("Memory system closed (%d memories this session)", len(self.memory_ids))
