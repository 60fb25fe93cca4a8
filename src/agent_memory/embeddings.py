"""
Embedding generator with a bounded content-hash cache.

Wraps any LangChain ``Embeddings`` provider (``embed_query`` /
``embed_documents``). Identical texts are served from an in-process
cache keyed by SHA-256; the cache is bounded and evicts the oldest
inserted entry first.

Batch semantics:
  - texts are validated up front, de-duplicated and served from cache
  - the remainder is chunked to ``max_batch_size`` and dispatched chunk by chunk
  - every chunk that succeeds is cached, even if a later chunk fails;
    the failure is then raised as EmbeddingProviderError
"""

import hashlib
import json
import logging
import os
import time
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import numpy as np
from langchain_core.embeddings import DeterministicFakeEmbedding, Embeddings

from .config import MemoryConfig
from .errors import EmbeddingProviderError, InvalidInput
from .vector_index import cosine_similarity

logger = logging.getLogger(__name__)

DEFAULT_CACHE_SIZE = 10_000


@dataclass
class TextMatch:
    index: int
    text: str
    score: float


def create_embedding_model(config: MemoryConfig) -> Embeddings:
    """Build the LangChain embedding provider named by the config."""
    provider = config.embedding_provider.lower()
    if provider == "fake":
        return DeterministicFakeEmbedding(size=config.embedding_dimensions)
    if provider == "openai":
        from langchain_openai import OpenAIEmbeddings

        embed_kwargs = {}
        if config.embedding_api_key:
            embed_kwargs["api_key"] = config.embedding_api_key
        if config.embedding_base_url:
            embed_kwargs["base_url"] = config.embedding_base_url
        return OpenAIEmbeddings(
            model=config.embedding_model,
            dimensions=config.embedding_dimensions,
            **embed_kwargs,
        )
    raise InvalidInput(f"Unsupported embedding provider: {config.embedding_provider}")


def _status_code(exc: Exception) -> Optional[int]:
    status = getattr(exc, "status_code", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def classify_provider_error(exc: Exception) -> EmbeddingProviderError:
    """Map a provider exception to an EmbeddingProviderError kind."""
    status = _status_code(exc)
    name = type(exc).__name__.lower()

    if status == 429 or "ratelimit" in name:
        kind, retryable = EmbeddingProviderError.RATE_LIMITED, True
    elif status in (401, 403) or "authentication" in name or "permission" in name:
        kind, retryable = EmbeddingProviderError.AUTH_FAILED, False
    elif status in (400, 404, 413, 422) or "badrequest" in name:
        kind, retryable = EmbeddingProviderError.INVALID_REQUEST, False
    elif status is not None and status >= 500:
        kind, retryable = EmbeddingProviderError.SERVER_ERROR, True
    elif isinstance(exc, (ConnectionError, TimeoutError)) or (
        "timeout" in name or "connection" in name
    ):
        kind, retryable = EmbeddingProviderError.NETWORK, True
    else:
        kind, retryable = EmbeddingProviderError.UNKNOWN, False

    return EmbeddingProviderError(
        f"Embedding provider failed ({kind}): {exc}",
        kind=kind,
        retryable=retryable,
        status_code=status,
    )


class EmbeddingGenerator:
    """Generates embeddings through a LangChain provider, with caching."""

    def __init__(
        self,
        embedding_model: Embeddings,
        dimensions: Optional[int] = None,
        max_batch_size: int = 100,
        cache_size: int = DEFAULT_CACHE_SIZE,
        cache_path: Optional[Path] = None,
    ):
        if max_batch_size <= 0:
            raise ValueError("max_batch_size must be positive")
        self._model = embedding_model
        self.dimensions = dimensions
        self.max_batch_size = max_batch_size
        self.cache_size = cache_size
        self.cache_path = Path(cache_path) if cache_path else None
        self._cache: OrderedDict[str, list[float]] = OrderedDict()
        self.stats = {
            "total_embeddings": 0,
            "provider_calls": 0,
            "cache_hits": 0,
            "errors": 0,
            "average_latency_ms": 0.0,
        }

    @classmethod
    def from_config(cls, config: MemoryConfig) -> "EmbeddingGenerator":
        return cls(
            create_embedding_model(config),
            dimensions=config.embedding_dimensions,
            max_batch_size=config.embedding_batch_size,
            cache_size=config.embedding_cache_size,
            cache_path=Path(config.storage_dir) / "embedding-cache.json",
        )

    # ── public API ──

    def generate(self, text: str) -> list[float]:
        """Embed a single text, serving repeats from the cache."""
        self._validate(text)

        key = self._hash(text)
        cached = self._cache.get(key)
        if cached is not None:
            self.stats["cache_hits"] += 1
            return list(cached)

        start = time.monotonic()
        try:
            vector = self._check_vector(self._model.embed_query(text))
        except EmbeddingProviderError:
            self.stats["errors"] += 1
            raise
        except Exception as e:
            self.stats["errors"] += 1
            error = classify_provider_error(e)
            logger.warning("Embedding failed: %s", error)
            raise error from e
        self.stats["provider_calls"] += 1

        self._store(key, vector)
        self._record_latency(time.monotonic() - start, 1)
        return list(vector)

    def generate_batch(self, texts: list[str]) -> list[list[float]]:
        """
        Embed many texts, preserving input order.

        Raises EmbeddingProviderError after all chunks were attempted if any
        chunk failed; successful chunks stay cached.
        """
        if not isinstance(texts, (list, tuple)):
            raise InvalidInput("texts must be a list of strings")
        for text in texts:
            self._validate(text)
        if not texts:
            return []

        results: dict[str, list[float]] = {}
        pending: dict[str, str] = {}  # hash -> text, insertion ordered
        for text in texts:
            key = self._hash(text)
            if key in results or key in pending:
                continue
            cached = self._cache.get(key)
            if cached is not None:
                self.stats["cache_hits"] += 1
                results[key] = cached
            else:
                pending[key] = text
        pending_texts = list(pending.values())

        failure: Optional[EmbeddingProviderError] = None
        for i in range(0, len(pending_texts), self.max_batch_size):
            chunk = pending_texts[i : i + self.max_batch_size]
            start = time.monotonic()
            try:
                vectors = self._model.embed_documents(chunk)
                self.stats["provider_calls"] += 1
                if len(vectors) != len(chunk):
                    raise EmbeddingProviderError(
                        f"Provider returned {len(vectors)} vectors for {len(chunk)} texts",
                        kind=EmbeddingProviderError.MALFORMED_RESPONSE,
                    )
                vectors = [self._check_vector(v) for v in vectors]
            except EmbeddingProviderError as e:
                self.stats["errors"] += 1
                failure = failure or e
                logger.warning("Embedding batch of %d failed: %s", len(chunk), e)
                continue
            except Exception as e:
                self.stats["errors"] += 1
                error = classify_provider_error(e)
                error.__cause__ = e
                failure = failure or error
                logger.warning("Embedding batch of %d failed: %s", len(chunk), error)
                continue

            for text, vector in zip(chunk, vectors):
                key = self._hash(text)
                self._store(key, vector)
                results[key] = vector
            self._record_latency(time.monotonic() - start, len(chunk))

        if failure is not None:
            failure.completed = sum(1 for t in texts if self._hash(t) in results)
            raise failure

        return [list(results[self._hash(text)]) for text in texts]

    def similarity(self, text_a: str, text_b: str) -> float:
        """Cosine similarity between the embeddings of two texts."""
        vec_a, vec_b = self.generate_batch([text_a, text_b])
        return cosine_similarity(vec_a, vec_b)

    def find_similar(
        self,
        query: str,
        candidates: list[str],
        threshold: float = 0.7,
        limit: int = 5,
    ) -> list[TextMatch]:
        """
        Rank ``candidates`` by similarity to ``query``, best first.

        Candidates scoring below ``threshold`` are dropped; equal scores
        keep input order.
        """
        if not candidates or limit <= 0:
            self._validate(query)
            return []
        query_vec, *vectors = self.generate_batch([query, *candidates])
        matches = [
            TextMatch(index=i, text=text, score=cosine_similarity(query_vec, vector))
            for i, (text, vector) in enumerate(zip(candidates, vectors))
        ]
        matches = [m for m in matches if m.score >= threshold]
        matches.sort(key=lambda m: (-m.score, m.index))
        return matches[:limit]

    def cluster_texts(self, texts: list[str], threshold: float = 0.8) -> list[list[TextMatch]]:
        """
        Greedy single-pass clustering.

        Each unassigned text seeds a cluster and pulls in every later
        unassigned text whose similarity to the seed is at least
        ``threshold``. Scores are relative to the seed (1.0 for the seed).
        """
        vectors = self.generate_batch(texts)
        if not vectors:
            return []
        matrix = np.asarray(vectors, dtype=float)
        norms = np.linalg.norm(matrix, axis=1, keepdims=True)
        unit = np.divide(matrix, norms, out=np.zeros_like(matrix), where=norms != 0)
        scores = np.clip(unit @ unit.T, -1.0, 1.0)

        clusters: list[list[TextMatch]] = []
        assigned: set[int] = set()
        for i, text in enumerate(texts):
            if i in assigned:
                continue
            assigned.add(i)
            cluster = [TextMatch(index=i, text=text, score=1.0)]
            for j in range(i + 1, len(texts)):
                if j not in assigned and scores[i, j] >= threshold:
                    assigned.add(j)
                    cluster.append(TextMatch(index=j, text=texts[j], score=float(scores[i, j])))
            clusters.append(cluster)

        logger.debug("Clustered %d texts into %d groups", len(texts), len(clusters))
        return clusters

    # ── cache management ──

    def load_cache(self) -> int:
        """Load the persisted cache; failures degrade to an empty cache."""
        if not self.cache_path or not self.cache_path.exists():
            return 0
        try:
            data = json.loads(self.cache_path.read_text(encoding="utf-8"))
            entries = data.get("entries", {})
            self._cache = OrderedDict(
                (k, [float(x) for x in v]) for k, v in entries.items()
            )
            while len(self._cache) > self.cache_size:
                self._cache.popitem(last=False)
            logger.debug("Loaded %d cached embeddings", len(self._cache))
        except (OSError, ValueError, TypeError, AttributeError) as e:
            logger.warning("Failed to load embedding cache, starting empty: %s", e)
            self._cache = OrderedDict()
        return len(self._cache)

    def save_cache(self) -> None:
        """Persist the cache; failures are logged (the cache is derivable)."""
        if not self.cache_path or not self._cache:
            return
        try:
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.cache_path.with_suffix(".tmp")
            tmp.write_text(json.dumps({"entries": self._cache}), encoding="utf-8")
            os.replace(tmp, self.cache_path)
            logger.debug("Saved %d cached embeddings", len(self._cache))
        except OSError as e:
            logger.warning("Failed to save embedding cache: %s", e)

    def clear_cache(self) -> None:
        self._cache.clear()
        self.stats["cache_hits"] = 0
        logger.info("Embedding cache cleared")

    def get_stats(self) -> dict:
        lookups = self.stats["total_embeddings"] + self.stats["cache_hits"]
        return {
            **self.stats,
            "cache_size": len(self._cache),
            "cache_hit_rate": (
                round(self.stats["cache_hits"] / lookups * 100, 2) if lookups else 0.0
            ),
        }

    # ── internals ──

    @staticmethod
    def _validate(text) -> None:
        if not isinstance(text, str) or not text.strip():
            raise InvalidInput("Text input is required and must be a non-empty string")

    @staticmethod
    def _hash(text: str) -> str:
        return hashlib.sha256(text.encode("utf-8")).hexdigest()

    def _check_vector(self, vector) -> list[float]:
        try:
            values = [float(x) for x in vector]
        except (TypeError, ValueError) as e:
            raise EmbeddingProviderError(
                f"Provider returned a malformed vector: {e}",
                kind=EmbeddingProviderError.MALFORMED_RESPONSE,
            ) from e
        if not values or (self.dimensions and len(values) != self.dimensions):
            raise EmbeddingProviderError(
                f"Provider returned {len(values)} dimensions, expected {self.dimensions}",
                kind=EmbeddingProviderError.MALFORMED_RESPONSE,
            )
        return values

    def _store(self, key: str, vector: list[float]) -> None:
        if self.cache_size <= 0:
            return
        self._cache[key] = vector
        self._cache.move_to_end(key)
        while len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)

    def _record_latency(self, seconds: float, count: int) -> None:
        total = self.stats["total_embeddings"] + count
        prev = self.stats["average_latency_ms"] * self.stats["total_embeddings"]
        self.stats["average_latency_ms"] = (prev + seconds * 1000) / total
        self.stats["total_embeddings"] = total
