"""
Tests for the embedding generator and provider error classification.
"""

import json

import pytest
from langchain_core.embeddings import DeterministicFakeEmbedding, Embeddings

from agent_memory.config import MemoryConfig
from agent_memory.embeddings import (
    EmbeddingGenerator,
    classify_provider_error,
    create_embedding_model,
)
from agent_memory.errors import EmbeddingProviderError, InvalidInput

from conftest import DIMS, KeywordEmbeddings, ProviderHTTPError


class FailingEmbeddings(Embeddings):
    """Raises for any batch containing a text with 'boom'."""

    def __init__(self, error: Exception):
        self.error = error
        self.batches: list[list[str]] = []

    def embed_documents(self, texts):
        self.batches.append(list(texts))
        if any("boom" in t for t in texts):
            raise self.error
        return [[1.0] + [0.0] * (DIMS - 1) for _ in texts]

    def embed_query(self, text):
        if "boom" in text:
            raise self.error
        return [1.0] + [0.0] * (DIMS - 1)


class WrongSizeEmbeddings(Embeddings):
    def embed_documents(self, texts):
        return [[1.0, 0.0] for _ in texts]

    def embed_query(self, text):
        return [1.0, 0.0]


# ── Provider Factory Tests ──


class TestCreateEmbeddingModel:
    def test_fake_provider(self):
        model = create_embedding_model(
            MemoryConfig(embedding_provider="fake", embedding_dimensions=8)
        )
        assert isinstance(model, DeterministicFakeEmbedding)
        assert len(model.embed_query("hello")) == 8

    def test_unknown_provider(self):
        with pytest.raises(InvalidInput):
            create_embedding_model(MemoryConfig(embedding_provider="nope"))


# ── Error Classification Tests ──


class TestClassifyProviderError:
    @pytest.mark.parametrize(
        "status, kind, retryable",
        [
            (429, EmbeddingProviderError.RATE_LIMITED, True),
            (401, EmbeddingProviderError.AUTH_FAILED, False),
            (403, EmbeddingProviderError.AUTH_FAILED, False),
            (400, EmbeddingProviderError.INVALID_REQUEST, False),
            (503, EmbeddingProviderError.SERVER_ERROR, True),
        ],
    )
    def test_http_status(self, status, kind, retryable):
        error = classify_provider_error(ProviderHTTPError(status))
        assert error.kind == kind
        assert error.retryable is retryable
        assert error.status_code == status

    def test_network_error(self):
        error = classify_provider_error(ConnectionError("reset by peer"))
        assert error.kind == EmbeddingProviderError.NETWORK
        assert error.retryable is True

    def test_unknown_error(self):
        error = classify_provider_error(RuntimeError("???"))
        assert error.kind == EmbeddingProviderError.UNKNOWN
        assert error.retryable is False


# ── Generator Tests ──


class TestEmbeddingGenerator:
    def test_generate_returns_vector(self, generator):
        vector = generator.generate("python parser")
        assert len(vector) == DIMS

    def test_generate_is_cached(self, keyword_embeddings):
        generator = EmbeddingGenerator(keyword_embeddings, dimensions=DIMS)
        first = generator.generate("deploy the database")
        second = generator.generate("deploy the database")
        assert first == second
        assert len(keyword_embeddings.calls) == 1
        assert generator.stats["cache_hits"] == 1

    @pytest.mark.parametrize("bad", ["", "   ", None, 42])
    def test_generate_rejects_empty(self, generator, bad):
        with pytest.raises(InvalidInput):
            generator.generate(bad)

    def test_generate_provider_error(self):
        generator = EmbeddingGenerator(FailingEmbeddings(ProviderHTTPError(429)), dimensions=DIMS)
        with pytest.raises(EmbeddingProviderError) as exc_info:
            generator.generate("boom")
        assert exc_info.value.kind == EmbeddingProviderError.RATE_LIMITED
        assert exc_info.value.retryable is True
        assert generator.stats["errors"] == 1

    def test_generate_wrong_dimensions(self):
        generator = EmbeddingGenerator(WrongSizeEmbeddings(), dimensions=DIMS)
        with pytest.raises(EmbeddingProviderError) as exc_info:
            generator.generate("hello")
        assert exc_info.value.kind == EmbeddingProviderError.MALFORMED_RESPONSE

    def test_batch_preserves_order_and_dedupes(self, keyword_embeddings):
        generator = EmbeddingGenerator(keyword_embeddings, dimensions=DIMS)
        vectors = generator.generate_batch(["alpha", "beta", "alpha"])
        assert vectors[0] == vectors[2]
        assert vectors[0] != vectors[1]
        assert keyword_embeddings.calls == [["alpha", "beta"]]

    def test_batch_uses_cache(self, keyword_embeddings):
        generator = EmbeddingGenerator(keyword_embeddings, dimensions=DIMS)
        generator.generate("alpha")
        generator.generate_batch(["alpha", "beta"])
        assert keyword_embeddings.calls[-1] == ["beta"]

    def test_batch_chunks_requests(self, keyword_embeddings):
        generator = EmbeddingGenerator(keyword_embeddings, dimensions=DIMS, max_batch_size=2)
        generator.generate_batch(["alpha", "beta", "gamma", "delta", "fix"])
        assert [len(c) for c in keyword_embeddings.calls] == [2, 2, 1]

    def test_batch_rejects_any_invalid_text(self, keyword_embeddings):
        generator = EmbeddingGenerator(keyword_embeddings, dimensions=DIMS)
        with pytest.raises(InvalidInput):
            generator.generate_batch(["alpha", ""])
        assert keyword_embeddings.calls == []

    def test_batch_partial_failure_keeps_successful_chunks(self):
        provider = FailingEmbeddings(ProviderHTTPError(500))
        generator = EmbeddingGenerator(provider, dimensions=DIMS, max_batch_size=2)
        with pytest.raises(EmbeddingProviderError) as exc_info:
            generator.generate_batch(["one", "two", "boom", "three", "four", "five"])
        error = exc_info.value
        assert error.kind == EmbeddingProviderError.SERVER_ERROR
        # chunks [one, two] and [four, five] succeeded
        assert error.completed == 4
        assert len(provider.batches) == 3

        # Successful chunks are now served from cache
        provider.batches.clear()
        generator.generate_batch(["one", "five"])
        assert provider.batches == []

    def test_batch_empty(self, generator):
        assert generator.generate_batch([]) == []

    def test_cache_eviction_oldest_first(self, keyword_embeddings):
        generator = EmbeddingGenerator(keyword_embeddings, dimensions=DIMS, cache_size=2)
        generator.generate("alpha")
        generator.generate("beta")
        generator.generate("gamma")
        keyword_embeddings.calls.clear()
        generator.generate("beta")
        assert keyword_embeddings.calls == []
        generator.generate("alpha")
        assert keyword_embeddings.calls == [["alpha"]]

    def test_similarity(self, generator):
        assert generator.similarity("alpha", "alpha beta") == pytest.approx(2 ** -0.5)
        assert generator.similarity("alpha", "beta") == 0.0

    def test_find_similar(self, generator):
        candidates = ["deploy the database", "login cache", "deploy", "database deploy"]
        matches = generator.find_similar("deploy database", candidates, threshold=0.5)
        assert [(m.index, m.text) for m in matches] == [
            (0, "deploy the database"),
            (3, "database deploy"),
            (2, "deploy"),
        ]
        assert matches[0].score == pytest.approx(1.0)
        assert matches[2].score == pytest.approx(2 ** -0.5)

    def test_find_similar_limit_and_empty(self, generator):
        matches = generator.find_similar("alpha", ["alpha", "alpha beta", "beta"], threshold=0.0, limit=2)
        assert [m.text for m in matches] == ["alpha", "alpha beta"]
        assert generator.find_similar("alpha", []) == []
        with pytest.raises(InvalidInput):
            generator.find_similar("", [])

    def test_cluster_texts(self, generator):
        clusters = generator.cluster_texts(["alpha", "beta", "alpha alpha", "beta", "python parser"])
        assert [[m.index for m in c] for c in clusters] == [[0, 2], [1, 3], [4]]
        assert clusters[0][0].score == 1.0
        assert clusters[0][1].score == pytest.approx(1.0)

    def test_cluster_texts_threshold(self, generator):
        texts = ["alpha", "alpha beta"]
        assert len(generator.cluster_texts(texts, threshold=0.9)) == 2
        assert len(generator.cluster_texts(texts, threshold=0.7)) == 1
        assert generator.cluster_texts([]) == []

    def test_cache_persistence(self, tmp_path, keyword_embeddings):
        path = tmp_path / "cache.json"
        generator = EmbeddingGenerator(keyword_embeddings, dimensions=DIMS, cache_path=path)
        generator.generate("alpha")
        generator.save_cache()
        assert "entries" in json.loads(path.read_text())

        other = KeywordEmbeddings()
        restored = EmbeddingGenerator(other, dimensions=DIMS, cache_path=path)
        assert restored.load_cache() == 1
        restored.generate("alpha")
        assert other.calls == []

    def test_corrupt_cache_starts_empty(self, tmp_path, keyword_embeddings):
        path = tmp_path / "cache.json"
        path.write_text("{not json")
        generator = EmbeddingGenerator(keyword_embeddings, dimensions=DIMS, cache_path=path)
        assert generator.load_cache() == 0

    def test_stats(self, generator):
        generator.generate("alpha")
        generator.generate("alpha")
        stats = generator.get_stats()
        assert stats["total_embeddings"] == 1
        assert stats["cache_hits"] == 1
        assert stats["cache_size"] == 1
        assert stats["cache_hit_rate"] == 50.0
