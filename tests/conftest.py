"""
Shared pytest setup.

Puts ``src`` on sys.path so tests import ``agent_memory`` directly, and
provides small deterministic fakes for the embedding provider.
"""

import re
import sys
from pathlib import Path

import pytest

# Add src to PYTHONPATH
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from langchain_core.embeddings import Embeddings  # noqa: E402

from agent_memory.checkpoints import CheckpointStore  # noqa: E402
from agent_memory.compressor import TextCompressor  # noqa: E402
from agent_memory.embeddings import EmbeddingGenerator  # noqa: E402
from agent_memory.memory_system import MemorySystem  # noqa: E402
from agent_memory.vector_index import LocalVectorIndex  # noqa: E402

DIMS = 16

VOCAB = [
    "alpha", "beta", "gamma", "delta",
    "deploy", "database", "error", "fix",
    "python", "parser", "login", "cache",
    "report", "review", "checkpoint",
]


def word_count(text: str) -> int:
    """Token estimator used where tests need exact sizes."""
    return len(text.split())


class KeywordEmbeddings(Embeddings):
    """Bag-of-words over a fixed vocabulary; unknown text lands in the last slot."""

    def __init__(self, size: int = DIMS):
        self.size = size
        self.calls: list[list[str]] = []

    def _embed(self, text: str) -> list[float]:
        vector = [0.0] * self.size
        for word in re.findall(r"[a-z]+", text.lower()):
            if word in VOCAB:
                vector[VOCAB.index(word)] += 1.0
        if not any(vector):
            vector[-1] = 1.0
        return vector

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        return [self._embed(t) for t in texts]

    def embed_query(self, text: str) -> list[float]:
        self.calls.append([text])
        return self._embed(text)


class ProviderHTTPError(Exception):
    """Stand-in for an SDK error that carries an HTTP status."""

    def __init__(self, status_code: int):
        self.status_code = status_code
        super().__init__(f"HTTP {status_code}")


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def keyword_embeddings():
    return KeywordEmbeddings()


@pytest.fixture
def generator(keyword_embeddings):
    return EmbeddingGenerator(keyword_embeddings, dimensions=DIMS)


@pytest.fixture
def memory(tmp_path, generator, clock):
    index = LocalVectorIndex(dimensions=DIMS, path=tmp_path / "index.json")
    return MemorySystem(
        embeddings=generator,
        index=index,
        compressor=TextCompressor(),
        checkpoints=CheckpointStore(tmp_path / "checkpoints"),
        state_path=tmp_path / "state.json",
        session_id="session-test",
        clock=clock,
    )
