"""
Conversation memory for LLM agents.

Two cooperating parts:

- Context window manager: tracks token usage against a budget and compacts
  the live conversation (summarize low-priority turns, compress medium ones,
  keep critical/high ones) before it overflows
- Memory system: embeds, compresses and indexes memories for semantic
  recall, with named checkpoints and persisted session state

Memories live in a local JSON-backed vector index; embeddings come from any
LangChain ``Embeddings`` provider.
"""

from .checkpoints import CheckpointStore
from .compressor import CompressionResult, TextCompressor
from .condenser import condense_text, message_text
from .config import MemoryConfig
from .context_manager import AddTurnResult, CompactionResult, ContextWindowManager
from .embeddings import EmbeddingGenerator, TextMatch, create_embedding_model
from .errors import (
    AgentMemoryError,
    CheckpointNotFound,
    CompactionFailure,
    DimensionMismatch,
    EmbeddingProviderError,
    InvalidInput,
    PersistenceError,
)
from .memory_system import MemoryRecord, MemorySystem, RetrievedMemory
from .middleware import MemoryMiddleware
from .summarizer import TurnSummarizer
from .token_budget import TokenBudget, calculate_budget, estimate_tokens
from .turns import Priority, StatusLevel, Turn
from .vector_index import IndexEntry, IndexMatch, LocalVectorIndex, VectorIndex

__all__ = [
    "AddTurnResult",
    "AgentMemoryError",
    "CheckpointNotFound",
    "CheckpointStore",
    "CompactionFailure",
    "CompactionResult",
    "CompressionResult",
    "ContextWindowManager",
    "DimensionMismatch",
    "EmbeddingGenerator",
    "EmbeddingProviderError",
    "IndexEntry",
    "IndexMatch",
    "InvalidInput",
    "LocalVectorIndex",
    "MemoryConfig",
    "MemoryMiddleware",
    "MemoryRecord",
    "MemorySystem",
    "PersistenceError",
    "Priority",
    "RetrievedMemory",
    "StatusLevel",
    "TextCompressor",
    "TextMatch",
    "TokenBudget",
    "Turn",
    "TurnSummarizer",
    "VectorIndex",
    "calculate_budget",
    "condense_text",
    "create_embedding_model",
    "estimate_tokens",
    "message_text",
]
