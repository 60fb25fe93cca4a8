"""
Memory configuration and model context window mappings.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

# Model → context window size (tokens)
MODEL_CONTEXT_WINDOWS: dict[str, int] = {
    # Anthropic
    "claude-sonnet-4-5-20250929": 200_000,
    "claude-sonnet-4-20250514": 200_000,
    "claude-opus-4-20250514": 200_000,
    "claude-3-5-sonnet": 200_000,
    "claude-3-haiku": 200_000,
    # OpenAI compatible
    "gpt-4o": 128_000,
    "gpt-4o-mini": 128_000,
    "gpt-4-turbo": 128_000,
    # DeepSeek
    "deepseek-chat": 64_000,
    "deepseek-reasoner": 64_000,
}

DEFAULT_CONTEXT_WINDOW = 128_000


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass
class MemoryConfig:
    """Configuration for the semantic memory and context window system."""

    # Context window (0 = auto-detect from model name)
    context_window: int = 0
    model_name: str = ""

    # Budget derivation
    safety_margin: float = 0.10
    max_output_reserve: int = 16000

    # Status thresholds (fractions of the budget)
    warning_ratio: float = 0.75
    compaction_ratio: float = 0.90
    critical_ratio: float = 0.95

    # Compaction
    auto_compact: bool = True
    recent_turns: int = 20  # always at least high priority
    summary_batch_size: int = 10
    medium_compression_ratio: float = 0.75
    aggressive_keep_turns: int = 50

    # Checkpoints
    checkpoint_interval: int = 10  # auto checkpoint every N turns (0 = off)
    checkpoint_turns: int = 100
    max_checkpoints: int = 5
    auto_restore: bool = False

    # Embeddings
    embedding_provider: str = "openai"  # openai | fake
    embedding_model: str = "text-embedding-3-small"
    embedding_base_url: str = ""
    embedding_api_key: str = ""
    embedding_dimensions: int = 1536
    embedding_batch_size: int = 100
    embedding_cache_size: int = 10_000

    # Storage
    storage_dir: str = ".agent_memory"
    index_name: str = "memory-index"
    index_flush_interval: int = 100
    max_index_entries: int = 100_000

    # Memories
    max_memory_tokens: int = 2000
    recall_top_k: int = 5
    recall_threshold: float = 0.7
    conversation_log_limit: int = 100
    retention_days: int = 30

    @classmethod
    def from_env(cls, env_file: str | None = None) -> "MemoryConfig":
        """Load configuration from environment variables (and a .env file)."""
        load_dotenv(env_file)
        return cls(
            context_window=int(os.getenv("MEMORY_CONTEXT_WINDOW", "0")),
            model_name=os.getenv("MEMORY_MODEL_NAME", ""),
            safety_margin=float(os.getenv("MEMORY_SAFETY_MARGIN", "0.10")),
            warning_ratio=float(os.getenv("MEMORY_WARNING_RATIO", "0.75")),
            compaction_ratio=float(os.getenv("MEMORY_COMPACTION_RATIO", "0.90")),
            critical_ratio=float(os.getenv("MEMORY_CRITICAL_RATIO", "0.95")),
            auto_compact=_env_bool("MEMORY_AUTO_COMPACT", "true"),
            recent_turns=int(os.getenv("MEMORY_RECENT_TURNS", "20")),
            summary_batch_size=int(os.getenv("MEMORY_SUMMARY_BATCH_SIZE", "10")),
            aggressive_keep_turns=int(
                os.getenv("MEMORY_AGGRESSIVE_KEEP_TURNS", "50")
            ),
            checkpoint_interval=int(os.getenv("MEMORY_CHECKPOINT_INTERVAL", "10")),
            max_checkpoints=int(os.getenv("MEMORY_MAX_CHECKPOINTS", "5")),
            auto_restore=_env_bool("MEMORY_AUTO_RESTORE", "false"),
            embedding_provider=os.getenv("MEMORY_EMBEDDING_PROVIDER", "openai"),
            embedding_model=os.getenv(
                "MEMORY_EMBEDDING_MODEL", "text-embedding-3-small"
            ),
            embedding_base_url=os.getenv("MEMORY_EMBEDDING_BASE_URL", ""),
            embedding_api_key=os.getenv("MEMORY_EMBEDDING_API_KEY", ""),
            embedding_dimensions=int(
                os.getenv("MEMORY_EMBEDDING_DIMENSIONS", "1536")
            ),
            embedding_batch_size=int(os.getenv("MEMORY_EMBEDDING_BATCH_SIZE", "100")),
            storage_dir=os.getenv("MEMORY_STORAGE_DIR", ".agent_memory"),
            index_flush_interval=int(
                os.getenv("MEMORY_INDEX_FLUSH_INTERVAL", "100")
            ),
            max_memory_tokens=int(os.getenv("MEMORY_MAX_MEMORY_TOKENS", "2000")),
            recall_top_k=int(os.getenv("MEMORY_RECALL_TOP_K", "5")),
            recall_threshold=float(os.getenv("MEMORY_RECALL_THRESHOLD", "0.7")),
            retention_days=int(os.getenv("MEMORY_RETENTION_DAYS", "30")),
        )

    def get_context_window(self, model_name: str) -> int:
        """Resolve context window size from config or model name."""
        if self.context_window > 0:
            return self.context_window
        if not model_name:
            return DEFAULT_CONTEXT_WINDOW
        # Try exact match first, then prefix match
        if model_name in MODEL_CONTEXT_WINDOWS:
            return MODEL_CONTEXT_WINDOWS[model_name]
        for key, size in MODEL_CONTEXT_WINDOWS.items():
            if model_name.startswith(key) or key.startswith(model_name):
                return size
        return DEFAULT_CONTEXT_WINDOW
