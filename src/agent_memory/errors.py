"""
Exception taxonomy for the memory subsystem.

Validation errors (InvalidInput, DimensionMismatch) are caller-facing and
never retried. EmbeddingProviderError carries enough detail for a caller
to decide whether to retry.
"""

from typing import Optional


class AgentMemoryError(Exception):
    """Base class for all memory subsystem errors."""


class InvalidInput(AgentMemoryError, ValueError):
    """Empty or malformed text, vector, name or filter."""


class DimensionMismatch(AgentMemoryError, ValueError):
    """A vector's length disagrees with the configured dimensionality."""

    def __init__(self, expected: int, actual: int, where: str = "vector"):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{where} dimension mismatch: expected {expected}, got {actual}"
        )


class EmbeddingProviderError(AgentMemoryError):
    """The embedding backend failed (network, auth, rate limit, ...)."""

    RATE_LIMITED = "rate_limited"
    AUTH_FAILED = "auth_failed"
    INVALID_REQUEST = "invalid_request"
    SERVER_ERROR = "server_error"
    NETWORK = "network"
    MALFORMED_RESPONSE = "malformed_response"
    UNKNOWN = "unknown"

    def __init__(
        self,
        message: str,
        kind: str = UNKNOWN,
        retryable: bool = False,
        completed: int = 0,
        status_code: Optional[int] = None,
    ):
        self.kind = kind
        self.retryable = retryable
        self.completed = completed  # batch items embedded before the failure
        self.status_code = status_code
        super().__init__(message)


class CheckpointNotFound(AgentMemoryError, LookupError):
    """No checkpoint exists under the requested name."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Checkpoint not found: {name}")


class CompactionFailure(AgentMemoryError):
    """Normal compaction failed; the window falls back to aggressive mode."""


class PersistenceError(AgentMemoryError):
    """Reading or writing durable storage failed."""
