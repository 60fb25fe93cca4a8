"""
Conversation turn model and priority tiers.
"""

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any


class Priority(IntEnum):
    """Retention priority; higher values survive compaction longer."""

    LOW = 1
    MEDIUM = 10
    HIGH = 100
    CRITICAL = 1000

    @property
    def tier(self) -> str:
        return self.name.lower()

    @classmethod
    def tier_of(cls, value: int) -> "Priority":
        """Bucket an arbitrary numeric priority into its tier."""
        if value >= cls.CRITICAL:
            return cls.CRITICAL
        if value >= cls.HIGH:
            return cls.HIGH
        if value >= cls.MEDIUM:
            return cls.MEDIUM
        return cls.LOW


class StatusLevel(str, Enum):
    """Window fill level; CRITICAL starts at compaction, MAXIMUM at the critical threshold."""

    HEALTHY = "healthy"
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"
    MAXIMUM = "maximum"
    COMPACTING = "compacting"


ROLES = ("user", "assistant", "system", "tool")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Turn:
    """A single message in the live context window."""

    content: str
    token_count: int
    role: str = "user"
    priority: int = Priority.MEDIUM
    metadata: dict[str, Any] = field(default_factory=dict)
    compressed: bool = False
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    timestamp: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["priority"] = int(self.priority)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Turn":
        return cls(
            content=str(data["content"]),
            token_count=int(data["token_count"]),
            role=str(data.get("role", "user")),
            priority=int(data.get("priority", Priority.MEDIUM)),
            metadata=dict(data.get("metadata") or {}),
            compressed=bool(data.get("compressed", False)),
            id=str(data["id"]),
            timestamp=str(data["timestamp"]),
        )
