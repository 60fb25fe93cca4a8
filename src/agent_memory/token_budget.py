"""
Token estimation and budget thresholds.

The estimator is pluggable: any callable ``text -> int`` that is
deterministic and non-negative can replace ``estimate_tokens``.
"""

import math
from dataclasses import dataclass
from typing import Callable

from .config import MemoryConfig

TokenEstimator = Callable[[str], int]


def estimate_tokens(text: str) -> int:
    """Rough token estimate: ~4 chars per token."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


@dataclass(frozen=True)
class TokenBudget:
    """Absolute token thresholds for one context window."""

    total: int
    warning: int
    compaction: int
    critical: int

    @classmethod
    def from_total(
        cls,
        total: int,
        warning_ratio: float = 0.75,
        compaction_ratio: float = 0.90,
        critical_ratio: float = 0.95,
    ) -> "TokenBudget":
        if total <= 0:
            raise ValueError("token budget must be positive")
        if not 0 < warning_ratio <= compaction_ratio <= critical_ratio <= 1:
            raise ValueError(
                "thresholds must satisfy 0 < warning <= compaction <= critical <= 1"
            )
        return cls(
            total=total,
            warning=int(total * warning_ratio),
            compaction=int(total * compaction_ratio),
            critical=int(total * critical_ratio),
        )

    def utilization(self, tokens: int) -> float:
        return tokens / self.total


def calculate_budget(
    config: MemoryConfig,
    model_name: str = "",
    system_prompt_tokens: int = 0,
) -> TokenBudget:
    """
    Derive the live-window budget for a model.

    Available = context_window * (1 - safety_margin) - system_prompt - output_reserve
    Thresholds are then taken as fractions of the available total.
    """
    context_window = config.get_context_window(model_name or config.model_name)

    # Reserve space for safety margin and output (20% for output, capped)
    usable = int(context_window * (1 - config.safety_margin))
    output_reserve = min(int(context_window * 0.2), config.max_output_reserve)
    available = max(usable - system_prompt_tokens - output_reserve, 1)

    return TokenBudget.from_total(
        available,
        warning_ratio=config.warning_ratio,
        compaction_ratio=config.compaction_ratio,
        critical_ratio=config.critical_ratio,
    )
