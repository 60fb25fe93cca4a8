"""
Token-budget-aware context window manager.

Tracks live token usage against a budget and keeps the window under the
compaction threshold:

1. categorize every live turn into critical / high / medium / low
   (recent turns ≥ high, ``current_task`` → critical, error+fix ≥ high,
   otherwise the turn's own priority)
2. summarize the low bucket in fixed-size batches
3. compress the medium bucket at a light ratio
4. keep critical and high turns untouched
5. rebuild the window as summaries + compressed + untouched and recount
   tokens from scratch

If any step fails the window falls back to aggressive compaction: keep
only the newest turns that fit, and record the loss.

Invariant: ``current_tokens`` equals the sum of the live turns'
``token_count`` at the end of every public operation.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, replace
from typing import Optional, Union

from .checkpoints import CheckpointStore
from .compressor import TextCompressor, truncate_to_tokens
from .condenser import condense_text
from .config import MemoryConfig
from .errors import (
    AgentMemoryError,
    CheckpointNotFound,
    CompactionFailure,
    InvalidInput,
    PersistenceError,
)
from .summarizer import TurnSummarizer
from .token_budget import TokenBudget, TokenEstimator, calculate_budget, estimate_tokens
from .turns import ROLES, Priority, StatusLevel, Turn

logger = logging.getLogger(__name__)

AUTO_CHECKPOINT_PREFIX = "window-"
HEALTHY_UTILIZATION = 0.5


@dataclass
class AddTurnResult:
    turn_id: str
    token_count: int
    current_tokens: int
    utilization: float
    status: StatusLevel
    compacted: bool = False
    over_budget: bool = False
    truncated: bool = False


@dataclass
class CompactionResult:
    tokens_before: int
    tokens_after: int
    aggressive: bool = False
    summarized: int = 0
    compressed: int = 0
    preserved: int = 0
    error: Optional[str] = None

    @property
    def saved_tokens(self) -> int:
        return self.tokens_before - self.tokens_after


class ContextWindowManager:
    """
    Live conversation window for one session.

    Usage:
        window = ContextWindowManager(budget=8000, memory=memory_system)
        window.add_turn("Refactor the parser", role="user",
                        metadata={"current_task": True})
        status = window.get_status()
    """

    def __init__(
        self,
        budget: Union[int, TokenBudget, None] = None,
        config: Optional[MemoryConfig] = None,
        estimator: TokenEstimator = estimate_tokens,
        compressor: Optional[TextCompressor] = None,
        summarizer: Optional[TurnSummarizer] = None,
        memory=None,
        checkpoints: Optional[CheckpointStore] = None,
        session_id: Optional[str] = None,
    ):
        self.config = config or MemoryConfig()
        if isinstance(budget, TokenBudget):
            self._budget = budget
        elif budget is not None:
            self._budget = TokenBudget.from_total(
                budget,
                warning_ratio=self.config.warning_ratio,
                compaction_ratio=self.config.compaction_ratio,
                critical_ratio=self.config.critical_ratio,
            )
        else:
            self._budget = calculate_budget(self.config)

        self.estimator = estimator
        self.compressor = compressor or TextCompressor(estimator=estimator)
        self.summarizer = summarizer or TurnSummarizer(
            batch_size=self.config.summary_batch_size, estimator=estimator
        )
        self.memory = memory
        if checkpoints is None and memory is not None:
            checkpoints = memory.checkpoints
        self.checkpoints = checkpoints
        self.session_id = session_id or f"window-{uuid.uuid4().hex[:12]}"

        self._lock = threading.RLock()
        self._turns: list[Turn] = []
        self._current_tokens = 0
        self.turn_count = 0
        self.compaction_count = 0
        self.fallback_count = 0
        self.last_compaction_time: Optional[float] = None
        self.last_compaction_lossy = False
        self.last_checkpoint: Optional[str] = None
        self.archived_memory_ids: list[str] = []
        self._compacting = False

        if self.config.auto_restore and self.checkpoints is not None:
            try:
                self.restore()
            except (CheckpointNotFound, PersistenceError) as e:
                logger.info("No previous window restored, starting fresh: %s", e)

    # ── state ──

    @property
    def budget(self) -> TokenBudget:
        return self._budget

    @property
    def current_tokens(self) -> int:
        return self._current_tokens

    @property
    def turns(self) -> list[Turn]:
        """Copies of the live turns, oldest first."""
        with self._lock:
            return [replace(t, metadata=dict(t.metadata)) for t in self._turns]

    @property
    def status_level(self) -> StatusLevel:
        if self._compacting:
            return StatusLevel.COMPACTING
        tokens = self._current_tokens
        if self._budget.utilization(tokens) < HEALTHY_UTILIZATION:
            return StatusLevel.HEALTHY
        if tokens < self._budget.warning:
            return StatusLevel.NORMAL
        if tokens < self._budget.compaction:
            return StatusLevel.WARNING
        if tokens < self._budget.critical:
            return StatusLevel.CRITICAL
        return StatusLevel.MAXIMUM

    def get_status(self) -> dict:
        with self._lock:
            return {
                "session_id": self.session_id,
                "current_tokens": self._current_tokens,
                "budget": self._budget.total,
                "utilization": round(self._budget.utilization(self._current_tokens) * 100, 1),
                "status": self.status_level.value,
                "live_turns": len(self._turns),
                "turn_count": self.turn_count,
                "compaction_count": self.compaction_count,
                "fallback_count": self.fallback_count,
                "last_compaction_time": self.last_compaction_time,
                "last_compaction_lossy": self.last_compaction_lossy,
                "last_checkpoint": self.last_checkpoint,
            }

    # ── turns ──

    def add_turn(
        self,
        content: str,
        role: str = "user",
        priority: int = Priority.MEDIUM,
        metadata: Optional[dict] = None,
        truncate: bool = False,
    ) -> AddTurnResult:
        """
        Append a turn, compacting first if it would cross the threshold.

        A turn that still does not fit the budget is admitted and reported
        as ``over_budget``, unless ``truncate`` asks for it to be clipped to
        the remaining room.
        """
        if not isinstance(content, str) or not content.strip():
            raise InvalidInput("Turn content must be a non-empty string")
        if role not in ROLES:
            raise InvalidInput(f"Unknown role: {role}")

        tokens = self.estimator(content)
        with self._lock:
            compacted = False
            if self.config.auto_compact and self._current_tokens + tokens > self._budget.compaction:
                logger.warning(
                    "Approaching context limit (%d + %d > %d tokens), compacting",
                    self._current_tokens, tokens, self._budget.compaction,
                )
                self.compact(reserve=tokens)
                compacted = True

            truncated = False
            over_budget = self._current_tokens + tokens > self._budget.total
            if over_budget and truncate:
                room = self._budget.total - self._current_tokens
                clipped = truncate_to_tokens(content, room, self.estimator)
                if clipped:
                    content, tokens = clipped, self.estimator(clipped)
                    truncated, over_budget = True, False
            if over_budget:
                logger.warning(
                    "Turn of %d tokens exceeds the budget (%d/%d in use)",
                    tokens, self._current_tokens, self._budget.total,
                )

            turn = Turn(
                content=content,
                token_count=tokens,
                role=role,
                priority=int(priority),
                metadata=dict(metadata or {}),
            )
            self._turns.append(turn)
            self._current_tokens += tokens
            self.turn_count += 1
            self._log_utilization()

            interval = self.config.checkpoint_interval
            if interval > 0 and self.checkpoints is not None and self.turn_count % interval == 0:
                self._auto_checkpoint()

            return AddTurnResult(
                turn_id=turn.id,
                token_count=tokens,
                current_tokens=self._current_tokens,
                utilization=self._budget.utilization(self._current_tokens),
                status=self.status_level,
                compacted=compacted,
                over_budget=over_budget,
                truncated=truncated,
            )

    # ── compaction ──

    def categorize(self) -> dict[str, list[Turn]]:
        """Split live turns into priority tiers, chronological within each."""
        buckets: dict[str, list[Turn]] = {p.tier: [] for p in Priority}
        with self._lock:
            recent_start = max(0, len(self._turns) - self.config.recent_turns)
            for index, turn in enumerate(self._turns):
                priority = int(turn.priority)
                # Recent turns are at least high
                if index >= recent_start:
                    priority = max(priority, Priority.HIGH)
                if turn.metadata.get("current_task"):
                    priority = Priority.CRITICAL
                lower = turn.content.lower()
                if "error" in lower and "fix" in lower:
                    priority = max(priority, Priority.HIGH)
                buckets[Priority.tier_of(priority).tier].append(turn)

        logger.debug(
            "Categorized: %d critical, %d high, %d medium, %d low",
            len(buckets["critical"]), len(buckets["high"]),
            len(buckets["medium"]), len(buckets["low"]),
        )
        return buckets

    def compact(self, reserve: int = 0) -> CompactionResult:
        """
        Run compaction now.

        ``reserve`` is the size of a pending turn; the aggressive fallback
        leaves room for it.
        """
        with self._lock:
            before = self._current_tokens
            self._compacting = True
            try:
                try:
                    result = self._compact_normal(before)
                except Exception as e:
                    failure = CompactionFailure(f"Compaction failed: {e}")
                    logger.error("%s; falling back to aggressive compaction", failure)
                    result = self._compact_aggressive(before, reserve, str(failure))
            finally:
                self._compacting = False

            self.compaction_count += 1
            self.last_compaction_time = time.time()
            logger.info(
                "Compaction %s: %d -> %d tokens (saved %d)",
                "fell back to aggressive" if result.aggressive else "complete",
                result.tokens_before, result.tokens_after, result.saved_tokens,
            )
            return result

    def _compact_normal(self, before: int) -> CompactionResult:
        categorized = self.categorize()

        summarized = self.summarizer.summarize(categorized["low"])
        compressed = [self._compress_turn(t) for t in categorized["medium"]]
        keep_ids = {t.id for t in categorized["critical"] + categorized["high"]}
        untouched = [t for t in self._turns if t.id in keep_ids]

        self._archive(categorized["low"])

        new_turns = summarized + compressed + untouched
        self._turns = new_turns
        self._current_tokens = sum(t.token_count for t in new_turns)
        self.last_compaction_lossy = False

        return CompactionResult(
            tokens_before=before,
            tokens_after=self._current_tokens,
            summarized=len(categorized["low"]),
            compressed=len(compressed),
            preserved=len(untouched),
        )

    def _compress_turn(self, turn: Turn) -> Turn:
        target = max(1, int(turn.token_count * self.config.medium_compression_ratio))
        text = condense_text(turn.content)
        if self.estimator(text) > target:
            text = self.compressor.compress(text, target).text or text
        return replace(
            turn,
            content=text,
            token_count=self.estimator(text),
            metadata=dict(turn.metadata),
            compressed=True,
        )

    def _compact_aggressive(self, before: int, reserve: int, error: str) -> CompactionResult:
        """Keep the newest turns that fit; cannot fail."""
        limit = max(self._budget.total - reserve, 0)
        candidates = self._turns[-self.config.aggressive_keep_turns:] if self.config.aggressive_keep_turns > 0 else []

        kept: list[Turn] = []
        total = 0
        for turn in reversed(candidates):
            if kept and total + turn.token_count > limit:
                break
            kept.insert(0, turn)
            total += turn.token_count

        dropped = len(self._turns) - len(kept)
        self._turns = kept
        self._current_tokens = sum(t.token_count for t in kept)
        self.fallback_count += 1
        self.last_compaction_lossy = True
        logger.warning(
            "Aggressive compaction dropped %d turns, kept %d (%d tokens)",
            dropped, len(kept), self._current_tokens,
        )
        return CompactionResult(
            tokens_before=before,
            tokens_after=self._current_tokens,
            aggressive=True,
            preserved=len(kept),
            error=error,
        )

    def _archive(self, turns: list[Turn]) -> None:
        """Store summarized turns as low-importance memories."""
        if self.memory is None:
            return
        for turn in turns:
            if turn.metadata.get("type") == "summary":
                continue  # originals were archived when it was created
            try:
                memory_id = self.memory.store_memory(
                    turn.content,
                    {
                        "type": "conversation",
                        "importance": "low",
                        "role": turn.role,
                        "turn_id": turn.id,
                        "window_session": self.session_id,
                    },
                )
            except AgentMemoryError as e:
                logger.warning("Failed to archive turn %s: %s", turn.id, e)
                continue
            self.archived_memory_ids.append(memory_id)

    def _log_utilization(self) -> None:
        tokens = self._current_tokens
        percent = self._budget.utilization(tokens) * 100
        if tokens >= self._budget.critical:
            logger.error("Context critical: %.1f%% of budget used", percent)
        elif tokens >= self._budget.compaction:
            logger.warning("Context high: %.1f%% of budget used", percent)
        elif tokens >= self._budget.warning:
            logger.info("Context warning: %.1f%% of budget used", percent)

    # ── checkpoints ──

    def snapshot(self, max_turns: Optional[int] = None) -> dict:
        """
        Serializable window state.

        Every live turn is included unless ``max_turns`` caps it to the
        newest ones; the number left out is recorded as ``dropped_turns``.
        """
        with self._lock:
            turns = self._turns
            if max_turns is not None:
                turns = turns[-max_turns:] if max_turns > 0 else []
            return {
                "session_id": self.session_id,
                "budget": {
                    "total": self._budget.total,
                    "warning": self._budget.warning,
                    "compaction": self._budget.compaction,
                    "critical": self._budget.critical,
                },
                "current_tokens": self._current_tokens,
                "turn_count": self.turn_count,
                "compaction_count": self.compaction_count,
                "fallback_count": self.fallback_count,
                "last_compaction_time": self.last_compaction_time,
                "last_compaction_lossy": self.last_compaction_lossy,
                "memory_ids": list(self.archived_memory_ids),
                "dropped_turns": len(self._turns) - len(turns),
                "turns": [t.to_dict() for t in turns],
            }

    def load_snapshot(self, data: dict) -> None:
        """Replace the whole window state; on a malformed snapshot nothing changes."""
        try:
            turns = [Turn.from_dict(t) for t in data["turns"]]
            budget = TokenBudget(**{k: int(v) for k, v in data["budget"].items()})
            turn_count = int(data["turn_count"])
            compaction_count = int(data.get("compaction_count", 0))
            fallback_count = int(data.get("fallback_count", 0))
            last_time = data.get("last_compaction_time")
            lossy = bool(data.get("last_compaction_lossy", False))
            memory_ids = [str(i) for i in data.get("memory_ids") or []]
            session_id = str(data.get("session_id") or self.session_id)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise PersistenceError(f"Malformed window snapshot: {e}") from e

        with self._lock:
            self._turns = turns
            self._current_tokens = sum(t.token_count for t in turns)
            self._budget = budget
            self.turn_count = turn_count
            self.compaction_count = compaction_count
            self.fallback_count = fallback_count
            self.last_compaction_time = last_time
            self.last_compaction_lossy = lossy
            self.archived_memory_ids = memory_ids
            self.session_id = session_id

    def checkpoint(
        self,
        name: Optional[str] = None,
        description: str = "",
        max_turns: Optional[int] = None,
    ) -> str:
        """Write a window checkpoint; returns its name."""
        if self.checkpoints is None:
            raise InvalidInput("No checkpoint store configured")
        with self._lock:
            name = name or f"{AUTO_CHECKPOINT_PREFIX}{time.time_ns()}"
            snapshot = self.snapshot(max_turns)
            if snapshot["dropped_turns"]:
                logger.info(
                    "Checkpoint %s keeps the newest %d turns, %d left out",
                    name, len(snapshot["turns"]), snapshot["dropped_turns"],
                )
            self.checkpoints.write(name, {
                "kind": "window",
                "description": description,
                "window": snapshot,
            })
            self.last_checkpoint = name
        logger.debug("Saved window checkpoint %s", name)
        return name

    def _auto_checkpoint(self) -> None:
        try:
            self.checkpoint(max_turns=self.config.checkpoint_turns)
            self.checkpoints.prune(AUTO_CHECKPOINT_PREFIX, self.config.max_checkpoints)
        except AgentMemoryError as e:
            logger.warning("Automatic checkpoint failed: %s", e)

    def restore(self, name: Optional[str] = None) -> str:
        """
        Replace the window with a named checkpoint, or the newest one.

        Raises CheckpointNotFound / PersistenceError with state untouched.
        """
        if self.checkpoints is None:
            raise InvalidInput("No checkpoint store configured")

        if name is None:
            for candidate in reversed(self.checkpoints.list_names()):
                data = self.checkpoints.read(candidate)
                if "window" in data:
                    name = candidate
                    break
            else:
                raise CheckpointNotFound("<latest>")
        else:
            data = self.checkpoints.read(name)

        if "window" not in data:
            raise PersistenceError(f"Checkpoint {name} holds no window state")
        self.load_snapshot(data["window"])
        self.last_checkpoint = name
        logger.info(
            "Restored window from %s: %d turns, %d tokens",
            name, len(self._turns), self._current_tokens,
        )
        return name
