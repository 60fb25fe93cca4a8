"""
Multi-strategy text compressor.

The strategy is chosen from the required reduction ``r = 1 - target/original``:

- r < 0.3        extractive    keep the highest-scoring sentences, original order
- 0.3 <= r < 0.6 keyword       top frequent terms + sentences containing them
- 0.6 <= r < 0.8 abstractive   structured summary (topics, actions, results)
- r >= 0.8       hierarchical  headers > important lines > a share of normal lines

``rolling`` keeps the most recent sentence-bounded chunks and is only used
when asked for explicitly (streams, long documents).

Every result is clipped to the target estimate. Compression never raises
for valid input: on internal failure the original text is returned with
ratio 1 and an ``error`` annotation.
"""

import logging
import re
from collections import Counter
from dataclasses import dataclass, replace
from typing import Callable, Optional, Protocol

from .errors import InvalidInput
from .token_budget import TokenEstimator, estimate_tokens
from .turns import Turn

logger = logging.getLogger(__name__)

IMPORTANT_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"error|exception|failed|bug",
        r"important|critical|urgent",
        r"decision|conclusion|result",
        r"api|endpoint|url",
        r"code|function|class|method",
        r"project|task|goal|objective",
    )
]

CODE_PATTERN = re.compile(
    r"```|\b(?:function|class|const|let|var|import|export|def|return)\b|\w+\([^)]*\)"
)

HEADER_PATTERN = re.compile(r"^#{1,6}\s|^[A-Z][^.]*:$")

RESULT_PATTERNS = [
    re.compile(r"result:|conclusion:|outcome:", re.IGNORECASE),
    re.compile(r"successfully|completed|finished", re.IGNORECASE),
    re.compile(r"error:|failed:|issue:", re.IGNORECASE),
]

ACTION_VERBS = (
    "create", "build", "implement", "design", "develop",
    "fix", "solve", "resolve", "update", "modify",
    "analyze", "test", "deploy", "configure",
)

STOPWORDS = frozenset(
    "that this with from have were will which there their about into than "
    "then them they what when where would could should been being does also "
    "just only some such very more most other over".split()
)

ROLLING_CHUNK_CHARS = 1000
HIERARCHICAL_NORMAL_SHARE = 0.3
MIN_RECENT_TURNS = 5


class SentenceScorer(Protocol):
    """Scores sentences; a higher score means retained preferentially."""

    def __call__(self, sentences: list[str]) -> list[float]: ...


@dataclass
class CompressionResult:
    text: str
    ratio: float
    strategy: str
    original_tokens: int = 0
    compressed_tokens: int = 0
    error: Optional[str] = None

    @property
    def savings(self) -> int:
        return self.original_tokens - self.compressed_tokens


def split_sentences(text: str, min_chars: int = 10) -> list[str]:
    """Split on sentence punctuation and newlines, dropping tiny fragments."""
    parts = re.split(r"(?<=[.!?])\s+|\n+", text)
    return [p.strip() for p in parts if len(p.strip()) > min_chars]


def score_sentences(sentences: list[str]) -> list[float]:
    """Default heuristic: length, importance keywords, position, code."""
    n = len(sentences)
    scores = []
    for i, sentence in enumerate(sentences):
        score = 0.0
        if 20 <= len(sentence) <= 200:
            score += 1
        for pattern in IMPORTANT_PATTERNS:
            if pattern.search(sentence):
                score += 2
        if i < 3 or i >= n - 3:
            score += 1
        if CODE_PATTERN.search(sentence):
            score += 3
        scores.append(score)
    return scores


def extract_keywords(text: str, limit: int = 10) -> list[str]:
    """Most frequent words longer than 3 chars; ties keep first occurrence."""
    words = [
        w for w in re.findall(r"[a-z0-9_]+", text.lower())
        if len(w) > 3 and w not in STOPWORDS and not w.isdigit()
    ]
    return [word for word, _ in Counter(words).most_common(limit)]


def is_important_turn(turn: Turn) -> bool:
    """System turns, the current task, and turns matching an importance pattern."""
    if turn.role == "system" or turn.metadata.get("current_task"):
        return True
    return any(p.search(turn.content) for p in IMPORTANT_PATTERNS)


def truncate_to_tokens(
    text: str,
    max_tokens: int,
    estimator: TokenEstimator = estimate_tokens,
    keep: str = "head",
) -> str:
    """Clip text to ``max_tokens`` on a word boundary, keeping head or tail."""
    if estimator(text) <= max_tokens:
        return text
    if max_tokens <= 0:
        return ""

    def piece(n: int) -> str:
        return text[:n] if keep == "head" else text[len(text) - n:]

    lo, hi = 0, len(text)
    while lo < hi:
        mid = (lo + hi + 1) // 2
        if estimator(piece(mid)) <= max_tokens:
            lo = mid
        else:
            hi = mid - 1

    cut = piece(lo)
    if keep == "head":
        space = cut.rfind(" ")
        if space > len(cut) // 2:
            cut = cut[:space]
    else:
        space = cut.find(" ")
        if 0 <= space < len(cut) // 2:
            cut = cut[space + 1:]
    cut = cut.strip()
    return cut if estimator(cut) <= max_tokens else ""


class TextCompressor:
    """Reduces a text's token footprint with the strategy the reduction needs."""

    def __init__(
        self,
        estimator: TokenEstimator = estimate_tokens,
        scorer: SentenceScorer = score_sentences,
        compression_ratio: float = 0.7,
    ):
        self.estimator = estimator
        self.scorer = scorer
        self.compression_ratio = compression_ratio
        self._strategies: dict[str, Callable[[str, int], str]] = {
            "extractive": self._extractive,
            "keyword": self._keyword,
            "abstractive": self._abstractive,
            "hierarchical": self._hierarchical,
            "rolling": self._rolling,
        }
        self.stats = {
            "total_compressions": 0,
            "total_original_tokens": 0,
            "total_compressed_tokens": 0,
            "failures": 0,
        }

    @property
    def strategies(self) -> list[str]:
        return list(self._strategies)

    @staticmethod
    def select_strategy(original_tokens: int, target_tokens: int) -> str:
        needed = 1 - (target_tokens / original_tokens)
        if needed < 0.3:
            return "extractive"
        if needed < 0.6:
            return "keyword"
        if needed < 0.8:
            return "abstractive"
        return "hierarchical"

    def compress(
        self,
        text: str,
        target_tokens: Optional[int] = None,
        strategy: Optional[str] = None,
    ) -> CompressionResult:
        """Compress ``text`` to at most ``target_tokens`` estimated tokens."""
        if strategy is not None and strategy not in self._strategies:
            raise InvalidInput(f"Unknown compression strategy: {strategy}")
        if not isinstance(text, str) or not text:
            return CompressionResult(text or "", 1.0, "none")

        original = self.estimator(text)
        if target_tokens is None:
            target_tokens = int(original * self.compression_ratio)
        target_tokens = max(0, target_tokens)

        if original <= target_tokens:
            return CompressionResult(text, 1.0, "none", original, original)

        name = strategy or self.select_strategy(original, target_tokens)
        keep = "tail" if name == "rolling" else "head"
        try:
            compressed = self._strategies[name](text, target_tokens)
            if not compressed.strip():
                # Strategy found nothing to keep; fall back to a plain clip
                compressed = truncate_to_tokens(text, target_tokens, self.estimator, keep)
            compressed = truncate_to_tokens(compressed, target_tokens, self.estimator, keep)
        except Exception as e:
            self.stats["failures"] += 1
            logger.error("Compression with %s failed: %s", name, e)
            return CompressionResult(text, 1.0, name, original, original, error=str(e))

        compressed_tokens = self.estimator(compressed)
        self._update_stats(original, compressed_tokens)
        logger.debug(
            "Compressed %d -> %d tokens with %s", original, compressed_tokens, name
        )
        return CompressionResult(
            text=compressed,
            ratio=compressed_tokens / original,
            strategy=name,
            original_tokens=original,
            compressed_tokens=compressed_tokens,
        )

    def compress_conversation(
        self,
        turns: list[Turn],
        target_tokens: int,
        min_recent: int = MIN_RECENT_TURNS,
    ) -> list[Turn]:
        """
        Fit a conversation into ``target_tokens``, newest turns first.

        Walking back from the newest turn, a turn is kept whole while it
        fits or when it is important (even past the target). The first turn
        that does not fit ends the walk; if fewer than ``min_recent`` turns
        were kept by then it is compressed into the remaining room.
        Important turns older than that are still kept if they fit.

        Returns new Turn objects in chronological order; the input list is
        not modified.
        """
        if not turns:
            return []
        sizes = [self.estimator(t.content) for t in turns]
        if sum(sizes) <= target_tokens:
            return list(turns)

        kept: list[Turn] = []
        used = 0
        boundary = -1
        for i in range(len(turns) - 1, -1, -1):
            turn = turns[i]
            if used + sizes[i] <= target_tokens or is_important_turn(turn):
                kept.insert(0, turn)
                used += sizes[i]
                continue
            boundary = i
            if len(kept) < min_recent and used < target_tokens:
                result = self.compress(turn.content, target_tokens - used)
                if result.error is None and result.text and result.text != turn.content:
                    tokens = self.estimator(result.text)
                    kept.insert(0, replace(
                        turn,
                        content=result.text,
                        token_count=tokens,
                        metadata=dict(turn.metadata),
                        compressed=True,
                    ))
                    used += tokens
            break

        for i in range(boundary - 1, -1, -1):
            if is_important_turn(turns[i]) and used + sizes[i] <= target_tokens:
                kept.insert(0, turns[i])
                used += sizes[i]

        logger.debug(
            "Compressed conversation: %d -> %d turns (%d tokens)",
            len(turns), len(kept), used,
        )
        return kept

    def get_stats(self) -> dict:
        original = self.stats["total_original_tokens"]
        compressed = self.stats["total_compressed_tokens"]
        return {
            **self.stats,
            "total_savings": original - compressed,
            "average_ratio": (compressed / original) if original else 1.0,
        }

    # ── strategies ──

    def _extractive(self, text: str, target: int) -> str:
        sentences = split_sentences(text)
        if not sentences:
            return ""
        scores = self.scorer(sentences)
        ranked = sorted(range(len(sentences)), key=lambda i: (-scores[i], i))

        selected, used = [], 0
        for i in ranked:
            tokens = self.estimator(sentences[i])
            if used + tokens <= target:
                selected.append(i)
                used += tokens
        return " ".join(sentences[i] for i in sorted(selected))

    def _keyword(self, text: str, target: int) -> str:
        keywords = extract_keywords(text)
        if not keywords:
            return ""
        header = f"Key terms: {', '.join(keywords)}."
        sentences = split_sentences(text)

        hits = []
        for i, sentence in enumerate(sentences):
            lower = sentence.lower()
            count = sum(1 for k in keywords if k in lower)
            if count:
                hits.append((count, i))
        hits.sort(key=lambda h: (-h[0], h[1]))

        selected, used = [], self.estimator(header)
        for _, i in hits:
            tokens = self.estimator(sentences[i])
            if used + tokens <= target:
                selected.append(i)
                used += tokens
        body = " ".join(sentences[i] for i in sorted(selected))
        return f"{header} {body}".strip()

    def _abstractive(self, text: str, target: int) -> str:
        sentences = split_sentences(text)
        keywords = extract_keywords(text, limit=5)

        actions = []
        for sentence in sentences:
            lower = sentence.lower()
            if any(verb in lower for verb in ACTION_VERBS) and sentence not in actions:
                actions.append(sentence)

        results = []
        for sentence in sentences:
            if any(p.search(sentence) for p in RESULT_PATTERNS) and sentence not in results:
                results.append(sentence)

        lines = []
        if keywords:
            lines.append(f"Key topics: {', '.join(keywords)}.")
        if actions:
            lines.append(f"Actions: {'; '.join(actions[:2])}")
        if results:
            lines.append(f"Results: {'; '.join(results[:2])}")
        return "\n".join(lines)

    def _hierarchical(self, text: str, target: int) -> str:
        headers, important, normal = [], [], []
        for line in text.split("\n"):
            line = line.strip()
            if not line:
                continue
            if HEADER_PATTERN.search(line):
                headers.append(line)
            elif any(p.search(line) for p in IMPORTANT_PATTERNS):
                important.append(line)
            elif len(line) > 20:
                normal.append(line)
            # anything shorter is filler and dropped

        keep_normal = normal[: int(len(normal) * HIERARCHICAL_NORMAL_SHARE)]
        kept, used = [], 0
        for line in headers + important + keep_normal:
            tokens = self.estimator(line)
            if used + tokens > target:
                break
            kept.append(line)
            used += tokens
        return "\n".join(kept)

    def _rolling(self, text: str, target: int) -> str:
        parts = split_into_chunks(text, ROLLING_CHUNK_CHARS)
        kept: list[str] = []
        for part in reversed(parts):
            if self.estimator(" ".join([part, *kept])) > target:
                break
            kept.insert(0, part)
        return " ".join(kept)

    def _update_stats(self, original: int, compressed: int) -> None:
        self.stats["total_compressions"] += 1
        self.stats["total_original_tokens"] += original
        self.stats["total_compressed_tokens"] += compressed


def split_into_chunks(text: str, max_chars: int) -> list[str]:
    """Group sentences into chunks of roughly ``max_chars`` characters."""
    parts, current = [], ""
    for sentence in split_sentences(text, min_chars=0):
        if current and len(current) + len(sentence) > max_chars:
            parts.append(current.strip())
            current = sentence
        else:
            current = f"{current} {sentence}"
    if current.strip():
        parts.append(current.strip())
    return parts
