"""
Turn summarizer for compaction.

Low-priority turns are grouped into fixed-size batches and each batch is
replaced by one structured summary turn (topics, files, decisions, error
count). When a LangChain chat model is supplied it writes the summary
body; any failure falls back to the heuristic summary.
"""

import logging
import re
from typing import Optional

from .compressor import extract_keywords
from .token_budget import TokenEstimator, estimate_tokens
from .turns import Priority, Turn

logger = logging.getLogger(__name__)

SUMMARY_SYSTEM_PROMPT = """You are a conversation summarizer. Summarize the following conversation turns concisely.
Focus on:
- Key topics discussed
- Files mentioned
- Important decisions made
- Errors encountered and whether they were fixed

Output a concise plain-text summary in the same language as the conversation. Do NOT use markdown headers."""

FILE_PATTERN = re.compile(
    r"(?<![\w/])[\w\-./]*\w\.(?:py|pyi|js|ts|tsx|jsx|json|md|txt|ya?ml|toml|cfg|ini|"
    r"html|css|sql|sh|go|rs|java|rb|c|h|cpp|hpp)\b"
)
DECISION_PATTERN = re.compile(r"\b(?:decided|decision|will|agreed)\b", re.IGNORECASE)

MAX_TURN_CHARS_FOR_LLM = 500


class TurnSummarizer:
    """Replaces batches of turns with summary turns."""

    def __init__(
        self,
        llm=None,
        batch_size: int = 10,
        estimator: TokenEstimator = estimate_tokens,
    ):
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self._llm = llm
        self.batch_size = batch_size
        self.estimator = estimator

    def group_turns(self, turns: list[Turn]) -> list[list[Turn]]:
        return [
            turns[i : i + self.batch_size]
            for i in range(0, len(turns), self.batch_size)
        ]

    def summarize(self, turns: list[Turn]) -> list[Turn]:
        """Return one compressed summary turn per batch, in order."""
        summaries = []
        for group in self.group_turns(turns):
            body = self.generate_summary(group) or self.build_summary(group)
            content = f"[Summary of {len(group)} turns]\n{body}".rstrip()
            summaries.append(Turn(
                content=content,
                token_count=self.estimator(content),
                role="system",
                priority=Priority.LOW,
                metadata={
                    "type": "summary",
                    "original_turns": len(group),
                    "original_tokens": sum(t.token_count for t in group),
                    "original_ids": [t.id for t in group],
                },
                compressed=True,
                timestamp=group[0].timestamp,
            ))
        return summaries

    def build_summary(self, turns: list[Turn]) -> str:
        """Heuristic structured summary of a batch."""
        topics: list[str] = []
        files: list[str] = []
        decisions: list[str] = []
        errors = 0

        for turn in turns:
            topic = turn.metadata.get("topic")
            if topic and topic not in topics:
                topics.append(str(topic))
            for name in FILE_PATTERN.findall(turn.content):
                if name not in files:
                    files.append(name)
            if DECISION_PATTERN.search(turn.content):
                decisions.append(turn.content[:100].strip())
            if "error" in turn.content.lower():
                errors += 1

        if not topics:
            topics = extract_keywords(" ".join(t.content for t in turns), limit=3)

        lines = []
        if topics:
            lines.append(f"Topics: {', '.join(topics)}")
        if files:
            lines.append(f"Files discussed: {', '.join(files[:10])}")
        if decisions:
            lines.append(f"Key decisions: {'; '.join(decisions[:3])}")
        if errors:
            lines.append(f"Errors encountered: {errors}")
        return "\n".join(lines)

    def generate_summary(self, turns: list[Turn]) -> Optional[str]:
        """Summarize a batch with the LLM, or None without one / on failure."""
        if not self._llm or not turns:
            return None

        lines = []
        for turn in turns:
            content = turn.content
            # Truncate very long turns for summarization
            if len(content) > MAX_TURN_CHARS_FOR_LLM:
                content = content[:MAX_TURN_CHARS_FOR_LLM] + "..."
            lines.append(f"{turn.role}: {content}")

        try:
            response = self._llm.invoke([
                {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
                {"role": "user", "content": "\n".join(lines)},
            ])
            text = response.content if hasattr(response, "content") else str(response)
        except Exception as e:
            logger.warning("Failed to generate summary, using heuristic: %s", e)
            return None
        return text.strip() if isinstance(text, str) and text.strip() else None
