"""
Tests for the text compressor and the condensing helpers.
"""

import pytest
from langchain_core.messages import AIMessage, HumanMessage, ToolMessage

from agent_memory.compressor import (
    TextCompressor,
    extract_keywords,
    is_important_turn,
    score_sentences,
    split_into_chunks,
    split_sentences,
    truncate_to_tokens,
)
from agent_memory.condenser import condense_text, message_text
from agent_memory.errors import InvalidInput
from agent_memory.token_budget import estimate_tokens
from agent_memory.turns import Turn

from conftest import word_count


def long_document(chars: int = 2000) -> str:
    lines = [
        "# Deployment notes",
        "The deploy failed with an error in the database migration step.",
        "We agreed the conclusion is to pin the driver version for now.",
        "Routine chatter about the weather and lunch plans for the team.",
        "ok",
    ]
    text = ""
    i = 0
    while len(text) < chars:
        text += lines[i % len(lines)] + "\n"
        i += 1
    return text[:chars]


# ── Helper Tests ──


class TestHelpers:
    def test_split_sentences_drops_fragments(self):
        sentences = split_sentences("Short. This sentence is long enough. Ok!")
        assert sentences == ["This sentence is long enough."]

    def test_score_sentences_prefers_important_and_code(self):
        sentences = [
            "The weather was pleasant during most of the afternoon walk.",
            "A plain middle sentence that says very little of note here.",
            "Another plain middle sentence without any signal words in it.",
            "Yet another plain middle sentence to pad the list out a bit.",
            "Still more plain filler text that carries no particular weight.",
            "Call parse_config() to fix the error in the loader.",
            "A plain closing sentence that is long enough to be scored.",
        ]
        scores = score_sentences(sentences)
        assert scores[5] == max(scores)
        assert scores[0] > scores[3]  # position bonus

    def test_extract_keywords(self):
        text = "parser parser parser cache cache login"
        assert extract_keywords(text, limit=2) == ["parser", "cache"]

    def test_truncate_to_tokens_head(self):
        text = "one two three four five six seven eight"
        clipped = truncate_to_tokens(text, 3)
        assert estimate_tokens(clipped) <= 3
        assert text.startswith(clipped)

    def test_truncate_to_tokens_tail(self):
        text = "one two three four five six seven eight"
        clipped = truncate_to_tokens(text, 3, keep="tail")
        assert estimate_tokens(clipped) <= 3
        assert text.endswith(clipped)

    def test_truncate_fits_already(self):
        assert truncate_to_tokens("short", 10) == "short"
        assert truncate_to_tokens("something long", 0) == ""

    def test_split_into_chunks(self):
        text = " ".join(f"Sentence number {i} is here." for i in range(100))
        chunks = split_into_chunks(text, 200)
        assert len(chunks) > 1
        assert all(len(c) <= 230 for c in chunks)


# ── Compressor Tests ──


class TestTextCompressor:
    @pytest.mark.parametrize(
        "original, target, strategy",
        [
            (100, 80, "extractive"),
            (100, 70, "keyword"),
            (100, 45, "keyword"),
            (100, 40, "abstractive"),
            (100, 21, "abstractive"),
            (100, 20, "hierarchical"),
            (100, 5, "hierarchical"),
        ],
    )
    def test_select_strategy(self, original, target, strategy):
        assert TextCompressor.select_strategy(original, target) == strategy

    def test_empty_text(self):
        result = TextCompressor().compress("", 10)
        assert result.text == ""
        assert result.ratio == 1.0

    def test_text_within_target_is_unchanged(self):
        text = "A short note."
        result = TextCompressor().compress(text, 100)
        assert result.text == text
        assert result.ratio == 1.0

    def test_unknown_strategy(self):
        with pytest.raises(InvalidInput):
            TextCompressor().compress("text", 1, strategy="magic")

    def test_hierarchical_for_large_reduction(self):
        text = long_document(2000)
        result = TextCompressor().compress(text, 50)
        assert result.strategy == "hierarchical"
        assert estimate_tokens(result.text) <= 50
        assert result.text
        assert result.ratio < 0.2

    def test_hierarchical_keeps_headers_first(self):
        result = TextCompressor().compress(long_document(2000), 50, strategy="hierarchical")
        assert result.text.startswith("# Deployment notes")

    @pytest.mark.parametrize("strategy", ["extractive", "keyword", "abstractive", "rolling"])
    def test_forced_strategy_respects_target(self, strategy):
        text = long_document(3000)
        result = TextCompressor().compress(text, 200, strategy=strategy)
        assert result.strategy == strategy
        assert 0 < estimate_tokens(result.text) <= 200

    def test_extractive_preserves_order(self):
        sentences = [f"Sentence {i} talks about the project goal in detail." for i in range(20)]
        text = " ".join(sentences)
        result = TextCompressor().compress(text, int(estimate_tokens(text) * 0.8))
        assert result.strategy == "extractive"
        kept = split_sentences(result.text)
        positions = [sentences.index(s) for s in kept]
        assert positions == sorted(positions)

    def test_rolling_keeps_the_end(self):
        text = " ".join(f"Chunk sentence number {i} goes here." for i in range(200))
        result = TextCompressor().compress(text, 100, strategy="rolling")
        assert result.text.endswith("number 199 goes here.")

    def test_compression_is_idempotent(self):
        compressor = TextCompressor()
        first = compressor.compress(long_document(2000), 60)
        second = compressor.compress(first.text, 60)
        assert second.text == first.text
        assert second.ratio == 1.0

    def test_custom_scorer(self):
        def prefer_last(sentences):
            return [float(i) for i in range(len(sentences))]

        sentences = [f"Sentence number {i} is right here in the text." for i in range(10)]
        text = " ".join(sentences)
        compressor = TextCompressor(scorer=prefer_last)
        result = compressor.compress(text, int(estimate_tokens(text) * 0.75), strategy="extractive")
        assert result.text.endswith(sentences[-1])
        assert sentences[0] not in result.text

    def test_failure_returns_original(self):
        def broken(sentences):
            raise RuntimeError("scorer exploded")

        text = "This is a sentence that is long enough. " * 20
        compressor = TextCompressor(scorer=broken)
        result = compressor.compress(text, 50, strategy="extractive")
        assert result.text == text
        assert result.ratio == 1.0
        assert "scorer exploded" in result.error
        assert compressor.stats["failures"] == 1

    def test_stats(self):
        compressor = TextCompressor()
        compressor.compress(long_document(2000), 50)
        stats = compressor.get_stats()
        assert stats["total_compressions"] == 1
        assert stats["total_savings"] > 0
        assert stats["average_ratio"] < 1


# ── Conversation Compression Tests ──


def chat(i: int, role: str = "user") -> Turn:
    text = f"chat number {i} about lunch"
    return Turn(content=text, token_count=word_count(text), role=role)


class TestCompressConversation:
    def test_is_important_turn(self):
        assert is_important_turn(Turn(content="deploy failed with an error", token_count=5))
        assert is_important_turn(Turn(content="hi", token_count=1, role="system"))
        assert is_important_turn(Turn(content="hi", token_count=1, metadata={"current_task": True}))
        assert not is_important_turn(chat(0))

    def test_within_target_is_unchanged(self):
        turns = [chat(i) for i in range(3)]
        compressor = TextCompressor(estimator=word_count)
        assert compressor.compress_conversation(turns, 100) == turns
        assert compressor.compress_conversation([], 10) == []

    def test_keeps_newest_and_compresses_boundary(self):
        turns = [chat(i) for i in range(10)]
        compressor = TextCompressor(estimator=word_count)
        result = compressor.compress_conversation(turns, 12)

        assert [t.content for t in result[1:]] == [turns[8].content, turns[9].content]
        assert result[0].compressed is True
        assert result[0].id == turns[7].id
        assert result[0].token_count == word_count(result[0].content)
        assert sum(word_count(t.content) for t in result) <= 12
        # input untouched
        assert turns[7].content == "chat number 7 about lunch"
        assert turns[7].compressed is False

    def test_important_turn_kept_past_target(self):
        turns = [chat(i) for i in range(6)]
        turns.append(Turn(content="Deploy failed with an error", token_count=5))
        turns += [chat(7), chat(8)]
        compressor = TextCompressor(estimator=word_count)
        result = compressor.compress_conversation(turns, 10, min_recent=1)
        assert [t.content for t in result] == [
            "Deploy failed with an error",
            "chat number 7 about lunch",
            "chat number 8 about lunch",
        ]

    def test_older_important_turn_kept_when_it_fits(self):
        system = Turn(content="System rules apply", token_count=3, role="system")
        turns = [system] + [chat(i) for i in range(1, 5)]
        compressor = TextCompressor(estimator=word_count)
        result = compressor.compress_conversation(turns, 13, min_recent=1)
        assert [t.id for t in result] == [system.id, turns[3].id, turns[4].id]


# ── Condenser Tests ──


class TestCondenser:
    def test_condense_collapses_whitespace(self):
        assert condense_text("a   b\n\n c") == "a b c"

    def test_condense_truncates_long_code(self):
        text = "Look:\n```\n" + "x = 1\n" * 300 + "```"
        assert "[Code block truncated]" in condense_text(text)

    def test_condense_drops_filler(self):
        text = "Use a cache. For example, an LRU works. Done."
        assert condense_text(text) == "Use a cache. Done."

    def test_condense_never_empty(self):
        assert condense_text("For example, this.") == "For example, this."

    def test_message_text_strips_thinking(self):
        msg = AIMessage(content=[
            {"type": "thinking", "thinking": "Deep reasoning here..."},
            {"type": "text", "text": "My answer."},
        ])
        assert message_text(msg) == "My answer."

    def test_message_text_truncates_tool_output(self):
        msg = ToolMessage(content="x" * 500, tool_call_id="call-1")
        text = message_text(msg, max_tool_chars=200)
        assert len(text) < 500
        assert "truncated" in text

    def test_message_text_plain(self):
        assert message_text(HumanMessage(content="Hello")) == "Hello"
