"""
LangChain message bridge.

Feeds LangChain messages into a ContextWindowManager and renders the
managed window back as messages before they are sent to the LLM:

- system messages from the input are kept first, unchanged
- relevant long-term memories are injected as one ``[Recalled Memory]``
  human message
- the live window follows; summary turns become ``[Conversation Summary]``
  human messages

The caller's full history is never modified; this only affects what the
LLM sees.
"""

import logging
from typing import Optional

from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)

from .condenser import message_text
from .context_manager import ContextWindowManager
from .errors import AgentMemoryError
from .turns import Priority, Turn

logger = logging.getLogger(__name__)

RECALL_MESSAGE_ID = "memory-recall"


def message_role(msg: BaseMessage) -> str:
    if isinstance(msg, AIMessage):
        return "assistant"
    if isinstance(msg, ToolMessage):
        return "tool"
    if isinstance(msg, SystemMessage):
        return "system"
    return "user"


def turn_to_message(turn: Turn) -> BaseMessage:
    if turn.metadata.get("type") == "summary":
        body = turn.content.split("\n", 1)[-1] if "\n" in turn.content else turn.content
        return HumanMessage(content=f"[Conversation Summary]\n{body}", id=f"summary-{turn.id}")
    if turn.role == "assistant":
        return AIMessage(content=turn.content, id=turn.id)
    if turn.role == "system":
        return SystemMessage(content=turn.content, id=turn.id)
    if turn.role == "tool" and turn.metadata.get("tool_call_id"):
        return ToolMessage(
            content=turn.content,
            tool_call_id=turn.metadata["tool_call_id"],
            id=turn.id,
        )
    return HumanMessage(content=turn.content, id=turn.id)


class MemoryMiddleware:
    """
    Context window + long-term recall for a LangChain message list.

    Usage:
        middleware = MemoryMiddleware(window, memory=memory_system)
        trimmed = middleware.apply(messages)
        # Send trimmed messages to LLM instead of full history
    """

    def __init__(
        self,
        window: ContextWindowManager,
        memory=None,
        recall_top_k: int = 5,
        recall_threshold: Optional[float] = None,
        max_tool_chars: int = 200,
    ):
        self.window = window
        self.memory = memory
        self.recall_top_k = recall_top_k
        self.recall_threshold = recall_threshold
        self.max_tool_chars = max_tool_chars
        self._ingested = 0

    def ingest(self, messages: list) -> int:
        """
        Add messages past the ones already ingested as turns.

        ``messages`` is the caller's growing history; only its new tail is
        read. A history shorter than what was already ingested is treated
        as a new conversation and read from the start.

        Returns how many turns were added.
        """
        if len(messages) < self._ingested:
            logger.info(
                "Message history shrank (%d < %d), ingesting from the start",
                len(messages), self._ingested,
            )
            self._ingested = 0
        new_messages = messages[self._ingested:]
        self._ingested = len(messages)

        added = 0
        for msg in new_messages:
            if isinstance(msg, SystemMessage):
                continue
            text = message_text(msg, self.max_tool_chars)
            if not text.strip():
                continue
            metadata = {}
            if isinstance(msg, ToolMessage):
                metadata["tool_call_id"] = msg.tool_call_id
            extra = getattr(msg, "additional_kwargs", None) or {}
            for field in ("current_task", "topic"):
                if field in extra:
                    metadata[field] = extra[field]

            priority = Priority.CRITICAL if metadata.get("current_task") else Priority.MEDIUM
            self.window.add_turn(text, role=message_role(msg), priority=priority, metadata=metadata)
            added += 1
        if added:
            logger.debug("Ingested %d new messages into the context window", added)
        return added

    def apply(self, messages: list, query: Optional[str] = None) -> list:
        """
        Ingest ``messages`` and return the managed view for the LLM.

        ``query`` defaults to the text of the newest human message.
        The original list is not modified.
        """
        if not messages:
            return messages

        self.ingest(messages)
        result = [m for m in messages if isinstance(m, SystemMessage)]

        recall = self._build_recall(messages, query)
        if recall is not None:
            result.append(recall)

        result.extend(turn_to_message(t) for t in self.window.turns)
        logger.debug(
            "Memory view: %d system, %s recall, %d window messages",
            sum(isinstance(m, SystemMessage) for m in messages),
            "with" if recall is not None else "no",
            len(self.window.turns),
        )
        return result

    def _build_recall(self, messages: list, query: Optional[str]) -> Optional[HumanMessage]:
        if self.memory is None or self.recall_top_k <= 0:
            return None
        if query is None:
            humans = [m for m in messages if isinstance(m, HumanMessage)]
            query = message_text(humans[-1]) if humans else ""
        if not query.strip():
            return None

        try:
            memories = self.memory.retrieve_memories(
                query, limit=self.recall_top_k, threshold=self.recall_threshold
            )
        except AgentMemoryError as e:
            logger.warning("Memory recall failed, continuing without it: %s", e)
            return None
        if not memories:
            return None

        lines = [f"- {m.content}" for m in memories]
        return HumanMessage(
            content="[Recalled Memory]\n" + "\n".join(lines),
            id=RECALL_MESSAGE_ID,
        )
