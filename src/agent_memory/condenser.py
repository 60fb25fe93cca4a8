"""
Light condensing passes.

``condense_text`` is the cheap first step applied to medium-priority turns
before the compressor runs: it collapses whitespace, truncates very long
code blocks and strips filler explanations.

``message_text`` flattens a LangChain message into plain text, dropping
thinking/reasoning blocks and truncating tool results.
"""

import re

from langchain_core.messages import AIMessage, BaseMessage, ToolMessage

LONG_CODE_BLOCK = re.compile(r"```[\s\S]{1000,}?```")
FILLER_PATTERNS = [
    re.compile(r"For example[^.]*\.\s*"),
    re.compile(r"In other words[^.]*\.\s*"),
]


def condense_text(text: str) -> str:
    """Collapse whitespace, truncate long code blocks, drop filler sentences."""
    if not text:
        return text
    condensed = LONG_CODE_BLOCK.sub("```[Code block truncated]```", text)
    for pattern in FILLER_PATTERNS:
        condensed = pattern.sub("", condensed)
    condensed = re.sub(r"\s+", " ", condensed).strip()
    # Never condense a turn away entirely
    return condensed or text.strip()


def message_text(msg: BaseMessage, max_tool_chars: int = 200) -> str:
    """
    Flatten a message's content to text.

    - AIMessage: thinking/reasoning blocks are stripped
    - ToolMessage: content truncated to max_tool_chars
    - everything else: text blocks joined by newlines
    """
    content = msg.content
    if isinstance(content, str):
        text = content
    elif isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict):
                btype = block.get("type", "")
                if btype in ("thinking", "reasoning") and isinstance(msg, AIMessage):
                    continue  # strip thinking blocks
                text = block.get("text") or ""
                if text:
                    parts.append(text)
        text = "\n".join(parts)
    else:
        text = str(content) if content else ""

    if isinstance(msg, ToolMessage) and len(text) > max_tool_chars:
        text = text[:max_tool_chars] + "\n... (truncated)"
    return text
