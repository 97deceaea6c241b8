"""Helpers for Anthropic-style chat messages.

A message is a plain dict ``{"role": ..., "content": str | list[block]}``
where blocks follow the Messages API shapes (text, image, tool_use,
tool_result).
"""

import json
from typing import Any

from stratum.context.text import normalize_whitespace
from stratum.context.types import Message

VALID_ROLES = frozenset({"user", "assistant"})


def _stringify(value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)


def _flatten_block(block: Any) -> str:
    if not isinstance(block, dict):
        return _stringify(block)
    kind = block.get("type")
    if kind == "text":
        return str(block.get("text", ""))
    if kind == "image":
        return "[Image content]"
    if kind == "tool_use":
        return f"[Tool use] {block.get('name', '')}: {_stringify(block.get('input'))}"
    if kind == "tool_result":
        inner = block.get("content")
        if isinstance(inner, str):
            return f"[Tool result] {inner}"
        if isinstance(inner, list):
            parts = []
            for item in inner:
                if isinstance(item, dict) and item.get("type") == "text":
                    parts.append(str(item.get("text", "")))
                elif isinstance(item, dict) and item.get("type") == "image":
                    parts.append("[Image content]")
                else:
                    parts.append(_stringify(item))
            return "[Tool result]\n" + "\n".join(parts)
        return f"[Tool result] {_stringify(inner)}"
    return _stringify(block)


def message_text(message: Message) -> str:
    """Flattened, whitespace-normalized text of a message."""
    content = message.get("content")
    if isinstance(content, str):
        return normalize_whitespace(content)
    if isinstance(content, list):
        return normalize_whitespace("\n".join(_flatten_block(b) for b in content))
    return ""


def plain_text(message: Message) -> str:
    """Only the text blocks of a message, ignoring tools and images."""
    content = message.get("content")
    if isinstance(content, str):
        return normalize_whitespace(content)
    if not isinstance(content, list):
        return ""
    texts = [
        str(b.get("text", ""))
        for b in content
        if isinstance(b, dict) and b.get("type") == "text"
    ]
    return normalize_whitespace("\n".join(texts))


def role_label(message: Message) -> str:
    return "ASSISTANT" if message.get("role") == "assistant" else "USER"


def to_transcript(messages: list[Message]) -> str:
    """Render messages as ``ROLE: text`` paragraphs, skipping empty ones."""
    lines = []
    for message in messages:
        text = message_text(message)
        if text:
            lines.append(f"{role_label(message)}: {text}")
    return normalize_whitespace("\n\n".join(lines))


def _has_block(message: Message, kind: str) -> bool:
    content = message.get("content")
    if not isinstance(content, list):
        return False
    return any(isinstance(b, dict) and b.get("type") == kind for b in content)


def split_into_chunks(messages: list[Message], chunk_size: int) -> list[list[Message]]:
    """Split messages into chunks of about ``chunk_size``.

    A chunk never ends on a ``tool_use`` message or right before the
    ``tool_result`` that answers it.
    """
    chunks: list[list[Message]] = []
    current: list[Message] = []
    for i, message in enumerate(messages):
        current.append(message)
        if len(current) < chunk_size:
            continue
        if _has_block(message, "tool_use"):
            continue
        if i + 1 < len(messages) and _has_block(messages[i + 1], "tool_result"):
            continue
        chunks.append(current)
        current = []
    if current:
        chunks.append(current)
    return chunks


def latest_user_query(messages: list[Message]) -> str:
    for message in reversed(messages):
        if message.get("role") != "user":
            continue
        text = message_text(message)
        if text:
            return text
    return ""


def ensure_trailing_user_query(messages: list[Message], query: str) -> list[Message]:
    """Return ``messages`` ending with a user turn, appending ``query`` if needed.

    A trailing user message with non-empty string content is kept as is.
    """
    if messages:
        last = messages[-1]
        content = last.get("content")
        if last.get("role") == "user" and isinstance(content, str) and content.strip():
            return list(messages)
    return [*messages, {"role": "user", "content": query}]
