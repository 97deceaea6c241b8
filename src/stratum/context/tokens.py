"""Language-aware token estimation.

Deliberately conservative: underestimating leads to "prompt too long"
failures that are harder to recover from than a slightly short prompt.
English-like text costs one token per 2.5 characters, CJK text 1.3 tokens
per character, plus a fixed per-message overhead.
"""

import json
import math
import re
from typing import Any

_CJK_RE = re.compile(
    "[\u3000-\u303f\u3040-\u309f\u30a0-\u30ff\u3400-\u4dbf\u4e00-\u9fff"
    "\uac00-\ud7af\uf900-\ufaff\uff00-\uffef]"
)

MESSAGE_OVERHEAD_TOKENS = 4
IMAGE_TOKENS = 1600


def estimate_text_tokens(text: str) -> int:
    """Estimate the token count of a text string (0 for empty text)."""
    if not text:
        return 0
    cjk = len(_CJK_RE.findall(text))
    other = len(text) - cjk
    return math.ceil(cjk * 1.3) + math.ceil(other / 2.5) + MESSAGE_OVERHEAD_TOKENS


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)


def estimate_message_tokens(message: dict[str, Any]) -> int:
    """Estimate the token count of a chat message including content blocks."""
    content = message.get("content")
    if isinstance(content, str):
        return estimate_text_tokens(content)
    if not isinstance(content, list):
        return 0

    tokens = 0
    for block in content:
        kind = block.get("type") if isinstance(block, dict) else None
        if kind == "text":
            tokens += estimate_text_tokens(str(block.get("text", "")))
        elif kind == "image":
            tokens += IMAGE_TOKENS
        elif kind == "tool_use":
            tokens += estimate_text_tokens(_dumps(block))
        elif kind == "tool_result":
            inner = block.get("content")
            if isinstance(inner, str):
                tokens += estimate_text_tokens(inner)
            elif isinstance(inner, list):
                for item in inner:
                    if not isinstance(item, dict):
                        tokens += estimate_text_tokens(item if isinstance(item, str) else _dumps(item))
                    elif item.get("type") == "text":
                        tokens += estimate_text_tokens(str(item.get("text", "")))
                    elif item.get("type") == "image":
                        tokens += IMAGE_TOKENS
            else:
                tokens += estimate_text_tokens(_dumps(inner))
    return tokens


def estimate_messages_tokens(messages: list[dict[str, Any]]) -> int:
    return sum(estimate_message_tokens(m) for m in messages)
