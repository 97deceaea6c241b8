"""Overview and abstract generation for archived chunks.

With a chat model the summarizer asks for an L1 overview and an L0
abstract. Without one, or when the model fails or answers with nothing, it
falls back to a deterministic extractive summary and records why.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Literal, TypeAlias

from stratum.context.llm import ChatModel
from stratum.context.text import normalize_whitespace, trim_to_token_target

logger = logging.getLogger(__name__)

FALLBACK_SUMMARY_LINES = 18
FALLBACK_ABSTRACT_SENTENCES = 2
EMPTY_HISTORY_TEXT = "No historical content was available."

_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+")

_SYSTEM_PROMPTS = {
    "summary": (
        "Summarize the conversation excerpt for later retrieval. Keep decisions, "
        "names, file paths, numbers and open questions. Stay under {target} tokens. "
        "Reply with the summary only."
    ),
    "abstract": (
        "Write a one or two sentence abstract of the summary, under {target} tokens. "
        "Reply with the abstract only."
    ),
}

SummaryLevel: TypeAlias = Literal["summary", "abstract"]


@dataclass(frozen=True, slots=True)
class SummaryResult:
    text: str
    fallback_used: bool = False
    fallback_reason: str | None = None


def fallback_summary(text: str, target_tokens: int) -> str:
    normalized = normalize_whitespace(text)
    if not normalized:
        return EMPTY_HISTORY_TEXT
    lines = [line.strip() for line in normalized.split("\n") if line.strip()]
    body = "\n".join(f"- {line}" for line in lines[:FALLBACK_SUMMARY_LINES])
    return trim_to_token_target(f"Archive summary:\n{body}", target_tokens)


def fallback_abstract(summary: str, target_tokens: int) -> str:
    sentences = [s.strip() for s in _SENTENCE_RE.split(normalize_whitespace(summary)) if s.strip()]
    base = " ".join(sentences[:FALLBACK_ABSTRACT_SENTENCES]) or summary
    return trim_to_token_target(base, target_tokens)


class ArchiveSummarizer:
    """Produces (overview, abstract) pairs for the indexer."""

    def __init__(self, model: ChatModel | None = None, max_tokens: int = 2048) -> None:
        self._model = model
        self._max_tokens = max_tokens

    async def _generate(
        self,
        text: str,
        target_tokens: int,
        level: SummaryLevel,
        fallback: str,
    ) -> SummaryResult:
        if self._model is None:
            return SummaryResult(fallback)
        try:
            generated = await self._model.complete(
                _SYSTEM_PROMPTS[level].format(target=target_tokens),
                text,
                self._max_tokens,
            )
        except Exception as e:
            logger.warning("%s generation failed, using fallback: %s", level, e)
            return SummaryResult(fallback, True, f"{level}_llm_failed:{e}")

        trimmed = trim_to_token_target(generated or "", target_tokens)
        if not trimmed:
            return SummaryResult(fallback, True, f"{level}_llm_empty")
        return SummaryResult(trimmed)

    async def summarize(self, text: str, target_tokens: int) -> SummaryResult:
        """Overview of a transcript within ``target_tokens``."""
        return await self._generate(
            text, target_tokens, "summary", fallback_summary(text, target_tokens)
        )

    async def abstract(self, summary: str, target_tokens: int) -> SummaryResult:
        """One or two sentence abstract of an overview."""
        return await self._generate(
            summary, target_tokens, "abstract", fallback_abstract(summary, target_tokens)
        )
