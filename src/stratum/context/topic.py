"""Topic transition engine.

A two-state machine (MAIN, TEMP) that decides whether a query continues
the main conversation or a disposable side topic. The caller owns the
actual mode and the side topic's message buffer; this module only decides.

Relevance comes from a pluggable scorer. Every scorer fails open: when it
cannot answer it reports full relevance to both topics, which keeps the
machine in its current state.
"""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, runtime_checkable

from stratum.context.llm import ChatModel
from stratum.context.messages import plain_text
from stratum.context.text import estimate_similarity, normalize_whitespace
from stratum.context.types import Message

logger = logging.getLogger(__name__)

REFERENCE_MAX_MESSAGES = 8
REFERENCE_MAX_CHARS_PER_MESSAGE = 120
REFERENCE_MAX_TOTAL_CHARS = 600


class TopicMode(str, Enum):
    MAIN = "MAIN"
    TEMP = "TEMP"


class TopicDecision(str, Enum):
    STAY_MAIN = "stay-main"
    ENTER_TEMP = "enter-temp"
    STAY_TEMP = "stay-temp"
    REPLACE_TEMP = "replace-temp"
    EXIT_TEMP = "exit-temp"

    @property
    def next_mode(self) -> TopicMode:
        if self in (TopicDecision.STAY_MAIN, TopicDecision.EXIT_TEMP):
            return TopicMode.MAIN
        return TopicMode.TEMP


@dataclass(frozen=True, slots=True)
class TopicThresholds:
    enter_threshold: float = 0.55
    exit_threshold: float = 0.55
    temp_stay_threshold: float = 0.8


@dataclass(frozen=True, slots=True)
class TopicScores:
    rel_main: float
    rel_temp: float

    @classmethod
    def clamped(cls, rel_main: float, rel_temp: float) -> TopicScores:
        return cls(_clamp_score(rel_main), _clamp_score(rel_temp))


FAIL_OPEN = TopicScores(1.0, 1.0)


@dataclass(frozen=True, slots=True)
class TopicTransition:
    decision: TopicDecision
    rel_main: float
    rel_temp: float

    def to_dict(self) -> dict[str, object]:
        return {"decision": self.decision.value, "relMain": self.rel_main, "relTemp": self.rel_temp}


@runtime_checkable
class TopicRelevanceScorer(Protocol):
    """Relevance of a query to the main and temporary topic references."""

    async def score(self, query: str, main_reference: str, temp_reference: str) -> TopicScores: ...


def _clamp_score(value: float) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(value):
        return 0.0
    return max(0.0, min(1.0, value))


def _clip(text: str, max_chars: int) -> str:
    return text if len(text) <= max_chars else f"{text[:max_chars]}..."


def build_topic_reference(
    messages: list[Message],
    max_messages: int = REFERENCE_MAX_MESSAGES,
    max_chars_per_message: int = REFERENCE_MAX_CHARS_PER_MESSAGE,
    max_total_chars: int = REFERENCE_MAX_TOTAL_CHARS,
) -> str:
    """Cheap topical fingerprint from the last few messages."""
    if not messages or max_messages <= 0:
        return ""
    lines = []
    for message in messages[-max_messages:]:
        text = plain_text(message)
        if text:
            lines.append(_clip(text, max_chars_per_message))
    return _clip(normalize_whitespace("; ".join(lines)), max_total_chars)


async def decide(
    mode: TopicMode,
    query: str,
    main_reference: str,
    scorer: TopicRelevanceScorer,
    temp_reference: str = "",
    thresholds: TopicThresholds | None = None,
) -> TopicTransition:
    """Decide the next topic transition for ``query``.

    From MAIN the only move is entering a side topic when the query is not
    relevant enough to the main one. From TEMP the query may return to the
    main topic, replace the side topic with a new one, or stay.
    """
    thresholds = thresholds or TopicThresholds()
    query = normalize_whitespace(query)
    main_reference = normalize_whitespace(main_reference)
    temp_reference = normalize_whitespace(temp_reference)

    if mode is TopicMode.MAIN:
        if not query or not main_reference:
            return TopicTransition(TopicDecision.STAY_MAIN, 0.0, 0.0)
        scores = await _safe_score(scorer, query, main_reference, temp_reference)
        if scores.rel_main < thresholds.enter_threshold:
            return TopicTransition(TopicDecision.ENTER_TEMP, scores.rel_main, 0.0)
        return TopicTransition(TopicDecision.STAY_MAIN, scores.rel_main, 0.0)

    if not query:
        return TopicTransition(TopicDecision.STAY_TEMP, 0.0, 0.0)

    scores = await _safe_score(scorer, query, main_reference, temp_reference)
    rel_main, rel_temp = scores.rel_main, scores.rel_temp
    if (
        main_reference
        and rel_main > thresholds.exit_threshold
        and rel_temp < thresholds.temp_stay_threshold
    ):
        return TopicTransition(TopicDecision.EXIT_TEMP, rel_main, rel_temp)
    if rel_main < thresholds.enter_threshold and rel_temp < thresholds.temp_stay_threshold:
        return TopicTransition(TopicDecision.REPLACE_TEMP, rel_main, rel_temp)
    return TopicTransition(TopicDecision.STAY_TEMP, rel_main, rel_temp)


async def _safe_score(
    scorer: TopicRelevanceScorer, query: str, main_reference: str, temp_reference: str
) -> TopicScores:
    try:
        scores = await scorer.score(query, main_reference, temp_reference)
    except Exception as e:
        logger.warning("Topic scorer failed, assuming full relevance: %s", e)
        return FAIL_OPEN
    return TopicScores.clamped(scores.rel_main, scores.rel_temp)


# ----------------------------------------------------------------------
# Scorers
# ----------------------------------------------------------------------


class SparseTopicScorer:
    """Offline scorer based on term overlap with each reference."""

    async def score(self, query: str, main_reference: str, temp_reference: str) -> TopicScores:
        return TopicScores(
            estimate_similarity(query, main_reference) if main_reference else 0.0,
            estimate_similarity(query, temp_reference) if temp_reference else 0.0,
        )


def _prompt(query: str, main_reference: str, temp_reference: str) -> str:
    prompt = f"Main topic: {main_reference or '(none)'}"
    if temp_reference:
        prompt += f"\nTemp topic: {temp_reference}"
    return f"{prompt}\nQuery: {query}"


_JSON_OBJECT_RE = re.compile(r"\{[^}]*\}")

SCORER_SYSTEM_PROMPT = (
    "Rate query relevance to each topic (0.0=unrelated, 1.0=same topic). "
    "If a topic is absent, its score is 0. Reply with ONLY: "
    '{"relMain":<n>,"relTemp":<n>}'
)


def parse_relevance_scores(text: str) -> TopicScores:
    """Parse the numeric scorer's reply; anything unusable scores zero."""
    match = _JSON_OBJECT_RE.search(text)
    if not match:
        return TopicScores(0.0, 0.0)
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError:
        return TopicScores(0.0, 0.0)
    if not isinstance(parsed, dict):
        return TopicScores(0.0, 0.0)

    def pick(key: str) -> float:
        value = parsed.get(key)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return 0.0
        return _clamp_score(value)

    return TopicScores(pick("relMain"), pick("relTemp"))


class LLMTopicScorer:
    """Asks a chat model for ``{"relMain": n, "relTemp": n}`` directly."""

    def __init__(self, model: ChatModel, max_tokens: int = 2048) -> None:
        self._model = model
        self._max_tokens = max_tokens

    async def score(self, query: str, main_reference: str, temp_reference: str) -> TopicScores:
        if not query or (not main_reference and not temp_reference):
            return TopicScores(0.0, 0.0)
        try:
            reply = await self._model.complete(
                SCORER_SYSTEM_PROMPT,
                _prompt(query, main_reference, temp_reference),
                self._max_tokens,
            )
        except Exception as e:
            logger.warning("LLM topic scoring failed: %s", e)
            return FAIL_OPEN
        return parse_relevance_scores(reply)


CLASSIFIER_SYSTEM_PROMPT = (
    "Classify the query's relationship to conversation topics. "
    "Reply with ONLY one label, no explanation."
)
_MAIN_LABELS = "stay-main (query continues main topic) or enter-temp (query departs to a new topic)"
_TEMP_LABELS = (
    "stay-temp (query continues temp topic), "
    "exit-temp (query returns to main topic), or "
    "replace-temp (query starts yet another unrelated topic)"
)

LABEL_SCORES: dict[TopicDecision, TopicScores] = {
    TopicDecision.STAY_MAIN: TopicScores(1.0, 0.0),
    TopicDecision.ENTER_TEMP: TopicScores(0.0, 0.0),
    TopicDecision.STAY_TEMP: TopicScores(0.0, 1.0),
    TopicDecision.EXIT_TEMP: TopicScores(1.0, 0.0),
    TopicDecision.REPLACE_TEMP: TopicScores(0.0, 0.0),
}


def parse_classification(text: str, has_temp: bool) -> TopicScores:
    """Map a label reply to canonical scores.

    An unrecognised reply keeps the current topic: TEMP stays in the side
    topic, MAIN stays in the main one.
    """
    normalized = text.strip().lower()
    for decision in TopicDecision:
        if decision.value in normalized:
            return LABEL_SCORES[decision]
    return TopicScores(0.0, 1.0) if has_temp else TopicScores(1.0, 0.0)


class LLMTopicClassifier:
    """Asks a chat model for a transition label and maps it back to scores."""

    def __init__(self, model: ChatModel, max_tokens: int = 2048) -> None:
        self._model = model
        self._max_tokens = max_tokens

    async def score(self, query: str, main_reference: str, temp_reference: str) -> TopicScores:
        if not query or (not main_reference and not temp_reference):
            return TopicScores(0.0, 0.0)
        has_temp = bool(temp_reference)
        labels = _TEMP_LABELS if has_temp else _MAIN_LABELS
        try:
            reply = await self._model.complete(
                CLASSIFIER_SYSTEM_PROMPT,
                f"{_prompt(query, main_reference, temp_reference)}\nLabel: {labels}",
                self._max_tokens,
            )
        except Exception as e:
            logger.warning("LLM topic classification failed: %s", e)
            return FAIL_OPEN
        return parse_classification(reply, has_temp)


def create_topic_scorer(kind: str, model: ChatModel | None = None, max_tokens: int = 2048) -> TopicRelevanceScorer:
    """Build a scorer by name: ``sparse``, ``llm`` or ``classifier``."""
    if kind == "sparse":
        return SparseTopicScorer()
    if model is None:
        raise ValueError(f"topic scorer '{kind}' needs a chat model")
    if kind == "llm":
        return LLMTopicScorer(model, max_tokens)
    if kind == "classifier":
        return LLMTopicClassifier(model, max_tokens)
    raise ValueError(f"unknown topic scorer: {kind}")
