"""Replay labelled cases through the topic transition engine.

A case takes part when its metadata carries ``stateBefore`` (MAIN/TEMP) and
``expectedTransition``. In MAIN the case messages form the main reference;
in TEMP they form the temporary reference and ``frozenMainReference`` (if
any) stands in for the main one.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from stratum.context.topic import (
    TopicDecision,
    TopicMode,
    TopicRelevanceScorer,
    TopicThresholds,
    build_topic_reference,
    decide,
)
from stratum.eval.types import EvalCase

MAX_MISMATCHES = 20
TOP_CONFUSION_CELLS = 15


@dataclass(frozen=True, slots=True)
class Mismatch:
    case_id: str
    state_before: TopicMode
    expected: TopicDecision
    predicted: TopicDecision
    rel_main: float
    rel_temp: float
    query: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "caseId": self.case_id,
            "stateBefore": self.state_before.value,
            "expected": self.expected.value,
            "predicted": self.predicted.value,
            "relMain": round(self.rel_main, 3),
            "relTemp": round(self.rel_temp, 3),
            "query": self.query,
        }


@dataclass(slots=True)
class TopicEvalSummary:
    dataset_cases: int
    evaluated: int = 0
    skipped: int = 0
    matched: int = 0
    expected_counts: Counter[TopicDecision] = field(default_factory=Counter)
    matched_counts: Counter[TopicDecision] = field(default_factory=Counter)
    confusion: Counter[tuple[TopicDecision, TopicDecision]] = field(default_factory=Counter)
    mismatches: list[Mismatch] = field(default_factory=list)

    @property
    def accuracy(self) -> float:
        return self.matched / self.evaluated if self.evaluated else 0.0

    def recall(self, decision: TopicDecision) -> float:
        total = self.expected_counts[decision]
        return self.matched_counts[decision] / total if total else 0.0

    def top_confusion(self, limit: int = TOP_CONFUSION_CELLS) -> list[tuple[TopicDecision, TopicDecision, int]]:
        cells = [(e, p, n) for (e, p), n in self.confusion.items() if n > 0]
        order = list(TopicDecision)
        cells.sort(key=lambda c: (-c[2], order.index(c[0]), order.index(c[1])))
        return cells[:limit]

    def to_dict(self) -> dict[str, Any]:
        return {
            "datasetCases": self.dataset_cases,
            "evaluatedCases": self.evaluated,
            "skippedCases": self.skipped,
            "matchedCases": self.matched,
            "accuracy": round(self.accuracy, 4),
            "expectedCounts": {d.value: self.expected_counts[d] for d in TopicDecision},
            "perTransitionRecall": {d.value: self.recall(d) for d in TopicDecision},
            "confusionTopCells": [
                {"expected": e.value, "predicted": p.value, "count": n} for e, p, n in self.top_confusion()
            ],
            "mismatches": [m.to_dict() for m in self.mismatches],
        }


def _parse_mode(value: Any) -> TopicMode | None:
    try:
        return TopicMode(value)
    except ValueError:
        return None


def _parse_decision(value: Any) -> TopicDecision | None:
    try:
        return TopicDecision(value)
    except ValueError:
        return None


async def evaluate_topic_cases(
    cases: Sequence[EvalCase],
    scorer: TopicRelevanceScorer,
    thresholds: TopicThresholds | None = None,
    max_mismatches: int = MAX_MISMATCHES,
    reference_messages: int = 8,
) -> TopicEvalSummary:
    summary = TopicEvalSummary(dataset_cases=len(cases))
    for case in cases:
        mode = _parse_mode(case.metadata.get("stateBefore"))
        expected = _parse_decision(case.metadata.get("expectedTransition"))
        if mode is None or expected is None:
            summary.skipped += 1
            continue

        reference = build_topic_reference(case.messages, max_messages=reference_messages)
        if mode is TopicMode.MAIN:
            main_reference, temp_reference = reference, ""
        else:
            frozen = case.metadata.get("frozenMainReference")
            main_reference = frozen if isinstance(frozen, str) else ""
            temp_reference = reference

        transition = await decide(
            mode, case.query, main_reference, scorer,
            temp_reference=temp_reference, thresholds=thresholds,
        )

        summary.evaluated += 1
        summary.expected_counts[expected] += 1
        summary.confusion[(expected, transition.decision)] += 1
        if transition.decision is expected:
            summary.matched += 1
            summary.matched_counts[expected] += 1
        elif len(summary.mismatches) < max_mismatches:
            summary.mismatches.append(Mismatch(
                case_id=case.id,
                state_before=mode,
                expected=expected,
                predicted=transition.decision,
                rel_main=transition.rel_main,
                rel_temp=transition.rel_temp,
                query=case.query,
            ))
    return summary
