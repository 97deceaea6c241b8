"""Tests for replaying labelled cases through the topic transition engine."""

import pytest
from conftest import FixedTopicScorer

from stratum.context.topic import TopicDecision
from stratum.eval.topic_eval import evaluate_topic_cases
from stratum.eval.types import EvalCase


def _case(case_id: str, query: str = "where should we eat?", **metadata) -> EvalCase:
    return EvalCase(
        id=case_id,
        query=query,
        messages=[
            {"role": "user", "content": "the kafka consumer keeps lagging"},
            {"role": "assistant", "content": "raise the partition count"},
        ],
        metadata=metadata,
    )


CASES = [
    _case("a", stateBefore="MAIN", expectedTransition="enter-temp"),
    _case("b", stateBefore="MAIN", expectedTransition="stay-main"),
    _case("c", stateBefore="TEMP", expectedTransition="replace-temp", frozenMainReference="kafka lag"),
    _case("d"),
    _case("e", stateBefore="SIDEWAYS", expectedTransition="stay-main"),
]


class TestEvaluateTopicCases:
    @pytest.mark.asyncio
    async def test_accuracy_and_mismatches(self) -> None:
        scorer = FixedTopicScorer(rel_main=0.2, rel_temp=0.0)

        summary = await evaluate_topic_cases(CASES, scorer)

        assert summary.dataset_cases == 5
        assert summary.evaluated == 3
        assert summary.skipped == 2
        assert summary.matched == 2
        assert summary.accuracy == pytest.approx(2 / 3)
        assert scorer.calls == 3

        [mismatch] = summary.mismatches
        assert mismatch.case_id == "b"
        assert mismatch.expected is TopicDecision.STAY_MAIN
        assert mismatch.predicted is TopicDecision.ENTER_TEMP

    @pytest.mark.asyncio
    async def test_recall_and_confusion(self) -> None:
        summary = await evaluate_topic_cases(CASES, FixedTopicScorer(rel_main=0.2))

        assert summary.recall(TopicDecision.ENTER_TEMP) == 1.0
        assert summary.recall(TopicDecision.STAY_MAIN) == 0.0
        assert summary.recall(TopicDecision.EXIT_TEMP) == 0.0
        assert summary.top_confusion() == [
            (TopicDecision.STAY_MAIN, TopicDecision.ENTER_TEMP, 1),
            (TopicDecision.ENTER_TEMP, TopicDecision.ENTER_TEMP, 1),
            (TopicDecision.REPLACE_TEMP, TopicDecision.REPLACE_TEMP, 1),
        ]

    @pytest.mark.asyncio
    async def test_to_dict(self) -> None:
        summary = await evaluate_topic_cases(CASES, FixedTopicScorer(rel_main=0.2))

        data = summary.to_dict()

        assert data["accuracy"] == 0.6667
        assert data["expectedCounts"]["stay-main"] == 1
        assert data["mismatches"][0]["relMain"] == 0.2

    @pytest.mark.asyncio
    async def test_mismatch_list_is_capped(self) -> None:
        summary = await evaluate_topic_cases(CASES, FixedTopicScorer(rel_main=0.2), max_mismatches=0)

        assert summary.mismatches == []
        assert summary.matched == 2

    @pytest.mark.asyncio
    async def test_failing_scorer_keeps_the_current_topic(self) -> None:
        summary = await evaluate_topic_cases(CASES, FixedTopicScorer(error=RuntimeError("down")))

        assert [m.predicted for m in summary.mismatches] == [
            TopicDecision.STAY_MAIN,
            TopicDecision.STAY_TEMP,
        ]
