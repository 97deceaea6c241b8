"""Tests for the retrieval escalation engine."""

from collections.abc import Sequence

import pytest
from conftest import make_index, make_node

from stratum.config import LayeredContextConfig
from stratum.context.dense import DenseCandidate
from stratum.context.retriever import (
    REASON_L0,
    REASON_L1,
    REASON_L2,
    REASON_NO_NODES,
    LayeredRetriever,
    classify_query,
)
from stratum.context.storage import FileSystemArchiveStore
from stratum.context.tokens import estimate_text_tokens
from stratum.context.types import ROOT_NODE_ID, ArchivePayload, Layer, QueryMode, TokenEstimate


class StaticDenseProvider:
    def __init__(self, scores: dict[str, float]) -> None:
        self.scores = scores
        self.seen: list[str] = []

    async def get_dense_scores(self, query: str, candidates: Sequence[DenseCandidate]) -> dict[str, float]:
        self.seen = [c.node_id for c in candidates]
        return self.scores


def _kafka_and_hiking() -> list:
    return [
        make_node(
            "kafka",
            "kafka consumer rebalancing notes",
            overview="overview of kafka consumer lag and rebalancing",
            keywords=("kafka", "consumer"),
            tokens=(10, 50, 400),
        ),
        make_node(
            "hiking",
            "weekend hiking trip plans",
            overview="weekend hiking trip with the team",
            keywords=("hiking",),
            tokens=(12, 60, 300),
        ),
    ]


class TestClassifyQuery:
    @pytest.mark.parametrize(
        ("query", "mode"),
        [
            ("what did we talk about", QueryMode.BROAD),
            ("give me an overview", QueryMode.STRUCTURED),
            ("show the exact stack trace", QueryMode.PRECISE),
            ("the summary of config.json", QueryMode.PRECISE),
        ],
    )
    def test_modes(self, query: str, mode: QueryMode) -> None:
        assert classify_query(query) is mode


class TestRetrieve:
    @pytest.mark.asyncio
    async def test_empty_index(self, store: FileSystemArchiveStore) -> None:
        result = await LayeredRetriever(store).retrieve(make_index([]), "anything", LayeredContextConfig())

        assert result.selections == ()
        assert result.decision.reached_layer is Layer.L0
        assert result.decision.reason == REASON_NO_NODES
        assert result.decision.query_mode is QueryMode.BROAD
        assert result.token_usage.savings_ratio == 0.0

    @pytest.mark.asyncio
    async def test_confident_broad_query_stays_on_l0(self, store: FileSystemArchiveStore) -> None:
        index = make_index(_kafka_and_hiking())

        result = await LayeredRetriever(store).retrieve(index, "kafka consumer", LayeredContextConfig())

        assert result.decision.reached_layer is Layer.L0
        assert result.decision.reason == REASON_L0
        assert result.decision.top1_score == 1.0
        assert [s.node_id for s in result.selections] == ["kafka", "hiking"]
        assert all(s.layer is Layer.L0 for s in result.selections)
        usage = result.token_usage
        assert (usage.l0, usage.total, usage.baseline_l2) == (22, 22, 700)
        assert usage.savings == 678
        assert usage.savings_ratio == pytest.approx(678 / 700)

    @pytest.mark.asyncio
    async def test_root_abstract_leads_selection(self, store: FileSystemArchiveStore) -> None:
        index = make_index(_kafka_and_hiking(), root_abstract="Session about kafka")

        result = await LayeredRetriever(store).retrieve(index, "kafka consumer", LayeredContextConfig())

        root = result.selections[0]
        assert root.node_id == ROOT_NODE_ID
        assert root.estimated_tokens == estimate_text_tokens("Session about kafka")
        assert result.token_usage.l0 == 22 + root.estimated_tokens

    @pytest.mark.asyncio
    async def test_structured_query_escalates_to_l1(self, store: FileSystemArchiveStore) -> None:
        index = make_index(_kafka_and_hiking())

        result = await LayeredRetriever(store).retrieve(
            index, "kafka consumer overview", LayeredContextConfig()
        )

        assert result.decision.reached_layer is Layer.L1
        assert result.decision.reason == REASON_L1
        assert result.decision.query_mode is QueryMode.STRUCTURED
        assert [s.node_id for s in result.selections] == ["kafka", "hiking"]
        assert result.selections[0].content.startswith("overview of kafka")
        assert result.token_usage.l1 == 110

    @pytest.mark.asyncio
    async def test_precise_query_reaches_l2(self, store: FileSystemArchiveStore) -> None:
        nodes = _kafka_and_hiking()
        nodes[0].full_content_path = store.write_archive(
            "telegram:42",
            "kafka",
            ArchivePayload("telegram:42", "kafka", "USER: kafka consumer error at offset 17", [], 1),
        )
        # The hiking archive was never written and is skipped.
        nodes[1].full_content_path = str(store.archive_path("telegram:42", "hiking"))

        result = await LayeredRetriever(store).retrieve(
            make_index(nodes), "kafka consumer error", LayeredContextConfig()
        )

        assert result.decision.reached_layer is Layer.L2
        assert result.decision.reason == REASON_L2
        assert result.decision.query_mode is QueryMode.PRECISE
        layers = [(s.node_id, s.layer) for s in result.selections]
        assert layers == [("kafka", Layer.L1), ("hiking", Layer.L1), ("kafka", Layer.L2)]
        assert result.selections[-1].content == "USER: kafka consumer error at offset 17"
        assert result.token_usage.l2 == 400

    @pytest.mark.asyncio
    async def test_budget_walk_stops_at_first_overflow(self, store: FileSystemArchiveStore) -> None:
        config = LayeredContextConfig(max_prompt_tokens=15)

        result = await LayeredRetriever(store).retrieve(make_index(_kafka_and_hiking()), "kafka consumer", config)

        assert [s.node_id for s in result.selections] == ["kafka"]
        assert result.token_usage.total == 10

    @pytest.mark.asyncio
    async def test_dense_scores_reorder_candidates(self, store: FileSystemArchiveStore) -> None:
        dense = StaticDenseProvider({"kafka": 0.0, "hiking": 1.0})
        retriever = LayeredRetriever(store, dense=dense, dense_weight=0.9)

        result = await retriever.retrieve(make_index(_kafka_and_hiking()), "kafka consumer", LayeredContextConfig())

        assert set(dense.seen) == {"kafka", "hiking"}
        assert result.selections[0].node_id == "hiking"
        assert result.decision.top1_score == pytest.approx(0.9)

    @pytest.mark.asyncio
    async def test_unavailable_dense_scores_keep_sparse_order(self, store: FileSystemArchiveStore) -> None:
        retriever = LayeredRetriever(store, dense=StaticDenseProvider({}), dense_weight=0.9)

        result = await retriever.retrieve(make_index(_kafka_and_hiking()), "kafka consumer", LayeredContextConfig())

        assert result.selections[0].node_id == "kafka"
        assert result.decision.top1_score == 1.0

    @pytest.mark.asyncio
    async def test_shared_term_does_not_dilute_a_clear_l0_match(self, store: FileSystemArchiveStore) -> None:
        nodes = [
            make_node("staging", "deploy staging notes"),
            make_node("budget", "deploy budget"),
            make_node("hiking", "deploy hiking"),
        ]

        result = await LayeredRetriever(store).retrieve(
            make_index(nodes), "deploy staging rollback", LayeredContextConfig()
        )

        assert result.decision.reached_layer is Layer.L0
        assert result.decision.reason == REASON_L0
        assert result.decision.top1_score == pytest.approx(2 / 3)
        assert result.decision.top1_top2_margin == pytest.approx(1 / 3)
        assert [s.node_id for s in result.selections] == ["staging", "budget", "hiking"]


class TestBudgetWalk:
    @pytest.mark.asyncio
    async def test_l1_walk_stops_at_first_rejection(self, store: FileSystemArchiveStore) -> None:
        # "misc" would still fit after "hiking" is rejected but is never tried.
        nodes = [*_kafka_and_hiking(), make_node("misc", "misc notes", tokens=(5, 5, 5))]
        config = LayeredContextConfig(max_prompt_tokens=100)

        result = await LayeredRetriever(store).retrieve(make_index(nodes), "kafka consumer overview", config)

        assert result.decision.reached_layer is Layer.L1
        assert [(s.node_id, s.layer) for s in result.selections] == [("kafka", Layer.L1)]
        assert result.token_usage.l1 == 50
        assert result.token_usage.total == 50

    @pytest.mark.asyncio
    async def test_l2_walk_stops_at_first_rejected_transcript(self, store: FileSystemArchiveStore) -> None:
        nodes = _kafka_and_hiking()
        nodes[1].token_estimate = TokenEstimate(12, 60, 5)
        for node in nodes:
            node.full_content_path = store.write_archive(
                "telegram:42",
                node.id,
                ArchivePayload("telegram:42", node.id, f"USER: {node.abstract}", [], 1),
            )
        config = LayeredContextConfig(max_prompt_tokens=150)

        result = await LayeredRetriever(store).retrieve(make_index(nodes), "kafka consumer error", config)

        # Both L1 carries fit (110); the kafka transcript (400) does not, and
        # the small hiking transcript behind it is not considered.
        assert result.decision.reached_layer is Layer.L2
        assert [(s.node_id, s.layer) for s in result.selections] == [
            ("kafka", Layer.L1),
            ("hiking", Layer.L1),
        ]
        assert result.token_usage.l2 == 0
        assert result.token_usage.total == 110

    @pytest.mark.asyncio
    async def test_oversized_root_abstract_is_skipped(self, store: FileSystemArchiveStore) -> None:
        index = make_index(_kafka_and_hiking(), root_abstract="Session about kafka")
        retriever = LayeredRetriever(store, estimate=lambda text: 1000)

        result = await retriever.retrieve(index, "kafka consumer", LayeredContextConfig(max_prompt_tokens=25))

        assert [s.node_id for s in result.selections] == ["kafka", "hiking"]
        assert result.token_usage.total == 22

    @pytest.mark.asyncio
    async def test_savings_ratio_is_clamped_when_selection_exceeds_baseline(
        self, store: FileSystemArchiveStore
    ) -> None:
        index = make_index([make_node("kafka", "kafka consumer lag", tokens=(50, 50, 10))])

        result = await LayeredRetriever(store).retrieve(index, "kafka consumer lag", LayeredContextConfig())

        assert result.token_usage.savings == -40
        assert result.token_usage.savings_ratio == 0.0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("budget", [0, 9, 15, 60, 115, 500, 32000])
    @pytest.mark.parametrize("query", ["kafka consumer", "kafka consumer overview", "kafka consumer error"])
    async def test_selection_never_exceeds_budget(
        self, store: FileSystemArchiveStore, budget: int, query: str
    ) -> None:
        nodes = _kafka_and_hiking()
        for node in nodes:
            node.full_content_path = store.write_archive(
                "telegram:42",
                node.id,
                ArchivePayload("telegram:42", node.id, f"USER: {node.overview}", [], 1),
            )
        index = make_index(nodes, root_abstract="Session about kafka and hiking")

        result = await LayeredRetriever(store).retrieve(index, query, LayeredContextConfig(max_prompt_tokens=budget))

        spent = sum(s.estimated_tokens for s in result.selections)
        assert spent == result.token_usage.total
        assert spent <= budget
        assert 0.0 <= result.token_usage.savings_ratio <= 1.0
