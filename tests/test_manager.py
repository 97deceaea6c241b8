"""Tests for applying layered context to a live conversation."""

import asyncio
from collections.abc import Sequence
from pathlib import Path

import pytest
from conftest import FakeChatModel, make_conversation

from stratum.config import LayeredContextConfig, StratumConfig, SummarizerConfig
from stratum.context.dense import DenseCandidate
from stratum.context.indexer import ArchiveIndexer, IndexBuildResult
from stratum.context.manager import (
    PACKAGE_HEADER,
    LayeredContextManager,
    build_prompt_block,
    create_layered_context_manager,
)
from stratum.context.retriever import LayeredRetriever
from stratum.context.storage import FileSystemArchiveStore
from stratum.context.summarizer import ArchiveSummarizer
from stratum.context.types import (
    EscalationDecision,
    IndexDocument,
    Layer,
    QueryMode,
    RetrievalResult,
    Selection,
    TokenUsage,
)
from stratum.core.errors import ErrorCode, StratumError

SESSION = "telegram:42"


class BrokenStore(FileSystemArchiveStore):
    def save_index(self, doc: IndexDocument) -> None:
        raise StratumError(ErrorCode.STORAGE_WRITE_FAILED, context={"path": "index.json", "detail": "disk full"})


class TrackingIndexer(ArchiveIndexer):
    """Records how many builds run at once."""

    def __init__(self, store: FileSystemArchiveStore) -> None:
        super().__init__(store, ArchiveSummarizer())
        self.running = 0
        self.peak = 0

    async def build(self, *args, **kwargs) -> IndexBuildResult:
        self.running += 1
        self.peak = max(self.peak, self.running)
        try:
            await asyncio.sleep(0)
            return await super().build(*args, **kwargs)
        finally:
            self.running -= 1


class ClosingDense:
    def __init__(self) -> None:
        self.closed = False

    async def get_dense_scores(self, query: str, candidates: Sequence[DenseCandidate]) -> dict[str, float]:
        return {}

    async def aclose(self) -> None:
        self.closed = True


def _manager(store: FileSystemArchiveStore, **overrides) -> LayeredContextManager:
    config = LayeredContextConfig(**{"max_recent_messages": 4, "archive_chunk_size": 4, **overrides})
    return LayeredContextManager(
        store,
        ArchiveIndexer(store, ArchiveSummarizer()),
        LayeredRetriever(store),
        config,
    )


class TestApply:
    @pytest.mark.asyncio
    async def test_short_history_is_untouched(self, store: FileSystemArchiveStore) -> None:
        messages = make_conversation(5)

        result = await _manager(store).apply(SESSION, messages)

        assert not result.applied
        assert result.messages == messages
        assert result.retrieval is None

    @pytest.mark.asyncio
    async def test_disabled_compression(self, store: FileSystemArchiveStore) -> None:
        result = await _manager(store, enable_session_compression=False).apply(SESSION, make_conversation(21))
        assert not result.applied

    @pytest.mark.asyncio
    async def test_cold_start_builds_index_and_injects_package(self, store: FileSystemArchiveStore) -> None:
        messages = make_conversation(21)
        manager = _manager(store)

        result = await manager.apply(SESSION, messages, platform="telegram", chat_id="42")

        assert result.applied
        assert result.archived_message_count == 16
        assert len(result.messages) == 6
        # The first recent message is a user turn, so the package is an assistant turn.
        assert result.messages[0]["role"] == "assistant"
        assert result.messages[0]["content"].startswith(PACKAGE_HEADER)
        assert result.messages[1:] == messages[16:]
        assert result.retrieval is not None
        assert store.load_index(SESSION) is not None
        assert manager.metrics_snapshot().total_runs == 1

    @pytest.mark.asyncio
    async def test_warm_session_refreshes_in_background(self, store: FileSystemArchiveStore) -> None:
        manager = _manager(store)
        await manager.apply(SESSION, make_conversation(21))

        result = await manager.apply(SESSION, make_conversation(25))
        await manager.wait_for_background()

        assert result.applied
        assert result.archived_message_count == 20
        index = store.load_index(SESSION)
        assert index is not None
        assert max(n.metadata.message_end for n in index.nodes) == 19
        assert manager.metrics_snapshot().total_runs == 2

    @pytest.mark.asyncio
    async def test_index_failure_leaves_messages_untouched(self, tmp_path: Path) -> None:
        messages = make_conversation(21)

        result = await _manager(BrokenStore(tmp_path)).apply(SESSION, messages)

        assert not result.applied
        assert result.messages == messages
        assert result.archived_message_count == 16

    @pytest.mark.asyncio
    async def test_recent_messages_are_dropped_to_fit_budget(self, store: FileSystemArchiveStore) -> None:
        messages = make_conversation(21)

        result = await _manager(store, max_prompt_tokens=50).apply(SESSION, messages)

        assert result.applied
        assert len(result.messages) == 2
        assert result.messages[0]["content"].startswith(PACKAGE_HEADER)
        assert result.messages[-1] == messages[-1]

    @pytest.mark.asyncio
    async def test_tool_results_with_bare_items(self, store: FileSystemArchiveStore) -> None:
        messages = make_conversation(21)
        for i in (2, 18):
            messages[i] = {
                "role": "user",
                "content": [{"type": "tool_result", "tool_use_id": f"t{i}", "content": ["exit code 1", 404]}],
            }

        result = await _manager(store).apply(SESSION, messages)

        assert result.applied
        assert result.messages[1:] == messages[16:]

    @pytest.mark.asyncio
    async def test_explicit_query_overrides_latest_user_message(self, store: FileSystemArchiveStore) -> None:
        result = await _manager(store).apply(SESSION, make_conversation(21), query="show the exact error")

        assert result.retrieval is not None
        assert result.retrieval.decision.query_mode is QueryMode.PRECISE


class TestPromptBlock:
    def test_groups_selections_by_layer(self) -> None:
        retrieval = RetrievalResult(
            selections=(
                Selection("n1", Layer.L1, "overview text", 0.5, 40, "scope"),
                Selection("root", Layer.L0, "root abstract", 0.9, 12, "nav"),
            ),
            decision=EscalationDecision(Layer.L1, "why", 0.9, 0.1, QueryMode.STRUCTURED),
            token_usage=TokenUsage(l0=12, l1=40, total=52, baseline_l2=200, savings=148, savings_ratio=0.74),
        )

        block = build_prompt_block(retrieval)

        lines = block.split("\n")
        assert lines[0] == PACKAGE_HEADER
        assert lines[1] == "Escalation decision: L1 (why)"
        assert lines.index("L0 context:") < lines.index("L1 context:")
        assert "- node=n1, score=0.500, tokens=40" in lines
        assert "L2 context:" not in lines
        assert lines[-2] == "Layer token usage: L0=12, L1=40, L2=0, total=52"
        assert lines[-1] == "Baseline L2=200, savings=148 (74.0%)"


class TestFactory:
    @pytest.mark.asyncio
    async def test_default_wiring(self, tmp_path: Path) -> None:
        manager = create_layered_context_manager(StratumConfig(), base_path=tmp_path)

        assert manager.config == StratumConfig().layered
        result = await manager.apply(SESSION, make_conversation(3))
        assert not result.applied

    @pytest.mark.asyncio
    async def test_summarizer_token_limit_comes_from_config(self, tmp_path: Path) -> None:
        model = FakeChatModel("kafka consumer rebalancing")
        config = StratumConfig(
            layered=LayeredContextConfig(max_recent_messages=4, archive_chunk_size=4),
            summarizer=SummarizerConfig(max_tokens=512),
        )

        async with create_layered_context_manager(config, base_path=tmp_path, model=model) as manager:
            result = await manager.apply(SESSION, make_conversation(21))

        assert result.applied
        assert model.calls
        assert {max_tokens for _, _, max_tokens in model.calls} == {512}


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_concurrent_builds_are_serialized_and_locks_released(
        self, store: FileSystemArchiveStore
    ) -> None:
        indexer = TrackingIndexer(store)
        config = LayeredContextConfig(max_recent_messages=4, archive_chunk_size=4)
        manager = LayeredContextManager(store, indexer, LayeredRetriever(store), config)

        results = await asyncio.gather(
            manager.apply(SESSION, make_conversation(21)),
            manager.apply(SESSION, make_conversation(21)),
            manager.apply("telegram:7", make_conversation(21)),
        )

        assert all(r.applied for r in results)
        assert indexer.peak == 2  # one per session
        assert manager.active_sessions == 0

    @pytest.mark.asyncio
    async def test_background_lock_is_released(self, store: FileSystemArchiveStore) -> None:
        manager = _manager(store)
        await manager.apply(SESSION, make_conversation(21))
        await manager.apply(SESSION, make_conversation(25))

        await manager.wait_for_background()

        assert manager.active_sessions == 0

    @pytest.mark.asyncio
    async def test_close_waits_for_rebuilds_and_closes_dense_client(self, store: FileSystemArchiveStore) -> None:
        dense = ClosingDense()
        config = LayeredContextConfig(max_recent_messages=4, archive_chunk_size=4)
        manager = LayeredContextManager(
            store, ArchiveIndexer(store, ArchiveSummarizer()), LayeredRetriever(store, dense=dense), config
        )

        async with manager:
            await manager.apply(SESSION, make_conversation(21))
            await manager.apply(SESSION, make_conversation(25))

        assert dense.closed
        index = store.load_index(SESSION)
        assert index is not None
        assert max(n.metadata.message_end for n in index.nodes) == 19

    @pytest.mark.asyncio
    async def test_close_without_dense_provider(self, store: FileSystemArchiveStore) -> None:
        manager = _manager(store)

        await manager.aclose()

        assert manager.active_sessions == 0
