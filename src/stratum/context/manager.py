"""Applies the layered context package to a live conversation.

Older history is archived into the session index and replaced by a single
synthetic message holding the retrieved L0/L1/L2 selections; the most
recent messages stay verbatim.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path

from stratum.config import LayeredContextConfig, StratumConfig
from stratum.context.dense import HttpEmbeddingScoreProvider
from stratum.context.indexer import ArchiveIndexer, IndexBuildResult
from stratum.context.llm import ChatModel
from stratum.context.messages import latest_user_query
from stratum.context.metrics import LayeredContextMetrics, MetricsSnapshot
from stratum.context.retriever import LayeredRetriever
from stratum.context.storage import ArchiveStore, FileSystemArchiveStore
from stratum.context.summarizer import ArchiveSummarizer
from stratum.context.tokens import estimate_message_tokens
from stratum.context.types import Layer, Message, RetrievalResult
from stratum.core.errors import StratumError

logger = logging.getLogger(__name__)

PACKAGE_HEADER = "Layered context package (L0/L1/L2) generated from archived history."


@dataclass(slots=True)
class ApplyResult:
    applied: bool
    messages: list[Message]
    retrieval: RetrievalResult | None = None
    fallback_events: list[str] = field(default_factory=list)
    archived_message_count: int = 0


def build_prompt_block(retrieval: RetrievalResult) -> str:
    """Render a retrieval result as the text of the synthetic context message."""
    decision = retrieval.decision
    usage = retrieval.token_usage
    lines = [
        PACKAGE_HEADER,
        f"Escalation decision: {decision.reached_layer.value} ({decision.reason})",
        "",
    ]
    for layer in Layer:
        items = [s for s in retrieval.selections if s.layer is layer]
        if not items:
            continue
        lines.append(f"{layer.value} context:")
        for item in items:
            lines.append(f"- node={item.node_id}, score={item.score:.3f}, tokens={item.estimated_tokens}")
            lines.append(item.content)
        lines.append("")
    lines.append(
        f"Layer token usage: L0={usage.l0}, L1={usage.l1}, L2={usage.l2}, total={usage.total}"
    )
    lines.append(
        f"Baseline L2={usage.baseline_l2}, savings={usage.savings} "
        f"({usage.savings_ratio * 100:.1f}%)"
    )
    return "\n".join(lines)


class LayeredContextManager:
    """Coordinates indexing and retrieval for many sessions.

    Index rebuilds for one session are serialized; a warm session is
    answered from its current index while the rebuild runs in the
    background. A session lock lives only while a build holds or waits
    for it.

    Usage:
        async with LayeredContextManager(store, indexer, retriever, config) as manager:
            result = await manager.apply("telegram:42", messages)
    """

    def __init__(
        self,
        store: ArchiveStore,
        indexer: ArchiveIndexer,
        retriever: LayeredRetriever,
        config: LayeredContextConfig,
    ) -> None:
        self._store = store
        self._indexer = indexer
        self._retriever = retriever
        self._config = config
        self._metrics = LayeredContextMetrics()
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._background: set[asyncio.Task[IndexBuildResult | None]] = set()

    @property
    def config(self) -> LayeredContextConfig:
        return self._config

    def metrics_snapshot(self) -> MetricsSnapshot:
        return self._metrics.snapshot()

    async def _build_index(
        self,
        session_key: str,
        archived: list[Message],
        platform: str,
        chat_id: str | None,
    ) -> IndexBuildResult | None:
        lock = self._locks.setdefault(session_key, asyncio.Lock())
        self._lock_users[session_key] = self._lock_users.get(session_key, 0) + 1
        try:
            async with lock:
                result = await self._indexer.build(
                    session_key, archived, self._config, platform=platform, chat_id=chat_id
                )
        except StratumError as e:
            logger.warning("Index build failed for %s: %s", session_key, e)
            return None
        finally:
            self._release_lock(session_key)
        if result.fallback_events:
            self._metrics.record_fallback(len(result.fallback_events))
        return result

    def _release_lock(self, session_key: str) -> None:
        users = self._lock_users[session_key] - 1
        if users:
            self._lock_users[session_key] = users
        else:
            del self._lock_users[session_key]
            del self._locks[session_key]

    @property
    def active_sessions(self) -> int:
        """Sessions with an index build running or queued."""
        return len(self._locks)

    def _on_background_done(self, task: asyncio.Task[IndexBuildResult | None]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Background indexing failed: %s", exc)
            return
        result = task.result()
        if result is not None and result.fallback_events:
            logger.warning(
                "Summary fallback events in background indexing: %s",
                ", ".join(result.fallback_events),
            )

    async def wait_for_background(self) -> None:
        """Wait until every scheduled index rebuild has finished."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    async def aclose(self) -> None:
        """Finish background rebuilds and release the retriever's clients."""
        await self.wait_for_background()
        await self._retriever.aclose()

    async def __aenter__(self) -> LayeredContextManager:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    async def apply(
        self,
        session_key: str,
        messages: list[Message],
        query: str | None = None,
        platform: str = "unknown",
        chat_id: str | None = None,
    ) -> ApplyResult:
        config = self._config
        if not config.enable_session_compression or len(messages) <= config.max_recent_messages + 1:
            return ApplyResult(applied=False, messages=list(messages))

        current = messages[-1]
        history = messages[:-1]
        archived = history[: -config.max_recent_messages]
        recent = history[-config.max_recent_messages:]
        query = query if query is not None else latest_user_query(messages)

        events: list[str] = []
        index = self._store.load_index(session_key)
        if index is None or not index.nodes:
            built = await self._build_index(session_key, archived, platform, chat_id)
            if built is not None:
                index = built.index
                events.extend(built.fallback_events)
        else:
            task = asyncio.create_task(self._build_index(session_key, archived, platform, chat_id))
            self._background.add(task)
            task.add_done_callback(self._on_background_done)

        if index is None or not index.nodes:
            return ApplyResult(
                applied=False,
                messages=list(messages),
                fallback_events=events,
                archived_message_count=len(archived),
            )

        retrieval = await self._retriever.retrieve(index, query, config)
        self._metrics.record_retrieval(retrieval)

        first_role = recent[0].get("role") if recent else None
        synthetic_role = "user" if first_role == "assistant" else "assistant"
        updated: list[Message] = [
            {"role": synthetic_role, "content": build_prompt_block(retrieval)},
            *recent,
            current,
        ]

        # Oldest recent messages go first; the package and current turn stay.
        while (
            len(updated) > 2
            and sum(estimate_message_tokens(m) for m in updated) > config.max_prompt_tokens
        ):
            del updated[1]

        return ApplyResult(
            applied=True,
            messages=updated,
            retrieval=retrieval,
            fallback_events=events,
            archived_message_count=len(archived),
        )


def create_layered_context_manager(
    config: StratumConfig,
    base_path: str | Path | None = None,
    model: ChatModel | None = None,
) -> LayeredContextManager:
    """Wire the default file-backed manager from a loaded configuration."""
    store = FileSystemArchiveStore(base_path if base_path is not None else config.storage_dir)
    dense = None
    if config.dense.enabled:
        dense = HttpEmbeddingScoreProvider.from_env(
            config.dense.api_key_env,
            base_url=config.dense.base_url,
            model=config.dense.model,
            timeout=config.dense.timeout,
            max_candidates=config.dense.max_candidates,
            metric=config.dense.metric,
        )
    retriever = LayeredRetriever(store, dense=dense, dense_weight=config.dense.weight)
    indexer = ArchiveIndexer(store, ArchiveSummarizer(model, max_tokens=config.summarizer.max_tokens))
    return LayeredContextManager(store, indexer, retriever, config.layered)
