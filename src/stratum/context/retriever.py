"""Retrieval escalation engine.

Decides how much archived history a query needs. Every node is scored on
its L0 fingerprint first; the engine only escalates to L1 overviews, and
then to full L2 transcripts, when the cheaper tier is not confident enough
or the query asks for precise detail. Selection is a greedy walk under the
prompt token budget that stops at the first candidate that does not fit.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from stratum.config import LayeredContextConfig
from stratum.context.dense import DenseCandidate, DenseScoreProvider
from stratum.context.storage import ArchiveStore
from stratum.context.text import blend_scores, estimate_similarity
from stratum.context.tokens import estimate_text_tokens
from stratum.context.types import (
    ROOT_NODE_ID,
    ContextNode,
    EscalationDecision,
    IndexDocument,
    Layer,
    QueryMode,
    RetrievalResult,
    Selection,
    TokenUsage,
)

logger = logging.getLogger(__name__)

PRECISE_SIGNALS: tuple[str, ...] = (
    "exact", "line", "stack", "error", "exception", "snippet", "parameter",
    "argument", "function", "class", "api", "status code", "trace", "`",
    ".ts", ".js", ".json", "/",
)
STRUCTURED_SIGNALS: tuple[str, ...] = (
    "overview", "summary", "architecture", "flow", "design", "scope", "roadmap",
)

# Calibrated against the evaluation harness; keep in sync with its baselines.
L1_SCORE_FACTOR = 0.9
L1_MARGIN_FACTOR = 0.5
L0_SELECTION_LIMIT = 3

REASON_NO_NODES = "no archived nodes"
REASON_L0 = "High confidence on L0 retrieval."
REASON_L1 = "L0 confidence is insufficient; L1 confidence is acceptable."
REASON_L2 = "Precise query or low confidence after L1; L2 escalation required."


def classify_query(query: str) -> QueryMode:
    """Classify by keyword membership; precise signals win over structured ones."""
    normalized = query.lower()
    if any(signal in normalized for signal in PRECISE_SIGNALS):
        return QueryMode.PRECISE
    if any(signal in normalized for signal in STRUCTURED_SIGNALS):
        return QueryMode.STRUCTURED
    return QueryMode.BROAD


def _l0_text(node: ContextNode) -> str:
    return f"{node.abstract}\n{' '.join(node.keywords)}"


def _l1_text(node: ContextNode) -> str:
    return f"{node.overview}\n{' '.join(node.keywords)}"


@dataclass(slots=True)
class _Scored:
    node: ContextNode
    l0: float
    l1: float = 0.0

    @property
    def rank(self) -> float:
        return self.l1 or self.l0


def _top_margin(scores: Sequence[float]) -> tuple[float, float]:
    top1 = scores[0] if scores else 0.0
    top2 = scores[1] if len(scores) > 1 else 0.0
    return top1, top1 - top2


@dataclass
class _BudgetWalk:
    """Append-only selection list that never exceeds the token budget."""

    budget: int
    used: int = 0
    selections: list[Selection] = field(default_factory=list)

    def push(
        self,
        node_id: str,
        layer: Layer,
        content: str,
        score: float,
        tokens: int,
        reason: str,
    ) -> bool:
        tokens = max(0, int(tokens))
        if self.used + tokens > self.budget:
            return False
        self.used += tokens
        self.selections.append(Selection(node_id, layer, content, score, tokens, reason))
        return True

    def layer_tokens(self, layer: Layer) -> int:
        return sum(s.estimated_tokens for s in self.selections if s.layer == layer)


class LayeredRetriever:
    """Scores an index against a query and assembles a budgeted selection.

    Usage:
        retriever = LayeredRetriever(store)
        result = await retriever.retrieve(index, "what did we decide?", config)
    """

    def __init__(
        self,
        store: ArchiveStore,
        dense: DenseScoreProvider | None = None,
        dense_weight: float = 0.4,
        estimate: Callable[[str], int] = estimate_text_tokens,
    ) -> None:
        self._store = store
        self._dense = dense
        self._dense_weight = dense_weight
        self._estimate = estimate

    async def aclose(self) -> None:
        """Close the dense provider's client, if it holds one."""
        close = getattr(self._dense, "aclose", None)
        if close is not None:
            await close()

    async def _score_l0(self, index: IndexDocument, query: str) -> list[_Scored]:
        scored = [_Scored(node, estimate_similarity(query, _l0_text(node))) for node in index.nodes]
        scored.sort(key=lambda s: s.l0, reverse=True)

        if self._dense is not None:
            dense = await self._dense.get_dense_scores(
                query, [DenseCandidate(s.node.id, _l0_text(s.node)) for s in scored]
            )
            if dense:
                for item in scored:
                    item.l0 = blend_scores(item.l0, dense.get(item.node.id), self._dense_weight)
                scored.sort(key=lambda s: s.l0, reverse=True)
            else:
                logger.debug("Dense scores unavailable; using sparse scores only")
        return scored

    @staticmethod
    def _score_l1(query: str, candidates: list[_Scored]) -> tuple[float, float]:
        for candidate in candidates:
            candidate.l1 = estimate_similarity(query, _l1_text(candidate.node))
        return _top_margin(sorted((c.l1 for c in candidates), reverse=True))

    async def retrieve(
        self,
        index: IndexDocument,
        query: str,
        config: LayeredContextConfig,
    ) -> RetrievalResult:
        baseline_l2 = sum(node.token_estimate.l2 for node in index.nodes)
        if not index.nodes:
            return RetrievalResult(
                selections=(),
                decision=EscalationDecision(Layer.L0, REASON_NO_NODES, 0.0, 0.0, QueryMode.BROAD),
                token_usage=TokenUsage(
                    baseline_l2=baseline_l2,
                    savings=baseline_l2,
                    savings_ratio=1.0 if baseline_l2 > 0 else 0.0,
                ),
            )

        query_mode = classify_query(query)
        scored = await self._score_l0(index, query)
        top1, margin = _top_margin([s.l0 for s in scored])
        high_confidence = (
            top1 >= config.score_threshold_high and margin >= config.top1_top2_margin
        )

        reached, reason = Layer.L0, REASON_L0
        if not high_confidence or query_mode is not QueryMode.BROAD:
            l1_top1, l1_margin = self._score_l1(query, scored[: config.max_items_for_l1])
            l1_confident = (
                l1_top1 >= config.score_threshold_high * L1_SCORE_FACTOR
                and l1_margin >= config.top1_top2_margin * L1_MARGIN_FACTOR
            )
            if query_mode is not QueryMode.PRECISE and l1_confident:
                reached, reason = Layer.L1, REASON_L1
            else:
                reached, reason = Layer.L2, REASON_L2
            scored.sort(key=lambda s: s.rank, reverse=True)

        walk = _BudgetWalk(budget=config.max_prompt_tokens)
        if index.root.abstract:
            walk.push(
                ROOT_NODE_ID,
                Layer.L0,
                index.root.abstract,
                top1,
                self._estimate(index.root.abstract),
                "Global context summary for navigation.",
            )

        if reached is Layer.L0:
            for item in scored[:L0_SELECTION_LIMIT]:
                node = item.node
                if not walk.push(node.id, Layer.L0, node.abstract, item.l0,
                                 node.token_estimate.l0, "High L0 match."):
                    break
        elif reached is Layer.L1:
            for item in scored[: config.max_items_for_l1]:
                node = item.node
                if not walk.push(node.id, Layer.L1, node.overview, item.rank,
                                 node.token_estimate.l1, "L1 contextual understanding required."):
                    break
        else:
            await self._select_l2(query, scored, config, walk)

        l0 = walk.layer_tokens(Layer.L0)
        l1 = walk.layer_tokens(Layer.L1)
        l2 = walk.layer_tokens(Layer.L2)
        total = l0 + l1 + l2
        savings = baseline_l2 - total
        ratio = min(1.0, max(0.0, savings / baseline_l2)) if baseline_l2 > 0 else 0.0

        return RetrievalResult(
            selections=tuple(walk.selections),
            decision=EscalationDecision(reached, reason, top1, margin, query_mode),
            token_usage=TokenUsage(
                l0=l0,
                l1=l1,
                l2=l2,
                total=total,
                baseline_l2=baseline_l2,
                savings=savings,
                savings_ratio=ratio,
            ),
        )

    async def _select_l2(
        self,
        query: str,
        scored: list[_Scored],
        config: LayeredContextConfig,
        walk: _BudgetWalk,
    ) -> None:
        carry = max(1, config.max_items_for_l1 - config.max_items_for_l2)
        for item in scored[:carry]:
            node = item.node
            if not walk.push(node.id, Layer.L1, node.overview, item.rank,
                             node.token_estimate.l1, "Carry L1 scope context before L2 evidence."):
                break

        for item in scored[: config.max_items_for_l2]:
            node = item.node
            archive = self._store.read_archive(node.full_content_path)
            if archive is None:
                logger.debug("Archive missing for node %s; skipping", node.id)
                continue
            score = estimate_similarity(query, archive.transcript)
            if not walk.push(node.id, Layer.L2, archive.transcript, score,
                             node.token_estimate.l2, "L2 exact evidence retrieval."):
                break
