"""Token savings of layered context on long prompts.

A lighter companion to the full evaluation run: no evidence scoring or
budget trimming, just how many prompt tokens the layered rewrite saves and
how much of each retrieval budget the revealed layers used.
"""

from __future__ import annotations

import logging
import tempfile
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from typing import Any

from stratum.config import StratumConfig
from stratum.context.llm import ChatModel
from stratum.context.manager import create_layered_context_manager
from stratum.context.messages import ensure_trailing_user_query
from stratum.context.tokens import estimate_messages_tokens
from stratum.eval.types import EvalCase

logger = logging.getLogger(__name__)

MAX_SAMPLES = 20
SAVINGS_DEFAULTS = {
    "max_recent_messages": 2,
    "archive_chunk_size": 2,
    "max_archives": 12,
    "max_prompt_tokens": 32000,
}


def _ratio(saved: int, before: int) -> float:
    return saved / before if before > 0 else 0.0


def _pct(value: float) -> float:
    return round(value * 100, 2)


@dataclass(frozen=True, slots=True)
class CaseSavings:
    case_id: str
    prompt_before: int
    prompt_after: int
    retrieval_tokens: int
    baseline_l2: int
    reached_layer: str

    @property
    def saved(self) -> int:
        return self.prompt_before - self.prompt_after

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.case_id,
            "promptBefore": self.prompt_before,
            "promptAfter": self.prompt_after,
            "promptSavingsPct": _pct(_ratio(self.saved, self.prompt_before)),
            "retrievalTokens": self.retrieval_tokens,
            "baselineL2": self.baseline_l2,
            "reachedLayer": self.reached_layer,
        }


@dataclass(slots=True)
class SavingsReport:
    case_count: int = 0
    applied: list[CaseSavings] = field(default_factory=list)

    @property
    def prompt_before(self) -> int:
        return sum(c.prompt_before for c in self.applied)

    @property
    def prompt_after(self) -> int:
        return sum(c.prompt_after for c in self.applied)

    @property
    def prompt_savings_ratio(self) -> float:
        return _ratio(self.prompt_before - self.prompt_after, self.prompt_before)

    @property
    def retrieval_savings_ratio(self) -> float:
        baseline = sum(c.baseline_l2 for c in self.applied)
        return _ratio(baseline - sum(c.retrieval_tokens for c in self.applied), baseline)

    @property
    def layer_counts(self) -> dict[str, int]:
        counts = Counter(c.reached_layer for c in self.applied)
        return dict(sorted(counts.items()))

    def to_dict(self) -> dict[str, Any]:
        baseline = sum(c.baseline_l2 for c in self.applied)
        actual = sum(c.retrieval_tokens for c in self.applied)
        return {
            "caseCount": self.case_count,
            "appliedCount": len(self.applied),
            "skippedCount": self.case_count - len(self.applied),
            "prompt": {
                "before": self.prompt_before,
                "after": self.prompt_after,
                "saved": self.prompt_before - self.prompt_after,
                "savingsPct": _pct(self.prompt_savings_ratio),
            },
            "retrieval": {
                "baselineL2": baseline,
                "actual": actual,
                "saved": baseline - actual,
                "savingsPct": _pct(self.retrieval_savings_ratio),
            },
            "layerCounts": self.layer_counts,
            "samples": [c.to_dict() for c in self.applied[:MAX_SAMPLES]],
        }


def savings_session_key(case: EvalCase) -> str:
    return f"{case.platform}:{case.chat_id or 'default'}:{case.id}"


async def measure_token_savings(
    cases: Sequence[EvalCase],
    config: StratumConfig,
    *,
    limit: int | None = None,
    model: ChatModel | None = None,
) -> SavingsReport:
    """Apply layered context to each case and total the tokens it saves.

    Cases the manager leaves untouched (history too short to archive) count
    toward ``case_count`` but not toward the totals.
    """
    selected = list(cases[:limit]) if limit else list(cases)
    layered = replace(config.layered, enable_session_compression=True).clamped()
    run_config = replace(config, layered=layered)
    report = SavingsReport(case_count=len(selected))

    with tempfile.TemporaryDirectory(prefix="stratum-savings-") as storage:
        async with create_layered_context_manager(run_config, base_path=storage, model=model) as manager:
            for case in selected:
                messages = ensure_trailing_user_query([dict(m) for m in case.messages], case.query)
                before = estimate_messages_tokens(messages)
                result = await manager.apply(
                    savings_session_key(case),
                    messages,
                    query=case.query,
                    platform=case.platform,
                    chat_id=case.chat_id,
                )
                if not result.applied or result.retrieval is None:
                    logger.debug("Skipped %s: layered context not applied", case.id)
                    continue
                usage = result.retrieval.token_usage
                report.applied.append(CaseSavings(
                    case_id=case.id,
                    prompt_before=before,
                    prompt_after=estimate_messages_tokens(result.messages),
                    retrieval_tokens=usage.total,
                    baseline_l2=usage.baseline_l2,
                    reached_layer=result.retrieval.decision.reached_layer.value,
                ))

    logger.info(
        "Measured token savings on %d of %d cases: %.2f%%",
        len(report.applied), report.case_count, report.prompt_savings_ratio * 100,
    )
    return report
