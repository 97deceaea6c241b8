"""Context evaluation runner.

Evaluates every case under two prompt-construction strategies:
- Baseline: the full conversation, trimmed from the oldest end to fit the budget
- Candidate: the layered context manager applied, then trimmed the same way

Cases run sequentially against a scratch archive store so sessions never
share state with real data.
"""

from __future__ import annotations

import logging
import math
import tempfile
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import TypeAlias

from stratum.config import LayeredContextConfig, StratumConfig
from stratum.context.llm import ChatModel
from stratum.context.manager import LayeredContextManager, create_layered_context_manager
from stratum.context.messages import ensure_trailing_user_query, message_text, role_label
from stratum.context.tokens import estimate_messages_tokens
from stratum.context.types import Message
from stratum.eval.stats import delta_interval, distribution, rate
from stratum.eval.types import (
    CaseResult,
    EvalCase,
    EvidenceScore,
    RunSummary,
    TokenDistributions,
    VariantResult,
)

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 280
BUDGET_PRESSURE_SHARE = 0.45
BUDGET_PRESSURE_FLOOR = 400
BUDGET_PRESSURE_RATIO = 0.95

ProgressCallback: TypeAlias = Callable[[int, int, CaseResult], None]


def create_run_id(now: datetime | None = None) -> str:
    """Run ids are UTC timestamps: ``YYYYMMDD-HHMMSS``."""
    return (now or datetime.now(timezone.utc)).strftime("%Y%m%d-%H%M%S")


def trim_to_budget(messages: list[Message], max_prompt_tokens: int) -> list[Message]:
    """Drop the oldest messages until the prompt fits, keeping at least two."""
    trimmed = [dict(m) for m in messages]
    while len(trimmed) > 2 and estimate_messages_tokens(trimmed) > max_prompt_tokens:
        trimmed.pop(0)
    return trimmed


def build_context_text(messages: list[Message]) -> str:
    lines = []
    for message in messages:
        text = message_text(message)
        if text:
            lines.append(f"{role_label(message)}: {text}")
    return "\n".join(lines)


def preview(text: str, max_chars: int = PREVIEW_CHARS) -> str:
    return text if len(text) <= max_chars else f"{text[: max_chars - 3]}..."


def _normalize_for_match(text: str) -> str:
    return " ".join(text.lower().split())


def score_evidence(context_text: str, expected: Sequence[str]) -> EvidenceScore:
    """Case- and whitespace-insensitive substring recall of expected evidence."""
    if not expected:
        return EvidenceScore(recall=1.0, hit=(), missing=())
    haystack = _normalize_for_match(context_text)
    hit, missing = [], []
    for item in expected:
        needle = _normalize_for_match(item)
        if not needle:
            continue
        (hit if needle in haystack else missing).append(item)
    return EvidenceScore(recall=len(hit) / len(expected), hit=tuple(hit), missing=tuple(missing))


def _variant(messages: list[Message], expected: Sequence[str], budget: int) -> VariantResult:
    trimmed = trim_to_budget(messages, budget)
    text = build_context_text(trimmed)
    return VariantResult(
        prompt_tokens=estimate_messages_tokens(trimmed),
        message_count=len(trimmed),
        context_text=text,
        context_preview=preview(text),
        evidence=score_evidence(text, expected) if expected else None,
    )


def explain(
    case: EvalCase,
    candidate: VariantResult,
    savings_ratio: float,
    recall_delta: float | None,
    layer_adequacy: bool | None,
    information_loss: bool | None,
    config: LayeredContextConfig,
) -> list[str]:
    """Human-readable notes on why a case came out the way it did."""
    notes = []
    if savings_ratio >= 0:
        notes.append(f"Candidate reduced prompt tokens by {savings_ratio * 100:.2f}%.")
    else:
        notes.append(f"Candidate increased prompt tokens by {abs(savings_ratio) * 100:.2f}%.")

    if not candidate.layered_applied:
        notes.append(
            "Layered strategy was not applied for this case "
            "(history may be too short for archival split)."
        )
    elif candidate.reached_layer is not None:
        suffix = f": {candidate.decision_reason}" if candidate.decision_reason else "."
        notes.append(f"Retriever escalated to {candidate.reached_layer.value}{suffix}")

    missing = candidate.evidence.missing if candidate.evidence else ()
    if recall_delta is not None and recall_delta < 0:
        if missing:
            notes.append(f"Candidate missed expected evidence: {', '.join(missing)}.")
        else:
            notes.append("Candidate evidence recall dropped compared with baseline.")

    expected_layer = case.labels.expected_layer_min
    if layer_adequacy is False and expected_layer is not None:
        reached = candidate.reached_layer.value if candidate.reached_layer else "none"
        notes.append(f"Expected at least {expected_layer.value}, but candidate reached {reached}.")

    layer_budget = max(BUDGET_PRESSURE_FLOOR, math.floor(config.max_prompt_tokens * BUDGET_PRESSURE_SHARE))
    usage = candidate.token_usage
    if usage is not None and usage.total >= layer_budget * BUDGET_PRESSURE_RATIO and missing:
        notes.append("Layered retrieval likely hit budget pressure; important evidence may be truncated.")

    if information_loss:
        notes.append(
            "Information loss incident: baseline contained all expected evidence, candidate did not."
        )
    return notes


@dataclass
class EvalRunner:
    """Run cases through baseline and layered candidate strategies.

    Usage:
        runner = EvalRunner(manager=manager, config=config.layered)
        results = await runner.run(cases)
    """

    manager: LayeredContextManager
    config: LayeredContextConfig

    async def evaluate_case(self, case: EvalCase) -> CaseResult:
        expected = case.labels.expected_evidence
        budget = self.config.max_prompt_tokens
        messages = ensure_trailing_user_query([dict(m) for m in case.messages], case.query)

        baseline = _variant(messages, expected, budget)

        applied = await self.manager.apply(
            f"{case.platform}:{case.id}",
            [dict(m) for m in messages],
            query=case.query,
            platform=case.platform,
            chat_id=case.chat_id,
        )
        retrieval = applied.retrieval
        candidate = replace(
            _variant(applied.messages, expected, budget),
            layered_applied=applied.applied and retrieval is not None,
            reached_layer=retrieval.decision.reached_layer if retrieval else None,
            decision_reason=retrieval.decision.reason if retrieval else None,
            token_usage=retrieval.token_usage if retrieval else None,
        )

        savings_ratio = (
            (baseline.prompt_tokens - candidate.prompt_tokens) / baseline.prompt_tokens
            if baseline.prompt_tokens > 0
            else 0.0
        )
        recall_delta = information_loss = None
        if baseline.evidence is not None and candidate.evidence is not None:
            recall_delta = candidate.evidence.recall - baseline.evidence.recall
            information_loss = not baseline.evidence.missing and bool(candidate.evidence.missing)

        layer_adequacy = None
        if case.labels.expected_layer_min is not None:
            reached = candidate.reached_layer
            layer_adequacy = reached is not None and reached.rank >= case.labels.expected_layer_min.rank

        return CaseResult(
            case_id=case.id,
            query=case.query,
            expected_evidence_count=len(expected),
            expected_layer_min=case.labels.expected_layer_min,
            baseline=baseline,
            candidate=candidate,
            savings_ratio=savings_ratio,
            recall_delta=recall_delta,
            layer_adequacy=layer_adequacy,
            information_loss=information_loss,
            explanation=tuple(
                explain(case, candidate, savings_ratio, recall_delta, layer_adequacy, information_loss, self.config)
            ),
        )

    async def run(
        self,
        cases: Sequence[EvalCase],
        progress: ProgressCallback | None = None,
    ) -> list[CaseResult]:
        results = []
        for index, case in enumerate(cases, start=1):
            result = await self.evaluate_case(case)
            results.append(result)
            logger.debug(
                "%d/%d %s: savings=%.2f%% recallDelta=%s",
                index, len(cases), result.case_id, result.savings_ratio * 100,
                "n/a" if result.recall_delta is None else f"{result.recall_delta * 100:.2f}%",
            )
            if progress is not None:
                progress(index, len(cases), result)
        await self.manager.wait_for_background()
        return results


def _token_distributions(results: Sequence[CaseResult]) -> TokenDistributions:
    return TokenDistributions(
        baseline=distribution([r.baseline.prompt_tokens for r in results]),
        candidate=distribution([r.candidate.prompt_tokens for r in results]),
        savings_ratio=distribution([r.savings_ratio for r in results]),
    )


def summarize_results(
    results: Sequence[CaseResult],
    *,
    run_id: str,
    dataset_path: str,
    output_dir: str,
    layered_config: LayeredContextConfig,
    max_cases: int | None = None,
    seed: int = 42,
    generated_at: str | None = None,
) -> RunSummary:
    """Aggregate per-case results into the run summary."""
    baseline_recall = [r.baseline.evidence.recall for r in results if r.baseline.evidence is not None]
    candidate_recall = [r.candidate.evidence.recall for r in results if r.candidate.evidence is not None]
    deltas = [r.recall_delta for r in results if r.recall_delta is not None]
    applied = [r for r in results if r.candidate.layered_applied]

    return RunSummary(
        run_id=run_id,
        generated_at=generated_at or datetime.now(timezone.utc).isoformat(),
        dataset_path=dataset_path,
        output_dir=output_dir,
        case_count=len(results),
        max_cases=max_cases,
        layered_config=layered_config,
        prompt_tokens=_token_distributions(results),
        recall_baseline=distribution(baseline_recall) if baseline_recall else None,
        recall_candidate=distribution(candidate_recall) if candidate_recall else None,
        recall_delta=delta_interval(deltas, seed=seed),
        layer_adequacy_rate=rate([r.layer_adequacy for r in results]),
        information_loss_rate=rate([r.information_loss for r in results]),
        regression_cases=sum(1 for r in results if r.is_regression),
        applied_case_count=len(applied),
        applied_tokens=_token_distributions(applied) if applied else None,
    )


async def run_evaluation(
    cases: Sequence[EvalCase],
    config: StratumConfig,
    *,
    dataset_path: str,
    run_id: str | None = None,
    max_cases: int | None = None,
    model: ChatModel | None = None,
    progress: ProgressCallback | None = None,
) -> tuple[RunSummary, list[CaseResult]]:
    """Evaluate ``cases`` and summarize them.

    Archives go to ``config.eval.storage_dir`` when set, otherwise to a
    temporary directory removed after the run.
    """
    selected = list(cases[:max_cases]) if max_cases else list(cases)
    layered = replace(config.layered, enable_session_compression=True).clamped()
    run_config = replace(config, layered=layered)

    async def _run(storage: str) -> list[CaseResult]:
        async with create_layered_context_manager(run_config, base_path=storage, model=model) as manager:
            return await EvalRunner(manager=manager, config=layered).run(selected, progress)

    if config.eval.storage_dir:
        Path(config.eval.storage_dir).mkdir(parents=True, exist_ok=True)
        results = await _run(config.eval.storage_dir)
    else:
        with tempfile.TemporaryDirectory(prefix="stratum-eval-") as storage:
            results = await _run(storage)

    summary = summarize_results(
        results,
        run_id=run_id or create_run_id(),
        dataset_path=dataset_path,
        output_dir=config.eval.output_dir,
        layered_config=layered,
        max_cases=max_cases,
        seed=config.eval.seed,
    )
    logger.info(
        "Evaluated %d cases: savings=%.2f%% applied=%d",
        summary.case_count,
        summary.prompt_tokens.savings_ratio.mean * 100,
        summary.applied_case_count,
    )
    return summary, results
