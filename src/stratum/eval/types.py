"""Evaluation data types.

Core data structures for the context evaluation harness:
- Cases loaded from a JSONL dataset
- Per-variant (baseline / candidate) measurements
- Per-case comparisons
- Run summaries written to summary.json

Everything serialized to disk uses camelCase keys.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from stratum.config import LayeredContextConfig
from stratum.context.types import Layer, Message, TokenUsage


@dataclass(frozen=True, slots=True)
class EvalLabels:
    """Ground truth attached to a case."""

    expected_evidence: tuple[str, ...] = ()
    expected_layer_min: Layer | None = None
    reference_answer: str | None = None
    tags: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.expected_evidence:
            data["expectedEvidence"] = list(self.expected_evidence)
        if self.expected_layer_min is not None:
            data["expectedLayerMin"] = self.expected_layer_min.value
        if self.reference_answer:
            data["referenceAnswer"] = self.reference_answer
        if self.tags:
            data["tags"] = list(self.tags)
        return data


@dataclass(slots=True)
class EvalCase:
    """A single evaluation case."""

    id: str
    query: str
    messages: list[Message]
    platform: str = "telegram"
    chat_id: str | None = None
    labels: EvalLabels = field(default_factory=EvalLabels)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "query": self.query,
            "platform": self.platform,
            "chatId": self.chat_id,
            "messages": self.messages,
            "labels": self.labels.to_dict(),
        }
        if self.metadata:
            data["metadata"] = self.metadata
        return data


@dataclass(frozen=True, slots=True)
class EvidenceScore:
    recall: float
    hit: tuple[str, ...]
    missing: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {"recall": self.recall, "hitEvidence": list(self.hit), "missingEvidence": list(self.missing)}


@dataclass(frozen=True, slots=True)
class VariantResult:
    """What one prompt-construction strategy produced for a case."""

    prompt_tokens: int
    message_count: int
    context_text: str
    context_preview: str
    evidence: EvidenceScore | None = None
    layered_applied: bool = False
    reached_layer: Layer | None = None
    decision_reason: str | None = None
    token_usage: TokenUsage | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "promptTokens": self.prompt_tokens,
            "messageCount": self.message_count,
            "contextPreview": self.context_preview,
            "evidenceScore": self.evidence.to_dict() if self.evidence else None,
            "layeredApplied": self.layered_applied,
            "reachedLayer": self.reached_layer.value if self.reached_layer else None,
            "decisionReason": self.decision_reason,
            "retrievalTokenUsage": self.token_usage.to_dict() if self.token_usage else None,
        }


@dataclass(frozen=True, slots=True)
class CaseResult:
    """Baseline vs candidate comparison for one case."""

    case_id: str
    query: str
    expected_evidence_count: int
    expected_layer_min: Layer | None
    baseline: VariantResult
    candidate: VariantResult
    savings_ratio: float
    recall_delta: float | None
    layer_adequacy: bool | None
    information_loss: bool | None
    explanation: tuple[str, ...] = ()

    @property
    def is_regression(self) -> bool:
        return (
            (self.recall_delta or 0.0) < 0
            or self.savings_ratio < 0
            or self.layer_adequacy is False
            or self.information_loss is True
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "caseId": self.case_id,
            "query": self.query,
            "expectedEvidenceCount": self.expected_evidence_count,
            "expectedLayerMin": self.expected_layer_min.value if self.expected_layer_min else None,
            "baseline": self.baseline.to_dict(),
            "candidate": self.candidate.to_dict(),
            "promptTokenSavingsRatio": self.savings_ratio,
            "evidenceRecallDelta": self.recall_delta,
            "layerAdequacyPass": self.layer_adequacy,
            "informationLossIncident": self.information_loss,
            "explanation": list(self.explanation),
        }


@dataclass(frozen=True, slots=True)
class Distribution:
    mean: float = 0.0
    p50: float = 0.0
    p95: float = 0.0
    min: float = 0.0
    max: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return {"mean": self.mean, "p50": self.p50, "p95": self.p95, "min": self.min, "max": self.max}


@dataclass(frozen=True, slots=True)
class DeltaInterval:
    """Mean delta with a bootstrap 95% confidence interval."""

    mean: float
    lower95: float
    upper95: float
    sample_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "mean": self.mean,
            "lower95": self.lower95,
            "upper95": self.upper95,
            "sampleCount": self.sample_count,
        }


@dataclass(frozen=True, slots=True)
class TokenDistributions:
    baseline: Distribution
    candidate: Distribution
    savings_ratio: Distribution

    def to_dict(self) -> dict[str, Any]:
        return {
            "baseline": self.baseline.to_dict(),
            "candidate": self.candidate.to_dict(),
            "savingsRatio": self.savings_ratio.to_dict(),
        }


@dataclass(frozen=True, slots=True)
class RunSummary:
    """Aggregate metrics for a whole run; the gate reads its JSON form."""

    run_id: str
    generated_at: str
    dataset_path: str
    output_dir: str
    case_count: int
    max_cases: int | None
    layered_config: LayeredContextConfig
    prompt_tokens: TokenDistributions
    recall_baseline: Distribution | None
    recall_candidate: Distribution | None
    recall_delta: DeltaInterval | None
    layer_adequacy_rate: float | None
    information_loss_rate: float | None
    regression_cases: int
    applied_case_count: int
    applied_tokens: TokenDistributions | None

    @property
    def stable_or_improved_cases(self) -> int:
        return max(0, self.case_count - self.regression_cases)

    @property
    def apply_rate(self) -> float:
        return self.applied_case_count / self.case_count if self.case_count else 0.0

    def to_dict(self) -> dict[str, Any]:
        layered = self.layered_config
        return {
            "runId": self.run_id,
            "generatedAt": self.generated_at,
            "datasetPath": self.dataset_path,
            "outputDir": self.output_dir,
            "caseCount": self.case_count,
            "config": {
                "maxCases": self.max_cases,
                "layeredConfig": {
                    "enableSessionCompression": layered.enable_session_compression,
                    "l0TargetTokens": layered.l0_target_tokens,
                    "l1TargetTokens": layered.l1_target_tokens,
                    "maxPromptTokens": layered.max_prompt_tokens,
                    "maxArchives": layered.max_archives,
                    "maxRecentMessages": layered.max_recent_messages,
                    "archiveChunkSize": layered.archive_chunk_size,
                    "retrievalEscalationThresholds": {
                        "scoreThresholdHigh": layered.score_threshold_high,
                        "top1Top2Margin": layered.top1_top2_margin,
                        "maxItemsForL1": layered.max_items_for_l1,
                        "maxItemsForL2": layered.max_items_for_l2,
                    },
                },
            },
            "metrics": {
                "promptTokens": self.prompt_tokens.to_dict(),
                "evidenceRecall": {
                    "baseline": self.recall_baseline.to_dict() if self.recall_baseline else None,
                    "candidate": self.recall_candidate.to_dict() if self.recall_candidate else None,
                    "delta": self.recall_delta.to_dict() if self.recall_delta else None,
                },
                "layerAdequacyRate": self.layer_adequacy_rate,
                "informationLossRate": self.information_loss_rate,
                "regressionCases": self.regression_cases,
                "stableOrImprovedCases": self.stable_or_improved_cases,
                "layeredApplication": {
                    "appliedCaseCount": self.applied_case_count,
                    "applyRate": self.apply_rate,
                    "promptTokensWhenApplied": (
                        self.applied_tokens.to_dict() if self.applied_tokens else None
                    ),
                },
            },
        }
