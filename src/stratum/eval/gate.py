"""Pass/fail gate over a run summary.

The gate reads ``summary.json`` (not the in-memory summary) so it can be
run against any past run. A metric that a run could not measure passes.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from stratum.config import GateThresholds
from stratum.core.errors import ErrorCode, summary_error
from stratum.eval.report import LATEST_POINTER


@dataclass(frozen=True, slots=True)
class GateCriterion:
    name: str
    value: float | None
    threshold: float
    comparator: str
    """``>=`` or ``<=``; the value must satisfy ``value <comparator> threshold``."""

    passed: bool


@dataclass(frozen=True, slots=True)
class GateReport:
    summary_path: Path
    criteria: tuple[GateCriterion, ...]
    apply_rate: float
    applied_case_count: int
    case_count: int
    applied_savings_mean: float | None

    @property
    def passed(self) -> bool:
        return all(c.passed for c in self.criteria)


def resolve_summary_path(
    summary: str | Path | None = None,
    output_dir: str | Path = ".stratum/eval-runs",
    run_id: str | None = None,
) -> Path:
    """Find the summary to gate: explicit path, then run id, then ``latest.json``.

    Raises:
        StratumError: EVAL_SUMMARY_NOT_FOUND when no pointer exists,
            EVAL_SUMMARY_INVALID when the pointer is unusable.
    """
    if summary:
        return Path(summary)
    root = Path(output_dir)
    if run_id:
        return root / run_id / "summary.json"

    pointer_path = root / LATEST_POINTER
    pointer = _read_json(pointer_path)
    target = pointer.get("summaryJsonPath")
    if not isinstance(target, str) or not target:
        raise summary_error(
            ErrorCode.EVAL_SUMMARY_INVALID,
            str(pointer_path),
            detail='missing "summaryJsonPath"',
        )
    return Path(target)


def _read_json(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise summary_error(ErrorCode.EVAL_SUMMARY_NOT_FOUND, str(path), cause=e) from e
    except json.JSONDecodeError as e:
        raise summary_error(ErrorCode.EVAL_SUMMARY_INVALID, str(path), detail=e.msg, cause=e) from e
    if not isinstance(data, dict):
        raise summary_error(ErrorCode.EVAL_SUMMARY_INVALID, str(path), detail="expected a JSON object")
    return data


def load_summary(path: str | Path) -> dict[str, Any]:
    return _read_json(Path(path))


def _optional_number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def evaluate_gate(
    summary: dict[str, Any],
    thresholds: GateThresholds | None = None,
    summary_path: str | Path = "",
) -> GateReport:
    """Check a summary against the four gate criteria.

    Raises:
        StratumError: EVAL_SUMMARY_INVALID when the summary lacks metrics.
    """
    thresholds = thresholds or GateThresholds()
    try:
        metrics = summary["metrics"]
        savings = float(metrics["promptTokens"]["savingsRatio"]["mean"])
    except (KeyError, TypeError, ValueError) as e:
        raise summary_error(
            ErrorCode.EVAL_SUMMARY_INVALID, str(summary_path), detail="missing token savings", cause=e
        ) from e

    delta = (metrics.get("evidenceRecall") or {}).get("delta")
    delta_mean = _optional_number(delta.get("mean")) if isinstance(delta, dict) else None
    info_loss = _optional_number(metrics.get("informationLossRate"))
    adequacy = _optional_number(metrics.get("layerAdequacyRate"))

    criteria = (
        GateCriterion(
            "Token savings mean", savings, thresholds.min_token_savings, ">=",
            savings >= thresholds.min_token_savings,
        ),
        GateCriterion(
            "Evidence recall delta mean", delta_mean, -thresholds.max_evidence_recall_drop, ">=",
            delta_mean is None or delta_mean >= -thresholds.max_evidence_recall_drop,
        ),
        GateCriterion(
            "Information loss rate", info_loss, thresholds.max_information_loss_rate, "<=",
            info_loss is None or info_loss <= thresholds.max_information_loss_rate,
        ),
        GateCriterion(
            "Layer adequacy rate", adequacy, thresholds.min_layer_adequacy_rate, ">=",
            adequacy is None or adequacy >= thresholds.min_layer_adequacy_rate,
        ),
    )

    application = metrics.get("layeredApplication") or {}
    applied_tokens = application.get("promptTokensWhenApplied")
    applied_savings = None
    if isinstance(applied_tokens, dict):
        applied_savings = _optional_number((applied_tokens.get("savingsRatio") or {}).get("mean"))

    return GateReport(
        summary_path=Path(summary_path),
        criteria=criteria,
        apply_rate=_optional_number(application.get("applyRate")) or 0.0,
        applied_case_count=int(application.get("appliedCaseCount") or 0),
        case_count=int(summary.get("caseCount") or 0),
        applied_savings_mean=applied_savings,
    )
