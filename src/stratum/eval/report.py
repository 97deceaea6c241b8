"""Run artifacts: summary JSON/Markdown, per-case CSV, regressions and latest pointer."""

from __future__ import annotations

import csv
import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from stratum.eval.types import CaseResult, Distribution, RunSummary

logger = logging.getLogger(__name__)

TOP_REGRESSIONS = 8
LATEST_POINTER = "latest.json"

CSV_COLUMNS = (
    "caseId",
    "promptTokensBaseline",
    "promptTokensCandidate",
    "promptTokenSavingsRatio",
    "evidenceRecallBaseline",
    "evidenceRecallCandidate",
    "evidenceRecallDelta",
    "layeredApplied",
    "reachedLayer",
    "layerAdequacyPass",
    "informationLossIncident",
    "decisionReason",
    "explanation",
)


@dataclass(frozen=True, slots=True)
class RunArtifacts:
    run_directory: Path
    summary_json: Path
    summary_markdown: Path
    cases_csv: Path
    regressions: Path
    latest_pointer: Path


def _pct(value: float) -> str:
    return f"{value * 100:.2f}%"


def _pct_or_na(value: float | None) -> str:
    return "n/a" if value is None else _pct(value)


def _num(value: float) -> str:
    return f"{value:.2f}"


def _triple(dist: Distribution, fmt: Any = _num) -> str:
    return f"{fmt(dist.mean)} / {fmt(dist.p50)} / {fmt(dist.p95)}"


def _flag(value: bool | None) -> str:
    return "n/a" if value is None else str(value).lower()


def rank_regression(result: CaseResult) -> float:
    """Severity used to order regressions; zero means not a regression."""
    score = 0.0
    if result.information_loss:
        score += 500
    if result.layer_adequacy is False:
        score += 200
    if result.recall_delta is not None and result.recall_delta < 0:
        score += abs(result.recall_delta) * 100
    if result.savings_ratio < 0:
        score += abs(result.savings_ratio) * 100
    return score


def ranked_regressions(results: Sequence[CaseResult]) -> list[CaseResult]:
    flagged = [r for r in results if rank_regression(r) > 0]
    return sorted(flagged, key=rank_regression, reverse=True)


def generate_summary_markdown(summary: RunSummary, results: Sequence[CaseResult]) -> str:
    tokens = summary.prompt_tokens
    delta = summary.recall_delta
    lines: list[str] = []

    lines.append("# Context Evaluation Report")
    lines.append("")
    lines.append(f"- Run ID: `{summary.run_id}`")
    lines.append(f"- Generated At: `{summary.generated_at}`")
    lines.append(f"- Dataset: `{summary.dataset_path}`")
    lines.append(f"- Cases: `{summary.case_count}`")
    lines.append("")

    lines.append("## Gate Metrics")
    lines.append("")
    lines.append(f"- Mean prompt token savings: `{_pct(tokens.savings_ratio.mean)}`")
    lines.append(
        f"- Evidence recall delta (candidate - baseline): `{_pct_or_na(delta.mean if delta else None)}`"
    )
    lines.append(f"- Layer adequacy rate: `{_pct_or_na(summary.layer_adequacy_rate)}`")
    lines.append(f"- Information loss rate: `{_pct_or_na(summary.information_loss_rate)}`")
    lines.append("")

    lines.append("## Layered Application")
    lines.append("")
    lines.append(
        f"- Applied cases: `{summary.applied_case_count}/{summary.case_count}` ({_pct(summary.apply_rate)})"
    )
    applied = summary.applied_tokens
    if applied is not None:
        lines.append(f"- Applied-only baseline mean / p50 / p95: `{_triple(applied.baseline)}`")
        lines.append(f"- Applied-only candidate mean / p50 / p95: `{_triple(applied.candidate)}`")
        lines.append(f"- Applied-only savings mean / p50 / p95: `{_triple(applied.savings_ratio, _pct)}`")
    else:
        lines.append("- No applied layered cases in this run.")
    lines.append("")

    lines.append("## Token Distribution")
    lines.append("")
    lines.append(f"- Baseline mean / p50 / p95: `{_triple(tokens.baseline)}`")
    lines.append(f"- Candidate mean / p50 / p95: `{_triple(tokens.candidate)}`")
    lines.append(f"- Savings ratio mean / p50 / p95: `{_triple(tokens.savings_ratio, _pct)}`")
    lines.append("")

    lines.append("## Quality Metrics")
    lines.append("")
    lines.append(f"- Regression cases: `{summary.regression_cases}`")
    lines.append(f"- Stable or improved cases: `{summary.stable_or_improved_cases}`")
    if delta is not None:
        lines.append(
            f"- Evidence delta 95% CI: `[{_pct(delta.lower95)}, {_pct(delta.upper95)}]` "
            f"({delta.sample_count} samples)"
        )
    lines.append("")

    lines.append("## Top Regressions")
    lines.append("")
    top = ranked_regressions(results)[:TOP_REGRESSIONS]
    if not top:
        lines.append("- No regression case was detected in this run.")
    for r in top:
        layer = r.candidate.reached_layer.value if r.candidate.reached_layer else "none"
        lines.append(
            f"- `{r.case_id}`: token={_pct(r.savings_ratio)}, "
            f"evidenceDelta={_pct_or_na(r.recall_delta)}, layer={layer}"
        )

    return "\n".join(lines)


def generate_regressions_markdown(results: Sequence[CaseResult]) -> str:
    lines = ["# Context Evaluation Regressions", ""]
    regressions = ranked_regressions(results)
    if not regressions:
        lines.append("No regressions detected.")
        return "\n".join(lines)

    for r in regressions:
        baseline_recall = r.baseline.evidence.recall if r.baseline.evidence else None
        candidate_recall = r.candidate.evidence.recall if r.candidate.evidence else None
        layer = r.candidate.reached_layer.value if r.candidate.reached_layer else "none"
        lines.append(f"## {r.case_id}")
        lines.append("")
        lines.append(f"- Query: {r.query}")
        lines.append(f"- Prompt token savings: {_pct(r.savings_ratio)}")
        lines.append(
            f"- Evidence recall (baseline -> candidate): "
            f"{_pct_or_na(baseline_recall)} -> {_pct_or_na(candidate_recall)}"
        )
        lines.append(f"- Layer reached: {layer}")
        lines.append(f"- Layer adequacy pass: {_flag(r.layer_adequacy)}")
        lines.append(f"- Information loss incident: {_flag(r.information_loss)}")
        lines.append("- Explanation:")
        if not r.explanation:
            lines.append("  - No additional explanation generated.")
        for note in r.explanation:
            lines.append(f"  - {note}")
        lines.append("")

    return "\n".join(lines)


def _csv_row(r: CaseResult) -> list[str]:
    def opt(value: float | None) -> str:
        return "" if value is None else str(value)

    return [
        r.case_id,
        str(r.baseline.prompt_tokens),
        str(r.candidate.prompt_tokens),
        str(r.savings_ratio),
        opt(r.baseline.evidence.recall if r.baseline.evidence else None),
        opt(r.candidate.evidence.recall if r.candidate.evidence else None),
        opt(r.recall_delta),
        str(r.candidate.layered_applied).lower(),
        r.candidate.reached_layer.value if r.candidate.reached_layer else "",
        "" if r.layer_adequacy is None else str(r.layer_adequacy).lower(),
        "" if r.information_loss is None else str(r.information_loss).lower(),
        r.candidate.decision_reason or "",
        " | ".join(r.explanation),
    ]


def write_cases_csv(path: Path, results: Sequence[CaseResult]) -> None:
    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f, lineterminator="\n")
        writer.writerow(CSV_COLUMNS)
        for r in results:
            writer.writerow(_csv_row(r))


def _write_json(path: Path, data: dict[str, Any]) -> None:
    path.write_text(json.dumps(data, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")


def write_run_artifacts(
    summary: RunSummary,
    results: Sequence[CaseResult],
    output_dir: str | Path | None = None,
) -> RunArtifacts:
    """Write every artifact for a run and point ``latest.json`` at it."""
    root = Path(output_dir if output_dir is not None else summary.output_dir)
    run_directory = root / summary.run_id
    run_directory.mkdir(parents=True, exist_ok=True)

    artifacts = RunArtifacts(
        run_directory=run_directory,
        summary_json=run_directory / "summary.json",
        summary_markdown=run_directory / "summary.md",
        cases_csv=run_directory / "cases.csv",
        regressions=run_directory / "regressions.md",
        latest_pointer=root / LATEST_POINTER,
    )

    _write_json(artifacts.summary_json, summary.to_dict())
    artifacts.summary_markdown.write_text(generate_summary_markdown(summary, results) + "\n", encoding="utf-8")
    write_cases_csv(artifacts.cases_csv, results)
    artifacts.regressions.write_text(generate_regressions_markdown(results) + "\n", encoding="utf-8")
    _write_json(
        artifacts.latest_pointer,
        {
            "runId": summary.run_id,
            "runDirectory": str(run_directory),
            "summaryJsonPath": str(artifacts.summary_json),
        },
    )

    logger.info("Wrote run artifacts to %s", run_directory)
    return artifacts
