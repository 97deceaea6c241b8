"""Tests for run artifact generation."""

import csv
import json
from pathlib import Path

from stratum.config import LayeredContextConfig
from stratum.context.types import Layer
from stratum.eval.report import (
    generate_regressions_markdown,
    generate_summary_markdown,
    rank_regression,
    ranked_regressions,
    write_run_artifacts,
)
from stratum.eval.runner import summarize_results
from stratum.eval.types import CaseResult, EvidenceScore, VariantResult


def _variant(tokens: int, recall: float | None = None, layer: Layer | None = None) -> VariantResult:
    evidence = None
    if recall is not None:
        evidence = EvidenceScore(recall=recall, hit=(), missing=() if recall == 1.0 else ("partitions",))
    return VariantResult(
        prompt_tokens=tokens,
        message_count=3,
        context_text="",
        context_preview="",
        evidence=evidence,
        layered_applied=layer is not None,
        reached_layer=layer,
        decision_reason="High confidence on L0 retrieval." if layer else None,
    )


def _result(
    case_id: str,
    savings: float = 0.5,
    recall_delta: float | None = 0.0,
    layer_adequacy: bool | None = None,
    information_loss: bool | None = False,
) -> CaseResult:
    candidate_recall = None if recall_delta is None else 1.0 + recall_delta
    return CaseResult(
        case_id=case_id,
        query=f"query for {case_id}",
        expected_evidence_count=1,
        expected_layer_min=None,
        baseline=_variant(100, None if recall_delta is None else 1.0),
        candidate=_variant(int(100 * (1 - savings)), candidate_recall, Layer.L0),
        savings_ratio=savings,
        recall_delta=recall_delta,
        layer_adequacy=layer_adequacy,
        information_loss=information_loss,
        explanation=("first note", "second note"),
    )


def _summary(results: list[CaseResult], output_dir: str = "runs"):
    return summarize_results(
        results,
        run_id="20260102-030405",
        dataset_path="cases.jsonl",
        output_dir=output_dir,
        layered_config=LayeredContextConfig(),
        generated_at="2026-01-02T03:04:05+00:00",
    )


class TestRanking:
    def test_clean_case_is_not_a_regression(self) -> None:
        assert rank_regression(_result("ok")) == 0

    def test_information_loss_ranks_first(self) -> None:
        results = [
            _result("cost", savings=-0.5),
            _result("loss", recall_delta=-0.5, information_loss=True),
            _result("layer", layer_adequacy=False),
            _result("ok"),
        ]

        assert [r.case_id for r in ranked_regressions(results)] == ["loss", "layer", "cost"]


class TestMarkdown:
    def test_summary_without_regressions(self) -> None:
        results = [_result("ok")]

        text = generate_summary_markdown(_summary(results), results)

        assert text.startswith("# Context Evaluation Report")
        assert "- Run ID: `20260102-030405`" in text
        assert "- Mean prompt token savings: `50.00%`" in text
        assert "- Layer adequacy rate: `n/a`" in text
        assert "- No regression case was detected in this run." in text

    def test_regressions_report(self) -> None:
        text = generate_regressions_markdown([_result("loss", recall_delta=-1.0, information_loss=True)])

        assert "## loss" in text
        assert "- Evidence recall (baseline -> candidate): 100.00% -> 0.00%" in text
        assert "- Information loss incident: true" in text
        assert "  - second note" in text

    def test_no_regressions(self) -> None:
        assert generate_regressions_markdown([_result("ok")]).endswith("No regressions detected.")


class TestWriteRunArtifacts:
    def test_writes_every_artifact(self, tmp_path: Path) -> None:
        results = [_result("ok"), _result("unknown", recall_delta=None, information_loss=None)]
        summary = _summary(results, output_dir=str(tmp_path))

        artifacts = write_run_artifacts(summary, results)

        assert artifacts.run_directory == tmp_path / "20260102-030405"
        for path in (artifacts.summary_json, artifacts.summary_markdown, artifacts.cases_csv, artifacts.regressions):
            assert path.is_file()

        pointer = json.loads((tmp_path / "latest.json").read_text())
        assert pointer["runId"] == "20260102-030405"
        assert pointer["summaryJsonPath"] == str(artifacts.summary_json)

        data = json.loads(artifacts.summary_json.read_text())
        assert data["caseCount"] == 2
        assert data["metrics"]["promptTokens"]["savingsRatio"]["mean"] == 0.5

    def test_cases_csv(self, tmp_path: Path) -> None:
        results = [_result("ok"), _result("unknown", recall_delta=None, information_loss=None)]

        artifacts = write_run_artifacts(_summary(results), results, output_dir=tmp_path)

        with open(artifacts.cases_csv, newline="", encoding="utf-8") as f:
            rows = list(csv.DictReader(f))
        assert [row["caseId"] for row in rows] == ["ok", "unknown"]
        assert rows[0]["layeredApplied"] == "true"
        assert rows[0]["informationLossIncident"] == "false"
        assert rows[0]["reachedLayer"] == "L0"
        assert rows[0]["explanation"] == "first note | second note"
        assert rows[1]["evidenceRecallDelta"] == ""
        assert rows[1]["layerAdequacyPass"] == ""
