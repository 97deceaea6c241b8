"""Tests for the evaluation gate."""

import json
from pathlib import Path

import pytest

from stratum.config import GateThresholds
from stratum.core.errors import ErrorCode, StratumError
from stratum.eval.gate import evaluate_gate, load_summary, resolve_summary_path


def _summary(
    savings: float = 0.25,
    delta: float | None = -0.01,
    info_loss: float | None = 0.0,
    adequacy: float | None = 0.9,
) -> dict:
    return {
        "caseCount": 10,
        "metrics": {
            "promptTokens": {"savingsRatio": {"mean": savings}},
            "evidenceRecall": {"delta": None if delta is None else {"mean": delta}},
            "informationLossRate": info_loss,
            "layerAdequacyRate": adequacy,
            "layeredApplication": {
                "appliedCaseCount": 7,
                "applyRate": 0.7,
                "promptTokensWhenApplied": {"savingsRatio": {"mean": 0.4}},
            },
        },
    }


class TestEvaluateGate:
    def test_passes_within_thresholds(self) -> None:
        report = evaluate_gate(_summary())

        assert report.passed
        assert [c.name for c in report.criteria] == [
            "Token savings mean",
            "Evidence recall delta mean",
            "Information loss rate",
            "Layer adequacy rate",
        ]
        assert report.applied_case_count == 7
        assert report.case_count == 10
        assert report.applied_savings_mean == 0.4

    def test_recall_drop_fails(self) -> None:
        report = evaluate_gate(_summary(delta=-0.05))

        assert not report.passed
        failed = [c.name for c in report.criteria if not c.passed]
        assert failed == ["Evidence recall delta mean"]

    def test_low_savings_fails(self) -> None:
        assert not evaluate_gate(_summary(savings=0.1)).passed

    def test_unmeasured_metrics_pass(self) -> None:
        report = evaluate_gate(_summary(delta=None, info_loss=None, adequacy=None))

        assert report.passed
        assert report.criteria[1].value is None

    def test_custom_thresholds(self) -> None:
        thresholds = GateThresholds(min_token_savings=0.3)
        assert not evaluate_gate(_summary(savings=0.25), thresholds).passed

    def test_missing_savings_is_invalid(self) -> None:
        with pytest.raises(StratumError) as exc_info:
            evaluate_gate({"metrics": {}}, summary_path="s.json")
        assert exc_info.value.code is ErrorCode.EVAL_SUMMARY_INVALID


class TestResolveSummaryPath:
    def test_explicit_path(self, tmp_path: Path) -> None:
        assert resolve_summary_path("x/summary.json", tmp_path) == Path("x/summary.json")

    def test_run_id(self, tmp_path: Path) -> None:
        assert resolve_summary_path(None, tmp_path, "r1") == tmp_path / "r1" / "summary.json"

    def test_latest_pointer(self, tmp_path: Path) -> None:
        target = tmp_path / "r2" / "summary.json"
        (tmp_path / "latest.json").write_text(json.dumps({"summaryJsonPath": str(target)}))

        assert resolve_summary_path(None, tmp_path) == target

    def test_missing_pointer(self, tmp_path: Path) -> None:
        with pytest.raises(StratumError) as exc_info:
            resolve_summary_path(None, tmp_path)
        assert exc_info.value.code is ErrorCode.EVAL_SUMMARY_NOT_FOUND

    def test_pointer_without_target(self, tmp_path: Path) -> None:
        (tmp_path / "latest.json").write_text(json.dumps({"runId": "r1"}))

        with pytest.raises(StratumError) as exc_info:
            resolve_summary_path(None, tmp_path)
        assert exc_info.value.code is ErrorCode.EVAL_SUMMARY_INVALID


class TestLoadSummary:
    def test_invalid_json(self, tmp_path: Path) -> None:
        path = tmp_path / "summary.json"
        path.write_text("{")

        with pytest.raises(StratumError) as exc_info:
            load_summary(path)
        assert exc_info.value.code is ErrorCode.EVAL_SUMMARY_INVALID

    def test_non_object(self, tmp_path: Path) -> None:
        path = tmp_path / "summary.json"
        path.write_text("[]")

        with pytest.raises(StratumError):
            load_summary(path)
