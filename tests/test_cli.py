"""Tests for the stratum command line interface."""

import json
from pathlib import Path

import pytest
from click.testing import CliRunner
from conftest import FakeChatModel, make_conversation, make_index, make_node, write_jsonl, write_platform_export

from stratum import __version__
from stratum.cli import eval_cmd
from stratum.cli.main import main
from stratum.context.storage import FileSystemArchiveStore

LONG_TEXT = " ".join(["the kafka consumer group keeps rebalancing under load"] * 5)


def _summary(savings: float) -> dict:
    return {
        "caseCount": 4,
        "metrics": {
            "promptTokens": {"savingsRatio": {"mean": savings}},
            "evidenceRecall": {"delta": {"mean": 0.0}},
            "informationLossRate": 0.0,
            "layerAdequacyRate": 1.0,
            "layeredApplication": {"appliedCaseCount": 4, "applyRate": 1.0},
        },
    }


class TestMain:
    def test_version(self, isolated_env: Path) -> None:
        result = CliRunner().invoke(main, ["--version"])

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_config_init_and_show(self, isolated_env: Path) -> None:
        runner = CliRunner()

        first = runner.invoke(main, ["config", "init"])
        second = runner.invoke(main, ["config", "init"])
        shown = runner.invoke(main, ["config", "show"])

        assert first.exit_code == 0, first.output
        assert (isolated_env / ".stratum" / "config.yaml").is_file()
        assert second.exit_code == 1
        assert "already exists" in second.output
        assert shown.exit_code == 0
        assert "layered:" in shown.output

    def test_invalid_config_file(self, isolated_env: Path) -> None:
        (isolated_env / "bad.yaml").write_text("layered: {nope: 1}\n")

        result = CliRunner().invoke(main, ["--config", "bad.yaml", "config", "show"])

        assert result.exit_code == 1
        assert "nope" in str(result.exception)


class TestEvalCommands:
    def test_build_dataset(self, isolated_env: Path) -> None:
        messages = []
        for i in range(60):
            bot = i % 2 == 1
            messages.append({
                "chatId": "chat-1",
                "date": i,
                "text": f"reply {i}" if bot else f"what happened with lunch plan {i}",
                "isFromBot": bot,
            })
        write_platform_export(isolated_env / "source", "telegram", messages)

        result = CliRunner().invoke(main, [
            "eval", "build-dataset",
            "--source", "source",
            "--output", "out/cases.jsonl",
            "--target-cases", "5",
            "--variants-per-query", "1",
            "--min-history", "4",
            "--min-window", "7",
            "--max-window", "8",
        ])

        assert result.exit_code == 0, result.output
        assert "5 cases from 27 candidates" in result.output
        assert (isolated_env / "out" / "cases.jsonl").is_file()
        assert (isolated_env / "out" / "cases.meta.json").is_file()

    def test_run_writes_artifacts(self, isolated_env: Path) -> None:
        write_jsonl(isolated_env / "cases.jsonl", [
            {
                "id": "long",
                "query": "what did we pick for assignment?",
                "messages": make_conversation(41, lambda i: f"turn {i}: {LONG_TEXT}"),
                "labels": {"expectedEvidence": ["rebalancing"]},
            },
        ])

        result = CliRunner().invoke(main, [
            "eval", "run",
            "--dataset", "cases.jsonl",
            "--output-dir", "runs",
            "--run-id", "r1",
            "--max-recent-messages", "4",
            "--archive-chunk-size", "4",
        ])

        assert result.exit_code == 0, result.output
        assert "Completed run r1" in result.output
        pointer = json.loads((isolated_env / "runs" / "latest.json").read_text())
        assert pointer["runId"] == "r1"
        summary = json.loads((isolated_env / "runs" / "r1" / "summary.json").read_text())
        assert summary["config"]["layeredConfig"]["maxRecentMessages"] == 4
        assert summary["metrics"]["layeredApplication"]["appliedCaseCount"] == 1

    @pytest.mark.parametrize(
        ("extra_args", "expected_model"),
        [
            ([], "configured-summary-model"),
            (["--summary-model", "flag-summary-model"], "flag-summary-model"),
        ],
    )
    def test_llm_summaries_use_the_summarizer_model(
        self,
        isolated_env: Path,
        monkeypatch: pytest.MonkeyPatch,
        extra_args: list[str],
        expected_model: str,
    ) -> None:
        requested: list[str] = []
        fake = FakeChatModel("kafka consumer rebalancing")

        def fake_anthropic(model: str) -> FakeChatModel:
            requested.append(model)
            return fake

        monkeypatch.setattr(eval_cmd, "AnthropicChatModel", fake_anthropic)
        monkeypatch.setenv("STRATUM_SUMMARIZER_MODEL", "configured-summary-model")
        monkeypatch.setenv("STRATUM_TOPIC_MODEL", "topic-model")
        write_jsonl(isolated_env / "cases.jsonl", [
            {
                "id": "long",
                "query": "what did we pick for assignment?",
                "messages": make_conversation(41, lambda i: f"turn {i}: {LONG_TEXT}"),
            },
        ])

        result = CliRunner().invoke(main, [
            "eval", "run",
            "--dataset", "cases.jsonl",
            "--output-dir", "runs",
            "--run-id", "r1",
            "--llm-summaries",
            "--max-recent-messages", "4",
            "--archive-chunk-size", "4",
            *extra_args,
        ])

        assert result.exit_code == 0, result.output
        assert requested == [expected_model]
        assert fake.calls

    def test_gate_passes(self, isolated_env: Path) -> None:
        (isolated_env / "summary.json").write_text(json.dumps(_summary(0.3)))

        result = CliRunner().invoke(main, ["eval", "gate", "--summary", "summary.json"])

        assert result.exit_code == 0, result.output
        assert "Gate PASSED" in result.output

    def test_gate_fails(self, isolated_env: Path) -> None:
        (isolated_env / "summary.json").write_text(json.dumps(_summary(0.1)))

        result = CliRunner().invoke(main, ["eval", "gate", "--summary", "summary.json"])

        assert result.exit_code == 1
        assert "Gate FAILED" in result.output

    def test_gate_threshold_override(self, isolated_env: Path) -> None:
        (isolated_env / "summary.json").write_text(json.dumps(_summary(0.1)))

        result = CliRunner().invoke(
            main, ["eval", "gate", "--summary", "summary.json", "--min-token-savings", "0.05"]
        )

        assert result.exit_code == 0, result.output

    def test_topic_json(self, isolated_env: Path) -> None:
        write_jsonl(isolated_env / "topic.jsonl", [
            {
                "id": "t1",
                "query": "kafka consumer lag again",
                "messages": [{"role": "user", "content": "kafka consumer lag is growing"}],
                "metadata": {"stateBefore": "MAIN", "expectedTransition": "stay-main"},
            },
            {
                "id": "t2",
                "query": "no labels here",
                "messages": [{"role": "user", "content": "hello"}],
            },
        ])

        result = CliRunner().invoke(main, ["eval", "topic", "--dataset", "topic.jsonl", "--json"])

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["evaluatedCases"] == 1
        assert data["skippedCases"] == 1

    def test_generate_topic(self, isolated_env: Path) -> None:
        result = CliRunner().invoke(main, ["eval", "generate-topic", "--pairs", "mixed"])

        assert result.exit_code == 0, result.output
        assert "30 topic cases from 6 pairs" in result.output
        assert "hard: 2 pairs" in result.output
        lines = (isolated_env / "datasets" / "topic-mixed.v1.jsonl").read_text().splitlines()
        assert len(lines) == 30
        assert json.loads(lines[0])["id"] == "easy-stay-main-000"

    def test_generate_topic_rejects_a_broken_pair_file(self, isolated_env: Path) -> None:
        (isolated_env / "pairs.yaml").write_text("pairs: []\n")

        result = CliRunner().invoke(main, ["eval", "generate-topic", "--pairs", "pairs.yaml"])

        assert result.exit_code == 1
        assert "ST-4007" in str(result.exception)

    def test_generate_long_context_then_savings(self, isolated_env: Path) -> None:
        runner = CliRunner()

        generated = runner.invoke(main, [
            "eval", "generate-long-context",
            "--count", "4",
            "--history-rounds", "5",
            "--output", "long.jsonl",
        ])
        savings = runner.invoke(main, ["eval", "savings", "--dataset", "long.jsonl", "--limit", "3", "--json"])

        assert generated.exit_code == 0, generated.output
        assert "4 long-context cases from 3 templates" in generated.output
        assert "Messages per case: 16" in generated.output
        assert savings.exit_code == 0, savings.output
        data = json.loads(savings.output)
        assert data["caseCount"] == 3
        assert data["appliedCount"] == 3

    def test_generate_long_context_from_template(self, isolated_env: Path) -> None:
        write_jsonl(isolated_env / "templates.jsonl", [{
            "id": "billing-tpl",
            "query": "what did we pick for retries?",
            "messages": [{"role": "user", "content": "retries use backoff"}],
        }])

        result = CliRunner().invoke(main, [
            "eval", "generate-long-context",
            "--template", "templates.jsonl",
            "--count", "2",
            "--history-rounds", "1",
        ])

        assert result.exit_code == 0, result.output
        output = isolated_env / "datasets" / "long-context.v1.jsonl"
        rows = [json.loads(line) for line in output.read_text().splitlines()]
        assert [r["id"] for r in rows] == ["billing-tpl-long-0001", "billing-tpl-long-0002"]
        assert rows[0]["metadata"]["domain"] == "billing"


class TestContextInspect:
    def test_shows_nodes(self, isolated_env: Path) -> None:
        store = FileSystemArchiveStore(isolated_env / ".stratum")
        store.save_index(make_index([make_node("n1", "kafka lag discussion")], root_abstract="root summary"))

        result = CliRunner().invoke(main, ["context", "inspect", "--platform", "telegram", "--chat-id", "42"])

        assert result.exit_code == 0, result.output
        assert "telegram:42" in result.output
        assert "root summary" in result.output
        assert "n1" in result.output

    def test_missing_session(self, isolated_env: Path) -> None:
        result = CliRunner().invoke(main, ["context", "inspect", "telegram:404"])

        assert result.exit_code == 1
        assert "missing" in result.output

    def test_needs_a_session(self, isolated_env: Path) -> None:
        result = CliRunner().invoke(main, ["context", "inspect"])

        assert result.exit_code == 2
