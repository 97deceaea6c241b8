"""Tests for configuration loading."""

from pathlib import Path

import pytest
import yaml

from stratum.config import (
    LayeredContextConfig,
    StratumConfig,
    load_config,
    save_default_config,
)
from stratum.core.errors import ErrorCode, StratumError


class TestLoadConfig:
    def test_defaults(self, isolated_env: Path) -> None:
        config = load_config(environ={})

        assert config == StratumConfig()
        assert config.layered.max_prompt_tokens == 32000
        assert config.eval.gate.min_token_savings == 0.18

    def test_project_file_is_clamped(self, isolated_env: Path) -> None:
        path = isolated_env / ".stratum" / "config.yaml"
        path.parent.mkdir()
        path.write_text(yaml.safe_dump({"layered": {"max_prompt_tokens": 1_000_000, "max_items_for_l2": 3}}))

        config = load_config(environ={})

        assert config.layered.max_prompt_tokens == 160000
        assert config.layered.max_items_for_l2 == 3

    def test_explicit_path_wins(self, isolated_env: Path) -> None:
        project = isolated_env / ".stratum" / "config.yaml"
        project.parent.mkdir()
        project.write_text(yaml.safe_dump({"topic": {"scorer": "llm"}}))
        explicit = isolated_env / "custom.yaml"
        explicit.write_text(yaml.safe_dump({"topic": {"scorer": "classifier"}}))

        assert load_config(explicit, environ={}).topic.scorer == "classifier"

    def test_environment_overrides(self, isolated_env: Path) -> None:
        config = load_config(environ={
            "STRATUM_LAYERED_MAX_PROMPT_TOKENS": "16000",
            "STRATUM_DENSE_ENABLED": "true",
            "STRATUM_EVAL_GATE_MIN_TOKEN_SAVINGS": "0.2",
            "STRATUM_EVAL_SEED": "7",
            "STRATUM_EVAL_UNKNOWN": "ignored",
        })

        assert config.layered.max_prompt_tokens == 16000
        assert config.dense.enabled is True
        assert config.eval.gate.min_token_savings == 0.2
        assert config.eval.seed == 7

    def test_summarizer_settings_are_separate_from_topic(self, isolated_env: Path) -> None:
        path = isolated_env / "custom.yaml"
        path.write_text(yaml.safe_dump({"topic": {"model": "topic-model"}, "summarizer": {"max_tokens": 512}}))

        config = load_config(path, environ={"STRATUM_SUMMARIZER_MODEL": "summary-model"})

        assert config.summarizer.model == "summary-model"
        assert config.summarizer.max_tokens == 512
        assert config.topic.model == "topic-model"

    def test_unknown_keys_are_rejected(self, isolated_env: Path) -> None:
        path = isolated_env / "bad.yaml"
        path.write_text(yaml.safe_dump({"layered": {"max_tokens": 1}}))

        with pytest.raises(StratumError) as exc_info:
            load_config(path, environ={})

        assert exc_info.value.code is ErrorCode.CONFIG_INVALID
        assert "max_tokens" in str(exc_info.value)

    def test_invalid_yaml(self, isolated_env: Path) -> None:
        path = isolated_env / "bad.yaml"
        path.write_text("layered: [unclosed")

        with pytest.raises(StratumError) as exc_info:
            load_config(path, environ={})
        assert exc_info.value.code is ErrorCode.CONFIG_INVALID

    def test_saved_defaults_round_trip(self, isolated_env: Path) -> None:
        path = save_default_config(isolated_env / "out" / "config.yaml")
        assert load_config(path, environ={}) == StratumConfig()


class TestClamping:
    def test_values_are_forced_into_range(self) -> None:
        clamped = LayeredContextConfig(
            score_threshold_high=5,
            top1_top2_margin=0,
            archive_chunk_size=1,
            max_recent_messages=500,
        ).clamped()

        assert clamped.score_threshold_high == 0.99
        assert clamped.top1_top2_margin == 0.01
        assert clamped.archive_chunk_size == 2
        assert clamped.max_recent_messages == 120

    def test_defaults_are_already_in_range(self) -> None:
        assert LayeredContextConfig().clamped() == LayeredContextConfig()
