"""Stratum configuration management.

Loads configuration from .stratum/config.yaml with sensible defaults.
All settings can be overridden via environment variables (STRATUM_*).

Config locations (in priority order):
1. Explicit path passed to load_config()
2. .stratum/config.yaml (project-local)
3. ~/.stratum/config.yaml (user-global)
4. Built-in defaults

There is no process-wide config object. ``load_config()`` returns a fresh
``StratumConfig`` that the caller passes to the components it builds.
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from stratum.core.errors import ErrorCode, config_error

logger = logging.getLogger(__name__)


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


@dataclass(slots=True)
class LayeredContextConfig:
    """Retrieval and compression knobs for one engine instance."""

    score_threshold_high: float = 0.64
    """Minimum top-1 similarity to trust L0 alone."""

    top1_top2_margin: float = 0.08
    """Minimum gap between the best and second-best node."""

    max_items_for_l1: int = 4
    max_items_for_l2: int = 2

    l0_target_tokens: int = 120
    """Token target for generated abstracts."""

    l1_target_tokens: int = 1200
    """Token target for generated overviews."""

    max_prompt_tokens: int = 32000
    """Hard budget for the assembled prompt."""

    enable_session_compression: bool = True
    max_archives: int = 12
    max_recent_messages: int = 24
    archive_chunk_size: int = 8

    def clamped(self) -> LayeredContextConfig:
        """Return a copy with every field forced into its supported range."""
        return LayeredContextConfig(
            score_threshold_high=_clamp(float(self.score_threshold_high), 0.1, 0.99),
            top1_top2_margin=_clamp(float(self.top1_top2_margin), 0.01, 0.8),
            max_items_for_l1=int(_clamp(int(self.max_items_for_l1), 1, 12)),
            max_items_for_l2=int(_clamp(int(self.max_items_for_l2), 1, 6)),
            l0_target_tokens=int(_clamp(int(self.l0_target_tokens), 40, 300)),
            l1_target_tokens=int(_clamp(int(self.l1_target_tokens), 300, 4000)),
            max_prompt_tokens=int(_clamp(int(self.max_prompt_tokens), 4000, 160000)),
            enable_session_compression=bool(self.enable_session_compression),
            max_archives=int(_clamp(int(self.max_archives), 1, 60)),
            max_recent_messages=int(_clamp(int(self.max_recent_messages), 2, 120)),
            archive_chunk_size=int(_clamp(int(self.archive_chunk_size), 2, 30)),
        )


@dataclass(slots=True)
class DenseConfig:
    """Optional embedding service used to augment sparse scores."""

    enabled: bool = False
    base_url: str = "https://api.openai.com/v1/embeddings"
    model: str = "text-embedding-3-small"
    api_key_env: str = "STRATUM_EMBEDDING_API_KEY"
    timeout: float = 1.2
    """Hard request timeout in seconds."""

    max_candidates: int = 24
    weight: float = 0.4
    """Share of the dense score in the blended score."""

    metric: str = "cosine"


@dataclass(slots=True)
class TopicConfig:
    """Topic transition thresholds and scorer selection."""

    enter_threshold: float = 0.55
    exit_threshold: float = 0.55
    temp_stay_threshold: float = 0.8
    scorer: str = "sparse"
    """One of: sparse, llm, classifier."""

    model: str = "claude-3-5-haiku-latest"
    max_tokens: int = 2048
    reference_messages: int = 8


@dataclass(slots=True)
class SummarizerConfig:
    """Model that writes L0 abstracts and L1 overviews when LLM summaries are on."""

    model: str = "claude-3-5-haiku-latest"
    max_tokens: int = 2048


@dataclass(slots=True)
class GateThresholds:
    min_token_savings: float = 0.18
    max_evidence_recall_drop: float = 0.03
    max_information_loss_rate: float = 0.05
    min_layer_adequacy_rate: float = 0.8


@dataclass(slots=True)
class EvalConfig:
    """Settings scoped to one evaluation run."""

    seed: int = 42
    output_dir: str = ".stratum/eval-runs"
    storage_dir: str | None = None
    """Archive storage root; a temporary directory when unset."""

    gate: GateThresholds = field(default_factory=GateThresholds)


@dataclass(slots=True)
class StratumConfig:
    """Root configuration object."""

    layered: LayeredContextConfig = field(default_factory=LayeredContextConfig)
    dense: DenseConfig = field(default_factory=DenseConfig)
    topic: TopicConfig = field(default_factory=TopicConfig)
    summarizer: SummarizerConfig = field(default_factory=SummarizerConfig)
    eval: EvalConfig = field(default_factory=EvalConfig)
    storage_dir: str = ".stratum"
    verbose: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _deep_update(base: dict, updates: dict) -> dict:
    """Recursively update a dict with another dict."""
    for key, value in updates.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_update(base[key], value)
        else:
            base[key] = value
    return base


def _coerce(value: str) -> Any:
    if value.lower() in ("true", "false"):
        return value.lower() == "true"
    if value.isdigit() or (value.startswith("-") and value[1:].isdigit()):
        return int(value)
    try:
        return float(value)
    except ValueError:
        return value


def _apply_env_overrides(config_dict: dict, environ: dict[str, str] | None = None) -> dict:
    """Apply environment variable overrides.

    Environment variables follow pattern: STRATUM_SECTION_KEY

    Examples:
        STRATUM_LAYERED_MAX_PROMPT_TOKENS=16000
        STRATUM_DENSE_ENABLED=true
        STRATUM_EVAL_GATE_MIN_TOKEN_SAVINGS=0.2
    """
    prefix = "STRATUM_"
    env = os.environ if environ is None else environ

    known_sections: dict[str, set[str]] = {
        "layered": {f.name for f in fields(LayeredContextConfig)},
        "dense": {f.name for f in fields(DenseConfig)},
        "topic": {f.name for f in fields(TopicConfig)},
        "summarizer": {f.name for f in fields(SummarizerConfig)},
        "eval": {f.name for f in fields(EvalConfig)} - {"gate"},
        "eval_gate": {f.name for f in fields(GateThresholds)},
    }

    for key, value in env.items():
        if not key.startswith(prefix):
            continue
        path_str = key[len(prefix):].lower()

        # Longest section first so eval_gate wins over eval
        for section in sorted(known_sections, key=len, reverse=True):
            if not path_str.startswith(section + "_"):
                continue
            name = path_str[len(section) + 1:]
            if name not in known_sections[section]:
                break
            target = config_dict
            for part in section.split("_"):
                target = target.setdefault(part, {})
            target[name] = _coerce(value)
            break

    return config_dict


def _build(cls: type, data: Any, key: str) -> Any:
    if not isinstance(data, dict):
        raise config_error(ErrorCode.CONFIG_INVALID, key=key, detail="expected a mapping")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise config_error(
            ErrorCode.CONFIG_INVALID, key=key, detail=f"unknown keys: {', '.join(unknown)}"
        )
    return cls(**data)


def _dict_to_config(data: dict) -> StratumConfig:
    """Convert a dict to StratumConfig."""
    eval_data = dict(data.get("eval", {}))
    gate = _build(GateThresholds, eval_data.pop("gate", {}), "eval.gate")
    return StratumConfig(
        layered=_build(LayeredContextConfig, data.get("layered", {}), "layered").clamped(),
        dense=_build(DenseConfig, data.get("dense", {}), "dense"),
        topic=_build(TopicConfig, data.get("topic", {}), "topic"),
        summarizer=_build(SummarizerConfig, data.get("summarizer", {}), "summarizer"),
        eval=_build(EvalConfig, {**eval_data, "gate": gate}, "eval"),
        storage_dir=data.get("storage_dir", ".stratum"),
        verbose=data.get("verbose", False),
    )


def load_config(
    path: str | Path | None = None,
    environ: dict[str, str] | None = None,
) -> StratumConfig:
    """Load configuration from file with defaults and env overrides.

    Priority (highest to lowest):
    1. Environment variables (STRATUM_*)
    2. Explicit path if provided
    3. .stratum/config.yaml (project-local)
    4. ~/.stratum/config.yaml (user-global)
    5. Built-in defaults

    Args:
        path: Optional explicit config file path.
        environ: Environment mapping, ``os.environ`` when omitted.

    Returns:
        A new StratumConfig instance.

    Raises:
        StratumError: When a config file contains unknown keys or bad YAML.
    """
    config_dict: dict[str, Any] = StratumConfig().to_dict()

    config_paths: list[Path] = []
    if path:
        config_paths.append(Path(path))
    config_paths.extend([
        Path(".stratum/config.yaml"),
        Path.home() / ".stratum" / "config.yaml",
    ])

    for config_path in config_paths:
        if not config_path.exists():
            continue
        try:
            with open(config_path) as f:
                file_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise config_error(
                ErrorCode.CONFIG_INVALID, key=str(config_path), detail=str(e)
            ) from e
        logger.debug("Loaded config from %s", config_path)
        _deep_update(config_dict, file_config)
        break  # Use first found config

    config_dict = _apply_env_overrides(config_dict, environ)
    return _dict_to_config(config_dict)


def save_default_config(path: str | Path = ".stratum/config.yaml") -> Path:
    """Write the default configuration as YAML and return its path."""
    config_path = Path(path)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        yaml.safe_dump(StratumConfig().to_dict(), f, sort_keys=False)
    return config_path
