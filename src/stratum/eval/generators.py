"""Synthetic evaluation datasets.

Two generators complement datasets built from real chat exports:

- Topic transition cases. Each domain pair (a main thread and a related
  side topic) yields five cases, one per expected topic decision. Pair sets
  live in YAML files; ``fuzzy`` and ``mixed`` ship with the package.
- Long-context cases. Template cases are padded with deterministic filler
  history so layered token savings can be measured on large prompts.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from importlib.resources import files
from pathlib import Path
from typing import Any

import yaml

from stratum.context.topic import TopicDecision, TopicMode
from stratum.context.types import Layer, Message
from stratum.core.errors import ErrorCode, StratumError, dataset_error
from stratum.eval.dataset import load_dataset
from stratum.eval.types import EvalCase, EvalLabels

logger = logging.getLogger(__name__)

BUILTIN_TOPIC_SETS = ("fuzzy", "mixed")

DEFAULT_LONG_CONTEXT_COUNT = 1000
DEFAULT_HISTORY_ROUNDS = 28
ANCHOR_MESSAGES = 12
LONG_CONTEXT_TAGS = ("long-context", "token-savings", "generated")

_SAMPLE_STRIDE = 997
_ROUND_STRIDE = 131

_QUERY_KEYS: dict[TopicDecision, str] = {
    TopicDecision.STAY_MAIN: "stay_main",
    TopicDecision.ENTER_TEMP: "enter_temp",
    TopicDecision.STAY_TEMP: "stay_temp",
    TopicDecision.REPLACE_TEMP: "replace_temp",
    TopicDecision.EXIT_TEMP: "exit_temp",
}


def _data_path(*parts: str) -> Path:
    return Path(str(files("stratum.eval").joinpath("data", *parts)))


def _invalid(path: Path | str, detail: str) -> StratumError:
    return dataset_error(ErrorCode.DATASET_INVALID_SOURCE, path=str(path), detail=detail)


def _load_yaml(path: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise dataset_error(ErrorCode.DATASET_NOT_FOUND, path=str(path), cause=e) from e
    except yaml.YAMLError as e:
        raise dataset_error(
            ErrorCode.DATASET_INVALID_SOURCE, path=str(path), detail=str(e), cause=e
        ) from e
    if not isinstance(data, dict):
        raise _invalid(path, "expected a mapping at the top level")
    return data


# ---------------------------------------------------------------------------
# Topic transition cases
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class DomainPair:
    """A main thread and a side topic that a query may drift into."""

    main_domain: str
    temp_domain: str
    main_reference: str
    main_messages: tuple[Message, ...]
    temp_messages: tuple[Message, ...]
    queries: dict[TopicDecision, str]
    difficulty: str | None = None


@dataclass(frozen=True, slots=True)
class PairSet:
    name: str
    id_prefix: str
    tag: str
    pairs: tuple[DomainPair, ...]


def _parse_messages(raw: Any, path: Path, where: str) -> tuple[Message, ...]:
    """Messages are written as one-key mappings: ``- user: text``."""
    if not isinstance(raw, list) or not raw:
        raise _invalid(path, f"{where} must be a non-empty list")
    messages = []
    for item in raw:
        if not isinstance(item, dict) or len(item) != 1:
            raise _invalid(path, f"{where} entries must look like '- user: text'")
        [(role, content)] = item.items()
        if role not in ("user", "assistant") or not isinstance(content, str) or not content.strip():
            raise _invalid(path, f"{where} has an invalid {role!r} message")
        messages.append({"role": role, "content": content.strip()})
    return tuple(messages)


def _parse_pair(raw: Any, path: Path, index: int) -> DomainPair:
    where = f"pair {index}"
    if not isinstance(raw, dict):
        raise _invalid(path, f"{where} must be a mapping")
    for key in ("main", "temp", "main_reference"):
        if not isinstance(raw.get(key), str) or not raw[key].strip():
            raise _invalid(path, f"{where} is missing {key!r}")

    raw_queries = raw.get("queries")
    if not isinstance(raw_queries, dict):
        raise _invalid(path, f"{where} is missing 'queries'")
    queries = {}
    for decision, key in _QUERY_KEYS.items():
        query = raw_queries.get(key)
        if not isinstance(query, str) or not query.strip():
            raise _invalid(path, f"{where} is missing the {key!r} query")
        queries[decision] = query.strip()

    difficulty = raw.get("difficulty")
    return DomainPair(
        main_domain=raw["main"].strip(),
        temp_domain=raw["temp"].strip(),
        main_reference=" ".join(raw["main_reference"].split()),
        main_messages=_parse_messages(raw.get("main_messages"), path, f"{where} main_messages"),
        temp_messages=_parse_messages(raw.get("temp_messages"), path, f"{where} temp_messages"),
        queries=queries,
        difficulty=str(difficulty) if difficulty else None,
    )


def load_pair_set(source: str | Path) -> PairSet:
    """Load a pair set by built-in name (``fuzzy``, ``mixed``) or YAML path.

    Raises:
        StratumError: DATASET_NOT_FOUND or DATASET_INVALID_SOURCE.
    """
    if str(source) in BUILTIN_TOPIC_SETS:
        path = _data_path("topics", f"{source}.yaml")
    else:
        path = Path(source)
    data = _load_yaml(path)

    raw_pairs = data.get("pairs")
    if not isinstance(raw_pairs, list) or not raw_pairs:
        raise _invalid(path, "'pairs' must be a non-empty list")
    name = str(data.get("name") or path.stem)
    return PairSet(
        name=name,
        id_prefix=str(data.get("id_prefix") or name),
        tag=str(data.get("tag") or f"{name}-boundary"),
        pairs=tuple(_parse_pair(raw, path, i) for i, raw in enumerate(raw_pairs)),
    )


def _topic_case(
    pair_set: PairSet,
    pair: DomainPair,
    index: int,
    decision: TopicDecision,
) -> EvalCase:
    state = TopicMode.MAIN if decision in (TopicDecision.STAY_MAIN, TopicDecision.ENTER_TEMP) else TopicMode.TEMP
    prefix = pair.difficulty or pair_set.id_prefix
    kind = f"difficulty-{pair.difficulty}" if pair.difficulty else pair_set.tag
    label = pair.difficulty or pair_set.name

    metadata: dict[str, Any] = {
        "stateBefore": state.value,
        "expectedTransition": decision.value,
        "mainDomain": pair.main_domain,
        "tempDomain": pair.temp_domain,
        "pairIndex": index,
        "purpose": f"{label} boundary: {pair.main_domain} vs {pair.temp_domain}",
    }
    if pair.difficulty:
        metadata["difficulty"] = pair.difficulty
    if state is TopicMode.TEMP:
        metadata["frozenMainReference"] = pair.main_reference
        messages = pair.temp_messages
    else:
        messages = pair.main_messages

    return EvalCase(
        id=f"{prefix}-{decision.value}-{index:03d}",
        query=pair.queries[decision],
        messages=[dict(m) for m in messages],
        platform="telegram",
        chat_id=None,
        labels=EvalLabels(tags=(
            "temporary-topic",
            kind,
            decision.value,
            f"main-{pair.main_domain}",
            f"temp-{pair.temp_domain}",
        )),
        metadata=metadata,
    )


def generate_topic_cases(pair_set: PairSet) -> list[EvalCase]:
    """Five labelled cases per pair, in pair order then decision order."""
    cases = [
        _topic_case(pair_set, pair, index, decision)
        for index, pair in enumerate(pair_set.pairs)
        for decision in TopicDecision
    ]
    logger.info("Generated %d topic cases from pair set %s", len(cases), pair_set.name)
    return cases


def difficulty_counts(pair_set: PairSet) -> Counter[str]:
    return Counter(pair.difficulty for pair in pair_set.pairs if pair.difficulty)


# ---------------------------------------------------------------------------
# Long-context cases
# ---------------------------------------------------------------------------


class FillerDomain(str, Enum):
    DEPLOYMENT = "deployment"
    BILLING = "billing"
    ONBOARDING = "onboarding"


@dataclass(frozen=True, slots=True)
class FillerVocabulary:
    user_template: str
    assistant_template: str
    user_topics: tuple[str, ...]
    assistant_topics: tuple[str, ...]
    assistant_offset: int = 1


@dataclass(frozen=True, slots=True)
class LongContextVocabulary:
    query_suffixes: tuple[str, ...]
    domains: dict[FillerDomain, FillerVocabulary]


def load_long_context_vocabulary(path: str | Path | None = None) -> LongContextVocabulary:
    source = Path(path) if path is not None else _data_path("long_context.yaml")
    data = _load_yaml(source)

    suffixes = data.get("query_suffixes")
    raw_domains = data.get("domains")
    if not isinstance(suffixes, list) or not suffixes or not isinstance(raw_domains, dict):
        raise _invalid(source, "expected 'query_suffixes' and 'domains'")

    domains = {}
    for domain in FillerDomain:
        raw = raw_domains.get(domain.value)
        if not isinstance(raw, dict) or not raw.get("user_topics") or not raw.get("assistant_topics"):
            raise _invalid(source, f"domain {domain.value!r} needs user_topics and assistant_topics")
        domains[domain] = FillerVocabulary(
            user_template=" ".join(str(raw.get("user_template", "{topic}")).split()),
            assistant_template=" ".join(str(raw.get("assistant_template", "{topic}")).split()),
            user_topics=tuple(str(t) for t in raw["user_topics"]),
            assistant_topics=tuple(str(t) for t in raw["assistant_topics"]),
            assistant_offset=int(raw.get("assistant_offset", 1)),
        )
    return LongContextVocabulary(tuple(str(s) for s in suffixes), domains)


def infer_filler_domain(case: EvalCase) -> FillerDomain:
    """Pick filler that matches the template: by id, then by expected layer."""
    layer = case.labels.expected_layer_min
    if "deploy" in case.id or layer is Layer.L2:
        return FillerDomain.DEPLOYMENT
    if "billing" in case.id or layer is Layer.L0:
        return FillerDomain.BILLING
    return FillerDomain.ONBOARDING


def _pick(values: tuple[str, ...], seed: int, offset: int) -> str:
    return values[(seed + offset) % len(values)]


def filler_round(vocab: FillerVocabulary, sample_index: int, round_index: int) -> list[Message]:
    """One deterministic user/assistant exchange for a sample and round."""
    seed = sample_index * _SAMPLE_STRIDE + round_index * _ROUND_STRIDE
    artifact = f"{sample_index + 1}-{round_index + 1}"
    user_topic = _pick(vocab.user_topics, seed, 0)
    assistant_topic = _pick(vocab.assistant_topics, seed, vocab.assistant_offset)
    return [
        {"role": "user", "content": vocab.user_template.format(artifact=artifact, topic=user_topic)},
        {"role": "assistant", "content": vocab.assistant_template.format(artifact=artifact, topic=assistant_topic)},
    ]


def _merge_tags(tags: tuple[str, ...]) -> tuple[str, ...]:
    return tuple(dict.fromkeys((*tags, *LONG_CONTEXT_TAGS)))


def generate_long_context_cases(
    templates: list[EvalCase],
    count: int = DEFAULT_LONG_CONTEXT_COUNT,
    history_rounds: int = DEFAULT_HISTORY_ROUNDS,
    vocabulary: LongContextVocabulary | None = None,
) -> list[EvalCase]:
    """Cycle through ``templates`` and pad each copy with filler history.

    Case ``i`` uses template ``i % len(templates)``: ``history_rounds``
    filler exchanges, then the first string-content template messages as an
    anchor, and the template query tagged with a batch number and a
    rotating instruction suffix.
    """
    if not templates:
        raise dataset_error(ErrorCode.DATASET_EMPTY, path="<templates>")
    vocab = vocabulary or load_long_context_vocabulary()

    cases = []
    for i in range(count):
        template = templates[i % len(templates)]
        domain = infer_filler_domain(template)
        anchor = [
            {"role": m["role"], "content": m["content"]}
            for m in template.messages
            if isinstance(m.get("content"), str)
        ][:ANCHOR_MESSAGES]
        messages: list[Message] = []
        for round_index in range(history_rounds):
            messages.extend(filler_round(vocab.domains[domain], i, round_index))
        messages.extend(anchor)

        suffix = vocab.query_suffixes[i % len(vocab.query_suffixes)]
        labels = template.labels
        cases.append(EvalCase(
            id=f"{template.id}-long-{i + 1:04d}",
            query=f"{template.query} Batch {i + 1}. {suffix}",
            messages=messages,
            platform=template.platform,
            chat_id=template.chat_id,
            labels=EvalLabels(
                expected_evidence=labels.expected_evidence,
                expected_layer_min=labels.expected_layer_min,
                reference_answer=labels.reference_answer,
                tags=_merge_tags(labels.tags),
            ),
            metadata={
                "sourceTemplateId": template.id,
                "sampleIndex": i + 1,
                "generatedBy": "stratum eval generate-long-context",
                "historyRounds": history_rounds,
                "messageCount": len(messages),
                "domain": domain.value,
            },
        ))
    logger.info("Generated %d long-context cases from %d templates", len(cases), len(templates))
    return cases


def load_templates(path: str | Path | None = None) -> list[EvalCase]:
    """Template cases from ``path``, or the templates shipped with the package."""
    return load_dataset(path if path is not None else _data_path("long_context_templates.jsonl"))
