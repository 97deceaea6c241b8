"""Build an evaluation dataset from exported chat history.

Reads ``<root>/<platform>-data/messages.json`` for each platform, groups
messages into conversations, samples windows that end at a user message and
auto-labels each window with the layer it should need and the evidence it
should surface. Selection balances the layer mix and caps how many cases a
single conversation may contribute.
"""

from __future__ import annotations

import json
import logging
import math
import random
import re
from collections import Counter, defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from stratum.context.retriever import classify_query
from stratum.context.text import extract_top_keywords, tokenize
from stratum.context.types import Layer, QueryMode
from stratum.core.errors import ErrorCode, dataset_error
from stratum.eval.dataset import write_dataset
from stratum.eval.types import EvalCase, EvalLabels

logger = logging.getLogger(__name__)

PLATFORMS: tuple[str, ...] = ("telegram", "discord", "slack", "whatsapp", "feishu")
CHANNEL_KEYED_PLATFORMS = frozenset({"discord", "slack"})

MAX_MESSAGE_CHARS = 2800
EVIDENCE_LIMIT = 4
SPECIAL_EVIDENCE_LIMIT = 3
EVIDENCE_KEYWORD_POOL = 28
EVIDENCE_CONTEXT_MESSAGES = 6
MIN_USER_TURNS = 4
MIN_ASSISTANT_TURNS = 3
LAYER_SHARES = {Layer.L0: 0.4, Layer.L1: 0.35}
AUTO_LABEL_METHOD = "keyword-heuristic-v1"

_REDACTIONS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}", re.IGNORECASE | re.ASCII), "<EMAIL>"),
    (re.compile(r"https?://\S+", re.IGNORECASE), "<URL>"),
    (re.compile(r"\b(?:\+?\d[\d\s-]{7,}\d)\b", re.ASCII), "<PHONE>"),
    (re.compile(r"\b(?:password|passwd|pwd)\s*[:=]\s*[^\s,;]+", re.IGNORECASE | re.ASCII), "password=<SECRET>"),
    (re.compile(r"(?:密码|口令)\s*(?:是|为|[:：])\s*[A-Za-z0-9._!@#$%^&*+=-]+"), "密码=<SECRET>"),
    (re.compile(r"\b(?:sk|pk|api|token|secret)[_-]?[a-z0-9_-]{12,}\b", re.IGNORECASE | re.ASCII), "<SECRET_TOKEN>"),
    (re.compile(r"\b\d{6,}\b", re.ASCII), "<LONG_NUM>"),
    (re.compile(r"@[a-zA-Z0-9_]{2,}"), "<MENTION>"),
)

_SPECIAL_EVIDENCE_RE = re.compile(
    r"[A-Za-z0-9._/-]+\.(?:ts|js|json|md|py|java|go|sh)|\b\d{2,}\b|<URL>", re.ASCII
)
_ID_UNSAFE_RE = re.compile(r"[^a-zA-Z0-9_-]")

_LAYER_FOR_MODE = {QueryMode.PRECISE: Layer.L2, QueryMode.STRUCTURED: Layer.L1, QueryMode.BROAD: Layer.L0}


@dataclass(slots=True)
class BuildOptions:
    """Sampling knobs; ``normalized()`` applies the supported minimums."""

    target_cases: int = 100
    max_cases_per_conversation: int | None = None
    """Defaults to ``max(8, floor(0.25 * target_cases))``."""

    strict_conversation_cap: bool = False
    variants_per_query: int = 3
    min_history_messages: int = 18
    min_window_messages: int = 22
    max_window_messages: int = 48
    min_query_chars: int = 5
    seed: int = 42
    redact: bool = True
    platforms: tuple[str, ...] = PLATFORMS

    def normalized(self) -> BuildOptions:
        target = max(1, self.target_cases)
        cap = self.max_cases_per_conversation
        platforms = tuple(p for p in (s.strip().lower() for s in self.platforms) if p in PLATFORMS)
        return BuildOptions(
            target_cases=target,
            max_cases_per_conversation=max(1, cap) if cap is not None else max(8, math.floor(target * 0.25)),
            strict_conversation_cap=self.strict_conversation_cap,
            variants_per_query=max(1, self.variants_per_query),
            min_history_messages=max(4, self.min_history_messages),
            min_window_messages=max(6, self.min_window_messages),
            max_window_messages=max(8, self.max_window_messages),
            min_query_chars=max(2, self.min_query_chars),
            seed=self.seed,
            redact=self.redact,
            platforms=platforms or PLATFORMS,
        )


@dataclass(frozen=True, slots=True)
class SourceMessage:
    platform: str
    chat_id: str
    date: int
    text: str
    from_bot: bool
    message_id: str


@dataclass(slots=True)
class Candidate:
    base_id: str
    platform: str
    chat_id: str
    layer: Layer
    query: str
    messages: list[dict[str, str]]
    evidence: list[str]
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def conversation(self) -> str:
        return f"{self.platform}:{self.chat_id}"


@dataclass(slots=True)
class BuildResult:
    cases: list[EvalCase]
    meta: dict[str, Any]
    dataset_path: Path | None = None
    meta_path: Path | None = None


# ----------------------------------------------------------------------
# Source parsing
# ----------------------------------------------------------------------


def redact_sensitive(text: str) -> str:
    for pattern, replacement in _REDACTIONS:
        text = pattern.sub(replacement, text)
    return text


def normalize_content(raw: Any, redact: bool = True) -> str:
    text = " ".join(raw.split()) if isinstance(raw, str) else ""
    if not text:
        return ""
    if redact:
        text = redact_sensitive(text)
    if len(text) > MAX_MESSAGE_CHARS:
        return f"{text[:MAX_MESSAGE_CHARS]} ..."
    return text


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and math.isfinite(value):
        return int(value)
    if isinstance(value, str):
        match = re.match(r"\s*-?\d+", value)
        if match:
            return int(match.group(0))
    return None


def _as_id(value: Any) -> str | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (str, int, float)):
        return str(value)
    return None


def parse_source_message(platform: str, raw: Any, redact: bool = True) -> SourceMessage | None:
    """One stored platform message, or ``None`` when it lacks a chat, date or text."""
    if not isinstance(raw, dict):
        return None
    chat_id = _as_id(raw.get("channelId" if platform in CHANNEL_KEYED_PLATFORMS else "chatId"))
    date = _as_int(raw.get("date"))
    if date is None:
        date = _as_int(raw.get("timestamp"))

    preferred = raw.get("text") if isinstance(raw.get("text"), str) else raw.get("content")
    text = normalize_content(preferred, redact)
    if not text:
        attachments = raw.get("attachments")
        if isinstance(attachments, list) and attachments:
            text = f"[Attachment x{len(attachments)}]"

    if not chat_id or date is None or not text:
        return None
    return SourceMessage(
        platform=platform,
        chat_id=chat_id,
        date=date,
        text=text,
        from_bot=raw.get("isFromBot") is True,
        message_id=_as_id(raw.get("messageId")) or "unknown",
    )


def load_platform_messages(root: Path, platform: str, redact: bool = True) -> list[SourceMessage]:
    path = root / f"{platform}-data" / "messages.json"
    if not path.exists():
        return []
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise dataset_error(ErrorCode.DATASET_PARSE_ERROR, path=str(path), line=e.lineno, detail=e.msg, cause=e) from e
    if not isinstance(raw, list):
        return []
    parsed = (parse_source_message(platform, item, redact) for item in raw)
    return sorted((m for m in parsed if m is not None), key=lambda m: m.date)


def group_conversations(messages: list[SourceMessage]) -> dict[str, list[SourceMessage]]:
    groups: dict[str, list[SourceMessage]] = defaultdict(list)
    for message in messages:
        groups[f"{message.platform}:{message.chat_id}"].append(message)
    for group in groups.values():
        group.sort(key=lambda m: m.date)
    return dict(groups)


# ----------------------------------------------------------------------
# Labelling
# ----------------------------------------------------------------------


def expected_layer(query: str) -> Layer:
    return _LAYER_FOR_MODE[classify_query(query)]


def special_evidence(text: str) -> list[str]:
    """Literal tokens worth recalling verbatim: file names, numbers, URLs."""
    found: list[str] = []
    for match in _SPECIAL_EVIDENCE_RE.findall(text):
        if match not in found:
            found.append(match)
        if len(found) >= SPECIAL_EVIDENCE_LIMIT:
            break
    return found


def expected_evidence(context: str, query: str) -> list[str]:
    query_terms = set(tokenize(query))
    evidence = special_evidence(context)
    for keyword in extract_top_keywords(context, EVIDENCE_KEYWORD_POOL):
        if keyword in query_terms or len(keyword) < 2:
            continue
        if keyword not in evidence:
            evidence.append(keyword)
        if len(evidence) >= EVIDENCE_LIMIT:
            break
    if not evidence:
        return [k for k in extract_top_keywords(query, 3) if len(k) >= 2][:3]
    return evidence[:EVIDENCE_LIMIT]


def safe_id(text: str) -> str:
    return _ID_UNSAFE_RE.sub("_", text)[:40]


# ----------------------------------------------------------------------
# Sampling
# ----------------------------------------------------------------------


def _window_size(options: BuildOptions, rng: random.Random) -> int:
    low = max(2, options.min_window_messages)
    high = max(low, options.max_window_messages)
    return low if high == low else rng.randint(low, high)


def conversation_candidates(
    conversation: str,
    messages: list[SourceMessage],
    options: BuildOptions,
    rng: random.Random,
) -> list[Candidate]:
    platform, _, chat_id = conversation.partition(":")
    candidates: list[Candidate] = []
    query_uses: Counter[str] = Counter()

    for i, anchor in enumerate(messages):
        if anchor.from_bot or len(anchor.text) < options.min_query_chars or i < options.min_history_messages:
            continue
        normalized = anchor.text.lower()
        if query_uses[normalized] >= options.variants_per_query:
            continue
        query_uses[normalized] += 1

        used_starts: set[int] = set()
        for variant in range(1, options.variants_per_query + 1):
            start = max(0, i - _window_size(options, rng) + 1)
            if start in used_starts:
                continue
            used_starts.add(start)

            window = messages[start : i + 1]
            if len(window) < options.min_window_messages:
                continue
            bot_turns = sum(1 for m in window if m.from_bot)
            if len(window) - bot_turns < MIN_USER_TURNS or bot_turns < MIN_ASSISTANT_TURNS:
                continue

            context = "\n".join(m.text for m in window[-(EVIDENCE_CONTEXT_MESSAGES + 1) : -1])
            candidates.append(Candidate(
                base_id=f"v1-{platform}-{safe_id(chat_id)}-{i:06d}-v{variant}",
                platform=platform,
                chat_id=chat_id,
                layer=expected_layer(anchor.text),
                query=anchor.text,
                messages=[
                    {"role": "assistant" if m.from_bot else "user", "content": m.text} for m in window
                ],
                evidence=expected_evidence(context, anchor.text),
                metadata={
                    "sourceMessageRange": {
                        "startIndex": start,
                        "endIndex": i,
                        "startMessageId": window[0].message_id,
                        "endMessageId": window[-1].message_id,
                    },
                    "sourceDateRange": {"start": window[0].date, "end": window[-1].date},
                    "sourceConversationSize": len(messages),
                    "autoLabelMethod": AUTO_LABEL_METHOD,
                },
            ))
    return candidates


def _pick_capped(
    pool: list[Candidate],
    limit: int,
    used: Counter[str],
    cap: int,
) -> tuple[list[Candidate], list[Candidate]]:
    picked, leftovers = [], []
    for candidate in pool:
        if len(picked) < limit and used[candidate.conversation] < cap:
            picked.append(candidate)
            used[candidate.conversation] += 1
        else:
            leftovers.append(candidate)
    return picked, leftovers


def layer_targets(target: int) -> dict[Layer, int]:
    l0 = math.floor(target * LAYER_SHARES[Layer.L0])
    l1 = math.floor(target * LAYER_SHARES[Layer.L1])
    return {Layer.L0: l0, Layer.L1: l1, Layer.L2: max(0, target - l0 - l1)}


def select_by_layer_mix(
    candidates: list[Candidate],
    target: int,
    cap: int,
    strict: bool,
    rng: random.Random,
) -> list[Candidate]:
    """Fill each layer's share under the per-conversation cap, then backfill.

    Strict selection never exceeds the cap and may return fewer than
    ``target`` cases; relaxed selection tops up from cap-blocked leftovers.
    """
    buckets: dict[Layer, list[Candidate]] = {layer: [] for layer in Layer}
    for candidate in candidates:
        buckets[candidate.layer].append(candidate)
    for layer in Layer:
        rng.shuffle(buckets[layer])

    used: Counter[str] = Counter()
    selected: list[Candidate] = []
    leftovers: list[Candidate] = []
    for layer, share in layer_targets(target).items():
        picked, rest = _pick_capped(buckets[layer], share, used, cap)
        selected.extend(picked)
        leftovers.extend(rest)

    if len(selected) < target:
        rng.shuffle(leftovers)
        picked, blocked = _pick_capped(leftovers, target - len(selected), used, cap)
        selected.extend(picked)
        if not strict and len(selected) < target:
            selected.extend(blocked[: target - len(selected)])

    return selected[:target]


def to_eval_cases(selected: list[Candidate]) -> list[EvalCase]:
    return [
        EvalCase(
            id=f"{c.base_id}-{index:04d}",
            query=c.query,
            messages=c.messages,
            platform=c.platform,
            chat_id=c.chat_id,
            labels=EvalLabels(
                expected_evidence=tuple(c.evidence),
                expected_layer_min=c.layer,
                tags=("auto-sampled", c.platform, c.layer.value),
            ),
            metadata=c.metadata,
        )
        for index, c in enumerate(selected, start=1)
    ]


def diversity_warnings(
    cases: list[EvalCase],
    conversation_count: int,
    options: BuildOptions,
) -> tuple[list[str], dict[str, Any]]:
    platforms = Counter(c.platform for c in cases)
    conversations = Counter(f"{c.platform}:{c.chat_id or 'default'}" for c in cases)
    top = conversations.most_common(5)
    dominant = top[0][1] / len(cases) if cases and top else 0.0
    cap = options.max_cases_per_conversation or 0
    cap_exceeded = any(count > cap for count in conversations.values())

    warnings = []
    if len(platforms) < 2:
        warnings.append("Only one platform appears in selected cases.")
    if conversation_count < 3:
        warnings.append("Very few source conversations were found; evaluation may be biased.")
    if dominant > 0.5:
        warnings.append("A single conversation dominates selected cases (>50%).")
    if cap_exceeded:
        warnings.append(
            "Conversation cap was relaxed to reach target case count; "
            "selected data remains concentration-prone."
        )
    if options.strict_conversation_cap and len(cases) < options.target_cases:
        warnings.append(
            "Strict conversation cap limited selected cases below target. "
            "Consider lowering targetCases or raising per-conversation cap."
        )

    stats = {
        "selectedPlatformCounts": dict(platforms),
        "selectedConversationCounts": dict(conversations),
        "topConversations": [{"conversation": k, "count": n} for k, n in top],
        "dominantConversationRatio": dominant,
        "capExceeded": cap_exceeded,
    }
    return warnings, stats


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def build_dataset(
    source_root: str | Path,
    options: BuildOptions | None = None,
    output_path: str | Path | None = None,
) -> BuildResult:
    """Sample, label and select cases; write JSONL and meta when ``output_path`` is set.

    Raises:
        StratumError: DATASET_NO_CANDIDATES when no window qualifies.
    """
    root = Path(source_root).expanduser()
    options = (options or BuildOptions()).normalized()
    rng = random.Random(options.seed)

    source_counts: dict[str, int] = {}
    all_messages: list[SourceMessage] = []
    for platform in options.platforms:
        platform_messages = load_platform_messages(root, platform, options.redact)
        source_counts[platform] = len(platform_messages)
        all_messages.extend(platform_messages)

    groups = group_conversations(all_messages)
    candidates: list[Candidate] = []
    for conversation, messages in groups.items():
        candidates.extend(conversation_candidates(conversation, messages, options, rng))

    if not candidates:
        raise dataset_error(
            ErrorCode.DATASET_NO_CANDIDATES,
            path=str(root),
            detail="try lowering min_history_messages or min_window_messages",
        )

    rng.shuffle(candidates)
    selected = select_by_layer_mix(
        candidates,
        options.target_cases,
        options.max_cases_per_conversation or 1,
        options.strict_conversation_cap,
        rng,
    )
    cases = to_eval_cases(selected)
    warnings, selection_stats = diversity_warnings(cases, len(groups), options)

    meta: dict[str, Any] = {
        "generatedAt": datetime.now(timezone.utc).isoformat(),
        "outputPath": str(output_path) if output_path else None,
        "sourceRoot": str(root),
        "options": {_camel(k): v for k, v in asdict(options).items()},
        "sourceCounts": source_counts,
        "conversationCount": len(groups),
        "candidateCount": len(candidates),
        "selectedCount": len(cases),
        "selectedLayerCounts": dict(Counter(
            c.labels.expected_layer_min.value for c in cases if c.labels.expected_layer_min
        )),
        **selection_stats,
        "diversityWarnings": warnings,
    }

    result = BuildResult(cases=cases, meta=meta)
    if output_path is not None:
        result.dataset_path = write_dataset(output_path, cases)
        result.meta_path = meta_path_for(result.dataset_path)
        result.meta_path.write_text(json.dumps(meta, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")

    logger.info(
        "Built %d cases from %d candidates across %d conversations",
        len(cases), len(candidates), len(groups),
    )
    for warning in warnings:
        logger.warning("Dataset diversity: %s", warning)
    return result


def meta_path_for(dataset_path: Path) -> Path:
    """``cases.jsonl`` -> ``cases.meta.json``."""
    if dataset_path.suffix.lower() == ".jsonl":
        return dataset_path.with_suffix(".meta.json")
    return dataset_path.with_name(dataset_path.name + ".meta.json")
