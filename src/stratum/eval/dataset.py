"""JSONL evaluation dataset loading.

One case per line; blank lines and ``#`` comments are skipped. Any
malformed line aborts the whole load with a ``StratumError`` naming the
offending line.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from stratum.context.messages import VALID_ROLES
from stratum.context.types import Layer
from stratum.core.errors import ErrorCode, StratumError, dataset_error
from stratum.eval.types import EvalCase, EvalLabels

DEFAULT_PLATFORM = "telegram"


def _unique_strings(value: Any) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    seen: dict[str, None] = {}
    for item in value:
        if isinstance(item, str) and item.strip():
            seen.setdefault(item.strip(), None)
    return tuple(seen)


def parse_labels(raw: Any) -> EvalLabels:
    """Normalize a labels object; unknown or invalid fields are dropped."""
    if not isinstance(raw, dict):
        return EvalLabels()
    layer_raw = raw.get("expectedLayerMin")
    layer = None
    if isinstance(layer_raw, str) and layer_raw.strip() in {member.value for member in Layer}:
        layer = Layer(layer_raw.strip())
    reference = raw.get("referenceAnswer")
    reference = reference.strip() if isinstance(reference, str) else ""
    return EvalLabels(
        expected_evidence=_unique_strings(raw.get("expectedEvidence")),
        expected_layer_min=layer,
        reference_answer=reference or None,
        tags=_unique_strings(raw.get("tags")),
    )


def parse_case(raw: Any, path: str = "", line: int | None = None) -> EvalCase:
    """Validate one decoded JSON object and build an ``EvalCase``.

    Raises:
        StratumError: DATASET_INVALID_CASE for any structural problem.
    """

    def invalid(detail: str) -> StratumError:
        return dataset_error(ErrorCode.DATASET_INVALID_CASE, path=path, line=line, detail=detail)

    if not isinstance(raw, dict):
        raise invalid("expected a JSON object")

    case_id = raw.get("id")
    case_id = case_id.strip() if isinstance(case_id, str) else ""
    if not case_id:
        raise invalid('missing a valid "id"')

    query = raw.get("query")
    query = query.strip() if isinstance(query, str) else ""
    if not query:
        raise invalid(f'case "{case_id}" is missing a valid "query"')

    raw_messages = raw.get("messages")
    if not isinstance(raw_messages, list) or not raw_messages:
        raise invalid(f'case "{case_id}" must define a non-empty "messages" array')

    messages = []
    for index, message in enumerate(raw_messages):
        if not isinstance(message, dict):
            raise invalid(f'case "{case_id}" message {index} must be an object')
        role = message.get("role")
        role = role.strip() if isinstance(role, str) else ""
        if role not in VALID_ROLES:
            raise invalid(f'case "{case_id}" message {index} has invalid role {message.get("role")!r}')
        content = message.get("content")
        content = content.strip() if isinstance(content, str) else ""
        if not content:
            raise invalid(f'case "{case_id}" message {index} must have non-empty string content')
        messages.append({"role": role, "content": content})

    platform = raw.get("platform")
    platform = platform.strip() if isinstance(platform, str) and platform.strip() else DEFAULT_PLATFORM
    chat_id = raw.get("chatId")
    metadata = raw.get("metadata")

    return EvalCase(
        id=case_id,
        query=query,
        messages=messages,
        platform=platform,
        chat_id=chat_id.strip() if isinstance(chat_id, str) else None,
        labels=parse_labels(raw.get("labels")),
        metadata=metadata if isinstance(metadata, dict) else {},
    )


def load_dataset(path: str | Path) -> list[EvalCase]:
    """Load and validate every case in a JSONL dataset.

    Raises:
        StratumError: DATASET_NOT_FOUND, DATASET_PARSE_ERROR,
            DATASET_INVALID_CASE, DATASET_DUPLICATE_ID or DATASET_EMPTY.
    """
    dataset_path = Path(path)
    try:
        text = dataset_path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise dataset_error(ErrorCode.DATASET_NOT_FOUND, path=str(dataset_path), cause=e) from e

    cases: list[EvalCase] = []
    seen: set[str] = set()
    for line_number, line in enumerate(text.splitlines(), start=1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        try:
            raw = json.loads(line)
        except json.JSONDecodeError as e:
            raise dataset_error(
                ErrorCode.DATASET_PARSE_ERROR,
                path=str(dataset_path),
                line=line_number,
                detail=e.msg,
                cause=e,
            ) from e
        case = parse_case(raw, str(dataset_path), line_number)
        if case.id in seen:
            raise dataset_error(
                ErrorCode.DATASET_DUPLICATE_ID,
                path=str(dataset_path),
                line=line_number,
                case_id=case.id,
            )
        seen.add(case.id)
        cases.append(case)

    if not cases:
        raise dataset_error(ErrorCode.DATASET_EMPTY, path=str(dataset_path))
    return cases


def write_dataset(path: str | Path, cases: list[EvalCase]) -> Path:
    """Write cases as JSONL, one object per line."""
    dataset_path = Path(path)
    dataset_path.parent.mkdir(parents=True, exist_ok=True)
    with open(dataset_path, "w", encoding="utf-8") as f:
        for case in cases:
            f.write(json.dumps(case.to_dict(), ensure_ascii=False))
            f.write("\n")
    return dataset_path
