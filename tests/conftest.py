"""Pytest fixtures for Stratum tests."""

from __future__ import annotations

import json
import os
from collections.abc import Callable
from pathlib import Path

import pytest

from stratum.context.storage import FileSystemArchiveStore
from stratum.context.topic import TopicScores
from stratum.context.types import (
    ContextNode,
    IndexDocument,
    NodeMetadata,
    RootNode,
    TokenEstimate,
)


class FakeChatModel:
    """Chat model double that replays canned replies and records prompts."""

    def __init__(self, reply: str | Callable[[str, str], str] = "", error: Exception | None = None) -> None:
        self.reply = reply
        self.error = error
        self.calls: list[tuple[str, str, int]] = []

    async def complete(self, system: str, prompt: str, max_tokens: int) -> str:
        self.calls.append((system, prompt, max_tokens))
        if self.error is not None:
            raise self.error
        if callable(self.reply):
            return self.reply(system, prompt)
        return self.reply


class FixedTopicScorer:
    """Topic scorer returning the same scores, or raising, for every query."""

    def __init__(self, rel_main: float = 0.0, rel_temp: float = 0.0, error: Exception | None = None) -> None:
        self.scores = TopicScores(rel_main, rel_temp)
        self.error = error
        self.calls = 0

    async def score(self, query: str, main_reference: str, temp_reference: str) -> TopicScores:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.scores


def make_node(
    node_id: str,
    abstract: str,
    overview: str = "",
    keywords: tuple[str, ...] = (),
    tokens: tuple[int, int, int] = (10, 50, 400),
    path: str = "",
    end: int = 0,
) -> ContextNode:
    return ContextNode(
        id=node_id,
        abstract=abstract,
        overview=overview or abstract,
        full_content_path=path,
        keywords=list(keywords),
        checksum=f"sum-{node_id}",
        metadata=NodeMetadata(
            platform="telegram",
            chat_id="42",
            message_start=max(0, end - 7),
            message_end=end,
            message_count=8,
        ),
        token_estimate=TokenEstimate(*tokens),
    )


def make_index(nodes: list[ContextNode], root_abstract: str = "", session_key: str = "telegram:42") -> IndexDocument:
    return IndexDocument(
        session_key=session_key,
        root=RootNode(abstract=root_abstract, child_ids=[n.id for n in nodes]),
        nodes=nodes,
    )


def make_conversation(count: int, text: Callable[[int], str] | None = None) -> list[dict[str, str]]:
    """Alternating user/assistant messages; index 0 is a user message."""
    text = text or (lambda i: f"message {i} about topic {i % 5}")
    return [
        {"role": "user" if i % 2 == 0 else "assistant", "content": text(i)}
        for i in range(count)
    ]


def write_platform_export(root: Path, platform: str, messages: list[dict]) -> Path:
    path = root / f"{platform}-data" / "messages.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(messages), encoding="utf-8")
    return path


def write_jsonl(path: Path, rows: list[dict | str]) -> Path:
    lines = [row if isinstance(row, str) else json.dumps(row) for row in rows]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


@pytest.fixture
def store(tmp_path: Path) -> FileSystemArchiveStore:
    """Archive store rooted in a fresh temporary directory."""
    return FileSystemArchiveStore(tmp_path)


@pytest.fixture
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Run from an empty directory with no user config or STRATUM_* variables."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    for key in list(os.environ):
        if key.startswith("STRATUM_"):
            monkeypatch.delenv(key)
    return tmp_path
