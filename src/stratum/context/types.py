"""Data types for the layered context engine.

Persisted documents (index, archive payloads) use camelCase JSON keys so the
on-disk format is stable across implementations. ``from_dict`` raises
``KeyError``/``TypeError``/``ValueError`` on malformed input; the archive store
turns those into "no data".
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeAlias

INDEX_VERSION = 1
ROOT_NODE_ID = "root"

Message: TypeAlias = dict[str, Any]
"""A chat message: ``{"role": "user" | "assistant", "content": str | list[block]}``."""


class Layer(str, Enum):
    """Resolution tier of revealed context."""

    L0 = "L0"
    L1 = "L1"
    L2 = "L2"

    @property
    def rank(self) -> int:
        return int(self.value[1])


class QueryMode(str, Enum):
    """How much precision a query needs."""

    BROAD = "broad"
    STRUCTURED = "structured"
    PRECISE = "precise"


@dataclass(frozen=True, slots=True)
class TokenEstimate:
    """Token cost of revealing one node at each tier."""

    l0: int = 0
    l1: int = 0
    l2: int = 0

    def for_layer(self, layer: Layer) -> int:
        return {Layer.L0: self.l0, Layer.L1: self.l1, Layer.L2: self.l2}[layer]

    def to_dict(self) -> dict[str, int]:
        return {"l0": self.l0, "l1": self.l1, "l2": self.l2}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenEstimate:
        return cls(l0=int(data["l0"]), l1=int(data["l1"]), l2=int(data["l2"]))


@dataclass(slots=True)
class NodeMetadata:
    platform: str
    chat_id: str | None
    message_start: int
    message_end: int
    message_count: int
    recency_rank: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "platform": self.platform,
            "chatId": self.chat_id,
            "startMessageIndex": self.message_start,
            "endMessageIndex": self.message_end,
            "messageCount": self.message_count,
            "recencyRank": self.recency_rank,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NodeMetadata:
        return cls(
            platform=str(data["platform"]),
            chat_id=data.get("chatId"),
            message_start=int(data["startMessageIndex"]),
            message_end=int(data["endMessageIndex"]),
            message_count=int(data.get("messageCount", 0)),
            recency_rank=int(data.get("recencyRank", 0)),
        )


@dataclass(slots=True)
class ContextNode:
    """One archived chunk of conversation, stored at three resolutions."""

    id: str
    abstract: str
    overview: str
    full_content_path: str
    keywords: list[str]
    checksum: str
    metadata: NodeMetadata
    token_estimate: TokenEstimate
    parent_id: str | None = ROOT_NODE_ID
    created_at: int = 0
    updated_at: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "parentId": self.parent_id,
            "abstract": self.abstract,
            "overview": self.overview,
            "fullContentPath": self.full_content_path,
            "keywords": list(self.keywords),
            "checksum": self.checksum,
            "metadata": self.metadata.to_dict(),
            "tokenEstimate": self.token_estimate.to_dict(),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContextNode:
        keywords = data.get("keywords", [])
        if not isinstance(keywords, list):
            raise TypeError("keywords must be a list")
        return cls(
            id=str(data["id"]),
            parent_id=data.get("parentId"),
            abstract=str(data["abstract"]),
            overview=str(data["overview"]),
            full_content_path=str(data["fullContentPath"]),
            keywords=[str(k) for k in keywords],
            checksum=str(data.get("checksum", "")),
            metadata=NodeMetadata.from_dict(data["metadata"]),
            token_estimate=TokenEstimate.from_dict(data["tokenEstimate"]),
            created_at=int(data.get("createdAt", 0)),
            updated_at=int(data.get("updatedAt", 0)),
        )


@dataclass(slots=True)
class RootNode:
    """Session-wide summary placed ahead of every selection."""

    abstract: str = ""
    overview: str = ""
    keywords: list[str] = field(default_factory=list)
    child_ids: list[str] = field(default_factory=list)
    updated_at: int = 0
    id: str = ROOT_NODE_ID

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "abstract": self.abstract,
            "overview": self.overview,
            "keywords": list(self.keywords),
            "childIds": list(self.child_ids),
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RootNode:
        return cls(
            abstract=str(data.get("abstract", "")),
            overview=str(data.get("overview", "")),
            keywords=[str(k) for k in data.get("keywords", [])],
            child_ids=[str(c) for c in data.get("childIds", [])],
            updated_at=int(data.get("updatedAt", 0)),
        )


@dataclass(slots=True)
class IndexDocument:
    session_key: str
    root: RootNode
    nodes: list[ContextNode]
    created_at: int = 0
    updated_at: int = 0
    version: int = INDEX_VERSION

    def node(self, node_id: str) -> ContextNode | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "sessionKey": self.session_key,
            "root": self.root.to_dict(),
            "nodes": [n.to_dict() for n in self.nodes],
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IndexDocument:
        if data.get("version") != INDEX_VERSION:
            raise ValueError(f"unsupported index version: {data.get('version')!r}")
        nodes = data.get("nodes")
        if not isinstance(nodes, list):
            raise TypeError("nodes must be a list")
        return cls(
            session_key=str(data["sessionKey"]),
            root=RootNode.from_dict(data.get("root") or {}),
            nodes=[ContextNode.from_dict(n) for n in nodes],
            created_at=int(data.get("createdAt", 0)),
            updated_at=int(data.get("updatedAt", 0)),
        )


@dataclass(slots=True)
class ArchivePayload:
    """Full L2 transcript of one node."""

    session_key: str
    node_id: str
    transcript: str
    messages: list[Message]
    created_at: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionKey": self.session_key,
            "nodeId": self.node_id,
            "transcript": self.transcript,
            "messages": self.messages,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ArchivePayload:
        messages = data.get("messages", [])
        if not isinstance(messages, list):
            raise TypeError("messages must be a list")
        return cls(
            session_key=str(data["sessionKey"]),
            node_id=str(data["nodeId"]),
            transcript=str(data["transcript"]),
            messages=messages,
            created_at=int(data["createdAt"]),
        )


@dataclass(frozen=True, slots=True)
class Selection:
    node_id: str
    layer: Layer
    content: str
    score: float
    estimated_tokens: int
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodeId": self.node_id,
            "layer": self.layer.value,
            "content": self.content,
            "score": self.score,
            "estimatedTokens": self.estimated_tokens,
            "reason": self.reason,
        }


@dataclass(frozen=True, slots=True)
class EscalationDecision:
    reached_layer: Layer
    reason: str
    top1_score: float
    top1_top2_margin: float
    query_mode: QueryMode

    def to_dict(self) -> dict[str, Any]:
        return {
            "reachedLayer": self.reached_layer.value,
            "reason": self.reason,
            "top1Score": self.top1_score,
            "top1Top2Margin": self.top1_top2_margin,
            "queryMode": self.query_mode.value,
        }


@dataclass(frozen=True, slots=True)
class TokenUsage:
    l0: int = 0
    l1: int = 0
    l2: int = 0
    total: int = 0
    baseline_l2: int = 0
    savings: int = 0
    savings_ratio: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "l0": self.l0,
            "l1": self.l1,
            "l2": self.l2,
            "total": self.total,
            "baselineL2": self.baseline_l2,
            "savings": self.savings,
            "savingsRatio": self.savings_ratio,
        }


@dataclass(frozen=True, slots=True)
class RetrievalResult:
    selections: tuple[Selection, ...]
    decision: EscalationDecision
    token_usage: TokenUsage

    def to_dict(self) -> dict[str, Any]:
        return {
            "selections": [s.to_dict() for s in self.selections],
            "decision": self.decision.to_dict(),
            "tokenUsage": self.token_usage.to_dict(),
        }
