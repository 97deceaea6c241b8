"""Layered context engine: archive store, retrieval escalation and topic tracking."""

from stratum.context.dense import (
    DenseCandidate,
    DenseScoreProvider,
    HttpEmbeddingScoreProvider,
    NullDenseScoreProvider,
)
from stratum.context.indexer import ArchiveIndexer, IndexBuildResult
from stratum.context.manager import (
    ApplyResult,
    LayeredContextManager,
    build_prompt_block,
    create_layered_context_manager,
)
from stratum.context.retriever import LayeredRetriever, classify_query
from stratum.context.storage import ArchiveStore, FileSystemArchiveStore, session_key_for
from stratum.context.summarizer import ArchiveSummarizer
from stratum.context.topic import (
    LLMTopicClassifier,
    LLMTopicScorer,
    SparseTopicScorer,
    TopicDecision,
    TopicMode,
    TopicThresholds,
    TopicTransition,
    build_topic_reference,
    decide,
)
from stratum.context.types import (
    ArchivePayload,
    ContextNode,
    EscalationDecision,
    IndexDocument,
    Layer,
    QueryMode,
    RetrievalResult,
    Selection,
    TokenUsage,
)

__all__ = [
    "ApplyResult",
    "ArchiveIndexer",
    "ArchivePayload",
    "ArchiveStore",
    "ArchiveSummarizer",
    "ContextNode",
    "DenseCandidate",
    "DenseScoreProvider",
    "EscalationDecision",
    "FileSystemArchiveStore",
    "HttpEmbeddingScoreProvider",
    "IndexBuildResult",
    "IndexDocument",
    "LLMTopicClassifier",
    "LLMTopicScorer",
    "Layer",
    "LayeredContextManager",
    "LayeredRetriever",
    "NullDenseScoreProvider",
    "QueryMode",
    "RetrievalResult",
    "Selection",
    "SparseTopicScorer",
    "TokenUsage",
    "TopicDecision",
    "TopicMode",
    "TopicThresholds",
    "TopicTransition",
    "build_prompt_block",
    "build_topic_reference",
    "classify_query",
    "create_layered_context_manager",
    "decide",
    "session_key_for",
]
