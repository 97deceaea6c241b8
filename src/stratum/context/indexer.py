"""Builds and refreshes the per-session index from archived messages."""

from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass, field, replace

from stratum.config import LayeredContextConfig
from stratum.context.messages import split_into_chunks, to_transcript
from stratum.context.storage import ArchiveStore
from stratum.context.summarizer import ArchiveSummarizer, SummaryResult
from stratum.context.text import extract_top_keywords
from stratum.context.tokens import estimate_text_tokens
from stratum.context.types import (
    ROOT_NODE_ID,
    ArchivePayload,
    ContextNode,
    IndexDocument,
    Message,
    NodeMetadata,
    RootNode,
    TokenEstimate,
)

logger = logging.getLogger(__name__)

NO_ARCHIVES_TEXT = "No archived context is available."


def checksum_of(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


def node_id_for(checksum: str) -> str:
    return f"archive_{checksum[:14]}"


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(slots=True)
class IndexBuildResult:
    index: IndexDocument
    fallback_events: list[str] = field(default_factory=list)
    reused: int = 0
    created: int = 0


class ArchiveIndexer:
    """Chunks archived history into nodes and persists the index.

    Unchanged chunks are recognised by checksum and reuse their existing
    node, so only new history is summarized.
    """

    def __init__(self, store: ArchiveStore, summarizer: ArchiveSummarizer) -> None:
        self._store = store
        self._summarizer = summarizer

    async def build(
        self,
        session_key: str,
        archived_messages: list[Message],
        config: LayeredContextConfig,
        platform: str = "unknown",
        chat_id: str | None = None,
    ) -> IndexBuildResult:
        now = now_ms()
        existing = self._store.load_index(session_key)
        cached = {node.checksum: node for node in (existing.nodes if existing else [])}

        limit = config.max_archives * config.archive_chunk_size
        bounded = archived_messages[-limit:] if len(archived_messages) > limit else archived_messages
        events: list[str] = []
        created = reused = 0

        def note(outcome: SummaryResult) -> None:
            if outcome.fallback_used and outcome.fallback_reason:
                events.append(outcome.fallback_reason)

        nodes: list[ContextNode] = []
        seen: set[str] = set()
        cursor = 0
        for chunk in split_into_chunks(bounded, config.archive_chunk_size):
            start, end = cursor, cursor + len(chunk) - 1
            cursor += len(chunk)
            transcript = to_transcript(chunk)
            if not transcript:
                continue

            metadata = NodeMetadata(
                platform=platform,
                chat_id=chat_id,
                message_start=start,
                message_end=end,
                message_count=len(chunk),
            )
            checksum = checksum_of(transcript)
            if checksum in seen:
                continue
            seen.add(checksum)
            previous = cached.get(checksum)
            if previous is not None:
                nodes.append(replace(
                    previous,
                    metadata=replace(metadata, recency_rank=previous.metadata.recency_rank),
                    updated_at=now,
                ))
                reused += 1
                continue

            overview = await self._summarizer.summarize(transcript, config.l1_target_tokens)
            abstract = await self._summarizer.abstract(overview.text, config.l0_target_tokens)
            note(overview)
            note(abstract)

            node_id = node_id_for(checksum)
            path = self._store.write_archive(
                session_key,
                node_id,
                ArchivePayload(session_key, node_id, transcript, chunk, now),
            )
            nodes.append(ContextNode(
                id=node_id,
                abstract=abstract.text,
                overview=overview.text,
                full_content_path=path,
                keywords=extract_top_keywords(f"{abstract.text}\n{overview.text}"),
                checksum=checksum,
                metadata=metadata,
                token_estimate=TokenEstimate(
                    l0=estimate_text_tokens(abstract.text),
                    l1=estimate_text_tokens(overview.text),
                    l2=estimate_text_tokens(transcript),
                ),
                parent_id=ROOT_NODE_ID,
                created_at=now,
                updated_at=now,
            ))
            created += 1

        newest_first = sorted(nodes, key=lambda n: n.metadata.message_end, reverse=True)
        kept = [
            replace(node, metadata=replace(node.metadata, recency_rank=rank))
            for rank, node in enumerate(newest_first[: config.max_archives], start=1)
        ]

        root_source = "\n\n".join(f"Archive {node.id}\n{node.overview}" for node in kept)
        root_overview = await self._summarizer.summarize(
            root_source or NO_ARCHIVES_TEXT, config.l1_target_tokens
        )
        root_abstract = await self._summarizer.abstract(root_overview.text, config.l0_target_tokens)
        note(root_overview)
        note(root_abstract)

        child_keywords = " ".join(k for node in kept for k in node.keywords)
        doc = IndexDocument(
            session_key=session_key,
            root=RootNode(
                abstract=root_abstract.text,
                overview=root_overview.text,
                keywords=extract_top_keywords(
                    f"{root_abstract.text}\n{root_overview.text}\n{child_keywords}"
                ),
                child_ids=[node.id for node in kept],
                updated_at=now,
            ),
            nodes=kept,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )

        # Cleanup must use the snapshot that was just saved.
        self._store.save_index(doc)
        self._store.cleanup_archives(session_key, {node.id for node in kept})

        logger.info(
            "Indexed %s: %d nodes (%d new, %d reused)",
            session_key, len(kept), created, reused,
        )
        return IndexBuildResult(doc, events, reused=reused, created=created)
