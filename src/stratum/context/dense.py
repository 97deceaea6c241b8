"""Dense score augmentation through an external embedding service.

The provider embeds the query and every candidate in one request and turns
cosine similarities into [0, 1] scores. Any failure yields an empty map so
retrieval silently degrades to sparse-only scoring.
"""

from __future__ import annotations

import asyncio
import logging
import math
import os
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import httpx
import numpy as np

from stratum.context.text import DenseMetric, clamp01, normalize_dense_score, normalize_whitespace

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 1.2
MAX_CANDIDATES = 24

_VECTOR_FIELDS = ("embedding", "vector", "values")
_INDEX_FIELDS = ("index", "input_index", "position")
_LIST_FIELDS = ("data", "embeddings", "results")


@dataclass(frozen=True, slots=True)
class DenseCandidate:
    node_id: str
    content: str


@runtime_checkable
class DenseScoreProvider(Protocol):
    """Scores candidates against a query; returns {} when unavailable."""

    async def get_dense_scores(
        self, query: str, candidates: Sequence[DenseCandidate]
    ) -> dict[str, float]: ...


class NullDenseScoreProvider:
    """Provider used when dense scoring is disabled."""

    async def get_dense_scores(
        self, query: str, candidates: Sequence[DenseCandidate]
    ) -> dict[str, float]:
        return {}


def _number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str) and value.strip():
        try:
            parsed = float(value)
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def _vector(value: Any) -> list[float] | None:
    if isinstance(value, list) and value:
        numbers = [_number(v) for v in value]
        if any(n is None for n in numbers):
            return None
        return numbers  # type: ignore[return-value]
    if not isinstance(value, dict):
        return None
    for key in _VECTOR_FIELDS:
        parsed = _vector(value.get(key)) if isinstance(value.get(key), list) else None
        if parsed:
            return parsed
    nested = value.get("data")
    if isinstance(nested, dict):
        for key in _VECTOR_FIELDS:
            parsed = _vector(nested.get(key)) if isinstance(nested.get(key), list) else None
            if parsed:
                return parsed
    return None


def parse_embeddings(payload: Any) -> dict[int, list[float]]:
    """Extract ``{input_index: vector}`` from the common embedding payload shapes."""
    arrays: list[list[Any]] = []
    if isinstance(payload, list):
        arrays.append(payload)
    if isinstance(payload, dict):
        arrays.extend(payload[k] for k in _LIST_FIELDS if isinstance(payload.get(k), list))
        nested = payload.get("data")
        if isinstance(nested, dict):
            arrays.extend(nested[k] for k in _LIST_FIELDS if isinstance(nested.get(k), list))

    items = next((a for a in arrays if a), None)
    if not items:
        return {}

    vectors: dict[int, list[float]] = {}
    for position, item in enumerate(items):
        vector = _vector(item)
        if vector is None:
            continue
        index = position
        if isinstance(item, dict):
            for key in _INDEX_FIELDS:
                raw = _number(item.get(key))
                if raw is not None and raw >= 0:
                    index = int(raw)
                    break
        vectors[index] = vector
    return vectors


def cosine_similarity(left: Sequence[float], right: Sequence[float]) -> float:
    dims = min(len(left), len(right))
    if dims == 0:
        return 0.0
    a = np.asarray(left[:dims], dtype=np.float64)
    b = np.asarray(right[:dims], dtype=np.float64)
    denom = float(np.linalg.norm(a) * np.linalg.norm(b))
    if denom == 0.0:
        return 0.0
    return float(np.dot(a, b) / denom)


def raw_score(left: Sequence[float], right: Sequence[float], metric: DenseMetric | str) -> float:
    """Raw metric between two vectors in the backend's native scale."""
    metric = DenseMetric(metric)
    dims = min(len(left), len(right))
    if dims == 0:
        return math.inf if metric == DenseMetric.L2 else 0.0
    a = np.asarray(left[:dims], dtype=np.float64)
    b = np.asarray(right[:dims], dtype=np.float64)
    match metric:
        case DenseMetric.INNER_PRODUCT:
            return float(np.dot(a, b))
        case DenseMetric.L2:
            return float(np.linalg.norm(a - b))
        case _:
            return cosine_similarity(left, right)


@dataclass
class HttpEmbeddingScoreProvider:
    """OpenAI-compatible embeddings endpoint used as a dense scorer.

    Usage:
        provider = HttpEmbeddingScoreProvider(api_key="...")
        scores = await provider.get_dense_scores(query, candidates)
    """

    base_url: str = "https://api.openai.com/v1/embeddings"
    model: str = "text-embedding-3-small"
    api_key: str | None = None
    timeout: float = REQUEST_TIMEOUT
    max_candidates: int = MAX_CANDIDATES
    metric: DenseMetric | str = DenseMetric.COSINE
    transport: httpx.AsyncBaseTransport | None = None
    _client: httpx.AsyncClient | None = field(default=None, init=False, repr=False)

    @classmethod
    def from_env(cls, api_key_env: str, **kwargs: Any) -> HttpEmbeddingScoreProvider:
        return cls(api_key=os.environ.get(api_key_env), **kwargs)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self.transport)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, inputs: list[str]) -> dict[int, list[float]]:
        client = await self._get_client()
        response = await client.post(
            self.base_url,
            json={"model": self.model, "input": inputs},
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=self.timeout,
        )
        response.raise_for_status()
        return parse_embeddings(response.json())

    async def get_dense_scores(
        self, query: str, candidates: Sequence[DenseCandidate]
    ) -> dict[str, float]:
        if not candidates or not self.api_key or not self.base_url:
            return {}
        normalized_query = normalize_whitespace(query)
        if not normalized_query:
            return {}

        bounded = [
            DenseCandidate(c.node_id, normalize_whitespace(c.content))
            for c in candidates[: self.max_candidates]
        ]
        try:
            async with asyncio.timeout(self.timeout):
                vectors = await self._request([normalized_query, *(c.content for c in bounded)])
        except (TimeoutError, httpx.TimeoutException):
            logger.debug("Dense scoring timed out after %.1fs", self.timeout)
            return {}
        except httpx.HTTPError as e:
            logger.debug("Dense scoring request failed: %s", e)
            return {}
        except ValueError as e:
            logger.debug("Dense scoring returned an unparseable payload: %s", e)
            return {}

        query_vector = vectors.get(0)
        if query_vector is None:
            return {}

        scores: dict[str, float] = {}
        for i, candidate in enumerate(bounded, start=1):
            vector = vectors.get(i)
            if vector is None:
                continue
            raw = raw_score(query_vector, vector, self.metric)
            scores[candidate.node_id] = clamp01(normalize_dense_score(raw, self.metric))
        return scores
