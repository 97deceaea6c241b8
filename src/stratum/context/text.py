"""Text similarity utilities.

Pure functions: tokenization, keyword extraction, token-target trimming,
sparse term-overlap scoring and dense score normalization.
"""

import math
import re
from collections import Counter
from enum import Enum

from stratum.context.tokens import estimate_text_tokens

STOPWORDS = frozenset({
    "the", "a", "an", "and", "or", "to", "for", "of", "in", "on", "at", "is", "are",
    "was", "were", "be", "been", "this", "that", "it", "as", "with", "by", "from",
    "about", "into", "through", "can", "could", "should", "would", "you", "your",
    "we", "they", "their", "our", "i", "he", "she", "them", "his", "her",
})

PHRASE_BONUS = 0.15

_SPLIT_RE = re.compile(r"[^a-z0-9_/.-]+")
_MANY_NEWLINES_RE = re.compile(r"\n{3,}")
_MANY_BLANKS_RE = re.compile(r"[ \t]{2,}")


class DenseMetric(str, Enum):
    """Raw metric reported by an embedding backend."""

    COSINE = "cosine"
    INNER_PRODUCT = "inner_product"
    L2 = "l2"


def normalize_whitespace(text: str) -> str:
    text = text.replace("\r\n", "\n")
    text = _MANY_NEWLINES_RE.sub("\n\n", text)
    text = _MANY_BLANKS_RE.sub(" ", text)
    return text.strip()


def tokenize(text: str) -> list[str]:
    """Lower-case terms of at least two characters, stopwords removed."""
    return [
        part
        for part in _SPLIT_RE.split(text.lower())
        if len(part) >= 2 and part not in STOPWORDS
    ]


def extract_top_keywords(text: str, max_keywords: int = 24) -> list[str]:
    """Most frequent terms, ties kept in first-seen order."""
    counts = Counter(tokenize(text))
    return [term for term, _ in counts.most_common(max_keywords)]


def trim_to_token_target(text: str, target_tokens: int) -> str:
    """Return the longest word prefix of ``text`` within ``target_tokens``.

    Always keeps at least the first word so callers never get an empty
    string back for non-empty input.
    """
    normalized = normalize_whitespace(text)
    if not normalized:
        return ""
    if estimate_text_tokens(normalized) <= target_tokens:
        return normalized

    words = normalized.split()
    low, high = 1, len(words)
    best = words[0]
    while low <= high:
        mid = (low + high) // 2
        candidate = " ".join(words[:mid])
        if estimate_text_tokens(candidate) <= target_tokens:
            best = candidate
            low = mid + 1
        else:
            high = mid - 1
    return best.strip()


def estimate_similarity(query: str, content: str) -> float:
    """Sparse relevance of ``content`` to ``query`` in [0, 1].

    Share of query terms present in the content, plus a flat bonus when the
    content contains the whole query verbatim. Repeated query terms count
    once per occurrence.
    """
    query_terms = tokenize(query)
    if not query_terms:
        return 0.0

    content_terms = set(tokenize(content))
    matched = sum(1 for term in query_terms if term in content_terms)
    overlap = matched / len(query_terms)
    phrase = query.strip().lower()
    bonus = PHRASE_BONUS if phrase and phrase in content.lower() else 0.0
    return min(1.0, overlap + bonus)


def clamp01(value: float) -> float:
    if not math.isfinite(value):
        return 0.0
    return max(0.0, min(1.0, value))


def normalize_dense_score(raw: float, metric: DenseMetric | str = DenseMetric.COSINE) -> float:
    """Map a raw embedding metric into [0, 1] so it can be blended.

    cosine in [-1, 1] is shifted linearly, an unbounded inner product goes
    through a logistic, and an L2 distance (smaller is closer) is inverted.
    """
    if not math.isfinite(raw):
        return 0.0
    match DenseMetric(metric):
        case DenseMetric.COSINE:
            value = (raw + 1.0) / 2.0
        case DenseMetric.INNER_PRODUCT:
            value = 1.0 / (1.0 + math.exp(-raw))
        case DenseMetric.L2:
            value = 1.0 / (1.0 + max(0.0, raw))
    return clamp01(value)


def blend_scores(sparse: float, dense: float | None, weight: float) -> float:
    """Convex combination of sparse and dense scores.

    ``weight`` is the dense share. A missing dense score leaves the sparse
    score untouched.
    """
    if dense is None:
        return sparse
    w = clamp01(weight)
    return clamp01((1.0 - w) * sparse + w * dense)
