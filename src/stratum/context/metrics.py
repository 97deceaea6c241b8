"""Running counters for layered context applications."""

from dataclasses import dataclass
from typing import Any

from stratum.context.types import RetrievalResult


@dataclass(frozen=True, slots=True)
class MetricsSnapshot:
    total_runs: int
    total_savings_tokens: int
    avg_savings_tokens: float
    avg_savings_ratio: float
    fallback_events: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalRuns": self.total_runs,
            "totalSavingsTokens": self.total_savings_tokens,
            "avgSavingsTokens": self.avg_savings_tokens,
            "avgSavingsRatio": self.avg_savings_ratio,
            "fallbackEvents": self.fallback_events,
        }


class LayeredContextMetrics:
    """Accumulates savings per retrieval and summarizer fallbacks."""

    def __init__(self) -> None:
        self._runs = 0
        self._savings_tokens = 0
        self._savings_ratio = 0.0
        self._fallbacks = 0

    def record_retrieval(self, result: RetrievalResult) -> None:
        self._runs += 1
        self._savings_tokens += result.token_usage.savings
        self._savings_ratio += result.token_usage.savings_ratio

    def record_fallback(self, count: int = 1) -> None:
        self._fallbacks += count

    def snapshot(self) -> MetricsSnapshot:
        runs = self._runs
        return MetricsSnapshot(
            total_runs=runs,
            total_savings_tokens=self._savings_tokens,
            avg_savings_tokens=self._savings_tokens / runs if runs else 0.0,
            avg_savings_ratio=self._savings_ratio / runs if runs else 0.0,
            fallback_events=self._fallbacks,
        )
