"""Statistics for evaluation runs: distributions, bootstrap intervals, rates."""

from __future__ import annotations

import math
from collections.abc import Sequence

import numpy as np

from stratum.eval.types import DeltaInterval, Distribution

BOOTSTRAP_MIN_ITERATIONS = 600
BOOTSTRAP_MAX_ITERATIONS = 3000
BOOTSTRAP_ITERATIONS_PER_SAMPLE = 60


def percentile(values: Sequence[float], ratio: float) -> float:
    """Nearest-rank-below percentile: index ``floor((n - 1) * ratio)``."""
    if not values:
        return 0.0
    ordered = sorted(values)
    index = min(len(ordered) - 1, max(0, math.floor((len(ordered) - 1) * ratio)))
    return float(ordered[index])


def mean(values: Sequence[float]) -> float:
    return float(sum(values) / len(values)) if values else 0.0


def distribution(values: Sequence[float]) -> Distribution:
    if not values:
        return Distribution()
    return Distribution(
        mean=mean(values),
        p50=percentile(values, 0.5),
        p95=percentile(values, 0.95),
        min=float(min(values)),
        max=float(max(values)),
    )


def bootstrap_iterations(sample_count: int) -> int:
    return max(
        BOOTSTRAP_MIN_ITERATIONS,
        min(BOOTSTRAP_MAX_ITERATIONS, sample_count * BOOTSTRAP_ITERATIONS_PER_SAMPLE),
    )


def delta_interval(deltas: Sequence[float], seed: int = 42) -> DeltaInterval | None:
    """Mean of ``deltas`` with a seeded bootstrap 95% confidence interval.

    Each iteration resamples ``len(deltas)`` values with replacement; the
    bounds are the sorted sample means at ``floor(0.025 k)`` and
    ``floor(0.975 k)``. The same seed and input always give the same bounds.
    """
    if not deltas:
        return None

    values = np.asarray(deltas, dtype=float)
    k = bootstrap_iterations(len(values))
    rng = np.random.default_rng(seed)

    indices = rng.integers(0, len(values), size=(k, len(values)))
    sample_means = np.sort(values[indices].mean(axis=1))

    return DeltaInterval(
        mean=mean(deltas),
        lower95=float(sample_means[math.floor(k * 0.025)]),
        upper95=float(sample_means[min(k - 1, math.floor(k * 0.975))]),
        sample_count=len(values),
    )


def rate(values: Sequence[bool | None]) -> float | None:
    """Share of ``True`` among non-null values, ``None`` when all are null."""
    known = [v for v in values if v is not None]
    if not known:
        return None
    return sum(1 for v in known if v) / len(known)
