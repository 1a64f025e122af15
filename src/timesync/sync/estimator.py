"""Reduction of raw offset samples to a single offset estimate."""

from __future__ import annotations

import math
from typing import Sequence


class EmptySampleSetError(ValueError):
    """No samples were available to estimate an offset from."""


def average(values: Sequence[float]) -> float:
    if not values:
        raise EmptySampleSetError("cannot average an empty sample set")
    return sum(values) / len(values)


def standard_deviation(values: Sequence[float]) -> float:
    """Population standard deviation."""
    avg = average(values)
    return math.sqrt(average([(value - avg) ** 2 for value in values]))


def median_index(count: int) -> int:
    """Index of the sample used as median: ``round(count / 2)``, halves rounded up.

    For even counts this is the upper of the two central samples. A single
    sample maps to index 0.
    """
    return min((count + 1) // 2, count - 1)


def estimate_offset(offsets: Sequence[float]) -> float:
    """Mean of the samples left after trimming slow outliers.

    Samples above ``median + stddev`` are dropped (e.g. TCP retransmissions
    inflate the round trip). Low samples are kept.
    """
    if not offsets:
        raise EmptySampleSetError("no offset samples collected")

    ordered = sorted(offsets)
    median = ordered[median_index(len(ordered))]
    cutoff = median + standard_deviation(ordered)

    kept = [offset for offset in ordered if not offset > cutoff]
    return average(kept)
