"""Statistics and formatting helpers for MR timeline reporting.

This module provides utilities for:
- Nearest-rank percentiles over pre-sorted samples (no interpolation, so every
  reported percentile is an observed value).
- Aggregating field statistics (count, total, mean, P50/P75/P90/P95, min, max).
- Half-up rounding for stable, renderer-friendly numbers.
- Formatting second-based durations as ``HH:MM:SS``.
- Classifying mean cycle time into a DORA performance tier.
"""

from __future__ import annotations

import math
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional

from .batch_models import DoraTier, FieldStatistics

SECONDS_PER_HOUR = 3600
SECONDS_PER_DAY = 86400

_DORA_ELITE_HOURS = 26
_DORA_HIGH_HOURS = 7 * 24
_DORA_MEDIUM_HOURS = 30 * 24


def round_half_up(value: float, digits: int = 2) -> float:
    """Round ``value`` to ``digits`` decimals with halves away from zero."""
    quantum = Decimal(1).scaleb(-digits)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def calculate_percentile(sorted_values: List[float], p: float) -> Optional[float]:
    """Calculate a percentile using nearest-rank selection.

    The input sequence is expected to already be sorted in ascending order.
    The rank is ``ceil(p * n / 100)``; ``p == 0`` selects the first value.

    Args:
        sorted_values: Sorted numeric samples.
        p: Percentile in the inclusive range ``[0, 100]``.

    Returns:
        Percentile value or ``None`` when input is empty.

    Raises:
        ValueError: If ``p`` is outside ``[0, 100]``.
    """
    if not 0 <= p <= 100:
        raise ValueError("Percentile 'p' must be in the range [0, 100].")

    if not sorted_values:
        return None

    rank = math.ceil(p * len(sorted_values) / 100.0)
    return sorted_values[max(0, rank - 1)]


def compute_statistics(samples: Iterable[Optional[float]]) -> FieldStatistics:
    """Compute field statistics for numeric samples.

    ``None`` and NaN values are ignored. An empty sample yields all zeros so
    renderers never need to special-case missing data.
    """
    clean = sorted(
        float(sample) for sample in samples if sample is not None and not math.isnan(sample)
    )
    if not clean:
        return FieldStatistics()

    total = sum(clean)

    def pick(p: float) -> float:
        return round_half_up(calculate_percentile(clean, p) or 0.0)

    return FieldStatistics(
        count=len(clean),
        total=round_half_up(total),
        avg=round_half_up(total / len(clean)),
        p50=pick(50),
        p75=pick(75),
        p90=pick(90),
        p95=pick(95),
        min=round_half_up(clean[0]),
        max=round_half_up(clean[-1]),
    )


def mean(samples: Iterable[Optional[float]]) -> Optional[float]:
    """Return the rounded mean of non-``None`` samples, or ``None`` when empty."""
    clean = [float(sample) for sample in samples if sample is not None]
    if not clean:
        return None
    return round_half_up(sum(clean) / len(clean))


def format_duration(seconds: Optional[float]) -> str:
    """Format seconds as ``HH:MM:SS``.

    Args:
        seconds: Duration in seconds.

    Returns:
        ``"n/a"`` when ``seconds`` is ``None``; otherwise a rounded
        ``HH:MM:SS`` string.
    """
    if seconds is None:
        return "n/a"

    total_seconds = int(round(seconds))
    hours = total_seconds // 3600
    minutes = (total_seconds % 3600) // 60
    remaining_seconds = total_seconds % 60
    return f"{hours:02d}:{minutes:02d}:{remaining_seconds:02d}"


def dora_tier(mean_cycle_seconds: Optional[float]) -> Optional[DoraTier]:
    """Classify a mean cycle time into a DORA lead-time tier.

    Elite is under 26 hours, High under one week, Medium under 30 days.
    """
    if mean_cycle_seconds is None:
        return None
    hours = mean_cycle_seconds / SECONDS_PER_HOUR
    if hours < _DORA_ELITE_HOURS:
        return DoraTier.ELITE
    if hours < _DORA_HIGH_HOURS:
        return DoraTier.HIGH
    if hours < _DORA_MEDIUM_HOURS:
        return DoraTier.MEDIUM
    return DoraTier.LOW
