"""Batch request validation, row filtering and sorting.

Validation raises ``ValidationError`` and runs before any upstream request.
Filters never drop error rows; those are reported as-is so failures stay
visible regardless of the conditions applied.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from .batch_models import (
    BatchFilter,
    BatchInput,
    FilterStats,
    MRComparisonRow,
    MRStatus,
    PhaseBounds,
    SortField,
    SortOptions,
    SortOrder,
)
from .errors import ValidationError
from .models import Phase
from .serialization import parse_timestamp
from .stats import SECONDS_PER_DAY

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 500
MAX_LIMIT = 500
MERGE_OPEN_MR_KEY = "merge-open-mr"


def phase_filter_key(phase: Phase, metric: str, bound: str) -> str:
    """Build a filter key such as ``review-percent-min``."""
    return f"{phase.value.lower()}-{metric}-{bound}"


# --- Parsing ----------------------------------------------------------------


def parse_date(value: str, field: str) -> datetime:
    """Parse ``YYYY-MM-DD`` or a full ISO8601 timestamp into an aware UTC datetime.

    Raises:
        ValidationError: If ``value`` is not a valid ISO date.
    """
    text = value.strip()
    if not text:
        raise ValidationError(field, "expected an ISO date, got an empty value")
    try:
        if len(text) == 10:
            parsed = datetime.combine(date.fromisoformat(text), time.min)
        else:
            parsed = parse_timestamp(text)
    except ValueError as exc:
        raise ValidationError(field, f"expected an ISO date, got '{value}'") from exc

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def end_of_day(value: datetime) -> datetime:
    """Return the last representable moment of ``value``'s UTC day."""
    start = datetime.combine(value.astimezone(timezone.utc).date(), time.min, tzinfo=timezone.utc)
    return start + timedelta(days=1) - timedelta(microseconds=1)


def parse_sort(field: str, order: str = SortOrder.DESC.value) -> SortOptions:
    """Build sort options from raw strings.

    Raises:
        ValidationError: If the field or order is not supported.
    """
    try:
        sort_field = SortField(field)
    except ValueError as exc:
        allowed = ", ".join(item.value for item in SortField)
        raise ValidationError("sort.field", f"must be one of {allowed}") from exc
    try:
        sort_order = SortOrder(order)
    except ValueError as exc:
        raise ValidationError("sort.order", "must be 'asc' or 'desc'") from exc
    return SortOptions(field=sort_field, order=sort_order)


# --- Validation -------------------------------------------------------------


def _check_range(field: str, low: Optional[float], high: Optional[float]) -> None:
    if low is not None and high is not None and low > high:
        raise ValidationError(field, f"minimum {low} is greater than maximum {high}")


def validate_phase_filters(phase_filters: Dict[Phase, PhaseBounds]) -> None:
    """Validate phase bounds.

    Percentages must lie in ``0..100``, days must be non-negative, each minimum
    must not exceed its maximum, and at least one bound must be set.
    """
    if not phase_filters:
        return

    any_set = False
    for phase, bounds in phase_filters.items():
        name = phase.value.lower()
        for label, value in (("percent-min", bounds.percent_min), ("percent-max", bounds.percent_max)):
            if value is not None and not 0 <= value <= 100:
                raise ValidationError(f"{name}-{label}", "must be between 0 and 100")
        for label, value in (("days-min", bounds.days_min), ("days-max", bounds.days_max)):
            if value is not None and value < 0:
                raise ValidationError(f"{name}-{label}", "must be >= 0")
        _check_range(f"{name}-percent", bounds.percent_min, bounds.percent_max)
        _check_range(f"{name}-days", bounds.days_min, bounds.days_max)
        any_set = any_set or not bounds.is_empty()

    if not any_set:
        raise ValidationError("phase_filters", "at least one phase bound must be set")


def validate_filter(batch_filter: BatchFilter) -> None:
    """Validate basic and phase filters."""
    for field, value in (
        ("min_cycle_days", batch_filter.min_cycle_days),
        ("max_cycle_days", batch_filter.max_cycle_days),
    ):
        if value is not None and value < 0:
            raise ValidationError(field, "must be >= 0")
    _check_range("cycle_days", batch_filter.min_cycle_days, batch_filter.max_cycle_days)

    since = parse_date(batch_filter.since, "since") if batch_filter.since else None
    until = parse_date(batch_filter.until, "until") if batch_filter.until else None
    if since is not None and until is not None and since >= end_of_day(until):
        raise ValidationError("since", "must be earlier than 'until'")

    if batch_filter.status is not None and not isinstance(batch_filter.status, MRStatus):
        raise ValidationError("status", "must be one of merged, open, closed")

    validate_phase_filters(batch_filter.phase_filters)


def validate_batch_input(batch_input: BatchInput) -> None:
    """Validate a batch request before any upstream request is made.

    Raises:
        ValidationError: On the first malformed field.
    """
    if not str(batch_input.project_id or "").strip():
        raise ValidationError("project_id", "must not be empty")

    iids = batch_input.mr_iids
    if not iids:
        raise ValidationError("mr_iids", "at least one MR iid is required")
    if len(iids) > MAX_BATCH_SIZE:
        raise ValidationError("mr_iids", f"at most {MAX_BATCH_SIZE} MR iids per batch")
    for iid in iids:
        if isinstance(iid, bool) or not isinstance(iid, int) or iid <= 0:
            raise ValidationError("mr_iids", f"'{iid}' is not a positive integer")

    if batch_input.limit is not None and not 1 <= batch_input.limit <= MAX_LIMIT:
        raise ValidationError("limit", f"must be between 1 and {MAX_LIMIT}")

    if batch_input.mr_type_threshold_hours <= 0:
        raise ValidationError("mr_type_threshold_hours", "must be > 0")

    if batch_input.sort is not None and not (
        isinstance(batch_input.sort.field, SortField)
        and isinstance(batch_input.sort.order, SortOrder)
    ):
        raise ValidationError("sort", "unsupported sort field or order")

    if batch_input.filter is not None:
        validate_filter(batch_input.filter)


# --- Filtering --------------------------------------------------------------


def _bump(stats: FilterStats, key: str) -> None:
    stats.excluded_by_filter[key] = stats.excluded_by_filter.get(key, 0) + 1


def apply_basic_filters(
    rows: List[MRComparisonRow], batch_filter: Optional[BatchFilter]
) -> Tuple[List[MRComparisonRow], FilterStats]:
    """Apply author, cycle-day, status and creation-date filters (AND).

    Every failing condition of a row is counted in ``excluded_by_filter``.
    """
    stats = FilterStats(total_count=len(rows))
    if batch_filter is None:
        stats.filtered_count = len(rows)
        return list(rows), stats

    author = batch_filter.author.lower() if batch_filter.author else None
    since = parse_date(batch_filter.since, "since") if batch_filter.since else None
    until = end_of_day(parse_date(batch_filter.until, "until")) if batch_filter.until else None

    kept: List[MRComparisonRow] = []
    for row in rows:
        if row.is_error:
            kept.append(row)
            continue

        failed: List[str] = []
        if author is not None and author not in row.author.lower():
            failed.append("author")
        if batch_filter.min_cycle_days is not None and row.cycle_days < batch_filter.min_cycle_days:
            failed.append("min-cycle-days")
        if batch_filter.max_cycle_days is not None and row.cycle_days > batch_filter.max_cycle_days:
            failed.append("max-cycle-days")
        if batch_filter.status is not None and row.status is not batch_filter.status:
            failed.append("status")
        if since is not None or until is not None:
            created = parse_date(row.created_at, "created_at") if row.created_at else None
            if since is not None and (created is None or created < since):
                failed.append("since")
            if until is not None and (created is None or created > until):
                failed.append("until")

        for key in failed:
            _bump(stats, key)
        if not failed:
            kept.append(row)

    stats.filtered_count = len(kept)
    return kept, stats


def _phase_failures(row: MRComparisonRow, phase: Phase, bounds: PhaseBounds) -> List[str]:
    if phase is Phase.MERGE and row.status is not MRStatus.MERGED:
        return [MERGE_OPEN_MR_KEY]

    timing = row.phases.get(phase)
    percentage = timing.percentage if timing else 0.0
    days = timing.duration_seconds / SECONDS_PER_DAY if timing else 0.0

    failed: List[str] = []
    if bounds.percent_min is not None and percentage < bounds.percent_min:
        failed.append(phase_filter_key(phase, "percent", "min"))
    if bounds.percent_max is not None and percentage > bounds.percent_max:
        failed.append(phase_filter_key(phase, "percent", "max"))
    if bounds.days_min is not None and days < bounds.days_min:
        failed.append(phase_filter_key(phase, "days", "min"))
    if bounds.days_max is not None and days > bounds.days_max:
        failed.append(phase_filter_key(phase, "days", "max"))
    return failed


def apply_phase_filters(
    rows: List[MRComparisonRow], phase_filters: Dict[Phase, PhaseBounds]
) -> Tuple[List[MRComparisonRow], FilterStats, Dict[int, List[str]]]:
    """Apply per-phase percentage/day bounds (AND across all phases).

    Returns the kept rows, exclusion statistics, and for each kept row the
    phases whose bounds it satisfied. Merge bounds exclude unmerged MRs under
    the ``merge-open-mr`` key.
    """
    active = [(phase, bounds) for phase, bounds in phase_filters.items() if not bounds.is_empty()]
    stats = FilterStats(total_count=len(rows))
    matched: Dict[int, List[str]] = {}

    if not active:
        stats.filtered_count = len(rows)
        return list(rows), stats, matched

    kept: List[MRComparisonRow] = []
    for row in rows:
        if row.is_error:
            kept.append(row)
            continue

        failed: List[str] = []
        for phase, bounds in active:
            failed.extend(_phase_failures(row, phase, bounds))

        for key in failed:
            _bump(stats, key)
        if not failed:
            kept.append(row)
            matched[row.iid] = [phase.value for phase, _ in active]

    stats.filtered_count = len(kept)
    logger.debug(
        "Applied phase filters",
        extra={
            "total_count": stats.total_count,
            "filtered_count": stats.filtered_count,
            "most_restrictive": stats.most_restrictive_filter(),
        },
    )
    return kept, stats, matched


# --- Sorting ----------------------------------------------------------------


def _phase_seconds(phase: Phase) -> Callable[[MRComparisonRow], Optional[int]]:
    def extract(row: MRComparisonRow) -> Optional[int]:
        timing = row.phases.get(phase)
        return timing.duration_seconds if timing else None

    return extract


_SORT_KEYS: Dict[SortField, Callable[[MRComparisonRow], Any]] = {
    SortField.CYCLE_DAYS: lambda row: row.cycle_days,
    SortField.COMMITS: lambda row: row.commits,
    SortField.FILES: lambda row: row.files_changed,
    SortField.LINES: lambda row: row.lines_changed,
    SortField.COMMENTS: lambda row: row.total_comments,
    SortField.DEV_TIME: _phase_seconds(Phase.DEV),
    SortField.WAIT_TIME: _phase_seconds(Phase.WAIT),
    SortField.REVIEW_TIME: _phase_seconds(Phase.REVIEW),
    SortField.MERGE_TIME: _phase_seconds(Phase.MERGE),
    SortField.CREATED_AT: lambda row: row.created_at,
    SortField.MERGED_AT: lambda row: row.merged_at,
}


def sort_rows(rows: List[MRComparisonRow], sort: Optional[SortOptions]) -> List[MRComparisonRow]:
    """Stable sort by one field. Rows without a value, then error rows, go last."""
    if sort is None:
        return list(rows)

    key = _SORT_KEYS[sort.field]
    with_value = [row for row in rows if not row.is_error and key(row) is not None]
    without_value = [row for row in rows if not row.is_error and key(row) is None]
    errors = [row for row in rows if row.is_error]

    ordered = sorted(with_value, key=key, reverse=sort.order is SortOrder.DESC)
    return ordered + without_value + errors
