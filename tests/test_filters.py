"""Tests for batch validation, filtering and sorting."""

import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Add src directory to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from mrtimeline.batch_models import (
    BatchFilter,
    BatchInput,
    FilterStats,
    MRComparisonRow,
    MRStatus,
    PhaseBounds,
    PhaseTiming,
    PhaseTimings,
    SortField,
    SortOptions,
    SortOrder,
)
from mrtimeline.errors import ValidationError
from mrtimeline.filters import (
    MERGE_OPEN_MR_KEY,
    apply_basic_filters,
    apply_phase_filters,
    parse_date,
    parse_sort,
    sort_rows,
    validate_batch_input,
    validate_filter,
    validate_phase_filters,
)
from mrtimeline.models import Phase


def _row(
    iid,
    author="alice",
    cycle_days=1.0,
    status=MRStatus.MERGED,
    created_at="2026-01-05T09:00:00Z",
    review_percent=None,
    merge_seconds=None,
):
    phases = PhaseTimings()
    if review_percent is not None:
        phases.review = PhaseTiming(duration_seconds=int(review_percent * 36), percentage=review_percent)
    if merge_seconds is not None:
        phases.merge = PhaseTiming(duration_seconds=merge_seconds, percentage=5.0)
    return MRComparisonRow(
        iid=iid,
        title=f"MR {iid}",
        author=author,
        status=status,
        created_at=created_at,
        cycle_days=cycle_days,
        phases=phases,
    )


def _error_row(iid):
    return MRComparisonRow(iid=iid, title="", author="", error="Merge request not found")


def _input(**overrides):
    values = {"project_id": "group/project", "mr_iids": [1, 2, 3]}
    values.update(overrides)
    return BatchInput(**values)


# --- Validation ---------------------------------------------------------------


def test_valid_batch_input_passes():
    """Verify a well-formed batch request validates without error."""
    validate_batch_input(_input(limit=10, sort=SortOptions(SortField.COMMITS, SortOrder.ASC)))


@pytest.mark.parametrize(
    "overrides, field",
    [
        ({"project_id": "  "}, "project_id"),
        ({"mr_iids": []}, "mr_iids"),
        ({"mr_iids": list(range(1, 502))}, "mr_iids"),
        ({"mr_iids": [1, 0]}, "mr_iids"),
        ({"mr_iids": [1, True]}, "mr_iids"),
        ({"mr_iids": [1, "2"]}, "mr_iids"),
        ({"limit": 0}, "limit"),
        ({"limit": 501}, "limit"),
        ({"mr_type_threshold_hours": 0}, "mr_type_threshold_hours"),
    ],
)
def test_invalid_batch_input_raises(overrides, field):
    """Verify each malformed batch field is rejected with its field name."""
    with pytest.raises(ValidationError) as exc_info:
        validate_batch_input(_input(**overrides))

    assert exc_info.value.field == field


def test_batch_size_of_exactly_500_is_allowed():
    """Verify the maximum batch size is inclusive."""
    validate_batch_input(_input(mr_iids=list(range(1, 501))))


def test_filter_date_range_must_be_ordered():
    """Verify since must be earlier than the end of the until day."""
    validate_filter(BatchFilter(since="2026-01-05", until="2026-01-05"))

    with pytest.raises(ValidationError) as exc_info:
        validate_filter(BatchFilter(since="2026-01-07", until="2026-01-05"))

    assert exc_info.value.field == "since"


def test_filter_rejects_bad_cycle_days_and_dates():
    """Verify negative or inverted cycle-day bounds and bad dates are rejected."""
    with pytest.raises(ValidationError):
        validate_filter(BatchFilter(min_cycle_days=-1))
    with pytest.raises(ValidationError):
        validate_filter(BatchFilter(min_cycle_days=5, max_cycle_days=2))
    with pytest.raises(ValidationError):
        validate_filter(BatchFilter(since="last tuesday"))


@pytest.mark.parametrize(
    "bounds",
    [
        PhaseBounds(percent_min=120),
        PhaseBounds(percent_max=-1),
        PhaseBounds(days_min=-0.5),
        PhaseBounds(percent_min=60, percent_max=40),
        PhaseBounds(days_min=3, days_max=1),
        PhaseBounds(),
    ],
)
def test_invalid_phase_bounds_raise(bounds):
    """Verify out-of-range, inverted or empty phase bounds are rejected."""
    with pytest.raises(ValidationError):
        validate_phase_filters({Phase.REVIEW: bounds})


def test_parse_sort_accepts_known_fields_and_rejects_others():
    """Verify sort options are parsed from their wire names."""
    assert parse_sort("reviewTime", "asc") == SortOptions(SortField.REVIEW_TIME, SortOrder.ASC)

    with pytest.raises(ValidationError):
        parse_sort("velocity")
    with pytest.raises(ValidationError):
        parse_sort("commits", "sideways")


def test_parse_date_accepts_dates_and_timestamps():
    """Verify plain dates become UTC midnight and timestamps are normalized to UTC."""
    assert parse_date("2026-01-05", "since") == datetime(2026, 1, 5, tzinfo=timezone.utc)
    assert parse_date("2026-01-05T12:30:00+02:00", "since") == datetime(
        2026, 1, 5, 10, 30, tzinfo=timezone.utc
    )
    assert parse_date("2026-01-05T10:00:00Z", "since").hour == 10


@pytest.mark.parametrize("value", ["   ", "2026-13-01", "2026-01-05Tnoon"])
def test_parse_date_rejects_blank_and_malformed_values(value):
    """Verify blank or malformed dates raise ValidationError naming the field."""
    with pytest.raises(ValidationError) as exc_info:
        parse_date(value, "until")

    assert exc_info.value.field == "until"


# --- Basic filters ------------------------------------------------------------


def test_basic_filters_without_filter_keep_all_rows():
    """Verify no filter keeps every row and reports matching counts."""
    rows = [_row(1), _row(2)]

    kept, stats = apply_basic_filters(rows, None)

    assert kept == rows
    assert stats.total_count == stats.filtered_count == 2


def test_basic_filters_combine_conditions_and_count_each_failure():
    """Verify conditions are ANDed and every failing condition is counted."""
    rows = [
        _row(1, author="Alice", cycle_days=2.0),
        _row(2, author="bob", cycle_days=2.0),
        _row(3, author="alice", cycle_days=9.0, status=MRStatus.OPEN),
    ]

    kept, stats = apply_basic_filters(
        rows, BatchFilter(author="ALI", max_cycle_days=5, status=MRStatus.MERGED)
    )

    assert [row.iid for row in kept] == [1]
    assert stats.filtered_count == 1
    assert stats.excluded_by_filter == {"author": 1, "max-cycle-days": 1, "status": 1}


def test_basic_filters_date_range_is_inclusive_of_until_day():
    """Verify rows created late on the until day are kept."""
    rows = [
        _row(1, created_at="2026-01-04T23:59:59Z"),
        _row(2, created_at="2026-01-05T00:00:00Z"),
        _row(3, created_at="2026-01-06T23:59:00Z"),
        _row(4, created_at="2026-01-07T00:00:01Z"),
    ]

    kept, stats = apply_basic_filters(rows, BatchFilter(since="2026-01-05", until="2026-01-06"))

    assert [row.iid for row in kept] == [2, 3]
    assert stats.excluded_by_filter == {"since": 1, "until": 1}


def test_basic_filters_keep_error_rows():
    """Verify failed MRs are never filtered out."""
    kept, _ = apply_basic_filters([_error_row(5), _row(1, author="bob")], BatchFilter(author="alice"))

    assert [row.iid for row in kept] == [5]


# --- Phase filters ------------------------------------------------------------


def test_phase_filter_review_percent_min():
    """Verify rows below the review share are excluded and counted under their key."""
    rows = [_row(1, review_percent=80), _row(2, review_percent=20), _row(3)]

    kept, stats, matched = apply_phase_filters(rows, {Phase.REVIEW: PhaseBounds(percent_min=50)})

    assert [row.iid for row in kept] == [1]
    assert stats.excluded_by_filter == {"review-percent-min": 2}
    assert matched == {1: ["Review"]}


def test_phase_filter_days_max():
    """Verify day bounds are compared against the phase duration in days."""
    rows = [_row(1, merge_seconds=3600), _row(2, merge_seconds=3 * 86400)]

    kept, stats, _ = apply_phase_filters(rows, {Phase.MERGE: PhaseBounds(days_max=1)})

    assert [row.iid for row in kept] == [1]
    assert stats.excluded_by_filter == {"merge-days-max": 1}


def test_merge_phase_filter_excludes_open_mrs():
    """Verify merge-phase bounds exclude unmerged MRs under a dedicated key."""
    rows = [_row(1, status=MRStatus.OPEN), _row(2, merge_seconds=600)]

    kept, stats, _ = apply_phase_filters(rows, {Phase.MERGE: PhaseBounds(percent_max=50)})

    assert [row.iid for row in kept] == [2]
    assert stats.excluded_by_filter == {MERGE_OPEN_MR_KEY: 1}


def test_phase_filters_with_only_empty_bounds_keep_everything():
    """Verify inactive bounds do not filter."""
    rows = [_row(1), _error_row(2)]

    kept, stats, matched = apply_phase_filters(rows, {Phase.DEV: PhaseBounds()})

    assert kept == rows
    assert stats.filtered_count == 2
    assert matched == {}


def test_most_restrictive_filter():
    """Verify the filter key with the most exclusions is reported."""
    stats = FilterStats(total_count=10, excluded_by_filter={"author": 2, "review-percent-min": 7})

    assert stats.most_restrictive_filter() == "review-percent-min"
    assert FilterStats().most_restrictive_filter() is None


# --- Sorting ------------------------------------------------------------------


def test_sort_rows_descending_and_stable():
    """Verify a descending sort keeps the input order for ties."""
    rows = [_row(1, cycle_days=2), _row(2, cycle_days=5), _row(3, cycle_days=2)]

    ordered = sort_rows(rows, SortOptions(SortField.CYCLE_DAYS, SortOrder.DESC))

    assert [row.iid for row in ordered] == [2, 1, 3]


def test_sort_rows_places_missing_values_then_errors_last():
    """Verify rows without the sort value precede error rows at the end."""
    rows = [_error_row(9), _row(1), _row(2, merge_seconds=900), _row(3, merge_seconds=300)]

    ordered = sort_rows(rows, SortOptions(SortField.MERGE_TIME, SortOrder.ASC))

    assert [row.iid for row in ordered] == [3, 2, 1, 9]


def test_sort_rows_without_options_keeps_order():
    """Verify no sort returns the rows in input order."""
    rows = [_row(2), _row(1)]

    assert sort_rows(rows, None) == rows
