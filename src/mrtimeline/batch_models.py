"""Models for batch comparison across many merge requests.

Row and statistics field names are a stable contract for JSON/CSV renderers.
Bump ``SCHEMA_VERSION`` whenever a field changes meaning or is removed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from .models import Event, Phase

SCHEMA_VERSION = "1.0"


class MRStatus(str, Enum):
    MERGED = "merged"
    OPEN = "open"
    CLOSED = "closed"


class LifecyclePhase(str, Enum):
    """Where an MR currently sits in its lifecycle."""

    MERGED = "merged"
    READY_TO_MERGE = "ready-to-merge"
    IN_REVIEW = "in-review"
    WAITING_REVIEW = "waiting-review"
    IN_DEVELOPMENT = "in-development"
    CLOSED = "closed"


LIFECYCLE_LABELS: Dict[LifecyclePhase, str] = {
    LifecyclePhase.MERGED: "Merged",
    LifecyclePhase.READY_TO_MERGE: "Ready to merge",
    LifecyclePhase.IN_REVIEW: "In review",
    LifecyclePhase.WAITING_REVIEW: "Waiting for review",
    LifecyclePhase.IN_DEVELOPMENT: "In development",
    LifecyclePhase.CLOSED: "Closed",
}


class MRType(str, Enum):
    STANDARD = "Standard"
    DRAFT = "Draft"
    ACTIVE_DEVELOPMENT = "Active Development"


class SortField(str, Enum):
    CYCLE_DAYS = "cycleDays"
    COMMITS = "commits"
    FILES = "files"
    LINES = "lines"
    COMMENTS = "comments"
    DEV_TIME = "devTime"
    WAIT_TIME = "waitTime"
    REVIEW_TIME = "reviewTime"
    MERGE_TIME = "mergeTime"
    CREATED_AT = "createdAt"
    MERGED_AT = "mergedAt"


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


class DoraTier(str, Enum):
    ELITE = "Elite"
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


# --- Input ------------------------------------------------------------------


@dataclass(slots=True)
class PhaseBounds:
    """Optional min/max bounds on one phase, as percent of cycle and as days."""

    percent_min: Optional[float] = None
    percent_max: Optional[float] = None
    days_min: Optional[float] = None
    days_max: Optional[float] = None

    def is_empty(self) -> bool:
        return all(
            value is None
            for value in (self.percent_min, self.percent_max, self.days_min, self.days_max)
        )


@dataclass(slots=True)
class BatchFilter:
    """Basic and phase filters; all set conditions are combined with AND."""

    author: Optional[str] = None
    min_cycle_days: Optional[float] = None
    max_cycle_days: Optional[float] = None
    status: Optional[MRStatus] = None
    since: Optional[str] = None
    until: Optional[str] = None
    phase_filters: Dict[Phase, PhaseBounds] = field(default_factory=dict)


@dataclass(slots=True)
class SortOptions:
    field: SortField = SortField.CYCLE_DAYS
    order: SortOrder = SortOrder.DESC


@dataclass(slots=True)
class BatchInput:
    """Everything needed for one batch comparison request."""

    project_id: str
    mr_iids: List[int]
    filter: Optional[BatchFilter] = None
    sort: Optional[SortOptions] = None
    limit: Optional[int] = None
    include_events: bool = False
    include_post_merge_reviews: bool = False
    classify_mr_types: bool = False
    mr_type_threshold_hours: float = 2.0


# --- Rows -------------------------------------------------------------------


@dataclass(slots=True)
class PhaseTiming:
    """Duration, share of cycle (0-100) and activity intensity (0-3) of a phase."""

    duration_seconds: int
    percentage: float
    intensity: int = 0


@dataclass(slots=True)
class PhaseTimings:
    dev: Optional[PhaseTiming] = None
    wait: Optional[PhaseTiming] = None
    review: Optional[PhaseTiming] = None
    merge: Optional[PhaseTiming] = None

    def get(self, phase: Phase) -> Optional[PhaseTiming]:
        return getattr(self, phase.value.lower())


@dataclass(slots=True)
class MRTypeClassification:
    """Behavioral type of one MR and the durations that decided it."""

    mr_type: MRType
    wait_start: str
    review_response_seconds: Optional[float] = None
    draft_duration_seconds: Optional[float] = None
    dev_duration_seconds: Optional[float] = None
    first_review_at: Optional[datetime] = None


@dataclass(slots=True)
class MRComparisonRow:
    """One MR flattened for batch reporting."""

    iid: int
    title: str
    author: str
    web_url: str = ""
    status: MRStatus = MRStatus.OPEN
    lifecycle_phase: LifecyclePhase = LifecyclePhase.IN_DEVELOPMENT
    lifecycle_label: str = ""
    created_at: Optional[str] = None
    merged_at: Optional[str] = None
    cycle_days: float = 0.0
    cycle_time_seconds: float = 0.0
    commits: int = 0
    files_changed: int = 0
    lines_changed: int = 0
    diff_versions: Optional[int] = None
    total_comments: int = 0
    ai_reviews: int = 0
    human_comments: int = 0
    reviewers: str = "-"
    has_ai_review: bool = False
    phases: PhaseTimings = field(default_factory=PhaseTimings)
    classification: Optional[MRTypeClassification] = None
    events: Optional[List[Event]] = None
    error: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.error is not None


# --- Statistics -------------------------------------------------------------


@dataclass(slots=True)
class FieldStatistics:
    """Nearest-rank percentile statistics for one numeric field."""

    count: int = 0
    total: float = 0.0
    avg: float = 0.0
    p50: float = 0.0
    p75: float = 0.0
    p90: float = 0.0
    p95: float = 0.0
    min: float = 0.0
    max: float = 0.0


@dataclass(slots=True)
class CohortSummary:
    count: int = 0
    cycle_days: FieldStatistics = field(default_factory=FieldStatistics)


@dataclass(slots=True)
class MRTypeStats:
    """Grouped statistics for one MR type."""

    mr_type: MRType
    count: int = 0
    percentage: float = 0.0
    mr_iids: List[int] = field(default_factory=list)
    review_response_seconds: FieldStatistics = field(default_factory=FieldStatistics)
    avg_draft_duration_seconds: Optional[float] = None
    avg_dev_duration_seconds: Optional[float] = None
    fields: Dict[str, FieldStatistics] = field(default_factory=dict)


@dataclass(slots=True)
class AIReviewCrossTab:
    """MR counts by AI review presence and MR type."""

    with_ai: Dict[str, int] = field(default_factory=dict)
    without_ai: Dict[str, int] = field(default_factory=dict)


@dataclass(slots=True)
class BatchSummary:
    total_count: int = 0
    success_count: int = 0
    failed_count: int = 0
    fields: Dict[str, FieldStatistics] = field(default_factory=dict)
    phase_percentages: Dict[str, float] = field(default_factory=dict)
    review_density_per_kloc: float = 0.0
    review_density_per_file: float = 0.0
    with_ai: CohortSummary = field(default_factory=CohortSummary)
    without_ai: CohortSummary = field(default_factory=CohortSummary)
    dora_tier: Optional[DoraTier] = None
    mr_type_stats: Optional[Dict[str, MRTypeStats]] = None
    ai_review_cross_tab: Optional[AIReviewCrossTab] = None


@dataclass(slots=True)
class FilterStats:
    """How many rows each filter condition excluded."""

    total_count: int = 0
    filtered_count: int = 0
    excluded_by_filter: Dict[str, int] = field(default_factory=dict)

    def most_restrictive_filter(self) -> Optional[str]:
        """Return the filter key that excluded the most rows, if any excluded."""
        if not self.excluded_by_filter:
            return None
        key, excluded = max(self.excluded_by_filter.items(), key=lambda item: item[1])
        return key if excluded > 0 else None


@dataclass(slots=True)
class BatchMetadata:
    project_id: str
    analyzed_at: str
    requested_count: int
    duration_ms: int = 0
    limit: Optional[int] = None
    sort: Optional[SortOptions] = None
    filter: Optional[BatchFilter] = None
    basic_filter_stats: Optional[FilterStats] = None
    phase_filter_stats: Optional[FilterStats] = None
    matched_phase_filters: Dict[int, List[str]] = field(default_factory=dict)
    schema_version: str = SCHEMA_VERSION


@dataclass(slots=True)
class BatchComparisonResult:
    rows: List[MRComparisonRow]
    summary: BatchSummary
    metadata: BatchMetadata
