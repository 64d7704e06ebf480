"""Batch comparison: concurrent timeline analysis over many merge requests.

Each MR is fetched and assembled independently. Blocking HTTP calls run in
worker threads behind a semaphore, so the event loop only suspends at I/O and
at most ``max_concurrency`` MRs are in flight. Per-MR failures become error
rows; they never abort sibling analyses. Rows keep the input order.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence

from .batch_models import (
    LIFECYCLE_LABELS,
    BatchComparisonResult,
    BatchInput,
    BatchMetadata,
    BatchSummary,
    CohortSummary,
    LifecyclePhase,
    MRComparisonRow,
    MRStatus,
    PhaseTiming,
    PhaseTimings,
)
from .classification import (
    build_ai_review_cross_tab,
    classify_timeline,
    generate_mr_type_stats,
    has_classifications,
)
from .filters import apply_basic_filters, apply_phase_filters, sort_rows, validate_batch_input
from .gitlab_client import ESTIMATED_LINES_PER_CHANGED_FILE, DiffStats, GitLabClient
from .models import (
    COMMIT_EVENT_TYPES,
    REVIEW_EVENT_TYPES,
    Actor,
    EventType,
    MRTimeline,
    Phase,
    PhaseSegment,
)
from .serialization import format_timestamp
from .stats import SECONDS_PER_DAY, compute_statistics, dora_tier, mean, round_half_up
from .timeline import TimelineAssembler

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 10
TITLE_MAX_LENGTH = 50
REVIEWER_LABEL_LIMIT = 2

ACTIVITY_EVENT_TYPES = COMMIT_EVENT_TYPES | REVIEW_EVENT_TYPES | {EventType.AUTHOR_RESPONSE}

ProgressCallback = Callable[[int, int, int], None]


# --- Row building -----------------------------------------------------------


def truncate_title(title: str, max_length: int = TITLE_MAX_LENGTH) -> str:
    if len(title) <= max_length:
        return title
    return title[:max_length] + "..."


def format_reviewers(reviewers: Sequence[Actor], limit: int = REVIEWER_LABEL_LIMIT) -> str:
    """Render reviewers as ``a, b +N``; ``-`` when there are none."""
    if not reviewers:
        return "-"
    names = [reviewer.username for reviewer in reviewers]
    label = ", ".join(names[:limit])
    if len(names) > limit:
        label += f" +{len(names) - limit}"
    return label


def intensity_level(activity_count: int) -> int:
    """Map an activity count to a 0-3 intensity level."""
    if activity_count <= 0:
        return 0
    if activity_count <= 2:
        return 1
    if activity_count <= 5:
        return 2
    return 3


def phase_intensity(timeline: MRTimeline, segment: PhaseSegment) -> int:
    """Count commits, reviews and author responses within a phase's event range."""
    start = segment.from_event.sequence
    end = segment.to_event.sequence
    activity = sum(
        1
        for event in timeline.events
        if start <= event.sequence <= end and event.event_type in ACTIVITY_EVENT_TYPES
    )
    return intensity_level(activity)


def mr_status(timeline: MRTimeline) -> MRStatus:
    if timeline.mr.merged_at is not None:
        return MRStatus.MERGED
    if timeline.mr.state == "closed":
        return MRStatus.CLOSED
    return MRStatus.OPEN


def lifecycle_phase(timeline: MRTimeline) -> LifecyclePhase:
    """Derive where the MR currently sits in its lifecycle."""
    status = mr_status(timeline)
    if status is MRStatus.MERGED:
        return LifecyclePhase.MERGED
    if status is MRStatus.CLOSED:
        return LifecyclePhase.CLOSED

    event_types = {event.event_type for event in timeline.events}
    if EventType.APPROVED in event_types:
        return LifecyclePhase.READY_TO_MERGE
    if event_types & REVIEW_EVENT_TYPES:
        return LifecyclePhase.IN_REVIEW
    if EventType.MARKED_AS_READY in event_types or not timeline.mr.is_draft:
        return LifecyclePhase.WAITING_REVIEW
    return LifecyclePhase.IN_DEVELOPMENT


def _has_ai_review(timeline: MRTimeline, include_post_merge_reviews: bool) -> bool:
    if timeline.summary.ai_reviews > 0:
        return True
    if not include_post_merge_reviews:
        return False
    return any(event.event_type is EventType.AI_REVIEW_STARTED for event in timeline.events)


def _phase_timings(timeline: MRTimeline) -> PhaseTimings:
    timings = PhaseTimings()
    for segment in timeline.phase_segments:
        setattr(
            timings,
            segment.phase.value.lower(),
            PhaseTiming(
                duration_seconds=int(round(segment.duration_seconds)),
                percentage=round_half_up(segment.percentage, 1),
                intensity=phase_intensity(timeline, segment),
            ),
        )
    return timings


def build_row(
    timeline: MRTimeline,
    diff_stats: Optional[DiffStats] = None,
    include_events: bool = False,
    include_post_merge_reviews: bool = False,
) -> MRComparisonRow:
    """Flatten one timeline into a comparison row."""
    mr = timeline.mr
    summary = timeline.summary
    if diff_stats is None:
        files_changed = mr.changes_count
        lines_changed = mr.changes_count * ESTIMATED_LINES_PER_CHANGED_FILE
        diff_versions = None
    else:
        files_changed = diff_stats.files_changed
        lines_changed = diff_stats.lines_changed
        diff_versions = diff_stats.diff_versions

    phase = lifecycle_phase(timeline)
    return MRComparisonRow(
        iid=mr.iid,
        title=truncate_title(mr.title),
        author=mr.author.username,
        web_url=mr.web_url,
        status=mr_status(timeline),
        lifecycle_phase=phase,
        lifecycle_label=LIFECYCLE_LABELS[phase],
        created_at=format_timestamp(mr.created_at),
        merged_at=format_timestamp(mr.merged_at) if mr.merged_at else None,
        cycle_days=round_half_up(timeline.cycle_time_seconds / SECONDS_PER_DAY, 1),
        cycle_time_seconds=timeline.cycle_time_seconds,
        commits=summary.commits,
        files_changed=files_changed,
        lines_changed=lines_changed,
        diff_versions=diff_versions,
        total_comments=summary.ai_reviews + summary.human_comments,
        ai_reviews=summary.ai_reviews,
        human_comments=summary.human_comments,
        reviewers=format_reviewers(summary.reviewers),
        has_ai_review=_has_ai_review(timeline, include_post_merge_reviews),
        phases=_phase_timings(timeline),
        events=list(timeline.events) if include_events else None,
    )


def build_error_row(mr_iid: int, error: BaseException) -> MRComparisonRow:
    """A zero-valued row recording why one MR could not be analyzed."""
    return MRComparisonRow(iid=mr_iid, title="", author="", error=str(error) or type(error).__name__)


# --- Summary ----------------------------------------------------------------


def _phase_seconds(rows: Sequence[MRComparisonRow], phase: Phase) -> List[Optional[float]]:
    values: List[Optional[float]] = []
    for row in rows:
        timing = row.phases.get(phase)
        values.append(float(timing.duration_seconds) if timing else None)
    return values


def _cohort(rows: Sequence[MRComparisonRow]) -> CohortSummary:
    return CohortSummary(
        count=len(rows), cycle_days=compute_statistics(row.cycle_days for row in rows)
    )


def recompute_summary(rows: Sequence[MRComparisonRow]) -> BatchSummary:
    """Compute batch statistics from rows.

    Pure and idempotent; call it again whenever rows are filtered after the
    fact. A batch with no successful rows yields zero-valued statistics.
    """
    successes = [row for row in rows if not row.is_error]
    summary = BatchSummary(
        total_count=len(rows),
        success_count=len(successes),
        failed_count=len(rows) - len(successes),
    )

    summary.fields = {
        "cycle_days": compute_statistics(row.cycle_days for row in successes),
        "commits": compute_statistics(row.commits for row in successes),
        "files_changed": compute_statistics(row.files_changed for row in successes),
        "lines_changed": compute_statistics(row.lines_changed for row in successes),
        "comments": compute_statistics(row.total_comments for row in successes),
        "ai_reviews": compute_statistics(row.ai_reviews for row in successes),
        "human_comments": compute_statistics(row.human_comments for row in successes),
    }
    for phase in Phase:
        summary.fields[f"{phase.value.lower()}_seconds"] = compute_statistics(
            _phase_seconds(successes, phase)
        )

    if successes:
        for phase in Phase:
            percentages = [
                timing.percentage if timing else 0.0
                for timing in (row.phases.get(phase) for row in successes)
            ]
            summary.phase_percentages[phase.value.lower()] = round_half_up(
                sum(percentages) / len(successes), 1
            )

    total_comments = sum(row.total_comments for row in successes)
    total_lines = sum(row.lines_changed for row in successes)
    total_files = sum(row.files_changed for row in successes)
    if total_lines > 0:
        summary.review_density_per_kloc = round_half_up(total_comments / (total_lines / 1000))
    if total_files > 0:
        summary.review_density_per_file = round_half_up(total_comments / total_files)

    summary.with_ai = _cohort([row for row in successes if row.has_ai_review])
    summary.without_ai = _cohort([row for row in successes if not row.has_ai_review])
    summary.dora_tier = dora_tier(mean(row.cycle_time_seconds for row in successes))

    if has_classifications(successes):
        summary.mr_type_stats = generate_mr_type_stats(successes)
        summary.ai_review_cross_tab = build_ai_review_cross_tab(successes)

    return summary


def filter_ai_review_only(result: BatchComparisonResult) -> BatchComparisonResult:
    """Return a new result holding only rows with an AI review, summary recomputed."""
    rows = [row for row in result.rows if not row.is_error and row.has_ai_review]
    return BatchComparisonResult(
        rows=rows,
        summary=recompute_summary(rows),
        metadata=dataclasses.replace(result.metadata),
    )


# --- Analyzer ---------------------------------------------------------------


class BatchAnalyzer:
    """Runs timeline analysis for many MRs with bounded concurrency."""

    def __init__(
        self,
        client: Optional[GitLabClient] = None,
        assembler: Optional[TimelineAssembler] = None,
        max_concurrency: int = DEFAULT_CONCURRENCY,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self._client = client
        self._assembler = assembler or TimelineAssembler(client)
        self._max_concurrency = max_concurrency

    async def _fetch_and_build(
        self, batch_input: BatchInput, mr_iid: int, semaphore: asyncio.Semaphore
    ) -> MRComparisonRow:
        async with semaphore:
            activity = await asyncio.to_thread(
                self._assembler.fetch_activity, batch_input.project_id, mr_iid
            )
            diff_stats = None
            if self._client is not None:
                diff_stats = await asyncio.to_thread(
                    self._client.fetch_diff_stats,
                    batch_input.project_id,
                    mr_iid,
                    activity.mr.changes_count,
                )

        timeline = self._assembler.assemble(activity)
        row = build_row(
            timeline,
            diff_stats,
            include_events=batch_input.include_events,
            include_post_merge_reviews=batch_input.include_post_merge_reviews,
        )
        if batch_input.classify_mr_types:
            row.classification = classify_timeline(timeline, batch_input.mr_type_threshold_hours)
        return row

    async def _collect_rows(
        self, batch_input: BatchInput, on_progress: Optional[ProgressCallback]
    ) -> List[MRComparisonRow]:
        semaphore = asyncio.Semaphore(self._max_concurrency)
        total = len(batch_input.mr_iids)
        started = time.monotonic()
        completed = 0

        async def settle(mr_iid: int) -> MRComparisonRow:
            nonlocal completed
            try:
                return await self._fetch_and_build(batch_input, mr_iid, semaphore)
            finally:
                completed += 1
                if on_progress is not None:
                    on_progress(completed, total, int((time.monotonic() - started) * 1000))

        results = await asyncio.gather(
            *(settle(mr_iid) for mr_iid in batch_input.mr_iids), return_exceptions=True
        )

        rows: List[MRComparisonRow] = []
        for mr_iid, result in zip(batch_input.mr_iids, results):
            if isinstance(result, Exception):
                logger.warning(
                    "Merge request analysis failed",
                    extra={"mr_iid": mr_iid, "error": str(result), "error_type": type(result).__name__},
                )
                rows.append(build_error_row(mr_iid, result))
            elif isinstance(result, BaseException):
                raise result
            else:
                rows.append(result)
        return rows

    async def analyze(
        self, batch_input: BatchInput, on_progress: Optional[ProgressCallback] = None
    ) -> BatchComparisonResult:
        """Analyze every MR in ``batch_input`` and build a comparison result.

        Args:
            batch_input: Project, MR iids, and optional filter/sort/limit.
            on_progress: Called as ``(completed, total, elapsed_ms)`` after each
                MR settles, successfully or not.

        Returns:
            Rows in input order (then filtered, sorted and limited), a summary
            over the filtered rows, and request metadata.

        Raises:
            ValidationError: If the request is malformed; raised before any fetch.
        """
        validate_batch_input(batch_input)
        started = time.monotonic()
        logger.info(
            "Starting batch analysis",
            extra={
                "project_id": batch_input.project_id,
                "mr_count": len(batch_input.mr_iids),
                "max_concurrency": self._max_concurrency,
            },
        )

        rows = await self._collect_rows(batch_input, on_progress)
        rows, basic_stats = apply_basic_filters(rows, batch_input.filter)

        phase_stats = None
        matched: Dict[int, List[str]] = {}
        if batch_input.filter is not None and batch_input.filter.phase_filters:
            rows, phase_stats, matched = apply_phase_filters(rows, batch_input.filter.phase_filters)

        rows = sort_rows(rows, batch_input.sort)
        summary = recompute_summary(rows)
        if batch_input.limit is not None:
            rows = rows[: batch_input.limit]

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Finished batch analysis",
            extra={
                "project_id": batch_input.project_id,
                "success_count": summary.success_count,
                "failed_count": summary.failed_count,
                "duration_ms": duration_ms,
            },
        )

        return BatchComparisonResult(
            rows=rows,
            summary=summary,
            metadata=BatchMetadata(
                project_id=batch_input.project_id,
                analyzed_at=format_timestamp(datetime.now(timezone.utc)),
                requested_count=len(batch_input.mr_iids),
                duration_ms=duration_ms,
                limit=batch_input.limit,
                sort=batch_input.sort,
                filter=batch_input.filter,
                basic_filter_stats=basic_stats,
                phase_filter_stats=phase_stats,
                matched_phase_filters=matched,
            ),
        )


def analyze_batch(
    analyzer: BatchAnalyzer,
    batch_input: BatchInput,
    on_progress: Optional[ProgressCallback] = None,
) -> BatchComparisonResult:
    """Synchronous entry point that runs the analyzer on a fresh event loop."""
    return asyncio.run(analyzer.analyze(batch_input, on_progress))
