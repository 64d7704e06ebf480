"""MR-type classification (Standard / Draft / Active Development).

Business logic for ``detect_mr_type``:
- Without a counted review event the MR is Standard.
- A ready marker before the first review, more than one hour after creation,
  makes the MR a Draft; review response is measured from the ready marker.
- Otherwise, if the last commit before the first review landed more than
  ``threshold_hours`` after creation, the MR is Active Development; review
  response is measured from that commit.
- Otherwise Standard, with review response measured from creation.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from .batch_models import (
    AIReviewCrossTab,
    MRComparisonRow,
    MRType,
    MRTypeClassification,
    MRTypeStats,
)
from .models import COMMIT_EVENT_TYPES, REVIEW_EVENT_TYPES, EventType, MRTimeline
from .phase_segmenter import counts_as_review_work, review_cutoff
from .stats import SECONDS_PER_HOUR, compute_statistics, mean, round_half_up

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD_HOURS = 2.0
DRAFT_MIN_SECONDS = SECONDS_PER_HOUR

WAIT_START_MR_CREATED = "MR Created"
WAIT_START_READY = "Marked as Ready"
WAIT_START_LAST_COMMIT = "Last Commit"


def detect_mr_type(
    timeline: MRTimeline, threshold_hours: float = DEFAULT_THRESHOLD_HOURS
) -> MRTypeClassification:
    """Classify one MR by how it reached its first review."""
    events = timeline.events
    created_at = timeline.mr.created_at
    cutoff = review_cutoff(events)

    first_review = next(
        (
            event
            for event in events
            if event.event_type in REVIEW_EVENT_TYPES
            and event.timestamp > created_at
            and counts_as_review_work(event, cutoff)
        ),
        None,
    )
    if first_review is None:
        return MRTypeClassification(mr_type=MRType.STANDARD, wait_start=WAIT_START_MR_CREATED)

    # A re-drafted MR may carry an early ready marker; the later one counts.
    ready = next(
        (
            event
            for event in events
            if event.event_type is EventType.MARKED_AS_READY
            and event.timestamp < first_review.timestamp
            and (event.timestamp - created_at).total_seconds() > DRAFT_MIN_SECONDS
        ),
        None,
    )
    if ready is not None:
        return MRTypeClassification(
            mr_type=MRType.DRAFT,
            wait_start=WAIT_START_READY,
            review_response_seconds=(first_review.timestamp - ready.timestamp).total_seconds(),
            draft_duration_seconds=(ready.timestamp - created_at).total_seconds(),
            first_review_at=first_review.timestamp,
        )

    last_commit = None
    for event in events:
        if event.timestamp >= first_review.timestamp:
            break
        if event.event_type in COMMIT_EVENT_TYPES:
            last_commit = event

    if last_commit is not None:
        dev_seconds = (last_commit.timestamp - created_at).total_seconds()
        if dev_seconds > threshold_hours * SECONDS_PER_HOUR:
            return MRTypeClassification(
                mr_type=MRType.ACTIVE_DEVELOPMENT,
                wait_start=WAIT_START_LAST_COMMIT,
                review_response_seconds=(
                    first_review.timestamp - last_commit.timestamp
                ).total_seconds(),
                dev_duration_seconds=dev_seconds,
                first_review_at=first_review.timestamp,
            )

    return MRTypeClassification(
        mr_type=MRType.STANDARD,
        wait_start=WAIT_START_MR_CREATED,
        review_response_seconds=(first_review.timestamp - created_at).total_seconds(),
        first_review_at=first_review.timestamp,
    )


def _classified(rows: List[MRComparisonRow]) -> List[MRComparisonRow]:
    return [row for row in rows if not row.is_error and row.classification is not None]


def generate_mr_type_stats(rows: List[MRComparisonRow]) -> Dict[str, MRTypeStats]:
    """Group classified rows by MR type; every type is present, even if empty."""
    classified = _classified(rows)
    total = len(classified)
    result: Dict[str, MRTypeStats] = {}

    for mr_type in MRType:
        members = [row for row in classified if row.classification.mr_type is mr_type]
        result[mr_type.value] = MRTypeStats(
            mr_type=mr_type,
            count=len(members),
            percentage=round_half_up(len(members) / total * 100, 1) if total else 0.0,
            mr_iids=sorted((row.iid for row in members), reverse=True),
            review_response_seconds=compute_statistics(
                row.classification.review_response_seconds for row in members
            ),
            avg_draft_duration_seconds=mean(
                row.classification.draft_duration_seconds for row in members
            ),
            avg_dev_duration_seconds=mean(
                row.classification.dev_duration_seconds for row in members
            ),
            fields={
                "cycle_days": compute_statistics(row.cycle_days for row in members),
                "commits": compute_statistics(row.commits for row in members),
                "lines_changed": compute_statistics(row.lines_changed for row in members),
                "comments": compute_statistics(row.total_comments for row in members),
            },
        )

    return result


def build_ai_review_cross_tab(rows: List[MRComparisonRow]) -> AIReviewCrossTab:
    """Count classified rows by AI review presence and MR type."""
    cross_tab = AIReviewCrossTab(
        with_ai={mr_type.value: 0 for mr_type in MRType},
        without_ai={mr_type.value: 0 for mr_type in MRType},
    )
    for row in _classified(rows):
        bucket = cross_tab.with_ai if row.has_ai_review else cross_tab.without_ai
        bucket[row.classification.mr_type.value] += 1
    return cross_tab


def has_classifications(rows: List[MRComparisonRow]) -> bool:
    return any(row.classification is not None for row in rows)


def classify_timeline(
    timeline: MRTimeline, threshold_hours: Optional[float] = None
) -> MRTypeClassification:
    classification = detect_mr_type(timeline, threshold_hours or DEFAULT_THRESHOLD_HOURS)
    logger.debug(
        "Classified MR type",
        extra={"mr_iid": timeline.mr.iid, "mr_type": classification.mr_type.value},
    )
    return classification
