"""Phase segmentation of an ordered event list.

Two views are derived from the same events:

- Fine-grained time segments between consecutive key lifecycle states, paired
  in real chronological order (a draft MR may be reviewed before it is marked
  ready).
- Four coarse phases (Dev, Wait, Review, Merge) for bottleneck reporting.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Callable, List, Optional, Sequence, Tuple, TypeVar

from .models import (
    REVIEW_EVENT_TYPES,
    Event,
    EventType,
    KeyState,
    Phase,
    PhaseSegment,
    TimeSegment,
)

logger = logging.getLogger(__name__)

PERCENTAGE_TOLERANCE = 1.0

# Canonical key-state order; each maps to the event types that can trigger it.
_KEY_STATE_TRIGGERS: Tuple[Tuple[KeyState, frozenset], ...] = (
    (KeyState.MR_CREATED, frozenset({EventType.MR_CREATED})),
    (KeyState.MARKED_AS_READY, frozenset({EventType.MARKED_AS_READY})),
    (KeyState.CODE_UPDATED, frozenset({EventType.COMMIT_PUSHED})),
    (KeyState.FIRST_AI_REVIEW, frozenset({EventType.AI_REVIEW_STARTED})),
    (KeyState.FIRST_HUMAN_REVIEW, frozenset({EventType.HUMAN_REVIEW_STARTED})),
    (KeyState.APPROVED, frozenset({EventType.APPROVED})),
    (KeyState.MERGED, frozenset({EventType.MERGED})),
)

K = TypeVar("K")
S = TypeVar("S", TimeSegment, PhaseSegment)


@dataclass(frozen=True, slots=True)
class SegmentationResult:
    """Fine-grained segments and coarse phases for one timeline."""

    segments: List[TimeSegment]
    phase_segments: List[PhaseSegment]


def pair_consecutive(points: Sequence[Tuple[K, Event]]) -> List[Tuple[Tuple[K, Event], Tuple[K, Event]]]:
    """Sort labelled events by timestamp and pair each with its successor.

    The sort is stable, so points sharing a timestamp keep their given order.
    """
    ordered = sorted(points, key=lambda point: point[1].timestamp)
    return list(zip(ordered, ordered[1:]))


def identify_key_states(events: Sequence[Event]) -> List[Tuple[KeyState, Event]]:
    """Return the first event for each key state that occurred, in canonical order."""
    found: List[Tuple[KeyState, Event]] = []
    for state, triggers in _KEY_STATE_TRIGGERS:
        event = _first(events, lambda item: item.event_type in triggers)
        if event is not None:
            found.append((state, event))
    return found


def review_cutoff(events: Sequence[Event]) -> Optional[Event]:
    """Return the event after which review activity no longer counts.

    This is the first approval, or the merge when the MR was never approved.
    """
    return _first_of(events, EventType.APPROVED) or _first_of(events, EventType.MERGED)


def counts_as_review_work(event: Event, cutoff: Optional[Event]) -> bool:
    """Whether a review-type event happened before the review cutoff."""
    return cutoff is None or event.timestamp <= cutoff.timestamp


def _first(events: Sequence[Event], predicate: Callable[[Event], bool]) -> Optional[Event]:
    for event in events:
        if predicate(event):
            return event
    return None


def _first_of(events: Sequence[Event], event_type: EventType) -> Optional[Event]:
    return _first(events, lambda item: item.event_type is event_type)


def _duration(from_event: Event, to_event: Event) -> float:
    return (to_event.timestamp - from_event.timestamp).total_seconds()


def _percentage(duration: float, total: float) -> float:
    if total <= 0:
        return 0.0
    return min(100.0, max(0.0, duration / total * 100))


def normalize_percentages(items: List[S]) -> List[S]:
    """Rescale percentages to sum to exactly 100 when they drift by more than 1."""
    total = sum(item.percentage for item in items)
    if total <= 0 or abs(total - 100.0) <= PERCENTAGE_TOLERANCE:
        return items
    logger.debug("Renormalizing segment percentages", extra={"percentage_sum": total})
    return [replace(item, percentage=item.percentage * 100.0 / total) for item in items]


def build_time_segments(events: Sequence[Event], total_cycle_seconds: float) -> List[TimeSegment]:
    """Connect consecutive occurred key states in chronological order.

    An MR that is not merged gets a trailing segment to ``Current``, anchored at
    the last event.
    """
    if not events or total_cycle_seconds <= 0:
        return []

    key_states = identify_key_states(events)
    segments: List[TimeSegment] = []
    for (from_state, from_event), (to_state, to_event) in pair_consecutive(key_states):
        duration = _duration(from_event, to_event)
        segments.append(
            TimeSegment(
                from_state=from_state,
                to_state=to_state,
                from_event=from_event,
                to_event=to_event,
                duration_seconds=duration,
                percentage=_percentage(duration, total_cycle_seconds),
            )
        )

    is_merged = any(state is KeyState.MERGED for state, _ in key_states)
    if key_states and not is_merged:
        last_state, last_key_event = max(key_states, key=lambda point: point[1].timestamp)
        last_event = events[-1]
        if last_key_event.sequence != last_event.sequence:
            duration = _duration(last_key_event, last_event)
            segments.append(
                TimeSegment(
                    from_state=last_state,
                    to_state=KeyState.CURRENT,
                    from_event=last_key_event,
                    to_event=last_event,
                    duration_seconds=duration,
                    percentage=_percentage(duration, total_cycle_seconds),
                )
            )

    return normalize_percentages(segments)


def build_phase_segments(events: Sequence[Event], total_cycle_seconds: float) -> List[PhaseSegment]:
    """Derive the coarse Dev/Wait/Review/Merge phases.

    Business logic:
    - Dev runs from Branch Created (or MR Created) to DevEnd. DevEnd is the ready
      marker (or MR Created) unless the first review precedes it, in which case
      DevEnd collapses to MR Created.
    - Wait runs from DevEnd to the first review; without a review it runs to
      Approved, else to the last event.
    - Review runs from the first review to Approved, else to the last event.
    - Merge runs from Approved to Merged and only exists when both exist.
    - The first review must follow MR Created and not follow the review cutoff.
    - A phase whose end precedes its start is omitted.
    """
    mr_created = _first_of(events, EventType.MR_CREATED)
    if mr_created is None:
        return []

    branch_created = _first_of(events, EventType.BRANCH_CREATED)
    ready = _first_of(events, EventType.MARKED_AS_READY)
    approved = _first_of(events, EventType.APPROVED)
    merged = _first_of(events, EventType.MERGED)
    cutoff = review_cutoff(events)
    last_event = events[-1]

    first_review = _first(
        events,
        lambda item: item.event_type in REVIEW_EVENT_TYPES
        and item.timestamp > mr_created.timestamp
        and counts_as_review_work(item, cutoff),
    )

    mr_ready = ready or mr_created
    if first_review is not None and first_review.timestamp < mr_ready.timestamp:
        dev_end = mr_created
    else:
        dev_end = mr_ready

    dev_start = mr_created
    if branch_created is not None and branch_created.timestamp <= dev_end.timestamp:
        dev_start = branch_created

    spans: List[Tuple[Phase, Event, Event]] = [(Phase.DEV, dev_start, dev_end)]
    spans.append((Phase.WAIT, dev_end, first_review or approved or last_event))
    if first_review is not None:
        spans.append((Phase.REVIEW, first_review, approved or last_event))
    if approved is not None and merged is not None:
        spans.append((Phase.MERGE, approved, merged))

    phase_segments: List[PhaseSegment] = []
    for phase, start, end in spans:
        duration = _duration(start, end)
        if duration < 0:
            logger.debug(
                "Omitting phase with negative duration",
                extra={"phase": phase.value, "duration_seconds": duration},
            )
            continue
        phase_segments.append(
            PhaseSegment(
                phase=phase,
                from_event=start,
                to_event=end,
                duration_seconds=duration,
                percentage=_percentage(duration, total_cycle_seconds),
            )
        )

    return normalize_percentages(phase_segments)


def segment(events: Sequence[Event], total_cycle_seconds: float) -> SegmentationResult:
    """Build both segment views for an ordered event list."""
    return SegmentationResult(
        segments=build_time_segments(events, total_cycle_seconds),
        phase_segments=build_phase_segments(events, total_cycle_seconds),
    )
