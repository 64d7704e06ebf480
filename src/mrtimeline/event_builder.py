"""Event building: raw GitLab records into one ordered, typed event list.

Business logic:
- The earliest commit synthesizes a ``Branch Created`` event (none for an MR
  without commits).
- Commits authored at least ``COMMIT_CLOCK_SKEW_SECONDS`` before MR creation are
  ``Code Committed``; later ones are ``Commit Pushed``.
- System notes become ``Approved``, ``Marked as Ready`` or ``Marked as Draft``
  when their normalized body matches a known phrase. Other system notes are
  dropped.
- Human-visible notes are checked in priority order: CI-bot content, then
  actor classification (AI bot), then MR author, else human review.
- Only terminal pipelines (success/failed) are recorded.
- ``Merged`` is appended when the MR has a merge timestamp.
- Finally events are sorted, deduplicated on (timestamp, type, actor id),
  renumbered from 1, and given ``interval_to_next``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .actor_classifier import (
    ActorClassifier,
    UserCommentStats,
    aggregate_user_comments,
    detect_bursts,
    is_ci_bot_comment,
    resolve_role,
)
from .errors import UpstreamError
from .models import (
    EVENT_PRIORITY,
    Actor,
    ActorRole,
    Commit,
    EmojiReaction,
    Event,
    EventDetails,
    EventType,
    MergeRequest,
    Note,
    Pipeline,
    UserRef,
)

logger = logging.getLogger(__name__)

COMMIT_CLOCK_SKEW_SECONDS = 5
INTERVAL_TOLERANCE_SECONDS = 5
MESSAGE_EXCERPT_LENGTH = 100

SYSTEM_ACTOR = Actor(id=0, username="system", name="System", role=ActorRole.SYSTEM)
UNKNOWN_COMMITTER_ID = -1

# Prefix match so "unapproved this merge request" is not an approval.
APPROVED_MARKERS = ("approved this merge request",)
# Checked before the draft markers: "marked this merge request as ready" must
# never be read as a draft transition.
READY_MARKERS = ("marked as ready", "marked this merge request as ready")
DRAFT_MARKERS = (
    "marked as draft",
    "marked this merge request as draft",
    "marked as a draft",
)

TERMINAL_PIPELINE_STATUSES: Dict[str, EventType] = {
    "success": EventType.PIPELINE_SUCCESS,
    "failed": EventType.PIPELINE_FAILED,
}


def normalize_system_note(body: str) -> str:
    """Strip markdown emphasis and lowercase a system note body."""
    return body.replace("**", "").replace("__", "").strip().lower()


def interval_seconds(start: datetime, end: datetime) -> int:
    """Return rounded seconds from ``start`` to ``end``.

    Small negative values (server clock skew) are clamped to zero.

    Raises:
        UpstreamError: If ``end`` precedes ``start`` by more than the tolerance,
            which means the upstream timestamps are inconsistent.
    """
    seconds = (end - start).total_seconds()
    if seconds < 0:
        if seconds >= -INTERVAL_TOLERANCE_SECONDS:
            return 0
        raise UpstreamError(
            f"Inconsistent timestamps: {end.isoformat()} precedes {start.isoformat()} "
            f"by {-seconds:.0f}s"
        )
    return int(round(seconds))


@dataclass(slots=True)
class _PendingEvent:
    timestamp: datetime
    event_type: EventType
    actor: Actor
    details: Optional[EventDetails] = None


def finalize_events(pending: Iterable[_PendingEvent]) -> List[Event]:
    """Sort, deduplicate, renumber and compute intervals.

    Events that share a timestamp are ordered by lifecycle priority. Two events
    with the same (timestamp, type, actor id) are one record; the first kept.
    """
    ordered = sorted(
        pending, key=lambda item: (item.timestamp, EVENT_PRIORITY[item.event_type])
    )

    seen: Set[Tuple[datetime, EventType, int]] = set()
    unique: List[_PendingEvent] = []
    for item in ordered:
        key = (item.timestamp, item.event_type, item.actor.id)
        if key in seen:
            continue
        seen.add(key)
        unique.append(item)

    events = [
        Event(
            sequence=index,
            timestamp=item.timestamp,
            actor=item.actor,
            event_type=item.event_type,
            details=item.details,
        )
        for index, item in enumerate(unique, start=1)
    ]

    for index in range(len(events) - 1):
        events[index] = replace(
            events[index],
            interval_to_next=interval_seconds(events[index].timestamp, events[index + 1].timestamp),
        )

    return events


class EventBuilder:
    """Turns one merge request's upstream records into timeline events."""

    def __init__(self, classifier: Optional[ActorClassifier] = None) -> None:
        self._classifier = classifier or ActorClassifier()

    def build(
        self,
        mr: MergeRequest,
        commits: Sequence[Commit],
        notes: Sequence[Note],
        pipelines: Sequence[Pipeline],
        emoji_reactions_by_note_id: Optional[Dict[int, List[EmojiReaction]]] = None,
    ) -> List[Event]:
        """Build the ordered event list for one merge request.

        Args:
            mr: Merge request metadata.
            commits: Commits in any order.
            notes: Discussion notes in any order; system notes included.
            pipelines: Pipeline runs in any order.
            emoji_reactions_by_note_id: Award emoji keyed by note id.

        Returns:
            Events ordered by timestamp with contiguous sequence numbers.
        """
        reactions = emoji_reactions_by_note_id or {}
        comment_stats = aggregate_user_comments(notes, self._classifier.config.sample_size)

        pending: List[_PendingEvent] = []
        pending.extend(self._commit_events(mr, commits, comment_stats))
        pending.append(
            _PendingEvent(
                timestamp=mr.created_at,
                event_type=EventType.MR_CREATED,
                actor=self._actor_for(mr.author, mr, comment_stats),
            )
        )
        pending.extend(self._note_events(mr, commits, notes, reactions, comment_stats))
        pending.extend(self._pipeline_events(pipelines))

        if mr.merged_at is not None:
            merger = mr.merged_by or mr.author
            pending.append(
                _PendingEvent(
                    timestamp=mr.merged_at,
                    event_type=EventType.MERGED,
                    actor=self._actor_for(merger, mr, comment_stats),
                )
            )

        events = finalize_events(pending)
        logger.info(
            "Built timeline events",
            extra={
                "mr_iid": mr.iid,
                "event_count": len(events),
                "duplicates_dropped": len(pending) - len(events),
            },
        )
        return events

    def _actor_for(
        self,
        user: Optional[UserRef],
        mr: MergeRequest,
        comment_stats: Dict[str, UserCommentStats],
    ) -> Actor:
        """Build an actor for a non-comment event (no hybrid disambiguation)."""
        if user is None or not user.id:
            return SYSTEM_ACTOR

        stats = comment_stats.get(user.username)
        is_ai = self._classifier.is_ai_bot(
            user.username,
            mr_created_at=mr.created_at,
            avg_comment_length=stats.avg_comment_length if stats else None,
            recent_samples=stats.samples if stats else None,
        )
        role = resolve_role(is_author=user.id == mr.author.id, is_ai_bot=is_ai, user_id=user.id)
        return Actor(id=user.id, username=user.username, name=user.name, role=role, is_ai_bot=is_ai)

    def _committer_actor(
        self,
        commit: Commit,
        mr: MergeRequest,
        comment_stats: Dict[str, UserCommentStats],
    ) -> Actor:
        email_user = commit.author_email.split("@", 1)[0].lower()
        if email_user and email_user == mr.author.username.lower():
            return self._actor_for(mr.author, mr, comment_stats)
        # Commit identities are not GitLab accounts; keep the name, drop the id.
        return Actor(
            id=UNKNOWN_COMMITTER_ID,
            username=commit.author_name,
            name=commit.author_name,
            role=ActorRole.AUTHOR,
        )

    def _commit_events(
        self,
        mr: MergeRequest,
        commits: Sequence[Commit],
        comment_stats: Dict[str, UserCommentStats],
    ) -> List[_PendingEvent]:
        if not commits:
            logger.debug("MR has no commits; no branch event", extra={"mr_iid": mr.iid})
            return []

        ordered = sorted(commits, key=lambda commit: commit.authored_at)
        earliest = ordered[0]
        pending = [
            _PendingEvent(
                timestamp=earliest.authored_at,
                event_type=EventType.BRANCH_CREATED,
                actor=self._committer_actor(earliest, mr, comment_stats),
                details=EventDetails(branch_name=mr.source_branch or None),
            )
        ]

        for commit in ordered:
            lead_seconds = (mr.created_at - commit.authored_at).total_seconds()
            event_type = (
                EventType.CODE_COMMITTED
                if lead_seconds >= COMMIT_CLOCK_SKEW_SECONDS
                else EventType.COMMIT_PUSHED
            )
            pending.append(
                _PendingEvent(
                    timestamp=commit.authored_at,
                    event_type=event_type,
                    actor=self._committer_actor(commit, mr, comment_stats),
                    details=EventDetails(sha=commit.sha, message=commit.title),
                )
            )

        return pending

    def _note_events(
        self,
        mr: MergeRequest,
        commits: Sequence[Commit],
        notes: Sequence[Note],
        reactions: Dict[int, List[EmojiReaction]],
        comment_stats: Dict[str, UserCommentStats],
    ) -> List[_PendingEvent]:
        ordered_notes = sorted(notes, key=lambda note: (note.created_at, note.id))
        commit_times = sorted(commit.authored_at for commit in commits)
        burst_ids = detect_bursts(ordered_notes, self._classifier.config.hybrid_reviewers)
        first_non_hybrid_ai_review: Optional[datetime] = None
        pending: List[_PendingEvent] = []

        for note in ordered_notes:
            if note.system:
                event = self._system_note_event(note, mr, comment_stats)
                if event is not None:
                    pending.append(event)
                continue

            user = note.author
            if user is None:
                logger.debug("Skipping note without author", extra={"note_id": note.id})
                continue

            details = EventDetails(
                message=note.body[:MESSAGE_EXCERPT_LENGTH],
                note_id=note.id if note.id > 0 else None,
                emoji_reactions=list(reactions.get(note.id, [])),
            )

            if is_ci_bot_comment(note.body):
                pending.append(
                    _PendingEvent(
                        timestamp=note.created_at,
                        event_type=EventType.CI_BOT_RESPONSE,
                        actor=self._actor_for(user, mr, comment_stats),
                        details=details,
                    )
                )
                continue

            is_author = user.id == mr.author.id
            stats = comment_stats.get(user.username)
            classification = self._classifier.classify(
                user.username,
                note.created_at,
                mr.created_at,
                stats.avg_comment_length if stats else None,
                stats.samples if stats else None,
                is_author=is_author,
                user_id=user.id,
                reference_time=_latest_before(mr.created_at, commit_times, note.created_at),
                has_prior_ai_review=first_non_hybrid_ai_review is not None,
                is_burst=note.id in burst_ids,
            )
            actor = Actor(
                id=user.id,
                username=user.username,
                name=user.name,
                role=classification.role,
                is_ai_bot=classification.is_ai_bot,
            )

            if classification.is_ai_bot:
                event_type = EventType.AI_REVIEW_STARTED
                if not classification.is_hybrid and first_non_hybrid_ai_review is None:
                    first_non_hybrid_ai_review = note.created_at
            elif is_author:
                event_type = EventType.AUTHOR_RESPONSE
            else:
                event_type = EventType.HUMAN_REVIEW_STARTED

            pending.append(
                _PendingEvent(
                    timestamp=note.created_at,
                    event_type=event_type,
                    actor=actor,
                    details=details,
                )
            )

        return pending

    def _system_note_event(
        self,
        note: Note,
        mr: MergeRequest,
        comment_stats: Dict[str, UserCommentStats],
    ) -> Optional[_PendingEvent]:
        normalized = normalize_system_note(note.body)

        if normalized.startswith(APPROVED_MARKERS):
            event_type = EventType.APPROVED
        elif any(marker in normalized for marker in READY_MARKERS):
            event_type = EventType.MARKED_AS_READY
        elif any(marker in normalized for marker in DRAFT_MARKERS):
            event_type = EventType.MARKED_AS_DRAFT
        else:
            return None

        return _PendingEvent(
            timestamp=note.created_at,
            event_type=event_type,
            actor=self._actor_for(note.author, mr, comment_stats),
        )

    def _pipeline_events(self, pipelines: Sequence[Pipeline]) -> List[_PendingEvent]:
        pending: List[_PendingEvent] = []
        for pipeline in pipelines:
            event_type = TERMINAL_PIPELINE_STATUSES.get(pipeline.status)
            if event_type is None:
                continue
            pending.append(
                _PendingEvent(
                    timestamp=pipeline.updated_at or pipeline.created_at,
                    event_type=event_type,
                    actor=SYSTEM_ACTOR,
                    details=EventDetails(
                        message=f"Pipeline #{pipeline.iid}",
                        pipeline_id=pipeline.id,
                    ),
                )
            )
        return pending


def _latest_before(
    floor: datetime, sorted_times: Sequence[datetime], cutoff: datetime
) -> datetime:
    """Latest of ``floor`` and the last time in ``sorted_times`` not after ``cutoff``."""
    latest = floor
    for value in sorted_times:
        if value > cutoff:
            break
        if value > latest:
            latest = value
    return latest
