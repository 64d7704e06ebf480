"""Timeline assembly for a single merge request.

Orchestrates upstream fetch, event building, phase segmentation and summary
computation into one immutable ``MRTimeline``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Dict, Optional, Sequence

from .actor_classifier import ActorClassifier
from .event_builder import EventBuilder, interval_seconds
from .models import (
    COMMIT_EVENT_TYPES,
    PIPELINE_EVENT_TYPES,
    REVIEW_EVENT_TYPES,
    Actor,
    ActorRole,
    CommentBreakdown,
    Event,
    EventType,
    MergeRequest,
    MRActivity,
    MRInfo,
    MRSummary,
    MRTimeline,
)
from .phase_segmenter import counts_as_review_work, review_cutoff, segment

if TYPE_CHECKING:
    from .gitlab_client import GitLabClient

logger = logging.getLogger(__name__)


def compute_cycle_time(created_at: datetime, merged_at: Optional[datetime], events: Sequence[Event]) -> float:
    """Return seconds from MR creation to merge, or to the last event if unmerged.

    An MR without events has a zero cycle time.
    """
    if not events:
        return 0.0
    end = merged_at or events[-1].timestamp
    return float(interval_seconds(created_at, end))


def compute_summary(events: Sequence[Event], author_id: int) -> MRSummary:
    """Derive aggregate counts from an ordered event list.

    Business logic:
    - Review-type events after the review cutoff (Approved, else Merged) are
      ignored for review counts.
    - Human comments are human review comments plus author responses.
    - CI-bot comments only appear in the breakdown.
    - System events are pipeline runs.
    - Contributors are unique actors by id; reviewers are contributors in a
      reviewer role other than the MR author.
    """
    cutoff = review_cutoff(events)
    commits = 0
    human_review_comments = 0
    ai_comments = 0
    author_responses = 0
    ci_bot_comments = 0
    system_events = 0
    contributors: Dict[int, Actor] = {}

    for event in events:
        contributors.setdefault(event.actor.id, event.actor)
        event_type = event.event_type

        if event_type in COMMIT_EVENT_TYPES:
            commits += 1
        elif event_type in PIPELINE_EVENT_TYPES:
            system_events += 1
        elif event_type is EventType.CI_BOT_RESPONSE:
            ci_bot_comments += 1
        elif event_type is EventType.AUTHOR_RESPONSE:
            author_responses += 1
        elif event_type in REVIEW_EVENT_TYPES and not counts_as_review_work(event, cutoff):
            continue
        elif event_type is EventType.AI_REVIEW_STARTED:
            ai_comments += 1
        elif event_type is EventType.HUMAN_REVIEW_STARTED:
            human_review_comments += 1

    reviewers = [
        actor
        for actor in contributors.values()
        if actor.role in (ActorRole.REVIEWER, ActorRole.AI_REVIEWER) and actor.id != author_id
    ]

    return MRSummary(
        commits=commits,
        ai_reviews=ai_comments,
        human_comments=human_review_comments + author_responses,
        system_events=system_events,
        total_events=len(events),
        contributors=list(contributors.values()),
        reviewers=reviewers,
        comment_breakdown=CommentBreakdown(
            human_review_comments=human_review_comments,
            ai_comments=ai_comments,
            author_responses=author_responses,
            ci_bot_comments=ci_bot_comments,
        ),
    )


def build_mr_info(mr: MergeRequest, events: Sequence[Event]) -> MRInfo:
    author = next(
        (event.actor for event in events if event.event_type is EventType.MR_CREATED),
        Actor(id=mr.author.id, username=mr.author.username, name=mr.author.name, role=ActorRole.AUTHOR),
    )
    return MRInfo(
        project_id=mr.project_id,
        iid=mr.iid,
        title=mr.title,
        author=author,
        created_at=mr.created_at,
        state=mr.state,
        is_draft=mr.draft,
        source_branch=mr.source_branch,
        target_branch=mr.target_branch,
        web_url=mr.web_url,
        merged_at=mr.merged_at,
        changes_count=mr.changes_count,
    )


class TimelineAssembler:
    """Builds ``MRTimeline`` objects from upstream activity."""

    def __init__(
        self,
        client: Optional["GitLabClient"] = None,
        classifier: Optional[ActorClassifier] = None,
    ) -> None:
        self._client = client
        self._event_builder = EventBuilder(classifier)

    def fetch_activity(self, project_id: str, mr_iid: int) -> MRActivity:
        """Fetch one MR's activity upstream.

        Raises:
            NotFoundError: If the MR does not exist.
            UpstreamError: For any other API failure.
        """
        if self._client is None:
            raise RuntimeError("TimelineAssembler was created without a GitLab client.")
        return self._client.fetch_mr_activity(project_id, mr_iid)

    def assemble(self, activity: MRActivity) -> MRTimeline:
        """Assemble a timeline from already fetched activity. Pure and synchronous."""
        mr = activity.mr
        events = self._event_builder.build(
            mr,
            activity.commits,
            activity.notes,
            activity.pipelines,
            activity.emoji_reactions,
        )
        cycle_time_seconds = compute_cycle_time(mr.created_at, mr.merged_at, events)
        segmentation = segment(events, cycle_time_seconds)
        summary = compute_summary(events, mr.author.id)

        logger.debug(
            "Assembled timeline",
            extra={
                "mr_iid": mr.iid,
                "event_count": len(events),
                "segment_count": len(segmentation.segments),
                "cycle_time_seconds": cycle_time_seconds,
            },
        )
        return MRTimeline(
            mr=build_mr_info(mr, events),
            events=events,
            segments=segmentation.segments,
            phase_segments=segmentation.phase_segments,
            summary=summary,
            cycle_time_seconds=cycle_time_seconds,
        )

    def analyze(self, project_id: str, mr_iid: int) -> MRTimeline:
        """Fetch and assemble the timeline for one merge request.

        Upstream errors propagate unchanged so callers can classify failures.
        """
        logger.info("Analyzing merge request", extra={"project_id": project_id, "mr_iid": mr_iid})
        return self.assemble(self.fetch_activity(project_id, mr_iid))
