"""Domain models for GitLab merge request timeline reconstruction.

Upstream record types model only the subset of GitLab API payload fields that
the timeline engine needs. Timeline types are frozen: a timeline is never
mutated after the assembler returns it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional


class ActorRole(str, Enum):
    """Contextual role of an actor within one merge request."""

    AUTHOR = "Author"
    REVIEWER = "Reviewer"
    AI_REVIEWER = "AI Reviewer"
    SYSTEM = "System"


class EventType(str, Enum):
    """Kinds of lifecycle events placed on a timeline."""

    BRANCH_CREATED = "Branch Created"
    CODE_COMMITTED = "Code Committed"
    MR_CREATED = "MR Created"
    MARKED_AS_DRAFT = "Marked as Draft"
    MARKED_AS_READY = "Marked as Ready"
    COMMIT_PUSHED = "Commit Pushed"
    AI_REVIEW_STARTED = "AI Review Started"
    HUMAN_REVIEW_STARTED = "Human Review Started"
    CI_BOT_RESPONSE = "CI Bot Response"
    AUTHOR_RESPONSE = "Author Response"
    APPROVED = "Approved"
    MERGED = "Merged"
    PIPELINE_SUCCESS = "Pipeline Success"
    PIPELINE_FAILED = "Pipeline Failed"


# Tie-break order for events that share a timestamp: follows the natural
# lifecycle so e.g. a commit never sorts after the approval it preceded.
EVENT_PRIORITY: Dict[EventType, int] = {
    event_type: index for index, event_type in enumerate(EventType, start=1)
}

REVIEW_EVENT_TYPES = frozenset({EventType.AI_REVIEW_STARTED, EventType.HUMAN_REVIEW_STARTED})
COMMIT_EVENT_TYPES = frozenset({EventType.CODE_COMMITTED, EventType.COMMIT_PUSHED})
PIPELINE_EVENT_TYPES = frozenset({EventType.PIPELINE_SUCCESS, EventType.PIPELINE_FAILED})


class KeyState(str, Enum):
    """Named lifecycle states that bound fine-grained time segments."""

    MR_CREATED = "MR Created"
    MARKED_AS_READY = "Marked as Ready"
    CODE_UPDATED = "Code Updated"
    FIRST_AI_REVIEW = "First AI Review"
    FIRST_HUMAN_REVIEW = "First Human Review"
    APPROVED = "Approved"
    MERGED = "Merged"
    CURRENT = "Current"


class Phase(str, Enum):
    """Coarse lifecycle buckets used for bottleneck reporting."""

    DEV = "Dev"
    WAIT = "Wait"
    REVIEW = "Review"
    MERGE = "Merge"


# --- Upstream records -------------------------------------------------------


@dataclass(slots=True)
class UserRef:
    """Represents a GitLab user as embedded in API payloads."""

    id: int
    username: str
    name: str


@dataclass(slots=True)
class MergeRequest:
    """Represents the merge request metadata required for timeline assembly."""

    project_id: str
    iid: int
    title: str
    author: UserRef
    created_at: datetime
    state: str
    source_branch: str = ""
    target_branch: str = ""
    web_url: str = ""
    draft: bool = False
    merged_at: Optional[datetime] = None
    merged_by: Optional[UserRef] = None
    changes_count: int = 0


@dataclass(slots=True)
class Commit:
    """Represents a commit listed on a merge request."""

    sha: str
    title: str
    author_name: str
    author_email: str
    created_at: datetime
    authored_date: Optional[datetime] = None
    committed_date: Optional[datetime] = None
    message: str = ""

    @property
    def authored_at(self) -> datetime:
        return self.authored_date or self.created_at


@dataclass(slots=True)
class Note:
    """Represents a discussion note; ``system`` notes are GitLab-generated."""

    id: int
    body: str
    author: Optional[UserRef]
    created_at: datetime
    system: bool = False


@dataclass(slots=True)
class Pipeline:
    """Represents a pipeline run attached to a merge request."""

    id: int
    iid: int
    status: str
    created_at: datetime
    updated_at: Optional[datetime] = None


@dataclass(slots=True)
class EmojiReaction:
    """Represents an award emoji placed on a note."""

    name: str
    username: str
    created_at: Optional[datetime] = None


@dataclass(slots=True)
class MRActivity:
    """Everything fetched upstream for a single merge request."""

    mr: MergeRequest
    commits: List[Commit] = field(default_factory=list)
    notes: List[Note] = field(default_factory=list)
    pipelines: List[Pipeline] = field(default_factory=list)
    emoji_reactions: Dict[int, List[EmojiReaction]] = field(default_factory=dict)


# --- Timeline domain --------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Actor:
    """A participant on the timeline; identity is the GitLab user id."""

    id: int
    username: str
    name: str
    role: ActorRole
    is_ai_bot: bool = False


@dataclass(frozen=True, slots=True)
class EventDetails:
    """Optional payload attached to an event."""

    message: Optional[str] = None
    sha: Optional[str] = None
    branch_name: Optional[str] = None
    pipeline_id: Optional[int] = None
    note_id: Optional[int] = None
    emoji_reactions: List[EmojiReaction] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class Event:
    """One ordered timeline entry.

    ``sequence`` is 1-based and assigned after final ordering. ``interval_to_next``
    is the rounded number of seconds until the following event and is ``None`` for
    the last event.
    """

    sequence: int
    timestamp: datetime
    actor: Actor
    event_type: EventType
    details: Optional[EventDetails] = None
    interval_to_next: Optional[int] = None


@dataclass(frozen=True, slots=True)
class TimeSegment:
    """Elapsed time between two consecutive occurred key states."""

    from_state: KeyState
    to_state: KeyState
    from_event: Event
    to_event: Event
    duration_seconds: float
    percentage: float


@dataclass(frozen=True, slots=True)
class PhaseSegment:
    """Elapsed time spent in one coarse phase."""

    phase: Phase
    from_event: Event
    to_event: Event
    duration_seconds: float
    percentage: float


@dataclass(frozen=True, slots=True)
class CommentBreakdown:
    """Comment counts split by who wrote them."""

    human_review_comments: int = 0
    ai_comments: int = 0
    author_responses: int = 0
    ci_bot_comments: int = 0


@dataclass(frozen=True, slots=True)
class MRSummary:
    """Aggregate counts derived from a timeline's events."""

    commits: int
    ai_reviews: int
    human_comments: int
    system_events: int
    total_events: int
    contributors: List[Actor]
    reviewers: List[Actor]
    comment_breakdown: CommentBreakdown


@dataclass(frozen=True, slots=True)
class MRInfo:
    """Merge request identity and lifecycle timestamps carried by a timeline."""

    project_id: str
    iid: int
    title: str
    author: Actor
    created_at: datetime
    state: str
    is_draft: bool = False
    source_branch: str = ""
    target_branch: str = ""
    web_url: str = ""
    merged_at: Optional[datetime] = None
    changes_count: int = 0


@dataclass(frozen=True, slots=True)
class MRTimeline:
    """Complete reconstructed timeline for one merge request."""

    mr: MRInfo
    events: List[Event]
    segments: List[TimeSegment]
    phase_segments: List[PhaseSegment]
    summary: MRSummary
    cycle_time_seconds: float

    def phase(self, phase: Phase) -> Optional[PhaseSegment]:
        """Return the segment for ``phase`` or ``None`` when the phase is absent."""
        for segment in self.phase_segments:
            if segment.phase is phase:
                return segment
        return None
