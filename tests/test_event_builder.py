"""Tests for building ordered timeline events from upstream records."""

import sys
from pathlib import Path

import pytest

# Add src and tests directories to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent))

from builders import (
    AI_BOT,
    AUTHOR,
    REVIEWER,
    at,
    make_commit,
    make_mr,
    make_note,
    make_pipeline,
)
from mrtimeline.actor_classifier import ActorClassifier
from mrtimeline.config import BurstDetection, ClassifierConfig, HybridReviewer
from mrtimeline.errors import UpstreamError
from mrtimeline.event_builder import (
    SYSTEM_ACTOR,
    UNKNOWN_COMMITTER_ID,
    EventBuilder,
    interval_seconds,
    normalize_system_note,
)
from mrtimeline.models import ActorRole, EmojiReaction, EventType, UserRef


def _types(events):
    return [event.event_type for event in events]


def test_zero_commits_emits_no_branch_created():
    """Verify an MR without commits has no Branch Created event."""
    events = EventBuilder().build(make_mr(), [], [], [])

    assert _types(events) == [EventType.MR_CREATED]
    assert events[0].sequence == 1
    assert events[0].interval_to_next is None


def test_branch_created_from_earliest_commit():
    """Verify the earliest authored commit synthesizes the Branch Created event."""
    commits = [
        make_commit("bbb", at(hours=-1)),
        make_commit("aaa", at(hours=-3)),
    ]

    events = EventBuilder().build(make_mr(), commits, [], [])

    assert events[0].event_type is EventType.BRANCH_CREATED
    assert events[0].timestamp == at(hours=-3)
    assert events[0].details.branch_name == "feature/timeline"
    assert events[0].actor.id == AUTHOR.id
    assert events[0].actor.role is ActorRole.AUTHOR


def test_branch_created_by_unknown_committer_uses_pseudo_actor():
    """Verify commits from an e-mail not matching the MR author get a pseudo actor."""
    commits = [make_commit("aaa", at(hours=-3), email="someone@example.com", name="Someone")]

    events = EventBuilder().build(make_mr(), commits, [], [])

    assert events[0].actor.id == UNKNOWN_COMMITTER_ID
    assert events[0].actor.name == "Someone"


def test_commit_clock_skew_tolerance():
    """Verify commits at least 5 seconds before creation are Code Committed, else Commit Pushed."""
    commits = [
        make_commit("early", at(seconds=-5)),
        make_commit("skewed", at(seconds=-4)),
        make_commit("later", at(minutes=30)),
    ]

    events = EventBuilder().build(make_mr(), commits, [], [])
    by_sha = {event.details.sha: event.event_type for event in events if event.details and event.details.sha}

    assert by_sha == {
        "early": EventType.CODE_COMMITTED,
        "skewed": EventType.COMMIT_PUSHED,
        "later": EventType.COMMIT_PUSHED,
    }


def test_system_notes_translate_to_lifecycle_events():
    """Verify draft, ready and approval system notes map to their event types."""
    notes = [
        make_note(1, at(minutes=1), body="marked this merge request as **draft**", author=AUTHOR, system=True),
        make_note(2, at(minutes=2), body="**Marked this merge request as ready**", author=AUTHOR, system=True),
        make_note(3, at(minutes=3), body="approved this merge request", system=True),
        make_note(4, at(minutes=4), body="changed the description", author=AUTHOR, system=True),
    ]

    events = EventBuilder().build(make_mr(), [], notes, [])

    assert _types(events) == [
        EventType.MR_CREATED,
        EventType.MARKED_AS_DRAFT,
        EventType.MARKED_AS_READY,
        EventType.APPROVED,
    ]
    assert events[3].actor.role is ActorRole.REVIEWER


def test_unapproval_is_not_an_approval():
    """Verify revoking an approval does not produce an Approved event."""
    notes = [make_note(1, at(minutes=5), body="unapproved this merge request", system=True)]

    events = EventBuilder().build(make_mr(), [], notes, [])

    assert _types(events) == [EventType.MR_CREATED]


def test_normalize_system_note_strips_markdown():
    """Verify markdown emphasis is removed before phrase matching."""
    assert normalize_system_note("  **Marked** as __Ready__ ") == "marked as ready"


def test_note_priority_ci_then_bot_then_author_then_human():
    """Verify notes are classified with CI content first, then bot, author, human."""
    notes = [
        make_note(1, at(minutes=1), body="Pipeline #12 passed", author=REVIEWER),
        make_note(2, at(minutes=2), body="Consider extracting a helper.", author=AI_BOT),
        make_note(3, at(minutes=3), body="Done, thanks!", author=AUTHOR),
        make_note(4, at(minutes=4), body="One more nit.", author=REVIEWER),
    ]

    events = EventBuilder().build(make_mr(), [], notes, [])

    assert _types(events)[1:] == [
        EventType.CI_BOT_RESPONSE,
        EventType.AI_REVIEW_STARTED,
        EventType.AUTHOR_RESPONSE,
        EventType.HUMAN_REVIEW_STARTED,
    ]
    assert events[2].actor.role is ActorRole.AI_REVIEWER
    assert events[3].actor.role is ActorRole.AUTHOR


def test_note_details_include_excerpt_and_reactions():
    """Verify note events carry the id, a 100-char excerpt and emoji reactions."""
    reaction = EmojiReaction(name="thumbsup", username="alice")
    notes = [make_note(5, at(minutes=1), body="a" * 150)]

    events = EventBuilder().build(make_mr(), [], notes, [], {5: [reaction]})

    details = events[1].details
    assert details.note_id == 5
    assert details.message == "a" * 100
    assert details.emoji_reactions == [reaction]


def test_only_terminal_pipelines_are_recorded():
    """Verify running or canceled pipelines are skipped."""
    pipelines = [
        make_pipeline(1, "success", at(minutes=5)),
        make_pipeline(2, "failed", at(minutes=6)),
        make_pipeline(3, "running", at(minutes=7)),
        make_pipeline(4, "canceled", at(minutes=8)),
    ]

    events = EventBuilder().build(make_mr(), [], [], pipelines)

    assert _types(events) == [
        EventType.MR_CREATED,
        EventType.PIPELINE_SUCCESS,
        EventType.PIPELINE_FAILED,
    ]
    assert events[1].actor == SYSTEM_ACTOR
    assert events[1].details.message == "Pipeline #1"


def test_merged_event_appended_with_merger():
    """Verify a merged MR ends with a Merged event attributed to the merger."""
    mr = make_mr(merged_at=at(hours=1), merged_by=REVIEWER)

    events = EventBuilder().build(mr, [], [], [])

    assert events[-1].event_type is EventType.MERGED
    assert events[-1].actor.id == REVIEWER.id


def test_duplicate_events_are_removed_and_sequence_is_contiguous():
    """Verify identical (timestamp, type, actor) notes collapse into one event."""
    notes = [
        make_note(1, at(minutes=10), body="Nit"),
        make_note(2, at(minutes=10), body="Nit again"),
        make_note(3, at(minutes=20), body="Another"),
    ]

    events = EventBuilder().build(make_mr(), [], notes, [])

    assert len(events) == 3
    assert [event.sequence for event in events] == [1, 2, 3]
    keys = {(event.timestamp, event.event_type, event.actor.id) for event in events}
    assert len(keys) == len(events)


def test_events_are_monotonic_and_intervals_computed():
    """Verify ordering by timestamp and rounded intervals to the next event."""
    notes = [make_note(2, at(minutes=30)), make_note(1, at(minutes=10, seconds=0.4))]
    commits = [make_commit("aaa", at(hours=-1))]

    events = EventBuilder().build(make_mr(merged_at=at(hours=1)), commits, notes, [])

    timestamps = [event.timestamp for event in events]
    assert timestamps == sorted(timestamps)
    assert events[-1].interval_to_next is None
    assert [event.interval_to_next for event in events[:-1]] == [0, 3600, 600, 1200, 1800]


def test_same_timestamp_events_follow_lifecycle_priority():
    """Verify ties are ordered by lifecycle priority (commit before MR creation)."""
    commits = [make_commit("aaa", at())]
    notes = [make_note(1, at(), body="approved this merge request", system=True)]

    events = EventBuilder().build(make_mr(), commits, notes, [])

    assert _types(events) == [
        EventType.BRANCH_CREATED,
        EventType.MR_CREATED,
        EventType.COMMIT_PUSHED,
        EventType.APPROVED,
    ]


def test_hybrid_reviewer_is_human_after_non_hybrid_ai_review():
    """Verify a fast hybrid comment is human once a regular AI bot reviewed first."""
    dave = UserRef(id=7, username="dave", name="Dave")
    classifier = ActorClassifier(ClassifierConfig(hybrid_reviewers=(HybridReviewer(username="dave"),)))
    notes = [
        make_note(1, at(minutes=1), body="Style issues found.", author=AI_BOT),
        make_note(2, at(minutes=3), body="Agree with the bot.", author=dave),
    ]

    events = EventBuilder(classifier).build(make_mr(), [], notes, [])

    assert events[-1].event_type is EventType.HUMAN_REVIEW_STARTED


def test_hybrid_reviewer_burst_counts_as_ai():
    """Verify a burst of hybrid comments is classified as AI review."""
    dave = UserRef(id=7, username="dave", name="Dave")
    reviewer = HybridReviewer(
        username="dave",
        time_threshold_seconds=60,
        burst_detection=BurstDetection(min_review_count=3, time_window_seconds=60),
    )
    classifier = ActorClassifier(ClassifierConfig(hybrid_reviewers=(reviewer,)))
    notes = [make_note(index, at(hours=4, seconds=index * 5), body=f"Finding {index}", author=dave) for index in range(1, 4)]

    events = EventBuilder(classifier).build(make_mr(), [], notes, [])

    assert [event.event_type for event in events[1:]] == [EventType.AI_REVIEW_STARTED] * 3


def test_interval_seconds_tolerates_small_negative_skew():
    """Verify small negative intervals clamp to zero and large ones raise."""
    assert interval_seconds(at(seconds=3), at()) == 0
    assert interval_seconds(at(), at(seconds=90.6)) == 91

    with pytest.raises(UpstreamError):
        interval_seconds(at(minutes=10), at())
