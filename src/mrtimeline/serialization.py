"""JSON conversion for timelines and batch results.

``to_jsonable`` turns any result dataclass into plain JSON types: enums become
their values and datetimes become UTC ISO8601 strings with a ``Z`` suffix.
``timeline_from_dict`` rebuilds an ``MRTimeline`` from that representation.
"""

from __future__ import annotations

import dataclasses
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import ValidationError
from .models import (
    Actor,
    ActorRole,
    CommentBreakdown,
    EmojiReaction,
    Event,
    EventDetails,
    EventType,
    KeyState,
    MRInfo,
    MRSummary,
    MRTimeline,
    Phase,
    PhaseSegment,
    TimeSegment,
)


def format_timestamp(value: datetime) -> str:
    """Format a datetime as UTC ISO8601 with a ``Z`` suffix."""
    utc_value = value.astimezone(timezone.utc)
    return utc_value.isoformat().replace("+00:00", "Z")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse ISO8601 timestamps into timezone-aware datetimes."""
    if not value:
        return None
    normalized = value[:-1] + "+00:00" if value.endswith("Z") else value
    parsed = datetime.fromisoformat(normalized)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_jsonable(value: Any) -> Any:
    """Recursively convert dataclasses, enums and datetimes to JSON types."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {
            item.name: to_jsonable(getattr(value, item.name)) for item in dataclasses.fields(value)
        }
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, dict):
        return {
            (key.value if isinstance(key, Enum) else key): to_jsonable(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    return value


def dumps(value: Any, indent: Optional[int] = 2) -> str:
    """Serialize any result object to a JSON string."""
    return json.dumps(to_jsonable(value), indent=indent, ensure_ascii=False)


def _actor_from_dict(data: Dict[str, Any]) -> Actor:
    return Actor(
        id=int(data["id"]),
        username=data["username"],
        name=data["name"],
        role=ActorRole(data["role"]),
        is_ai_bot=bool(data.get("is_ai_bot", False)),
    )


def _details_from_dict(data: Optional[Dict[str, Any]]) -> Optional[EventDetails]:
    if data is None:
        return None
    return EventDetails(
        message=data.get("message"),
        sha=data.get("sha"),
        branch_name=data.get("branch_name"),
        pipeline_id=data.get("pipeline_id"),
        note_id=data.get("note_id"),
        emoji_reactions=[
            EmojiReaction(
                name=item["name"],
                username=item["username"],
                created_at=parse_timestamp(item.get("created_at")),
            )
            for item in data.get("emoji_reactions", [])
        ],
    )


def _event_from_dict(data: Dict[str, Any]) -> Event:
    return Event(
        sequence=int(data["sequence"]),
        timestamp=parse_timestamp(data["timestamp"]),
        actor=_actor_from_dict(data["actor"]),
        event_type=EventType(data["event_type"]),
        details=_details_from_dict(data.get("details")),
        interval_to_next=data.get("interval_to_next"),
    )


def _resolve(events_by_sequence: Dict[int, Event], data: Dict[str, Any]) -> Event:
    sequence = int(data["sequence"])
    event = events_by_sequence.get(sequence)
    return event if event is not None else _event_from_dict(data)


def _summary_from_dict(data: Dict[str, Any]) -> MRSummary:
    breakdown = data.get("comment_breakdown", {})
    return MRSummary(
        commits=int(data["commits"]),
        ai_reviews=int(data["ai_reviews"]),
        human_comments=int(data["human_comments"]),
        system_events=int(data["system_events"]),
        total_events=int(data["total_events"]),
        contributors=[_actor_from_dict(item) for item in data.get("contributors", [])],
        reviewers=[_actor_from_dict(item) for item in data.get("reviewers", [])],
        comment_breakdown=CommentBreakdown(
            human_review_comments=int(breakdown.get("human_review_comments", 0)),
            ai_comments=int(breakdown.get("ai_comments", 0)),
            author_responses=int(breakdown.get("author_responses", 0)),
            ci_bot_comments=int(breakdown.get("ci_bot_comments", 0)),
        ),
    )


def timeline_from_dict(data: Dict[str, Any]) -> MRTimeline:
    """Rebuild an ``MRTimeline`` from ``to_jsonable`` output.

    Segment endpoints are resolved to the rebuilt event objects by sequence.

    Raises:
        ValidationError: If a required key is missing or a value is malformed.
    """
    try:
        events: List[Event] = [_event_from_dict(item) for item in data["events"]]
        by_sequence = {event.sequence: event for event in events}
        mr = data["mr"]

        return MRTimeline(
            mr=MRInfo(
                project_id=str(mr["project_id"]),
                iid=int(mr["iid"]),
                title=mr["title"],
                author=_actor_from_dict(mr["author"]),
                created_at=parse_timestamp(mr["created_at"]),
                state=mr["state"],
                is_draft=bool(mr.get("is_draft", False)),
                source_branch=mr.get("source_branch", ""),
                target_branch=mr.get("target_branch", ""),
                web_url=mr.get("web_url", ""),
                merged_at=parse_timestamp(mr.get("merged_at")),
                changes_count=int(mr.get("changes_count", 0)),
            ),
            events=events,
            segments=[
                TimeSegment(
                    from_state=KeyState(item["from_state"]),
                    to_state=KeyState(item["to_state"]),
                    from_event=_resolve(by_sequence, item["from_event"]),
                    to_event=_resolve(by_sequence, item["to_event"]),
                    duration_seconds=float(item["duration_seconds"]),
                    percentage=float(item["percentage"]),
                )
                for item in data.get("segments", [])
            ],
            phase_segments=[
                PhaseSegment(
                    phase=Phase(item["phase"]),
                    from_event=_resolve(by_sequence, item["from_event"]),
                    to_event=_resolve(by_sequence, item["to_event"]),
                    duration_seconds=float(item["duration_seconds"]),
                    percentage=float(item["percentage"]),
                )
                for item in data.get("phase_segments", [])
            ],
            summary=_summary_from_dict(data["summary"]),
            cycle_time_seconds=float(data["cycle_time_seconds"]),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise ValidationError("timeline", f"malformed timeline document: {exc}") from exc


def timeline_from_json(text: str) -> MRTimeline:
    try:
        data = json.loads(text)
    except ValueError as exc:
        raise ValidationError("timeline", f"invalid JSON: {exc}") from exc
    return timeline_from_dict(data)
