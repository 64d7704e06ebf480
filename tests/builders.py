"""Builders for upstream GitLab records shared by the test modules."""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence

# Add src directory to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from mrtimeline.models import (
    Commit,
    EmojiReaction,
    MergeRequest,
    MRActivity,
    Note,
    Pipeline,
    UserRef,
)

BASE_TIME = datetime(2026, 1, 5, 9, 0, 0, tzinfo=timezone.utc)

AUTHOR = UserRef(id=1, username="alice", name="Alice")
REVIEWER = UserRef(id=2, username="bob", name="Bob")
AI_BOT = UserRef(id=3, username="review-bot", name="Review Bot")
SECOND_REVIEWER = UserRef(id=4, username="carol", name="Carol")


def at(minutes: float = 0, hours: float = 0, days: float = 0, seconds: float = 0) -> datetime:
    return BASE_TIME + timedelta(days=days, hours=hours, minutes=minutes, seconds=seconds)


def make_mr(
    iid: int = 1,
    created_at: Optional[datetime] = None,
    merged_at: Optional[datetime] = None,
    state: Optional[str] = None,
    title: str = "Add timeline endpoint",
    author: UserRef = AUTHOR,
    merged_by: Optional[UserRef] = None,
    draft: bool = False,
    changes_count: int = 3,
) -> MergeRequest:
    return MergeRequest(
        project_id="group/project",
        iid=iid,
        title=title,
        author=author,
        created_at=created_at or BASE_TIME,
        state=state or ("merged" if merged_at else "opened"),
        source_branch="feature/timeline",
        target_branch="main",
        web_url=f"https://gitlab.example.com/group/project/-/merge_requests/{iid}",
        draft=draft,
        merged_at=merged_at,
        merged_by=merged_by,
        changes_count=changes_count,
    )


def make_commit(
    sha: str,
    when: datetime,
    email: str = "alice@example.com",
    name: str = "Alice",
    title: str = "Work in progress",
) -> Commit:
    return Commit(
        sha=sha,
        title=title,
        author_name=name,
        author_email=email,
        created_at=when,
        authored_date=when,
        committed_date=when,
    )


def make_note(
    note_id: int,
    when: datetime,
    body: str = "Looks good to me",
    author: Optional[UserRef] = REVIEWER,
    system: bool = False,
) -> Note:
    return Note(id=note_id, body=body, author=author, created_at=when, system=system)


def make_pipeline(pipeline_id: int, status: str, when: datetime) -> Pipeline:
    return Pipeline(id=pipeline_id, iid=pipeline_id, status=status, created_at=when, updated_at=when)


def make_activity(
    mr: MergeRequest,
    commits: Sequence[Commit] = (),
    notes: Sequence[Note] = (),
    pipelines: Sequence[Pipeline] = (),
    emoji_reactions: Optional[Dict[int, List[EmojiReaction]]] = None,
) -> MRActivity:
    return MRActivity(
        mr=mr,
        commits=list(commits),
        notes=list(notes),
        pipelines=list(pipelines),
        emoji_reactions=emoji_reactions or {},
    )


def reviewed_and_merged_activity(
    iid: int = 1, first_review_minutes: float = 10, ai_review: bool = False
) -> MRActivity:
    """MR created at T, reviewed at T+N minutes, approved at T+2h, merged at T+2h5m."""
    notes = [
        make_note(iid * 100 + 1, at(minutes=first_review_minutes)),
        make_note(
            iid * 100 + 2,
            at(hours=2),
            body="approved this merge request",
            system=True,
        ),
    ]
    if ai_review:
        notes.append(
            make_note(
                iid * 100 + 3,
                at(minutes=first_review_minutes, seconds=30),
                body="Automated review: consider renaming this variable.",
                author=AI_BOT,
            )
        )
    return make_activity(
        make_mr(iid=iid, merged_at=at(hours=2, minutes=5)),
        notes=notes,
    )
