"""Actor classification: human, AI bot, or system, plus contextual role.

Classification is an ordered rule table. The first matching tier wins:

1. CI-bot usernames are never AI reviewers.
2. Explicit allowlist or bot-like username patterns mean AI.
3. Registered hybrid reviewers are decided per comment (burst, prior AI
   review, response latency).
4. Content and length heuristics over the user's historical comments.
5. Optional response-time window.
6. Otherwise human.

Role is derived afterwards, and author precedence always wins.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional, Pattern, Sequence, Set

from .config import ClassifierConfig, HybridReviewer
from .models import ActorRole, Note

logger = logging.getLogger(__name__)

_AI_USERNAME_PATTERNS: List[Pattern[str]] = [
    re.compile(r"(?:^|[-_])bot(?:[-_]|$)", re.IGNORECASE),
    re.compile(r"[-_]ai[-_]", re.IGNORECASE),
    re.compile(r"^ai[-_]", re.IGNORECASE),
    re.compile(r"[-_]ai$", re.IGNORECASE),
    re.compile(r"\bautomated\b", re.IGNORECASE),
    re.compile(r"gitlab-bot", re.IGNORECASE),
    re.compile(r"auto-review", re.IGNORECASE),
    re.compile(r"code-review-bot", re.IGNORECASE),
    re.compile(r"coderabbit", re.IGNORECASE),
    re.compile(r"copilot", re.IGNORECASE),
    re.compile(r"dependabot", re.IGNORECASE),
    re.compile(r"renovate", re.IGNORECASE),
]

_AI_CONTENT_PATTERNS: List[Pattern[str]] = [
    re.compile(r"^📋\s*Code\s+Review", re.MULTILINE),
    re.compile(r"^\s*##\s+", re.MULTILINE),
    re.compile(r"\|\s*\*\*.*\*\*\s*\|"),
    re.compile(r"\|\s*Severity\s*\|", re.IGNORECASE),
    re.compile(r"[📁🟡🟢💡🐛🔧🎨]|⚠️"),
]

_CI_BOT_COMMENT_PATTERNS: List[Pattern[str]] = [
    re.compile(r"\*\*Jenkins says:\*\*"),
    re.compile(r"CI (started|passed|failed)"),
    re.compile(r"Build number \d+"),
    re.compile(r"LGTM\s*:[+-]1:"),
    re.compile(r"\[Build\s+#\d+\]"),
    re.compile(r"Pipeline\s+#\d+"),
    re.compile(r"pipeline\s+(passed|failed|succeeded|running)", re.IGNORECASE),
    re.compile(r"Coverage:\s+\d+"),
    re.compile(r"\bMerge Request Test\b"),
    re.compile(r"successfully deployed", re.IGNORECASE),
    re.compile(r"\bCI/CD\b"),
    re.compile(r"^added\s+\d+\s+commit", re.IGNORECASE),
    re.compile(r"^Pipeline for \w+"),
]


class ClassificationRule(str, Enum):
    """Which tier decided a classification."""

    CI_BOT_USERNAME = "ci-bot-username"
    ALLOWLIST = "allowlist"
    USERNAME_PATTERN = "username-pattern"
    HYBRID_BURST = "hybrid-burst"
    HYBRID_PRIOR_AI_REVIEW = "hybrid-prior-ai-review"
    HYBRID_FAST_RESPONSE = "hybrid-fast-response"
    HYBRID_SLOW_RESPONSE = "hybrid-slow-response"
    CONTENT_PATTERN = "content-pattern"
    COMMENT_LENGTH = "comment-length"
    TIME_WINDOW = "time-window"
    DEFAULT_HUMAN = "default-human"


HYBRID_RULES = frozenset(
    {
        ClassificationRule.HYBRID_BURST,
        ClassificationRule.HYBRID_PRIOR_AI_REVIEW,
        ClassificationRule.HYBRID_FAST_RESPONSE,
        ClassificationRule.HYBRID_SLOW_RESPONSE,
    }
)


@dataclass(frozen=True, slots=True)
class ActorClassification:
    """Outcome of classifying one actor for one comment."""

    is_ai_bot: bool
    role: ActorRole
    rule: ClassificationRule

    @property
    def is_hybrid(self) -> bool:
        return self.rule in HYBRID_RULES


@dataclass(slots=True)
class UserCommentStats:
    """Historical comment statistics for one username within an MR."""

    username: str
    comment_count: int = 0
    avg_comment_length: float = 0.0
    samples: List[str] = field(default_factory=list)


def is_ci_bot_comment(body: str) -> bool:
    """Return ``True`` when a comment body looks like CI/build chatter."""
    return any(pattern.search(body) for pattern in _CI_BOT_COMMENT_PATTERNS)


def aggregate_user_comments(
    notes: Iterable[Note], sample_size: int = 5
) -> Dict[str, UserCommentStats]:
    """Collect per-username comment statistics over non-system notes.

    Samples are the first ``sample_size`` bodies in the given order.
    """
    totals: Dict[str, int] = {}
    stats: Dict[str, UserCommentStats] = {}

    for note in notes:
        if note.system or note.author is None:
            continue
        username = note.author.username
        entry = stats.setdefault(username, UserCommentStats(username=username))
        entry.comment_count += 1
        totals[username] = totals.get(username, 0) + len(note.body)
        if len(entry.samples) < sample_size:
            entry.samples.append(note.body)

    for username, entry in stats.items():
        entry.avg_comment_length = totals[username] / entry.comment_count

    return stats


def detect_bursts(notes: Sequence[Note], hybrid_reviewers: Iterable[HybridReviewer]) -> Set[int]:
    """Return ids of notes that belong to a review burst.

    For each hybrid reviewer with burst detection configured, their non-system
    notes are sorted by time and scanned with a sliding window anchored at every
    note. A window holding at least ``min_review_count`` notes within
    ``time_window_seconds`` marks every note inside it.
    """
    burst_ids: Set[int] = set()

    for reviewer in hybrid_reviewers:
        config = reviewer.burst_detection
        if config is None:
            continue
        username = reviewer.username.lower()
        own_notes = sorted(
            (
                note
                for note in notes
                if not note.system
                and note.author is not None
                and note.author.username.lower() == username
            ),
            key=lambda note: note.created_at,
        )
        if len(own_notes) < config.min_review_count:
            continue

        for start, anchor in enumerate(own_notes):
            window = [anchor]
            for candidate in own_notes[start + 1 :]:
                gap = (candidate.created_at - anchor.created_at).total_seconds()
                if gap > config.time_window_seconds:
                    break
                window.append(candidate)
            if len(window) >= config.min_review_count:
                burst_ids.update(note.id for note in window)

    if burst_ids:
        logger.debug("Detected hybrid reviewer bursts", extra={"burst_note_count": len(burst_ids)})
    return burst_ids


class ActorClassifier:
    """Decides whether an actor is an AI bot and which role it plays."""

    def __init__(self, config: Optional[ClassifierConfig] = None) -> None:
        self._config = config or ClassifierConfig()
        self._allowlist = frozenset(name.lower() for name in self._config.ai_bot_usernames)

    @property
    def config(self) -> ClassifierConfig:
        return self._config

    def is_ci_bot_username(self, username: str) -> bool:
        normalized = username.lower()
        return any(fragment in normalized for fragment in self._config.ci_bot_usernames)

    def is_hybrid_reviewer(self, username: str) -> bool:
        return self._config.find_hybrid_reviewer(username) is not None

    def _match_username(self, username: str) -> Optional[ClassificationRule]:
        if username.lower() in self._allowlist:
            return ClassificationRule.ALLOWLIST
        if any(pattern.search(username) for pattern in _AI_USERNAME_PATTERNS):
            return ClassificationRule.USERNAME_PATTERN
        return None

    def _match_content(
        self,
        avg_comment_length: Optional[float],
        recent_samples: Optional[Sequence[str]],
    ) -> Optional[ClassificationRule]:
        # An explicit allowlist means the operator knows their bots; content
        # heuristics would only add false positives on long human comments.
        if self._allowlist:
            return None

        if recent_samples:
            matching = sum(
                1
                for sample in recent_samples
                if any(pattern.search(sample) for pattern in _AI_CONTENT_PATTERNS)
            )
            if matching / len(recent_samples) > self._config.ai_pattern_ratio:
                return ClassificationRule.CONTENT_PATTERN

        if (
            avg_comment_length is not None
            and avg_comment_length >= self._config.comment_length_threshold
        ):
            return ClassificationRule.COMMENT_LENGTH

        return None

    def _match_time_window(
        self, comment_timestamp: Optional[datetime], mr_created_at: Optional[datetime]
    ) -> Optional[ClassificationRule]:
        window_minutes = self._config.time_window_minutes
        if window_minutes <= 0 or comment_timestamp is None or mr_created_at is None:
            return None
        elapsed = (comment_timestamp - mr_created_at).total_seconds()
        if 0 <= elapsed <= window_minutes * 60:
            return ClassificationRule.TIME_WINDOW
        return None

    def _decide_hybrid(
        self,
        reviewer: HybridReviewer,
        comment_timestamp: Optional[datetime],
        reference_time: Optional[datetime],
        has_prior_ai_review: bool,
        is_burst: bool,
    ) -> ClassificationRule:
        if is_burst:
            return ClassificationRule.HYBRID_BURST
        if reviewer.treat_as_human_if_other_ai_review_exists and has_prior_ai_review:
            return ClassificationRule.HYBRID_PRIOR_AI_REVIEW
        if comment_timestamp is None or reference_time is None:
            return ClassificationRule.HYBRID_SLOW_RESPONSE
        latency = (comment_timestamp - reference_time).total_seconds()
        if latency <= reviewer.time_threshold_seconds:
            return ClassificationRule.HYBRID_FAST_RESPONSE
        return ClassificationRule.HYBRID_SLOW_RESPONSE

    def _detect(
        self,
        username: str,
        comment_timestamp: Optional[datetime],
        mr_created_at: Optional[datetime],
        avg_comment_length: Optional[float],
        recent_samples: Optional[Sequence[str]],
        reference_time: Optional[datetime],
        has_prior_ai_review: bool,
        is_burst: bool,
        use_hybrid: bool,
    ) -> ClassificationRule:
        if self.is_ci_bot_username(username):
            return ClassificationRule.CI_BOT_USERNAME

        rule = self._match_username(username)
        if rule is not None:
            return rule

        if use_hybrid:
            reviewer = self._config.find_hybrid_reviewer(username)
            if reviewer is not None:
                return self._decide_hybrid(
                    reviewer,
                    comment_timestamp,
                    reference_time or mr_created_at,
                    has_prior_ai_review,
                    is_burst,
                )

        rule = self._match_content(avg_comment_length, recent_samples)
        if rule is not None:
            return rule

        rule = self._match_time_window(comment_timestamp, mr_created_at)
        if rule is not None:
            return rule

        return ClassificationRule.DEFAULT_HUMAN

    def is_ai_bot(
        self,
        username: str,
        comment_timestamp: Optional[datetime] = None,
        mr_created_at: Optional[datetime] = None,
        avg_comment_length: Optional[float] = None,
        recent_samples: Optional[Sequence[str]] = None,
    ) -> bool:
        """Return whether ``username`` is an AI bot, ignoring the hybrid registry.

        Used for actors attached to non-comment events where there is no single
        comment to disambiguate a hybrid reviewer.
        """
        rule = self._detect(
            username,
            comment_timestamp,
            mr_created_at,
            avg_comment_length,
            recent_samples,
            reference_time=None,
            has_prior_ai_review=False,
            is_burst=False,
            use_hybrid=False,
        )
        return _rule_is_ai(rule)

    def classify(
        self,
        username: str,
        comment_timestamp: Optional[datetime],
        mr_created_at: Optional[datetime],
        avg_comment_length: Optional[float] = None,
        recent_samples: Optional[Sequence[str]] = None,
        *,
        is_author: bool = False,
        user_id: Optional[int] = None,
        reference_time: Optional[datetime] = None,
        has_prior_ai_review: bool = False,
        is_burst: bool = False,
    ) -> ActorClassification:
        """Classify an actor for a single comment.

        Args:
            username: Commenter's username.
            comment_timestamp: When the comment was posted.
            mr_created_at: When the merge request was created.
            avg_comment_length: The user's average comment length in this MR.
            recent_samples: A few of the user's comment bodies in this MR.
            is_author: Whether the commenter authored the MR.
            user_id: Platform user id; ``None`` or ``0`` means a system actor.
            reference_time: Start of the hybrid response-latency window; defaults
                to ``mr_created_at``.
            has_prior_ai_review: Whether a non-hybrid AI review happened earlier.
            is_burst: Whether this comment is part of a detected burst.

        Returns:
            The AI-bot decision, the contextual role, and the rule that fired.
        """
        rule = self._detect(
            username,
            comment_timestamp,
            mr_created_at,
            avg_comment_length,
            recent_samples,
            reference_time=reference_time,
            has_prior_ai_review=has_prior_ai_review,
            is_burst=is_burst,
            use_hybrid=True,
        )
        is_ai = _rule_is_ai(rule)
        role = resolve_role(is_author=is_author, is_ai_bot=is_ai, user_id=user_id)
        logger.debug(
            "Classified actor",
            extra={"username": username, "rule": rule.value, "role": role.value},
        )
        return ActorClassification(is_ai_bot=is_ai, role=role, rule=rule)


_HUMAN_RULES = frozenset(
    {
        ClassificationRule.CI_BOT_USERNAME,
        ClassificationRule.HYBRID_PRIOR_AI_REVIEW,
        ClassificationRule.HYBRID_SLOW_RESPONSE,
        ClassificationRule.DEFAULT_HUMAN,
    }
)


def _rule_is_ai(rule: ClassificationRule) -> bool:
    return rule not in _HUMAN_RULES


def resolve_role(is_author: bool, is_ai_bot: bool, user_id: Optional[int]) -> ActorRole:
    """Derive the contextual role. The MR author is always ``Author``."""
    if is_author:
        return ActorRole.AUTHOR
    if is_ai_bot:
        return ActorRole.AI_REVIEWER
    if not user_id:
        return ActorRole.SYSTEM
    return ActorRole.REVIEWER
