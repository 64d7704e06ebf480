"""Configuration parsing and validation for the GitLab MR timeline engine."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import FrozenSet, Optional, Tuple

from .errors import AuthenticationError, ConfigurationError

DEFAULT_GITLAB_HOST = "https://gitlab.com"

# Username fragments of CI bots. These post build chatter, never reviews.
DEFAULT_CI_BOT_USERNAMES: Tuple[str, ...] = (
    "gitlab ci bot",
    "gitlab-bot",
    "jenkins",
    "ci-bot",
    "build bot",
)

DEFAULT_HYBRID_RESPONSE_THRESHOLD_SECONDS = 480
DEFAULT_COMMENT_LENGTH_THRESHOLD = 300
DEFAULT_AI_PATTERN_RATIO = 0.5
DEFAULT_SAMPLE_SIZE = 5


@dataclass(frozen=True)
class BurstDetection:
    """Burst heuristic: ``min_review_count`` notes within ``time_window_seconds``."""

    min_review_count: int = 5
    time_window_seconds: float = 60.0


@dataclass(frozen=True)
class HybridReviewer:
    """A human reviewer whose comments are sometimes AI-assisted.

    Attributes:
        username: GitLab username, compared case-insensitively.
        time_threshold_seconds: Comments posted within this many seconds of the
            MR creation (or the latest commit before the comment) count as AI.
        treat_as_human_if_other_ai_review_exists: When another AI bot already
            reviewed the MR, this reviewer's later comments count as human.
        burst_detection: Optional burst heuristic; a burst always means AI.
        description: Free-form note shown in reports.
    """

    username: str
    time_threshold_seconds: float = DEFAULT_HYBRID_RESPONSE_THRESHOLD_SECONDS
    treat_as_human_if_other_ai_review_exists: bool = True
    burst_detection: Optional[BurstDetection] = None
    description: str = ""


@dataclass(frozen=True)
class Config:
    """Validated runtime settings used to talk to GitLab."""

    host: str
    token: str
    ai_bot_usernames: FrozenSet[str] = frozenset()
    hybrid_reviewers: Tuple[HybridReviewer, ...] = ()


@dataclass(frozen=True)
class ClassifierConfig:
    """Bot registry and heuristic thresholds injected into the actor classifier."""

    ai_bot_usernames: FrozenSet[str] = frozenset()
    hybrid_reviewers: Tuple[HybridReviewer, ...] = ()
    ci_bot_usernames: Tuple[str, ...] = DEFAULT_CI_BOT_USERNAMES
    comment_length_threshold: int = DEFAULT_COMMENT_LENGTH_THRESHOLD
    ai_pattern_ratio: float = DEFAULT_AI_PATTERN_RATIO
    sample_size: int = DEFAULT_SAMPLE_SIZE
    # 0 disables the response-time tier.
    time_window_minutes: float = 0.0

    def find_hybrid_reviewer(self, username: str) -> Optional[HybridReviewer]:
        """Return the hybrid reviewer entry for ``username`` if registered."""
        normalized = username.lower()
        for reviewer in self.hybrid_reviewers:
            if reviewer.username.lower() == normalized:
                return reviewer
        return None


def _parse_username_list(raw: str) -> FrozenSet[str]:
    return frozenset(part.strip().lower() for part in raw.split(",") if part.strip())


def _parse_hybrid_reviewers(raw: str) -> Tuple[HybridReviewer, ...]:
    """Parse ``user[:threshold_seconds]`` entries separated by commas.

    Every hybrid reviewer loaded from the environment gets default burst detection.
    """
    reviewers = []
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        username, _, threshold = entry.partition(":")
        if threshold:
            try:
                threshold_seconds = float(threshold)
            except ValueError as exc:
                raise ConfigurationError(
                    f"Invalid hybrid reviewer threshold for '{username}': '{threshold}'."
                ) from exc
            if threshold_seconds < 0:
                raise ConfigurationError(
                    f"Invalid hybrid reviewer threshold for '{username}': must be >= 0."
                )
        else:
            threshold_seconds = DEFAULT_HYBRID_RESPONSE_THRESHOLD_SECONDS
        reviewers.append(
            HybridReviewer(
                username=username.strip().lower(),
                time_threshold_seconds=threshold_seconds,
                burst_detection=BurstDetection(),
            )
        )
    return tuple(reviewers)


def load_config(host: Optional[str] = None) -> Config:
    """Build and validate application configuration from the environment.

    Reads ``GITLAB_TOKEN`` (required), ``GITLAB_HOST``, ``MR_TIMELINE_AI_BOTS`` and
    ``MR_TIMELINE_HYBRID_REVIEWERS``.

    Args:
        host: Optional GitLab base URL overriding ``GITLAB_HOST``.

    Returns:
        A validated ``Config`` instance.

    Raises:
        ConfigurationError: If the host is not an http(s) URL or a hybrid
            reviewer entry is malformed.
        AuthenticationError: If ``GITLAB_TOKEN`` is not configured.
    """
    resolved_host = (host or os.getenv("GITLAB_HOST", "") or DEFAULT_GITLAB_HOST).strip()
    if not resolved_host.startswith(("http://", "https://")):
        raise ConfigurationError(
            f"Invalid value for 'host': expected an http(s) URL, got '{resolved_host}'."
        )

    token: str = os.getenv("GITLAB_TOKEN", "").strip()
    if not token:
        raise AuthenticationError(
            "Missing required GitLab access token. "
            "Set the 'GITLAB_TOKEN' environment variable before running the timeline tool."
        )

    return Config(
        host=resolved_host.rstrip("/"),
        token=token,
        ai_bot_usernames=_parse_username_list(os.getenv("MR_TIMELINE_AI_BOTS", "")),
        hybrid_reviewers=_parse_hybrid_reviewers(os.getenv("MR_TIMELINE_HYBRID_REVIEWERS", "")),
    )


def build_classifier_config(config: Config) -> ClassifierConfig:
    """Derive the actor classifier configuration from runtime settings."""
    return ClassifierConfig(
        ai_bot_usernames=config.ai_bot_usernames,
        hybrid_reviewers=config.hybrid_reviewers,
    )
