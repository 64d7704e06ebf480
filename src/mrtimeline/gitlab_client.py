"""GitLab REST API client for merge request activity retrieval."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from .config import Config
from .errors import AuthenticationError, NotFoundError, UpstreamError
from .models import (
    Commit,
    EmojiReaction,
    MergeRequest,
    MRActivity,
    Note,
    Pipeline,
    UserRef,
)
from .serialization import parse_timestamp

logger = logging.getLogger(__name__)

ESTIMATED_LINES_PER_CHANGED_FILE = 50


@dataclass(slots=True)
class DiffStats:
    """Code-change size of a merge request."""

    files_changed: int
    lines_changed: int
    additions: int
    deletions: int
    diff_versions: Optional[int]
    estimated: bool = False


class GitLabClient:
    """Small, typed client for GitLab merge request APIs (``/api/v4``)."""

    _PAGE_SIZE = 100
    _MAX_RETRIES = 5
    _MAX_BACKOFF_SECONDS = 30

    def __init__(self, config: Config, timeout_seconds: int = 30) -> None:
        """Initialize an authenticated GitLab API client.

        Args:
            config: Validated runtime configuration including host and token.
            timeout_seconds: Per-request timeout in seconds.
        """
        self._config = config
        self._timeout_seconds = timeout_seconds
        self._base_url = f"{config.host}/api/v4"
        self._local = threading.local()

    @property
    def _session(self) -> requests.Session:
        """Return the calling thread's session; batch workers never share one."""
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            session.headers.update(
                {"Accept": "application/json", "PRIVATE-TOKEN": self._config.token}
            )
            self._local.session = session
        return session

    def _build_url(self, path: str) -> str:
        """Build a fully qualified API URL from a path below ``/api/v4``."""
        return f"{self._base_url}/{path.lstrip('/')}"

    @staticmethod
    def _project_path(project_id: str) -> str:
        """URL-encode a numeric id or ``group/project`` path for use in a URL."""
        return f"projects/{quote(str(project_id), safe='')}"

    def _mr_path(self, project_id: str, mr_iid: int) -> str:
        return f"{self._project_path(project_id)}/merge_requests/{mr_iid}"

    @staticmethod
    def _parse_user(item: Optional[Dict[str, Any]]) -> Optional[UserRef]:
        if not item or item.get("id") is None:
            return None
        username = str(item.get("username") or "")
        return UserRef(id=int(item["id"]), username=username, name=str(item.get("name") or username))

    def _extract_backoff_seconds(self, response: requests.Response, attempt: int) -> int:
        """Compute exponential backoff seconds, honoring Retry-After when available."""
        retry_after_header = response.headers.get("Retry-After")
        if retry_after_header:
            try:
                retry_after_seconds = int(retry_after_header)
                return min(self._MAX_BACKOFF_SECONDS, max(1, retry_after_seconds))
            except ValueError:
                pass

        return min(self._MAX_BACKOFF_SECONDS, 2 ** (attempt - 1))

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> requests.Response:
        """Execute a GET request with retry logic for 429/5xx responses.

        Raises:
            AuthenticationError: On HTTP 401/403.
            NotFoundError: On HTTP 404.
            UpstreamError: If the request repeatedly fails or returns HTTP >= 400.
        """
        url = self._build_url(path)
        last_error: Optional[Exception] = None

        for attempt in range(1, self._MAX_RETRIES + 1):
            try:
                response = self._session.get(url, params=params, timeout=self._timeout_seconds)
            except requests.RequestException as exc:
                last_error = exc
                if attempt == self._MAX_RETRIES:
                    raise UpstreamError(f"GitLab request failed after retries: GET {url}") from exc
                time.sleep(min(self._MAX_BACKOFF_SECONDS, 2 ** (attempt - 1)))
                continue

            status_code = response.status_code
            is_retryable = status_code == 429 or 500 <= status_code <= 599

            if is_retryable and attempt < self._MAX_RETRIES:
                logger.debug(
                    "Retrying GitLab request",
                    extra={"url": url, "status_code": status_code, "attempt": attempt},
                )
                time.sleep(self._extract_backoff_seconds(response, attempt))
                continue

            if status_code in (401, 403):
                raise AuthenticationError(
                    f"GitLab rejected the access token: GET {url} returned {status_code}"
                )
            if status_code == 404:
                raise NotFoundError(f"GitLab resource not found: GET {url}")
            if status_code >= 400:
                raise UpstreamError(
                    f"GitLab API request failed: GET {url} returned {status_code} - {response.text}",
                    status_code=status_code,
                )

            return response

        raise UpstreamError(f"GitLab request failed after retries: GET {url}") from last_error

    def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        response = self._get(path, params)
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamError(f"GitLab API returned invalid JSON: GET {response.url}") from exc

    def _get_object(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        payload = self._get_json(path, params)
        if not isinstance(payload, dict):
            raise UpstreamError(f"GitLab API returned unexpected payload shape: GET {path}")
        return payload

    def _get_paginated(self, path: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Collect every page of a list endpoint using ``page``/``per_page``.

        Stops when ``X-Next-Page`` is empty or a short page is returned.
        """
        items: List[Dict[str, Any]] = []
        page = 1

        while True:
            query = dict(params or {})
            query.update({"page": page, "per_page": self._PAGE_SIZE})
            response = self._get(path, query)
            try:
                payload = response.json()
            except ValueError as exc:
                raise UpstreamError(f"GitLab API returned invalid JSON: GET {path}") from exc
            if not isinstance(payload, list):
                raise UpstreamError(f"GitLab API returned unexpected payload shape: GET {path}")

            items.extend(payload)

            next_page = response.headers.get("X-Next-Page", "")
            if not next_page or len(payload) < self._PAGE_SIZE:
                break
            page = int(next_page)

        return items

    def get_merge_request(self, project_id: str, mr_iid: int) -> MergeRequest:
        """Fetch merge request metadata.

        Raises:
            NotFoundError: If the MR does not exist.
            UpstreamError: If the payload is missing required fields.
        """
        item = self._get_object(self._mr_path(project_id, mr_iid))
        author = self._parse_user(item.get("author"))
        created_at = parse_timestamp(item.get("created_at"))

        if item.get("iid") is None or author is None or created_at is None:
            raise UpstreamError(
                "GitLab merge request payload is missing required fields: "
                f"project={project_id}, iid={mr_iid}"
            )

        changes_count = item.get("changes_count") or 0
        try:
            changes = int(str(changes_count).rstrip("+"))
        except ValueError:
            changes = 0

        return MergeRequest(
            project_id=str(project_id),
            iid=int(item["iid"]),
            title=str(item.get("title") or ""),
            author=author,
            created_at=created_at,
            state=str(item.get("state") or "opened"),
            source_branch=str(item.get("source_branch") or ""),
            target_branch=str(item.get("target_branch") or ""),
            web_url=str(item.get("web_url") or ""),
            draft=bool(item.get("draft") or item.get("work_in_progress")),
            merged_at=parse_timestamp(item.get("merged_at")),
            merged_by=self._parse_user(item.get("merged_by") or item.get("merge_user")),
            changes_count=changes,
        )

    def list_commits(self, project_id: str, mr_iid: int) -> List[Commit]:
        """List commits for a merge request."""
        commits: List[Commit] = []
        for item in self._get_paginated(f"{self._mr_path(project_id, mr_iid)}/commits"):
            created_at = parse_timestamp(item.get("created_at"))
            if not item.get("id") or created_at is None:
                continue
            commits.append(
                Commit(
                    sha=str(item["id"]),
                    title=str(item.get("title") or ""),
                    author_name=str(item.get("author_name") or ""),
                    author_email=str(item.get("author_email") or ""),
                    created_at=created_at,
                    authored_date=parse_timestamp(item.get("authored_date")),
                    committed_date=parse_timestamp(item.get("committed_date")),
                    message=str(item.get("message") or ""),
                )
            )
        return commits

    def list_notes(self, project_id: str, mr_iid: int) -> List[Note]:
        """List all notes (system and user) in ascending creation order."""
        notes: List[Note] = []
        params = {"sort": "asc", "order_by": "created_at"}
        for item in self._get_paginated(f"{self._mr_path(project_id, mr_iid)}/notes", params):
            created_at = parse_timestamp(item.get("created_at"))
            if item.get("id") is None or created_at is None:
                continue
            notes.append(
                Note(
                    id=int(item["id"]),
                    body=str(item.get("body") or ""),
                    author=self._parse_user(item.get("author")),
                    created_at=created_at,
                    system=bool(item.get("system")),
                )
            )
        return notes

    def list_pipelines(self, project_id: str, mr_iid: int) -> List[Pipeline]:
        """List pipelines that ran for a merge request."""
        pipelines: List[Pipeline] = []
        for item in self._get_paginated(f"{self._mr_path(project_id, mr_iid)}/pipelines"):
            created_at = parse_timestamp(item.get("created_at"))
            if item.get("id") is None or created_at is None:
                continue
            pipelines.append(
                Pipeline(
                    id=int(item["id"]),
                    iid=int(item.get("iid") or item["id"]),
                    status=str(item.get("status") or ""),
                    created_at=created_at,
                    updated_at=parse_timestamp(item.get("updated_at")),
                )
            )
        return pipelines

    def list_note_emoji(self, project_id: str, mr_iid: int, note_id: int) -> List[EmojiReaction]:
        """List award emoji placed on one note."""
        path = f"{self._mr_path(project_id, mr_iid)}/notes/{note_id}/award_emoji"
        reactions: List[EmojiReaction] = []
        for item in self._get_paginated(path):
            user = self._parse_user(item.get("user"))
            reactions.append(
                EmojiReaction(
                    name=str(item.get("name") or ""),
                    username=user.username if user else "",
                    created_at=parse_timestamp(item.get("created_at")),
                )
            )
        return reactions

    def fetch_mr_activity(self, project_id: str, mr_iid: int) -> MRActivity:
        """Fetch everything needed to build one MR timeline.

        Every call fails fast: a missing MR raises ``NotFoundError`` and any other
        failure raises ``UpstreamError``.
        """
        mr = self.get_merge_request(project_id, mr_iid)
        commits = self.list_commits(project_id, mr_iid)
        notes = self.list_notes(project_id, mr_iid)
        pipelines = self.list_pipelines(project_id, mr_iid)

        emoji_reactions: Dict[int, List[EmojiReaction]] = {}
        for note in notes:
            if note.system:
                continue
            reactions = self.list_note_emoji(project_id, mr_iid, note.id)
            if reactions:
                emoji_reactions[note.id] = reactions

        logger.info(
            "Fetched merge request activity",
            extra={
                "project_id": project_id,
                "mr_iid": mr_iid,
                "commit_count": len(commits),
                "note_count": len(notes),
                "pipeline_count": len(pipelines),
            },
        )
        return MRActivity(
            mr=mr,
            commits=commits,
            notes=notes,
            pipelines=pipelines,
            emoji_reactions=emoji_reactions,
        )

    def fetch_diff_stats(self, project_id: str, mr_iid: int, changes_count: int) -> DiffStats:
        """Count changed files and lines, falling back to an estimate on failure.

        Line counts come from the ``+``/``-`` lines of each file diff. When the
        diff endpoints fail, lines are estimated from ``changes_count`` and
        ``diff_versions`` is ``None``.
        """
        try:
            diffs = self._get_paginated(f"{self._mr_path(project_id, mr_iid)}/diffs")
            versions = self._get_json(f"{self._mr_path(project_id, mr_iid)}/versions")
        except UpstreamError as exc:
            logger.warning(
                "Falling back to estimated diff statistics",
                extra={"project_id": project_id, "mr_iid": mr_iid, "error": str(exc)},
            )
            return DiffStats(
                files_changed=changes_count,
                lines_changed=changes_count * ESTIMATED_LINES_PER_CHANGED_FILE,
                additions=0,
                deletions=0,
                diff_versions=None,
                estimated=True,
            )

        additions = 0
        deletions = 0
        for item in diffs:
            for line in str(item.get("diff") or "").splitlines():
                if line.startswith("+") and not line.startswith("+++"):
                    additions += 1
                elif line.startswith("-") and not line.startswith("---"):
                    deletions += 1

        return DiffStats(
            files_changed=len(diffs),
            lines_changed=additions + deletions,
            additions=additions,
            deletions=deletions,
            diff_versions=len(versions) if isinstance(versions, list) else None,
        )
