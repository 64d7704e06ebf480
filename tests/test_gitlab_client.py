"""Tests for GitLab API client behavior with mocked HTTP."""

import sys
import threading
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import Mock, patch

import pytest
import requests

# Add src directory to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from mrtimeline.config import Config
from mrtimeline.errors import AuthenticationError, NotFoundError, UpstreamError
from mrtimeline.gitlab_client import GitLabClient


def _build_client() -> GitLabClient:
    return GitLabClient(config=Config(host="https://gitlab.example.com", token="glpat-token"))


def _response(status_code: int, payload=None, text: str = "", headers: dict | None = None):
    response = Mock()
    response.status_code = status_code
    response.text = text
    response.headers = headers or {}
    response.json.return_value = payload if payload is not None else {}
    return response


def _mr_payload(**overrides) -> dict:
    payload = {
        "iid": 7,
        "title": "Add timeline",
        "author": {"id": 1, "username": "alice", "name": "Alice"},
        "created_at": "2026-01-05T09:00:00.000Z",
        "state": "merged",
        "source_branch": "feature/timeline",
        "target_branch": "main",
        "web_url": "https://gitlab.example.com/group/project/-/merge_requests/7",
        "draft": False,
        "merged_at": "2026-01-05T11:05:00.000Z",
        "merged_by": {"id": 2, "username": "bob", "name": "Bob"},
        "changes_count": "12",
    }
    payload.update(overrides)
    return payload


def _note(note_id: int, system: bool = False) -> dict:
    return {
        "id": note_id,
        "body": "Looks good",
        "author": {"id": 2, "username": "bob", "name": "Bob"},
        "created_at": "2026-01-05T09:10:00Z",
        "system": system,
    }


def test_session_sends_private_token_header():
    """Verify the access token is sent on every request."""
    client = _build_client()

    assert client._session.headers["PRIVATE-TOKEN"] == "glpat-token"


def test_each_thread_gets_its_own_session():
    """Verify worker threads do not share the calling thread's session."""
    client = _build_client()
    sessions = []

    worker = threading.Thread(target=lambda: sessions.append(client._session))
    worker.start()
    worker.join()

    assert client._session is client._session
    assert sessions[0] is not client._session
    assert sessions[0].headers["PRIVATE-TOKEN"] == "glpat-token"


def test_project_path_is_url_encoded():
    """Verify namespaced project paths are encoded into a single URL segment."""
    assert GitLabClient._project_path("group/sub/project") == "projects/group%2Fsub%2Fproject"
    assert GitLabClient._project_path("42") == "projects/42"


def test_get_json_retries_on_429_and_succeeds():
    """Verify _get_json retries after HTTP 429 and eventually returns JSON payload."""
    client = _build_client()
    first = _response(429, headers={"Retry-After": "1"})
    second = _response(200, payload={"iid": 1})
    client._session.get = Mock(side_effect=[first, second])

    with patch("mrtimeline.gitlab_client.time.sleep") as sleep_mock:
        payload = client._get_json("projects/1/merge_requests/1")

    assert payload == {"iid": 1}
    assert client._session.get.call_count == 2
    sleep_mock.assert_called_once_with(1)


def test_get_json_retries_on_5xx_and_raises_after_max_retries():
    """Verify retryable server errors are retried and then raise UpstreamError."""
    client = _build_client()
    server_error = _response(503, text="service unavailable")
    client._session.get = Mock(side_effect=[server_error] * client._MAX_RETRIES)

    with patch("mrtimeline.gitlab_client.time.sleep") as sleep_mock:
        with pytest.raises(UpstreamError) as exc_info:
            client._get_json("projects/1/merge_requests/1")

    assert exc_info.value.status_code == 503
    assert client._session.get.call_count == client._MAX_RETRIES
    assert sleep_mock.call_count == client._MAX_RETRIES - 1


def test_get_retries_connection_errors():
    """Verify transport failures are retried before giving up."""
    client = _build_client()
    client._session.get = Mock(
        side_effect=[requests.ConnectionError("reset"), _response(200, payload=[])]
    )

    with patch("mrtimeline.gitlab_client.time.sleep"):
        assert client._get_json("projects/1/merge_requests/1/notes") == []


@pytest.mark.parametrize(
    "status_code, error_type",
    [(401, AuthenticationError), (403, AuthenticationError), (404, NotFoundError), (400, UpstreamError)],
)
def test_get_maps_http_errors(status_code, error_type):
    """Verify non-retryable HTTP errors map to typed exceptions without retries."""
    client = _build_client()
    client._session.get = Mock(return_value=_response(status_code, text="nope"))

    with pytest.raises(error_type):
        client._get("projects/1/merge_requests/99")

    assert client._session.get.call_count == 1


def test_get_paginated_follows_next_page_header():
    """Verify list endpoints collect every page until X-Next-Page is empty."""
    client = _build_client()
    first = _response(200, payload=[{"id": i} for i in range(100)], headers={"X-Next-Page": "2"})
    second = _response(200, payload=[{"id": 100}], headers={"X-Next-Page": ""})
    client._session.get = Mock(side_effect=[first, second])

    items = client._get_paginated("projects/1/merge_requests/1/notes", {"sort": "asc"})

    assert len(items) == 101
    second_params = client._session.get.call_args_list[1].kwargs["params"]
    assert second_params == {"sort": "asc", "page": 2, "per_page": 100}


def test_get_merge_request_parses_payload():
    """Verify MR metadata is parsed into typed fields."""
    client = _build_client()
    client._get_object = Mock(return_value=_mr_payload(changes_count="1000+"))

    mr = client.get_merge_request("group/project", 7)

    assert mr.iid == 7
    assert mr.author.username == "alice"
    assert mr.created_at == datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
    assert mr.merged_by.username == "bob"
    assert mr.changes_count == 1000
    client._get_object.assert_called_once_with("projects/group%2Fproject/merge_requests/7")


def test_get_merge_request_missing_fields_raises():
    """Verify a payload without an author is rejected."""
    client = _build_client()
    client._get_object = Mock(return_value=_mr_payload(author=None))

    with pytest.raises(UpstreamError):
        client.get_merge_request("group/project", 7)


def test_fetch_mr_activity_fetches_emoji_for_user_notes_only():
    """Verify award emoji are requested only for non-system notes."""
    client = _build_client()
    client._get_object = Mock(return_value=_mr_payload())

    def paginated(path, params=None):
        if path.endswith("/notes"):
            return [_note(1), _note(2, system=True)]
        if path.endswith("/notes/1/award_emoji"):
            return [{"name": "thumbsup", "user": {"id": 1, "username": "alice"}, "created_at": None}]
        return []

    client._get_paginated = Mock(side_effect=paginated)

    activity = client.fetch_mr_activity("group/project", 7)

    emoji_paths = [call.args[0] for call in client._get_paginated.call_args_list if "award_emoji" in call.args[0]]
    assert emoji_paths == ["projects/group%2Fproject/merge_requests/7/notes/1/award_emoji"]
    assert activity.emoji_reactions[1][0].username == "alice"
    assert [note.id for note in activity.notes] == [1, 2]


def test_fetch_diff_stats_counts_added_and_removed_lines():
    """Verify diff statistics count +/- lines and diff versions."""
    client = _build_client()
    diff = "--- a/app.py\n+++ b/app.py\n@@ -1,2 +1,3 @@\n-old\n+new\n+extra\n context"
    client._get_paginated = Mock(return_value=[{"diff": diff}, {"diff": "+only"}])
    client._get_json = Mock(return_value=[{"id": 1}, {"id": 2}])

    stats = client.fetch_diff_stats("group/project", 7, changes_count=2)

    assert stats.files_changed == 2
    assert stats.additions == 3
    assert stats.deletions == 1
    assert stats.lines_changed == 4
    assert stats.diff_versions == 2
    assert stats.estimated is False


def test_fetch_diff_stats_falls_back_to_estimate():
    """Verify diff failures degrade to an estimate from the changes count."""
    client = _build_client()
    client._get_paginated = Mock(side_effect=UpstreamError("boom", status_code=500))

    stats = client.fetch_diff_stats("group/project", 7, changes_count=3)

    assert stats.estimated is True
    assert stats.files_changed == 3
    assert stats.lines_changed == 150
    assert stats.diff_versions is None
