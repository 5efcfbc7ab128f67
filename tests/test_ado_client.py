"""Tests for Azure DevOps API client behavior with mocked HTTP."""

import sys
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import Mock, patch

import pytest

# Add src directory to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from prstats.ado_client import (
    AdoClient,
    build_pull_request,
    count_distinct_commits,
    decode_build,
    decode_thread,
    detect_published_date,
)
from prstats.bot_filter import BotFilter
from prstats.config import Config
from prstats.errors import ApiError, TransientApiError
from prstats.models import BuildResult, CommentType, PrStatus, ThreadStatus
from prstats.retry import RetryPolicy


def _build_client(retry_policy: RetryPolicy | None = None) -> AdoClient:
    config = Config(organization="org", project="proj", pat="pat-token")
    return AdoClient(config=config, retry_policy=retry_policy or RetryPolicy(base_delay=0.0))


def _response(status_code: int, payload=None, text: str = "", headers: dict | None = None):
    response = Mock()
    response.status_code = status_code
    response.text = text
    response.headers = headers or {}
    response.json.return_value = payload if payload is not None else {}
    return response


def _pr_item(pr_id: int, status: str = "completed") -> dict:
    return {
        "pullRequestId": pr_id,
        "title": f"PR {pr_id}",
        "status": status,
        "creationDate": "2026-01-01T00:00:00Z",
        "closedDate": "2026-01-01T01:00:00Z",
        "createdBy": {"id": "user-1", "displayName": "Alice"},
        "repository": {"id": "repo-id", "name": "repo"},
    }


def _thread_item(
    thread_id: int = 1,
    comment_type: str = "text",
    author: str = "Bob",
    author_id: str = "b1",
    properties: dict | None = None,
    content: str = "Looks good",
    status: str = "active",
    published: str = "2026-01-01T02:00:00Z",
) -> dict:
    return {
        "id": thread_id,
        "publishedDate": published,
        "status": status,
        "properties": properties or {},
        "comments": [
            {
                "author": {"displayName": author, "id": author_id},
                "commentType": comment_type,
                "content": content,
            }
        ],
    }


def _vote_properties(vote: str) -> dict:
    return {
        "CodeReviewThreadType": {"$type": "System.String", "$value": "VoteUpdate"},
        "CodeReviewVoteResult": {"$type": "System.String", "$value": vote},
    }


def test_organization_url_accepts_name_or_url():
    """Verify the API base URL is built from a bare organization name or a full URL."""
    by_name = AdoClient(Config(organization="org", project="proj", pat="x"))
    by_url = AdoClient(Config(organization="https://dev.azure.com/other", project="proj", pat="x"))

    assert by_name._build_url("git/pullrequests") == "https://dev.azure.com/org/proj/_apis/git/pullrequests"
    assert by_url._build_url("/git/pullrequests") == "https://dev.azure.com/other/proj/_apis/git/pullrequests"


def test_get_json_retries_on_429_and_succeeds():
    """Verify _get_json retries after HTTP 429 and eventually returns the JSON payload."""
    client = _build_client()
    first = _response(429, payload={"value": []}, headers={"Retry-After": "1"})
    second = _response(200, payload={"value": [{"id": 1}]})
    client._session.get = Mock(side_effect=[first, second])

    with patch("prstats.retry.time.sleep") as sleep_mock:
        payload = client._get_json("git/repositories")

    assert payload == {"value": [{"id": 1}]}
    assert client._session.get.call_count == 2
    sleep_mock.assert_called_once()
    assert sleep_mock.call_args.args[0] == pytest.approx(1.0)


def test_get_json_retries_on_5xx_and_raises_after_max_retries():
    """Verify retryable server errors are retried three times before ApiError surfaces."""
    client = _build_client()
    server_error = _response(503, text="service unavailable")
    client._session.get = Mock(return_value=server_error)

    with patch("prstats.retry.time.sleep") as sleep_mock:
        with pytest.raises(ApiError) as exc_info:
            client._get_json("git/repositories")

    assert client._session.get.call_count == 4
    assert sleep_mock.call_count == 3
    assert isinstance(exc_info.value.__cause__, TransientApiError)


def test_get_json_does_not_retry_client_errors():
    """Verify 4xx responses other than 429 fail immediately."""
    client = _build_client()
    client._session.get = Mock(return_value=_response(404, text="not found"))

    with patch("prstats.retry.time.sleep") as sleep_mock:
        with pytest.raises(ApiError):
            client._get_json("git/repositories")

    assert client._session.get.call_count == 1
    sleep_mock.assert_not_called()


def test_get_json_rejects_non_object_payload():
    """Verify a JSON array body is reported as an unexpected payload shape."""
    client = _build_client()
    client._session.get = Mock(return_value=_response(200, payload=[1, 2]))

    with pytest.raises(ApiError, match="unexpected payload shape"):
        client._get_json("git/repositories")


def test_list_pull_requests_uses_pagination_until_final_partial_page():
    """Verify pull-request listing paginates using $top/$skip and aggregates all pages."""
    client = _build_client()
    first_page = {"value": [_pr_item(i) for i in range(1, 101)]}
    second_page = {"value": [_pr_item(101), _pr_item(102)]}
    get_json_mock = Mock(side_effect=[first_page, second_page])
    client._get_json = get_json_mock

    prs = client.list_pull_requests(
        PrStatus.COMPLETED,
        min_time=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )

    assert len(prs) == 102
    assert prs[0]["pullRequestId"] == 1
    assert prs[-1]["pullRequestId"] == 102
    assert get_json_mock.call_count == 2

    first_params = get_json_mock.call_args_list[0].kwargs["params"]
    second_params = get_json_mock.call_args_list[1].kwargs["params"]
    assert first_params["$skip"] == 0
    assert first_params["$top"] == client._PULL_REQUEST_PAGE_SIZE
    assert second_params["$skip"] == client._PULL_REQUEST_PAGE_SIZE
    assert first_params["searchCriteria.status"] == "completed"
    assert first_params["searchCriteria.queryTimeRangeType"] == "closed"
    assert first_params["searchCriteria.minTime"] == "2026-01-01T00:00:00Z"


def test_list_pull_requests_active_pass_has_no_time_window():
    """Verify the active pass omits the time range parameters."""
    client = _build_client()
    client._get_json = Mock(return_value={"value": [_pr_item(1, status="active")]})

    prs = client.list_pull_requests(PrStatus.ACTIVE)

    assert len(prs) == 1
    params = client._get_json.call_args.kwargs["params"]
    assert params["searchCriteria.status"] == "active"
    assert "searchCriteria.minTime" not in params
    assert "searchCriteria.queryTimeRangeType" not in params


def test_list_pull_requests_missing_fields_raises_api_error():
    """Verify records without an id or creation date are rejected."""
    client = _build_client()
    client._get_json = Mock(return_value={"value": [{"title": "broken"}]})

    with pytest.raises(ApiError):
        client.list_pull_requests(PrStatus.ACTIVE)


def test_count_iteration_changes_follows_next_skip():
    """Verify the changes endpoint is paged with nextSkip and compared to the merge base."""
    client = _build_client()
    client._get_json = Mock(side_effect=[
        {"changeEntries": [{}] * 3, "nextSkip": 3, "nextTop": 2000},
        {"changeEntries": [{}] * 2, "nextSkip": 0},
    ])

    count = client.count_iteration_changes("repo-id", 7, 4)

    assert count == 5
    first_params = client._get_json.call_args_list[0].kwargs["params"]
    assert first_params["$compareTo"] == 0
    assert client._get_json.call_args_list[1].kwargs["params"]["$skip"] == 3


def test_list_builds_queries_merge_ref_and_decodes():
    """Verify builds are listed for the pull request merge ref."""
    client = _build_client()
    client._get_json = Mock(return_value={"value": [{
        "id": 11,
        "definition": {"name": "CI", "id": 3},
        "status": "completed",
        "result": "succeeded",
        "queueTime": "2026-01-01T00:00:00Z",
        "startTime": "2026-01-01T00:01:00Z",
        "finishTime": "2026-01-01T00:11:00Z",
    }]})

    builds = client.list_builds(42)

    assert client._get_json.call_args.kwargs["params"]["branchName"] == "refs/pull/42/merge"
    assert len(builds) == 1
    assert builds[0].result is BuildResult.SUCCEEDED
    assert builds[0].run_duration.total_seconds() == 600


def test_decode_thread_vote_update_becomes_system_thread_with_vote():
    """Verify vote-update property bags decode into a system thread carrying the vote."""
    thread = decode_thread(_thread_item(properties=_vote_properties("10")), BotFilter())

    assert thread.comment_type is CommentType.SYSTEM
    assert thread.is_vote_update
    assert thread.vote_update == 10
    assert thread.is_approval


def test_decode_thread_plain_text_thread_has_no_vote():
    """Verify ordinary text threads are not vote updates."""
    thread = decode_thread(_thread_item(status="fixed"), BotFilter())

    assert thread.comment_type is CommentType.TEXT
    assert not thread.is_vote_update
    assert thread.vote_update is None
    assert thread.status is ThreadStatus.FIXED
    assert thread.comment_count == 1


def test_decode_thread_marks_bot_authors():
    """Verify thread authors matching the bot filter are flagged."""
    thread = decode_thread(_thread_item(author="Build Bot", author_id="bot-1"), BotFilter(["build bot"]))

    assert thread.is_author_bot


def test_decode_thread_without_timestamp_is_skipped():
    """Verify threads without a published date decode to None."""
    item = _thread_item()
    item["publishedDate"] = None

    assert decode_thread(item, BotFilter()) is None


def test_detect_published_date_returns_publish_thread_timestamp():
    """Verify the publish system thread is found among other system threads."""
    threads = [
        _thread_item(1, comment_type="system", content="Alice updated reviewers", published="2025-01-01T10:00:00Z"),
        _thread_item(2, comment_type="system", content="Alice published the pull request", published="2025-01-05T14:30:00Z"),
        _thread_item(3, comment_type="system", content="Alice completed the pull request", published="2025-01-10T10:00:00Z"),
    ]

    assert detect_published_date(threads) == datetime(2025, 1, 5, 14, 30, tzinfo=timezone.utc)


def test_detect_published_date_ignores_text_threads():
    """Verify human comments mentioning publishing do not count."""
    threads = [_thread_item(1, comment_type="text", content="Published docs too")]

    assert detect_published_date(threads) is None


def test_detect_published_date_requires_whole_word():
    """Verify system messages that only contain the word inside another word are ignored."""
    threads = [
        _thread_item(1, comment_type="system", content="Alice unpublished the draft", published="2025-01-01T10:00:00Z"),
        _thread_item(2, comment_type="system", content="Alice Published the pull request", published="2025-01-02T10:00:00Z"),
    ]

    assert detect_published_date(threads) == datetime(2025, 1, 2, 10, 0, tzinfo=timezone.utc)


def test_count_distinct_commits_is_case_insensitive():
    """Verify commit ids repeated across iterations are counted once."""
    iterations = [
        {"id": 1, "commits": [{"commitId": "ABC"}, {"commitId": "def"}]},
        {"id": 2, "commits": [{"commitId": "abc"}, {"commitId": "123"}]},
        {"id": 3},
    ]

    assert count_distinct_commits(iterations) == 3


def test_decode_build_skips_items_without_queue_time():
    """Verify builds lacking a queue time are ignored."""
    assert decode_build({"id": 1}) is None


def test_build_pull_request_maps_fields_and_detects_publish_time():
    """Verify record assembly decodes reviewers, threads, iterations and counts."""
    raw_pr = _pr_item(5)
    raw_pr["isDraft"] = False
    raw_pr["reviewers"] = [
        {"displayName": "Bob", "id": "b1", "vote": 10, "isRequired": True},
        {"displayName": "[proj]\\Team", "id": "g1", "vote": 0, "isContainer": True},
    ]
    raw_threads = [
        _thread_item(1, comment_type="system", content="Alice published the pull request",
                     published="2026-01-01T00:30:00Z"),
        _thread_item(2, properties=_vote_properties("5")),
    ]
    raw_iterations = [
        {"id": 1, "createdDate": "2026-01-01T00:00:00Z", "reason": "create", "commits": [{"commitId": "a"}]},
        {"id": 2, "createdDate": "2026-01-01T00:40:00Z", "reason": "push", "commits": [{"commitId": "b"}]},
    ]

    pr = build_pull_request(raw_pr, raw_threads, raw_iterations, files_changed=4, bot_filter=BotFilter())

    assert pr.pull_request_id == 5
    assert pr.status is PrStatus.COMPLETED
    assert pr.repository_name == "repo"
    assert pr.repository_id == "repo-id"
    assert pr.published_date == datetime(2026, 1, 1, 0, 30, tzinfo=timezone.utc)
    assert pr.commit_count == 2
    assert pr.files_changed == 4
    assert [reviewer.is_container for reviewer in pr.reviewers] == [False, True]
    assert pr.threads[1].vote_update == 5
    assert pr.iterations[1].is_push
