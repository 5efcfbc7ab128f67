"""Azure DevOps REST API client and payload decoding.

Every outbound request goes through :class:`~prstats.retry.RetryPolicy`.
Payloads are decoded into :mod:`prstats.models` types here, so nothing
downstream reads the untyped thread property bag.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import requests
from requests.auth import HTTPBasicAuth

from .bot_filter import BotFilter
from .config import PAGE_SIZE, Config
from .errors import ApiError, TransientApiError
from .models import (
    BuildResult,
    BuildRun,
    CommentType,
    Iteration,
    PrStatus,
    PullRequest,
    Reviewer,
    Thread,
    ThreadStatus,
    format_datetime,
    parse_datetime,
)
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

_PUBLISHED_PATTERN = re.compile(r"\bpublished\b", re.IGNORECASE)

_THREAD_TYPE_PROPERTY = "CodeReviewThreadType"
_VOTE_RESULT_PROPERTY = "CodeReviewVoteResult"
_VOTE_UPDATE_TYPE = "voteupdate"


class AdoClient:
    """Small, typed client for the Azure DevOps Git and Build APIs."""

    _API_VERSION = "7.1"
    _PULL_REQUEST_PAGE_SIZE = PAGE_SIZE
    _CHANGES_PAGE_SIZE = 2000

    def __init__(
        self,
        config: Config,
        retry_policy: Optional[RetryPolicy] = None,
        timeout_seconds: int = 30,
    ) -> None:
        """Initialize an authenticated Azure DevOps API client.

        Args:
            config: Validated runtime configuration including org/project/PAT.
            retry_policy: Retry behaviour for every request.
            timeout_seconds: Per-request timeout in seconds.
        """
        self._config = config
        self._retry = retry_policy or RetryPolicy()
        self._timeout_seconds = timeout_seconds
        self._base_url = f"{config.organization_url}/{config.project}/_apis"

        self._session = requests.Session()
        self._session.auth = HTTPBasicAuth("", config.pat)
        self._session.headers.update({"Accept": "application/json"})

    def _build_url(self, path: str) -> str:
        """Build a fully qualified API URL from a path below ``_apis``."""
        return f"{self._base_url}/{path.lstrip('/')}"

    @staticmethod
    def _retry_after_seconds(response: requests.Response) -> Optional[float]:
        retry_after_header = response.headers.get("Retry-After")
        if not retry_after_header:
            return None
        try:
            return max(0.0, float(retry_after_header))
        except ValueError:
            return None

    def _request_json(self, url: str, query: Dict[str, Any]) -> Dict[str, Any]:
        """Execute one GET request and decode the JSON object it returns.

        Raises:
            TransientApiError: On HTTP 429 or 5xx.
            ApiError: On any other HTTP >= 400 or a non-object/invalid JSON body.
        """
        response = self._session.get(url, params=query, timeout=self._timeout_seconds)
        status_code = response.status_code

        if status_code == 429 or 500 <= status_code <= 599:
            raise TransientApiError(
                f"GET {url} returned {status_code}",
                status_code=status_code,
                retry_after=self._retry_after_seconds(response),
            )

        if status_code in (401, 403):
            raise ApiError(
                f"Azure DevOps rejected the credentials (HTTP {status_code}): GET {url}. "
                "Check that the PAT is valid and has Code (Read) and Build (Read) scopes."
            )

        if status_code >= 400:
            raise ApiError(
                "Azure DevOps API request failed: "
                f"GET {url} returned {status_code} - {response.text}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise ApiError(f"Azure DevOps API returned invalid JSON: GET {url}") from exc

        if not isinstance(payload, dict):
            raise ApiError(f"Azure DevOps API returned unexpected payload shape: GET {url}")

        return payload

    def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """GET ``path`` with retries for transient failures."""
        url = self._build_url(path)
        query = dict(params or {})
        query["api-version"] = self._API_VERSION
        return self._retry.call(self._request_json, url, query, description=f"GET {url}")

    def list_pull_requests(
        self,
        status: PrStatus,
        min_time: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """List project-wide pull requests with one status.

        When ``min_time`` is given, results are restricted to records closed at
        or after it. Uses offset pagination via ``$top``/``$skip`` until a page
        comes back short.
        """
        pull_requests: List[Dict[str, Any]] = []
        skip = 0

        while True:
            params: Dict[str, Any] = {
                "searchCriteria.status": status.value,
                "$top": self._PULL_REQUEST_PAGE_SIZE,
                "$skip": skip,
            }

            if min_time is not None:
                params["searchCriteria.queryTimeRangeType"] = "closed"
                params["searchCriteria.minTime"] = format_datetime(min_time)

            payload = self._get_json("git/pullrequests", params=params)

            page_items = payload.get("value", [])
            for item in page_items:
                if item.get("pullRequestId") is None or not item.get("creationDate"):
                    raise ApiError(
                        "Azure DevOps pull request payload is missing required fields: "
                        f"payload={item}"
                    )
                pull_requests.append(item)

            if len(page_items) < self._PULL_REQUEST_PAGE_SIZE:
                break

            skip += len(page_items)

        logger.debug(
            "Fetched pull requests",
            extra={"status": status.value, "count": len(pull_requests)},
        )
        return pull_requests

    def list_threads(self, repo_id: str, pr_id: int) -> List[Dict[str, Any]]:
        """List discussion threads for a pull request."""
        payload = self._get_json(f"git/repositories/{repo_id}/pullRequests/{pr_id}/threads")
        return list(payload.get("value", []))

    def list_iterations(self, repo_id: str, pr_id: int) -> List[Dict[str, Any]]:
        """List iterations for a pull request, including their commits."""
        payload = self._get_json(
            f"git/repositories/{repo_id}/pullRequests/{pr_id}/iterations",
            params={"includeCommits": "true"},
        )
        return list(payload.get("value", []))

    def count_iteration_changes(self, repo_id: str, pr_id: int, iteration_id: int) -> int:
        """Count files changed in ``iteration_id`` compared with the merge base."""
        total = 0
        skip = 0

        while True:
            payload = self._get_json(
                f"git/repositories/{repo_id}/pullRequests/{pr_id}/iterations/{iteration_id}/changes",
                params={"$compareTo": 0, "$top": self._CHANGES_PAGE_SIZE, "$skip": skip},
            )
            total += len(payload.get("changeEntries") or [])

            next_skip = payload.get("nextSkip") or 0
            if next_skip <= skip:
                break
            skip = next_skip

        return total

    def list_builds(self, pr_id: int) -> List[BuildRun]:
        """List build runs queued for a pull request's merge ref."""
        payload = self._get_json(
            "build/builds",
            params={"branchName": f"refs/pull/{pr_id}/merge"},
        )
        builds: List[BuildRun] = []
        for item in payload.get("value", []):
            build = decode_build(item)
            if build is not None:
                builds.append(build)
        return builds


def _property_value(properties: Optional[Dict[str, Any]], key: str) -> Optional[str]:
    """Read a value from a thread property bag (``{"$type": ..., "$value": ...}``)."""
    if not properties:
        return None
    entry = properties.get(key)
    if isinstance(entry, dict):
        entry = entry.get("$value")
    if entry is None:
        return None
    return str(entry)


def _identity(value: Optional[Dict[str, Any]]) -> Dict[str, str]:
    value = value or {}
    return {
        "display_name": value.get("displayName") or "Unknown",
        "id": str(value.get("id") or ""),
    }


def decode_reviewer(item: Dict[str, Any]) -> Reviewer:
    return Reviewer(
        display_name=item.get("displayName") or "Unknown",
        id=str(item.get("id") or ""),
        vote=int(item.get("vote") or 0),
        is_container=bool(item.get("isContainer", False)),
        is_required=bool(item.get("isRequired", False)),
    )


def decode_thread(item: Dict[str, Any], bot_filter: BotFilter) -> Optional[Thread]:
    """Decode a thread payload, or ``None`` when it lacks an id or timestamp."""
    thread_id = item.get("id")
    published_date = parse_datetime(item.get("publishedDate"))
    if thread_id is None or published_date is None:
        return None

    comments = item.get("comments") or []
    first_comment = comments[0] if comments else {}
    author = _identity(first_comment.get("author"))

    properties = item.get("properties")
    thread_type = _property_value(properties, _THREAD_TYPE_PROPERTY) or ""

    vote_update: Optional[int] = None
    if thread_type.lower() == _VOTE_UPDATE_TYPE:
        raw_vote = _property_value(properties, _VOTE_RESULT_PROPERTY)
        try:
            vote_update = int(raw_vote) if raw_vote is not None else 0
        except ValueError:
            vote_update = 0

    comment_type = CommentType.parse(first_comment.get("commentType"))
    # Typed system threads (vote updates, status updates, ...) are system threads.
    if thread_type and thread_type.lower() != "text":
        comment_type = CommentType.SYSTEM

    return Thread(
        thread_id=int(thread_id),
        comment_type=comment_type,
        published_date=published_date,
        author_display_name=author["display_name"],
        author_id=author["id"],
        is_author_bot=bot_filter.is_bot(author["display_name"], False, author["id"]),
        status=ThreadStatus.parse(item.get("status")),
        comment_count=len(comments),
        vote_update=vote_update,
    )


def decode_iteration(item: Dict[str, Any]) -> Iteration:
    return Iteration(
        iteration_id=int(item.get("id") or 0),
        created_date=parse_datetime(item.get("createdDate")) or datetime.min.replace(tzinfo=timezone.utc),
        reason=str(item.get("reason") or "unknown"),
    )


def decode_build(item: Dict[str, Any]) -> Optional[BuildRun]:
    build_id = item.get("id")
    queue_time = parse_datetime(item.get("queueTime"))
    if build_id is None or queue_time is None:
        return None

    definition = item.get("definition") or {}
    return BuildRun(
        build_id=int(build_id),
        definition_name=definition.get("name") or "Unknown",
        definition_id=int(definition.get("id") or 0),
        status=str(item.get("status") or "unknown"),
        result=BuildResult.parse(item.get("result")),
        queue_time=queue_time,
        start_time=parse_datetime(item.get("startTime")),
        finish_time=parse_datetime(item.get("finishTime")),
        source_version=item.get("sourceVersion"),
    )


def detect_published_date(raw_threads: Iterable[Dict[str, Any]]) -> Optional[datetime]:
    """Find when a draft was published, from the system thread announcing it."""
    published: Optional[datetime] = None
    for item in raw_threads:
        comments = item.get("comments") or []
        if not comments:
            continue
        first_comment = comments[0]
        if CommentType.parse(first_comment.get("commentType")) is not CommentType.SYSTEM:
            continue
        if not _PUBLISHED_PATTERN.search(first_comment.get("content") or ""):
            continue
        timestamp = parse_datetime(item.get("publishedDate"))
        if timestamp is not None and (published is None or timestamp < published):
            published = timestamp
    return published


def count_distinct_commits(raw_iterations: Iterable[Dict[str, Any]]) -> int:
    """Count unique commit ids across iterations, ignoring case."""
    commit_ids = set()
    for iteration in raw_iterations:
        for commit in iteration.get("commits") or []:
            commit_id = commit.get("commitId")
            if commit_id:
                commit_ids.add(commit_id.lower())
    return len(commit_ids)


def build_pull_request(
    raw_pr: Dict[str, Any],
    raw_threads: List[Dict[str, Any]],
    raw_iterations: List[Dict[str, Any]],
    files_changed: int,
    bot_filter: BotFilter,
) -> PullRequest:
    """Assemble an enriched ``PullRequest`` from the record and its detail payloads."""
    author = _identity(raw_pr.get("createdBy"))
    closed_by = raw_pr.get("closedBy")
    repository = raw_pr.get("repository") or {}

    threads = [
        thread
        for thread in (decode_thread(item, bot_filter) for item in raw_threads)
        if thread is not None
    ]

    creation_date = parse_datetime(raw_pr.get("creationDate"))
    if creation_date is None:
        raise ApiError(f"Pull request {raw_pr.get('pullRequestId')} has no creationDate")

    published_date = parse_datetime(raw_pr.get("publishedDate")) or detect_published_date(raw_threads)

    return PullRequest(
        pull_request_id=int(raw_pr["pullRequestId"]),
        title=raw_pr.get("title") or "",
        repository_name=repository.get("name") or "Unknown",
        repository_id=str(repository.get("id") or ""),
        status=PrStatus.parse(raw_pr.get("status")),
        is_draft=bool(raw_pr.get("isDraft", False)),
        creation_date=creation_date,
        closed_date=parse_datetime(raw_pr.get("closedDate")),
        published_date=published_date,
        author_display_name=author["display_name"],
        author_id=author["id"],
        is_author_bot=bot_filter.is_bot(author["display_name"], False, author["id"]),
        closed_by_display_name=(closed_by or {}).get("displayName"),
        closed_by_id=str(closed_by["id"]) if closed_by and closed_by.get("id") else None,
        reviewers=[decode_reviewer(item) for item in raw_pr.get("reviewers") or []],
        threads=threads,
        iterations=[decode_iteration(item) for item in raw_iterations],
        files_changed=files_changed,
        commit_count=count_distinct_commits(raw_iterations),
    )
