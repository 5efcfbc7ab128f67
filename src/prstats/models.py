"""Domain models for Azure DevOps pull request statistics.

Raw records (``PullRequest`` and its children) are what the pipeline fetches
and what the local cache persists. They serialize to camelCase dictionaries
with enum values written as lowercase-first string tokens.

Derived types (``PullRequestMetrics``, ``TeamSummary``, ``OutlierResult``) are
frozen: recomputation replaces them wholesale.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

APPROVAL_VOTE_THRESHOLD = 5


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse Azure DevOps ISO8601 timestamps into timezone-aware UTC datetimes."""
    if not value:
        return None

    normalized = value[:-1] + "+00:00" if value.endswith("Z") else value
    # Azure DevOps emits up to 7 fractional digits; fromisoformat accepts at most 6.
    if "." in normalized:
        head, _, tail = normalized.partition(".")
        digits = ""
        rest = tail
        while rest and rest[0].isdigit():
            digits += rest[0]
            rest = rest[1:]
        normalized = f"{head}.{digits[:6].ljust(6, '0')}{rest}"

    parsed = datetime.fromisoformat(normalized)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    """Format a datetime as UTC ISO8601 with a ``Z`` suffix."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _require_datetime(value: Optional[str], name: str) -> datetime:
    parsed = parse_datetime(value)
    if parsed is None:
        raise ValueError(f"Missing required timestamp '{name}'")
    return parsed


class PrStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"

    @property
    def is_terminal(self) -> bool:
        return self is not PrStatus.ACTIVE

    @classmethod
    def parse(cls, value: Optional[str]) -> "PrStatus":
        normalized = (value or "").lower()
        if normalized == "completed":
            return cls.COMPLETED
        if normalized == "abandoned":
            return cls.ABANDONED
        return cls.ACTIVE


class CommentType(str, Enum):
    TEXT = "text"
    SYSTEM = "system"
    CODE_CHANGE = "codeChange"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "CommentType":
        normalized = (value or "").lower()
        for member in cls:
            if member.value.lower() == normalized:
                return member
        return cls.UNKNOWN


class ThreadStatus(str, Enum):
    FIXED = "fixed"
    CLOSED = "closed"
    WONT_FIX = "wontFix"
    BY_DESIGN = "byDesign"
    ACTIVE = "active"
    PENDING = "pending"
    UNKNOWN = "unknown"

    @property
    def is_resolved(self) -> bool:
        return self in _RESOLVED_STATUSES

    @classmethod
    def parse(cls, value: Optional[str]) -> "ThreadStatus":
        normalized = (value or "").lower()
        for member in cls:
            if member.value.lower() == normalized:
                return member
        return cls.UNKNOWN


_RESOLVED_STATUSES = frozenset(
    {ThreadStatus.FIXED, ThreadStatus.CLOSED, ThreadStatus.WONT_FIX, ThreadStatus.BY_DESIGN}
)


class BuildResult(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    PARTIALLY_SUCCEEDED = "partiallySucceeded"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["BuildResult"]:
        normalized = (value or "").lower()
        for member in cls:
            if member.value.lower() == normalized:
                return member
        return None


@dataclass(slots=True)
class Reviewer:
    """A reviewer assignment and the vote they cast (-10..10, 0 = no vote)."""

    display_name: str
    id: str
    vote: int = 0
    is_container: bool = False
    is_required: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "displayName": self.display_name,
            "id": self.id,
            "vote": self.vote,
            "isContainer": self.is_container,
            "isRequired": self.is_required,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Reviewer":
        return cls(
            display_name=data["displayName"],
            id=data.get("id") or "",
            vote=int(data.get("vote") or 0),
            is_container=bool(data.get("isContainer", False)),
            is_required=bool(data.get("isRequired", False)),
        )


@dataclass(slots=True)
class Thread:
    """A review thread.

    ``vote_update`` is ``None`` for ordinary threads and holds the vote value
    for system threads recording a reviewer's vote change.
    """

    thread_id: int
    comment_type: CommentType
    published_date: datetime
    author_display_name: str
    author_id: str
    is_author_bot: bool = False
    status: ThreadStatus = ThreadStatus.UNKNOWN
    comment_count: int = 0
    vote_update: Optional[int] = None

    @property
    def is_vote_update(self) -> bool:
        return self.vote_update is not None

    @property
    def is_approval(self) -> bool:
        return self.vote_update is not None and self.vote_update >= APPROVAL_VOTE_THRESHOLD

    def to_dict(self) -> Dict[str, Any]:
        return {
            "threadId": self.thread_id,
            "commentType": self.comment_type.value,
            "publishedDate": format_datetime(self.published_date),
            "authorDisplayName": self.author_display_name,
            "authorId": self.author_id,
            "isAuthorBot": self.is_author_bot,
            "status": self.status.value,
            "commentCount": self.comment_count,
            "isVoteUpdate": self.is_vote_update,
            "voteValue": self.vote_update,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Thread":
        vote_update = None
        if data.get("isVoteUpdate"):
            vote_update = int(data.get("voteValue") or 0)
        return cls(
            thread_id=int(data["threadId"]),
            comment_type=CommentType.parse(data.get("commentType")),
            published_date=_require_datetime(data.get("publishedDate"), "publishedDate"),
            author_display_name=data.get("authorDisplayName") or "Unknown",
            author_id=data.get("authorId") or "",
            is_author_bot=bool(data.get("isAuthorBot", False)),
            status=ThreadStatus.parse(data.get("status")),
            comment_count=int(data.get("commentCount") or 0),
            vote_update=vote_update,
        )


@dataclass(slots=True)
class Iteration:
    """A discrete push of commits onto a pull request."""

    iteration_id: int
    created_date: datetime
    reason: str

    @property
    def is_push(self) -> bool:
        return self.reason.lower() in ("push", "forcepush")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "iterationId": self.iteration_id,
            "createdDate": format_datetime(self.created_date),
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Iteration":
        return cls(
            iteration_id=int(data["iterationId"]),
            created_date=_require_datetime(data.get("createdDate"), "createdDate"),
            reason=data.get("reason") or "unknown",
        )


@dataclass(slots=True)
class PullRequest:
    """An enriched pull request record."""

    pull_request_id: int
    title: str
    repository_name: str
    status: PrStatus
    is_draft: bool
    creation_date: datetime
    author_display_name: str
    author_id: str
    repository_id: str = ""
    closed_date: Optional[datetime] = None
    published_date: Optional[datetime] = None
    is_author_bot: bool = False
    closed_by_display_name: Optional[str] = None
    closed_by_id: Optional[str] = None
    reviewers: List[Reviewer] = field(default_factory=list)
    threads: List[Thread] = field(default_factory=list)
    iterations: List[Iteration] = field(default_factory=list)
    files_changed: int = 0
    commit_count: int = 0

    @property
    def cycle_start(self) -> datetime:
        """Effective start of the review cycle: publish time, else creation time."""
        return self.published_date or self.creation_date

    @property
    def relevant_date(self) -> datetime:
        """The later of creation and close, used for cache eviction."""
        if self.closed_date is not None and self.closed_date > self.creation_date:
            return self.closed_date
        return self.creation_date

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pullRequestId": self.pull_request_id,
            "title": self.title,
            "repositoryName": self.repository_name,
            "repositoryId": self.repository_id,
            "status": self.status.value,
            "isDraft": self.is_draft,
            "creationDate": format_datetime(self.creation_date),
            "closedDate": format_datetime(self.closed_date),
            "publishedDate": format_datetime(self.published_date),
            "authorDisplayName": self.author_display_name,
            "authorId": self.author_id,
            "isAuthorBot": self.is_author_bot,
            "closedByDisplayName": self.closed_by_display_name,
            "closedById": self.closed_by_id,
            "reviewers": [reviewer.to_dict() for reviewer in self.reviewers],
            "threads": [thread.to_dict() for thread in self.threads],
            "iterations": [iteration.to_dict() for iteration in self.iterations],
            "filesChanged": self.files_changed,
            "commitCount": self.commit_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PullRequest":
        return cls(
            pull_request_id=int(data["pullRequestId"]),
            title=data.get("title") or "",
            repository_name=data.get("repositoryName") or "Unknown",
            repository_id=data.get("repositoryId") or "",
            status=PrStatus.parse(data.get("status")),
            is_draft=bool(data.get("isDraft", False)),
            creation_date=_require_datetime(data.get("creationDate"), "creationDate"),
            closed_date=parse_datetime(data.get("closedDate")),
            published_date=parse_datetime(data.get("publishedDate")),
            author_display_name=data.get("authorDisplayName") or "Unknown",
            author_id=data.get("authorId") or "",
            is_author_bot=bool(data.get("isAuthorBot", False)),
            closed_by_display_name=data.get("closedByDisplayName"),
            closed_by_id=data.get("closedById"),
            reviewers=[Reviewer.from_dict(item) for item in data.get("reviewers") or []],
            threads=[Thread.from_dict(item) for item in data.get("threads") or []],
            iterations=[Iteration.from_dict(item) for item in data.get("iterations") or []],
            files_changed=int(data.get("filesChanged") or 0),
            commit_count=int(data.get("commitCount") or 0),
        )


@dataclass(slots=True)
class BuildRun:
    """A pipeline run triggered for a pull request's merge ref."""

    build_id: int
    definition_name: str
    definition_id: int
    status: str
    queue_time: datetime
    result: Optional[BuildResult] = None
    start_time: Optional[datetime] = None
    finish_time: Optional[datetime] = None
    source_version: Optional[str] = None

    @property
    def queue_duration(self) -> Optional[timedelta]:
        if self.start_time is None:
            return None
        return self.start_time - self.queue_time

    @property
    def run_duration(self) -> Optional[timedelta]:
        if self.start_time is None or self.finish_time is None:
            return None
        return self.finish_time - self.start_time

    @property
    def elapsed(self) -> Optional[timedelta]:
        if self.finish_time is None:
            return None
        return self.finish_time - self.queue_time


@dataclass(frozen=True, slots=True)
class PipelineSummary:
    definition_name: str
    run_count: int
    succeeded_count: int
    failed_count: int
    avg_duration: Optional[timedelta] = None


@dataclass(frozen=True, slots=True)
class BuildSummary:
    """Build outcomes and timings for one pull request."""

    total_build_count: int
    succeeded_count: int
    failed_count: int
    canceled_count: int
    partially_succeeded_count: int
    build_success_rate: float
    avg_queue_time: Optional[timedelta] = None
    avg_run_time: Optional[timedelta] = None
    total_elapsed_time: Optional[timedelta] = None
    total_run_time: Optional[timedelta] = None
    per_pipeline: List[PipelineSummary] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class PipelineTeamSummary:
    total_runs: int
    success_rate: float
    avg_duration: Optional[timedelta] = None


@dataclass(frozen=True, slots=True)
class TeamBuildSummary:
    total_builds: int
    avg_builds_per_pr: float
    median_builds_per_pr: float
    overall_success_rate: float
    avg_run_time: Optional[timedelta] = None
    median_run_time: Optional[timedelta] = None
    avg_queue_time: Optional[timedelta] = None
    avg_ci_elapsed_per_pr: Optional[timedelta] = None
    total_ci_elapsed: Optional[timedelta] = None
    per_pipeline: Dict[str, PipelineTeamSummary] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class PullRequestMetrics:
    """Metrics derived from one ``PullRequest``."""

    pull_request_id: int
    title: str
    repository_name: str
    status: PrStatus
    is_draft: bool
    author_display_name: str
    creation_date: datetime
    is_author_bot: bool = False
    closed_date: Optional[datetime] = None
    published_date: Optional[datetime] = None

    # Populated only for completed, non-draft records with a close date.
    total_cycle_time: Optional[timedelta] = None
    time_to_first_human_comment: Optional[timedelta] = None
    time_to_first_approval: Optional[timedelta] = None
    time_from_approval_to_merge: Optional[timedelta] = None

    files_changed: int = 0
    commit_count: int = 0
    iteration_count: int = 0

    human_comment_count: int = 0
    # None for active records.
    is_first_time_approval: Optional[bool] = None
    approval_reset_count: Optional[int] = None
    resolvable_thread_count: int = 0
    resolved_thread_count: int = 0

    active_reviewer_count: int = 0
    active_reviewers: List[str] = field(default_factory=list)

    creation_weekday: int = 0
    creation_hour: int = 0

    active_age: Optional[timedelta] = None
    build_summary: Optional[BuildSummary] = None


@dataclass(frozen=True, slots=True)
class WeeklyCount:
    week_start: date
    count: int


@dataclass(frozen=True, slots=True)
class PairingEntry:
    author: str
    reviewer: str
    count: int


@dataclass(frozen=True, slots=True)
class DurationStats:
    mean: Optional[timedelta] = None
    median: Optional[timedelta] = None
    count: int = 0


@dataclass(frozen=True, slots=True)
class RepositoryBreakdown:
    """The core team aggregates computed for a single repository."""

    total_pr_count: int
    completed_pr_count: int
    abandoned_pr_count: int
    active_pr_count: int
    cycle_time: DurationStats
    time_to_first_comment: DurationStats
    time_to_first_approval: DurationStats
    avg_files_changed: float
    avg_commits_per_pr: float
    abandoned_rate: float
    first_time_approval_rate: float
    approval_reset_rate: float
    thread_resolution_rate: float


@dataclass(frozen=True, slots=True)
class TeamSummary:
    """Aggregates over all metrics of a run."""

    total_pr_count: int
    completed_pr_count: int
    abandoned_pr_count: int
    active_pr_count: int
    cycle_time: DurationStats
    time_to_first_comment: DurationStats
    time_to_first_approval: DurationStats
    avg_files_changed: float
    avg_commits_per_pr: float
    abandoned_rate: float
    first_time_approval_rate: float
    approval_reset_rate: float
    thread_resolution_rate: float
    throughput_by_author: Dict[str, List[WeeklyCount]] = field(default_factory=dict)
    reviews_per_person: Dict[str, int] = field(default_factory=dict)
    comments_per_person: Dict[str, int] = field(default_factory=dict)
    prs_per_author: Dict[str, int] = field(default_factory=dict)
    pairing_matrix: List[PairingEntry] = field(default_factory=list)
    per_repository: Dict[str, RepositoryBreakdown] = field(default_factory=dict)
    build_summary: Optional[TeamBuildSummary] = None


class Severity(str, Enum):
    BAD = "bad"
    WARN = "warn"


@dataclass(frozen=True, slots=True)
class OutlierFlag:
    label: str
    severity: Severity
    z_score: float


@dataclass(frozen=True, slots=True)
class OutlierResult:
    metrics: PullRequestMetrics
    composite_score: float
    flags: List[OutlierFlag] = field(default_factory=list)
