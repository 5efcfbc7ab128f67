"""Per-pull-request metrics and team-level aggregation.

Per record (:func:`calculate_pr_metrics`):
- Cycle time, time to first human comment, time to first approval and
  approval-to-merge, for completed non-draft records with a close date only.
  All measured from the cycle start (publish time, else creation time).
- First-time approval and approval resets, for terminal records only.
- Thread resolution counts, active reviewers, and an optional build summary.

Team aggregation (:func:`aggregate_team_metrics`) is composed of small
functions over immutable inputs so each can be tested on its own; the same
core functions produce the per-repository breakdown.
"""

from __future__ import annotations

import logging
from collections import Counter, defaultdict
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from .models import (
    BuildResult,
    BuildRun,
    BuildSummary,
    CommentType,
    PairingEntry,
    PipelineSummary,
    PipelineTeamSummary,
    PrStatus,
    PullRequest,
    PullRequestMetrics,
    RepositoryBreakdown,
    TeamBuildSummary,
    TeamSummary,
    Thread,
    WeeklyCount,
)
from .stats import duration_stats, mean, median

logger = logging.getLogger(__name__)


def _is_human_text_thread(thread: Thread, pr: PullRequest) -> bool:
    return (
        thread.comment_type is CommentType.TEXT
        and not thread.is_author_bot
        and thread.author_id != pr.author_id
    )


def first_human_comment(pr: PullRequest) -> Optional[Thread]:
    """Earliest text thread opened by a human other than the author."""
    candidates = [
        thread for thread in pr.threads
        if _is_human_text_thread(thread, pr) and not thread.is_vote_update
    ]
    return min(candidates, key=lambda thread: thread.published_date, default=None)


def first_approval(pr: PullRequest) -> Optional[Thread]:
    """Earliest vote update approving the record (vote of 5 or more)."""
    approvals = [thread for thread in pr.threads if thread.is_approval]
    return min(approvals, key=lambda thread: thread.published_date, default=None)


def count_human_comments(pr: PullRequest) -> int:
    # Vote-update threads are not excluded here, unlike first_human_comment.
    return sum(1 for thread in pr.threads if _is_human_text_thread(thread, pr))


def is_first_time_approval(pr: PullRequest) -> bool:
    """True when an approval arrived before the second iteration was pushed."""
    approval = first_approval(pr)
    if approval is None:
        return False

    if len(pr.iterations) <= 1:
        return True

    iterations = sorted(pr.iterations, key=lambda iteration: iteration.created_date)
    return approval.published_date < iterations[1].created_date


def count_approval_resets(pr: PullRequest) -> int:
    """Count approvals invalidated by a later push.

    Approvals and pushes are merged chronologically, approvals first on equal
    timestamps. A push while approved counts one reset and clears the approval;
    a push with no pending approval does nothing.
    """
    approve, push = 0, 1
    events = [(thread.published_date, approve) for thread in pr.threads if thread.is_approval]
    events.extend((iteration.created_date, push) for iteration in pr.iterations if iteration.is_push)
    events.sort()

    resets = 0
    approved = False
    for _, kind in events:
        if kind == approve:
            approved = True
        elif approved:
            resets += 1
            approved = False
    return resets


def _success_rate(succeeded: int, failed: int, partially_succeeded: int) -> float:
    """Succeeded over terminal outcomes; canceled runs do not count."""
    terminal = succeeded + failed + partially_succeeded
    return succeeded / terminal if terminal else 0.0


def _mean_duration(durations: Sequence[timedelta]) -> Optional[timedelta]:
    if not durations:
        return None
    return sum(durations, timedelta()) / len(durations)


def _total_duration(durations: Sequence[timedelta]) -> Optional[timedelta]:
    if not durations:
        return None
    return sum(durations, timedelta())


def calculate_build_summary(builds: Optional[Sequence[BuildRun]]) -> Optional[BuildSummary]:
    """Summarize build outcomes and timings; ``None`` when there are no builds."""
    if not builds:
        return None

    results = Counter(build.result for build in builds)
    succeeded = results[BuildResult.SUCCEEDED]
    failed = results[BuildResult.FAILED]
    partially_succeeded = results[BuildResult.PARTIALLY_SUCCEEDED]

    queue_times = [build.queue_duration for build in builds if build.queue_duration is not None]
    run_times = [build.run_duration for build in builds if build.run_duration is not None]
    elapsed = [build.elapsed for build in builds if build.elapsed is not None]

    by_pipeline: Dict[str, List[BuildRun]] = defaultdict(list)
    for build in builds:
        by_pipeline[build.definition_name].append(build)

    per_pipeline = [
        PipelineSummary(
            definition_name=name,
            run_count=len(runs),
            succeeded_count=sum(1 for run in runs if run.result is BuildResult.SUCCEEDED),
            failed_count=sum(1 for run in runs if run.result is BuildResult.FAILED),
            avg_duration=_mean_duration([run.run_duration for run in runs if run.run_duration is not None]),
        )
        for name, runs in by_pipeline.items()
    ]
    per_pipeline.sort(key=lambda summary: (-summary.run_count, summary.definition_name))

    return BuildSummary(
        total_build_count=len(builds),
        succeeded_count=succeeded,
        failed_count=failed,
        canceled_count=results[BuildResult.CANCELED],
        partially_succeeded_count=partially_succeeded,
        build_success_rate=_success_rate(succeeded, failed, partially_succeeded),
        avg_queue_time=_mean_duration(queue_times),
        avg_run_time=_mean_duration(run_times),
        total_elapsed_time=_total_duration(elapsed),
        total_run_time=_total_duration(run_times),
        per_pipeline=per_pipeline,
    )


def calculate_pr_metrics(
    pr: PullRequest,
    builds: Optional[Sequence[BuildRun]] = None,
    now: Optional[datetime] = None,
) -> PullRequestMetrics:
    """Derive the metrics of one pull request."""
    cycle_start = pr.cycle_start

    total_cycle_time: Optional[timedelta] = None
    time_to_first_comment: Optional[timedelta] = None
    time_to_first_approval: Optional[timedelta] = None
    time_from_approval_to_merge: Optional[timedelta] = None

    if pr.status is PrStatus.COMPLETED and not pr.is_draft and pr.closed_date is not None:
        total_cycle_time = pr.closed_date - cycle_start

        comment = first_human_comment(pr)
        if comment is not None:
            time_to_first_comment = comment.published_date - cycle_start

        approval = first_approval(pr)
        if approval is not None:
            time_to_first_approval = approval.published_date - cycle_start
            time_from_approval_to_merge = pr.closed_date - approval.published_date

    first_time_approval: Optional[bool] = None
    approval_resets: Optional[int] = None
    if pr.status.is_terminal:
        first_time_approval = is_first_time_approval(pr)
        approval_resets = count_approval_resets(pr)

    resolvable = [
        thread for thread in pr.threads
        if thread.comment_type is CommentType.TEXT and not thread.is_author_bot
    ]

    active_reviewers = [
        reviewer.display_name for reviewer in pr.reviewers
        if not reviewer.is_container and reviewer.vote != 0
    ]

    active_age: Optional[timedelta] = None
    if pr.status is PrStatus.ACTIVE:
        active_age = (now or datetime.now(timezone.utc)) - cycle_start

    return PullRequestMetrics(
        pull_request_id=pr.pull_request_id,
        title=pr.title,
        repository_name=pr.repository_name,
        status=pr.status,
        is_draft=pr.is_draft,
        author_display_name=pr.author_display_name,
        is_author_bot=pr.is_author_bot,
        creation_date=pr.creation_date,
        closed_date=pr.closed_date,
        published_date=pr.published_date,
        total_cycle_time=total_cycle_time,
        time_to_first_human_comment=time_to_first_comment,
        time_to_first_approval=time_to_first_approval,
        time_from_approval_to_merge=time_from_approval_to_merge,
        files_changed=pr.files_changed,
        commit_count=pr.commit_count,
        iteration_count=len(pr.iterations),
        human_comment_count=count_human_comments(pr),
        is_first_time_approval=first_time_approval,
        approval_reset_count=approval_resets,
        resolvable_thread_count=len(resolvable),
        resolved_thread_count=sum(1 for thread in resolvable if thread.status.is_resolved),
        active_reviewer_count=len(active_reviewers),
        active_reviewers=active_reviewers,
        creation_weekday=pr.creation_date.weekday(),
        creation_hour=pr.creation_date.hour,
        active_age=active_age,
        build_summary=calculate_build_summary(builds),
    )


def count_by_status(metrics: Sequence[PullRequestMetrics]) -> Dict[PrStatus, int]:
    counts = Counter(metric.status for metric in metrics)
    return {status: counts.get(status, 0) for status in PrStatus}


def _completed(metrics: Iterable[PullRequestMetrics]) -> List[PullRequestMetrics]:
    return [metric for metric in metrics if metric.status is PrStatus.COMPLETED]


def _completed_non_draft(metrics: Iterable[PullRequestMetrics]) -> List[PullRequestMetrics]:
    return [metric for metric in _completed(metrics) if not metric.is_draft]


def abandoned_rate(metrics: Sequence[PullRequestMetrics]) -> float:
    if not metrics:
        return 0.0
    return sum(1 for metric in metrics if metric.status is PrStatus.ABANDONED) / len(metrics)


def first_time_approval_rate(metrics: Sequence[PullRequestMetrics]) -> float:
    completed = _completed(metrics)
    if not completed:
        return 0.0
    return sum(1 for metric in completed if metric.is_first_time_approval) / len(completed)


def approval_reset_rate(metrics: Sequence[PullRequestMetrics]) -> float:
    """Share of completed records that had at least one approval reset."""
    completed = _completed(metrics)
    if not completed:
        return 0.0
    return sum(1 for metric in completed if (metric.approval_reset_count or 0) > 0) / len(completed)


def thread_resolution_rate(metrics: Sequence[PullRequestMetrics]) -> float:
    """Resolved over resolvable threads, as a ratio of totals."""
    resolvable = sum(metric.resolvable_thread_count for metric in metrics)
    if resolvable == 0:
        return 0.0
    return sum(metric.resolved_thread_count for metric in metrics) / resolvable


def week_start(moment: datetime) -> date:
    """Monday of the ISO week containing ``moment``."""
    day = moment.date()
    return day - timedelta(days=day.weekday())


def throughput_by_author(metrics: Sequence[PullRequestMetrics]) -> Dict[str, List[WeeklyCount]]:
    """Completed records per author per ISO week of their close date."""
    weekly: Dict[str, Counter] = defaultdict(Counter)
    for metric in _completed(metrics):
        if metric.closed_date is None:
            continue
        weekly[metric.author_display_name][week_start(metric.closed_date)] += 1

    return {
        author: [WeeklyCount(week_start=week, count=count) for week, count in sorted(weeks.items())]
        for author, weeks in sorted(weekly.items())
    }


def reviews_per_person(prs: Sequence[PullRequest]) -> Dict[str, int]:
    """Votes cast by people on records they did not author."""
    counts: Counter = Counter()
    for pr in prs:
        for reviewer in pr.reviewers:
            if not reviewer.is_container and reviewer.vote != 0 and reviewer.id != pr.author_id:
                counts[reviewer.display_name] += 1
    return dict(counts)


def comments_per_person(prs: Sequence[PullRequest]) -> Dict[str, int]:
    """Human text threads each person started on someone else's record."""
    counts: Counter = Counter()
    for pr in prs:
        for thread in pr.threads:
            if _is_human_text_thread(thread, pr) and not thread.is_vote_update:
                counts[thread.author_display_name] += 1
    return dict(counts)


def prs_per_author(metrics: Sequence[PullRequestMetrics]) -> Dict[str, int]:
    return dict(Counter(metric.author_display_name for metric in metrics))


def pairing_matrix(prs: Sequence[PullRequest]) -> List[PairingEntry]:
    """How often each reviewer voted on each author's records, most frequent first."""
    pairs: Counter = Counter()
    for pr in prs:
        for reviewer in pr.reviewers:
            if not reviewer.is_container and reviewer.vote != 0 and reviewer.id != pr.author_id:
                pairs[(pr.author_display_name, reviewer.display_name)] += 1

    entries = [
        PairingEntry(author=author, reviewer=reviewer, count=count)
        for (author, reviewer), count in pairs.items()
    ]
    entries.sort(key=lambda entry: (-entry.count, entry.author, entry.reviewer))
    return entries


def _durations(metrics: Iterable[PullRequestMetrics], attribute: str) -> List[timedelta]:
    values = (getattr(metric, attribute) for metric in metrics)
    return [value for value in values if value is not None]


def _core_aggregates(metrics: Sequence[PullRequestMetrics]) -> Dict[str, object]:
    """Aggregates shared by the team summary and each repository breakdown."""
    counts = count_by_status(metrics)
    completed_non_draft = _completed_non_draft(metrics)

    return {
        "total_pr_count": len(metrics),
        "completed_pr_count": counts[PrStatus.COMPLETED],
        "abandoned_pr_count": counts[PrStatus.ABANDONED],
        "active_pr_count": counts[PrStatus.ACTIVE],
        "cycle_time": duration_stats(_durations(completed_non_draft, "total_cycle_time")),
        "time_to_first_comment": duration_stats(
            _durations(completed_non_draft, "time_to_first_human_comment")
        ),
        "time_to_first_approval": duration_stats(
            _durations(completed_non_draft, "time_to_first_approval")
        ),
        "avg_files_changed": mean([metric.files_changed for metric in metrics]) or 0.0,
        "avg_commits_per_pr": mean([metric.commit_count for metric in metrics]) or 0.0,
        "abandoned_rate": abandoned_rate(metrics),
        "first_time_approval_rate": first_time_approval_rate(metrics),
        "approval_reset_rate": approval_reset_rate(metrics),
        "thread_resolution_rate": thread_resolution_rate(metrics),
    }


def breakdown_by_repository(metrics: Sequence[PullRequestMetrics]) -> Dict[str, RepositoryBreakdown]:
    groups: Dict[str, List[PullRequestMetrics]] = defaultdict(list)
    for metric in metrics:
        groups[metric.repository_name].append(metric)

    return {
        name: RepositoryBreakdown(**_core_aggregates(group))  # type: ignore[arg-type]
        for name, group in sorted(groups.items())
    }


def summarize_team_builds(builds_by_pr: Optional[Mapping[int, Sequence[BuildRun]]]) -> Optional[TeamBuildSummary]:
    """Team-wide build statistics; ``None`` when no record has builds."""
    per_pr = [list(builds) for builds in (builds_by_pr or {}).values() if builds]
    if not per_pr:
        return None

    all_builds = [build for builds in per_pr for build in builds]
    results = Counter(build.result for build in all_builds)
    builds_per_pr = [len(builds) for builds in per_pr]

    run_times = [build.run_duration for build in all_builds if build.run_duration is not None]
    queue_times = [build.queue_duration for build in all_builds if build.queue_duration is not None]
    elapsed_per_pr = [
        total for total in (
            _total_duration([build.elapsed for build in builds if build.elapsed is not None])
            for builds in per_pr
        )
        if total is not None
    ]

    run_seconds = [duration.total_seconds() for duration in run_times]
    median_run = median(run_seconds)

    by_pipeline: Dict[str, List[BuildRun]] = defaultdict(list)
    for build in all_builds:
        by_pipeline[build.definition_name].append(build)

    per_pipeline = {
        name: PipelineTeamSummary(
            total_runs=len(runs),
            success_rate=_success_rate(
                sum(1 for run in runs if run.result is BuildResult.SUCCEEDED),
                sum(1 for run in runs if run.result is BuildResult.FAILED),
                sum(1 for run in runs if run.result is BuildResult.PARTIALLY_SUCCEEDED),
            ),
            avg_duration=_mean_duration([run.run_duration for run in runs if run.run_duration is not None]),
        )
        for name, runs in sorted(by_pipeline.items())
    }

    return TeamBuildSummary(
        total_builds=len(all_builds),
        avg_builds_per_pr=mean(builds_per_pr) or 0.0,
        median_builds_per_pr=median(builds_per_pr) or 0.0,
        overall_success_rate=_success_rate(
            results[BuildResult.SUCCEEDED],
            results[BuildResult.FAILED],
            results[BuildResult.PARTIALLY_SUCCEEDED],
        ),
        avg_run_time=_mean_duration(run_times),
        median_run_time=timedelta(seconds=median_run) if median_run is not None else None,
        avg_queue_time=_mean_duration(queue_times),
        avg_ci_elapsed_per_pr=_mean_duration(elapsed_per_pr),
        total_ci_elapsed=_total_duration(elapsed_per_pr),
        per_pipeline=per_pipeline,
    )


def aggregate_team_metrics(
    metrics: Sequence[PullRequestMetrics],
    prs: Sequence[PullRequest],
    builds_by_pr: Optional[Mapping[int, Sequence[BuildRun]]] = None,
) -> TeamSummary:
    """Aggregate per-record metrics into a team summary.

    Input order does not matter; everything order-sensitive sorts explicitly.
    """
    summary = TeamSummary(
        **_core_aggregates(metrics),  # type: ignore[arg-type]
        throughput_by_author=throughput_by_author(metrics),
        reviews_per_person=reviews_per_person(prs),
        comments_per_person=comments_per_person(prs),
        prs_per_author=prs_per_author(metrics),
        pairing_matrix=pairing_matrix(prs),
        per_repository=breakdown_by_repository(metrics),
        build_summary=summarize_team_builds(builds_by_pr),
    )
    logger.info(
        "Aggregated team metrics",
        extra={
            "prs_total": summary.total_pr_count,
            "completed": summary.completed_pr_count,
            "repositories": len(summary.per_repository),
        },
    )
    return summary
