"""Statistics and formatting helpers for PR stats reporting.

This module provides utilities for:
- Computing linear-interpolation percentiles from pre-sorted samples.
- Means, medians and population standard deviations of plain numbers and
  of ``timedelta`` durations.
- Formatting durations as ``HH:MM:SS``.
- Building a human-readable summary of team metrics and outliers.
"""

from __future__ import annotations

import math
from datetime import timedelta
from typing import List, Optional, Sequence, Union

from .models import DurationStats, OutlierResult, TeamSummary


def calculate_percentile(sorted_values: Sequence[float], p: float) -> Optional[float]:
    """Calculate a percentile using linear interpolation.

    The input sequence is expected to already be sorted in ascending order.
    - Empty input returns ``None``.
    - ``p <= 0`` returns the first value.
    - ``p >= 100`` returns the last value.
    - Otherwise, percentile is linearly interpolated between adjacent ranks.

    Raises:
        ValueError: If ``p`` is outside ``[0, 100]``.
    """
    if not 0 <= p <= 100:
        raise ValueError("Percentile 'p' must be in the range [0, 100].")

    if not sorted_values:
        return None

    if p <= 0:
        return sorted_values[0]

    if p >= 100:
        return sorted_values[-1]

    position = (len(sorted_values) - 1) * (p / 100.0)
    lower_index = math.floor(position)
    upper_index = math.ceil(position)

    if lower_index == upper_index:
        return sorted_values[int(position)]

    lower_value = sorted_values[lower_index]
    upper_value = sorted_values[upper_index]
    return lower_value + (upper_value - lower_value) * (position - lower_index)


def mean(values: Sequence[float]) -> Optional[float]:
    if not values:
        return None
    return sum(values) / len(values)


def median(values: Sequence[float]) -> Optional[float]:
    """Median of unsorted values; the two middle values are averaged for even counts."""
    return calculate_percentile(sorted(values), 50)


def population_stddev(values: Sequence[float]) -> float:
    """Population (not sample) standard deviation; 0 for fewer than one value."""
    if not values:
        return 0.0
    average = sum(values) / len(values)
    variance = sum((value - average) ** 2 for value in values) / len(values)
    return math.sqrt(variance)


def duration_stats(durations: Sequence[timedelta]) -> DurationStats:
    """Mean and median of durations; empty input yields empty stats."""
    if not durations:
        return DurationStats()

    seconds = [duration.total_seconds() for duration in durations]
    return DurationStats(
        mean=timedelta(seconds=sum(seconds) / len(seconds)),
        median=timedelta(seconds=median(seconds) or 0.0),
        count=len(seconds),
    )


def format_duration(value: Union[None, float, timedelta]) -> str:
    """Format a duration (``timedelta`` or seconds) as ``HH:MM:SS``.

    Returns ``"n/a"`` when ``value`` is ``None``.
    """
    if value is None:
        return "n/a"

    seconds = value.total_seconds() if isinstance(value, timedelta) else value
    total_seconds = int(round(seconds))
    sign = "-" if total_seconds < 0 else ""
    total_seconds = abs(total_seconds)
    hours = total_seconds // 3600
    minutes = (total_seconds % 3600) // 60
    remaining_seconds = total_seconds % 60
    return f"{sign}{hours:02d}:{minutes:02d}:{remaining_seconds:02d}"


def format_rate(rate: float) -> str:
    return f"{rate * 100:.1f}%"


def generate_report(
    repo_name: str,
    days: int,
    team: TeamSummary,
    outliers: Sequence[OutlierResult] = (),
) -> str:
    """Generate a human-readable summary of team metrics and outliers."""
    lines: List[str] = [
        f"Repository: {repo_name}",
        f"PR Stats Report (last {days} days)",
        "",
        "1) Volume",
        f"   Total: {team.total_pr_count}",
        f"   Completed: {team.completed_pr_count}",
        f"   Abandoned: {team.abandoned_pr_count}",
        f"   Active: {team.active_pr_count}",
        "",
        "2) Cycle Time (completed, non-draft)",
        f"   Samples: {team.cycle_time.count}",
        f"   Mean: {format_duration(team.cycle_time.mean)}",
        f"   Median: {format_duration(team.cycle_time.median)}",
        f"   Mean time to first comment: {format_duration(team.time_to_first_comment.mean)}",
        f"   Mean time to first approval: {format_duration(team.time_to_first_approval.mean)}",
        "",
        "3) Quality",
        f"   Abandoned rate: {format_rate(team.abandoned_rate)}",
        f"   First-time approval rate: {format_rate(team.first_time_approval_rate)}",
        f"   Approval reset rate: {format_rate(team.approval_reset_rate)}",
        f"   Thread resolution rate: {format_rate(team.thread_resolution_rate)}",
        f"   Avg files changed: {team.avg_files_changed:.1f}",
        f"   Avg commits per PR: {team.avg_commits_per_pr:.1f}",
    ]

    if team.build_summary is not None:
        builds = team.build_summary
        lines.extend([
            "",
            "4) Builds",
            f"   Total builds: {builds.total_builds}",
            f"   Success rate: {format_rate(builds.overall_success_rate)}",
            f"   Median run time: {format_duration(builds.median_run_time)}",
        ])

    if outliers:
        lines.extend(["", "Outliers"])
        for result in outliers:
            labels = ", ".join(f"{flag.label} ({flag.z_score:.1f})" for flag in result.flags)
            lines.append(
                f"   #{result.metrics.pull_request_id} {result.metrics.title} "
                f"[score {result.composite_score:.1f}]: {labels}"
            )

    return "\n".join(lines)
