"""Statistical outlier detection over per-pull-request metrics.

Only completed, non-draft records by human authors are scored. Each scoring
dimension contributes a one-sided z-score: only values well above the mean
are flagged, since low values never indicate a problem.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from .models import OutlierFlag, OutlierResult, PrStatus, PullRequestMetrics, Severity
from .stats import population_stddev

BAD_THRESHOLD = 1.5
WARN_THRESHOLD = 1.0
MAX_RESULTS = 10
MIN_POPULATION = 3

Extractor = Callable[[PullRequestMetrics], Optional[float]]


@dataclass(frozen=True)
class Dimension:
    label: str
    mean: float
    stddev: float
    extractor: Extractor


def _hours(value) -> Optional[float]:
    return value.total_seconds() / 3600 if value is not None else None


def _build_failures(metric: PullRequestMetrics) -> Optional[float]:
    return metric.build_summary.failed_count if metric.build_summary is not None else None


def _build_count(metric: PullRequestMetrics) -> Optional[float]:
    return metric.build_summary.total_build_count if metric.build_summary is not None else None


_BASE_DIMENSIONS: Sequence[tuple] = (
    ("Slow Cycle", lambda m: _hours(m.total_cycle_time)),
    ("Slow Review", lambda m: _hours(m.time_to_first_human_comment)),
    ("Large PR", lambda m: m.files_changed),
    ("High Churn", lambda m: m.iteration_count),
    ("Contentious", lambda m: m.human_comment_count),
    ("Approval Resets", lambda m: m.approval_reset_count),
)

_BUILD_DIMENSIONS: Sequence[tuple] = (
    ("Build Failures", _build_failures),
    ("Many Builds", _build_count),
)


def build_dimension(label: str, population: Sequence[PullRequestMetrics], extractor: Extractor) -> Optional[Dimension]:
    """Return the dimension, or ``None`` if it cannot separate any record.

    A dimension needs at least two values and a nonzero population standard
    deviation.
    """
    values = [value for value in (extractor(metric) for metric in population) if value is not None]
    if len(values) < 2:
        return None

    stddev = population_stddev(values)
    if stddev == 0:
        return None

    return Dimension(label=label, mean=sum(values) / len(values), stddev=stddev, extractor=extractor)


def build_dimensions(population: Sequence[PullRequestMetrics]) -> List[Dimension]:
    candidates = list(_BASE_DIMENSIONS)
    if any(metric.build_summary is not None for metric in population):
        candidates.extend(_BUILD_DIMENSIONS)

    dimensions = []
    for label, extractor in candidates:
        dimension = build_dimension(label, population, extractor)
        if dimension is not None:
            dimensions.append(dimension)
    return dimensions


def score(metric: PullRequestMetrics, dimensions: Sequence[Dimension]) -> OutlierResult:
    """Flag every dimension where the record sits at least one stddev above the mean."""
    flags: List[OutlierFlag] = []
    composite = 0.0

    for dimension in dimensions:
        value = dimension.extractor(metric)
        if value is None:
            continue

        z_score = (value - dimension.mean) / dimension.stddev
        if z_score < WARN_THRESHOLD:
            continue

        composite += z_score
        severity = Severity.BAD if z_score >= BAD_THRESHOLD else Severity.WARN
        flags.append(OutlierFlag(label=dimension.label, severity=severity, z_score=z_score))

    flags.sort(key=lambda flag: flag.z_score, reverse=True)
    return OutlierResult(metrics=metric, composite_score=composite, flags=flags)


def detect_outliers(
    metrics: Sequence[PullRequestMetrics],
    max_results: int = MAX_RESULTS,
    min_population: int = MIN_POPULATION,
) -> List[OutlierResult]:
    """Rank records with at least one severe flag, highest composite score first."""
    population = [
        metric for metric in metrics
        if metric.status is PrStatus.COMPLETED and not metric.is_draft and not metric.is_author_bot
    ]
    if len(population) < min_population:
        return []

    dimensions = build_dimensions(population)
    if not dimensions:
        return []

    results = [
        result for result in (score(metric, dimensions) for metric in population)
        if any(flag.severity is Severity.BAD for flag in result.flags)
    ]
    results.sort(key=lambda result: (-result.composite_score, result.metrics.pull_request_id))
    return results[:max_results]
