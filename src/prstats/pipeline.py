"""Fetch and enrichment pipeline for pull request records.

Flow: three paged fetch passes, then client-side filters and the record cap,
then a partition against the local cache. Cache misses and active records
are enriched with bounded parallelism, merged with the cache hits, and
written back to the cache.

Progress is reported through an optional callback receiving
:class:`ProgressEvent` objects; the pipeline never writes to the console.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

import requests

from .ado_client import AdoClient, build_pull_request
from .bot_filter import BotFilter
from .cache import load_cache, save_cache
from .config import MAX_CONCURRENCY, Config
from .errors import PrStatsError
from .models import BuildRun, PrStatus, PullRequest

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

# Threads, iterations, and the iteration diff.
CALLS_PER_RECORD = 3


@dataclass(frozen=True)
class ProgressEvent:
    phase: str
    completed: int
    total: int
    message: str = ""


ProgressCallback = Callable[[ProgressEvent], None]


@dataclass(frozen=True)
class PipelineResult:
    pull_requests: List[PullRequest]
    cache_hits: int
    enriched: int


def filter_pull_requests(
    raw_prs: Sequence[Dict[str, Any]],
    repositories: Sequence[str] = (),
    authors: Sequence[str] = (),
    author_ids: Sequence[str] = (),
) -> List[Dict[str, Any]]:
    """Narrow fetched records by repository name and author, case-insensitively.

    An empty ``repositories`` keeps every repository. Authors match on display
    name or id; with neither given every author is kept. A warning is logged for
    each requested repository that has no records.
    """
    result = list(raw_prs)

    if repositories:
        wanted = {name.lower() for name in repositories}
        found = {
            ((pr.get("repository") or {}).get("name") or "").lower()
            for pr in result
        }
        for name in repositories:
            if name.lower() not in found:
                logger.warning(
                    "No pull requests found for repository '%s'; verify the name exists in the project",
                    name,
                )
        result = [
            pr for pr in result
            if ((pr.get("repository") or {}).get("name") or "").lower() in wanted
        ]

    if authors or author_ids:
        wanted_names = {name.lower() for name in authors}
        wanted_ids = {author_id.lower() for author_id in author_ids}

        def _matches(pr: Dict[str, Any]) -> bool:
            created_by = pr.get("createdBy") or {}
            name = (created_by.get("displayName") or "").lower()
            author_id = str(created_by.get("id") or "").lower()
            return name in wanted_names or (bool(author_id) and author_id in wanted_ids)

        result = [pr for pr in result if _matches(pr)]

    return result


def partition(
    candidates: Sequence[Dict[str, Any]],
    cached: Dict[int, PullRequest],
    use_cache: bool = True,
) -> Tuple[List[PullRequest], List[Dict[str, Any]]]:
    """Split candidates into records served from cache and records to enrich.

    A record is served from the cache only when both the fetched status and
    the cached snapshot are terminal (completed or abandoned); their detail
    can no longer change.
    """
    from_cache: List[PullRequest] = []
    to_enrich: List[Dict[str, Any]] = []

    for raw_pr in candidates:
        pr_id = int(raw_pr["pullRequestId"])
        status = PrStatus.parse(raw_pr.get("status"))
        cached_pr = cached.get(pr_id)
        # A snapshot taken while the record was still active is stale.
        if use_cache and status.is_terminal and cached_pr is not None and cached_pr.status.is_terminal:
            from_cache.append(cached_pr)
        else:
            to_enrich.append(raw_pr)

    return from_cache, to_enrich


class PullRequestPipeline:
    """Fetches, enriches, and caches pull requests for one project."""

    def __init__(
        self,
        config: Config,
        client: AdoClient,
        bot_filter: Optional[BotFilter] = None,
        progress: Optional[ProgressCallback] = None,
        concurrency: int = MAX_CONCURRENCY,
        now: Optional[datetime] = None,
    ) -> None:
        self._config = config
        self._client = client
        self._bot_filter = bot_filter or BotFilter(config.bot_names, config.bot_ids)
        self._progress = progress
        self._concurrency = concurrency
        self._now = now

    def _current_time(self) -> datetime:
        return self._now or datetime.now(timezone.utc)

    def _emit(self, phase: str, completed: int, total: int, message: str = "") -> None:
        if self._progress is not None:
            self._progress(ProgressEvent(phase=phase, completed=completed, total=total, message=message))

    def fetch_candidates(self) -> List[Dict[str, Any]]:
        """Fetch completed and abandoned records in the window plus all active records."""
        cutoff = self._current_time() - timedelta(days=self._config.days)
        passes = (
            (PrStatus.COMPLETED, cutoff),
            (PrStatus.ABANDONED, cutoff),
            (PrStatus.ACTIVE, None),
        )

        raw_prs: List[Dict[str, Any]] = []
        for index, (status, min_time) in enumerate(passes, start=1):
            raw_prs.extend(self._client.list_pull_requests(status, min_time=min_time))
            self._emit("fetch", index, len(passes), f"Fetched {status.value} pull requests")

        candidates = filter_pull_requests(
            raw_prs,
            repositories=self._config.repositories,
            authors=self._config.authors,
            author_ids=self._config.author_ids,
        )

        repo_count = len({
            ((pr.get("repository") or {}).get("name") or "").lower()
            for pr in candidates
        })
        logger.info(
            "Found %d pull requests across %d repositories; enrichment requires ~%d API calls",
            len(candidates),
            repo_count,
            len(candidates) * CALLS_PER_RECORD,
        )

        max_prs = self._config.max_prs
        if max_prs is not None and len(candidates) > max_prs:
            logger.info("Capping to %d pull requests", max_prs)
            candidates = candidates[:max_prs]

        return candidates

    def _run_bounded(self, items: Sequence[T], func: Callable[[T], R], phase: str) -> List[R]:
        """Apply ``func`` to ``items`` with at most ``concurrency`` in flight.

        Result order is completion order. The first failure cancels items that
        have not started and is re-raised.
        """
        results: List[R] = []
        lock = threading.Lock()
        total = len(items)
        if not items:
            return results

        def _collect(item: T) -> None:
            value = func(item)
            with lock:
                results.append(value)
                completed = len(results)
            self._emit(phase, completed, total)

        pool = ThreadPoolExecutor(max_workers=self._concurrency, thread_name_prefix=f"prstats-{phase}")
        try:
            futures: List[Future] = [pool.submit(_collect, item) for item in items]
            for future in as_completed(futures):
                future.result()
        except BaseException:
            pool.shutdown(wait=True, cancel_futures=True)
            raise
        pool.shutdown(wait=True)
        return results

    def enrich(self, raw_prs: Sequence[Dict[str, Any]]) -> List[PullRequest]:
        """Fetch per-record detail for each raw record."""
        if not raw_prs:
            return []

        detail_pool = ThreadPoolExecutor(
            max_workers=self._concurrency * 2, thread_name_prefix="prstats-detail"
        )
        try:
            return self._run_bounded(
                raw_prs,
                lambda raw_pr: self._enrich_one(raw_pr, detail_pool),
                "enrich",
            )
        finally:
            detail_pool.shutdown(wait=True, cancel_futures=True)

    def _enrich_one(self, raw_pr: Dict[str, Any], detail_pool: ThreadPoolExecutor) -> PullRequest:
        pr_id = int(raw_pr["pullRequestId"])
        repo_id = str((raw_pr.get("repository") or {}).get("id") or "")

        threads_future = detail_pool.submit(self._client.list_threads, repo_id, pr_id)
        iterations_future = detail_pool.submit(self._client.list_iterations, repo_id, pr_id)
        raw_threads = threads_future.result()
        raw_iterations = iterations_future.result()

        files_changed = self._count_files(repo_id, pr_id, raw_iterations)

        return build_pull_request(raw_pr, raw_threads, raw_iterations, files_changed, self._bot_filter)

    def _count_files(self, repo_id: str, pr_id: int, raw_iterations: List[Dict[str, Any]]) -> int:
        if not raw_iterations:
            return 0

        last_iteration_id = int(raw_iterations[-1].get("id") or 0)
        if last_iteration_id <= 0:
            return 0

        try:
            return self._client.count_iteration_changes(repo_id, pr_id, last_iteration_id)
        except (PrStatsError, requests.RequestException) as exc:
            # Iteration changes are unavailable for some record states.
            logger.debug(
                "Iteration changes unavailable: %s",
                exc,
                extra={"pr_id": pr_id, "iteration_id": last_iteration_id},
            )
            return 0

    def run(self) -> PipelineResult:
        """Fetch, enrich, and cache; returns this run's records."""
        config = self._config
        candidates = self.fetch_candidates()

        cached: Dict[int, PullRequest] = {}
        if not config.no_cache:
            cached = load_cache(config.organization, config.project, config.cache_dir)

        from_cache, to_enrich = partition(candidates, cached, use_cache=not config.no_cache)
        enriched = self.enrich(to_enrich)
        logger.info("Cache: %d hit, %d enriched", len(from_cache), len(enriched))

        this_run = from_cache + enriched

        # Records outside this run's window stay cached until they age out.
        merged = dict(cached)
        for pr in this_run:
            merged[pr.pull_request_id] = pr

        save_cache(config.organization, config.project, merged, config.cache_dir, now=self._now)
        self._emit("cache", 1, 1, "Cache saved")

        return PipelineResult(pull_requests=this_run, cache_hits=len(from_cache), enriched=len(enriched))

    def fetch_builds(self, prs: Sequence[PullRequest]) -> Dict[int, List[BuildRun]]:
        """Fetch build runs per record; records without builds are omitted."""

        def _fetch(pr: PullRequest) -> Tuple[int, List[BuildRun]]:
            return pr.pull_request_id, self._client.list_builds(pr.pull_request_id)

        pairs = self._run_bounded(list(prs), _fetch, "builds")
        return {pr_id: builds for pr_id, builds in pairs if builds}
