"""Entry point for PR stats."""

from __future__ import annotations

import logging
import sys
from typing import Optional, Sequence

from .ado_client import AdoClient
from .cache import delete_cache
from .cli import parse_args
from .config import load_config
from .errors import ApiError, AuthenticationError, ConfigurationError
from .metrics import aggregate_team_metrics, calculate_pr_metrics
from .outliers import detect_outliers
from .pipeline import ProgressEvent, PullRequestPipeline
from .stats import generate_report

logger = logging.getLogger(__name__)


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def log_progress(event: ProgressEvent) -> None:
    logger.info(
        "%s: %d/%d %s",
        event.phase,
        event.completed,
        event.total,
        event.message,
    )


def orchestrate(argv: Optional[Sequence[str]] = None) -> int:
    """Run one snapshot: fetch, enrich, compute metrics, detect outliers, report.

    Returns:
        Process exit code: ``0`` on success, ``2`` for configuration errors,
        ``3`` for authentication errors, ``4`` for API errors and ``1`` for
        anything else.
    """
    try:
        args = parse_args(argv)
        configure_logging(args.verbose)

        if args.pat:
            logger.warning(
                "PAT provided on the command line; prefer the ADO_PAT environment variable "
                "to keep it out of shell history and process listings."
            )

        config = load_config(
            organization=args.org,
            project=args.project,
            days=args.days,
            repositories=args.repo,
            authors=args.authors,
            author_ids=args.author_ids,
            bot_names=args.bots,
            bot_ids=args.bot_ids,
            max_prs=args.max_prs,
            no_cache=args.no_cache,
            clear_cache=args.clear_cache,
            include_builds=args.include_builds,
            cache_dir=args.cache_dir,
            pat=args.pat,
        )

        if config.clear_cache:
            removed = delete_cache(config.organization, config.project, config.cache_dir)
            logger.info("Cache deleted." if removed else "No cache to delete.")
            return 0

        logger.info("Mode: %s", config.repository_display_name)

        client = AdoClient(config=config)
        pipeline = PullRequestPipeline(config=config, client=client, progress=log_progress)
        result = pipeline.run()

        if not result.pull_requests:
            logger.info("No pull requests found in the last %d days.", config.days)
            return 0

        builds_by_pr = pipeline.fetch_builds(result.pull_requests) if config.include_builds else {}

        metrics = [
            calculate_pr_metrics(pr, builds_by_pr.get(pr.pull_request_id))
            for pr in result.pull_requests
        ]
        team = aggregate_team_metrics(metrics, result.pull_requests, builds_by_pr)
        outliers = detect_outliers(metrics)

        print(generate_report(config.repository_display_name, config.days, team, outliers))
        return 0
    except ConfigurationError as exc:
        logger.error("Configuration error: %s", exc)
        return 2
    except AuthenticationError as exc:
        logger.error("Authentication error: %s", exc)
        return 3
    except ApiError as exc:
        logger.error("Azure DevOps API error: %s", exc)
        return 4
    except Exception:
        logger.exception("Unexpected error")
        return 1


def main() -> None:
    sys.exit(orchestrate())


if __name__ == "__main__":
    main()
