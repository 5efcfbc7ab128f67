"""Command-line argument parsing for PR stats."""

from __future__ import annotations

import argparse
from typing import List, Optional, Sequence

from .config import DEFAULT_DAYS


def _positive_int(value: str) -> int:
    """Parse and validate a positive integer CLI value.

    Raises:
        argparse.ArgumentTypeError: If value is not a positive integer.
    """
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError("must be an integer") from exc

    if parsed <= 0:
        raise argparse.ArgumentTypeError("must be greater than 0")

    return parsed


def split_csv(value: Optional[str]) -> List[str]:
    """Split a comma-separated option, trimming entries and dropping empty ones."""
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments for a PR stats run."""
    parser = argparse.ArgumentParser(
        prog="prstats",
        description=(
            "Collect Azure DevOps pull-request activity and report cycle time, "
            "review latency, approval patterns, thread resolution and outliers."
        ),
    )

    parser.add_argument("--org", help="Azure DevOps organization name or URL.")
    parser.add_argument("--project", help="Azure DevOps project name.")
    parser.add_argument(
        "--repo",
        type=split_csv,
        default=[],
        help="Repository name(s), comma-separated. Omit for all repositories.",
    )
    parser.add_argument(
        "--days",
        type=_positive_int,
        default=DEFAULT_DAYS,
        help=f"Lookback window in days (default: {DEFAULT_DAYS}).",
    )
    parser.add_argument(
        "--pat",
        help="Personal access token (prefer the ADO_PAT environment variable).",
    )
    parser.add_argument("--bots", type=split_csv, default=[], help="Comma-separated bot display names.")
    parser.add_argument("--bot-ids", type=split_csv, default=[], help="Comma-separated bot identity ids.")
    parser.add_argument("--authors", type=split_csv, default=[], help="Only include these author display names.")
    parser.add_argument("--author-ids", type=split_csv, default=[], help="Only include these author ids.")
    parser.add_argument(
        "--max-prs",
        type=_positive_int,
        default=None,
        help="Maximum number of pull requests to process (default: unlimited).",
    )
    parser.add_argument(
        "--no-cache",
        action="store_true",
        help="Ignore cached data and re-enrich every pull request.",
    )
    parser.add_argument("--clear-cache", action="store_true", help="Delete the cache and exit.")
    parser.add_argument(
        "--include-builds",
        action="store_true",
        help="Also fetch build runs for each pull request.",
    )
    parser.add_argument("--cache-dir", help="Override the directory that holds the cache.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")

    return parser.parse_args(argv)
