"""Configuration parsing and validation for PR stats."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .errors import AuthenticationError, ConfigurationError

DEFAULT_DAYS = 90
MAX_CONCURRENCY = 5
MAX_RETRIES = 3
BASE_BACKOFF_SECONDS = 2.0
MAX_BACKOFF_SECONDS = 30.0
PAGE_SIZE = 100

PAT_ENV_VARS = ("ADO_PAT", "AZDO_PAT")
CACHE_DIR_ENV_VAR = "PRSTATS_CACHE_DIR"


@dataclass(frozen=True)
class Config:
    """Validated runtime settings used by the pipeline."""

    organization: str
    project: str
    pat: str
    days: int = DEFAULT_DAYS
    repositories: List[str] = field(default_factory=list)
    authors: List[str] = field(default_factory=list)
    author_ids: List[str] = field(default_factory=list)
    bot_names: List[str] = field(default_factory=list)
    bot_ids: List[str] = field(default_factory=list)
    max_prs: Optional[int] = None
    no_cache: bool = False
    clear_cache: bool = False
    include_builds: bool = False
    cache_dir: Optional[str] = None

    @property
    def repository_display_name(self) -> str:
        if not self.repositories:
            return "All Repositories"
        return ", ".join(self.repositories)

    @property
    def organization_url(self) -> str:
        """Base URL of the organization, accepting either a bare name or a URL."""
        if self.organization.lower().startswith(("http://", "https://")):
            return self.organization
        return f"https://dev.azure.com/{self.organization}"


def _dedupe(values: Optional[Sequence[str]]) -> List[str]:
    """Trim values and drop blanks and case-insensitive duplicates, keeping order."""
    seen = set()
    result: List[str] = []
    for value in values or []:
        cleaned = value.strip()
        if not cleaned or cleaned.lower() in seen:
            continue
        seen.add(cleaned.lower())
        result.append(cleaned)
    return result


def resolve_pat(explicit_pat: Optional[str] = None) -> str:
    """Return the PAT from the explicit value or the environment.

    Raises:
        AuthenticationError: If no PAT is configured anywhere.
    """
    if explicit_pat and explicit_pat.strip():
        return explicit_pat.strip()

    for name in PAT_ENV_VARS:
        pat = os.getenv(name, "").strip()
        if pat:
            return pat

    raise AuthenticationError(
        "Missing required Azure DevOps Personal Access Token. "
        "Set the 'ADO_PAT' (or 'AZDO_PAT') environment variable or pass --pat."
    )


def load_config(
    organization: Optional[str],
    project: Optional[str],
    days: int = DEFAULT_DAYS,
    repositories: Optional[Sequence[str]] = None,
    authors: Optional[Sequence[str]] = None,
    author_ids: Optional[Sequence[str]] = None,
    bot_names: Optional[Sequence[str]] = None,
    bot_ids: Optional[Sequence[str]] = None,
    max_prs: Optional[int] = None,
    no_cache: bool = False,
    clear_cache: bool = False,
    include_builds: bool = False,
    cache_dir: Optional[str] = None,
    pat: Optional[str] = None,
) -> Config:
    """Build and validate application configuration.

    Args:
        organization: Azure DevOps organization name or URL.
        project: Azure DevOps project name.
        days: Positive lookback window in days.
        repositories: Repository names to keep; empty means all repositories.
        authors: Author display names to keep.
        author_ids: Author ids to keep.
        bot_names: Display names treated as non-human.
        bot_ids: Identity ids treated as non-human.
        max_prs: Optional cap on the number of records to process.
        no_cache: Bypass cache reads and re-enrich everything.
        clear_cache: Delete the cache and stop.
        include_builds: Also fetch build runs for each record.
        cache_dir: Override for the local app-data root of the cache.
        pat: Explicit PAT; the environment is used when omitted.

    Returns:
        A validated ``Config`` instance.

    Raises:
        ConfigurationError: If a required value is missing or out of range.
        AuthenticationError: If no PAT is available.
    """
    organization = (organization or "").strip().rstrip("/")
    project = (project or "").strip()

    if not organization:
        raise ConfigurationError("Organization is required. Use --org.")
    if not project:
        raise ConfigurationError("Project is required. Use --project.")
    if days <= 0:
        raise ConfigurationError("Invalid value for 'days': expected an integer greater than 0.")
    if max_prs is not None and max_prs <= 0:
        raise ConfigurationError("Invalid value for 'max_prs': expected an integer greater than 0.")

    resolved_pat = resolve_pat(pat)

    return Config(
        organization=organization,
        project=project,
        pat=resolved_pat,
        days=days,
        repositories=_dedupe(repositories),
        authors=_dedupe(authors),
        author_ids=_dedupe(author_ids),
        bot_names=_dedupe(bot_names),
        bot_ids=_dedupe(bot_ids),
        max_prs=max_prs,
        no_cache=no_cache,
        clear_cache=clear_cache,
        include_builds=include_builds,
        cache_dir=cache_dir or os.getenv(CACHE_DIR_ENV_VAR) or None,
    )
