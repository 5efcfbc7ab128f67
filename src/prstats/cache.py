"""Local persistent cache of enriched pull requests.

One JSON snapshot per (organization, project) pair. The cache is advisory:
a missing, corrupt, or outdated file yields an empty cache rather than an
error, and a failed write leaves the previous snapshot untouched.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from .config import CACHE_DIR_ENV_VAR
from .models import PullRequest

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
EVICTION_DAYS = 180
APP_NAME = "prstats"


def _local_app_data(base_dir: Optional[str] = None) -> Path:
    """Resolve the per-user application data root."""
    for candidate in (
        base_dir,
        os.getenv(CACHE_DIR_ENV_VAR),
        os.getenv("LOCALAPPDATA"),
        os.getenv("XDG_DATA_HOME"),
    ):
        if candidate:
            return Path(candidate)
    return Path.home() / ".local" / "share"


def organization_key(organization: str) -> str:
    """Reduce an organization name or URL to its bare, lowercased name.

    ``myorg``, ``https://dev.azure.com/myorg/`` and
    ``https://myorg.visualstudio.com`` all yield ``myorg``.
    """
    value = organization.strip().rstrip("/")
    if not value.lower().startswith(("http://", "https://")):
        return value.lower()

    parsed = urlparse(value)
    host = (parsed.hostname or "").lower()
    if host.endswith(".visualstudio.com"):
        return host.split(".")[0]

    segments = [segment for segment in parsed.path.split("/") if segment]
    return (segments[-1] if segments else host).lower()


def get_cache_path(organization: str, project: str, base_dir: Optional[str] = None) -> Path:
    """Return the cache file for an organization/project pair.

    The file name starts with 8 hex characters of a SHA-256 over the bare
    organization name and the lowercased project, so casing differences and
    URL spellings of the organization resolve to the same file.
    """
    key = f"{organization_key(organization)}|{project.lower()}"
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:8]
    return _local_app_data(base_dir) / APP_NAME / "cache" / f"{digest}-{project}.json"


def load_cache(organization: str, project: str, base_dir: Optional[str] = None) -> Dict[int, PullRequest]:
    """Load cached pull requests keyed by id; any problem yields an empty cache."""
    path = get_cache_path(organization, project, base_dir)

    if not path.exists():
        return {}

    try:
        with open(path, encoding="utf-8") as handle:
            payload = json.load(handle)
    except (OSError, ValueError) as exc:
        logger.warning("Cache file is corrupt, discarding cache: %s", exc, extra={"path": str(path)})
        return {}

    if not isinstance(payload, dict):
        logger.warning("Cache file has unexpected shape, discarding cache", extra={"path": str(path)})
        return {}

    found_version = payload.get("schemaVersion")
    if found_version != SCHEMA_VERSION:
        logger.warning(
            "Cache schema version mismatch (found %s, expected %s), discarding cache",
            found_version,
            SCHEMA_VERSION,
            extra={"path": str(path)},
        )
        return {}

    try:
        return {
            int(pr_id): PullRequest.from_dict(entry)
            for pr_id, entry in (payload.get("pullRequests") or {}).items()
        }
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        logger.warning("Cache entries could not be decoded, discarding cache: %s", exc, extra={"path": str(path)})
        return {}


def evict_expired(
    pull_requests: Dict[int, PullRequest],
    now: Optional[datetime] = None,
    eviction_days: int = EVICTION_DAYS,
) -> Dict[int, PullRequest]:
    """Keep records whose relevant date is within the eviction horizon."""
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=eviction_days)
    return {pr_id: pr for pr_id, pr in pull_requests.items() if pr.relevant_date >= cutoff}


def _serialize(organization: str, project: str, pull_requests: Dict[int, PullRequest]) -> Dict[str, Any]:
    return {
        "schemaVersion": SCHEMA_VERSION,
        "organization": organization,
        "project": project,
        "pullRequests": {str(pr_id): pr.to_dict() for pr_id, pr in sorted(pull_requests.items())},
    }


def save_cache(
    organization: str,
    project: str,
    pull_requests: Dict[int, PullRequest],
    base_dir: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Path:
    """Evict expired records and atomically replace the cache file.

    The snapshot is written to a temporary file beside the target and renamed
    over it. Write failures are logged and leave the previous snapshot intact.

    Returns:
        The cache file path.
    """
    path = get_cache_path(organization, project, base_dir)
    survivors = evict_expired(pull_requests, now=now)
    payload = _serialize(organization, project, survivors)

    temp_path: Optional[str] = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(suffix=".tmp", prefix=path.name, dir=str(path.parent))
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, ensure_ascii=False)
        os.replace(temp_path, path)
        temp_path = None
    except OSError as exc:
        logger.warning("Failed to write cache: %s", exc, extra={"path": str(path)})
    finally:
        if temp_path is not None and os.path.exists(temp_path):
            os.remove(temp_path)

    logger.debug(
        "Saved cache",
        extra={
            "path": str(path),
            "saved": len(survivors),
            "evicted": len(pull_requests) - len(survivors),
        },
    )
    return path


def delete_cache(organization: str, project: str, base_dir: Optional[str] = None) -> bool:
    """Delete the cache file; returns whether a file was removed."""
    path = get_cache_path(organization, project, base_dir)
    if not path.exists():
        return False
    path.unlink()
    return True
