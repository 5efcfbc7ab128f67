"""Bounded retry with exponential backoff and jitter for outbound calls."""

from __future__ import annotations

import logging
import random
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

import requests

from .config import BASE_BACKOFF_SECONDS, MAX_BACKOFF_SECONDS, MAX_RETRIES
from .errors import ApiError, TransientApiError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_EXCEPTIONS: Tuple[Type[BaseException], ...] = (
    TransientApiError,
    requests.Timeout,
    requests.ConnectionError,
)


class RetryPolicy:
    """Run a callable, retrying transient failures.

    Rate-limit and server-side responses (surfaced as ``TransientApiError``),
    timeouts and connection failures are retried up to ``max_retries``
    additional times. Anything else propagates on the first occurrence.
    """

    def __init__(
        self,
        max_retries: int = MAX_RETRIES,
        base_delay: float = BASE_BACKOFF_SECONDS,
        max_delay: float = MAX_BACKOFF_SECONDS,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._rng = rng or random.Random()

    def compute_delay(self, retry_number: int, retry_after: Optional[float] = None) -> float:
        """Return the sleep before retry ``retry_number`` (1-based).

        The exponential component is capped at ``max_delay``; jitter of up to
        one base delay is added on top. A server ``Retry-After``, capped at
        ``max_delay``, is used when it is longer.
        """
        delay = min(self.max_delay, self.base_delay * (2 ** (retry_number - 1)))
        delay += self._rng.uniform(0, self.base_delay)
        if retry_after is not None:
            delay = max(delay, min(self.max_delay, retry_after))
        return delay

    def call(self, func: Callable[..., T], *args, description: str = "request", **kwargs) -> T:
        """Invoke ``func`` with retries.

        Raises:
            ApiError: When retries are exhausted.
            Exception: Any non-retryable exception raised by ``func``.
        """
        attempt = 0
        while True:
            try:
                return func(*args, **kwargs)
            except RETRYABLE_EXCEPTIONS as exc:
                attempt += 1
                if attempt > self.max_retries:
                    raise ApiError(
                        f"Azure DevOps request failed after {self.max_retries} retries: {description}"
                    ) from exc

                retry_after = getattr(exc, "retry_after", None)
                delay = self.compute_delay(attempt, retry_after)
                logger.warning(
                    "Retrying after %.1fs (%s)",
                    delay,
                    exc,
                    extra={"description": description, "attempt": attempt},
                )
                time.sleep(delay)
