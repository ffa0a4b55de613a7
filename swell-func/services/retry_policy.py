from __future__ import annotations

import logging
import time
from typing import Callable, Optional

import requests

from shared.config import get_retry_settings
from shared.errors import UpstreamRateLimited

logger = logging.getLogger(__name__)


class RetryPolicy:
    """
    Rate-limit handling shared by every HubSpot call.

    A 429 response is retried after the Retry-After header (seconds, capped at
    max_backoff_seconds) or the fixed backoff when the header is absent, up to
    max_attempts attempts in total. The last 429 raises UpstreamRateLimited.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        backoff_seconds: float = 5.0,
        max_backoff_seconds: float = 30.0,
        partial_on_exhaustion: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_seconds = max(0.0, float(backoff_seconds))
        self.max_backoff_seconds = max(0.0, float(max_backoff_seconds))
        self.partial_on_exhaustion = partial_on_exhaustion
        self.sleep = sleep

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        settings = get_retry_settings()
        return cls(
            max_attempts=settings["max_attempts"],
            backoff_seconds=settings["backoff_seconds"],
            max_backoff_seconds=settings["max_backoff_seconds"],
            partial_on_exhaustion=settings["partial_on_exhaustion"],
        )

    def wait_seconds(self, response: requests.Response) -> float:
        raw = response.headers.get("Retry-After") if response.headers else None
        try:
            delay = float(raw) if raw not in (None, "") else self.backoff_seconds
        except (TypeError, ValueError):
            delay = self.backoff_seconds
        return max(0.0, min(delay, self.max_backoff_seconds))

    def execute(self, send: Callable[[], requests.Response], *, description: str = "request") -> requests.Response:
        """Run send() until it returns something other than a 429 or attempts run out."""
        retry_after: Optional[float] = None
        for attempt in range(1, self.max_attempts + 1):
            response = send()
            if response.status_code != 429:
                return response
            retry_after = self.wait_seconds(response)
            if attempt == self.max_attempts:
                break
            logger.warning(
                "HubSpot rate limited %s, retrying in %.1fs (attempt %s/%s)",
                description,
                retry_after,
                attempt,
                self.max_attempts,
            )
            self.sleep(retry_after)

        logger.error("HubSpot rate limit persisted for %s after %s attempts", description, self.max_attempts)
        raise UpstreamRateLimited(
            f"HubSpot rate limit exceeded for {description}",
            retry_after=retry_after,
        )
