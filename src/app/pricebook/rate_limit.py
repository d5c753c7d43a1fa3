"""Shared cooldown gate for calls to the external pricing system.

A single RateLimitGuard instance is handed to every caller that talks to
the external system (scheduled pulls, retry worker drains, operator pushes).
When the remote answers 429 the guard remembers a deadline; until it passes,
check() fails fast with RateLimited instead of letting another request out.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable

import structlog

from src.app.core.monitoring import pricebook_rate_limit_hits_total
from src.app.pricebook.errors import RateLimited

logger = structlog.get_logger(__name__)

DEFAULT_RETRY_AFTER_SECONDS = 60.0


class RateLimitGuard:
    """Forward-only cooldown deadline, safe to share across tasks and threads.

    Args:
        clock: Monotonic time source in seconds. Injected for tests.
        default_retry_after: Cooldown applied when a 429 carries no hint.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        default_retry_after: float = DEFAULT_RETRY_AFTER_SECONDS,
    ) -> None:
        self._clock = clock
        self._default_retry_after = default_retry_after
        self._cooldown_until = 0.0
        self._lock = threading.Lock()

    def check(self) -> None:
        """Raise RateLimited if the cooldown is still active."""
        remaining = self.remaining_seconds()
        if remaining > 0:
            raise RateLimited(remaining)

    def record_rate_limit(self, retry_after: float | None = None) -> float:
        """Register a 429 response. Returns the (possibly unchanged) deadline.

        The deadline only ever moves forward: a shorter hint arriving while
        a longer cooldown is active leaves the longer one in place.
        """
        if retry_after is None or retry_after < 0:
            retry_after = self._default_retry_after

        with self._lock:
            candidate = self._clock() + retry_after
            self._cooldown_until = max(self._cooldown_until, candidate)
            deadline = self._cooldown_until

        pricebook_rate_limit_hits_total.inc()
        logger.warning(
            "rate_limit.cooldown_started",
            retry_after=retry_after,
            remaining_seconds=round(self.remaining_seconds(), 2),
        )
        return deadline

    def is_limited(self) -> bool:
        return self.remaining_seconds() > 0

    def remaining_seconds(self) -> float:
        with self._lock:
            return max(0.0, self._cooldown_until - self._clock())

    def reset(self) -> None:
        """Operator override: clear the cooldown immediately."""
        with self._lock:
            self._cooldown_until = 0.0
        logger.info("rate_limit.reset")


def parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header given in seconds. Returns None when unusable."""
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None
