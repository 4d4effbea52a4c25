# ─────────────────────────────────────────────────────────────────────────────
# Sliding-Window Rate Limiter: per-identity generation admission
# ─────────────────────────────────────────────────────────────────────────────
# Each identity gets an ordered deque of admitted timestamps. On every call
# all keys are trimmed to the trailing window (amortized sweep) and empty
# keys are dropped, so the table only holds identities active in the window.
#
# This protects generation COST, not the HTTP layer. The coarse per-IP
# slowapi limit in rate_limit.py guards the server itself.
#
# In-memory only: a restart resets every window.
# ─────────────────────────────────────────────────────────────────────────────

import math
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable

import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after: int = 0
    remaining: int = 0


class SlidingWindowRateLimiter:
    """Admit at most ``max_requests`` per identity in any ``window_seconds`` span."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self._max_requests = max_requests
        self._window = window_seconds
        self._clock = clock
        self._windows: dict[str, deque[float]] = {}

    @property
    def max_requests(self) -> int:
        return self._max_requests

    def admit(self, client_key: str, privileged: bool = False) -> RateLimitDecision:
        """Check and record one request for ``client_key``.

        Privileged identities are always admitted and never consume quota.
        """
        now = self._clock()
        self._sweep(now - self._window)

        if privileged:
            return RateLimitDecision(allowed=True, remaining=self._max_requests)

        timestamps = self._windows.get(client_key)
        count = len(timestamps) if timestamps else 0

        if count >= self._max_requests:
            oldest = timestamps[0]
            retry_after = max(1, math.ceil(oldest + self._window - now))
            logger.warning(
                "rate_limit_denied",
                client=client_key,
                count=count,
                limit=self._max_requests,
                retry_after=retry_after,
            )
            return RateLimitDecision(allowed=False, retry_after=retry_after)

        if timestamps is None:
            timestamps = self._windows[client_key] = deque()
        timestamps.append(now)
        remaining = self._max_requests - count - 1
        logger.debug("rate_limit_admitted", client=client_key, remaining=remaining)
        return RateLimitDecision(allowed=True, remaining=remaining)

    def usage(self, client_key: str) -> int:
        """Requests currently counted against ``client_key``."""
        self._sweep(self._clock() - self._window)
        return len(self._windows.get(client_key, ()))

    def _sweep(self, cutoff: float) -> None:
        for key in list(self._windows):
            timestamps = self._windows[key]
            while timestamps and timestamps[0] <= cutoff:
                timestamps.popleft()
            if not timestamps:
                del self._windows[key]

    def __len__(self) -> int:
        return len(self._windows)
