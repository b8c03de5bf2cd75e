"""
Admission control: API key resolution and fixed-window rate limiting.
"""

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable

from ..errors import ErrorCode, ServiceError

logger = logging.getLogger(__name__)

DEFAULT_TIER = "free"


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of one admission check."""

    allowed: bool
    tier: str
    limit: int
    remaining: int
    reset_at: int
    retry_after: int = 0

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class FixedWindowRateLimiter:
    """
    Per API key request counter over fixed windows.

    Windows are aligned to multiples of window_seconds since the epoch;
    a key's count resets when a new window starts. Rejected requests are
    not counted.
    """

    def __init__(
        self,
        limits: dict[str, int],
        window_seconds: float = 60.0,
        api_keys: dict[str, str] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            limits: Requests per window for each plan tier.
            window_seconds: Window length.
            api_keys: API key to tier. When empty, any key is accepted on
                the free tier.
            clock: Returns the current unix time.
        """
        self.limits = limits
        self.window_seconds = window_seconds
        self.api_keys = api_keys or {}
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: dict[str, tuple[float, int]] = {}

    def tier_for(self, api_key: str | None) -> str:
        """
        Resolve the plan tier of a key.

        Raises:
            ServiceError: authentication_failed for a missing or unknown key.
        """
        if not api_key:
            raise ServiceError(
                ErrorCode.AUTHENTICATION_FAILED,
                "Missing API key. Send it in the X-API-Key header",
            )
        if not self.api_keys:
            return DEFAULT_TIER
        tier = self.api_keys.get(api_key)
        if tier is None:
            raise ServiceError(ErrorCode.AUTHENTICATION_FAILED, "Invalid API key")
        return tier

    def limit_for(self, tier: str) -> int:
        if tier in self.limits:
            return self.limits[tier]
        return self.limits.get(DEFAULT_TIER, 0)

    def admit(self, api_key: str | None) -> RateLimitDecision:
        """Count one request against the key's current window."""
        tier = self.tier_for(api_key)
        limit = self.limit_for(tier)
        now = self._clock()
        window_start = math.floor(now / self.window_seconds) * self.window_seconds
        reset_at = window_start + self.window_seconds

        with self._lock:
            start, count = self._windows.get(api_key, (window_start, 0))
            if start != window_start:
                count = 0
            if count >= limit:
                retry_after = max(1, math.ceil(reset_at - now))
                return RateLimitDecision(
                    allowed=False,
                    tier=tier,
                    limit=limit,
                    remaining=0,
                    reset_at=int(reset_at),
                    retry_after=retry_after,
                )
            count += 1
            self._windows[api_key] = (window_start, count)
            if len(self._windows) > 10_000:
                self._prune(window_start)

        return RateLimitDecision(
            allowed=True,
            tier=tier,
            limit=limit,
            remaining=limit - count,
            reset_at=int(reset_at),
        )

    def check(self, api_key: str | None) -> RateLimitDecision:
        """
        Admit a request or reject it.

        Raises:
            ServiceError: authentication_failed or rate_limit_exceeded.
        """
        decision = self.admit(api_key)
        if not decision.allowed:
            logger.warning("Rate limit exceeded for %s tier key", decision.tier)
            raise ServiceError(
                ErrorCode.RATE_LIMIT_EXCEEDED,
                f"Rate limit of {decision.limit} requests per {self.window_seconds:.0f}s exceeded",
                details={"retry_after": decision.retry_after, "limit": decision.limit},
                headers=decision.headers(),
            )
        return decision

    def _prune(self, current_window: float) -> None:
        stale = [key for key, (start, _) in self._windows.items() if start < current_window]
        for key in stale:
            del self._windows[key]
