"""Upstream rate limit tracking with exponential backoff."""

from typing import Callable, Optional

from loguru import logger

from xposed.schemas import RateLimitStatus, now_ms

HTTP_TOO_MANY_REQUESTS = 429


class RateLimiter:
    """Tracks when an upstream source may be called again.

    A 429 blocks until the server-provided reset time (or a default window).
    Any other failure blocks for ``min(base * 2**failures, cap)``. A success
    resets the failure counter but never lifts an active 429 window.
    """

    def __init__(
        self,
        name: str = "upstream",
        default_window_ms: int = 60_000,
        backoff_base_ms: int = 1000,
        backoff_cap_ms: int = 30_000,
        clock: Callable[[], int] = now_ms,
    ):
        if default_window_ms <= 0:
            raise ValueError(f"default_window_ms must be > 0, got {default_window_ms}")
        if backoff_base_ms <= 0:
            raise ValueError(f"backoff_base_ms must be > 0, got {backoff_base_ms}")
        if backoff_cap_ms < backoff_base_ms:
            raise ValueError(
                f"backoff_cap_ms ({backoff_cap_ms}) must be >= backoff_base_ms ({backoff_base_ms})"
            )

        self.name = name
        self.default_window_ms = default_window_ms
        self.backoff_base_ms = backoff_base_ms
        self.backoff_cap_ms = backoff_cap_ms
        self._clock = clock

        self.blocked_until_ms = 0
        self.consecutive_failures = 0

    def is_blocked(self, now: Optional[int] = None) -> bool:
        if now is None:
            now = self._clock()
        return now < self.blocked_until_ms

    def record_success(self) -> None:
        if self.consecutive_failures:
            logger.debug(f"[{self.name}] success after {self.consecutive_failures} failures")
        self.consecutive_failures = 0

    def record_failure(
        self,
        status_code: Optional[int] = None,
        reset_hint_ms: Optional[int] = None,
    ) -> int:
        """Register a failed call and return the new blocked-until timestamp."""
        now = self._clock()

        if status_code == HTTP_TOO_MANY_REQUESTS:
            if reset_hint_ms is not None and reset_hint_ms > now:
                until = reset_hint_ms
            else:
                until = now + self.default_window_ms
            self.blocked_until_ms = until
            self.consecutive_failures += 1
            logger.warning(f"[{self.name}] rate limited, blocked for {(until - now) / 1000:.0f}s")
            return self.blocked_until_ms

        delay = self.backoff_delay_ms()
        self.consecutive_failures += 1
        self.blocked_until_ms = max(self.blocked_until_ms, now + delay)
        logger.debug(
            f"[{self.name}] failure #{self.consecutive_failures} "
            f"(status={status_code}), backing off {delay}ms"
        )
        return self.blocked_until_ms

    def backoff_delay_ms(self) -> int:
        """Delay the next non-429 failure would impose."""
        # Cap the exponent so huge failure counts don't build giant ints
        exponent = min(self.consecutive_failures, 32)
        return min(self.backoff_base_ms * (2 ** exponent), self.backoff_cap_ms)

    def status(self) -> RateLimitStatus:
        now = self._clock()
        blocked = self.is_blocked(now)
        return RateLimitStatus(
            is_rate_limited=blocked,
            reset_time_ms=self.blocked_until_ms if blocked else None,
            remaining_ms=self.blocked_until_ms - now if blocked else None,
            consecutive_failures=self.consecutive_failures,
        )

    def clear(self) -> None:
        self.blocked_until_ms = 0
        self.consecutive_failures = 0
