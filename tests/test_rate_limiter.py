"""Test upstream rate limit tracking."""

import pytest

from xposed.services.rate_limiter import RateLimiter


def test_429_blocks_until_reset_time(clock):
    limiter = RateLimiter(clock=clock)
    reset = clock() + 5000

    assert limiter.record_failure(429, reset) == reset

    assert limiter.is_blocked()
    assert limiter.is_blocked(reset - 1)
    assert not limiter.is_blocked(reset)
    clock.advance(5000)
    assert not limiter.is_blocked()


def test_429_without_reset_uses_default_window(clock):
    limiter = RateLimiter(default_window_ms=60_000, clock=clock)
    start = clock()

    limiter.record_failure(429)

    assert limiter.blocked_until_ms == start + 60_000


def test_429_ignores_reset_in_the_past(clock):
    limiter = RateLimiter(default_window_ms=60_000, clock=clock)
    limiter.record_failure(429, clock() - 1000)
    assert limiter.blocked_until_ms == clock() + 60_000


def test_backoff_doubles_up_to_cap(clock):
    limiter = RateLimiter(backoff_base_ms=1000, backoff_cap_ms=30_000, clock=clock)
    delays = []

    for _ in range(7):
        delays.append(limiter.backoff_delay_ms())
        limiter.record_failure(500)

    assert delays == [1000, 2000, 4000, 8000, 16000, 30000, 30000]
    assert limiter.blocked_until_ms == clock() + 30000


def test_backoff_never_shortens_a_429_window(clock):
    limiter = RateLimiter(clock=clock)
    reset = clock() + 45_000
    limiter.record_failure(429, reset)

    limiter.record_failure(503)

    assert limiter.blocked_until_ms == reset


def test_success_resets_failures_but_keeps_429_window(clock):
    limiter = RateLimiter(clock=clock)
    limiter.record_failure(429, clock() + 10_000)

    limiter.record_success()

    assert limiter.consecutive_failures == 0
    assert limiter.is_blocked()
    assert limiter.backoff_delay_ms() == limiter.backoff_base_ms


def test_status_snapshot(clock):
    limiter = RateLimiter(clock=clock)
    assert limiter.status().is_rate_limited is False

    limiter.record_failure(429, clock() + 2000)
    status = limiter.status()

    assert status.is_rate_limited is True
    assert status.reset_time_ms == clock() + 2000
    assert status.remaining_ms == 2000
    assert status.consecutive_failures == 1

    limiter.clear()
    assert limiter.status().reset_time_ms is None


@pytest.mark.parametrize(
    "kwargs",
    [
        {"default_window_ms": 0},
        {"backoff_base_ms": -1},
        {"backoff_base_ms": 5000, "backoff_cap_ms": 1000},
    ],
)
def test_rejects_bad_configuration(kwargs):
    with pytest.raises(ValueError):
        RateLimiter(**kwargs)
