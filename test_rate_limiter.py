"""Tests for cooldown and quota throttling."""

import pytest

from rate_limiter import RateLimiter


def test_cooldown_blocks_until_limit_passes(ticker):
    limiter = RateLimiter(limit=1.0, clock=ticker)
    assert limiter.can_request(1)
    assert not limiter.can_request(1)

    ticker.advance(0.5)
    assert not limiter.can_request(1)
    ticker.advance(0.6)
    assert limiter.can_request(1)


def test_cooldown_is_per_key(ticker):
    limiter = RateLimiter(limit=1.0, clock=ticker)
    assert limiter.can_request(1)
    assert limiter.can_request(2)


def test_quota_allows_max_requests_per_window(ticker):
    limiter = RateLimiter(window=120, max_requests=5, clock=ticker)
    for _ in range(5):
        assert limiter.can_request("chat")
        ticker.advance(1)
    assert not limiter.can_request("chat")

    ticker.advance(120)
    assert limiter.can_request("chat")


def test_rejected_quota_requests_are_not_recorded(ticker):
    limiter = RateLimiter(window=10, max_requests=1, clock=ticker)
    assert limiter.can_request("chat")
    for _ in range(3):
        ticker.advance(3)
        assert not limiter.can_request("chat")
    ticker.advance(2)
    assert limiter.can_request("chat")


def test_cleanup_drops_stale_entries(ticker):
    cooldown = RateLimiter(limit=1.0, clock=ticker)
    quota = RateLimiter(window=10, max_requests=3, clock=ticker)
    cooldown.can_request(1)
    quota.can_request(1)
    assert len(cooldown) == 1 and len(quota) == 1

    ticker.advance(60)
    assert cooldown.cleanup() == 1
    assert quota.cleanup() == 1
    assert len(cooldown) == 0 and len(quota) == 0


def test_reset_forgets_key(ticker):
    limiter = RateLimiter(limit=10, clock=ticker)
    limiter.can_request(1)
    limiter.reset(1)
    assert limiter.can_request(1)


def test_invalid_configuration():
    with pytest.raises(ValueError):
        RateLimiter()
    with pytest.raises(ValueError):
        RateLimiter(window=10)
