"""Tests for the fixed-window signin rate limiter."""

import threading
from datetime import timedelta

import pytest

from fairshare.service.rate_limit import RateLimiter


@pytest.fixture
def limiter(fake_clock):
    return RateLimiter(
        limit=5,
        window=timedelta(minutes=15),
        max_entries=100,
        sweep_interval=timedelta(minutes=1),
        clock=fake_clock,
    )


class TestWindow:
    def test_allows_up_to_limit(self, limiter):
        decisions = [limiter.check("10.0.0.1") for _ in range(5)]

        assert all(d.allowed for d in decisions)
        assert [d.remaining for d in decisions] == [4, 3, 2, 1, 0]

    def test_sixth_request_denied(self, limiter):
        for _ in range(5):
            limiter.check("10.0.0.1")

        decision = limiter.check("10.0.0.1")

        assert decision.allowed is False
        assert decision.remaining == 0
        assert decision.retry_after_seconds == 15 * 60
        assert decision.reset_seconds == 15 * 60

    def test_denied_requests_still_count(self, limiter, fake_clock):
        for _ in range(8):
            limiter.check("10.0.0.1")
        fake_clock.advance(timedelta(minutes=10))

        decision = limiter.check("10.0.0.1")

        assert decision.allowed is False
        assert decision.retry_after_seconds == 5 * 60

    def test_new_window_after_reset_time(self, limiter, fake_clock):
        for _ in range(6):
            limiter.check("10.0.0.1")
        fake_clock.advance(timedelta(minutes=15, seconds=1))

        decision = limiter.check("10.0.0.1")

        assert decision.allowed is True
        assert decision.remaining == 4

    def test_keys_are_independent(self, limiter):
        for _ in range(6):
            limiter.check("10.0.0.1")

        assert limiter.check("10.0.0.2").allowed is True

    def test_reset_single_key(self, limiter):
        for _ in range(6):
            limiter.check("10.0.0.1")
        limiter.reset("10.0.0.1")

        assert limiter.check("10.0.0.1").allowed is True

    def test_invalid_configuration(self):
        with pytest.raises(ValueError):
            RateLimiter(limit=0)
        with pytest.raises(ValueError):
            RateLimiter(max_entries=0)


class TestBoundedTable:
    def test_evicts_least_recently_used(self, fake_clock):
        limiter = RateLimiter(limit=1, max_entries=2, clock=fake_clock)
        limiter.check("a")
        limiter.check("b")
        # touch "a" so "b" becomes the eviction candidate
        limiter.check("a")
        limiter.check("c")

        assert len(limiter) == 2
        assert limiter.check("a").allowed is False
        # "b" was evicted, so it starts a fresh window
        assert limiter.check("b").allowed is True

    def test_sweep_drops_finished_windows(self, limiter, fake_clock):
        limiter.check("10.0.0.1")
        limiter.check("10.0.0.2")
        fake_clock.advance(timedelta(minutes=16))

        limiter.check("10.0.0.3")

        assert len(limiter) == 1

    def test_concurrent_checks_are_counted_once_each(self, fake_clock):
        limiter = RateLimiter(limit=50, clock=fake_clock)
        results = []
        lock = threading.Lock()

        def worker():
            for _ in range(10):
                decision = limiter.check("shared")
                with lock:
                    results.append(decision.allowed)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(True) == 50
        assert results.count(False) == 30
