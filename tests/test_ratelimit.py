"""Tests for asncat.ratelimit."""

import logging

import pytest

from asncat.ratelimit import TokenRateLimiter


class _FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _make_limiter(tpm: int = 1000) -> tuple[TokenRateLimiter, _FakeClock]:
    clock = _FakeClock()
    limiter = TokenRateLimiter(tpm, 250_000, clock=clock, sleep=clock.sleep)
    return limiter, clock


class TestWaitForCapacity:
    def test_no_wait_with_room(self) -> None:
        limiter, clock = _make_limiter()
        limiter.record_tokens(400)

        assert limiter.wait_for_capacity(600) == 0.0
        assert clock.sleeps == []

    def test_full_window_blocks_until_expiry(self) -> None:
        limiter, clock = _make_limiter()
        limiter.record_tokens(1000)

        waited = limiter.wait_for_capacity(1)

        assert waited == pytest.approx(60.1)
        assert clock.sleeps == [pytest.approx(60.1)]
        assert limiter.current_usage() == 0

    def test_waits_for_oldest_records_that_free_enough(self) -> None:
        limiter, clock = _make_limiter()
        limiter.record_tokens(400)
        clock.now += 30
        limiter.record_tokens(400)

        waited = limiter.wait_for_capacity(500)

        assert waited == pytest.approx(30.1)
        assert limiter.current_usage() == 400

    def test_oversized_request_waits_for_newest_then_proceeds(self) -> None:
        limiter, clock = _make_limiter()
        limiter.record_tokens(500)
        clock.now += 10
        limiter.record_tokens(300)

        waited = limiter.wait_for_capacity(5000)

        assert waited == pytest.approx(60.1)
        assert limiter.current_usage() == 0

    def test_empty_window_never_waits(self) -> None:
        limiter, clock = _make_limiter(tpm=10)

        assert limiter.wait_for_capacity(1_000_000) == 0.0
        assert clock.sleeps == []

    def test_logs_wait(self, caplog: pytest.LogCaptureFixture) -> None:
        limiter, _ = _make_limiter()
        limiter.record_tokens(1000)

        with caplog.at_level(logging.INFO, logger="asncat.ratelimit"):
            limiter.wait_for_capacity(1, identifier="AS13335")

        assert "AS13335: Rate limit (1000 + 1 > 1000 TPM), waiting 60.1s" in caplog.text


class TestCurrentUsage:
    def test_record_exactly_one_window_old_still_counts(self) -> None:
        limiter, clock = _make_limiter()
        limiter.record_tokens(100)

        clock.now += 60
        assert limiter.current_usage() == 100

        clock.now += 0.01
        assert limiter.current_usage() == 0

    def test_sums_window(self) -> None:
        limiter, _ = _make_limiter()
        limiter.record_tokens(10)
        limiter.record_tokens(20)

        assert limiter.current_usage() == 30
