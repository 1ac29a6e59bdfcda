#!/usr/bin/env python3
"""
Unit tests for the per-provider Rate Limiter
"""

import pytest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from providers import Priority, ProviderId, parse_retry_after
from proxy.config import ProviderLimits
from proxy.rate_limiter import RateLimiter, backoff_delay

CG = ProviderId.COINGECKO

LIMITS = ProviderLimits(
    window_sec=60,
    max_requests=5,
    min_spacing_sec=12,
    backoff_base_sec=60,
    backoff_cap_sec=900,
    max_wait_sec=30,
)


class TestRetryAfterParser:
    """Test Retry-After / reset header parsing."""

    def test_plain_seconds(self):
        assert parse_retry_after("60") == 60

    def test_duration_seconds(self):
        assert parse_retry_after("7.66s") == 7

    def test_duration_minutes_seconds(self):
        assert parse_retry_after("2m59.56s") == 179

    def test_duration_hours(self):
        assert parse_retry_after("1h2m3s") == 3723

    def test_zero_floors_to_one(self):
        assert parse_retry_after("0") == 1

    def test_past_http_date_floors_to_one(self):
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 1

    def test_future_iso_date(self):
        assert parse_retry_after("2999-01-01T00:00:00Z") > 3600

    def test_missing(self):
        assert parse_retry_after(None) is None
        assert parse_retry_after("") is None

    def test_garbage(self):
        assert parse_retry_after("soon") is None


class TestBackoffDelay:
    """Backoff is monotonic in failures and capped."""

    def test_no_failures_no_delay(self):
        assert backoff_delay(LIMITS, 0) == 0

    def test_doubles(self):
        assert backoff_delay(LIMITS, 1) == 120
        assert backoff_delay(LIMITS, 2) == 240
        assert backoff_delay(LIMITS, 3) == 480

    def test_monotonic_and_capped(self):
        delays = [backoff_delay(LIMITS, n) for n in range(0, 200)]
        assert delays == sorted(delays)
        assert max(delays) == LIMITS.backoff_cap_sec


class TestAdmission:
    """Test spacing, quota and priority handling."""

    @pytest.fixture
    def limiter(self, clock):
        return RateLimiter({CG: LIMITS}, clock=clock, sleep=clock.sleep)

    def test_first_request_admitted(self, limiter):
        admission = limiter.admit(CG)
        assert admission.allowed
        assert admission.waited == 0

    def test_interactive_denied_inside_spacing(self, limiter, clock):
        limiter.admit(CG)
        clock.advance(5)
        admission = limiter.admit(CG, Priority.INTERACTIVE)
        assert not admission.allowed
        assert admission.reason == "spacing"
        assert admission.retry_after == pytest.approx(7)

    def test_background_waits_for_slot(self, limiter, clock):
        limiter.admit(CG)
        clock.advance(5)
        admission = limiter.admit(CG, Priority.BACKGROUND)
        assert admission.allowed
        assert admission.waited == pytest.approx(7)
        assert clock.sleeps == [pytest.approx(7)]

    def test_background_denied_beyond_max_wait(self, clock):
        limits = ProviderLimits(60, 5, 45, 60, 900, max_wait_sec=10)
        limiter = RateLimiter({CG: limits}, clock=clock, sleep=clock.sleep)
        limiter.admit(CG)
        admission = limiter.admit(CG, Priority.BACKGROUND)
        assert not admission.allowed
        assert clock.sleeps == []

    def test_consecutive_background_callers_each_wait(self, limiter, clock):
        limiter.admit(CG)
        first = limiter.admit(CG, Priority.BACKGROUND)
        second = limiter.admit(CG, Priority.BACKGROUND)
        assert first.allowed and second.allowed
        assert first.waited == pytest.approx(12)
        assert second.waited == pytest.approx(12)

    def test_quota_denial_inside_window(self, clock):
        limits = ProviderLimits(60, 2, 0, 60, 900)
        limiter = RateLimiter({CG: limits}, clock=clock, sleep=clock.sleep)
        assert limiter.admit(CG).allowed
        assert limiter.admit(CG).allowed
        admission = limiter.admit(CG)
        assert not admission.allowed
        assert admission.reason == "quota"
        assert 0 < admission.retry_after <= 60

    def test_window_rollover_resets_quota(self, clock):
        limits = ProviderLimits(60, 1, 0, 60, 900)
        limiter = RateLimiter({CG: limits}, clock=clock, sleep=clock.sleep)
        assert limiter.admit(CG).allowed
        assert not limiter.admit(CG).allowed
        clock.advance(60)
        assert limiter.admit(CG).allowed

    def test_unknown_provider_rejected(self, limiter):
        with pytest.raises(ValueError):
            limiter.admit(ProviderId.COINMARKETCAP)


class TestBackoff:
    """Test failure bookkeeping and blocking."""

    @pytest.fixture
    def limiter(self, clock):
        return RateLimiter({CG: LIMITS}, clock=clock, sleep=clock.sleep)

    def test_three_failures_then_denied(self, limiter):
        for _ in range(3):
            limiter.record_failure(CG, retry_after_hint=60)
        admission = limiter.admit(CG)
        assert not admission.allowed
        assert admission.reason == "backoff"
        assert admission.retry_after > 0

    def test_background_is_denied_while_blocked(self, limiter, clock):
        limiter.record_failure(CG)
        admission = limiter.admit(CG, Priority.BACKGROUND)
        assert not admission.allowed
        assert clock.sleeps == []

    def test_hint_longer_than_backoff_wins(self, limiter, clock):
        delay = limiter.record_failure(CG, retry_after_hint=500)
        assert delay == 500
        assert limiter.snapshot(CG).blocked_until == clock.now + 500

    def test_backoff_longer_than_hint_wins(self, limiter):
        assert limiter.record_failure(CG, retry_after_hint=5) == 120

    def test_block_expires(self, limiter, clock):
        delay = limiter.record_failure(CG)
        clock.advance(delay)
        assert limiter.admit(CG).allowed

    def test_success_decrements_not_resets(self, limiter):
        limiter.record_failure(CG)
        limiter.record_failure(CG)
        limiter.record_success(CG)
        assert limiter.snapshot(CG).consecutive_failures == 1

    def test_success_floors_at_zero(self, limiter):
        limiter.record_success(CG)
        assert limiter.snapshot(CG).consecutive_failures == 0

    def test_rollover_decays_failures(self, limiter, clock):
        limiter.record_failure(CG)
        limiter.record_failure(CG)
        clock.advance(LIMITS.backoff_cap_sec + 1)
        limiter.admit(CG)
        assert limiter.snapshot(CG).consecutive_failures == 1


class TestHealth:
    """Traffic-light view over the limiter state."""

    @pytest.fixture
    def limiter(self, clock):
        return RateLimiter({CG: LIMITS}, clock=clock, sleep=clock.sleep)

    def test_green_by_default(self, limiter):
        assert limiter.get_health(CG) == "green"
        assert limiter.seconds_until_available(CG) == 0

    def test_red_while_blocked(self, limiter):
        limiter.record_failure(CG)
        assert limiter.get_health(CG) == "red"
        assert limiter.seconds_until_available(CG) == pytest.approx(120)

    def test_yellow_after_block_with_failures(self, limiter, clock):
        limiter.record_failure(CG)
        clock.advance(121)
        assert limiter.get_health(CG) == "yellow"

    def test_yellow_near_quota(self, clock):
        limits = ProviderLimits(60, 5, 0, 60, 900)
        limiter = RateLimiter({CG: limits}, clock=clock, sleep=clock.sleep)
        for _ in range(4):
            limiter.admit(CG)
        assert limiter.get_health(CG) == "yellow"

    def test_stats(self, limiter):
        limiter.admit(CG)
        limiter.admit(CG)
        stats = limiter.get_stats()
        assert stats["providers_tracked"] == 1
        assert stats["coingecko"]["admitted"] == 1
        assert stats["coingecko"]["denied"] == 1
        assert stats["all_health"] == {"coingecko": "green"}
