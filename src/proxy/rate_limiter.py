#!/usr/bin/env python3
"""
Rate Limiter — per-provider request budget

Every upstream call asks admit() first. No call is made on a denial; the
caller degrades instead.

Budget per provider:
  spacing   minimum gap between consecutive requests
  window    at most N requests per sliding window of W seconds
  backoff   after a failure the provider is blocked for
            min(base * 2**failures, cap), or longer if upstream said so

Health states:
  GREEN   — use normally
  YELLOW  — outstanding failures, or >=80% of the window used
  RED     — blocked by backoff
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Tuple

from providers import Priority, ProviderId

from .config import ProviderLimits

logger = logging.getLogger(__name__)

YELLOW_WINDOW_USAGE = 0.8
MAX_BACKOFF_EXPONENT = 32


def backoff_delay(limits: ProviderLimits, failures: int) -> float:
    """Seconds to block after `failures` consecutive failures. Monotonic, capped."""
    if failures <= 0:
        return 0.0
    exponent = min(failures, MAX_BACKOFF_EXPONENT)
    return min(limits.backoff_base_sec * (2 ** exponent), limits.backoff_cap_sec)


@dataclass
class RateLimitState:
    """Mutable per-provider state. Only RateLimiter touches it, under its lock."""
    last_request_at: Optional[float] = None
    window_start: float = 0.0
    requests_in_window: int = 0
    consecutive_failures: int = 0
    blocked_until: float = 0.0


@dataclass(frozen=True)
class Admission:
    allowed: bool
    retry_after: float = 0.0
    waited: float = 0.0
    reason: str = ""


class RateLimiter:
    """
    Process-scoped limiter holding one RateLimitState per provider.

    Interactive callers never wait: if the spacing gap has not elapsed they
    are denied with a retry hint. Background callers reserve the next slot
    and sleep until it, outside the lock, for at most max_wait_sec.
    """

    def __init__(self, limits: Mapping[ProviderId, ProviderLimits], clock=time.time, sleep=time.sleep):
        self._limits = dict(limits)
        self._states = {pid: RateLimitState() for pid in self._limits}
        self._locks = {pid: threading.Lock() for pid in self._limits}
        self._clock = clock
        self._sleep = sleep
        self._counters = {pid: {"admitted": 0, "denied": 0, "waited": 0} for pid in self._limits}

    def _lookup(self, provider: ProviderId) -> Tuple[RateLimitState, ProviderLimits, threading.Lock]:
        try:
            return self._states[provider], self._limits[provider], self._locks[provider]
        except KeyError:
            raise ValueError(f"unknown provider: {provider}") from None

    @staticmethod
    def _roll_window(state: RateLimitState, limits: ProviderLimits, now: float) -> None:
        if now - state.window_start >= limits.window_sec:
            state.window_start = now
            state.requests_in_window = 0
            if state.consecutive_failures > 0:
                state.consecutive_failures -= 1

    @staticmethod
    def _blocking(state: RateLimitState, limits: ProviderLimits, now: float) -> Tuple[str, float]:
        """(reason, seconds) when the provider cannot take any request now."""
        if now < state.blocked_until:
            return "backoff", state.blocked_until - now
        if state.requests_in_window >= limits.max_requests:
            return "quota", max(state.window_start + limits.window_sec - now, 0.001)
        return "", 0.0

    # ── Admission ──

    def admit(self, provider: ProviderId, priority: Priority = Priority.INTERACTIVE) -> Admission:
        state, limits, lock = self._lookup(provider)
        counters = self._counters[provider]
        wait = 0.0

        with lock:
            now = self._clock()
            self._roll_window(state, limits, now)

            reason, retry_after = self._blocking(state, limits, now)
            if not reason and state.last_request_at is not None:
                gap = state.last_request_at + limits.min_spacing_sec - now
                if gap > 0:
                    if priority is Priority.INTERACTIVE or gap > limits.max_wait_sec:
                        reason, retry_after = "spacing", gap
                    else:
                        wait = gap

            if reason:
                counters["denied"] += 1
                logger.debug(
                    "Denied %s (%s, %s): retry in %.1fs",
                    provider.value, priority.value, reason, retry_after,
                )
                return Admission(False, retry_after=retry_after, reason=reason)

            state.last_request_at = now + wait
            state.requests_in_window += 1
            counters["admitted"] += 1
            if wait:
                counters["waited"] += 1

        if wait:
            logger.debug("Background request to %s waits %.1fs for its slot", provider.value, wait)
            self._sleep(wait)
        return Admission(True, waited=wait)

    # ── Outcomes ──

    def record_failure(self, provider: ProviderId, retry_after_hint: Optional[float] = None) -> float:
        """Count a backoff-worthy failure. Returns the block duration applied."""
        state, limits, lock = self._lookup(provider)
        with lock:
            now = self._clock()
            state.consecutive_failures += 1
            delay = max(backoff_delay(limits, state.consecutive_failures), retry_after_hint or 0)
            state.blocked_until = now + delay
            failures = state.consecutive_failures

        logger.warning(
            "%s failure #%d — RED for %ds (until %s)",
            provider.value, failures, delay,
            datetime.fromtimestamp(now + delay, tz=timezone.utc).isoformat(),
        )
        return delay

    def record_success(self, provider: ProviderId) -> None:
        state, _, lock = self._lookup(provider)
        with lock:
            if state.consecutive_failures > 0:
                state.consecutive_failures -= 1

    # ── Query health ──

    def snapshot(self, provider: ProviderId) -> RateLimitState:
        state, _, lock = self._lookup(provider)
        with lock:
            return RateLimitState(**vars(state))

    def get_health(self, provider: ProviderId) -> str:
        state, limits, lock = self._lookup(provider)
        with lock:
            now = self._clock()
            if now < state.blocked_until:
                return "red"
            in_window = now - state.window_start < limits.window_sec
            used = state.requests_in_window if in_window else 0
            if state.consecutive_failures > 0 or used >= limits.max_requests * YELLOW_WINDOW_USAGE:
                return "yellow"
        return "green"

    def seconds_until_available(self, provider: ProviderId) -> float:
        """How long until an interactive request could be admitted."""
        state, limits, lock = self._lookup(provider)
        with lock:
            now = self._clock()
            if now < state.blocked_until:
                return state.blocked_until - now
            in_window = now - state.window_start < limits.window_sec
            if in_window and state.requests_in_window >= limits.max_requests:
                return state.window_start + limits.window_sec - now
            if state.last_request_at is not None:
                return max(state.last_request_at + limits.min_spacing_sec - now, 0.0)
        return 0.0

    def get_all_health(self) -> Dict[str, str]:
        return {pid.value: self.get_health(pid) for pid in self._limits}

    # ── Diagnostics ──

    def get_stats(self) -> Dict[str, Any]:
        all_health = self.get_all_health()
        red_count = sum(1 for h in all_health.values() if h == "red")
        yellow_count = sum(1 for h in all_health.values() if h == "yellow")

        stats: Dict[str, Any] = {
            "providers_tracked": len(all_health),
            "providers_red": red_count,
            "providers_yellow": yellow_count,
            "providers_green": len(all_health) - red_count - yellow_count,
            "all_health": all_health,
        }
        for pid in self._limits:
            state = self.snapshot(pid)
            stats[pid.value] = {
                **self._counters[pid],
                "consecutive_failures": state.consecutive_failures,
                "requests_in_window": state.requests_in_window,
                "available_in": round(self.seconds_until_available(pid), 1),
            }
        return stats
