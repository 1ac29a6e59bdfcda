#!/usr/bin/env python3
"""
Fallback Merge Policy — refresh a cache key, degrading in a fixed order.

State machine per refresh:
  CACHE_MISS_OR_STALE → RATE_CHECK → ADMITTED | DENIED
  ADMITTED → FETCH_PRIMARY → SUCCESS | FAIL
  SUCCESS → WRITE_CACHE → done
  FAIL | DENIED → DEGRADE

DEGRADE, first success wins:
  1. stale cached entry
  2. secondary provider (batch: only the symbols the primary lacked)
  3. last-known value (single-value feeds)
  4. synthetic series (chart shapes only, never cached)
  5. NotFound if every source said so, else AllSourcesExhausted
"""

import logging
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from marketcache import CacheEntry, CacheStore, LastKnownValues
from providers import (
    AllSourcesExhausted,
    FailureKind,
    MarketQuery,
    NotFound,
    Provenance,
    ProviderAdapter,
    ProviderId,
    ProviderResult,
    QueryShape,
)
from providers.base import is_number
from providers.errors import BACKOFF_KINDS

from .config import RouteConfig
from .rate_limiter import RateLimiter
from .response import ProxyResponse, whole_seconds
from .synthetic import synthetic_series

logger = logging.getLogger(__name__)


class ResolutionState(str, Enum):
    FRESH_CACHE_HIT = "FRESH_CACHE_HIT"
    CACHE_MISS_OR_STALE = "CACHE_MISS_OR_STALE"
    COALESCED = "COALESCED"
    RATE_CHECK = "RATE_CHECK"
    ADMITTED = "ADMITTED"
    DENIED = "DENIED"
    FETCH_PRIMARY = "FETCH_PRIMARY"
    FETCH_SECONDARY = "FETCH_SECONDARY"
    SUCCESS = "SUCCESS"
    FAIL = "FAIL"
    WRITE_CACHE = "WRITE_CACHE"
    DEGRADE = "DEGRADE"
    STALE_CACHE = "STALE_CACHE"
    LAST_KNOWN = "LAST_KNOWN"
    SYNTHETIC = "SYNTHETIC"
    FAILED = "FAILED"


def merge_primary_first(primary: Mapping[str, Any], secondary: Mapping[str, Any]) -> Dict[str, Any]:
    """Secondary entries fill gaps only; primary entries always win."""
    merged = dict(primary)
    for key, value in secondary.items():
        if key not in merged:
            merged[key] = value
    return merged


def missing_symbols(query: MarketQuery, payload: Any) -> Tuple[str, ...]:
    if query.shape is not QueryShape.BATCH_QUOTE or not isinstance(payload, Mapping):
        return ()
    return tuple(s for s in query.symbols if s not in payload)


def usable_quotes(quotes: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Drop quotes without a numeric price; keys upper-cased."""
    return {
        symbol.upper(): quote
        for symbol, quote in (quotes or {}).items()
        if isinstance(quote, Mapping) and is_number(quote.get("price"))
    }


@dataclass
class Attempt:
    provider: ProviderId
    outcome: str                        # "ok", "denied", or a FailureKind value
    retry_after: Optional[float] = None


@dataclass
class Trail:
    """States visited and sources attempted during one resolution."""
    states: List[ResolutionState] = field(default_factory=list)
    attempts: List[Attempt] = field(default_factory=list)
    denied_retry_after: Optional[float] = None

    def visit(self, state: ResolutionState) -> None:
        self.states.append(state)

    def record(self, provider: ProviderId, outcome: str, retry_after: Optional[float] = None) -> None:
        self.attempts.append(Attempt(provider, outcome, retry_after))
        if outcome == "denied" and retry_after:
            if self.denied_retry_after is None or retry_after < self.denied_retry_after:
                self.denied_retry_after = retry_after

    @property
    def all_not_found(self) -> bool:
        return bool(self.attempts) and all(
            a.outcome == FailureKind.NOT_FOUND.value for a in self.attempts
        )

    def retry_hint(self) -> Optional[float]:
        hints = [a.retry_after for a in self.attempts if a.retry_after]
        return min(hints) if hints else None


@dataclass(frozen=True)
class Resolution:
    response: ProxyResponse
    states: Tuple[ResolutionState, ...]
    attempts: Tuple[Attempt, ...]
    denied_retry_after: Optional[float] = None


class FallbackPolicy:
    """Runs one refresh of a cache key against the route's provider chain."""

    def __init__(
        self,
        adapters: Mapping[ProviderId, ProviderAdapter],
        limiter: RateLimiter,
        cache: CacheStore,
        last_known: LastKnownValues,
        clock=time.time,
        rng: random.Random = None,
    ):
        self._adapters = dict(adapters)
        self._limiter = limiter
        self._cache = cache
        self._last_known = last_known
        self._clock = clock
        self._rng = rng or random.Random()

    # ── Provider calls ──

    def _call(self, provider: ProviderId, query: MarketQuery, trail: Trail, fetch_state: ResolutionState) -> Optional[ProviderResult]:
        """One admitted fetch, with limiter bookkeeping. None when not attempted."""
        adapter = self._adapters.get(provider)
        if adapter is None or not adapter.is_configured:
            logger.debug("Skipping %s: not configured", provider.value)
            return None

        trail.visit(ResolutionState.RATE_CHECK)
        admission = self._limiter.admit(provider, query.priority)
        if not admission.allowed:
            trail.visit(ResolutionState.DENIED)
            trail.record(provider, "denied", admission.retry_after)
            return None

        trail.visit(ResolutionState.ADMITTED)
        trail.visit(fetch_state)
        result = adapter.fetch(query)
        if result.ok:
            self._limiter.record_success(provider)
            trail.visit(ResolutionState.SUCCESS)
            trail.record(provider, "ok")
            return result

        failure = result.failure
        retry_after = failure.retry_after
        if failure.kind in BACKOFF_KINDS:
            # The provider stays blocked for the full backoff, not just its own hint.
            retry_after = self._limiter.record_failure(provider, failure.retry_after)
        else:
            # Healthy provider, unknown entity.
            self._limiter.record_success(provider)
        trail.visit(ResolutionState.FAIL)
        trail.record(provider, failure.kind.value, retry_after)
        return result

    def _write(self, key: str, route: RouteConfig, data: Any, result: ProviderResult, provenance: Provenance, trail: Trail) -> CacheEntry:
        entry = CacheEntry(
            payload=data,
            fetched_at=result.fetched_at,
            source=result.provider_id.value,
            provenance=provenance.value,
        )
        trail.visit(ResolutionState.WRITE_CACHE)
        self._cache.put(key, entry)
        if route.last_known:
            self._last_known.remember(key, entry)
        return entry

    # ── Refresh ──

    def refresh(self, query: MarketQuery, key: str, route: RouteConfig, stale: Optional[CacheEntry], trail: Trail = None) -> Resolution:
        if trail is None:
            trail = Trail()
        if query.shape is QueryShape.BATCH_QUOTE:
            response = self._refresh_batch(query, key, route, stale, trail)
        else:
            response = self._refresh_single(query, key, route, stale, trail)
        return Resolution(
            response=response,
            states=tuple(trail.states),
            attempts=tuple(trail.attempts),
            denied_retry_after=trail.denied_retry_after,
        )

    def _refresh_single(self, query, key, route, stale, trail) -> ProxyResponse:
        result = self._call(route.primary, query, trail, ResolutionState.FETCH_PRIMARY)
        if result is not None and result.ok:
            entry = self._write(key, route, result.data, result, Provenance.PRIMARY, trail)
            return ProxyResponse.from_entry(entry, stale=False)

        trail.visit(ResolutionState.DEGRADE)
        return self.degrade(query, key, route, stale, trail)

    def degrade(self, query: MarketQuery, key: str, route: RouteConfig, stale: Optional[CacheEntry], trail: Trail) -> ProxyResponse:
        """Steps 1-5 for single-entity and aggregate shapes."""
        if stale is not None:
            trail.visit(ResolutionState.STALE_CACHE)
            return ProxyResponse.from_entry(stale, stale=True, retry_after=trail.retry_hint())

        if route.secondary is not None:
            result = self._call(route.secondary, query, trail, ResolutionState.FETCH_SECONDARY)
            if result is not None and result.ok:
                entry = self._write(key, route, result.data, result, Provenance.SECONDARY, trail)
                return ProxyResponse.from_entry(entry, stale=False)

        if route.last_known:
            remembered = self._last_known.recall(key)
            if remembered is not None:
                trail.visit(ResolutionState.LAST_KNOWN)
                return ProxyResponse.from_entry(
                    remembered, stale=True, provenance=Provenance.LAST_KNOWN,
                    retry_after=trail.retry_hint(),
                )

        if route.synthetic and query.shape.is_series and not trail.all_not_found:
            trail.visit(ResolutionState.SYNTHETIC)
            logger.warning("Serving synthetic %s for %s", query.shape.value, query.entity_id)
            now = self._clock()
            return ProxyResponse(
                data=synthetic_series(query.shape, int(now * 1000), rng=self._rng),
                stale=False,
                synthetic=True,
                provenance=Provenance.SYNTHETIC,
                source="synthetic",
                fetched_at=now,
                retry_after_seconds=whole_seconds(trail.retry_hint()),
            )

        return self._fail(query, route, trail)

    def _fail(self, query: MarketQuery, route: RouteConfig, trail: Trail) -> ProxyResponse:
        trail.visit(ResolutionState.FAILED)
        if trail.all_not_found:
            return ProxyResponse.failure(NotFound(f"No market data for {query.entity_id!r} ({query.shape.value})"))

        retry_after = trail.retry_hint() or self._limiter.seconds_until_available(route.primary) or None
        logger.warning(
            "All sources exhausted for %s %s (%s)",
            query.shape.value, query.entity_id,
            ", ".join(f"{a.provider.value}={a.outcome}" for a in trail.attempts) or "no source attempted",
        )
        return ProxyResponse.failure(AllSourcesExhausted(
            f"{query.shape.value} data for {query.entity_id!r} is temporarily unavailable",
            retry_after=retry_after,
        ))

    # ── Batch quotes ──

    def _refresh_batch(self, query, key, route, stale, trail) -> ProxyResponse:
        result = self._call(route.primary, query, trail, ResolutionState.FETCH_PRIMARY)
        if result is None or not result.ok:
            trail.visit(ResolutionState.DEGRADE)
            if stale is not None:
                trail.visit(ResolutionState.STALE_CACHE)
                return ProxyResponse.from_entry(
                    stale, stale=True, retry_after=trail.retry_hint(),
                    missing=missing_symbols(query, stale.payload),
                )
            return self.complete_batch(query, key, route, {}, None, trail)

        quotes = usable_quotes(result.data)
        if not quotes:
            # Nothing resolved: the primary does not know these symbols.
            trail.attempts[-1].outcome = FailureKind.NOT_FOUND.value
        missing = [s for s in query.symbols if s not in quotes]
        if not missing:
            entry = self._write(key, route, quotes, result, Provenance.PRIMARY, trail)
            return ProxyResponse.from_entry(entry, stale=False)

        trail.visit(ResolutionState.DEGRADE)
        return self.complete_batch(query, key, route, quotes, result, trail)

    def complete_batch(
        self,
        query: MarketQuery,
        key: str,
        route: RouteConfig,
        primary_quotes: Dict[str, Any],
        primary_result: Optional[ProviderResult],
        trail: Trail,
    ) -> ProxyResponse:
        """Ask the secondary for the symbols the primary did not supply, then merge."""
        merged = dict(primary_quotes)
        source_result = primary_result
        missing = [s for s in query.symbols if s not in merged]

        remainder = query.subset(missing)
        if remainder.symbols and route.secondary is not None:
            result = self._call(route.secondary, remainder, trail, ResolutionState.FETCH_SECONDARY)
            if result is not None and result.ok:
                extra = usable_quotes(result.data)
                if not extra:
                    trail.attempts[-1].outcome = FailureKind.NOT_FOUND.value
                merged = merge_primary_first(merged, extra)
                source_result = source_result or result

        if not merged:
            return self._fail(query, route, trail)

        missing = tuple(s for s in query.symbols if s not in merged)
        provenance = Provenance.PRIMARY if primary_quotes else Provenance.SECONDARY
        entry = self._write(key, route, merged, source_result, provenance, trail)
        return ProxyResponse.from_entry(entry, stale=False, missing=missing)
