#!/usr/bin/env python3
"""
Request Coordinator — market-data façade

Takes a MarketQuery and always returns a ProxyResponse:

  Fresh cache        → served directly, no upstream call
  Miss / stale       → one coalesced refresh per key through the
                       rate limiter and the fallback chain
  Refresh in flight  → interactive callers with stale data get it now
  Everything fails   → structured NotFound / AllSourcesExhausted

Callers never see network, rate-limit or validation errors.
"""

import json
import logging
import random
import threading
import time
import uuid
from concurrent import futures
from typing import Any, Dict, Iterable, Mapping

from marketcache import CacheStore, LastKnownValues, TTLPolicy, make_cache_key
from providers import (
    AllSourcesExhausted,
    CoinGeckoAdapter,
    CoinMarketCapAdapter,
    FearGreedAdapter,
    MarketQuery,
    Priority,
    Provenance,
    ProviderAdapter,
    ProviderId,
    QueryShape,
)

from .coalescer import InFlightFetches
from .config import ProxyConfig, RouteConfig
from .fallback import FallbackPolicy, Resolution, ResolutionState, Trail, missing_symbols
from .observability import ResolutionRecord
from .rate_limiter import RateLimiter
from .response import ProxyResponse
from .scheduler import DeferredRefresher

logger = logging.getLogger(__name__)


def build_adapters(config: ProxyConfig, clock=time.time, sleep=time.sleep) -> Dict[ProviderId, ProviderAdapter]:
    cg = config.providers[ProviderId.COINGECKO]
    cmc = config.providers[ProviderId.COINMARKETCAP]
    fng = config.providers[ProviderId.ALTERNATIVE_ME]
    return {
        ProviderId.COINGECKO: CoinGeckoAdapter(
            base_url=cg.base_url,
            api_key=cg.api_key,
            timeout=cg.timeout_sec,
            large_timeout=cg.large_timeout_sec,
            market_pages=cg.market_pages,
            page_delay=cg.page_delay_sec,
            clock=clock,
            sleep=sleep,
        ),
        ProviderId.COINMARKETCAP: CoinMarketCapAdapter(
            base_url=cmc.base_url, api_key=cmc.api_key, timeout=cmc.timeout_sec, clock=clock,
        ),
        ProviderId.ALTERNATIVE_ME: FearGreedAdapter(
            base_url=fng.base_url, timeout=fng.timeout_sec, clock=clock,
        ),
    }


class RequestCoordinator:
    """
    Process-scoped façade. Owns the cache, the limiter, the in-flight
    registry and the deferred refresher; nothing here is a module global.

    resolve() never raises.
    """

    def __init__(
        self,
        adapters: Mapping[ProviderId, ProviderAdapter],
        routes: Mapping[QueryShape, RouteConfig],
        limiter: RateLimiter,
        cache: CacheStore = None,
        ttl_policy: TTLPolicy = None,
        last_known: LastKnownValues = None,
        coalesce_wait_sec: float = 15.0,
        deferred_refresh: bool = False,
        clock=time.time,
        timer_factory=None,
        rng: random.Random = None,
    ):
        self.adapters = dict(adapters)
        self.routes = dict(routes)
        self.limiter = limiter
        self.cache = cache or CacheStore(clock=clock)
        self.ttl_policy = ttl_policy or TTLPolicy()
        self.last_known = last_known or LastKnownValues()
        self.coalesce_wait_sec = coalesce_wait_sec
        self.deferred_refresh = deferred_refresh
        self._clock = clock

        self._check_routes()

        self.inflight = InFlightFetches()
        self.policy = FallbackPolicy(
            self.adapters, self.limiter, self.cache, self.last_known, clock=clock, rng=rng,
        )
        self.refresher = DeferredRefresher(self._background_refresh, timer_factory=timer_factory)

        self.stats = {"requests": 0, "errors": 0, "deferred": 0}
        self._stats_lock = threading.Lock()

        logger.info(
            "RequestCoordinator initialized (routes=%d, adapters=%s, deferred_refresh=%s)",
            len(self.routes),
            ",".join(pid.value for pid, a in self.adapters.items() if a.is_configured),
            self.deferred_refresh,
        )

    @classmethod
    def from_config(cls, config: ProxyConfig, clock=time.time, sleep=time.sleep, **kwargs) -> "RequestCoordinator":
        """Build every process-scoped object once from a ProxyConfig."""
        adapters = kwargs.pop("adapters", None) or build_adapters(config, clock=clock, sleep=sleep)
        limiter = RateLimiter(
            {pid: pc.limits for pid, pc in config.providers.items()},
            clock=clock,
            sleep=sleep,
        )
        return cls(
            adapters=adapters,
            routes=config.routes,
            limiter=limiter,
            cache=CacheStore(clock=clock),
            ttl_policy=TTLPolicy(config.ttl_overrides),
            coalesce_wait_sec=config.coalesce_wait_sec,
            deferred_refresh=config.deferred_refresh,
            clock=clock,
            **kwargs,
        )

    def _check_routes(self) -> None:
        for shape, route in self.routes.items():
            self.ttl_policy.ttl_for(shape)
            for pid in filter(None, (route.primary, route.secondary)):
                adapter = self.adapters.get(pid)
                if adapter is None:
                    raise ValueError(f"route {shape.value} names {pid.value}, which has no adapter")
                if not adapter.supports(shape):
                    raise ValueError(f"{pid.value} cannot serve {shape.value}")

    # ── Main entry point ──

    def resolve(self, query: MarketQuery) -> ProxyResponse:
        started = time.monotonic()
        request_id = uuid.uuid4().hex[:12]
        self._count("requests")

        key = None
        resolution = None
        try:
            key = self.cache_key(query)
            resolution = self._resolve(query, key)
        except Exception:
            self._count("errors")
            logger.exception("Unexpected error resolving %s %s", query.shape, query.entity_id)
            response = ProxyResponse.failure(
                AllSourcesExhausted(f"{getattr(query.shape, 'value', query.shape)} data is temporarily unavailable")
            )
            resolution = Resolution(response=response, states=(ResolutionState.FAILED,), attempts=())

        self._log_resolution(request_id, query, key or "<unkeyed>", resolution, started)
        return resolution.response

    @staticmethod
    def cache_key(query: MarketQuery) -> str:
        symbols = query.symbols if query.shape is QueryShape.BATCH_QUOTE else None
        return make_cache_key(query.entity_id, query.shape.value, symbols)

    def _resolve(self, query: MarketQuery, key: str) -> Resolution:
        route = self.routes[query.shape]
        ttl = self.ttl_policy.ttl_for(query.shape)

        entry, fresh = self.cache.lookup(key, ttl)
        if fresh:
            return Resolution(
                response=ProxyResponse.from_entry(entry, stale=False, missing=missing_symbols(query, entry.payload)),
                states=(ResolutionState.FRESH_CACHE_HIT,),
                attempts=(),
            )

        if entry is not None and query.priority is Priority.INTERACTIVE and self.inflight.is_in_flight(key):
            logger.debug("Refresh of %s in flight; serving stale entry", key)
            return Resolution(
                response=ProxyResponse.from_entry(entry, stale=True, missing=missing_symbols(query, entry.payload)),
                states=(ResolutionState.CACHE_MISS_OR_STALE, ResolutionState.COALESCED, ResolutionState.STALE_CACHE),
                attempts=(),
            )

        leader = []

        def refresh() -> Resolution:
            leader.append(True)
            trail = Trail()
            trail.visit(ResolutionState.CACHE_MISS_OR_STALE)
            return self.policy.refresh(query, key, route, entry, trail)

        try:
            resolution = self.inflight.run(key, refresh, wait_timeout=self.coalesce_wait_sec)
        except futures.TimeoutError:
            logger.warning("Timed out waiting %.0fs for in-flight refresh of %s", self.coalesce_wait_sec, key)
            states = (ResolutionState.CACHE_MISS_OR_STALE, ResolutionState.COALESCED)
            if entry is not None:
                return Resolution(
                    response=ProxyResponse.from_entry(entry, stale=True, missing=missing_symbols(query, entry.payload)),
                    states=states + (ResolutionState.STALE_CACHE,),
                    attempts=(),
                )
            return Resolution(
                response=ProxyResponse.failure(AllSourcesExhausted(
                    f"{query.shape.value} data for {query.entity_id!r} is still loading",
                    retry_after=self.coalesce_wait_sec,
                )),
                states=states + (ResolutionState.FAILED,),
                attempts=(),
            )

        if not leader:
            return Resolution(
                response=resolution.response,
                states=(ResolutionState.CACHE_MISS_OR_STALE, ResolutionState.COALESCED),
                attempts=(),
            )

        if self.deferred_refresh and resolution.denied_retry_after:
            self._schedule_refresh(key, query, resolution)
        return resolution

    # ── Deferred refresh ──

    def _schedule_refresh(self, key: str, query: MarketQuery, resolution: Resolution) -> None:
        if not is_degraded(resolution.response):
            return
        delay = resolution.denied_retry_after
        if self.refresher.schedule(key, query.with_priority(Priority.BACKGROUND), delay) is not None:
            self._count("deferred")

    def _background_refresh(self, query: MarketQuery) -> None:
        response = self.resolve(query)
        logger.info(
            "Deferred refresh of %s %s → %s",
            query.shape.value, query.entity_id,
            response.provenance.value if response.provenance else response.error_kind.value,
        )

    # ── Decision log ──

    def _log_resolution(self, request_id: str, query: MarketQuery, key: str, resolution: Resolution, started: float) -> None:
        response = resolution.response
        record = ResolutionRecord(
            request_id=request_id,
            entity=str(query.entity_id),
            shape=getattr(query.shape, "value", str(query.shape)),
            priority=getattr(query.priority, "value", str(query.priority)),
            cache_key=key,
            outcome=outcome_of(resolution),
            provenance=response.provenance.value if response.provenance else None,
            stale=response.stale,
            synthetic=response.synthetic,
            states=[s.value for s in resolution.states],
            latency_ms_total=round((time.monotonic() - started) * 1000, 2),
            attempts=[
                {"provider": a.provider.value, "outcome": a.outcome, "retry_after": a.retry_after}
                for a in resolution.attempts
            ],
            error_kind=response.error_kind.value if response.error_kind else None,
            retry_after_seconds=response.retry_after_seconds,
            missing=list(response.missing),
            provider_health=self.limiter.get_all_health(),
        )
        try:
            payload = record.to_dict()
        except ValueError as e:
            logger.error("Resolution record rejected: %s", e)
            return
        logger.info("resolution %s", json.dumps(payload, sort_keys=True))

    # ── Convenience queries ──

    def get_coin(self, coin_id: str, priority: Priority = Priority.INTERACTIVE) -> ProxyResponse:
        return self.resolve(MarketQuery(coin_id, QueryShape.DETAIL, priority))

    def get_quotes(self, symbols: Iterable[str], priority: Priority = Priority.INTERACTIVE) -> ProxyResponse:
        return self.resolve(MarketQuery.batch(symbols, priority))

    def get_history(self, coin_id: str, days: int = 1, priority: Priority = Priority.INTERACTIVE) -> ProxyResponse:
        return self.resolve(MarketQuery(coin_id, QueryShape.history(days), priority))

    def get_ohlc(self, coin_id: str, days: int = 1, priority: Priority = Priority.INTERACTIVE) -> ProxyResponse:
        return self.resolve(MarketQuery(coin_id, QueryShape.ohlc(days), priority))

    def get_markets(self, priority: Priority = Priority.INTERACTIVE) -> ProxyResponse:
        return self.resolve(MarketQuery("all", QueryShape.MARKETS, priority))

    def get_global(self, priority: Priority = Priority.INTERACTIVE) -> ProxyResponse:
        return self.resolve(MarketQuery("global", QueryShape.GLOBAL, priority))

    def get_trending(self, priority: Priority = Priority.INTERACTIVE) -> ProxyResponse:
        return self.resolve(MarketQuery("trending", QueryShape.TRENDING, priority))

    def get_fear_greed(self, priority: Priority = Priority.INTERACTIVE) -> ProxyResponse:
        return self.resolve(MarketQuery("index", QueryShape.FEAR_GREED, priority))

    # ── Diagnostics / lifecycle ──

    def _count(self, counter: str) -> None:
        with self._stats_lock:
            self.stats[counter] += 1

    def get_stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            counts = dict(self.stats)
        return {
            **counts,
            "cache": self.cache.get_stats(),
            "rate_limits": self.limiter.get_stats(),
            "coalescing": self.inflight.get_stats(),
            "deferred_refreshes": {**self.refresher.stats, "pending": self.refresher.pending()},
            "adapters": {pid.value: a.get_stats() for pid, a in self.adapters.items()},
        }

    def close(self) -> None:
        self.refresher.close()
        logger.info("RequestCoordinator closed")


def outcome_of(resolution: Resolution) -> str:
    response = resolution.response
    states = resolution.states
    if response.error_kind is not None:
        return "failed"
    if ResolutionState.FRESH_CACHE_HIT in states:
        return "fresh_hit"
    if ResolutionState.COALESCED in states:
        return "coalesced"
    if response.synthetic:
        return "synthetic"
    if response.provenance is Provenance.LAST_KNOWN:
        return "last_known"
    if response.stale:
        return "stale"
    if response.provenance is Provenance.SECONDARY:
        return "secondary"
    return "refreshed"


def is_degraded(response: ProxyResponse) -> bool:
    return (
        response.error_kind is not None
        or response.stale
        or bool(response.missing)
        or response.provenance is not Provenance.PRIMARY
    )
