#!/usr/bin/env python3
"""
CoinGecko Adapter — primary market-data provider.

Implements:
- detail          GET /coins/{id}
- history:Nd      GET /coins/{id}/market_chart
- ohlc:Nd         GET /coins/{id}/ohlc
- markets         GET /coins/markets (paged)
- batch-quote     GET /coins/markets, symbols resolved locally
- global          GET /global
- trending        GET /search/trending
"""

import logging
import threading
import time
from typing import Any, Dict, Iterable, List, Mapping, Optional
from urllib.parse import quote

from .base import ProviderAdapter, iso_from_ms, is_number
from .errors import ProviderError
from .schemas import validate_payload
from .symbols import SymbolResolver, normalize
from .types import MarketQuery, ProviderId, QueryShape

logger = logging.getLogger(__name__)


def quote_from_market_row(row: Mapping[str, Any]) -> Dict[str, Any]:
    """Canonical coin quote from a /coins/markets row."""
    return {
        "id": row["id"],
        "symbol": row.get("symbol", ""),
        "name": row.get("name", ""),
        "price": row.get("current_price"),
        "market_cap": row.get("market_cap"),
        "volume_24h": row.get("total_volume"),
        "percent_change_1h": row.get("price_change_percentage_1h_in_currency"),
        "percent_change_24h": row.get("price_change_percentage_24h"),
        "percent_change_7d": row.get("price_change_percentage_7d_in_currency"),
        "circulating_supply": row.get("circulating_supply") or 0,
        "image": row.get("image") or "",
        "source": ProviderId.COINGECKO.value,
    }


def market_row(row: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "symbol": row.get("symbol", ""),
        "name": row.get("name", ""),
        "price": row.get("current_price"),
        "market_cap": row.get("market_cap"),
        "market_cap_rank": row.get("market_cap_rank"),
        "volume_24h": row.get("total_volume"),
        "percent_change_24h": row.get("price_change_percentage_24h"),
        "circulating_supply": row.get("circulating_supply") or 0,
        "image": row.get("image") or "",
    }


class CoinGeckoAdapter(ProviderAdapter):
    """
    CoinGecko public API adapter.

    Single-entity queries accept either a CoinGecko id ("avalanche-2") or a
    ticker/name ("AVAX"). Resolution order: an exact id among coins this
    adapter has already seen, the canonical ticker table, then symbol or
    name matches on the seen coins.
    """

    provider_id = ProviderId.COINGECKO
    supported_shapes = frozenset(s for s in QueryShape if s is not QueryShape.FEAR_GREED)

    BASE_URL = "https://api.coingecko.com/api/v3"
    DEFAULT_TIMEOUT = 10
    LARGE_PAYLOAD_TIMEOUT = 30
    PER_PAGE = 250

    def __init__(
        self,
        base_url: str = None,
        api_key: str = None,
        timeout: float = None,
        large_timeout: float = None,
        market_pages: int = 3,
        page_delay: float = 2.0,
        resolver: SymbolResolver = None,
        clock=time.time,
        sleep=time.sleep,
    ):
        super().__init__(base_url=base_url, api_key=api_key, timeout=timeout, clock=clock)
        self.large_timeout = large_timeout or self.LARGE_PAYLOAD_TIMEOUT
        self.market_pages = max(int(market_pages), 1)
        self.page_delay = page_delay
        self._resolver = resolver or SymbolResolver()
        self._sleep = sleep
        self._known_coins: Dict[str, Dict[str, str]] = {}
        self._known_lock = threading.Lock()

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        if self.api_key:
            headers["x-cg-demo-api-key"] = self.api_key
        return headers

    # ── Identifier resolution ──

    def _remember(self, rows: Iterable[Mapping[str, Any]]) -> None:
        with self._known_lock:
            for row in rows:
                self._known_coins[row["id"]] = {
                    "id": row["id"],
                    "symbol": row.get("symbol", ""),
                    "name": row.get("name", ""),
                }

    def resolve_coin_id(self, entity: str) -> str:
        wanted = normalize(entity)
        with self._known_lock:
            known = list(self._known_coins.values())
        for coin in known:
            if normalize(coin["id"]) == wanted:
                return coin["id"]
        # The canonical table outranks symbol matches on remembered coins,
        # whether or not the canonical coin has been seen yet.
        canonical = self._resolver.canonical_id(entity)
        if canonical:
            return canonical
        match = self._resolver.resolve(entity, known)
        if match:
            return match["id"]
        # Assume the caller already passed a CoinGecko id; a 404 settles it.
        return normalize(entity).replace(" ", "-")

    def _coin_path(self, entity: str, suffix: str = "") -> str:
        return f"/coins/{quote(self.resolve_coin_id(entity), safe='')}{suffix}"

    # ── Fetch dispatch ──

    def _fetch(self, query: MarketQuery) -> Any:
        shape = query.shape
        if shape is QueryShape.DETAIL:
            return self._coin_detail(query.entity_id)
        if shape.family == "history":
            return self._market_chart(query.entity_id, shape.days)
        if shape.family == "ohlc":
            return self._ohlc(query.entity_id, shape.days)
        if shape is QueryShape.MARKETS:
            return self._markets()
        if shape is QueryShape.BATCH_QUOTE:
            return self._batch_quotes(query.symbols)
        if shape is QueryShape.GLOBAL:
            return self._global()
        if shape is QueryShape.TRENDING:
            return self._trending()
        raise ValueError(f"unhandled shape {shape.value}")

    def _coin_detail(self, entity: str) -> Dict[str, Any]:
        data = self._get(
            self._coin_path(entity),
            params={
                "localization": "false",
                "tickers": "false",
                "market_data": "true",
                "community_data": "false",
                "developer_data": "false",
            },
        )
        validate_payload("coingecko.coin", data)
        self._remember([data])

        md = data["market_data"]
        image = data.get("image") if isinstance(data.get("image"), dict) else {}
        return {
            "id": data["id"],
            "symbol": data["symbol"],
            "name": data["name"],
            "price": md["current_price"]["usd"],
            "market_cap": md["market_cap"]["usd"],
            "volume_24h": md["total_volume"]["usd"],
            "percent_change_1h": (md.get("price_change_percentage_1h_in_currency") or {}).get("usd"),
            "percent_change_24h": md.get("price_change_percentage_24h"),
            "percent_change_7d": md.get("price_change_percentage_7d"),
            "circulating_supply": md.get("circulating_supply") or 0,
            "image": image.get("large", ""),
            "source": self.provider_id.value,
        }

    def _market_chart(self, entity: str, days: int) -> List[Dict[str, Any]]:
        data = self._get(
            self._coin_path(entity, "/market_chart"),
            params={"vs_currency": "usd", "days": days},
        )
        validate_payload("coingecko.market_chart", data)
        return [
            {"timestamp": int(ts), "date": iso_from_ms(ts), "price": price}
            for ts, price in data["prices"]
        ]

    def _ohlc(self, entity: str, days: int) -> List[Dict[str, Any]]:
        data = self._get(
            self._coin_path(entity, "/ohlc"),
            params={"vs_currency": "usd", "days": days},
        )
        validate_payload("coingecko.ohlc", data)
        return [
            {"timestamp": int(ts), "open": o, "high": h, "low": l, "close": c}
            for ts, o, h, l, c in data
        ]

    def _market_page(self, page: int, extra: Dict[str, Any] = None) -> List[Dict[str, Any]]:
        params = {
            "vs_currency": "usd",
            "order": "market_cap_desc",
            "per_page": self.PER_PAGE,
            "page": page,
            "sparkline": "false",
        }
        params.update(extra or {})
        rows = self._get("/coins/markets", params=params, timeout=self.large_timeout)
        validate_payload("coingecko.markets", rows)
        self._remember(rows)
        return rows

    def _markets(self) -> List[Dict[str, Any]]:
        collected: List[Dict[str, Any]] = []
        for page in range(1, self.market_pages + 1):
            try:
                rows = self._market_page(page)
            except ProviderError as e:
                if page == 1:
                    raise
                logger.warning(
                    "Market listing stopped at page %d (%s); keeping %d rows",
                    page, e.kind.value, len(collected),
                )
                break
            collected.extend(rows)
            if len(rows) < self.PER_PAGE or page == self.market_pages:
                break
            self._sleep(self.page_delay)
        return [market_row(row) for row in collected]

    def _batch_quotes(self, symbols: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        """Quotes for the symbols found in the top market listing.

        Symbols that do not resolve, or resolve to a coin without a numeric
        price, are left out; the caller decides what to do with the gaps.
        """
        rows = self._market_page(1, {"price_change_percentage": "1h,24h,7d"})
        quotes: Dict[str, Dict[str, Any]] = {}
        for symbol in symbols:
            match = self._resolver.resolve(symbol, rows)
            if match is None:
                continue
            if not is_number(match.get("current_price")):
                logger.debug("Skipping %s: %s has no price", symbol, match["id"])
                continue
            quotes[symbol] = quote_from_market_row(match)
        return quotes

    def _global(self) -> Dict[str, Any]:
        data = self._get("/global")
        validate_payload("coingecko.global", data)
        inner = data["data"]
        return {
            "total_market_cap_usd": inner["total_market_cap"]["usd"],
            "total_volume_usd": inner["total_volume"]["usd"],
            "market_cap_change_percentage_24h": inner["market_cap_change_percentage_24h_usd"],
        }

    def _trending(self) -> List[Dict[str, Any]]:
        data = self._get("/search/trending")
        validate_payload("coingecko.trending", data)
        trending = []
        for entry in data["coins"]:
            item = entry["item"]
            trending.append({
                "id": item["id"],
                "name": item["name"],
                "symbol": item["symbol"],
                "market_cap_rank": item.get("market_cap_rank"),
                "thumb": item.get("thumb", ""),
                "score": item.get("score"),
            })
        return trending

    def known_coin(self, coin_id: str) -> Optional[Dict[str, str]]:
        with self._known_lock:
            found = self._known_coins.get(coin_id)
            return dict(found) if found else None
