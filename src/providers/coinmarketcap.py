#!/usr/bin/env python3
"""
CoinMarketCap Adapter — secondary provider for coin detail and batch quotes.

Requires CMC_API_KEY. Without a key the adapter reports itself as
unconfigured and the proxy never routes to it.
"""

import logging
import re
import time
from typing import Any, Dict, Iterable, Mapping

from .base import ProviderAdapter, is_number
from .errors import NotFound
from .schemas import validate_payload
from .symbols import normalize
from .types import MarketQuery, ProviderId, QueryShape

logger = logging.getLogger(__name__)

IMAGE_URL = "https://s2.coinmarketcap.com/static/img/coins/64x64/{coin_id}.png"

_TICKER = re.compile(r"^[A-Za-z0-9]{1,10}$")


def quote_from_listing(entry: Mapping[str, Any]) -> Dict[str, Any]:
    """Canonical coin quote from a quotes/latest entry."""
    usd = entry["quote"]["USD"]
    return {
        "id": entry["slug"],
        "symbol": entry["symbol"].lower(),
        "name": entry["name"],
        "price": usd["price"],
        "market_cap": usd.get("market_cap"),
        "volume_24h": usd.get("volume_24h"),
        "percent_change_1h": usd.get("percent_change_1h"),
        "percent_change_24h": usd.get("percent_change_24h"),
        "percent_change_7d": usd.get("percent_change_7d"),
        "circulating_supply": entry.get("circulating_supply") or 0,
        "image": IMAGE_URL.format(coin_id=entry["id"]),
        "source": ProviderId.COINMARKETCAP.value,
    }


class CoinMarketCapAdapter(ProviderAdapter):
    provider_id = ProviderId.COINMARKETCAP
    supported_shapes = frozenset({QueryShape.DETAIL, QueryShape.BATCH_QUOTE})
    requires_api_key = True

    BASE_URL = "https://pro-api.coinmarketcap.com"
    # CMC answers unknown slugs and symbols with 400 "Invalid value".
    NOT_FOUND_STATUSES = frozenset({400, 404})

    def __init__(self, base_url: str = None, api_key: str = None, timeout: float = None, clock=time.time):
        super().__init__(base_url=base_url, api_key=api_key, timeout=timeout, clock=clock)

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        headers["X-CMC_PRO_API_KEY"] = self.api_key or ""
        return headers

    def _fetch(self, query: MarketQuery) -> Any:
        if query.shape is QueryShape.DETAIL:
            return self._coin_detail(query.entity_id)
        return self._batch_quotes(query.symbols)

    def _quotes(self, params: Dict[str, Any]) -> Dict[str, Any]:
        params = dict(params, convert="USD")
        data = self._get("/v1/cryptocurrency/quotes/latest", params=params)
        validate_payload("coinmarketcap.quotes", data)
        return data["data"]

    def _coin_detail(self, entity: str) -> Dict[str, Any]:
        """Slug lookup through /info, then the quote by numeric id.

        Falls back to a symbol lookup when the slug is unknown and the
        entity looks like a ticker.
        """
        slug = normalize(entity).replace(" ", "-")
        try:
            info = self._get("/v1/cryptocurrency/info", params={"slug": slug})
            validate_payload("coinmarketcap.info", info)
            coin_id = next(iter(info["data"].values()))["id"]
            entries = self._quotes({"id": coin_id})
        except NotFound:
            if not _TICKER.match(entity):
                raise
            logger.debug("CMC slug %r unknown, trying symbol lookup", slug)
            entries = self._quotes({"symbol": entity.upper()})

        if not entries:
            raise NotFound(f"coinmarketcap has no coin {entity!r}")
        return quote_from_listing(next(iter(entries.values())))

    def _batch_quotes(self, symbols: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        symbols = list(symbols)
        if not symbols:
            return {}
        entries = self._quotes({
            "symbol": ",".join(s.upper() for s in symbols),
            "skip_invalid": "true",
        })
        by_symbol = {key.upper(): value for key, value in entries.items()}
        quotes: Dict[str, Dict[str, Any]] = {}
        for symbol in symbols:
            entry = by_symbol.get(symbol.upper())
            if entry is None or not is_number(entry["quote"]["USD"].get("price")):
                continue
            quotes[symbol] = quote_from_listing(entry)
        return quotes
