"""Upstream market-data adapters and the shared query/result model."""

from .alternative_me import FearGreedAdapter
from .base import ProviderAdapter, parse_retry_after
from .coingecko import CoinGeckoAdapter
from .coinmarketcap import CoinMarketCapAdapter
from .errors import (
    AllSourcesExhausted,
    FailureKind,
    NetworkFailure,
    NotFound,
    ProviderError,
    UpstreamRateLimited,
    ValidationFailure,
)
from .symbols import SymbolResolver
from .types import MarketQuery, Priority, Provenance, ProviderId, ProviderResult, QueryShape

__all__ = [
    "AllSourcesExhausted",
    "CoinGeckoAdapter",
    "CoinMarketCapAdapter",
    "FailureKind",
    "FearGreedAdapter",
    "MarketQuery",
    "NetworkFailure",
    "NotFound",
    "Priority",
    "Provenance",
    "ProviderAdapter",
    "ProviderError",
    "ProviderId",
    "ProviderResult",
    "QueryShape",
    "SymbolResolver",
    "UpstreamRateLimited",
    "ValidationFailure",
    "parse_retry_after",
]
