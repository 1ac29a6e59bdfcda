"""Query descriptors and normalized provider results."""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Iterable, Optional, Tuple

from .errors import FailureKind, ProviderError


class ProviderId(str, Enum):
    COINGECKO = "coingecko"
    COINMARKETCAP = "coinmarketcap"
    ALTERNATIVE_ME = "alternative_me"


class Priority(str, Enum):
    INTERACTIVE = "interactive"
    BACKGROUND = "background"


class Provenance(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"
    LAST_KNOWN = "lastKnown"
    SYNTHETIC = "synthetic"


class QueryShape(str, Enum):
    DETAIL = "detail"
    BATCH_QUOTE = "batch-quote"
    MARKETS = "markets"
    GLOBAL = "global"
    TRENDING = "trending"
    FEAR_GREED = "fear-greed"
    HISTORY_1D = "history:1d"
    HISTORY_7D = "history:7d"
    HISTORY_30D = "history:30d"
    HISTORY_90D = "history:90d"
    HISTORY_365D = "history:365d"
    OHLC_1D = "ohlc:1d"
    OHLC_7D = "ohlc:7d"
    OHLC_30D = "ohlc:30d"

    @property
    def family(self) -> str:
        return self.value.split(":", 1)[0]

    @property
    def is_series(self) -> bool:
        return self.family in ("history", "ohlc")

    @property
    def days(self) -> Optional[int]:
        if not self.is_series:
            return None
        return int(self.value.split(":", 1)[1].rstrip("d"))

    @classmethod
    def history(cls, days) -> "QueryShape":
        return cls(f"history:{int(days)}d")

    @classmethod
    def ohlc(cls, days) -> "QueryShape":
        return cls(f"ohlc:{int(days)}d")


def normalize_symbols(symbols: Iterable[str]) -> Tuple[str, ...]:
    """Upper-case, strip and de-duplicate tickers, keeping first-seen order."""
    return tuple(dict.fromkeys(s.strip().upper() for s in symbols if s and s.strip()))


@dataclass(frozen=True)
class MarketQuery:
    """What a caller asks the proxy for.

    Batch queries always carry upper-cased, de-duplicated symbols, and
    their entity_id is the comma-joined symbol list, however they were built.
    """
    entity_id: str
    shape: QueryShape
    priority: Priority = Priority.INTERACTIVE
    symbols: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.shape is not QueryShape.BATCH_QUOTE:
            return
        raw = self.symbols or tuple((self.entity_id or "").split(","))
        ordered = normalize_symbols(raw)
        object.__setattr__(self, "symbols", ordered)
        object.__setattr__(self, "entity_id", ",".join(ordered))

    @classmethod
    def batch(cls, symbols: Iterable[str], priority: Priority = Priority.INTERACTIVE) -> "MarketQuery":
        ordered = normalize_symbols(symbols)
        return cls(
            entity_id=",".join(ordered),
            shape=QueryShape.BATCH_QUOTE,
            priority=priority,
            symbols=ordered,
        )

    def subset(self, symbols: Iterable[str]) -> "MarketQuery":
        """Same batch query restricted to the given symbols."""
        wanted = set(normalize_symbols(symbols))
        keep = tuple(s for s in self.symbols if s in wanted)
        return replace(self, entity_id=",".join(keep), symbols=keep)

    def with_priority(self, priority: Priority) -> "MarketQuery":
        return replace(self, priority=priority)


@dataclass(frozen=True)
class ProviderFailure:
    kind: FailureKind
    message: str
    retry_after: Optional[float] = None


@dataclass(frozen=True)
class ProviderResult:
    """Normalized outcome of one adapter fetch. Never stored directly."""
    provider_id: ProviderId
    data: Any = None
    fetched_at: float = field(default_factory=time.time)
    failure: Optional[ProviderFailure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def success(cls, provider_id: ProviderId, data: Any, fetched_at: float = None) -> "ProviderResult":
        return cls(
            provider_id=provider_id,
            data=data,
            fetched_at=fetched_at if fetched_at is not None else time.time(),
        )

    @classmethod
    def failed(cls, provider_id: ProviderId, error: ProviderError) -> "ProviderResult":
        return cls(
            provider_id=provider_id,
            failure=ProviderFailure(error.kind, error.message, error.retry_after),
        )
