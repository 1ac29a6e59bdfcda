#!/usr/bin/env python3
"""
TTL policy per query shape.

Point-in-time quotes go stale within a minute; long history windows barely
move between refreshes, so they are kept for hours.
"""

import logging
from typing import Dict, Mapping

logger = logging.getLogger(__name__)

DEFAULT_TTL_TABLE: Dict[str, int] = {
    # Quotes: frequent changes, short TTL
    "detail": 60,               # 1 minute
    "batch-quote": 60,
    "trending": 60,

    # Aggregates
    "global": 120,              # 2 minutes
    "markets": 300,             # 5 minutes
    "fear-greed": 600,          # published daily, polled every 10 minutes

    # Series: longer windows, longer TTL
    "history:1d": 300,
    "history:7d": 1800,         # 30 minutes
    "history:30d": 10800,       # 3 hours
    "history:90d": 21600,
    "history:365d": 43200,      # 12 hours
    "ohlc:1d": 300,
    "ohlc:7d": 1800,
    "ohlc:30d": 10800,
}


class TTLPolicy:
    """Shape → TTL seconds. Unknown shapes are a programming error."""

    def __init__(self, overrides: Mapping[str, int] = None):
        table = dict(DEFAULT_TTL_TABLE)
        for shape, ttl in (overrides or {}).items():
            if shape not in table:
                raise ValueError(f"TTL override for unknown shape: {shape}")
            if ttl is None or int(ttl) <= 0:
                raise ValueError(f"TTL for {shape} must be a positive number of seconds")
            table[shape] = int(ttl)
        self._table = table

    def ttl_for(self, shape) -> int:
        shape = str(getattr(shape, "value", shape))
        try:
            return self._table[shape]
        except KeyError:
            raise KeyError(f"No TTL defined for shape {shape!r}") from None

    def as_dict(self) -> Dict[str, int]:
        return dict(self._table)
