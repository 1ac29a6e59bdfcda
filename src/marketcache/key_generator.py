"""
Cache key generation.

key = "<entity>:<shape>"
- single entities are lower-cased ("BTC" and "btc" share an entry)
- batch queries use the sorted, de-duplicated, upper-cased symbol list, so
  ["eth", "BTC", "btc"] and ["BTC", "ETH"] share an entry
"""

import logging
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

BATCH_SHAPE = "batch-quote"


def batch_entity(symbols: Iterable[str]) -> str:
    return ",".join(sorted({s.strip().upper() for s in symbols if s and s.strip()}))


def make_cache_key(entity: str, shape: str, symbols: Optional[Iterable[str]] = None) -> str:
    """Deterministic key for one (entity, shape) pair."""
    shape = str(getattr(shape, "value", shape))
    if shape == BATCH_SHAPE:
        entity = batch_entity(symbols if symbols is not None else entity.split(","))
    else:
        entity = (entity or "").strip().lower()
    key = f"{entity}:{shape}"
    logger.debug(f"Generated key: {key}")
    return key
