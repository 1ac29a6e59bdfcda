"""
Synthetic placeholder series.

Used as the last resort for chart shapes only, so a chart can still render
while every upstream is unavailable. Output is always tagged synthetic and
never cached. Point-valued data (prices, quotes, indices) is never
synthesized.
"""

from __future__ import annotations

import random
from typing import Any, Dict, List, Optional

from providers import QueryShape
from providers.base import iso_from_ms

MAX_STEP = 0.02             # ±2% per point
BASE_PRICE_RANGE = (1000.0, 2000.0)
BOUNDS = (0.5, 1.5)         # walk stays within these multiples of the base price

HOUR_MS = 3600 * 1000
DAY_MS = 24 * HOUR_MS

# days → (points, spacing)
HISTORY_LAYOUT = {
    1: (24, HOUR_MS),
    7: (168, HOUR_MS),
    30: (720, HOUR_MS),
    90: (90, DAY_MS),
    365: (365, DAY_MS),
}

OHLC_LAYOUT = {
    1: (48, HOUR_MS // 2),
    7: (42, 4 * HOUR_MS),
    30: (180, 4 * HOUR_MS),
}


def _walk(rng: random.Random, price: float, base: float) -> float:
    price *= 1 + rng.uniform(-MAX_STEP, MAX_STEP)
    return min(max(price, base * BOUNDS[0]), base * BOUNDS[1])


def synthetic_series(
    shape: QueryShape,
    now_ms: int,
    rng: Optional[random.Random] = None,
    base_price: Optional[float] = None,
) -> List[Dict[str, Any]]:
    """Bounded random walk ending at now_ms, in the canonical point/candle shape."""
    if not shape.is_series:
        raise ValueError(f"no synthetic data for point-valued shape {shape.value}")

    rng = rng or random.Random()
    base = base_price if base_price is not None else rng.uniform(*BASE_PRICE_RANGE)
    layout = HISTORY_LAYOUT if shape.family == "history" else OHLC_LAYOUT
    points, spacing = layout[shape.days]
    start = now_ms - (points - 1) * spacing

    series: List[Dict[str, Any]] = []
    price = base
    for i in range(points):
        ts = start + i * spacing
        if shape.family == "history":
            series.append({"timestamp": ts, "date": iso_from_ms(ts), "price": round(price, 2)})
            price = _walk(rng, price, base)
            continue

        open_ = price
        close = _walk(rng, price, base)
        high = max(open_, close) * (1 + rng.uniform(0, MAX_STEP / 2))
        low = min(open_, close) * (1 - rng.uniform(0, MAX_STEP / 2))
        series.append({
            "timestamp": ts,
            "open": round(open_, 2),
            "high": round(high, 2),
            "low": round(low, 2),
            "close": round(close, 2),
        })
        price = close
    return series
