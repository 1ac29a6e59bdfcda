"""Fear & Greed index from api.alternative.me."""

import logging
from typing import Any, Dict

from .base import ProviderAdapter
from .schemas import validate_payload
from .types import MarketQuery, ProviderId, QueryShape

logger = logging.getLogger(__name__)


class FearGreedAdapter(ProviderAdapter):
    provider_id = ProviderId.ALTERNATIVE_ME
    supported_shapes = frozenset({QueryShape.FEAR_GREED})

    BASE_URL = "https://api.alternative.me"

    def _fetch(self, query: MarketQuery) -> Dict[str, Any]:
        data = self._get("/fng/", params={"limit": 1})
        validate_payload("alternative_me.fng", data)
        latest = data["data"][0]
        return {
            "value": int(latest["value"]),
            "value_classification": latest["value_classification"],
            "timestamp": latest.get("timestamp", ""),
        }
