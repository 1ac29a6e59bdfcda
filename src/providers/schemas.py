"""Upstream response shape enforcement."""

from __future__ import annotations

import logging
from typing import Any, Dict

from jsonschema import Draft7Validator

from .errors import ValidationFailure

logger = logging.getLogger(__name__)

NUMBER = {"type": "number"}
NULLABLE_NUMBER = {"type": ["number", "null"]}
NON_EMPTY_STRING = {"type": "string", "minLength": 1}
USD_AMOUNT = {
    "type": "object",
    "required": ["usd"],
    "properties": {"usd": NUMBER},
}

TIMESERIES_PAIR = {
    "type": "array",
    "minItems": 2,
    "maxItems": 2,
    "items": NUMBER,
}

OHLC_CANDLE = {
    "type": "array",
    "minItems": 5,
    "maxItems": 5,
    "items": NUMBER,
}

SCHEMAS: Dict[str, Dict[str, Any]] = {
    "coingecko.market_chart": {
        "type": "object",
        "required": ["prices"],
        "properties": {
            "prices": {"type": "array", "items": TIMESERIES_PAIR},
        },
    },
    "coingecko.ohlc": {
        "type": "array",
        "items": OHLC_CANDLE,
    },
    "coingecko.coin": {
        "type": "object",
        "required": ["id", "symbol", "name", "market_data"],
        "properties": {
            "id": NON_EMPTY_STRING,
            "symbol": {"type": "string"},
            "name": {"type": "string"},
            "market_data": {
                "type": "object",
                "required": ["current_price", "market_cap", "total_volume"],
                "properties": {
                    "current_price": USD_AMOUNT,
                    "market_cap": USD_AMOUNT,
                    "total_volume": USD_AMOUNT,
                    "price_change_percentage_1h_in_currency": {
                        "type": ["object", "null"],
                        "properties": {"usd": NULLABLE_NUMBER},
                    },
                    "price_change_percentage_24h": NULLABLE_NUMBER,
                    "price_change_percentage_7d": NULLABLE_NUMBER,
                    "circulating_supply": NULLABLE_NUMBER,
                },
            },
        },
    },
    "coingecko.markets": {
        "type": "array",
        "items": {
            "type": "object",
            "required": ["id", "symbol", "name", "current_price"],
            "properties": {
                "id": NON_EMPTY_STRING,
                "symbol": {"type": "string"},
                "name": {"type": "string"},
                "current_price": NULLABLE_NUMBER,
                "market_cap": NULLABLE_NUMBER,
                "market_cap_rank": {"type": ["integer", "null"]},
                "total_volume": NULLABLE_NUMBER,
                "price_change_percentage_24h": NULLABLE_NUMBER,
                "circulating_supply": NULLABLE_NUMBER,
            },
        },
    },
    "coingecko.global": {
        "type": "object",
        "required": ["data"],
        "properties": {
            "data": {
                "type": "object",
                "required": [
                    "total_market_cap",
                    "total_volume",
                    "market_cap_change_percentage_24h_usd",
                ],
                "properties": {
                    "total_market_cap": USD_AMOUNT,
                    "total_volume": USD_AMOUNT,
                    "market_cap_change_percentage_24h_usd": NUMBER,
                },
            },
        },
    },
    "coingecko.trending": {
        "type": "object",
        "required": ["coins"],
        "properties": {
            "coins": {
                "type": "array",
                "items": {
                    "type": "object",
                    "required": ["item"],
                    "properties": {
                        "item": {
                            "type": "object",
                            "required": ["id", "name", "symbol"],
                            "properties": {
                                "id": NON_EMPTY_STRING,
                                "name": {"type": "string"},
                                "symbol": {"type": "string"},
                                "market_cap_rank": {"type": ["integer", "null"]},
                                "score": {"type": "number"},
                            },
                        },
                    },
                },
            },
        },
    },
    "coinmarketcap.info": {
        "type": "object",
        "required": ["data"],
        "properties": {
            "data": {
                "type": "object",
                "minProperties": 1,
                "additionalProperties": {
                    "type": "object",
                    "required": ["id"],
                    "properties": {"id": {"type": "integer"}},
                },
            },
        },
    },
    "coinmarketcap.quotes": {
        "type": "object",
        "required": ["data"],
        "properties": {
            "data": {
                "type": "object",
                "additionalProperties": {
                    "type": "object",
                    "required": ["id", "symbol", "name", "slug", "quote"],
                    "properties": {
                        "id": {"type": "integer"},
                        "symbol": {"type": "string"},
                        "name": {"type": "string"},
                        "slug": {"type": "string"},
                        "circulating_supply": NULLABLE_NUMBER,
                        "quote": {
                            "type": "object",
                            "required": ["USD"],
                            "properties": {
                                "USD": {
                                    "type": "object",
                                    "required": ["price"],
                                    "properties": {
                                        "price": NUMBER,
                                        "market_cap": NULLABLE_NUMBER,
                                        "volume_24h": NULLABLE_NUMBER,
                                        "percent_change_1h": NULLABLE_NUMBER,
                                        "percent_change_24h": NULLABLE_NUMBER,
                                        "percent_change_7d": NULLABLE_NUMBER,
                                    },
                                },
                            },
                        },
                    },
                },
            },
        },
    },
    "alternative_me.fng": {
        "type": "object",
        "required": ["data"],
        "properties": {
            "data": {
                "type": "array",
                "minItems": 1,
                "items": {
                    "type": "object",
                    "required": ["value", "value_classification"],
                    "properties": {
                        "value": {"type": "string", "pattern": r"^\d{1,3}$"},
                        "value_classification": NON_EMPTY_STRING,
                        "timestamp": {"type": "string"},
                    },
                },
            },
        },
    },
}

_validators = {name: Draft7Validator(schema) for name, schema in SCHEMAS.items()}


def describe_shape(payload: Any, depth: int = 2) -> str:
    """Compact type outline of a payload for logs, without its values."""
    if isinstance(payload, dict):
        if depth <= 0:
            return f"dict[{len(payload)}]"
        inner = ", ".join(
            f"{k}: {describe_shape(v, depth - 1)}" for k, v in list(payload.items())[:8]
        )
        more = ", ..." if len(payload) > 8 else ""
        return "{" + inner + more + "}"
    if isinstance(payload, list):
        if not payload:
            return "list[0]"
        if depth <= 0:
            return f"list[{len(payload)}]"
        return f"list[{len(payload)}] of {describe_shape(payload[0], depth - 1)}"
    return type(payload).__name__


def validate_payload(schema_name: str, payload: Any) -> None:
    errors = sorted(_validators[schema_name].iter_errors(payload), key=lambda e: [str(p) for p in e.path])
    if errors:
        first = errors[0]
        location = "/".join(str(p) for p in first.path) or "<root>"
        logger.warning(
            "%s payload rejected at %s: %s (shape=%s)",
            schema_name, location, first.message, describe_shape(payload),
        )
        raise ValidationFailure(
            f"{schema_name} validation failed at {location}: {first.message}"
        )
