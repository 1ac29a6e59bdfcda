"""Resolution log schema enforcement."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from jsonschema import Draft7Validator

from providers import FailureKind, Priority, Provenance, QueryShape

from .fallback import ResolutionState

OUTCOMES = [
    "fresh_hit",
    "refreshed",
    "stale",
    "secondary",
    "last_known",
    "synthetic",
    "coalesced",
    "failed",
]

RESOLUTION_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": [
        "request_id",
        "received_at",
        "entity",
        "shape",
        "priority",
        "cache_key",
        "outcome",
        "provenance",
        "stale",
        "synthetic",
        "states",
        "latency_ms_total",
    ],
    "properties": {
        "request_id": {"type": "string", "minLength": 1},
        "received_at": {"type": "string", "format": "date-time"},
        "entity": {"type": "string"},
        "shape": {"type": "string", "enum": [s.value for s in QueryShape]},
        "priority": {"type": "string", "enum": [p.value for p in Priority]},
        "cache_key": {"type": "string", "minLength": 1},
        "outcome": {"type": "string", "enum": OUTCOMES},
        "provenance": {"type": ["string", "null"], "enum": [p.value for p in Provenance] + [None]},
        "stale": {"type": "boolean"},
        "synthetic": {"type": "boolean"},
        "states": {
            "type": "array",
            "minItems": 1,
            "items": {"type": "string", "enum": [s.value for s in ResolutionState]},
        },
        "attempts": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["provider", "outcome"],
                "properties": {
                    "provider": {"type": "string"},
                    "outcome": {"type": "string"},
                    "retry_after": {"type": ["number", "null"], "minimum": 0},
                },
            },
        },
        "error_kind": {"type": ["string", "null"], "enum": [k.value for k in FailureKind] + [None]},
        "retry_after_seconds": {"type": ["integer", "null"], "minimum": 0},
        "missing": {"type": "array", "items": {"type": "string"}},
        "latency_ms_total": {"type": "number", "minimum": 0},
        "provider_health": {
            "type": "object",
            "additionalProperties": {"type": "string", "enum": ["green", "yellow", "red"]},
        },
    },
}

_validator = Draft7Validator(RESOLUTION_SCHEMA)


def validate_resolution(payload: Dict[str, Any]) -> None:
    errors = sorted(_validator.iter_errors(payload), key=lambda e: [str(p) for p in e.path])
    if errors:
        messages = ", ".join(error.message for error in errors)
        raise ValueError(f"resolution log validation failed: {messages}")


@dataclass
class ResolutionRecord:
    request_id: str
    entity: str
    shape: str
    priority: str
    cache_key: str
    outcome: str
    provenance: Optional[str]
    stale: bool
    synthetic: bool
    states: List[str]
    latency_ms_total: float
    received_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    attempts: Optional[List[Dict[str, Any]]] = None
    error_kind: Optional[str] = None
    retry_after_seconds: Optional[int] = None
    missing: Optional[List[str]] = None
    provider_health: Optional[Dict[str, str]] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "request_id": self.request_id,
            "received_at": self.received_at,
            "entity": self.entity,
            "shape": self.shape,
            "priority": self.priority,
            "cache_key": self.cache_key,
            "outcome": self.outcome,
            "provenance": self.provenance,
            "stale": self.stale,
            "synthetic": self.synthetic,
            "states": list(self.states),
            "attempts": self.attempts or [],
            "error_kind": self.error_kind,
            "retry_after_seconds": self.retry_after_seconds,
            "missing": self.missing or [],
            "latency_ms_total": self.latency_ms_total,
            "provider_health": self.provider_health or {},
        }
        validate_resolution(payload)
        return payload
