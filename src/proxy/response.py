"""Caller-facing response envelope."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from marketcache import CacheEntry
from providers import FailureKind, Provenance, ProviderError


@dataclass(frozen=True)
class ProxyResponse:
    data: Any = None
    stale: bool = False
    synthetic: bool = False
    provenance: Optional[Provenance] = None
    source: Optional[str] = None
    fetched_at: Optional[float] = None
    retry_after_seconds: Optional[int] = None
    error_kind: Optional[FailureKind] = None
    error_message: Optional[str] = None
    missing: Tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return self.error_kind is None

    @classmethod
    def from_entry(
        cls,
        entry: CacheEntry,
        stale: bool,
        provenance: Optional[Provenance] = None,
        retry_after: Optional[float] = None,
        missing: Tuple[str, ...] = (),
    ) -> "ProxyResponse":
        return cls(
            data=entry.payload,
            stale=stale,
            provenance=provenance or Provenance(entry.provenance),
            source=entry.source,
            fetched_at=entry.fetched_at,
            retry_after_seconds=whole_seconds(retry_after),
            missing=tuple(missing),
        )

    @classmethod
    def failure(cls, error: ProviderError) -> "ProxyResponse":
        return cls(
            retry_after_seconds=whole_seconds(error.retry_after),
            error_kind=error.kind,
            error_message=error.message,
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "data": self.data,
            "stale": self.stale,
            "synthetic": self.synthetic,
            "provenance": self.provenance.value if self.provenance else None,
            "source": self.source,
            "fetchedAt": self.fetched_at,
        }
        if self.missing:
            payload["missing"] = list(self.missing)
        if self.retry_after_seconds is not None:
            payload["retryAfterSeconds"] = self.retry_after_seconds
        if self.error_kind is not None:
            payload["error"] = {"kind": self.error_kind.value, "message": self.error_message}
        return payload


def whole_seconds(value: Optional[float]) -> Optional[int]:
    if value is None or value <= 0:
        return None
    return int(math.ceil(value))
