"""Failure taxonomy shared by adapters and the proxy core."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class FailureKind(str, Enum):
    NETWORK_FAILURE = "network_failure"
    UPSTREAM_RATE_LIMITED = "upstream_rate_limited"
    VALIDATION_FAILURE = "validation_failure"
    NOT_FOUND = "not_found"
    ALL_SOURCES_EXHAUSTED = "all_sources_exhausted"


# Kinds that count against a provider's backoff budget.
BACKOFF_KINDS = frozenset({
    FailureKind.NETWORK_FAILURE,
    FailureKind.UPSTREAM_RATE_LIMITED,
    FailureKind.VALIDATION_FAILURE,
})


class ProviderError(Exception):
    kind: FailureKind = FailureKind.NETWORK_FAILURE

    def __init__(self, message: str, retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.message = message
        self.retry_after = retry_after


class NetworkFailure(ProviderError):
    kind = FailureKind.NETWORK_FAILURE


class UpstreamRateLimited(ProviderError):
    kind = FailureKind.UPSTREAM_RATE_LIMITED


class ValidationFailure(ProviderError):
    kind = FailureKind.VALIDATION_FAILURE


class NotFound(ProviderError):
    kind = FailureKind.NOT_FOUND


class AllSourcesExhausted(ProviderError):
    kind = FailureKind.ALL_SOURCES_EXHAUSTED
