#!/usr/bin/env python3
"""
Provider Adapter base — one upstream, one canonical data model.

Every adapter:
- builds the provider request (URL, params, headers, credentials)
- maps HTTP outcomes onto the failure taxonomy
- validates the payload strictly before normalizing it
- returns a ProviderResult; upstream problems never raise out of fetch()
"""

import logging
import re
import threading
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, FrozenSet, Optional

import requests

from .errors import NetworkFailure, NotFound, ProviderError, UpstreamRateLimited, ValidationFailure
from .types import MarketQuery, ProviderId, ProviderResult, QueryShape

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER = 60


def parse_retry_after(raw) -> Optional[int]:
    """Parse a Retry-After / reset header into seconds from now.

    Handles:
      - plain seconds: "60"
      - durations: "2m59.56s", "7.66s", "1h2m3s"
      - ISO datetime: "2026-02-26T12:00:00Z"
      - HTTP date: "Wed, 21 Oct 2026 07:28:00 GMT"
    Returns None when the header is absent or unreadable.
    """
    if raw is None:
        return None
    raw = str(raw).strip()
    if not raw:
        return None

    try:
        return max(int(float(raw)), 1)
    except (ValueError, OverflowError):
        pass

    if "," in raw:
        try:
            reset_dt = parsedate_to_datetime(raw)
            delta = reset_dt - datetime.now(timezone.utc)
            return max(int(delta.total_seconds()), 1)
        except (TypeError, ValueError):
            return None

    if "T" in raw:
        try:
            reset_dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
            if reset_dt.tzinfo is None:
                reset_dt = reset_dt.replace(tzinfo=timezone.utc)
            delta = reset_dt - datetime.now(timezone.utc)
            return max(int(delta.total_seconds()), 1)
        except ValueError:
            return None

    total = 0.0
    h = re.search(r"(\d+)h", raw)
    m = re.search(r"(\d+)m(?!s)", raw)
    s = re.search(r"([\d.]+)s", raw)
    if h:
        total += int(h.group(1)) * 3600
    if m:
        total += int(m.group(1)) * 60
    if s:
        total += float(s.group(1))
    if total > 0:
        return max(int(total), 1)
    return None


class ProviderAdapter:
    """Base class for upstream market-data adapters."""

    provider_id: ProviderId = None
    supported_shapes: FrozenSet[QueryShape] = frozenset()
    requires_api_key = False

    DEFAULT_TIMEOUT = 10  # seconds
    BASE_URL = ""
    NOT_FOUND_STATUSES = frozenset({404})

    def __init__(self, base_url: str = None, api_key: str = None, timeout: float = None, clock=time.time):
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.api_key = api_key or None
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self._clock = clock

        self._counts = {"requests": 0, "errors": 0}
        self._counts_lock = threading.Lock()

        if self.requires_api_key and not self.api_key:
            logger.warning("%s adapter has no API key; it will be skipped", self.provider_id.value)

        logger.info(
            f"{type(self).__name__} initialized "
            f"(api_key={'configured' if self.api_key else 'missing'})"
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key) or not self.requires_api_key

    def supports(self, shape: QueryShape) -> bool:
        return shape in self.supported_shapes

    def fetch(self, query: MarketQuery) -> ProviderResult:
        """Fetch and normalize. Failures come back as ProviderResult.failed()."""
        if not self.supports(query.shape):
            raise ValueError(f"{self.provider_id.value} does not serve {query.shape.value}")
        try:
            data = self._fetch(query)
        except ProviderError as e:
            logger.info(
                "%s %s %s failed: %s (%s)",
                self.provider_id.value, query.shape.value, query.entity_id, e.kind.value, e.message,
            )
            return ProviderResult.failed(self.provider_id, e)
        return ProviderResult.success(self.provider_id, data, fetched_at=self._clock())

    def _fetch(self, query: MarketQuery) -> Any:
        raise NotImplementedError

    def _headers(self) -> Dict[str, str]:
        return {"Accept": "application/json"}

    def _get(self, path: str, params: Dict[str, Any] = None, timeout: float = None) -> Any:
        """GET a JSON document, mapping every upstream problem to a ProviderError."""
        url = f"{self.base_url}{path}"
        timeout = timeout or self.timeout
        self._count("requests")

        try:
            response = requests.request(
                "GET",
                url,
                params=params,
                headers=self._headers(),
                timeout=timeout,
            )
        except requests.Timeout:
            self._count("errors")
            logger.warning(f"{self.provider_id.value} timeout: GET {path} (>{timeout}s)")
            raise NetworkFailure(f"timeout after {timeout}s on {path}")
        except requests.ConnectionError as e:
            self._count("errors")
            logger.warning(f"{self.provider_id.value} connection error: GET {path}: {e}")
            raise NetworkFailure(f"connection error on {path}")
        except requests.RequestException as e:
            self._count("errors")
            logger.error(f"{self.provider_id.value} request failed: GET {path}: {e}")
            raise NetworkFailure(f"request failed on {path}: {e}")

        if response.status_code == 429:
            self._count("errors")
            retry_after = parse_retry_after(response.headers.get("retry-after"))
            logger.warning(
                "%s 429 rate limited on %s (retry-after=%s)",
                self.provider_id.value, path, retry_after,
            )
            raise UpstreamRateLimited(
                f"{self.provider_id.value} rate limited",
                retry_after=retry_after or DEFAULT_RETRY_AFTER,
            )

        if response.status_code in self.NOT_FOUND_STATUSES:
            raise NotFound(f"{self.provider_id.value} has no resource at {path}")

        if response.status_code >= 400:
            self._count("errors")
            logger.warning(
                f"{self.provider_id.value} API error: GET {path} -> {response.status_code} "
                f"{response.text[:200]}"
            )
            raise NetworkFailure(f"{self.provider_id.value} returned HTTP {response.status_code}")

        try:
            return response.json()
        except ValueError:
            self._count("errors")
            logger.warning(f"{self.provider_id.value} returned non-JSON body for {path}")
            raise ValidationFailure(f"{self.provider_id.value} returned a non-JSON body")

    def _count(self, counter: str) -> None:
        with self._counts_lock:
            self._counts[counter] += 1

    def get_stats(self) -> Dict[str, Any]:
        with self._counts_lock:
            counts = dict(self._counts)
        return {
            "provider": self.provider_id.value,
            "configured": self.is_configured,
            **counts,
        }


def iso_from_ms(timestamp_ms) -> str:
    """Epoch milliseconds → ISO-8601 UTC string."""
    moment = datetime.fromtimestamp(timestamp_ms / 1000.0, tz=timezone.utc)
    return moment.isoformat().replace("+00:00", "Z")


def is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)
