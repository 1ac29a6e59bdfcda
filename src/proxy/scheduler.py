"""Deferred background refreshes with cancellable per-key handles."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Optional, Tuple

from providers import MarketQuery

logger = logging.getLogger(__name__)


class DeferredRefresher:
    """
    At most one pending refresh per cache key.

    Scheduling a key again cancels its previous handle. close() cancels
    everything and rejects later schedules.
    """

    def __init__(self, refresh: Callable[[MarketQuery], Any], timer_factory=None) -> None:
        self._refresh = refresh
        self._timer_factory = timer_factory or threading.Timer
        self._handles: Dict[str, Tuple[Any, object]] = {}
        self._lock = threading.Lock()
        self._closed = False
        self.stats = {"scheduled": 0, "cancelled": 0, "fired": 0, "errors": 0}

    def schedule(self, key: str, query: MarketQuery, delay: float) -> Optional[Any]:
        token = object()
        timer = self._timer_factory(max(delay, 0.0), self._fire, args=(key, query, token))
        timer.daemon = True

        with self._lock:
            if self._closed:
                return None
            previous = self._handles.get(key)
            self._handles[key] = (timer, token)
            self.stats["scheduled"] += 1
            if previous is not None:
                self.stats["cancelled"] += 1

        if previous is not None:
            previous[0].cancel()
        timer.start()
        logger.debug("Deferred refresh of %s in %.1fs", key, delay)
        return timer

    def _fire(self, key: str, query: MarketQuery, token: object) -> None:
        with self._lock:
            current = self._handles.get(key)
            if current is None or current[1] is not token:
                return
            del self._handles[key]
            self.stats["fired"] += 1

        try:
            self._refresh(query)
        except Exception:
            with self._lock:
                self.stats["errors"] += 1
            logger.exception("Deferred refresh of %s failed", key)

    def cancel(self, key: str) -> bool:
        with self._lock:
            handle = self._handles.pop(key, None)
            if handle is not None:
                self.stats["cancelled"] += 1
        if handle is None:
            return False
        handle[0].cancel()
        return True

    def pending(self) -> int:
        with self._lock:
            return len(self._handles)

    def is_scheduled(self, key: str) -> bool:
        with self._lock:
            return key in self._handles

    def close(self) -> None:
        with self._lock:
            self._closed = True
            handles = list(self._handles.values())
            self._handles.clear()
            self.stats["cancelled"] += len(handles)
        for timer, _ in handles:
            timer.cancel()
        if handles:
            logger.info("Cancelled %d deferred refreshes", len(handles))
