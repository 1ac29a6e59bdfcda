"""In-flight request coalescing: one upstream fetch per cache key."""

from __future__ import annotations

import logging
import threading
from concurrent import futures
from concurrent.futures import Future
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class InFlightFetches:
    """
    Registry of running refreshes keyed by cache key.

    The first caller for a key becomes the leader and runs the refresh;
    callers arriving while it runs follow and receive the leader's result
    (or exception). The registry lock only guards dict operations.
    """

    def __init__(self) -> None:
        self._inflight: Dict[str, Future] = {}
        self._lock = threading.Lock()
        self.stats = {"leaders": 0, "followers": 0, "follower_timeouts": 0}

    def is_in_flight(self, key: str) -> bool:
        with self._lock:
            return key in self._inflight

    def join(self, key: str) -> Tuple[Future, bool]:
        """(future, is_leader) for key."""
        with self._lock:
            future = self._inflight.get(key)
            if future is not None:
                self.stats["followers"] += 1
                return future, False
            future = Future()
            self._inflight[key] = future
            self.stats["leaders"] += 1
            return future, True

    def _finish(self, key: str, future: Future) -> None:
        with self._lock:
            if self._inflight.get(key) is future:
                del self._inflight[key]

    def run(self, key: str, fn: Callable[[], Any], wait_timeout: Optional[float] = None) -> Any:
        """Run fn as leader, or wait up to wait_timeout for the current leader.

        Followers that time out get concurrent.futures.TimeoutError.
        """
        future, leader = self.join(key)
        if not leader:
            logger.debug("Coalesced onto in-flight fetch for %s", key)
            try:
                return future.result(timeout=wait_timeout)
            except futures.TimeoutError:
                with self._lock:
                    self.stats["follower_timeouts"] += 1
                raise

        try:
            result = fn()
        except Exception as e:
            self._finish(key, future)
            future.set_exception(e)
            raise
        self._finish(key, future)
        future.set_result(result)
        return result

    def __len__(self) -> int:
        with self._lock:
            return len(self._inflight)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {**self.stats, "in_flight": len(self._inflight)}
