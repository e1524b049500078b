from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional, Tuple

from .concurrency import CancelToken
from .fetching import FetchCapability
from .task_models import SiteTotals

logger = logging.getLogger(__name__)

__all__ = ["CrawlSession"]


class CrawlSession:
    """Long-lived holder of the fetch capability and the site totals cache.

    Cached totals are reused for ``cache_ttl`` seconds.  Concurrent refreshes
    are allowed and the last one to finish wins; totals only grow, so a
    slightly older snapshot is harmless within the TTL.
    """

    def __init__(
        self,
        fetcher: FetchCapability,
        cache_ttl: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.fetcher = fetcher
        self.cache_ttl = cache_ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._cached: Optional[Tuple[SiteTotals, float]] = None

    @property
    def cached_totals(self) -> Optional[SiteTotals]:
        with self._lock:
            return self._cached[0] if self._cached else None

    def get_totals(
        self,
        cancel_token: Optional[CancelToken] = None,
        *,
        force_refresh: bool = False,
    ) -> SiteTotals:
        with self._lock:
            cached = self._cached
        if cached is not None and not force_refresh:
            totals, stored_at = cached
            age = self._clock() - stored_at
            if age < self.cache_ttl:
                logger.debug("Using cached site totals (age %.1fs)", age)
                return totals
        totals = self.fetcher.fetch_site_totals(cancel_token or CancelToken())
        with self._lock:
            self._cached = (totals, self._clock())
        return totals

    def invalidate(self) -> None:
        with self._lock:
            self._cached = None

    def close(self) -> None:
        self.fetcher.close()
