"""Bounded thread pool with cooperative cancellation."""

from __future__ import annotations

import logging
import threading
from collections import deque
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Generic, Iterable, List, Optional, Sequence, TypeVar

from .errors import AbortedError

logger = logging.getLogger(__name__)

__all__ = ["CancelToken", "ConcurrencyPool", "PoolOutcome"]

T = TypeVar("T")
R = TypeVar("R")


class CancelToken:
    """Shared cancellation signal for one top-level run."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            logger.info("Cancellation requested: %s", reason)
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(
        self,
        page_number: Optional[int] = None,
        attempt: Optional[int] = None,
    ) -> None:
        if self._event.is_set():
            raise AbortedError(self.reason or "cancelled", page_number, attempt)

    def wait(self, seconds: float) -> bool:
        """Sleep up to *seconds*; return True when cancelled meanwhile."""

        if seconds <= 0:
            return self._event.is_set()
        return self._event.wait(seconds)


@dataclass
class PoolOutcome(Generic[T, R]):
    item: T
    result: Optional[R] = None
    error: Optional[BaseException] = None
    aborted: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.aborted


class ConcurrencyPool:
    """Run a worker over items with at most ``concurrency`` in flight.

    Results come back in input order.  Items are submitted lazily, so once the
    cancel token fires nothing new starts; items that never started are
    reported as aborted.  When ``adaptive`` is set the in-flight limit shrinks
    while the recent error rate stays above ``error_threshold``.
    """

    def __init__(
        self,
        concurrency: int = 3,
        *,
        adaptive: bool = False,
        window_size: int = 10,
        error_threshold: float = 0.3,
        min_concurrency: int = 1,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.concurrency = concurrency
        self.adaptive = adaptive
        self.window_size = window_size
        self.error_threshold = error_threshold
        self.min_concurrency = max(1, min_concurrency)

    @staticmethod
    def _invoke(
        worker: Callable[[T, CancelToken], R],
        item: T,
        token: CancelToken,
    ) -> PoolOutcome:
        if token.cancelled:
            return PoolOutcome(item=item, error=AbortedError(token.reason or "cancelled"), aborted=True)
        try:
            return PoolOutcome(item=item, result=worker(item, token))
        except AbortedError as exc:
            return PoolOutcome(item=item, error=exc, aborted=True)
        except Exception as exc:
            return PoolOutcome(item=item, error=exc)

    def run(
        self,
        items: Iterable[T],
        worker: Callable[[T, CancelToken], R],
        concurrency: Optional[int] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> List[PoolOutcome]:
        queue: List[T] = list(items)
        if not queue:
            return []
        token = cancel_token or CancelToken()
        max_workers = max(1, min(concurrency or self.concurrency, len(queue)))
        limit = max_workers
        recent: Deque[bool] = deque(maxlen=self.window_size)
        outcomes: List[Optional[PoolOutcome]] = [None] * len(queue)
        pending: Dict[Any, int] = {}
        next_index = 0

        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="crawl-pool") as executor:
            try:
                while True:
                    while next_index < len(queue) and len(pending) < limit and not token.cancelled:
                        future = executor.submit(self._invoke, worker, queue[next_index], token)
                        pending[future] = next_index
                        next_index += 1
                    if not pending:
                        break
                    done, _ = wait(list(pending), return_when=FIRST_COMPLETED)
                    for future in done:
                        index = pending.pop(future)
                        outcome = future.result()
                        outcomes[index] = outcome
                        if self.adaptive and not outcome.aborted:
                            recent.append(outcome.error is None)
                            limit = self._adjust_limit(limit, recent)
            except KeyboardInterrupt:
                # running workers see the token before the executor joins them
                token.cancel("interrupted")
                raise

        for index, outcome in enumerate(outcomes):
            if outcome is None:
                outcomes[index] = PoolOutcome(
                    item=queue[index],
                    error=AbortedError(token.reason or "cancelled before start"),
                    aborted=True,
                )
        return outcomes  # type: ignore[return-value]

    def _adjust_limit(self, limit: int, recent: Deque[bool]) -> int:
        if len(recent) < self.window_size:
            return limit
        error_rate = recent.count(False) / len(recent)
        if error_rate > self.error_threshold and limit > self.min_concurrency:
            logger.warning(
                "Error rate %.0f%% over last %d tasks; lowering concurrency %d -> %d",
                error_rate * 100,
                len(recent),
                limit,
                limit - 1,
            )
            recent.clear()
            return limit - 1
        return limit

    def run_in_batches(
        self,
        items: Sequence[T],
        worker: Callable[[T, CancelToken], R],
        batch_size: int,
        batch_delay: float = 0.0,
        concurrency: Optional[int] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> List[PoolOutcome]:
        token = cancel_token or CancelToken()
        size = max(1, batch_size)
        batches = [list(items[start : start + size]) for start in range(0, len(items), size)]
        outcomes: List[PoolOutcome] = []
        for number, batch in enumerate(batches, start=1):
            if number > 1:
                token.wait(batch_delay)
            if not token.cancelled:
                logger.info("Running batch %d/%d (%d item(s))", number, len(batches), len(batch))
            outcomes.extend(self.run(batch, worker, concurrency, token))
        return outcomes
