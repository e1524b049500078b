"""Crawl notifications and throttled progress snapshots."""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict
from dataclasses import asdict, dataclass
from typing import Any, Callable, DefaultDict, Dict, List, Optional

logger = logging.getLogger(__name__)

__all__ = [
    "EVENT_GAP_COLLECTION",
    "EVENT_GAP_REPORT",
    "EVENT_PROGRESS",
    "EVENT_RETRY_CYCLE",
    "EVENT_STAGE_COMPLETE",
    "EVENT_STAGE_TRANSITION",
    "EVENT_UNIT_STATUS",
    "EventEmitter",
    "ProgressAggregator",
    "ProgressSnapshot",
]

EVENT_STAGE_TRANSITION = "stage-transition"
EVENT_UNIT_STATUS = "unit-status"
EVENT_RETRY_CYCLE = "retry-cycle"
EVENT_STAGE_COMPLETE = "stage-complete"
EVENT_GAP_REPORT = "gap-report"
EVENT_GAP_COLLECTION = "gap-collection"
EVENT_PROGRESS = "progress"

Listener = Callable[[Dict[str, Any]], None]


class EventEmitter:
    """Fire-and-forget event fan-out.

    Listeners run synchronously on the emitting thread.  A listener that raises
    is logged and does not affect the crawl or the remaining listeners.
    """

    def __init__(self) -> None:
        self._listeners: DefaultDict[str, List[Listener]] = defaultdict(list)
        self._lock = threading.Lock()

    def on(self, event: str, listener: Listener) -> None:
        with self._lock:
            self._listeners[event].append(listener)

    def off(self, event: str, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners.get(event, []):
                self._listeners[event].remove(listener)

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            listeners = list(self._listeners.get(event, []))
        for listener in listeners:
            try:
                listener(payload)
            except Exception:
                logger.exception("Listener for '%s' failed", event)


@dataclass
class ProgressSnapshot:
    sequence: int
    stage: str
    total: int
    completed: int
    succeeded: int
    incomplete: int
    failed: int
    retry_cycle: int
    elapsed: float
    final: bool = False

    @property
    def percentage(self) -> float:
        if self.total <= 0:
            return 100.0
        return round(self.completed * 100.0 / self.total, 1)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["percentage"] = self.percentage
        return data


class ProgressAggregator:
    """Collapse frequent counter updates into ordered, rate-limited snapshots.

    ``update`` publishes at most once per ``min_interval`` seconds; ``finish``
    always publishes.  Sequence numbers increase strictly in emission order.
    """

    def __init__(
        self,
        emitter: Optional[EventEmitter] = None,
        min_interval: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.emitter = emitter or EventEmitter()
        self.min_interval = min_interval
        self._clock = clock
        self._lock = threading.Lock()
        self._sequence = 0
        self._last_emit: Optional[float] = None
        self._started_at = clock()
        self._stage = "init"
        self._total = 0
        self.history: List[ProgressSnapshot] = []

    def start(self, stage: str, total: int) -> None:
        with self._lock:
            self._stage = stage
            self._total = total
            self._started_at = self._clock()
            self._last_emit = None

    def update(
        self,
        counts: Dict[str, int],
        retry_cycle: int = 0,
        *,
        force: bool = False,
    ) -> Optional[ProgressSnapshot]:
        return self._publish(counts, retry_cycle, force=force, final=False)

    def finish(self, counts: Dict[str, int], retry_cycle: int = 0) -> ProgressSnapshot:
        snapshot = self._publish(counts, retry_cycle, force=True, final=True)
        assert snapshot is not None
        return snapshot

    def _publish(
        self,
        counts: Dict[str, int],
        retry_cycle: int,
        *,
        force: bool,
        final: bool,
    ) -> Optional[ProgressSnapshot]:
        with self._lock:
            now = self._clock()
            if (
                not force
                and self._last_emit is not None
                and now - self._last_emit < self.min_interval
            ):
                return None
            succeeded = counts.get("success", 0)
            incomplete = counts.get("incomplete", 0)
            failed = counts.get("failed", 0)
            self._sequence += 1
            snapshot = ProgressSnapshot(
                sequence=self._sequence,
                stage=self._stage,
                total=self._total,
                completed=succeeded + incomplete + failed,
                succeeded=succeeded,
                incomplete=incomplete,
                failed=failed,
                retry_cycle=retry_cycle,
                elapsed=round(now - self._started_at, 3),
                final=final,
            )
            self._last_emit = now
            self.history.append(snapshot)
            self.emitter.emit(EVENT_PROGRESS, snapshot.to_dict())
            return snapshot
