"""Per-stage state machine and unit status table."""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Any, Dict, Hashable, Iterable, List, Optional, Set, Union

from .errors import InvalidTransitionError, PageError
from .progress import (
    EVENT_RETRY_CYCLE,
    EVENT_STAGE_TRANSITION,
    EVENT_UNIT_STATUS,
    EventEmitter,
    ProgressAggregator,
)
from .task_models import PageUnit, RecordUnit, UnitStatus

logger = logging.getLogger(__name__)

__all__ = ["Stage", "StageState"]

Unit = Union[PageUnit, RecordUnit]


class Stage(str, Enum):
    INIT = "init"
    COLLECTING = "collecting"
    RETRYING = "retrying"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"


_TRANSITIONS: Dict[Stage, Set[Stage]] = {
    Stage.INIT: {Stage.COLLECTING, Stage.FAILED},
    Stage.COLLECTING: {Stage.RETRYING, Stage.PROCESSING, Stage.FAILED},
    Stage.RETRYING: {Stage.COLLECTING, Stage.PROCESSING, Stage.FAILED},
    Stage.PROCESSING: {Stage.COMPLETE, Stage.FAILED},
    Stage.COMPLETE: set(),
    Stage.FAILED: set(),
}

_FINISHED = {UnitStatus.SUCCESS, UnitStatus.INCOMPLETE, UnitStatus.FAILED}


class StageState:
    """Tracks one collection stage.

    ``set_stage`` is the only way to move between stages and always takes a
    reason.  Units move ``waiting -> attempting -> success|incomplete|failed``;
    an unfinished unit only returns to ``attempting`` inside a new retry cycle
    and a successful unit is never attempted again.
    """

    def __init__(
        self,
        name: str,
        retry_budget: int,
        *,
        emitter: Optional[EventEmitter] = None,
        progress: Optional[ProgressAggregator] = None,
    ) -> None:
        self.name = name
        self.retry_budget = max(0, retry_budget)
        self.emitter = emitter or EventEmitter()
        self.progress = progress
        self.stage = Stage.INIT
        self.retry_cycle = 0
        self.started_at: Optional[float] = None
        self.finished_at: Optional[float] = None
        self.units: Dict[Hashable, Unit] = {}
        self.errors: Dict[Hashable, List[str]] = {}
        self._cycle_keys: Set[Hashable] = set()
        self._lock = threading.RLock()

    # stage transitions -------------------------------------------------

    def set_stage(self, stage: Stage, reason: str) -> None:
        with self._lock:
            previous = self.stage
            if stage not in _TRANSITIONS[previous]:
                raise InvalidTransitionError(
                    f"{self.name}: cannot move from {previous.value} to {stage.value}"
                )
            if stage is Stage.RETRYING:
                if not self.should_retry():
                    raise InvalidTransitionError(
                        f"{self.name}: no retry possible "
                        f"(outstanding={len(self.outstanding())}, "
                        f"cycle={self.retry_cycle}/{self.retry_budget})"
                    )
                self.retry_cycle += 1
                self._cycle_keys = set(self.outstanding())
            if stage is Stage.COLLECTING and self.started_at is None:
                self.started_at = time.time()
            if stage in (Stage.COMPLETE, Stage.FAILED):
                self.finished_at = time.time()
            self.stage = stage
        logger.info("Stage '%s': %s -> %s (%s)", self.name, previous.value, stage.value, reason)
        self.emitter.emit(
            EVENT_STAGE_TRANSITION,
            {"stage": self.name, "from": previous.value, "to": stage.value, "reason": reason},
        )
        if stage is Stage.RETRYING:
            self.emitter.emit(
                EVENT_RETRY_CYCLE,
                {
                    "stage": self.name,
                    "cycle": self.retry_cycle,
                    "budget": self.retry_budget,
                    "outstanding": len(self._cycle_keys),
                },
            )
            self._publish_progress(force=True)

    @property
    def terminal(self) -> bool:
        return self.stage in (Stage.COMPLETE, Stage.FAILED)

    def should_retry(self) -> bool:
        return bool(self.outstanding()) and self.retry_cycle < self.retry_budget

    # unit table --------------------------------------------------------

    def init_units(self, units: Iterable[Unit]) -> None:
        with self._lock:
            if self.stage is not Stage.INIT:
                raise InvalidTransitionError(f"{self.name}: units are only created in init")
            for unit in units:
                self.units[unit.key] = unit
        if self.progress is not None:
            self.progress.start(self.name, len(self.units))

    def mark_attempting(self, key: Hashable) -> int:
        """Move *key* to ``attempting`` and return its attempt number."""

        with self._lock:
            unit = self.units[key]
            if unit.status is UnitStatus.SUCCESS:
                raise InvalidTransitionError(f"{self.name}: unit {key!r} already succeeded")
            if unit.status is UnitStatus.ATTEMPTING:
                raise InvalidTransitionError(f"{self.name}: unit {key!r} is already in flight")
            if unit.status is not UnitStatus.WAITING:
                if self.stage is not Stage.RETRYING or key not in self._cycle_keys:
                    raise InvalidTransitionError(
                        f"{self.name}: unit {key!r} can only be retried in a retry cycle"
                    )
                self._cycle_keys.discard(key)
            unit.status = UnitStatus.ATTEMPTING
            unit.attempt += 1
            attempt = unit.attempt
        self._unit_changed(unit)
        return attempt

    def mark_result(
        self,
        key: Hashable,
        status: UnitStatus,
        error: Optional[BaseException] = None,
    ) -> None:
        if status not in _FINISHED:
            raise InvalidTransitionError(f"{self.name}: {status.value} is not a result status")
        with self._lock:
            unit = self.units[key]
            if unit.status is not UnitStatus.ATTEMPTING:
                raise InvalidTransitionError(
                    f"{self.name}: unit {key!r} is {unit.status.value}, not attempting"
                )
            unit.status = status
            if error is not None:
                message = error.describe() if isinstance(error, PageError) else str(error)
                self.errors.setdefault(key, []).append(message)
        self._unit_changed(unit)

    def status_of(self, key: Hashable) -> UnitStatus:
        with self._lock:
            return self.units[key].status

    def outstanding(self) -> List[Hashable]:
        with self._lock:
            return [key for key, unit in self.units.items() if unit.status is not UnitStatus.SUCCESS]

    def keys_with_status(self, status: UnitStatus) -> List[Hashable]:
        with self._lock:
            return [key for key, unit in self.units.items() if unit.status is status]

    def counts(self) -> Dict[str, int]:
        with self._lock:
            result = {status.value: 0 for status in UnitStatus}
            for unit in self.units.values():
                result[unit.status.value] += 1
            return result

    @property
    def elapsed(self) -> float:
        if self.started_at is None:
            return 0.0
        end = self.finished_at if self.finished_at is not None else time.time()
        return max(0.0, end - self.started_at)

    def summary(self) -> Dict[str, Any]:
        counts = self.counts()
        attempted = len(self.units) - counts[UnitStatus.WAITING.value]
        success_rate = counts[UnitStatus.SUCCESS.value] / attempted if attempted else 0.0
        return {
            "stage": self.name,
            "state": self.stage.value,
            "total": len(self.units),
            "attempted": attempted,
            "counts": counts,
            "success_rate": success_rate,
            "retry_cycles": self.retry_cycle,
            "elapsed": round(self.elapsed, 3),
        }

    def finish_progress(self) -> None:
        if self.progress is not None:
            self.progress.finish(self.counts(), self.retry_cycle)

    def _unit_changed(self, unit: Unit) -> None:
        self.emitter.emit(
            EVENT_UNIT_STATUS,
            {
                "stage": self.name,
                "key": unit.key,
                "status": unit.status.value,
                "attempt": unit.attempt,
            },
        )
        self._publish_progress()

    def _publish_progress(self, force: bool = False) -> None:
        if self.progress is not None:
            self.progress.update(self.counts(), self.retry_cycle, force=force)
