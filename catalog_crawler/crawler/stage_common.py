"""Fan-out and retry-cycle driver shared by the collection stages."""

from __future__ import annotations

import logging
from typing import Any, Dict, Hashable, List, Optional, Sequence

from catalog_crawler.settings import CrawlerConfig

from .concurrency import CancelToken, ConcurrencyPool, PoolOutcome
from .errors import classify_error
from .fetching import FetchCapability
from .progress import EVENT_STAGE_COMPLETE, EventEmitter, ProgressAggregator
from .state import Stage, StageState
from .summary import log_stage_summary
from .task_models import UnitStatus

logger = logging.getLogger(__name__)


class RetryingStage:
    """Runs every unit once, then retries the unfinished ones in cycles.

    Subclasses implement ``_attempt`` which fetches one unit and returns its
    resulting status; raising marks the unit failed.
    """

    stage_name = "stage"
    retry_budget_key = "list_retry_count"
    concurrency_key = "initial_concurrency"

    def __init__(
        self,
        fetcher: FetchCapability,
        config: CrawlerConfig,
        *,
        emitter: Optional[EventEmitter] = None,
    ) -> None:
        self.fetcher = fetcher
        self.config = config
        self.emitter = emitter or EventEmitter()
        self.pool = ConcurrencyPool(
            getattr(config, self.concurrency_key),
            adaptive=config.adaptive_concurrency,
        )
        self.state = self._new_state()

    def _new_state(self) -> StageState:
        return StageState(
            self.stage_name,
            getattr(self.config, self.retry_budget_key),
            emitter=self.emitter,
            progress=ProgressAggregator(self.emitter, self.config.progress_interval),
        )

    def _attempt(self, key: Hashable, attempt: int, token: CancelToken) -> UnitStatus:
        raise NotImplementedError

    def _page_number(self, key: Hashable) -> Optional[int]:
        return None

    def _worker(self, key: Hashable, token: CancelToken) -> UnitStatus:
        attempt = self.state.mark_attempting(key)
        try:
            status = self._attempt(key, attempt, token)
        except Exception as exc:
            error = classify_error(exc, self._page_number(key), attempt)
            self.state.mark_result(key, UnitStatus.FAILED, error)
            logger.warning("Stage '%s': unit %r failed: %s", self.stage_name, key, error.describe())
            raise error
        self.state.mark_result(key, status)
        return status

    def _run_pass(
        self,
        keys: Sequence[Hashable],
        concurrency: int,
        token: CancelToken,
        *,
        batched: bool = False,
    ) -> List[PoolOutcome]:
        if batched and len(keys) > self.config.batch_size:
            return self.pool.run_in_batches(
                list(keys),
                self._worker,
                self.config.batch_size,
                self.config.batch_delay,
                concurrency,
                token,
            )
        return self.pool.run(keys, self._worker, concurrency, token)

    def _run_cycles(self, keys: Sequence[Hashable], token: CancelToken) -> None:
        self.state.set_stage(
            Stage.COLLECTING,
            f"processing {len(keys)} unit(s) at concurrency {getattr(self.config, self.concurrency_key)}",
        )
        self._run_pass(
            keys,
            getattr(self.config, self.concurrency_key),
            token,
            batched=self.config.enable_batch_processing,
        )
        while self.state.should_retry() and not token.cancelled:
            if token.wait(self.config.retry_delay):
                break
            outstanding = self.state.outstanding()
            self.state.set_stage(
                Stage.RETRYING,
                f"retry cycle {self.state.retry_cycle + 1}/{self.state.retry_budget} "
                f"for {len(outstanding)} unit(s)",
            )
            self._run_pass(outstanding, self.config.retry_concurrency, token)
            if not self.state.should_retry() or token.cancelled:
                break
            self.state.set_stage(
                Stage.COLLECTING,
                f"{len(self.state.outstanding())} unit(s) still outstanding after cycle {self.state.retry_cycle}",
            )
        remaining = len(self.state.outstanding())
        if token.cancelled:
            reason = f"cancelled ({token.reason}); {remaining} unit(s) unresolved"
        elif remaining:
            reason = f"retry budget exhausted; {remaining} unit(s) unresolved"
        else:
            reason = "all units succeeded"
        self.state.set_stage(Stage.PROCESSING, reason)

    def _failure_details(self) -> List[Dict[str, Any]]:
        details = []
        for key in self.state.outstanding():
            unit = self.state.units[key]
            details.append(
                {
                    "key": key,
                    "status": unit.status.value,
                    "attempts": unit.attempt,
                    "errors": list(self.state.errors.get(key, [])),
                }
            )
        return details

    def _complete(self, success: bool, reason: str) -> Dict[str, Any]:
        self.state.set_stage(Stage.COMPLETE if success else Stage.FAILED, reason)
        self.state.finish_progress()
        summary = self.state.summary()
        summary["success"] = success
        summary["message"] = reason
        log_stage_summary(summary)
        self.emitter.emit(EVENT_STAGE_COMPLETE, summary)
        return summary
