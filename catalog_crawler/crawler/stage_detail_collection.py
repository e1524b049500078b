"""Detail stage: fetch the detail page of every discovered record."""

from __future__ import annotations

import logging
from typing import Dict, Hashable, List, Optional, Sequence

from catalog_crawler.settings import CrawlerConfig

from .concurrency import CancelToken
from .fetching import FetchCapability
from .progress import EventEmitter
from .stage_common import RetryingStage
from .task_models import Record, RecordUnit, StageResult, UnitStatus

logger = logging.getLogger(__name__)

__all__ = ["DetailCollectionStage"]


class DetailCollectionStage(RetryingStage):
    stage_name = "detail"
    retry_budget_key = "detail_retry_count"
    concurrency_key = "detail_concurrency"

    def __init__(
        self,
        fetcher: FetchCapability,
        config: CrawlerConfig,
        *,
        emitter: Optional[EventEmitter] = None,
    ) -> None:
        super().__init__(fetcher, config, emitter=emitter)
        self._records: Dict[str, Record] = {}

    def _page_number(self, key: Hashable) -> Optional[int]:
        record = self._records.get(str(key))
        return record.page_id if record is not None else None

    def _attempt(self, key: Hashable, attempt: int, token: CancelToken) -> UnitStatus:
        record = self._records[str(key)]
        details = self.fetcher.fetch_detail(record, token, attempt)
        if not details:
            return UnitStatus.INCOMPLETE
        record.payload.update(details)
        return UnitStatus.SUCCESS

    def collect(
        self,
        records: Sequence[Record],
        cancel_token: Optional[CancelToken] = None,
    ) -> StageResult:
        """Enrich *records* in place with detail fields.

        Records whose details could not be fetched are still returned with
        their listing data and reported in ``failed_units``.
        """

        token = cancel_token or CancelToken()
        self._records = {}
        for record in records:
            self._records.setdefault(record.url, record)
        if not self._records:
            logger.info("Stage: detail collection has no records to process")
            return StageResult(stage=self.stage_name, success=True, message="nothing to collect")

        logger.info("Stage: detail collection for %d record(s)", len(self._records))
        self.state = self._new_state()
        urls: List[str] = list(self._records)
        self.state.init_units(RecordUnit(url) for url in urls)
        self._run_cycles(urls, token)

        failures = self._failure_details()
        for failure in failures:
            failure["url"] = failure.pop("key")
        success = not failures and not token.cancelled
        if success:
            reason = f"fetched details for {len(urls)} record(s)"
        elif failures:
            reason = f"{len(failures)} record(s) without details after {self.state.retry_cycle} retry cycle(s)"
        else:
            reason = f"cancelled: {token.reason}"
        summary = self._complete(success, reason)
        return StageResult(
            stage=self.stage_name,
            success=success,
            records=list(records),
            total_units=summary["total"],
            attempted_units=summary["attempted"],
            successful_units=summary["counts"]["success"],
            failed_units=failures,
            retry_cycles=self.state.retry_cycle,
            elapsed=summary["elapsed"],
            message=reason,
        )
