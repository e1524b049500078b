"""Top-level crawl run: totals, listing stage, detail stage, persistence."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from catalog_crawler.settings import CrawlerConfig

from .concurrency import CancelToken
from .errors import InitializationError
from .fetching import FetchCapability, create_fetcher
from .gap_collector import GapCollector, GapCollectorOptions
from .gap_detector import GapDetector
from .page_index import PageIndexMapper
from .progress import EventEmitter
from .session import CrawlSession
from .stage_detail_collection import DetailCollectionStage
from .stage_list_collection import ListCollectionStage
from .store import RecordStore, load_store
from .task_models import GapCollectionResult, GapReport, Record, SaveResult, StageResult

logger = logging.getLogger(__name__)

__all__ = ["CrawlOutcome", "CrawlerEngine"]

STATUS_COMPLETE = "complete"
STATUS_PARTIAL = "partial"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"


@dataclass
class CrawlOutcome:
    status: str
    message: str
    records: List[Record] = field(default_factory=list)
    list_result: Optional[StageResult] = None
    detail_result: Optional[StageResult] = None
    save_result: Optional[SaveResult] = None

    @property
    def success(self) -> bool:
        return self.status == STATUS_COMPLETE


class CrawlerEngine:
    """Owns one crawl session and drives the stages in order.

    Listing results are only persisted when the listing stage covered its
    whole range; a failed or cancelled listing stage hands its partial
    records back in the outcome instead.
    """

    def __init__(
        self,
        config: CrawlerConfig,
        *,
        fetcher: Optional[FetchCapability] = None,
        store: Optional[RecordStore] = None,
        emitter: Optional[EventEmitter] = None,
    ) -> None:
        self.config = config
        self.emitter = emitter or EventEmitter()
        self.session = CrawlSession(fetcher or create_fetcher(config), config.cache_ttl)
        self.store = store if store is not None else load_store(config.store_file)
        self.mapper = PageIndexMapper(config.products_per_page)
        self._cancel_token: Optional[CancelToken] = None

    def cancel(self, reason: str = "stopped by user") -> None:
        if self._cancel_token is not None:
            self._cancel_token.cancel(reason)

    def run(self, page_limit: Optional[int] = None) -> CrawlOutcome:
        token = CancelToken()
        self._cancel_token = token
        partial: List[Record] = []
        list_result: Optional[StageResult] = None
        listing_complete = False
        try:
            totals = self.session.get_totals(token, force_refresh=True)
            logger.info(
                "Starting crawl: %d site page(s), boundary page holds %d record(s)",
                totals.total_pages,
                totals.last_page_record_count,
            )
            list_stage = ListCollectionStage(
                self.session, self.store, self.config, emitter=self.emitter, mapper=self.mapper
            )
            list_result = list_stage.collect(page_limit, token)
            partial = list_result.records
            if token.cancelled:
                return CrawlOutcome(STATUS_CANCELLED, list_result.message or "cancelled", partial, list_result)
            if not list_result.success:
                logger.error("Listing stage failed: %s", list_result.message)
                return CrawlOutcome(STATUS_FAILED, list_result.message or "listing stage failed", partial, list_result)
            if not partial:
                return CrawlOutcome(STATUS_COMPLETE, "catalog already up to date", [], list_result)
            listing_complete = True

            detail_result: Optional[StageResult] = None
            if self.config.collect_details:
                detail_stage = DetailCollectionStage(self.session.fetcher, self.config, emitter=self.emitter)
                detail_result = detail_stage.collect(partial, token)

            save_result = self.store.save(partial)
            self.store.flush()
        except InitializationError as exc:
            logger.error("Crawl failed during initialization: %s", exc.describe())
            if partial:
                self.store.save(partial)
            self.store.flush()
            return CrawlOutcome(STATUS_FAILED, exc.message, partial)
        except KeyboardInterrupt:
            token.cancel("interrupted")
            logger.warning("Crawl interrupted; keeping %d listing record(s)", len(partial) if listing_complete else 0)
            if listing_complete:
                self.store.save(partial)
            self.store.flush()
            return CrawlOutcome(STATUS_CANCELLED, "interrupted", partial, list_result)
        finally:
            self._cancel_token = None

        if token.cancelled:
            status, message = STATUS_CANCELLED, f"cancelled during detail stage: {token.reason}"
        elif detail_result is not None and not detail_result.success:
            status, message = STATUS_PARTIAL, detail_result.message or "detail stage incomplete"
        else:
            status, message = STATUS_COMPLETE, f"stored {len(partial)} record(s)"
        logger.info("Crawl finished (%s): %s", status, message)
        return CrawlOutcome(status, message, partial, list_result, detail_result, save_result)

    def detect_gaps(self, cancel_token: Optional[CancelToken] = None) -> GapReport:
        detector = GapDetector(self.store, self.session, mapper=self.mapper, emitter=self.emitter)
        return detector.detect(cancel_token)

    def collect_gaps(
        self,
        options: Optional[GapCollectorOptions] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> Tuple[GapReport, GapCollectionResult]:
        collector = GapCollector(self.store, self.session, mapper=self.mapper, emitter=self.emitter)
        try:
            return collector.collect_missing(options, cancel_token)
        finally:
            self.store.flush()

    def close(self) -> None:
        self.session.close()
