"""Listing stage: fetch every listing page of the target range with retries."""

from __future__ import annotations

import logging
from typing import Dict, Hashable, Iterable, List, Optional

from catalog_crawler.settings import CrawlerConfig

from .concurrency import CancelToken
from .errors import ExtractionError
from .page_index import PageIndexMapper
from .progress import EventEmitter
from .session import CrawlSession
from .stage_common import RetryingStage
from .store import RecordStore
from .task_models import PageRange, PageUnit, Record, SiteTotals, StageResult, UnitStatus

logger = logging.getLogger(__name__)

__all__ = ["ListCollectionStage", "merge_page_records", "pages_already_collected"]


def merge_page_records(existing: Iterable[Record], fetched: Iterable[Record]) -> List[Record]:
    """Union of two record lists keyed by URL, ordered by slot.

    A later fetch replaces an earlier copy of the same record.
    """

    merged: Dict[str, Record] = {}
    for record in existing:
        merged[record.url] = record
    for record in fetched:
        merged[record.url] = record
    return sorted(merged.values(), key=lambda r: (r.slot if r.slot is not None else 0, r.url))


def pages_already_collected(stored_records: int, totals: SiteTotals, page_size: int) -> int:
    """Number of site pages, counted from the oldest, fully held downstream."""

    if stored_records <= 0:
        return 0
    boundary = totals.last_page_record_count
    if stored_records < boundary:
        return 0
    collected = 1 + (stored_records - boundary) // page_size
    return min(collected, totals.total_pages)


class ListCollectionStage(RetryingStage):
    """Collect listing records for a range of page ids.

    Success is all-or-nothing: a single page left unresolved after the retry
    cycles fails the stage.
    """

    stage_name = "list"
    retry_budget_key = "list_retry_count"
    concurrency_key = "initial_concurrency"

    def __init__(
        self,
        session: CrawlSession,
        store: RecordStore,
        config: CrawlerConfig,
        *,
        emitter: Optional[EventEmitter] = None,
        mapper: Optional[PageIndexMapper] = None,
    ) -> None:
        super().__init__(session.fetcher, config, emitter=emitter)
        self.session = session
        self.store = store
        self.mapper = mapper or PageIndexMapper(config.products_per_page)
        self.totals: Optional[SiteTotals] = None
        self._page_cache: Dict[int, List[Record]] = {}

    def compute_range(self, totals: SiteTotals, page_limit: int) -> Optional[PageRange]:
        already = pages_already_collected(self.store.total_count(), totals, self.mapper.page_size)
        if already >= totals.total_pages:
            return None
        start_page_id = totals.total_pages - 1 - already
        if page_limit > 0:
            end_page_id = max(0, start_page_id - page_limit + 1)
        else:
            end_page_id = 0
        return PageRange(start_page_id, end_page_id)

    def _page_number(self, key: Hashable) -> Optional[int]:
        assert self.totals is not None
        return self.totals.total_pages - int(key)

    def _attempt(self, key: Hashable, attempt: int, token: CancelToken) -> UnitStatus:
        assert self.totals is not None
        page_id = int(key)
        site_page = self.mapper.to_site_page(page_id, self.totals.total_pages)
        page = self.fetcher.fetch_listing_page(site_page, token, attempt)
        if len(page.records) > self.mapper.page_size:
            raise ExtractionError(
                f"Site page {site_page} returned {len(page.records)} records, "
                f"more than the page size {self.mapper.page_size}",
                site_page,
                attempt,
            )
        merged = merge_page_records(self._page_cache.get(page_id, []), page.records)
        self._page_cache[page_id] = merged
        expected = self.mapper.expected_count(
            page_id, self.totals.total_pages, self.totals.last_page_record_count
        )
        logger.info(
            "Listing page %d (pageId %d) attempt %d: %d/%d record(s)",
            site_page,
            page_id,
            attempt,
            len(merged),
            expected,
        )
        return UnitStatus.SUCCESS if len(merged) >= expected else UnitStatus.INCOMPLETE

    def _flatten(self) -> List[Record]:
        assert self.totals is not None
        offset = self.mapper.offset(self.totals.last_page_record_count)
        records: List[Record] = []
        for unit_page_id in sorted(self._page_cache):
            for record in self._page_cache[unit_page_id]:
                if record.site_page is None or record.slot is None:
                    continue
                page_id, index_in_page = self.mapper.map_slot(
                    record.site_page, record.slot, offset, self.totals.total_pages
                )
                record.page_id = page_id
                record.index_in_page = index_in_page
                records.append(record)
        records.sort(key=lambda r: (r.page_id, r.index_in_page))
        self._page_cache = {}
        return records

    def collect(
        self,
        page_limit: Optional[int] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> StageResult:
        token = cancel_token or CancelToken()
        limit = self.config.page_range_limit if page_limit is None else page_limit
        self.totals = self.session.get_totals(token)
        self.store.rebase(self.totals.total_pages)
        page_range = self.compute_range(self.totals, limit)
        if page_range is None:
            logger.info("Stage: list collection has nothing to fetch (all %d page(s) stored)", self.totals.total_pages)
            return StageResult(stage=self.stage_name, success=True, message="nothing to collect")

        logger.info(
            "Stage: list collection for pageIds %d..%d (%d page(s), site total %d)",
            page_range.start_page_id,
            page_range.end_page_id,
            len(page_range),
            self.totals.total_pages,
        )
        self.state = self._new_state()
        self._page_cache = {}
        page_ids = list(page_range.page_ids())
        self.state.init_units(PageUnit(page_id) for page_id in page_ids)
        self._run_cycles(page_ids, token)

        records = self._flatten()
        failures = self._failure_details()
        for failure in failures:
            failure["page_id"] = failure.pop("key")
            failure["site_page"] = self.totals.total_pages - failure["page_id"]
        success = not failures and not token.cancelled
        if success:
            reason = f"collected {len(records)} record(s) from {len(page_ids)} page(s)"
        elif failures:
            reason = (
                f"{len(failures)} page(s) unresolved after {self.state.retry_cycle} retry cycle(s): "
                f"pageIds {[failure['page_id'] for failure in failures]}"
            )
        else:
            reason = f"cancelled: {token.reason}"
        summary = self._complete(success, reason)
        return StageResult(
            stage=self.stage_name,
            success=success,
            records=records,
            total_units=summary["total"],
            attempted_units=summary["attempted"],
            successful_units=summary["counts"]["success"],
            failed_units=failures,
            retry_cycles=self.state.retry_cycle,
            elapsed=summary["elapsed"],
            message=reason,
        )
