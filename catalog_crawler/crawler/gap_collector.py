"""Targeted re-fetching of the record slots a gap report lists as missing."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import List, Optional, Sequence, Tuple

from .concurrency import CancelToken, ConcurrencyPool
from .errors import AbortedError, classify_error
from .fetching import FetchCapability
from .gap_detector import GapDetector
from .page_index import PageIndexMapper
from .progress import EVENT_GAP_COLLECTION, EventEmitter
from .session import CrawlSession
from .store import RecordStore
from .summary import log_gap_collection
from .task_models import (
    GapCollectionResult,
    GapReport,
    PageGap,
    PageRepairOutcome,
    Record,
    SiteTotals,
)

logger = logging.getLogger(__name__)

__all__ = ["GapCollector", "GapCollectorOptions", "order_gaps"]


@dataclass
class GapCollectorOptions:
    max_concurrent_pages: int = 3
    delay_between_pages: float = 1.0
    prioritize_partial: bool = True


def order_gaps(gaps: Sequence[PageGap], prioritize_partial: bool = True) -> List[PageGap]:
    """Partially filled pages first, then pages with fewer missing slots."""

    if not prioritize_partial:
        return list(gaps)
    return sorted(
        gaps,
        key=lambda gap: (gap.is_fully_missing, len(gap.missing_indices), gap.page_id),
    )


class GapCollector:
    """Repair pages listed in a gap report.

    Failures are recorded per page and never stop the other pages; whatever is
    left missing shows up again on the next detection pass.
    """

    def __init__(
        self,
        store: RecordStore,
        session: CrawlSession,
        *,
        mapper: Optional[PageIndexMapper] = None,
        detector: Optional[GapDetector] = None,
        emitter: Optional[EventEmitter] = None,
    ) -> None:
        self.store = store
        self.session = session
        self.mapper = mapper or PageIndexMapper()
        self.emitter = emitter or EventEmitter()
        self.detector = detector or GapDetector(store, session, mapper=self.mapper, emitter=self.emitter)

    def _align(self, gaps: List[PageGap], report: GapReport, totals: SiteTotals) -> List[PageGap]:
        """Move gap page ids onto the current site totals."""

        shift = self.store.rebase(totals.total_pages)
        if not report.totals_estimated and report.total_pages > 0:
            shift = totals.total_pages - report.total_pages
        if shift == 0:
            return gaps
        logger.info("Gap report predates a site change; shifting pageIds by %+d", shift)
        aligned = []
        for gap in gaps:
            if gap.page_id + shift < 0:
                logger.warning("pageId %d no longer exists on the site; skipping", gap.page_id)
                continue
            aligned.append(replace(gap, page_id=gap.page_id + shift))
        return aligned

    def _repair_page(
        self,
        gap: PageGap,
        fetcher: FetchCapability,
        totals: SiteTotals,
        token: CancelToken,
    ) -> PageRepairOutcome:
        still_missing = set(gap.missing_indices) - self.store.existing_slot_indices(gap.page_id)
        if not still_missing:
            logger.info("pageId %d already repaired; skipping", gap.page_id)
            return PageRepairOutcome(page_id=gap.page_id, status="skipped")

        offset = self.mapper.offset(totals.last_page_record_count)
        matched: List[Record] = []
        for site_page in self.mapper.site_pages_for(gap.page_id, totals.total_pages):
            page = fetcher.fetch_listing_page(site_page, token, 1)
            for record in page.records:
                if record.slot is None or record.slot >= self.mapper.page_size:
                    continue
                page_id, index_in_page = self.mapper.map_slot(
                    site_page, record.slot, offset, totals.total_pages
                )
                if page_id == gap.page_id and index_in_page in still_missing:
                    record.page_id = page_id
                    record.index_in_page = index_in_page
                    matched.append(record)

        if not matched:
            logger.info("pageId %d: none of %d missing slot(s) found on the site", gap.page_id, len(still_missing))
            return PageRepairOutcome(page_id=gap.page_id, status="skipped")
        saved = self.store.save(matched)
        logger.info(
            "pageId %d: recovered %d/%d missing slot(s) (added=%d updated=%d)",
            gap.page_id,
            len(matched),
            len(still_missing),
            saved.added,
            saved.updated,
        )
        return PageRepairOutcome(
            page_id=gap.page_id,
            status="collected" if saved.changed else "skipped",
            collected=saved.changed,
            failed=saved.failed,
        )

    def collect(
        self,
        report: GapReport,
        fetch_capability: Optional[FetchCapability] = None,
        options: Optional[GapCollectorOptions] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> GapCollectionResult:
        options = options or GapCollectorOptions()
        fetcher = fetch_capability or self.session.fetcher
        token = cancel_token or CancelToken()
        result = GapCollectionResult()
        gaps = order_gaps(report.missing_pages, options.prioritize_partial)
        if not gaps:
            logger.info("Gap collection: nothing to repair")
            self._publish(result)
            return result

        totals = self.session.get_totals(token)
        gaps = self._align(gaps, report, totals)
        chunk_size = max(1, options.max_concurrent_pages)
        pool = ConcurrencyPool(chunk_size)
        chunks = [gaps[start : start + chunk_size] for start in range(0, len(gaps), chunk_size)]
        logger.info(
            "Gap collection: %d page(s) in %d chunk(s) of up to %d",
            len(gaps),
            len(chunks),
            chunk_size,
        )

        def worker(gap: PageGap, worker_token: CancelToken) -> PageRepairOutcome:
            return self._repair_page(gap, fetcher, totals, worker_token)

        for number, chunk in enumerate(chunks, start=1):
            if number > 1:
                token.wait(options.delay_between_pages)
            for outcome in pool.run(chunk, worker, chunk_size, token):
                gap = outcome.item
                if outcome.ok:
                    page_outcome = outcome.result
                    result.collected += page_outcome.collected
                    result.failed += page_outcome.failed
                    if page_outcome.status == "skipped":
                        result.skipped += 1
                    result.page_outcomes.append(page_outcome)
                    continue
                error = classify_error(outcome.error or AbortedError(token.reason or "cancelled"), gap.page_id)
                result.failed += len(gap.missing_indices)
                result.errors.append(f"pageId {gap.page_id}: {error.describe()}")
                result.page_outcomes.append(
                    PageRepairOutcome(
                        page_id=gap.page_id,
                        status="aborted" if outcome.aborted else "failed",
                        failed=len(gap.missing_indices),
                        error=error.describe(),
                    )
                )
        self._publish(result)
        return result

    def collect_missing(
        self,
        options: Optional[GapCollectorOptions] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> Tuple[GapReport, GapCollectionResult]:
        """Detect gaps afresh and repair them."""

        report = self.detector.detect(cancel_token)
        return report, self.collect(report, None, options, cancel_token)

    def collect_page(
        self,
        page_id: int,
        options: Optional[GapCollectorOptions] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> GapCollectionResult:
        """Repair a single page after re-checking what it is missing."""

        report = self.detector.detect_in_range(page_id, page_id, cancel_token)
        return self.collect(report, None, options, cancel_token)

    def _publish(self, result: GapCollectionResult) -> None:
        log_gap_collection(result)
        self.emitter.emit(
            EVENT_GAP_COLLECTION,
            {
                "collected": result.collected,
                "failed": result.failed,
                "skipped": result.skipped,
                "pages": len(result.page_outcomes),
                "errors": list(result.errors),
            },
        )
