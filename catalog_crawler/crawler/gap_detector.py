"""Find pages whose stored record count falls short of what the site holds."""

from __future__ import annotations

import logging
import math
from typing import Dict, List, Optional, Sequence, Tuple

from .concurrency import CancelToken
from .errors import AbortedError, PageError
from .page_index import DEFAULT_PAGE_SIZE, PageIndexMapper
from .progress import EVENT_GAP_REPORT, EventEmitter
from .session import CrawlSession
from .store import RecordStore
from .summary import log_gap_report
from .task_models import BatchRecommendation, CrawlingRange, GapReport, PageGap

logger = logging.getLogger(__name__)

__all__ = ["GapDetector", "build_crawling_ranges", "recommend_batches"]

TOTALS_SAFETY_MARGIN = 50
MERGE_GAP = 3
MAX_PAGES_PER_BATCH = 10
SECONDS_PER_PAGE = 5
SECONDS_PER_BATCH = 1
MAX_RECOMMENDED_CONCURRENCY = 5


def _priority(span: int, gaps: Sequence[PageGap]) -> int:
    if span >= 3 or len(gaps) >= 5:
        return 1
    if len(gaps) > 1 or any(gap.is_fully_missing for gap in gaps):
        return 2
    return 3


def build_crawling_ranges(
    gaps: Sequence[PageGap],
    total_pages: int,
    mapper: PageIndexMapper,
) -> List[CrawlingRange]:
    """Group the site pages behind *gaps* into expanded crawl ranges.

    Site pages at most ``MERGE_GAP`` apart share one range, which is then
    widened by one page on each side within ``1..total_pages``.
    """

    if not gaps:
        return []
    site_pages = set()
    primary: Dict[int, int] = {}
    for gap in gaps:
        pages = mapper.site_pages_for(gap.page_id, total_pages)
        primary[gap.page_id] = pages[0]
        site_pages.update(pages)

    groups: List[Tuple[int, int]] = []
    for page in sorted(site_pages):
        if groups and page <= groups[-1][1] + MERGE_GAP:
            groups[-1] = (groups[-1][0], page)
        else:
            groups.append((page, page))

    ranges: List[CrawlingRange] = []
    for start, end in groups:
        members = [gap for gap in gaps if start <= primary[gap.page_id] <= end]
        expanded_start = max(1, start - 1)
        expanded_end = min(total_pages, end + 1)
        ranges.append(
            CrawlingRange(
                start_site_page=expanded_start,
                end_site_page=expanded_end,
                contained_missing_page_ids=sorted(gap.page_id for gap in members),
                priority=_priority(end - start + 1, members),
                estimated_records=(expanded_end - expanded_start + 1) * mapper.page_size,
            )
        )
    ranges.sort(key=lambda item: (item.priority, item.start_site_page))
    return ranges


def recommend_batches(ranges: Sequence[CrawlingRange]) -> Optional[BatchRecommendation]:
    """Rough batching advice for a repair run; informational only."""

    pages = sum(item.page_count for item in ranges)
    if pages <= 0:
        return None
    batch_size = min(MAX_PAGES_PER_BATCH, pages)
    batches = math.ceil(pages / MAX_PAGES_PER_BATCH)
    seconds = pages * SECONDS_PER_PAGE + batches * SECONDS_PER_BATCH
    return BatchRecommendation(
        batch_size=batch_size,
        estimated_minutes=math.ceil(seconds / 60),
        recommended_concurrency=min(MAX_RECOMMENDED_CONCURRENCY, max(1, math.ceil(batches / 3))),
    )


class GapDetector:
    def __init__(
        self,
        store: RecordStore,
        session: Optional[CrawlSession] = None,
        *,
        mapper: Optional[PageIndexMapper] = None,
        emitter: Optional[EventEmitter] = None,
    ) -> None:
        self.store = store
        self.session = session
        self.mapper = mapper or PageIndexMapper(DEFAULT_PAGE_SIZE)
        self.emitter = emitter or EventEmitter()

    def _resolve_totals(
        self,
        floor_page_id: Optional[int],
        token: CancelToken,
    ) -> Tuple[int, Optional[int], bool]:
        if self.session is not None:
            try:
                totals = self.session.get_totals(token)
            except AbortedError:
                raise
            except PageError as exc:
                logger.warning("Site totals unavailable (%s); using estimate", exc.describe())
            else:
                self.store.rebase(totals.total_pages)
                reference = self._reference_page_id(floor_page_id)
                if totals.total_pages > reference:
                    return totals.total_pages, totals.last_page_record_count, False
                logger.warning(
                    "Site reports %d page(s) but storage knows pageId %d; using estimate",
                    totals.total_pages,
                    reference,
                )
        estimate = self._reference_page_id(floor_page_id) + TOTALS_SAFETY_MARGIN
        logger.warning("Assuming %d site page(s)", estimate)
        return estimate, None, True

    def _reference_page_id(self, floor_page_id: Optional[int]) -> int:
        known = [page_id for page_id in (self.store.max_known_page_id(), floor_page_id) if page_id is not None]
        return max(known) if known else 0

    def _expected(self, page_id: int, total_pages: int, last_count: Optional[int]) -> int:
        if last_count is not None and page_id < total_pages:
            return self.mapper.expected_stored_count(page_id, total_pages, last_count)
        if page_id == 0:
            # pageId 0 is short by an unknown offset; trust what is stored
            stored = self.store.existing_slot_indices(0)
            if stored:
                return min(self.mapper.page_size, max(stored) + 1)
        return self.mapper.page_size

    def detect(self, cancel_token: Optional[CancelToken] = None) -> GapReport:
        if self.store.max_known_page_id() is None:
            logger.info("Gap detection: storage is empty, nothing to compare")
            report = GapReport(total_pages=0, max_page_id=-1)
            self._publish(report)
            return report
        return self._detect(None, 0, cancel_token)

    def detect_in_range(
        self,
        start_page_id: int,
        end_page_id: int,
        cancel_token: Optional[CancelToken] = None,
    ) -> GapReport:
        return self._detect(start_page_id, end_page_id, cancel_token)

    def _detect(
        self,
        start_page_id: Optional[int],
        end_page_id: int,
        cancel_token: Optional[CancelToken],
    ) -> GapReport:
        token = cancel_token or CancelToken()
        bounds = [page_id for page_id in (start_page_id, end_page_id) if page_id is not None]
        if min(bounds) < 0:
            raise ValueError(f"pageId range {start_page_id}..{end_page_id} is negative")
        total_pages, last_count, estimated = self._resolve_totals(max(bounds), token)
        if start_page_id is None:
            # read after _resolve_totals rebased the store
            start_page_id = self._reference_page_id(end_page_id)
        low, high = sorted((start_page_id, end_page_id))
        logger.info(
            "Gap detection over pageIds %d..%d (site pages %d%s)",
            high,
            low,
            total_pages,
            ", estimated" if estimated else "",
        )

        report = GapReport(total_pages=total_pages, max_page_id=high, totals_estimated=estimated)
        for page_id in range(low, high + 1):
            token.raise_if_cancelled(page_id)
            expected = self._expected(page_id, total_pages, last_count)
            stored = {index for index in self.store.existing_slot_indices(page_id) if index < expected}
            missing = set(range(expected)) - stored
            if not missing:
                report.complete_pages += 1
                continue
            gap = PageGap(
                page_id=page_id,
                missing_indices=missing,
                expected_count=expected,
                actual_count=len(stored),
            )
            if gap.is_fully_missing:
                report.fully_missing_pages += 1
            else:
                report.partial_pages += 1
            report.total_missing_products += len(missing)
            report.missing_pages.append(gap)

        report.crawling_ranges = build_crawling_ranges(report.missing_pages, total_pages, self.mapper)
        report.batch = recommend_batches(report.crawling_ranges)
        self._publish(report)
        return report

    def _publish(self, report: GapReport) -> None:
        log_gap_report(report)
        self.emitter.emit(
            EVENT_GAP_REPORT,
            {
                "total_pages": report.total_pages,
                "max_page_id": report.max_page_id,
                "missing_page_ids": report.missing_page_ids,
                "total_missing_products": report.total_missing_products,
                "ranges": len(report.crawling_ranges),
                "totals_estimated": report.totals_estimated,
            },
        )
