from __future__ import annotations

import threading
from typing import Dict, List, Optional, Set, Tuple

import pytest

from catalog_crawler.crawler.concurrency import CancelToken
from catalog_crawler.crawler.errors import ExtractionError, InitializationError, NavigationError
from catalog_crawler.crawler.fetching import FetchCapability
from catalog_crawler.crawler.page_index import PageIndexMapper
from catalog_crawler.crawler.store import RecordStore
from catalog_crawler.crawler.task_models import ListingPage, Record, SiteTotals
from catalog_crawler.settings import CrawlerConfig


class FakeSite(FetchCapability):
    """In-memory catalog: site page 1 holds ``last_count`` records, others a full page."""

    name = "fake"

    def __init__(self, total_pages: int, last_count: int, page_size: int = 12) -> None:
        self.total_pages = total_pages
        self.last_count = last_count
        self.page_size = page_size
        self.listing_failures: Dict[int, int] = {}
        self.short_pages: Dict[int, int] = {}
        self.detail_failures: Dict[str, int] = {}
        self.totals_error: Optional[Exception] = None
        self.listing_calls: List[Tuple[int, int]] = []
        self.detail_calls: List[str] = []
        self.totals_calls = 0
        self.closed = False
        self._lock = threading.Lock()

    def page_size_of(self, site_page: int) -> int:
        return self.last_count if site_page == 1 else self.page_size

    def url_for(self, site_page: int, slot: int) -> str:
        return f"https://catalog.example.com/item/{site_page}-{slot}"

    def fetch_site_totals(self, cancel_token: CancelToken) -> SiteTotals:
        with self._lock:
            self.totals_calls += 1
        if self.totals_error is not None:
            raise self.totals_error
        return SiteTotals(total_pages=self.total_pages, last_page_record_count=self.last_count)

    def fetch_listing_page(self, site_page: int, cancel_token: CancelToken, attempt: int = 1) -> ListingPage:
        cancel_token.raise_if_cancelled(site_page, attempt)
        with self._lock:
            self.listing_calls.append((site_page, attempt))
            remaining = self.listing_failures.get(site_page, 0)
            if remaining:
                self.listing_failures[site_page] = remaining - 1
        if remaining:
            raise NavigationError("connection reset", site_page, attempt)
        count = self.page_size_of(site_page)
        if site_page in self.short_pages:
            count = self.short_pages[site_page]
        if count == 0:
            raise ExtractionError("empty listing", site_page, attempt)
        records = [
            Record(url=self.url_for(site_page, slot), site_page=site_page, slot=slot, payload={"title": f"item {site_page}-{slot}"})
            for slot in range(count)
        ]
        return ListingPage(records=records, url=f"https://catalog.example.com/list/{site_page}", site_page=site_page, attempt=attempt)

    def fetch_detail(self, record: Record, cancel_token: CancelToken, attempt: int = 1) -> Dict[str, str]:
        cancel_token.raise_if_cancelled(record.page_id, attempt)
        with self._lock:
            self.detail_calls.append(record.url)
            remaining = self.detail_failures.get(record.url, 0)
            if remaining:
                self.detail_failures[record.url] = remaining - 1
        if remaining:
            raise NavigationError("detail timeout", record.page_id, attempt)
        return {"detail": f"details of {record.url}"}

    def close(self) -> None:
        self.closed = True

    def all_records(self, mapper: PageIndexMapper) -> List[Record]:
        offset = mapper.offset(self.last_count)
        records = []
        for site_page in range(1, self.total_pages + 1):
            for slot in range(self.page_size_of(site_page)):
                page_id, index = mapper.map_slot(site_page, slot, offset, self.total_pages)
                records.append(
                    Record(
                        url=self.url_for(site_page, slot),
                        page_id=page_id,
                        index_in_page=index,
                        site_page=site_page,
                        slot=slot,
                        payload={"title": f"item {site_page}-{slot}"},
                    )
                )
        return records

    def fill_store(
        self,
        store: RecordStore,
        mapper: PageIndexMapper,
        *,
        skip: Optional[Set[Tuple[int, int]]] = None,
        skip_pages: Optional[Set[int]] = None,
    ) -> None:
        skip = skip or set()
        skip_pages = skip_pages or set()
        store.save(
            record
            for record in self.all_records(mapper)
            if record.page_id not in skip_pages and (record.page_id, record.index_in_page) not in skip
        )


class GrowingCatalog(FetchCapability):
    """Catalog of ``count`` records ranked oldest first with stable URLs.

    Site page 1 holds the oldest remainder; raising ``count`` pushes new
    records onto the newest site page.
    """

    name = "growing"

    def __init__(self, count: int, page_size: int = 12) -> None:
        self.count = count
        self.page_size = page_size
        self.listing_calls: List[int] = []

    @property
    def total_pages(self) -> int:
        return -(-self.count // self.page_size)

    @property
    def last_count(self) -> int:
        return self.count - (self.total_pages - 1) * self.page_size

    def url_for(self, rank: int) -> str:
        return f"https://catalog.example.com/item/{rank}"

    def fetch_site_totals(self, cancel_token: CancelToken) -> SiteTotals:
        return SiteTotals(total_pages=self.total_pages, last_page_record_count=self.last_count)

    def fetch_listing_page(self, site_page: int, cancel_token: CancelToken, attempt: int = 1) -> ListingPage:
        cancel_token.raise_if_cancelled(site_page, attempt)
        self.listing_calls.append(site_page)
        if site_page == 1:
            ranks = range(self.last_count)
        else:
            first = self.last_count + (site_page - 2) * self.page_size
            ranks = range(first, first + self.page_size)
        records = [
            Record(url=self.url_for(rank), site_page=site_page, slot=slot, payload={"rank": rank})
            for slot, rank in enumerate(ranks)
        ]
        return ListingPage(records=records, url=f"https://catalog.example.com/list/{site_page}", site_page=site_page, attempt=attempt)


@pytest.fixture
def make_site():
    return FakeSite


@pytest.fixture
def make_catalog():
    return GrowingCatalog


@pytest.fixture
def config() -> CrawlerConfig:
    return CrawlerConfig(
        listing_url="https://catalog.example.com/list/{page}",
        page_range_limit=0,
        initial_concurrency=4,
        detail_concurrency=4,
        retry_concurrency=2,
        min_request_delay=0.0,
        max_request_delay=0.0,
        retry_delay=0.0,
        batch_delay=0.0,
        progress_interval=0.0,
        store_file=None,
    )


@pytest.fixture
def mapper() -> PageIndexMapper:
    return PageIndexMapper(12)
