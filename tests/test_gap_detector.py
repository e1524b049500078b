from catalog_crawler.crawler.errors import InitializationError
from catalog_crawler.crawler.gap_detector import (
    GapDetector,
    build_crawling_ranges,
    recommend_batches,
)
from catalog_crawler.crawler.page_index import PageIndexMapper
from catalog_crawler.crawler.progress import EventEmitter
from catalog_crawler.crawler.session import CrawlSession
from catalog_crawler.crawler.store import RecordStore
from catalog_crawler.crawler.task_models import PageGap


def _gap(page_id, missing, expected=12):
    return PageGap(
        page_id=page_id,
        missing_indices=set(missing),
        expected_count=expected,
        actual_count=expected - len(missing),
    )


def test_complete_dataset_reports_nothing(make_site, mapper):
    site = make_site(10, 5)
    store = RecordStore()
    site.fill_store(store, mapper)

    report = GapDetector(store, CrawlSession(site), mapper=mapper).detect()

    assert report.total_missing_products == 0
    assert report.crawling_ranges == []
    assert report.missing_pages == []
    assert report.complete_pages == 10
    assert report.batch is None


def test_partial_and_missing_pages_are_classified(make_site, mapper):
    site = make_site(10, 5)
    store = RecordStore()
    site.fill_store(store, mapper, skip={(4, 3), (4, 7)}, skip_pages={6})

    report = GapDetector(store, CrawlSession(site), mapper=mapper).detect()

    gaps = {gap.page_id: gap for gap in report.missing_pages}
    assert set(gaps) == {4, 6}
    assert gaps[4].missing_indices == {3, 7}
    assert gaps[4].actual_count == 10
    assert 0 < gaps[4].completeness_ratio < 1
    assert gaps[6].is_fully_missing
    assert gaps[6].completeness_ratio == 0
    assert report.partial_pages == 1
    assert report.fully_missing_pages == 1
    assert report.total_missing_products == 14


def test_missing_page_ids_merge_into_ranges_by_priority():
    mapper = PageIndexMapper(12)
    gaps = [_gap(1, range(12)), _gap(2, range(12)), _gap(3, range(12)), _gap(10, range(12))]

    ranges = build_crawling_ranges(gaps, 20, mapper)

    assert len(ranges) == 2
    first, second = ranges
    assert first.contained_missing_page_ids == [1, 2, 3]
    assert first.priority == 1
    assert (first.start_site_page, first.end_site_page) == (16, 20)
    assert second.contained_missing_page_ids == [10]
    assert second.priority > first.priority
    assert (second.start_site_page, second.end_site_page) == (9, 12)
    assert second.estimated_records == 4 * 12


def test_single_partial_page_gets_lowest_priority():
    ranges = build_crawling_ranges([_gap(5, [2])], 20, PageIndexMapper(12))

    assert len(ranges) == 1
    assert ranges[0].priority == 3


def test_batch_recommendation_is_derived_from_ranges():
    mapper = PageIndexMapper(12)
    ranges = build_crawling_ranges([_gap(page_id, range(12)) for page_id in range(0, 40, 8)], 60, mapper)

    batch = recommend_batches(ranges)

    pages = sum(item.page_count for item in ranges)
    assert batch.batch_size == min(10, pages)
    assert 1 <= batch.recommended_concurrency <= 5
    assert batch.estimated_minutes >= 1


def test_totals_failure_falls_back_to_estimate(make_site, mapper):
    site = make_site(10, 12)
    store = RecordStore()
    site.fill_store(store, mapper, skip_pages={3})
    site.totals_error = InitializationError("site down")

    report = GapDetector(store, CrawlSession(site), mapper=mapper).detect()

    assert report.totals_estimated
    assert report.total_pages == 9 + 50
    assert report.missing_page_ids == [3]


def test_detect_in_range_limits_pages(make_site, mapper):
    site = make_site(10, 12)
    store = RecordStore()
    site.fill_store(store, mapper, skip_pages={1, 7})

    report = GapDetector(store, CrawlSession(site), mapper=mapper).detect_in_range(5, 8)

    assert report.missing_page_ids == [7]
    assert report.complete_pages == 3


def test_empty_store_reports_nothing(make_site, mapper):
    emitter = EventEmitter()
    events = []
    emitter.on("gap-report", events.append)

    report = GapDetector(RecordStore(), CrawlSession(make_site(3, 12)), mapper=mapper, emitter=emitter).detect()

    assert report.total_missing_products == 0
    assert events and events[0]["missing_page_ids"] == []


def test_estimate_trusts_stored_newest_page(make_site, mapper):
    site = make_site(10, 5)
    store = RecordStore()
    site.fill_store(store, mapper)
    site.totals_error = InitializationError("site down")

    report = GapDetector(store, CrawlSession(site), mapper=mapper).detect()

    assert report.totals_estimated
    assert report.missing_pages == []
    assert report.crawling_ranges == []


def test_estimate_still_finds_holes_in_newest_page(make_site, mapper):
    site = make_site(10, 5)
    store = RecordStore()
    site.fill_store(store, mapper, skip={(0, 2)})
    site.totals_error = InitializationError("site down")

    report = GapDetector(store, CrawlSession(site), mapper=mapper).detect()

    assert report.missing_page_ids == [0]
    assert report.missing_pages[0].missing_indices == {2}
    assert report.missing_pages[0].expected_count == 5
