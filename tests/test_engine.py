import json

from catalog_crawler.crawler.engine import CrawlerEngine
from catalog_crawler.crawler.errors import InitializationError
from catalog_crawler.crawler.gap_collector import GapCollectorOptions
from catalog_crawler.crawler.progress import EventEmitter
from catalog_crawler.crawler.stage_detail_collection import DetailCollectionStage
from catalog_crawler.crawler.stage_list_collection import ListCollectionStage
from catalog_crawler.crawler.store import RecordStore

FAST = GapCollectorOptions(max_concurrent_pages=2, delay_between_pages=0.0)


def _engine(site, config, store=None, emitter=None):
    return CrawlerEngine(config, fetcher=site, store=store if store is not None else RecordStore(), emitter=emitter)


def test_complete_run_persists_records_with_details(make_site, config, tmp_path):
    site = make_site(3, 12)
    path = tmp_path / "records.json"
    engine = _engine(site, config, RecordStore(str(path)))

    outcome = engine.run()

    assert outcome.status == "complete"
    assert outcome.success
    assert outcome.save_result.added == 36
    assert engine.store.total_count() == 36
    assert all("detail" in record.payload for record in engine.store.records.values())
    assert len(json.loads(path.read_text(encoding="utf-8"))["records"]) == 36


def test_second_run_finds_nothing_new(make_site, config):
    site = make_site(3, 12)
    engine = _engine(site, config)
    engine.run()
    calls = len(site.listing_calls)

    outcome = engine.run()

    assert outcome.status == "complete"
    assert outcome.records == []
    assert len(site.listing_calls) == calls


def test_failed_listing_stage_persists_nothing(make_site, config):
    config.list_retry_count = 1
    site = make_site(4, 12)
    site.listing_failures[2] = 99
    engine = _engine(site, config)

    outcome = engine.run()

    assert outcome.status == "failed"
    assert len(outcome.records) == 3 * 12
    assert engine.store.total_count() == 0
    assert outcome.detail_result is None
    assert site.detail_calls == []


def test_totals_failure_fails_the_run(make_site, config):
    site = make_site(4, 12)
    site.totals_error = InitializationError("site unreachable")
    engine = _engine(site, config)

    outcome = engine.run()

    assert outcome.status == "failed"
    assert "site unreachable" in outcome.message
    assert outcome.records == []
    assert site.listing_calls == []


def test_detail_failures_make_run_partial(make_site, config):
    config.detail_retry_count = 0
    site = make_site(2, 12)
    site.detail_failures["https://catalog.example.com/item/2-0"] = 1
    engine = _engine(site, config)

    outcome = engine.run()

    assert outcome.status == "partial"
    assert not outcome.success
    assert engine.store.total_count() == 24
    assert "detail" not in engine.store.records["https://catalog.example.com/item/2-0"].payload


def test_listing_only_run_skips_details(make_site, config):
    config.collect_details = False
    site = make_site(2, 7)

    outcome = _engine(site, config).run()

    assert outcome.status == "complete"
    assert outcome.detail_result is None
    assert len(outcome.records) == 19
    assert site.detail_calls == []


def test_page_limit_bounds_run(make_site, config):
    site = make_site(10, 5)
    engine = _engine(site, config)

    outcome = engine.run(page_limit=2)

    assert sorted(site_page for site_page, _ in site.listing_calls) == [1, 2]
    assert {record.page_id for record in outcome.records} == {9, 8}
    assert len(outcome.records) == 5 + 12


def test_detect_and_collect_gaps(make_site, config, mapper):
    site = make_site(6, 12)
    store = RecordStore()
    site.fill_store(store, mapper, skip={(1, 5)}, skip_pages={3})
    events = []
    emitter = EventEmitter()
    emitter.on("gap-report", events.append)
    engine = _engine(site, config, store, emitter)

    report = engine.detect_gaps()
    _, result = engine.collect_gaps(FAST)

    assert report.missing_page_ids == [1, 3]
    assert result.collected == 13
    assert engine.detect_gaps().missing_page_ids == []
    assert len(events) >= 2


def test_cancel_without_run_is_harmless(make_site, config):
    site = make_site(1, 12)
    engine = _engine(site, config)

    engine.cancel()
    engine.close()

    assert site.closed


def test_rerun_after_site_growth_keeps_slots_unique(make_catalog, config):
    config.collect_details = False
    catalog = make_catalog(120)
    engine = _engine(catalog, config)
    engine.run()
    catalog.count = 121

    outcome = engine.run()

    store = engine.store
    slots = [(record.page_id, record.index_in_page) for record in store.records.values()]
    assert outcome.status == "complete"
    assert catalog.listing_calls[10:] == [11]
    assert store.total_count() == 121
    assert len(set(slots)) == 121
    assert store.total_pages == 11
    assert (store.records[catalog.url_for(120)].page_id, store.records[catalog.url_for(120)].index_in_page) == (0, 0)
    assert (store.records[catalog.url_for(0)].page_id, store.records[catalog.url_for(0)].index_in_page) == (10, 0)
    assert engine.detect_gaps().missing_page_ids == []


def test_interrupt_during_details_keeps_listing(make_site, config, tmp_path, monkeypatch):
    def interrupt(self, records, cancel_token=None):
        raise KeyboardInterrupt

    monkeypatch.setattr(DetailCollectionStage, "collect", interrupt)
    path = tmp_path / "records.json"
    engine = _engine(make_site(2, 12), config, RecordStore(str(path)))

    outcome = engine.run()

    assert outcome.status == "cancelled"
    assert outcome.message == "interrupted"
    assert engine.store.total_count() == 24
    assert len(json.loads(path.read_text(encoding="utf-8"))["records"]) == 24


def test_interrupt_during_listing_stores_nothing(make_site, config, tmp_path, monkeypatch):
    def interrupt(self, page_limit=None, cancel_token=None):
        raise KeyboardInterrupt

    monkeypatch.setattr(ListCollectionStage, "collect", interrupt)
    path = tmp_path / "records.json"
    engine = _engine(make_site(2, 12), config, RecordStore(str(path)))

    outcome = engine.run()

    assert outcome.status == "cancelled"
    assert outcome.records == []
    assert engine.store.total_count() == 0
    assert json.loads(path.read_text(encoding="utf-8"))["records"] == []
