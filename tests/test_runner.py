import json
import os

import pytest

from catalog_crawler.crawler import runner
from catalog_crawler.crawler.engine import CrawlOutcome
from catalog_crawler.crawler.errors import InitializationError
from catalog_crawler.crawler.task_models import GapCollectionResult, GapReport, Record


class _FakeEngine:
    instances = []

    def __init__(self, config):
        self.config = config
        self.closed = False
        self.run_args = []
        self.collect_options = None
        self.error = None
        _FakeEngine.instances.append(self)

    def run(self, page_limit=None):
        self.run_args.append(page_limit)
        if self.error is not None:
            raise self.error
        return CrawlOutcome("complete", "stored 1 record(s)", [Record(url="a", page_id=0, index_in_page=0)])

    def detect_gaps(self):
        return GapReport(total_pages=4, max_page_id=3)

    def collect_gaps(self, options):
        self.collect_options = options
        return GapReport(total_pages=4, max_page_id=3), GapCollectionResult(collected=2)

    def cancel(self, reason="stopped by user"):
        pass

    def close(self):
        self.closed = True


@pytest.fixture
def fake_engine(monkeypatch):
    _FakeEngine.instances = []
    monkeypatch.setattr(runner, "CrawlerEngine", _FakeEngine)
    return _FakeEngine


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "crawler_config.json"
    path.write_text(
        json.dumps(
            {
                "artifact_dir": str(tmp_path / "artifacts"),
                "tasks": [
                    {"name": "books", "listing_url": "https://books.example.com/?p={page}", "store_file": "books.json"},
                    {"name": "games", "listing_url": "https://games.example.com/{page}", "batch_size": 4},
                ],
            }
        ),
        encoding="utf-8",
    )
    return path


def test_crawl_uses_task_settings(fake_engine, config_file, tmp_path, capsys):
    exit_code = runner.main(["crawl", "--config", str(config_file), "--task", "books", "--page-limit", "3"])

    engine = fake_engine.instances[0]
    assert exit_code == 0
    assert engine.config.listing_url == "https://books.example.com/?p={page}"
    assert engine.config.page_range_limit == 3
    assert engine.config.store_file == os.path.join(str(tmp_path / "artifacts"), "books.json")
    assert engine.run_args == [3]
    assert engine.closed
    assert json.loads(capsys.readouterr().out)["status"] == "complete"


def test_collect_gaps_passes_options(fake_engine, config_file, capsys):
    exit_code = runner.main(
        [
            "collect-gaps",
            "--config",
            str(config_file),
            "--task",
            "games",
            "--max-concurrent-pages",
            "5",
            "--delay-between-pages",
            "0",
            "--no-prioritize-partial",
        ]
    )

    engine = fake_engine.instances[0]
    assert exit_code == 0
    assert engine.config.batch_size == 4
    assert engine.collect_options.max_concurrent_pages == 5
    assert engine.collect_options.prioritize_partial is False
    assert json.loads(capsys.readouterr().out)["collected"] == 2


def test_detect_gaps_prints_report(fake_engine, config_file, capsys):
    assert runner.main(["detect-gaps", "--config", str(config_file), "--task", "books"]) == 0

    output = json.loads(capsys.readouterr().out)
    assert output["total_pages"] == 4
    assert output["missing_page_ids"] == []


def test_unknown_task_is_a_configuration_error(fake_engine, config_file):
    assert runner.main(["crawl", "--config", str(config_file), "--task", "music"]) == 2
    assert fake_engine.instances == []


def test_initialization_failure_exit_code(fake_engine, config_file, monkeypatch):
    original_init = _FakeEngine.__init__

    def failing_init(self, config):
        original_init(self, config)
        self.error = InitializationError("no totals")

    monkeypatch.setattr(_FakeEngine, "__init__", failing_init)

    assert runner.main(["crawl", "--config", str(config_file), "--task", "books"]) == 1
    assert fake_engine.instances[0].closed


def test_interrupted_crawl_exit_code(fake_engine, config_file, monkeypatch, capsys):
    def interrupted_run(self, page_limit=None):
        return CrawlOutcome("cancelled", "interrupted", [Record(url="a", page_id=0, index_in_page=0)])

    monkeypatch.setattr(_FakeEngine, "run", interrupted_run)

    assert runner.main(["crawl", "--config", str(config_file), "--task", "books"]) == 130
    assert json.loads(capsys.readouterr().out)["status"] == "cancelled"
    assert fake_engine.instances[0].closed
