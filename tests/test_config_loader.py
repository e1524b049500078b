import json

import pytest

from catalog_crawler import config_loader
from catalog_crawler.settings import ConfigurationError, CrawlerConfig, build_config


def test_load_config_missing_file_returns_empty(tmp_path):
    assert config_loader.load_config(None) == {}
    assert config_loader.load_config(str(tmp_path / "absent.json")) == {}


def test_load_config_requires_object(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps([1, 2]), encoding="utf-8")

    with pytest.raises(ValueError):
        config_loader.load_config(str(path))


def test_select_task_value_precedence():
    task = {"batch_size": 5}
    global_config = {"batch_size": 7, "retry_delay": 3.0}

    assert config_loader.select_task_value(2, task, global_config, "batch_size", 1) == 2
    assert config_loader.select_task_value(None, task, global_config, "batch_size", 1) == 5
    assert config_loader.select_task_value(None, task, global_config, "retry_delay", 1.0) == 3.0
    assert config_loader.select_task_value(None, task, global_config, "missing", "d") == "d"


def test_find_task_config():
    config = {"tasks": [{"name": "books"}, {"name": "games"}]}

    assert config_loader.find_task_config(config, "games") == {"name": "games"}
    assert config_loader.find_task_config(config, None) is None
    assert config_loader.find_task_config({"tasks": [{"name": "solo"}]}, None) == {"name": "solo"}
    with pytest.raises(ValueError):
        config_loader.find_task_config(config, "music")


def test_resolve_artifact_path(tmp_path):
    artifact_dir = str(tmp_path)

    assert config_loader.resolve_artifact_path("records.json", artifact_dir) == str(tmp_path / "records.json")
    assert config_loader.resolve_artifact_path("/data/records.json", artifact_dir) == "/data/records.json"
    assert config_loader.resolve_artifact_path("  ", artifact_dir) is None


def test_build_config_defaults(monkeypatch):
    monkeypatch.delenv("CATALOG_CRAWLER_BATCH_SIZE", raising=False)

    config = build_config()

    assert config == CrawlerConfig()
    assert config.page_range_limit == 10
    assert config.list_retry_count == 9
    assert config.initial_concurrency == 16


def test_build_config_layers_cli_env_task_global(monkeypatch):
    monkeypatch.setenv("CATALOG_CRAWLER_BATCH_SIZE", "12")
    monkeypatch.setenv("CATALOG_CRAWLER_ENABLE_BATCH_PROCESSING", "yes")

    config = build_config(
        overrides={"retry_delay": 0.5},
        task_config={"listing_url": "https://catalog.example.com/{page}", "batch_size": 3, "retry_delay": 9},
        global_config={"transport": "httpx", "products_per_page": "24"},
    )

    assert config.retry_delay == 0.5
    assert config.batch_size == 12
    assert config.enable_batch_processing is True
    assert config.listing_url == "https://catalog.example.com/{page}"
    assert config.transport == "httpx"
    assert config.products_per_page == 24


@pytest.mark.parametrize(
    "overrides",
    [
        {"products_per_page": 0},
        {"initial_concurrency": 0},
        {"min_request_delay": 3.0, "max_request_delay": 1.0},
        {"transport": "carrier-pigeon"},
        {"batch_size": "many"},
    ],
)
def test_build_config_rejects_invalid_values(overrides):
    with pytest.raises(ConfigurationError):
        build_config(overrides=overrides)
