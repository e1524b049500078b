from __future__ import annotations

import argparse
import json
import logging
import os
from dataclasses import asdict
from typing import Any, Dict, Optional, Sequence

from catalog_crawler import config_loader
from catalog_crawler.settings import ConfigurationError, CrawlerConfig, build_config

from .engine import STATUS_CANCELLED, CrawlerEngine
from .errors import InitializationError
from .gap_collector import GapCollectorOptions

logger = logging.getLogger(__name__)


def _cli_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    return {
        "listing_url": args.listing_url,
        "page_range_limit": args.page_limit,
        "transport": args.transport,
        "parser": args.parser,
        "store_file": args.store_file,
    }


def _resolve_config(args: argparse.Namespace) -> CrawlerConfig:
    global_config = config_loader.load_config(args.config)
    try:
        task_config = config_loader.find_task_config(global_config, args.task)
    except ValueError as exc:
        raise ConfigurationError(str(exc)) from exc
    artifact_dir_value = config_loader.select_task_value(
        args.artifact_dir, task_config, global_config, "artifact_dir", "artifacts"
    )
    artifact_dir = os.path.abspath(str(artifact_dir_value))
    logger.info("Using artifact directory: %s", artifact_dir)
    config = build_config(_cli_overrides(args), task_config, global_config)
    config.store_file = config_loader.resolve_artifact_path(config.store_file, artifact_dir)
    return config


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=list))


def _run_crawl(engine: CrawlerEngine, args: argparse.Namespace) -> int:
    outcome = engine.run(args.page_limit)
    _print_json(
        {
            "status": outcome.status,
            "message": outcome.message,
            "records": len(outcome.records),
            "saved": asdict(outcome.save_result) if outcome.save_result else None,
        }
    )
    if outcome.status == STATUS_CANCELLED:
        return 130
    return 0 if outcome.success else 1


def _run_detect(engine: CrawlerEngine) -> int:
    report = engine.detect_gaps()
    _print_json(
        {
            "total_pages": report.total_pages,
            "totals_estimated": report.totals_estimated,
            "missing_page_ids": report.missing_page_ids,
            "total_missing_products": report.total_missing_products,
            "crawling_ranges": [asdict(item) for item in report.crawling_ranges],
            "batch": asdict(report.batch) if report.batch else None,
        }
    )
    return 0


def _run_collect(engine: CrawlerEngine, args: argparse.Namespace) -> int:
    options = GapCollectorOptions(
        max_concurrent_pages=args.max_concurrent_pages,
        delay_between_pages=args.delay_between_pages,
        prioritize_partial=not args.no_prioritize_partial,
    )
    report, result = engine.collect_gaps(options)
    _print_json(
        {
            "missing_page_ids": report.missing_page_ids,
            "collected": result.collected,
            "failed": result.failed,
            "skipped": result.skipped,
            "errors": result.errors,
        }
    )
    return 0 if not result.errors else 1


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Crawl a paginated catalog and repair gaps")
    parser.add_argument(
        "command",
        choices=("crawl", "detect-gaps", "collect-gaps"),
        help="operation to run",
    )
    parser.add_argument(
        "--config",
        default="crawler_config.json",
        help="path to JSON config with default settings",
    )
    parser.add_argument("--task", default=None, help="name of the configured task to use")
    parser.add_argument(
        "--artifact-dir",
        default=None,
        help="base directory for the record store",
    )
    parser.add_argument(
        "--listing-url",
        default=None,
        help="listing URL template containing {page}",
    )
    parser.add_argument(
        "--page-limit",
        type=int,
        default=None,
        help="maximum number of listing pages per run (0 = unlimited)",
    )
    parser.add_argument(
        "--transport",
        choices=("auto", "requests", "httpx"),
        default=None,
        help="HTTP transport; auto falls back from requests to httpx",
    )
    parser.add_argument("--parser", default=None, help="module implementing the listing parser")
    parser.add_argument("--store-file", default=None, help="JSON file holding collected records")
    parser.add_argument(
        "--max-concurrent-pages",
        type=int,
        default=3,
        help="pages repaired in parallel by collect-gaps",
    )
    parser.add_argument(
        "--delay-between-pages",
        type=float,
        default=1.0,
        help="pause in seconds between collect-gaps chunks",
    )
    parser.add_argument(
        "--no-prioritize-partial",
        action="store_true",
        help="repair pages in detection order instead of partial pages first",
    )
    args = parser.parse_args(argv)

    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s [%(levelname)s] %(message)s",
        )

    try:
        config = _resolve_config(args)
        engine = CrawlerEngine(config)
    except (ConfigurationError, InitializationError, ValueError) as exc:
        logger.error("Configuration error: %s", exc)
        return 2

    try:
        if args.command == "crawl":
            return _run_crawl(engine, args)
        if args.command == "detect-gaps":
            return _run_detect(engine)
        return _run_collect(engine, args)
    except InitializationError as exc:
        logger.error("%s", exc.describe())
        return 1
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return 130
    finally:
        engine.close()
