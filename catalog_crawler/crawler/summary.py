from __future__ import annotations

import logging
from typing import Any, Dict

from .task_models import GapCollectionResult, GapReport

logger = logging.getLogger(__name__)

MAX_PREVIEW = 10


def _preview(values) -> str:
    items = [str(value) for value in values]
    text = ", ".join(items[:MAX_PREVIEW])
    if len(items) > MAX_PREVIEW:
        text += ", ..."
    return text


def log_stage_summary(summary: Dict[str, Any]) -> None:
    counts = summary.get("counts", {})
    logger.info(
        (
            "Stage '%s' summary (%s): units=%d attempted=%d; success=%d, "
            "incomplete=%d, failed=%d, waiting=%d; success rate=%.1f%%; "
            "retry cycles=%d; elapsed=%.2fs"
        ),
        summary.get("stage"),
        summary.get("state"),
        summary.get("total", 0),
        summary.get("attempted", 0),
        counts.get("success", 0),
        counts.get("incomplete", 0),
        counts.get("failed", 0),
        counts.get("waiting", 0),
        summary.get("success_rate", 0.0) * 100,
        summary.get("retry_cycles", 0),
        summary.get("elapsed", 0.0),
    )


def log_gap_report(report: GapReport) -> None:
    logger.info(
        (
            "Gap report: total pages=%d%s, max pageId=%d; complete=%d, partial=%d, "
            "missing=%d; missing records=%d; crawling ranges=%d"
        ),
        report.total_pages,
        " (estimated)" if report.totals_estimated else "",
        report.max_page_id,
        report.complete_pages,
        report.partial_pages,
        report.fully_missing_pages,
        report.total_missing_products,
        len(report.crawling_ranges),
    )
    if report.missing_pages:
        logger.info("Incomplete pageIds: %s", _preview(report.missing_page_ids))
    for crawl_range in report.crawling_ranges:
        logger.info(
            "  site pages %d-%d (priority %d, ~%d records, pageIds %s)",
            crawl_range.start_site_page,
            crawl_range.end_site_page,
            crawl_range.priority,
            crawl_range.estimated_records,
            _preview(crawl_range.contained_missing_page_ids),
        )


def log_gap_collection(result: GapCollectionResult) -> None:
    logger.info(
        "Gap collection summary: pages=%d; collected=%d, failed=%d, skipped=%d; errors=%d",
        len(result.page_outcomes),
        result.collected,
        result.failed,
        result.skipped,
        len(result.errors),
    )
    if result.errors:
        logger.info("Gap collection errors: %s", _preview(result.errors))
