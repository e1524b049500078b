"""Crawl stages, gap detection and repair."""

from .concurrency import CancelToken, ConcurrencyPool
from .engine import CrawlerEngine, CrawlOutcome
from .errors import (
    AbortedError,
    ExtractionError,
    GenericPageError,
    InitializationError,
    NavigationError,
    PageError,
    PageTimeoutError,
)
from .fetching import FallbackFetcher, FetchCapability, HttpxListingFetcher, RequestsListingFetcher
from .gap_collector import GapCollector, GapCollectorOptions
from .gap_detector import GapDetector
from .page_index import PageIndexMapper
from .progress import EventEmitter, ProgressAggregator
from .session import CrawlSession
from .stage_detail_collection import DetailCollectionStage
from .stage_list_collection import ListCollectionStage
from .state import Stage, StageState
from .store import RecordStore, load_store

__all__ = [
    "AbortedError",
    "CancelToken",
    "ConcurrencyPool",
    "CrawlOutcome",
    "CrawlSession",
    "CrawlerEngine",
    "DetailCollectionStage",
    "EventEmitter",
    "ExtractionError",
    "FallbackFetcher",
    "FetchCapability",
    "GapCollector",
    "GapCollectorOptions",
    "GapDetector",
    "GenericPageError",
    "HttpxListingFetcher",
    "InitializationError",
    "ListCollectionStage",
    "NavigationError",
    "PageError",
    "PageIndexMapper",
    "PageTimeoutError",
    "ProgressAggregator",
    "RecordStore",
    "RequestsListingFetcher",
    "Stage",
    "StageState",
    "load_store",
]
