from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Set


class UnitStatus(str, Enum):
    WAITING = "waiting"
    ATTEMPTING = "attempting"
    SUCCESS = "success"
    INCOMPLETE = "incomplete"
    FAILED = "failed"


@dataclass(frozen=True)
class PageRange:
    start_page_id: int
    end_page_id: int

    def __post_init__(self) -> None:
        if not self.start_page_id >= self.end_page_id >= 0:
            raise ValueError(
                f"Invalid page range {self.start_page_id}..{self.end_page_id}"
            )

    def page_ids(self) -> Iterator[int]:
        return iter(range(self.start_page_id, self.end_page_id - 1, -1))

    def __len__(self) -> int:
        return self.start_page_id - self.end_page_id + 1


@dataclass
class PageUnit:
    page_id: int
    status: UnitStatus = UnitStatus.WAITING
    attempt: int = 0

    @property
    def key(self) -> int:
        return self.page_id


@dataclass
class RecordUnit:
    url: str
    status: UnitStatus = UnitStatus.WAITING
    attempt: int = 0

    @property
    def key(self) -> str:
        return self.url


@dataclass(frozen=True)
class SiteTotals:
    total_pages: int
    last_page_record_count: int
    fetched_at: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        if self.total_pages <= 0:
            raise ValueError(f"total_pages must be positive, got {self.total_pages}")
        if self.last_page_record_count < 0:
            raise ValueError("last_page_record_count must not be negative")


@dataclass
class Record:
    """One catalog record; ``url`` is its stable identity."""

    url: str
    page_id: Optional[int] = None
    index_in_page: Optional[int] = None
    site_page: Optional[int] = None
    slot: Optional[int] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "page_id": self.page_id,
            "index_in_page": self.index_in_page,
            "site_page": self.site_page,
            "slot": self.slot,
            "payload": dict(self.payload),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Record":
        payload = data.get("payload")
        return cls(
            url=str(data["url"]),
            page_id=data.get("page_id"),
            index_in_page=data.get("index_in_page"),
            site_page=data.get("site_page"),
            slot=data.get("slot"),
            payload=dict(payload) if isinstance(payload, dict) else {},
        )


@dataclass
class ListingPage:
    """Records of one site page, ordered from the oldest slot."""

    records: List[Record]
    url: str
    site_page: int
    attempt: int = 1


@dataclass
class SaveResult:
    added: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0

    @property
    def changed(self) -> int:
        return self.added + self.updated


@dataclass
class PageGap:
    page_id: int
    missing_indices: Set[int]
    expected_count: int
    actual_count: int

    @property
    def completeness_ratio(self) -> float:
        if self.expected_count <= 0:
            return 1.0
        return max(0.0, min(1.0, self.actual_count / self.expected_count))

    @property
    def is_fully_missing(self) -> bool:
        return self.actual_count == 0


@dataclass
class CrawlingRange:
    start_site_page: int
    end_site_page: int
    contained_missing_page_ids: List[int]
    priority: int
    estimated_records: int

    @property
    def page_count(self) -> int:
        return self.end_site_page - self.start_site_page + 1


@dataclass
class BatchRecommendation:
    batch_size: int
    estimated_minutes: int
    recommended_concurrency: int


@dataclass
class GapReport:
    total_pages: int
    max_page_id: int
    missing_pages: List[PageGap] = field(default_factory=list)
    complete_pages: int = 0
    partial_pages: int = 0
    fully_missing_pages: int = 0
    total_missing_products: int = 0
    crawling_ranges: List[CrawlingRange] = field(default_factory=list)
    batch: Optional[BatchRecommendation] = None
    totals_estimated: bool = False

    @property
    def missing_page_ids(self) -> List[int]:
        return [gap.page_id for gap in self.missing_pages]


@dataclass
class PageRepairOutcome:
    page_id: int
    status: str
    collected: int = 0
    failed: int = 0
    error: Optional[str] = None


@dataclass
class GapCollectionResult:
    collected: int = 0
    failed: int = 0
    skipped: int = 0
    page_outcomes: List[PageRepairOutcome] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


@dataclass
class StageResult:
    stage: str
    success: bool
    records: List[Record] = field(default_factory=list)
    total_units: int = 0
    attempted_units: int = 0
    successful_units: int = 0
    failed_units: List[Any] = field(default_factory=list)
    retry_cycles: int = 0
    elapsed: float = 0.0
    message: Optional[str] = None

    @property
    def success_rate(self) -> float:
        if self.attempted_units <= 0:
            return 1.0 if self.total_units == 0 else 0.0
        return self.successful_units / self.attempted_units
