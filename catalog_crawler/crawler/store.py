from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from typing import Dict, Iterable, List, Optional, Set

from .task_models import Record, SaveResult

logger = logging.getLogger(__name__)

__all__ = ["RecordStore", "load_store"]

STORE_VERSION = 1


class RecordStore:
    """Catalog records keyed by URL, optionally backed by a JSON file.

    Without a ``path`` the store lives in memory only and ``flush`` is a no-op.

    Stored page ids count from the newest of ``total_pages`` site pages.  When
    the site's page count changes, :meth:`rebase` shifts every stored page id
    so it matches the new count; record positions counted from the oldest
    record do not move.
    """

    def __init__(self, path: Optional[str] = None) -> None:
        self.path = path
        self.records: Dict[str, Record] = {}
        self.total_pages: Optional[int] = None
        self._lock = threading.Lock()

    # queries -----------------------------------------------------------

    def count_existing(self, page_id: int) -> int:
        return len(self.existing_slot_indices(page_id))

    def existing_slot_indices(self, page_id: int) -> Set[int]:
        with self._lock:
            return {
                record.index_in_page
                for record in self.records.values()
                if record.page_id == page_id and record.index_in_page is not None
            }

    def max_known_page_id(self) -> Optional[int]:
        with self._lock:
            page_ids = [r.page_id for r in self.records.values() if r.page_id is not None]
        return max(page_ids) if page_ids else None

    def total_count(self) -> int:
        with self._lock:
            return len(self.records)

    def records_for_page(self, page_id: int) -> List[Record]:
        with self._lock:
            matches = [r for r in self.records.values() if r.page_id == page_id]
        return sorted(matches, key=lambda r: r.index_in_page or 0)

    # mutation ----------------------------------------------------------

    def rebase(self, total_pages: int) -> int:
        """Align stored page ids with a site of *total_pages* pages.

        Returns the shift applied.  A store without a recorded page count
        adopts *total_pages* as is.
        """

        if total_pages <= 0:
            raise ValueError(f"total_pages must be positive, got {total_pages}")
        with self._lock:
            previous = self.total_pages
            self.total_pages = total_pages
            if previous is None or previous == total_pages:
                return 0
            shift = total_pages - previous
            shifted = 0
            for record in self.records.values():
                if record.page_id is not None:
                    record.page_id += shift
                    shifted += 1
        if shift < 0:
            logger.warning(
                "Site shrank from %d to %d page(s); shifted %d stored pageId(s) by %d",
                previous,
                total_pages,
                shifted,
                shift,
            )
        else:
            logger.info(
                "Site grew from %d to %d page(s); shifted %d stored pageId(s) by +%d",
                previous,
                total_pages,
                shifted,
                shift,
            )
        return shift

    def save(self, records: Iterable[Record]) -> SaveResult:
        result = SaveResult()
        with self._lock:
            for record in records:
                if not record.url or record.page_id is None or record.index_in_page is None:
                    logger.warning("Refusing to store unpositioned record: %s", record.url or "(no url)")
                    result.failed += 1
                    continue
                existing = self.records.get(record.url)
                if existing is None:
                    self.records[record.url] = Record.from_dict(record.to_dict())
                    result.added += 1
                    continue
                merged_payload = dict(existing.payload)
                merged_payload.update(record.payload)
                if (
                    existing.page_id == record.page_id
                    and existing.index_in_page == record.index_in_page
                    and merged_payload == existing.payload
                ):
                    result.unchanged += 1
                    continue
                existing.page_id = record.page_id
                existing.index_in_page = record.index_in_page
                existing.site_page = record.site_page
                existing.slot = record.slot
                existing.payload = merged_payload
                result.updated += 1
        logger.info(
            "Saved records: added=%d updated=%d unchanged=%d failed=%d",
            result.added,
            result.updated,
            result.unchanged,
            result.failed,
        )
        return result

    # persistence -------------------------------------------------------

    def to_jsonable(self) -> Dict[str, object]:
        with self._lock:
            ordered = sorted(
                self.records.values(),
                key=lambda r: (-(r.page_id or 0), r.index_in_page or 0),
            )
            return {
                "version": STORE_VERSION,
                "total_pages": self.total_pages,
                "records": [record.to_dict() for record in ordered],
            }

    def flush(self) -> None:
        if not self.path:
            return
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        payload = self.to_jsonable()
        fd, temp_path = tempfile.mkstemp(prefix=".records-", suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, ensure_ascii=False, indent=2)
            os.replace(temp_path, self.path)
        except BaseException:
            if os.path.exists(temp_path):
                os.remove(temp_path)
            raise
        logger.info("Wrote %d record(s) to %s", len(payload["records"]), self.path)


def load_store(path: Optional[str]) -> RecordStore:
    store = RecordStore(path)
    if not path or not os.path.exists(path):
        return store
    with open(path, "r", encoding="utf-8") as fh:
        data = json.load(fh)
    if not isinstance(data, dict) or not isinstance(data.get("records"), list):
        raise ValueError(f"Record store {path} must contain a 'records' list")
    total_pages = data.get("total_pages")
    if isinstance(total_pages, int) and total_pages > 0:
        store.total_pages = total_pages
    for raw in data["records"]:
        if isinstance(raw, dict) and raw.get("url"):
            record = Record.from_dict(raw)
            store.records[record.url] = record
    logger.info("Loaded %d record(s) from %s", len(store.records), path)
    return store
