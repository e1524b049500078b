"""Conversion between site page numbers and stable internal page ids.

The remote site numbers its listing pages ascending from the oldest page
(site page 1) to the newest (site page ``total_pages``).  Internally pages are
identified by a descending ``page_id`` where 0 is always the newest page, so
existing ids stay put as the catalog grows.

The oldest site page may hold fewer than ``page_size`` records.  Records are
flattened into one ascending sequence starting at that short page, which is
what ``offset`` accounts for when slots are mapped to ``(page_id,
index_in_page)``.  A page id therefore draws its records from at most two site
pages: its primary ``total_pages - page_id`` and the page right after it.
"""

from __future__ import annotations

from typing import List, Tuple

from .errors import InitializationError

__all__ = ["DEFAULT_PAGE_SIZE", "PageIndexMapper"]

DEFAULT_PAGE_SIZE = 12


class PageIndexMapper:
    def __init__(self, page_size: int = DEFAULT_PAGE_SIZE) -> None:
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self.page_size = page_size

    @staticmethod
    def _check_total(total_pages: int) -> None:
        if total_pages <= 0:
            raise InitializationError(f"Invalid total page count: {total_pages}")

    def to_site_page(self, page_id: int, total_pages: int) -> int:
        self._check_total(total_pages)
        site_page = total_pages - page_id
        if page_id < 0 or site_page < 1 or site_page > total_pages:
            raise InitializationError(
                f"pageId {page_id} is outside 0..{total_pages - 1}",
                page_number=page_id,
            )
        return site_page

    def to_page_id(self, site_page: int, total_pages: int) -> int:
        self._check_total(total_pages)
        if site_page < 1 or site_page > total_pages:
            raise InitializationError(
                f"Site page {site_page} is outside 1..{total_pages}",
                page_number=site_page,
            )
        return total_pages - site_page

    def offset(self, last_page_record_count: int) -> int:
        if last_page_record_count < 0:
            raise InitializationError(
                f"Invalid last page record count: {last_page_record_count}"
            )
        return (self.page_size - last_page_record_count) % self.page_size

    def map_slot(
        self,
        site_page: int,
        slot_in_page: int,
        offset: int,
        total_pages: int,
    ) -> Tuple[int, int]:
        """Return ``(page_id, index_in_page)`` for a record slot.

        ``slot_in_page`` counts from the oldest record on ``site_page``.
        """

        self._check_total(total_pages)
        if site_page < 1 or site_page > total_pages:
            raise InitializationError(
                f"Site page {site_page} is outside 1..{total_pages}",
                page_number=site_page,
            )
        if slot_in_page < 0 or slot_in_page >= self.page_size:
            raise InitializationError(
                f"Slot {slot_in_page} is outside 0..{self.page_size - 1}",
                page_number=site_page,
            )
        if site_page == 1:
            position = slot_in_page
        else:
            position = (site_page - 1) * self.page_size + slot_in_page - offset
        block, index_in_page = divmod(position, self.page_size)
        page_id = total_pages - 1 - block
        if page_id < 0:
            raise InitializationError(
                f"Slot {slot_in_page} of site page {site_page} maps past the newest page",
                page_number=site_page,
            )
        return page_id, index_in_page

    def site_pages_for(self, page_id: int, total_pages: int) -> List[int]:
        """Site pages that contribute records to *page_id*, oldest first."""

        primary = self.to_site_page(page_id, total_pages)
        pages = [primary]
        if primary + 1 <= total_pages:
            pages.append(primary + 1)
        return pages

    def expected_count(
        self,
        page_id: int,
        total_pages: int,
        last_page_record_count: int,
    ) -> int:
        """Records a listing fetch of *page_id*'s site page should yield."""

        if self.to_site_page(page_id, total_pages) == 1:
            return last_page_record_count
        return self.page_size

    def expected_stored_count(
        self,
        page_id: int,
        total_pages: int,
        last_page_record_count: int,
    ) -> int:
        """Records storage should hold for *page_id* after slot mapping."""

        self.to_site_page(page_id, total_pages)
        if page_id == 0:
            return self.page_size - self.offset(last_page_record_count)
        return self.page_size
