"""Default listing parser.

A parser module exposes ``parse_listing``, ``parse_total_pages`` and
``parse_detail``; another module with the same functions can be selected with
the ``parser`` configuration key.
"""

from __future__ import annotations

import re
from typing import Dict, List, Optional
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag


LISTING_ITEM_SELECTORS = (
    "[data-record-url]",
    ".product-item",
    "li.product",
    "article.post",
    ".listing-item",
)
PAGINATION_SELECTORS = (
    ".pagination a",
    ".page-numbers",
    "nav.pagination a",
    "a[data-page]",
)

_PAGE_NUMBER_RE = re.compile(r"^\s*(\d+)\s*$")
_PAGE_QUERY_RE = re.compile(r"(?:[?&](?:page|paged|p)=|/page/)(\d+)")


def _soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "html.parser")


def _clean_text(value: Optional[str]) -> str:
    if not value:
        return ""
    return " ".join(value.split())


def _item_link(item: Tag) -> Optional[Tag]:
    if item.name == "a" and item.get("href"):
        return item
    link = item.find("a", href=True)
    return link if isinstance(link, Tag) else None


def parse_listing(html: str, base_url: str) -> List[Dict[str, str]]:
    """Return listing entries in document order with absolute URLs."""

    soup = _soup(html)
    items: List[Tag] = []
    for selector in LISTING_ITEM_SELECTORS:
        items = soup.select(selector)
        if items:
            break

    entries: List[Dict[str, str]] = []
    seen = set()
    for item in items:
        explicit = item.get("data-record-url")
        link = _item_link(item)
        href = explicit if isinstance(explicit, str) and explicit else None
        if href is None and link is not None:
            href = str(link["href"])
        if not href:
            continue
        url = urljoin(base_url, href.strip())
        if url in seen:
            continue
        seen.add(url)
        title_node = item.find(["h2", "h3", "h4"]) or link
        entries.append(
            {
                "url": url,
                "title": _clean_text(title_node.get_text(" ")) if title_node else "",
            }
        )
    return entries


def parse_total_pages(html: str, base_url: str) -> Optional[int]:
    """Highest page number advertised by the pagination widget."""

    soup = _soup(html)
    highest: Optional[int] = None
    for selector in PAGINATION_SELECTORS:
        for node in soup.select(selector):
            candidates = []
            data_page = node.get("data-page")
            if isinstance(data_page, str):
                candidates.append(data_page)
            candidates.append(node.get_text())
            href = node.get("href")
            if isinstance(href, str):
                match = _PAGE_QUERY_RE.search(href)
                if match:
                    candidates.append(match.group(1))
            for candidate in candidates:
                number_match = _PAGE_NUMBER_RE.match(candidate or "")
                if number_match:
                    number = int(number_match.group(1))
                    if highest is None or number > highest:
                        highest = number
    if highest is None and parse_listing(html, base_url):
        return 1
    return highest


def parse_detail(html: str, url: str) -> Dict[str, str]:
    """Collect a title plus label/value pairs from tables and definition lists."""

    soup = _soup(html)
    details: Dict[str, str] = {}
    heading = soup.find("h1")
    if heading is not None:
        details["title"] = _clean_text(heading.get_text(" "))
    elif soup.title is not None and soup.title.string:
        details["title"] = _clean_text(soup.title.string)

    for row in soup.select("table tr"):
        cells = row.find_all(["th", "td"])
        if len(cells) >= 2:
            label = _clean_text(cells[0].get_text(" ")).rstrip(":")
            value = _clean_text(cells[1].get_text(" "))
            if label and label not in details:
                details[label] = value

    for term in soup.find_all("dt"):
        definition = term.find_next_sibling("dd")
        if definition is None:
            continue
        label = _clean_text(term.get_text(" ")).rstrip(":")
        if label and label not in details:
            details[label] = _clean_text(definition.get_text(" "))
    return details
