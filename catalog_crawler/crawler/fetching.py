"""Fetch capability: listing pages, site totals and record details over HTTP."""

from __future__ import annotations

import importlib
import logging
from types import ModuleType
from typing import Any, Dict, List, Optional

import httpx
import requests

from catalog_crawler.settings import CrawlerConfig

from .concurrency import CancelToken
from .errors import AbortedError, ExtractionError, InitializationError, PageError, classify_error
from .fetcher import DEFAULT_HEADERS, get as http_get, httpx_get, sleep_with_jitter
from .task_models import ListingPage, Record, SiteTotals

logger = logging.getLogger(__name__)

DEFAULT_PARSER_SPEC = "catalog_crawler.crawler.parser"

__all__ = [
    "DEFAULT_PARSER_SPEC",
    "FallbackFetcher",
    "FetchCapability",
    "HttpListingFetcher",
    "HttpxListingFetcher",
    "RequestsListingFetcher",
    "create_fetcher",
    "create_session",
    "load_parser_module",
]


def load_parser_module(spec: Optional[str]) -> ModuleType:
    """Import the listing parser named by *spec* (dotted module path)."""

    if not spec:
        return importlib.import_module(DEFAULT_PARSER_SPEC)
    return importlib.import_module(spec)


def create_session() -> requests.Session:
    """Return a requests session with default headers applied."""

    session = requests.Session()
    session.headers.update(DEFAULT_HEADERS)
    return session


class FetchCapability:
    """Interface every transport implements."""

    name = "base"

    def fetch_listing_page(
        self,
        site_page: int,
        cancel_token: CancelToken,
        attempt: int = 1,
    ) -> ListingPage:
        raise NotImplementedError

    def fetch_site_totals(self, cancel_token: CancelToken) -> SiteTotals:
        raise NotImplementedError

    def fetch_detail(
        self,
        record: Record,
        cancel_token: CancelToken,
        attempt: int = 1,
    ) -> Dict[str, Any]:
        raise NotImplementedError

    def close(self) -> None:
        return None


class HttpListingFetcher(FetchCapability):
    """Shared HTTP logic; subclasses supply ``_get_text``.

    ``listing_url`` is a template with a ``{page}`` placeholder receiving the
    site page number.  Pages list their newest record first unless
    ``newest_first`` is false; records are handed out oldest slot first.
    """

    def __init__(
        self,
        listing_url: str,
        *,
        parser_spec: Optional[str] = None,
        timeout: float = 20.0,
        min_delay: float = 0.0,
        max_delay: float = 0.0,
        totals_retry_count: int = 3,
        totals_retry_delay: float = 1.0,
        newest_first: bool = True,
    ) -> None:
        if "{page}" not in listing_url:
            raise ValueError("listing_url must contain a '{page}' placeholder")
        self.listing_url = listing_url
        self.parser = load_parser_module(parser_spec)
        self.timeout = timeout
        self.min_delay = max(0.0, min_delay)
        self.max_delay = max(self.min_delay, max_delay)
        self.totals_retry_count = max(1, totals_retry_count)
        self.totals_retry_delay = totals_retry_delay
        self.newest_first = newest_first

    def page_url(self, site_page: int) -> str:
        return self.listing_url.format(page=site_page)

    def _get_text(self, url: str) -> str:
        raise NotImplementedError

    def _download(self, url: str, cancel_token: CancelToken, page_number: int, attempt: int) -> str:
        cancel_token.raise_if_cancelled(page_number, attempt)
        if sleep_with_jitter(self.min_delay, self.max_delay - self.min_delay, cancel_token):
            raise AbortedError(cancel_token.reason or "cancelled", page_number, attempt)
        logger.debug("[%s] GET %s (attempt %d)", self.name, url, attempt)
        try:
            html = self._get_text(url)
        except Exception as exc:
            raise classify_error(exc, page_number, attempt) from exc
        cancel_token.raise_if_cancelled(page_number, attempt)
        return html

    def _entries(self, html: str, url: str, page_number: int, attempt: int) -> List[Dict[str, Any]]:
        try:
            entries = self.parser.parse_listing(html, url)
        except Exception as exc:
            raise ExtractionError(f"Listing parse failed for {url}: {exc}", page_number, attempt) from exc
        return list(entries)

    def fetch_listing_page(
        self,
        site_page: int,
        cancel_token: CancelToken,
        attempt: int = 1,
    ) -> ListingPage:
        url = self.page_url(site_page)
        html = self._download(url, cancel_token, site_page, attempt)
        entries = self._entries(html, url, site_page, attempt)
        if not entries:
            raise ExtractionError(f"No records found on {url}", site_page, attempt)
        if self.newest_first:
            entries.reverse()
        records = []
        for slot, entry in enumerate(entries):
            payload = {key: value for key, value in entry.items() if key != "url"}
            records.append(Record(url=str(entry["url"]), site_page=site_page, slot=slot, payload=payload))
        return ListingPage(records=records, url=url, site_page=site_page, attempt=attempt)

    def fetch_site_totals(self, cancel_token: CancelToken) -> SiteTotals:
        url = self.page_url(1)
        last_error: Optional[PageError] = None
        for attempt in range(1, self.totals_retry_count + 1):
            try:
                html = self._download(url, cancel_token, 1, attempt)
                total_pages = self.parser.parse_total_pages(html, url)
                if not total_pages:
                    raise ExtractionError(f"No pagination found on {url}", 1, attempt)
                last_count = len(self._entries(html, url, 1, attempt))
                totals = SiteTotals(total_pages=int(total_pages), last_page_record_count=last_count)
                logger.info(
                    "[%s] Site totals: %d page(s), boundary page holds %d record(s)",
                    self.name,
                    totals.total_pages,
                    totals.last_page_record_count,
                )
                return totals
            except AbortedError:
                raise
            except PageError as exc:
                last_error = exc
                logger.warning(
                    "[%s] Totals attempt %d/%d failed: %s",
                    self.name,
                    attempt,
                    self.totals_retry_count,
                    exc.describe(),
                )
            if attempt < self.totals_retry_count:
                if cancel_token.wait(self.totals_retry_delay * (2 ** (attempt - 1))):
                    raise AbortedError(cancel_token.reason or "cancelled", 1, attempt)
        raise InitializationError(
            f"Could not resolve site totals after {self.totals_retry_count} attempt(s): "
            f"{last_error.message if last_error else 'unknown error'}"
        )

    def fetch_detail(
        self,
        record: Record,
        cancel_token: CancelToken,
        attempt: int = 1,
    ) -> Dict[str, Any]:
        html = self._download(record.url, cancel_token, record.page_id or 0, attempt)
        try:
            return dict(self.parser.parse_detail(html, record.url))
        except Exception as exc:
            raise ExtractionError(
                f"Detail parse failed for {record.url}: {exc}", record.page_id, attempt
            ) from exc


class RequestsListingFetcher(HttpListingFetcher):
    name = "requests"

    def __init__(self, listing_url: str, **kwargs: Any) -> None:
        super().__init__(listing_url, **kwargs)
        self.session = create_session()

    def _get_text(self, url: str) -> str:
        return http_get(url, session=self.session, timeout=self.timeout).text

    def close(self) -> None:
        self.session.close()


class HttpxListingFetcher(HttpListingFetcher):
    name = "httpx"

    def __init__(self, listing_url: str, **kwargs: Any) -> None:
        super().__init__(listing_url, **kwargs)
        self.client = httpx.Client(headers=DEFAULT_HEADERS, follow_redirects=True, trust_env=False)

    def _get_text(self, url: str) -> str:
        return httpx_get(url, client=self.client, timeout=self.timeout).text

    def close(self) -> None:
        self.client.close()


class FallbackFetcher(FetchCapability):
    """Try ``primary`` first and repeat a failed call on ``secondary``.

    Cancellation is never retried on the secondary transport.
    """

    name = "fallback"

    def __init__(self, primary: FetchCapability, secondary: FetchCapability) -> None:
        self.primary = primary
        self.secondary = secondary

    def _call(self, method: str, *args: Any) -> Any:
        try:
            return getattr(self.primary, method)(*args)
        except AbortedError:
            raise
        except PageError as exc:
            logger.warning(
                "Transport '%s' failed for %s (%s); falling back to '%s'",
                self.primary.name,
                method,
                exc.describe(),
                self.secondary.name,
            )
        return getattr(self.secondary, method)(*args)

    def fetch_listing_page(
        self,
        site_page: int,
        cancel_token: CancelToken,
        attempt: int = 1,
    ) -> ListingPage:
        return self._call("fetch_listing_page", site_page, cancel_token, attempt)

    def fetch_site_totals(self, cancel_token: CancelToken) -> SiteTotals:
        return self._call("fetch_site_totals", cancel_token)

    def fetch_detail(
        self,
        record: Record,
        cancel_token: CancelToken,
        attempt: int = 1,
    ) -> Dict[str, Any]:
        return self._call("fetch_detail", record, cancel_token, attempt)

    def close(self) -> None:
        try:
            self.primary.close()
        finally:
            self.secondary.close()


def create_fetcher(config: CrawlerConfig) -> FetchCapability:
    """Build the transport selected by ``config.transport``."""

    if not config.listing_url:
        raise InitializationError("No listing_url configured")
    options = dict(
        parser_spec=config.parser,
        timeout=config.page_timeout,
        min_delay=config.min_request_delay,
        max_delay=config.max_request_delay,
        totals_retry_count=config.totals_retry_count,
        totals_retry_delay=config.retry_delay,
        newest_first=config.newest_first,
    )
    transport = (config.transport or "auto").lower()
    if transport == "requests":
        return RequestsListingFetcher(config.listing_url, **options)
    if transport == "httpx":
        return HttpxListingFetcher(config.listing_url, **options)
    if transport == "auto":
        return FallbackFetcher(
            RequestsListingFetcher(config.listing_url, **options),
            HttpxListingFetcher(config.listing_url, **options),
        )
    raise InitializationError(f"Unknown transport '{config.transport}'")
