"""Error kinds raised while fetching and processing catalog pages."""

from __future__ import annotations

import socket
from typing import Optional

import httpx
import requests

__all__ = [
    "PageError",
    "PageTimeoutError",
    "AbortedError",
    "NavigationError",
    "ExtractionError",
    "InitializationError",
    "GenericPageError",
    "InvalidTransitionError",
    "classify_error",
]


class PageError(Exception):
    """Base class for every per-page failure.

    ``page_number`` is the site page (or pageId for stage-level errors) the
    failure belongs to and ``attempt`` the 1-based attempt that raised it.
    """

    kind = "generic"

    def __init__(
        self,
        message: str,
        page_number: Optional[int] = None,
        attempt: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.page_number = page_number
        self.attempt = attempt

    def describe(self) -> str:
        parts = [f"[{self.kind}]"]
        if self.page_number is not None:
            parts.append(f"page {self.page_number}")
        if self.attempt is not None:
            parts.append(f"attempt {self.attempt}")
        return f"{' '.join(parts)}: {self.message}"


class PageTimeoutError(PageError):
    kind = "timeout"


class AbortedError(PageError):
    """Raised when a worker observes cooperative cancellation."""

    kind = "aborted"


class NavigationError(PageError):
    kind = "navigation"


class ExtractionError(PageError):
    kind = "extraction"


class InitializationError(PageError):
    """Unrecoverable setup failure, e.g. site totals could not be resolved."""

    kind = "initialization"


class GenericPageError(PageError):
    kind = "generic"


class InvalidTransitionError(RuntimeError):
    """Raised when a stage is moved along an edge the state machine forbids."""


def classify_error(
    exc: BaseException,
    page_number: Optional[int] = None,
    attempt: Optional[int] = None,
) -> PageError:
    """Wrap *exc* into the matching :class:`PageError` subclass."""

    if isinstance(exc, PageError):
        if exc.page_number is None:
            exc.page_number = page_number
        if exc.attempt is None:
            exc.attempt = attempt
        return exc
    message = str(exc) or exc.__class__.__name__
    if isinstance(
        exc,
        (requests.Timeout, httpx.TimeoutException, socket.timeout, TimeoutError),
    ):
        error: PageError = PageTimeoutError(message, page_number, attempt)
    elif isinstance(exc, (requests.RequestException, httpx.HTTPError, ConnectionError)):
        error = NavigationError(message, page_number, attempt)
    elif isinstance(exc, (ValueError, KeyError, IndexError, AttributeError)):
        error = ExtractionError(message, page_number, attempt)
    else:
        error = GenericPageError(message, page_number, attempt)
    error.__cause__ = exc
    return error
