from __future__ import annotations

import random
import time
from typing import TYPE_CHECKING, Optional

import httpx
import requests

if TYPE_CHECKING:  # pragma: no cover
    from .concurrency import CancelToken


__all__ = [
    "DEFAULT_HEADERS",
    "sleep_with_jitter",
    "get",
    "httpx_get",
]


DEFAULT_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}


def sleep_with_jitter(
    delay: float,
    jitter: float,
    cancel_token: Optional["CancelToken"] = None,
) -> bool:
    """Pause for ``delay`` plus up to ``jitter`` seconds.

    With a cancel token the pause ends early on cancellation; the return value
    tells whether the token fired.
    """

    if delay <= 0 and jitter <= 0:
        return bool(cancel_token and cancel_token.cancelled)
    pause = delay + random.uniform(0, max(0.0, jitter))
    if cancel_token is not None:
        return cancel_token.wait(pause)
    time.sleep(pause)
    return False


def _effective_timeout(timeout: Optional[float]) -> Optional[float]:
    if isinstance(timeout, (int, float)) and timeout <= 0:
        return None
    return timeout


def get(
    url: str,
    *,
    session: Optional[requests.Session] = None,
    timeout: float = 30.0,
    headers: Optional[dict] = None,
) -> requests.Response:
    """GET *url* with requests; transport failures propagate as requests errors."""

    auto_session = session is None
    if auto_session:
        session = requests.Session()
        if headers is None:
            session.headers.update(DEFAULT_HEADERS)

    assert session is not None
    request_kwargs = {}
    effective_timeout = _effective_timeout(timeout)
    if effective_timeout is not None:
        request_kwargs["timeout"] = effective_timeout
    if headers is not None:
        request_kwargs["headers"] = headers
    try:
        response = session.get(url, **request_kwargs)
    finally:
        if auto_session:
            session.close()

    response.raise_for_status()
    encoding = (response.encoding or "").lower()
    if not encoding or encoding == "iso-8859-1":
        response.encoding = response.apparent_encoding or "utf-8"
    return response


def httpx_get(
    url: str,
    *,
    client: Optional[httpx.Client] = None,
    timeout: float = 30.0,
    headers: Optional[dict] = None,
) -> httpx.Response:
    """GET *url* with httpx; mirrors :func:`get` for the fallback transport."""

    auto_client = client is None
    if auto_client:
        client = httpx.Client(headers=headers or DEFAULT_HEADERS, follow_redirects=True, trust_env=False)

    assert client is not None
    try:
        response = client.get(url, timeout=_effective_timeout(timeout))
    finally:
        if auto_client:
            client.close()
    response.raise_for_status()
    return response
