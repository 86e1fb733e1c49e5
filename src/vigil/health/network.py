"""Network reachability checks for the health monitor.

A job that talks to remote APIs fails in confusing ways when the network
is down; checking the endpoints it depends on lets the monitor say so
directly. Each configured URL gets one HTTP request per sample.

Examples:
    >>> checker = ConnectivityChecker(["https://api.example.com"], timeout=5)
    >>> unreachable = [r.url for r in checker.check() if not r.reachable]
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

import httpx

from vigil.core.logging import get_logger

logger = get_logger(__name__)


def check_http(url: str, *, timeout: float = 5.0) -> None:
    """``HEAD`` *url* and expect an answer from the server.

    Any response below 500 counts: a 401 or 404 still proves the network
    path and the server are up.

    Raises:
        httpx.HTTPError: On connection failure, timeout or a 5xx response.
    """
    response = httpx.head(url, timeout=timeout, follow_redirects=True)
    if response.status_code >= 500:
        response.raise_for_status()


@dataclass(frozen=True)
class EndpointResult:
    url: str
    reachable: bool
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"url": self.url, "reachable": self.reachable, "error": self.error}


class ConnectivityChecker:
    """Checks a fixed list of URLs.

    Args:
        urls: Endpoints the job depends on; empty disables the check
        timeout: Per-request timeout in seconds
        check: Callable raising ``httpx.HTTPError`` when *url* is unreachable
    """

    def __init__(
        self,
        urls: Sequence[str],
        *,
        timeout: float = 5.0,
        check: Callable[..., None] = check_http,
    ):
        self.urls = list(urls)
        self.timeout = timeout
        self._check = check

    @property
    def enabled(self) -> bool:
        return bool(self.urls)

    def check(self) -> list[EndpointResult]:
        results = []
        for url in self.urls:
            try:
                self._check(url, timeout=self.timeout)
            except httpx.HTTPError as e:
                logger.warning("endpoint_unreachable", url=url, error=str(e))
                results.append(EndpointResult(url, False, f"{type(e).__name__}: {e}"))
            else:
                results.append(EndpointResult(url, True))
        return results


__all__ = ["ConnectivityChecker", "EndpointResult", "check_http"]
