"""Client for the paginated vehicle auction API.

The sync engine talks to the upstream through :class:`AuctionApiClient`, an
aiohttp based client that maps HTTP failures onto the engine's error
categories. A blocking :meth:`AuctionApiClient.probe` built on ``requests``
serves the CLI health check without spinning up an event loop.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Mapping

import aiohttp
import requests

from lotsync.infrastructure.observability import get_logger
from lotsync.services.sync.errors import (ConnectivityError, DataError,
                                          ErrorCategory, RateLimitedError,
                                          TransientError, category_for_status)

logger = get_logger(__name__)


@dataclass
class UpstreamPage:
    """One page of raw upstream records."""

    page: int
    records: list[dict[str, Any]] = field(default_factory=list)
    has_more: bool = False
    total: int | None = None

    @property
    def is_empty(self) -> bool:
        return not self.records


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def error_for_status(status: int, reason: str, retry_after: str | None = None) -> Exception:
    """Build the engine exception matching an HTTP error status."""
    category = category_for_status(status)
    message = f"HTTP {status} {reason}".strip()
    if category == ErrorCategory.CONNECTIVITY:
        return ConnectivityError(message, status=status)
    if status == 429:
        return RateLimitedError(message, status=status, retry_after=_parse_retry_after(retry_after))
    if category == ErrorCategory.TRANSIENT:
        return TransientError(message, status=status)
    return DataError(message)


def _extract_total(body: Mapping[str, Any]) -> int | None:
    meta = body.get("meta") if isinstance(body.get("meta"), Mapping) else {}
    for raw in (body.get("total"), meta.get("total")):
        if raw is None:
            continue
        try:
            return int(raw)
        except (TypeError, ValueError):
            continue
    return None


def parse_page(body: Any, page: int, page_size: int) -> UpstreamPage:
    """Turn a decoded response body into an :class:`UpstreamPage`.

    Records are read from ``data`` (or ``cars``). ``has_more`` prefers the
    pagination metadata and falls back to "the page was full".
    """
    if isinstance(body, list):
        records, body = body, {}
    elif isinstance(body, Mapping):
        records = body.get("data")
        if records is None:
            records = body.get("cars", [])
    else:
        raise DataError(f"page {page}: unexpected response body of type {type(body).__name__}")
    if not isinstance(records, list):
        raise DataError(f"page {page}: records field is not a list")

    meta = body.get("meta") if isinstance(body.get("meta"), Mapping) else {}
    links = body.get("links") if isinstance(body.get("links"), Mapping) else {}
    last_page = meta.get("last_page", body.get("last_page"))
    if last_page is not None:
        try:
            has_more = page < int(last_page)
        except (TypeError, ValueError):
            has_more = len(records) >= page_size
    elif "next_page_url" in body or "next" in links:
        has_more = bool(body.get("next_page_url") or links.get("next"))
    else:
        has_more = len(records) >= page_size

    return UpstreamPage(page=page, records=list(records), has_more=has_more, total=_extract_total(body))


class AuctionApiClient:
    """Async client for ``GET {base_url}/cars?page=&per_page=``.

    Use as an async context manager so the underlying session is closed::

        async with AuctionApiClient(base_url, api_key="...") as client:
            page = await client.fetch_page(1, 100)
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str = "",
        timeout_seconds: float = 45.0,
        user_agent: str = "",
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        from lotsync import __version__

        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.headers = {
            "Accept": "application/json",
            "User-Agent": user_agent or f"lotsync/{__version__}",
        }
        if api_key:
            self.headers["x-api-key"] = api_key
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "AuctionApiClient":
        self._get_session()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers=self.headers)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    @property
    def cars_url(self) -> str:
        return f"{self.base_url}/cars"

    async def _get_json(self, params: dict[str, Any], description: str) -> Any:
        session = self._get_session()
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        try:
            async with session.get(
                self.cars_url, params=params, headers=self.headers, timeout=timeout
            ) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    logger.debug("%s returned %s: %s", description, resp.status, body[:200])
                    raise error_for_status(resp.status, resp.reason or "", resp.headers.get("Retry-After"))
                try:
                    return await resp.json(content_type=None)
                except (json.JSONDecodeError, aiohttp.ContentTypeError) as exc:
                    raise TransientError(f"{description}: invalid JSON body: {exc}") from exc
        except asyncio.TimeoutError as exc:
            raise TransientError(
                f"{description}: no response within {self.timeout_seconds:.0f}s"
            ) from exc
        except aiohttp.ClientConnectorError as exc:
            raise ConnectivityError(f"{description}: cannot reach {self.base_url}: {exc}") from exc

    async def fetch_page(self, page: int, page_size: int) -> UpstreamPage:
        """Fetch one page of listings.

        Raises:
            ConnectivityError: host unreachable or auth/deployment errors.
            TransientError: timeouts, 408/425/429 and 5xx answers.
            DataError: an unusable response body.
        """
        body = await self._get_json({"page": page, "per_page": page_size}, f"page {page}")
        return parse_page(body, page, page_size)

    async def fetch_total(self) -> int | None:
        """Return the upstream's reported record count, if it reports one."""
        body = await self._get_json({"page": 1, "per_page": 1}, "total")
        return _extract_total(body) if isinstance(body, Mapping) else None

    def probe(self) -> dict[str, Any]:
        """Blocking reachability check used by ``lotsync status --upstream``."""
        with requests.Session() as session:
            session.headers.update(self.headers)
            try:
                response = session.get(
                    self.cars_url,
                    params={"page": 1, "per_page": 1},
                    timeout=self.timeout_seconds,
                )
            except requests.RequestException as exc:
                return {"reachable": False, "status": None, "total": None, "error": str(exc)}
        if response.status_code >= 400:
            error = error_for_status(response.status_code, response.reason or "")
            return {
                "reachable": False,
                "status": response.status_code,
                "total": None,
                "error": f"{getattr(error, 'category', ErrorCategory.TRANSIENT).value}: {error}",
            }
        try:
            body = response.json()
        except ValueError as exc:
            return {"reachable": True, "status": response.status_code, "total": None, "error": str(exc)}
        total = _extract_total(body) if isinstance(body, Mapping) else None
        return {"reachable": True, "status": response.status_code, "total": total, "error": None}
