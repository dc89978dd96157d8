import asyncio

import pytest
import requests
from aiohttp import web
from aiohttp import test_utils

from lotsync.infrastructure.http import AuctionApiClient, parse_page
from lotsync.services.sync import (ConnectivityError, DataError,
                                   RateLimitedError, TransientError)


def _app(handler) -> web.Application:
    app = web.Application()
    app.router.add_get("/api/cars", handler)
    return app


def _with_client(handler, action, **client_kwargs):
    async def main():
        async with test_utils.TestServer(_app(handler)) as server:
            base_url = str(server.make_url("/api"))
            async with AuctionApiClient(base_url, **client_kwargs) as client:
                return await action(client)

    return asyncio.run(main())


def test_fetch_page_sends_pagination_and_api_key() -> None:
    seen = {}

    async def handler(request):
        seen["query"] = dict(request.query)
        seen["key"] = request.headers.get("x-api-key")
        return web.json_response(
            {"data": [{"id": 1}, {"id": 2}], "meta": {"last_page": 3, "total": 250}}
        )

    page = _with_client(handler, lambda c: c.fetch_page(2, 2), api_key="secret")

    assert seen["query"] == {"page": "2", "per_page": "2"}
    assert seen["key"] == "secret"
    assert [r["id"] for r in page.records] == [1, 2]
    assert page.has_more is True
    assert page.total == 250


def test_fetch_total_reads_metadata() -> None:
    async def handler(request):
        return web.json_response({"data": [{"id": 1}], "total": 192800})

    assert _with_client(handler, lambda c: c.fetch_total()) == 192800


@pytest.mark.parametrize(
    "status, headers, expected",
    [
        (429, {"Retry-After": "7"}, RateLimitedError),
        (503, {}, TransientError),
        (401, {}, ConnectivityError),
        (404, {}, ConnectivityError),
        (400, {}, DataError),
    ],
)
def test_error_statuses_map_to_sync_errors(status, headers, expected) -> None:
    async def handler(request):
        return web.Response(status=status, text="nope", headers=headers)

    with pytest.raises(expected) as excinfo:
        _with_client(handler, lambda c: c.fetch_page(1, 10))

    if expected is RateLimitedError:
        assert excinfo.value.retry_after == 7.0


def test_invalid_json_is_transient() -> None:
    async def handler(request):
        return web.Response(text="<html>maintenance</html>", content_type="text/html")

    with pytest.raises(TransientError):
        _with_client(handler, lambda c: c.fetch_page(1, 10))


def test_unreachable_host_is_connectivity_error() -> None:
    async def main():
        async with AuctionApiClient("http://127.0.0.1:9/api", timeout_seconds=2) as client:
            await client.fetch_page(1, 10)

    with pytest.raises(ConnectivityError):
        asyncio.run(main())


def test_parse_page_variants() -> None:
    full = parse_page({"cars": [{"id": i} for i in range(10)]}, 1, 10)
    assert full.has_more is True
    assert full.total is None

    short = parse_page({"data": [{"id": 1}]}, 4, 10)
    assert short.has_more is False

    linked = parse_page({"data": [{"id": 1}], "links": {"next": None}}, 1, 1)
    assert linked.has_more is False

    bare = parse_page([], 9, 10)
    assert bare.is_empty
    assert bare.page == 9


@pytest.mark.parametrize("body", ["oops", {"data": "not a list"}, 42])
def test_parse_page_rejects_unusable_bodies(body) -> None:
    with pytest.raises(DataError):
        parse_page(body, 1, 10)


def _response(status: int, body: str) -> requests.Response:
    resp = requests.Response()
    resp.status_code = status
    resp.reason = "OK" if status < 400 else "Error"
    resp._content = body.encode("utf-8")
    return resp


def test_probe_reports_reachability(monkeypatch) -> None:
    calls = []

    def fake_get(self, url, params=None, timeout=None):
        calls.append((url, params, self.headers.get("x-api-key")))
        return _response(200, '{"data": [], "total": 42}')

    monkeypatch.setattr(requests.Session, "get", fake_get)
    client = AuctionApiClient("https://upstream.example/api/", api_key="k")

    assert client.probe() == {"reachable": True, "status": 200, "total": 42, "error": None}
    assert calls == [("https://upstream.example/api/cars", {"page": 1, "per_page": 1}, "k")]


def test_probe_reports_auth_failures_and_network_errors(monkeypatch) -> None:
    monkeypatch.setattr(requests.Session, "get", lambda self, *a, **kw: _response(401, "no"))
    result = AuctionApiClient("https://upstream.example/api").probe()
    assert result["reachable"] is False
    assert result["status"] == 401
    assert result["error"].startswith("connectivity")

    def refuse(self, *args, **kwargs):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(requests.Session, "get", refuse)
    result = AuctionApiClient("https://upstream.example/api").probe()
    assert result == {"reachable": False, "status": None, "total": None, "error": "refused"}
