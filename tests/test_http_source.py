"""Tests for HttpRemoteSource over httpx.MockTransport.

Covers:
    - cursor pagination (paging.next.after) with bearer token and query params
    - page pagination ends on a short page
    - 404 on a single-record read -> None
    - 401/403 -> AuthExpiredError, never retried
    - 5xx retried, then succeeds
    - 4xx other than auth -> RemoteApiError, not retried
    - create/update bodies wrapped in the configured envelope
    - creates are resent only when the request never reached the remote or got a 429
"""

from __future__ import annotations

import json

import httpx
import pytest
from tenacity import wait_none

from src.recordsync.errors import AuthExpiredError, RemoteApiError
from src.recordsync.sources.adapter import fetch_all_pages
from src.recordsync.sources.http import HttpRemoteSource


@pytest.fixture(autouse=True)
def no_retry_wait(monkeypatch):
    monkeypatch.setattr(HttpRemoteSource._request.retry, "wait", wait_none())
    monkeypatch.setattr(HttpRemoteSource._request_create.retry, "wait", wait_none())


async def _token() -> str:
    return "tok-123"


def _source(handler, **overrides) -> HttpRemoteSource:
    defaults = {
        "system": "hubspot",
        "base_url": "https://api.example.com",
        "resource_path": "/crm/v3/objects/companies",
        "token_provider": _token,
        "transport": httpx.MockTransport(handler),
    }
    defaults.update(overrides)
    return HttpRemoteSource(**defaults)


# ── Pagination ──────────────────────────────────────────────────────────────


class TestPagination:
    async def test_cursor_pages(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            if request.url.params.get("after") == "c2":
                return httpx.Response(200, json={"results": [{"id": "3"}]})
            return httpx.Response(
                200, json={"results": [{"id": "1"}, {"id": "2"}], "paging": {"next": {"after": "c2"}}}
            )

        source = _source(handler, query={"properties": "name,domain"})

        items = await fetch_all_pages(source)

        assert [i["id"] for i in items] == ["1", "2", "3"]
        assert len(seen) == 2
        assert seen[0].headers["Authorization"] == "Bearer tok-123"
        assert seen[0].url.params["properties"] == "name,domain"
        assert "after" not in seen[0].url.params

    async def test_page_numbers_until_short_page(self) -> None:
        pages = {"1": [{"id": 1}, {"id": 2}], "2": [{"id": 3}]}
        requested: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            page = request.url.params["page"]
            requested.append(page)
            return httpx.Response(200, json=pages.get(page, []))

        source = _source(handler, system="procore", pagination="page", page_size=2)

        items = await fetch_all_pages(source)

        assert [i["id"] for i in items] == [1, 2, 3]
        assert requested == ["1", "2"]


# ── Errors ──────────────────────────────────────────────────────────────────


class TestErrors:
    async def test_get_record_not_found(self) -> None:
        source = _source(lambda request: httpx.Response(404, json={"message": "nope"}))

        assert await source.get_record("missing") is None

    @pytest.mark.parametrize("status_code", [401, 403])
    async def test_auth_rejection_not_retried(self, status_code: int) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(status_code, json={"message": "expired"})

        with pytest.raises(AuthExpiredError) as exc_info:
            await _source(handler).fetch_page()

        assert exc_info.value.status_code == status_code
        assert calls == 1

    async def test_server_error_retried(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            if calls < 3:
                return httpx.Response(503, text="unavailable")
            return httpx.Response(200, json={"id": "42"})

        record = await _source(handler).get_record("42")

        assert record == {"id": "42"}
        assert calls == 3

    async def test_client_error_not_retried(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(422, json={"errors": {"name": ["can't be blank"]}})

        with pytest.raises(RemoteApiError) as exc_info:
            await _source(handler).create_record({"name": ""})

        assert exc_info.value.status_code == 422
        assert calls == 1


# ── Writes ──────────────────────────────────────────────────────────────────


class TestWrites:
    async def test_create_wrapped_in_envelope(self) -> None:
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(201, json={"id": 9001, "name": "NewCo"})

        source = _source(handler, system="procore", envelope="vendor")

        created = await source.create_record({"name": "NewCo"})

        assert bodies == [{"vendor": {"name": "NewCo"}}]
        assert created["id"] == 9001

    async def test_update_uses_patch(self) -> None:
        methods: list[tuple[str, str]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            methods.append((request.method, request.url.path))
            return httpx.Response(200, json={"id": 7})

        source = _source(handler, system="procore", resource_path="/rest/v1.0/companies/1/vendors")

        await source.update_record("7", {"business_phone": "555"})

        assert methods == [("PATCH", "/rest/v1.0/companies/1/vendors/7")]


# ── Create Retries ──────────────────────────────────────────────────────────


class TestCreateRetries:
    async def test_read_timeout_not_resent(self) -> None:
        posts = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal posts
            posts += 1
            if posts == 1:
                raise httpx.ReadTimeout("timed out waiting for response", request=request)
            return httpx.Response(201, json={"id": posts})

        source = _source(handler, system="procore", envelope="vendor")

        with pytest.raises(RemoteApiError) as exc_info:
            await source.create_record({"name": "NewCo"})

        assert exc_info.value.status_code is None
        assert posts == 1

    async def test_server_error_not_resent(self) -> None:
        posts = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal posts
            posts += 1
            return httpx.Response(502, text="bad gateway")

        with pytest.raises(RemoteApiError):
            await _source(handler, system="procore").create_record({"name": "NewCo"})

        assert posts == 1

    async def test_connect_error_resent(self) -> None:
        attempts = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(201, json={"id": 9001})

        created = await _source(handler, system="procore").create_record({"name": "NewCo"})

        assert created["id"] == 9001
        assert attempts == 2

    async def test_rate_limited_create_resent(self) -> None:
        attempts = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                return httpx.Response(429, text="slow down")
            return httpx.Response(201, json={"id": 9002})

        created = await _source(handler, system="procore").create_record({"name": "NewCo"})

        assert created["id"] == 9002
        assert attempts == 2

    async def test_update_retried_after_read_timeout(self) -> None:
        attempts = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise httpx.ReadTimeout("timed out waiting for response", request=request)
            return httpx.Response(200, json={"id": 7})

        await _source(handler, system="procore").update_record("7", {"business_phone": "555"})

        assert attempts == 2
