"""Generic JSON-over-HTTP remote source.

Provides HttpRemoteSource, a RemoteSource over a REST collection endpoint,
with retry logic (tenacity, 3 attempts, exponential backoff 1-10s). Reads
and updates are retried on transport failures, rate limiting and 5xx
responses. Creates are not idempotent: they are retried only when the
request never reached the remote (connection failures, pool timeouts) or was
rejected with 429. Credential rejection (401/403) raises AuthExpiredError
immediately and is never retried.

Two pagination styles are supported:
- ``cursor``: the body is an object holding the items under ``items_key``
  and the next cursor at ``paging.next.after`` or ``next_cursor``.
- ``page``: the body is a list; pages are numbered from 1 and a short page
  ends the collection.

Credentials come from an optional async ``token_provider``; acquiring or
refreshing them is the provider's concern.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, Literal

import httpx
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from src.recordsync.errors import AuthExpiredError, RemoteApiError
from src.recordsync.sources.adapter import RemotePage, RemoteSource

logger = structlog.get_logger(__name__)


def _is_transient(exc: BaseException) -> bool:
    return (
        isinstance(exc, RemoteApiError)
        and not isinstance(exc, AuthExpiredError)
        and exc.is_transient
    )


_remote_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception(_is_transient),
    reraise=True,
)


def _was_not_sent(exc: BaseException) -> bool:
    """True when a failed create provably did not create anything remotely."""
    if not isinstance(exc, RemoteApiError) or isinstance(exc, AuthExpiredError):
        return False
    if exc.status_code == 429:
        return True
    return isinstance(exc.__cause__, (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout))


_create_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception(_was_not_sent),
    reraise=True,
)


class HttpRemoteSource(RemoteSource):
    """REST collection endpoint exposed as a RemoteSource.

    Args:
        system: External system name, used in logs and audit entries.
        base_url: API root, e.g. ``https://api.example.com``.
        resource_path: Collection path, e.g. ``/crm/v3/objects/companies``.
        token_provider: Async callable returning a bearer token.
        pagination: ``cursor`` or ``page``.
        items_key: Key holding the items in cursor-style bodies.
        envelope: Key wrapping request bodies on create/update (e.g. ``vendor``).
        page_size: Items requested per page.
        timeout: Request timeout in seconds.
        headers: Extra headers sent on every request.
        query: Extra query parameters sent on reads (e.g. the property list to return).
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        system: str,
        base_url: str,
        resource_path: str,
        token_provider: Callable[[], Awaitable[str]] | None = None,
        pagination: Literal["cursor", "page"] = "cursor",
        items_key: str = "results",
        envelope: str | None = None,
        page_size: int = 100,
        timeout: float = 30.0,
        headers: dict[str, str] | None = None,
        query: dict[str, Any] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.system = system
        self._base_url = base_url.rstrip("/")
        self._path = "/" + resource_path.strip("/")
        self._token_provider = token_provider
        self._pagination = pagination
        self._items_key = items_key
        self._envelope = envelope
        self._page_size = page_size
        self._timeout = timeout
        self._headers = {"Accept": "application/json", **(headers or {})}
        self._query = dict(query or {})
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        """Create a new httpx client for one request."""
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._headers,
            timeout=self._timeout,
            transport=self._transport,
        )

    async def _auth_headers(self) -> dict[str, str]:
        if self._token_provider is None:
            return {}
        token = await self._token_provider()
        return {"Authorization": f"Bearer {token}"}

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        allow_not_found: bool = False,
    ) -> Any:
        """Send one request and decode its JSON body.

        Raises:
            AuthExpiredError: On 401/403.
            RemoteApiError: On any other non-2xx response or transport failure.
        """
        headers = await self._auth_headers()
        try:
            async with self._client() as client:
                response = await client.request(
                    method, path, params=params, json=json, headers=headers
                )
        except httpx.TransportError as exc:
            logger.warning("http_source.transport_error", system=self.system, path=path, error=str(exc))
            raise RemoteApiError(f"{method} {path}: {exc}") from exc

        if allow_not_found and response.status_code == 404:
            return None
        if response.status_code in (401, 403):
            logger.warning("http_source.auth_rejected", system=self.system, status_code=response.status_code)
            raise AuthExpiredError(
                f"{self.system} rejected credentials for {method} {path}",
                status_code=response.status_code,
            )
        if response.is_error:
            logger.warning(
                "http_source.request_failed",
                system=self.system,
                method=method,
                path=path,
                status_code=response.status_code,
            )
            raise RemoteApiError(
                f"{self.system} {method} {path}: {response.text}",
                status_code=response.status_code,
            )
        if not response.content:
            return {}
        return response.json()

    @_remote_retry
    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        """Send an idempotent request, retrying transient failures."""
        return await self._send(method, path, **kwargs)

    @_create_retry
    async def _request_create(self, path: str, **kwargs: Any) -> Any:
        """Send a POST, retrying only failures that cannot have created anything."""
        return await self._send("POST", path, **kwargs)

    async def fetch_page(self, cursor: str | None = None) -> RemotePage:
        if self._pagination == "page":
            page = int(cursor) if cursor else 1
            body = await self._request(
                "GET", self._path, params={**self._query, "page": page, "per_page": self._page_size}
            )
            items = body if isinstance(body, list) else body.get(self._items_key, [])
            next_cursor = str(page + 1) if len(items) >= self._page_size else None
            return RemotePage(items=items, next_cursor=next_cursor)

        params: dict[str, Any] = {**self._query, "limit": self._page_size}
        if cursor:
            params["after"] = cursor
        body = await self._request("GET", self._path, params=params)
        items = body.get(self._items_key, [])
        paging_next = (body.get("paging") or {}).get("next") or {}
        next_cursor = paging_next.get("after") or body.get("next_cursor")
        return RemotePage(items=items, next_cursor=str(next_cursor) if next_cursor else None)

    async def get_record(self, remote_id: str) -> dict[str, Any] | None:
        return await self._request(
            "GET", f"{self._path}/{remote_id}", params=self._query or None, allow_not_found=True
        )

    def _wrap(self, fields: dict[str, Any]) -> dict[str, Any]:
        return {self._envelope: fields} if self._envelope else fields

    async def create_record(self, fields: dict[str, Any]) -> dict[str, Any]:
        body = await self._request_create(self._path, json=self._wrap(fields))
        logger.info("http_source.record_created", system=self.system, remote_id=body.get("id"))
        return body

    async def update_record(self, remote_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        body = await self._request("PATCH", f"{self._path}/{remote_id}", json=self._wrap(fields))
        logger.info(
            "http_source.record_updated",
            system=self.system,
            remote_id=remote_id,
            fields=sorted(fields),
        )
        return body
