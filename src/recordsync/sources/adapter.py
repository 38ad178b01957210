"""Remote source abstract base class -- the contract for one resource in one external system.

Each RemoteSource instance covers a single resource collection (for example
the companies of one CRM). The orchestrator pages through ``fetch_page``
during refresh passes; the linker reads and writes single records.

Implementations raise AuthExpiredError when credentials are rejected and
RemoteApiError for any other remote failure.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

from pydantic import BaseModel, Field


class RemotePage(BaseModel):
    """One page of raw remote records plus the cursor of the next page."""

    items: list[dict[str, Any]] = Field(default_factory=list)
    next_cursor: str | None = None


class RemoteSource(ABC):
    """Abstract interface for one external resource collection.

    Attributes:
        system: Name of the external system (e.g. "hubspot").

    Methods:
        fetch_page: Fetch one page of records; cursor None means the first page.
        get_record: Fetch one record by remote id, None if it does not exist.
        create_record: Create a record, returning the remote's representation.
        update_record: Patch fields of a record, returning the remote's representation.
    """

    system: str = "remote"

    @abstractmethod
    async def fetch_page(self, cursor: str | None = None) -> RemotePage:
        """Fetch one page of records."""
        ...

    @abstractmethod
    async def get_record(self, remote_id: str) -> dict[str, Any] | None:
        """Fetch one record by remote id."""
        ...

    @abstractmethod
    async def create_record(self, fields: dict[str, Any]) -> dict[str, Any]:
        """Create a record and return it as stored remotely."""
        ...

    @abstractmethod
    async def update_record(self, remote_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        """Patch a record and return it as stored remotely."""
        ...


async def iter_pages(source: RemoteSource) -> AsyncIterator[RemotePage]:
    """Yield pages from ``source`` until it reports no next cursor."""
    cursor: str | None = None
    while True:
        page = await source.fetch_page(cursor)
        yield page
        if not page.next_cursor or page.next_cursor == cursor:
            return
        cursor = page.next_cursor


async def fetch_all_pages(source: RemoteSource) -> list[dict[str, Any]]:
    """Collect every record of ``source`` across all pages."""
    items: list[dict[str, Any]] = []
    async for page in iter_pages(source):
        items.extend(page.items)
    return items
