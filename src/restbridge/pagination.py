"""
Lazy iteration over token-paginated list endpoints.

Google-style list responses carry the page's items under a resource key
(`items`, `messages`, `files`, ...) and a `nextPageToken` when more pages
exist. Calendar-style endpoints also return a `nextSyncToken` on the last
page for incremental sync.
"""

from collections.abc import Iterator
from typing import Any

import structlog

from restbridge.client import RequestExecutor
from restbridge.errors import PaginationError, StructuredError
from restbridge.models import PaginatedResult

logger = structlog.get_logger(__name__)

DEFAULT_ITEMS_KEYS = (
    "items",
    "messages",
    "files",
    "events",
    "tasks",
    "spaces",
    "connections",
    "groups",
    "users",
    "memberships",
)


def extract_items(body: Any, items_key: str | None = None) -> list[Any]:
    """Items of one page, from `items_key` or the first known resource key present."""
    if not isinstance(body, dict):
        return []
    if items_key is not None:
        items = body.get(items_key)
        return list(items) if isinstance(items, list) else []
    for key in DEFAULT_ITEMS_KEYS:
        items = body.get(key)
        if isinstance(items, list):
            return list(items)
    return []


class PaginationStream:
    """
    Iterable over every item of a paginated listing.

    Pages are fetched on demand: one page is buffered at a time and the next
    page is only requested once the current one is exhausted. Iterating again
    restarts from the initial page token.

    Example:
        stream = PaginationStream(client, "/users/me/messages", {"q": "is:unread"}, limit=50)
        for message in stream:
            print(message["id"])
        print(stream.next_page_token)
    """

    def __init__(
        self,
        client: RequestExecutor,
        path: str,
        params: dict[str, Any] | None = None,
        items_key: str | None = None,
        limit: int | None = None,
        page_size: int | None = None,
        page_token: str | None = None,
        sync_token: str | None = None,
        page_size_param: str | None = None,
    ):
        if limit is not None and limit < 0:
            raise ValueError("limit must be non-negative")
        if page_size is not None and page_size < 1:
            raise ValueError("page_size must be positive")

        self.client = client
        self.path = path
        self.params = dict(params or {})
        self.items_key = items_key
        self.limit = limit
        self.page_size = page_size
        self.page_token = page_token
        self.sync_token = sync_token
        self.page_size_param = page_size_param or client.profile.page_size_param

        # Continuation state, updated as pages arrive
        self.next_page_token: str | None = None
        self.next_sync_token: str | None = None
        self.total_fetched = 0
        self.pages_fetched = 0

        self._log = logger.bind(domain=client.domain, path=path)

    def _page_params(self, token: str | None) -> dict[str, Any]:
        params = dict(self.params)
        if self.page_size is not None:
            params[self.page_size_param] = self.page_size
        if token:
            params["pageToken"] = token
        if self.sync_token:
            params["syncToken"] = self.sync_token
        return params

    def _fetch_page(self, token: str | None) -> dict[str, Any]:
        result = self.client.get(
            self.path,
            params=self._page_params(token),
            cost=self.client.profile.list_cost,
        )
        if isinstance(result, StructuredError):
            self._log.warning(
                "Page fetch failed",
                page=self.pages_fetched + 1,
                error_code=result.error_code.value,
            )
            raise PaginationError(result)
        self.pages_fetched += 1
        return result.body if isinstance(result.body, dict) else {}

    def __iter__(self) -> Iterator[Any]:
        self.next_page_token = None
        self.next_sync_token = None
        self.total_fetched = 0
        self.pages_fetched = 0

        if self.limit == 0:
            return

        token = self.page_token
        while True:
            body = self._fetch_page(token)
            items = extract_items(body, self.items_key)

            self.next_page_token = body.get("nextPageToken") or None
            if body.get("nextSyncToken"):
                self.next_sync_token = body["nextSyncToken"]

            self._log.debug("Fetched page", page=self.pages_fetched, count=len(items))

            for item in items:
                self.total_fetched += 1
                yield item
                if self.limit is not None and self.total_fetched >= self.limit:
                    return

            if not self.next_page_token:
                break
            if self.next_page_token == token:
                self._log.warning("Server repeated page token, stopping", page_token=token)
                break
            token = self.next_page_token

        self._log.info("Pagination complete", pages=self.pages_fetched, items=self.total_fetched)

    def collect(self) -> PaginatedResult:
        """Drain the stream into a PaginatedResult."""
        items = list(self)
        return PaginatedResult(
            items=items,
            next_page_token=self.next_page_token,
            next_sync_token=self.next_sync_token,
            total_fetched=self.total_fetched,
        )
