"""
Tests for PaginationStream.
"""

import httpx
import pytest

from conftest import google_error, json_response
from restbridge.domains import Domain
from restbridge.errors import ErrorCode, PaginationError
from restbridge.pagination import PaginationStream, extract_items


class Pages:
    """MockTransport handler serving pages keyed by pageToken."""

    def __init__(self, pages, items_key="messages"):
        self.pages = pages
        self.items_key = items_key
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        token = request.url.params.get("pageToken")
        page = self.pages[token]
        if isinstance(page, httpx.Response):
            return page
        return json_response(200, page)


def numbered_pages(sizes, items_key="messages", sync_token=None):
    """Pages of sequential items; each page links to the next by token."""
    pages = {}
    start = 0
    for index, size in enumerate(sizes):
        token = None if index == 0 else f"page-{index}"
        page = {items_key: [{"id": str(n)} for n in range(start, start + size)]}
        if index + 1 < len(sizes):
            page["nextPageToken"] = f"page-{index + 1}"
        elif sync_token:
            page["nextSyncToken"] = sync_token
        pages[token] = page
        start += size
    return pages


class TestPaginationStream:
    """Tests for lazy page fetching."""

    def test_limit_spanning_three_pages(self, make_registry):
        """Pages of 20, 20 and 5 with limit 45: all 45 items, exactly three requests."""
        handler = Pages(numbered_pages([20, 20, 5]))
        client = make_registry(handler).client(Domain.GMAIL)

        stream = PaginationStream(client, "/users/me/messages", limit=45)
        items = list(stream)

        assert len(items) == 45
        assert [item["id"] for item in items] == [str(n) for n in range(45)]
        assert len(handler.requests) == 3
        assert stream.total_fetched == 45
        assert stream.pages_fetched == 3
        assert stream.next_page_token is None

    def test_limit_stops_before_next_page(self, make_registry):
        handler = Pages(numbered_pages([20, 20, 20]))
        client = make_registry(handler).client(Domain.GMAIL)

        stream = PaginationStream(client, "/users/me/messages", limit=25)
        items = list(stream)

        assert len(items) == 25
        assert len(handler.requests) == 2
        # Caller can resume from the unread page
        assert stream.next_page_token == "page-2"

    def test_limit_on_page_boundary_fetches_no_more(self, make_registry):
        handler = Pages(numbered_pages([10, 10]))
        client = make_registry(handler).client(Domain.GMAIL)

        items = list(PaginationStream(client, "/users/me/messages", limit=10))

        assert len(items) == 10
        assert len(handler.requests) == 1

    def test_lazy_fetching(self, make_registry):
        handler = Pages(numbered_pages([3, 3]))
        client = make_registry(handler).client(Domain.GMAIL)

        iterator = iter(PaginationStream(client, "/users/me/messages"))
        assert handler.requests == []
        next(iterator)
        assert len(handler.requests) == 1

    def test_zero_limit_makes_no_requests(self, make_registry):
        handler = Pages({})
        client = make_registry(handler).client(Domain.GMAIL)

        assert list(PaginationStream(client, "/users/me/messages", limit=0)) == []
        assert handler.requests == []

    def test_page_size_and_params_sent(self, make_registry):
        handler = Pages(numbered_pages([2, 1]))
        client = make_registry(handler).client(Domain.GMAIL)

        list(PaginationStream(client, "/users/me/messages", params={"q": "is:unread"}, page_size=2))

        first, second = handler.requests
        assert first.url.params["maxResults"] == "2"
        assert first.url.params["q"] == "is:unread"
        assert "pageToken" not in first.url.params
        assert second.url.params["pageToken"] == "page-1"

    def test_drive_uses_page_size_param(self, make_registry):
        handler = Pages(numbered_pages([1], items_key="files"))
        client = make_registry(handler).client(Domain.DRIVE)

        items = list(PaginationStream(client, "/files", page_size=50))

        assert items == [{"id": "0"}]
        assert handler.requests[0].url.params["pageSize"] == "50"

    def test_sync_token_surfaced(self, make_registry):
        handler = Pages(numbered_pages([2, 2], items_key="items", sync_token="sync-abc"))
        client = make_registry(handler).client(Domain.CALENDAR)

        stream = PaginationStream(client, "/calendars/primary/events", sync_token="sync-old")
        result = stream.collect()

        assert result.total_fetched == 4
        assert result.next_sync_token == "sync-abc"
        assert result.next_page_token is None
        assert handler.requests[0].url.params["syncToken"] == "sync-old"
        assert result.to_dict() == {
            "items": [{"id": "0"}, {"id": "1"}, {"id": "2"}, {"id": "3"}],
            "next_sync_token": "sync-abc",
            "total_fetched": 4,
        }

    def test_start_from_page_token(self, make_registry):
        handler = Pages(numbered_pages([2, 2]))
        client = make_registry(handler).client(Domain.GMAIL)

        items = list(PaginationStream(client, "/users/me/messages", page_token="page-1"))

        assert [item["id"] for item in items] == ["2", "3"]

    def test_explicit_items_key(self, make_registry):
        handler = Pages({None: {"labels": [{"id": "INBOX"}], "messages": [{"id": "ignored"}]}})
        client = make_registry(handler).client(Domain.GMAIL)

        items = list(PaginationStream(client, "/users/me/labels", items_key="labels"))

        assert items == [{"id": "INBOX"}]

    def test_repeated_token_stops(self, make_registry):
        handler = Pages({
            None: {"messages": [{"id": "a"}], "nextPageToken": "loop"},
            "loop": {"messages": [{"id": "b"}], "nextPageToken": "loop"},
        })
        client = make_registry(handler).client(Domain.GMAIL)

        items = list(PaginationStream(client, "/users/me/messages"))

        assert [item["id"] for item in items] == ["a", "b"]
        assert len(handler.requests) == 2

    def test_failed_page_raises(self, make_registry):
        pages = numbered_pages([2, 2])
        pages["page-1"] = json_response(403, google_error(403, "Insufficient Permission", "insufficientPermissions"))
        client = make_registry(Pages(pages)).client(Domain.GMAIL)

        seen = []
        with pytest.raises(PaginationError) as excinfo:
            for item in PaginationStream(client, "/users/me/messages"):
                seen.append(item)

        assert len(seen) == 2
        assert excinfo.value.error_code is ErrorCode.PERMISSION_DENIED
        assert excinfo.value.error.domain == "gmail"

    def test_reiteration_restarts(self, make_registry):
        handler = Pages(numbered_pages([2, 1]))
        client = make_registry(handler).client(Domain.GMAIL)
        stream = PaginationStream(client, "/users/me/messages")

        first = list(stream)
        second = list(stream)

        assert first == second
        assert stream.total_fetched == 3
        assert len(handler.requests) == 4

    def test_registry_paginate(self, make_registry):
        handler = Pages(numbered_pages([1, 1]))
        registry = make_registry(handler)

        stream = registry.paginate("gmail", "/users/me/messages", limit=5)

        assert [item["id"] for item in stream] == ["0", "1"]

    def test_pages_charge_list_cost(self, make_registry):
        handler = Pages(numbered_pages([1, 1, 1]))
        client = make_registry(handler).client(Domain.GMAIL)

        list(PaginationStream(client, "/users/me/messages"))

        assert client.get_stats()["rate_limiter"]["available_tokens"] == 235.0

    def test_invalid_arguments(self, make_registry):
        client = make_registry(Pages({})).client(Domain.GMAIL)
        with pytest.raises(ValueError):
            PaginationStream(client, "/x", limit=-1)
        with pytest.raises(ValueError):
            PaginationStream(client, "/x", page_size=0)


class TestExtractItems:
    def test_known_keys(self):
        assert extract_items({"files": [1, 2]}) == [1, 2]
        assert extract_items({"nextPageToken": "x"}) == []

    def test_non_dict_body(self):
        assert extract_items(None) == []
        assert extract_items([1, 2]) == []

    def test_explicit_key_not_a_list(self):
        assert extract_items({"labels": "nope"}, "labels") == []
