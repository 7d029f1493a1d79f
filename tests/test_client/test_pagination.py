"""Tests for the pagination engine."""

from __future__ import annotations

import asyncio

import pytest

from ascli.client.pagination import paginate_all, paginate_all_async, paginate_all_with_observer
from ascli.exceptions import PaginationError
from ascli.models import Page, PageLinks, Resource


def _page(ids: list[str], next_url: str = "") -> Page[Resource]:
    return Page[Resource](
        data=[Resource(type="apps", id=i) for i in ids],
        links=PageLinks(next=next_url or None),
    )


class FakeFetcher:
    """Serves pages by URL and records every fetch."""

    def __init__(self, pages: dict[str, Page[Resource]]) -> None:
        self.pages = pages
        self.calls: list[str] = []

    def __call__(self, url: str) -> Page[Resource]:
        self.calls.append(url)
        return self.pages[url]


class TestPaginateAll:
    def test_single_page_makes_no_fetch(self) -> None:
        fetch = FakeFetcher({})
        result = paginate_all(_page(["1", "2"]), fetch)
        assert [r.id for r in result.data] == ["1", "2"]
        assert fetch.calls == []

    def test_merges_in_order(self) -> None:
        fetch = FakeFetcher({"p2": _page(["3"], "p3"), "p3": _page(["4", "5"])})
        result = paginate_all(_page(["1", "2"], "p2"), fetch)
        assert [r.id for r in result.data] == ["1", "2", "3", "4", "5"]
        assert fetch.calls == ["p2", "p3"]
        assert result.next_url() == ""

    def test_observer_sees_every_page(self) -> None:
        seen: list[tuple[int, str]] = []
        fetch = FakeFetcher({"next-2": _page(["b"])})
        paginate_all_with_observer(
            _page(["a"], "next-2"), fetch, lambda n, url: seen.append((n, url))
        )
        assert seen == [(1, "next-2"), (2, "")]

    def test_loop_detected(self) -> None:
        fetch = FakeFetcher({"p2": _page(["2"], "p3"), "p3": _page(["3"], "p2")})
        with pytest.raises(PaginationError, match="p2"):
            paginate_all(_page(["1"], "p2"), fetch)
        assert fetch.calls == ["p2", "p3"]

    def test_self_loop_detected(self) -> None:
        fetch = FakeFetcher({"p2": _page(["2"], "p2")})
        with pytest.raises(PaginationError):
            paginate_all(_page(["1"], "p2"), fetch)

    def test_max_pages(self) -> None:
        pages = {f"p{i}": _page([str(i)], f"p{i + 1}") for i in range(2, 10)}
        fetch = FakeFetcher(pages)
        with pytest.raises(PaginationError, match="3 pages"):
            paginate_all(_page(["1"], "p2"), fetch, max_pages=3)
        assert len(fetch.calls) == 2

    def test_exactly_max_pages_is_allowed(self) -> None:
        fetch = FakeFetcher({"p2": _page(["2"], "p3"), "p3": _page(["3"])})
        result = paginate_all(_page(["1"], "p2"), fetch, max_pages=3)
        assert len(result.data) == 3

    def test_invalid_max_pages(self) -> None:
        with pytest.raises(ValueError):
            paginate_all(_page(["1"]), FakeFetcher({}), max_pages=0)

    def test_fetch_error_propagates(self) -> None:
        def fetch(url: str) -> Page[Resource]:
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            paginate_all(_page(["1"], "p2"), fetch)


class TestPaginateAllAsync:
    def test_merges_pages(self) -> None:
        fetch = FakeFetcher({"p2": _page(["2"], "p3"), "p3": _page(["3"])})

        async def fetch_async(url: str) -> Page[Resource]:
            return fetch(url)

        seen: list[tuple[int, str]] = []
        result = asyncio.run(
            paginate_all_async(_page(["1"], "p2"), fetch_async, lambda n, u: seen.append((n, u)))
        )
        assert [r.id for r in result.data] == ["1", "2", "3"]
        assert seen == [(1, "p2"), (2, "p3"), (3, "")]

    def test_loop_detected(self) -> None:
        async def fetch_async(url: str) -> Page[Resource]:
            return _page(["x"], "p2")

        with pytest.raises(PaginationError):
            asyncio.run(paginate_all_async(_page(["1"], "p2"), fetch_async))
