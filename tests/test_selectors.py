"""Tests for field extraction and the listing cursor."""

from __future__ import annotations

import pytest

from conftest import LISTING_URL, FakeElement, FakePage, shop_job, shop_site
from lowcode_crawler.extraction.content import html_to_markdown
from lowcode_crawler.extraction.selectors import (
    ListingCursor,
    extract,
    extract_records,
    normalize_locator,
    preview_selector,
)
from lowcode_crawler.models import FieldSpec


def make_cursor(page: FakePage, base_selector="div.card") -> ListingCursor:
    return ListingCursor(page, base_selector, listing_url=LISTING_URL, navigation_timeout_ms=1000)


class TestNormalizeLocator:
    def test_css_passes_through(self) -> None:
        assert normalize_locator("div.card > h2", relative=True) == "div.card > h2"

    def test_relative_xpath_inside_base(self) -> None:
        assert normalize_locator(".//h2", relative=True) == "xpath=.//h2"
        assert normalize_locator("//h2", relative=True) == "xpath=.//h2"

    def test_xpath_without_base_is_page_absolute(self) -> None:
        assert normalize_locator(".//h2", relative=False) == "xpath=//h2"
        assert normalize_locator("//h2", relative=False) == "xpath=//h2"


class TestExtract:
    @pytest.fixture
    def page(self) -> FakePage:
        page = FakePage({
            "https://site.test/a/b": {
                "div.item": [FakeElement(children={
                    "h1": [FakeElement(text="  Title  ", html="<b>Title</b>")],
                    "a": [FakeElement(attrs={"href": "../c?x=1"})],
                    "img.lazy": [FakeElement(attrs={"src": "", "data-original": "//cdn.test/i.png"})],
                    "a.mail": [FakeElement(attrs={"href": "mailto:x@y.test"})],
                    "div.body": [FakeElement(html="<p>Hello <strong>world</strong></p>")],
                    "pre": [FakeElement(html="\n  <code>x = 1</code>\n")],
                    "span.empty": [FakeElement(html="")],
                })],
            },
        })
        page.url = "https://site.test/a/b"
        return page

    @pytest.mark.asyncio
    async def test_text_is_trimmed(self, page: FakePage) -> None:
        base = page.locator("div.item").nth(0)
        assert await extract(page, base, FieldSpec(name="t", selector="h1")) == "Title"

    @pytest.mark.asyncio
    async def test_html_format(self, page: FakePage) -> None:
        base = page.locator("div.item").nth(0)
        spec = FieldSpec(name="t", selector="h1", contentFormat="html")
        assert await extract(page, base, spec) == "<b>Title</b>"

    @pytest.mark.asyncio
    async def test_html_format_keeps_markup_verbatim(self, page: FakePage) -> None:
        base = page.locator("div.item").nth(0)
        spec = FieldSpec(name="code", selector="pre", contentFormat="html")
        assert await extract(page, base, spec) == "\n  <code>x = 1</code>\n"

    @pytest.mark.asyncio
    async def test_html_format_empty_is_null(self, page: FakePage) -> None:
        base = page.locator("div.item").nth(0)
        spec = FieldSpec(name="e", selector="span.empty", contentFormat="html")
        assert await extract(page, base, spec) is None

    @pytest.mark.asyncio
    async def test_markdown_format(self, page: FakePage) -> None:
        base = page.locator("div.item").nth(0)
        spec = FieldSpec(name="b", selector="div.body", contentFormat="markdown")
        assert await extract(page, base, spec) == "Hello **world**"

    @pytest.mark.asyncio
    async def test_link_resolved_against_page_url(self, page: FakePage) -> None:
        base = page.locator("div.item").nth(0)
        spec = FieldSpec(name="l", selector="a", type="link")
        assert await extract(page, base, spec) == "https://site.test/c?x=1"

    @pytest.mark.asyncio
    async def test_non_http_link_kept_as_is(self, page: FakePage) -> None:
        base = page.locator("div.item").nth(0)
        spec = FieldSpec(name="l", selector="a.mail", type="link")
        assert await extract(page, base, spec) == "mailto:x@y.test"

    @pytest.mark.asyncio
    async def test_image_falls_back_to_lazy_attributes(self, page: FakePage) -> None:
        base = page.locator("div.item").nth(0)
        spec = FieldSpec(name="i", selector="img.lazy", type="image")
        assert await extract(page, base, spec) == "https://cdn.test/i.png"

    @pytest.mark.asyncio
    async def test_missing_element_is_none(self, page: FakePage) -> None:
        base = page.locator("div.item").nth(0)
        assert await extract(page, base, FieldSpec(name="x", selector="span.price")) is None

    @pytest.mark.asyncio
    async def test_element_without_text_is_none(self, page: FakePage) -> None:
        assert await extract(page, None, FieldSpec(name="x", selector="div.item")) is None


class TestHtmlToMarkdown:
    def test_drops_scripts_and_keeps_structure(self) -> None:
        markdown = html_to_markdown("<h2>Title</h2><script>track()</script><ul><li>a</li><li>b</li></ul>")
        assert "## Title" in markdown
        assert "- a" in markdown
        assert "track()" not in markdown

    def test_empty_markup_is_none(self) -> None:
        assert html_to_markdown("") is None
        assert html_to_markdown("<script>only()</script>") is None
        assert html_to_markdown(None) is None


class TestExtractRecords:
    @pytest.mark.asyncio
    async def test_records_follow_detail_links_in_order(self) -> None:
        page = FakePage(shop_site(cards=3))
        await page.goto(LISTING_URL)

        records = await extract_records(make_cursor(page), shop_job())

        assert [r["title"] for r in records] == ["Item 1", "Item 2", "Item 3"]
        assert records[1] == {
            "title": "Item 2",
            "link": "https://shop.test/p/2",
            "image": "https://shop.test/img/2.jpg",
            "desc": "Details 2",
        }
        assert list(records[0].keys()) == ["title", "link", "image", "desc"]

    @pytest.mark.asyncio
    async def test_every_detail_hop_returns_to_listing(self) -> None:
        page = FakePage(shop_site(cards=2))
        await page.goto(LISTING_URL)
        cursor = make_cursor(page)

        await extract_records(cursor, shop_job())

        assert page.visits == [
            LISTING_URL,
            "https://shop.test/p/1", LISTING_URL,
            "https://shop.test/p/2", LISTING_URL,
        ]
        assert cursor.generation == 4
        assert page.url == LISTING_URL

    @pytest.mark.asyncio
    async def test_max_items_bounds_records(self) -> None:
        page = FakePage(shop_site(cards=5))
        await page.goto(LISTING_URL)

        records = await extract_records(make_cursor(page), shop_job(), max_items=2)

        assert len(records) == 2

    @pytest.mark.asyncio
    async def test_failed_detail_page_leaves_detail_fields_null(self) -> None:
        page = FakePage(shop_site(cards=2), failures={"https://shop.test/p/1": "net::ERR_CONNECTION_RESET"})
        await page.goto(LISTING_URL)

        records = await extract_records(make_cursor(page), shop_job())

        assert records[0]["desc"] is None
        assert records[0]["title"] == "Item 1"
        assert records[1]["desc"] == "Details 2"

    @pytest.mark.asyncio
    async def test_without_base_selector_one_page_record(self) -> None:
        page = FakePage({LISTING_URL: {"h1": [FakeElement(text="Shop")]}})
        await page.goto(LISTING_URL)
        job = shop_job(baseSelector=None, selectors=[{"name": "heading", "selector": "h1"}])

        records = await extract_records(make_cursor(page, None), job)

        assert records == [{"heading": "Shop"}]

    @pytest.mark.asyncio
    async def test_lost_listing_keeps_partial_records(self) -> None:
        page = FakePage(shop_site(cards=3))
        await page.goto(LISTING_URL)
        cursor = make_cursor(page)
        original_restore = cursor.restore
        calls = {"n": 0}

        async def flaky_restore() -> None:
            calls["n"] += 1
            if calls["n"] == 2:
                page.failures[LISTING_URL] = "net::ERR_CONNECTION_REFUSED"
            await original_restore()

        cursor.restore = flaky_restore

        records = await extract_records(cursor, shop_job())

        assert [r["title"] for r in records] == ["Item 1"]


class TestPreviewSelector:
    @pytest.mark.asyncio
    async def test_samples_and_count(self) -> None:
        page = FakePage(shop_site(cards=3))
        await page.goto(LISTING_URL)

        result = await preview_selector(page, "div.card", limit=2)

        assert result["count"] == 3
        assert result["status"] == "found"
        assert [s["index"] for s in result["samples"]] == [0, 1]

    @pytest.mark.asyncio
    async def test_not_found(self) -> None:
        page = FakePage(shop_site(cards=1))
        await page.goto(LISTING_URL)

        result = await preview_selector(page, "ul.nothing")

        assert result["count"] == 0
        assert result["status"] == "not_found"
        assert result["samples"] == []
