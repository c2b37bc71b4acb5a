"""Selector extraction: typed field values relative to a base region.

A field never raises for a missing element; it resolves to ``None``.
Base-region items are addressed by locator and index, never by a handle kept
across navigation, so a detail-page hop cannot leave stale references.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from playwright.async_api import Locator, Page

from ..errors import TargetPageError, classify_exception
from ..models import ContentFormat, FieldSpec, FieldType, JobDefinition
from ..utils import is_absolute_http_url, resolve_url
from .content import html_to_markdown

# Lazy-loading pages keep the real image URL in data attributes; fixed order.
IMAGE_SOURCE_ATTRIBUTES = ("src", "data-src", "data-original")

Record = Dict[str, Optional[str]]


def normalize_locator(selector: str, *, relative: bool) -> str:
    """Turn a builder selector into a Playwright selector.

    ``.//x`` and ``//x`` are XPath; with a base region both are evaluated
    inside it. Anything else is passed through as CSS/Playwright syntax.
    """
    selector = selector.strip()
    if selector.startswith(".//"):
        return f"xpath={selector}" if relative else f"xpath={selector[1:]}"
    if selector.startswith("//"):
        return f"xpath=.{selector}" if relative else f"xpath={selector}"
    return selector


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


async def _text_value(element: Locator, content_format: ContentFormat) -> Optional[str]:
    if content_format == ContentFormat.HTML:
        return (await element.inner_html()) or None

    if content_format in (ContentFormat.MARKDOWN, ContentFormat.SMART):
        try:
            return html_to_markdown(await element.inner_html())
        except Exception:
            return _clean(await element.text_content())

    return _clean(await element.text_content())


async def _image_value(element: Locator) -> Optional[str]:
    for attribute in IMAGE_SOURCE_ATTRIBUTES:
        value = _clean(await element.get_attribute(attribute))
        if value:
            return value
    return None


async def extract(
    page: Page,
    base: Optional[Locator],
    spec: FieldSpec,
    *,
    logger: Optional[logging.Logger] = None,
) -> Optional[str]:
    """Resolve one field; ``None`` when the element is absent or unreadable."""
    scope = base if base is not None else page
    try:
        element = scope.locator(normalize_locator(spec.selector, relative=base is not None)).first
        if await element.count() == 0:
            return None

        if spec.type == FieldType.LINK:
            return resolve_url(_clean(await element.get_attribute("href")), page.url)
        if spec.type == FieldType.IMAGE:
            return resolve_url(await _image_value(element), page.url)
        return await _text_value(element, spec.content_format)
    except Exception as e:
        if logger:
            logger.debug(f"Field '{spec.name}' ({spec.selector}) resolved to null: {e}")
        return None


class ListingCursor:
    """Addresses base-region items on the listing page across detail hops.

    Every navigation bumps ``generation``; item locators are re-derived from
    the base selector after each one.
    """

    def __init__(
        self,
        page: Page,
        base_selector: Optional[str],
        *,
        listing_url: str,
        navigation_timeout_ms: int,
        settle: Optional[Callable[[], Awaitable[None]]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.page = page
        self.base_selector = base_selector
        self.listing_url = listing_url
        self.navigation_timeout_ms = navigation_timeout_ms
        self.generation = 0
        self._settle = settle
        self._logger = logger or logging.getLogger("crawler.extract")
        self._item_count: Optional[int] = None

    async def count(self) -> int:
        if not self.base_selector:
            return 1
        self._item_count = await self.page.locator(self.base_selector).count()
        return self._item_count

    def item(self, index: int) -> Optional[Locator]:
        if not self.base_selector:
            return None
        return self.page.locator(self.base_selector).nth(index)

    async def visit(self, url: str) -> None:
        self.generation += 1
        await self.page.goto(url, timeout=self.navigation_timeout_ms, wait_until="domcontentloaded")

    async def restore(self) -> None:
        """Go back to the listing page, re-apply its waits and re-count items."""
        self.generation += 1
        try:
            await self.page.goto(self.listing_url, timeout=self.navigation_timeout_ms, wait_until="domcontentloaded")
            if self._settle:
                await self._settle()
        except Exception as e:
            error = classify_exception(e, self.listing_url)
            if error.is_fatal:
                raise error from e
            raise TargetPageError(
                f"Could not return to listing page: {e}", url=self.listing_url, cause=e
            ) from e

        previous = self._item_count
        current = await self.count()
        if previous is not None and current != previous:
            self._logger.warning(
                f"⚠️ Listing returned {current} items after detail hop (was {previous}); "
                "record order may not match"
            )


async def extract_record(
    cursor: ListingCursor,
    index: Optional[int],
    job: JobDefinition,
    *,
    logger: Optional[logging.Logger] = None,
) -> Record:
    """One record: listing fields first, then one hop per parent link field."""
    page = cursor.page
    base = cursor.item(index) if index is not None else None
    values: Record = {}

    for spec in job.page_fields():
        values[spec.name] = await extract(page, base, spec, logger=logger)

    for parent_name, specs in job.detail_fields().items():
        url = values.get(parent_name)
        for spec in specs:
            values[spec.name] = None
        if not url or not is_absolute_http_url(url):
            continue

        try:
            await cursor.visit(url)
            for spec in specs:
                values[spec.name] = await extract(page, None, spec, logger=logger)
        except Exception as e:
            error = classify_exception(e, url)
            if error.is_fatal:
                raise error from e
            if logger:
                logger.warning(f"Detail page {url} failed: {error.message}")
        finally:
            await cursor.restore()

    return {spec.name: values.get(spec.name) for spec in job.selectors}


async def extract_records(
    cursor: ListingCursor,
    job: JobDefinition,
    *,
    max_items: Optional[int] = None,
    logger: Optional[logging.Logger] = None,
) -> List[Record]:
    """All records of the current listing page.

    Without a base selector the page yields exactly one page-absolute record.
    If the listing cannot be restored after a detail hop, the records gathered
    so far are returned.
    """
    log = logger or logging.getLogger("crawler.extract")

    if not cursor.base_selector:
        return [await extract_record(cursor, None, job, logger=log)]

    total = await cursor.count()
    limit = min(total, max_items) if max_items else total
    log.info(f"Found {total} base elements, extracting {limit}")

    records: List[Record] = []
    for index in range(limit):
        try:
            records.append(await extract_record(cursor, index, job, logger=log))
        except TargetPageError as e:
            log.error(f"❌ {e.message}; keeping {len(records)} records from this page")
            break
    return records


async def preview_selector(page: Page, selector: str, *, limit: int = 5) -> Dict[str, Any]:
    """What a selector matches on the loaded page, with a few samples."""
    elements = page.locator(normalize_locator(selector, relative=False))
    count = await elements.count()

    samples: List[Dict[str, Any]] = []
    for index in range(min(count, limit)):
        element = elements.nth(index)
        try:
            samples.append({
                "index": index,
                "text": _clean(await element.text_content()) or "",
                "href": resolve_url(await element.get_attribute("href"), page.url),
                "src": resolve_url(await _image_value(element), page.url),
            })
        except Exception as e:
            samples.append({"index": index, "error": str(e)})

    return {
        "selector": selector,
        "count": count,
        "status": "found" if count > 0 else "not_found",
        "samples": samples,
        "test_timestamp": datetime.now().isoformat(),
    }
