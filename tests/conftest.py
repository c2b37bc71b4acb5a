"""Shared fakes: an in-memory browser page addressed by selector strings.

A fake site maps each URL to ``{selector: [FakeElement, ...]}``; each
element maps relative selectors to its own children the same way. Locators
resolve lazily, so a locator built before a navigation sees the new page.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import pytest

from lowcode_crawler.config import ServiceConfig
from lowcode_crawler.models import JobDefinition


@dataclass
class FakeElement:
    text: Optional[str] = None
    html: Optional[str] = None
    attrs: Dict[str, str] = field(default_factory=dict)
    children: Dict[str, List["FakeElement"]] = field(default_factory=dict)
    fail_screenshot: bool = False


class FakeLocator:
    def __init__(self, resolve: Callable[[], List[FakeElement]], selector: str = ""):
        self._resolve = resolve
        self.selector = selector

    def locator(self, selector: str) -> "FakeLocator":
        def resolve() -> List[FakeElement]:
            found: List[FakeElement] = []
            for element in self._resolve():
                found.extend(element.children.get(selector, []))
            return found
        return FakeLocator(resolve, selector)

    @property
    def first(self) -> "FakeLocator":
        return self.nth(0)

    def nth(self, index: int) -> "FakeLocator":
        return FakeLocator(lambda: self._resolve()[index:index + 1], self.selector)

    async def count(self) -> int:
        return len(self._resolve())

    def _element(self) -> FakeElement:
        elements = self._resolve()
        if not elements:
            raise TimeoutError(f"Timeout waiting for locator {self.selector}")
        return elements[0]

    async def get_attribute(self, name: str) -> Optional[str]:
        return self._element().attrs.get(name)

    async def inner_html(self) -> str:
        element = self._element()
        return element.html if element.html is not None else (element.text or "")

    async def text_content(self) -> Optional[str]:
        return self._element().text

    async def screenshot(self, **kwargs) -> bytes:
        element = self._element()
        if element.fail_screenshot:
            raise RuntimeError("Element is not visible")
        return f"png:{self.selector}".encode()


class FakePage:
    def __init__(
        self,
        sites: Dict[str, Dict[str, List[FakeElement]]],
        *,
        descriptors: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        failures: Optional[Dict[str, str]] = None,
    ):
        self.sites = sites
        self.descriptors = descriptors or {}
        self.failures = failures or {}
        self.url = "about:blank"
        self.visits: List[str] = []
        self.viewports: List[Dict[str, int]] = []
        self.scrolls: List[Dict[str, Any]] = []
        self.waited_for: List[str] = []

    async def goto(self, url: str, timeout: Optional[int] = None, wait_until: Optional[str] = None):
        self.visits.append(url)
        if url in self.failures:
            raise Exception(self.failures[url])
        self.url = url

    def locator(self, selector: str) -> FakeLocator:
        return FakeLocator(lambda: self.sites.get(self.url, {}).get(selector, []), selector)

    async def set_viewport_size(self, size: Dict[str, int]) -> None:
        self.viewports.append(size)

    async def wait_for_selector(self, selector: str, timeout: Optional[int] = None):
        self.waited_for.append(selector)
        if not self.sites.get(self.url, {}).get(selector):
            raise TimeoutError(f"Timeout {timeout}ms exceeded waiting for {selector}")

    async def wait_for_load_state(self, state: str = "load", timeout: Optional[int] = None) -> None:
        return None

    async def wait_for_timeout(self, timeout: int) -> None:
        return None

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        if isinstance(arg, dict):
            self.scrolls.append(arg)
            return arg["maxDistance"]
        return self.descriptors.get(self.url, [])

    async def screenshot(self, full_page: bool = False) -> bytes:
        return b"\x89PNG-page"


@dataclass
class FakeSession:
    page: FakePage


class FakeRuntime:
    """Stands in for ``BrowserRuntime``; every session shares one page."""

    def __init__(self, page: FakePage):
        self.page = page
        self.started = False
        self.sessions: List[Dict[str, Any]] = []

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.started = False

    @asynccontextmanager
    async def session(self, **options):
        self.sessions.append(options)
        yield FakeSession(page=self.page)


LISTING_URL = "https://shop.test/list"


def card(n: int) -> FakeElement:
    return FakeElement(children={
        "h2": [FakeElement(text=f"  Item {n} ")],
        "a.more": [FakeElement(attrs={"href": f"/p/{n}"})],
        "img": [FakeElement(attrs={"data-src": f"/img/{n}.jpg"})],
    })


def shop_site(cards: int = 5, empty_cards: int = 0) -> Dict[str, Dict[str, List[FakeElement]]]:
    """A listing of product cards, each linking to a detail page."""
    items = [card(n) for n in range(1, cards + 1)] + [FakeElement() for _ in range(empty_cards)]
    site: Dict[str, Dict[str, List[FakeElement]]] = {LISTING_URL: {"div.card": items}}
    for n in range(1, cards + 1):
        site[f"https://shop.test/p/{n}"] = {".description": [FakeElement(text=f"Details {n}")]}
    return site


def shop_job(**overrides: Any) -> JobDefinition:
    data: Dict[str, Any] = {
        "urls": [LISTING_URL],
        "baseSelector": "div.card",
        "selectors": [
            {"name": "title", "selector": "h2"},
            {"name": "link", "selector": "a.more", "type": "link"},
            {"name": "image", "selector": "img", "type": "image"},
            {"name": "desc", "selector": ".description", "parentLink": "link"},
        ],
        "delayMs": 0,
    }
    data.update(overrides)
    return JobDefinition.model_validate(data)


@pytest.fixture
def service_config(tmp_path) -> ServiceConfig:
    config = ServiceConfig()
    config.system.data_root = str(tmp_path / "data")
    config.crawler.settle_delay_ms = 0
    return config
