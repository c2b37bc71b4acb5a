from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Optional

from playwright.async_api import Browser, BrowserContext, Page, async_playwright

from .config import BrowserConfig
from .errors import SessionError


@dataclass
class BrowserSession:
    """One job's browser, context and page; owned exclusively by that job."""
    browser: Browser
    context: BrowserContext
    page: Page


class BrowserRuntime:
    """Owns the Playwright process; launches one Chromium per session.

    Headless mode and proxy are launch options, so a job that sets either
    gets its own browser rather than a context on a shared one.
    """

    def __init__(self, config: BrowserConfig, *, logger: Optional[logging.Logger] = None) -> None:
        self._config = config
        self._logger = logger or logging.getLogger("crawler.browser")
        self._playwright = None

    @property
    def started(self) -> bool:
        return self._playwright is not None

    async def start(self) -> None:
        if self._playwright is not None:
            return
        self._logger.info("Starting Playwright runtime…")
        self._playwright = await async_playwright().start()

    async def stop(self) -> None:
        self._logger.info("Shutting down Playwright runtime…")
        if self._playwright:
            try:
                await self._playwright.stop()
            except Exception as e:
                self._logger.warning(f"Error stopping Playwright: {e}")
            self._playwright = None

    def _launch_options(self, headless: Optional[bool], proxy_url: Optional[str]) -> Dict:
        options: Dict = {
            "headless": self._config.headless if headless is None else headless,
            "args": list(self._config.launch_args),
            "timeout": self._config.launch_timeout_ms,
        }
        if proxy_url:
            options["proxy"] = {"server": proxy_url}
        return options

    def _context_options(self, viewport: Optional[Dict[str, int]], user_agent: Optional[str]) -> Dict:
        options: Dict = {
            "viewport": viewport or {
                "width": self._config.viewport_width,
                "height": self._config.viewport_height,
            },
        }
        if user_agent:
            options["user_agent"] = user_agent
        return options

    @asynccontextmanager
    async def session(
        self,
        *,
        headless: Optional[bool] = None,
        proxy_url: Optional[str] = None,
        viewport: Optional[Dict[str, int]] = None,
        user_agent: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ) -> AsyncIterator[BrowserSession]:
        """Open a browser session with guaranteed cleanup on every exit path."""
        log = logger or self._logger
        await self.start()

        browser: Optional[Browser] = None
        context: Optional[BrowserContext] = None
        try:
            try:
                browser = await self._playwright.chromium.launch(**self._launch_options(headless, proxy_url))
                context = await browser.new_context(**self._context_options(viewport, user_agent))
                page = await context.new_page()
            except Exception as e:
                raise SessionError(f"Browser session could not be opened: {e}", cause=e) from e

            mode = "headless" if self._launch_options(headless, proxy_url)["headless"] else "headed"
            log.info(f"🌐 Browser session opened ({mode}{', proxied' if proxy_url else ''})")
            yield BrowserSession(browser=browser, context=context, page=page)
        finally:
            if context is not None:
                try:
                    await context.close()
                except Exception as e:
                    log.warning(f"Error closing browser context: {e}")
            if browser is not None:
                try:
                    await browser.close()
                except Exception as e:
                    log.warning(f"Error closing browser: {e}")
            log.info("Browser session closed")


def viewport_dict(width: Optional[int], height: Optional[int]) -> Optional[Dict[str, int]]:
    if not width or not height:
        return None
    return {"width": int(width), "height": int(height)}
