"""Short-lived browser instance management for tapfarm.

Provides :class:`BrowserManager`, which wraps a Playwright Chromium process
for exactly one job attempt:

* Launch with a lean argument set (no GPU, no extensions, single process).
* One context + page carrying the attempt's user agent.
* Route-level blocking of images / media / fonts via :class:`ResourceBlocker`.
* Teardown of page, context, browser and the Playwright driver on every exit
  path, errors during teardown logged and swallowed.

Usage::

    async with BrowserManager(headless=True) as manager:
        page = await manager.new_page(user_agent)
        await page.goto(url)
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright

from .blocker import ResourceBlocker

logger = logging.getLogger(__name__)

CHROMIUM_ARGS: List[str] = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-extensions",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--no-first-run",
    "--no-zygote",
    "--disable-gpu",
    "--disable-features=site-per-process",
    "--disable-infobars",
    "--mute-audio",
]

DEFAULT_VIEWPORT: Dict[str, int] = {"width": 1280, "height": 720}


class BrowserManager:
    """Owns one Chromium process for the duration of a single attempt.

    The manager is *not* shared between attempts: every job gets a fresh
    browser so a crashed or wedged page can never leak into the next run.
    """

    def __init__(
        self,
        headless: bool = True,
        block_images: bool = True,
        block_media: bool = True,
        timeout: int = 60000,
        extra_args: Optional[List[str]] = None,
    ) -> None:
        """Initialise the BrowserManager.

        Args:
            headless: Run Chromium without a window.
            block_images: Abort image requests.
            block_media: Abort media and font requests.
            timeout: Default Playwright timeout for page operations (ms).
            extra_args: Additional Chromium command-line switches.
        """
        self.headless = headless
        self.timeout = timeout
        self.blocker = ResourceBlocker(block_images=block_images, block_media=block_media)
        self.args = CHROMIUM_ARGS + list(extra_args or [])
        self.playwright: Optional[Playwright] = None
        self.browser: Optional[Browser] = None
        self.context: Optional[BrowserContext] = None
        self.page: Optional[Page] = None

    async def __aenter__(self) -> "BrowserManager":
        return await self.launch()

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.close()

    async def launch(self) -> "BrowserManager":
        """Start the Playwright driver and a Chromium process.

        Returns:
            ``self`` for fluent chaining.
        """
        logger.debug("Launching Chromium (Headless: %s)...", self.headless)
        self.playwright = await async_playwright().start()
        try:
            self.browser = await self.playwright.chromium.launch(
                headless=self.headless,
                args=self.args,
                handle_sigint=False,
                handle_sigterm=False,
                handle_sighup=False,
            )
        except Exception:
            await self.close()
            raise
        return self

    async def new_page(self, user_agent: Optional[str] = None) -> Page:
        """Create the attempt's context and page.

        Args:
            user_agent: User agent string for the context.

        Returns:
            A fresh Playwright ``Page`` with resource blocking attached.
        """
        if not self.browser:
            raise RuntimeError("Browser not launched")
        self.context = await self.browser.new_context(
            user_agent=user_agent,
            viewport=DEFAULT_VIEWPORT,
            device_scale_factor=1,
            ignore_https_errors=True,
        )
        self.context.set_default_timeout(self.timeout)
        await self.context.route("**/*", self.blocker.handle_route)
        self.page = await self.context.new_page()
        return self.page

    async def close(self) -> None:
        """Tear down page, context, browser and driver.  Never raises."""
        if self.page is not None:
            try:
                if not self.page.is_closed():
                    await self.page.close()
            except Exception as e:
                logger.debug("Error closing page: %s", e)
            self.page = None
        if self.context is not None:
            try:
                await self.context.close()
            except Exception as e:
                logger.debug("Error closing context: %s", e)
            self.context = None
        if self.browser is not None:
            try:
                await self.browser.close()
            except Exception as e:
                logger.debug("Error closing browser: %s", e)
            self.browser = None
        if self.playwright is not None:
            try:
                await self.playwright.stop()
            except Exception as e:
                logger.debug("Error stopping Playwright: %s", e)
            self.playwright = None
        if self.blocker.blocked_count:
            logger.debug("Blocked %d requests during session", self.blocker.blocked_count)
