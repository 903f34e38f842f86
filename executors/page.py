"""Browser-backed job executor.

:class:`PageExecutor` runs one attempt in a fresh Chromium instance:

1. Launch the browser (via :class:`browser.BrowserManager`) with the attempt's
   user agent.
2. Open ``target_url`` and store the key as the session token in
   ``localStorage`` and as a cookie, then reload so the page picks it up.
3. Verify ``ready_selector`` is present; otherwise fail with
   ``"Button not found"`` after saving a debug screenshot under
   ``logs/screenshots``.
4. Evaluate the in-page action script, which reports
   ``{success, metric, reason}``.
5. Close everything, whatever happened.

The whole sequence runs under ``asyncio.wait_for`` bounded by the attempt
deadline.
"""

import asyncio
import logging
import os
import time
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from browser.instance import BrowserManager
from core.config import LOGS_DIR, FarmSettings
from core.models import Outcome
from core.utils import key_digest, redact_key
from executors.base import ExecutionFailure, JobExecutor

logger = logging.getLogger(__name__)

SETTLE_AFTER_TOKEN_SECONDS = 1.5
SETTLE_AFTER_RELOAD_SECONDS = 2.0
DEBUG_SCREENSHOT_DIR = str(LOGS_DIR / "screenshots")

# Clicks the ready element ``repeat`` times in small batches, re-resolving the
# element between batches in case the page re-renders it.
DEFAULT_ACTION_SCRIPT = """
async ({selector, repeat, threshold}) => {
  const sleep = (ms) => new Promise(r => setTimeout(r, ms));
  let target = document.querySelector(selector);
  if (!target) {
    return {success: false, metric: 0, reason: 'Button not found after verification'};
  }
  let done = 0;
  let failed = 0;
  const batchSize = 50;
  for (let start = 0; start < repeat; start += batchSize) {
    const end = Math.min(start + batchSize, repeat);
    for (let i = start; i < end; i++) {
      await sleep(10 + Math.random() * 15);
      try {
        for (const type of ['mousedown', 'mouseup', 'click']) {
          target.dispatchEvent(new MouseEvent(type, {bubbles: true, cancelable: true, view: window}));
        }
        done++;
      } catch (e) {
        failed++;
      }
    }
    target = document.querySelector(selector);
    if (!target) {
      return {success: done >= threshold, metric: done, failed,
              reason: 'Target lost after ' + done + ' actions'};
    }
    await sleep(100);
  }
  await sleep(2000);
  return {success: done >= threshold, metric: done, failed,
          reason: done >= threshold ? null : 'Only ' + done + ' actions registered'};
}
"""


class PageExecutor(JobExecutor):
    """Run one attempt in a dedicated Chromium instance."""

    name = "page"

    def __init__(
        self,
        target_url: str,
        ready_selector: str,
        token_storage_key: str = "session_token",
        action_repeat: int = 1050,
        success_threshold: int = 1000,
        headless: bool = True,
        block_images: bool = True,
        block_media: bool = True,
        navigation_timeout_ms: int = 60000,
        action_script: str = DEFAULT_ACTION_SCRIPT,
        screenshot_dir: Optional[str] = DEBUG_SCREENSHOT_DIR,
    ) -> None:
        self.target_url = target_url
        self.ready_selector = ready_selector
        self.token_storage_key = token_storage_key
        self.action_repeat = action_repeat
        self.success_threshold = success_threshold
        self.headless = headless
        self.block_images = block_images
        self.block_media = block_media
        self.navigation_timeout_ms = navigation_timeout_ms
        self.action_script = action_script
        self.screenshot_dir = screenshot_dir

    @classmethod
    def from_settings(cls, settings: FarmSettings) -> "PageExecutor":
        return cls(
            target_url=settings.target_url,
            ready_selector=settings.ready_selector,
            token_storage_key=settings.token_storage_key,
            action_repeat=settings.action_repeat,
            success_threshold=settings.success_threshold,
            headless=settings.headless,
            block_images=settings.block_images,
            block_media=settings.block_media,
            navigation_timeout_ms=settings.navigation_timeout_ms,
        )

    def _new_browser(self) -> BrowserManager:
        return BrowserManager(
            headless=self.headless,
            block_images=self.block_images,
            block_media=self.block_media,
            timeout=self.navigation_timeout_ms,
        )

    async def execute(self, key: str, context: str, deadline: float) -> Outcome:
        budget = deadline - time.time()
        if budget <= 0:
            raise ExecutionFailure("Deadline already passed")
        try:
            return await asyncio.wait_for(self._run(key, context), timeout=budget)
        except asyncio.TimeoutError:
            raise ExecutionFailure(f"Timed out after {budget:.0f}s")

    async def _run(self, key: str, user_agent: str) -> Outcome:
        async with self._new_browser() as manager:
            page = await manager.new_page(user_agent)

            logger.debug("Loading %s for %s", self.target_url, redact_key(key))
            await page.goto(self.target_url, wait_until="networkidle", timeout=self.navigation_timeout_ms)
            await page.evaluate(
                """({storageKey, token, domain}) => {
                    localStorage.setItem(storageKey, token);
                    document.cookie = `${storageKey}=${token}; domain=${domain}; path=/; secure`;
                }""",
                {"storageKey": self.token_storage_key, "token": key, "domain": self._cookie_domain()},
            )
            await asyncio.sleep(SETTLE_AFTER_TOKEN_SECONDS)
            await page.reload(wait_until="networkidle", timeout=self.navigation_timeout_ms)
            await asyncio.sleep(SETTLE_AFTER_RELOAD_SECONDS)

            if await page.query_selector(self.ready_selector) is None:
                await self._save_screenshot(page, key, "no_button")
                raise ExecutionFailure("Button not found")

            result = await page.evaluate(
                self.action_script,
                {
                    "selector": self.ready_selector,
                    "repeat": self.action_repeat,
                    "threshold": self.success_threshold,
                },
            )
            return self._to_outcome(key, result)

    async def _save_screenshot(self, page, key: str, tag: str) -> Optional[str]:
        """Best-effort full-page screenshot for post-mortem debugging.

        Files are named after the key digest so no token lands on disk.
        """
        if not self.screenshot_dir:
            return None
        path = os.path.join(self.screenshot_dir, f"{tag}_{key_digest(key)[:12]}.png")
        try:
            os.makedirs(self.screenshot_dir, exist_ok=True)
            await page.screenshot(path=path, full_page=True)
        except Exception as e:
            logger.debug(f"Screenshot failed for {redact_key(key)}: {e}")
            return None
        logger.warning(f"{redact_key(key)} Debug screenshot saved to {path}")
        return path

    def _cookie_domain(self) -> str:
        return urlparse(self.target_url).hostname or ""

    def _to_outcome(self, key: str, result: Optional[Dict[str, Any]]) -> Outcome:
        """Translate the action script's result into an :class:`Outcome`."""
        if not isinstance(result, dict):
            raise ExecutionFailure(f"Unexpected action result: {result!r}")
        metric = result.get("metric")
        try:
            metric = float(metric) if metric is not None else None
        except (TypeError, ValueError):
            metric = None
        failed = result.get("failed", 0)
        if result.get("success") and metric is not None and metric >= self.success_threshold:
            return Outcome.succeeded(key, metric=metric, failed=failed)
        reason = result.get("reason") or "Action did not reach its goal"
        return Outcome.failed(key, f"Action failed: {reason}", metric=metric, failed=failed)
