"""
Browser module for tapfarm.

Per-attempt Chromium sessions built on Playwright:

- **BrowserManager** – launch / page creation / guaranteed teardown for one
  job attempt.
- **ResourceBlocker** – route-level blocking of images, media, fonts and
  analytics endpoints.

Submodules:
    instance: ``BrowserManager`` class.
    blocker: ``ResourceBlocker`` route handler.
"""

from .instance import BrowserManager

__all__ = ["BrowserManager"]
