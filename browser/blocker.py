"""Network-level resource blocker for tapfarm browser sessions.

Aborts image, media and font requests at the Playwright route level so each
short-lived browser stays as light as possible.  Scripts, documents, XHR and
stylesheets always go through; the page needs them to render its controls.
"""

import logging
import re
from typing import Iterable, List

from playwright.async_api import Route

logger = logging.getLogger(__name__)

# Analytics endpoints that never affect the page's behaviour
TRACKER_DOMAINS = [
    r".*google-analytics\.com.*",
    r".*googletagmanager\.com.*",
    r".*doubleclick\.net.*",
    r".*mc\.yandex\.ru.*",
    r".*hotjar\.com.*",
]


class ResourceBlocker:
    """Route handler deciding, per request, whether to abort or continue.

    Attributes:
        block_images: Abort ``image`` requests (``data:`` URIs excepted).
        block_media: Abort ``media`` and ``font`` requests.
        compiled_patterns: URL patterns that are always aborted.
        blocked_count: Requests aborted so far (for debug logging).
    """

    def __init__(
        self,
        block_images: bool = True,
        block_media: bool = True,
        extra_patterns: Iterable[str] = (),
    ) -> None:
        self.block_images = block_images
        self.block_media = block_media
        self.compiled_patterns: List[re.Pattern[str]] = [
            re.compile(p) for p in [*TRACKER_DOMAINS, *extra_patterns]
        ]
        self.blocked_count = 0

    def should_block(self, resource_type: str, url: str) -> bool:
        """Pure decision function behind :meth:`handle_route`."""
        if self.block_images and resource_type == "image":
            return not url.lower().startswith("data:image/")
        if self.block_media and resource_type in ("media", "font"):
            return True
        return any(pattern.match(url) for pattern in self.compiled_patterns)

    async def handle_route(self, route: Route) -> None:
        """Playwright route handler that aborts or continues each request."""
        request = route.request
        if self.should_block(request.resource_type, request.url):
            self.blocked_count += 1
            await route.abort()
            return
        await route.continue_()
