"""Headless browser capture of a live deployment using Playwright.

Each capture launches its own Chromium instance and tears it down on every
exit path, including timeouts and navigation failures.
"""

import asyncio
from typing import Any

import structlog
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from config import settings
from errors import ServiceUnavailable, UpstreamServiceError
from integrations.base import DomSummary, PageSnapshot

logger = structlog.get_logger(__name__)

# Executed in the page to summarize its structure.
DOM_SUMMARY_SCRIPT = """
() => {
    const headings = Array.from(document.querySelectorAll('h1, h2, h3')).map((h) => ({
        tag: h.tagName.toLowerCase(),
        text: (h.textContent || '').trim().slice(0, 100),
    }));
    return {
        title: document.title,
        url: window.location.href,
        headings: headings,
        links: document.querySelectorAll('a').length,
        buttons: document.querySelectorAll('button').length,
        forms: document.querySelectorAll('form').length,
        images: document.querySelectorAll('img').length,
        bodyText: (document.body ? document.body.innerText : '').slice(0, 1000),
    };
}
"""


def dom_summary_from_dict(raw: dict[str, Any]) -> DomSummary:
    return DomSummary(
        title=str(raw.get("title") or ""),
        url=str(raw.get("url") or ""),
        headings=[
            {"tag": str(h.get("tag", "")), "text": str(h.get("text", ""))[:100]}
            for h in raw.get("headings") or []
        ],
        link_count=int(raw.get("links") or 0),
        button_count=int(raw.get("buttons") or 0),
        form_count=int(raw.get("forms") or 0),
        image_count=int(raw.get("images") or 0),
        body_text=str(raw.get("bodyText") or "")[:1000],
    )


class PlaywrightBrowser:
    """Capture a screenshot and DOM summary of a URL."""

    def __init__(
        self,
        navigation_timeout_seconds: int | None = None,
        settle_ms: int | None = None,
        capture_timeout_seconds: int | None = None,
        viewport: tuple[int, int] | None = None,
    ) -> None:
        self.navigation_timeout_ms = (
            navigation_timeout_seconds or settings.browser_navigation_timeout_seconds
        ) * 1000
        self.settle_ms = settle_ms if settle_ms is not None else settings.browser_settle_ms
        self.capture_timeout_seconds = (
            capture_timeout_seconds or settings.capture_timeout_seconds
        )
        self.viewport = viewport or (
            settings.browser_viewport_width,
            settings.browser_viewport_height,
        )

    async def capture(self, url: str) -> PageSnapshot:
        """Capture ``url``, bounded by the overall capture timeout.

        Raises:
            ServiceUnavailable: If the capture exceeds its time budget.
            UpstreamServiceError: If the browser fails to load the page.
        """
        try:
            return await asyncio.wait_for(self._capture(url), timeout=self.capture_timeout_seconds)
        except TimeoutError as e:
            logger.warning("browser_capture_timeout", url=url, timeout=self.capture_timeout_seconds)
            raise ServiceUnavailable(
                f"Capture of {url} exceeded {self.capture_timeout_seconds}s", service="browser"
            ) from e
        except PlaywrightError as e:
            logger.warning("browser_capture_failed", url=url, error=str(e))
            raise UpstreamServiceError(f"Capture of {url} failed: {e}", service="browser") from e

    async def _capture(self, url: str) -> PageSnapshot:
        width, height = self.viewport
        async with async_playwright() as p:
            browser = await p.chromium.launch(headless=True)
            try:
                context = await browser.new_context(viewport={"width": width, "height": height})
                page = await context.new_page()
                await page.goto(url, wait_until="networkidle", timeout=self.navigation_timeout_ms)
                if self.settle_ms:
                    await page.wait_for_timeout(self.settle_ms)
                screenshot = await page.screenshot(type="png", full_page=False)
                raw = await page.evaluate(DOM_SUMMARY_SCRIPT)
            finally:
                await browser.close()

        logger.info("browser_capture_complete", url=url, screenshot_bytes=len(screenshot))
        return PageSnapshot(screenshot_png=screenshot, dom=dom_summary_from_dict(raw))
