"""
Browser capability backed by Playwright Chromium.

Strategies only see the small ``BrowserSession`` surface (goto, evaluate,
hover, click, coverage, screenshot, close). ``PlaywrightBrowser`` owns one
browser process per scan and hands out isolated sessions (one context + page
each), so tests can substitute any object with the same methods.

CSS coverage uses the DevTools protocol (``CSS.startRuleUsageTracking``) since
Playwright's Python API has no coverage helper.
"""

import logging
from typing import Any, Optional

from playwright.async_api import Browser, BrowserContext, CDPSession, Page, Playwright, async_playwright

from libs.core.config import BrowserSettings, get_settings
from libs.core.models import DEFAULT_USER_AGENT

logger = logging.getLogger(__name__)

STEALTH_INIT_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', { get: () => false, configurable: true });
window.chrome = window.chrome || { runtime: {} };
Object.defineProperty(navigator, 'languages', { get: () => ['en-US', 'en'] });
"""


class BrowserSession:
    """One isolated browser page."""

    def __init__(self, context: BrowserContext, page: Page, default_timeout_ms: int):
        self._context = context
        self.page = page
        self._timeout_ms = default_timeout_ms
        self._cdp: Optional[CDPSession] = None
        self._stylesheets: dict[str, dict[str, Any]] = {}

    async def goto(self, url: str, wait_until: str = "networkidle", timeout_ms: Optional[int] = None) -> Optional[int]:
        """Navigate; returns the HTTP status when known."""
        response = await self.page.goto(url, wait_until=wait_until, timeout=timeout_ms or self._timeout_ms)
        return response.status if response else None

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        if arg is None:
            return await self.page.evaluate(script)
        return await self.page.evaluate(script, arg)

    async def hover(self, selector: str) -> None:
        await self.page.hover(selector, timeout=5000)

    async def click(self, selector: str) -> None:
        await self.page.click(selector, timeout=5000)

    async def wait(self, ms: int) -> None:
        await self.page.wait_for_timeout(ms)

    async def set_viewport(self, width: int, height: int) -> None:
        await self.page.set_viewport_size({"width": width, "height": height})

    async def screenshot(self, full_page: bool = False) -> bytes:
        return await self.page.screenshot(full_page=full_page, type="png")

    async def content(self) -> str:
        return await self.page.content()

    async def start_coverage(self) -> None:
        self._cdp = await self._context.new_cdp_session(self.page)
        self._cdp.on("CSS.styleSheetAdded", self._on_stylesheet_added)
        await self._cdp.send("DOM.enable")
        await self._cdp.send("CSS.enable")
        await self._cdp.send("CSS.startRuleUsageTracking")

    def _on_stylesheet_added(self, event: dict) -> None:
        header = event.get("header", {})
        self._stylesheets[header.get("styleSheetId")] = header

    async def stop_coverage(self) -> list[dict[str, Any]]:
        """Stop tracking; returns ``[{url, text, ranges: [{start, end}]}]`` per stylesheet."""
        if self._cdp is None:
            return []

        usage = await self._cdp.send("CSS.stopRuleUsageTracking")
        ranges_by_sheet: dict[str, list[dict[str, int]]] = {}
        for rule in usage.get("ruleUsage", []):
            if rule.get("used"):
                ranges_by_sheet.setdefault(rule["styleSheetId"], []).append(
                    {"start": int(rule["startOffset"]), "end": int(rule["endOffset"])}
                )

        entries = []
        for sheet_id, ranges in ranges_by_sheet.items():
            text = await self._cdp.send("CSS.getStyleSheetText", {"styleSheetId": sheet_id})
            header = self._stylesheets.get(sheet_id, {})
            entries.append(
                {
                    "url": header.get("sourceURL") or "inline",
                    "text": text.get("text", ""),
                    "ranges": sorted(ranges, key=lambda r: r["start"]),
                }
            )
        await self._cdp.detach()
        self._cdp = None
        return entries

    async def close(self) -> None:
        await self._context.close()


class PlaywrightBrowser:
    """
    Lazily launched Chromium shared by all strategies of a scan.

    Usage:
        async with PlaywrightBrowser() as browser:
            session = await browser.new_session(user_agent=...)
            await session.goto(url)
    """

    def __init__(self, settings: Optional[BrowserSettings] = None):
        self.settings = settings or get_settings().browser
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None

    async def __aenter__(self) -> "PlaywrightBrowser":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def _ensure_browser(self) -> Browser:
        if self._browser is None:
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(
                headless=self.settings.headless,
                args=["--no-sandbox", "--disable-dev-shm-usage"],
            )
            logger.info("[Browser] Chromium launched")
        return self._browser

    async def new_session(
        self,
        user_agent: str = DEFAULT_USER_AGENT,
        viewport: Optional[dict[str, int]] = None,
        javascript_enabled: bool = True,
        extra_headers: Optional[dict[str, str]] = None,
        stealth: bool = False,
        timeout_ms: Optional[int] = None,
    ) -> BrowserSession:
        browser = await self._ensure_browser()
        context = await browser.new_context(
            user_agent=user_agent,
            viewport=viewport
            or {"width": self.settings.viewport_width, "height": self.settings.viewport_height},
            java_script_enabled=javascript_enabled,
            extra_http_headers=extra_headers,
            ignore_https_errors=True,
        )
        if stealth:
            await context.add_init_script(STEALTH_INIT_SCRIPT)
        page = await context.new_page()
        return BrowserSession(context, page, timeout_ms or self.settings.timeout_ms)

    async def close(self) -> None:
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
