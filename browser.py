#!/usr/bin/env python3
"""
Headless browser lifecycle for article-body scraping.

``BrowserManager`` owns one Playwright driver, a primary Chromium instance and a
lazily-launched sibling routed through the configured proxy. Both are started on
first use and released together by ``close()``; use it as an async context manager
(or close it in a ``finally``) so a failed run never leaks a browser process.
"""

import asyncio
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from playwright.async_api import async_playwright, Browser, BrowserContext, Playwright

from config import config, get_logger
from utils import redact_proxy_url

logger = get_logger("browser")

USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)

LAUNCH_ARGS = [
    "--disable-gpu",
    "--disable-dev-shm-usage",
    "--disable-setuid-sandbox",
    "--no-sandbox",
    "--disable-blink-features=AutomationControlled",
    "--disable-infobars",
    "--window-size=1920,1080",
]

STEALTH_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
Object.defineProperty(navigator, 'languages', { get: () => ['en-US', 'en'] });
Object.defineProperty(navigator, 'plugins', {
    get: () => [
        { name: 'Chrome PDF Plugin', filename: 'internal-pdf-viewer' },
        { name: 'Chrome PDF Viewer', filename: 'mhjfbmdgcfjbbpaeojofohoefgiehjai' },
        { name: 'Native Client', filename: 'internal-nacl-plugin' }
    ]
});
window.chrome = { runtime: {}, loadTimes: function() {}, csi: function() {}, app: {} };
"""


def playwright_proxy_settings(proxy_url: str) -> Dict[str, str]:
    """Split a proxy URL into Playwright's server/username/password settings."""
    parsed = urlparse(proxy_url)
    if not parsed.scheme or not parsed.hostname:
        return {"server": proxy_url}
    server = f"{parsed.scheme}://{parsed.hostname}"
    if parsed.port:
        server = f"{server}:{parsed.port}"
    settings = {"server": server}
    if parsed.username:
        settings["username"] = parsed.username
    if parsed.password:
        settings["password"] = parsed.password
    return settings


class BrowserManager:
    """Owns the primary and proxy browser instances for one run."""

    def __init__(self, headless: Optional[bool] = None) -> None:
        self.headless = config.SCRAPER_HEADLESS if headless is None else headless
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._proxy_browser: Optional[Browser] = None
        self._proxy_url: Optional[str] = None
        self._lock = asyncio.Lock()

    async def __aenter__(self) -> "BrowserManager":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def _ensure_driver(self) -> Playwright:
        if self._playwright is None:
            self._playwright = await async_playwright().start()
        return self._playwright

    async def get_browser(self, proxy_url: Optional[str] = None) -> Browser:
        """Return the primary browser, or the proxy browser when ``proxy_url`` is given."""
        async with self._lock:
            driver = await self._ensure_driver()
            if not proxy_url:
                if self._browser is None:
                    self._browser = await driver.chromium.launch(headless=self.headless, args=LAUNCH_ARGS)
                    logger.info("Started headless browser")
                return self._browser

            if self._proxy_browser is not None and proxy_url != self._proxy_url:
                logger.info("Proxy endpoint changed; restarting proxy browser")
                await self._proxy_browser.close()
                self._proxy_browser = None
            if self._proxy_browser is None:
                self._proxy_browser = await driver.chromium.launch(
                    headless=self.headless,
                    args=LAUNCH_ARGS,
                    proxy=playwright_proxy_settings(proxy_url),
                )
                self._proxy_url = proxy_url
                logger.info(f"Started headless browser via proxy {redact_proxy_url(proxy_url)}")
            return self._proxy_browser

    async def new_context(self, proxy_url: Optional[str] = None) -> BrowserContext:
        """Open an isolated, stealth-configured context. Callers must close it."""
        browser = await self.get_browser(proxy_url)
        context = await browser.new_context(
            user_agent=USER_AGENT,
            viewport={"width": 1920, "height": 1080},
            locale="en-US",
            extra_http_headers={"Accept-Language": "en-US,en;q=0.9"},
        )
        await context.add_init_script(STEALTH_SCRIPT)
        return context

    async def close(self) -> None:
        """Close every browser and the driver. Safe to call more than once."""
        async with self._lock:
            for attr in ("_browser", "_proxy_browser"):
                browser: Any = getattr(self, attr)
                if browser is None:
                    continue
                try:
                    await browser.close()
                except Exception as e:
                    logger.warning(f"Error closing browser: {e}")
                setattr(self, attr, None)
            self._proxy_url = None
            if self._playwright is not None:
                try:
                    await self._playwright.stop()
                except Exception as e:
                    logger.warning(f"Error stopping Playwright: {e}")
                self._playwright = None
                logger.info("Stopped headless browser")
