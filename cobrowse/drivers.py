"""Driver tiers for the shared browser session.

The fallback order is the static ``DRIVER_TIERS`` table below; the engine
walks it top to bottom whenever it (re)initialises the session.
"""
import html
import logging
import re
from enum import Enum
from functools import partial
from typing import Callable, List, Optional, Tuple
from urllib.parse import urlparse

import httpx
from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError
from pydantic import BaseModel

from cobrowse.config import ENGINE_START_URL
from cobrowse.errors import DriverError
from cobrowse.models import PageInfo

logger = logging.getLogger(__name__)

# -----------------------------
# Operational constants
# -----------------------------
VIEWPORT = {"width": 1280, "height": 720}
DEFAULT_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)
CHROMIUM_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-accelerated-2d-canvas",
    "--no-first-run",
    "--no-zygote",
    "--disable-web-security",
    "--disable-features=IsolateOrigins,site-per-process",
]
FIREFOX_PREFS = {
    "layers.acceleration.disabled": True,
    "gfx.webrender.software": True,
    "media.hardware-video-decoding.enabled": False,
}
HTTP_HEADERS = {
    "User-Agent": DEFAULT_UA,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Upgrade-Insecure-Requests": "1",
}
JPEG_QUALITY = 60

# Invalid URLs are not HTTPError subclasses in httpx.
_FETCH_ERRORS = (httpx.HTTPError, httpx.InvalidURL)

_TITLE_RE = re.compile(r"<title[^>]*>([^<]+)</title>", re.IGNORECASE)

KNOWN_SITES = {
    "google": "Google",
    "youtube": "YouTube",
    "github": "GitHub",
    "wikipedia": "Wikipedia",
    "ycombinator": "Hacker News",
}


class DriverTier(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"
    HTTP = "httpFallback"
    MOCK = "mock"


class Frame(BaseModel):
    data: bytes
    media_type: str


# -----------------------------
# Synthesised output
# -----------------------------
def extract_title(markup: str) -> Optional[str]:
    """Return the text of the first <title> tag, if any."""
    match = _TITLE_RE.search(markup or "")
    if not match:
        return None
    title = html.unescape(match.group(1)).strip()
    return title or None


def title_from_url(url: str) -> str:
    host = (urlparse(url).hostname or "").lower()
    for keyword, title in KNOWN_SITES.items():
        if keyword in host:
            return title
    labels = [label for label in host.split(".") if label and label != "www"]
    if len(labels) >= 2:
        return labels[-2].capitalize()
    if labels:
        return labels[0].capitalize()
    return "Web Page"


def placeholder_frame(url: str, status: str = "Initializing Browser...") -> Frame:
    """SVG stand-in for a real frame. Always embeds the current URL."""
    svg = f"""<svg width="{VIEWPORT['width']}" height="{VIEWPORT['height']}" xmlns="http://www.w3.org/2000/svg">
  <rect width="100%" height="100%" fill="#f8f9fa"/>
  <text x="50%" y="30%" font-family="Arial" font-size="36" fill="#6b7280" text-anchor="middle">{html.escape(status)}</text>
  <text x="50%" y="50%" font-family="Arial" font-size="24" fill="#9ca3af" text-anchor="middle">{html.escape(url)}</text>
  <text x="50%" y="70%" font-family="Arial" font-size="18" fill="#d1d5db" text-anchor="middle">Real browser content loading...</text>
</svg>
"""
    return Frame(data=svg.encode("utf-8"), media_type="image/svg+xml")


def info_page(url: str, title: Optional[str] = None) -> str:
    safe_url = html.escape(url)
    safe_title = html.escape(title or title_from_url(url))
    return f"""<!DOCTYPE html>
<html>
  <head>
    <meta charset="utf-8">
    <title>{safe_title}</title>
  </head>
  <body style="font-family: sans-serif; margin: 0; padding: 20px; background: #f8f9fa; color: #333;">
    <h1>Browser Content</h1>
    <p><strong>Current URL:</strong> <code>{safe_url}</code></p>
    <p>The browser service is running in fallback mode. Real browser automation is unavailable,
       so this page stands in for the rendered document.</p>
    <p>Navigation still works: enter any URL in the address bar to move the shared session.</p>
  </body>
</html>
"""


# -----------------------------
# Drivers
# -----------------------------
class BrowserDriver:
    """One way of turning a URL into a page, a frame and a document."""

    tier: DriverTier
    navigate_timeout: float = 30.0

    def __init__(self, tier: DriverTier):
        self.tier = tier
        self.url = ENGINE_START_URL
        self.title = ""

    @property
    def healthy(self) -> bool:
        return True

    async def start(self) -> None:
        pass

    async def navigate(self, url: str) -> PageInfo:
        raise NotImplementedError

    async def screenshot(self) -> Frame:
        return placeholder_frame(self.url)

    async def content(self) -> str:
        return info_page(self.url, self.title)

    async def close(self) -> None:
        pass


class PlaywrightDriver(BrowserDriver):
    """Headless browser launched through Playwright (chromium or firefox)."""

    def __init__(self, tier: DriverTier, browser_name: str, launch_options: Optional[dict] = None):
        super().__init__(tier)
        self.browser_name = browser_name
        self.launch_options = launch_options or {}
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None

    @property
    def healthy(self) -> bool:
        return (
            self._browser is not None
            and self._browser.is_connected()
            and self._page is not None
            and not self._page.is_closed()
        )

    async def start(self) -> None:
        try:
            self._playwright = await async_playwright().start()
            launcher = getattr(self._playwright, self.browser_name)
            self._browser = await launcher.launch(headless=True, **self.launch_options)
            self._context = await self._browser.new_context(viewport=VIEWPORT, user_agent=DEFAULT_UA)
            self._page = await self._context.new_page()
        except PlaywrightError as e:
            await self.close()
            raise DriverError(f"{self.browser_name} launch failed: {e}") from e
        logger.info(f"Playwright {self.browser_name} browser initialized")

    async def navigate(self, url: str) -> PageInfo:
        try:
            await self._page.goto(url, wait_until="domcontentloaded", timeout=self.navigate_timeout * 1000)
        except PlaywrightError as e:
            raise DriverError(str(e)) from e
        self.url = self._page.url
        self.title = await self._page_title_safe()
        return PageInfo(url=self.url, title=self.title)

    async def screenshot(self) -> Frame:
        try:
            data = await self._page.screenshot(type="jpeg", quality=JPEG_QUALITY, full_page=False)
        except PlaywrightError as e:
            raise DriverError(str(e)) from e
        return Frame(data=data, media_type="image/jpeg")

    async def content(self) -> str:
        try:
            return await self._page.content()
        except PlaywrightError as e:
            raise DriverError(str(e)) from e

    async def close(self) -> None:
        for closer in (self._context, self._browser):
            if closer is None:
                continue
            try:
                await closer.close()
            except PlaywrightError as e:
                logger.warning(f"Error closing {self.browser_name}: {e}")
        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except PlaywrightError as e:
                logger.warning(f"Error stopping Playwright: {e}")
        self._playwright = self._browser = self._context = self._page = None

    async def _page_title_safe(self) -> str:
        try:
            return await self._page.title()
        except PlaywrightError:
            return ""


class HttpDriver(BrowserDriver):
    """Plain HTTP fetch. No rendering, so frames are always placeholders."""

    navigate_timeout = 15.0

    def __init__(self, tier: DriverTier = DriverTier.HTTP, client: Optional[httpx.AsyncClient] = None):
        super().__init__(tier)
        self._client = client
        self._owns_client = client is None
        self._markup: Optional[str] = None

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.navigate_timeout, connect=5.0),
                headers=HTTP_HEADERS,
                follow_redirects=True,
                max_redirects=5,
            )

    async def navigate(self, url: str) -> PageInfo:
        self.url = url
        try:
            self._markup = await self._fetch(url)
            self.title = extract_title(self._markup) or "Web Page"
        except _FETCH_ERRORS as e:
            logger.warning(f"HTTP fetch of {url} failed: {e}")
            self._markup = None
            self.title = title_from_url(url)
        return PageInfo(url=self.url, title=self.title)

    async def content(self) -> str:
        if self._markup is None:
            try:
                self._markup = await self._fetch(self.url)
            except _FETCH_ERRORS as e:
                logger.warning(f"HTTP fetch of {self.url} failed: {e}")
                return info_page(self.url, self.title)
        return self._markup

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _fetch(self, url: str) -> str:
        response = await self._client.get(url, timeout=self.navigate_timeout)
        response.raise_for_status()
        return response.text


class MockDriver(BrowserDriver):
    navigate_timeout = 5.0

    def __init__(self, tier: DriverTier = DriverTier.MOCK):
        super().__init__(tier)

    async def navigate(self, url: str) -> PageInfo:
        self.url = url
        self.title = title_from_url(url)
        return PageInfo(url=url, title=self.title)


DriverFactory = Callable[[], BrowserDriver]

DRIVER_TIERS: List[Tuple[DriverTier, DriverFactory]] = [
    (DriverTier.PRIMARY, partial(PlaywrightDriver, DriverTier.PRIMARY, "chromium", {"args": CHROMIUM_ARGS})),
    (DriverTier.SECONDARY, partial(PlaywrightDriver, DriverTier.SECONDARY, "firefox", {"firefox_user_prefs": FIREFOX_PREFS})),
    (DriverTier.HTTP, HttpDriver),
    (DriverTier.MOCK, MockDriver),
]
