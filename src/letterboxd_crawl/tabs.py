"""
Browser sessions and isolated tabs.

Every logical unit of work (one user, one movie, one activity page, one
review) gets its own tab: a fresh browser context with its own history,
cookies and injected scripts, so navigation in one never disturbs another.
"""
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Awaitable, Callable

from playwright.async_api import (
    Browser,
    BrowserContext,
    Page,
    Playwright,
    Response,
    async_playwright,
)
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from selectolax.parser import HTMLParser

from .config import CrawlerConfig, NAVIGATION_WAIT_UNTIL, WAIT_VISIBLE_TIMEOUT_MS
from .errors import NavigationError, NavigationTimeoutError

logger = logging.getLogger(__name__)

# Small query helper available on every document of a tab
DOM_HELPER_JS = """
window.__lbq = {
  exists: (sel) => document.querySelector(sel) !== null,
  text: (sel) => {
    const el = document.querySelector(sel);
    return el ? el.textContent.trim() : null;
  },
  count: (sel) => document.querySelectorAll(sel).length,
};
"""

GOTO_TIMEOUT_MS = 90_000

ReleaseFn = Callable[[], Awaitable[None]]


class Tab:
    """
    The browser primitives the crawler needs, on top of one Playwright page.

    Playwright failures are re-raised as NavigationError so the crawler can
    treat them like any other per-unit crawl failure.
    """

    def __init__(self, page: Page, name: str = "tab"):
        self.page = page
        self.name = name

    @property
    def url(self) -> str:
        return self.page.url

    async def navigate(self, url: str) -> Response | None:
        try:
            return await self.page.goto(url, wait_until=NAVIGATION_WAIT_UNTIL, timeout=GOTO_TIMEOUT_MS)
        except PlaywrightTimeoutError as exc:
            raise NavigationTimeoutError(f"timed out loading {url}", url) from exc
        except PlaywrightError as exc:
            raise NavigationError(f"failed to load {url}: {exc.message}", url) from exc

    async def wait_visible(self, selector: str, timeout_ms: int = WAIT_VISIBLE_TIMEOUT_MS) -> None:
        try:
            await self.page.wait_for_selector(selector, state="visible", timeout=timeout_ms)
        except PlaywrightTimeoutError as exc:
            raise NavigationTimeoutError(f"'{selector}' never became visible on {self.url}", self.url) from exc

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        try:
            return await self.page.evaluate(script, arg)
        except PlaywrightError as exc:
            raise NavigationError(f"script failed on {self.url}: {exc.message}", self.url) from exc

    async def exists(self, selector: str) -> bool:
        return bool(await self.evaluate(
            "(sel) => window.__lbq ? window.__lbq.exists(sel) : document.querySelector(sel) !== null",
            selector,
        ))

    async def click(self, selector: str) -> None:
        try:
            await self.page.click(selector)
        except PlaywrightError as exc:
            raise NavigationError(f"could not click '{selector}' on {self.url}: {exc.message}", self.url) from exc

    async def outer_html(self, selector: str = "html") -> str:
        try:
            return await self.page.eval_on_selector(selector, "(el) => el.outerHTML")
        except PlaywrightError as exc:
            raise NavigationError(f"could not read '{selector}' on {self.url}: {exc.message}", self.url) from exc

    async def document(self, selector: str = "html") -> HTMLParser:
        return HTMLParser(await self.outer_html(selector))

    async def screenshot(self, path: Path) -> Path | None:
        """Best-effort full-page screenshot; returns None if the page can't be captured."""
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            await self.page.screenshot(path=str(path), full_page=True)
            return path
        except PlaywrightError as exc:
            logger.warning(f"Screenshot of {self.url} failed: {exc.message}")
            return None


def _attach_network_logging(page: Page, name: str) -> None:
    def on_request(request):
        logger.debug(f"[{name}] request to be sent url={request.url} method={request.method}")

    def on_response(response):
        logger.debug(
            f"[{name}] response received url={response.url} status={response.status} "
            f"content_type={response.headers.get('content-type', '')}"
        )

    page.on("request", on_request)
    page.on("response", on_response)


class BrowserSession:
    """
    Owns the Playwright driver and the base browser all tabs are cut from.

    Connects to a remote browser over CDP when `browser_addr` is set, uses a
    persistent profile when `user_data_dir` is set, and otherwise launches a
    local Chromium (headless or not, optionally behind the configured proxy).
    """

    def __init__(self, config: CrawlerConfig):
        self.config = config
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._persistent: BrowserContext | None = None

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False

    async def start(self) -> None:
        cfg = self.config
        proxy = {"server": cfg.proxy_url} if cfg.proxy_url else None

        self._playwright = await async_playwright().start()
        chromium = self._playwright.chromium

        if cfg.browser_addr:
            if proxy:
                logger.warning("Proxy is ignored when connecting to a remote browser")
            self._browser = await chromium.connect_over_cdp(cfg.browser_addr)
            logger.info(f"Connected to remote browser at {cfg.browser_addr}")
        elif cfg.user_data_dir:
            self._persistent = await chromium.launch_persistent_context(
                str(cfg.user_data_dir), headless=cfg.headless, proxy=proxy,
            )
            logger.info(f"Launched browser with profile {cfg.user_data_dir} (headless={cfg.headless})")
        else:
            self._browser = await chromium.launch(headless=cfg.headless, proxy=proxy)
            logger.info(f"Launched local browser (headless={cfg.headless})")

    async def new_context(self) -> tuple[BrowserContext, bool]:
        """Return a context for a new tab and whether the caller owns (must close) it."""
        if self._persistent is not None:
            # A persistent profile is a single context; tabs are pages inside it
            return self._persistent, False
        if self._browser is None:
            raise RuntimeError("BrowserSession must be started before opening tabs")
        return await self._browser.new_context(), True

    async def close(self) -> None:
        if self._persistent is not None:
            await self._persistent.close()
            self._persistent = None
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
        logger.debug("Browser session closed")


class TabManager:
    """Hands out isolated tabs with helper scripts injected and network logging wired."""

    def __init__(self, session: BrowserSession, init_scripts: tuple[str, ...] = (DOM_HELPER_JS,)):
        self.session = session
        self.init_scripts = init_scripts
        self.open_count = 0

    async def new_tab(self, name: str = "tab") -> tuple[Tab, ReleaseFn]:
        """
        Open a tab. The returned release function must be awaited on every exit
        path; it is idempotent.
        """
        context, owned = await self.session.new_context()
        try:
            page = await context.new_page()
            # Init scripts die with the context, so every tab injects its own
            for script in self.init_scripts:
                await page.add_init_script(script)
            _attach_network_logging(page, name)
        except PlaywrightError:
            if owned:
                await context.close()
            raise

        self.open_count += 1
        logger.debug(f"Tab opened name={name} open={self.open_count}")
        released = False

        async def release() -> None:
            nonlocal released
            if released:
                return
            released = True
            self.open_count -= 1
            try:
                await page.close()
            finally:
                if owned:
                    await context.close()
            logger.debug(f"Tab closed name={name} open={self.open_count}")

        return Tab(page, name), release

    @asynccontextmanager
    async def open_tab(self, name: str = "tab"):
        tab, release = await self.new_tab(name)
        try:
            yield tab
        finally:
            await release()
