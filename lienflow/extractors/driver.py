"""
Browser automation capability used by the extraction session.

``AutomationDriver`` is the narrow interface the session needs: navigate,
fill, click, read text, wait for visibility, download, tear down.
``PlaywrightDriver`` implements it on Playwright's async API, locally or
against a remote scraping browser over CDP.

Targets are Playwright selector strings, plus two shorthands resolved
through Playwright's semantic locators:

    label=File Type            -> page.get_by_label("File Type", exact=True)
    role=button:Next Page      -> page.get_by_role("button", name=/Next Page/i)

Every Playwright timeout or error surfaces as ``UIActionError`` so the
session's retry wrapper can treat them uniformly.
"""

import re
from pathlib import Path
from typing import Protocol

from playwright.async_api import Browser, BrowserContext, Locator, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeout

from lienflow.core.config import Settings, get_settings
from lienflow.utils.exceptions import SessionError, UIActionError
from lienflow.utils.logging import get_logger

logger = get_logger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36"
)
LAUNCH_ARGS = ["--no-sandbox", "--disable-setuid-sandbox", "--disable-dev-shm-usage"]


class AutomationDriver(Protocol):
    """What the extraction session needs from a browser."""

    async def goto(self, url: str) -> None: ...

    async def fill(self, target: str, value: str) -> None: ...

    async def select_option(self, target: str, label: str) -> None: ...

    async def click(self, target: str) -> None: ...

    async def press(self, key: str, target: str | None = None) -> None: ...

    async def wait_for_load(self) -> None: ...

    async def wait_visible(self, target: str, timeout_ms: int | None = None) -> None: ...

    async def is_visible(self, target: str, timeout_ms: int = 0) -> bool: ...

    async def count(self, target: str) -> int: ...

    async def text(self, target: str, timeout_ms: int | None = None) -> str: ...

    async def html(self, target: str, timeout_ms: int | None = None) -> str: ...

    async def download(self, target: str, dest: Path, timeout_ms: int) -> Path: ...

    async def screenshot(self, path: Path) -> None: ...

    async def close(self) -> None: ...


class PlaywrightDriver:
    """
    AutomationDriver backed by Playwright Chromium.

    The browser is started lazily on first use and released by ``close``.

    Usage:
        async with PlaywrightDriver() as driver:
            await driver.goto("https://bizfileonline.sos.ca.gov/search/ucc")
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._context: BrowserContext | None = None
        self._page: Page | None = None

    async def __aenter__(self) -> "PlaywrightDriver":
        await self._ensure_page()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _ensure_page(self) -> Page:
        """Start Playwright, the browser, a download-enabled context and one page."""
        settings = self._settings

        if self._playwright is None:
            self._playwright = await async_playwright().start()

        if self._browser is None or not self._browser.is_connected():
            if settings.browser_cdp_url:
                self._browser = await self._playwright.chromium.connect_over_cdp(
                    settings.browser_cdp_url
                )
                logger.info("Connected to remote browser")
            else:
                self._browser = await self._playwright.chromium.launch(
                    headless=settings.playwright_headless_resolved,
                    args=LAUNCH_ARGS,
                )

        if self._context is None:
            self._context = await self._browser.new_context(
                accept_downloads=True,
                user_agent=USER_AGENT,
            )
            self._context.set_default_timeout(settings.playwright_timeout)

        if self._page is None or self._page.is_closed():
            self._page = await self._context.new_page()
            self._page.set_default_navigation_timeout(settings.playwright_timeout)

        return self._page

    async def _locate(self, target: str) -> Locator:
        page = await self._ensure_page()
        kind, _, value = target.partition("=")

        if kind == "label":
            return page.get_by_label(value, exact=True)
        if kind == "role":
            role, _, name = value.partition(":")
            if name:
                return page.get_by_role(role, name=re.compile(name, re.IGNORECASE))  # type: ignore[arg-type]
            return page.get_by_role(role)  # type: ignore[arg-type]
        return page.locator(target)

    @staticmethod
    def _action_error(action: str, target: str | None, error: Exception) -> UIActionError:
        return UIActionError(
            f"{action} failed: {error}",
            action=action,
            locator=target,
            details={"error_type": type(error).__name__},
        )

    async def goto(self, url: str) -> None:
        page = await self._ensure_page()
        try:
            response = await page.goto(url, wait_until="networkidle")
        except PlaywrightError as e:
            raise SessionError(f"Navigation failed: {url}", details={"url": url}) from e

        if response and response.status >= 400:
            raise SessionError(
                f"HTTP error: {response.status}",
                details={"url": url, "status_code": response.status},
            )

    async def fill(self, target: str, value: str) -> None:
        try:
            await (await self._locate(target)).first.fill(value)
        except PlaywrightError as e:
            raise self._action_error("fill", target, e) from e

    async def select_option(self, target: str, label: str) -> None:
        try:
            await (await self._locate(target)).first.select_option(label=label)
        except PlaywrightError as e:
            raise self._action_error("select_option", target, e) from e

    async def click(self, target: str) -> None:
        try:
            await (await self._locate(target)).first.click()
        except PlaywrightError as e:
            raise self._action_error("click", target, e) from e

    async def press(self, key: str, target: str | None = None) -> None:
        try:
            if target is None:
                page = await self._ensure_page()
                await page.keyboard.press(key)
            else:
                await (await self._locate(target)).first.press(key)
        except PlaywrightError as e:
            raise self._action_error("press", target, e) from e

    async def wait_for_load(self) -> None:
        page = await self._ensure_page()
        try:
            await page.wait_for_load_state("networkidle")
        except PlaywrightTimeout:
            # Long-polling pages never go idle; the DOM is usable anyway
            logger.debug("Network did not go idle", url=page.url)

    async def wait_visible(self, target: str, timeout_ms: int | None = None) -> None:
        try:
            await (await self._locate(target)).first.wait_for(state="visible", timeout=timeout_ms)
        except PlaywrightError as e:
            raise self._action_error("wait_visible", target, e) from e

    async def is_visible(self, target: str, timeout_ms: int = 0) -> bool:
        locator = (await self._locate(target)).first
        try:
            if timeout_ms:
                await locator.wait_for(state="visible", timeout=timeout_ms)
                return True
            return await locator.is_visible()
        except PlaywrightError:
            return False

    async def count(self, target: str) -> int:
        try:
            return await (await self._locate(target)).count()
        except PlaywrightError as e:
            raise self._action_error("count", target, e) from e

    async def text(self, target: str, timeout_ms: int | None = None) -> str:
        try:
            content = await (await self._locate(target)).first.text_content(timeout=timeout_ms)
        except PlaywrightError as e:
            raise self._action_error("text", target, e) from e
        return (content or "").strip()

    async def html(self, target: str, timeout_ms: int | None = None) -> str:
        try:
            return await (await self._locate(target)).first.inner_html(timeout=timeout_ms)
        except PlaywrightError as e:
            raise self._action_error("html", target, e) from e

    async def download(self, target: str, dest: Path, timeout_ms: int) -> Path:
        page = await self._ensure_page()
        try:
            async with page.expect_download(timeout=timeout_ms) as download_info:
                await (await self._locate(target)).first.click()
            download = await download_info.value
            await download.save_as(dest)
        except PlaywrightError as e:
            raise self._action_error("download", target, e) from e
        return dest

    async def screenshot(self, path: Path) -> None:
        page = await self._ensure_page()
        await page.screenshot(path=str(path), full_page=True)

    async def close(self) -> None:
        """
        Close page, context, browser and Playwright.

        Releases all resources in the correct order; safe to call twice.
        """
        if self._page is not None and not self._page.is_closed():
            await self._page.close()
        self._page = None

        if self._context:
            await self._context.close()
            self._context = None

        if self._browser and self._browser.is_connected():
            await self._browser.close()
            self._browser = None

        if self._playwright:
            await self._playwright.stop()
            self._playwright = None
