"""Automation session: the browser driver one execution talks to.

The engine needs only a handful of primitives (visibility checks, the
current URL, script evaluation, timed waits, reload / bring-to-front,
close). ``AutomationSession`` names them; ``PlaywrightSession`` provides
them on top of a lazily launched Playwright Chromium page.

Timed waits raise the builtin ``TimeoutError`` when their deadline passes.
"""

import asyncio
import re
from typing import Any, Optional

import structlog

logger = structlog.get_logger(__name__)


def build_locator(selector: str, selector_type: str = "css") -> str:
    """Translate an editor selector + type into a Playwright selector string."""
    selector_type = (selector_type or "css").lower()
    if selector_type == "xpath":
        return f"xpath={selector}"
    if selector_type == "text":
        return f"text={selector}"
    return selector


class AutomationSession:
    """Primitives the engine requires from a browser driver."""

    async def is_visible(self, selector: str, selector_type: str = "css") -> bool:
        raise NotImplementedError

    async def current_url(self) -> str:
        raise NotImplementedError

    async def evaluate(self, script: str) -> Any:
        raise NotImplementedError

    async def wait_for_selector(self, selector: str, selector_type: str = "css", timeout_ms: int = 30000) -> None:
        raise NotImplementedError

    async def wait_for_url(self, pattern: "re.Pattern[str]", timeout_ms: int = 30000) -> None:
        raise NotImplementedError

    async def wait_for_function(self, script: str, timeout_ms: int = 30000) -> None:
        raise NotImplementedError

    async def reload(self) -> None:
        raise NotImplementedError

    async def bring_to_front(self) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


class PlaywrightSession(AutomationSession):
    """One Chromium browser, context and page owned by a single execution.

    The browser is started on first use so executions that never touch
    the browser never launch one.
    """

    def __init__(self, headless: bool = True, viewport: Optional[dict] = None):
        self.headless = headless
        self.viewport = viewport or {"width": 1366, "height": 768}
        self._pw = None
        self._browser = None
        self._context = None
        self._page = None
        self._lock = asyncio.Lock()

    @property
    def started(self) -> bool:
        return self._page is not None

    async def get_page(self) -> Any:
        """Return the session page, launching the browser if needed."""
        async with self._lock:
            if not self._pw:
                from playwright.async_api import async_playwright
                self._pw = await async_playwright().start()
                self._browser = await self._pw.chromium.launch(
                    headless=self.headless,
                    args=["--no-sandbox", "--disable-dev-shm-usage"],
                )
                self._context = await self._browser.new_context(viewport=self.viewport)
                self._page = await self._context.new_page()
                logger.info("Browser session created", headless=self.headless)
            return self._page

    async def is_visible(self, selector: str, selector_type: str = "css") -> bool:
        page = await self.get_page()
        return await page.locator(build_locator(selector, selector_type)).first.is_visible()

    async def current_url(self) -> str:
        page = await self.get_page()
        return page.url

    async def evaluate(self, script: str) -> Any:
        page = await self.get_page()
        return await page.evaluate(script)

    async def wait_for_selector(self, selector: str, selector_type: str = "css", timeout_ms: int = 30000) -> None:
        from playwright.async_api import TimeoutError as PlaywrightTimeoutError

        page = await self.get_page()
        try:
            await page.wait_for_selector(
                build_locator(selector, selector_type), state="visible", timeout=timeout_ms
            )
        except PlaywrightTimeoutError as e:
            raise TimeoutError(str(e)) from e

    async def wait_for_url(self, pattern: "re.Pattern[str]", timeout_ms: int = 30000) -> None:
        from playwright.async_api import TimeoutError as PlaywrightTimeoutError

        page = await self.get_page()
        try:
            await page.wait_for_url(pattern, timeout=timeout_ms)
        except PlaywrightTimeoutError as e:
            raise TimeoutError(str(e)) from e

    async def wait_for_function(self, script: str, timeout_ms: int = 30000) -> None:
        from playwright.async_api import TimeoutError as PlaywrightTimeoutError

        page = await self.get_page()
        try:
            await page.wait_for_function(script, timeout=timeout_ms)
        except PlaywrightTimeoutError as e:
            raise TimeoutError(str(e)) from e

    async def reload(self) -> None:
        page = await self.get_page()
        await page.reload()

    async def bring_to_front(self) -> None:
        page = await self.get_page()
        await page.bring_to_front()

    async def close(self) -> None:
        """Close the browser. Errors propagate to the caller's cleanup."""
        try:
            if self._browser:
                await self._browser.close()
            if self._pw:
                await self._pw.stop()
        finally:
            self._pw = None
            self._browser = None
            self._context = None
            self._page = None
