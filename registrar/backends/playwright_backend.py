"""
Playwright implementation of the browser backend protocol.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import TYPE_CHECKING, Any

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

if TYPE_CHECKING:
    from playwright.async_api import Locator, Page

logger = logging.getLogger(__name__)

_READ_STORAGE_JS = """
() => {
  const dump = (s) => { const o = {}; for (let i = 0; i < s.length; i++) { const k = s.key(i); o[k] = s.getItem(k); } return o; };
  return [dump(window.localStorage), dump(window.sessionStorage)];
}
"""

_WRITE_STORAGE_JS = """
([local, session]) => {
  for (const [k, v] of Object.entries(local)) window.localStorage.setItem(k, v);
  for (const [k, v] of Object.entries(session)) window.sessionStorage.setItem(k, v);
}
"""

_TEXT_MATCH_JS = """
([source, flags]) => new RegExp(source, flags).test(document.body ? document.body.innerText : "")
"""

# Upper bound on elements materialized per query.
_MAX_QUERY_RESULTS = 500


def _is_execution_context_destroyed_error(e: Exception) -> bool:
    """
    Playwright throws while a navigation is in-flight.

    Common symptoms:
    - "Execution context was destroyed, most likely because of a navigation"
    - "Cannot find context with specified id"
    """
    msg = str(e).lower()
    return (
        "execution context was destroyed" in msg
        or "most likely because of a navigation" in msg
        or "cannot find context with specified id" in msg
    )


def _js_flags(pattern: re.Pattern[str]) -> str:
    return "i" if pattern.flags & re.IGNORECASE else ""


class PlaywrightElement:
    def __init__(self, locator: Locator, *, action_timeout_ms: int = 15_000) -> None:
        self._locator = locator
        self._timeout = action_timeout_ms

    @property
    def locator(self) -> Locator:
        return self._locator

    async def text(self) -> str:
        return (await self._locator.inner_text(timeout=self._timeout)) or ""

    async def is_visible(self) -> bool:
        return await self._locator.is_visible()

    async def get_attribute(self, name: str) -> str | None:
        return await self._locator.get_attribute(name, timeout=self._timeout)

    async def bounding_box(self) -> dict[str, float] | None:
        return await self._locator.bounding_box(timeout=self._timeout)

    async def click(self) -> None:
        await self._locator.click(timeout=self._timeout)

    async def hover(self) -> None:
        await self._locator.hover(timeout=self._timeout)

    async def fill(self, value: str) -> None:
        await self._locator.fill(value, timeout=self._timeout)

    async def type(self, text: str) -> None:
        await self._locator.press_sequentially(text, timeout=self._timeout)

    async def options(self) -> list[str]:
        texts = await self._locator.locator("option").all_inner_texts()
        return [t.strip() for t in texts]

    async def select_option(self, label: str) -> None:
        await self._locator.select_option(label=label, timeout=self._timeout)

    async def selected_option(self) -> str | None:
        return await self._locator.evaluate(
            "el => (el.selectedOptions && el.selectedOptions.length) ? el.selectedOptions[0].textContent.trim() : null"
        )

    async def set_checked(self, checked: bool) -> None:
        await self._locator.set_checked(checked, timeout=self._timeout)

    async def scroll_into_view(self) -> None:
        await self._locator.scroll_into_view_if_needed(timeout=self._timeout)

    async def query(self, selector: str) -> list[PlaywrightElement]:
        return await _materialize(self._locator.locator(selector), self._timeout)


async def _materialize(locator: Locator, timeout_ms: int) -> list[PlaywrightElement]:
    count = min(await locator.count(), _MAX_QUERY_RESULTS)
    return [PlaywrightElement(locator.nth(i), action_timeout_ms=timeout_ms) for i in range(count)]


class PlaywrightBackend:
    """
    Browser backend over a single async Playwright page.

    Every wait is bounded by an explicit timeout; timeouts on "wait for" calls
    are reported as False rather than raised so callers can classify the page.
    """

    def __init__(self, page: Page, *, action_timeout_ms: int = 15_000) -> None:
        self._page = page
        self._action_timeout_ms = action_timeout_ms

    @property
    def page(self) -> Page:
        return self._page

    async def url(self) -> str:
        return self._page.url

    async def goto(self, url: str, *, timeout_ms: int) -> None:
        await self._page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)

    async def reload(self, *, timeout_ms: int) -> None:
        await self._page.reload(wait_until="domcontentloaded", timeout=timeout_ms)

    async def wait_for_load(self, *, timeout_ms: int) -> None:
        try:
            await self._page.wait_for_load_state("networkidle", timeout=timeout_ms)
        except PlaywrightTimeoutError:
            # Pages with long-polling never go idle; DOM is already loaded here.
            logger.debug("networkidle not reached within %sms", timeout_ms)

    async def wait_for_url(self, pattern: re.Pattern[str], *, timeout_ms: int) -> bool:
        try:
            await self._page.wait_for_url(pattern, timeout=timeout_ms)
            return True
        except PlaywrightTimeoutError:
            return False

    async def wait_for_text(self, pattern: re.Pattern[str], *, timeout_ms: int) -> bool:
        try:
            await self._page.wait_for_function(
                _TEXT_MATCH_JS, arg=[pattern.pattern, _js_flags(pattern)], timeout=timeout_ms
            )
            return True
        except PlaywrightTimeoutError:
            return False

    async def wait_for_selector(self, selector: str, *, timeout_ms: int) -> bool:
        try:
            await self._page.wait_for_selector(selector, state="visible", timeout=timeout_ms)
            return True
        except PlaywrightTimeoutError:
            return False

    async def query(self, selector: str) -> list[PlaywrightElement]:
        return await _materialize(self._page.locator(selector), self._action_timeout_ms)

    async def body_text(self) -> str:
        return await self._eval_with_navigation_retry(
            "() => document.body ? document.body.innerText : ''"
        ) or ""

    async def viewport(self) -> tuple[int, int]:
        size = self._page.viewport_size or {"width": 1280, "height": 800}
        return int(size["width"]), int(size["height"])

    async def mouse_move(self, x: float, y: float) -> None:
        await self._page.mouse.move(x, y)

    async def wheel(self, delta_y: float) -> None:
        await self._page.mouse.wheel(0, delta_y)

    async def cookies(self) -> list[dict[str, Any]]:
        return [dict(c) for c in await self._page.context.cookies()]

    async def add_cookies(self, cookies: list[dict[str, Any]]) -> None:
        if cookies:
            await self._page.context.add_cookies(cookies)  # type: ignore[arg-type]

    async def read_storage(self) -> tuple[dict[str, str], dict[str, str]]:
        local, session = await self._eval_with_navigation_retry(_READ_STORAGE_JS)
        return dict(local or {}), dict(session or {})

    async def write_storage(self, local: dict[str, str], session: dict[str, str]) -> None:
        await self._eval_with_navigation_retry(_WRITE_STORAGE_JS, [local, session])

    async def screenshot(self) -> bytes:
        return await self._page.screenshot(full_page=True)

    async def _eval_with_navigation_retry(self, expression: str, arg: Any = None, *, retries: int = 5) -> Any:
        """
        Evaluate JS, retrying if the page is mid-navigation.
        """
        for attempt in range(retries + 1):
            try:
                if arg is None:
                    return await self._page.evaluate(expression)
                return await self._page.evaluate(expression, arg)
            except Exception as e:
                if not _is_execution_context_destroyed_error(e) or attempt >= retries:
                    raise
                try:
                    await self._page.wait_for_load_state("domcontentloaded", timeout=10_000)
                except PlaywrightTimeoutError:
                    pass
                await asyncio.sleep(min(0.25 * (attempt + 1), 1.5))
        raise RuntimeError("evaluate failed")
