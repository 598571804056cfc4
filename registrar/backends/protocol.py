"""
Browser backend protocol.

The workflow, adapters and timing controller only talk to a page through these
two protocols, so tests can drive them with in-memory fakes and the production
path wraps an async Playwright page.
"""

from __future__ import annotations

import re
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class PageElement(Protocol):
    async def text(self) -> str: ...

    async def is_visible(self) -> bool: ...

    async def get_attribute(self, name: str) -> str | None: ...

    async def bounding_box(self) -> dict[str, float] | None: ...

    async def click(self) -> None: ...

    async def hover(self) -> None: ...

    async def fill(self, value: str) -> None: ...

    async def type(self, text: str) -> None:
        """Type text into the focused element without clearing it."""
        ...

    async def options(self) -> list[str]:
        """Visible option labels of a <select>; empty for other elements."""
        ...

    async def select_option(self, label: str) -> None: ...

    async def selected_option(self) -> str | None: ...

    async def set_checked(self, checked: bool) -> None: ...

    async def scroll_into_view(self) -> None: ...

    async def query(self, selector: str) -> list[PageElement]:
        """Descendants matching selector."""
        ...


@runtime_checkable
class BrowserBackend(Protocol):
    async def url(self) -> str: ...

    async def goto(self, url: str, *, timeout_ms: int) -> None: ...

    async def reload(self, *, timeout_ms: int) -> None: ...

    async def wait_for_load(self, *, timeout_ms: int) -> None: ...

    async def wait_for_url(self, pattern: re.Pattern[str], *, timeout_ms: int) -> bool:
        """True once the page URL matches pattern, False on timeout."""
        ...

    async def wait_for_text(self, pattern: re.Pattern[str], *, timeout_ms: int) -> bool: ...

    async def wait_for_selector(self, selector: str, *, timeout_ms: int) -> bool: ...

    async def query(self, selector: str) -> list[PageElement]: ...

    async def body_text(self) -> str: ...

    async def viewport(self) -> tuple[int, int]: ...

    async def mouse_move(self, x: float, y: float) -> None: ...

    async def wheel(self, delta_y: float) -> None: ...

    async def cookies(self) -> list[dict[str, Any]]: ...

    async def add_cookies(self, cookies: list[dict[str, Any]]) -> None: ...

    async def read_storage(self) -> tuple[dict[str, str], dict[str, str]]:
        """(localStorage, sessionStorage) of the current origin."""
        ...

    async def write_storage(self, local: dict[str, str], session: dict[str, str]) -> None: ...

    async def screenshot(self) -> bytes: ...
