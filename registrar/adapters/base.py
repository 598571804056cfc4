from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal, Protocol, runtime_checkable

from ..fuzzy import MatchOutcome, best_match

if TYPE_CHECKING:
    from ..backends.protocol import BrowserBackend, PageElement
    from ..timing import TimingController

logger = logging.getLogger(__name__)

Layout = Literal["table", "cards", "details_first", "unknown"]

REGISTER_SELECTOR = (
    'a.btn.btn-secondary.btn-sm:has-text("Register"), '
    'a[href*="/registration/"][href$="/start"], '
    'button:has-text("Register")'
)
DETAILS_SELECTOR = 'a:has-text("Read Description"), a:has-text("Details"), a:has-text("More info")'
LISTING_PATH = "/registration"


@dataclass
class Container:
    element: PageElement
    text: str
    index: int


@dataclass
class ContainerMatch:
    """Result of searching the listing for a slot."""

    outcome: MatchOutcome
    layout: Layout
    container: Container | None = None
    score: float = 0.0
    method: str | None = None
    sample: list[str] = field(default_factory=list)


@dataclass
class RegisterClick:
    outcome: Literal["found", "not_found"]
    via: Literal["register", "details"] | None = None


@runtime_checkable
class ListingAdapter(Protocol):
    """
    Strategy for one listing page-structure family.

    Adding a site shape means adding one adapter; the workflow only uses this
    capability set.
    """

    name: str

    async def detect_layout(self, backend: BrowserBackend) -> Layout: ...

    async def open_listing(self, backend: BrowserBackend, origin: str, *, timeout_ms: int) -> str: ...

    async def find_program_container(
        self, backend: BrowserBackend, target: str, *, threshold: float
    ) -> ContainerMatch: ...

    async def click_register_in_container(
        self, backend: BrowserBackend, container: Container, timing: TimingController
    ) -> RegisterClick: ...


async def _first_visible(elements: list[PageElement]) -> PageElement | None:
    for el in elements:
        if await el.is_visible():
            return el
    return None


class BaseListingAdapter:
    name = "base"
    layout: Layout = "unknown"

    async def detect_layout(self, backend: BrowserBackend) -> Layout:
        return "unknown"

    async def open_listing(self, backend: BrowserBackend, origin: str, *, timeout_ms: int) -> str:
        current = (await backend.url()).split("?")[0].split("#")[0].rstrip("/")
        if not current.endswith(LISTING_PATH):
            await backend.goto(origin.rstrip("/") + LISTING_PATH, timeout_ms=timeout_ms)
            await backend.wait_for_load(timeout_ms=timeout_ms)
        return await backend.url()

    async def list_containers(self, backend: BrowserBackend) -> list[Container]:
        raise NotImplementedError

    async def find_program_container(
        self, backend: BrowserBackend, target: str, *, threshold: float
    ) -> ContainerMatch:
        containers = await self.list_containers(backend)
        texts = [c.text for c in containers]
        sample = texts[:8]
        result = best_match(target, texts, threshold)
        if result.outcome == "found" and result.index is not None:
            container = containers[result.index]
            logger.info(
                f"{self.name}: matched '{target}' to row {container.index} "
                f"({result.method}, score={result.score:.2f})"
            )
            return ContainerMatch(
                outcome="found",
                layout=self.layout,
                container=container,
                score=result.score,
                method=result.method,
                sample=sample,
            )
        return ContainerMatch(outcome=result.outcome, layout=self.layout, score=result.score, sample=sample)

    async def click_register_in_container(
        self, backend: BrowserBackend, container: Container, timing: TimingController
    ) -> RegisterClick:
        button = await _first_visible(await container.element.query(REGISTER_SELECTOR))
        if button is None:
            return RegisterClick(outcome="not_found")
        await button.scroll_into_view()
        await timing.click(backend, button)
        return RegisterClick(outcome="found", via="register")


_REGISTER_LINE_RE = re.compile(r"\bregister\b\s*$", re.IGNORECASE)


def clean_row_text(text: str) -> str:
    """Row text on one line, without a trailing Register label."""
    one_line = " ".join(part.strip() for part in (text or "").splitlines() if part.strip())
    return _REGISTER_LINE_RE.sub("", one_line).strip()
