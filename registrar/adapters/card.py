from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING

from .base import (
    DETAILS_SELECTOR,
    REGISTER_SELECTOR,
    BaseListingAdapter,
    Container,
    Layout,
    RegisterClick,
    _first_visible,
    clean_row_text,
)

if TYPE_CHECKING:
    from ..backends.protocol import BrowserBackend
    from ..timing import TimingController

logger = logging.getLogger(__name__)

CARD_SELECTOR = ".views-row, .card, article"
MAX_CARDS = 300

# Site chrome rendered with card markup.
_NAV_CARD_RE = re.compile(
    r"skip to main content|account\s+dashboard|memberships|programs|events|view search filters",
    re.IGNORECASE,
)


class CardAdapter(BaseListingAdapter):
    """
    Listings rendered as a grid of cards.

    Also the default when no adapter claims a layout. Cards without their own
    Register button are opened through their details link, and the Register
    button is looked up on the details page.
    """

    name = "card"
    layout: Layout = "cards"

    async def detect_layout(self, backend: BrowserBackend) -> Layout:
        cards = await backend.query(CARD_SELECTOR)
        if not cards:
            return "unknown"
        for card in cards[:20]:
            if await card.query(REGISTER_SELECTOR):
                return "cards"
        for card in cards[:20]:
            if await card.query(DETAILS_SELECTOR):
                return "details_first"
        return "unknown"

    async def list_containers(self, backend: BrowserBackend) -> list[Container]:
        cards = await backend.query(CARD_SELECTOR)
        out: list[Container] = []
        for i, card in enumerate(cards[:MAX_CARDS]):
            if not await card.is_visible():
                continue
            text = clean_row_text(await card.text())
            if not text:
                continue
            # Short cards that are just navigation labels.
            if _NAV_CARD_RE.search(text) and len(text) < 120:
                continue
            out.append(Container(element=card, text=text, index=i))
        return out

    async def click_register_in_container(
        self, backend: BrowserBackend, container: Container, timing: TimingController
    ) -> RegisterClick:
        direct = await super().click_register_in_container(backend, container, timing)
        if direct.outcome == "found":
            return direct
        details = await _first_visible(await container.element.query(DETAILS_SELECTOR))
        if details is None:
            return RegisterClick(outcome="not_found")
        await timing.click(backend, details)
        await timing.dwell()
        button = await _first_visible(await backend.query(REGISTER_SELECTOR))
        if button is None:
            logger.info("card: details page has no Register button")
            return RegisterClick(outcome="not_found")
        await timing.click(backend, button)
        return RegisterClick(outcome="found", via="details")
