from __future__ import annotations

from typing import TYPE_CHECKING

from .base import BaseListingAdapter, Container, Layout, clean_row_text

if TYPE_CHECKING:
    from ..backends.protocol import BrowserBackend

TABLE_SELECTOR = 'main table:has(th:has-text("Title")):has(th:has-text("Register"))'
ROW_SELECTOR = "tbody > tr"


class TableAdapter(BaseListingAdapter):
    """Listings rendered as a table with Title and Register columns."""

    name = "table"
    layout: Layout = "table"

    async def detect_layout(self, backend: BrowserBackend) -> Layout:
        tables = await backend.query(TABLE_SELECTOR)
        return "table" if tables else "unknown"

    async def list_containers(self, backend: BrowserBackend) -> list[Container]:
        tables = await backend.query(TABLE_SELECTOR)
        if not tables:
            return []
        rows = await tables[0].query(ROW_SELECTOR)
        out: list[Container] = []
        for i, row in enumerate(rows):
            if not await row.is_visible():
                continue
            text = clean_row_text(await row.text())
            if text:
                out.append(Container(element=row, text=text, index=i))
        return out
