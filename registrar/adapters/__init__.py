"""
Layout adapter registry.

Adapters are tried in a fixed priority order; the first to claim a definite
layout wins, otherwise the card adapter is used as an approximate default.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING

from .base import (
    BaseListingAdapter,
    Container,
    ContainerMatch,
    Layout,
    ListingAdapter,
    RegisterClick,
)
from .card import CardAdapter
from .table import TableAdapter

if TYPE_CHECKING:
    from ..backends.protocol import BrowserBackend

logger = logging.getLogger(__name__)

DEFAULT_ADAPTERS: tuple[ListingAdapter, ...] = (TableAdapter(), CardAdapter())


async def pick_adapter(
    backend: BrowserBackend,
    adapters: Sequence[ListingAdapter] = DEFAULT_ADAPTERS,
    default: ListingAdapter | None = None,
) -> tuple[ListingAdapter, Layout]:
    for adapter in adapters:
        layout = await adapter.detect_layout(backend)
        if layout != "unknown":
            logger.info(f"Listing layout detected: {layout} ({adapter.name})")
            return adapter, layout
    fallback = default or CardAdapter()
    logger.info(f"No adapter claimed the listing; falling back to {fallback.name}")
    return fallback, "unknown"


__all__ = [
    "BaseListingAdapter",
    "CardAdapter",
    "Container",
    "ContainerMatch",
    "DEFAULT_ADAPTERS",
    "Layout",
    "ListingAdapter",
    "RegisterClick",
    "TableAdapter",
    "pick_adapter",
]
