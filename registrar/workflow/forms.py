from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..constants import PLACEHOLDER_OPTION_PATTERN, PRICE_PATTERN, REGISTRATION_START_PATTERN
from ..errors import StepFailure
from ..fuzzy import best_match, normalize
from . import selectors as sel
from .context import AttemptContext
from .states import WorkflowState

if TYPE_CHECKING:
    from ..backends.protocol import PageElement

logger = logging.getLogger(__name__)

_CATEGORY_LABELS = {"rental": "Rental", "color_group": "Color group", "volunteer": "Volunteer"}


def real_options(options: list[str]) -> list[str]:
    return [o for o in options if o.strip() and not PLACEHOLDER_OPTION_PATTERN.match(o)]


def choose_option(options: list[str], wanted: str, *, threshold: float) -> str | None:
    """Equal, then substring (case-insensitive), then fuzzy at or above threshold."""
    w = normalize(wanted)
    if not w:
        return None
    for o in options:
        if normalize(o) == w:
            return o
    for o in options:
        if w in normalize(o):
            return o
    result = best_match(wanted, options, threshold)
    if result.outcome == "found" and result.index is not None:
        return options[result.index]
    return None


def is_priced(options: list[str]) -> bool:
    return any(PRICE_PATTERN.search(o) for o in options)


async def advance(ctx: AttemptContext, step: str) -> bool:
    button = await ctx.first_visible(sel.NEXT_BUTTON)
    if button is None:
        await ctx.log(f"No Next control after {step}; staying on page")
        return False
    await ctx.timing.click(ctx.backend, button)
    await ctx.backend.wait_for_load(timeout_ms=ctx.config.navigation_timeout_ms)
    return True


async def participant_step(ctx: AttemptContext) -> WorkflowState:
    """
    slot_selected -> participant_selected.

    Best effort: a missing selector or name never blocks.
    """
    select = await ctx.wait_visible(sel.PARTICIPANT_SELECT)
    if select is None:
        await ctx.log("No participant selector; skipping")
        # Still on the registration start page: move on to the options page.
        if REGISTRATION_START_PATTERN.search(await ctx.backend.url()):
            await advance(ctx, "registration start")
        return WorkflowState.PARTICIPANT_SELECTED

    options = real_options(await select.options())
    if not options:
        await ctx.log("Participant selector has no options; skipping")
        return WorkflowState.PARTICIPANT_SELECTED

    wanted = (ctx.plan.participant_name or "").strip()
    chosen = None
    if wanted:
        w = wanted.lower()
        chosen = next((o for o in options if w in o.lower()), None)
    if chosen is None:
        chosen = options[0]
        if wanted:
            await ctx.log(f"Participant '{wanted}' not listed; defaulted to '{chosen}'")
        else:
            await ctx.log(f"No participant name on plan; defaulted to '{chosen}'")
    else:
        await ctx.log(f"Participant selected: '{chosen}'")

    await ctx.timing.click(ctx.backend, select)
    await select.select_option(chosen)
    await ctx.timing.pause()
    await advance(ctx, "participant selection")
    return WorkflowState.PARTICIPANT_SELECTED


async def _handle_category(ctx: AttemptContext, category: str, select: PageElement) -> str | None:
    options = real_options(await select.options())
    if not options:
        return None
    label = _CATEGORY_LABELS.get(category, category)
    wanted = ctx.plan.extras.value_for(category)
    priced = is_priced(options)

    if wanted:
        chosen = choose_option(options, wanted, threshold=ctx.config.fuzzy_threshold)
        if chosen is None:
            if priced:
                raise StepFailure(
                    "rental_required",
                    f"{label} option '{wanted}' is not offered and options are priced; not guessing",
                    options=options,
                )
            chosen = options[0]
            await ctx.log(f"{label} '{wanted}' not offered; defaulted to '{chosen}'")
        else:
            await ctx.log(f"{label} selected: '{chosen}'")
    else:
        if priced:
            raise StepFailure(
                "rental_required",
                f"{label} choice required: options are priced and the plan has no value",
                options=options,
            )
        chosen = options[0]
        await ctx.log(f"{label} defaulted to '{chosen}'")

    await ctx.timing.click(ctx.backend, select)
    await select.select_option(chosen)
    await ctx.timing.pause()
    return chosen


async def _fill_required_selects(ctx: AttemptContext) -> None:
    for i, select in enumerate(await ctx.backend.query(sel.REQUIRED_SELECT)):
        if not await select.is_visible():
            continue
        current = await select.selected_option()
        if current and not PLACEHOLDER_OPTION_PATTERN.match(current):
            continue
        options = real_options(await select.options())
        if not options:
            continue
        name = await select.get_attribute("name") or f"select #{i}"
        if is_priced(options):
            raise StepFailure(
                "rental_required",
                f"Required option '{name}' is priced and the plan has no value",
                options=options,
            )
        await select.select_option(options[0])
        await ctx.log(f"Required option '{name}' defaulted to '{options[0]}'")


async def _suppress_donations(ctx: AttemptContext) -> None:
    for el in await ctx.backend.query(sel.DONATION_INPUT):
        if not await el.is_visible():
            continue
        kind = (await el.get_attribute("type") or "text").lower()
        name = await el.get_attribute("name") or "donation"
        if kind in ("checkbox", "radio"):
            await el.set_checked(False)
        elif kind in ("text", "number", "tel"):
            await el.fill("0")
        else:
            continue
        await ctx.log(f"Optional contribution '{name}' left at zero")


async def addons_step(ctx: AttemptContext) -> WorkflowState:
    """
    participant_selected -> addons_handled.

    Soft mismatches default; a priced category never defaults.
    """
    for category, selector in sel.ADDON_SELECTS.items():
        select = await ctx.first_visible(selector)
        if select is not None:
            await _handle_category(ctx, category, select)

    # Recognized categories are also often marked required; those already have a value.
    await _fill_required_selects(ctx)
    await _suppress_donations(ctx)
    await advance(ctx, "add-ons")
    return WorkflowState.ADDONS_HANDLED
