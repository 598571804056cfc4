from __future__ import annotations

import logging

from ..adapters import pick_adapter
from ..errors import StepFailure
from ..models import SlotChoice, SlotPreference
from .cart import cart_contains_slot
from .context import AttemptContext
from .states import WorkflowState

logger = logging.getLogger(__name__)


async def discover_listing(ctx: AttemptContext) -> None:
    """Open the listing (cached deep link first) and pick the adapter for it."""
    if ctx.plan.discovered_url:
        await ctx.log(f"Using cached listing URL {ctx.plan.discovered_url}")
        await ctx.goto(ctx.plan.discovered_url)
    else:
        await ctx.default_adapter.open_listing(
            ctx.backend, ctx.origin, timeout_ms=ctx.config.navigation_timeout_ms
        )
    ctx.listing_url = await ctx.backend.url()
    ctx.adapter, ctx.layout = await pick_adapter(ctx.backend, ctx.adapters, ctx.default_adapter)
    await ctx.log(f"Listing opened at {ctx.listing_url} (layout: {ctx.layout}, adapter: {ctx.adapter.name})")


async def hold_until_open(ctx: AttemptContext) -> None:
    if ctx.timing.now() >= ctx.plan.open_time:
        return
    await ctx.log(f"Holding until registration opens at {ctx.plan.open_time.isoformat()}")
    await ctx.timing.wait_until(ctx.plan.open_time, max_wait_s=ctx.config.max_hold_s, backend=ctx.backend)
    await ctx.backend.reload(timeout_ms=ctx.config.navigation_timeout_ms)
    await ctx.backend.wait_for_load(timeout_ms=ctx.config.navigation_timeout_ms)


async def _try_slot(ctx: AttemptContext, choice: SlotChoice, pref: SlotPreference) -> bool:
    assert ctx.adapter is not None
    target = pref.target_text()
    match = await ctx.adapter.find_program_container(ctx.backend, target, threshold=ctx.config.fuzzy_threshold)
    if match.sample:
        ctx.last_rows = match.sample

    if match.outcome == "not_found":
        await ctx.log(f"No listing row matched {choice} slot '{target}' (best score {match.score:.2f})")
        return False
    if match.outcome == "ambiguous":
        await ctx.log(f"Several listing rows tie for {choice} slot '{target}' (score {match.score:.2f}); not guessing")
        return False

    assert match.container is not None
    click = await ctx.adapter.click_register_in_container(ctx.backend, match.container, ctx.timing)
    if click.outcome == "not_found":
        await ctx.log(f"Row for {choice} slot '{target}' has no Register control")
        return False

    ctx.slot_used = choice
    ctx.slot = pref
    ctx.matched_text = match.container.text
    await ctx.log(
        f"Slot selected ({choice}): '{match.container.text[:120]}' "
        f"[{match.method}, score {match.score:.2f}, via {click.via}]"
    )
    return True


async def select_slot_step(ctx: AttemptContext) -> WorkflowState:
    """
    logged_in -> slot_selected.

    A resumed attempt whose slot is already in the cart jumps ahead to in_cart.
    """
    if ctx.resuming:
        if await cart_contains_slot(ctx, ctx.plan.preferred):
            ctx.slot_used, ctx.slot = "preferred", ctx.plan.preferred
        elif ctx.plan.alternate and await cart_contains_slot(ctx, ctx.plan.alternate):
            ctx.slot_used, ctx.slot = "alternate", ctx.plan.alternate
        if ctx.slot is not None:
            await ctx.log(f"Resuming: {ctx.slot_used} slot already in cart")
            return WorkflowState.IN_CART

    await discover_listing(ctx)
    await hold_until_open(ctx)

    listing_url = ctx.listing_url
    candidates: list[tuple[SlotChoice, SlotPreference]] = [("preferred", ctx.plan.preferred)]
    if ctx.plan.alternate is not None:
        candidates.append(("alternate", ctx.plan.alternate))

    for choice, pref in candidates:
        if await _try_slot(ctx, choice, pref):
            if not ctx.plan.discovered_url and listing_url:
                await ctx.store.set_discovered_url(ctx.plan.id, listing_url)
                await ctx.log(f"Cached listing URL {listing_url}")
            await ctx.backend.wait_for_load(timeout_ms=ctx.config.navigation_timeout_ms)
            return WorkflowState.SLOT_SELECTED

    if not ctx.last_rows:
        if ctx.plan.discovered_url:
            await ctx.store.set_discovered_url(ctx.plan.id, None)
            await ctx.log("Cached listing URL cleared; next attempt rediscovers")
        raise StepFailure("discovery_failed", f"No listing rows found at {ctx.listing_url}")
    raise StepFailure("slot_not_found", "Neither preferred nor alternate slot found in the listing")
