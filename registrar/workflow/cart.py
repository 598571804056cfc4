from __future__ import annotations

import logging

from ..constants import CVV_PATTERN
from ..errors import StepFailure
from ..fuzzy import normalize
from ..models import SlotPreference
from . import selectors as sel
from .context import AttemptContext
from .states import WorkflowState

logger = logging.getLogger(__name__)


def slot_in_text(pref: SlotPreference, text: str) -> bool:
    """
    The slot description appears in text after normalization: the whole target,
    or its class name and label separately. No fuzzy acceptance here; a near
    miss in the cart is a different item.
    """
    haystack = normalize(text)
    if not haystack:
        return False
    target = normalize(pref.target_text())
    if target and target in haystack:
        return True
    label = normalize(pref.label)
    if pref.class_name:
        cls = normalize(pref.class_name)
        return bool(label and cls and label in haystack and cls in haystack)
    return False


async def cart_contains_slot(ctx: AttemptContext, pref: SlotPreference) -> bool:
    await ctx.goto(ctx.origin + sel.CART_PATH)
    return slot_in_text(pref, await ctx.backend.body_text())


async def verify_cart_step(ctx: AttemptContext) -> WorkflowState:
    """
    addons_handled -> in_cart.

    A missing slot is a hard failure; a silently failed add must surface.
    """
    assert ctx.slot is not None
    if await cart_contains_slot(ctx, ctx.slot):
        await ctx.log(f"Cart verified: '{ctx.slot.target_text()}' present")
        return WorkflowState.IN_CART
    raise StepFailure(
        "cart_verification_failed",
        f"Cart does not contain the selected slot '{ctx.slot.target_text()}'",
    )


def has_usable_secret(ctx: AttemptContext) -> bool:
    return bool(ctx.credential.cvv and CVV_PATTERN.match(ctx.credential.cvv))


async def payment_readiness(ctx: AttemptContext) -> None:
    """
    Gate before any navigation toward checkout.

    A missing CVV is not fatal here: checkout pauses on a challenge if the site
    asks for one. A full card-entry form is never operated.
    """
    allow_no_cvv = ctx.plan.extras.allow_no_cvv
    if has_usable_secret(ctx):
        await ctx.log("Payment readiness: CVV available")
    elif allow_no_cvv:
        await ctx.log("Payment readiness: no CVV, allow_no_cvv set")
    else:
        await ctx.log("Payment readiness: no CVV on file; checkout will pause for verification if asked")

    if await ctx.first_visible(sel.CARD_FORM) is not None and not allow_no_cvv:
        raise StepFailure(
            "payment_not_ready",
            "Checkout requires full card entry; save a payment method on the site first",
        )
