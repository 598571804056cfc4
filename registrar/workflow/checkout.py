from __future__ import annotations

import logging

from ..constants import SUCCESS_TEXT_PATTERN, SUCCESS_URL_PATTERN
from ..errors import ActionRequired, StepFailure
from . import selectors as sel
from .cart import has_usable_secret, payment_readiness
from .context import AttemptContext, first_signal
from .states import WorkflowState

logger = logging.getLogger(__name__)

# Checkout pages walked before giving up (payment, installments, review).
MAX_CHECKOUT_PAGES = 5


async def captcha_present(ctx: AttemptContext) -> bool:
    """
    Interactive CAPTCHA on the page. Detection only; never solved.
    """
    if await ctx.first_visible(sel.CAPTCHA_WIDGET) is not None:
        return True
    text = (await ctx.backend.body_text()).lower()
    return any(marker in text for marker in sel.CAPTCHA_TEXT_MARKERS)


async def start_checkout_step(ctx: AttemptContext) -> WorkflowState:
    """in_cart -> checkout_started, behind the payment-readiness gate."""
    await payment_readiness(ctx)
    button = await ctx.first_visible(sel.CHECKOUT_BUTTON)
    if button is None:
        raise StepFailure("checkout_unavailable", "No checkout control on the cart page")
    await ctx.timing.click(ctx.backend, button)
    await ctx.backend.wait_for_load(timeout_ms=ctx.config.navigation_timeout_ms)
    await ctx.log(f"Checkout started at {await ctx.backend.url()}")
    return WorkflowState.CHECKOUT_STARTED


async def _enter_secret(ctx: AttemptContext) -> None:
    field = await ctx.first_visible(sel.CVV_FIELD)
    if field is None:
        return
    if has_usable_secret(ctx):
        assert ctx.credential.cvv is not None
        await ctx.timing.click(ctx.backend, field)
        await ctx.timing.type_text(field, ctx.credential.cvv)
        await ctx.log("CVV entered")
        if ctx.secret_token is not None:
            await ctx.challenges.consume_secret(ctx.secret_token)
            ctx.secret_token = None
        return
    if ctx.plan.extras.allow_no_cvv:
        await ctx.log("CVV field present; allow_no_cvv set, leaving it blank")
        return
    raise await ctx.request_human("cvv", "secret_required", "CVV required to complete payment")


async def payment_step(ctx: AttemptContext) -> WorkflowState:
    """
    checkout_started -> payment_pending.

    Walks the checkout pages until the final pay control is pressed. A CAPTCHA
    or a missing CVV pauses on a challenge; a card-entry form fails closed.
    """
    for _ in range(MAX_CHECKOUT_PAGES):
        if await captcha_present(ctx):
            raise await ctx.request_human("captcha", "captcha_required", "Human verification shown at checkout")
        if await ctx.first_visible(sel.CARD_FORM) is not None:
            raise StepFailure(
                "payment_not_ready",
                "Checkout asks for full card details; save a payment method on the site first",
            )

        saved = await ctx.first_visible(sel.SAVED_PAYMENT)
        if saved is not None:
            await saved.set_checked(True)
            await ctx.log("Saved payment method selected")

        await _enter_secret(ctx)

        pay = await ctx.first_visible(sel.PAY_BUTTON)
        if pay is not None:
            await ctx.timing.pause()
            await ctx.timing.click(ctx.backend, pay)
            await ctx.log("Final payment submitted")
            return WorkflowState.PAYMENT_PENDING

        nxt = await ctx.first_visible(sel.CONTINUE_TO_REVIEW) or await ctx.first_visible(sel.NEXT_BUTTON)
        if nxt is None:
            if SUCCESS_URL_PATTERN.search(await ctx.backend.url()):
                await ctx.log("Checkout completed without a separate payment step")
                return WorkflowState.PAYMENT_PENDING
            raise StepFailure("checkout_unavailable", f"No checkout control at {await ctx.backend.url()}")
        await ctx.timing.click(ctx.backend, nxt)
        await ctx.backend.wait_for_load(timeout_ms=ctx.config.navigation_timeout_ms)
        await ctx.log(f"Checkout page: {await ctx.backend.url()}")

    raise StepFailure("checkout_unavailable", "Checkout did not reach a payment control")


async def confirm_step(ctx: AttemptContext) -> WorkflowState:
    """
    payment_pending -> completed.

    Success URL and success text race under one bound; neither means a human
    has to check, never a false completion.
    """
    timeout_ms = ctx.config.confirmation_timeout_ms
    signal = await first_signal(
        {
            "url": ctx.backend.wait_for_url(SUCCESS_URL_PATTERN, timeout_ms=timeout_ms),
            "text": ctx.backend.wait_for_text(SUCCESS_TEXT_PATTERN, timeout_ms=timeout_ms),
        },
        timeout_s=timeout_ms / 1000.0,
    )
    if signal is None:
        raise ActionRequired(
            "confirmation_timeout",
            f"No confirmation within {timeout_ms // 1000}s; check the registration on the site",
        )
    await ctx.log(f"Registration confirmed ({'success page' if signal == 'url' else 'confirmation text'})")
    return WorkflowState.COMPLETED
