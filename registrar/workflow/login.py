from __future__ import annotations

import logging

from ..constants import AUTHENTICATED_URL_PATTERN
from ..errors import StepFailure
from ..session_codec import capture_bundle, replay_bundle
from . import selectors as sel
from .context import AttemptContext, first_signal
from .states import WorkflowState

logger = logging.getLogger(__name__)


async def restore_session(ctx: AttemptContext) -> bool:
    """Replay the newest unexpired snapshot, if any. Never decides authentication."""
    if ctx.codec is None:
        return False
    snapshot = await ctx.store.latest_snapshot(ctx.plan.id, ctx.timing.now())
    if snapshot is None:
        await ctx.log("No session snapshot; interactive login")
        return False
    bundle = ctx.codec.from_snapshot(snapshot)
    if bundle is None:
        await ctx.log("Session snapshot unreadable; interactive login")
        return False
    try:
        await replay_bundle(ctx.backend, bundle, ctx.origin, timeout_ms=ctx.config.navigation_timeout_ms)
    except Exception as e:
        logger.warning(f"Session replay failed: {e}")
        await ctx.log(f"Session snapshot could not be replayed ({e}); interactive login")
        return False
    await ctx.log(f"Session snapshot restored ({len(bundle.cookies)} cookies)")
    return True


async def save_session(ctx: AttemptContext, reason: str) -> None:
    if ctx.codec is None:
        return
    try:
        bundle = await capture_bundle(ctx.backend)
        await ctx.store.save_snapshot(ctx.codec.to_snapshot(ctx.plan, bundle, now=ctx.timing.now()))
    except Exception as e:
        logger.warning(f"Session snapshot not saved: {e}")
        return
    await ctx.log(f"Session snapshot saved after {reason}")


async def is_authenticated(ctx: AttemptContext) -> bool:
    if AUTHENTICATED_URL_PATTERN.search(await ctx.backend.url()):
        return True
    return await ctx.first_visible(sel.LOGOUT_AFFORDANCE) is not None


async def _error_text(ctx: AttemptContext) -> str | None:
    for el in await ctx.backend.query(sel.LOGIN_ERROR):
        if not await el.is_visible():
            continue
        text = " ".join((await el.text()).split())
        if text:
            return text[:300]
    return None


async def login_step(ctx: AttemptContext) -> WorkflowState:
    """
    discovering_login -> logged_in.

    Success needs positive evidence (authenticated URL or logout affordance);
    an error marker or no evidence at all fails closed.
    """
    await restore_session(ctx)
    await ctx.goto(ctx.origin + sel.LOGIN_PATH)
    if await is_authenticated(ctx):
        await ctx.log("Already authenticated")
        return WorkflowState.LOGGED_IN

    cfg = ctx.config
    if not await ctx.backend.wait_for_selector(sel.USERNAME_FIELD, timeout_ms=cfg.selector_timeout_ms):
        raise StepFailure("authentication_failed", "Login form not found")
    user_field = await ctx.first_visible(sel.USERNAME_FIELD)
    pass_field = await ctx.first_visible(sel.PASSWORD_FIELD)
    submit = await ctx.first_visible(sel.LOGIN_SUBMIT)
    if user_field is None or pass_field is None or submit is None:
        raise StepFailure("authentication_failed", "Login form incomplete")

    await ctx.timing.click(ctx.backend, user_field)
    await ctx.timing.type_text(user_field, ctx.credential.email)
    await ctx.timing.pause()
    await ctx.timing.click(ctx.backend, pass_field)
    await ctx.timing.type_text(pass_field, ctx.credential.password)
    await ctx.timing.pause()
    await ctx.timing.click(ctx.backend, submit)

    signal = await first_signal(
        {
            "authenticated": ctx.backend.wait_for_url(AUTHENTICATED_URL_PATTERN, timeout_ms=cfg.login_timeout_ms),
            "logout": ctx.backend.wait_for_selector(sel.LOGOUT_AFFORDANCE, timeout_ms=cfg.login_timeout_ms),
            "error": ctx.backend.wait_for_selector(sel.LOGIN_ERROR, timeout_ms=cfg.login_timeout_ms),
        },
        timeout_s=cfg.login_timeout_ms / 1000.0,
    )
    await ctx.backend.wait_for_load(timeout_ms=cfg.navigation_timeout_ms)

    if signal in ("authenticated", "logout") or await is_authenticated(ctx):
        await ctx.log("Login successful")
        await save_session(ctx, "login")
        return WorkflowState.LOGGED_IN

    error = await _error_text(ctx)
    if error:
        raise StepFailure("authentication_failed", f"Login rejected: {error}")
    raise StepFailure("authentication_failed", "Login result ambiguous; no authenticated page reached")
