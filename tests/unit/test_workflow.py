from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from registrar.models import PlanExtras, ResolvedCredential, SessionBundle, SlotPreference
from registrar.notify import NotificationReceipt
from registrar.workflow import HANDLERS, AttemptContext, SignupWorkflow, WorkflowState
from registrar.workflow import selectors as sel
from registrar.workflow.cart import slot_in_text
from registrar.workflow.forms import choose_option, real_options

from fakes import (
    ORIGIN,
    FakeBackend,
    FakeClock,
    FakeElement,
    build_site,
    make_challenges,
    make_codec,
    make_config,
    make_plan,
    make_timing,
    seeded_store,
)


async def _context(
    backend: FakeBackend,
    *,
    plan=None,
    cvv: str | None = "123",
    clock: FakeClock | None = None,
    notifier=None,
    resuming: bool = False,
) -> AttemptContext:
    clock = clock or FakeClock()
    plan = plan or make_plan()
    store = await seeded_store(clock, plan)
    return AttemptContext(
        backend=backend,
        plan=plan,
        credential=ResolvedCredential(alias="family", email="parent@example.org", password="hunter2", cvv=cvv),
        store=store,
        timing=make_timing(clock),
        config=make_config(),
        challenges=make_challenges(store, clock),
        notifier=notifier,
        codec=make_codec(),
        resuming=resuming,
    )


async def _logs(ctx: AttemptContext) -> list[str]:
    return [e.msg for e in await ctx.store.list_logs(ctx.plan.id)]


@pytest.mark.asyncio
async def test_happy_path_reaches_completed() -> None:
    backend = FakeBackend()
    el = build_site(backend)
    ctx = await _context(backend)

    outcome = await SignupWorkflow(ctx).run()

    assert outcome.state == WorkflowState.COMPLETED, outcome.message
    assert outcome.details["slot_used"] == "preferred"
    assert el["username"].typed == "parent@example.org"
    assert el["password"].typed == "hunter2"
    assert el["participant"].selected == "Sam Doe"
    assert el["rental"].selected == "No rental"
    assert el["donation"].filled == "0"
    assert el["saved_payment"].checked is True
    assert el["cvv"].typed == "123"
    assert el["pay"].clicks == 1
    assert backend.current.endswith("/checkout/7/complete")

    plan = await ctx.store.get_plan(ctx.plan.id)
    assert plan.discovered_url == ORIGIN + "/registration"
    logs = await _logs(ctx)
    assert "State: in_cart -> checkout_started" in logs
    assert not any("hunter2" in m for m in logs)
    # Login saved a snapshot for the next attempt.
    assert await ctx.store.latest_snapshot(ctx.plan.id, ctx.timing.now()) is not None


@pytest.mark.asyncio
async def test_rejected_login_fails_with_reason() -> None:
    backend = FakeBackend()
    build_site(backend, login_ok=False)
    ctx = await _context(backend)

    outcome = await SignupWorkflow(ctx).run()

    assert outcome.state == WorkflowState.FAILED
    assert outcome.last_step == WorkflowState.DISCOVERING_LOGIN
    assert outcome.code == "authentication_failed"
    assert "Unrecognized username" in outcome.message


@pytest.mark.asyncio
async def test_already_authenticated_skips_login_form() -> None:
    backend = FakeBackend()
    el = build_site(backend)
    backend.pages[ORIGIN + "/user/login"].elements[sel.LOGOUT_AFFORDANCE] = [FakeElement("Log out")]
    ctx = await _context(backend)

    outcome = await SignupWorkflow(ctx).run()

    assert outcome.state == WorkflowState.COMPLETED
    assert el["username"].typed == ""
    assert "Already authenticated" in await _logs(ctx)


@pytest.mark.asyncio
async def test_login_without_success_or_error_marker_fails_closed() -> None:
    backend = FakeBackend()
    el = build_site(backend, login_ok=False)
    backend.pages[ORIGIN + "/user/login"].elements[sel.LOGIN_ERROR] = []
    ctx = await _context(backend)

    outcome = await SignupWorkflow(ctx).run()

    assert outcome.state == WorkflowState.FAILED
    assert outcome.last_step == WorkflowState.DISCOVERING_LOGIN
    assert outcome.code == "authentication_failed"
    assert outcome.message == "Login result ambiguous; no authenticated page reached"
    assert el["login_submit"].clicks == 1
    assert ORIGIN + "/registration" not in backend.history
    assert await ctx.store.latest_snapshot(ctx.plan.id, ctx.timing.now()) is None


class CookieSessionBackend(FakeBackend):
    """Serves the dashboard for the login URL once the session cookie is set."""

    async def goto(self, url: str, *, timeout_ms: int) -> None:
        if url.startswith(ORIGIN + "/user/login") and any(c["name"] == "SESS" for c in self.cookie_jar):
            url = ORIGIN + "/user/dashboard"
        self.navigate(url)


async def _save_session(ctx: AttemptContext) -> None:
    bundle = SessionBundle(
        cookies=[{"name": "SESS", "value": "abc", "domain": "club.example.org", "path": "/"}],
        local_storage={"cart": "1"},
        origin=ORIGIN,
    )
    await ctx.store.save_snapshot(ctx.codec.to_snapshot(ctx.plan, bundle, now=ctx.timing.now()))


@pytest.mark.asyncio
async def test_restored_session_skips_login_form() -> None:
    backend = CookieSessionBackend()
    el = build_site(backend)
    ctx = await _context(backend)
    await _save_session(ctx)

    outcome = await SignupWorkflow(ctx).run()

    assert outcome.state == WorkflowState.COMPLETED, outcome.message
    assert el["username"].typed == ""
    assert el["password"].typed == ""
    assert [c["name"] for c in backend.cookie_jar] == ["SESS"]
    assert backend.local == {"cart": "1"}
    logs = await _logs(ctx)
    assert "Session snapshot restored (1 cookies)" in logs
    assert "Already authenticated" in logs


@pytest.mark.asyncio
async def test_restored_session_not_honoured_falls_back_to_form() -> None:
    backend = FakeBackend()
    el = build_site(backend)
    ctx = await _context(backend)
    await _save_session(ctx)

    outcome = await SignupWorkflow(ctx).run()

    assert outcome.state == WorkflowState.COMPLETED, outcome.message
    assert el["username"].typed == "parent@example.org"
    logs = await _logs(ctx)
    assert "Session snapshot restored (1 cookies)" in logs
    assert "Login successful" in logs


@pytest.mark.asyncio
async def test_alternate_slot_used_when_preferred_missing() -> None:
    backend = FakeBackend()
    build_site(
        backend,
        rows=[("Tennis Beginners Sunday 10am Register", ORIGIN + "/registration/43/start")],
        cart_body="Tennis Beginners Sunday 10am",
    )
    plan = make_plan(alternate=SlotPreference(class_name="Tennis Beginners", label="Sunday 10am"))
    ctx = await _context(backend, plan=plan)

    outcome = await SignupWorkflow(ctx).run()

    assert outcome.state == WorkflowState.COMPLETED, outcome.message
    assert outcome.details["slot_used"] == "alternate"


@pytest.mark.asyncio
async def test_fuzzy_row_match_is_accepted() -> None:
    backend = FakeBackend()
    build_site(
        backend,
        rows=[
            ("Tennis Beginners Sunday Register", ORIGIN + "/registration/40/start"),
            ("Swim Lesson Lvl 2 Saturday 9am Register", ORIGIN + "/registration/42/start"),
        ],
    )
    ctx = await _context(backend, plan=make_plan(alternate=None))

    assert await _run_to(ctx, WorkflowState.SLOT_SELECTED)
    assert ctx.matched_text == "Swim Lesson Lvl 2 Saturday 9am"
    assert backend.current == ORIGIN + "/registration/42/start"


@pytest.mark.asyncio
async def test_no_matching_slot_fails() -> None:
    backend = FakeBackend()
    build_site(backend, rows=[("Archery Advanced Tuesday Register", ORIGIN + "/registration/9/start")])
    ctx = await _context(backend)

    outcome = await SignupWorkflow(ctx).run()

    assert outcome.code == "slot_not_found"
    assert outcome.last_step == WorkflowState.LOGGED_IN


@pytest.mark.asyncio
async def test_empty_listing_clears_cached_url() -> None:
    backend = FakeBackend()
    build_site(backend, rows=[])
    plan = make_plan(discovered_url=ORIGIN + "/registration")
    ctx = await _context(backend, plan=plan)

    outcome = await SignupWorkflow(ctx).run()

    assert outcome.code == "discovery_failed"
    assert (await ctx.store.get_plan(plan.id)).discovered_url is None


@pytest.mark.asyncio
async def test_holds_until_open_time_then_reloads() -> None:
    clock = FakeClock()
    backend = FakeBackend()
    build_site(backend)
    plan = make_plan(open_time=clock.now + timedelta(seconds=90))
    ctx = await _context(backend, plan=plan, clock=clock)

    outcome = await SignupWorkflow(ctx).run()

    assert outcome.state == WorkflowState.COMPLETED
    assert backend.reloads == 1
    assert clock.now >= plan.open_time


@pytest.mark.asyncio
async def test_participant_defaults_to_first_when_name_missing() -> None:
    backend = FakeBackend()
    el = build_site(backend)
    ctx = await _context(backend, plan=make_plan(participant_name="Jordan"))

    assert await _run_to(ctx, WorkflowState.PARTICIPANT_SELECTED)
    assert el["participant"].selected == "Alex Doe"
    assert any("not listed; defaulted to 'Alex Doe'" in m for m in await _logs(ctx))


@pytest.mark.asyncio
async def test_priced_rental_without_value_fails() -> None:
    backend = FakeBackend()
    build_site(backend, rental_options=["- None -", "Ski rental ($25.00)", "Snowboard rental ($30.00)"])
    ctx = await _context(backend, plan=make_plan(extras=PlanExtras(rental="__AUTO__")))

    outcome = await SignupWorkflow(ctx).run()

    assert outcome.code == "rental_required"
    assert outcome.last_step == WorkflowState.PARTICIPANT_SELECTED


@pytest.mark.asyncio
async def test_unpriced_addon_mismatch_defaults() -> None:
    backend = FakeBackend()
    el = build_site(backend, rental_options=["- None -", "Red group", "Blue group"])
    ctx = await _context(backend, plan=make_plan(extras=PlanExtras(rental="Purple team")))

    assert await _run_to(ctx, WorkflowState.ADDONS_HANDLED)
    assert el["rental"].selected == "Red group"


@pytest.mark.asyncio
async def test_cart_without_slot_stops_before_checkout() -> None:
    backend = FakeBackend()
    el = build_site(backend, cart_body="Your cart is empty")
    ctx = await _context(backend)

    outcome = await SignupWorkflow(ctx).run()

    assert outcome.code == "cart_verification_failed"
    assert outcome.last_step == WorkflowState.ADDONS_HANDLED
    assert el["checkout"].clicks == 0


@pytest.mark.asyncio
async def test_missing_cvv_pauses_on_challenge_and_notifies() -> None:
    backend = FakeBackend()
    el = build_site(backend)
    notifier = AsyncMock()
    notifier.send_challenge.return_value = NotificationReceipt(ok=True, provider_id="SM1")
    ctx = await _context(backend, cvv=None, notifier=notifier)

    outcome = await SignupWorkflow(ctx).run()

    assert outcome.state == WorkflowState.ACTION_REQUIRED
    assert outcome.code == "secret_required"
    assert outcome.last_step == WorkflowState.CHECKOUT_STARTED
    assert el["pay"].clicks == 0
    challenge = await ctx.challenges.get(outcome.challenge_token)
    assert challenge.status == "pending"
    assert challenge.type == "cvv"
    notifier.send_challenge.assert_awaited_once_with("+15550100", outcome.challenge_token, "Blackhawk Ski Club")
    assert "Verification link sent by SMS" in await _logs(ctx)


@pytest.mark.asyncio
async def test_notifier_failure_does_not_change_outcome() -> None:
    backend = FakeBackend()
    build_site(backend)
    notifier = AsyncMock()
    notifier.send_challenge.side_effect = RuntimeError("twilio down")
    ctx = await _context(backend, cvv=None, notifier=notifier)

    outcome = await SignupWorkflow(ctx).run()

    assert outcome.state == WorkflowState.ACTION_REQUIRED
    assert any("SMS delivery failed" in m for m in await _logs(ctx))


@pytest.mark.asyncio
async def test_allow_no_cvv_submits_without_secret() -> None:
    backend = FakeBackend()
    el = build_site(backend)
    ctx = await _context(backend, cvv=None, plan=make_plan(extras=PlanExtras(rental="No rental", allow_no_cvv=True)))

    outcome = await SignupWorkflow(ctx).run()

    assert outcome.state == WorkflowState.COMPLETED
    assert el["cvv"].typed == ""


@pytest.mark.asyncio
async def test_card_entry_form_fails_closed() -> None:
    backend = FakeBackend()
    el = build_site(backend, card_form_at_checkout=True)
    ctx = await _context(backend)

    outcome = await SignupWorkflow(ctx).run()

    assert outcome.code == "payment_not_ready"
    assert el["cvv"].typed == ""
    assert el["pay"].clicks == 0


@pytest.mark.asyncio
async def test_card_form_on_cart_stops_before_checkout() -> None:
    backend = FakeBackend()
    el = build_site(backend, card_form_on_cart=True)
    ctx = await _context(backend)

    outcome = await SignupWorkflow(ctx).run()

    assert outcome.state == WorkflowState.FAILED
    assert outcome.last_step == WorkflowState.IN_CART
    assert outcome.code == "payment_not_ready"
    assert el["checkout"].clicks == 0
    assert not any("/checkout/" in url for url in backend.history)


@pytest.mark.asyncio
async def test_allow_no_cvv_passes_cart_card_form_gate() -> None:
    backend = FakeBackend()
    el = build_site(backend, card_form_on_cart=True)
    plan = make_plan(extras=PlanExtras(rental="No rental", allow_no_cvv=True))
    ctx = await _context(backend, cvv=None, plan=plan)

    outcome = await SignupWorkflow(ctx).run()

    assert outcome.state == WorkflowState.COMPLETED, outcome.message
    assert el["checkout"].clicks == 1
    assert "Payment readiness: no CVV, allow_no_cvv set" in await _logs(ctx)


@pytest.mark.asyncio
async def test_captcha_creates_challenge_and_is_never_solved() -> None:
    backend = FakeBackend()
    el = build_site(backend, captcha_at_checkout=True)
    ctx = await _context(backend)

    outcome = await SignupWorkflow(ctx).run()

    assert outcome.state == WorkflowState.ACTION_REQUIRED
    assert outcome.code == "captcha_required"
    assert (await ctx.challenges.get(outcome.challenge_token)).type == "captcha"
    assert el["pay"].clicks == 0


@pytest.mark.asyncio
async def test_no_confirmation_is_action_required_not_completed() -> None:
    backend = FakeBackend()
    build_site(backend, complete_url=ORIGIN + "/checkout/7/processing")
    ctx = await _context(backend)

    outcome = await SignupWorkflow(ctx).run()

    assert outcome.state == WorkflowState.ACTION_REQUIRED
    assert outcome.code == "confirmation_timeout"
    assert outcome.last_step == WorkflowState.PAYMENT_PENDING


@pytest.mark.asyncio
async def test_resume_skips_to_cart_when_slot_already_added() -> None:
    backend = FakeBackend()
    el = build_site(backend)
    ctx = await _context(backend, resuming=True)

    outcome = await SignupWorkflow(ctx).run()

    assert outcome.state == WorkflowState.COMPLETED
    assert el["participant"].selected is None
    assert "Resuming: preferred slot already in cart" in await _logs(ctx)


@pytest.mark.asyncio
async def test_unexpected_handler_error_becomes_failure() -> None:
    async def boom(ctx):
        raise KeyError("nope")

    backend = FakeBackend()
    ctx = await _context(backend)
    outcome = await SignupWorkflow(ctx, handlers={WorkflowState.DISCOVERING_LOGIN: boom}).run()
    assert outcome.state == WorkflowState.FAILED
    assert outcome.code == "unexpected_error"


@pytest.mark.asyncio
async def test_backward_transition_is_rejected() -> None:
    async def forward(ctx):
        return WorkflowState.SLOT_SELECTED

    async def backward(ctx):
        return WorkflowState.LOGGED_IN

    ctx = await _context(FakeBackend())
    outcome = await SignupWorkflow(
        ctx, handlers={WorkflowState.DISCOVERING_LOGIN: forward, WorkflowState.SLOT_SELECTED: backward}
    ).run()
    assert outcome.state == WorkflowState.FAILED
    assert "Invalid transition" in outcome.message


def test_slot_in_text_requires_both_parts() -> None:
    pref = SlotPreference(class_name="Swim Lessons Level 2", label="Saturday 9am")
    assert slot_in_text(pref, "Swim Lessons Level 2 - Saturday 9am")
    assert not slot_in_text(pref, "Swim Lessons Level 2 - Sunday 10am")


def test_choose_option_order_and_placeholders() -> None:
    options = real_options(["- Select -", "- None -", "Ski rental ($25.00)", "No rental"])
    assert options == ["Ski rental ($25.00)", "No rental"]
    assert choose_option(options, "no rental", threshold=0.8) == "No rental"
    assert choose_option(options, "ski", threshold=0.8) == "Ski rental ($25.00)"
    assert choose_option(options, "snowboard", threshold=0.8) is None


async def _run_to(ctx: AttemptContext, target: WorkflowState) -> bool:
    """Drive handlers until target is reached; False on any terminal outcome first."""
    state = WorkflowState.DISCOVERING_LOGIN
    while state != target:
        if state.is_terminal:
            return False
        state = await HANDLERS[state](ctx)
    return True
