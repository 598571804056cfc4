"""
Signup state machine.

One handler per non-terminal state and a single dispatcher. Handlers return
the next state; they raise StepFailure to fail, ActionRequired to pause for a
human. Transitions only move forward.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from ..errors import ActionRequired, EngineError
from .cart import verify_cart_step
from .checkout import confirm_step, payment_step, start_checkout_step
from .context import AttemptContext
from .discovery import select_slot_step
from .forms import addons_step, participant_step
from .login import login_step
from .states import WorkflowOutcome, WorkflowState, is_forward

logger = logging.getLogger(__name__)

StepHandler = Callable[[AttemptContext], Awaitable[WorkflowState]]

HANDLERS: dict[WorkflowState, StepHandler] = {
    WorkflowState.DISCOVERING_LOGIN: login_step,
    WorkflowState.LOGGED_IN: select_slot_step,
    WorkflowState.SLOT_SELECTED: participant_step,
    WorkflowState.PARTICIPANT_SELECTED: addons_step,
    WorkflowState.ADDONS_HANDLED: verify_cart_step,
    WorkflowState.IN_CART: start_checkout_step,
    WorkflowState.CHECKOUT_STARTED: payment_step,
    WorkflowState.PAYMENT_PENDING: confirm_step,
}


class SignupWorkflow:
    def __init__(self, ctx: AttemptContext, handlers: dict[WorkflowState, StepHandler] | None = None) -> None:
        self.ctx = ctx
        self._handlers = handlers or HANDLERS

    def _details(self) -> dict:
        return {
            "slot_used": self.ctx.slot_used,
            "layout": self.ctx.layout,
            "matched_text": self.ctx.matched_text,
        }

    async def _finish(
        self,
        state: WorkflowState,
        last: WorkflowState,
        code: str | None,
        message: str,
        token: str | None = None,
        **extra,
    ) -> WorkflowOutcome:
        if state == WorkflowState.FAILED:
            await self.ctx.log(f"Failed at {last.value} [{code}]: {message}")
        elif state == WorkflowState.ACTION_REQUIRED:
            await self.ctx.log(f"Action required at {last.value} [{code}]: {message}")
        return WorkflowOutcome(
            state=state,
            last_step=last,
            code=code,
            message=message,
            challenge_token=token,
            details={**self._details(), **extra},
        )

    async def run(self, start: WorkflowState = WorkflowState.DISCOVERING_LOGIN) -> WorkflowOutcome:
        state = start
        while not state.is_terminal:
            handler = self._handlers[state]
            if self.ctx.artifacts is not None:
                self.ctx.artifacts.record_step(state=state.value, url=await self._safe_url())
            try:
                nxt = await handler(self.ctx)
            except asyncio.CancelledError:
                raise
            except ActionRequired as e:
                return await self._finish(
                    WorkflowState.ACTION_REQUIRED, state, e.reason_code, str(e), e.challenge_token, **e.details
                )
            except EngineError as e:
                return await self._finish(WorkflowState.FAILED, state, e.reason_code, str(e), **e.details)
            except (PlaywrightTimeoutError, asyncio.TimeoutError) as e:
                return await self._finish(WorkflowState.FAILED, state, "step_timeout", f"Timed out: {e}")
            except Exception as e:
                logger.exception(f"Unexpected error at {state.value}")
                return await self._finish(WorkflowState.FAILED, state, "unexpected_error", f"{type(e).__name__}: {e}")

            if not is_forward(state, nxt):
                return await self._finish(
                    WorkflowState.FAILED,
                    state,
                    "unexpected_error",
                    f"Invalid transition {state.value} -> {nxt.value}",
                )
            await self.ctx.log(f"State: {state.value} -> {nxt.value}")
            if nxt == WorkflowState.COMPLETED:
                return await self._finish(WorkflowState.COMPLETED, state, None, "Registration completed")
            state = nxt
        return await self._finish(state, state, None, "")

    async def _safe_url(self) -> str | None:
        try:
            return await self.ctx.backend.url()
        except Exception:
            return None
