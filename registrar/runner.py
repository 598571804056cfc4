"""
Invocation surface: execute one plan by id.

Owner-triggered and scheduler-triggered runs both come through
`PlanRunner.execute_plan`, so the entry guard and the state machine are the
same on every path.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import TYPE_CHECKING

from .adapters import DEFAULT_ADAPTERS, ListingAdapter
from .config import EngineConfig
from .constants import RUNNABLE_STATUSES
from .errors import EngineError
from .failure_artifacts import FailureArtifactRecorder, FailureArtifactsOptions
from .models import Caller, ExecutionResult, Plan, ResolvedCredential, utcnow
from .timing import TimingController
from .workflow import AttemptContext, SignupWorkflow, WorkflowOutcome, WorkflowState

if TYPE_CHECKING:
    from .backends.provisioning import BrowserProvisioner
    from .challenges import ChallengeService
    from .notify import Notifier
    from .session_codec import SessionCodec
    from .store.base import PlanStore
    from .vault import CredentialVault

logger = logging.getLogger(__name__)


class PlanRunner:
    """
    Runs one attempt per call against a freshly provisioned browser.

    Args:
        store: persistence collaborator
        config: engine configuration (policies, timeouts)
        provisioner: hands out one browser session per attempt
        vault: resolves decrypted credentials
        challenges: challenge subsystem
        notifier: optional SMS notifier for challenges
        codec: optional session snapshot codec
        timing: timing controller (injectable for tests)
        requires_remote_browser: whether remote provisioning settings are mandatory
    """

    def __init__(
        self,
        *,
        store: PlanStore,
        config: EngineConfig,
        provisioner: BrowserProvisioner,
        vault: CredentialVault,
        challenges: ChallengeService,
        notifier: Notifier | None = None,
        codec: SessionCodec | None = None,
        timing: TimingController | None = None,
        adapters: Sequence[ListingAdapter] = DEFAULT_ADAPTERS,
        requires_remote_browser: bool = True,
        clock: Callable[[], datetime] | None = None,
        time_fn: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.config = config
        self.provisioner = provisioner
        self.vault = vault
        self.challenges = challenges
        self.notifier = notifier
        self.codec = codec
        self._clock = clock or utcnow
        self.timing = timing or TimingController(config.timing, clock=self._clock)
        self.adapters = adapters
        self.requires_remote_browser = requires_remote_browser
        self._time_fn = time_fn
        self._active: set[str] = set()
        self._slots = asyncio.Semaphore(config.scheduler.max_concurrent_attempts)

    async def execute_plan(self, plan_id: str, caller: Caller) -> ExecutionResult:
        plan = await self.store.get_plan(plan_id)
        if plan is None or not caller.may_act_for(plan.user_id):
            return ExecutionResult(ok=False, plan_id=plan_id, code="plan_not_found", message="Plan not found")

        if plan.status not in RUNNABLE_STATUSES:
            logger.info(f"Execution ignored for plan {plan_id}: status {plan.status}")
            return ExecutionResult(
                ok=False,
                plan_id=plan_id,
                status=plan.status,
                code="invalid_plan_status",
                message=f"Plan status '{plan.status}' does not allow execution",
                details={"current_status": plan.status, "allowed_statuses": list(RUNNABLE_STATUSES)},
            )

        if plan_id in self._active:
            return self._already_running(plan)
        self._active.add(plan_id)
        try:
            return await self._execute(plan, caller)
        finally:
            self._active.discard(plan_id)

    def _already_running(self, plan: Plan) -> ExecutionResult:
        return ExecutionResult(
            ok=False,
            plan_id=plan.id,
            status=plan.status,
            code="already_running",
            message="Another attempt holds this plan",
        )

    async def _claim(self, plan: Plan) -> bool:
        if plan.status == "executing":
            return True
        return await self.store.transition_status(plan.id, "executing", expected=(plan.status,))

    async def _execute(self, plan: Plan, caller: Caller) -> ExecutionResult:
        resuming = plan.status == "action_required"
        if not await self._claim(plan):
            current = await self.store.get_plan(plan.id)
            return self._already_running(current or plan)

        await self.store.append_log(plan.id, f"Execution started ({caller.kind})")

        missing = self.config.missing_for_execution(remote_browser=self.requires_remote_browser)
        if missing:
            return await self._conclude(
                plan,
                WorkflowOutcome(
                    state=WorkflowState.FAILED,
                    last_step=WorkflowState.DISCOVERING_LOGIN,
                    code="missing_configuration",
                    message=f"Missing required configuration: {', '.join(missing)}",
                    details={"missing": missing},
                ),
            )

        try:
            credential = await self.vault.resolve(plan.credential_id, caller)
        except EngineError as e:
            return await self._conclude(plan, self._failed(e.reason_code, str(e)))

        secret = await self.challenges.peek_resolved_secret(plan.id)
        if secret is not None:
            credential = credential.model_copy(update={"cvv": secret.cvv})
            await self.store.append_log(plan.id, "Using CVV supplied through verification challenge")

        if not resuming:
            schedule = self.timing.seed_schedule(plan.open_time)
            waited = await self.timing.wait_until(schedule.execute_start, max_wait_s=self.config.max_hold_s)
            if waited:
                await self.store.append_log(plan.id, f"Waited {waited:.0f}s for calibrated start")

        # Browser sessions are bounded here, after the calibrated wait.
        async with self._slots:
            outcome = await self._run_attempt(
                plan, credential, resuming=resuming, secret_token=secret.token if secret else None
            )
        if secret is not None and outcome.state == WorkflowState.COMPLETED:
            await self.challenges.consume_secret(secret.token)
        return await self._conclude(plan, outcome)

    def _failed(self, code: str, message: str) -> WorkflowOutcome:
        return WorkflowOutcome(
            state=WorkflowState.FAILED,
            last_step=WorkflowState.DISCOVERING_LOGIN,
            code=code,
            message=message,
        )

    async def _run_attempt(
        self,
        plan: Plan,
        credential: ResolvedCredential,
        *,
        resuming: bool,
        secret_token: str | None = None,
    ) -> WorkflowOutcome:
        recorder = None
        if self.config.artifacts_dir:
            recorder = FailureArtifactRecorder(
                plan_id=plan.id,
                options=FailureArtifactsOptions(output_dir=self.config.artifacts_dir),
                time_fn=self._time_fn,
                secrets=[credential.password, credential.cvv or "", credential.email],
            )
        try:
            async with self.provisioner.session() as backend:
                ctx = AttemptContext(
                    backend=backend,
                    plan=plan,
                    credential=credential,
                    store=self.store,
                    timing=self.timing,
                    config=self.config,
                    challenges=self.challenges,
                    notifier=self.notifier,
                    codec=self.codec,
                    artifacts=recorder,
                    adapters=self.adapters,
                    resuming=resuming,
                    secret_token=secret_token,
                )
                outcome = await SignupWorkflow(ctx).run()
                if outcome.state == WorkflowState.FAILED and recorder is not None:
                    await recorder.capture(
                        backend,
                        reason=outcome.code,
                        state=outcome.last_step.value,
                        rows=ctx.last_rows,
                        metadata={"message": outcome.message},
                    )
                return outcome
        except EngineError as e:
            await self.store.append_log(plan.id, f"Attempt aborted [{e.reason_code}]: {e}")
            return self._failed(e.reason_code, str(e))
        except Exception as e:
            logger.exception(f"Attempt for plan {plan.id} crashed")
            await self.store.append_log(plan.id, f"Attempt aborted [unexpected_error]: {type(e).__name__}: {e}")
            return self._failed("unexpected_error", f"{type(e).__name__}: {e}")

    async def _conclude(self, plan: Plan, outcome: WorkflowOutcome) -> ExecutionResult:
        final = outcome.plan_status
        applied = await self.store.transition_status(plan.id, final, expected=("executing",))
        if applied:
            await self.store.append_log(
                plan.id,
                f"Attempt finished: {final}" + (f" [{outcome.code}] {outcome.message}" if outcome.code else ""),
            )
            status = final
        else:
            current = await self.store.get_plan(plan.id)
            status = current.status if current else None
            await self.store.append_log(
                plan.id, f"Attempt finished as {final} but plan is now {status}; status left unchanged"
            )
        return ExecutionResult(
            ok=outcome.state == WorkflowState.COMPLETED,
            plan_id=plan.id,
            status=status,
            state=outcome.last_step.value,
            code=outcome.code,
            message=outcome.message,
            challenge_token=outcome.challenge_token,
            slot_used=outcome.details.get("slot_used"),
            details=outcome.details,
        )
