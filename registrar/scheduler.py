"""
Scheduler: the periodic pass that starts due plans.

Each pass claims plans whose open time is in the execution window with a
conditional `scheduled -> executing` update, so of several concurrent
schedulers at most one starts a given plan. Claimed plans run as background
tasks; the runner bounds how many hold a browser at once. Plans a little
further out get a seeding pass. A resolved challenge re-enters the same
invoke path through `resume`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from .config import EngineConfig
from .models import Caller, Challenge, ExecutionResult, Plan, utcnow
from .seeding import SeedingPass
from .store.base import PlanStore

logger = logging.getLogger(__name__)

InvokeFn = Callable[[str, Caller], Awaitable[ExecutionResult]]

WEEKLY_WINDOW = timedelta(days=7)


@dataclass
class SchedulerReport:
    started: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    seeding: list[str] = field(default_factory=list)


class Scheduler:
    """
    Args:
        store: plan store
        invoke: invocation surface, normally `PlanRunner.execute_plan`
        config: engine configuration
        seeder: optional seeding pass
    """

    def __init__(
        self,
        store: PlanStore,
        invoke: InvokeFn,
        config: EngineConfig,
        *,
        seeder: SeedingPass | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.invoke = invoke
        self.config = config
        self.seeder = seeder
        self._clock = clock or utcnow
        self._tasks: dict[str, asyncio.Task] = {}
        self._seeding: dict[str, asyncio.Task] = {}
        self._limit_logged: set[str] = set()

    @property
    def in_flight(self) -> list[str]:
        return [pid for pid, t in self._tasks.items() if not t.done()]

    async def run_once(self, now: datetime | None = None) -> SchedulerReport:
        now = now or self._clock()
        report = SchedulerReport()
        sched = self.config.scheduler

        due = await self.store.list_plans_due(
            "scheduled",
            now - timedelta(seconds=sched.late_window_s),
            now + timedelta(seconds=sched.lookahead_s),
        )
        for plan in due:
            if await self._over_weekly_limit(plan, now):
                report.skipped.append(plan.id)
                continue
            if not await self.store.claim_for_execution(plan.id):
                logger.debug(f"Plan {plan.id} claimed elsewhere")
                continue
            await self.store.append_log(plan.id, "Automated execution started by scheduler")
            self._tasks[plan.id] = asyncio.create_task(self._invoke(plan.id), name=f"attempt-{plan.id}")
            report.started.append(plan.id)

        if self.seeder is not None and sched.seeding_enabled:
            start = now + timedelta(seconds=sched.seed_lead_s)
            for plan in await self.store.list_plans_due(
                "scheduled", start, start + timedelta(seconds=sched.seed_window_s)
            ):
                if await self._needs_seeding(plan, now):
                    self._seeding[plan.id] = asyncio.create_task(self._seed(plan), name=f"seed-{plan.id}")
                    report.seeding.append(plan.id)

        self._prune()
        if report.started or report.seeding:
            logger.info(
                f"Scheduler pass: started {len(report.started)}, seeding {len(report.seeding)}, "
                f"skipped {len(report.skipped)}"
            )
        return report

    async def _over_weekly_limit(self, plan: Plan, now: datetime) -> bool:
        limit = self.config.policy.per_user_weekly_limit
        if limit <= 0:
            return False
        done = await self.store.count_completed_since(plan.user_id, now - WEEKLY_WINDOW)
        if done < limit:
            return False
        if plan.id not in self._limit_logged:
            self._limit_logged.add(plan.id)
            await self.store.append_log(
                plan.id, f"Skipped by scheduler: weekly limit of {limit} completed registrations reached"
            )
        return True

    async def _needs_seeding(self, plan: Plan, now: datetime) -> bool:
        task = self._seeding.get(plan.id)
        if task is not None:
            return False
        snapshot = await self.store.latest_snapshot(plan.id, now)
        window = timedelta(seconds=self.config.scheduler.seed_lead_s + self.config.scheduler.seed_window_s)
        return snapshot is None or snapshot.created_at < now - window

    async def resume(self, challenge: Challenge) -> bool:
        """
        Start the paused plan again once its challenge is resolved.

        Returns False when the plan is no longer waiting on a human or an
        attempt for it is already in flight.
        """
        plan = await self.store.get_plan(challenge.plan_id)
        if plan is None or plan.status != "action_required":
            logger.info(f"Resume skipped for plan {challenge.plan_id}: status {plan.status if plan else None}")
            return False
        task = self._tasks.get(plan.id)
        if task is not None and not task.done():
            return False
        await self.store.append_log(plan.id, f"Resuming after {challenge.type} challenge resolution")
        self._tasks[plan.id] = asyncio.create_task(self._invoke(plan.id), name=f"resume-{plan.id}")
        return True

    async def _invoke(self, plan_id: str) -> None:
        try:
            result = await asyncio.wait_for(
                self.invoke(plan_id, Caller.service()),
                timeout=self.config.scheduler.invocation_timeout_s,
            )
        except asyncio.TimeoutError:
            await self._mark_failed(
                plan_id,
                f"Scheduled execution error: no result within {self.config.scheduler.invocation_timeout_s:.0f}s",
            )
            return
        except Exception as e:
            logger.exception(f"Scheduled execution of plan {plan_id} raised")
            await self._mark_failed(plan_id, f"Scheduled execution error: {type(e).__name__}: {e}")
            return

        if not result.ok:
            logger.info(f"Plan {plan_id} finished with {result.status} [{result.code}]")
            if result.status == "executing":
                await self._mark_failed(plan_id, f"Scheduled execution error: {result.code}: {result.message}")

    async def _mark_failed(self, plan_id: str, msg: str) -> None:
        await self.store.transition_status(plan_id, "failed", expected=("executing",))
        await self.store.append_log(plan_id, msg)

    async def _seed(self, plan: Plan) -> None:
        assert self.seeder is not None
        try:
            await self.seeder.run(plan)
        except Exception as e:
            logger.warning(f"Seeding task for plan {plan.id} raised: {e}")
            await self.store.append_log(plan.id, f"Seeding failed (non-critical): {e}")

    def _prune(self) -> None:
        for tasks in (self._tasks, self._seeding):
            for pid in [pid for pid, t in tasks.items() if t.done()]:
                del tasks[pid]

    async def drain(self) -> None:
        """Wait for every in-flight attempt and seeding pass."""
        pending = [t for t in (*self._tasks.values(), *self._seeding.values()) if not t.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._prune()

    async def run_forever(self, stop: asyncio.Event) -> None:
        """Pass every poll interval until stop is set, then wait for in-flight work."""
        interval = self.config.scheduler.poll_interval_s
        logger.info(f"Scheduler running every {interval:.0f}s")
        while not stop.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("Scheduler pass failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Scheduler stopping; waiting for in-flight attempts")
        await self.drain()
