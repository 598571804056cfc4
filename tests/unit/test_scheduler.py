from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from registrar.config import SchedulerConfig
from registrar.models import Caller, Challenge, ExecutionResult
from registrar.scheduler import Scheduler
from registrar.store.memory import InMemoryPlanStore

from fakes import T0, FakeClock, make_config, make_plan


class RecordingInvoke:
    """Stands in for PlanRunner.execute_plan; completes the plan it is given."""

    def __init__(self, store: InMemoryPlanStore, *, raises: Exception | None = None) -> None:
        self.store = store
        self.raises = raises
        self.calls: list[tuple[str, Caller]] = []

    async def __call__(self, plan_id: str, caller: Caller) -> ExecutionResult:
        self.calls.append((plan_id, caller))
        if self.raises is not None:
            raise self.raises
        await self.store.transition_status(plan_id, "completed", expected=("executing",))
        return ExecutionResult(ok=True, plan_id=plan_id, status="completed")


async def _logs(store: InMemoryPlanStore, plan_id: str = "plan-1") -> list[str]:
    return [e.msg for e in await store.list_logs(plan_id)]


def _scheduler(store, invoke, clock, *, seeder=None, **sched_overrides) -> Scheduler:
    config = make_config(scheduler=replace(SchedulerConfig(), **sched_overrides))
    return Scheduler(store, invoke, config, seeder=seeder, clock=clock)


@pytest.mark.asyncio
async def test_due_plan_is_claimed_and_invoked() -> None:
    clock = FakeClock()
    store = InMemoryPlanStore(clock=clock)
    await store.save_plan(make_plan(open_time=T0 + timedelta(minutes=3)))
    invoke = RecordingInvoke(store)
    scheduler = _scheduler(store, invoke, clock)

    report = await scheduler.run_once()
    assert report.started == ["plan-1"]
    assert "Automated execution started by scheduler" in await _logs(store)

    await scheduler.drain()
    assert invoke.calls == [("plan-1", Caller.service())]
    assert (await store.get_plan("plan-1")).status == "completed"
    assert scheduler.in_flight == []


@pytest.mark.asyncio
async def test_plans_outside_window_are_left_alone() -> None:
    clock = FakeClock()
    store = InMemoryPlanStore(clock=clock)
    await store.save_plan(make_plan(id="early", open_time=T0 + timedelta(minutes=30)))
    await store.save_plan(make_plan(id="stale", open_time=T0 - timedelta(minutes=10)))
    await store.save_plan(make_plan(id="paused", open_time=T0, status="action_required"))
    invoke = RecordingInvoke(store)
    scheduler = _scheduler(store, invoke, clock, seeding_enabled=False)

    report = await scheduler.run_once()
    await scheduler.drain()

    assert report.started == []
    assert invoke.calls == []
    for plan_id, status in (("early", "scheduled"), ("stale", "scheduled"), ("paused", "action_required")):
        assert (await store.get_plan(plan_id)).status == status


@pytest.mark.asyncio
async def test_invoke_error_marks_plan_failed() -> None:
    clock = FakeClock()
    store = InMemoryPlanStore(clock=clock)
    await store.save_plan(make_plan())
    scheduler = _scheduler(store, RecordingInvoke(store, raises=RuntimeError("boom")), clock)

    await scheduler.run_once()
    await scheduler.drain()

    assert (await store.get_plan("plan-1")).status == "failed"
    assert "Scheduled execution error: RuntimeError: boom" in await _logs(store)


@pytest.mark.asyncio
async def test_invoke_timeout_marks_plan_failed() -> None:
    clock = FakeClock()
    store = InMemoryPlanStore(clock=clock)
    await store.save_plan(make_plan())
    never = asyncio.Event()

    async def hang(plan_id: str, caller: Caller) -> ExecutionResult:
        await never.wait()
        raise AssertionError("unreachable")

    scheduler = _scheduler(store, hang, clock, invocation_timeout_s=0.01)
    await scheduler.run_once()
    await scheduler.drain()

    assert (await store.get_plan("plan-1")).status == "failed"
    assert any(m.startswith("Scheduled execution error: no result within") for m in await _logs(store))


@pytest.mark.asyncio
async def test_result_left_executing_is_failed() -> None:
    clock = FakeClock()
    store = InMemoryPlanStore(clock=clock)
    await store.save_plan(make_plan())

    async def stuck(plan_id: str, caller: Caller) -> ExecutionResult:
        return ExecutionResult(ok=False, plan_id=plan_id, status="executing", code="already_running")

    scheduler = _scheduler(store, stuck, clock)
    await scheduler.run_once()
    await scheduler.drain()
    assert (await store.get_plan("plan-1")).status == "failed"


@pytest.mark.asyncio
async def test_weekly_limit_skips_and_logs_once() -> None:
    clock = FakeClock()
    store = InMemoryPlanStore(clock=clock)
    for i in range(3):
        await store.save_plan(make_plan(id=f"done-{i}", status="executing", open_time=T0 - timedelta(days=2)))
        await store.transition_status(f"done-{i}", "completed", expected=("executing",))
    await store.save_plan(make_plan())
    invoke = RecordingInvoke(store)
    scheduler = _scheduler(store, invoke, clock, seeding_enabled=False)

    first = await scheduler.run_once()
    second = await scheduler.run_once()

    assert first.skipped == second.skipped == ["plan-1"]
    assert invoke.calls == []
    assert (await store.get_plan("plan-1")).status == "scheduled"
    skips = [m for m in await _logs(store) if m.startswith("Skipped by scheduler")]
    assert skips == ["Skipped by scheduler: weekly limit of 3 completed registrations reached"]


@pytest.mark.asyncio
async def test_concurrent_schedulers_start_plan_once() -> None:
    clock = FakeClock()
    store = InMemoryPlanStore(clock=clock)
    await store.save_plan(make_plan())
    invoke = RecordingInvoke(store)
    schedulers = [_scheduler(store, invoke, clock) for _ in range(3)]

    reports = await asyncio.gather(*(s.run_once() for s in schedulers))
    for s in schedulers:
        await s.drain()

    assert sum(len(r.started) for r in reports) == 1
    assert len(invoke.calls) == 1


@pytest.mark.asyncio
async def test_seeding_window_runs_seeder_once() -> None:
    clock = FakeClock()
    store = InMemoryPlanStore(clock=clock)
    await store.save_plan(make_plan(open_time=T0 + timedelta(minutes=12)))
    seeder = AsyncMock()
    seeder.run.return_value = True
    scheduler = _scheduler(store, RecordingInvoke(store), clock, seeder=seeder)

    first = await scheduler.run_once()
    second = await scheduler.run_once()
    await scheduler.drain()

    assert first.seeding == ["plan-1"]
    assert second.seeding == []
    assert first.started == []
    seeder.run.assert_awaited_once()
    assert (await store.get_plan("plan-1")).status == "scheduled"


@pytest.mark.asyncio
async def test_seeding_failure_is_logged_not_raised() -> None:
    clock = FakeClock()
    store = InMemoryPlanStore(clock=clock)
    await store.save_plan(make_plan(open_time=T0 + timedelta(minutes=12)))
    seeder = AsyncMock()
    seeder.run.side_effect = RuntimeError("browser gone")
    scheduler = _scheduler(store, RecordingInvoke(store), clock, seeder=seeder)

    await scheduler.run_once()
    await scheduler.drain()

    assert "Seeding failed (non-critical): browser gone" in await _logs(store)
    assert (await store.get_plan("plan-1")).status == "scheduled"


@pytest.mark.asyncio
async def test_run_forever_stops_and_drains() -> None:
    clock = FakeClock()
    store = InMemoryPlanStore(clock=clock)
    await store.save_plan(make_plan())
    invoke = RecordingInvoke(store)
    scheduler = _scheduler(store, invoke, clock, poll_interval_s=0.01, seeding_enabled=False)
    stop = asyncio.Event()

    task = asyncio.create_task(scheduler.run_forever(stop))
    await asyncio.sleep(0.05)
    stop.set()
    await asyncio.wait_for(task, timeout=1)

    assert len(invoke.calls) == 1
    assert (await store.get_plan("plan-1")).status == "completed"


def _resolved(plan_id: str = "plan-1") -> Challenge:
    return Challenge(
        token="ABCD2345", plan_id=plan_id, user_id="user-1", type="cvv", status="resolved", expires_at=T0
    )


@pytest.mark.asyncio
async def test_due_plans_all_start_even_with_one_browser_slot() -> None:
    clock = FakeClock()
    store = InMemoryPlanStore(clock=clock)
    for i in range(3):
        await store.save_plan(make_plan(id=f"plan-{i}"))
    gate = asyncio.Event()
    entered: list[str] = []

    async def held(plan_id: str, caller: Caller) -> ExecutionResult:
        entered.append(plan_id)
        await gate.wait()
        await store.transition_status(plan_id, "completed", expected=("executing",))
        return ExecutionResult(ok=True, plan_id=plan_id, status="completed")

    scheduler = _scheduler(store, held, clock, max_concurrent_attempts=1, seeding_enabled=False)
    await scheduler.run_once()
    for _ in range(3):
        await asyncio.sleep(0)

    # Each invoke reaches the runner, which does its own waiting and slot bounding.
    assert sorted(entered) == ["plan-0", "plan-1", "plan-2"]
    gate.set()
    await scheduler.drain()
    for i in range(3):
        assert (await store.get_plan(f"plan-{i}")).status == "completed"


@pytest.mark.asyncio
async def test_resume_invokes_paused_plan_once() -> None:
    clock = FakeClock()
    store = InMemoryPlanStore(clock=clock)
    await store.save_plan(make_plan(status="action_required"))
    gate = asyncio.Event()
    calls: list[str] = []

    async def held(plan_id: str, caller: Caller) -> ExecutionResult:
        calls.append(plan_id)
        await gate.wait()
        return ExecutionResult(ok=True, plan_id=plan_id, status="completed")

    scheduler = _scheduler(store, held, clock)
    assert await scheduler.resume(_resolved()) is True
    assert await scheduler.resume(_resolved()) is False
    gate.set()
    await scheduler.drain()

    assert calls == ["plan-1"]
    assert "Resuming after cvv challenge resolution" in await _logs(store)


@pytest.mark.asyncio
@pytest.mark.parametrize("status", ["scheduled", "executing", "completed", "cancelled"])
async def test_resume_ignores_plan_not_waiting_on_a_human(status) -> None:
    clock = FakeClock()
    store = InMemoryPlanStore(clock=clock)
    await store.save_plan(make_plan(status=status))
    invoke = RecordingInvoke(store)
    scheduler = _scheduler(store, invoke, clock)

    assert await scheduler.resume(_resolved()) is False
    await scheduler.drain()
    assert invoke.calls == []
    assert await _logs(store) == []
