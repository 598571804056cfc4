from __future__ import annotations

from datetime import timedelta

import pytest

from registrar.errors import EngineError
from registrar.models import Caller, SlotPreference
from registrar.plans import cancel_plan, reschedule_plan

from fakes import T0, FakeClock, make_plan, seeded_store

OWNER = Caller.owner("user-1")


@pytest.mark.asyncio
async def test_reschedule_resets_failed_plan_to_scheduled() -> None:
    store = await seeded_store(FakeClock(), make_plan(status="failed"))
    new_time = T0 + timedelta(days=7)

    updated = await reschedule_plan(
        store,
        "plan-1",
        OWNER,
        open_time=new_time,
        preferred=SlotPreference(class_name="Swim Lessons Level 3", label="Saturday 9am"),
    )

    assert updated.status == "scheduled"
    stored = await store.get_plan("plan-1")
    assert stored.status == "scheduled"
    assert stored.open_time == new_time
    assert stored.preferred.class_name == "Swim Lessons Level 3"
    logs = [e.msg for e in await store.list_logs("plan-1")]
    assert logs == ["Plan edited by owner (open_time, preferred); status reset to scheduled"]


@pytest.mark.asyncio
async def test_changing_base_url_clears_discovered_listing() -> None:
    store = await seeded_store(FakeClock(), make_plan(discovered_url="https://club.example.org/registration"))

    kept = await reschedule_plan(store, "plan-1", OWNER, org="Blackhawk")
    assert kept.discovered_url == "https://club.example.org/registration"

    moved = await reschedule_plan(store, "plan-1", OWNER, base_url="https://other.example.org")
    assert moved.discovered_url is None


@pytest.mark.asyncio
async def test_reschedule_rejects_unknown_fields_and_running_plans() -> None:
    store = await seeded_store(FakeClock())
    with pytest.raises(ValueError):
        await reschedule_plan(store, "plan-1", OWNER, status="completed")

    await store.transition_status("plan-1", "executing", expected=("scheduled",))
    with pytest.raises(EngineError) as exc:
        await reschedule_plan(store, "plan-1", OWNER, org="x")
    assert exc.value.reason_code == "invalid_plan_status"


@pytest.mark.asyncio
@pytest.mark.parametrize("caller", [Caller.owner("someone-else"), Caller.service()])
async def test_only_the_owner_may_edit_or_cancel(caller) -> None:
    store = await seeded_store(FakeClock())
    with pytest.raises(EngineError) as exc:
        await reschedule_plan(store, "plan-1", caller, org="x")
    assert exc.value.reason_code == "plan_not_found"
    with pytest.raises(EngineError) as exc:
        await cancel_plan(store, "plan-1", caller)
    assert exc.value.reason_code == "plan_not_found"


@pytest.mark.asyncio
async def test_cancel_is_conditional() -> None:
    store = await seeded_store(FakeClock())
    assert await cancel_plan(store, "plan-1", OWNER) is True
    assert (await store.get_plan("plan-1")).status == "cancelled"
    assert "Plan cancelled by owner" in [e.msg for e in await store.list_logs("plan-1")]

    with pytest.raises(EngineError) as exc:
        await cancel_plan(store, "plan-1", OWNER)
    assert exc.value.details["current_status"] == "cancelled"
