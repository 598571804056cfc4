"""
Owner-facing plan operations: reschedule (edit) and cancel.

An edit puts the plan back to `scheduled`; the engine never deletes plans.
"""

from __future__ import annotations

import logging
from typing import Any

from .errors import EngineError
from .models import Caller, Plan, PlanStatus, utcnow
from .store.base import PlanStore

logger = logging.getLogger(__name__)

# Fields an owner may change.
EDITABLE_FIELDS = frozenset(
    {
        "base_url",
        "org",
        "credential_id",
        "preferred",
        "alternate",
        "participant_name",
        "phone",
        "extras",
        "open_time",
    }
)

EDITABLE_STATUSES: tuple[PlanStatus, ...] = ("scheduled", "action_required", "failed", "cancelled")
CANCELLABLE_STATUSES: tuple[PlanStatus, ...] = ("scheduled", "action_required", "failed")


async def _owned_plan(store: PlanStore, plan_id: str, caller: Caller) -> Plan:
    plan = await store.get_plan(plan_id)
    # Owners only; a plan that is not theirs looks like a missing one.
    if plan is None or caller.kind != "owner" or caller.user_id != plan.user_id:
        raise EngineError("plan_not_found", f"Plan {plan_id} not found")
    return plan


async def reschedule_plan(store: PlanStore, plan_id: str, caller: Caller, **changes: Any) -> Plan:
    plan = await _owned_plan(store, plan_id, caller)
    if plan.status not in EDITABLE_STATUSES:
        raise EngineError(
            "invalid_plan_status",
            f"Plan status '{plan.status}' does not allow edits",
            current_status=plan.status,
            allowed_statuses=list(EDITABLE_STATUSES),
        )
    unknown = set(changes) - EDITABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields not editable: {', '.join(sorted(unknown))}")

    update: dict[str, Any] = dict(changes)
    if "base_url" in changes and changes["base_url"] != plan.base_url:
        update["discovered_url"] = None
    now = utcnow()
    update.update(status="scheduled", updated_at=now, status_updated_at=now)
    updated = Plan.model_validate({**plan.model_dump(), **update})
    await store.save_plan(updated)

    edited = ", ".join(sorted(changes)) or "nothing"
    await store.append_log(plan.id, f"Plan edited by owner ({edited}); status reset to scheduled")
    logger.info(f"Plan {plan.id} rescheduled for {updated.open_time.isoformat()}")
    return updated


async def cancel_plan(store: PlanStore, plan_id: str, caller: Caller) -> bool:
    plan = await _owned_plan(store, plan_id, caller)
    if not await store.transition_status(plan.id, "cancelled", expected=CANCELLABLE_STATUSES):
        current = await store.get_plan(plan.id)
        status = current.status if current else plan.status
        raise EngineError(
            "invalid_plan_status",
            f"Plan status '{status}' cannot be cancelled",
            current_status=status,
            allowed_statuses=list(CANCELLABLE_STATUSES),
        )
    await store.append_log(plan.id, "Plan cancelled by owner")
    return True
