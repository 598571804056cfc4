from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

from ..models import (
    AttemptLogEntry,
    Challenge,
    ChallengeStatus,
    ChallengeType,
    Plan,
    PlanStatus,
    SessionSnapshot,
    StoredCredential,
    utcnow,
)


class InMemoryPlanStore:
    """
    Process-local store. A single asyncio.Lock serializes every mutation, which
    makes the conditional updates exclusive within one event loop.
    """

    def __init__(self, *, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or utcnow
        self._lock = asyncio.Lock()
        self._plans: dict[str, Plan] = {}
        self._logs: dict[str, list[AttemptLogEntry]] = {}
        self._credentials: dict[str, StoredCredential] = {}
        self._snapshots: list[SessionSnapshot] = []
        self._challenges: dict[str, Challenge] = {}

    # Plans

    async def get_plan(self, plan_id: str) -> Plan | None:
        plan = self._plans.get(plan_id)
        return plan.model_copy(deep=True) if plan else None

    async def save_plan(self, plan: Plan) -> None:
        async with self._lock:
            self._plans[plan.id] = plan.model_copy(deep=True)

    async def list_plans_due(self, status: PlanStatus, start: datetime, end: datetime) -> list[Plan]:
        due = [p for p in self._plans.values() if p.status == status and start <= p.open_time <= end]
        return [p.model_copy(deep=True) for p in sorted(due, key=lambda p: p.open_time)]

    async def claim_for_execution(self, plan_id: str) -> bool:
        return await self.transition_status(plan_id, "executing", expected=("scheduled",))

    async def transition_status(
        self, plan_id: str, to_status: PlanStatus, *, expected: Iterable[PlanStatus]
    ) -> bool:
        allowed = set(expected)
        async with self._lock:
            plan = self._plans.get(plan_id)
            if plan is None or plan.status not in allowed:
                return False
            now = self._clock()
            self._plans[plan_id] = plan.model_copy(
                update={"status": to_status, "status_updated_at": now, "updated_at": now}
            )
            return True

    async def set_discovered_url(self, plan_id: str, url: str | None) -> None:
        async with self._lock:
            plan = self._plans.get(plan_id)
            if plan is not None:
                self._plans[plan_id] = plan.model_copy(update={"discovered_url": url, "updated_at": self._clock()})

    async def count_completed_since(self, user_id: str, since: datetime) -> int:
        return sum(
            1
            for p in self._plans.values()
            if p.user_id == user_id and p.status == "completed" and p.status_updated_at >= since
        )

    # Attempt log

    async def append_log(self, plan_id: str, msg: str) -> AttemptLogEntry:
        async with self._lock:
            entries = self._logs.setdefault(plan_id, [])
            ts = self._clock()
            if entries and ts < entries[-1].created_at:
                ts = entries[-1].created_at
            entry = AttemptLogEntry(plan_id=plan_id, msg=msg, created_at=ts)
            entries.append(entry)
            return entry

    async def list_logs(self, plan_id: str) -> list[AttemptLogEntry]:
        return list(self._logs.get(plan_id, []))

    # Credentials

    async def get_credential(self, credential_id: str) -> StoredCredential | None:
        return self._credentials.get(credential_id)

    async def save_credential(self, credential: StoredCredential) -> None:
        self._credentials[credential.id] = credential

    # Session snapshots

    async def save_snapshot(self, snapshot: SessionSnapshot) -> None:
        async with self._lock:
            self._snapshots.append(snapshot)

    async def latest_snapshot(self, plan_id: str, now: datetime) -> SessionSnapshot | None:
        live = [s for s in self._snapshots if s.plan_id == plan_id and s.expires_at > now]
        if not live:
            return None
        return max(live, key=lambda s: s.created_at)

    # Challenges

    async def create_challenge(self, challenge: Challenge) -> None:
        async with self._lock:
            if challenge.token in self._challenges:
                raise ValueError(f"duplicate challenge token {challenge.token}")
            self._challenges[challenge.token] = challenge.model_copy(deep=True)

    async def get_challenge(self, token: str) -> Challenge | None:
        ch = self._challenges.get(token)
        return ch.model_copy(deep=True) if ch else None

    async def transition_challenge(
        self,
        token: str,
        from_status: ChallengeStatus,
        to_status: ChallengeStatus,
        *,
        data: dict[str, Any] | None = None,
        resolved_at: datetime | None = None,
    ) -> bool:
        async with self._lock:
            ch = self._challenges.get(token)
            if ch is None or ch.status != from_status:
                return False
            update: dict[str, Any] = {"status": to_status}
            if data is not None:
                update["data"] = {**ch.data, **data}
            if resolved_at is not None:
                update["resolved_at"] = resolved_at
            self._challenges[token] = ch.model_copy(update=update)
            return True

    async def latest_resolved_challenge(self, plan_id: str, type: ChallengeType) -> Challenge | None:
        found = [
            c
            for c in self._challenges.values()
            if c.plan_id == plan_id and c.type == type and c.status == "resolved" and c.consumed_at is None
        ]
        if not found:
            return None
        return max(found, key=lambda c: c.resolved_at or c.created_at).model_copy(deep=True)

    async def mark_challenge_consumed(self, token: str, when: datetime) -> bool:
        async with self._lock:
            ch = self._challenges.get(token)
            if ch is None or ch.consumed_at is not None:
                return False
            self._challenges[token] = ch.model_copy(update={"consumed_at": when})
            return True
