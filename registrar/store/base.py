from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from ..models import (
    AttemptLogEntry,
    Challenge,
    ChallengeStatus,
    ChallengeType,
    Plan,
    PlanStatus,
    SessionSnapshot,
    StoredCredential,
)


@runtime_checkable
class PlanStore(Protocol):
    """
    Persistence the engine needs: plans, the attempt log, credentials,
    session snapshots and challenges.

    Conditional updates (`claim_for_execution`, `transition_status`,
    `transition_challenge`) must be atomic: of several concurrent callers at
    most one observes True.
    """

    # Plans
    async def get_plan(self, plan_id: str) -> Plan | None: ...

    async def save_plan(self, plan: Plan) -> None: ...

    async def list_plans_due(self, status: PlanStatus, start: datetime, end: datetime) -> list[Plan]: ...

    async def claim_for_execution(self, plan_id: str) -> bool: ...

    async def transition_status(
        self, plan_id: str, to_status: PlanStatus, *, expected: Iterable[PlanStatus]
    ) -> bool: ...

    async def set_discovered_url(self, plan_id: str, url: str | None) -> None: ...

    async def count_completed_since(self, user_id: str, since: datetime) -> int: ...

    # Attempt log
    async def append_log(self, plan_id: str, msg: str) -> AttemptLogEntry: ...

    async def list_logs(self, plan_id: str) -> list[AttemptLogEntry]: ...

    # Credentials
    async def get_credential(self, credential_id: str) -> StoredCredential | None: ...

    async def save_credential(self, credential: StoredCredential) -> None: ...

    # Session snapshots
    async def save_snapshot(self, snapshot: SessionSnapshot) -> None: ...

    async def latest_snapshot(self, plan_id: str, now: datetime) -> SessionSnapshot | None: ...

    # Challenges
    async def create_challenge(self, challenge: Challenge) -> None: ...

    async def get_challenge(self, token: str) -> Challenge | None: ...

    async def transition_challenge(
        self,
        token: str,
        from_status: ChallengeStatus,
        to_status: ChallengeStatus,
        *,
        data: dict[str, Any] | None = None,
        resolved_at: datetime | None = None,
    ) -> bool: ...

    async def latest_resolved_challenge(self, plan_id: str, type: ChallengeType) -> Challenge | None:
        """Newest resolved challenge of this type not yet consumed by an attempt."""
        ...

    async def mark_challenge_consumed(self, token: str, when: datetime) -> bool: ...
