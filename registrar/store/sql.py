"""
SQLAlchemy (async) persistence.

Datetimes are stored as naive UTC and returned timezone-aware.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from ..models import (
    AttemptLogEntry,
    Challenge,
    ChallengeStatus,
    ChallengeType,
    Plan,
    PlanExtras,
    PlanStatus,
    SessionSnapshot,
    SlotPreference,
    StoredCredential,
    utcnow,
)

Base = declarative_base()


def _to_db(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class PlanRow(Base):
    __tablename__ = "plans"
    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    credential_id = Column(String, nullable=False)
    base_url = Column(String, nullable=False)
    org = Column(String, nullable=False, default="")
    discovered_url = Column(String, nullable=True)
    preferred = Column(JSON, nullable=False)
    alternate = Column(JSON, nullable=True)
    participant_name = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    extras = Column(JSON, nullable=False, default=dict)
    open_time = Column(DateTime, nullable=False, index=True)
    status = Column(String, nullable=False, index=True)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)
    status_updated_at = Column(DateTime, nullable=False)


class PlanLogRow(Base):
    __tablename__ = "plan_logs"
    id = Column(Integer, primary_key=True, autoincrement=True)
    plan_id = Column(String, nullable=False, index=True)
    msg = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False)


class CredentialRow(Base):
    __tablename__ = "account_credentials"
    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    alias = Column(String, nullable=False)
    email_enc = Column(Text, nullable=False)
    password_enc = Column(Text, nullable=False)
    cvv_enc = Column(Text, nullable=True)


class SessionSnapshotRow(Base):
    __tablename__ = "session_states"
    id = Column(Integer, primary_key=True, autoincrement=True)
    plan_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=False)
    payload = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)


class ChallengeRow(Base):
    __tablename__ = "execution_challenges"
    token = Column(String, primary_key=True)
    plan_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=False)
    type = Column(String, nullable=False)
    status = Column(String, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    data = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False)
    resolved_at = Column(DateTime, nullable=True)
    consumed_at = Column(DateTime, nullable=True)


def _plan_from_row(row: PlanRow) -> Plan:
    return Plan(
        id=row.id,
        user_id=row.user_id,
        credential_id=row.credential_id,
        base_url=row.base_url,
        org=row.org or "",
        discovered_url=row.discovered_url,
        preferred=SlotPreference.model_validate(row.preferred),
        alternate=SlotPreference.model_validate(row.alternate) if row.alternate else None,
        participant_name=row.participant_name,
        phone=row.phone,
        extras=PlanExtras.model_validate(row.extras or {}),
        open_time=_from_db(row.open_time),
        status=row.status,
        created_at=_from_db(row.created_at),
        updated_at=_from_db(row.updated_at),
        status_updated_at=_from_db(row.status_updated_at),
    )


def _challenge_from_row(row: ChallengeRow) -> Challenge:
    return Challenge(
        token=row.token,
        plan_id=row.plan_id,
        user_id=row.user_id,
        type=row.type,
        status=row.status,
        expires_at=_from_db(row.expires_at),
        data=dict(row.data or {}),
        created_at=_from_db(row.created_at),
        resolved_at=_from_db(row.resolved_at),
        consumed_at=_from_db(row.consumed_at),
    )


def _snapshot_from_row(row: SessionSnapshotRow) -> SessionSnapshot:
    return SessionSnapshot(
        plan_id=row.plan_id,
        user_id=row.user_id,
        payload=row.payload,
        created_at=_from_db(row.created_at),
        expires_at=_from_db(row.expires_at),
    )


class SqlPlanStore:
    """
    Relational store. Conditional updates are single UPDATE ... WHERE
    statements, so exclusivity holds across processes sharing the database.
    """

    def __init__(self, engine: AsyncEngine, *, clock=None) -> None:
        self._engine = engine
        self._session = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
        self._clock = clock or utcnow

    @classmethod
    def from_dsn(cls, dsn: str | None = None, **kwargs: Any) -> SqlPlanStore:
        dsn = dsn or "sqlite+aiosqlite:///./registrar.db"
        return cls(create_async_engine(dsn, echo=False), **kwargs)

    async def create_all(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self._engine.dispose()

    # Plans

    async def get_plan(self, plan_id: str) -> Plan | None:
        async with self._session() as session:
            row = await session.get(PlanRow, plan_id)
            return _plan_from_row(row) if row else None

    async def save_plan(self, plan: Plan) -> None:
        values = {
            "id": plan.id,
            "user_id": plan.user_id,
            "credential_id": plan.credential_id,
            "base_url": plan.base_url,
            "org": plan.org,
            "discovered_url": plan.discovered_url,
            "preferred": plan.preferred.model_dump(),
            "alternate": plan.alternate.model_dump() if plan.alternate else None,
            "participant_name": plan.participant_name,
            "phone": plan.phone,
            "extras": plan.extras.model_dump(),
            "open_time": _to_db(plan.open_time),
            "status": plan.status,
            "created_at": _to_db(plan.created_at),
            "updated_at": _to_db(plan.updated_at),
            "status_updated_at": _to_db(plan.status_updated_at),
        }
        async with self._session() as session:
            async with session.begin():
                await session.merge(PlanRow(**values))

    async def list_plans_due(self, status: PlanStatus, start: datetime, end: datetime) -> list[Plan]:
        stmt = (
            select(PlanRow)
            .where(PlanRow.status == status, PlanRow.open_time >= _to_db(start), PlanRow.open_time <= _to_db(end))
            .order_by(PlanRow.open_time)
        )
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_plan_from_row(r) for r in rows]

    async def claim_for_execution(self, plan_id: str) -> bool:
        return await self.transition_status(plan_id, "executing", expected=("scheduled",))

    async def transition_status(
        self, plan_id: str, to_status: PlanStatus, *, expected: Iterable[PlanStatus]
    ) -> bool:
        now = _to_db(self._clock())
        stmt = (
            update(PlanRow)
            .where(PlanRow.id == plan_id, PlanRow.status.in_(list(expected)))
            .values(status=to_status, status_updated_at=now, updated_at=now)
        )
        async with self._session() as session:
            async with session.begin():
                result = await session.execute(stmt)
            return result.rowcount == 1

    async def set_discovered_url(self, plan_id: str, url: str | None) -> None:
        stmt = (
            update(PlanRow)
            .where(PlanRow.id == plan_id)
            .values(discovered_url=url, updated_at=_to_db(self._clock()))
        )
        async with self._session() as session:
            async with session.begin():
                await session.execute(stmt)

    async def count_completed_since(self, user_id: str, since: datetime) -> int:
        stmt = select(func.count()).select_from(PlanRow).where(
            PlanRow.user_id == user_id,
            PlanRow.status == "completed",
            PlanRow.status_updated_at >= _to_db(since),
        )
        async with self._session() as session:
            return int((await session.execute(stmt)).scalar_one())

    # Attempt log

    async def append_log(self, plan_id: str, msg: str) -> AttemptLogEntry:
        async with self._session() as session:
            async with session.begin():
                last = (
                    await session.execute(
                        select(func.max(PlanLogRow.created_at)).where(PlanLogRow.plan_id == plan_id)
                    )
                ).scalar_one_or_none()
                ts = _to_db(self._clock())
                if last is not None and ts < last:
                    ts = last
                session.add(PlanLogRow(plan_id=plan_id, msg=msg, created_at=ts))
        return AttemptLogEntry(plan_id=plan_id, msg=msg, created_at=_from_db(ts))

    async def list_logs(self, plan_id: str) -> list[AttemptLogEntry]:
        stmt = select(PlanLogRow).where(PlanLogRow.plan_id == plan_id).order_by(PlanLogRow.id)
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [AttemptLogEntry(plan_id=r.plan_id, msg=r.msg, created_at=_from_db(r.created_at)) for r in rows]

    # Credentials

    async def get_credential(self, credential_id: str) -> StoredCredential | None:
        async with self._session() as session:
            row = await session.get(CredentialRow, credential_id)
            if row is None:
                return None
            return StoredCredential(
                id=row.id,
                user_id=row.user_id,
                alias=row.alias,
                email_enc=row.email_enc,
                password_enc=row.password_enc,
                cvv_enc=row.cvv_enc,
            )

    async def save_credential(self, credential: StoredCredential) -> None:
        async with self._session() as session:
            async with session.begin():
                await session.merge(CredentialRow(**credential.model_dump()))

    # Session snapshots

    async def save_snapshot(self, snapshot: SessionSnapshot) -> None:
        async with self._session() as session:
            async with session.begin():
                session.add(
                    SessionSnapshotRow(
                        plan_id=snapshot.plan_id,
                        user_id=snapshot.user_id,
                        payload=snapshot.payload,
                        created_at=_to_db(snapshot.created_at),
                        expires_at=_to_db(snapshot.expires_at),
                    )
                )

    async def latest_snapshot(self, plan_id: str, now: datetime) -> SessionSnapshot | None:
        stmt = (
            select(SessionSnapshotRow)
            .where(SessionSnapshotRow.plan_id == plan_id, SessionSnapshotRow.expires_at > _to_db(now))
            .order_by(SessionSnapshotRow.created_at.desc(), SessionSnapshotRow.id.desc())
            .limit(1)
        )
        async with self._session() as session:
            row = (await session.execute(stmt)).scalars().first()
            return _snapshot_from_row(row) if row else None

    # Challenges

    async def create_challenge(self, challenge: Challenge) -> None:
        try:
            await self._insert_challenge(challenge)
        except IntegrityError as e:
            raise ValueError(f"duplicate challenge token {challenge.token}") from e

    async def _insert_challenge(self, challenge: Challenge) -> None:
        async with self._session() as session:
            async with session.begin():
                session.add(
                    ChallengeRow(
                        token=challenge.token,
                        plan_id=challenge.plan_id,
                        user_id=challenge.user_id,
                        type=challenge.type,
                        status=challenge.status,
                        expires_at=_to_db(challenge.expires_at),
                        data=dict(challenge.data),
                        created_at=_to_db(challenge.created_at),
                        resolved_at=_to_db(challenge.resolved_at),
                        consumed_at=_to_db(challenge.consumed_at),
                    )
                )

    async def get_challenge(self, token: str) -> Challenge | None:
        async with self._session() as session:
            row = await session.get(ChallengeRow, token)
            return _challenge_from_row(row) if row else None

    async def transition_challenge(
        self,
        token: str,
        from_status: ChallengeStatus,
        to_status: ChallengeStatus,
        *,
        data: dict[str, Any] | None = None,
        resolved_at: datetime | None = None,
    ) -> bool:
        async with self._session() as session:
            async with session.begin():
                row = await session.get(ChallengeRow, token)
                if row is None:
                    return False
                values: dict[str, Any] = {"status": to_status}
                if data is not None:
                    values["data"] = {**(row.data or {}), **data}
                if resolved_at is not None:
                    values["resolved_at"] = _to_db(resolved_at)
                result = await session.execute(
                    update(ChallengeRow)
                    .where(ChallengeRow.token == token, ChallengeRow.status == from_status)
                    .values(**values)
                )
            return result.rowcount == 1

    async def latest_resolved_challenge(self, plan_id: str, type: ChallengeType) -> Challenge | None:
        stmt = (
            select(ChallengeRow)
            .where(
                ChallengeRow.plan_id == plan_id,
                ChallengeRow.type == type,
                ChallengeRow.status == "resolved",
                ChallengeRow.consumed_at.is_(None),
            )
            .order_by(ChallengeRow.resolved_at.desc())
            .limit(1)
        )
        async with self._session() as session:
            row = (await session.execute(stmt)).scalars().first()
            return _challenge_from_row(row) if row else None

    async def mark_challenge_consumed(self, token: str, when: datetime) -> bool:
        stmt = (
            update(ChallengeRow)
            .where(ChallengeRow.token == token, ChallengeRow.consumed_at.is_(None))
            .values(consumed_at=_to_db(when))
        )
        async with self._session() as session:
            async with session.begin():
                result = await session.execute(stmt)
            return result.rowcount == 1
