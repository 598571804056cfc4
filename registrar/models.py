"""
Pydantic models for the registration engine.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .constants import AUTO_VALUES

PlanStatus = Literal["scheduled", "executing", "action_required", "completed", "failed", "cancelled"]
ChallengeType = Literal["cvv", "captcha"]
ChallengeStatus = Literal["pending", "resolved", "expired"]
CallerKind = Literal["owner", "service"]
SlotChoice = Literal["preferred", "alternate"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _auto_to_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    if value in AUTO_VALUES:
        return None
    return value


class SlotPreference(BaseModel):
    """A desired slot: free-text label plus optional class-name hint"""

    label: str
    class_name: Optional[str] = None

    def target_text(self) -> str:
        """Text that listing rows are matched against."""
        if self.class_name and self.class_name.strip():
            return f"{self.class_name.strip()} {self.label.strip()}".strip()
        return self.label.strip()


class PlanExtras(BaseModel):
    """Free-form add-on choices attached to a plan"""

    rental: Optional[str] = None
    color_group: Optional[str] = None
    volunteer: Optional[str] = None
    allow_no_cvv: bool = False

    def value_for(self, category: str) -> Optional[str]:
        """Plan value for an add-on category, with auto markers mapped to None."""
        return _auto_to_none(getattr(self, category, None))


class Plan(BaseModel):
    """A user's request to attempt a registration at a specific time"""

    id: str
    user_id: str
    credential_id: str
    base_url: str
    org: str = ""
    discovered_url: Optional[str] = None
    preferred: SlotPreference
    alternate: Optional[SlotPreference] = None
    participant_name: Optional[str] = None
    phone: Optional[str] = None
    extras: PlanExtras = Field(default_factory=PlanExtras)
    open_time: datetime
    status: PlanStatus = "scheduled"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    status_updated_at: datetime = Field(default_factory=utcnow)

    @property
    def origin(self) -> str:
        return self.base_url.rstrip("/")


class StoredCredential(BaseModel):
    """Credential row as persisted: sealed fields only"""

    id: str
    user_id: str
    alias: str
    email_enc: str
    password_enc: str
    cvv_enc: Optional[str] = None


class ResolvedCredential(BaseModel):
    """Decrypted credential, held in memory for one attempt only"""

    alias: str
    email: str
    password: str = Field(repr=False)
    cvv: Optional[str] = Field(default=None, repr=False)


class AttemptLogEntry(BaseModel):
    """Append-only note attached to a plan"""

    plan_id: str
    msg: str
    created_at: datetime = Field(default_factory=utcnow)


class SessionSnapshot(BaseModel):
    """Sealed cookies + storage captured after seeding or login"""

    plan_id: str
    user_id: str
    payload: str
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime


class SessionBundle(BaseModel):
    """Plaintext content of a session snapshot"""

    cookies: List[Dict[str, Any]] = Field(default_factory=list)
    local_storage: Dict[str, str] = Field(default_factory=dict)
    session_storage: Dict[str, str] = Field(default_factory=dict)
    origin: Optional[str] = None


class Challenge(BaseModel):
    """A token-gated pause awaiting a human-supplied secret or confirmation"""

    token: str
    plan_id: str
    user_id: str
    type: ChallengeType
    status: ChallengeStatus = "pending"
    expires_at: datetime
    data: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None
    consumed_at: Optional[datetime] = None


class Caller(BaseModel):
    """Identity invoking an engine operation"""

    kind: CallerKind
    user_id: Optional[str] = None

    @classmethod
    def service(cls) -> "Caller":
        return cls(kind="service")

    @classmethod
    def owner(cls, user_id: str) -> "Caller":
        return cls(kind="owner", user_id=user_id)

    def may_act_for(self, user_id: str) -> bool:
        return self.kind == "service" or (self.user_id is not None and self.user_id == user_id)


class ExecutionResult(BaseModel):
    """Outcome of one execute-plan invocation"""

    ok: bool
    plan_id: str
    status: Optional[PlanStatus] = None
    state: Optional[str] = None
    code: Optional[str] = None
    message: str = ""
    challenge_token: Optional[str] = None
    slot_used: Optional[SlotChoice] = None
    details: Dict[str, Any] = Field(default_factory=dict)
