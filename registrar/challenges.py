"""
Challenge subsystem: durable, token-addressed pauses in an execution.

State machine: pending -> resolved, or pending -> expired. Expiry is enforced
lazily on every read, so a challenge past its deadline can never be resolved.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from .constants import CHALLENGE_TOKEN_ALPHABET, CHALLENGE_TOKEN_LENGTH, CHALLENGE_TTL_SECONDS, CVV_PATTERN
from .crypto import SealError, SecretBox
from .errors import ChallengeError
from .models import Caller, Challenge, ChallengeType, utcnow
from .store.base import PlanStore

logger = logging.getLogger(__name__)

_MAX_TOKEN_ATTEMPTS = 5


def generate_token(length: int = CHALLENGE_TOKEN_LENGTH) -> str:
    return "".join(secrets.choice(CHALLENGE_TOKEN_ALPHABET) for _ in range(length))


@dataclass
class ResolvedSecret:
    token: str
    cvv: str


ResolvedHook = Callable[[Challenge], Awaitable[Any]]


class ChallengeService:
    """
    Args:
        store: plan store holding challenges and attempt logs
        box: sealing key for resolved secrets
        ttl_s: challenge lifetime
        on_resolved: awaited after a successful resolve, normally the
            scheduler's resume entry; its failures are logged, never raised
    """

    def __init__(
        self,
        store: PlanStore,
        box: SecretBox,
        *,
        ttl_s: int = CHALLENGE_TTL_SECONDS,
        clock: Callable[[], datetime] | None = None,
        token_fn: Callable[[], str] | None = None,
        on_resolved: ResolvedHook | None = None,
    ) -> None:
        self._store = store
        self._box = box
        self._ttl = timedelta(seconds=ttl_s)
        self._clock = clock or utcnow
        self._token_fn = token_fn or generate_token
        self.on_resolved = on_resolved

    async def create(self, plan_id: str, type: ChallengeType, caller: Caller) -> Challenge:
        plan = await self._store.get_plan(plan_id)
        if plan is None:
            raise ChallengeError("plan_not_found", f"Plan {plan_id} not found")
        if not caller.may_act_for(plan.user_id):
            raise ChallengeError("not_authorized", "Caller may not create challenges for this plan")

        now = self._clock()
        for _ in range(_MAX_TOKEN_ATTEMPTS):
            challenge = Challenge(
                token=self._token_fn(),
                plan_id=plan.id,
                user_id=plan.user_id,
                type=type,
                status="pending",
                expires_at=now + self._ttl,
                created_at=now,
            )
            try:
                await self._store.create_challenge(challenge)
            except ValueError:
                continue
            await self._store.append_log(plan.id, f"{type.upper()} challenge created, expires {challenge.expires_at.isoformat()}")
            return challenge
        raise ChallengeError("token_allocation_failed", "Could not allocate a unique challenge token")

    async def get(self, token: str) -> Challenge:
        """Read a challenge, flipping it to expired if its deadline passed."""
        challenge = await self._store.get_challenge(token.strip().upper())
        if challenge is None:
            raise ChallengeError("challenge_not_found", "Challenge not found")
        if challenge.status == "pending" and self._clock() >= challenge.expires_at:
            if await self._store.transition_challenge(challenge.token, "pending", "expired"):
                await self._store.append_log(challenge.plan_id, f"{challenge.type.upper()} challenge expired")
            challenge = await self._store.get_challenge(challenge.token) or challenge
        return challenge

    async def resolve(self, token: str, cvv: str | None = None) -> Challenge:
        """
        Resolve a pending challenge. The token itself is the credential.

        Args:
            token: challenge token as typed by the human
            cvv: 3-4 digit secret, required for cvv challenges

        Raises:
            ChallengeError: not found, already resolved, expired, or invalid secret
        """
        challenge = await self.get(token)
        if challenge.status == "resolved":
            raise ChallengeError("challenge_already_resolved", "Challenge already resolved")
        if challenge.status == "expired":
            raise ChallengeError("challenge_expired", "Challenge expired")

        data: dict = {}
        if challenge.type == "cvv":
            value = (cvv or "").strip()
            if not CVV_PATTERN.match(value):
                raise ChallengeError("invalid_secret", "CVV must be 3 or 4 digits")
            data["cvv_enc"] = self._box.seal(value)

        now = self._clock()
        if now >= challenge.expires_at:
            await self._store.transition_challenge(challenge.token, "pending", "expired")
            raise ChallengeError("challenge_expired", "Challenge expired")
        if not await self._store.transition_challenge(
            challenge.token, "pending", "resolved", data=data, resolved_at=now
        ):
            raise ChallengeError("challenge_already_resolved", "Challenge already resolved")

        if challenge.type == "cvv":
            await self._store.append_log(challenge.plan_id, "CVV challenge resolved - execution can resume")
        else:
            await self._store.append_log(challenge.plan_id, "Confirmation challenge resolved - execution can resume")
        resolved = await self._store.get_challenge(challenge.token) or challenge
        if self.on_resolved is not None:
            try:
                await self.on_resolved(resolved)
            except Exception as e:
                logger.warning(f"Resume hook failed for plan {resolved.plan_id}: {e}")
                await self._store.append_log(resolved.plan_id, f"Automatic resume could not be started: {e}")
        return resolved

    async def peek_resolved_secret(self, plan_id: str) -> ResolvedSecret | None:
        """
        Newest resolved, unconsumed CVV for plan_id. Left unconsumed until
        `consume_secret` is called, so an attempt that never reaches the CVV
        field does not use it up.
        """
        challenge = await self._store.latest_resolved_challenge(plan_id, "cvv")
        if challenge is None or "cvv_enc" not in challenge.data:
            return None
        try:
            cvv = self._box.open(challenge.data["cvv_enc"])
        except SealError as e:
            logger.warning(f"Resolved challenge {challenge.token} payload unreadable: {e}")
            return None
        return ResolvedSecret(token=challenge.token, cvv=cvv)

    async def consume_secret(self, token: str) -> bool:
        """Mark a resolved secret used. True for the first caller only."""
        return await self._store.mark_challenge_consumed(token, self._clock())
