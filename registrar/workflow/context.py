from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ..adapters import DEFAULT_ADAPTERS, CardAdapter, Layout, ListingAdapter
from ..config import EngineConfig
from ..errors import ActionRequired
from ..models import Caller, ChallengeType, Plan, ResolvedCredential, SlotChoice, SlotPreference

if TYPE_CHECKING:
    from ..backends.protocol import BrowserBackend, PageElement
    from ..challenges import ChallengeService
    from ..failure_artifacts import FailureArtifactRecorder
    from ..notify import Notifier
    from ..session_codec import SessionCodec
    from ..store.base import PlanStore
    from ..timing import TimingController

logger = logging.getLogger(__name__)


async def first_signal(signals: dict[str, Awaitable[bool]], *, timeout_s: float) -> str | None:
    """
    Race named boolean waits; return the first that reports True, or None when
    all report False or the timeout passes. Losers are cancelled.
    """
    tasks = {asyncio.ensure_future(aw): name for name, aw in signals.items()}
    pending = set(tasks)
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_s
    try:
        while pending:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            done, pending = await asyncio.wait(pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if task.cancelled():
                    continue
                err = task.exception()
                if err is not None:
                    logger.debug(f"signal {tasks[task]} raised: {err}")
                    continue
                if task.result():
                    return tasks[task]
        return None
    finally:
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


@dataclass
class AttemptContext:
    """
    Everything one attempt needs. Owned exclusively by that attempt.
    """

    backend: BrowserBackend
    plan: Plan
    credential: ResolvedCredential
    store: PlanStore
    timing: TimingController
    config: EngineConfig
    challenges: ChallengeService
    notifier: Notifier | None = None
    codec: SessionCodec | None = None
    artifacts: FailureArtifactRecorder | None = None
    adapters: Sequence[ListingAdapter] = DEFAULT_ADAPTERS
    default_adapter: ListingAdapter = field(default_factory=CardAdapter)
    resuming: bool = False
    # Challenge token whose resolved CVV is in credential.cvv; consumed once typed
    secret_token: str | None = None

    # Filled in as the attempt progresses
    adapter: ListingAdapter | None = None
    layout: Layout | None = None
    listing_url: str | None = None
    slot_used: SlotChoice | None = None
    slot: SlotPreference | None = None
    matched_text: str | None = None
    last_rows: list[str] = field(default_factory=list)

    @property
    def origin(self) -> str:
        return self.plan.origin

    async def log(self, msg: str) -> None:
        logger.info(f"[plan {self.plan.id}] {msg}")
        await self.store.append_log(self.plan.id, msg)

    async def goto(self, url: str) -> None:
        await self.backend.goto(url, timeout_ms=self.config.navigation_timeout_ms)
        await self.backend.wait_for_load(timeout_ms=self.config.navigation_timeout_ms)

    async def first_visible(self, selector: str) -> PageElement | None:
        for el in await self.backend.query(selector):
            if await el.is_visible():
                return el
        return None

    async def wait_visible(self, selector: str) -> PageElement | None:
        """Short bounded wait for an optional control, then the first visible match."""
        if not await self.backend.wait_for_selector(selector, timeout_ms=self.config.optional_wait_ms):
            return None
        return await self.first_visible(selector)

    async def request_human(self, type: ChallengeType, reason_code: str, message: str) -> ActionRequired:
        """
        Create a challenge, notify the owner, and return the ActionRequired to raise.
        """
        challenge = await self.challenges.create(self.plan.id, type, Caller.service())
        await self.log(f"{message} - verification challenge created")
        if self.config.policy.sms_immediate_on_action_required:
            await self._notify(challenge.token)
        return ActionRequired(reason_code, message, challenge_token=challenge.token, challenge_type=type)

    async def _notify(self, token: str) -> None:
        if self.notifier is None or not self.plan.phone:
            await self.log("No notification sent: no phone number or SMS provider")
            return
        try:
            receipt = await self.notifier.send_challenge(self.plan.phone, token, self.plan.org)
        except Exception as e:
            logger.warning(f"Notifier raised: {e}")
            await self.log(f"SMS delivery failed: {e}")
            return
        if receipt.ok:
            await self.log("Verification link sent by SMS")
        else:
            await self.log(f"SMS delivery failed: {receipt.error}")
