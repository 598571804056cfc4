"""
Seeding pass: minutes of ordinary browsing before the timed attempt.

The pass signs in, dwells on the home page, opens the listing, hovers the
target row and keeps the page alive until shortly before open time. The
resulting cookies and storage are sealed into a session snapshot that the
timed pass restores. Seeding never changes plan status.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING

from .adapters import DEFAULT_ADAPTERS, ListingAdapter, pick_adapter
from .config import EngineConfig
from .errors import EngineError
from .models import Caller, Plan
from .session_codec import capture_bundle
from .timing import TimingController
from .workflow import AttemptContext
from .workflow.login import login_step

if TYPE_CHECKING:
    from .backends.provisioning import BrowserProvisioner
    from .challenges import ChallengeService
    from .session_codec import SessionCodec
    from .store.base import PlanStore
    from .vault import CredentialVault

logger = logging.getLogger(__name__)


class SeedingPass:
    def __init__(
        self,
        *,
        store: PlanStore,
        config: EngineConfig,
        provisioner: BrowserProvisioner,
        vault: CredentialVault,
        challenges: ChallengeService,
        codec: SessionCodec,
        timing: TimingController | None = None,
        adapters: Sequence[ListingAdapter] = DEFAULT_ADAPTERS,
    ) -> None:
        self.store = store
        self.config = config
        self.provisioner = provisioner
        self.vault = vault
        self.challenges = challenges
        self.codec = codec
        self.timing = timing or TimingController(config.timing)
        self.adapters = adapters

    async def run(self, plan: Plan) -> bool:
        """
        Seed one plan. Returns True when a snapshot was saved.

        Failures are logged to the attempt log as non-critical and swallowed.
        """
        schedule = self.timing.seed_schedule(plan.open_time)
        horizon = self.config.scheduler.seed_lead_s + self.config.scheduler.seed_window_s
        await self.timing.wait_until(schedule.seed_start, max_wait_s=horizon)
        await self.store.append_log(plan.id, f"Seeding started, ends {schedule.seed_end.isoformat()}")
        try:
            credential = await self.vault.resolve(plan.credential_id, Caller.service())
            async with self.provisioner.session() as backend:
                ctx = AttemptContext(
                    backend=backend,
                    plan=plan,
                    credential=credential,
                    store=self.store,
                    timing=self.timing,
                    config=self.config,
                    challenges=self.challenges,
                    codec=self.codec,
                    adapters=self.adapters,
                )
                await self._browse(ctx)
                await self.timing.wait_until(schedule.seed_end, max_wait_s=horizon, backend=backend)
                bundle = await capture_bundle(backend)
                await self.store.save_snapshot(self.codec.to_snapshot(plan, bundle, now=self.timing.now()))
        except EngineError as e:
            await self.store.append_log(plan.id, f"Seeding failed (non-critical) [{e.reason_code}]: {e}")
            return False
        except Exception as e:
            logger.warning(f"Seeding for plan {plan.id} failed: {e}")
            await self.store.append_log(plan.id, f"Seeding failed (non-critical): {type(e).__name__}: {e}")
            return False
        await self.store.append_log(plan.id, f"Seeding complete; session snapshot saved ({len(bundle.cookies)} cookies)")
        return True

    async def _browse(self, ctx: AttemptContext) -> None:
        await login_step(ctx)

        await ctx.goto(ctx.origin)
        await self.timing.dwell()
        await self.timing.scroll(ctx.backend)

        listing = ctx.plan.discovered_url
        if listing:
            await ctx.goto(listing)
        else:
            await ctx.default_adapter.open_listing(
                ctx.backend, ctx.origin, timeout_ms=self.config.navigation_timeout_ms
            )
        await self.timing.dwell()
        adapter, layout = await pick_adapter(ctx.backend, ctx.adapters, ctx.default_adapter)

        match = await adapter.find_program_container(
            ctx.backend, ctx.plan.preferred.target_text(), threshold=self.config.fuzzy_threshold
        )
        if match.outcome == "found" and match.container is not None:
            await match.container.element.scroll_into_view()
            await self.timing.move_to(ctx.backend, match.container.element)
            await match.container.element.hover()
            await self.timing.dwell()
            await ctx.log(f"Seeding: hovered target row on {layout} listing")
        else:
            await ctx.log(f"Seeding: target row not visible yet ({match.outcome}); browsing listing only")
            await self.timing.scroll(ctx.backend)
