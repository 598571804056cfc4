"""
Wiring: build the engine's collaborators from an EngineConfig.
"""

from __future__ import annotations

import base64
import logging
import os
from dataclasses import dataclass

from .backends.provisioning import BrowserbaseProvisioner, BrowserProvisioner, LocalChromiumProvisioner
from .challenges import ChallengeService
from .config import EngineConfig
from .crypto import SecretBox
from .notify import LoggingNotifier, Notifier, TwilioNotifier
from .runner import PlanRunner
from .scheduler import Scheduler
from .seeding import SeedingPass
from .session_codec import SessionCodec
from .store.base import PlanStore
from .store.sql import SqlPlanStore
from .timing import TimingController
from .vault import StoreCredentialVault

logger = logging.getLogger(__name__)


@dataclass
class Components:
    config: EngineConfig
    store: PlanStore
    challenges: ChallengeService
    runner: PlanRunner
    scheduler: Scheduler

    async def close(self) -> None:
        dispose = getattr(self.store, "dispose", None)
        if dispose is not None:
            await dispose()


def _secret_box(config: EngineConfig) -> SecretBox:
    if config.cred_enc_key:
        return SecretBox.from_b64(config.cred_enc_key)
    # Nothing sealed with this key outlives the process; attempts fail on missing_configuration.
    logger.warning("CRED_ENC_KEY not set; plan executions will fail with missing_configuration")
    return SecretBox.from_b64(base64.b64encode(os.urandom(32)).decode("ascii"))


def _provisioner(config: EngineConfig, *, local_browser: bool) -> BrowserProvisioner:
    if local_browser:
        return LocalChromiumProvisioner(action_timeout_ms=config.selector_timeout_ms)
    return BrowserbaseProvisioner(
        config.browserbase_api_key or "",
        config.browserbase_project_id or "",
        action_timeout_ms=config.selector_timeout_ms,
    )


def _notifier(config: EngineConfig) -> Notifier:
    if config.sms_configured:
        assert config.twilio_account_sid and config.twilio_auth_token and config.twilio_from_number
        return TwilioNotifier(
            config.twilio_account_sid,
            config.twilio_auth_token,
            config.twilio_from_number,
            config.app_base_url,
        )
    logger.info("Twilio not configured; challenge links go to the log only")
    return LoggingNotifier(config.app_base_url)


def build_components(
    config: EngineConfig,
    *,
    store: PlanStore | None = None,
    local_browser: bool = False,
) -> Components:
    store = store or SqlPlanStore.from_dsn(config.database_url)
    box = _secret_box(config)
    timing = TimingController(config.timing)
    codec = SessionCodec(box, ttl_s=config.session_ttl_s)
    vault = StoreCredentialVault(store, box)
    challenges = ChallengeService(store, box, ttl_s=config.challenge_ttl_s)
    provisioner = _provisioner(config, local_browser=local_browser)

    runner = PlanRunner(
        store=store,
        config=config,
        provisioner=provisioner,
        vault=vault,
        challenges=challenges,
        notifier=_notifier(config),
        codec=codec,
        timing=timing,
        requires_remote_browser=not local_browser,
    )
    seeder = None
    if config.scheduler.seeding_enabled:
        seeder = SeedingPass(
            store=store,
            config=config,
            provisioner=provisioner,
            vault=vault,
            challenges=challenges,
            codec=codec,
            timing=timing,
        )
    scheduler = Scheduler(store, runner.execute_plan, config, seeder=seeder)
    challenges.on_resolved = scheduler.resume
    return Components(config=config, store=store, challenges=challenges, runner=runner, scheduler=scheduler)
