from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field, replace

from .constants import CHALLENGE_TTL_SECONDS, FUZZY_ACCEPT_THRESHOLD, SESSION_TTL_SECONDS


@dataclass(frozen=True)
class TimingConfig:
    """
    Ranges (milliseconds unless noted) for humanized interaction.

    Every interaction draws from a [min, max] range plus jitter; nothing here is
    used as a fixed delay.
    """

    dwell_ms: tuple[int, int] = (1_500, 4_000)
    action_pause_ms: tuple[int, int] = (250, 900)
    jitter_ms: tuple[int, int] = (0, 120)
    typing_char_ms: tuple[int, int] = (80, 200)
    typing_hesitation_ms: tuple[int, int] = (300, 800)
    typing_hesitation_probability: float = 0.1
    mouse_steps: tuple[int, int] = (10, 30)
    scroll_sessions: tuple[int, int] = (2, 4)
    scroll_segment_px: int = 100
    micro_activity_every_s: tuple[int, int] = (30, 60)

    # Calibration against open_time (seconds)
    seeding_duration_s: tuple[int, int] = (120, 240)
    execution_lead_s: tuple[int, int] = (15, 45)


@dataclass(frozen=True)
class SchedulerConfig:
    poll_interval_s: float = 60.0
    lookahead_s: int = 300
    late_window_s: int = 300
    seed_lead_s: int = 600
    seed_window_s: int = 300
    invocation_timeout_s: float = 900.0
    max_concurrent_attempts: int = 4
    seeding_enabled: bool = True


@dataclass(frozen=True)
class PolicyConfig:
    """
    Policy toggles injected into the scheduler and the workflow.
    """

    # Interface-only: the engine never solves CAPTCHAs. Anything but False is rejected.
    captcha_autosolve_enabled: bool = False
    per_user_weekly_limit: int = 3
    sms_immediate_on_action_required: bool = True


@dataclass(frozen=True)
class EngineConfig:
    timing: TimingConfig = TimingConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    policy: PolicyConfig = PolicyConfig()

    # Bounded waits
    navigation_timeout_ms: int = 30_000
    selector_timeout_ms: int = 15_000
    optional_wait_ms: int = 3_000
    login_timeout_ms: int = 30_000
    confirmation_timeout_ms: int = 30_000
    max_hold_s: int = 600

    fuzzy_threshold: float = FUZZY_ACCEPT_THRESHOLD
    challenge_ttl_s: int = CHALLENGE_TTL_SECONDS
    session_ttl_s: int = SESSION_TTL_SECONDS

    app_base_url: str = "http://localhost:3000"
    database_url: str | None = None
    artifacts_dir: str | None = None

    # Secrets (never logged)
    cred_enc_key: str | None = field(default=None, repr=False)
    browserbase_api_key: str | None = field(default=None, repr=False)
    browserbase_project_id: str | None = None
    twilio_account_sid: str | None = None
    twilio_auth_token: str | None = field(default=None, repr=False)
    twilio_from_number: str | None = None

    def __post_init__(self) -> None:
        if self.policy.captcha_autosolve_enabled:
            raise ValueError("captcha_autosolve_enabled is not supported")
        if not 0.0 < self.fuzzy_threshold <= 1.0:
            raise ValueError("fuzzy_threshold must be in (0, 1]")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, **overrides) -> EngineConfig:
        env = os.environ if environ is None else environ

        def _get(*names: str) -> str | None:
            for name in names:
                value = (env.get(name) or "").strip()
                if value:
                    return value
            return None

        cfg = cls(
            app_base_url=_get("APP_BASE_URL") or cls.app_base_url,
            database_url=_get("DATABASE_URL"),
            artifacts_dir=_get("REGISTRAR_ARTIFACTS_DIR"),
            cred_enc_key=_get("CRED_ENC_KEY"),
            browserbase_api_key=_get("BROWSERBASE_API_KEY"),
            browserbase_project_id=_get("BROWSERBASE_PROJECT_ID"),
            twilio_account_sid=_get("TWILIO_ACCOUNT_SID"),
            twilio_auth_token=_get("TWILIO_AUTH_TOKEN"),
            twilio_from_number=_get("TWILIO_FROM_NUMBER", "TWILIO_FROM"),
        )
        return replace(cfg, **overrides) if overrides else cfg

    def missing_for_execution(self, *, remote_browser: bool = True) -> list[str]:
        """Names of required settings that are absent for an execution attempt."""
        missing: list[str] = []
        if not self.cred_enc_key:
            missing.append("CRED_ENC_KEY")
        if remote_browser:
            if not self.browserbase_api_key:
                missing.append("BROWSERBASE_API_KEY")
            if not self.browserbase_project_id:
                missing.append("BROWSERBASE_PROJECT_ID")
        return missing

    @property
    def sms_configured(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token and self.twilio_from_number)
