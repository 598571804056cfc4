from __future__ import annotations

from typing import Any, Literal

ReasonCode = Literal[
    "missing_configuration",
    "plan_not_found",
    "invalid_plan_status",
    "already_running",
    "credentials_unavailable",
    "browser_provisioning_failed",
    "authentication_failed",
    "discovery_failed",
    "slot_not_found",
    "rental_required",
    "cart_verification_failed",
    "payment_not_ready",
    "secret_required",
    "captcha_required",
    "confirmation_timeout",
    "checkout_unavailable",
    "step_timeout",
    "unexpected_error",
]

ChallengeErrorCode = Literal[
    "challenge_not_found",
    "challenge_already_resolved",
    "challenge_expired",
    "invalid_secret",
    "not_authorized",
    "plan_not_found",
    "token_allocation_failed",
]


class EngineError(RuntimeError):
    def __init__(self, reason_code: str, message: str, **details: Any) -> None:
        super().__init__(message)
        self.reason_code = reason_code
        self.details = details


class ConfigurationError(EngineError):
    def __init__(self, missing: list[str]) -> None:
        super().__init__(
            "missing_configuration",
            f"Missing required configuration: {', '.join(missing)}",
            missing=list(missing),
        )
        self.missing = list(missing)


class ProvisioningError(EngineError):
    def __init__(self, message: str) -> None:
        super().__init__("browser_provisioning_failed", message)


class CredentialError(EngineError):
    def __init__(self, message: str) -> None:
        super().__init__("credentials_unavailable", message)


class ChallengeError(EngineError):
    """Rejected challenge operation (reason_code is a ChallengeErrorCode)."""


class StepFailure(EngineError):
    """Unrecoverable failure at a workflow state."""


class ActionRequired(EngineError):
    """The attempt needs a human before it can continue."""

    def __init__(
        self,
        reason_code: str,
        message: str,
        *,
        challenge_token: str | None = None,
        **details: Any,
    ) -> None:
        super().__init__(reason_code, message, **details)
        self.challenge_token = challenge_token
