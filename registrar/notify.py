"""
Owner notifications (SMS) for challenges.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)

TWILIO_API_URL = "https://api.twilio.com/2010-04-01"


@dataclass
class NotificationReceipt:
    ok: bool
    provider_id: str | None = None
    error: str | None = None


class Notifier(Protocol):
    async def send_challenge(self, to: str, token: str, org: str) -> NotificationReceipt: ...


def challenge_message(app_base_url: str, token: str, org: str) -> str:
    org_name = org or "your registration"
    return f"Quick verify to finish your signup for {org_name}: {app_base_url.rstrip('/')}/verify/{token}"


class TwilioNotifier:
    """
    Sends challenge links through the Twilio Messages API.

    Delivery problems are returned in the receipt, never raised.
    """

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        app_base_url: str,
        *,
        api_url: str = TWILIO_API_URL,
        http_client: httpx.AsyncClient | None = None,
        timeout_s: float = 15.0,
    ) -> None:
        self._sid = account_sid
        self._token = auth_token
        self._from = from_number
        self._app_base_url = app_base_url
        self._api_url = api_url.rstrip("/")
        self._http = http_client
        self._timeout_s = timeout_s

    async def send_challenge(self, to: str, token: str, org: str) -> NotificationReceipt:
        body = challenge_message(self._app_base_url, token, org)
        url = f"{self._api_url}/Accounts/{self._sid}/Messages.json"
        form = {"From": self._from, "To": to, "Body": body}
        try:
            if self._http is not None:
                resp = await self._http.post(url, data=form, auth=(self._sid, self._token))
            else:
                async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                    resp = await client.post(url, data=form, auth=(self._sid, self._token))
        except httpx.HTTPError as e:
            logger.warning(f"SMS delivery failed: {e}")
            return NotificationReceipt(ok=False, error=str(e))
        if resp.status_code >= 400:
            logger.warning(f"SMS delivery failed: HTTP {resp.status_code}")
            return NotificationReceipt(ok=False, error=f"HTTP {resp.status_code}: {resp.text[:200]}")
        sid = None
        try:
            sid = resp.json().get("sid")
        except ValueError:
            pass
        return NotificationReceipt(ok=True, provider_id=sid)


class LoggingNotifier:
    """Fallback when no SMS provider is configured: records the link in the log only."""

    def __init__(self, app_base_url: str) -> None:
        self._app_base_url = app_base_url

    async def send_challenge(self, to: str, token: str, org: str) -> NotificationReceipt:
        logger.info(f"SMS provider not configured; challenge link for {to}: {challenge_message(self._app_base_url, token, org)}")
        return NotificationReceipt(ok=False, error="sms_not_configured")
