"""
Browser session provisioning.

A provisioner hands out exactly one page per attempt and always tears the
session down, whether the attempt succeeded, failed or raised.
"""

from __future__ import annotations

import logging
import random
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from playwright.async_api import async_playwright

from ..errors import ProvisioningError
from .playwright_backend import PlaywrightBackend

logger = logging.getLogger(__name__)

BROWSERBASE_API_URL = "https://api.browserbase.com/v1"

# Common desktop sizes; a plan keeps one size for the whole attempt.
VIEWPORT_POOL: tuple[tuple[int, int], ...] = (
    (1920, 1080),
    (1536, 864),
    (1440, 900),
    (1366, 768),
    (1280, 800),
)


@dataclass
class RemoteSession:
    id: str
    connect_url: str


class BrowserProvisioner(Protocol):
    def session(self) -> Any:
        """Async context manager yielding a BrowserBackend."""
        ...


def pick_viewport(rng: random.Random | None = None) -> dict[str, int]:
    w, h = (rng or random).choice(VIEWPORT_POOL)
    return {"width": w, "height": h}


class BrowserbaseProvisioner:
    """
    Remote browsers from Browserbase, driven over CDP.

    Usage:
        provisioner = BrowserbaseProvisioner(api_key, project_id)
        async with provisioner.session() as backend:
            await backend.goto("https://example.org", timeout_ms=30_000)
    """

    def __init__(
        self,
        api_key: str,
        project_id: str,
        *,
        api_url: str = BROWSERBASE_API_URL,
        http_client: httpx.AsyncClient | None = None,
        timeout_s: float = 30.0,
        action_timeout_ms: int = 15_000,
        rng: random.Random | None = None,
    ) -> None:
        self._api_key = api_key
        self._project_id = project_id
        self._api_url = api_url.rstrip("/")
        self._http = http_client
        self._timeout_s = timeout_s
        self._action_timeout_ms = action_timeout_ms
        self._rng = rng

    def _headers(self) -> dict[str, str]:
        return {"X-BB-API-Key": self._api_key, "Content-Type": "application/json"}

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http is not None:
            yield self._http
            return
        async with httpx.AsyncClient(timeout=self._timeout_s) as client:
            yield client

    async def create_session(self) -> RemoteSession:
        body = {
            "projectId": self._project_id,
            "browserSettings": {"viewport": pick_viewport(self._rng)},
        }
        try:
            async with self._client() as client:
                resp = await client.post(f"{self._api_url}/sessions", json=body, headers=self._headers())
        except httpx.HTTPError as e:
            raise ProvisioningError(f"Browserbase session request failed: {e}") from e
        if resp.status_code >= 400:
            raise ProvisioningError(
                f"Browserbase session request failed: HTTP {resp.status_code} {resp.text[:300]}"
            )
        data = resp.json()
        session_id = data.get("id")
        connect_url = data.get("connectUrl")
        if not session_id or not connect_url:
            raise ProvisioningError("Browserbase response missing id/connectUrl")
        return RemoteSession(id=session_id, connect_url=connect_url)

    async def release_session(self, session_id: str) -> None:
        try:
            async with self._client() as client:
                resp = await client.delete(f"{self._api_url}/sessions/{session_id}", headers=self._headers())
            if resp.status_code >= 400:
                logger.warning(f"Browserbase session {session_id} release returned HTTP {resp.status_code}")
        except httpx.HTTPError as e:
            logger.warning(f"Browserbase session {session_id} release failed: {e}")

    @asynccontextmanager
    async def session(self) -> AsyncIterator[PlaywrightBackend]:
        remote = await self.create_session()
        logger.info(f"Browserbase session created: {remote.id}")
        try:
            async with async_playwright() as pw:
                try:
                    browser = await pw.chromium.connect_over_cdp(remote.connect_url)
                except Exception as e:
                    raise ProvisioningError(f"CDP connect failed: {e}") from e
                try:
                    context = browser.contexts[0] if browser.contexts else await browser.new_context()
                    page = context.pages[0] if context.pages else await context.new_page()
                    yield PlaywrightBackend(page, action_timeout_ms=self._action_timeout_ms)
                finally:
                    await browser.close()
        finally:
            await self.release_session(remote.id)


class LocalChromiumProvisioner:
    """Local headless Chromium, for development runs without a remote browser."""

    def __init__(
        self,
        *,
        headless: bool = True,
        action_timeout_ms: int = 15_000,
        rng: random.Random | None = None,
    ) -> None:
        self._headless = headless
        self._action_timeout_ms = action_timeout_ms
        self._rng = rng

    @asynccontextmanager
    async def session(self) -> AsyncIterator[PlaywrightBackend]:
        async with async_playwright() as pw:
            try:
                browser = await pw.chromium.launch(headless=self._headless)
            except Exception as e:
                raise ProvisioningError(f"Chromium launch failed: {e}") from e
            try:
                context = await browser.new_context(viewport=pick_viewport(self._rng))
                page = await context.new_page()
                yield PlaywrightBackend(page, action_timeout_ms=self._action_timeout_ms)
            finally:
                await browser.close()
