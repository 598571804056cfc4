"""
Session snapshot codec: cookies + client storage, sealed for persistence.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from .crypto import SealError, SecretBox
from .models import Plan, SessionBundle, SessionSnapshot, utcnow

if TYPE_CHECKING:
    from .backends.protocol import BrowserBackend

logger = logging.getLogger(__name__)


class SessionCodec:
    def __init__(self, box: SecretBox, *, ttl_s: int) -> None:
        self._box = box
        self._ttl = timedelta(seconds=ttl_s)

    def encode(self, bundle: SessionBundle) -> str:
        # Stable key order so a decoded bundle re-encodes to the same plaintext.
        return self._box.seal(json.dumps(bundle.model_dump(), sort_keys=True, separators=(",", ":")))

    def decode(self, payload: str) -> SessionBundle:
        return SessionBundle.model_validate_json(self._box.open(payload))

    def to_snapshot(self, plan: Plan, bundle: SessionBundle, *, now: datetime | None = None) -> SessionSnapshot:
        created = now or utcnow()
        return SessionSnapshot(
            plan_id=plan.id,
            user_id=plan.user_id,
            payload=self.encode(bundle),
            created_at=created,
            expires_at=created + self._ttl,
        )

    def from_snapshot(self, snapshot: SessionSnapshot) -> SessionBundle | None:
        try:
            return self.decode(snapshot.payload)
        except (SealError, ValueError) as e:
            logger.warning(f"Discarding unreadable session snapshot for plan {snapshot.plan_id}: {e}")
            return None


async def capture_bundle(backend: BrowserBackend) -> SessionBundle:
    """Read cookies and storage from the live page."""
    cookies = await backend.cookies()
    local, session = await backend.read_storage()
    return SessionBundle(cookies=cookies, local_storage=local, session_storage=session, origin=await backend.url())


async def replay_bundle(backend: BrowserBackend, bundle: SessionBundle, origin: str, *, timeout_ms: int) -> None:
    """Cookies first, then open the origin so storage lands on the right document."""
    await backend.add_cookies(bundle.cookies)
    await backend.goto(origin, timeout_ms=timeout_ms)
    if bundle.local_storage or bundle.session_storage:
        await backend.write_storage(bundle.local_storage, bundle.session_storage)
