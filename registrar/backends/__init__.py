"""
Browser backend abstractions.

The engine drives pages through the `BrowserBackend` / `PageElement`
protocols. Production attempts get a `PlaywrightBackend` from a provisioner:

    from registrar.backends import BrowserbaseProvisioner

    provisioner = BrowserbaseProvisioner(api_key, project_id)
    async with provisioner.session() as backend:
        await backend.goto("https://example.org", timeout_ms=30_000)
        text = await backend.body_text()
"""

from .playwright_backend import PlaywrightBackend, PlaywrightElement
from .protocol import BrowserBackend, PageElement
from .provisioning import (
    BrowserbaseProvisioner,
    BrowserProvisioner,
    LocalChromiumProvisioner,
    RemoteSession,
    pick_viewport,
)

__all__ = [
    # Protocol
    "BrowserBackend",
    "PageElement",
    # Playwright
    "PlaywrightBackend",
    "PlaywrightElement",
    # Provisioning
    "BrowserProvisioner",
    "BrowserbaseProvisioner",
    "LocalChromiumProvisioner",
    "RemoteSession",
    "pick_viewport",
]
