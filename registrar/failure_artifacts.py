from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .backends.protocol import BrowserBackend

logger = logging.getLogger(__name__)

REDACTED = "[redacted]"


@dataclass
class FailureArtifactsOptions:
    output_dir: str = ".registrar/artifacts"
    capture_screenshot: bool = True
    body_excerpt_chars: int = 4_000
    max_rows: int = 8


class FailureArtifactRecorder:
    """
    Collects the step trail of one attempt and, on failure, persists a
    screenshot, page excerpt, listing sample and manifest for the operator.
    Known secret values are scrubbed from every text written.
    """

    def __init__(
        self,
        *,
        plan_id: str,
        options: FailureArtifactsOptions,
        time_fn: Callable[[], float] = time.time,
        secrets: Iterable[str] = (),
    ) -> None:
        self.plan_id = plan_id
        self.options = options
        self._time_fn = time_fn
        self._steps: list[dict[str, Any]] = []
        self._secrets = [s for s in secrets if s]
        self._persisted = False

    def add_secret(self, value: str | None) -> None:
        if value:
            self._secrets.append(value)

    def record_step(self, *, state: str, url: str | None, note: str | None = None) -> None:
        self._steps.append({"ts": self._time_fn(), "state": state, "url": url, "note": note})

    @property
    def steps(self) -> list[dict[str, Any]]:
        return list(self._steps)

    def _redact(self, value: Any) -> Any:
        if isinstance(value, str):
            for secret in self._secrets:
                value = value.replace(secret, REDACTED)
            return value
        if isinstance(value, dict):
            return {k: self._redact(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._redact(v) for v in value]
        return value

    def _write_json_atomic(self, path: Path, data: Any) -> None:
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(data, indent=2, default=str))
        tmp_path.replace(path)

    def persist(
        self,
        *,
        reason: str | None,
        state: str | None,
        url: str | None = None,
        rows: list[str] | None = None,
        body_text: str | None = None,
        screenshot: bytes | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Path | None:
        if self._persisted:
            return None

        output_dir = Path(self.options.output_dir)
        ts = int(self._time_fn() * 1000)
        run_dir = output_dir / f"{self.plan_id}-{ts}"
        run_dir.mkdir(parents=True, exist_ok=True)

        screenshot_name = None
        if screenshot:
            screenshot_name = "screenshot.png"
            (run_dir / screenshot_name).write_bytes(screenshot)

        page_name = None
        if body_text:
            page_name = "page.txt"
            excerpt = body_text[: self.options.body_excerpt_chars]
            (run_dir / page_name).write_text(self._redact(excerpt))

        self._write_json_atomic(run_dir / "steps.json", self._redact(self._steps))
        manifest = {
            "plan_id": self.plan_id,
            "created_at": ts,
            "reason": reason,
            "state": state,
            "url": self._redact(url),
            "rows": self._redact((rows or [])[: self.options.max_rows]),
            "screenshot": screenshot_name,
            "page": page_name,
            "steps": "steps.json",
            "metadata": self._redact(metadata or {}),
        }
        self._write_json_atomic(run_dir / "manifest.json", manifest)
        self._persisted = True
        logger.info(f"Failure artifacts written to {run_dir}")
        return run_dir

    async def capture(
        self,
        backend: BrowserBackend,
        *,
        reason: str | None,
        state: str | None,
        rows: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Path | None:
        """Best-effort page capture; an unresponsive page still yields a manifest."""
        url = None
        body = None
        shot = None
        try:
            url = await backend.url()
            body = await backend.body_text()
            if self.options.capture_screenshot:
                shot = await backend.screenshot()
        except Exception as e:
            logger.warning(f"Failure artifact capture incomplete: {e}")
        try:
            return self.persist(
                reason=reason,
                state=state,
                url=url,
                rows=rows,
                body_text=body,
                screenshot=shot,
                metadata=metadata,
            )
        except OSError as e:
            logger.warning(f"Failure artifacts could not be written: {e}")
            return None
