from __future__ import annotations

import json

import pytest

from registrar.failure_artifacts import REDACTED, FailureArtifactRecorder, FailureArtifactsOptions

from fakes import ORIGIN, FakeBackend, FakePage


def _recorder(tmp_path, **kwargs) -> FailureArtifactRecorder:
    now = {"t": 10.0}
    return FailureArtifactRecorder(
        plan_id="plan-1",
        options=FailureArtifactsOptions(output_dir=str(tmp_path), **kwargs),
        time_fn=lambda: now["t"],
        secrets=["hunter2-secret", "", "parent@example.org"],
    )


def test_persist_writes_manifest_and_steps(tmp_path) -> None:
    rec = _recorder(tmp_path)
    rec.record_step(state="discovering_login", url=ORIGIN + "/user/login")
    rec.record_step(state="logged_in", url=ORIGIN + "/user/dashboard", note="as parent@example.org")

    run_dir = rec.persist(
        reason="slot_not_found",
        state="logged_in",
        url=ORIGIN + "/registration",
        rows=[f"row {i}" for i in range(12)],
        body_text="Programs list; password was hunter2-secret",
        screenshot=b"png",
        metadata={"message": "Neither slot found"},
    )

    assert run_dir is not None
    assert run_dir.name == "plan-1-10000"
    manifest = json.loads((run_dir / "manifest.json").read_text())
    steps = json.loads((run_dir / "steps.json").read_text())

    assert manifest["reason"] == "slot_not_found"
    assert manifest["state"] == "logged_in"
    assert manifest["screenshot"] == "screenshot.png"
    assert manifest["page"] == "page.txt"
    assert len(manifest["rows"]) == 8
    assert manifest["metadata"] == {"message": "Neither slot found"}
    assert [s["state"] for s in steps] == ["discovering_login", "logged_in"]
    assert steps[1]["note"] == f"as {REDACTED}"
    assert (run_dir / "page.txt").read_text() == f"Programs list; password was {REDACTED}"
    assert (run_dir / "screenshot.png").read_bytes() == b"png"


def test_persist_only_once(tmp_path) -> None:
    rec = _recorder(tmp_path)
    assert rec.persist(reason="a", state="x") is not None
    assert rec.persist(reason="b", state="y") is None


def test_added_secret_is_scrubbed(tmp_path) -> None:
    rec = _recorder(tmp_path)
    rec.add_secret("987")
    rec.add_secret(None)
    run_dir = rec.persist(reason="x", state="y", body_text="cvv 987 entered")
    assert (run_dir / "page.txt").read_text() == f"cvv {REDACTED} entered"


@pytest.mark.asyncio
async def test_capture_reads_page_and_tolerates_errors(tmp_path) -> None:
    backend = FakeBackend({ORIGIN + "/cart": FakePage(body="Your cart is empty")}, url=ORIGIN + "/cart")
    run_dir = await _recorder(tmp_path, capture_screenshot=False).capture(
        backend, reason="cart_verification_failed", state="addons_handled"
    )
    manifest = json.loads((run_dir / "manifest.json").read_text())
    assert manifest["url"] == ORIGIN + "/cart"
    assert manifest["screenshot"] is None
    assert (run_dir / "page.txt").read_text() == "Your cart is empty"

    class DeadBackend(FakeBackend):
        async def url(self) -> str:
            raise RuntimeError("target closed")

    run_dir = await _recorder(tmp_path / "dead").capture(DeadBackend(), reason="unexpected_error", state="in_cart")
    manifest = json.loads((run_dir / "manifest.json").read_text())
    assert manifest["url"] is None
    assert manifest["page"] is None
