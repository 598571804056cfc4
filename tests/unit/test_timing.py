from __future__ import annotations

import random
from datetime import timedelta

import pytest

from registrar.config import TimingConfig
from registrar.timing import TimingController

from fakes import T0, FakeBackend, FakeClock, FakeElement


def _controller(clock: FakeClock, seed: int = 1, config: TimingConfig | None = None) -> TimingController:
    return TimingController(config or TimingConfig(), rng=random.Random(seed), sleep=clock.sleep, clock=clock)


def test_weighted_delay_stays_in_range_and_favours_middle() -> None:
    timing = _controller(FakeClock(), config=TimingConfig(jitter_ms=(0, 0)))
    samples = [timing.weighted_delay_ms(100, 600) for _ in range(2000)]
    assert all(100 <= s <= 600 for s in samples)
    middle = sum(1 for s in samples if 300 <= s < 400)
    edge = sum(1 for s in samples if 100 <= s < 200)
    assert middle > edge * 2


def test_delays_vary_between_calls() -> None:
    timing = _controller(FakeClock())
    samples = {round(timing.weighted_delay_ms(250, 900), 3) for _ in range(20)}
    assert len(samples) > 1


def test_humanized_is_within_twenty_percent() -> None:
    timing = _controller(FakeClock())
    for _ in range(200):
        value = timing.humanized_ms(1000)
        assert 800 <= value <= 1200


def test_ease_endpoints() -> None:
    assert TimingController.ease(0.0) == pytest.approx(0.0)
    assert TimingController.ease(1.0) == pytest.approx(1.0)
    assert TimingController.ease(0.5) == pytest.approx(0.5)


@pytest.mark.asyncio
async def test_type_text_types_one_character_at_a_time() -> None:
    clock = FakeClock()
    timing = _controller(clock)
    field = FakeElement()
    await timing.type_text(field, "secret")
    assert field.typed == "secret"
    assert len(clock.slept) == len("secret")
    assert all(0.08 <= s <= 0.2 + 0.8 for s in clock.slept)


@pytest.mark.asyncio
async def test_click_moves_pointer_along_a_path_first() -> None:
    clock = FakeClock()
    timing = _controller(clock)
    backend = FakeBackend()
    button = FakeElement(box={"x": 100, "y": 200, "width": 80, "height": 30})
    await timing.click(backend, button)
    assert button.clicks == 1
    assert 10 <= len(backend.mouse) <= 30
    x, y = backend.mouse[-1]
    assert 100 <= x <= 180
    assert 200 <= y <= 230


@pytest.mark.asyncio
async def test_scroll_uses_segments() -> None:
    timing = _controller(FakeClock())
    backend = FakeBackend()
    total = await timing.scroll(backend)
    assert total == backend.scrolled
    assert total % 100 == 0
    assert total >= 2 * 2 * 100


def test_seed_schedule_ends_before_open_time() -> None:
    timing = _controller(FakeClock())
    for _ in range(50):
        schedule = timing.seed_schedule(T0)
        lead = (T0 - schedule.execute_start).total_seconds()
        seeding = (schedule.seed_end - schedule.seed_start).total_seconds()
        assert 15 <= lead <= 45
        assert 120 <= seeding <= 240
        assert schedule.seed_end <= schedule.execute_start < T0


def test_seeding_from_one_draw_ends_before_execution_from_another() -> None:
    # The seeder and the runner calibrate independently against the same open time.
    seeder_timing = _controller(FakeClock(), seed=3)
    runner_timing = _controller(FakeClock(), seed=4)
    for _ in range(200):
        seeding = seeder_timing.seed_schedule(T0)
        execution = runner_timing.seed_schedule(T0)
        assert seeding.seed_end <= execution.execute_start
        assert seeding.seed_end == T0 - timedelta(seconds=45)


@pytest.mark.asyncio
async def test_wait_until_is_bounded_and_keeps_page_alive() -> None:
    clock = FakeClock()
    timing = _controller(clock)
    backend = FakeBackend()
    waited = await timing.wait_until(T0 + timedelta(hours=2), max_wait_s=300, backend=backend)
    assert waited == pytest.approx(300)
    assert clock.now >= T0 + timedelta(seconds=300)
    assert backend.mouse


@pytest.mark.asyncio
async def test_wait_until_past_time_returns_immediately() -> None:
    clock = FakeClock()
    timing = _controller(clock)
    assert await timing.wait_until(T0 - timedelta(seconds=5), max_wait_s=60) == 0.0
    assert clock.slept == []
