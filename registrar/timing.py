"""
Humanized timing primitives.

Every interaction (dwell, pointer movement before a click, scroll, typing) goes
through a randomized delay drawn from a [min, max] range plus jitter. The
controller holds no persistent state; randomness, sleeping and the clock are
injected so tests run instantly and deterministically.
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from .config import TimingConfig

if TYPE_CHECKING:
    from .backends.protocol import BrowserBackend, PageElement

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]
ClockFn = Callable[[], datetime]

# Bell-shaped weighting over five equal segments of a range.
_SEGMENT_WEIGHTS = (0.1, 0.2, 0.4, 0.2, 0.1)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SeedSchedule:
    """When to start seeding and when the timed pass should begin."""

    open_time: datetime
    seed_start: datetime
    seed_end: datetime
    execute_start: datetime


class TimingController:
    def __init__(
        self,
        config: TimingConfig | None = None,
        *,
        rng: random.Random | None = None,
        sleep: SleepFn | None = None,
        clock: ClockFn | None = None,
    ) -> None:
        self.config = config or TimingConfig()
        self._rng = rng or random.Random()
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or _utcnow

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------ delays

    def jitter_ms(self) -> float:
        lo, hi = self.config.jitter_ms
        return self._rng.uniform(lo, hi)

    def weighted_delay_ms(self, min_ms: float, max_ms: float) -> float:
        """Delay in [min_ms, max_ms] favouring the middle of the range, plus jitter."""
        if max_ms < min_ms:
            min_ms, max_ms = max_ms, min_ms
        width = (max_ms - min_ms) / len(_SEGMENT_WEIGHTS)
        seg = self._rng.choices(range(len(_SEGMENT_WEIGHTS)), weights=_SEGMENT_WEIGHTS)[0]
        base = min_ms + seg * width + self._rng.uniform(0, width)
        return base + self.jitter_ms()

    def humanized_ms(self, base_ms: float) -> float:
        """base_ms varied by up to ±20%."""
        return base_ms * self._rng.uniform(0.8, 1.2)

    async def pause(self, min_ms: float | None = None, max_ms: float | None = None) -> float:
        if min_ms is None or max_ms is None:
            min_ms, max_ms = self.config.action_pause_ms
        delay = self.weighted_delay_ms(min_ms, max_ms)
        await self._sleep(delay / 1000.0)
        return delay

    async def dwell(self) -> float:
        lo, hi = self.config.dwell_ms
        return await self.pause(lo, hi)

    # ------------------------------------------------------------ interactions

    @staticmethod
    def ease(p: float) -> float:
        return 0.5 * (1 - math.cos(math.pi * p))

    async def move_to(self, backend: BrowserBackend, element: PageElement) -> tuple[float, float] | None:
        """Move the pointer to a random point inside element along an eased path."""
        box = await element.bounding_box()
        if not box:
            return None
        width, height = await backend.viewport()
        start_x = self._rng.uniform(0, width)
        start_y = self._rng.uniform(0, height)
        end_x = box["x"] + box["width"] * self._rng.uniform(0.3, 0.7)
        end_y = box["y"] + box["height"] * self._rng.uniform(0.3, 0.7)
        steps = self._rng.randint(*self.config.mouse_steps)
        for i in range(1, steps + 1):
            p = self.ease(i / steps)
            noise = 0.0 if i == steps else self._rng.uniform(-2.0, 2.0)
            await backend.mouse_move(start_x + (end_x - start_x) * p + noise, start_y + (end_y - start_y) * p + noise)
            await self._sleep(self._rng.uniform(5, 25) / 1000.0)
        return end_x, end_y

    async def click(self, backend: BrowserBackend, element: PageElement) -> None:
        await self.move_to(backend, element)
        await self.pause()
        await element.click()

    async def type_text(self, element: PageElement, text: str) -> None:
        """Type one character at a time with humanized gaps and occasional hesitation."""
        lo, hi = self.config.typing_char_ms
        for ch in text:
            await element.type(ch)
            delay = self._rng.uniform(lo, hi)
            if self._rng.random() < self.config.typing_hesitation_probability:
                delay += self._rng.uniform(*self.config.typing_hesitation_ms)
            await self._sleep(delay / 1000.0)

    async def scroll(self, backend: BrowserBackend) -> int:
        """A few short scroll sessions; returns total pixels scrolled."""
        total = 0
        seg = self.config.scroll_segment_px
        for _ in range(self._rng.randint(*self.config.scroll_sessions)):
            for _ in range(self._rng.randint(2, 5)):
                await backend.wheel(seg)
                total += seg
                await self._sleep(self._rng.uniform(40, 120) / 1000.0)
            await self.pause()
        return total

    async def micro_activity(self, backend: BrowserBackend) -> None:
        width, height = await backend.viewport()
        await backend.mouse_move(self._rng.uniform(0, width), self._rng.uniform(0, height))
        if self._rng.random() < 0.5:
            await backend.wheel(self._rng.choice((-1, 1)) * self.config.scroll_segment_px)
        await self.pause()

    # -------------------------------------------------------------- calibration

    def seed_schedule(self, open_time: datetime) -> SeedSchedule:
        """
        Calibrate seeding and execution start against open_time.

        Seeding runs for a few minutes and ends shortly before the timed pass,
        which begins within tens of seconds of open_time. The seeding and
        execution paths each draw their own schedule, so seed_end is pinned to
        the longest lead: it never falls after any drawn execute_start.
        """
        lead = timedelta(seconds=self._rng.uniform(*self.config.execution_lead_s))
        duration = timedelta(seconds=self._rng.uniform(*self.config.seeding_duration_s))
        execute_start = open_time - lead
        seed_end = open_time - timedelta(seconds=max(self.config.execution_lead_s))
        return SeedSchedule(
            open_time=open_time,
            seed_start=seed_end - duration,
            seed_end=seed_end,
            execute_start=execute_start,
        )

    async def wait_until(
        self,
        when: datetime,
        *,
        max_wait_s: float,
        backend: BrowserBackend | None = None,
    ) -> float:
        """
        Sleep until `when` (bounded by max_wait_s), doing micro-activity on the
        page every 30-60 s when a backend is given. Returns seconds waited.
        """
        remaining = (when - self._clock()).total_seconds()
        if remaining <= 0:
            return 0.0
        if remaining > max_wait_s:
            logger.warning(f"Wait of {remaining:.0f}s capped at {max_wait_s:.0f}s")
            remaining = max_wait_s
        waited = 0.0
        while waited < remaining:
            chunk = min(remaining - waited, self._rng.uniform(*self.config.micro_activity_every_s))
            await self._sleep(chunk)
            waited += chunk
            if backend is not None and waited < remaining:
                await self.micro_activity(backend)
        return waited
