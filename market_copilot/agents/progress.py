"""Simulated analysis progress.

The percentage shown while a run is pending is not a measurement of real
work. Callers mark coarse stages as they happen, which raises a target
percentage; a fixed-interval ticker eases the displayed percentage toward the
target so the bar never jumps and never goes backwards.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Literal

from market_copilot.config.settings import get_settings
from market_copilot.data.schema import ProgressState

logger = logging.getLogger(__name__)

Stage = Literal["starting", "fetching", "enriching", "computing", "finalizing", "ready"]

STAGE_TARGETS: dict[Stage, float] = {
    "starting": 5,
    "fetching": 15,
    "enriching": 35,
    "computing": 70,
    "finalizing": 90,
    "ready": 100,
}

# (band floor, message), highest first
STAGE_BANDS: tuple[tuple[int, str], ...] = (
    (95, "Rendering results"),
    (85, "Finalizing snapshot & product cards"),
    (70, "Computing brand dominance & concentration"),
    (55, "Calculating market size & competition"),
    (40, "Enriching brands & categories"),
    (25, "Detecting sponsored vs organic placements"),
    (10, "Fetching Page 1 listings"),
    (0, "Starting analysis"),
)

COMPLETE_TOLERANCE = 99.5
JUMP_AHEAD_GAP = 20


def band_for(pct: float) -> int:
    for floor, _ in STAGE_BANDS:
        if pct >= floor:
            return floor
    return 0


def message_for(pct: float) -> str:
    for floor, message in STAGE_BANDS:
        if pct >= floor:
            return message
    return STAGE_BANDS[-1][1]


class ProgressEstimator:
    """Tick-driven progress simulation for one run at a time."""

    def __init__(
        self,
        tick_seconds: float | None = None,
        min_stage_seconds: float | None = None,
        ease_factor: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        on_update: Callable[[ProgressState], None] | None = None,
    ):
        settings = get_settings()
        self.tick_seconds = tick_seconds if tick_seconds is not None else settings.progress_tick_seconds
        self.min_stage_seconds = (
            min_stage_seconds if min_stage_seconds is not None else settings.progress_min_stage_seconds
        )
        self.ease_factor = ease_factor if ease_factor is not None else settings.progress_ease_factor
        self.clock = clock
        self.on_update = on_update

        self.state = ProgressState()
        self._band = 0
        self._ticker: asyncio.Task | None = None
        self._timers: list[asyncio.TimerHandle] = []
        self._finish: asyncio.Future | None = None

    @property
    def percent(self) -> int:
        return round(self.state.current_pct)

    @property
    def running(self) -> bool:
        return self._ticker is not None and not self._ticker.done()

    def reset(self) -> None:
        """Stop any ticker and return to the starting stage."""
        self.stop()
        self.state = ProgressState(
            current_pct=0.0,
            target_pct=STAGE_TARGETS["starting"],
            stage_label=message_for(0),
            last_stage_change_at=self.clock(),
        )
        self._band = 0
        self._notify()

    def start(self) -> None:
        """Reset and begin ticking on the running event loop."""
        self.reset()
        self._start_loop()

    def _start_loop(self) -> None:
        if self.running:
            return
        self._ticker = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.tick_seconds)
            if self.tick():
                return

    def stop(self) -> None:
        """Cancel the ticker and staged marks; release any held completion with False."""
        if self._ticker is not None:
            if not self._ticker.done() and self._ticker is not asyncio.current_task():
                self._ticker.cancel()
            self._ticker = None
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()
        if self._finish is not None and not self._finish.done():
            self._finish.set_result(False)
        self._finish = None

    def mark(self, stage: Stage) -> None:
        target = STAGE_TARGETS.get(stage)
        if target is None:
            logger.debug(f"Ignoring unknown progress stage {stage!r}")
            return
        self.state.target_pct = min(100.0, max(self.state.target_pct, target))

    def mark_later(self, stage: Stage, delay: float) -> asyncio.TimerHandle:
        """Schedule a cancellable mark; cancelled by ``stop`` and ``reset``."""
        handle = asyncio.get_running_loop().call_later(delay, self.mark, stage)
        self._timers.append(handle)
        return handle

    def tick(self) -> bool:
        """Advance one step. Returns True once a held completion has fired."""
        target = self.state.target_pct
        current = self.state.current_pct
        nxt = min(100.0, max(current, current + (target - current) * self.ease_factor))
        self.state.current_pct = nxt

        band = band_for(nxt)
        now = self.clock()
        elapsed = now - self.state.last_stage_change_at
        jump_ahead = target - nxt > JUMP_AHEAD_GAP
        if band != self._band and (elapsed >= self.min_stage_seconds or jump_ahead):
            self._band = band
            self.state.stage_label = message_for(target if jump_ahead else nxt)
            self.state.last_stage_change_at = now

        done = False
        if nxt >= COMPLETE_TOLERANCE and self._finish is not None:
            self._complete()
            done = True
        self._notify()
        return done

    def _complete(self) -> None:
        self.state.current_pct = 100.0
        self.state.stage_label = message_for(100)
        future, self._finish = self._finish, None
        if future is not None and not future.done():
            future.set_result(True)
        if self._ticker is not None and self._ticker is not asyncio.current_task():
            self._ticker.cancel()
        self._ticker = None
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()

    def finish(self) -> asyncio.Future:
        """Drive the bar to 100 and return a future resolved exactly once.

        The future yields True when the bar reached 100, or False when a
        reset or teardown abandoned it first.
        """
        self.mark("ready")
        loop = asyncio.get_running_loop()
        if self._finish is not None and not self._finish.done():
            return self._finish
        future = loop.create_future()
        self._finish = future
        if self.state.current_pct >= COMPLETE_TOLERANCE:
            # Already there: resolve without another tick.
            self._complete()
            self._notify()
            return future
        self._start_loop()
        return future

    def _notify(self) -> None:
        if self.on_update is not None:
            self.on_update(self.state)
