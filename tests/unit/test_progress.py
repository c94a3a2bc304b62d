"""Unit tests for the simulated progress estimator."""

from __future__ import annotations

import asyncio

import pytest

from market_copilot.agents.progress import STAGE_TARGETS, ProgressEstimator, message_for


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def estimator(clock: FakeClock) -> ProgressEstimator:
    est = ProgressEstimator(tick_seconds=0.001, min_stage_seconds=0.4, ease_factor=0.2, clock=clock)
    est.reset()
    return est


def test_reset_starts_at_starting_stage(estimator: ProgressEstimator):
    assert estimator.state.current_pct == 0
    assert estimator.state.target_pct == STAGE_TARGETS["starting"]
    assert estimator.state.stage_label == "Starting analysis"


def test_mark_is_max_merge(estimator: ProgressEstimator):
    estimator.mark("computing")
    estimator.mark("fetching")
    estimator.mark("no-such-stage")
    assert estimator.state.target_pct == 70


def test_tick_eases_toward_target_and_never_decreases(estimator: ProgressEstimator):
    estimator.mark("computing")
    estimator.tick()
    assert estimator.state.current_pct == pytest.approx(14.0)

    seen = [estimator.state.current_pct]
    for _ in range(50):
        estimator.tick()
        seen.append(estimator.state.current_pct)
    assert seen == sorted(seen)
    assert seen[-1] <= 70


def test_stage_message_waits_for_minimum_dwell(estimator: ProgressEstimator, clock: FakeClock):
    estimator.mark("fetching")
    clock.now = 0.1
    for _ in range(5):
        estimator.tick()
    assert estimator.state.current_pct >= 10
    assert estimator.state.stage_label == "Starting analysis"

    clock.now = 0.5
    estimator.tick()
    assert estimator.state.stage_label == "Fetching Page 1 listings"


def test_large_gap_jumps_message_to_target_band(estimator: ProgressEstimator):
    estimator.mark("enriching")
    estimator.tick()
    estimator.tick()

    assert estimator.state.current_pct < 25
    assert estimator.state.stage_label == message_for(35)


def test_message_bands():
    assert message_for(0) == "Starting analysis"
    assert message_for(72) == "Computing brand dominance & concentration"
    assert message_for(100) == "Rendering results"


@pytest.mark.asyncio
async def test_finish_snaps_to_100_and_stops_ticking():
    updates = []
    est = ProgressEstimator(tick_seconds=0.001, min_stage_seconds=0, on_update=lambda s: updates.append(s.current_pct))
    est.start()
    est.mark("computing")

    assert await asyncio.wait_for(est.finish(), timeout=2) is True

    assert est.percent == 100
    assert est.state.current_pct == 100.0
    assert est.state.stage_label == "Rendering results"
    assert not est.running
    assert updates == sorted(updates)


@pytest.mark.asyncio
async def test_finish_when_already_complete_resolves_immediately():
    est = ProgressEstimator(tick_seconds=0.001, min_stage_seconds=0)
    est.start()
    await asyncio.wait_for(est.finish(), timeout=2)

    again = est.finish()
    assert again.done()


@pytest.mark.asyncio
async def test_finish_called_twice_returns_same_future():
    est = ProgressEstimator(tick_seconds=0.001, min_stage_seconds=0)
    est.start()
    first = est.finish()
    assert est.finish() is first
    await asyncio.wait_for(first, timeout=2)


@pytest.mark.asyncio
async def test_stop_cancels_staged_marks():
    est = ProgressEstimator(tick_seconds=0.001, min_stage_seconds=0)
    est.start()
    est.mark_later("computing", 0.02)

    est.stop()
    await asyncio.sleep(0.05)

    assert est.state.target_pct == STAGE_TARGETS["starting"]
    assert not est.running


@pytest.mark.asyncio
async def test_stop_releases_held_completion():
    est = ProgressEstimator(tick_seconds=10, min_stage_seconds=0)
    est.start()
    pending = est.finish()

    est.stop()
    await asyncio.sleep(0)

    assert pending.done()
    assert pending.result() is False


@pytest.mark.asyncio
async def test_start_cancels_timers_of_previous_run():
    est = ProgressEstimator(tick_seconds=0.001, min_stage_seconds=0)
    est.start()
    est.mark_later("finalizing", 0.02)

    est.start()
    await asyncio.sleep(0.05)

    assert est.state.target_pct == STAGE_TARGETS["starting"]
    est.stop()
