"""Concurrency tests for the continuous simulation manager."""
from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import List

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from fleetguard.core.errors import RunError  # noqa: E402
from fleetguard.services.simulation_manager import SimulationManager, format_uptime  # noqa: E402


class FakeRunner:
    """Tick runner with artificial latency that records overlap."""

    def __init__(self, delay: float = 0.0, fail: bool = False) -> None:
        self.delay = delay
        self.fail = fail
        self.calls: List[str] = []
        self.active = 0
        self.max_active = 0
        self.completed = 0

    async def run_once(self, operator_id: str) -> None:
        self.calls.append(operator_id)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            if self.fail:
                raise RunError("analyzer unavailable")
            self.completed += 1
        finally:
            self.active -= 1


@pytest.mark.asyncio
async def test_start_is_idempotent_for_the_same_operator():
    runner = FakeRunner()
    manager = SimulationManager(runner, tick_interval_seconds=5.0)

    assert await manager.start("admin") is True
    assert await manager.start("admin") is False
    await asyncio.sleep(0.02)

    status = manager.get_status()
    assert status.is_running is True
    assert status.active_operator_id == "admin"
    assert runner.calls == ["admin"]
    await manager.shutdown()


@pytest.mark.asyncio
async def test_stop_waits_for_in_flight_tick():
    runner = FakeRunner(delay=0.2)
    manager = SimulationManager(runner, tick_interval_seconds=5.0)
    await manager.start("admin")
    await asyncio.sleep(0.02)
    assert manager.get_status().tick_in_flight is True

    assert await manager.stop("admin") is True
    assert runner.active == 0
    assert runner.completed == 1

    status = manager.get_status()
    assert status.is_running is False
    assert status.active_operator_id is None
    assert status.uptime == "Not running"


@pytest.mark.asyncio
async def test_slow_ticks_are_skipped_not_queued():
    runner = FakeRunner(delay=0.25)
    manager = SimulationManager(runner, tick_interval_seconds=0.05)
    await manager.start("admin")
    await asyncio.sleep(0.2)
    await manager.stop()

    status = manager.get_status()
    assert runner.max_active == 1
    assert status.ticks_skipped >= 2
    assert status.ticks_started == len(runner.calls)


@pytest.mark.asyncio
async def test_failed_ticks_do_not_stop_the_schedule():
    runner = FakeRunner(fail=True)
    manager = SimulationManager(runner, tick_interval_seconds=0.03)
    await manager.start("admin")
    await asyncio.sleep(0.12)

    status = manager.get_status()
    assert status.is_running is True
    assert status.ticks_failed >= 2
    assert status.ticks_completed == 0
    await manager.shutdown()


@pytest.mark.asyncio
async def test_start_for_another_operator_supersedes_without_overlap():
    runner = FakeRunner(delay=0.05)
    manager = SimulationManager(runner, tick_interval_seconds=5.0)
    await manager.start("admin")
    await asyncio.sleep(0.01)

    assert await manager.start("ops-2") is True
    await asyncio.sleep(0.01)

    assert manager.get_status().active_operator_id == "ops-2"
    assert runner.calls == ["admin", "ops-2"]
    assert runner.max_active == 1
    await manager.shutdown()


@pytest.mark.asyncio
async def test_stop_is_ignored_for_non_owner_and_when_idle():
    manager = SimulationManager(FakeRunner(), tick_interval_seconds=5.0)
    assert await manager.stop() is False

    await manager.start("admin")
    assert await manager.stop("ops-2") is False
    assert manager.is_running is True
    await manager.shutdown()
    assert manager.is_running is False


@pytest.mark.asyncio
async def test_concurrent_toggles_leave_a_single_schedule():
    runner = FakeRunner(delay=0.01)
    manager = SimulationManager(runner, tick_interval_seconds=5.0)
    await asyncio.gather(*(manager.start("admin") for _ in range(5)), manager.stop("admin"), manager.start("admin"))
    await asyncio.sleep(0.05)
    assert runner.max_active == 1
    await manager.shutdown()


def test_invalid_interval_is_rejected():
    with pytest.raises(ValueError):
        SimulationManager(FakeRunner(), tick_interval_seconds=0)


def test_format_uptime():
    assert format_uptime(0) == "Not running"
    assert format_uptime(4_000) == "4s"
    assert format_uptime(184_000) == "3m 4s"
    assert format_uptime((2 * 3600 + 3 * 60 + 4) * 1000) == "2h 3m 4s"
    assert format_uptime((26 * 3600 + 3 * 60) * 1000) == "1d 2h 3m"
