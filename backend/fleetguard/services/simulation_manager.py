"""Process-local runtime authority for continuous simulation.

The manager owns the only mutable runtime state in the control core. All
transitions (``start``/``stop``) are serialized by one asyncio lock; reads
(``get_status``) never take it. Ticks run as detached asyncio tasks in a
single slot: when the schedule fires while the slot is still busy, the tick is
skipped rather than queued, so a slow collaborator cannot pile up work.
"""
from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Awaitable, Optional, Protocol

from fleetguard.core.logging import logger
from fleetguard.models.simulation import RuntimeStatus


class TickRunner(Protocol):
    def run_once(self, operator_id: str) -> Awaitable[object]:
        ...


def format_uptime(ms: int) -> str:
    if ms <= 0:
        return "Not running"
    seconds = ms // 1000
    minutes = seconds // 60
    hours = minutes // 60
    days = hours // 24
    if days > 0:
        return f"{days}d {hours % 24}h {minutes % 60}m"
    if hours > 0:
        return f"{hours}h {minutes % 60}m {seconds % 60}s"
    if minutes > 0:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"


class SimulationManager:
    def __init__(
        self,
        runner: TickRunner,
        tick_interval_seconds: float = 20.0,
        tick_budget_seconds: Optional[float] = None,
    ) -> None:
        if tick_interval_seconds <= 0:
            raise ValueError("tick_interval_seconds must be positive")
        self._runner = runner
        self._tick_interval = float(tick_interval_seconds)
        self._tick_budget = tick_budget_seconds
        self._transition_lock = asyncio.Lock()

        self._operator_id: Optional[str] = None
        self._schedule_task: Optional[asyncio.Task] = None
        self._tick_task: Optional[asyncio.Task] = None
        self._started_at: Optional[datetime] = None

        self._ticks_started = 0
        self._ticks_completed = 0
        self._ticks_failed = 0
        self._ticks_skipped = 0

    @property
    def tick_interval_seconds(self) -> float:
        return self._tick_interval

    @property
    def is_running(self) -> bool:
        return self._schedule_task is not None

    async def start(self, operator_id: str) -> bool:
        """Begin ticking for ``operator_id``; False when already running for it."""
        async with self._transition_lock:
            if self._schedule_task is not None:
                if self._operator_id == operator_id:
                    logger.debug("Simulation already running", operator_id=operator_id)
                    return False
                logger.info(
                    "Superseding running simulation",
                    previous_operator_id=self._operator_id,
                    operator_id=operator_id,
                )
                await self._halt()

            self._operator_id = operator_id
            self._started_at = datetime.now(timezone.utc)
            self._schedule_task = asyncio.create_task(
                self._schedule(operator_id),
                name=f"simulation-schedule:{operator_id}",
            )
            logger.info(
                "Continuous simulation started",
                operator_id=operator_id,
                interval_seconds=self._tick_interval,
            )
            return True

    async def stop(self, operator_id: Optional[str] = None) -> bool:
        """Cancel the schedule and wait for any in-flight tick before reporting stopped.

        With ``operator_id`` set, only a run owned by that operator is stopped.
        """
        async with self._transition_lock:
            if self._schedule_task is None:
                return False
            if operator_id is not None and operator_id != self._operator_id:
                logger.info(
                    "Stop ignored for non-owning operator",
                    operator_id=operator_id,
                    active_operator_id=self._operator_id,
                )
                return False
            stopped_operator = self._operator_id
            await self._halt()
            logger.info("Continuous simulation stopped", operator_id=stopped_operator)
            return True

    async def shutdown(self) -> None:
        await self.stop()

    def get_status(self) -> RuntimeStatus:
        started_at = self._started_at
        uptime_ms = 0
        if self._schedule_task is not None and started_at is not None:
            uptime_ms = int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)
        tick = self._tick_task
        return RuntimeStatus(
            is_running=self._schedule_task is not None,
            active_operator_id=self._operator_id,
            interval_seconds=self._tick_interval,
            started_at=started_at,
            uptime_ms=uptime_ms,
            uptime=format_uptime(uptime_ms),
            tick_in_flight=tick is not None and not tick.done(),
            ticks_started=self._ticks_started,
            ticks_completed=self._ticks_completed,
            ticks_failed=self._ticks_failed,
            ticks_skipped=self._ticks_skipped,
        )

    async def _halt(self) -> None:
        # Caller holds the transition lock.
        schedule = self._schedule_task
        if schedule is not None:
            schedule.cancel()
            try:
                await schedule
            except asyncio.CancelledError:
                pass

        tick = self._tick_task
        if tick is not None and not tick.done():
            logger.info("Waiting for in-flight tick before stopping", operator_id=self._operator_id)
            await asyncio.wait({tick})

        self._schedule_task = None
        self._tick_task = None
        self._operator_id = None
        self._started_at = None

    async def _schedule(self, operator_id: str) -> None:
        # First tick fires immediately, then one per interval.
        while True:
            self._dispatch_tick(operator_id)
            await asyncio.sleep(self._tick_interval)

    def _dispatch_tick(self, operator_id: str) -> None:
        current = self._tick_task
        if current is not None and not current.done():
            self._ticks_skipped += 1
            logger.warning(
                "Previous tick still running; skipping scheduled tick",
                operator_id=operator_id,
                skipped_total=self._ticks_skipped,
            )
            return
        self._ticks_started += 1
        self._tick_task = asyncio.create_task(
            self._run_tick(operator_id),
            name=f"simulation-tick:{operator_id}:{self._ticks_started}",
        )

    async def _run_tick(self, operator_id: str) -> None:
        started = time.perf_counter()
        try:
            await self._runner.run_once(operator_id)
        except asyncio.CancelledError:
            self._ticks_failed += 1
            raise
        except Exception as exc:
            self._ticks_failed += 1
            logger.error("Simulation tick failed", operator_id=operator_id, error=str(exc))
        else:
            self._ticks_completed += 1
        finally:
            elapsed = time.perf_counter() - started
            if self._tick_budget is not None and elapsed > self._tick_budget:
                logger.warning(
                    "Simulation tick exceeded time budget",
                    operator_id=operator_id,
                    elapsed_seconds=round(elapsed, 3),
                    budget_seconds=self._tick_budget,
                )
