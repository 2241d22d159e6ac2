"""Reconciliation loop converging runtime simulation state onto durable desired state.

States per pass:
  poll desired state -> diff against SimulationManager -> start | stop | no-op

A failed poll is treated as "no observed change": a running simulation is
never stopped because the store was briefly unreachable.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Optional

from fleetguard.core.logging import logger
from fleetguard.models.simulation import ActiveOperator, ReconcileOutcome
from fleetguard.services.control_state import ControlStateStore
from fleetguard.services.simulation_manager import SimulationManager


class ReconciliationLoop:
    def __init__(
        self,
        store: ControlStateStore,
        manager: SimulationManager,
        poll_interval_seconds: float = 10.0,
    ) -> None:
        if poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be positive")
        if poll_interval_seconds > manager.tick_interval_seconds:
            raise ValueError("poll interval must not exceed the tick interval")
        self.store = store
        self.manager = manager
        self.poll_interval_seconds = float(poll_interval_seconds)

        # Held for a whole pass so a toggle cannot interleave with a poll.
        self._pass_lock = asyncio.Lock()
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self._last_desired: Optional[ActiveOperator] = None
        self._has_observed = False
        self._last_poll_at: Optional[datetime] = None
        self._last_poll_error: Optional[str] = None
        self._passes = 0

    @property
    def status(self) -> str:
        return "running" if self._task is not None and not self._task.done() else "stopped"

    @property
    def last_desired(self) -> Optional[ActiveOperator]:
        """Desired state seen by the last successful poll."""
        return self._last_desired

    @property
    def has_observed(self) -> bool:
        return self._has_observed

    @property
    def last_poll_error(self) -> Optional[str]:
        return self._last_poll_error

    def remember(self, desired: Optional[ActiveOperator]) -> None:
        """Record a desired state observed outside the loop (e.g. by a toggle)."""
        self._last_desired = desired
        self._has_observed = True

    def exclusive(self) -> asyncio.Lock:
        return self._pass_lock

    async def reconcile_once(self) -> ReconcileOutcome:
        async with self._pass_lock:
            return await self._reconcile()

    async def _reconcile(self) -> ReconcileOutcome:
        self._passes += 1
        try:
            desired = await asyncio.to_thread(self.store.find_active_simulation_operator)
        except Exception as exc:
            self._last_poll_error = str(exc)
            logger.warning("Desired-state poll failed; keeping current runtime state", error=str(exc))
            return ReconcileOutcome.POLL_FAILED

        self._last_poll_error = None
        self._last_poll_at = datetime.now(timezone.utc)
        self.remember(desired)
        runtime = self.manager.get_status()

        if desired is not None and (not runtime.is_running or runtime.active_operator_id != desired.id):
            logger.info(
                "Reconciling: desired active, runtime diverged",
                operator_id=desired.id,
                runtime_operator_id=runtime.active_operator_id,
            )
            await self.manager.start(desired.id)
            return ReconcileOutcome.STARTED

        if desired is None and runtime.is_running:
            logger.info("Reconciling: desired inactive, stopping runtime", operator_id=runtime.active_operator_id)
            await self.manager.stop(runtime.active_operator_id)
            return ReconcileOutcome.STOPPED

        return ReconcileOutcome.CONVERGED

    async def run(self, stop_event: asyncio.Event) -> None:
        """Boot pass immediately, then one pass per poll interval until ``stop_event``."""
        try:
            outcome = await self.reconcile_once()
        except Exception as exc:
            logger.error("Boot reconciliation pass crashed", error=str(exc))
            outcome = ReconcileOutcome.POLL_FAILED
        if outcome == ReconcileOutcome.STARTED:
            restored = self._last_desired.id if self._last_desired else None
            logger.info("Restored continuous simulation on boot", operator_id=restored)
        elif outcome == ReconcileOutcome.POLL_FAILED:
            logger.error("Boot rehydration failed; simulation stays inactive until next successful poll")
        else:
            logger.info("No active continuous simulation to restore")

        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval_seconds)
            except asyncio.TimeoutError:
                pass
            else:
                break
            try:
                await self.reconcile_once()
            except Exception as exc:
                logger.error("Reconciliation pass crashed", error=str(exc))

    def start(self) -> asyncio.Task:
        if self._task is not None and not self._task.done():
            return self._task
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self.run(self._stop_event), name="simulation-reconciliation")
        return self._task

    async def close(self) -> None:
        if self._task is None:
            return
        if self._stop_event is not None:
            self._stop_event.set()
        try:
            await self._task
        finally:
            self._task = None
            self._stop_event = None
