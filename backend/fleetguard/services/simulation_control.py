"""Explicitly constructed control object shared by API handlers and the reconciliation loop."""
from __future__ import annotations

import asyncio
import random
from typing import List, Optional

from fleetguard.core.config import Settings
from fleetguard.core.logging import logger
from fleetguard.models.activity import ActivityReport
from fleetguard.models.feedback import (
    AccuracyMetrics,
    AnalysisFeedbackRecord,
    AnalysisFeedbackRequest,
    FeedbackJudgment,
    FeedbackRecord,
    LearningExample,
)
from fleetguard.models.simulation import (
    ActiveOperator,
    SimulationStatusResponse,
    SimulationToggleResponse,
)
from fleetguard.services.activity_ledger import ActivityLedger
from fleetguard.services.control_state import ControlStateStore
from fleetguard.services.feedback import FeedbackAggregator
from fleetguard.services.reconciliation import ReconciliationLoop
from fleetguard.services.risk_analysis import RiskAnalyzer, build_risk_analyzer
from fleetguard.services.simulation_manager import SimulationManager
from fleetguard.services.simulation_runner import ShipmentGenerator, SimulationRunner


class SimulationControl:
    def __init__(
        self,
        store: ControlStateStore,
        ledger: ActivityLedger,
        manager: SimulationManager,
        reconciler: ReconciliationLoop,
        feedback: FeedbackAggregator,
        *,
        dedupe_window_seconds: float = 10.0,
        reconciliation_enabled: bool = True,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.manager = manager
        self.reconciler = reconciler
        self.feedback = feedback
        self.dedupe_window_seconds = dedupe_window_seconds
        self.reconciliation_enabled = reconciliation_enabled

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        store: Optional[ControlStateStore] = None,
        analyzer: Optional[RiskAnalyzer] = None,
    ) -> "SimulationControl":
        store = store or ControlStateStore(settings.state_db_path)
        ledger = ActivityLedger(capacity=settings.ledger_capacity)
        feedback = FeedbackAggregator(store, alert_risk_threshold=settings.alert_risk_threshold)
        runner = SimulationRunner(
            store,
            ledger,
            analyzer or build_risk_analyzer(settings),
            feedback,
            generator=ShipmentGenerator(random.Random(settings.simulation_seed)),
            dedupe_window_seconds=settings.dedupe_window_seconds,
            learning_examples_limit=settings.learning_examples_limit,
            alert_risk_threshold=settings.alert_risk_threshold,
            threat_risk_threshold=settings.threat_risk_threshold,
        )
        manager = SimulationManager(
            runner,
            tick_interval_seconds=settings.tick_interval_seconds,
            tick_budget_seconds=settings.tick_budget_seconds,
        )
        reconciler = ReconciliationLoop(store, manager, poll_interval_seconds=settings.poll_interval_seconds)
        return cls(
            store,
            ledger,
            manager,
            reconciler,
            feedback,
            dedupe_window_seconds=settings.dedupe_window_seconds,
            reconciliation_enabled=settings.reconciliation_enabled,
        )

    async def start(self) -> None:
        if self.reconciliation_enabled:
            self.reconciler.start()
        else:
            # Restore on boot still applies without periodic polling.
            await self.reconciler.reconcile_once()

    async def close(self) -> None:
        await self.reconciler.close()
        await self.manager.shutdown()

    async def toggle(self, operator_id: str, active: bool) -> SimulationToggleResponse:
        """Persist intent, then drive the manager so the caller sees the effect immediately."""
        async with self.reconciler.exclusive():
            operator = await asyncio.to_thread(self.store.set_desired_state, operator_id, active)
            if active:
                self.reconciler.remember(ActiveOperator(id=operator.operator_id, email=operator.email))
                await self.manager.start(operator_id)
            else:
                if self.reconciler.last_desired is not None and self.reconciler.last_desired.id == operator_id:
                    self.reconciler.remember(None)
                await self.manager.stop(operator_id)
        runtime = self.manager.get_status()
        logger.info(
            "Continuous simulation toggled",
            operator_id=operator_id,
            active=active,
            is_running=runtime.is_running,
        )
        return SimulationToggleResponse(
            operator_id=operator_id,
            continuous_active=active,
            is_running=runtime.is_running,
            message=f"Continuous simulation {'enabled' if active else 'disabled'}",
        )

    async def status(self) -> SimulationStatusResponse:
        """Best-effort status; on a store failure the last observed desired state is reported."""
        runtime = self.manager.get_status()
        stale = False
        try:
            desired = await asyncio.to_thread(self.store.find_active_simulation_operator)
        except Exception as exc:
            logger.warning("Status read of desired state failed; reporting last known", error=str(exc))
            stale = True
            if self.reconciler.has_observed:
                desired = self.reconciler.last_desired
            elif runtime.is_running and runtime.active_operator_id:
                desired = ActiveOperator(id=runtime.active_operator_id)
            else:
                desired = None
        return SimulationStatusResponse(
            continuous_active=desired is not None,
            is_running=runtime.is_running,
            activated_by=desired,
            desired_state_stale=stale,
            runtime=runtime,
        )

    def activity(self, operator_id: str, limit: int = 10) -> ActivityReport:
        return self.ledger.report(operator_id, limit=limit, window_seconds=self.dedupe_window_seconds)

    async def submit_feedback(self, alert_id: str, judgment: FeedbackJudgment) -> FeedbackRecord:
        return await asyncio.to_thread(self.feedback.submit, alert_id, judgment)

    async def submit_analysis_feedback(self, request: AnalysisFeedbackRequest) -> AnalysisFeedbackRecord:
        return await asyncio.to_thread(self.feedback.submit_analysis_feedback, request)

    async def get_learning_examples(self, limit: int = 20, only_accurate: bool = False) -> List[LearningExample]:
        return await asyncio.to_thread(self.feedback.build_learning_examples, limit, only_accurate)

    async def accuracy_metrics(self, days: int = 7) -> AccuracyMetrics:
        return await asyncio.to_thread(self.feedback.accuracy_metrics, days)

