"""Tests for one simulation-and-analysis cycle and the risk analyzers."""
from __future__ import annotations

import random
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Sequence

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from fleetguard.core.errors import RunError  # noqa: E402
from fleetguard.models.activity import ActivityEntry, ActivityKind, ActivityStatus  # noqa: E402
from fleetguard.models.simulation import RiskAssessment, ShipmentTelemetry  # noqa: E402
from fleetguard.services.activity_ledger import ActivityLedger  # noqa: E402
from fleetguard.services.control_state import ControlStateStore  # noqa: E402
from fleetguard.services.feedback import FeedbackAggregator  # noqa: E402
from fleetguard.services.risk_analysis import (  # noqa: E402
    HeuristicRiskAnalyzer,
    extract_json_object,
    normalize_assessment,
)
from fleetguard.services.simulation_runner import SCENARIOS, ShipmentGenerator, SimulationRunner  # noqa: E402


class FixedAnalyzer:
    def __init__(self, risk_score: int = 0, fail: bool = False) -> None:
        self.risk_score = risk_score
        self.fail = fail
        self.seen_examples = None

    async def analyze(self, telemetry: ShipmentTelemetry, examples: Sequence = ()) -> RiskAssessment:
        self.seen_examples = list(examples)
        if self.fail:
            raise RuntimeError("model timeout")
        return RiskAssessment(risk_score=self.risk_score, alert_type="CYBER_ATTACK", description="fixed")


@pytest.fixture()
def store(tmp_path):
    state = ControlStateStore(str(tmp_path / "runner.db"))
    yield state
    state.close()


def _runner(store: ControlStateStore, analyzer, ledger: ActivityLedger | None = None) -> SimulationRunner:
    return SimulationRunner(
        store,
        ledger if ledger is not None else ActivityLedger(),
        analyzer,
        FeedbackAggregator(store),
        generator=ShipmentGenerator(random.Random(7)),
    )


@pytest.mark.asyncio
async def test_high_risk_tick_persists_alert_and_logs_threat(store):
    ledger = ActivityLedger()
    runner = _runner(store, FixedAnalyzer(risk_score=75), ledger)

    assessment = await runner.run_once("admin")
    assert assessment.risk_score == 75

    since = datetime.now(timezone.utc) - timedelta(minutes=1)
    assert len(store.list_analyses_since(since)) == 1
    assert store.count_alerts_since(since) == 1

    kinds = [entry.kind for entry in ledger.query_by_operator("admin", limit=10)]
    assert kinds[0] == ActivityKind.THREAT_DETECTED
    assert ActivityKind.SYSTEM_CHECK in kinds
    analysis_entry = next(
        entry
        for entry in ledger.query_by_operator("admin", limit=10)
        if entry.kind in {ActivityKind.THREAT_ANALYSIS, ActivityKind.ROUTINE_ANALYSIS}
    )
    assert analysis_entry.status == ActivityStatus.COMPLETED
    assert analysis_entry.duration_ms is not None
    assert analysis_entry.metadata["risk_score"] == 75


@pytest.mark.asyncio
async def test_low_risk_tick_creates_no_alert(store):
    runner = _runner(store, FixedAnalyzer(risk_score=20))
    await runner.run_once("admin")
    since = datetime.now(timezone.utc) - timedelta(minutes=1)
    assert len(store.list_analyses_since(since)) == 1
    assert store.count_alerts_since(since) == 0


@pytest.mark.asyncio
async def test_in_progress_analysis_dedupes_the_tick(store):
    ledger = ActivityLedger()
    ledger.log(
        ActivityEntry(
            operator_id="admin",
            kind=ActivityKind.ROUTINE_ANALYSIS,
            status=ActivityStatus.IN_PROGRESS,
            description="Analyzing shipment timing",
        )
    )
    analyzer = FixedAnalyzer(risk_score=90)
    runner = _runner(store, analyzer, ledger)

    assert await runner.run_once("admin") is None
    assert analyzer.seen_examples is None
    assert len(ledger) == 1


@pytest.mark.asyncio
async def test_unknown_operator_raises_run_error(store):
    with pytest.raises(RunError):
        await _runner(store, FixedAnalyzer()).run_once("ghost")


@pytest.mark.asyncio
async def test_analyzer_failure_marks_entry_failed(store):
    ledger = ActivityLedger()
    runner = _runner(store, FixedAnalyzer(fail=True), ledger)

    with pytest.raises(RunError):
        await runner.run_once("admin")

    failed = [entry for entry in ledger.query_by_operator("admin", limit=10) if entry.status == ActivityStatus.FAILED]
    assert len(failed) == 1
    assert failed[0].metadata["error"] == "model timeout"
    # A failed entry does not block the next tick.
    assert ledger.find_recent_in_progress("admin", 10) is None


def test_generator_covers_attack_and_normal_scenarios():
    generator = ShipmentGenerator(random.Random(11))
    now = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)
    samples = [generator.generate(f"SHP-{index:06d}", now) for index in range(200)]

    assert {sample.scenario for sample in samples} == {scenario.name for scenario in SCENARIOS}
    assert any(sample.is_attack for sample in samples)
    assert any(not sample.is_attack for sample in samples)
    assert all(sample.origin != sample.destination for sample in samples)
    cyber = next(sample for sample in samples if sample.scenario == "Cyber Attack")
    assert cyber.gps_online is False
    assert cyber.speed_kph == 0


def test_heuristic_scores_offline_stopped_critical_shipment():
    now = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)
    telemetry = ShipmentTelemetry(
        shipment_id="SHP-000001",
        route_id="RT-4242",
        driver_name="Robert Kim",
        expected_eta=now,
        actual_eta=now + timedelta(minutes=90),
        route_status="critical",
        gps_online=False,
        speed_kph=0,
    )
    assessment = HeuristicRiskAnalyzer().assess(telemetry, now=now, reason="missing_api_key")
    assert assessment.risk_score == 85
    assert assessment.using_fallback is True
    assert assessment.source == "fallback"
    assert len(assessment.recommended_actions) <= 3


def test_model_output_parsing_tolerates_fences_and_clamps():
    payload = extract_json_object('```json\n{"riskScore": 140, "alertType": "GPS_SPOOFING", "evidence": ["a", "b", "c", "d"]}\n```')
    assessment = normalize_assessment(payload, source="openrouter")
    assert assessment.risk_score == 100
    assert assessment.alert_type == "GPS_SPOOFING"
    assert len(assessment.evidence) == 3
