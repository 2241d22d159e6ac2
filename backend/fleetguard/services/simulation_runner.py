"""One simulation-and-analysis cycle: synthetic shipment telemetry in, alerts out."""
from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple

from fleetguard.core.errors import RunError
from fleetguard.core.logging import logger
from fleetguard.models.activity import ActivityEntry, ActivityKind, ActivityStatus
from fleetguard.models.feedback import LearningExample
from fleetguard.models.simulation import RiskAssessment, ShipmentTelemetry
from fleetguard.services.activity_ledger import ActivityLedger
from fleetguard.services.control_state import ControlStateStore
from fleetguard.services.feedback import FeedbackAggregator
from fleetguard.services.risk_analysis import RiskAnalyzer


DRIVERS = [
    "John Martinez", "Sarah Johnson", "Mike Chen", "Lisa Rodriguez",
    "David Thompson", "Emma Wilson", "Carlos Sanchez", "Maya Patel",
    "Robert Kim", "Jessica Brown", "Alex Garcia", "Sophia Lee",
]

ROUTE_PREFIXES = ["RT-", "LG-", "DL-", "WH-", "TR-"]

CITIES = [
    "Seattle, WA", "Tacoma, WA", "Spokane, WA", "Portland, OR", "Boise, ID",
    "Missoula, MT", "Yakima, WA", "Eugene, OR", "Salem, OR", "Bellingham, WA",
]


@dataclass(frozen=True)
class Scenario:
    name: str
    delay_range: Tuple[int, int]
    route_status: str
    gps_anomalies: bool
    is_attack: bool


SCENARIOS = [
    Scenario("Route Manipulation", (30, 90), "critical", True, True),
    Scenario("ETA Manipulation", (60, 180), "critical", False, True),
    Scenario("Cargo Tampering", (15, 60), "suspicious", False, True),
    Scenario("Cyber Attack", (5, 35), "critical", True, True),
    Scenario("Driver Impersonation", (20, 110), "suspicious", False, True),
    Scenario("Normal Operation", (-5, 5), "in-progress", False, False),
    Scenario("Traffic Delay", (5, 25), "delayed", False, False),
    Scenario("Weather Delay", (10, 25), "delayed", False, False),
    Scenario("Fuel Stop", (5, 20), "in-progress", False, False),
]


class ShipmentGenerator:
    """Random shipment telemetry drawn from the attack/normal scenario catalogue."""

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self.rng = rng or random.Random()

    def generate(self, shipment_id: str, now: Optional[datetime] = None) -> ShipmentTelemetry:
        rng = self.rng
        now = now or datetime.now(timezone.utc)
        scenario = rng.choice(SCENARIOS)
        expected_eta = now + timedelta(minutes=rng.randint(60, 179))
        actual_eta = expected_eta + timedelta(minutes=rng.randint(*scenario.delay_range))

        origin = rng.choice(CITIES)
        destination = rng.choice(CITIES)
        if destination == origin:
            destination = CITIES[(CITIES.index(origin) + 3) % len(CITIES)]

        gps_online = True
        last_known_at = now - timedelta(minutes=rng.randint(0, 9))
        speed_kph: float = max(0, round(80 + (rng.random() - 0.5) * 40))

        if scenario.name == "Cyber Attack":
            gps_online = False
            last_known_at = now - timedelta(minutes=40)
            speed_kph = 0
        elif scenario.name == "Route Manipulation":
            speed_kph = round(rng.random() * 20)
            last_known_at = now - timedelta(minutes=20)
        elif scenario.name == "Cargo Tampering":
            speed_kph = 0
            last_known_at = now - timedelta(minutes=45)
        elif scenario.name == "Fuel Stop":
            speed_kph = 0
            last_known_at = now - timedelta(minutes=5)

        return ShipmentTelemetry(
            shipment_id=shipment_id,
            route_id=f"{rng.choice(ROUTE_PREFIXES)}{rng.randint(1000, 9999)}",
            driver_name=rng.choice(DRIVERS),
            expected_eta=expected_eta,
            actual_eta=actual_eta,
            route_status=scenario.route_status,
            origin=origin,
            destination=destination,
            gps_online=gps_online,
            last_known_lat=45 + rng.random() * 5,
            last_known_lng=-123 + rng.random() * 5,
            last_known_at=last_known_at,
            speed_kph=speed_kph,
            heading_deg=rng.randint(0, 359),
            scenario=scenario.name,
            is_attack=scenario.is_attack,
        )


class SimulationRunner:
    """Executes exactly one tick for an operator; raises RunError on failure."""

    def __init__(
        self,
        store: ControlStateStore,
        ledger: ActivityLedger,
        analyzer: RiskAnalyzer,
        feedback: FeedbackAggregator,
        *,
        generator: Optional[ShipmentGenerator] = None,
        dedupe_window_seconds: float = 10.0,
        learning_examples_limit: int = 5,
        alert_risk_threshold: int = 20,
        threat_risk_threshold: int = 40,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.analyzer = analyzer
        self.feedback = feedback
        self.generator = generator or ShipmentGenerator()
        self.dedupe_window_seconds = dedupe_window_seconds
        self.learning_examples_limit = learning_examples_limit
        self.alert_risk_threshold = alert_risk_threshold
        self.threat_risk_threshold = threat_risk_threshold
        self._clock = clock

    async def _learning_examples(self) -> List[LearningExample]:
        if self.learning_examples_limit <= 0:
            return []
        try:
            return await asyncio.to_thread(self.feedback.build_learning_examples, self.learning_examples_limit)
        except Exception as exc:
            logger.warning("Learning examples unavailable for this tick", error=str(exc))
            return []

    async def run_once(self, operator_id: str) -> Optional[RiskAssessment]:
        try:
            operator = await asyncio.to_thread(self.store.get_operator, operator_id)
        except Exception as exc:
            raise RunError(f"operator lookup failed: {exc}") from exc
        if operator is None:
            raise RunError(f"operator '{operator_id}' not found")

        pending = self.ledger.find_recent_in_progress(operator_id, self.dedupe_window_seconds)
        if pending is not None:
            logger.info("Analysis already in progress; skipping tick work", operator_id=operator_id, activity_id=pending.id)
            return None

        try:
            shipment_id = await asyncio.to_thread(self.store.next_shipment_id)
            telemetry = self.generator.generate(shipment_id)
            await asyncio.to_thread(self.store.insert_shipment, operator_id, telemetry)
        except Exception as exc:
            raise RunError(f"shipment ingest failed: {exc}") from exc

        suspicious = telemetry.route_status in {"critical", "suspicious"}
        self.ledger.log(
            ActivityEntry(
                operator_id=operator_id,
                kind=ActivityKind.SYSTEM_CHECK,
                status=ActivityStatus.COMPLETED,
                shipment_id=telemetry.route_id,
                description=(
                    f"Suspicious shipment ingested ({telemetry.route_status})"
                    if suspicious
                    else f"Normal shipment ingested ({telemetry.route_status})"
                ),
                metadata={"route_status": telemetry.route_status, "shipment_id": telemetry.shipment_id},
            )
        )

        started = self.ledger.log(
            ActivityEntry(
                operator_id=operator_id,
                kind=ActivityKind.THREAT_ANALYSIS if suspicious else ActivityKind.ROUTINE_ANALYSIS,
                status=ActivityStatus.IN_PROGRESS,
                shipment_id=telemetry.route_id,
                description=(
                    f"Analyzing suspicious shipment ({telemetry.route_status})"
                    if suspicious
                    else "Analyzing shipment timing"
                ),
                metadata={"route_id": telemetry.route_id, "driver_name": telemetry.driver_name},
            )
        )
        begin = self._clock()

        try:
            examples = await self._learning_examples()
            assessment = await self.analyzer.analyze(telemetry, examples)
            analysis = await asyncio.to_thread(self.store.insert_analysis, operator_id, telemetry, assessment)
            alert = None
            if assessment.risk_score > self.alert_risk_threshold:
                alert = await asyncio.to_thread(self.store.insert_alert, analysis)
        except Exception as exc:
            self.ledger.update(
                started.id,
                {
                    "status": ActivityStatus.FAILED,
                    "duration_ms": round((self._clock() - begin) * 1000, 2),
                    "metadata": {"error": str(exc)},
                },
            )
            raise RunError(f"analysis failed for {telemetry.route_id}: {exc}") from exc

        if alert is not None and assessment.risk_score > self.threat_risk_threshold:
            self.ledger.log(
                ActivityEntry(
                    operator_id=operator_id,
                    kind=ActivityKind.THREAT_DETECTED,
                    status=ActivityStatus.COMPLETED,
                    shipment_id=telemetry.route_id,
                    description=f"Threat detected: {assessment.alert_type}",
                    metadata={
                        "risk_score": assessment.risk_score,
                        "alert_type": assessment.alert_type,
                        "alert_id": alert["alert_id"],
                    },
                )
            )

        self.ledger.update(
            started.id,
            {
                "status": ActivityStatus.COMPLETED,
                "duration_ms": round((self._clock() - begin) * 1000, 2),
                "metadata": {
                    "risk_score": assessment.risk_score,
                    "alert_type": assessment.alert_type,
                    "analysis_id": analysis["analysis_id"],
                    "using_fallback": assessment.using_fallback,
                    "learning_examples": len(examples),
                },
            },
        )
        logger.info(
            "Simulation tick analyzed shipment",
            operator_id=operator_id,
            route_id=telemetry.route_id,
            scenario=telemetry.scenario,
            risk_score=assessment.risk_score,
            alert_id=alert["alert_id"] if alert else None,
        )
        return assessment
