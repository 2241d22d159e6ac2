"""Domain models for continuous simulation control."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OperatorRole(str, Enum):
    """Supported operator roles."""

    ADMIN = "admin"
    ANALYST = "analyst"


class OperatorRecord(BaseModel):
    """Persisted operator with its desired simulation state."""

    operator_id: str
    email: Optional[str] = None
    role: OperatorRole = OperatorRole.ADMIN
    simulation_active: bool = False
    updated_at: datetime = Field(default_factory=_utcnow)


class ActiveOperator(BaseModel):
    id: str
    email: Optional[str] = None


class RuntimeStatus(BaseModel):
    """Snapshot of what the SimulationManager is actually executing."""

    is_running: bool = False
    active_operator_id: Optional[str] = None
    interval_seconds: float = 0.0
    started_at: Optional[datetime] = None
    uptime_ms: int = 0
    uptime: str = "Not running"
    tick_in_flight: bool = False
    ticks_started: int = 0
    ticks_completed: int = 0
    ticks_failed: int = 0
    ticks_skipped: int = 0


class SimulationToggleRequest(BaseModel):
    active: bool


class SimulationToggleResponse(BaseModel):
    success: bool = True
    operator_id: str
    continuous_active: bool
    is_running: bool
    message: str


class SimulationStatusResponse(BaseModel):
    continuous_active: bool
    is_running: bool
    activated_by: Optional[ActiveOperator] = None
    desired_state_stale: bool = False
    runtime: RuntimeStatus


class ReconcileOutcome(str, Enum):
    """Result of one reconciliation pass."""

    STARTED = "started"
    STOPPED = "stopped"
    CONVERGED = "converged"
    POLL_FAILED = "poll_failed"


class ShipmentTelemetry(BaseModel):
    """Synthetic shipment event produced for one simulation tick."""

    shipment_id: str
    route_id: str
    driver_name: str
    expected_eta: datetime
    actual_eta: Optional[datetime] = None
    route_status: str
    origin: Optional[str] = None
    destination: Optional[str] = None
    gps_online: bool = True
    last_known_lat: Optional[float] = None
    last_known_lng: Optional[float] = None
    last_known_at: Optional[datetime] = None
    speed_kph: Optional[float] = None
    heading_deg: Optional[float] = None
    scenario: str = "Normal Operation"
    is_attack: bool = False

    def delay_minutes(self, now: Optional[datetime] = None) -> float:
        reference = self.actual_eta or now or _utcnow()
        return (reference - self.expected_eta).total_seconds() / 60.0

    def context(self) -> Dict[str, Any]:
        """JSON-safe snapshot stored alongside analyses and alerts."""
        return self.model_dump(mode="json", exclude={"is_attack"})


class RiskAssessment(BaseModel):
    """Output of the risk-analysis collaborator."""

    risk_score: int = Field(default=0, ge=0, le=100)
    alert_type: str = "NORMAL_OPERATION"
    description: str = ""
    operator_summary: Optional[str] = None
    recommended_actions: List[str] = Field(default_factory=list)
    evidence: List[str] = Field(default_factory=list)
    source: str = "heuristic"
    using_fallback: bool = False
    fallback_reason: Optional[str] = None


def severity_for(risk_score: int) -> str:
    if risk_score > 70:
        return "high"
    if risk_score > 40:
        return "medium"
    return "low"
