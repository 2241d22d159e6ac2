"""Models for the in-memory agent activity ledger."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ActivityKind(str, Enum):
    """What a ledger entry describes."""

    ROUTINE_ANALYSIS = "routine_analysis"
    THREAT_ANALYSIS = "threat_analysis"
    THREAT_DETECTED = "threat_detected"
    SYSTEM_CHECK = "system_check"


class ActivityStatus(str, Enum):
    """Progress of the unit of work behind an entry."""

    STARTED = "started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class ActivityEntry(BaseModel):
    """One diagnostic record; id and timestamp are assigned by the ledger when absent."""

    id: Optional[str] = None
    operator_id: str
    kind: ActivityKind
    status: ActivityStatus = ActivityStatus.COMPLETED
    shipment_id: Optional[str] = None
    description: str
    timestamp: Optional[datetime] = None
    duration_ms: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ActivityStatistics(BaseModel):
    total_analyses: int = 0
    threats_detected: int = 0
    avg_analysis_ms: float = 0.0


class ActivityReport(BaseModel):
    """Operator-facing view of recent ledger activity."""

    operator_id: str
    activities: List[ActivityEntry] = Field(default_factory=list)
    current_activity: Optional[ActivityEntry] = None
    statistics: ActivityStatistics = Field(default_factory=ActivityStatistics)
