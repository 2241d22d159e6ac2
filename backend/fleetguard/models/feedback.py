"""Models for analyst feedback and derived learning examples."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class FeedbackJudgment(BaseModel):
    """Analyst correction on one AI prediction."""

    risk_score_accurate: bool
    attack_type_correct: bool
    actual_attack_type: Optional[str] = None
    actual_risk_score: Optional[int] = Field(default=None, ge=0, le=100)
    notes: Optional[str] = None
    ai_risk_score: Optional[int] = Field(default=None, ge=0, le=100)
    ai_attack_type: Optional[str] = None
    shipment_context: Optional[str] = None


class AlertFeedbackRequest(FeedbackJudgment):
    alert_id: str


class AnalysisFeedbackRequest(BaseModel):
    analysis_id: str
    risk_score_accurate: bool
    attack_type_correct: bool
    actual_attack_type: Optional[str] = None
    actual_risk_score: Optional[int] = Field(default=None, ge=0, le=100)
    notes: Optional[str] = None


class FeedbackRecord(BaseModel):
    """Persisted judgment, one per alert."""

    feedback_id: str
    alert_id: str
    risk_score_accurate: bool
    attack_type_correct: bool
    actual_attack_type: Optional[str] = None
    actual_risk_score: Optional[int] = None
    notes: Optional[str] = None
    ai_risk_score: int = 0
    ai_attack_type: str = "unknown"
    shipment_context: str = "{}"
    created_at: datetime
    updated_at: datetime
    alert: Optional[Dict[str, Any]] = None


class AnalysisFeedbackRecord(BaseModel):
    feedback_id: str
    analysis_id: str
    risk_score_accurate: bool
    attack_type_correct: bool
    actual_attack_type: Optional[str] = None
    actual_risk_score: Optional[int] = None
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class Prediction(BaseModel):
    risk_score: int
    attack_type: str


class ActualResult(BaseModel):
    risk_score: int
    attack_type: str
    was_accurate: bool


class LearningExample(BaseModel):
    """Feedback-derived pairing of a prediction with its corrected outcome."""

    scenario: Any
    ai_prediction: Prediction
    actual_result: ActualResult
    feedback_notes: Optional[str] = None


class AccuracyMetrics(BaseModel):
    time_period_days: int
    total_analyses: int = 0
    alerts_created: int = 0
    feedback_received: int = 0
    accurate_predictions: int = 0
    accuracy_rate: Optional[float] = None
    avg_risk_score: Optional[float] = None
    severity_distribution: Dict[str, int] = Field(default_factory=dict)
