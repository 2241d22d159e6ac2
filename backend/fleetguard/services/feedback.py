"""Turns analyst corrections into a replayable learning corpus for the risk model."""
from __future__ import annotations

import json
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, List

from fleetguard.core.errors import MalformedRecordError, NotFoundError
from fleetguard.core.logging import logger
from fleetguard.models.feedback import (
    AccuracyMetrics,
    ActualResult,
    AnalysisFeedbackRecord,
    AnalysisFeedbackRequest,
    FeedbackJudgment,
    FeedbackRecord,
    LearningExample,
    Prediction,
)
from fleetguard.services.control_state import ControlStateStore


def parse_shipment_context(raw: str) -> Any:
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise MalformedRecordError(f"unparseable shipment context: {exc}") from exc


def to_learning_example(record: FeedbackRecord) -> LearningExample:
    return LearningExample(
        scenario=parse_shipment_context(record.shipment_context),
        ai_prediction=Prediction(risk_score=record.ai_risk_score, attack_type=record.ai_attack_type),
        actual_result=ActualResult(
            risk_score=record.actual_risk_score if record.actual_risk_score is not None else record.ai_risk_score,
            attack_type=record.actual_attack_type or record.ai_attack_type,
            was_accurate=record.risk_score_accurate and record.attack_type_correct,
        ),
        feedback_notes=record.notes,
    )


class FeedbackAggregator:
    def __init__(self, store: ControlStateStore, alert_risk_threshold: int = 20) -> None:
        self.store = store
        self.alert_risk_threshold = alert_risk_threshold

    def submit(self, alert_id: str, judgment: FeedbackJudgment) -> FeedbackRecord:
        """Upsert the judgment for ``alert_id``; a resubmission overwrites, never duplicates."""
        alert = self.store.find_alert_by_id(alert_id)
        if alert is None:
            raise NotFoundError("alert", alert_id)

        fields = judgment.model_dump()
        is_new = self.store.count_feedback(alert_id) == 0
        if is_new:
            # Snapshot the prediction being judged when the analyst did not send it.
            if fields["ai_risk_score"] is None:
                fields["ai_risk_score"] = alert["risk_score"]
            if not fields["ai_attack_type"]:
                fields["ai_attack_type"] = alert["alert_type"]
            if not fields["shipment_context"]:
                fields["shipment_context"] = alert["shipment_context"]

        record = self.store.upsert_feedback(alert_id, fields)
        logger.info(
            "Alert feedback recorded",
            alert_id=alert_id,
            risk_score_accurate=record.risk_score_accurate,
            attack_type_correct=record.attack_type_correct,
            created=is_new,
        )
        return record

    def submit_analysis_feedback(self, request: AnalysisFeedbackRequest) -> AnalysisFeedbackRecord:
        if self.store.get_analysis(request.analysis_id) is None:
            raise NotFoundError("analysis", request.analysis_id)
        record = self.store.upsert_analysis_feedback(
            request.analysis_id,
            request.model_dump(exclude={"analysis_id"}),
        )
        logger.info(
            "Analysis feedback recorded",
            analysis_id=request.analysis_id,
            risk_score_accurate=record.risk_score_accurate,
            attack_type_correct=record.attack_type_correct,
        )
        return record

    def build_learning_examples(self, limit: int = 20, only_accurate: bool = False) -> List[LearningExample]:
        """Most-recent-first examples; records with unparseable context are dropped."""
        examples: List[LearningExample] = []
        for record in self.store.query_feedback(limit=limit, only_accurate=only_accurate):
            try:
                examples.append(to_learning_example(record))
            except MalformedRecordError as exc:
                logger.warning("Skipping malformed feedback record", alert_id=record.alert_id, error=str(exc))
        return examples

    def accuracy_metrics(self, days: int = 7) -> AccuracyMetrics:
        since = datetime.now(timezone.utc) - timedelta(days=days)
        analyses = self.store.list_analyses_since(since)
        with_truth = [row for row in analyses if row.get("ground_truth_is_attack") is not None]
        accurate = sum(
            1
            for row in with_truth
            if (int(row["risk_score"]) > self.alert_risk_threshold) == bool(row["ground_truth_is_attack"])
        )
        return AccuracyMetrics(
            time_period_days=days,
            total_analyses=len(analyses),
            alerts_created=self.store.count_alerts_since(since),
            feedback_received=len(with_truth),
            accurate_predictions=accurate,
            accuracy_rate=round(accurate * 100.0 / len(with_truth), 1) if with_truth else None,
            avg_risk_score=(
                round(sum(int(row["risk_score"]) for row in analyses) / len(analyses), 1) if analyses else None
            ),
            severity_distribution=dict(Counter(str(row["severity"]) for row in analyses)),
        )
