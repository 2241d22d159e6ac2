"""API routes for analyst feedback, learning examples and accuracy metrics."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from fleetguard.core.auth import OperatorContext, require_roles
from fleetguard.core.errors import NotFoundError, TransientStoreError
from fleetguard.core.logging import logger
from fleetguard.models.feedback import AlertFeedbackRequest, AnalysisFeedbackRequest, FeedbackJudgment
from fleetguard.routers.deps import get_control
from fleetguard.services.simulation_control import SimulationControl


router = APIRouter(tags=["feedback"])


@router.post("/alerts/feedback")
async def submit_alert_feedback(
    request: AlertFeedbackRequest,
    context: OperatorContext = Depends(require_roles("admin", "analyst")),
    control: SimulationControl = Depends(get_control),
):
    judgment = FeedbackJudgment.model_validate(request.model_dump(exclude={"alert_id"}))
    try:
        record = await control.submit_feedback(request.alert_id, judgment)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Alert not found")
    except TransientStoreError as exc:
        logger.error("Alert feedback submission failed", alert_id=request.alert_id, error=str(exc))
        raise HTTPException(status_code=503, detail=str(exc))
    return {
        "success": True,
        "message": "Feedback recorded. This will improve future analyses.",
        "feedback": record.model_dump(mode="json"),
    }


@router.get("/alerts/feedback/learning")
async def learning_examples(
    limit: int = Query(default=20, ge=1, le=500),
    accurate: bool = Query(default=False),
    context: OperatorContext = Depends(require_roles("admin", "analyst")),
    control: SimulationControl = Depends(get_control),
):
    try:
        examples = await control.get_learning_examples(limit=limit, only_accurate=accurate)
    except TransientStoreError as exc:
        logger.error("Learning example query failed", error=str(exc))
        raise HTTPException(status_code=503, detail=str(exc))
    return {
        "learning_examples": [example.model_dump(mode="json") for example in examples],
        "count": len(examples),
    }


@router.post("/analyses/feedback")
async def submit_analysis_feedback(
    request: AnalysisFeedbackRequest,
    context: OperatorContext = Depends(require_roles("admin", "analyst")),
    control: SimulationControl = Depends(get_control),
):
    try:
        record = await control.submit_analysis_feedback(request)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Analysis not found")
    except TransientStoreError as exc:
        logger.error("Analysis feedback submission failed", analysis_id=request.analysis_id, error=str(exc))
        raise HTTPException(status_code=503, detail=str(exc))
    return {"success": True, "feedback": record.model_dump(mode="json")}


@router.get("/metrics/accuracy")
async def accuracy_metrics(
    days: int = Query(default=7, ge=1, le=365),
    context: OperatorContext = Depends(require_roles("admin", "analyst")),
    control: SimulationControl = Depends(get_control),
):
    try:
        metrics = await control.accuracy_metrics(days=days)
    except TransientStoreError as exc:
        logger.error("Accuracy metrics query failed", error=str(exc))
        raise HTTPException(status_code=503, detail=str(exc))
    return metrics.model_dump(mode="json")
