"""API routes for continuous simulation control."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from fleetguard.core.auth import OperatorContext, require_roles
from fleetguard.core.errors import NotFoundError, OperatorRoleError, TransientStoreError
from fleetguard.core.logging import logger
from fleetguard.models.simulation import SimulationToggleRequest
from fleetguard.routers.deps import get_control
from fleetguard.services.simulation_control import SimulationControl


router = APIRouter(prefix="/simulation", tags=["simulation"])


@router.post("/toggle")
async def toggle_simulation(
    request: SimulationToggleRequest,
    context: OperatorContext = Depends(require_roles("admin")),
    control: SimulationControl = Depends(get_control),
):
    try:
        response = await control.toggle(context.operator_id, request.active)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except OperatorRoleError as exc:
        raise HTTPException(status_code=403, detail=str(exc))
    except TransientStoreError as exc:
        logger.error("Simulation toggle could not persist desired state", operator_id=context.operator_id, error=str(exc))
        raise HTTPException(status_code=503, detail="Desired state could not be saved; try again")
    return response.model_dump(mode="json")


@router.get("/status")
async def simulation_status(
    context: OperatorContext = Depends(require_roles("admin", "analyst")),
    control: SimulationControl = Depends(get_control),
):
    status = await control.status()
    return status.model_dump(mode="json")


@router.get("/activity")
def simulation_activity(
    limit: int = Query(default=10, ge=1, le=50),
    context: OperatorContext = Depends(require_roles("admin", "analyst")),
    control: SimulationControl = Depends(get_control),
):
    return control.activity(context.operator_id, limit=limit).model_dump(mode="json")
