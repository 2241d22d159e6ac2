"""Shared router dependencies."""
from __future__ import annotations

from fastapi import HTTPException, Request, status

from fleetguard.services.simulation_control import SimulationControl


def get_control(request: Request) -> SimulationControl:
    control = getattr(request.app.state, "control", None)
    if control is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Simulation control not initialized",
        )
    return control
