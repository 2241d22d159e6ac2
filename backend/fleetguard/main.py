"""FleetGuard - Continuous Shipment Threat Simulation API"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from fleetguard.core.config import get_settings
from fleetguard.core.logging import configure_logging, logger
from fleetguard.routers import feedback, simulation
from fleetguard.services.simulation_control import SimulationControl


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    settings = get_settings()
    configure_logging(settings.log_level)
    control = SimulationControl.from_settings(settings)
    app.state.control = control
    logger.info(
        "FleetGuard API starting",
        version="0.1.0",
        state_db_path=settings.state_db_path,
        poll_interval_seconds=settings.poll_interval_seconds,
        tick_interval_seconds=settings.tick_interval_seconds,
        reconciliation_enabled=settings.reconciliation_enabled,
    )
    await control.start()
    yield
    # Shutdown
    logger.info("FleetGuard API shutting down")
    await control.close()
    control.store.close()
    app.state.control = None


app = FastAPI(
    title="FleetGuard API",
    description="Continuous shipment threat simulation with operator-controlled reconciliation and analyst feedback",
    version="0.1.0",
    lifespan=lifespan
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(simulation.router)
app.include_router(feedback.router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "FleetGuard API",
        "version": "0.1.0",
        "description": "Continuous shipment threat simulation",
        "endpoints": {
            "simulation": "/simulation",
            "alert_feedback": "/alerts/feedback",
            "analysis_feedback": "/analyses/feedback",
            "metrics": "/metrics/accuracy",
        }
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    control = getattr(app.state, "control", None)
    return {
        "status": "healthy",
        "reconciler": control.reconciler.status if control is not None else "stopped",
    }
