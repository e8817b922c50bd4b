# booking_engine/main.py

import structlog
from fastapi import FastAPI

from booking_engine.logging_config import setup_logging
from booking_engine.routes.health import router as health_router
from booking_engine.routes.metrics import router as metrics_router

# Initialize structured logging
setup_logging()
logger = structlog.get_logger(__name__)

app = FastAPI(
    title="Booking Engine",
    description="Operational endpoints of the booking lifecycle and settlement engine",
    version="1.0.0",
)

# Register routers
app.include_router(health_router, tags=["Health"])
app.include_router(metrics_router, tags=["Metrics"])


@app.on_event("startup")
def startup_event() -> None:
    """Start the expiry sweeper."""
    from booking_engine.db.engine import engine
    from booking_engine.services.factory import build_sweeper

    logger.info("application_starting")

    app.state.sweeper = build_sweeper(engine)
    app.state.sweeper.start()

    logger.info("application_started")


@app.on_event("shutdown")
def shutdown_event() -> None:
    """Stop the sweeper and drain in-flight work."""
    sweeper = getattr(app.state, "sweeper", None)
    if sweeper is not None:
        sweeper.stop()
        sweeper.service.close()
        sweeper.service.dispatcher.shutdown()
    logger.info("application_stopped")
