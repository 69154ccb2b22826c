"""Freight Delivery Confirmation API"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from app.core.config import get_settings
from app.core.logging import configure_logging, logger
from app.routers import delivery
from app.services.escalation import EscalationSweeper


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info(
        "Delivery confirmation API starting",
        version="0.1.0",
        max_distance_miles=settings.max_distance_miles,
        confirmation_timeout_hours=settings.confirmation_timeout_hours,
        telematics_location=settings.telematics_enabled(),
    )
    sweeper = None
    if settings.escalation_sweep_enabled:
        sweeper = EscalationSweeper(interval_seconds=settings.escalation_sweep_interval_seconds)
        sweeper.start()
    app.state.escalation_sweeper = sweeper
    yield
    # Shutdown
    if sweeper is not None:
        await sweeper.stop()
    logger.info("Delivery confirmation API shutting down")


app = FastAPI(
    title="Freight Delivery Confirmation API",
    description="Geofenced carrier drop-off with receiver and shipper sign-off, disputes and deadline escalation",
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

app.include_router(delivery.router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Freight Delivery Confirmation API",
        "version": "0.1.0",
        "endpoints": {
            "assignments": "/delivery/assignments",
            "links": "/delivery/links",
            "confirmations": "/delivery/confirmations",
            "escalations": "/delivery/escalations/sweep",
        }
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
