"""Pegkeeper – Monitoring and control application.

FastAPI application that exposes the stabilization engine to the host
service layer: a read endpoint for the metrics snapshot, control
endpoints for rebalancing and configuration, and a health check.

The application is built by :func:`create_app` around an explicitly
constructed :class:`~pegkeeper.stablecoin.service.StabilizationService`.
When the app owns the service (none was passed in) it starts and stops
its scheduler with the application lifespan.

Run with:
    uvicorn --factory pegkeeper.monitoring.app:create_app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import FastAPI, Query

from pegkeeper.core.config import PegkeeperConfig, get_config
from pegkeeper.core.logging import get_logger
from pegkeeper.monitoring.metrics import get_latest_metrics
from pegkeeper.monitoring.stablecoin_api import (
    control_router,
    invariant_violation_handler,
    status_router,
)
from pegkeeper.stablecoin.service import StabilizationService
from pegkeeper.stablecoin.types import InvariantViolationError


logger = get_logger(__name__)

APP_VERSION: str = "0.1.0"


def create_app(
    service: Optional[StabilizationService] = None,
    settings: Optional[PegkeeperConfig] = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        service: Service instance owned by the host. If omitted, one is
            built from ``settings`` and its scheduler is tied to the
            application lifespan.
        settings: Configuration used for the admin token and, when no
            service is supplied, to construct one. Defaults to
            :func:`get_config`.
    """

    settings = settings or get_config()
    owns_service = service is None
    engine = service or StabilizationService.from_config(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if owns_service:
            engine.start()
        logger.info("Pegkeeper API starting up (owns_service=%s)", owns_service)
        try:
            yield
        finally:
            if owns_service:
                engine.stop()
            logger.info("Pegkeeper API shutting down")

    app = FastAPI(
        title="Pegkeeper",
        description="Monitoring and control API for the stablecoin stabilization engine",
        version=APP_VERSION,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        lifespan=lifespan,
    )
    app.state.service = engine
    app.state.admin_token = settings.admin_token

    # Read-side endpoints (metrics, supply, history, preview)
    app.include_router(status_router)

    # Administrative endpoints (rebalance, config, price, shock, reserves)
    app.include_router(control_router)
    app.add_exception_handler(InvariantViolationError, invariant_violation_handler)

    @app.get("/")
    async def root() -> Dict[str, str]:
        """Root endpoint with basic system info."""
        return {
            "service": "Pegkeeper",
            "version": APP_VERSION,
            "status": "operational",
            "docs": "/api/docs",
        }

    @app.get("/health")
    async def health_check() -> Dict[str, Any]:
        """Health check endpoint for monitoring."""
        return {"status": "healthy", "scheduler_running": engine.is_running}

    @app.get("/api/metrics/latest")
    async def latest_metrics(prefix: Optional[str] = Query(None)) -> List[Dict[str, Any]]:
        """Return the latest in-process gauges and counters."""
        return [
            {"name": p.name, "value": p.value, "tags": dict(p.tags), "timestamp": p.timestamp.isoformat()}
            for p in get_latest_metrics(prefix)
        ]

    return app
