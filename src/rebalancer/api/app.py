"""FastAPI application factory for the automation REST API."""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from rebalancer.api.routes import automation, volatility

log = structlog.get_logger(__name__)


def create_app(lifespan: Any = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        lifespan: Optional async context manager for application lifespan events.
                  Used by main.py to inject startup/shutdown logic.

    Returns:
        Configured FastAPI application. Route handlers expect ``app.state.runner``
        and ``app.state.settings`` to be set before the first request.
    """
    app = FastAPI(
        title="Vault Rebalancer API",
        lifespan=lifespan,
    )

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
        log.error("api_unhandled_error", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=500, content={"success": False, "error": str(exc)})

    app.include_router(automation.router, prefix="/automation")
    app.include_router(volatility.router)

    return app
