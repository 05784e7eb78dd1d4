"""Read-only volatility and health endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from rebalancer.orchestrator import AutomationRunner

router = APIRouter()


@router.get("/volatility")
async def get_volatility(request: Request) -> JSONResponse:
    """Latest price and reading per feed. Readings may lag one poll."""
    runner: AutomationRunner = request.app.state.runner
    monitor = runner.monitor
    readings = monitor.get_all_readings()

    feeds = {}
    for symbol in request.app.state.settings.volatility.feeds:
        quote = monitor.get_latest_price(symbol)
        reading = readings.get(symbol)
        feeds[symbol] = {
            "price": str(quote.price) if quote else None,
            "confidence": str(quote.confidence) if quote else None,
            "publishTime": quote.publish_time if quote else None,
            "volatilityBps": reading.magnitude_bps if reading else None,
            "volatilityPercent": str(reading.percent) if reading else None,
            "degraded": reading.degraded if reading else None,
            "samples": len(monitor.get_samples(symbol)),
        }

    return JSONResponse(content={
        "success": True,
        "primary": request.app.state.settings.volatility.primary_symbol,
        "feeds": feeds,
    })


@router.get("/health")
async def health(request: Request) -> JSONResponse:
    runner: AutomationRunner = request.app.state.runner
    return JSONResponse(content={
        "status": "ok",
        "mode": request.app.state.settings.execution.mode,
        "running": runner.is_running,
    })
