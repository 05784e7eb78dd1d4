"""Automation control endpoints: status, config, force, trigger, reset, history.

Errors are returned as ``{"success": false, "error": ...}`` with 400 for
rejected input, 404 for unknown vaults and 503 when no volatility data is
available. Gating skips are successful responses whose decision says
``skipped``.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from rebalancer.automation.engine import RebalanceDecisionEngine
from rebalancer.exceptions import ConfigValidationError, DataUnavailableError
from rebalancer.models import (
    DecisionOutcome,
    RebalanceIntensity,
    TokenBalance,
    VaultContext,
    VolatilityReading,
)
from rebalancer.orchestrator import AutomationRunner

log = structlog.get_logger(__name__)

router = APIRouter()

# REST field name -> config field name
_CONFIG_FIELDS = {
    "enabled": "enabled",
    "thresholds": "thresholds",
    "cooldownMinutes": "cooldown_minutes",
    "maxDailyRebalancings": "max_daily_rebalances",
    "notificationEnabled": "notifications_enabled",
}


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


async def _json_body(request: Request) -> dict | None:
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


async def _engine_for(
    request: Request, vault: str | None
) -> RebalanceDecisionEngine | None:
    """Primary engine when ``vault`` is omitted; existing engine otherwise."""
    runner: AutomationRunner = request.app.state.runner
    if vault is None or vault.lower() == runner.primary_vault.lower():
        return await runner.get_engine()
    return runner.find_engine(vault)


@router.get("/status")
async def get_status(request: Request, vault: str | None = None) -> JSONResponse:
    engine = await _engine_for(request, vault)
    if engine is None:
        return _error(404, f"Unknown vault {vault}")
    return JSONResponse(content={"success": True, **engine.status()})


@router.put("/config")
async def update_config(request: Request, vault: str | None = None) -> JSONResponse:
    body = await _json_body(request)
    if body is None:
        return _error(400, "Request body must be a JSON object")

    changes = {
        field: body[key] for key, field in _CONFIG_FIELDS.items() if key in body
    }
    if not changes:
        return _error(400, "No config fields provided")

    engine = await _engine_for(request, vault)
    if engine is None:
        return _error(404, f"Unknown vault {vault}")

    try:
        await engine.update_config(changes)
    except ConfigValidationError as e:
        log.warning("config_update_rejected", error=str(e))
        return _error(400, str(e))

    return JSONResponse(content={
        "success": True,
        "config": engine.status()["config"],
        "message": "Automation config updated",
    })


def _parse_vault_info(info: object) -> VaultContext | str:
    """Build a VaultContext from a request, or return an error message."""
    if not isinstance(info, dict):
        return "vaultInfo is required"
    missing = [k for k in ("address", "pkpAddress", "jwt") if not info.get(k)]
    if missing:
        return f"vaultInfo is missing: {', '.join(missing)}"

    balances = None
    raw_balances = info.get("balances")
    if raw_balances:
        if not isinstance(raw_balances, list):
            return "vaultInfo.balances must be a list"
        try:
            balances = [TokenBalance.from_payload(b) for b in raw_balances]
        except (ValueError, TypeError, AttributeError) as e:
            return f"Invalid balance entry: {e}"

    return VaultContext(
        address=str(info["address"]),
        operator_address=str(info["pkpAddress"]),
        jwt=str(info["jwt"]),
        balances=balances,
    )


@router.post("/force")
async def force_rebalance(request: Request) -> JSONResponse:
    body = await _json_body(request)
    if body is None:
        return _error(400, "Request body must be a JSON object")

    try:
        intensity = RebalanceIntensity(body.get("rebalanceType"))
    except ValueError:
        return _error(400, "rebalanceType must be one of: soft, medium, aggressive")

    context = _parse_vault_info(body.get("vaultInfo"))
    if isinstance(context, str):
        return _error(400, context)

    runner: AutomationRunner = request.app.state.runner
    try:
        reading = runner.current_reading()
    except DataUnavailableError:
        reading = None

    engine = await runner.get_engine(context)
    decision = await engine.force(intensity, context=context, reading=reading)
    executed = decision.outcome == DecisionOutcome.EXECUTED

    log.info("force_rebalance_requested", vault=context.address, outcome=decision.outcome.value)
    return JSONResponse(content={
        "success": executed,
        "status": engine.status()["status"],
        "message": (
            f"Force {intensity.value} rebalancing executed successfully"
            if executed
            else f"Force {intensity.value} rebalancing failed"
        ),
        "result": decision.to_dict(),
    })


@router.post("/trigger")
async def trigger_rebalance(request: Request) -> JSONResponse:
    body = await _json_body(request) or {}
    runner: AutomationRunner = request.app.state.runner

    bps = body.get("volatilityBps")
    if bps is not None:
        if isinstance(bps, bool) or not isinstance(bps, int) or bps < 1:
            return _error(400, "volatilityBps must be an integer >= 1")
        reading = VolatilityReading(magnitude_bps=bps, feed_symbol="manual")
    else:
        try:
            reading = runner.current_reading()
        except DataUnavailableError as e:
            return _error(503, str(e))

    engine = await _engine_for(request, body.get("vault"))
    if engine is None:
        return _error(404, f"Unknown vault {body.get('vault')}")

    decision = await engine.evaluate(reading)
    return JSONResponse(content={"success": True, "decision": decision.to_dict()})


@router.post("/reset-daily")
async def reset_daily(request: Request, vault: str | None = None) -> JSONResponse:
    engine = await _engine_for(request, vault)
    if engine is None:
        return _error(404, f"Unknown vault {vault}")
    await engine.reset_daily()
    return JSONResponse(content={
        "success": True,
        "message": "Daily rebalancing counter reset",
        "status": engine.status()["status"],
    })


@router.get("/history")
async def get_history(request: Request, vault: str | None = None) -> JSONResponse:
    engine = await _engine_for(request, vault)
    if engine is None:
        return _error(404, f"Unknown vault {vault}")
    return JSONResponse(content={
        "success": True,
        "history": engine.history(),
        "dailyCount": engine.state.daily_count,
    })
