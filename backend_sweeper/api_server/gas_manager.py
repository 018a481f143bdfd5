"""
Gas-manager control surface: status/stats queries and start, stop,
manual-sweep, emergency-sweep and initialize actions.
"""

from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from backend_sweeper.agent_worker.runtime import AutomationController
from backend_sweeper.api_server.deps import get_controller
from backend_sweeper.sweeper_logging import get_logger

logger = get_logger(__name__)

router = APIRouter()

GasManagerAction = Literal["start", "stop", "manual-sweep", "emergency-sweep", "initialize"]


class GasManagerRequest(BaseModel):
    action: GasManagerAction = Field(..., description="Control action")
    wallet_address: str | None = Field(None, max_length=64, description="Required for emergency-sweep")


@router.get("")
def gas_manager_query(
    action: Literal["status", "stats"] = Query(..., description="status | stats"),
    days: int = Query(7, ge=1, le=365, description="Window for stats"),
    controller: AutomationController = Depends(get_controller),
) -> dict[str, Any]:
    if action == "status":
        return controller.status()
    return controller.get_gas_stats(days).to_dict()


@router.post("")
def gas_manager_action(
    body: GasManagerRequest,
    controller: AutomationController = Depends(get_controller),
) -> dict[str, Any]:
    logger.info("api_gas_manager_action", action=body.action)
    if body.action == "start":
        started = controller.start()
        return {"success": True, "changed": started, "state": controller.state.value}
    if body.action == "stop":
        stopped = controller.stop()
        return {"success": True, "changed": stopped, "state": controller.state.value}
    if body.action == "manual-sweep":
        return {"success": True, "summary": controller.trigger_manual_sweep().to_dict()}
    if body.action == "emergency-sweep":
        wallet_address = (body.wallet_address or "").strip()
        if not wallet_address:
            raise HTTPException(status_code=400, detail="wallet_address is required for emergency-sweep")
        return {"success": True, "result": controller.emergency_sweep(wallet_address).to_dict()}
    report = controller.initialize()
    return {"success": True, "reconcile": report.to_dict(), "state": controller.state.value}
