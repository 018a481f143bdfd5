"""FastAPI dependencies shared by the routers."""

from __future__ import annotations

from fastapi import HTTPException, Request

from backend_sweeper.agent_worker.runtime import AutomationController


def get_controller(request: Request) -> AutomationController:
    """Dependency: the app-scoped controller created in the lifespan."""
    controller = getattr(request.app.state, "controller", None)
    if controller is None:
        raise HTTPException(status_code=503, detail="sweeper engine is not available")
    return controller
