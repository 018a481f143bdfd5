"""
FastAPI server: admin sweep routes and the gas-manager control surface.

The lifespan builds one AutomationController per process, initializes it
(reconciling interrupted work and auto-starting the loop when enabled) and
stops the loop on shutdown without clearing auto_sweep_enabled.

Run: uvicorn backend_sweeper.api_server.server:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse

from backend_sweeper import __version__
from backend_sweeper.agent_worker.runtime import AutomationController, build_controller
from backend_sweeper.api_server.gas_manager import router as gas_manager_router
from backend_sweeper.api_server.sweep_admin import router as sweep_admin_router
from backend_sweeper.core.exceptions import (
    ConfigurationError,
    InsufficientFundsError,
    InsufficientReserveError,
    InvalidTransitionError,
    NetworkError,
    NotFoundError,
    NotInitializedError,
    RevertedError,
    SecretStoreError,
    SweeperError,
    WalletLockedError,
)
from backend_sweeper.sweeper_logging import get_logger

logger = get_logger(__name__)

# Most specific first; the first isinstance match wins.
_ERROR_STATUS: list[tuple[type[SweeperError], int]] = [
    (ConfigurationError, 400),
    (NotFoundError, 404),
    (WalletLockedError, 409),
    (InsufficientFundsError, 409),
    (InsufficientReserveError, 409),
    (InvalidTransitionError, 409),
    (RevertedError, 502),
    (NotInitializedError, 503),
    (NetworkError, 503),
    (SecretStoreError, 500),
]


def status_for(exc: SweeperError) -> int:
    for cls, status in _ERROR_STATUS:
        if isinstance(exc, cls):
            return status
    return 500


def create_app(controller: AutomationController | None = None) -> FastAPI:
    """
    Build the app. Pass a prebuilt controller (tests, embedding); otherwise
    one is built from the environment when the app starts.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ctrl = controller or build_controller()
        app.state.controller = ctrl
        try:
            ctrl.initialize()
        except SweeperError as e:
            # API stays up so an operator can fix config and POST initialize
            logger.warning("controller_initialize_failed", error=str(e), code=e.code)
        try:
            yield
        finally:
            ctrl.stop(persist=False)
            logger.info("api_shutdown", state=ctrl.state.value)

    app = FastAPI(
        title="Backend Sweeper API",
        description="Custodial deposit sweeping, gas distribution and withdrawal settlement.",
        version=__version__,
        lifespan=lifespan,
    )
    app.include_router(sweep_admin_router, prefix="/api/admin/sweep", tags=["Sweep Admin"])
    app.include_router(gas_manager_router, prefix="/api/gas-manager", tags=["Gas Manager"])

    @app.get("/health")
    def health() -> dict[str, str]:
        """Liveness check: API is up."""
        return {"status": "ok"}

    @app.exception_handler(HTTPException)
    def http_exception_handler(request: Any, exc: HTTPException) -> JSONResponse:
        """Consistent JSON error response for HTTPException."""
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
        )

    @app.exception_handler(SweeperError)
    def sweeper_exception_handler(request: Any, exc: SweeperError) -> JSONResponse:
        status = status_for(exc)
        content: dict[str, Any] = {"detail": str(exc), "code": exc.code}
        if isinstance(exc, (InsufficientFundsError, InsufficientReserveError)):
            content["available"] = None if exc.available is None else str(exc.available)
            content["required"] = None if exc.required is None else str(exc.required)
        if isinstance(exc, RevertedError) and exc.tx_hash:
            content["tx_hash"] = exc.tx_hash
        if status >= 500:
            logger.warning("api_request_failed", path=str(request.url.path), code=exc.code, error=str(exc))
        return JSONResponse(status_code=status, content=content)

    @app.exception_handler(Exception)
    def unhandled_exception_handler(request: Any, exc: Exception) -> JSONResponse:
        logger.exception("api_unhandled_error", path=str(request.url.path), error=str(exc))
        return JSONResponse(status_code=500, content={"detail": "internal error"})

    return app


app = create_app()
