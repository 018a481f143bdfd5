"""
Main entrypoint: FastAPI server in the main thread; the automation loop runs
in a daemon thread owned by the AutomationController (started by the app
lifespan when auto_sweep_enabled is set, or via POST /api/gas-manager).

Env: BSC_RPC_URL, BSC_RPC_FALLBACK_URLS, DATABASE_URL, PRIVATE_KEY_SECRET, MASTER_WALLET_PRIVATE_KEY
(first start only), API_HOST, API_PORT, LOG_LEVEL, etc.

Headless (no API): python -m backend_sweeper.agent_worker.runtime
"""

import os

from backend_sweeper.config import get_settings
from backend_sweeper.sweeper_logging import get_logger

logger = get_logger("main")


def main() -> None:
    """Run the API server; the controller is built and initialized in the app lifespan."""
    settings = get_settings()

    from backend_sweeper.api_server.server import app
    import uvicorn

    logger.info("main_server_starting", host=settings.api_host, port=settings.api_port)
    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )


if __name__ == "__main__":
    main()
