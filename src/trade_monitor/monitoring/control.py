"""
FastAPI control surface for the trade monitor.

Provides:
    - GET  /health            liveness + monitor stats
    - GET  /stats             monitor stats
    - POST /control/{action}  start | stop | restart
    - POST /webhook/test      send a TRADE_TEST event
    - GET  /webhook/config    webhook settings (without the secret)

Control actions run as background tasks so the response is not held back
by a full scan or by the dispatcher's backoff sleeps.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from fastapi import BackgroundTasks, FastAPI
from fastapi.responses import JSONResponse

if TYPE_CHECKING:
    import uvicorn

    from trade_monitor.core import ScanController
    from trade_monitor.notify import NotificationDispatcher

logger = logging.getLogger(__name__)

RESTART_DELAY_SECONDS = 1.0


def create_control_app(
    controller: "ScanController",
    dispatcher: Optional["NotificationDispatcher"] = None,
    restart_delay: float = RESTART_DELAY_SECONDS,
) -> FastAPI:
    """
    Create the control application.

    Args:
        controller: The scan controller to expose
        dispatcher: Webhook dispatcher (for the test/config endpoints)
        restart_delay: Pause between stop and start on restart

    Returns:
        FastAPI application instance
    """
    app = FastAPI(
        title="Trade Monitor",
        description="Health checks and manual control for the trade monitor",
        version="1.0.0",
    )

    async def restart() -> None:
        await controller.stop()
        await asyncio.sleep(restart_delay)
        await controller.start()

    @app.get("/health")
    async def health():
        """Liveness check with monitor stats."""
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "monitor": controller.get_stats(),
        }

    @app.get("/stats")
    async def stats():
        """Cumulative monitor statistics."""
        return controller.get_stats()

    @app.post("/control/{action}")
    async def control(action: str, background_tasks: BackgroundTasks):
        """Start, stop or restart the monitor."""
        if action == "start":
            background_tasks.add_task(controller.start)
            return {"message": "Monitor started"}
        if action == "stop":
            background_tasks.add_task(controller.stop)
            return {"message": "Monitor stopped"}
        if action == "restart":
            background_tasks.add_task(restart)
            return {"message": "Monitor restarted"}

        logger.warning(f"Rejected control action: {action}")
        return JSONResponse(status_code=400, content={"error": "Invalid action"})

    @app.post("/webhook/test")
    async def webhook_test():
        """Send a test event to the webhook receiver."""
        if dispatcher is None:
            return JSONResponse(status_code=503, content={"error": "Dispatcher not available"})
        outcome = await dispatcher.send_test_event()
        return outcome.to_dict()

    @app.get("/webhook/config")
    async def webhook_config():
        """Current webhook configuration."""
        if dispatcher is None:
            return JSONResponse(status_code=503, content={"error": "Dispatcher not available"})
        return dispatcher.config_summary()

    return app


def create_control_server(
    app: FastAPI,
    host: str = "0.0.0.0",
    port: int = 3000,
) -> "uvicorn.Server":
    """
    Build a uvicorn server for the control app.

    The caller runs it with ``await server.serve()`` and stops it by setting
    ``server.should_exit = True``. uvicorn captures SIGINT/SIGTERM while
    serving, so the caller should also treat the server exiting as a
    shutdown request.
    """
    import uvicorn

    config = uvicorn.Config(app, host=host, port=port, log_level="warning")
    return uvicorn.Server(config)
