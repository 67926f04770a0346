"""REST API for the Steward daemon.

Endpoints:
  GET   /daemon                 - Daemon status (autostarts when allowed)
  POST  /daemon                 - {"action": "start"|"stop"} manual start/stop
  POST  /daemon/health-check    - Run the health checks now, return status
  GET   /mission/{session_id}   - Mission state of a main session
  PATCH /mission/{session_id}   - Operator edit (pause, autonomy mode, goal, ...)
  GET   /health                 - Health check (store connectivity)
"""

from __future__ import annotations

import logging
from typing import Any

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from steward.config import Settings
from steward.daemon import Daemon
from steward.mission.loop import MissionLoop
from steward.storage import SETTINGS, DocumentStore

logger = logging.getLogger(__name__)


def create_app(
    daemon: Daemon,
    store: DocumentStore,
    mission: MissionLoop,
    settings: Settings,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    async def get_daemon(request: Request) -> JSONResponse:
        """GET /daemon - Status, autostarting the daemon if allowed."""
        await daemon.ensure_started("api/daemon:get")
        return JSONResponse(await daemon.get_status())

    async def post_daemon(request: Request) -> JSONResponse:
        """POST /daemon - Manual start or stop."""
        try:
            body = await request.json()
        except Exception:
            body = {}
        action = body.get("action") if isinstance(body, dict) else None

        if action == "start":
            await daemon.start("api/daemon:post:start", manual=True)
            return JSONResponse({"ok": True, "status": "running"})
        if action == "stop":
            await daemon.stop("api/daemon:post:stop", manual=True)
            return JSONResponse({"ok": True, "status": "stopped"})
        return JSONResponse({"error": 'Invalid action. Use "start" or "stop".'}, status_code=400)

    async def health_check_now(request: Request) -> JSONResponse:
        """POST /daemon/health-check - Run health checks immediately."""
        try:
            await daemon.run_health_check_now()
        except Exception as e:
            logger.error("Manual health check failed: %s", e)
            return JSONResponse({"ok": False, "error": str(e)}, status_code=500)
        return JSONResponse({"ok": True, "status": await daemon.get_status()})

    async def get_mission(request: Request) -> JSONResponse:
        """GET /mission/{session_id} - Current mission state."""
        state = await mission.get_state(request.path_params["session_id"])
        if state is None:
            return JSONResponse({"error": "Main session not found"}, status_code=404)
        return JSONResponse(state.to_doc())

    async def patch_mission(request: Request) -> JSONResponse:
        """PATCH /mission/{session_id} - Apply an operator patch."""
        try:
            body = await request.json()
        except Exception:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        if not isinstance(body, dict) or not body:
            return JSONResponse({"error": "Body must be a non-empty object"}, status_code=400)

        state = await mission.set_state(request.path_params["session_id"], body)
        if state is None:
            return JSONResponse({"error": "Main session not found"}, status_code=404)
        return JSONResponse(state.to_doc())

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        try:
            await store.load_collection(SETTINGS)
            return JSONResponse({"status": "healthy", "daemon": daemon.running})
        except Exception as e:
            return JSONResponse({"status": "unhealthy", "error": str(e)}, status_code=503)

    routes = [
        Route("/daemon", get_daemon, methods=["GET"]),
        Route("/daemon", post_daemon, methods=["POST"]),
        Route("/daemon/health-check", health_check_now, methods=["POST"]),
        Route("/mission/{session_id}", get_mission, methods=["GET"]),
        Route("/mission/{session_id}", patch_mission, methods=["PATCH"]),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
