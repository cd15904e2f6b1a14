"""
Liveness and status endpoints.

GET /ping answers "pong" so hosting platforms (and keep-alive pingers)
can tell the process is up. GET /api/recorder-logs returns the status
log and the live sessions as JSON.
"""

import logging
from typing import Callable, Optional

from aiohttp import web

from .status import StatusLog

logger = logging.getLogger(__name__)

STATUS_LOG_KEY = web.AppKey("status_log", StatusLog)
SESSIONS_KEY = web.AppKey("sessions", Callable)
RUNNING_KEY = web.AppKey("running", Callable)


async def handle_ping(request: web.Request) -> web.Response:
    return web.Response(text="pong")


async def handle_recorder_logs(request: web.Request) -> web.Response:
    app = request.app
    logs = [event.to_dict() for event in app[STATUS_LOG_KEY].entries()]
    return web.json_response({
        "running": bool(app[RUNNING_KEY]()),
        "activeSessions": app[SESSIONS_KEY](),
        "logs": logs,
    })


def create_app(
    status_log: StatusLog,
    sessions: Callable[[], dict] = dict,
    running: Callable[[], bool] = lambda: True,
) -> web.Application:
    """
    Build the health application.

    Args:
        status_log: Status log exposed at /api/recorder-logs
        sessions: Returns the live sessions keyed by job id
        running: Returns whether the scheduler is running
    """
    app = web.Application()
    app[STATUS_LOG_KEY] = status_log
    app[SESSIONS_KEY] = sessions
    app[RUNNING_KEY] = running
    app.router.add_get("/ping", handle_ping)
    app.router.add_get("/api/recorder-logs", handle_recorder_logs)
    return app


class HealthServer:
    """Runs the health application on its own TCP site."""

    def __init__(self, app: web.Application, host: str = "0.0.0.0", port: int = 3001):
        self.app = app
        self.host = host
        self.port = port
        self._runner: Optional[web.AppRunner] = None

    async def start(self) -> None:
        self._runner = web.AppRunner(self.app, access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"Health server listening on {self.host}:{self.port}")

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
