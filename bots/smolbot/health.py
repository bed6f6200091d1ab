"""HTTP health check for the hosting platform."""

import logging
import time
from typing import Callable, Optional

from aiohttp import web

logger = logging.getLogger(__name__)


class HealthServer:
    """
    Serves GET /health (and /) with a JSON status document.

    `status` is called on every request and merged into the response, so
    queue depth and current model tiers are always live.
    """

    def __init__(self, port: int, status: Optional[Callable[[], dict]] = None, host: str = "0.0.0.0"):
        self.port = port
        self.host = host
        self._status = status
        self._started_at = time.monotonic()
        self._runner: Optional[web.AppRunner] = None

        self.app = web.Application()
        self.app.router.add_get("/health", self.handle_health)
        self.app.router.add_get("/", self.handle_health)

    async def handle_health(self, request: web.Request) -> web.Response:
        body = {"status": "ok", "uptime": round(time.monotonic() - self._started_at, 1)}
        if self._status is not None:
            try:
                body.update(self._status())
            except Exception as e:
                logger.error(f"Health status callback failed: {e}", exc_info=True)
                body["status"] = "degraded"
        return web.json_response(body)

    async def start(self) -> None:
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"Health check server listening on {self.host}:{self.port}")

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
