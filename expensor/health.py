"""
Health endpoint for the daemon
Exposes pipeline counters over HTTP so docker-compose and operators can check
the worker.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from aiohttp import web

logger = logging.getLogger(__name__)


class HealthServer:
    """Small aiohttp app serving /health from a stats callback"""

    def __init__(self, stats: Callable[[], Dict[str, Any]]):
        self.stats = stats
        self.app = web.Application()
        self.app.router.add_get("/health", self.handle_health)
        self._runner: Optional[web.AppRunner] = None

    async def handle_health(self, request: web.Request) -> web.Response:
        payload = dict(self.stats())
        status = 200 if payload.get("status") == "healthy" else 503
        payload["timestamp"] = datetime.now(timezone.utc).isoformat()
        return web.json_response(payload, status=status)

    async def start(self, host: str, port: int) -> None:
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, host=host, port=port)
        await site.start()
        logger.info(f"Health endpoint listening on http://{host}:{port}/health")

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
