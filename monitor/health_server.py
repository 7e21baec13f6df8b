"""Health HTTP endpoint."""

import asyncio
import logging
from typing import Any, Awaitable, Callable

from aiohttp import web

from config import HEALTH_HOST, HEALTH_PATH, HEALTH_PORT
from monitor.health import HealthRecorder

logger = logging.getLogger(__name__)


class HealthServer:
    def __init__(
        self,
        health: HealthRecorder,
        *,
        refresh: Callable[[], Awaitable[None]] | None = None,
        host: str = HEALTH_HOST,
        port: int = HEALTH_PORT,
        path: str = HEALTH_PATH,
    ) -> None:
        self.health = health
        self.refresh = refresh
        self.host = host
        self.port = port
        self.path = path
        self.runner: web.AppRunner | None = None
        self.site: web.TCPSite | None = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get(self.path, self._handle_health)
        return app

    async def start(self) -> None:
        self.runner = web.AppRunner(self.build_app())
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, self.host, self.port)
        await self.site.start()
        logger.info("Health server listening on %s:%s%s", self.host, self.port, self.path)

    async def stop(self) -> None:
        if self.runner:
            await self.runner.cleanup()

    async def _handle_health(self, request: web.Request) -> web.Response:
        if self.refresh is not None:
            try:
                await asyncio.wait_for(self.refresh(), timeout=5)
            except Exception as exc:
                # Stale balances are still worth reporting.
                logger.warning("HEALTH refresh failed: %s", exc)
        payload: dict[str, Any] = self.health.snapshot()
        return web.json_response(payload, status=200 if payload.get("ok") else 503)
