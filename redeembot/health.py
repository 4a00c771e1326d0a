import logging
from typing import Callable, Dict, Optional

from aiohttp import web

logger = logging.getLogger("redeembot.health")

RunsProvider = Callable[[], Dict[str, Dict[str, object]]]


def build_app(active_runs: RunsProvider) -> web.Application:
    """/health for uptime pings, /api/runs for redemptions in progress."""
    app = web.Application()

    async def health(_request):
        return web.Response(text="ok", content_type="text/plain")

    async def api_runs(_request):
        runs = active_runs()
        return web.json_response({"runs": runs, "count": len(runs)})

    app.router.add_get("/health", health)
    app.router.add_get("/api/runs", api_runs)
    return app


class KeepaliveServer:
    """HTTP server kept next to the bot so hosting platforms see it alive."""

    def __init__(self, active_runs: RunsProvider, port: int = 8080):
        self.active_runs = active_runs
        self.port = port
        self._runner: Optional[web.AppRunner] = None

    async def start(self) -> None:
        if self._runner is not None:
            return
        runner = web.AppRunner(build_app(self.active_runs))
        await runner.setup()
        site = web.TCPSite(runner, "0.0.0.0", self.port)
        await site.start()
        self._runner = runner
        logger.info("HTTP listening on :%s (/health, /api/runs)", self.port)

    async def stop(self) -> None:
        if self._runner is None:
            return
        await self._runner.cleanup()
        self._runner = None
