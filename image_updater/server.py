"""Webhook HTTP surface: a secret-guarded trigger and a health check."""
import asyncio
import hmac
from typing import Optional

from aiohttp import web

from image_updater.config import Settings
from image_updater.errors import ImageUpdaterError
from image_updater.logging import get_logger
from image_updater.updater import ImageUpdater

log = get_logger(__name__)

SECRET_HEADER = "X-Secret"


def is_authorized(presented: Optional[str], expected: str) -> bool:
    """Exact-match comparison of the presented secret; missing is never authorized."""
    if presented is None:
        return False
    return hmac.compare_digest(presented.encode(), expected.encode())


class WebhookServer:
    """Serves the update trigger under a configurable path prefix."""

    def __init__(self, updater: ImageUpdater, secret: str, prefix: str = "/") -> None:
        self._updater = updater
        self._secret = secret
        self._prefix = prefix

    def _check_auth(self, request: web.Request) -> bool:
        return is_authorized(request.headers.get(SECRET_HEADER), self._secret)

    async def handle_trigger(self, request: web.Request) -> web.Response:
        if not self._check_auth(request):
            log.warning("unauthorized_trigger", remote=request.remote)
            return web.Response(status=401)

        log.info("update_triggered", busy=self._updater.is_busy)
        try:
            report = await self._updater.run()
        except ImageUpdaterError as e:
            log.error("update_failed", error=str(e))
            return web.Response(status=500)
        except Exception as e:
            log.exception("update_crashed", error=f"{type(e).__name__}: {e}")
            return web.Response(status=500)

        log.info("update_complete", **report.summary())
        return web.Response(status=200)

    async def handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok"})

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get(self._prefix, self.handle_trigger)
        if self._prefix != "/":
            app.router.add_get(self._prefix.rstrip("/"), self.handle_trigger)
        app.router.add_get(f"{self._prefix}health", self.handle_health)
        return app


def create_app(settings: Settings, updater: ImageUpdater) -> web.Application:
    server = WebhookServer(
        updater=updater,
        secret=settings.secret.get_secret_value(),
        prefix=settings.route_prefix,
    )
    return server.create_app()


async def run_server(settings: Settings) -> None:
    """Clone the manifest repository, then serve webhooks until cancelled."""
    updater = ImageUpdater(settings)
    await updater.sync()

    runner = web.AppRunner(create_app(settings, updater))
    await runner.setup()
    site = web.TCPSite(runner, settings.host, settings.port)
    await site.start()
    log.info("server_started", host=settings.host, port=settings.port, prefix=settings.route_prefix)

    try:
        await asyncio.Event().wait()
    finally:
        await runner.cleanup()
