"""
Factory helpers for the Starlette HTTP application (health and status only).
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

from starlette.applications import Starlette
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from hearth.config import Settings, get_settings
from hearth.runtime import HearthRuntime

logger = logging.getLogger(__name__)


def create_starlette_app(
    settings: Settings | None = None,
    runtime: HearthRuntime | None = None,
) -> Starlette:
    """Create the Starlette application; its lifespan drives the runtime."""

    settings = settings or get_settings()
    runtime = runtime or HearthRuntime(settings)

    async def health_check(_request):
        return JSONResponse(
            {
                "status": "healthy" if runtime.is_running else "starting",
                "server": "hearth",
                "version": settings.app_version,
            }
        )

    async def status_endpoint(_request):
        return JSONResponse(runtime.get_status())

    @asynccontextmanager
    async def lifespan(_app: Starlette) -> AsyncIterator[None]:
        await runtime.start()
        logger.info("Starlette app started - orchestration services running")
        try:
            yield
        finally:
            logger.info("Shutdown signal received - stopping orchestration services")
            await runtime.stop()

    routes = [
        Route("/health", health_check, methods=["GET"]),
        Route("/status", status_endpoint, methods=["GET"]),
    ]

    app = Starlette(routes=routes, lifespan=lifespan)
    app.state.runtime = runtime

    async def not_found_handler(request, _exc):
        logger.warning(
            "404 Not Found - method=%s path=%s",
            request.method,
            request.url.path,
        )
        return Response("Not Found", status_code=404)

    app.add_exception_handler(404, not_found_handler)

    @app.middleware("http")
    async def log_requests(request, call_next):
        start_time = time.time()
        try:
            response = await call_next(request)
        except Exception:
            logger.error(
                "%s %s failed after %.4fs",
                request.method,
                request.url.path,
                time.time() - start_time,
                exc_info=True,
            )
            raise
        logger.debug(
            "%s %s -> %s in %.4fs",
            request.method,
            request.url.path,
            response.status_code,
            time.time() - start_time,
        )
        return response

    return app
