from __future__ import annotations

from contextlib import asynccontextmanager
from time import perf_counter
from typing import AsyncIterator, Awaitable, Callable, Optional
from uuid import uuid4

from fastapi import FastAPI, Request, Response

from checksync.config import Settings, get_settings
from checksync.logger import get_logger
from checksync.metrics import Metrics
from checksync.routes import gateway, system
from checksync.runtime import FatalHandler, RuntimeController
from checksync.services.fastcgi import FastCGIClient

logger = get_logger("api")


def create_app(
    settings: Optional[Settings] = None,
    *,
    metrics: Optional[Metrics] = None,
    runtime: Optional[RuntimeController] = None,
    fastcgi: Optional[FastCGIClient] = None,
    on_fatal: Optional[FatalHandler] = None,
) -> FastAPI:
    settings = settings or get_settings()
    metrics = metrics or Metrics()
    runtime = runtime or RuntimeController(settings, metrics, on_fatal=on_fatal)
    fastcgi = fastcgi or FastCGIClient(timeout_seconds=settings.fastcgi_timeout_seconds)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info(
            "app.startup",
            "Starting check sync daemon",
            env=settings.app_env,
            version=settings.app_version,
            families=",".join(settings.families) or "-",
        )
        if settings.dont_reload_datadog:
            logger.warning("reload.disabled", "Agent reloads are suppressed (DONT_RELOAD_DATADOG)")
        await runtime.start()
        try:
            yield
        finally:
            await runtime.stop()
            logger.info("app.shutdown", "Shutdown complete")

    app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
    app.state.settings = settings
    app.state.metrics = metrics
    app.state.runtime = runtime
    app.state.fastcgi = fastcgi

    @app.middleware("http")
    async def request_logging(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        request_id = request.headers.get("x-request-id") or str(uuid4())
        route_path = request.url.path
        start = perf_counter()
        with logger.context(request_id=request_id):
            logger.debug("request.start", "Started", method=request.method, path=route_path)
            try:
                response = await call_next(request)
            except Exception as exc:
                duration = perf_counter() - start
                logger.exception(
                    "request.error",
                    "Failed",
                    method=request.method,
                    path=route_path,
                    duration_ms=round(duration * 1000, 1),
                    error_type=type(exc).__name__,
                )
                raise

            duration = perf_counter() - start
            route = request.scope.get("route")
            metrics.observe_http_request(
                method=request.method,
                path=getattr(route, "path", "unmatched"),
                status=response.status_code,
                duration_seconds=duration,
            )
            logger.info(
                "request.complete",
                "Completed",
                method=request.method,
                path=route_path,
                status_code=response.status_code,
                duration_ms=round(duration * 1000, 1),
            )
        return response

    app.include_router(system.router)
    app.include_router(gateway.router)
    return app
