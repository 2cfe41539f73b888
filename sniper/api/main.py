from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from sniper.api.router import api_router
from sniper.core.config import Settings, get_settings
from sniper.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from sniper.runtime import Runtime, build_runtime

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    runtime_factory: Callable[[Settings], Runtime] = build_runtime,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        telemetry_runtime = setup_telemetry(settings)
        runtime = runtime_factory(settings)
        app.state.runtime = runtime
        app.state.coordinator = runtime.coordinator
        try:
            await runtime.coordinator.start()
            logger.info("pipeline running environment=%s", settings.environment)
            yield
        finally:
            await runtime.coordinator.shutdown()
            app.state.coordinator = None
            shutdown_telemetry(telemetry_runtime)

    app = FastAPI(title=settings.app_name, lifespan=lifespan)

    @app.middleware("http")
    async def request_logging_middleware(request: Request, call_next):
        started_at = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started_at) * 1000.0
        logger.info(
            "http request method=%s path=%s status=%s duration_ms=%.2f",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
        )
        return response

    app.include_router(api_router)
    return app
