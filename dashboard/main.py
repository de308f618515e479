"""FastAPI application serving the sensor dashboard REST API and push channel."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dashboard.config import Settings, get_settings
from dashboard.observability import configure_observability
from dashboard.routers import devices as devices_router
from dashboard.routers import history as history_router
from dashboard.routers import mqtt as mqtt_router
from dashboard.routers import root as root_router
from dashboard.routers import stream as stream_router
from dashboard.services.broadcaster import Broadcaster
from dashboard.services.ingestion import ActivityTicker, IngestionStrategy, create_ingestion
from dashboard.services.state import DashboardState
from dashboard.services.storage import StorageError, create_sink

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    sink = create_sink(settings.storage)
    broadcaster = Broadcaster(send_timeout=settings.push_send_timeout_seconds)
    state = DashboardState.for_mode(settings.ingestion_mode, sink=sink, broadcaster=broadcaster)
    source = create_ingestion(settings, state)
    ticker = ActivityTicker(state, source, settings.activity_interval_seconds)
    source.start()
    ticker.start()

    app.state.dashboard = state
    app.state.ingestion = source
    app.state.activity_ticker = ticker
    logger.info(
        "Dashboard backend started (ingestion=%s, storage=%s)",
        settings.ingestion_mode,
        settings.storage.backend,
    )

    try:
        yield
    finally:
        ticker_task: ActivityTicker | None = getattr(app.state, "activity_ticker", None)
        if ticker_task:
            await ticker_task.stop()
        ingestion: IngestionStrategy | None = getattr(app.state, "ingestion", None)
        if ingestion:
            await ingestion.stop()
        await state.broadcaster.close()
        state.sink.close()
        logger.info("Dashboard backend stopped")


async def _storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    logger.error("Storage failure serving %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title="Sensor Dashboard", version=settings.service_version, lifespan=lifespan)
    app.state.settings = settings
    configure_observability(
        app,
        service_name=settings.otel_service_name,
        service_version=settings.service_version,
        log_level=settings.log_level,
        otel_enabled=settings.otel_enabled,
        otlp_endpoint=settings.otel_exporter_otlp_endpoint,
        otlp_headers=settings.otel_exporter_otlp_headers,
        otel_sample_ratio=settings.otel_sample_ratio,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    app.add_exception_handler(StorageError, _storage_error_handler)

    app.include_router(root_router.router)
    app.include_router(devices_router.router)
    app.include_router(history_router.router)
    app.include_router(mqtt_router.router)
    app.include_router(stream_router.router)
    return app


app = create_app()


def run() -> None:  # pragma: no cover
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":  # pragma: no cover
    run()
