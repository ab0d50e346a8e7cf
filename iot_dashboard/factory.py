from __future__ import annotations

import logging
import threading
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware

from iot_dashboard.api.router import api_router
from iot_dashboard.clients.devices import (
    DeviceDirectory,
    HttpDeviceDirectory,
    StaticDeviceDirectory,
)
from iot_dashboard.core.config import Settings, load_settings
from iot_dashboard.core.logging import configure_logging
from iot_dashboard.repositories.influx import InfluxTelemetryRepository, create_influx_client
from iot_dashboard.services.cache import LatestValueCache
from iot_dashboard.services.connections import ConnectionRegistry
from iot_dashboard.services.fanout import LiveFanout
from iot_dashboard.services.ingestion import IngestionPipeline, TelemetryWriter
from iot_dashboard.services.telemetry import TelemetryService

logger = logging.getLogger(__name__)


def create_device_directory(settings: Settings) -> DeviceDirectory:
    if settings.devices_file is not None:
        return StaticDeviceDirectory.from_file(settings.devices_file)
    if settings.device_api_url is not None:
        return HttpDeviceDirectory(
            base_url=str(settings.device_api_url),
            timeout_seconds=settings.device_api_timeout_seconds,
            token=settings.device_api_token,
        )
    logger.warning("No device directory configured; only an empty device list is available")
    return StaticDeviceDirectory()


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        stop_event: threading.Event | None = None
        bg_thread: threading.Thread | None = None

        app.state.settings = settings
        app.state.influx_client = create_influx_client(settings)
        repo = InfluxTelemetryRepository(
            client=app.state.influx_client,
            org=settings.influx_org,
            bucket=settings.influx_bucket,
            measurement=settings.influx_measurement,
        )
        writer = TelemetryWriter(repo=repo, max_queue_size=settings.writer_queue_size)
        writer.start()

        cache = LatestValueCache()
        fanout = LiveFanout(queue_size=settings.fanout_queue_size)
        pipeline = IngestionPipeline(repo=repo, cache=cache, fanout=fanout, writer=writer)
        registry = ConnectionRegistry(
            pipeline=pipeline,
            client_id_prefix=settings.mqtt_client_id_prefix,
            keepalive_seconds=settings.mqtt_keepalive_seconds,
            reconnect_delay_seconds=settings.mqtt_reconnect_delay_seconds,
        )
        devices = create_device_directory(settings)
        service = TelemetryService(repo=repo, cache=cache, registry=registry, devices=devices)

        app.state.telemetry_repository = repo
        app.state.telemetry_writer = writer
        app.state.latest_cache = cache
        app.state.live_fanout = fanout
        app.state.connection_registry = registry
        app.state.device_directory = devices
        app.state.telemetry_service = service

        if settings.mqtt_connect_on_startup:
            try:
                service.connect_all()
            except Exception:
                logger.exception("Initial MQTT connect-all failed")

        if settings.retention_enabled:
            stop_event = threading.Event()

            def _loop() -> None:
                while stop_event is not None and not stop_event.wait(
                    settings.retention_interval_seconds
                ):
                    try:
                        service.clean_old_data(days=settings.retention_days)
                    except Exception:
                        logger.exception("Retention sweep failed")

            bg_thread = threading.Thread(target=_loop, name="telemetry-retention", daemon=True)
            bg_thread.start()

        yield
        if stop_event is not None:
            stop_event.set()
        if bg_thread is not None and bg_thread.is_alive():
            bg_thread.join(timeout=2.0)
        registry.disconnect_all()
        writer.stop()
        devices.close()
        app.state.influx_client.close()

    docs_enabled = settings.docs_enabled and not settings.is_production
    app = FastAPI(
        title="IoT Dashboard MQTT Bridge",
        version="0.1.0",
        debug=settings.debug,
        docs_url="/docs" if docs_enabled else None,
        redoc_url=None,
        openapi_url="/openapi.json" if docs_enabled else None,
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(GZipMiddleware, minimum_size=1024)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
    )
    if settings.trusted_hosts:
        app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.trusted_hosts)

    @app.middleware("http")
    async def security_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        if settings.is_production:
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=31536000; includeSubDomains"
            )
        return response

    @app.get("/", tags=["meta"])
    def root():
        return {"name": "iot-dashboard-mqtt", "status": "ok"}

    app.include_router(api_router)
    return app
