"""
Liveness endpoint for the hosting platform.

Usage:
    served in-process by ``python -m notifier`` on ``HOST``:``PORT``
"""

from collections.abc import Iterator
from contextlib import contextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse, PlainTextResponse

from notifier.config import HealthServerConfig
from notifier.services.notification_service import NotificationService

LIVENESS_LINE = "Firebase listener is running."


def create_health_app(service: NotificationService) -> FastAPI:
    app = FastAPI(
        title="Notifier",
        description="Liveness and dispatch state of the notification service",
    )

    @app.get("/", response_class=PlainTextResponse)
    async def root() -> str:
        return LIVENESS_LINE

    @app.get("/health")
    async def health() -> JSONResponse:
        """Per-path bootstrap state, last reminder scan and task outcome counts."""
        report = service.health()
        return JSONResponse(report, status_code=200 if report["status"] == "ok" else 503)

    return app


class HealthServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the notifier's own loop."""

    @contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield

    def install_signal_handlers(self) -> None:
        pass


def build_health_server(service: NotificationService, config: HealthServerConfig) -> HealthServer:
    server_config = uvicorn.Config(
        create_health_app(service),
        host=config.host,
        port=config.port,
        log_config=None,
        access_log=False,
    )
    return HealthServer(server_config)
