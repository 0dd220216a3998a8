"""
Process entry point: ``python -m notifier`` or the ``notifier`` console script.

Loads configuration (fatal if the service account is missing), connects to
the realtime database and runs the notification service alongside the
health endpoint until SIGINT or SIGTERM.
"""

import asyncio
import contextlib
import signal
import sys

import structlog

from adapters.firebase.feed import FirebaseMutationFeed
from notifier.config import AppConfig, ConfigurationError, config_summary, validate_config
from notifier.health import build_health_server
from notifier.services.notification_service import NotificationService
from notifier.services.runtime import configure_logging

logger = structlog.get_logger(__name__)


async def run(config: AppConfig) -> None:
    feed = FirebaseMutationFeed.from_config(config.firebase)
    service = NotificationService(feed, config)
    health_task: asyncio.Task[None] | None = None

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, service.request_stop)

    try:
        if config.health.enabled:
            server = build_health_server(service, config.health)
            health_task = asyncio.create_task(server.serve(), name="health-server")
            logger.info("health_server_started", host=config.health.host, port=config.health.port)

        await service.start()
        await service.wait_stopped()
        logger.info("shutdown_requested")
    finally:
        if health_task is not None:
            server.should_exit = True
            await asyncio.gather(health_task, return_exceptions=True)
        await service.stop()
        feed.close()


def main() -> None:
    try:
        config = validate_config()
    except ConfigurationError as e:
        logger.error("configuration_invalid", error=str(e))
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    configure_logging(config.logging.level, config.logging.format)
    logger.info("notifier_starting", **config_summary(config))

    try:
        asyncio.run(run(config))
    except KeyboardInterrupt:
        pass
    logger.info("notifier_stopped")


if __name__ == "__main__":
    main()
