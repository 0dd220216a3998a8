"""
Notification service: wires the feed to routers, reminders and delivery.

Lifecycle:
1. ``start()`` bootstraps every routed path and launches the reminder loop;
   routes that fail to bootstrap keep being retried in the background
2. Feed events flow through the bootstrap gate into supervised handlers
3. ``stop()`` stops the scheduler, closes watches, drains queued events
   within ``shutdown_drain_seconds`` and closes the delivery client
"""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import structlog

from notifier.config import AppConfig, get_config
from notifier.services.bootstrap_gate import BootstrapGate
from notifier.services.dispatcher import NotificationDispatcher
from notifier.services.mutation_feed import MutationFeed
from notifier.services.recipients import RecipientResolver
from notifier.services.reminders import ReminderScheduler, epoch_millis
from notifier.services.routers import DomainRouters
from notifier.services.runtime import TaskSupervisor

logger = structlog.get_logger(__name__)


class NotificationService:
    """
    Main service that orchestrates the notification pipeline.

    Combines:
    - Bootstrap-gated watches over the routed collections
    - Domain routing rules for appointments, files, chats and payments
    - The periodic appointment reminder scan
    - Push delivery through the external worker
    """

    def __init__(
        self,
        feed: MutationFeed,
        config: AppConfig | None = None,
        dispatcher: NotificationDispatcher | None = None,
        clock: Callable[[], int] = epoch_millis,
    ) -> None:
        self.config = config or get_config()
        self.feed = feed
        self.logger = logger.bind(component="notification_service")

        self.supervisor = TaskSupervisor()
        self.gate = BootstrapGate(feed, self.supervisor)
        self.resolver = RecipientResolver(feed, self.config.reminders.routing_id_field)
        self.dispatcher = dispatcher or NotificationDispatcher(
            self.config.delivery.endpoint_url,
            self.resolver,
            timeout_seconds=self.config.delivery.timeout_seconds,
            routing_key=self.config.delivery.routing_key,
        )
        self.routers = DomainRouters(
            self.gate,
            self.dispatcher,
            self.supervisor,
            support_contact=self.config.reminders.support_contact,
        )
        self.scheduler = ReminderScheduler(
            feed,
            self.dispatcher,
            self.supervisor,
            interval_seconds=self.config.reminders.scan_interval_seconds,
            clock=clock,
        )

        self.started_at: datetime | None = None
        self.unavailable_paths: list[str] = []
        self._scheduler_task: asyncio.Task[None] | None = None
        self._retry_task: asyncio.Task[None] | None = None
        self._stop_requested = asyncio.Event()
        self._is_running = False

    @property
    def is_running(self) -> bool:
        return self._is_running

    async def start(self) -> None:
        if self._is_running:
            return
        self.logger.info("notification_service_starting")

        self.unavailable_paths = await self.routers.register()
        self._scheduler_task = asyncio.create_task(
            self.scheduler.run_forever(), name="reminder-scheduler"
        )
        if self.unavailable_paths:
            self._retry_task = asyncio.create_task(
                self._retry_unavailable_routes(), name="route-retry"
            )
        self._is_running = True
        self.started_at = datetime.now(UTC)

        self.logger.info(
            "notification_service_started",
            watched_paths=len(self.gate.nodes),
            unavailable_paths=self.unavailable_paths,
        )

    async def _retry_unavailable_routes(self) -> None:
        while self.unavailable_paths:
            await asyncio.sleep(self.config.route_retry_seconds)
            self.unavailable_paths = await self.routers.register(self.unavailable_paths)
            if self.unavailable_paths:
                self.logger.warning("routes_still_unavailable", paths=self.unavailable_paths)
            else:
                self.logger.info("all_routes_watched", watched_paths=len(self.gate.nodes))

    def request_stop(self) -> None:
        """Signal-safe stop request; ``wait_stopped()`` returns once it is set."""
        self._stop_requested.set()

    async def wait_stopped(self) -> None:
        await self._stop_requested.wait()

    async def stop(self) -> None:
        """Gracefully stop the notification service."""
        if not self._is_running:
            return
        self.logger.info("stopping_notification_service")
        self._is_running = False

        self.scheduler.stop()
        if self._retry_task is not None:
            self._retry_task.cancel()
            await asyncio.gather(self._retry_task, return_exceptions=True)
            self._retry_task = None
        if self._scheduler_task is not None:
            self._scheduler_task.cancel()
            await asyncio.gather(self._scheduler_task, return_exceptions=True)
            self._scheduler_task = None

        self.gate.unsubscribe()
        drained = await self.gate.drain(timeout=self.config.shutdown_drain_seconds)
        await self.gate.close()
        await self.dispatcher.aclose()

        self._stop_requested.set()
        self.logger.info("notification_service_stopped", drained=drained)

    def health(self) -> dict[str, Any]:
        last_scan = self.scheduler.last_report
        watches = self.gate.status()
        healthy = (
            self._is_running
            and not self.unavailable_paths
            and all(w["bootstrapped"] for w in watches.values())
        )
        return {
            "status": "ok" if healthy else "degraded",
            "running": self._is_running,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "watches": watches,
            "unavailable_paths": self.unavailable_paths,
            "last_scan": last_scan.model_dump(mode="json") if last_scan else None,
            "tasks": {
                "succeeded": self.supervisor.success_count,
                "failed": self.supervisor.failure_count,
                "recent_failures": [
                    o.model_dump(mode="json") for o in self.supervisor.recent_failures(limit=10)
                ],
            },
            "deliveries": {
                "delivered": self.dispatcher.delivered_count,
                "skipped": self.dispatcher.skipped_count,
                "failed": self.dispatcher.failed_count,
            },
        }
