"""
Push delivery through the external notification worker.

One POST per notification, no retries: the worker owns delivery to devices,
this side only hands the message over and records what happened.
"""

from typing import Any

import httpx
import structlog

from notifier.domain.models import DeliveryReceipt, NotificationIntent
from notifier.services.recipients import RecipientResolver
from notifier.services.runtime import DeliveryError, Result

logger = structlog.get_logger(__name__)


class NotificationDispatcher:
    """
    Sends ``(routing id, title, body)`` to the delivery endpoint.

    Failures are isolated per call: transport errors, timeouts, non-2xx
    statuses and non-JSON bodies are logged and returned as ``Result.err``
    so the caller's sibling notifications carry on.
    """

    def __init__(
        self,
        endpoint_url: str,
        resolver: RecipientResolver,
        timeout_seconds: float = 10.0,
        routing_key: str = "playerId",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.endpoint_url = endpoint_url
        self.resolver = resolver
        self.routing_key = routing_key
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._owns_client = client is None
        self.delivered_count = 0
        self.skipped_count = 0
        self.failed_count = 0
        self.logger = logger.bind(component="notification_dispatcher")

    async def dispatch(
        self, routing_id: str | None, title: str, body: str
    ) -> Result[DeliveryReceipt, DeliveryError]:
        if not routing_id:
            self.skipped_count += 1
            return Result.ok(DeliveryReceipt(routing_id=None, status="skipped"))

        payload = {self.routing_key: routing_id, "title": title, "body": body}
        try:
            response = await self._client.post(self.endpoint_url, json=payload)
            response.raise_for_status()
            result: Any = response.json()
        except httpx.TimeoutException as e:
            return self._failed(routing_id, f"delivery timed out: {e!r}")
        except httpx.HTTPStatusError as e:
            return self._failed(
                routing_id, f"delivery rejected with status {e.response.status_code}"
            )
        except httpx.HTTPError as e:
            return self._failed(routing_id, f"delivery transport error: {e!r}")
        except ValueError as e:
            return self._failed(routing_id, f"delivery response is not JSON: {e}")
        except Exception as e:
            return self._failed(routing_id, f"unexpected delivery error: {e!r}")

        self.delivered_count += 1
        self.logger.info("notification_sent", routing_id=routing_id, title=title, result=result)
        return Result.ok(
            DeliveryReceipt(
                routing_id=routing_id,
                status="delivered",
                http_status=response.status_code,
                response=result,
            )
        )

    async def notify(self, intent: NotificationIntent) -> Result[DeliveryReceipt, DeliveryError]:
        """Resolve the recipient's routing id and dispatch; no-op if they have none."""
        routing_id = await self.resolver.resolve_routing_id(intent.recipient_id)
        return await self.dispatch(routing_id, intent.title, intent.body)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _failed(self, routing_id: str, message: str) -> Result[DeliveryReceipt, DeliveryError]:
        self.failed_count += 1
        self.logger.error("notification_delivery_failed", routing_id=routing_id, error=message)
        return Result.err(DeliveryError(message))
