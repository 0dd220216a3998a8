"""Maps domain user ids to device routing ids stored under /users."""

from typing import Any

import structlog

from notifier.services.mutation_feed import MutationFeed, join_path

logger = structlog.get_logger(__name__)


class RecipientResolver:
    """
    Single point lookup of ``/users/{user_id}/{routing_field}``.

    Absence is normal (users who never opened the app have no device binding),
    so every miss, malformed value or failed read comes back as None. Lookup
    failures are logged here and never reach the caller.
    """

    def __init__(self, feed: MutationFeed, routing_field: str = "oneSignalPlayerId") -> None:
        self.feed = feed
        self.routing_field = routing_field
        self.logger = logger.bind(component="recipient_resolver")

    async def resolve_routing_id(self, user_id: Any) -> str | None:
        if not isinstance(user_id, str) or not user_id.strip():
            return None

        path = join_path("users", user_id.strip(), self.routing_field)
        try:
            value = await self.feed.get(path)
        except Exception as e:
            self.logger.error("recipient_lookup_failed", user_id=user_id, error=str(e))
            return None

        if not isinstance(value, str) or not value.strip():
            self.logger.warning("routing_id_missing", user_id=user_id)
            return None
        return value.strip()
