"""Shared fixtures: an in-memory store with device bindings and a recording delivery worker."""

import json
from typing import Any

import httpx
import pytest

from notifier.services.dispatcher import NotificationDispatcher
from notifier.services.mutation_feed import InMemoryMutationFeed
from notifier.services.recipients import RecipientResolver

ENDPOINT_URL = "https://delivery.test/send"

USERS = {
    "doc1": {"oneSignalPlayerId": "player-doc1", "name": "Abel"},
    "pat1": {"oneSignalPlayerId": "player-pat1"},
    "pat2": {"oneSignalPlayerId": "player-pat2"},
    "u1": {"oneSignalPlayerId": "player-u1"},
    "u2": {"oneSignalPlayerId": "player-u2"},
    "u3": {"oneSignalPlayerId": "player-u3"},
    "ghost": {"name": "never opened the app"},
}


class RecordingEndpoint:
    """httpx MockTransport handler standing in for the delivery worker."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.failing: set[str] = set()
        self.status_code = 200

    def __call__(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        if payload.get("playerId") in self.failing:
            return httpx.Response(500, json={"error": "boom"})
        self.sent.append(payload)
        return httpx.Response(self.status_code, json={"id": f"n{len(self.sent)}"})

    def players(self) -> list[str]:
        return [payload["playerId"] for payload in self.sent]


@pytest.fixture
def endpoint() -> RecordingEndpoint:
    return RecordingEndpoint()


@pytest.fixture
def feed() -> InMemoryMutationFeed:
    return InMemoryMutationFeed({"users": USERS})


@pytest.fixture
def dispatcher(feed: InMemoryMutationFeed, endpoint: RecordingEndpoint) -> NotificationDispatcher:
    client = httpx.AsyncClient(transport=httpx.MockTransport(endpoint))
    return NotificationDispatcher(ENDPOINT_URL, RecipientResolver(feed), client=client)
