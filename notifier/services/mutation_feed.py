"""
Mutation feed contract and an in-memory implementation.

The notifier only needs four operations from the hierarchical store: a point
read, an ordered read of a collection, a partial field update and a
subscription to child events. Everything else (durability, queries, auth) is
the store's business.

Subscription callbacks are plain functions invoked on the event loop thread.
Implementations whose client library delivers events on other threads must
hop back to the loop before calling them.
"""

import asyncio
import copy
import itertools
from collections.abc import Callable
from typing import Any, Protocol

import structlog

from notifier.domain.models import ChangeEvent, ChangeKind

logger = structlog.get_logger(__name__)

EventCallback = Callable[[ChangeEvent], None]


def split_path(path: str) -> list[str]:
    return [segment for segment in path.strip().split("/") if segment]


def normalize_path(path: str) -> str:
    return "/" + "/".join(split_path(path))


def join_path(*parts: str) -> str:
    return normalize_path("/".join(parts))


class Subscription(Protocol):
    def close(self) -> None: ...


class MutationFeed(Protocol):
    """
    Protocol for the store the notifier watches.

    Implemented structurally by the Firebase adapter and the in-memory feed.
    """

    async def get(self, path: str) -> Any:
        """Current value at ``path``, or None if nothing is stored there."""
        ...

    async def children(self, path: str) -> dict[str, Any]:
        """Ordered key -> value mapping of the children of ``path``."""
        ...

    async def update(self, path: str, fields: dict[str, Any]) -> None:
        """Set only the given fields under ``path``, leaving siblings untouched."""
        ...

    async def subscribe(self, path: str, callback: EventCallback) -> Subscription:
        """Deliver child added, changed and removed events for ``path`` to ``callback``."""
        ...


class _InMemorySubscription:
    def __init__(self, feed: "InMemoryMutationFeed", path: str, callback: EventCallback) -> None:
        self._feed = feed
        self.path = path
        self.callback = callback
        self.closed = False

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._feed._subscriptions.remove(self)


class InMemoryMutationFeed:
    """
    Dictionary-backed feed with the same event semantics as the realtime database.

    Writes are diffed against every subscribed path they touch: new keys emit
    child-added, keys whose value differs emit child-changed and vanished keys
    emit child-removed with their last value. Like the hosted database, a new
    subscription is replayed the existing children as child-added, delivered on
    the next loop iteration.
    """

    def __init__(
        self, initial: dict[str, Any] | None = None, replay_existing: bool = True
    ) -> None:
        self._root: dict[str, Any] = copy.deepcopy(initial) if initial else {}
        self._subscriptions: list[_InMemorySubscription] = []
        self._replay_existing = replay_existing
        self._push_ids = itertools.count(1)
        self.updates: list[tuple[str, dict[str, Any]]] = []
        self.logger = logger.bind(component="in_memory_feed")

    async def get(self, path: str) -> Any:
        return copy.deepcopy(self._lookup(split_path(path)))

    async def children(self, path: str) -> dict[str, Any]:
        value = self._lookup(split_path(path))
        return copy.deepcopy(value) if isinstance(value, dict) else {}

    async def update(self, path: str, fields: dict[str, Any]) -> None:
        self.updates.append((normalize_path(path), dict(fields)))
        self._write(split_path(path), lambda node: node.update(copy.deepcopy(fields)))

    async def subscribe(self, path: str, callback: EventCallback) -> Subscription:
        path = normalize_path(path)
        subscription = _InMemorySubscription(self, path, callback)
        self._subscriptions.append(subscription)

        if self._replay_existing:
            loop = asyncio.get_running_loop()
            for key, value in self._children_now(path).items():
                event = ChangeEvent(kind=ChangeKind.ADDED, path=path, key=key, value=value)
                loop.call_soon(self._deliver, subscription, event)

        self.logger.debug("subscribed", path=path)
        return subscription

    async def set(self, path: str, value: Any) -> None:
        """Replace the value at ``path`` (None deletes it)."""
        segments = split_path(path)
        if not segments:
            raise ValueError("Cannot replace the root of the feed")
        parent, key = segments[:-1], segments[-1]

        def replace(node: dict[str, Any]) -> None:
            if value is None:
                node.pop(key, None)
            else:
                node[key] = copy.deepcopy(value)

        self._write(parent, replace)

    async def push(self, path: str, value: Any) -> str:
        """Append ``value`` under a new ordered key and return the key."""
        key = f"-N{next(self._push_ids):08d}"
        await self.set(join_path(path, key), value)
        return key

    def _lookup(self, segments: list[str]) -> Any:
        node: Any = self._root
        for segment in segments:
            if not isinstance(node, dict) or segment not in node:
                return None
            node = node[segment]
        return node

    def _write(self, segments: list[str], mutate: Callable[[dict[str, Any]], None]) -> None:
        affected = [
            s
            for s in self._subscriptions
            if _overlaps(split_path(s.path), segments)
        ]
        before = {id(s): self._children_now(s.path) for s in affected}

        node = self._root
        for segment in segments:
            child = node.get(segment)
            if not isinstance(child, dict):
                child = {}
                node[segment] = child
            node = child
        mutate(node)

        for subscription in affected:
            after = self._children_now(subscription.path)
            previous = before[id(subscription)]
            for key, value in after.items():
                if key not in previous:
                    kind = ChangeKind.ADDED
                elif previous[key] != value:
                    kind = ChangeKind.CHANGED
                else:
                    continue
                self._deliver(
                    subscription,
                    ChangeEvent(
                        kind=kind, path=subscription.path, key=key, value=copy.deepcopy(value)
                    ),
                )
            for key, value in previous.items():
                if key not in after:
                    self._deliver(
                        subscription,
                        ChangeEvent(
                            kind=ChangeKind.REMOVED, path=subscription.path, key=key, value=value
                        ),
                    )

    def _children_now(self, path: str) -> dict[str, Any]:
        value = self._lookup(split_path(path))
        return copy.deepcopy(value) if isinstance(value, dict) else {}

    def _deliver(self, subscription: _InMemorySubscription, event: ChangeEvent) -> None:
        if not subscription.closed:
            subscription.callback(event)


def _overlaps(a: list[str], b: list[str]) -> bool:
    """True if one path is a prefix of the other."""
    shortest = min(len(a), len(b))
    return a[:shortest] == b[:shortest]
