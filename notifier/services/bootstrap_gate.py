"""
Bootstrap-aware watches over mutation feed paths.

A freshly opened subscription reports every existing child as if it had just
been added. The gate keeps those from reaching domain handlers: each watched
path stays closed until one full read of the path has resolved, and children
present in that read are never delivered as new.

Each path owns a FIFO queue drained by a single worker, so handlers for one
path run one at a time in feed order while different paths proceed
concurrently.
"""

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

import structlog

from notifier.domain.models import ChangeEvent, ChangeKind
from notifier.services.mutation_feed import MutationFeed, Subscription, join_path, normalize_path
from notifier.services.runtime import TaskSupervisor

logger = structlog.get_logger(__name__)

EventHandler = Callable[[ChangeEvent], Awaitable[None]]


class WatchedNode:
    """Per-path watch state: bootstrap flag, baseline keys and delivery queue."""

    def __init__(
        self,
        path: str,
        on_added: EventHandler | None = None,
        on_changed: EventHandler | None = None,
        on_removed: EventHandler | None = None,
    ) -> None:
        self.path = path
        self.handlers: dict[ChangeKind, EventHandler | None] = {
            ChangeKind.ADDED: on_added,
            ChangeKind.CHANGED: on_changed,
            ChangeKind.REMOVED: on_removed,
        }
        self.bootstrapped = False
        self.known_keys: set[str] = set()
        self.queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()
        self.subscription: Subscription | None = None
        self.worker: asyncio.Task[None] | None = None
        self.delivered = 0
        self.suppressed = 0

    def mark_bootstrapped(self, known_keys: set[str]) -> None:
        self.known_keys = set(known_keys)
        self.bootstrapped = True

    def handler_for(self, event: ChangeEvent) -> EventHandler | None:
        return self.handlers.get(event.kind)

    def offer(self, event: ChangeEvent) -> None:
        """Feed callback. Never runs domain logic itself; it only filters and enqueues."""
        if not self.bootstrapped:
            self.suppressed += 1
            return

        if event.kind is ChangeKind.ADDED and event.key in self.known_keys:
            # Existing child replayed by the feed after the initial read resolved.
            self.known_keys.discard(event.key)
            self.suppressed += 1
            return
        if event.kind is ChangeKind.REMOVED:
            self.known_keys.discard(event.key)

        if self.handler_for(event) is None:
            return

        self.queue.put_nowait(event)

    def status(self) -> dict[str, Any]:
        return {
            "bootstrapped": self.bootstrapped,
            "delivered": self.delivered,
            "suppressed": self.suppressed,
            "queued": self.queue.qsize(),
        }


class NestedCollections:
    """
    Sub-collection keys last seen under each child of one watched parent.

    For ``/chats`` with sub-collection ``messages`` this remembers, per chat,
    which message keys already exist, so a changed chat yields only the
    messages that are new since the previous value of that chat.
    """

    def __init__(self, parent: str, subpaths: Mapping[str, EventHandler]) -> None:
        self.parent = parent
        self.subpaths = dict(subpaths)
        self.seen: dict[str, dict[str, set[str]]] = {}

    def seed(self, snapshot: Mapping[str, Any]) -> None:
        self.seen = {key: self._keys(value) for key, value in snapshot.items()}

    def forget(self, key: str) -> None:
        self.seen.pop(key, None)

    def new_records(self, event: ChangeEvent) -> list[tuple[EventHandler, ChangeEvent]]:
        """Records under ``event``'s child that were not there last time, in feed order."""
        previous = self.seen.get(event.key, {})
        records = []
        for subpath, handler in self.subpaths.items():
            nested = self._nested(event.value, subpath)
            path = join_path(self.parent, event.key, subpath)
            known = previous.get(subpath, set())
            for key, value in nested.items():
                if key not in known:
                    record = ChangeEvent(kind=ChangeKind.ADDED, path=path, key=key, value=value)
                    records.append((handler, record))
        self.seen[event.key] = self._keys(event.value)
        return records

    def _keys(self, value: Any) -> dict[str, set[str]]:
        return {subpath: set(self._nested(value, subpath)) for subpath in self.subpaths}

    @staticmethod
    def _nested(value: Any, subpath: str) -> dict[str, Any]:
        nested = value.get(subpath) if isinstance(value, dict) else None
        return nested if isinstance(nested, dict) else {}


class BootstrapGate:
    """
    Owns every WatchedNode and the workers that deliver their events.

    Handlers run inside the TaskSupervisor error boundary, so a failing handler
    is logged and recorded and the next event on the same path still runs.
    """

    def __init__(self, feed: MutationFeed, supervisor: TaskSupervisor | None = None) -> None:
        self.feed = feed
        self.supervisor = supervisor or TaskSupervisor()
        self.nodes: dict[str, WatchedNode] = {}
        self.nested: dict[str, NestedCollections] = {}
        self.logger = logger.bind(component="bootstrap_gate")

    async def watch(
        self,
        path: str,
        on_added: EventHandler | None = None,
        on_changed: EventHandler | None = None,
        on_removed: EventHandler | None = None,
        on_snapshot: Callable[[dict[str, Any]], None] | None = None,
    ) -> WatchedNode:
        """
        Start watching ``path``.

        The gate subscribes, then reads the path once and opens only after the
        read resolves. ``on_snapshot`` receives that read before the first
        event is let through.
        """
        path = normalize_path(path)
        if path in self.nodes:
            return self.nodes[path]

        node = WatchedNode(path, on_added, on_changed, on_removed)
        self.nodes[path] = node
        node.worker = asyncio.create_task(self._drain(node), name=f"watch:{path}")

        try:
            node.subscription = await self.feed.subscribe(path, node.offer)
            snapshot = await self.feed.children(path)
            if on_snapshot is not None:
                on_snapshot(snapshot)
            node.mark_bootstrapped(set(snapshot))
        except Exception:
            await self._discard(node)
            raise

        self.logger.info(
            "watch_bootstrapped",
            path=path,
            existing_children=len(node.known_keys),
            suppressed=node.suppressed,
        )
        return node

    async def watch_children(
        self, parent: str, subpaths: Mapping[str, EventHandler]
    ) -> WatchedNode:
        """
        Deliver records added to ``parent/{key}/{subpath}`` for every child ``key``.

        ``subpaths`` maps each sub-collection name to its child-added handler.

        One subscription on ``parent`` covers every child. Each added or
        changed child is diffed against the sub-collection keys it had before,
        starting from the bootstrap read, and only records that were not
        there yet reach the handler. A removed child's baseline is dropped.
        """
        parent = normalize_path(parent)
        if parent in self.nodes:
            return self.nodes[parent]
        collections = NestedCollections(parent, subpaths)

        async def on_parent_event(event: ChangeEvent) -> None:
            for handler, record in collections.new_records(event):
                await self.supervisor.run(
                    f"{record.kind.value}:{record.path}/{record.key}", handler(record)
                )

        async def on_parent_removed(event: ChangeEvent) -> None:
            collections.forget(event.key)

        node = await self.watch(
            parent,
            on_added=on_parent_event,
            on_changed=on_parent_event,
            on_removed=on_parent_removed,
            on_snapshot=collections.seed,
        )
        self.nested[parent] = collections
        return node

    async def _drain(self, node: WatchedNode) -> None:
        while True:
            event = await node.queue.get()
            try:
                handler = node.handler_for(event)
                if handler is not None:
                    await self.supervisor.run(
                        f"{event.kind.value}:{node.path}/{event.key}", handler(event)
                    )
                    node.delivered += 1
            finally:
                node.queue.task_done()
    async def drain(self, timeout: float | None = None) -> bool:
        """Wait until every queued event has been handled. False on timeout."""
        try:
            await asyncio.wait_for(
                asyncio.gather(*(node.queue.join() for node in list(self.nodes.values()))),
                timeout=timeout,
            )
        except TimeoutError:
            pending = sum(node.queue.qsize() for node in self.nodes.values())
            self.logger.warning("drain_timeout", pending_events=pending)
            return False
        return True

    def unsubscribe(self) -> None:
        """Stop accepting feed events; already queued events still get handled."""
        for node in self.nodes.values():
            if node.subscription is not None:
                node.subscription.close()
                node.subscription = None

    async def close(self) -> None:
        for node in list(self.nodes.values()):
            await self._discard(node)
        self.logger.info("watches_closed")

    def status(self) -> dict[str, dict[str, Any]]:
        report = {path: node.status() for path, node in self.nodes.items()}
        for path, collections in self.nested.items():
            if path in report:
                report[path]["tracked_children"] = len(collections.seen)
        return report

    async def _discard(self, node: WatchedNode) -> None:
        self.nodes.pop(node.path, None)
        self.nested.pop(node.path, None)
        if node.subscription is not None:
            node.subscription.close()
            node.subscription = None
        if node.worker is not None:
            node.worker.cancel()
            await asyncio.gather(node.worker, return_exceptions=True)
            node.worker = None
