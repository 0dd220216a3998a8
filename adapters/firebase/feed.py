"""
Firebase Realtime Database adapter for the notifier's mutation feed.

firebase-admin exposes a blocking client and a listener that reports raw
``put``/``patch`` stream events on a background thread. This module turns
those into the child added, changed and removed events the notifier consumes:

- Blocking reads and updates run in worker threads (``asyncio.to_thread``)
- Each subscription keeps a local copy of the watched children and diffs
  every stream event against it
- Translated events are handed to the event loop with ``call_soon_threadsafe``

Realtime Database stream semantics:
- The first event on a listener is a ``put`` at ``/`` carrying the full value
- ``put`` at ``/a/b`` replaces the value at that location (None deletes it)
- ``patch`` at ``/a`` carries ``{relative/path: value}`` entries to merge
"""

import asyncio
import copy
import threading
from typing import Any

import firebase_admin
import structlog
from firebase_admin import credentials, db

from notifier.config import FirebaseConfig
from notifier.domain.models import ChangeEvent, ChangeKind
from notifier.services.mutation_feed import EventCallback, normalize_path, split_path
from notifier.services.runtime import FeedError

logger = structlog.get_logger(__name__)


def as_children(value: Any) -> dict[str, Any]:
    """Children of a database value; arrays come back from the SDK as lists."""
    if isinstance(value, dict):
        return {str(k): v for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return {str(i): v for i, v in enumerate(value) if v is not None}
    return {}


def assign(current: Any, segments: list[str], value: Any) -> Any:
    """Copy of ``current`` with ``value`` stored at ``segments``. Empty nodes vanish."""
    if not segments:
        return copy.deepcopy(value)

    node = as_children(current)
    head, rest = segments[0], segments[1:]
    updated = assign(node.get(head), rest, value)
    if updated is None or updated == {}:
        node.pop(head, None)
    else:
        node[head] = updated
    return node or None


class ChildEventTranslator:
    """Per-subscription state machine from stream events to child events."""

    def __init__(self, path: str) -> None:
        self.path = normalize_path(path)
        self.children: dict[str, Any] = {}

    def apply(self, event_type: str, path: str, data: Any) -> list[ChangeEvent]:
        segments = split_path(path)

        if event_type == "put":
            writes = [(segments, data)]
        elif event_type == "patch" and isinstance(data, dict):
            writes = [(segments + split_path(str(field)), value) for field, value in data.items()]
        else:
            return []

        before = dict(self.children)
        touched: list[str] = []
        for write_segments, value in writes:
            if not write_segments:
                self.children = as_children(copy.deepcopy(value))
                for k in [*before, *self.children]:
                    if k not in touched:
                        touched.append(k)
                continue

            key, rest = write_segments[0], write_segments[1:]
            if key not in touched:
                touched.append(key)
            updated = assign(self.children.get(key), rest, value)
            if updated is None or updated == {}:
                self.children.pop(key, None)
            else:
                self.children[key] = updated

        events = []
        for key in touched:
            if key not in self.children:
                if key in before:
                    events.append(
                        ChangeEvent(
                            kind=ChangeKind.REMOVED, path=self.path, key=key, value=before[key]
                        )
                    )
                continue
            current = self.children[key]
            if key not in before:
                kind = ChangeKind.ADDED
            elif before[key] != current:
                kind = ChangeKind.CHANGED
            else:
                continue
            events.append(
                ChangeEvent(kind=kind, path=self.path, key=key, value=copy.deepcopy(current))
            )
        return events


class FirebaseSubscription:
    def __init__(self, registration: Any, path: str) -> None:
        self._registration = registration
        self.path = path
        self._lock = threading.Lock()
        self.closed = False

    def close(self) -> None:
        with self._lock:
            if self.closed:
                return
            self.closed = True
        try:
            self._registration.close()
        except Exception as e:
            logger.warning("firebase_listener_close_failed", path=self.path, error=str(e))


class FirebaseMutationFeed:
    """MutationFeed backed by firebase-admin's Realtime Database client."""

    def __init__(self, app: firebase_admin.App) -> None:
        self.app = app
        self.logger = logger.bind(component="firebase_feed", app=app.name)

    @classmethod
    def from_config(cls, config: FirebaseConfig, name: str = "notifier") -> "FirebaseMutationFeed":
        credential = credentials.Certificate(config.service_account)
        app = firebase_admin.initialize_app(
            credential, {"databaseURL": config.database_url}, name=name
        )
        return cls(app)

    def _ref(self, path: str) -> db.Reference:
        return db.reference(normalize_path(path), app=self.app)

    async def get(self, path: str) -> Any:
        try:
            return await asyncio.to_thread(self._ref(path).get)
        except Exception as e:
            raise FeedError(f"read of {normalize_path(path)} failed: {e}") from e

    async def children(self, path: str) -> dict[str, Any]:
        return as_children(await self.get(path))

    async def update(self, path: str, fields: dict[str, Any]) -> None:
        try:
            await asyncio.to_thread(self._ref(path).update, fields)
        except Exception as e:
            raise FeedError(f"update of {normalize_path(path)} failed: {e}") from e

    async def subscribe(self, path: str, callback: EventCallback) -> FirebaseSubscription:
        path = normalize_path(path)
        loop = asyncio.get_running_loop()
        translator = ChildEventTranslator(path)

        def on_stream_event(event: db.Event) -> None:
            # Runs on the SDK listener thread.
            try:
                changes = translator.apply(event.event_type, event.path, event.data)
            except Exception as e:
                self.logger.error("firebase_event_translation_failed", path=path, error=str(e))
                return
            try:
                for change in changes:
                    loop.call_soon_threadsafe(callback, change)
            except RuntimeError:
                # Event loop already closed during shutdown.
                return

        try:
            registration = await asyncio.to_thread(self._ref(path).listen, on_stream_event)
        except Exception as e:
            raise FeedError(f"subscription to {path} failed: {e}") from e

        self.logger.info("firebase_listener_started", path=path)
        return FirebaseSubscription(registration, path)

    def close(self) -> None:
        firebase_admin.delete_app(self.app)
        self.logger.info("firebase_app_closed")
