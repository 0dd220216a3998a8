"""
Tests for the Firebase Realtime Database adapter.

The stream translator is pure and tested directly. The feed itself is tested
with firebase_admin.db patched out, including delivery of listener callbacks
from a foreign thread.
"""

import asyncio
import threading
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from adapters.firebase.feed import (
    ChildEventTranslator,
    FirebaseMutationFeed,
    FirebaseSubscription,
    as_children,
    assign,
)
from notifier.config import FirebaseConfig
from notifier.domain.models import ChangeEvent, ChangeKind
from notifier.services.runtime import FeedError


def kinds(events: list[ChangeEvent]) -> list[tuple[ChangeKind, str]]:
    return [(e.kind, e.key) for e in events]


class TestTreeHelpers:
    def test_as_children(self) -> None:
        assert as_children({"a": 1, "b": None}) == {"a": 1}
        assert as_children(["x", None, "z"]) == {"0": "x", "2": "z"}
        assert as_children("scalar") == {}
        assert as_children(None) == {}

    def test_assign_nested_value(self) -> None:
        current = {"status": "pending", "meta": {"a": 1}}

        updated = assign(current, ["meta", "b"], 2)

        assert updated == {"status": "pending", "meta": {"a": 1, "b": 2}}
        assert current == {"status": "pending", "meta": {"a": 1}}

    def test_assign_none_prunes_empty_nodes(self) -> None:
        assert assign({"meta": {"a": 1}}, ["meta", "a"], None) is None
        assert assign({"meta": {"a": 1}, "s": 1}, ["meta", "a"], None) == {"s": 1}


class TestChildEventTranslator:
    def test_initial_put_reports_every_child_as_added(self) -> None:
        translator = ChildEventTranslator("/appointments")

        snapshot = {"a1": {"doctorId": "d1"}, "a2": {"doctorId": "d2"}}

        events = translator.apply("put", "/", snapshot)

        assert kinds(events) == [(ChangeKind.ADDED, "a1"), (ChangeKind.ADDED, "a2")]
        assert events[0].path == "/appointments"
        assert events[0].value == {"doctorId": "d1"}

    def test_put_of_new_child_is_added(self) -> None:
        translator = ChildEventTranslator("/payments")
        translator.apply("put", "/", {"p1": {"status": "pending"}})

        events = translator.apply("put", "/p2", {"status": "pending"})

        assert kinds(events) == [(ChangeKind.ADDED, "p2")]

    def test_nested_put_is_a_change_with_full_child_value(self) -> None:
        translator = ChildEventTranslator("/payments")
        translator.apply("put", "/", {"p1": {"patientId": "u1", "status": "pending"}})

        events = translator.apply("put", "/p1/status", "paid")

        assert kinds(events) == [(ChangeKind.CHANGED, "p1")]
        assert events[0].value == {"patientId": "u1", "status": "paid"}

    def test_patch_merges_fields(self) -> None:
        translator = ChildEventTranslator("/appointments")
        translator.apply("put", "/", {"a1": {"doctorId": "d1"}})

        events = translator.apply("patch", "/a1", {"reminder20Sent": True, "note": None})

        assert kinds(events) == [(ChangeKind.CHANGED, "a1")]
        assert events[0].value == {"doctorId": "d1", "reminder20Sent": True}

    def test_root_patch_can_add_and_change_several_children(self) -> None:
        translator = ChildEventTranslator("/payments")
        translator.apply("put", "/", {"p1": {"status": "pending"}})

        events = translator.apply(
            "patch", "/", {"p1/status": "paid", "p2": {"status": "pending"}}
        )

        assert kinds(events) == [(ChangeKind.CHANGED, "p1"), (ChangeKind.ADDED, "p2")]

    def test_delete_is_removed_and_noop_writes_emit_nothing(self) -> None:
        translator = ChildEventTranslator("/payments")
        translator.apply("put", "/", {"p1": {"status": "paid"}, "p2": {"status": "paid"}})

        removed = translator.apply("put", "/p1", None)

        assert kinds(removed) == [(ChangeKind.REMOVED, "p1")]
        assert removed[0].value == {"status": "paid"}
        assert translator.apply("put", "/p1", None) == []
        assert translator.apply("put", "/p2/status", "paid") == []
        assert translator.apply("keep-alive", "/", None) == []
        assert set(translator.children) == {"p2"}

    def test_readded_child_after_delete_is_added_again(self) -> None:
        translator = ChildEventTranslator("/chats")
        translator.apply("put", "/", {"c1": {"messages": {}}, "c2": {"x": 1}})
        translator.apply("put", "/c2", None)

        events = translator.apply("put", "/c2", {"x": 2})

        assert kinds(events) == [(ChangeKind.ADDED, "c2")]

    def test_root_put_replacing_everything_diffs_children(self) -> None:
        translator = ChildEventTranslator("/payments")
        translator.apply("put", "/", {"p1": {"s": 1}, "p2": {"s": 1}})

        events = translator.apply("put", "/", {"p2": {"s": 2}, "p3": {"s": 1}})

        assert sorted(kinds(events)) == [
            (ChangeKind.ADDED, "p3"),
            (ChangeKind.CHANGED, "p2"),
            (ChangeKind.REMOVED, "p1"),
        ]


@pytest.fixture
def app() -> MagicMock:
    app = MagicMock()
    app.name = "notifier-test"
    return app


class TestFirebaseMutationFeed:
    @pytest.mark.asyncio
    async def test_get_children_and_update_use_the_reference(self, app: MagicMock) -> None:
        ref = MagicMock()
        ref.get.return_value = {"u1": {"oneSignalPlayerId": "p1"}, "gone": None}

        with patch("adapters.firebase.feed.db.reference", return_value=ref) as reference:
            feed = FirebaseMutationFeed(app)
            assert await feed.children("users") == {"u1": {"oneSignalPlayerId": "p1"}}
            await feed.update("/appointments/a1", {"reminder20Sent": True})

        assert reference.call_args_list[0].args == ("/users",)
        assert reference.call_args_list[0].kwargs == {"app": app}
        assert reference.call_args_list[1].args == ("/appointments/a1",)
        ref.update.assert_called_once_with({"reminder20Sent": True})

    @pytest.mark.asyncio
    async def test_sdk_errors_become_feed_errors(self, app: MagicMock) -> None:
        ref = MagicMock()
        ref.get.side_effect = RuntimeError("permission denied")
        ref.update.side_effect = RuntimeError("permission denied")

        with patch("adapters.firebase.feed.db.reference", return_value=ref):
            feed = FirebaseMutationFeed(app)
            with pytest.raises(FeedError, match="read of /users/u1"):
                await feed.get("/users/u1")
            with pytest.raises(FeedError, match="update of /appointments/a1"):
                await feed.update("/appointments/a1", {"reminder10Sent": True})

    @pytest.mark.asyncio
    async def test_listener_events_arrive_on_the_event_loop(self, app: MagicMock) -> None:
        ref = MagicMock()
        listeners: list[Any] = []
        ref.listen.side_effect = lambda callback: listeners.append(callback) or MagicMock()
        received: list[tuple[ChangeEvent, threading.Thread]] = []

        with patch("adapters.firebase.feed.db.reference", return_value=ref):
            feed = FirebaseMutationFeed(app)
            subscription = await feed.subscribe(
                "/payments", lambda event: received.append((event, threading.current_thread()))
            )

        def stream() -> None:
            listeners[0](SimpleNamespace(event_type="put", path="/", data={"p1": {"s": "a"}}))
            listeners[0](SimpleNamespace(event_type="put", path="/p1/s", data="b"))

        sdk_thread = threading.Thread(target=stream)
        sdk_thread.start()
        sdk_thread.join()
        for _ in range(10):
            if len(received) == 2:
                break
            await asyncio.sleep(0.01)

        assert [(e.kind, e.key) for e, _ in received] == [
            (ChangeKind.ADDED, "p1"),
            (ChangeKind.CHANGED, "p1"),
        ]
        assert all(thread is threading.main_thread() for _, thread in received)
        assert isinstance(subscription, FirebaseSubscription)

    @pytest.mark.asyncio
    async def test_failed_listen_is_a_feed_error(self, app: MagicMock) -> None:
        ref = MagicMock()
        ref.listen.side_effect = RuntimeError("auth revoked")

        with patch("adapters.firebase.feed.db.reference", return_value=ref):
            with pytest.raises(FeedError, match="subscription to /payments"):
                await FirebaseMutationFeed(app).subscribe("/payments", lambda event: None)

    def test_subscription_close_is_idempotent_and_safe(self) -> None:
        registration = MagicMock()
        registration.close.side_effect = [RuntimeError("already closed"), None]
        subscription = FirebaseSubscription(registration, "/payments")

        subscription.close()
        subscription.close()

        registration.close.assert_called_once()
        assert subscription.closed

    def test_from_config_initializes_a_named_app(self) -> None:
        config = FirebaseConfig(
            service_account={"type": "service_account", "project_id": "lamed-test"},
            database_url="https://lamed-test.firebaseio.com",
        )
        with (
            patch("adapters.firebase.feed.credentials.Certificate") as certificate,
            patch("adapters.firebase.feed.firebase_admin.initialize_app") as initialize_app,
        ):
            initialize_app.return_value.name = "notifier"
            feed = FirebaseMutationFeed.from_config(config)

        certificate.assert_called_once_with(config.service_account)
        initialize_app.assert_called_once_with(
            certificate.return_value,
            {"databaseURL": "https://lamed-test.firebaseio.com"},
            name="notifier",
        )
        assert feed.app is initialize_app.return_value
