"""
Tests for the appointment reminder scheduler.

Covers:
- The 20/10 minute round trip across three scan cycles
- Idempotency over arbitrary clock sequences (property-based)
- Skips: missing timestamp, past sessions, cancelled appointments
- Per-appointment isolation when delivery or flag writes fail
"""

import asyncio
from typing import Any

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from notifier.domain.models import DeliveryReceipt, NotificationIntent
from notifier.services.dispatcher import NotificationDispatcher
from notifier.services.mutation_feed import InMemoryMutationFeed
from notifier.services.reminders import DEFAULT_THRESHOLDS, MINUTE_MILLIS, ReminderScheduler
from notifier.services.runtime import DeliveryError, Result

NOW = 1_700_000_000_000


class FakeDispatcher:
    """Records intents instead of delivering them."""

    def __init__(self, failing: frozenset[str] = frozenset()) -> None:
        self.intents: list[NotificationIntent] = []
        self.failing = failing

    async def notify(self, intent: NotificationIntent) -> Result[DeliveryReceipt, DeliveryError]:
        if intent.recipient_id in self.failing:
            return Result.err(DeliveryError("endpoint down"))
        self.intents.append(intent)
        receipt = DeliveryReceipt(routing_id=f"player-{intent.recipient_id}", status="delivered")
        return Result.ok(receipt)


def appointment(minutes_from_now: float, **fields: Any) -> dict[str, Any]:
    record = {
        "doctorId": "doc1",
        "patientId": "pat1",
        "doctorName": "Abel",
        "patientName": "Liya",
        "timestamp": NOW + int(minutes_from_now * MINUTE_MILLIS),
        "reminder20Sent": False,
        "reminder10Sent": False,
    }
    record.update(fields)
    return record


def make_scheduler(
    feed: InMemoryMutationFeed, dispatcher: Any, clock: list[int]
) -> ReminderScheduler:
    return ReminderScheduler(feed, dispatcher, clock=lambda: clock[0], interval_seconds=0.01)


class TestReminderRoundTrip:
    @pytest.mark.asyncio
    async def test_each_threshold_fires_once_across_cycles(self) -> None:
        feed = InMemoryMutationFeed({"appointments": {"a1": appointment(15)}})
        dispatcher = FakeDispatcher()
        clock = [NOW]
        scheduler = make_scheduler(feed, dispatcher, clock)

        # Cycle 1: 15 minutes out, inside the 20 minute window only.
        report = await scheduler.scan_once()
        assert report.reminders_fired == 1
        assert [(i.recipient_id, i.title) for i in dispatcher.intents] == [
            ("pat1", "⏰ Appointment in 20 minutes"),
            ("doc1", "⏰ Upcoming Session"),
        ]
        assert dispatcher.intents[0].body == "Your appointment with Dr. Abel starts in 20 minutes."
        assert dispatcher.intents[1].body == "Your session with Liya starts in 20 minutes."
        stored = await feed.get("/appointments/a1")
        assert stored["reminder20Sent"] is True
        assert stored["reminder10Sent"] is False

        # Cycle 2: 9 minutes out.
        dispatcher.intents.clear()
        clock[0] = NOW + 6 * MINUTE_MILLIS
        report = await scheduler.scan_once()
        assert report.reminders_fired == 1
        assert [i.title for i in dispatcher.intents] == [
            "⏰ Appointment in 10 minutes",
            "⏰ Session Starting Soon",
        ]
        assert (await feed.get("/appointments/a1"))["reminder10Sent"] is True

        # Cycle 3: nothing left to send.
        dispatcher.intents.clear()
        clock[0] = NOW + 7 * MINUTE_MILLIS
        report = await scheduler.scan_once()
        assert report.reminders_fired == 0
        assert report.skipped == 1
        assert dispatcher.intents == []

    @pytest.mark.asyncio
    async def test_first_scan_inside_both_windows_sends_both(self) -> None:
        feed = InMemoryMutationFeed({"appointments": {"a1": appointment(5)}})
        dispatcher = FakeDispatcher()
        scheduler = make_scheduler(feed, dispatcher, [NOW])

        report = await scheduler.scan_once()

        assert report.reminders_fired == 2
        assert len(dispatcher.intents) == 4
        stored = await feed.get("/appointments/a1")
        assert stored["reminder20Sent"] is True and stored["reminder10Sent"] is True

    @pytest.mark.asyncio
    async def test_flag_is_written_as_a_partial_update(self) -> None:
        feed = InMemoryMutationFeed({"appointments": {"a1": appointment(15, notes="bring x-ray")}})
        scheduler = make_scheduler(feed, FakeDispatcher(), [NOW])

        await scheduler.scan_once()

        assert feed.updates == [("/appointments/a1", {"reminder20Sent": True})]
        assert (await feed.get("/appointments/a1"))["notes"] == "bring x-ray"


@settings(max_examples=50, deadline=None)
@given(
    start_minutes=st.floats(min_value=-5, max_value=40, allow_nan=False),
    steps=st.lists(st.integers(min_value=0, max_value=30 * MINUTE_MILLIS), max_size=12),
)
def test_reminders_fire_at_most_once_per_threshold(start_minutes: float, steps: list[int]) -> None:
    """Property: whatever the scan times, no (appointment, threshold) pair repeats."""

    async def scenario() -> list[NotificationIntent]:
        feed = InMemoryMutationFeed({"appointments": {"a1": appointment(start_minutes)}})
        dispatcher = FakeDispatcher()
        clock = [NOW]
        scheduler = make_scheduler(feed, dispatcher, clock)
        await scheduler.scan_once()
        for step in steps:
            clock[0] += step
            await scheduler.scan_once()
        return dispatcher.intents

    intents = asyncio.run(scenario())

    titles = [(i.recipient_id, i.title) for i in intents]
    assert len(titles) == len(set(titles))
    assert len(intents) <= 2 * len(DEFAULT_THRESHOLDS)


class TestReminderSkips:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "record",
        [
            {"doctorId": "doc1", "patientId": "pat1"},
            appointment(15, timestamp=None),
            appointment(15, timestamp="not a time"),
            appointment(-1),
            appointment(0),
            appointment(45),
            appointment(15, status="cancelled"),
            appointment(15, status="Canceled"),
            appointment(15, reminder20Sent=True),
            "corrupted",
        ],
    )
    async def test_nothing_sent(self, record: Any) -> None:
        feed = InMemoryMutationFeed({"appointments": {"a1": record}})
        dispatcher = FakeDispatcher()
        scheduler = make_scheduler(feed, dispatcher, [NOW])

        report = await scheduler.scan_once()

        assert dispatcher.intents == []
        assert feed.updates == []
        assert report.scanned == 1
        assert report.failed == 0

    @pytest.mark.asyncio
    async def test_numeric_string_timestamp_is_accepted(self) -> None:
        feed = InMemoryMutationFeed(
            {"appointments": {"a1": appointment(15, timestamp=str(NOW + 15 * MINUTE_MILLIS))}}
        )
        dispatcher = FakeDispatcher()

        await make_scheduler(feed, dispatcher, [NOW]).scan_once()

        assert len(dispatcher.intents) == 2

    @pytest.mark.asyncio
    async def test_missing_names_fall_back_to_generic_labels(self) -> None:
        record = appointment(15)
        del record["doctorName"], record["patientName"]
        feed = InMemoryMutationFeed({"appointments": {"a1": record}})
        dispatcher = FakeDispatcher()

        await make_scheduler(feed, dispatcher, [NOW]).scan_once()

        patient_body, doctor_body = (i.body for i in dispatcher.intents)
        assert patient_body == "Your appointment with your doctor starts in 20 minutes."
        assert doctor_body == "Your session with your patient starts in 20 minutes."

    @pytest.mark.asyncio
    async def test_one_sided_appointment_notifies_the_side_it_has(self) -> None:
        record = appointment(15)
        del record["doctorId"]
        feed = InMemoryMutationFeed({"appointments": {"a1": record}})
        dispatcher = FakeDispatcher()

        await make_scheduler(feed, dispatcher, [NOW]).scan_once()

        assert [i.recipient_id for i in dispatcher.intents] == ["pat1"]
        assert (await feed.get("/appointments/a1"))["reminder20Sent"] is True


class TestReminderIsolation:
    @pytest.mark.asyncio
    async def test_delivery_failure_still_marks_and_spares_siblings(self) -> None:
        feed = InMemoryMutationFeed(
            {"appointments": {"a1": appointment(15), "a2": appointment(15, patientId="pat2")}}
        )
        dispatcher = FakeDispatcher(failing=frozenset({"pat1"}))

        report = await make_scheduler(feed, dispatcher, [NOW]).scan_once()

        assert report.reminders_fired == 2
        assert sorted(i.recipient_id for i in dispatcher.intents) == ["doc1", "doc1", "pat2"]

    @pytest.mark.asyncio
    async def test_failing_flag_write_is_counted_and_isolated(self) -> None:
        class FlakyFeed(InMemoryMutationFeed):
            async def update(self, path: str, fields: dict[str, Any]) -> None:
                if path.endswith("/a1"):
                    raise ConnectionError("write rejected")
                await super().update(path, fields)

        feed = FlakyFeed({"appointments": {"a1": appointment(15), "a2": appointment(15)}})
        scheduler = make_scheduler(feed, FakeDispatcher(), [NOW])

        report = await scheduler.scan_once()

        assert report.failed == 1
        assert report.reminders_fired == 1
        assert (await feed.get("/appointments/a2"))["reminder20Sent"] is True
        assert scheduler.supervisor.recent_failures()[0].name == "reminder:a1"

    @pytest.mark.asyncio
    async def test_unreadable_collection_reports_failure(self) -> None:
        class BrokenFeed(InMemoryMutationFeed):
            async def children(self, path: str) -> dict[str, Any]:
                raise ConnectionError("database unreachable")

        report = await make_scheduler(BrokenFeed(), FakeDispatcher(), [NOW]).scan_once()

        assert report.failed == 1
        assert report.scanned == 0


class TestReminderLoop:
    @pytest.mark.asyncio
    async def test_run_forever_scans_until_stopped(self) -> None:
        feed = InMemoryMutationFeed({"appointments": {"a1": appointment(15)}})
        dispatcher = FakeDispatcher()
        scheduler = make_scheduler(feed, dispatcher, [NOW])

        task = asyncio.create_task(scheduler.run_forever())
        await asyncio.sleep(0.05)
        scheduler.stop()
        await asyncio.wait_for(task, timeout=1)

        assert scheduler.last_report is not None
        assert len(dispatcher.intents) == 2

    @pytest.mark.asyncio
    async def test_works_with_the_real_dispatcher(
        self, dispatcher: NotificationDispatcher, feed: InMemoryMutationFeed, endpoint: Any
    ) -> None:
        await feed.set("/appointments/a1", appointment(15))
        scheduler = make_scheduler(feed, dispatcher, [NOW])

        await scheduler.scan_once()

        assert endpoint.players() == ["player-pat1", "player-doc1"]
