"""
Appointment reminders ahead of session start.

Every scan re-reads the whole appointments collection, so the scheduler
itself is stateless between cycles. What keeps a reminder from repeating is
the per-threshold flag written back onto the appointment.

Delivery semantics: at-least-once. For each threshold the notifications go
out first and the flag is persisted afterwards. If the process dies between
the two, or the flag write fails, the next scan sends the reminder again.
"""

import asyncio
import time
from collections.abc import Callable
from typing import Any

import structlog
from pydantic import ValidationError

from notifier.domain.models import (
    Appointment,
    NotificationIntent,
    ReminderThreshold,
    ScanReport,
)
from notifier.services.dispatcher import NotificationDispatcher
from notifier.services.mutation_feed import MutationFeed, join_path
from notifier.services.runtime import TaskSupervisor

logger = structlog.get_logger(__name__)

APPOINTMENTS_PATH = "/appointments"
MINUTE_MILLIS = 60_000

# Evaluated in this order for every appointment on every scan.
DEFAULT_THRESHOLDS: tuple[ReminderThreshold, ...] = (
    ReminderThreshold(
        window_millis=20 * MINUTE_MILLIS,
        flag_name="reminder20Sent",
        patient_title="⏰ Appointment in 20 minutes",
        patient_body="Your appointment with {doctor} starts in {minutes} minutes.",
        doctor_title="⏰ Upcoming Session",
        doctor_body="Your session with {patient} starts in {minutes} minutes.",
    ),
    ReminderThreshold(
        window_millis=10 * MINUTE_MILLIS,
        flag_name="reminder10Sent",
        patient_title="⏰ Appointment in 10 minutes",
        patient_body="Your appointment with {doctor} starts in {minutes} minutes. Get ready!",
        doctor_title="⏰ Session Starting Soon",
        doctor_body="Your session with {patient} starts in {minutes} minutes.",
    ),
)

INACTIVE_STATUSES = frozenset({"cancelled", "canceled", "rejected"})


def epoch_millis() -> int:
    return int(time.time() * 1000)


class ReminderScheduler:
    """
    Fixed-interval scanner firing each (appointment, threshold) reminder once.

    Appointments are processed concurrently and independently: one broken
    record is logged and counted as failed, the rest of the scan continues.
    """

    def __init__(
        self,
        feed: MutationFeed,
        dispatcher: NotificationDispatcher,
        supervisor: TaskSupervisor | None = None,
        thresholds: tuple[ReminderThreshold, ...] = DEFAULT_THRESHOLDS,
        interval_seconds: float = 60.0,
        clock: Callable[[], int] = epoch_millis,
        path: str = APPOINTMENTS_PATH,
    ) -> None:
        self.feed = feed
        self.dispatcher = dispatcher
        self.supervisor = supervisor or TaskSupervisor()
        self.thresholds = thresholds
        self.interval_seconds = interval_seconds
        self.clock = clock
        self.path = path
        self.last_report: ScanReport | None = None
        self._is_running = False
        self.logger = logger.bind(component="reminder_scheduler")

    async def scan_once(self) -> ScanReport:
        """Run one pass over the appointments collection."""
        start_time = time.perf_counter()
        now = self.clock()

        try:
            appointments = await self.feed.children(self.path)
        except Exception as e:
            self.logger.error("appointments_read_failed", path=self.path, error=str(e))
            report = ScanReport(failed=1, duration_seconds=time.perf_counter() - start_time)
            self.last_report = report
            return report

        async with asyncio.TaskGroup() as task_group:
            tasks = [
                task_group.create_task(
                    self.supervisor.run(f"reminder:{key}", self.process_appointment(key, raw, now))
                )
                for key, raw in appointments.items()
            ]

        report = ScanReport(scanned=len(tasks))
        for task in tasks:
            result = task.result()
            fired = result.unwrap_or(0)
            if result.is_err():
                report.failed += 1
            elif isinstance(fired, int) and fired > 0:
                report.reminders_fired += fired
            else:
                report.skipped += 1

        report.duration_seconds = round(time.perf_counter() - start_time, 3)
        self.last_report = report
        self.logger.info("reminder_scan_completed", **report.model_dump(exclude={"finished_at"}))
        return report

    async def process_appointment(self, key: str, raw: Any, now: int) -> int:
        """Evaluate every threshold for one appointment. Returns how many fired."""
        if not isinstance(raw, dict):
            return 0
        try:
            appointment = Appointment.model_validate(raw)
        except ValidationError as e:
            self.logger.warning("appointment_malformed", appointment_key=key, error=str(e))
            return 0

        if appointment.timestamp is None:
            return 0
        if (appointment.status or "").strip().lower() in INACTIVE_STATUSES:
            return 0

        time_until = appointment.timestamp - now
        fired = 0
        for threshold in self.thresholds:
            if not 0 < time_until <= threshold.window_millis:
                continue
            if appointment.flag(threshold.flag_name):
                continue

            await self._send_threshold(key, appointment, threshold)
            # Persisted only after the notifications above; see module docstring.
            await self.feed.update(join_path(self.path, key), {threshold.flag_name: True})
            fired += 1
            self.logger.info(
                "reminder_threshold_fired",
                appointment_key=key,
                flag=threshold.flag_name,
                minutes_until=round(time_until / MINUTE_MILLIS, 1),
            )
        return fired

    async def _send_threshold(
        self, key: str, appointment: Appointment, threshold: ReminderThreshold
    ) -> None:
        doctor = f"Dr. {appointment.doctor_name}" if appointment.doctor_name else "your doctor"
        intents: list[NotificationIntent] = []
        if appointment.patient_id:
            intents.append(
                NotificationIntent(
                    recipient_id=appointment.patient_id,
                    title=threshold.patient_title,
                    body=threshold.patient_body.format(
                        doctor=doctor, minutes=threshold.minutes
                    ),
                )
            )
        if appointment.doctor_id:
            intents.append(
                NotificationIntent(
                    recipient_id=appointment.doctor_id,
                    title=threshold.doctor_title,
                    body=threshold.doctor_body.format(
                        patient=appointment.patient_name or "your patient",
                        minutes=threshold.minutes,
                    ),
                )
            )

        for intent in intents:
            result = await self.dispatcher.notify(intent)
            if result.is_err():
                self.logger.warning(
                    "reminder_delivery_failed",
                    appointment_key=key,
                    user_id=intent.recipient_id,
                    error=str(result.unwrap_err()),
                )

    async def run_forever(self) -> None:
        """Scan at a fixed interval until ``stop()`` is called or the task is cancelled."""
        self._is_running = True
        self.logger.info("reminder_scheduler_started", interval_seconds=self.interval_seconds)

        try:
            while self._is_running:
                scan_start = time.perf_counter()
                try:
                    await self.scan_once()
                except Exception as e:
                    self.logger.exception("reminder_scan_failed", error=str(e))
                    await asyncio.sleep(min(60, self.interval_seconds * 2))
                    continue

                elapsed = time.perf_counter() - scan_start
                sleep_time = max(0, self.interval_seconds - elapsed)
                if sleep_time > 0:
                    await asyncio.sleep(sleep_time)
                else:
                    self.logger.warning(
                        "reminder_scan_slower_than_interval",
                        elapsed_seconds=round(elapsed, 3),
                        interval_seconds=self.interval_seconds,
                    )
        finally:
            self._is_running = False
            self.logger.info("reminder_scheduler_stopped")

    def stop(self) -> None:
        self._is_running = False
