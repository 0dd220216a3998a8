"""
Domain routers: raw store records in, notification intents out.

The mapping functions are pure and return zero or more intents. A record
missing the identifier a rule needs maps to no intents at all; that is a
normal skip, not an error. ``DomainRouters`` wires those rules to the
bootstrap gate and hands the intents to the dispatcher.
"""

import asyncio
from collections.abc import Awaitable, Callable, Collection
from typing import Any, Literal, TypeVar

import structlog
from pydantic import ValidationError

from notifier.domain.models import (
    Appointment,
    ChangeEvent,
    ChatMessage,
    DomainRecord,
    NotificationIntent,
    Payment,
    PaymentOutcome,
    UploadedFile,
)
from notifier.services.bootstrap_gate import BootstrapGate, EventHandler
from notifier.services.dispatcher import NotificationDispatcher
from notifier.services.mutation_feed import split_path
from notifier.services.runtime import TaskSupervisor

logger = structlog.get_logger(__name__)

RecordT = TypeVar("RecordT", bound=DomainRecord)
FileKind = Literal["prescription", "lab_result"]

FILE_SENT_BODY = "📎 Sent you a new file"
EMPTY_MESSAGE_BODY = "You have a new message."
DEFAULT_DOCTOR_LABEL = "Doctor"

PAID_STATUSES = frozenset({"paid", "confirmed", "approved", "completed", "success", "successful"})
FAILED_STATUSES = frozenset({"rejected", "failed", "declined"})

_FILE_MESSAGES: dict[FileKind, tuple[str, str]] = {
    "prescription": ("💊 New Prescription", "{doctor} uploaded a new prescription for you."),
    "lab_result": ("🧪 New Lab Result", "{doctor} uploaded a new lab result for you."),
}


def parse_record(model: type[RecordT], value: Any) -> RecordT | None:
    """Validate a raw store value; anything that is not a usable mapping is None."""
    if not isinstance(value, dict):
        return None
    try:
        return model.model_validate(value)
    except ValidationError as e:
        logger.warning("record_malformed", model=model.__name__, error=str(e))
        return None


def appointment_created_intents(appointment: Appointment) -> list[NotificationIntent]:
    intents = []
    if appointment.doctor_id:
        intents.append(
            NotificationIntent(
                recipient_id=appointment.doctor_id,
                title="🩺 New Appointment Booked",
                body=f"{appointment.patient_name or 'A patient'} booked a session with you.",
            )
        )
    if appointment.patient_id:
        doctor = f"Dr. {appointment.doctor_name}" if appointment.doctor_name else "your doctor"
        intents.append(
            NotificationIntent(
                recipient_id=appointment.patient_id,
                title="📅 Appointment Scheduled",
                body=f"Your appointment with {doctor} is scheduled.",
            )
        )
    return intents


def uploaded_file_intents(
    kind: FileKind, record: UploadedFile, recipient_id: str | None
) -> list[NotificationIntent]:
    if not recipient_id:
        return []
    title, template = _FILE_MESSAGES[kind]
    doctor = f"Dr. {record.doctor_name}" if record.doctor_name else DEFAULT_DOCTOR_LABEL
    return [
        NotificationIntent(
            recipient_id=recipient_id, title=title, body=template.format(doctor=doctor)
        )
    ]


def chat_message_intents(message: ChatMessage) -> list[NotificationIntent]:
    if not message.recipient_id or message.recipient_id == message.sender_id:
        return []
    if message.file_url:
        body = FILE_SENT_BODY
    else:
        body = (message.text or "").strip() or EMPTY_MESSAGE_BODY
    return [
        NotificationIntent(recipient_id=message.recipient_id, title="💬 New Message", body=body)
    ]


def normalize_status(status: str | None) -> str:
    return (status or "").strip().lower()


def classify_payment_status(status: str | None) -> PaymentOutcome:
    normalized = normalize_status(status)
    if normalized in PAID_STATUSES:
        return PaymentOutcome.SUCCEEDED
    if normalized in FAILED_STATUSES:
        return PaymentOutcome.FAILED
    return PaymentOutcome.OTHER


def payment_changed_intents(payment: Payment, support_contact: str) -> list[NotificationIntent]:
    if not payment.patient_id:
        return []

    outcome = classify_payment_status(payment.status)
    if outcome is PaymentOutcome.SUCCEEDED:
        title = "✅ Payment Confirmed"
        body = "Your payment has been confirmed. Your appointment is all set."
    elif outcome is PaymentOutcome.FAILED:
        title = "❌ Payment Rejected"
        body = f"Your payment could not be processed. Please contact support at {support_contact}."
    else:
        title = "💰 Payment Update"
        body = f"Your payment status is now {(payment.status or '').strip() or 'updated'}."
    return [NotificationIntent(recipient_id=payment.patient_id, title=title, body=body)]


class DomainRouters:
    """Registers the five routing rules on the gate and delivers their intents."""

    def __init__(
        self,
        gate: BootstrapGate,
        dispatcher: NotificationDispatcher,
        supervisor: TaskSupervisor | None = None,
        support_contact: str = "support@lamedtelemedicine.com",
        retry_attempts: int = 3,
        retry_delay_seconds: float = 1.0,
    ) -> None:
        self.gate = gate
        self.dispatcher = dispatcher
        self.supervisor = supervisor or gate.supervisor
        self.support_contact = support_contact
        self.retry_attempts = retry_attempts
        self.retry_delay_seconds = retry_delay_seconds
        self._payment_statuses: dict[str, str] = {}
        self.logger = logger.bind(component="domain_routers")

    def routes(self) -> list[tuple[str, Callable[[], Awaitable[Any]]]]:
        gate = self.gate
        return [
            (
                "/appointments",
                lambda: gate.watch("/appointments", on_added=self.on_appointment_added),
            ),
            (
                "/prescriptions",
                lambda: gate.watch("/prescriptions", on_added=self.file_handler("prescription")),
            ),
            (
                "/lab_requests",
                lambda: gate.watch("/lab_requests", on_added=self.file_handler("lab_result")),
            ),
            (
                "/patient_files",
                lambda: gate.watch_children(
                    "/patient_files",
                    {
                        "prescriptions": self.file_handler("prescription", scoped=True),
                        "lab_requests": self.file_handler("lab_result", scoped=True),
                    },
                ),
            ),
            (
                "/chats",
                lambda: gate.watch_children("/chats", {"messages": self.on_chat_message_added}),
            ),
            (
                "/payments",
                lambda: gate.watch(
                    "/payments",
                    on_added=self.on_payment_added,
                    on_changed=self.on_payment_changed,
                    on_removed=self.on_payment_removed,
                    on_snapshot=self.seed_payment_statuses,
                ),
            ),
        ]

    async def register(self, paths: Collection[str] | None = None) -> list[str]:
        """Bootstrap every route, or only ``paths``. Returns the paths left unwatched."""
        failed = []
        for path, start in self.routes():
            if paths is not None and path not in paths:
                continue
            for attempt in range(1, self.retry_attempts + 1):
                try:
                    await start()
                    break
                except Exception as e:
                    self.logger.warning(
                        "route_bootstrap_failed", path=path, attempt=attempt, error=str(e)
                    )
                    if attempt < self.retry_attempts:
                        await asyncio.sleep(self.retry_delay_seconds * 2 ** (attempt - 1))
            else:
                self.logger.error("route_unavailable", path=path)
                failed.append(path)
        return failed

    async def on_appointment_added(self, event: ChangeEvent) -> None:
        appointment = parse_record(Appointment, event.value)
        if appointment is None:
            return
        await self.deliver(appointment_created_intents(appointment), event)

    def file_handler(self, kind: FileKind, scoped: bool = False) -> EventHandler:
        """Handler for uploaded files; ``scoped`` ones live under /patient_files/{userId}."""

        async def handle(event: ChangeEvent) -> None:
            record = parse_record(UploadedFile, event.value)
            if record is None:
                return
            if scoped:
                segments = split_path(event.path)
                recipient_id = segments[1] if len(segments) > 1 else None
            else:
                recipient_id = record.patient_id
            await self.deliver(uploaded_file_intents(kind, record, recipient_id), event)

        return handle

    async def on_chat_message_added(self, event: ChangeEvent) -> None:
        message = parse_record(ChatMessage, event.value)
        if message is None:
            return
        await self.deliver(chat_message_intents(message), event)

    async def on_payment_changed(self, event: ChangeEvent) -> None:
        payment = parse_record(Payment, event.value)
        if payment is None:
            return
        # Only status transitions notify; edits to other payment fields do not.
        status = normalize_status(payment.status)
        if self._payment_statuses.get(event.key) == status:
            return
        self._payment_statuses[event.key] = status
        await self.deliver(payment_changed_intents(payment, self.support_contact), event)

    def seed_payment_statuses(self, snapshot: dict[str, Any]) -> None:
        """Remember current statuses so only later transitions notify."""
        for key, value in snapshot.items():
            payment = parse_record(Payment, value)
            if payment is not None:
                self._payment_statuses[key] = normalize_status(payment.status)

    async def on_payment_added(self, event: ChangeEvent) -> None:
        self.seed_payment_statuses({event.key: event.value})

    async def on_payment_removed(self, event: ChangeEvent) -> None:
        self._payment_statuses.pop(event.key, None)

    async def deliver(self, intents: list[NotificationIntent], event: ChangeEvent) -> None:
        """Send each intent in its own error boundary so one failure never blocks the next."""
        for intent in intents:
            result = await self.supervisor.run(
                f"notify:{event.path}/{event.key}:{intent.recipient_id}",
                self.dispatcher.notify(intent),
            )
            if result.is_ok() and result.unwrap().is_err():
                self.logger.warning(
                    "notification_not_delivered",
                    path=event.path,
                    key=event.key,
                    user_id=intent.recipient_id,
                    error=str(result.unwrap().unwrap_err()),
                )
