"""
Domain models for telemedicine push notifications.

Records in the realtime database are loosely typed and written by a separate
application, so every record model ignores unknown fields and accepts the
alternate spellings found in the store. Value objects produced by the notifier
itself are frozen.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class ChangeKind(str, Enum):
    """Child events emitted by the mutation feed."""

    ADDED = "child_added"
    CHANGED = "child_changed"
    REMOVED = "child_removed"


class ChangeEvent(BaseModel):
    """One child event carrying the full value of the child (its last value if removed)."""

    model_config = ConfigDict(frozen=True)

    kind: ChangeKind
    path: str = Field(description="Watched parent path")
    key: str = Field(description="Child key under the watched path")
    value: Any = None


class DomainRecord(BaseModel):
    """Base for records read from the store."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


def _blank_to_none(v: Any) -> Any:
    if isinstance(v, str):
        v = v.strip()
        return v or None
    return v


class Appointment(DomainRecord):
    # Extra fields are kept so reminder flags beyond the typed ones stay readable.
    model_config = ConfigDict(extra="allow")

    doctor_id: str | None = Field(default=None, alias="doctorId")
    patient_id: str | None = Field(default=None, alias="patientId")
    patient_name: str | None = Field(default=None, alias="patientName")
    doctor_name: str | None = Field(default=None, alias="doctorName")
    timestamp: int | None = Field(default=None, description="Session start, epoch millis")
    reminder20_sent: bool = Field(default=False, alias="reminder20Sent")
    reminder10_sent: bool = Field(default=False, alias="reminder10Sent")
    status: str | None = Field(
        default=None, validation_alias=AliasChoices("status", "paymentStatus")
    )

    normalize_ids = field_validator(
        "doctor_id", "patient_id", "patient_name", "doctor_name", mode="before"
    )(_blank_to_none)

    @field_validator("timestamp", mode="before")
    @classmethod
    def coerce_timestamp(cls, v: Any) -> Any:
        """Accept numeric strings and floats; anything unparsable means no timestamp."""
        if v is None or isinstance(v, bool):
            return None
        try:
            return int(float(v))
        except (TypeError, ValueError):
            return None

    def flag(self, name: str) -> bool:
        """Reminder flag by its stored field name (e.g. ``reminder20Sent``)."""
        for field_name, info in type(self).model_fields.items():
            if info.alias == name:
                return bool(getattr(self, field_name))
        extra = self.model_extra or {}
        return bool(extra.get(name, False))


class UploadedFile(DomainRecord):
    """Prescription or lab result uploaded by a doctor."""

    patient_id: str | None = Field(default=None, alias="patientId")
    doctor_name: str | None = Field(
        default=None, validation_alias=AliasChoices("Doctor", "doctorName", "doctor")
    )

    normalize_ids = field_validator("patient_id", "doctor_name", mode="before")(_blank_to_none)


class ChatMessage(DomainRecord):
    sender_id: str | None = Field(
        default=None, validation_alias=AliasChoices("from", "fromUserId", "senderId")
    )
    recipient_id: str | None = Field(
        default=None, validation_alias=AliasChoices("to", "toUserId", "receiverId")
    )
    text: str | None = None
    file_url: str | None = Field(default=None, alias="fileUrl")

    normalize_ids = field_validator("sender_id", "recipient_id", "file_url", mode="before")(
        _blank_to_none
    )


class Payment(DomainRecord):
    patient_id: str | None = Field(default=None, alias="patientId")
    status: str | None = Field(
        default=None, validation_alias=AliasChoices("status", "paymentStatus")
    )

    normalize_ids = field_validator("patient_id", mode="before")(_blank_to_none)


class PaymentOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    OTHER = "other"


class NotificationIntent(BaseModel):
    """A message bound for one device; built per event and never stored."""

    model_config = ConfigDict(frozen=True)

    recipient_id: str
    title: str
    body: str


class ReminderThreshold(BaseModel):
    """One reminder window and the appointment flag that records it was sent."""

    model_config = ConfigDict(frozen=True)

    window_millis: int = Field(gt=0)
    flag_name: str = Field(min_length=1)
    patient_title: str
    patient_body: str = Field(description="Template; may use {doctor} and {minutes}")
    doctor_title: str
    doctor_body: str = Field(description="Template; may use {patient} and {minutes}")

    @property
    def minutes(self) -> int:
        return self.window_millis // 60_000


class DeliveryReceipt(BaseModel):
    """Outcome of a single delivery attempt."""

    model_config = ConfigDict(frozen=True)

    routing_id: str | None
    status: Literal["delivered", "skipped"]
    http_status: int | None = None
    response: Any = None
    sent_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class TaskOutcome(BaseModel):
    """Recorded result of one supervised unit of work."""

    model_config = ConfigDict(frozen=True)

    name: str
    ok: bool
    error: str | None = None
    finished_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class ScanReport(BaseModel):
    """Summary of one reminder scan over the appointments collection."""

    scanned: int = 0
    reminders_fired: int = 0
    skipped: int = 0
    failed: int = 0
    duration_seconds: float = 0.0
    finished_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
