"""
Pydantic schemas for the watchdog.

Defines the watch timer record, escalation events, delivery results and the
immutable snapshot that the state machine transitions between.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field


class WatchState(str, Enum):
    """Watchdog state machine status enum."""

    IDLE = "idle"
    ARMED = "armed"
    ALERTING = "alerting"


class EventKind(str, Enum):
    """Kinds of planned escalation events."""

    REMINDER = "reminder"
    MAIN_EXPIRY = "main_expiry"
    FOLLOW_UP = "follow_up"


class DeliveryOutcome(str, Enum):
    """How far an alert got, for the status screen."""

    ALL_SENT = "all_sent"
    PARTIAL = "partial"
    NONE_SENT = "none_sent"


DeliveryBackend = Literal["twilio", "backend", "local", "none"]


class Recipient(BaseModel):
    """An emergency contact to alert."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(description="Display name substituted into the alert body")
    phone: str = Field(min_length=1, description="Phone number as entered")


class Medication(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    dosage: str = ""
    timing: str = ""
    instructions: str = ""


class CareSnapshot(BaseModel):
    """Care instructions copied at arm time."""

    model_config = ConfigDict(frozen=True)

    food_type: str | None = None
    food_amount: str | None = None
    feeding_times: tuple[str, ...] = ()
    feeding_notes: str | None = None
    medications: tuple[Medication, ...] = ()
    vet_name: str | None = None
    vet_phone: str | None = None
    vet_address: str | None = None
    general_instructions: str | None = None
    emergency_notes: str | None = None


class WatchTimer(BaseModel):
    """
    The single armed-window record.

    armed_at and duration_minutes never change after arming; alerted and
    last_follow_up only ever move forward.
    """

    model_config = ConfigDict(frozen=True)

    armed_at: datetime
    duration_minutes: int = Field(gt=0)
    alerted: bool = False
    last_follow_up: int = Field(default=0, ge=0)
    pet_name: str
    recipients: tuple[Recipient, ...] = Field(min_length=1)
    care_snapshot: CareSnapshot = Field(default_factory=CareSnapshot)

    @computed_field
    @property
    def expires_at(self) -> datetime:
        return self.armed_at + timedelta(minutes=self.duration_minutes)

    def time_remaining(self, now: datetime) -> timedelta:
        """Time until expiry, floored at zero."""
        return max(self.expires_at - now, timedelta(0))

    def minutes_overdue(self, now: datetime) -> int:
        """Whole minutes past expiry (0 while not expired)."""
        if now < self.expires_at:
            return 0
        return int((now - self.expires_at).total_seconds() // 60)


class EscalationEvent(BaseModel):
    """One planned fire time in an escalation plan."""

    model_config = ConfigDict(frozen=True)

    fire_at: datetime
    kind: EventKind
    follow_up: int | None = Field(default=None, description="n for FollowUp(n)")
    minutes_overdue: int = 0

    @property
    def label(self) -> str:
        if self.kind == EventKind.FOLLOW_UP:
            return f"{self.kind.value}({self.follow_up})"
        return self.kind.value


EscalationPlan = tuple[EscalationEvent, ...]


class DeliveryResult(BaseModel):
    """Outcome of dispatching an alert to a recipient set."""

    model_config = ConfigDict(frozen=True)

    sent: bool
    sent_to: tuple[str, ...] = ()
    failed_to: tuple[str, ...] = ()
    message: str
    timestamp: datetime
    backend: DeliveryBackend = "none"
    attempts: int = 1

    @computed_field
    @property
    def outcome(self) -> DeliveryOutcome:
        if not self.sent_to:
            return DeliveryOutcome.NONE_SENT
        if self.failed_to:
            return DeliveryOutcome.PARTIAL
        return DeliveryOutcome.ALL_SENT


class LocalAlert(BaseModel):
    """Content of a local (on-device) escalating notification."""

    title: str
    body: str
    urgent: bool = False


class WatchSnapshot(BaseModel):
    """
    Everything the durable timer state holds, as one immutable value.

    Transitions return a new snapshot; the store persists it in one replace.
    """

    model_config = ConfigDict(frozen=True)

    timer: WatchTimer | None = None
    last_delivery_result: DeliveryResult | None = None
    scheduled_event_ids: tuple[str, ...] = ()

    @property
    def state(self) -> WatchState:
        if self.timer is None:
            return WatchState.IDLE
        if self.timer.alerted:
            return WatchState.ALERTING
        return WatchState.ARMED

    def armed(self, timer: WatchTimer) -> "WatchSnapshot":
        return WatchSnapshot(timer=timer)

    def with_scheduled(self, event_ids: list[str] | tuple[str, ...]) -> "WatchSnapshot":
        return self.model_copy(update={"scheduled_event_ids": tuple(event_ids)})

    def with_alert_claimed(self, provisional: DeliveryResult) -> "WatchSnapshot":
        """Mark the main expiry as dispatched, recording a provisional result."""
        timer = self.timer.model_copy(update={"alerted": True})
        return self.model_copy(update={"timer": timer, "last_delivery_result": provisional})

    def with_delivery(self, result: DeliveryResult) -> "WatchSnapshot":
        return self.model_copy(update={"last_delivery_result": result})

    def with_follow_up(self, n: int) -> "WatchSnapshot":
        timer = self.timer.model_copy(update={"last_follow_up": max(n, self.timer.last_follow_up)})
        return self.model_copy(update={"timer": timer})

    def cleared(self) -> "WatchSnapshot":
        return WatchSnapshot()


# --- Operation results ---


class ArmResult(BaseModel):
    timer: WatchTimer
    plan: list[EscalationEvent]
    scheduled_event_ids: list[str]


class EventOutcome(BaseModel):
    """What on_scheduled_event did with a fired event."""

    kind: EventKind
    follow_up: int | None = None
    action: Literal["ignored", "informational", "dispatched", "retried", "skipped"]
    reason: str | None = None
    result: DeliveryResult | None = None


class CheckInResult(BaseModel):
    reason: Literal["checked_in", "cancelled"]
    previous_state: WatchState
    cancelled_event_ids: list[str]
    checked_in_at: datetime


class WatchStatus(BaseModel):
    """Consumer-facing status of the watchdog."""

    state: WatchState
    armed_at: datetime | None = None
    expires_at: datetime | None = None
    duration_minutes: int | None = None
    time_remaining_seconds: float = 0.0
    minutes_overdue: int = 0
    pet_name: str | None = None
    recipient_count: int = 0
    last_delivery_result: DeliveryResult | None = None
    outcome: DeliveryOutcome | None = None


class ReconcileReport(BaseModel):
    state: WatchState
    expired: bool = False
    minutes_overdue: int = 0
    fired: list[str] = Field(default_factory=list)
    rescheduled: int = 0


# --- API payloads ---


class ArmRequest(BaseModel):
    """Body of POST /api/v1/watch/arm; omitted fields come from the stored profile."""

    duration_minutes: int
    pet_name: str | None = None
    recipients: list[Recipient] | None = None
    care: CareSnapshot | None = None


class ScheduledEventRequest(BaseModel):
    """Body posted by an external scheduler when a planned fire time is reached."""

    kind: EventKind
    armed_at: datetime
    follow_up: int | None = None
