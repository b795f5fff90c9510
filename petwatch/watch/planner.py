"""
Escalation planner.

Turns one arm action into the full, ordered set of absolute fire times.
The plan is a pure function of (armed_at, duration_minutes), so it can be
regenerated at any point, including after the scheduler lost its jobs.
"""

from datetime import datetime, timedelta

from petwatch.core.errors import InvalidDurationError
from petwatch.watch.schemas import EscalationEvent, EscalationPlan, EventKind

# Only timers at least this long get a pre-expiry reminder
REMINDER_MIN_DURATION_MINUTES = 60
REMINDER_LEAD_MINUTES = 5

FOLLOW_UP_COUNT = 6
FOLLOW_UP_INTERVAL_MINUTES = 5


def plan(armed_at: datetime, duration_minutes: int) -> EscalationPlan:
    """
    Compute the escalation plan for a watch window.

    Args:
        armed_at: Instant the watch was armed
        duration_minutes: Positive window length

    Returns:
        Events sorted by fire time: optional reminder, main expiry, six follow-ups
    """
    if duration_minutes <= 0:
        raise InvalidDurationError(duration_minutes)

    expires_at = armed_at + timedelta(minutes=duration_minutes)
    events: list[EscalationEvent] = []

    if duration_minutes >= REMINDER_MIN_DURATION_MINUTES:
        events.append(
            EscalationEvent(
                fire_at=expires_at - timedelta(minutes=REMINDER_LEAD_MINUTES),
                kind=EventKind.REMINDER,
            )
        )

    events.append(EscalationEvent(fire_at=expires_at, kind=EventKind.MAIN_EXPIRY))

    for n in range(1, FOLLOW_UP_COUNT + 1):
        overdue = n * FOLLOW_UP_INTERVAL_MINUTES
        events.append(
            EscalationEvent(
                fire_at=expires_at + timedelta(minutes=overdue),
                kind=EventKind.FOLLOW_UP,
                follow_up=n,
                minutes_overdue=overdue,
            )
        )

    return tuple(sorted(events, key=lambda e: e.fire_at))


def due_events(escalation_plan: EscalationPlan, now: datetime) -> EscalationPlan:
    """Events whose fire time is at or before now (these fire immediately, never dropped)."""
    return tuple(e for e in escalation_plan if e.fire_at <= now)


def pending_events(escalation_plan: EscalationPlan, now: datetime) -> EscalationPlan:
    """Events still in the future."""
    return tuple(e for e in escalation_plan if e.fire_at > now)
