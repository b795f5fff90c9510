"""
Watchdog state machine.

Owns the Idle -> Armed -> Alerting -> Idle transitions and is the only
writer of the durable timer state. Every operation loads the current
snapshot, computes the next one and persists it in a single replace.

Double dispatch is prevented by three guards:
- generation: events carry the armed_at of the window that planned them
- alerted: the main expiry is claimed (and persisted) before dispatching
- last_follow_up: each follow-up number is handled at most once
"""

import asyncio
from collections.abc import Callable, Sequence
from datetime import datetime, timezone

from pydantic import ValidationError

from petwatch.core.config import FollowUpRetryPolicy, settings
from petwatch.core.errors import (
    AlreadyArmedError,
    InvalidDurationError,
    NoRecipientsError,
    NotArmedError,
)
from petwatch.core.interfaces import EventScheduler, SchedulerPayload
from petwatch.core.logger import logger
from petwatch.delivery.composer import compose_alert_template, compose_local_alert
from petwatch.delivery.gateways import DeliveryGatewayChain, summarize, unique_by_phone
from petwatch.watch.planner import FOLLOW_UP_INTERVAL_MINUTES, pending_events, plan
from petwatch.watch.schemas import (
    ArmResult,
    CareSnapshot,
    CheckInResult,
    DeliveryResult,
    EscalationEvent,
    EscalationPlan,
    EventKind,
    EventOutcome,
    Recipient,
    ScheduledEventRequest,
    WatchSnapshot,
    WatchState,
    WatchStatus,
    WatchTimer,
)
from petwatch.watch.store import TimerStore


def _ordered_union(*groups: Sequence[str]) -> list[str]:
    return list(dict.fromkeys(p for group in groups for p in group))


def merge_retry(previous: DeliveryResult, retry: DeliveryResult) -> DeliveryResult:
    """Fold a follow-up retry into the standing result, keeping the partition intact."""
    sent_to = _ordered_union(previous.sent_to, retry.sent_to)
    failed_to = [p for p in _ordered_union(previous.failed_to, retry.failed_to) if p not in sent_to]
    return DeliveryResult(
        sent=len(sent_to) > 0,
        sent_to=tuple(sent_to),
        failed_to=tuple(failed_to),
        message=summarize(sent_to, len(sent_to) + len(failed_to)),
        timestamp=retry.timestamp,
        backend=retry.backend,
        attempts=previous.attempts + 1,
    )


class WatchdogStateMachine:
    """
    Watchdog service: arm, scheduled-event handling, check-in and status.

    The asyncio lock only guards snapshot read-modify-write; it is released
    before any delivery network call.
    """

    def __init__(
        self,
        store: TimerStore,
        scheduler: EventScheduler,
        gateway_chain: DeliveryGatewayChain,
        clock: Callable[[], datetime] | None = None,
        retry_policy: FollowUpRetryPolicy | None = None,
    ):
        self.store = store
        self.scheduler = scheduler
        self.gateway_chain = gateway_chain
        self.retry_policy: FollowUpRetryPolicy = retry_policy or settings.followup_retry_policy
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = asyncio.Lock()
        # Generations (armed_at) with a dispatch currently awaiting the network
        self._in_flight: set[datetime] = set()

    def now(self) -> datetime:
        return self._clock()

    # --- Arm ---

    async def arm(
        self,
        duration_minutes: int,
        pet_name: str,
        recipients: Sequence[Recipient],
        care_snapshot: CareSnapshot | None = None,
    ) -> ArmResult:
        """
        Start a watch window.

        Raises:
            AlreadyArmedError: a window is already active
            InvalidDurationError: duration_minutes <= 0
            NoRecipientsError: recipients is empty
        """
        async with self._lock:
            current = await self.store.load()
            if current.timer is not None:
                raise AlreadyArmedError()
            if duration_minutes <= 0:
                raise InvalidDurationError(duration_minutes)
            if not recipients:
                raise NoRecipientsError()

            self._cancel_handles(current.scheduled_event_ids)

            armed_at = self.now()
            timer = WatchTimer(
                armed_at=armed_at,
                duration_minutes=duration_minutes,
                pet_name=pet_name,
                recipients=tuple(recipients),
                care_snapshot=care_snapshot or CareSnapshot(),
            )
            snapshot = current.armed(timer)
            await self.store.replace(snapshot)

            escalation_plan = plan(armed_at, duration_minutes)
            handles = self._schedule(timer, escalation_plan, armed_at)
            await self.store.replace(snapshot.with_scheduled(handles))

        logger.info(
            f"Watch armed for {pet_name}: {duration_minutes} min, "
            f"{len(recipients)} contact(s), expires {timer.expires_at.isoformat()}"
        )
        return ArmResult(timer=timer, plan=list(escalation_plan), scheduled_event_ids=handles)

    def _payload(self, timer: WatchTimer, event: EscalationEvent) -> SchedulerPayload:
        return {
            "kind": event.kind.value,
            "follow_up": event.follow_up,
            "armed_at": timer.armed_at.isoformat(),
            "fire_at": event.fire_at.isoformat(),
            "alert": compose_local_alert(event, timer.pet_name).model_dump(),
        }

    def _schedule(
        self, timer: WatchTimer, events: EscalationPlan, now: datetime
    ) -> list[str]:
        """Hand each event to the scheduler; returns the handles that were accepted."""
        handles: list[str] = []
        for event in events:
            delay = (event.fire_at - now).total_seconds()
            try:
                handles.append(self.scheduler.schedule(delay, self._payload(timer, event)))
            except Exception as e:
                # Reconciliation on next start recomputes this event from armed_at
                logger.error(f"Could not schedule {event.label}: {e}", exc_info=True)
        return handles

    def _cancel_handles(self, handles: Sequence[str]) -> list[str]:
        cancelled: list[str] = []
        for handle in handles:
            try:
                if self.scheduler.cancel(handle):
                    cancelled.append(handle)
            except Exception as e:
                logger.warning(f"Could not cancel scheduled event {handle}: {e}")
        return cancelled

    async def reschedule_pending(self, now: datetime | None = None) -> int:
        """
        Re-register every still-future event of the active window.

        Used after the scheduling substrate was lost (process restart).
        Returns the number of events scheduled.
        """
        now = now or self.now()
        async with self._lock:
            snapshot = await self.store.load()
            timer = snapshot.timer
            self._cancel_handles(snapshot.scheduled_event_ids)
            if timer is None:
                if snapshot.scheduled_event_ids:
                    await self.store.replace(snapshot.with_scheduled([]))
                return 0

            events = tuple(
                e
                for e in pending_events(plan(timer.armed_at, timer.duration_minutes), now)
                if not (e.kind == EventKind.MAIN_EXPIRY and timer.alerted)
                and not (e.kind == EventKind.FOLLOW_UP and e.follow_up <= timer.last_follow_up)
            )
            handles = self._schedule(timer, events, now)
            await self.store.replace(snapshot.with_scheduled(handles))

        logger.info(f"Re-registered {len(handles)} pending event(s)")
        return len(handles)

    # --- Scheduled events ---

    async def handle_payload(self, payload: SchedulerPayload) -> EventOutcome | None:
        """Entry point for the scheduler: decode a payload and process the event."""
        try:
            request = ScheduledEventRequest.model_validate(payload)
        except ValidationError as e:
            logger.error(f"Discarding malformed scheduled event payload: {e}")
            return None
        return await self.on_scheduled_event(request.kind, request.armed_at, request.follow_up)

    async def on_scheduled_event(
        self, kind: EventKind, armed_at: datetime, follow_up: int | None = None
    ) -> EventOutcome:
        """
        Process a planned event that reached (or passed) its fire time.

        Never raises on delivery failure; the outcome carries the result.
        """
        kind = EventKind(kind)
        if kind == EventKind.MAIN_EXPIRY:
            return await self._on_main_expiry(armed_at)
        if kind == EventKind.FOLLOW_UP:
            return await self._on_follow_up(armed_at, follow_up)

        async with self._lock:
            snapshot = await self.store.load()
            if not self._is_current(snapshot, armed_at):
                return self._stale(kind, follow_up)
        logger.info(f"Reminder: watch for {snapshot.timer.pet_name} expires in 5 minutes")
        return EventOutcome(kind=kind, action="informational")

    def _is_current(self, snapshot: WatchSnapshot, armed_at: datetime) -> bool:
        return snapshot.timer is not None and snapshot.timer.armed_at == armed_at

    def _stale(self, kind: EventKind, follow_up: int | None) -> EventOutcome:
        logger.debug(f"Ignoring {kind.value} event from a window that is no longer active")
        return EventOutcome(
            kind=kind, follow_up=follow_up, action="ignored", reason="stale_generation"
        )

    def _provisional(self, timer: WatchTimer) -> DeliveryResult:
        """Result recorded at claim time: nobody reached yet."""
        phones = [phone for _, phone in unique_by_phone(timer.recipients)]
        return DeliveryResult(
            sent=False,
            sent_to=(),
            failed_to=tuple(phones),
            message="Alert delivery in progress",
            timestamp=self.now(),
            backend=self.gateway_chain.backend,
            attempts=0,
        )

    async def _on_main_expiry(self, armed_at: datetime) -> EventOutcome:
        async with self._lock:
            snapshot = await self.store.load()
            if not self._is_current(snapshot, armed_at):
                return self._stale(EventKind.MAIN_EXPIRY, None)
            timer = snapshot.timer
            if timer.alerted:
                logger.debug("Main expiry already dispatched; ignoring duplicate wake")
                return EventOutcome(
                    kind=EventKind.MAIN_EXPIRY, action="ignored", reason="already_alerted"
                )
            await self.store.replace(snapshot.with_alert_claimed(self._provisional(timer)))
            self._in_flight.add(armed_at)

        logger.warning(f"Watch for {timer.pet_name} expired without check-in; alerting contacts")
        try:
            result = await self._deliver(timer, timer.recipients)
        finally:
            self._in_flight.discard(armed_at)
        result = result.model_copy(update={"attempts": 1})
        await self._record_result(armed_at, lambda _previous: result)
        return EventOutcome(kind=EventKind.MAIN_EXPIRY, action="dispatched", result=result)

    async def alert_now(self) -> EventOutcome:
        """
        Alert the emergency contacts immediately, without waiting for expiry.

        Performs the main expiry early: it claims the same alerted flag, so the
        scheduled main expiry (or a repeated request) is ignored afterwards.
        Follow-ups keep their original schedule.

        Raises:
            NotArmedError: no watch is active
        """
        async with self._lock:
            snapshot = await self.store.load()
            if snapshot.timer is None:
                raise NotArmedError()
            armed_at = snapshot.timer.armed_at

        logger.warning("Immediate alert requested by the owner")
        return await self._on_main_expiry(armed_at)

    def _retry_targets(self, timer: WatchTimer, result: DeliveryResult | None) -> list[Recipient]:
        if result is None or not result.failed_to:
            return []
        if self.retry_policy == "total_failure" and result.sent_to:
            return []
        failed = set(result.failed_to)
        return [r for r, phone in unique_by_phone(timer.recipients) if phone in failed]

    async def _on_follow_up(self, armed_at: datetime, follow_up: int | None) -> EventOutcome:
        if follow_up is None or follow_up < 1:
            logger.warning(f"Follow-up event without a valid number ({follow_up}); ignoring")
            return EventOutcome(
                kind=EventKind.FOLLOW_UP, follow_up=follow_up, action="ignored", reason="invalid"
            )

        async with self._lock:
            snapshot = await self.store.load()
            if not self._is_current(snapshot, armed_at):
                return self._stale(EventKind.FOLLOW_UP, follow_up)
            timer = snapshot.timer
            if follow_up <= timer.last_follow_up:
                return EventOutcome(
                    kind=EventKind.FOLLOW_UP,
                    follow_up=follow_up,
                    action="ignored",
                    reason="already_handled",
                )

            snapshot = snapshot.with_follow_up(follow_up)
            reason = None
            if not snapshot.timer.alerted:
                # Main expiry wake was lost or is late; the follow-up performs it
                snapshot = snapshot.with_alert_claimed(self._provisional(timer))
                targets = list(timer.recipients)
                action = "dispatched"
            elif armed_at in self._in_flight:
                targets = []
                action = "skipped"
                reason = "delivery_in_progress"
            else:
                targets = self._retry_targets(timer, snapshot.last_delivery_result)
                action = "retried" if targets else "skipped"
                reason = None if targets else "nothing_to_retry"

            await self.store.replace(snapshot)
            if targets:
                self._in_flight.add(armed_at)

        overdue_minutes = follow_up * FOLLOW_UP_INTERVAL_MINUTES
        logger.warning(f"Watch for {timer.pet_name} is {overdue_minutes} minutes overdue")
        if not targets:
            return EventOutcome(
                kind=EventKind.FOLLOW_UP,
                follow_up=follow_up,
                action="skipped",
                reason=reason,
                result=snapshot.last_delivery_result,
            )

        try:
            fresh = await self._deliver(timer, targets)
        finally:
            self._in_flight.discard(armed_at)

        if action == "dispatched":
            fresh = fresh.model_copy(update={"attempts": 1})
            recorded = await self._record_result(armed_at, lambda _previous: fresh)
        else:
            logger.info(f"Retrying alert for {len(targets)} unreached contact(s)")
            recorded = await self._record_result(
                armed_at, lambda previous: merge_retry(previous, fresh) if previous else fresh
            )
        return EventOutcome(
            kind=EventKind.FOLLOW_UP, follow_up=follow_up, action=action, result=recorded or fresh
        )

    async def record_follow_up(self, armed_at: datetime, follow_up: int) -> bool:
        """Mark follow-ups up to n as handled without dispatching (used by recovery)."""
        async with self._lock:
            snapshot = await self.store.load()
            if not self._is_current(snapshot, armed_at):
                return False
            if follow_up <= snapshot.timer.last_follow_up:
                return False
            await self.store.replace(snapshot.with_follow_up(follow_up))
            return True

    async def _deliver(self, timer: WatchTimer, recipients: Sequence[Recipient]) -> DeliveryResult:
        template = compose_alert_template(timer.pet_name, timer.care_snapshot, self.now())
        result = await self.gateway_chain.dispatch(recipients, template)
        logger.info(f"Alert dispatch via {result.backend}: {result.message}")
        return result

    async def _record_result(
        self,
        armed_at: datetime,
        build: Callable[[DeliveryResult | None], DeliveryResult],
    ) -> DeliveryResult | None:
        """Persist a dispatch outcome unless the window was closed meanwhile."""
        async with self._lock:
            snapshot = await self.store.load()
            if not self._is_current(snapshot, armed_at):
                logger.info("Watch was closed during dispatch; not recording delivery result")
                return None
            result = build(snapshot.last_delivery_result)
            await self.store.replace(snapshot.with_delivery(result))
            return result

    # --- Check-in / cancel ---

    async def check_in(self) -> CheckInResult:
        """User confirmed they are safe."""
        return await self._close("checked_in")

    async def cancel(self) -> CheckInResult:
        """User gave up the watch without confirming safety."""
        return await self._close("cancelled")

    async def _close(self, reason: str) -> CheckInResult:
        async with self._lock:
            snapshot = await self.store.load()
            if snapshot.timer is None:
                raise NotArmedError()
            previous_state = snapshot.state
            cancelled = self._cancel_handles(snapshot.scheduled_event_ids)
            await self.store.replace(snapshot.cleared())

        logger.info(
            f"Watch {reason.replace('_', ' ')} from state {previous_state.value}; "
            f"cancelled {len(cancelled)} pending event(s)"
        )
        return CheckInResult(
            reason=reason,
            previous_state=previous_state,
            cancelled_event_ids=cancelled,
            checked_in_at=self.now(),
        )

    # --- Status ---

    async def get_status(self, now: datetime | None = None) -> WatchStatus:
        now = now or self.now()
        snapshot = await self.store.load()
        timer = snapshot.timer
        if timer is None:
            return WatchStatus(state=WatchState.IDLE)

        result = snapshot.last_delivery_result
        return WatchStatus(
            state=snapshot.state,
            armed_at=timer.armed_at,
            expires_at=timer.expires_at,
            duration_minutes=timer.duration_minutes,
            time_remaining_seconds=timer.time_remaining(now).total_seconds(),
            minutes_overdue=timer.minutes_overdue(now),
            pet_name=timer.pet_name,
            recipient_count=len(timer.recipients),
            last_delivery_result=result,
            outcome=result.outcome if result else None,
        )

