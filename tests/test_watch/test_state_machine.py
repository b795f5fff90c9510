"""
Tests for the Watchdog state machine.

Covers arming, main expiry dispatch, follow-up retries, stale events and
check-in, against a real SQLite store and a recording scheduler.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from petwatch.core.errors import (
    AlreadyArmedError,
    InvalidDurationError,
    NoRecipientsError,
    NotArmedError,
)
from petwatch.delivery.gateways import BatchBackendGateway, DeliveryGatewayChain
from petwatch.watch.schemas import (
    DeliveryOutcome,
    DeliveryResult,
    EventKind,
    Recipient,
    WatchState,
)
from petwatch.watch.state_machine import WatchdogStateMachine, merge_retry

ALICE = "+15550000001"
BOB = "+15550000002"


class TestArm:
    """Test arming a watch window."""

    @pytest.mark.asyncio
    async def test_arm_schedules_full_plan(self, watchdog, fake_scheduler, recipients, clock):
        result = await watchdog.arm(60, "Rex", recipients)

        assert result.timer.armed_at == clock()
        assert len(result.plan) == 8
        assert len(fake_scheduler.pending) == 8
        assert sorted(result.scheduled_event_ids) == sorted(fake_scheduler.pending)

        snapshot = await watchdog.store.load()
        assert snapshot.state == WatchState.ARMED
        assert snapshot.timer.pet_name == "Rex"
        assert set(snapshot.scheduled_event_ids) == set(fake_scheduler.pending)

    @pytest.mark.asyncio
    async def test_payload_carries_generation(self, watchdog, fake_scheduler, recipients, clock):
        await watchdog.arm(30, "Rex", recipients)

        main = fake_scheduler.payloads("main_expiry")
        assert len(main) == 1
        assert main[0]["armed_at"] == clock().isoformat()
        assert main[0]["alert"]["urgent"] is True
        delay, _ = next(v for v in fake_scheduler.pending.values() if v[1]["kind"] == "main_expiry")
        assert delay == 30 * 60

    @pytest.mark.asyncio
    async def test_arm_twice_rejected(self, watchdog, fake_scheduler, recipients):
        await watchdog.arm(60, "Rex", recipients)

        with pytest.raises(AlreadyArmedError):
            await watchdog.arm(30, "Rex", recipients)

        # First window untouched
        assert len(fake_scheduler.pending) == 8
        status = await watchdog.get_status()
        assert status.duration_minutes == 60

    @pytest.mark.asyncio
    async def test_arm_twice_rejected_after_window_elapsed(
        self, watchdog, gateway, recipients, clock
    ):
        """An expired, unacknowledged window still blocks a new arm until check-in."""
        armed = await watchdog.arm(30, "Rex", recipients)
        clock.advance(minutes=30)
        await watchdog.on_scheduled_event(EventKind.MAIN_EXPIRY, armed.timer.armed_at)
        clock.advance(minutes=200)

        with pytest.raises(AlreadyArmedError):
            await watchdog.arm(30, "Rex", recipients)

        snapshot = await watchdog.store.load()
        assert snapshot.timer.armed_at == armed.timer.armed_at
        assert snapshot.state == WatchState.ALERTING

    @pytest.mark.asyncio
    async def test_arm_rejects_zero_duration(self, watchdog, recipients):
        with pytest.raises(InvalidDurationError):
            await watchdog.arm(0, "Rex", recipients)
        assert (await watchdog.get_status()).state == WatchState.IDLE

    @pytest.mark.asyncio
    async def test_arm_rejects_empty_recipients(self, watchdog):
        with pytest.raises(NoRecipientsError):
            await watchdog.arm(60, "Rex", [])
        assert (await watchdog.get_status()).state == WatchState.IDLE


class TestMainExpiry:
    """Test main expiry handling."""

    @pytest.mark.asyncio
    async def test_dispatches_to_all(self, watchdog, gateway, recipients, clock):
        armed = await watchdog.arm(60, "Rex", recipients)
        clock.advance(minutes=60)

        outcome = await watchdog.on_scheduled_event(EventKind.MAIN_EXPIRY, armed.timer.armed_at)

        assert outcome.action == "dispatched"
        assert gateway.calls == [[ALICE, BOB]]
        assert outcome.result.outcome == DeliveryOutcome.ALL_SENT

        status = await watchdog.get_status()
        assert status.state == WatchState.ALERTING
        assert status.last_delivery_result.sent_to == (ALICE, BOB)

    @pytest.mark.asyncio
    async def test_duplicate_wake_does_not_resend(self, watchdog, gateway, recipients, clock):
        armed = await watchdog.arm(60, "Rex", recipients)
        clock.advance(minutes=60)

        await watchdog.on_scheduled_event(EventKind.MAIN_EXPIRY, armed.timer.armed_at)
        second = await watchdog.on_scheduled_event(EventKind.MAIN_EXPIRY, armed.timer.armed_at)

        assert second.action == "ignored"
        assert second.reason == "already_alerted"
        assert len(gateway.calls) == 1

    @pytest.mark.asyncio
    async def test_partial_delivery_recorded(self, watchdog, gateway, recipients, clock):
        gateway.unreachable = {BOB}
        armed = await watchdog.arm(60, "Rex", recipients)
        clock.advance(minutes=60)

        outcome = await watchdog.on_scheduled_event(EventKind.MAIN_EXPIRY, armed.timer.armed_at)

        assert outcome.result.sent_to == (ALICE,)
        assert outcome.result.failed_to == (BOB,)
        assert outcome.result.outcome == DeliveryOutcome.PARTIAL
        assert outcome.result.message == "SMS sent to 1 of 2 contacts"

    @pytest.mark.asyncio
    async def test_duplicate_phones_sent_once(self, watchdog, gateway, clock):
        same = [Recipient(name="A", phone="5550000001"), Recipient(name="B", phone="+1 555 000 0001")]
        armed = await watchdog.arm(10, "Rex", same)
        clock.advance(minutes=10)

        await watchdog.on_scheduled_event(EventKind.MAIN_EXPIRY, armed.timer.armed_at)

        assert gateway.calls == [[ALICE]]

    @pytest.mark.asyncio
    async def test_check_in_during_dispatch_discards_result(
        self, watchdog, gateway, recipients, clock
    ):
        """The lock is released while sending, so a check-in can close the window mid-dispatch."""
        armed = await watchdog.arm(60, "Rex", recipients)
        clock.advance(minutes=60)
        gateway.on_send = watchdog.check_in

        outcome = await watchdog.on_scheduled_event(EventKind.MAIN_EXPIRY, armed.timer.armed_at)

        assert outcome.action == "dispatched"
        snapshot = await watchdog.store.load()
        assert snapshot.state == WatchState.IDLE
        assert snapshot.last_delivery_result is None


class TestAlertNow:
    """Test the owner-triggered immediate alert."""

    @pytest.mark.asyncio
    async def test_alert_now_then_main_expiry_sends_once(
        self, watchdog, gateway, recipients, clock
    ):
        armed = await watchdog.arm(60, "Rex", recipients)
        clock.advance(minutes=10)

        outcome = await watchdog.alert_now()
        clock.advance(minutes=50)
        late_main = await watchdog.on_scheduled_event(EventKind.MAIN_EXPIRY, armed.timer.armed_at)

        assert outcome.action == "dispatched"
        assert outcome.result.sent_to == (ALICE, BOB)
        assert late_main.action == "ignored"
        assert late_main.reason == "already_alerted"
        assert gateway.calls == [[ALICE, BOB]]

        status = await watchdog.get_status()
        assert status.state == WatchState.ALERTING
        assert status.last_delivery_result.attempts == 1

    @pytest.mark.asyncio
    async def test_repeated_alert_now_ignored(self, watchdog, gateway, recipients):
        await watchdog.arm(60, "Rex", recipients)

        await watchdog.alert_now()
        second = await watchdog.alert_now()

        assert second.reason == "already_alerted"
        assert len(gateway.calls) == 1

    @pytest.mark.asyncio
    async def test_follow_up_retries_after_alert_now(self, watchdog, gateway, recipients, clock):
        gateway.unreachable = {BOB}
        armed = await watchdog.arm(60, "Rex", recipients)
        await watchdog.alert_now()

        gateway.unreachable = set()
        clock.advance(minutes=65)
        outcome = await watchdog.on_scheduled_event(
            EventKind.FOLLOW_UP, armed.timer.armed_at, follow_up=1
        )

        assert outcome.action == "retried"
        assert gateway.calls == [[ALICE, BOB], [BOB]]

    @pytest.mark.asyncio
    async def test_alert_now_when_idle_raises(self, watchdog, gateway):
        with pytest.raises(NotArmedError):
            await watchdog.alert_now()
        assert gateway.calls == []


class TestReminder:
    """Test reminder events."""

    @pytest.mark.asyncio
    async def test_reminder_is_informational(self, watchdog, gateway, recipients, clock):
        armed = await watchdog.arm(60, "Rex", recipients)
        clock.advance(minutes=55)

        outcome = await watchdog.on_scheduled_event(EventKind.REMINDER, armed.timer.armed_at)

        assert outcome.action == "informational"
        assert gateway.calls == []
        assert (await watchdog.get_status()).state == WatchState.ARMED


class TestStaleEvents:
    """Test generation checks against a re-armed window."""

    @pytest.mark.asyncio
    async def test_event_from_previous_window_ignored(self, watchdog, gateway, recipients, clock):
        first = await watchdog.arm(60, "Rex", recipients)
        await watchdog.check_in()
        clock.advance(minutes=1)
        await watchdog.arm(60, "Rex", recipients)
        clock.advance(minutes=60)

        for kind in (EventKind.REMINDER, EventKind.MAIN_EXPIRY):
            outcome = await watchdog.on_scheduled_event(kind, first.timer.armed_at)
            assert outcome.action == "ignored"
            assert outcome.reason == "stale_generation"
        outcome = await watchdog.on_scheduled_event(
            EventKind.FOLLOW_UP, first.timer.armed_at, follow_up=1
        )
        assert outcome.reason == "stale_generation"

        assert gateway.calls == []
        assert (await watchdog.get_status()).state == WatchState.ARMED

    @pytest.mark.asyncio
    async def test_event_while_idle_ignored(self, watchdog, gateway, recipients):
        armed = await watchdog.arm(60, "Rex", recipients)
        await watchdog.check_in()

        outcome = await watchdog.on_scheduled_event(EventKind.MAIN_EXPIRY, armed.timer.armed_at)

        assert outcome.action == "ignored"
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_malformed_payload_discarded(self, watchdog):
        assert await watchdog.handle_payload({"kind": "bogus"}) is None

    @pytest.mark.asyncio
    async def test_payload_round_trip(self, watchdog, fake_scheduler, gateway, recipients, clock):
        await watchdog.arm(30, "Rex", recipients)
        clock.advance(minutes=30)

        outcome = await watchdog.handle_payload(fake_scheduler.payloads("main_expiry")[0])

        assert outcome.action == "dispatched"
        assert len(gateway.calls) == 1


class TestFollowUp:
    """Test follow-up escalation and retry policy."""

    async def _expire(self, watchdog, recipients, clock):
        armed = await watchdog.arm(60, "Rex", recipients)
        clock.advance(minutes=60)
        await watchdog.on_scheduled_event(EventKind.MAIN_EXPIRY, armed.timer.armed_at)
        return armed.timer.armed_at

    @pytest.mark.asyncio
    async def test_retries_only_failed_recipient(self, watchdog, gateway, recipients, clock):
        gateway.unreachable = {BOB}
        armed_at = await self._expire(watchdog, recipients, clock)

        gateway.unreachable = set()
        clock.advance(minutes=5)
        outcome = await watchdog.on_scheduled_event(EventKind.FOLLOW_UP, armed_at, follow_up=1)

        assert outcome.action == "retried"
        assert gateway.calls[-1] == [BOB]
        assert outcome.result.sent_to == (ALICE, BOB)
        assert outcome.result.failed_to == ()
        assert outcome.result.attempts == 2
        assert outcome.result.outcome == DeliveryOutcome.ALL_SENT

    @pytest.mark.asyncio
    async def test_total_failure_policy_skips_partial(
        self, store, fake_scheduler, gateway, recipients, clock
    ):
        watchdog = WatchdogStateMachine(
            store=store,
            scheduler=fake_scheduler,
            gateway_chain=DeliveryGatewayChain(gateway, clock=clock),
            clock=clock,
            retry_policy="total_failure",
        )
        gateway.unreachable = {BOB}
        armed_at = await self._expire(watchdog, recipients, clock)

        clock.advance(minutes=5)
        outcome = await watchdog.on_scheduled_event(EventKind.FOLLOW_UP, armed_at, follow_up=1)

        assert outcome.action == "skipped"
        assert outcome.reason == "nothing_to_retry"
        assert len(gateway.calls) == 1

    @pytest.mark.asyncio
    async def test_total_failure_policy_retries_when_nobody_reached(
        self, store, fake_scheduler, gateway, recipients, clock
    ):
        watchdog = WatchdogStateMachine(
            store=store,
            scheduler=fake_scheduler,
            gateway_chain=DeliveryGatewayChain(gateway, clock=clock),
            clock=clock,
            retry_policy="total_failure",
        )
        gateway.unreachable = {ALICE, BOB}
        armed_at = await self._expire(watchdog, recipients, clock)

        gateway.unreachable = set()
        clock.advance(minutes=5)
        outcome = await watchdog.on_scheduled_event(EventKind.FOLLOW_UP, armed_at, follow_up=1)

        assert outcome.action == "retried"
        assert gateway.calls[-1] == [ALICE, BOB]

    @pytest.mark.asyncio
    async def test_nothing_to_retry_when_all_sent(self, watchdog, gateway, recipients, clock):
        armed_at = await self._expire(watchdog, recipients, clock)

        clock.advance(minutes=5)
        outcome = await watchdog.on_scheduled_event(EventKind.FOLLOW_UP, armed_at, follow_up=1)

        assert outcome.action == "skipped"
        assert outcome.reason == "nothing_to_retry"
        assert len(gateway.calls) == 1
        assert (await watchdog.store.load()).timer.last_follow_up == 1

    @pytest.mark.asyncio
    async def test_same_follow_up_handled_once(self, watchdog, gateway, recipients, clock):
        gateway.unreachable = {ALICE, BOB}
        armed_at = await self._expire(watchdog, recipients, clock)

        clock.advance(minutes=10)
        await watchdog.on_scheduled_event(EventKind.FOLLOW_UP, armed_at, follow_up=2)
        late = await watchdog.on_scheduled_event(EventKind.FOLLOW_UP, armed_at, follow_up=1)
        repeat = await watchdog.on_scheduled_event(EventKind.FOLLOW_UP, armed_at, follow_up=2)

        assert late.reason == "already_handled"
        assert repeat.reason == "already_handled"
        assert len(gateway.calls) == 2

    @pytest.mark.asyncio
    async def test_follow_up_performs_missed_main_expiry(
        self, watchdog, gateway, recipients, clock
    ):
        armed = await watchdog.arm(60, "Rex", recipients)
        clock.advance(minutes=65)

        outcome = await watchdog.on_scheduled_event(
            EventKind.FOLLOW_UP, armed.timer.armed_at, follow_up=1
        )
        late_main = await watchdog.on_scheduled_event(EventKind.MAIN_EXPIRY, armed.timer.armed_at)

        assert outcome.action == "dispatched"
        assert gateway.calls == [[ALICE, BOB]]
        assert late_main.reason == "already_alerted"

    @pytest.mark.asyncio
    async def test_follow_up_without_number_ignored(self, watchdog, recipients):
        armed = await watchdog.arm(60, "Rex", recipients)
        outcome = await watchdog.on_scheduled_event(EventKind.FOLLOW_UP, armed.timer.armed_at)
        assert outcome.reason == "invalid"


class TestBatchBackendEscalation:
    """Run a partial delivery through the real batch backend gateway."""

    def _batch_watchdog(self, store, fake_scheduler, clock, post: AsyncMock):
        session = MagicMock()
        session.post = post
        session.__aenter__ = AsyncMock(return_value=session)
        session.__aexit__ = AsyncMock(return_value=False)
        backend = BatchBackendGateway(
            service_url="https://sms.example.com",
            session_factory=MagicMock(return_value=session),
            clock=clock,
        )
        return WatchdogStateMachine(
            store=store,
            scheduler=fake_scheduler,
            gateway_chain=DeliveryGatewayChain(backend, clock=clock),
            clock=clock,
            retry_policy="failed_recipients",
        )

    @staticmethod
    def _response(sent_to: list[str]) -> MagicMock:
        response = MagicMock()
        response.status_code = 200
        response.json.return_value = {"sentTo": sent_to}
        return response

    @pytest.mark.asyncio
    async def test_partial_delivery_then_follow_up_retries_failed_contact(
        self, store, fake_scheduler, recipients, clock
    ):
        post = AsyncMock(side_effect=[self._response([ALICE]), self._response([BOB])])
        watchdog = self._batch_watchdog(store, fake_scheduler, clock, post)
        armed = await watchdog.arm(30, "Rex", recipients)

        clock.advance(minutes=30)
        main = await watchdog.on_scheduled_event(EventKind.MAIN_EXPIRY, armed.timer.armed_at)

        assert main.result.sent is True
        assert main.result.sent_to == (ALICE,)
        assert main.result.failed_to == (BOB,)
        assert main.result.backend == "backend"

        clock.advance(minutes=5)
        follow_up = await watchdog.on_scheduled_event(
            EventKind.FOLLOW_UP, armed.timer.armed_at, follow_up=1
        )

        assert post.await_count == 2
        retried = post.call_args_list[1].kwargs["json"]["contacts"]
        assert [c["phone"] for c in retried] == [BOB]
        assert follow_up.action == "retried"
        assert follow_up.result.sent_to == (ALICE, BOB)
        assert follow_up.result.failed_to == ()


class TestCheckIn:
    """Test check-in and cancel."""

    @pytest.mark.asyncio
    async def test_check_in_cancels_pending_events(self, watchdog, fake_scheduler, recipients):
        await watchdog.arm(60, "Rex", recipients)

        result = await watchdog.check_in()

        assert result.reason == "checked_in"
        assert result.previous_state == WatchState.ARMED
        assert len(result.cancelled_event_ids) == 8
        assert fake_scheduler.pending == {}
        snapshot = await watchdog.store.load()
        assert snapshot.timer is None
        assert snapshot.scheduled_event_ids == ()

    @pytest.mark.asyncio
    async def test_check_in_while_alerting_clears_result(
        self, watchdog, fake_scheduler, recipients, clock
    ):
        armed = await watchdog.arm(60, "Rex", recipients)
        clock.advance(minutes=60)
        await watchdog.on_scheduled_event(EventKind.MAIN_EXPIRY, armed.timer.armed_at)

        result = await watchdog.check_in()

        assert result.previous_state == WatchState.ALERTING
        status = await watchdog.get_status()
        assert status.state == WatchState.IDLE
        assert status.last_delivery_result is None

    @pytest.mark.asyncio
    async def test_check_in_when_idle_raises(self, watchdog):
        with pytest.raises(NotArmedError):
            await watchdog.check_in()

    @pytest.mark.asyncio
    async def test_cancel(self, watchdog, recipients):
        await watchdog.arm(60, "Rex", recipients)
        result = await watchdog.cancel()
        assert result.reason == "cancelled"
        with pytest.raises(NotArmedError):
            await watchdog.cancel()


class TestStatus:
    """Test get_status()."""

    @pytest.mark.asyncio
    async def test_idle(self, watchdog):
        status = await watchdog.get_status()
        assert status.state == WatchState.IDLE
        assert status.armed_at is None

    @pytest.mark.asyncio
    async def test_remaining_and_overdue(self, watchdog, recipients, clock):
        await watchdog.arm(60, "Rex", recipients)
        clock.advance(minutes=20)

        status = await watchdog.get_status()
        assert status.time_remaining_seconds == 40 * 60
        assert status.minutes_overdue == 0
        assert status.recipient_count == 2

        clock.advance(minutes=52)
        status = await watchdog.get_status()
        assert status.time_remaining_seconds == 0
        assert status.minutes_overdue == 12


class TestMergeRetry:
    """Test folding a retry result into the standing one."""

    def test_merge_keeps_partition(self, clock):
        first = DeliveryResult(
            sent=True, sent_to=(ALICE,), failed_to=(BOB,), message="", timestamp=clock()
        )
        retry = DeliveryResult(sent=False, sent_to=(), failed_to=(BOB,), message="", timestamp=clock())

        merged = merge_retry(first, retry)

        assert merged.sent_to == (ALICE,)
        assert merged.failed_to == (BOB,)
        assert merged.attempts == 2
        assert merged.message == "SMS sent to 1 of 2 contacts"
