"""
Recovery reconciler.

Runs at process start, before anything is served. Compares the durable
timer state with the wall clock, replays the transitions that should have
happened while the process was gone, then re-registers the remaining future
events with the (freshly started, empty) scheduler.
"""

from datetime import datetime

from petwatch.core.logger import logger
from petwatch.watch.planner import due_events, plan
from petwatch.watch.schemas import EventKind, ReconcileReport, WatchState
from petwatch.watch.state_machine import WatchdogStateMachine


class RecoveryReconciler:
    """
    Replays overdue escalation events through the watchdog.

    Past-due events fire now rather than being dropped. Several overdue
    follow-ups collapse into one, and none of them retries delivery when the
    main expiry was dispatched in the same pass.
    """

    def __init__(self, watchdog: WatchdogStateMachine):
        self.watchdog = watchdog

    async def reconcile(self, now: datetime | None = None) -> ReconcileReport:
        now = now or self.watchdog.now()
        snapshot = await self.watchdog.store.load()
        timer = snapshot.timer

        if timer is None:
            if snapshot.scheduled_event_ids:
                await self.watchdog.reschedule_pending(now)
            logger.info("Reconciliation: no active watch")
            return ReconcileReport(state=WatchState.IDLE)

        armed_at = timer.armed_at
        overdue = due_events(plan(armed_at, timer.duration_minutes), now)
        kinds = {e.kind for e in overdue}
        fired: list[str] = []

        if kinds == {EventKind.REMINDER}:
            await self.watchdog.on_scheduled_event(EventKind.REMINDER, armed_at)
            fired.append(EventKind.REMINDER.value)

        main_dispatched = False
        if EventKind.MAIN_EXPIRY in kinds and not timer.alerted:
            minutes = timer.minutes_overdue(now)
            logger.warning(f"Watch expired {minutes} min ago while the process was down; alerting")
            outcome = await self.watchdog.on_scheduled_event(EventKind.MAIN_EXPIRY, armed_at)
            main_dispatched = outcome.action == "dispatched"
            fired.append(EventKind.MAIN_EXPIRY.value)

        due_follow_ups = [
            e.follow_up
            for e in overdue
            if e.kind == EventKind.FOLLOW_UP and e.follow_up > timer.last_follow_up
        ]
        if due_follow_ups:
            latest = max(due_follow_ups)
            if main_dispatched:
                await self.watchdog.record_follow_up(armed_at, latest)
                logger.info(f"Marked follow-ups up to {latest} as handled by the fresh dispatch")
            else:
                await self.watchdog.on_scheduled_event(EventKind.FOLLOW_UP, armed_at, latest)
                fired.append(f"{EventKind.FOLLOW_UP.value}({latest})")

        rescheduled = await self.watchdog.reschedule_pending(now)
        final = await self.watchdog.store.load()

        report = ReconcileReport(
            state=final.state,
            expired=now >= timer.expires_at,
            minutes_overdue=timer.minutes_overdue(now),
            fired=fired,
            rescheduled=rescheduled,
        )
        logger.info(
            f"Reconciliation complete: state={report.state.value}, fired={fired or 'none'}, "
            f"rescheduled={rescheduled}"
        )
        return report
