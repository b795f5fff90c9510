"""
Alert Scheduler for planned escalation events.

Uses APScheduler to wake the process at each event's fire time and post the
event back into the watchdog. The job store is in-memory, so pending jobs do
not survive a restart; the recovery reconciler re-registers them.
"""

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from petwatch.core.interfaces import PayloadHandler, SchedulerPayload
from petwatch.core.logger import logger
from petwatch.watch.schemas import LocalAlert

AlertListener = Callable[[LocalAlert, SchedulerPayload], None]


class AlertScheduler:
    """
    APScheduler-backed implementation of the EventScheduler protocol.

    Each planned event becomes a one-shot DateTrigger job. Late jobs always
    run (no misfire limit) since a late alert beats a dropped one.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None):
        self.scheduler: AsyncIOScheduler | None = None
        self._running = False
        self._handler: PayloadHandler | None = None
        self._listeners: list[AlertListener] = []
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def set_handler(self, handler: PayloadHandler) -> None:
        """Set the coroutine that receives fired payloads."""
        self._handler = handler

    def add_alert_listener(self, listener: AlertListener) -> None:
        """Register a callback for local notification content (e.g. a push bridge)."""
        self._listeners.append(listener)

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the scheduler."""
        if self._running:
            logger.warning("AlertScheduler already running")
            return

        self.scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self.scheduler.start()
        self._running = True
        logger.info("AlertScheduler started")

    async def stop(self) -> None:
        """Stop the scheduler, dropping pending jobs."""
        if not self._running:
            return

        if self.scheduler:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None

        self._running = False
        logger.info("AlertScheduler stopped")

    def schedule(self, fire_in_seconds: float, payload: SchedulerPayload) -> str:
        if self.scheduler is None:
            raise RuntimeError("AlertScheduler not started. Call start() first.")

        handle = f"watch-{uuid4()}"
        run_at = self._clock() + timedelta(seconds=max(fire_in_seconds, 0.0))
        self.scheduler.add_job(
            self._fire,
            trigger=DateTrigger(run_date=run_at),
            id=handle,
            name=f"Watch event {payload.get('kind')}",
            kwargs={"payload": payload},
            misfire_grace_time=None,
        )
        logger.debug(f"Scheduled {payload.get('kind')} at {run_at.isoformat()} ({handle})")
        return handle

    def cancel(self, handle: str) -> bool:
        if self.scheduler is None:
            return False
        try:
            self.scheduler.remove_job(handle)
        except JobLookupError:
            # Already fired or never existed in this process
            return False
        logger.debug(f"Cancelled scheduled event {handle}")
        return True

    def cancel_all(self) -> int:
        if self.scheduler is None:
            return 0
        jobs = self.scheduler.get_jobs()
        self.scheduler.remove_all_jobs()
        return len(jobs)

    async def _fire(self, payload: SchedulerPayload) -> None:
        """
        Job body: surface the local alert, then hand the event to the watchdog.

        Called by APScheduler at the event's fire time.
        """
        raw_alert = payload.get("alert")
        if raw_alert:
            alert = LocalAlert.model_validate(raw_alert)
            log = logger.warning if alert.urgent else logger.info
            log(f"{alert.title} {alert.body}")
            for listener in self._listeners:
                try:
                    listener(alert, payload)
                except Exception as e:
                    logger.error(f"Alert listener failed: {e}", exc_info=True)

        if self._handler is None:
            logger.error(f"No handler registered for scheduled event {payload.get('kind')}")
            return

        try:
            await self._handler(payload)
        except Exception as e:
            logger.error(f"Scheduled event {payload.get('kind')} failed: {e}", exc_info=True)
