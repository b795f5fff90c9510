"""
Durable timer state.

Persists the watch snapshot as a handful of JSON documents in the key-value
state table. A snapshot is always written in a single transaction, so a
reader never observes a timer with some fields updated and others stale.
"""

from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ValidationError
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from petwatch.core.database import StateEntry, get_session
from petwatch.core.logger import logger
from petwatch.delivery.phone import normalize_phone
from petwatch.watch.schemas import DeliveryResult, WatchSnapshot, WatchTimer

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]

ACTIVE_TIMER_KEY = "active_timer"
# Legacy duplicate of WatchTimer.alerted, kept for backward reconciliation
TIMER_ALERTED_KEY = "timer_alerted"
LAST_DELIVERY_RESULT_KEY = "last_delivery_result"
SCHEDULED_EVENT_IDS_KEY = "active_scheduled_event_ids"

TIMER_KEYS = (
    ACTIVE_TIMER_KEY,
    TIMER_ALERTED_KEY,
    LAST_DELIVERY_RESULT_KEY,
    SCHEDULED_EVENT_IDS_KEY,
)


def _parse(model: type[BaseModel], key: str, raw: Any) -> Any:
    """Validate a stored document, treating corrupt data as absent."""
    if raw is None:
        return None
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        logger.warning(f"Discarding corrupt state document '{key}': {e}")
        return None


class TimerStore:
    """
    Reads and writes the watch snapshot.

    Only the WatchdogStateMachine calls replace(); everything else reads.
    """

    def __init__(self, session_factory: SessionFactory = get_session):
        self._session_factory = session_factory

    async def load(self) -> WatchSnapshot:
        """Load the current snapshot (empty snapshot when nothing is armed)."""
        async with self._session_factory() as session:
            stmt = select(StateEntry).where(StateEntry.key.in_(TIMER_KEYS))
            result = await session.execute(stmt)
            docs = {entry.key: entry.value for entry in result.scalars().all()}

        timer: WatchTimer | None = _parse(WatchTimer, ACTIVE_TIMER_KEY, docs.get(ACTIVE_TIMER_KEY))
        delivery: DeliveryResult | None = _parse(
            DeliveryResult, LAST_DELIVERY_RESULT_KEY, docs.get(LAST_DELIVERY_RESULT_KEY)
        )
        raw_ids = docs.get(SCHEDULED_EVENT_IDS_KEY) or []
        event_ids = tuple(str(i) for i in raw_ids) if isinstance(raw_ids, list) else ()

        if timer is None:
            # Results only live as long as their window
            return WatchSnapshot(scheduled_event_ids=event_ids)

        if docs.get(TIMER_ALERTED_KEY) is True and not timer.alerted:
            logger.info("Legacy alerted flag set without timer flag; treating timer as alerted")
            timer = timer.model_copy(update={"alerted": True})

        if timer.alerted and delivery is None:
            # An alert was claimed but its outcome never got recorded;
            # count everyone as unreached so follow-ups retry them
            delivery = DeliveryResult(
                sent=False,
                sent_to=(),
                failed_to=tuple(dict.fromkeys(normalize_phone(r.phone) for r in timer.recipients)),
                message="Alert was triggered but its delivery status is unknown",
                timestamp=datetime.now(timezone.utc),
                backend="none",
            )

        return WatchSnapshot(
            timer=timer,
            last_delivery_result=delivery,
            scheduled_event_ids=event_ids,
        )

    async def replace(self, snapshot: WatchSnapshot) -> None:
        """Atomically replace every timer document with the snapshot's values."""
        timer = snapshot.timer
        docs: dict[str, Any] = {
            ACTIVE_TIMER_KEY: timer.model_dump(mode="json") if timer else None,
            TIMER_ALERTED_KEY: True if timer and timer.alerted else None,
            LAST_DELIVERY_RESULT_KEY: (
                snapshot.last_delivery_result.model_dump(mode="json")
                if snapshot.last_delivery_result
                else None
            ),
            SCHEDULED_EVENT_IDS_KEY: list(snapshot.scheduled_event_ids) or None,
        }

        async with self._session_factory() as session:
            removed = [key for key, value in docs.items() if value is None]
            if removed:
                await session.execute(delete(StateEntry).where(StateEntry.key.in_(removed)))
            for key, value in docs.items():
                if value is not None:
                    await session.merge(StateEntry(key=key, value=value))
            await session.commit()

        logger.debug(f"Persisted watch snapshot (state={snapshot.state.value})")
