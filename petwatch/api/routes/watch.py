"""
FastAPI routes for the watch lifecycle.

Arm, check in, cancel and query the active watch. Also exposes the ingress
an external scheduler posts fired events to, and a manual reconcile trigger.
"""

import uuid

from fastapi import APIRouter, Depends, Request

from petwatch.core.errors import WatchResponse
from petwatch.core.logger import logger
from petwatch.profile.store import ProfileStore
from petwatch.watch.reconciler import RecoveryReconciler
from petwatch.watch.schemas import ArmRequest, ScheduledEventRequest
from petwatch.watch.state_machine import WatchdogStateMachine

router = APIRouter(prefix="/api/v1/watch", tags=["watch"])


def get_watchdog(request: Request) -> WatchdogStateMachine:
    """Dependency to get the watchdog from app state."""
    return request.app.state.watchdog


def get_reconciler(request: Request) -> RecoveryReconciler:
    return request.app.state.reconciler


def get_profile_store(request: Request) -> ProfileStore:
    return request.app.state.profile_store


def _ok(data: dict) -> WatchResponse:
    return WatchResponse(success=True, data=data, trace_id=str(uuid.uuid4()))


@router.post("/arm")
async def arm_watch(
    arm_request: ArmRequest,
    watchdog: WatchdogStateMachine = Depends(get_watchdog),
    profile_store: ProfileStore = Depends(get_profile_store),
) -> WatchResponse:
    """
    Arm a watch window.

    Pet name, contacts and care instructions default to the stored profile
    and are snapshotted at this point.
    """
    pet_name, recipients, care = await profile_store.snapshot()
    if arm_request.pet_name:
        pet_name = arm_request.pet_name
    if arm_request.recipients is not None:
        recipients = arm_request.recipients
    if arm_request.care is not None:
        care = arm_request.care

    result = await watchdog.arm(arm_request.duration_minutes, pet_name, recipients, care)
    return _ok(result.model_dump(mode="json"))


@router.post("/check-in")
async def check_in(watchdog: WatchdogStateMachine = Depends(get_watchdog)) -> WatchResponse:
    """Confirm the user is safe; stops all pending escalation."""
    result = await watchdog.check_in()
    return _ok(result.model_dump(mode="json"))


@router.post("/cancel")
async def cancel_watch(watchdog: WatchdogStateMachine = Depends(get_watchdog)) -> WatchResponse:
    result = await watchdog.cancel()
    return _ok(result.model_dump(mode="json"))


@router.post("/alert-now")
async def alert_now(watchdog: WatchdogStateMachine = Depends(get_watchdog)) -> WatchResponse:
    """Send the emergency SMS right away; the scheduled expiry will not send it again."""
    outcome = await watchdog.alert_now()
    return _ok(outcome.model_dump(mode="json"))


@router.get("/status")
async def get_watch_status(
    watchdog: WatchdogStateMachine = Depends(get_watchdog),
) -> WatchResponse:
    status = await watchdog.get_status()
    return _ok(status.model_dump(mode="json"))


@router.post("/events")
async def post_scheduled_event(
    event: ScheduledEventRequest,
    watchdog: WatchdogStateMachine = Depends(get_watchdog),
) -> WatchResponse:
    """
    Ingress for an external scheduler (push wake, cron, task queue).

    Events from a closed window or already handled are acknowledged and ignored.
    """
    logger.debug(f"External scheduler delivered {event.kind.value} ({event.armed_at.isoformat()})")
    outcome = await watchdog.on_scheduled_event(event.kind, event.armed_at, event.follow_up)
    return _ok(outcome.model_dump(mode="json"))


@router.post("/reconcile")
async def reconcile(
    reconciler: RecoveryReconciler = Depends(get_reconciler),
) -> WatchResponse:
    """Re-run startup reconciliation, e.g. after the host woke from sleep."""
    report = await reconciler.reconcile()
    return _ok(report.model_dump(mode="json"))
