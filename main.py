import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from petwatch.api.routes import profile, watch
from petwatch.core.config import settings
from petwatch.core.database import close_database, init_database
from petwatch.core.errors import (
    ErrorDetail,
    InvalidDurationError,
    NoRecipientsError,
    PetWatchError,
    WatchResponse,
    WatchStateError,
    error_to_detail,
)
from petwatch.core.logger import logger
from petwatch.delivery.gateways import DeliveryGatewayChain
from petwatch.profile.store import ProfileStore
from petwatch.watch.reconciler import RecoveryReconciler
from petwatch.watch.scheduler import AlertScheduler
from petwatch.watch.state_machine import WatchdogStateMachine
from petwatch.watch.store import TimerStore


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown."""
    # Startup: state must be reconciled before any request is served
    await init_database()

    scheduler = AlertScheduler()
    watchdog = WatchdogStateMachine(
        store=TimerStore(),
        scheduler=scheduler,
        gateway_chain=DeliveryGatewayChain.from_settings(settings),
    )
    scheduler.set_handler(watchdog.handle_payload)
    reconciler = RecoveryReconciler(watchdog)

    app.state.scheduler = scheduler
    app.state.watchdog = watchdog
    app.state.reconciler = reconciler
    app.state.profile_store = ProfileStore()

    await scheduler.start()
    await reconciler.reconcile()

    yield

    # Shutdown
    await scheduler.stop()
    await close_database()


app = FastAPI(
    title="PetWatch",
    description="Dead-man's-switch for pet owners: alerts emergency contacts when a watch expires",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(watch.router)
app.include_router(profile.router)


# --- Exception Handlers ---


@app.exception_handler(PetWatchError)
async def petwatch_error_handler(_request: Request, exc: PetWatchError) -> JSONResponse:
    """
    Centralized handler for PetWatch errors.

    State conflicts return 409, rejected arm input returns 422, anything
    else is a server-side problem.
    """
    error_detail = error_to_detail(exc)

    if isinstance(exc, (InvalidDurationError, NoRecipientsError)):
        status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(exc, WatchStateError):
        status_code = status.HTTP_409_CONFLICT
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    response = WatchResponse(
        success=False,
        error=error_detail,
        trace_id=exc.trace_id,
    )

    return JSONResponse(
        status_code=status_code,
        content=response.model_dump(),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle Pydantic validation errors from FastAPI request parsing."""
    trace_id = str(uuid.uuid4())
    error_detail = ErrorDetail(
        code="ERR_VALIDATION",
        message=f"Invalid request format: {exc.errors()}",
        retryable=False,
        trace_id=trace_id,
    )

    response = WatchResponse(
        success=False,
        error=error_detail,
        trace_id=trace_id,
    )

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=response.model_dump(mode="json"),
    )


@app.exception_handler(Exception)
async def general_exception_handler(_request: Request, exc: Exception) -> JSONResponse:
    """
    Catch-all handler for unexpected exceptions.

    Logs the full error and returns a sanitized response.
    """
    trace_id = str(uuid.uuid4())
    error_detail = ErrorDetail(
        code="ERR_UNKNOWN",
        message="An unexpected error occurred. Please check logs for details.",
        retryable=False,
        trace_id=trace_id,
    )

    logger.error(
        f"Unhandled exception (trace_id={trace_id}): {exc}",
        exc_info=True,
        extra={"trace_id": trace_id},
    )

    response = WatchResponse(
        success=False,
        error=error_detail,
        trace_id=trace_id,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=response.model_dump(),
    )


# --- API Endpoints ---


@app.get("/api/v1/status")
async def get_status(request: Request):
    """Health check endpoint with delivery and scheduler status."""
    watchdog: WatchdogStateMachine = request.app.state.watchdog
    watch_status = await watchdog.get_status()

    return {
        "status": "online",
        "delivery_backend": watchdog.gateway_chain.backend,
        "scheduler_running": request.app.state.scheduler.running,
        "watch_state": watch_status.state.value,
    }


if __name__ == "__main__":
    # Use 127.0.0.1 for local development
    print("Starting PetWatch on http://127.0.0.1:8000")
    uvicorn.run(app, host="127.0.0.1", port=8000)
