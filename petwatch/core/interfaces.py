"""Protocol-Driven Interfaces: contracts between the watchdog and its collaborators.

The scheduler that wakes the process at absolute times is treated as an
external actor. These protocols let the state machine talk to it without
knowing whether it is APScheduler, a platform notification service, or a
test double.
"""

from collections.abc import Awaitable, Callable
from typing import Any, Protocol

SchedulerPayload = dict[str, Any]
PayloadHandler = Callable[[SchedulerPayload], Awaitable[Any]]


class EventScheduler(Protocol):
    """Scheduler implementing the "fire payload at time T" contract.

    Contract:
        - schedule() registers a one-shot wake-up and returns an opaque handle
        - cancel() removes a pending wake-up; unknown handles are ignored
        - delivery has no ordering guarantee and may arrive arbitrarily late

    Constraint:
        - The scheduler holds no watch state; payloads carry everything
          the handler needs to recognize stale events
    """

    def schedule(self, fire_in_seconds: float, payload: SchedulerPayload) -> str:
        """
        Register a wake-up.

        Args:
            fire_in_seconds: Delay relative to now (negative means fire immediately)
            payload: Opaque data handed back when the wake-up fires

        Returns:
            Handle usable with cancel()
        """
        ...

    def cancel(self, handle: str) -> bool:
        """Cancel one pending wake-up. Returns True if it was still pending."""
        ...

    def cancel_all(self) -> int:
        """Cancel every pending wake-up. Returns how many were removed."""
        ...
