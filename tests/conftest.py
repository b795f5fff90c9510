"""Shared pytest fixtures for PetWatch tests."""

from collections.abc import Sequence
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio

from petwatch.core.database import close_database, init_database
from petwatch.delivery.gateways import DeliveryGatewayChain, SmsGateway, summarize, unique_by_phone
from petwatch.watch.schemas import DeliveryResult, Recipient
from petwatch.watch.state_machine import WatchdogStateMachine
from petwatch.watch.store import TimerStore

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = T0):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, minutes: float = 0, seconds: float = 0) -> datetime:
        self.current += timedelta(minutes=minutes, seconds=seconds)
        return self.current


class FakeScheduler:
    """In-memory EventScheduler that only records what it was asked to do."""

    def __init__(self):
        self.pending: dict[str, tuple[float, dict]] = {}
        self.running = True
        self._counter = 0

    def schedule(self, fire_in_seconds: float, payload: dict) -> str:
        self._counter += 1
        handle = f"fake-{self._counter}"
        self.pending[handle] = (fire_in_seconds, payload)
        return handle

    def cancel(self, handle: str) -> bool:
        return self.pending.pop(handle, None) is not None

    def cancel_all(self) -> int:
        count = len(self.pending)
        self.pending.clear()
        return count

    def payloads(self, kind: str | None = None) -> list[dict]:
        return [p for _, p in self.pending.values() if kind is None or p["kind"] == kind]


class ScriptedGateway(SmsGateway):
    """Gateway that fails every phone listed in `unreachable` and records each call."""

    name = "twilio"

    def __init__(self, clock, unreachable: Sequence[str] = ()):
        super().__init__(clock)
        self.unreachable = set(unreachable)
        self.calls: list[list[str]] = []
        self.on_send = None

    async def send(self, recipients, template) -> DeliveryResult:
        targets = unique_by_phone(recipients)
        self.calls.append([phone for _, phone in targets])
        if self.on_send is not None:
            await self.on_send()
        sent_to = [p for _, p in targets if p not in self.unreachable]
        failed_to = [p for _, p in targets if p in self.unreachable]
        return self._result(sent_to, failed_to, summarize(sent_to, len(targets)))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def gateway(clock) -> ScriptedGateway:
    return ScriptedGateway(clock)


@pytest.fixture
def recipients() -> list[Recipient]:
    return [
        Recipient(name="Alice", phone="555-000-0001"),
        Recipient(name="Bob", phone="(555) 000-0002"),
    ]


@pytest_asyncio.fixture
async def db(tmp_path: Path):
    """Fresh SQLite state database per test."""
    await init_database(tmp_path / "petwatch-test.db")
    yield
    await close_database()


@pytest.fixture
def store(db) -> TimerStore:
    return TimerStore()


@pytest.fixture
def watchdog(store, fake_scheduler, gateway, clock) -> WatchdogStateMachine:
    return WatchdogStateMachine(
        store=store,
        scheduler=fake_scheduler,
        gateway_chain=DeliveryGatewayChain(gateway, clock=clock),
        clock=clock,
        retry_policy="failed_recipients",
    )
