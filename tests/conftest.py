"""Shared pytest fixtures for the call-indexer test suite."""

from __future__ import annotations

import random
from collections.abc import Callable, Mapping
from typing import Any

import pytest

from call_indexer.auth import AddressValidator
from call_indexer.chain import ErrorCallback, EventCallback
from call_indexer.handlers import CallEventHandlers
from call_indexer.models import CallCreatedEvent, EventKind, RegistryEvent, StakeAddedEvent
from call_indexer.notifications import NotificationBus
from call_indexer.retry import RetryEngine
from call_indexer.store import InMemoryCallStore

CREATOR = "0x1111111111111111111111111111111111111111"
STAKER = "0x2222222222222222222222222222222222222222"
TOKEN = "0x3333333333333333333333333333333333333333"
ONE_TOKEN = 10**18


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class RecordingSleep:
    """Async sleep replacement that records requested delays."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)

    @property
    def delays_ms(self) -> list[int]:
        return [round(seconds * 1000) for seconds in self.calls]


class FakeSubscription:
    def __init__(self, handlers: dict[EventKind, EventCallback], on_error: ErrorCallback):
        self.handlers = handlers
        self.on_error = on_error
        self.closed = False

    @property
    def active(self) -> bool:
        return not self.closed

    def close(self) -> None:
        self.closed = True


class FakeChainTransport:
    """In-memory chain transport with scripted failures.

    Attributes:
        block_number: Reported chain height.
        events: Events per kind, filtered by block on query.
        query_failures: Exceptions raised by the next ``query_events`` calls.
        block_number_failures: Exceptions raised by the next height reads.
        subscribe_failures: Exceptions raised by the next ``subscribe`` calls.
    """

    def __init__(self) -> None:
        self.chain_id = 31337
        self.block_number = 0
        self.events: dict[EventKind, list[RegistryEvent]] = {
            EventKind.CALL_CREATED: [],
            EventKind.STAKE_ADDED: [],
        }
        self.query_failures: list[BaseException] = []
        self.block_number_failures: list[BaseException] = []
        self.subscribe_failures: list[BaseException] = []
        self.queries: list[tuple[EventKind, int, int]] = []
        self.subscriptions: list[FakeSubscription] = []
        self.subscribe_calls = 0
        self.resumed_from: int | None = None

    def add(self, event: RegistryEvent) -> None:
        self.events[event.kind].append(event)
        self.block_number = max(self.block_number, event.block_number)

    async def get_chain_id(self) -> int:
        return self.chain_id

    async def get_block_number(self) -> int:
        if self.block_number_failures:
            raise self.block_number_failures.pop(0)
        return self.block_number

    async def query_events(
        self, kind: EventKind, from_block: int, to_block: int
    ) -> list[RegistryEvent]:
        self.queries.append((kind, from_block, to_block))
        if self.query_failures:
            raise self.query_failures.pop(0)
        return [
            event
            for event in self.events[kind]
            if from_block <= event.block_number <= to_block
        ]

    async def subscribe(
        self,
        handlers: Mapping[EventKind, EventCallback],
        on_error: ErrorCallback,
    ) -> FakeSubscription:
        self.subscribe_calls += 1
        if self.subscribe_failures:
            raise self.subscribe_failures.pop(0)
        subscription = FakeSubscription(dict(handlers), on_error)
        self.subscriptions.append(subscription)
        return subscription

    def resume_from(self, block: int) -> None:
        self.resumed_from = block

    @property
    def current(self) -> FakeSubscription:
        return self.subscriptions[-1]

    async def deliver(self, event: RegistryEvent) -> None:
        await self.current.handlers[event.kind](event)

    def break_connection(self, error: BaseException | None = None) -> None:
        self.current.on_error(error or ConnectionError("socket closed"))


# ---------------------------------------------------------------------------
# Event factories
# ---------------------------------------------------------------------------


def _call_created(call_id: int = 42, **overrides: Any) -> CallCreatedEvent:
    fields: dict[str, Any] = {
        "call_id": call_id,
        "creator": CREATOR,
        "stake_token": TOKEN,
        "stake_amount": 5 * ONE_TOKEN,
        "start_ts": 1_700_000_000,
        "end_ts": 1_700_086_400,
        "token_address": TOKEN,
        "pair_id": None,
        "ipfs_cid": None,
        "block_number": 1,
    }
    fields.update(overrides)
    return CallCreatedEvent(**fields)


def _stake_added(call_id: int = 42, **overrides: Any) -> StakeAddedEvent:
    fields: dict[str, Any] = {
        "call_id": call_id,
        "staker": STAKER,
        "position": True,
        "amount": ONE_TOKEN,
        "block_number": 2,
    }
    fields.update(overrides)
    return StakeAddedEvent(**fields)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def make_call_created() -> Callable[..., CallCreatedEvent]:
    """Factory for ``CallCreated`` events with overridable fields."""
    return _call_created


@pytest.fixture()
def make_stake_added() -> Callable[..., StakeAddedEvent]:
    """Factory for ``StakeAdded`` events with overridable fields."""
    return _stake_added


@pytest.fixture()
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
def engine(recording_sleep: RecordingSleep) -> RetryEngine:
    """Retry engine that never really sleeps and has a seeded jitter source."""
    return RetryEngine(sleep=recording_sleep, rng=random.Random(1234))


@pytest.fixture()
def fake_transport() -> FakeChainTransport:
    return FakeChainTransport()


@pytest.fixture()
def store() -> InMemoryCallStore:
    return InMemoryCallStore()


@pytest.fixture()
def notifier() -> NotificationBus:
    return NotificationBus()


@pytest.fixture()
def handlers(store: InMemoryCallStore, notifier: NotificationBus) -> CallEventHandlers:
    return CallEventHandlers(store, AddressValidator(), notifier=notifier)
