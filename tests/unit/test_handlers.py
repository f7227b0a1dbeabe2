"""Unit tests for call_indexer.handlers - idempotent creation and stake updates."""

from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import Any

import pytest
from structlog.testing import capture_logs

from call_indexer.auth import AddressValidator
from call_indexer.exceptions import AllGatewaysExhaustedError, AuthRejectedError
from call_indexer.handlers import CallEventHandlers
from call_indexer.models import CallStatus
from call_indexer.notifications import NotificationBus, NotificationKind
from call_indexer.store import InMemoryCallStore

CREATOR = "0x1111111111111111111111111111111111111111"


class StubFetcher:
    """Gateway fetcher stand-in returning a payload or raising."""

    def __init__(self, payload: dict[str, Any] | None = None) -> None:
        self.payload = payload
        self.requested: list[str] = []

    async def fetch_content(self, cid: str) -> dict[str, Any]:
        self.requested.append(cid)
        if self.payload is None:
            raise AllGatewaysExhaustedError(cid, ConnectionError("offline"))
        return self.payload


class TestCallCreated:
    """handle_call_created idempotency and record building."""

    @pytest.mark.asyncio
    async def test_creates_record(
        self,
        handlers: CallEventHandlers,
        store: InMemoryCallStore,
        make_call_created: Any,
    ) -> None:
        created = await handlers.handle_call_created(make_call_created(42))

        assert created is True
        call = await store.find("42")
        assert call is not None
        assert call.creator_wallet == CREATOR
        assert call.total_stake_yes == Decimal(5)
        assert call.total_stake_no == Decimal(0)
        assert call.status is CallStatus.ACTIVE
        assert call.start_ts.timestamp() == 1_700_000_000
        assert call.end_ts > call.start_ts
        assert call.condition_json == {}

    @pytest.mark.asyncio
    async def test_replay_yields_one_record(
        self,
        handlers: CallEventHandlers,
        store: InMemoryCallStore,
        notifier: NotificationBus,
        make_call_created: Any,
    ) -> None:
        event = make_call_created(42)

        assert await handlers.handle_call_created(event) is True
        assert await handlers.handle_call_created(event) is False

        assert len(store) == 1
        assert len(notifier.recent(CREATOR)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_delivery_yields_one_record(
        self,
        handlers: CallEventHandlers,
        store: InMemoryCallStore,
        make_call_created: Any,
    ) -> None:
        event = make_call_created(42)

        results = await asyncio.gather(
            handlers.handle_call_created(event),
            handlers.handle_call_created(event),
        )

        assert sorted(results) == [False, True]
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_existing_record_is_not_modified(
        self,
        handlers: CallEventHandlers,
        store: InMemoryCallStore,
        make_call_created: Any,
    ) -> None:
        await handlers.handle_call_created(make_call_created(7))
        await handlers.handle_call_created(make_call_created(7, stake_amount=99 * 10**18))

        call = await store.find("7")
        assert call is not None
        assert call.total_stake_yes == Decimal(5)

    @pytest.mark.asyncio
    async def test_malformed_creator_rejected(
        self,
        handlers: CallEventHandlers,
        store: InMemoryCallStore,
        make_call_created: Any,
    ) -> None:
        with pytest.raises(AuthRejectedError, match="Malformed"):
            await handlers.handle_call_created(make_call_created(1, creator="alice"))
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_blocked_creator_rejected(
        self, store: InMemoryCallStore, make_call_created: Any
    ) -> None:
        handlers = CallEventHandlers(store, AddressValidator([CREATOR]))

        with pytest.raises(AuthRejectedError, match="blocked"):
            await handlers.handle_call_created(make_call_created(1))
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_metadata_resolved_from_gateway(
        self, store: InMemoryCallStore, make_call_created: Any
    ) -> None:
        fetcher = StubFetcher({"condition": {"type": "price_above", "target": "2"}})
        handlers = CallEventHandlers(store, AddressValidator(), fetcher=fetcher)

        await handlers.handle_call_created(make_call_created(3, ipfs_cid="bafy123"))

        call = await store.find("3")
        assert call is not None
        assert call.ipfs_cid == "bafy123"
        assert call.condition_json["condition"]["target"] == "2"
        assert fetcher.requested == ["bafy123"]

    @pytest.mark.asyncio
    async def test_metadata_failure_degrades_to_empty(
        self, store: InMemoryCallStore, make_call_created: Any
    ) -> None:
        handlers = CallEventHandlers(store, AddressValidator(), fetcher=StubFetcher())

        with capture_logs() as logs:
            created = await handlers.handle_call_created(
                make_call_created(3, ipfs_cid="bafy123")
            )

        assert created is True
        call = await store.find("3")
        assert call is not None
        assert call.condition_json == {}
        assert [e["event"] for e in logs if e["log_level"] == "error"] == [
            "call_metadata_unavailable"
        ]

    @pytest.mark.asyncio
    async def test_no_cid_skips_fetch(
        self, store: InMemoryCallStore, make_call_created: Any
    ) -> None:
        fetcher = StubFetcher({"ignored": True})
        handlers = CallEventHandlers(store, AddressValidator(), fetcher=fetcher)

        await handlers.handle_call_created(make_call_created(3))

        assert fetcher.requested == []

    @pytest.mark.asyncio
    async def test_creation_notifies_creator(
        self,
        handlers: CallEventHandlers,
        notifier: NotificationBus,
        make_call_created: Any,
    ) -> None:
        await handlers.handle_call_created(make_call_created(42, block_number=17))

        [notification] = notifier.recent(CREATOR)
        assert notification.kind is NotificationKind.CALL_CREATED
        assert notification.payload == {"call_id": "42", "block_number": 17}


class TestStakeAdded:
    """handle_stake_added accumulation and unknown-call handling."""

    @pytest.mark.asyncio
    async def test_unknown_call_logs_one_warning(
        self,
        handlers: CallEventHandlers,
        store: InMemoryCallStore,
        make_stake_added: Any,
    ) -> None:
        with capture_logs() as logs:
            updated = await handlers.handle_stake_added(make_stake_added(999))

        assert updated is False
        assert len(store) == 0
        warnings = [entry for entry in logs if entry["log_level"] == "warning"]
        assert len(warnings) == 1
        assert warnings[0]["event"] == "stake_for_unknown_call"
        assert warnings[0]["call_id"] == "999"

    @pytest.mark.asyncio
    async def test_accumulates_both_sides(
        self,
        handlers: CallEventHandlers,
        store: InMemoryCallStore,
        make_call_created: Any,
        make_stake_added: Any,
    ) -> None:
        await handlers.handle_call_created(make_call_created(42))

        await handlers.handle_stake_added(make_stake_added(42, position=True))
        await handlers.handle_stake_added(
            make_stake_added(42, position=False, amount=25 * 10**17)
        )

        call = await store.find("42")
        assert call is not None
        assert call.total_stake_yes == Decimal(6)
        assert call.total_stake_no == Decimal("2.5")

    @pytest.mark.asyncio
    async def test_concurrent_stakes_all_counted(
        self,
        handlers: CallEventHandlers,
        store: InMemoryCallStore,
        make_call_created: Any,
        make_stake_added: Any,
    ) -> None:
        await handlers.handle_call_created(make_call_created(42))

        await asyncio.gather(
            *(handlers.handle_stake_added(make_stake_added(42)) for _ in range(10))
        )

        call = await store.find("42")
        assert call is not None
        assert call.total_stake_yes == Decimal(15)

    @pytest.mark.asyncio
    async def test_stake_notifies_creator(
        self,
        handlers: CallEventHandlers,
        notifier: NotificationBus,
        make_call_created: Any,
        make_stake_added: Any,
    ) -> None:
        await handlers.handle_call_created(make_call_created(42))
        await handlers.handle_stake_added(make_stake_added(42, position=False))

        latest = notifier.recent(CREATOR)[-1]
        assert latest.kind is NotificationKind.STAKE_RECEIVED
        assert latest.payload["side"] == "no"
        assert latest.payload["amount"] == "1"


class TestDispatch:
    @pytest.mark.asyncio
    async def test_routes_by_kind(
        self,
        handlers: CallEventHandlers,
        store: InMemoryCallStore,
        make_call_created: Any,
        make_stake_added: Any,
    ) -> None:
        await handlers.dispatch(make_call_created(5))
        await handlers.dispatch(make_stake_added(5))

        call = await store.find("5")
        assert call is not None
        assert call.total_stake_yes == Decimal(6)
