"""Unit tests for call_indexer.store - in-memory and JSON call stores."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

import pytest

from call_indexer.exceptions import StoreError
from call_indexer.models import IndexedCall
from call_indexer.store import CallStore, InMemoryCallStore, JsonCallStore

if TYPE_CHECKING:
    from pathlib import Path


def _call(call_id: str = "42", **overrides: object) -> IndexedCall:
    fields: dict[str, object] = {
        "call_onchain_id": call_id,
        "creator_wallet": "0x1111111111111111111111111111111111111111",
        "stake_token": "0x3333333333333333333333333333333333333333",
        "total_stake_yes": Decimal("5"),
        "start_ts": datetime(2024, 1, 1, tzinfo=UTC),
        "end_ts": datetime(2024, 1, 2, tzinfo=UTC),
        "token_address": "0x3333333333333333333333333333333333333333",
    }
    fields.update(overrides)
    return IndexedCall(**fields)


class TestInMemoryCallStore:
    """Dict-backed store semantics."""

    def test_satisfies_protocol(self) -> None:
        assert isinstance(InMemoryCallStore(), CallStore)

    @pytest.mark.asyncio
    async def test_create_if_absent_once(self) -> None:
        store = InMemoryCallStore()
        assert await store.create_if_absent(_call()) is True
        assert await store.create_if_absent(_call(total_stake_yes=Decimal(9))) is False
        found = await store.find("42")
        assert found is not None
        assert found.total_stake_yes == Decimal(5)
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_find_returns_copy(self) -> None:
        store = InMemoryCallStore()
        await store.create_if_absent(_call())

        found = await store.find("42")
        assert found is not None
        found.add_stake(Decimal(1), position=True)

        again = await store.find("42")
        assert again is not None
        assert again.total_stake_yes == Decimal(5)

    @pytest.mark.asyncio
    async def test_save_persists_mutation(self) -> None:
        store = InMemoryCallStore()
        await store.create_if_absent(_call())
        call = await store.find("42")
        assert call is not None
        call.add_stake(Decimal(2), position=False)

        await store.save(call)

        saved = await store.find("42")
        assert saved is not None
        assert saved.total_stake_no == Decimal(2)

    @pytest.mark.asyncio
    async def test_missing_returns_none(self) -> None:
        assert await InMemoryCallStore().find("nope") is None

    @pytest.mark.asyncio
    async def test_list_calls(self) -> None:
        store = InMemoryCallStore()
        await store.create_if_absent(_call("1"))
        await store.create_if_absent(_call("2"))
        ids = sorted(call.call_onchain_id for call in await store.list_calls())
        assert ids == ["1", "2"]


class TestJsonCallStore:
    """File-backed store persistence."""

    def test_satisfies_protocol(self, tmp_path: Path) -> None:
        assert isinstance(JsonCallStore(tmp_path / "calls.json"), CallStore)

    def test_creates_parent_directory(self, tmp_path: Path) -> None:
        JsonCallStore(tmp_path / "nested" / "calls.json")
        assert (tmp_path / "nested").is_dir()

    @pytest.mark.asyncio
    async def test_round_trip_across_instances(self, tmp_path: Path) -> None:
        path = tmp_path / "calls.json"
        await JsonCallStore(path).create_if_absent(
            _call(condition_json={"type": "price_above"})
        )

        found = await JsonCallStore(path).find("42")

        assert found is not None
        assert found.total_stake_yes == Decimal(5)
        assert found.condition_json == {"type": "price_above"}
        assert found.start_ts == datetime(2024, 1, 1, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_create_if_absent_is_idempotent(self, tmp_path: Path) -> None:
        store = JsonCallStore(tmp_path / "calls.json")
        assert await store.create_if_absent(_call()) is True
        assert await store.create_if_absent(_call()) is False
        assert len(await store.list_calls()) == 1

    @pytest.mark.asyncio
    async def test_no_tmp_file_left(self, tmp_path: Path) -> None:
        store = JsonCallStore(tmp_path / "calls.json")
        await store.save(_call())
        assert sorted(p.name for p in tmp_path.iterdir()) == ["calls.json"]

    @pytest.mark.asyncio
    async def test_corrupt_file_raises(self, tmp_path: Path) -> None:
        path = tmp_path / "calls.json"
        path.write_text("{not json", encoding="utf-8")

        with pytest.raises(StoreError, match="Unable to read"):
            await JsonCallStore(path).find("42")

    @pytest.mark.asyncio
    async def test_invalid_record_skipped(self, tmp_path: Path) -> None:
        path = tmp_path / "calls.json"
        good = _call("1").model_dump(mode="json")
        path.write_text(
            json.dumps({"calls": {"1": good, "2": {"call_onchain_id": "2"}}}),
            encoding="utf-8",
        )

        calls = await JsonCallStore(path).list_calls()

        assert [call.call_onchain_id for call in calls] == ["1"]
