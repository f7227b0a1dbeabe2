"""Persistence for indexed call records.

The indexer treats the store as a simple keyed collection. Creation goes
through :meth:`CallStore.create_if_absent`, which is atomic per call ID so
replayed or concurrently delivered creation events yield one record.
"""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import structlog
from pydantic import ValidationError

from call_indexer.exceptions import StoreError
from call_indexer.models import IndexedCall

if TYPE_CHECKING:
    from pathlib import Path

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


@runtime_checkable
class CallStore(Protocol):
    """Keyed store of :class:`IndexedCall` records."""

    async def find(self, call_id: str) -> IndexedCall | None: ...

    async def create_if_absent(self, call: IndexedCall) -> bool: ...

    async def save(self, call: IndexedCall) -> None: ...

    async def list_calls(self) -> list[IndexedCall]: ...


class InMemoryCallStore:
    """Dict-backed call store for tests and ephemeral runs."""

    def __init__(self) -> None:
        self._calls: dict[str, IndexedCall] = {}
        self._lock = asyncio.Lock()

    async def find(self, call_id: str) -> IndexedCall | None:
        call = self._calls.get(call_id)
        return call.model_copy(deep=True) if call is not None else None

    async def create_if_absent(self, call: IndexedCall) -> bool:
        async with self._lock:
            if call.call_onchain_id in self._calls:
                return False
            self._calls[call.call_onchain_id] = call.model_copy(deep=True)
            return True

    async def save(self, call: IndexedCall) -> None:
        async with self._lock:
            self._calls[call.call_onchain_id] = call.model_copy(deep=True)

    async def list_calls(self) -> list[IndexedCall]:
        return [call.model_copy(deep=True) for call in self._calls.values()]

    def __len__(self) -> int:
        return len(self._calls)


class JsonCallStore:
    """JSON-backed call store, rewritten in full on every mutation."""

    def __init__(self, store_path: Path) -> None:
        self._store_path = store_path
        self._store_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    def _load(self) -> dict[str, IndexedCall]:
        if not self._store_path.exists():
            return {}
        try:
            payload = json.loads(self._store_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            msg = f"Unable to read call store {self._store_path}: {exc}"
            raise StoreError(msg) from exc

        calls: dict[str, IndexedCall] = {}
        for call_id, raw in payload.get("calls", {}).items():
            try:
                calls[call_id] = IndexedCall.model_validate(raw)
            except ValidationError:
                logger.warning("store_record_invalid", call_id=call_id)
        return calls

    def _save(self, calls: dict[str, IndexedCall]) -> None:
        payload = {
            "calls": {
                call_id: call.model_dump(mode="json") for call_id, call in calls.items()
            }
        }
        tmp_path = self._store_path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        tmp_path.replace(self._store_path)

    async def find(self, call_id: str) -> IndexedCall | None:
        async with self._lock:
            return self._load().get(call_id)

    async def create_if_absent(self, call: IndexedCall) -> bool:
        async with self._lock:
            calls = self._load()
            if call.call_onchain_id in calls:
                return False
            calls[call.call_onchain_id] = call
            self._save(calls)
            return True

    async def save(self, call: IndexedCall) -> None:
        async with self._lock:
            calls = self._load()
            calls[call.call_onchain_id] = call
            self._save(calls)

    async def list_calls(self) -> list[IndexedCall]:
        async with self._lock:
            return list(self._load().values())
