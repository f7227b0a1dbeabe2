"""In-process notification bus for call lifecycle events."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from pathlib import Path

NotificationPayload = dict[str, str | int | float | bool | None]


class NotificationKind(StrEnum):
    CALL_CREATED = "call_created"
    STAKE_RECEIVED = "stake_received"


class Notification(BaseModel):
    """A single notification addressed to a wallet."""

    id: int
    recipient: str
    kind: NotificationKind
    payload: NotificationPayload = Field(default_factory=dict)
    timestamp: str = Field(default_factory=lambda: datetime.now(tz=UTC).isoformat())


@runtime_checkable
class NotificationEmitter(Protocol):
    def emit(
        self,
        recipient: str,
        kind: NotificationKind,
        payload: NotificationPayload | None = None,
    ) -> Notification | None: ...


class NotificationBus:
    """Publish/subscribe bus with per-recipient buffers and JSONL persistence."""

    def __init__(self, data_dir: Path | None = None, buffer_size: int = 200) -> None:
        self._data_dir = data_dir
        if self._data_dir is not None:
            self._data_dir.mkdir(parents=True, exist_ok=True)
        self._buffer_size = buffer_size
        self._next_id = 1
        self._buffers: dict[str, deque[Notification]] = defaultdict(
            lambda: deque(maxlen=self._buffer_size)
        )
        self._subscribers: dict[str, set[asyncio.Queue[Notification]]] = defaultdict(
            set
        )

    def emit(
        self,
        recipient: str,
        kind: NotificationKind,
        payload: NotificationPayload | None = None,
    ) -> Notification:
        key = recipient.lower()
        notification = Notification(
            id=self._next_id,
            recipient=key,
            kind=kind,
            payload=payload or {},
        )
        self._next_id += 1

        self._buffers[key].append(notification)
        self._persist(notification)

        for queue in list(self._subscribers.get(key, set())):
            queue.put_nowait(notification)

        return notification

    def subscribe(self, recipient: str) -> asyncio.Queue[Notification]:
        key = recipient.lower()
        queue: asyncio.Queue[Notification] = asyncio.Queue()
        for notification in self.recent(key):
            queue.put_nowait(notification)
        self._subscribers[key].add(queue)
        return queue

    def unsubscribe(self, recipient: str, queue: asyncio.Queue[Notification]) -> None:
        self._subscribers[recipient.lower()].discard(queue)

    def recent(self, recipient: str) -> list[Notification]:
        return list(self._buffers.get(recipient.lower(), []))

    def _persist(self, notification: Notification) -> None:
        if self._data_dir is None:
            return
        path = self._data_dir / f"{notification.recipient}.jsonl"
        with path.open("a", encoding="utf-8") as f:
            f.write(notification.model_dump_json() + "\n")
