"""Live registry listener with a bounded reconnect state machine.

States::

    stopped -> listening -> reconnect_scheduled -> listening  (loop)
                                  |
                                  +-> gave_up  (terminal, needs a process restart)

Only transport-level errors drive reconnection. A handler failing on a
single event is logged and the listener keeps going. At most one
reconnect routine is in flight at a time.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel, Field

from call_indexer.exceptions import ReconnectGaveUpError, TransportError
from call_indexer.models import EventKind, RegistryEvent

if TYPE_CHECKING:
    from call_indexer.chain import ChainTransport, Subscription
    from call_indexer.handlers import CallEventHandlers

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

SleepFn = Callable[[float], Awaitable[None]]

_DEFAULT_MAX_RECONNECTS = 10
_DEFAULT_BASE_DELAY_MS = 1_000
_DEFAULT_CAP_DELAY_MS = 300_000


class ListenerState(StrEnum):
    """Lifecycle state of the live listener."""

    STOPPED = "stopped"
    LISTENING = "listening"
    RECONNECT_SCHEDULED = "reconnect_scheduled"
    GAVE_UP = "gave_up"


class ReconnectState(BaseModel):
    """Reconnect bookkeeping kept for the listener's lifetime."""

    consecutive_failures: int = Field(default=0, ge=0)
    last_scheduled_delay_ms: int | None = None
    is_listening: bool = False
    total_reconnects: int = Field(default=0, ge=0)


class LiveListener:
    """Follow live registry events and heal the subscription on transport errors.

    Attributes:
        max_reconnects: Consecutive failed reconnects before giving up.
        base_delay_ms: Delay before the first reconnect attempt.
        cap_delay_ms: Upper bound on any reconnect delay.
        events_processed: Live events handled successfully.
        events_failed: Live events whose handler raised.
    """

    def __init__(
        self,
        transport: ChainTransport,
        handlers: CallEventHandlers,
        *,
        max_reconnects: int = _DEFAULT_MAX_RECONNECTS,
        base_delay_ms: int = _DEFAULT_BASE_DELAY_MS,
        cap_delay_ms: int = _DEFAULT_CAP_DELAY_MS,
        sleep: SleepFn | None = None,
    ) -> None:
        self.max_reconnects = max_reconnects
        self.base_delay_ms = base_delay_ms
        self.cap_delay_ms = cap_delay_ms
        self.reconnect = ReconnectState()
        self.events_processed = 0
        self.events_failed = 0

        self._transport = transport
        self._handlers = handlers
        self._sleep: SleepFn = sleep or asyncio.sleep
        self._state = ListenerState.STOPPED
        self._subscription: Subscription | None = None
        self._generation = 0
        self._reconnect_task: asyncio.Task[None] | None = None
        self._terminal = asyncio.Event()

    @property
    def state(self) -> ListenerState:
        return self._state

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Attach event handlers and the transport error handler.

        Raises:
            ReconnectGaveUpError: If the listener already gave up.
            Exception: Whatever the transport raises while subscribing.
        """
        self.raise_if_gave_up()
        # Never leave an earlier subscription delivering alongside the new one.
        self._detach()
        self._generation += 1
        generation = self._generation

        def _on_error(exc: BaseException) -> None:
            self._on_transport_error(generation, exc)

        subscription = await self._transport.subscribe(
            {
                EventKind.CALL_CREATED: self._on_event,
                EventKind.STAKE_ADDED: self._on_event,
            },
            _on_error,
        )
        if not subscription.active:
            subscription.close()
            msg = "subscription closed while starting"
            raise TransportError(msg)
        self._subscription = subscription
        self._state = ListenerState.LISTENING
        self.reconnect.is_listening = True
        self._terminal.clear()
        logger.info("listener_started", generation=generation)

    async def listen(self) -> None:
        """Start listening, falling back to the reconnect routine on failure."""
        try:
            await self.start()
        except ReconnectGaveUpError:
            raise
        except Exception as exc:
            logger.error("listener_start_failed", error=str(exc))
            self._detach()
            self._state = ListenerState.RECONNECT_SCHEDULED
            self._launch_reconnect()

    async def stop(self) -> None:
        """Detach from the transport and cancel any pending reconnect."""
        self._detach()
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if self._state is not ListenerState.GAVE_UP:
            self._state = ListenerState.STOPPED
        self._terminal.set()
        logger.info("listener_stopped", state=self._state.value)

    async def wait_until_terminal(self) -> ListenerState:
        """Block until the listener is stopped or has given up."""
        await self._terminal.wait()
        return self._state

    def raise_if_gave_up(self) -> None:
        if self._state is ListenerState.GAVE_UP:
            raise ReconnectGaveUpError(self.reconnect.total_reconnects)

    # ------------------------------------------------------------------
    # Reconnect state machine
    # ------------------------------------------------------------------

    def next_delay_ms(self) -> int:
        """Delay before the next reconnect, from the current failure count."""
        delay = self.base_delay_ms * 2**self.reconnect.consecutive_failures
        return min(delay, self.cap_delay_ms)

    async def schedule_reconnect(self) -> None:
        """Reconnect with capped exponential backoff until success or the ceiling."""
        while True:
            if self.reconnect.consecutive_failures >= self.max_reconnects:
                self._give_up()
                return

            delay_ms = self.next_delay_ms()
            self.reconnect.consecutive_failures += 1
            self.reconnect.last_scheduled_delay_ms = delay_ms
            self.reconnect.total_reconnects += 1
            self._state = ListenerState.RECONNECT_SCHEDULED
            logger.info(
                "reconnect_scheduled",
                attempt=self.reconnect.consecutive_failures,
                max_reconnects=self.max_reconnects,
                delay_ms=delay_ms,
            )
            await self._sleep(delay_ms / 1000)

            try:
                await self.start()
            except Exception as exc:
                logger.error(
                    "reconnect_failed",
                    attempt=self.reconnect.consecutive_failures,
                    error=str(exc),
                )
                self._detach()
                continue

            logger.info(
                "reconnected", after_attempts=self.reconnect.consecutive_failures
            )
            self.reconnect.consecutive_failures = 0
            return

    def _on_transport_error(self, generation: int, exc: BaseException) -> None:
        # Stale subscriptions and errors during a reconnect are already handled.
        if generation != self._generation:
            return
        if self._state is not ListenerState.LISTENING:
            return

        logger.error("listener_transport_error", generation=generation, error=str(exc))
        self._detach()
        self._state = ListenerState.RECONNECT_SCHEDULED
        self._launch_reconnect()

    def _launch_reconnect(self) -> None:
        task = asyncio.create_task(self.schedule_reconnect(), name="listener-reconnect")
        task.add_done_callback(self._on_reconnect_done)
        self._reconnect_task = task

    def _on_reconnect_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        logger.error(
            "reconnect_routine_failed", error=str(exc), exc_type=type(exc).__name__
        )
        self._detach()
        self._give_up()

    def _give_up(self) -> None:
        self._state = ListenerState.GAVE_UP
        self.reconnect.is_listening = False
        logger.critical(
            "listener_gave_up",
            reconnect_attempts=self.reconnect.total_reconnects,
            max_reconnects=self.max_reconnects,
            action="restart the indexer process to resume live indexing",
        )
        self._terminal.set()

    def _detach(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        self.reconnect.is_listening = False

    # ------------------------------------------------------------------
    # Event delivery
    # ------------------------------------------------------------------

    async def _on_event(self, event: RegistryEvent) -> None:
        try:
            await self._handlers.dispatch(event)
        except Exception as exc:
            self.events_failed += 1
            logger.error(
                "live_event_failed",
                kind=event.kind.value,
                call_id=event.call_id,
                block_number=event.block_number,
                error=str(exc),
            )
            return
        self.events_processed += 1
