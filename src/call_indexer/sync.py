"""Historical replay of registry events over a block range."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel, Field

from call_indexer.exceptions import ExhaustedError, NonRetryableError
from call_indexer.models import CallCreatedEvent, EventKind, RegistryEvent
from call_indexer.retry import RetryPolicy, default_is_retryable

if TYPE_CHECKING:
    from call_indexer.chain import ChainTransport
    from call_indexer.handlers import CallEventHandlers
    from call_indexer.retry import RetryEngine

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

# Event-range queries fail more often on a busy node.
QUERY_POLICY = RetryPolicy(
    max_attempts=5,
    base_delay_ms=1_000,
    is_retryable=default_is_retryable,
)

_DEFAULT_BATCH_SIZE = 10_000


class SyncReport(BaseModel):
    """Outcome of one historical sync run."""

    from_block: int = Field(ge=0)
    to_block: int | None = None
    synced_to_block: int | None = None
    created: int = Field(default=0, ge=0)
    staked: int = Field(default=0, ge=0)
    skipped: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    windows: int = Field(default=0, ge=0)
    completed: bool = False
    error: str | None = None


class HistoricalSync:
    """Replay past ``CallCreated`` and ``StakeAdded`` events through the handlers."""

    def __init__(
        self,
        transport: ChainTransport,
        handlers: CallEventHandlers,
        engine: RetryEngine,
        *,
        query_policy: RetryPolicy | None = None,
        batch_size: int = _DEFAULT_BATCH_SIZE,
    ) -> None:
        if batch_size <= 0:
            msg = "batch_size must be positive"
            raise ValueError(msg)
        self._transport = transport
        self._handlers = handlers
        self._engine = engine
        self._query_policy = query_policy or QUERY_POLICY
        self._batch_size = batch_size

    async def sync_range(self, from_block: int = 0, to_block: int | None = None) -> SyncReport:
        """Replay all registry events in ``[from_block, to_block]``.

        The range end defaults to the current chain height. A failure of
        the sync as a whole is logged and reported, never raised, so the
        live listener can always start afterwards.

        Args:
            from_block: First block to replay.
            to_block: Last block to replay, capped at the chain height.

        Returns:
            A report of processed, skipped and failed events.
        """
        report = SyncReport(from_block=from_block)
        logger.info("historical_sync_started", from_block=from_block, to_block=to_block)

        try:
            height = await self._engine.execute(
                self._transport.get_block_number,
                self._query_policy,
                operation_label="chain:getBlockNumber",
            )
            end = height if to_block is None else min(to_block, height)
            report.to_block = end

            window_start = from_block
            while window_start <= end:
                window_end = min(window_start + self._batch_size - 1, end)
                await self._sync_window(window_start, window_end, report)
                report.windows += 1
                report.synced_to_block = window_end
                window_start = window_end + 1
        except (ExhaustedError, NonRetryableError) as exc:
            report.error = str(exc)
            logger.error(
                "historical_sync_failed",
                from_block=from_block,
                to_block=report.to_block,
                error=str(exc),
            )
            return report

        report.completed = True
        logger.info(
            "historical_sync_complete",
            from_block=from_block,
            to_block=report.to_block,
            created=report.created,
            staked=report.staked,
            skipped=report.skipped,
            failed=report.failed,
        )
        return report

    async def _sync_window(self, start: int, end: int, report: SyncReport) -> None:
        try:
            async with asyncio.TaskGroup() as group:
                created_task = group.create_task(
                    self._query(EventKind.CALL_CREATED, start, end)
                )
                stake_task = group.create_task(
                    self._query(EventKind.STAKE_ADDED, start, end)
                )
        except ExceptionGroup as failed:
            # The sibling query is already cancelled; report the first failure.
            raise failed.exceptions[0] from None

        created_events = created_task.result()
        stake_events = stake_task.result()
        logger.info(
            "historical_window_fetched",
            from_block=start,
            to_block=end,
            call_created=len(created_events),
            stake_added=len(stake_events),
        )

        # Creations first so stakes in the same window find their parent.
        for event in [*created_events, *stake_events]:
            await self._process(event, report)

    async def _query(self, kind: EventKind, start: int, end: int) -> list[RegistryEvent]:
        return await self._engine.execute(
            lambda: self._transport.query_events(kind, start, end),
            self._query_policy,
            operation_label=f"chain:queryFilter:{kind.value}",
        )

    async def _process(self, event: RegistryEvent, report: SyncReport) -> None:
        try:
            if isinstance(event, CallCreatedEvent):
                applied = await self._handlers.handle_call_created(event)
                counter = "created"
            else:
                applied = await self._handlers.handle_stake_added(event)
                counter = "staked"
        except Exception as exc:
            report.failed += 1
            logger.error(
                "historical_event_failed",
                kind=event.kind.value,
                call_id=event.call_id,
                block_number=event.block_number,
                error=str(exc),
            )
            return

        if applied:
            setattr(report, counter, getattr(report, counter) + 1)
        else:
            report.skipped += 1
