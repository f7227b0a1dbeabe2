"""Registry event handlers: one ingestion path for history and live events.

Creation is idempotent on the on-chain call ID, so the same event may be
replayed by historical sync and re-delivered by the live listener. Stake
events for unknown calls are logged and skipped; no placeholder is made.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import structlog

from call_indexer.exceptions import RetryError
from call_indexer.models import (
    CallCreatedEvent,
    CallStatus,
    IndexedCall,
    RegistryEvent,
    StakeAddedEvent,
    format_units,
    from_unix,
)
from call_indexer.notifications import NotificationKind

if TYPE_CHECKING:
    from call_indexer.auth import UserValidator
    from call_indexer.gateway import GatewayFetcher
    from call_indexer.notifications import NotificationEmitter
    from call_indexer.store import CallStore

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


class CallEventHandlers:
    """Translate decoded registry events into call store mutations."""

    def __init__(
        self,
        store: CallStore,
        auth: UserValidator,
        fetcher: GatewayFetcher | None = None,
        notifier: NotificationEmitter | None = None,
    ) -> None:
        self._store = store
        self._auth = auth
        self._fetcher = fetcher
        self._notifier = notifier
        self._stake_lock = asyncio.Lock()

    async def dispatch(self, event: RegistryEvent) -> None:
        """Route an event to its handler by kind."""
        if isinstance(event, CallCreatedEvent):
            await self.handle_call_created(event)
        else:
            await self.handle_stake_added(event)

    async def handle_call_created(self, event: CallCreatedEvent) -> bool:
        """Persist a new call record unless one already exists.

        Args:
            event: The decoded ``CallCreated`` event.

        Returns:
            True if a record was created, False if it already existed.

        Raises:
            AuthRejectedError: If the creator address is rejected.
        """
        call_id = str(event.call_id)
        if await self._store.find(call_id) is not None:
            logger.debug("call_already_indexed", call_id=call_id)
            return False

        logger.info("call_created_processing", call_id=call_id, creator=event.creator)
        await self._auth.validate_user(event.creator)

        condition = await self._resolve_metadata(call_id, event.ipfs_cid)

        call = IndexedCall(
            call_onchain_id=call_id,
            creator_wallet=event.creator,
            stake_token=event.stake_token,
            total_stake_yes=format_units(event.stake_amount),
            total_stake_no=Decimal(0),
            start_ts=from_unix(event.start_ts),
            end_ts=from_unix(event.end_ts),
            token_address=event.token_address,
            pair_id=event.pair_id,
            ipfs_cid=event.ipfs_cid,
            condition_json=condition,
            status=CallStatus.ACTIVE,
        )

        created = await self._store.create_if_absent(call)
        if not created:
            logger.debug("call_created_concurrently", call_id=call_id)
            return False

        self._notify(
            event.creator,
            NotificationKind.CALL_CREATED,
            {"call_id": call_id, "block_number": event.block_number},
        )
        return True

    async def handle_stake_added(self, event: StakeAddedEvent) -> bool:
        """Accumulate a stake on an existing call.

        Returns:
            True if the call was updated, False if it is unknown.
        """
        call_id = str(event.call_id)
        amount = format_units(event.amount)
        side = "yes" if event.position else "no"
        logger.info("stake_added_processing", call_id=call_id, amount=str(amount), side=side)

        async with self._stake_lock:
            call = await self._store.find(call_id)
            if call is None:
                logger.warning(
                    "stake_for_unknown_call",
                    call_id=call_id,
                    staker=event.staker,
                    block_number=event.block_number,
                )
                return False

            call.add_stake(amount, position=event.position)
            await self._store.save(call)

        self._notify(
            call.creator_wallet,
            NotificationKind.STAKE_RECEIVED,
            {
                "call_id": call_id,
                "staker": event.staker,
                "side": side,
                "amount": str(amount),
            },
        )
        return True

    async def _resolve_metadata(self, call_id: str, cid: str | None) -> dict[str, Any]:
        if not cid or self._fetcher is None:
            return {}
        try:
            return await self._fetcher.fetch_content(cid)
        except RetryError as exc:
            logger.error(
                "call_metadata_unavailable", call_id=call_id, cid=cid, error=str(exc)
            )
            return {}

    def _notify(
        self,
        recipient: str,
        kind: NotificationKind,
        payload: dict[str, str | int | float | bool | None],
    ) -> None:
        if self._notifier is not None:
            self._notifier.emit(recipient, kind, payload)
