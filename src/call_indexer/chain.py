"""Chain RPC transport for the call registry contract.

The transport is an explicitly constructed component handed to the
historical sync and the live listener. :class:`Web3ChainTransport` talks
to a JSON-RPC endpoint through ``web3``'s async API. Its live subscription
polls for new blocks and decodes registry logs; any RPC failure inside the
poll loop is reported once on the subscription's error channel and ends
that subscription.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Protocol, runtime_checkable

import aiohttp
import structlog
from hexbytes import HexBytes
from web3 import AsyncHTTPProvider, AsyncWeb3

from call_indexer.exceptions import TransportError
from call_indexer.models import (
    CallCreatedEvent,
    EventKind,
    RegistryEvent,
    StakeAddedEvent,
)

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

EventCallback = Callable[[RegistryEvent], Awaitable[None]]
ErrorCallback = Callable[[BaseException], None]

REGISTRY_ABI: list[dict[str, Any]] = [
    {
        "anonymous": False,
        "name": "CallCreated",
        "type": "event",
        "inputs": [
            {"indexed": True, "name": "callId", "type": "uint256"},
            {"indexed": True, "name": "creator", "type": "address"},
            {"indexed": False, "name": "stakeToken", "type": "address"},
            {"indexed": False, "name": "stakeAmount", "type": "uint256"},
            {"indexed": False, "name": "startTs", "type": "uint256"},
            {"indexed": False, "name": "endTs", "type": "uint256"},
            {"indexed": False, "name": "tokenAddress", "type": "address"},
            {"indexed": False, "name": "pairId", "type": "bytes32"},
            {"indexed": False, "name": "ipfsCID", "type": "string"},
        ],
    },
    {
        "anonymous": False,
        "name": "StakeAdded",
        "type": "event",
        "inputs": [
            {"indexed": True, "name": "callId", "type": "uint256"},
            {"indexed": True, "name": "staker", "type": "address"},
            {"indexed": False, "name": "position", "type": "bool"},
            {"indexed": False, "name": "amount", "type": "uint256"},
        ],
    },
]


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class Subscription(Protocol):
    """Handle to a live event subscription."""

    @property
    def active(self) -> bool: ...

    def close(self) -> None: ...


@runtime_checkable
class ChainTransport(Protocol):
    """Chain RPC operations the indexer depends on."""

    async def get_chain_id(self) -> int: ...

    async def get_block_number(self) -> int: ...

    async def query_events(
        self, kind: EventKind, from_block: int, to_block: int
    ) -> list[RegistryEvent]: ...

    async def subscribe(
        self,
        handlers: Mapping[EventKind, EventCallback],
        on_error: ErrorCallback,
    ) -> Subscription: ...

    def resume_from(self, block: int) -> None: ...


# ---------------------------------------------------------------------------
# Log decoding
# ---------------------------------------------------------------------------


def _hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return HexBytes(value).to_0x_hex()
    return str(value)


def decode_registry_log(kind: EventKind, log: Mapping[str, Any]) -> RegistryEvent:
    """Turn a web3-decoded event log into a registry event model."""
    args = log["args"]
    position = {
        "block_number": int(log.get("blockNumber") or 0),
        "log_index": int(log.get("logIndex") or 0),
        "tx_hash": _hex(log.get("transactionHash") or ""),
    }
    if kind is EventKind.CALL_CREATED:
        pair_id = args.get("pairId")
        return CallCreatedEvent(
            call_id=int(args["callId"]),
            creator=args["creator"],
            stake_token=args["stakeToken"],
            stake_amount=int(args["stakeAmount"]),
            start_ts=int(args["startTs"]),
            end_ts=int(args["endTs"]),
            token_address=args["tokenAddress"],
            pair_id=_hex(pair_id) if pair_id else None,
            ipfs_cid=args.get("ipfsCID") or None,
            **position,
        )
    return StakeAddedEvent(
        call_id=int(args["callId"]),
        staker=args["staker"],
        position=bool(args["position"]),
        amount=int(args["amount"]),
        **position,
    )


# ---------------------------------------------------------------------------
# web3 implementation
# ---------------------------------------------------------------------------


class PollingSubscription:
    """Subscription backed by a block-polling task."""

    def __init__(self, task: asyncio.Task[None]) -> None:
        self._task = task

    @property
    def active(self) -> bool:
        return not self._task.done()

    def close(self) -> None:
        if not self._task.done():
            self._task.cancel()


class Web3ChainTransport:
    """``ChainTransport`` over an async JSON-RPC HTTP endpoint.

    Live subscriptions resume after the last block a previous subscription
    fully delivered, so blocks mined during a reconnect backoff are not
    skipped.

    Attributes:
        registry_address: Checksummed address of the registry contract.
        poll_interval: Seconds between head checks in live subscriptions.
        last_delivered_block: Highest block whose events were all delivered,
            or None before the first delivery or ``resume_from`` call.
    """

    def __init__(
        self,
        rpc_url: str,
        registry_address: str,
        *,
        request_timeout: float = 10.0,
        poll_interval: float = 4.0,
    ) -> None:
        provider = AsyncHTTPProvider(
            rpc_url,
            request_kwargs={"timeout": aiohttp.ClientTimeout(total=request_timeout)},
            exception_retry_configuration=None,
        )
        self._w3 = AsyncWeb3(provider)
        self.registry_address = AsyncWeb3.to_checksum_address(registry_address)
        self.poll_interval = poll_interval
        self.last_delivered_block: int | None = None
        self._contract = self._w3.eth.contract(
            address=self.registry_address, abi=REGISTRY_ABI
        )

    async def get_chain_id(self) -> int:
        return int(await self._w3.eth.chain_id)

    async def get_block_number(self) -> int:
        return int(await self._w3.eth.block_number)

    async def query_events(
        self, kind: EventKind, from_block: int, to_block: int
    ) -> list[RegistryEvent]:
        event = getattr(self._contract.events, kind.value)()
        logs = await event.get_logs(from_block=from_block, to_block=to_block)
        decoded = [decode_registry_log(kind, log) for log in logs]
        decoded.sort(key=lambda item: (item.block_number, item.log_index))
        return decoded

    async def subscribe(
        self,
        handlers: Mapping[EventKind, EventCallback],
        on_error: ErrorCallback,
    ) -> Subscription:
        try:
            head = await self.get_block_number()
        except Exception as exc:
            msg = f"Unable to open live subscription: {exc}"
            raise TransportError(msg) from exc

        # A lagging node may report a head below what was already delivered;
        # polling then waits for it instead of replaying stakes.
        last_block = self.last_delivered_block
        if last_block is None:
            last_block = head

        task = asyncio.create_task(
            self._poll(dict(handlers), on_error, last_block),
            name="registry-subscription",
        )
        logger.info(
            "subscription_opened",
            registry=self.registry_address,
            from_block=last_block + 1,
            head=head,
        )
        return PollingSubscription(task)

    def resume_from(self, block: int) -> None:
        """Make the next subscription start right after ``block``."""
        self.last_delivered_block = block

    async def _poll(
        self,
        handlers: dict[EventKind, EventCallback],
        on_error: ErrorCallback,
        last_block: int,
    ) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                head = await self.get_block_number()
                if head <= last_block:
                    continue
                batches = [
                    (kind, await self.query_events(kind, last_block + 1, head))
                    for kind in (EventKind.CALL_CREATED, EventKind.STAKE_ADDED)
                    if kind in handlers
                ]
            except Exception as exc:
                logger.warning("subscription_transport_error", error=str(exc))
                on_error(TransportError(str(exc)))
                return

            for kind, events in batches:
                for event in events:
                    await handlers[kind](event)
            last_block = head
            self.last_delivered_block = head
