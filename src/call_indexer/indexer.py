"""Indexer orchestration: connect, replay history, then follow live events."""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx
import structlog

from call_indexer.auth import AddressValidator
from call_indexer.chain import Web3ChainTransport
from call_indexer.exceptions import CallIndexerError, ReconnectGaveUpError
from call_indexer.gateway import GatewayFetcher
from call_indexer.handlers import CallEventHandlers
from call_indexer.listener import ListenerState, LiveListener
from call_indexer.logging import indexer_context
from call_indexer.notifications import NotificationBus
from call_indexer.retry import RetryEngine, RetryPolicy
from call_indexer.store import InMemoryCallStore, JsonCallStore
from call_indexer.sync import HistoricalSync, SyncReport

if TYPE_CHECKING:
    from call_indexer.chain import ChainTransport
    from call_indexer.config import Settings
    from call_indexer.store import CallStore

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


class Indexer:
    """Wire the pipeline together and drive its startup sequence.

    Attributes:
        transport: Chain RPC transport shared by sync and listener.
        store: Call record store.
        engine: Retry engine shared by every remote call.
        sync: Historical replay component.
        listener: Live listener with reconnect state machine.
        fetcher: Gateway fetcher used for call metadata, if any.
    """

    def __init__(
        self,
        transport: ChainTransport,
        store: CallStore,
        handlers: CallEventHandlers,
        engine: RetryEngine,
        sync: HistoricalSync,
        listener: LiveListener,
        *,
        start_block: int = 0,
        fetcher: GatewayFetcher | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.transport = transport
        self.store = store
        self.handlers = handlers
        self.engine = engine
        self.sync = sync
        self.listener = listener
        self.fetcher = fetcher
        self.start_block = start_block
        self._http_client = http_client

    @classmethod
    def from_settings(cls, settings: Settings) -> Indexer:
        """Build a fully wired indexer from resolved settings.

        Raises:
            CallIndexerError: If the chain endpoint is not configured.
        """
        chain = settings.chain
        if not chain.configured:
            msg = "chain.rpc_url and chain.registry_address must both be set"
            raise CallIndexerError(msg)

        engine = RetryEngine(settings.retry.default_policy())
        transport = Web3ChainTransport(
            chain.rpc_url or "",
            chain.registry_address or "",
            request_timeout=chain.request_timeout_seconds,
            poll_interval=chain.poll_interval_seconds,
        )
        http_client, fetcher = build_gateway_fetcher(settings, engine)

        store = build_store(settings)
        notifier = (
            NotificationBus(
                settings.notifications.directory,
                buffer_size=settings.notifications.buffer_size,
            )
            if settings.notifications.enabled
            else None
        )
        handlers = CallEventHandlers(
            store,
            AddressValidator(settings.auth.blocked_addresses),
            fetcher=fetcher,
            notifier=notifier,
        )
        sync = HistoricalSync(
            transport,
            handlers,
            engine,
            query_policy=settings.retry.query_policy(),
            batch_size=chain.batch_size,
        )
        listener = LiveListener(
            transport,
            handlers,
            max_reconnects=settings.listener.max_reconnects,
            base_delay_ms=settings.listener.base_delay_ms,
            cap_delay_ms=settings.listener.cap_delay_ms,
        )
        return cls(
            transport,
            store,
            handlers,
            engine,
            sync,
            listener,
            start_block=chain.start_block,
            fetcher=fetcher,
            http_client=http_client,
        )

    async def connect(self) -> int:
        """Verify RPC connectivity and return the current block number."""
        with indexer_context("connect"):
            chain_id = await self.engine.execute(
                self.transport.get_chain_id, operation_label="chain:connect"
            )
            block = await self.engine.execute(
                self.transport.get_block_number, operation_label="chain:connect"
            )
            logger.info("chain_connected", chain_id=chain_id, block_number=block)
            return block

    async def run_sync(
        self, from_block: int | None = None, to_block: int | None = None
    ) -> SyncReport:
        start = self.start_block if from_block is None else from_block
        with indexer_context("sync", from_block=start):
            return await self.sync.sync_range(start, to_block)

    async def run(self) -> ListenerState:
        """Connect, replay history and listen until stopped or given up.

        The live subscription resumes after the last block the replay
        covered, so events mined between the two phases are not lost.

        Returns:
            The listener's terminal state.

        Raises:
            ExhaustedError: If the initial connection check failed.
            NonRetryableError: If the endpoint rejected the connection check.
        """
        await self.connect()
        report = await self.run_sync()
        # Live polling picks up right after the last replayed window.
        if report.synced_to_block is not None:
            self.transport.resume_from(report.synced_to_block)
        with indexer_context("listener"):
            await self.listener.listen()
            state = await self.listener.wait_until_terminal()
        logger.info(
            "indexer_stopped",
            state=state.value,
            retry_metrics=self.engine.metrics.model_dump(),
        )
        return state

    def raise_if_gave_up(self) -> None:
        try:
            self.listener.raise_if_gave_up()
        except ReconnectGaveUpError:
            logger.critical("indexer_gave_up", metrics=self.engine.metrics.model_dump())
            raise

    async def aclose(self) -> None:
        await self.listener.stop()
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None


def build_gateway_fetcher(
    settings: Settings, engine: RetryEngine
) -> tuple[httpx.AsyncClient, GatewayFetcher]:
    """Create the HTTP client and gateway fetcher described by ``settings``."""
    gateway = settings.gateway
    client = httpx.AsyncClient(follow_redirects=True)
    policy = RetryPolicy(
        max_attempts=gateway.attempts,
        base_delay_ms=gateway.base_delay_ms,
        max_delay_ms=max(gateway.max_delay_ms, gateway.base_delay_ms),
        jitter=settings.retry.jitter,
        is_retryable=settings.retry.default_policy().is_retryable,
    )
    fetcher = GatewayFetcher(
        client,
        engine,
        gateway.templates,
        policy=policy,
        timeout=gateway.timeout_seconds,
        sentinel_cid=gateway.sentinel_cid,
    )
    return client, fetcher


def build_store(settings: Settings) -> CallStore:
    if settings.store.backend == "memory":
        return InMemoryCallStore()
    return JsonCallStore(settings.store.path)
