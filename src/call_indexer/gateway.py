"""Multi-gateway content fetch with per-gateway retry budgets.

Gateways are tried strictly in configured order: the local proxy first,
then the public mirrors. Each gateway gets its own small retry budget;
the first gateway that returns a JSON object wins and later gateways are
never contacted.
"""

from __future__ import annotations

from typing import Any
from urllib.parse import urlsplit

import httpx
import structlog

from call_indexer.exceptions import (
    AllGatewaysExhaustedError,
    ExhaustedError,
    NonRetryableError,
)
from call_indexer.retry import RetryEngine, RetryPolicy, default_is_retryable

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

DEFAULT_GATEWAYS: tuple[str, ...] = (
    "http://127.0.0.1:8080/ipfs/{cid}",
    "https://ipfs.io/ipfs/{cid}",
    "https://cloudflare-ipfs.com/ipfs/{cid}",
    "https://gateway.pinata.cloud/ipfs/{cid}",
)

SENTINEL_CID = "dev-sample"

SENTINEL_PAYLOAD: dict[str, Any] = {
    "title": "Sample call",
    "description": "Canned metadata served without network access.",
    "condition": {"type": "price_above", "target": "1.00"},
}

_GATEWAY_POLICY = RetryPolicy(
    max_attempts=3,
    base_delay_ms=500,
    max_delay_ms=5_000,
    is_retryable=default_is_retryable,
)


def gateway_label(template: str) -> str:
    host = urlsplit(template).netloc or template
    return f"gateway:{host}"


class GatewayFetcher:
    """Fetch content-addressed JSON metadata from an ordered gateway list.

    Attributes:
        gateways: Ordered URL templates with a ``{cid}`` placeholder.
        timeout: Per-attempt request timeout in seconds.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        engine: RetryEngine,
        gateways: list[str] | tuple[str, ...] = DEFAULT_GATEWAYS,
        *,
        policy: RetryPolicy | None = None,
        timeout: float = 6.0,
        sentinel_cid: str = SENTINEL_CID,
    ) -> None:
        if not gateways:
            msg = "at least one gateway template is required"
            raise ValueError(msg)
        self.gateways = list(gateways)
        self.timeout = timeout
        self._client = client
        self._engine = engine
        self._policy = policy or _GATEWAY_POLICY
        self._sentinel_cid = sentinel_cid

    async def fetch_content(self, cid: str) -> dict[str, Any]:
        """Return the JSON document stored under ``cid``.

        Args:
            cid: The content address.

        Returns:
            The decoded JSON object.

        Raises:
            AllGatewaysExhaustedError: If every gateway failed.
        """
        if cid == self._sentinel_cid:
            return dict(SENTINEL_PAYLOAD)

        last_error: BaseException | None = None
        for template in self.gateways:
            url = template.format(cid=cid)
            label = gateway_label(template)
            try:
                payload = await self._engine.execute(
                    lambda url=url: self._get_json(url),
                    self._policy,
                    operation_label=label,
                )
            except (ExhaustedError, NonRetryableError) as exc:
                last_error = exc
                logger.warning("gateway_failed", gateway=label, cid=cid, error=str(exc))
                continue

            logger.debug("gateway_served", gateway=label, cid=cid)
            return payload

        logger.error(
            "all_gateways_failed",
            cid=cid,
            gateways=len(self.gateways),
            error=str(last_error),
        )
        raise AllGatewaysExhaustedError(cid, last_error)

    async def _get_json(self, url: str) -> dict[str, Any]:
        response = await self._client.get(
            url,
            headers={"Accept": "application/json"},
            timeout=self.timeout,
        )
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            msg = f"Expected a JSON object from {url}, got {type(data).__name__}"
            raise NonRetryableError(msg)
        return data
