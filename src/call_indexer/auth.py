"""Originating-address validation for call creation."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

import structlog
from web3 import Web3

from call_indexer.exceptions import AuthRejectedError

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


@runtime_checkable
class UserValidator(Protocol):
    """Auth collaborator consulted before a call record is created."""

    async def validate_user(self, address: str) -> None: ...


class AddressValidator:
    """Accept well-formed EVM addresses that are not blocked.

    Accepted addresses are remembered (lowercased) so callers can see
    which wallets have created calls during this run.
    """

    def __init__(self, blocked_addresses: list[str] | None = None) -> None:
        self._blocked = {address.lower() for address in blocked_addresses or []}
        self.known_users: set[str] = set()

    async def validate_user(self, address: str) -> None:
        if not Web3.is_address(address):
            msg = f"Malformed wallet address: {address!r}"
            raise AuthRejectedError(msg)

        normalized = address.lower()
        if normalized in self._blocked:
            msg = f"Wallet {address} is blocked"
            raise AuthRejectedError(msg)

        if normalized not in self.known_users:
            self.known_users.add(normalized)
            logger.debug("user_registered", wallet=normalized)
