"""Unit tests for call_indexer.auth - originating-address validation."""

from __future__ import annotations

import pytest

from call_indexer.auth import AddressValidator, UserValidator
from call_indexer.exceptions import AuthRejectedError

CHECKSUMMED = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"


class TestAddressValidator:
    def test_satisfies_protocol(self) -> None:
        assert isinstance(AddressValidator(), UserValidator)

    @pytest.mark.asyncio
    async def test_accepts_valid_address(self) -> None:
        validator = AddressValidator()
        await validator.validate_user(CHECKSUMMED)
        assert validator.known_users == {CHECKSUMMED.lower()}

    @pytest.mark.asyncio
    async def test_accepts_lowercase_address(self) -> None:
        await AddressValidator().validate_user(CHECKSUMMED.lower())

    @pytest.mark.asyncio
    @pytest.mark.parametrize("address", ["", "alice", "0x1234", "0xZZ" + "0" * 38])
    async def test_rejects_malformed(self, address: str) -> None:
        with pytest.raises(AuthRejectedError, match="Malformed"):
            await AddressValidator().validate_user(address)

    @pytest.mark.asyncio
    async def test_rejects_blocked_any_case(self) -> None:
        validator = AddressValidator([CHECKSUMMED.lower()])
        with pytest.raises(AuthRejectedError, match="blocked"):
            await validator.validate_user(CHECKSUMMED)
        assert validator.known_users == set()
