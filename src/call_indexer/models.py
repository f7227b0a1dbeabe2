"""Domain models: indexed call records and decoded registry events."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, model_validator

# Registry stake amounts are 18-decimal token units.
TOKEN_DECIMALS = 18
_UNIT = Decimal(10) ** TOKEN_DECIMALS


def format_units(raw_amount: int, decimals: int = TOKEN_DECIMALS) -> Decimal:
    """Convert a raw integer token amount into whole-token units."""
    if decimals == TOKEN_DECIMALS:
        return Decimal(raw_amount) / _UNIT
    return Decimal(raw_amount) / (Decimal(10) ** decimals)


def from_unix(seconds: int) -> datetime:
    return datetime.fromtimestamp(int(seconds), tz=UTC)


# ---------------------------------------------------------------------------
# Indexed call record
# ---------------------------------------------------------------------------


class CallStatus(StrEnum):
    """Lifecycle status of an indexed call."""

    ACTIVE = "active"
    RESOLVED = "resolved"
    DISPUTED = "disputed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class IndexedCall(BaseModel):
    """A call record keyed by its unique on-chain identifier."""

    call_onchain_id: str = Field(min_length=1)
    creator_wallet: str
    stake_token: str
    total_stake_yes: Decimal = Field(default=Decimal(0), ge=0)
    total_stake_no: Decimal = Field(default=Decimal(0), ge=0)
    start_ts: datetime
    end_ts: datetime
    token_address: str
    pair_id: str | None = None
    ipfs_cid: str | None = None
    condition_json: dict[str, Any] = Field(default_factory=dict)
    status: CallStatus = CallStatus.ACTIVE
    created_at: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))

    @model_validator(mode="after")
    def _check_window(self) -> IndexedCall:
        if self.end_ts <= self.start_ts:
            msg = f"end_ts ({self.end_ts}) must be after start_ts ({self.start_ts})"
            raise ValueError(msg)
        return self

    def add_stake(self, amount: Decimal, *, position: bool) -> None:
        """Accumulate ``amount`` on the yes (``position=True``) or no side."""
        if position:
            self.total_stake_yes += amount
        else:
            self.total_stake_no += amount
        self.updated_at = datetime.now(tz=UTC)


# ---------------------------------------------------------------------------
# Registry events
# ---------------------------------------------------------------------------


class EventKind(StrEnum):
    """Registry contract event names."""

    CALL_CREATED = "CallCreated"
    STAKE_ADDED = "StakeAdded"


class ChainEvent(BaseModel):
    """Log position shared by every decoded registry event."""

    block_number: int = Field(default=0, ge=0)
    log_index: int = Field(default=0, ge=0)
    tx_hash: str = ""


class CallCreatedEvent(ChainEvent):
    kind: EventKind = EventKind.CALL_CREATED
    call_id: int = Field(ge=0)
    creator: str
    stake_token: str
    stake_amount: int = Field(ge=0)
    start_ts: int
    end_ts: int
    token_address: str
    pair_id: str | None = None
    ipfs_cid: str | None = None


class StakeAddedEvent(ChainEvent):
    kind: EventKind = EventKind.STAKE_ADDED
    call_id: int = Field(ge=0)
    staker: str
    position: bool
    amount: int = Field(ge=0)


RegistryEvent = CallCreatedEvent | StakeAddedEvent
