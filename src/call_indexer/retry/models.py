"""Models used by the retry engine."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field, model_validator

T = TypeVar("T")

RetryPredicate = Callable[[BaseException, int], bool]


class RetryPolicy(BaseModel):
    """Backoff policy for a single retried operation.

    Delays are whole milliseconds. ``growth_factor`` may be fractional
    for schedules that grow slower than doubling.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    max_attempts: int = Field(default=4, ge=1)
    base_delay_ms: int = Field(default=1_000, gt=0)
    growth_factor: float = Field(default=2.0, ge=1.0)
    max_delay_ms: int = Field(default=30_000, gt=0)
    jitter: float = Field(default=0.2, ge=0.0, le=1.0)
    operation_label: str = "rpc"
    is_retryable: RetryPredicate | None = Field(default=None, exclude=True)

    @model_validator(mode="after")
    def _check_delay_bounds(self) -> RetryPolicy:
        if self.max_delay_ms < self.base_delay_ms:
            msg = (
                f"max_delay_ms ({self.max_delay_ms}) must be >= "
                f"base_delay_ms ({self.base_delay_ms})"
            )
            raise ValueError(msg)
        return self

    def with_overrides(self, **overrides: Any) -> RetryPolicy:
        """Return a validated copy with the given fields replaced."""
        if not overrides:
            return self
        fields = {name: getattr(self, name) for name in type(self).model_fields}
        fields.update(overrides)
        return type(self)(**fields)

    def base_delay_for(self, attempt: int) -> float:
        """Un-jittered delay in ms before the attempt after ``attempt``."""
        raw = self.base_delay_ms * self.growth_factor ** max(attempt - 1, 0)
        return min(raw, float(self.max_delay_ms))


# ---------------------------------------------------------------------------
# Attempt outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Success(Generic[T]):
    value: T
    attempts: int


@dataclass(frozen=True)
class TransientFailure:
    error: BaseException
    attempt: int
    delay_ms: int


@dataclass(frozen=True)
class NonRetryableFailure:
    error: BaseException
    attempt: int


@dataclass(frozen=True)
class Exhausted:
    error: BaseException
    total_attempts: int


AttemptOutcome = Success[Any] | TransientFailure | NonRetryableFailure | Exhausted


class RetryMetrics(BaseModel):
    """Process-level retry telemetry."""

    calls: int = Field(default=0, ge=0)
    retries_attempted: int = Field(default=0, ge=0)
    recovered_calls: int = Field(default=0, ge=0)
    exhausted_calls: int = Field(default=0, ge=0)
    non_retryable_failures: int = Field(default=0, ge=0)
