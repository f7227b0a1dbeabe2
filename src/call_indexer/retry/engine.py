"""Exponential-backoff retry engine built on tenacity.

Backoff schedule (default, base 1 s, factor 2, jitter +/-20 %):
    Attempt 1 -> immediate
    Attempt 2 -> ~1 000 ms
    Attempt 3 -> ~2 000 ms
    Attempt 4 -> ~4 000 ms
    then ``ExhaustedError``

Retries are applied by explicit higher-order wrapping: pass the operation
and a policy to :meth:`RetryEngine.execute` (or :func:`with_retry`).
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
)
from tenacity import RetryError as TenacityRetryError

from call_indexer.exceptions import ExhaustedError, NonRetryableError
from call_indexer.retry.models import (
    AttemptOutcome,
    Exhausted,
    NonRetryableFailure,
    RetryMetrics,
    RetryPolicy,
    Success,
    TransientFailure,
)

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]
SleepFn = Callable[[float], Awaitable[None]]
TransientObserver = Callable[[str, TransientFailure], None]


def _is_transient(exc: BaseException) -> bool:
    # CancelledError and friends must escape the loop untouched.
    return isinstance(exc, Exception) and not isinstance(exc, NonRetryableError)


class RetryEngine:
    """Resilient-call wrapper with exponential delay, jitter and an attempt budget.

    Attributes:
        default_policy: Policy used when a call does not pass its own.
        metrics: Counters updated by every call through this engine.
    """

    def __init__(
        self,
        default_policy: RetryPolicy | None = None,
        *,
        sleep: SleepFn | None = None,
        rng: random.Random | None = None,
        on_transient: TransientObserver | None = None,
    ) -> None:
        self.default_policy = default_policy or RetryPolicy()
        self.metrics = RetryMetrics()
        self._sleep: SleepFn = sleep or asyncio.sleep
        self._rng = rng or random.Random()
        self._on_transient = on_transient

    def resolve_policy(
        self, policy: RetryPolicy | None = None, **overrides: Any
    ) -> RetryPolicy:
        """Merge an optional policy and per-call overrides over the default."""
        return (policy or self.default_policy).with_overrides(**overrides)

    def compute_delay_ms(self, policy: RetryPolicy, attempt: int) -> int:
        """Jittered delay in whole ms to wait after failed ``attempt``."""
        delay = policy.base_delay_for(attempt)
        offset = delay * policy.jitter * self._rng.uniform(-1.0, 1.0)
        return max(0, round(delay + offset))

    async def execute(
        self,
        operation: Operation[T],
        policy: RetryPolicy | None = None,
        **overrides: Any,
    ) -> T:
        """Run ``operation`` under the retry policy.

        Args:
            operation: Zero-argument coroutine function. Called up to
                ``max_attempts`` times.
            policy: Policy for this call; defaults to ``default_policy``.
            **overrides: Individual policy fields to replace for this call.

        Returns:
            The operation's result from the first successful attempt.

        Raises:
            NonRetryableError: The operation raised one, or the policy's
                predicate rejected a failure. No further attempts are made.
            ExhaustedError: Every attempt failed.
        """
        resolved = self.resolve_policy(policy, **overrides)
        label = resolved.operation_label
        self.metrics.calls += 1

        retrying = AsyncRetrying(
            stop=stop_after_attempt(resolved.max_attempts),
            wait=lambda state: self.compute_delay_ms(resolved, state.attempt_number)
            / 1000,
            retry=retry_if_exception(_is_transient),
            before_sleep=lambda state: self._before_sleep(resolved, state),
            sleep=self._sleep,
            reraise=False,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    number = attempt.retry_state.attempt_number
                    value = await self._attempt(operation, resolved, number)
                    if number > 1:
                        self.metrics.recovered_calls += 1
                    return value
        except TenacityRetryError as exc:
            last_error = exc.last_attempt.exception()
            if last_error is None:  # pragma: no cover - tenacity only stops on failure
                last_error = RuntimeError("unknown failure")
            self.metrics.exhausted_calls += 1
            logger.error(
                "retry_exhausted",
                operation=label,
                attempts=resolved.max_attempts,
                error=str(last_error),
            )
            raise ExhaustedError(label, resolved.max_attempts, last_error) from last_error
        except NonRetryableError as exc:
            self.metrics.non_retryable_failures += 1
            logger.error("retry_aborted_non_retryable", operation=label, error=str(exc))
            raise

        msg = f"retry loop for {label!r} ended without a result"
        raise RuntimeError(msg)  # pragma: no cover

    async def settle(
        self,
        operation: Operation[T],
        policy: RetryPolicy | None = None,
        **overrides: Any,
    ) -> AttemptOutcome:
        """Like :meth:`execute`, but return the final outcome instead of raising."""
        attempts = {"count": 0}

        async def _counted() -> T:
            attempts["count"] += 1
            return await operation()

        try:
            value = await self.execute(_counted, policy, **overrides)
        except ExhaustedError as exc:
            return Exhausted(error=exc.last_error, total_attempts=exc.attempts)
        except NonRetryableError as exc:
            return NonRetryableFailure(error=exc, attempt=attempts["count"])
        return Success(value=value, attempts=attempts["count"])

    async def _attempt(
        self, operation: Operation[T], policy: RetryPolicy, number: int
    ) -> T:
        try:
            return await operation()
        except NonRetryableError:
            raise
        except Exception as exc:
            predicate = policy.is_retryable
            if predicate is not None and not predicate(exc, number):
                msg = f'Non-retryable error on "{policy.operation_label}": {exc}'
                raise NonRetryableError(msg) from exc
            raise

    def _before_sleep(self, policy: RetryPolicy, state: RetryCallState) -> None:
        error = state.outcome.exception() if state.outcome else None
        sleep_seconds = state.next_action.sleep if state.next_action else 0.0
        delay_ms = round(sleep_seconds * 1000)
        self.metrics.retries_attempted += 1
        logger.warning(
            "retry_attempt_failed",
            operation=policy.operation_label,
            attempt=state.attempt_number,
            max_attempts=policy.max_attempts,
            delay_ms=delay_ms,
            error=str(error),
        )
        if self._on_transient is not None and error is not None:
            self._on_transient(
                policy.operation_label,
                TransientFailure(
                    error=error, attempt=state.attempt_number, delay_ms=delay_ms
                ),
            )


async def with_retry(
    operation: Operation[T],
    policy: RetryPolicy | None = None,
    **overrides: Any,
) -> T:
    """Run ``operation`` once through a fresh :class:`RetryEngine`."""
    return await RetryEngine().execute(operation, policy, **overrides)


def create_retry_fn(
    defaults: RetryPolicy, engine: RetryEngine | None = None
) -> Callable[..., Awaitable[Any]]:
    """Build a retry wrapper pre-configured with ``defaults``.

    Example::

        fetch = create_retry_fn(RetryPolicy(max_attempts=5, operation_label="chain:getLogs"))
        logs = await fetch(lambda: transport.query_events(kind, 0, 100))
    """
    bound = engine or RetryEngine()

    async def _retry(operation: Operation[T], **overrides: Any) -> T:
        return await bound.execute(operation, defaults, **overrides)

    return _retry
