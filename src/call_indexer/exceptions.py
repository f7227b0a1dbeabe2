"""Centralized exception hierarchy for the call-indexer package.

All domain-specific exceptions inherit from ``CallIndexerError`` so
callers can catch the entire family with a single ``except`` clause.
"""

from __future__ import annotations


class CallIndexerError(Exception):
    """Base exception for all call-indexer errors."""


# ---------------------------------------------------------------------------
# Retry errors
# ---------------------------------------------------------------------------


class RetryError(CallIndexerError):
    """Base exception for failures surfaced by the retry engine."""


class NonRetryableError(RetryError):
    """Raised when retrying is futile (logic, auth or client error).

    Operations may raise this directly to stop the retry loop at once.
    The engine also raises it, chained to the original error, when the
    policy's retryability predicate rejects a failure.
    """


class ExhaustedError(RetryError):
    """Raised when every attempt of a retried operation has failed."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException) -> None:
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f'Operation "{operation}" failed after {attempts} attempt(s): {last_error}'
        )


class AllGatewaysExhaustedError(RetryError):
    """Raised when no content gateway could serve a content address."""

    def __init__(self, cid: str, last_error: BaseException | None) -> None:
        self.cid = cid
        self.last_error = last_error
        super().__init__(f"All gateways failed for content {cid!r}: {last_error}")


# ---------------------------------------------------------------------------
# Listener errors
# ---------------------------------------------------------------------------


class ReconnectGaveUpError(CallIndexerError):
    """Raised when the live listener exceeded its reconnect ceiling."""

    def __init__(self, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(
            f"Live listener gave up after {attempts} reconnect attempt(s); "
            "restart the process to resume indexing."
        )


class TransportError(CallIndexerError):
    """Raised when the chain transport connection itself fails."""


# ---------------------------------------------------------------------------
# Collaborator errors
# ---------------------------------------------------------------------------


class AuthRejectedError(CallIndexerError):
    """Raised when the auth collaborator rejects an originating address."""


class StoreError(CallIndexerError):
    """Raised when the call store cannot read or write its data."""
