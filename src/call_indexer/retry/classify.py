"""Retryability classification for remote-call failures."""

from __future__ import annotations

import re

import httpx

_RATE_LIMIT_MARKERS = ("429", "rate limit", "too many requests")
_CLIENT_ERROR_PATTERN: re.Pattern[str] = re.compile(r"\b4[0-9]{2}\b")
# Request-timeout class codes heal on their own.
_RETRYABLE_CLIENT_CODES = frozenset({408, 425})


def _status_code(error: BaseException) -> int | None:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    code = getattr(error, "status_code", None)
    return code if isinstance(code, int) else None


def default_is_retryable(error: BaseException, attempt: int = 1) -> bool:
    """Decide whether a failure is worth another attempt.

    Rate-limit signals are always retryable. Other 4xx client errors are
    logic or auth errors and are not, except the request-timeout codes.
    Network errors, 5xx responses and anything unclassified are retryable.

    Args:
        error: The failure raised by the operation.
        attempt: The 1-based attempt index that failed (unused here, kept
            so the function can serve directly as a policy predicate).

    Returns:
        True if the operation should be retried.
    """
    # Connection errors often carry ":443" style text; never parse those.
    if isinstance(error, (httpx.TransportError, OSError, TimeoutError)):
        return True

    code = _status_code(error)
    if code is not None:
        if code == 429:
            return True
        if 400 <= code < 500:
            return code in _RETRYABLE_CLIENT_CODES
        return True

    message = str(error).lower()
    if any(marker in message for marker in _RATE_LIMIT_MARKERS):
        return True

    codes = {int(token) for token in _CLIENT_ERROR_PATTERN.findall(message)}
    return not codes or codes <= _RETRYABLE_CLIENT_CODES
