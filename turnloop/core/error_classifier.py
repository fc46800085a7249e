"""Error Classifier — maps a raised failure to a typed diagnosis and retry delay.

Invariants:
    - classify() never raises and always returns a ModelServiceError
    - Typed signals win over text: an explicit code, then timeout types, then the
      HTTP status (429, 529, >= 500), then patterns in fixed priority order
    - is_retryable() is a pure function of the ErrorCode alone
    - base_delay() is non-decreasing in attempt and never exceeds the cap

Design Decisions:
    - Text matching on "<ExceptionClass>: <message>" so SDK errors without a
      telling status, stdlib errors and plain strings classify through one path
    - No SDK import here: the adapter maps SDK exception types and passes code=
    - Server-supplied retry-after used verbatim for rate limits; jitter is added on top
"""

import re
import random
from dataclasses import dataclass
from typing import Callable

from turnloop.core.domain_types import ErrorCode, RETRYABLE_CODES
from turnloop.core.errors import ErrorContext, ModelServiceError, StreamTimeoutError


@dataclass(frozen=True)
class BackoffPolicy:
    """Backoff parameters. Delays in milliseconds."""
    max_attempts: int = 5
    base_delay_ms: int = 1000
    max_delay_ms: int = 60_000
    jitter_factor: float = 0.1


# (code, needles, implied HTTP status, all needles required)
# Priority order matters: "429 ... timed out" is a rate limit, not a timeout.
_PATTERNS: tuple[tuple[ErrorCode, tuple[str, ...], int | None, bool], ...] = (
    (ErrorCode.RATE_LIMIT, ("429", "rate limit"), 429, False),
    (ErrorCode.OVERLOADED, ("529", "overloaded"), 529, False),
    (ErrorCode.CONTEXT_OVERFLOW,
     ("context window", "too many tokens", "prompt is too long"), 400, False),
    (ErrorCode.BUDGET_EXCEEDED, ("budget", "exceeded"), None, True),
    (ErrorCode.INVALID_REQUEST, ("400", "invalid request"), 400, False),
    (ErrorCode.AUTHENTICATION, ("401", "authentication"), 401, False),
    (ErrorCode.PERMISSION_DENIED, ("403", "permission"), 403, False),
    (ErrorCode.NOT_FOUND, ("404", "not found"), 404, False),
    (ErrorCode.SERVER_ERROR, ("500", "internal server"), 500, False),
    (ErrorCode.TIMEOUT, ("timeout", "timed out"), None, False),
    (ErrorCode.NETWORK, ("network", "connection"), None, False),
)

_RETRY_AFTER_RE = re.compile(r"retry-after[:\s]+(\d+)", re.IGNORECASE)


def classify(
    error: BaseException | str,
    context: ErrorContext | None = None,
    code: ErrorCode | None = None,
) -> ModelServiceError:
    """Classify an exception (or diagnostic string) into a ModelServiceError.

    code, when given, is used as-is (the SDK adapter knows its exception types).
    """
    if isinstance(error, ModelServiceError):
        return error

    message = str(error)
    status = getattr(error, "status_code", None)
    if not isinstance(status, int):
        status = None

    if code is None:
        code = _typed_code(error, status)
    if code is None:
        text = (
            message if isinstance(error, str)
            else f"{type(error).__name__}: {message}"
        ).lower()
        code, implied = _match_code(text)
        status = status or implied
    retry_after = None
    if code == ErrorCode.RATE_LIMIT:
        retry_after = _retry_after_ms(error, message)

    classified = ModelServiceError(
        message or type(error).__name__,
        code,
        retry_after_ms=retry_after,
        status_code=status,
        context=context,
    )
    if isinstance(error, BaseException):
        classified.__cause__ = error
    return classified


def is_retryable(code: ErrorCode) -> bool:
    return code in RETRYABLE_CODES


def base_delay(attempt: int, policy: BackoffPolicy) -> int:
    """Exponential delay without jitter: min(base * 2^(attempt-1), cap)."""
    exponent = max(0, attempt - 1)
    return min(policy.base_delay_ms * (2 ** exponent), policy.max_delay_ms)


def compute_delay(
    attempt: int,
    classified: ModelServiceError,
    policy: BackoffPolicy,
    rand: Callable[[], float] = random.random,
) -> int:
    """Delay in ms before the next attempt, jitter included."""
    if classified.error_code == ErrorCode.RATE_LIMIT and classified.retry_after_ms:
        delay = classified.retry_after_ms
    else:
        delay = base_delay(attempt, policy)
    jitter = delay * policy.jitter_factor * rand()  # nosec B311
    return int(delay + jitter)


def _typed_code(error: BaseException | str, status: int | None) -> ErrorCode | None:
    if isinstance(error, (StreamTimeoutError, TimeoutError)):
        return ErrorCode.TIMEOUT
    if status == 429:
        return ErrorCode.RATE_LIMIT
    if status == 529:
        return ErrorCode.OVERLOADED
    if status is not None and status >= 500:
        return ErrorCode.SERVER_ERROR
    return None


def _match_code(text: str) -> tuple[ErrorCode, int | None]:
    for code, needles, status, require_all in _PATTERNS:
        hit = all if require_all else any
        if hit(n in text for n in needles):
            return code, status
    return ErrorCode.UNKNOWN, None


def _retry_after_ms(error: BaseException | str, message: str) -> int | None:
    """Retry-After from the HTTP response header, else from the message text."""
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None)
    if headers is not None:
        val = headers.get("retry-after")
        if val:
            try:
                return int(float(val) * 1000)
            except ValueError:
                pass
    match = _RETRY_AFTER_RE.search(message)
    return int(match.group(1)) * 1000 if match else None
