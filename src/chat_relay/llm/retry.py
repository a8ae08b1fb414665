"""Failure classification and backoff for provider calls.

Every outbound provider call goes through :class:`RetryScheduler`.  Errors
are classified by status code, probing the handful of shapes that HTTP
clients and SDKs use to carry one:

  rate_limited      - 429, retried
  transient_server  - 5xx, retried with the same budget
  refused           - content filter / safety / refusal wording, fatal
  fatal             - anything else, rethrown unchanged; a streaming-unsupported
                      rejection is always fatal so callers can fall back
"""

from __future__ import annotations

import asyncio
import enum
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, TypeVar

from chat_relay.config import RetrySpec
from chat_relay.errors import ProviderError, RefusedError, StreamingUnsupportedError

_logger = logging.getLogger(__name__)

T = TypeVar("T")

_REFUSAL_WORDS = ("refuse", "cannot", "unable", "forbidden")


class ErrorClass(enum.Enum):
    RATE_LIMITED = "rate_limited"
    TRANSIENT_SERVER = "transient_server"
    REFUSED = "refused"
    FATAL = "fatal"


@dataclass
class ErrorVerdict:
    """Classification of one failure."""

    error_class: ErrorClass
    status: int | None = None
    refusal_kind: str = ""
    retry_after: float | None = None

    @property
    def retryable(self) -> bool:
        return self.error_class in (ErrorClass.RATE_LIMITED, ErrorClass.TRANSIENT_SERVER)


# ---------------------------------------------------------------------------
# Error-shape probing
# ---------------------------------------------------------------------------

def _as_status(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def error_status(exc: BaseException) -> int | None:
    """Find an HTTP status on *exc*, tolerating several error conventions."""
    for attr in ("status", "status_code"):
        status = _as_status(getattr(exc, attr, None))
        if status is not None:
            return status
    response = getattr(exc, "response", None)
    if response is not None:
        for attr in ("status_code", "status"):
            status = _as_status(getattr(response, attr, None))
            if status is not None:
                return status
    # Some SDKs put the HTTP status in a numeric ``code``
    status = _as_status(getattr(exc, "code", None))
    if status is not None and 100 <= status < 600:
        return status
    return None


def _header(headers: Any, name: str) -> Any:
    if not isinstance(headers, Mapping) and not hasattr(headers, "get"):
        return None
    for key in (name, name.title(), name.lower()):
        value = headers.get(key)
        if value is not None:
            return value
    return None


def parse_retry_after(exc: BaseException) -> float | None:
    """Return the server's retry-after hint in seconds, if any."""
    candidates = [
        _header(getattr(exc, "headers", None), "retry-after"),
    ]
    response = getattr(exc, "response", None)
    if response is not None:
        candidates.append(_header(getattr(response, "headers", None), "retry-after"))
    candidates.append(getattr(exc, "retry_after", None))
    candidates.append(getattr(exc, "retryAfter", None))

    for value in candidates:
        if value is None:
            continue
        try:
            seconds = float(value)
        except (TypeError, ValueError):
            continue
        if seconds > 0:
            return seconds
    return None


def _error_labels(exc: BaseException) -> tuple[str, str]:
    """Return lowercase ``(type, code)`` labels from *exc*."""
    error_type = getattr(exc, "error_type", "") or getattr(exc, "type", "")
    error_code = getattr(exc, "error_code", "")
    if not error_code:
        code = getattr(exc, "code", "")
        if isinstance(code, str) and not code.strip().isdigit():
            error_code = code
    body = getattr(exc, "body", None)
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        err = body["error"]
        error_type = error_type or err.get("type", "")
        if not error_code and isinstance(err.get("code"), str):
            error_code = err["code"]
    return str(error_type or "").lower(), str(error_code or "").lower()


def _error_message(exc: BaseException) -> str:
    return str(getattr(exc, "message", "") or exc).lower()


def classify_error(exc: BaseException) -> ErrorVerdict:
    """Classify *exc* into an :class:`ErrorVerdict`."""
    if isinstance(exc, RefusedError):
        return ErrorVerdict(ErrorClass.REFUSED, exc.status, exc.kind)
    if isinstance(exc, StreamingUnsupportedError):
        return ErrorVerdict(ErrorClass.FATAL, exc.status)

    status = error_status(exc)
    if status is None:
        return ErrorVerdict(ErrorClass.FATAL)

    if status == 429:
        return ErrorVerdict(
            ErrorClass.RATE_LIMITED, status, retry_after=parse_retry_after(exc),
        )
    if 500 <= status < 600:
        return ErrorVerdict(
            ErrorClass.TRANSIENT_SERVER, status, retry_after=parse_retry_after(exc),
        )

    message = _error_message(exc)
    error_type, error_code = _error_labels(exc)
    labels = (error_type, error_code)

    if status == 400:
        if "content_filter" in labels or "content filter" in message:
            return ErrorVerdict(ErrorClass.REFUSED, status, "content_filter")
        if "safety" in labels or "safety" in message:
            return ErrorVerdict(ErrorClass.REFUSED, status, "safety")
        if any(w in message for w in _REFUSAL_WORDS):
            return ErrorVerdict(ErrorClass.REFUSED, status, "refusal")
    elif 400 < status < 500:
        if any(w in message for w in _REFUSAL_WORDS):
            return ErrorVerdict(ErrorClass.REFUSED, status, "refusal")

    return ErrorVerdict(ErrorClass.FATAL, status)


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

class RetryScheduler:
    """Run one remote operation with classification and backoff.

    Parameters
    ----------
    spec:
        Backoff settings (defaults: 5 retries, 1s initial, 60s cap, 10% jitter).
    sleep:
        Awaitable sleep used between attempts.  Defaults to ``asyncio.sleep``.
    rng:
        Zero-argument callable returning a float in ``[0, 1)`` for jitter.
    """

    def __init__(
        self,
        spec: RetrySpec | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
        rng: Callable[[], float] | None = None,
    ) -> None:
        self.spec = spec or RetrySpec()
        self._sleep = sleep
        self._rng = rng or random.random

    def compute_delay(self, retry_index: int, retry_after: float | None = None) -> float:
        """Delay before retry number *retry_index* (0-based)."""
        spec = self.spec
        if retry_after is not None and retry_after > 0:
            jitter = retry_after * spec.jitter_ratio * self._rng()
            return min(retry_after + jitter, spec.max_delay)
        return min(spec.initial_delay * (2 ** retry_index), spec.max_delay)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        max_attempts: int | None = None,
    ) -> T:
        """Run *operation*, retrying rate limits and server errors.

        *max_attempts* is the number of retries allowed after the first call.
        Refusals raise :class:`RefusedError` immediately; every other
        unretryable error is re-raised unchanged.  Exhausting the retry
        budget re-raises the last error.
        """
        retries = self.spec.max_attempts if max_attempts is None else max_attempts
        retry_index = 0
        while True:
            try:
                return await operation()
            except Exception as exc:
                verdict = classify_error(exc)
                if verdict.error_class is ErrorClass.REFUSED:
                    _logger.warning("Provider refused request (%s): %s", verdict.refusal_kind, exc)
                    if isinstance(exc, RefusedError):
                        raise
                    raise _as_refused(exc, verdict) from exc
                if not verdict.retryable:
                    raise
                if retry_index >= retries:
                    _logger.warning(
                        "Provider returned %s, giving up after %d retries",
                        verdict.status, retry_index,
                    )
                    raise

                delay = self.compute_delay(retry_index, verdict.retry_after)
                _logger.warning(
                    "Provider returned %s (retry %d/%d), waiting %.2fs",
                    verdict.status, retry_index + 1, retries, delay,
                )
                await (self._sleep or asyncio.sleep)(delay)
                retry_index += 1


def _as_refused(exc: BaseException, verdict: ErrorVerdict) -> RefusedError:
    if isinstance(exc, ProviderError):
        return RefusedError(
            exc.message,
            kind=verdict.refusal_kind,
            status=exc.status,
            error_type=exc.error_type,
            error_code=exc.error_code,
            headers=exc.headers,
            body=exc.body,
            provider=exc.provider,
        )
    return RefusedError(
        str(getattr(exc, "message", "") or exc),
        kind=verdict.refusal_kind,
        status=verdict.status,
    )
