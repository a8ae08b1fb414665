"""Exception hierarchy for chat-relay.

Only configuration problems, refusals and unclassified provider failures
are raised as exceptions.  Function failures are values
(:class:`chat_relay.types.FunctionResult`), never exceptions.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Mapping

import httpx

_logger = logging.getLogger(__name__)

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)s\s*$")


class ChatRelayError(Exception):
    """Base class for all chat-relay errors."""


class ConfigError(ChatRelayError):
    """Invalid or incomplete configuration."""


class ProviderConnectionError(ChatRelayError):
    """An unclassified provider failure surfaced through the public facade."""


class ProviderError(ChatRelayError):
    """A failed provider call carrying whatever the provider told us.

    Parameters
    ----------
    message:
        Human-readable error text from the provider.
    status:
        HTTP status code, if known.
    error_type, error_code:
        Provider error labels (``error.type`` / ``error.code`` for OpenAI,
        ``error.status`` for Gemini).
    retry_after:
        Server-suggested wait in seconds, if any.
    headers:
        Response headers, kept for classification.
    """

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        error_type: str = "",
        error_code: str = "",
        retry_after: float | None = None,
        headers: Mapping[str, str] | None = None,
        body: Any = None,
        provider: str = "",
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.error_type = error_type
        self.error_code = error_code
        self.retry_after = retry_after
        self.headers = dict(headers or {})
        self.body = body
        self.provider = provider

    def __str__(self) -> str:
        if self.status is not None:
            return f"{self.status}: {self.message}"
        return self.message

    @classmethod
    def from_response(
        cls, response: httpx.Response, provider: str = "",
    ) -> ProviderError:
        """Build an error from a non-2xx response whose body has been read."""
        body: Any = None
        message = ""
        error_type = ""
        error_code = ""
        retry_after: float | None = None
        try:
            body = response.json()
        except (json.JSONDecodeError, ValueError):
            message = response.text.strip()

        if isinstance(body, list) and body:
            # Gemini streaming endpoints wrap errors in a one-element array
            body = body[0]
        if isinstance(body, dict):
            err = body.get("error", body)
            if isinstance(err, dict):
                message = str(err.get("message") or message)
                error_type = str(err.get("type") or err.get("status") or "")
                code = err.get("code")
                if code is not None and not isinstance(code, int):
                    error_code = str(code)
                for detail in err.get("details") or []:
                    if isinstance(detail, dict) and "retryDelay" in detail:
                        retry_after = _parse_duration(detail["retryDelay"])
            elif isinstance(err, str):
                message = err

        header_value = response.headers.get("retry-after")
        if header_value is not None:
            try:
                retry_after = float(header_value)
            except ValueError:
                _logger.debug("Ignoring non-numeric retry-after: %s", header_value)

        return cls(
            message or response.reason_phrase or "provider error",
            status=response.status_code,
            error_type=error_type,
            error_code=error_code,
            retry_after=retry_after,
            headers=response.headers,
            body=body,
            provider=provider,
        )


class RefusedError(ProviderError):
    """The provider refused the request (content filter, safety or refusal).

    Fatal: never retried.  ``kind`` is ``"content_filter"``, ``"safety"`` or
    ``"refusal"``.
    """

    def __init__(self, message: str, *, kind: str = "refusal", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.kind = kind

    def __str__(self) -> str:
        return f"{self.kind.replace('_', ' ')} triggered: {self.message}"


class StreamInterruptedError(ProviderError):
    """The provider reported an error in the middle of a stream."""


class StreamingUnsupportedError(ProviderError):
    """The provider rejected a streaming request for this model."""


def _parse_duration(value: Any) -> float | None:
    if isinstance(value, (int, float)):
        return float(value)
    match = _DURATION_RE.match(str(value))
    if match:
        return float(match.group(1))
    return None
