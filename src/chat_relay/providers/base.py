"""ProviderAdapter base class and shared HTTP/SSE plumbing.

An adapter turns a provider-agnostic :class:`ModelRequest` into one HTTP
call and normalizes the reply into :class:`ModelOutput` (non-streaming) or
a sequence of :class:`StreamEvent` values (streaming).  Nothing
provider-specific leaks past this layer.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncGenerator, AsyncIterator

import httpx

from chat_relay.config import ProviderProfile
from chat_relay.errors import ConfigError, ProviderError
from chat_relay.types import Message, ModelOutput, ModelRequest, StreamEvent

_logger = logging.getLogger(__name__)


async def iter_sse_data(response: httpx.Response) -> AsyncGenerator[dict[str, Any], None]:
    """Yield decoded JSON objects from ``data:`` lines of an SSE response."""
    async for raw_line in response.aiter_lines():
        if not raw_line.startswith("data:"):
            continue
        data_str = raw_line[5:].strip()
        if not data_str:
            continue
        if data_str == "[DONE]":
            break
        try:
            data = json.loads(data_str)
        except json.JSONDecodeError:
            _logger.debug("Skipping undecodable SSE line: %s", data_str[:200])
            continue
        if isinstance(data, dict):
            yield data


def loads_object(raw: str | None) -> dict[str, Any]:
    """Parse *raw* as a JSON object, falling back to an empty dict."""
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, ValueError):
        return {}
    return value if isinstance(value, dict) else {}


class ProviderAdapter(ABC):
    """Base class for provider adapters.

    Parameters
    ----------
    profile:
        Provider profile (URL, key, model tiers, timeout).
    tier:
        Model tier index into ``profile.models``.
    transport:
        Optional httpx transport, mainly for tests.
    """

    name: str = "provider"
    display_name: str = "Provider"

    def __init__(
        self,
        profile: ProviderProfile,
        tier: int = 0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.profile = profile
        self.model = profile.model_for_tier(tier)
        self._api_key = profile.resolve_api_key()
        if not self._api_key:
            raise ConfigError(
                f"{self.display_name} API key is not configured "
                f"(set api_key or ${profile.api_key_env})"
            )
        self._client = httpx.AsyncClient(
            base_url=self._base_url(),
            headers=self._headers(),
            params=self._params(),
            timeout=httpx.Timeout(profile.timeout, connect=30),
            transport=transport,
        )

    # ------------------------------------------------------------------
    # Provider hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def _base_url(self) -> str:
        """Base URL for the HTTP client."""

    @abstractmethod
    def _headers(self) -> dict[str, str]:
        """Default headers, including authentication."""

    def _params(self) -> dict[str, str]:
        return {}

    @abstractmethod
    async def complete(self, request: ModelRequest) -> ModelOutput:
        """One non-streaming invocation."""

    @abstractmethod
    async def open_stream(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        """Open a streaming invocation.

        HTTP errors are raised here, before any event is produced, so the
        caller can retry the open.  The returned iterator closes the
        underlying response when exhausted or closed.
        """

    @abstractmethod
    def render_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        """Convert normalized messages to the provider's input items."""

    @abstractmethod
    def parse_messages(self, items: list[dict[str, Any]]) -> list[Message]:
        """Convert provider input items back to normalized messages."""

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    async def _post_json(
        self, path: str, payload: dict[str, Any], params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        resp = await self._client.post(path, json=payload, params=params)
        if resp.status_code >= 400:
            raise self._error_from_response(resp, streaming=False)
        try:
            data = resp.json()
        except (json.JSONDecodeError, ValueError):
            _logger.warning("%s returned a non-JSON body", self.display_name)
            return {}
        return data if isinstance(data, dict) else {}

    async def _open_sse(
        self, path: str, payload: dict[str, Any], params: dict[str, str] | None = None,
    ) -> httpx.Response:
        request = self._client.build_request(
            "POST", path, json=payload, params=params,
            headers={"Accept": "text/event-stream"},
        )
        resp = await self._client.send(request, stream=True)
        if resp.status_code >= 400:
            try:
                await resp.aread()
            finally:
                await resp.aclose()
            raise self._error_from_response(resp, streaming=True)
        return resp

    def _error_from_response(self, resp: httpx.Response, streaming: bool) -> ProviderError:
        return ProviderError.from_response(resp, provider=self.name)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
