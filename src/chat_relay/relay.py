"""ChatRelay: the public call surface.

    relay = ChatRelay.from_config(load_config())
    text = await relay.get_model_response(system, prompt, "medium", history, functions)
    async for chunk in relay.stream_model_response(system, prompt, "medium"):
        ...
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Sequence

from chat_relay.config import RelayConfig
from chat_relay.core.orchestrator import ToolCallOrchestrator
from chat_relay.core.reconciler import StreamReconciler
from chat_relay.errors import ConfigError, ProviderConnectionError, RefusedError
from chat_relay.events.bus import EventBus
from chat_relay.llm.conversation import ConversationBuilder
from chat_relay.llm.retry import RetryScheduler
from chat_relay.providers import create_adapter
from chat_relay.providers.base import ProviderAdapter
from chat_relay.tools.base import FunctionDescriptor
from chat_relay.tools.sandbox import FunctionExecutionSandbox
from chat_relay.types import Message, ModelRequest, Verbosity

_logger = logging.getLogger(__name__)


class ChatRelay:
    """Uniform chat surface over one provider adapter.

    Parameters
    ----------
    adapter:
        The provider adapter to talk to.
    config:
        Retry, orchestration and stream settings.
    event_bus:
        Event bus shared by all runs (optional).
    sleep:
        Awaitable sleep used for backoff and simulated streaming.
    """

    def __init__(
        self,
        adapter: ProviderAdapter,
        config: RelayConfig | None = None,
        event_bus: EventBus | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        self.adapter = adapter
        self.config = config or RelayConfig()
        self.event_bus = event_bus or EventBus()
        self._scheduler = RetryScheduler(self.config.retry, sleep=sleep)
        self._sandbox = FunctionExecutionSandbox()
        self._builder = ConversationBuilder(adapter)
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: RelayConfig | None = None, tier: int = -1) -> ChatRelay:
        """Create a relay for the config's active profile.

        *tier* indexes the profile's model list; ``-1`` picks the largest.
        """
        config = config or RelayConfig()
        profile = config.active_profile
        if tier < 0:
            tier = profile.tier_count - 1
        return cls(create_adapter(profile, tier=tier), config)

    @property
    def conversation(self) -> ConversationBuilder:
        return self._builder

    # ------------------------------------------------------------------
    # Non-streaming
    # ------------------------------------------------------------------

    async def get_model_response(
        self,
        system_prompt: str | None,
        user_prompt: str,
        verbosity: Verbosity | str = Verbosity.MEDIUM,
        history: Sequence[Message] | None = None,
        functions: Sequence[FunctionDescriptor] | None = None,
    ) -> str:
        request = self._builder.request(
            user_prompt,
            system_prompt=system_prompt,
            history=history,
            verbosity=verbosity,
            functions=functions,
        )
        return await self._run(request)

    async def get_model_response_with_forced_tools(
        self,
        system_prompt: str | None,
        user_prompt: str,
        verbosity: Verbosity | str = Verbosity.MEDIUM,
        history: Sequence[Message] | None = None,
        functions: Sequence[FunctionDescriptor] | None = None,
    ) -> str:
        """Like :meth:`get_model_response`, but the first round must call a function."""
        if not functions:
            raise ValueError("Forced tool use needs at least one function")
        request = self._builder.request(
            user_prompt,
            system_prompt=system_prompt,
            history=history,
            verbosity=verbosity,
            functions=functions,
            force_function_call=True,
        )
        return await self._run(request)

    async def get_constrained_response(
        self,
        system_prompt: str | None,
        user_prompt: str,
        verbosity: Verbosity | str,
        json_schema: dict[str, Any],
        default: Any,
        history: Sequence[Message] | None = None,
    ) -> Any:
        """Return JSON matching *json_schema*, or *default* on any failure."""
        request = self._builder.request(
            user_prompt,
            system_prompt=system_prompt,
            history=history,
            verbosity=verbosity,
            response_schema=json_schema,
        )
        try:
            output = await self._scheduler.execute(lambda: self.adapter.complete(request))
            if not output.text:
                _logger.warning("Constrained response was empty, using default")
                return default
            return json.loads(output.text)
        except Exception as e:
            _logger.warning(
                "Constrained response failed (%s: %s), using default", type(e).__name__, e,
            )
            return default

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def stream_model_response(
        self,
        system_prompt: str | None,
        user_prompt: str,
        verbosity: Verbosity | str = Verbosity.MEDIUM,
        history: Sequence[Message] | None = None,
        functions: Sequence[FunctionDescriptor] | None = None,
    ) -> AsyncIterator[str]:
        request = self._builder.request(
            user_prompt,
            system_prompt=system_prompt,
            history=history,
            verbosity=verbosity,
            functions=functions,
        )
        return self._reconciler().stream(request)

    def stream_model_response_with_forced_tools(
        self,
        system_prompt: str | None,
        user_prompt: str,
        verbosity: Verbosity | str = Verbosity.MEDIUM,
        history: Sequence[Message] | None = None,
        functions: Sequence[FunctionDescriptor] | None = None,
    ) -> AsyncIterator[str]:
        if not functions:
            raise ValueError("Forced tool use needs at least one function")
        request = self._builder.request(
            user_prompt,
            system_prompt=system_prompt,
            history=history,
            verbosity=verbosity,
            functions=functions,
            force_function_call=True,
        )
        return self._reconciler().stream(request)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run(self, request: ModelRequest) -> str:
        orchestrator = ToolCallOrchestrator(
            self.adapter,
            scheduler=self._scheduler,
            sandbox=self._sandbox,
            event_bus=self.event_bus,
            spec=self.config.orchestration,
        )
        try:
            return await orchestrator.run(request)
        except (RefusedError, ConfigError, ProviderConnectionError):
            raise
        except Exception as e:
            raise ProviderConnectionError(
                f"{self.adapter.display_name} API error: {e}"
            ) from e

    def _reconciler(self) -> StreamReconciler:
        return StreamReconciler(
            self.adapter,
            scheduler=self._scheduler,
            sandbox=self._sandbox,
            event_bus=self.event_bus,
            orchestration=self.config.orchestration,
            stream=self.config.stream,
            sleep=self._sleep,
        )

    async def close(self) -> None:
        await self.adapter.close()

    async def __aenter__(self) -> ChatRelay:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()
