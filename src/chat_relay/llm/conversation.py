"""ConversationBuilder: history + new prompt → normalized input sequence."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Sequence

from chat_relay.types import Message, ModelRequest, Role, Verbosity

if TYPE_CHECKING:
    from chat_relay.providers.base import ProviderAdapter
    from chat_relay.tools.base import FunctionDescriptor

_logger = logging.getLogger(__name__)


class ConversationBuilder:
    """Assembles provider-agnostic input sequences.

    With an *adapter*, it also converts to and from that provider's native
    message shape.
    """

    def __init__(self, adapter: ProviderAdapter | None = None) -> None:
        self._adapter = adapter

    def build(self, history: Sequence[Message] | None, prompt: str) -> list[Message]:
        """Return a copy of *history* followed by a new user turn.

        Empty messages and function results that do not answer a call made
        earlier in the history are dropped; providers reject both.
        """
        messages: list[Message] = []
        known_calls: set[str] = set()
        for message in history or ():
            if message.role is Role.ASSISTANT:
                known_calls.update(c.id for c in message.function_calls)
                if not message.content and not message.function_calls:
                    continue
            elif message.role is Role.FUNCTION_RESULT:
                if message.call_id not in known_calls:
                    _logger.debug("Dropping orphan function result %s", message.call_id)
                    continue
            elif not message.content:
                continue
            messages.append(message)
        messages.append(Message.user(prompt))
        return messages

    def request(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        history: Sequence[Message] | None = None,
        verbosity: Verbosity | str | None = None,
        functions: Sequence[FunctionDescriptor] | None = None,
        force_function_call: bool = False,
        response_schema: dict[str, Any] | None = None,
    ) -> ModelRequest:
        """Build a complete :class:`ModelRequest` for one top-level call."""
        return ModelRequest(
            messages=self.build(history, prompt),
            system_prompt=system_prompt or None,
            verbosity=Verbosity.coerce(verbosity),
            functions=list(functions or []),
            force_function_call=force_function_call,
            response_schema=response_schema,
        )

    def to_native(self, messages: Sequence[Message]) -> list[dict[str, Any]]:
        return self._require_adapter().render_messages(list(messages))

    def from_native(self, items: Sequence[dict[str, Any]]) -> list[Message]:
        return self._require_adapter().parse_messages(list(items))

    def _require_adapter(self) -> ProviderAdapter:
        if self._adapter is None:
            raise ValueError("ConversationBuilder has no provider adapter")
        return self._adapter
