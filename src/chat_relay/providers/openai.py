"""OpenAI and Azure OpenAI adapters (Responses API over httpx)."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncGenerator, AsyncIterator

import httpx

from chat_relay.errors import (
    ConfigError,
    ProviderError,
    StreamingUnsupportedError,
    StreamInterruptedError,
)
from chat_relay.providers.base import ProviderAdapter, iter_sse_data
from chat_relay.tools.base import FunctionDescriptor
from chat_relay.types import (
    FunctionCall,
    FunctionCallDelta,
    Message,
    ModelOutput,
    ModelRequest,
    Role,
    SegmentEnd,
    StreamEvent,
    TextDelta,
    Verbosity,
)

_logger = logging.getLogger(__name__)

# gpt-5 reasoning effort is one notch below the requested verbosity
_REASONING_EFFORT = {
    Verbosity.LOW: "low",
    Verbosity.MEDIUM: "low",
    Verbosity.HIGH: "medium",
}


def _strict_parameters(schema: dict[str, Any]) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": schema.get("properties", {}),
        "required": schema.get("required", []),
        "additionalProperties": False,
    }


class OpenAIAdapter(ProviderAdapter):
    """Adapter for the OpenAI Responses API (``POST /responses``)."""

    name = "openai"
    display_name = "OpenAI"

    def _base_url(self) -> str:
        return self.profile.resolve_url().rstrip("/")

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def _tool_declaration(self, descriptor: FunctionDescriptor) -> dict[str, Any]:
        decl = descriptor.to_declaration()
        return {
            "type": "function",
            "name": decl["name"],
            "description": decl["description"],
            "parameters": _strict_parameters(decl["parameters"]),
        }

    def _verbosity_params(self, verbosity: Verbosity) -> dict[str, Any]:
        model = self.model.lower()
        if model.startswith("gpt-5"):
            return {
                "text": {"verbosity": verbosity.value},
                "reasoning": {"effort": _REASONING_EFFORT[verbosity]},
            }
        if model.startswith("gpt-4.1"):
            # gpt-4.1 only accepts the default verbosity
            return {"text": {"verbosity": "medium"}}
        return {}

    def build_payload(self, request: ModelRequest, stream: bool = False) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "input": self.render_messages(request.messages),
        }
        if request.system_prompt:
            payload["instructions"] = request.system_prompt
        payload.update(self._verbosity_params(request.verbosity))
        if request.functions:
            payload["tools"] = [self._tool_declaration(f) for f in request.functions]
            payload["tool_choice"] = "required" if request.force_function_call else "auto"
        if request.response_schema is not None:
            text = dict(payload.get("text", {}))
            text["format"] = {
                "type": "json_schema",
                "name": "constrainedOutput",
                "schema": request.response_schema,
                "strict": True,
            }
            payload["text"] = text
        if stream:
            payload["stream"] = True
        if self.profile.extra_params:
            payload.update(self.profile.extra_params)
        return payload

    def _responses_path(self) -> str:
        return "/responses"

    # ------------------------------------------------------------------
    # Message conversion
    # ------------------------------------------------------------------

    def render_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        for m in messages:
            if m.role is Role.USER:
                items.append({"role": "user", "content": m.content or ""})
            elif m.role is Role.ASSISTANT:
                if m.content:
                    items.append({"role": "assistant", "content": m.content})
                for call in m.function_calls:
                    items.append({
                        "type": "function_call",
                        "call_id": call.id,
                        "name": call.name,
                        "arguments": call.arguments,
                    })
            elif m.role is Role.FUNCTION_RESULT:
                items.append({
                    "type": "function_call_output",
                    "call_id": m.call_id,
                    "output": m.content or "",
                })
        return items

    def parse_messages(self, items: list[dict[str, Any]]) -> list[Message]:
        messages: list[Message] = []
        names: dict[str, str] = {}
        for item in items:
            kind = item.get("type")
            if kind == "function_call":
                call = FunctionCall(
                    id=item.get("call_id", ""),
                    name=item.get("name", ""),
                    arguments=item.get("arguments") or "{}",
                )
                names[call.id] = call.name
                last = messages[-1] if messages else None
                if last is not None and last.role is Role.ASSISTANT:
                    # Consecutive function_call items belong to one assistant turn
                    messages[-1] = Message(
                        role=Role.ASSISTANT,
                        content=last.content,
                        function_calls=last.function_calls + (call,),
                        timestamp=last.timestamp,
                        id=last.id,
                    )
                else:
                    messages.append(Message.assistant(None, [call]))
            elif kind == "function_call_output":
                call_id = item.get("call_id", "")
                messages.append(Message(
                    role=Role.FUNCTION_RESULT,
                    content=item.get("output", ""),
                    call_id=call_id,
                    name=names.get(call_id, ""),
                ))
            elif item.get("role") == "assistant":
                messages.append(Message.assistant(_content_text(item.get("content"))))
            elif item.get("role") == "user":
                messages.append(Message.user(_content_text(item.get("content"))))
            else:
                _logger.debug("Skipping unrecognized input item: %s", kind or item.get("role"))
        return messages

    # ------------------------------------------------------------------
    # Invocation
    # ------------------------------------------------------------------

    async def complete(self, request: ModelRequest) -> ModelOutput:
        data = await self._post_json(self._responses_path(), self.build_payload(request))
        return self.parse_output(data)

    def parse_output(self, data: dict[str, Any]) -> ModelOutput:
        """Normalize a Responses API body."""
        output = data.get("output")
        if not isinstance(output, list):
            return ModelOutput(raw=data, valid=False, model=data.get("model", self.model))

        texts: list[str] = []
        calls: list[FunctionCall] = []
        for index, item in enumerate(output):
            if not isinstance(item, dict):
                continue
            kind = item.get("type")
            if kind == "message":
                for part in item.get("content") or []:
                    if part.get("type") in ("output_text", "text") and part.get("text"):
                        texts.append(part["text"])
            elif kind == "function_call":
                calls.append(FunctionCall(
                    id=item.get("call_id") or item.get("id") or f"generated_{index}",
                    name=item.get("name", ""),
                    arguments=item.get("arguments") or "{}",
                ))

        text = "".join(texts) or data.get("output_text") or None
        return ModelOutput(
            text=text,
            function_calls=calls,
            model=data.get("model", self.model),
            usage=data.get("usage") or {},
            raw=data,
        )

    async def open_stream(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        response = await self._open_sse(
            self._responses_path(), self.build_payload(request, stream=True),
        )
        return self._stream_events(response)

    async def _stream_events(
        self, response: httpx.Response,
    ) -> AsyncGenerator[StreamEvent, None]:
        try:
            async for data in iter_sse_data(response):
                event = self.translate_event(data)
                if event is None:
                    continue
                yield event
                if isinstance(event, SegmentEnd):
                    return
            yield SegmentEnd()
        finally:
            await response.aclose()

    def translate_event(self, data: dict[str, Any]) -> StreamEvent | None:
        """Map one Responses API stream event to a normalized event."""
        kind = data.get("type", "")
        key = str(data.get("output_index", data.get("item_id", "0")))

        if kind == "response.output_text.delta":
            return TextDelta(data.get("delta", ""))
        if kind == "response.output_item.added":
            item = data.get("item") or {}
            if item.get("type") == "function_call":
                return FunctionCallDelta(
                    key=key,
                    name=item.get("name", ""),
                    call_id=item.get("call_id", ""),
                    arguments=item.get("arguments", ""),
                )
            return None
        if kind == "response.function_call_arguments.delta":
            return FunctionCallDelta(key=key, arguments=data.get("delta", ""))
        if kind == "response.function_call_arguments.done":
            return FunctionCallDelta(
                key=key, arguments=data.get("arguments", ""), complete=True,
            )
        if kind == "response.output_item.done":
            item = data.get("item") or {}
            if item.get("type") == "function_call":
                return FunctionCallDelta(
                    key=key,
                    name=item.get("name", ""),
                    call_id=item.get("call_id", ""),
                    arguments=item.get("arguments", ""),
                    complete=True,
                )
            return None
        if kind == "response.completed":
            return SegmentEnd()
        if kind in ("error", "response.failed"):
            err = data.get("error") or (data.get("response") or {}).get("error") or data
            raise StreamInterruptedError(
                str(err.get("message") or "stream failed"),
                error_type=str(err.get("type") or ""),
                error_code=str(err.get("code") or ""),
                provider=self.name,
            )
        return None

    def _error_from_response(self, resp: httpx.Response, streaming: bool) -> ProviderError:
        error = super()._error_from_response(resp, streaming)
        message = error.message.lower()
        if streaming and error.status == 400 and (
            _error_param(error.body) == "stream"
            or ("stream" in message and "support" in message)
        ):
            return StreamingUnsupportedError(
                error.message,
                status=error.status,
                error_type=error.error_type,
                error_code=error.error_code,
                headers=error.headers,
                body=error.body,
                provider=self.name,
            )
        return error


class AzureOpenAIAdapter(OpenAIAdapter):
    """Azure OpenAI: same wire shape, deployment as model, ``api-key`` auth."""

    name = "azure_openai"
    display_name = "Azure OpenAI"

    def _base_url(self) -> str:
        endpoint = self.profile.resolve_url().rstrip("/")
        if not endpoint:
            raise ConfigError(
                "Azure OpenAI endpoint is not configured "
                f"(set url or ${self.profile.url_env or 'AZURE_OPENAI_ENDPOINT'})"
            )
        if not endpoint.endswith("/openai"):
            endpoint += "/openai"
        return endpoint

    def _headers(self) -> dict[str, str]:
        return {"api-key": self._api_key, "Content-Type": "application/json"}

    def _params(self) -> dict[str, str]:
        return {"api-version": self.profile.api_version or "2025-03-01-preview"}


def _error_param(body: Any) -> str:
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return str(body["error"].get("param") or "")
    return ""


def _content_text(content: Any) -> str:
    """Flatten Responses API content (str or list of parts) to text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            part.get("text", "") for part in content if isinstance(part, dict)
        )
    if content is None:
        return ""
    return json.dumps(content)
