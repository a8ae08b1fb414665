"""Google Gemini adapter (generateContent REST API over httpx)."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncGenerator, AsyncIterator

import httpx

from chat_relay.errors import RefusedError, StreamInterruptedError
from chat_relay.providers.base import ProviderAdapter, iter_sse_data, loads_object
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

_GENERATION = {
    Verbosity.LOW: {"temperature": 0.3, "maxOutputTokens": 2048},
    Verbosity.MEDIUM: {"temperature": 0.7, "maxOutputTokens": 4096},
    Verbosity.HIGH: {"temperature": 1.0, "maxOutputTokens": 8192},
}

_BLOCKED_FINISH_REASONS = ("SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII")


def strip_additional_properties(schema: Any) -> Any:
    """Remove ``additionalProperties`` recursively; Gemini rejects it."""
    if isinstance(schema, dict):
        return {
            k: strip_additional_properties(v)
            for k, v in schema.items()
            if k != "additionalProperties"
        }
    if isinstance(schema, list):
        return [strip_additional_properties(v) for v in schema]
    return schema


class GeminiAdapter(ProviderAdapter):
    """Adapter for ``models/{model}:generateContent`` and its SSE variant."""

    name = "gemini"
    display_name = "Google Gemini"

    def _base_url(self) -> str:
        return self.profile.resolve_url().rstrip("/")

    def _headers(self) -> dict[str, str]:
        return {"x-goog-api-key": self._api_key, "Content-Type": "application/json"}

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def _tool_declaration(self, descriptor: FunctionDescriptor) -> dict[str, Any]:
        decl = descriptor.to_declaration()
        return {
            "name": decl["name"],
            "description": decl["description"],
            "parameters": strip_additional_properties(decl["parameters"]),
        }

    def build_payload(self, request: ModelRequest) -> dict[str, Any]:
        generation: dict[str, Any] = dict(_GENERATION[request.verbosity])
        payload: dict[str, Any] = {
            "contents": self.render_messages(request.messages),
            "generationConfig": generation,
        }
        if request.system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": request.system_prompt}]}
        if request.functions:
            payload["tools"] = [{
                "functionDeclarations": [
                    self._tool_declaration(f) for f in request.functions
                ],
            }]
            if request.force_function_call:
                payload["toolConfig"] = {"functionCallingConfig": {"mode": "ANY"}}
        if request.response_schema is not None:
            generation["responseMimeType"] = "application/json"
            generation["responseSchema"] = strip_additional_properties(
                request.response_schema,
            )
        if self.profile.extra_params:
            payload.update(self.profile.extra_params)
        return payload

    # ------------------------------------------------------------------
    # Message conversion
    # ------------------------------------------------------------------

    def render_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        contents: list[dict[str, Any]] = []
        for m in messages:
            if m.role is Role.USER:
                contents.append({"role": "user", "parts": [{"text": m.content or ""}]})
            elif m.role is Role.ASSISTANT:
                parts: list[dict[str, Any]] = []
                if m.content:
                    parts.append({"text": m.content})
                for call in m.function_calls:
                    parts.append({
                        "functionCall": {"name": call.name, "args": loads_object(call.arguments)},
                    })
                if parts:
                    contents.append({"role": "model", "parts": parts})
            elif m.role is Role.FUNCTION_RESULT:
                part = {
                    "functionResponse": {
                        "name": m.name,
                        "response": _response_object(m.content),
                    },
                }
                # All responses to one model turn travel in a single content
                last = contents[-1] if contents else None
                if last is not None and last["role"] == "user" and all(
                    "functionResponse" in p for p in last["parts"]
                ):
                    last["parts"].append(part)
                else:
                    contents.append({"role": "user", "parts": [part]})
        return contents

    def parse_messages(self, items: list[dict[str, Any]]) -> list[Message]:
        messages: list[Message] = []
        pending_ids: dict[str, list[str]] = {}
        counter = 0
        for content in items:
            role = content.get("role", "user")
            texts: list[str] = []
            calls: list[FunctionCall] = []
            for part in content.get("parts") or []:
                if "text" in part:
                    texts.append(part["text"])
                elif "functionCall" in part:
                    fc = part["functionCall"]
                    call_id = fc.get("id") or f"gemini_call_{counter}"
                    counter += 1
                    pending_ids.setdefault(fc.get("name", ""), []).append(call_id)
                    calls.append(FunctionCall(
                        id=call_id,
                        name=fc.get("name", ""),
                        arguments=json.dumps(fc.get("args") or {}),
                    ))
                elif "functionResponse" in part:
                    fr = part["functionResponse"]
                    name = fr.get("name", "")
                    queue = pending_ids.get(name) or []
                    call_id = fr.get("id") or (queue.pop(0) if queue else name)
                    messages.append(Message(
                        role=Role.FUNCTION_RESULT,
                        content=json.dumps(fr.get("response", {})),
                        call_id=call_id,
                        name=name,
                    ))
            text = "".join(texts) or None
            if role == "model":
                if text or calls:
                    messages.append(Message.assistant(text, calls))
            elif text:
                messages.append(Message.user(text))
        return messages

    # ------------------------------------------------------------------
    # Invocation
    # ------------------------------------------------------------------

    async def complete(self, request: ModelRequest) -> ModelOutput:
        data = await self._post_json(
            f"/models/{self.model}:generateContent", self.build_payload(request),
        )
        return self.parse_output(data)

    def parse_output(self, data: dict[str, Any]) -> ModelOutput:
        """Normalize a GenerateContentResponse body."""
        self._check_blocked(data)
        candidates = data.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            return ModelOutput(raw=data, valid=False, model=data.get("modelVersion", self.model))

        candidate = candidates[0]
        texts: list[str] = []
        calls: list[FunctionCall] = []
        for index, part in enumerate((candidate.get("content") or {}).get("parts") or []):
            if part.get("thought"):
                continue
            if part.get("text"):
                texts.append(part["text"])
            elif "functionCall" in part:
                fc = part["functionCall"]
                calls.append(FunctionCall(
                    id=fc.get("id") or f"gemini_call_{index}",
                    name=fc.get("name", ""),
                    arguments=json.dumps(fc.get("args") or {}),
                ))

        if not texts and not calls and candidate.get("finishReason") in _BLOCKED_FINISH_REASONS:
            raise RefusedError(
                f"response blocked ({candidate['finishReason']})",
                kind="safety",
                provider=self.name,
            )

        usage = data.get("usageMetadata") or {}
        return ModelOutput(
            text="".join(texts) or None,
            function_calls=calls,
            model=data.get("modelVersion", self.model),
            usage={
                "prompt_tokens": usage.get("promptTokenCount", 0),
                "completion_tokens": usage.get("candidatesTokenCount", 0),
                "total_tokens": usage.get("totalTokenCount", 0),
            } if usage else {},
            raw=data,
        )

    async def open_stream(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        response = await self._open_sse(
            f"/models/{self.model}:streamGenerateContent",
            self.build_payload(request),
            params={"alt": "sse"},
        )
        return self._stream_events(response)

    async def _stream_events(
        self, response: httpx.Response,
    ) -> AsyncGenerator[StreamEvent, None]:
        try:
            async for data in iter_sse_data(response):
                for event in self.translate_chunk(data):
                    yield event
            yield SegmentEnd()
        finally:
            await response.aclose()

    def translate_chunk(self, data: dict[str, Any]) -> list[StreamEvent]:
        """Map one streamed GenerateContentResponse to normalized events.

        Gemini sends whole function calls, so each becomes one complete
        delta keyed by name and arguments; repeats of the same call in a
        segment collapse into one.
        """
        if "error" in data:
            err = data["error"] if isinstance(data["error"], dict) else {"message": data["error"]}
            raise StreamInterruptedError(
                str(err.get("message") or "stream failed"),
                status=err.get("code") if isinstance(err.get("code"), int) else None,
                error_type=str(err.get("status") or ""),
                provider=self.name,
            )
        self._check_blocked(data)

        events: list[StreamEvent] = []
        for candidate in data.get("candidates") or []:
            for part in (candidate.get("content") or {}).get("parts") or []:
                if part.get("thought"):
                    continue
                if part.get("text"):
                    events.append(TextDelta(part["text"]))
                elif "functionCall" in part:
                    fc = part["functionCall"]
                    arguments = json.dumps(fc.get("args") or {}, sort_keys=True)
                    events.append(FunctionCallDelta(
                        key=f"{fc.get('name', '')}:{arguments}",
                        name=fc.get("name", ""),
                        call_id=fc.get("id", ""),
                        arguments=arguments,
                        complete=True,
                    ))
        return events

    def _check_blocked(self, data: dict[str, Any]) -> None:
        feedback = data.get("promptFeedback") or {}
        reason = feedback.get("blockReason")
        if reason:
            raise RefusedError(
                f"prompt blocked ({reason})", kind="safety", provider=self.name,
            )


def _response_object(content: str | None) -> dict[str, Any]:
    """functionResponse.response must be an object."""
    if not content:
        return {}
    try:
        value = json.loads(content)
    except (json.JSONDecodeError, ValueError):
        return {"result": content}
    if isinstance(value, dict):
        return value
    return {"result": value}
