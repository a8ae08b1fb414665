"""Streaming primitives: payload suppression and call fragment buffering.

Providers sometimes leak the serialized arguments of a function call into
the narrative text channel.  :class:`StreamAccumulator` watches text
deltas and swallows anything that looks like such a payload, tracking
brace depth, string context and escapes so that braces inside quoted
strings do not end the payload early.

:class:`PendingCallBuffer` collects function-call fragments until the
segment ends.
"""

from __future__ import annotations

import dataclasses
import enum
import logging

from chat_relay.types import FunctionCall, FunctionCallDelta

_logger = logging.getLogger(__name__)


class ReconcilerState(enum.Enum):
    """Named states of the streaming reconciler."""

    IDLE = "idle"
    EMITTING_TEXT = "emitting_text"
    BUFFERING_PAYLOAD = "buffering_payload"
    AWAITING_TOOL_ROUND = "awaiting_tool_round"
    TERMINATED = "terminated"


# ---------------------------------------------------------------------------
# StreamAccumulator
# ---------------------------------------------------------------------------

class StreamAccumulator:
    """Filters structured payload fragments out of a text-delta stream.

    States:
      idle              - nothing emitted yet in this segment
      emitting_text     - narrative text is flowing
      buffering_payload - inside a ``{"...`` payload, waiting for balance

    An opening brace is held back until up to ``quote_window``
    non-whitespace characters follow it.  If one of them is a double quote
    the brace starts a payload, otherwise it is narrative text.
    ``quote_window=0`` disables suppression entirely.
    """

    def __init__(self, quote_window: int = 1) -> None:
        self.quote_window = max(0, quote_window)
        self.reset()

    def reset(self) -> None:
        """Forget everything; used when a new segment begins."""
        self.state = ReconcilerState.IDLE
        self.pending = ""  # undecided text starting with "{"
        self.payload = ""
        self.depth = 0
        self.in_string = False
        self.escape_pending = False
        self.suppressed: list[str] = []

    @property
    def in_payload(self) -> bool:
        return self.state is ReconcilerState.BUFFERING_PAYLOAD

    def feed(self, chunk: str) -> str:
        """Consume *chunk*; return the text that is safe to emit now."""
        if not chunk:
            return ""
        if self.quote_window == 0:
            self._mark_emitting(chunk)
            return chunk

        out: list[str] = []
        for ch in chunk:
            if self.state is ReconcilerState.BUFFERING_PAYLOAD:
                self._scan(ch)
                continue

            if self.pending:
                self.pending += ch
                verdict = self._judge_pending()
                if verdict is True:
                    self._start_payload()
                elif verdict is False:
                    out.append(self.pending)
                    self.pending = ""
                continue

            if ch == "{":
                self.pending = ch
            else:
                out.append(ch)

        text = "".join(out)
        self._mark_emitting(text)
        return text

    def flush(self) -> str:
        """End of segment: emit an undecided brace, drop an open payload."""
        text = ""
        if self.pending:
            text = self.pending
            self.pending = ""
        if self.state is ReconcilerState.BUFFERING_PAYLOAD:
            _logger.debug("Dropping unterminated payload (%d chars)", len(self.payload))
            self.suppressed.append(self.payload)
            self.payload = ""
            self.depth = 0
            self.in_string = False
            self.escape_pending = False
            self.state = ReconcilerState.EMITTING_TEXT
        self._mark_emitting(text)
        return text

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _mark_emitting(self, text: str) -> None:
        if text and self.state is ReconcilerState.IDLE:
            self.state = ReconcilerState.EMITTING_TEXT

    def _judge_pending(self) -> bool | None:
        """True = payload, False = narrative, None = undecided."""
        seen = 0
        for ch in self.pending[1:]:
            if ch.isspace():
                continue
            if ch == '"':
                return True
            seen += 1
            if seen >= self.quote_window:
                return False
        return None

    def _start_payload(self) -> None:
        buffered, self.pending = self.pending, ""
        self.state = ReconcilerState.BUFFERING_PAYLOAD
        self.payload = ""
        self.depth = 0
        self.in_string = False
        self.escape_pending = False
        # buffered is "{", optional whitespace, then the opening quote
        for ch in buffered:
            self._scan(ch)

    def _scan(self, ch: str) -> None:
        self.payload += ch
        if self.escape_pending:
            self.escape_pending = False
            return
        if ch == "\\":
            self.escape_pending = True
            return
        if ch == '"':
            self.in_string = not self.in_string
            return
        if self.in_string:
            return
        if ch == "{":
            self.depth += 1
        elif ch == "}":
            self.depth -= 1
            if self.depth == 0:
                _logger.debug("Suppressed payload: %s", self.payload[:200])
                self.suppressed.append(self.payload)
                self.payload = ""
                self.state = ReconcilerState.EMITTING_TEXT


# ---------------------------------------------------------------------------
# PendingCallBuffer
# ---------------------------------------------------------------------------

def ensure_unique_call_ids(
    calls: list[FunctionCall], prefix: str = "call",
) -> list[FunctionCall]:
    """Return *calls* with missing or repeated ids replaced by synthetic ones."""
    seen: set[str] = set()
    result: list[FunctionCall] = []
    for index, call in enumerate(calls):
        call_id = call.id
        if not call_id or call_id in seen:
            n = index
            call_id = f"{prefix}_{n}"
            while call_id in seen:
                n += 1
                call_id = f"{prefix}_{n}"
            call = dataclasses.replace(call, id=call_id)
        seen.add(call_id)
        result.append(call)
    return result


class PendingCallBuffer:
    """Accumulate streamed function-call fragments keyed by call key.

    Calls are finalized in first-seen order.
    """

    def __init__(self) -> None:
        self._calls: dict[str, dict[str, str]] = {}

    def feed(self, delta: FunctionCallDelta) -> None:
        entry = self._calls.setdefault(
            delta.key, {"name": "", "call_id": "", "arguments": ""},
        )
        if delta.name:
            entry["name"] = delta.name
        if delta.call_id:
            entry["call_id"] = delta.call_id
        if delta.complete:
            if delta.arguments:
                entry["arguments"] = delta.arguments
        elif delta.arguments:
            entry["arguments"] += delta.arguments

    def has_calls(self) -> bool:
        return bool(self._calls)

    def reset(self) -> None:
        self._calls.clear()

    def finalize(self, id_prefix: str = "call") -> list[FunctionCall]:
        """Turn accumulated fragments into :class:`FunctionCall` objects."""
        calls: list[FunctionCall] = []
        for key, entry in self._calls.items():
            if not entry["name"]:
                _logger.debug("Dropping nameless call fragment %s", key)
                continue
            calls.append(
                FunctionCall(
                    id=entry["call_id"],
                    name=entry["name"],
                    arguments=entry["arguments"] or "{}",
                )
            )
        return ensure_unique_call_ids(calls, id_prefix)
