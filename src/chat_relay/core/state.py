"""Per-run mutable state of the tool-call loop."""

from __future__ import annotations

import enum
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Iterator

from chat_relay.config import OrchestrationSpec
from chat_relay.types import FunctionCall, Message

_logger = logging.getLogger(__name__)


class OrchestratorState(enum.Enum):
    """Phases of one orchestration run."""

    REQUESTING = "requesting"
    INSPECTING = "inspecting"
    EXECUTING = "executing"
    DONE = "done"
    LOOP_DETECTED = "loop_detected"
    EXHAUSTED = "exhausted"


class RecentSignatures:
    """Bounded insertion-ordered set of executed call signatures.

    When full, the oldest signature is evicted.
    """

    def __init__(self, capacity: int = 64) -> None:
        self.capacity = max(1, capacity)
        self._items: OrderedDict[str, None] = OrderedDict()

    def add(self, signature: str) -> None:
        if signature in self._items:
            self._items.move_to_end(signature)
            return
        self._items[signature] = None
        while len(self._items) > self.capacity:
            self._items.popitem(last=False)

    def clear(self) -> None:
        self._items.clear()

    def __contains__(self, signature: object) -> bool:
        return signature in self._items

    def __iter__(self) -> Iterator[str]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)


@dataclass
class RoundState:
    """State owned by one orchestration run.

    ``inputs`` is the accumulated input sequence sent on every round.  The
    force-tool-use flag is honored on round 0 only.
    """

    inputs: list[Message] = field(default_factory=list)
    max_rounds: int = 10
    force_tool_use: bool = False
    dedup_clear_interval: int = 3
    loop_repeat_limit: int = 2
    round_index: int = 0
    signatures: RecentSignatures = field(default_factory=RecentSignatures)
    last_signature: str | None = None
    repeat_count: int = 0
    phase: OrchestratorState = OrchestratorState.REQUESTING

    @classmethod
    def from_spec(
        cls,
        inputs: list[Message],
        spec: OrchestrationSpec | None = None,
        force_tool_use: bool = False,
    ) -> RoundState:
        spec = spec or OrchestrationSpec()
        return cls(
            inputs=list(inputs),
            max_rounds=spec.max_rounds,
            force_tool_use=force_tool_use,
            dedup_clear_interval=spec.dedup_clear_interval,
            loop_repeat_limit=spec.loop_repeat_limit,
            signatures=RecentSignatures(spec.signature_window),
        )

    @property
    def exhausted(self) -> bool:
        return self.round_index >= self.max_rounds

    @property
    def forcing(self) -> bool:
        return self.force_tool_use and self.round_index == 0

    def append(self, message: Message) -> None:
        self.inputs.append(message)

    def has_executed(self, signature: str) -> bool:
        return signature in self.signatures

    def record(self, signature: str) -> None:
        self.signatures.add(signature)

    def clear_signatures(self) -> None:
        """Open a fresh dedup window."""
        _logger.debug("Clearing %d executed signatures", len(self.signatures))
        self.signatures.clear()

    def observe_round(self, calls: list[FunctionCall]) -> bool:
        """Track single-call repeats; return True when a loop is detected."""
        if len(calls) == 1:
            signature = calls[0].signature
            if signature == self.last_signature:
                self.repeat_count += 1
            else:
                self.repeat_count = 0
            self.last_signature = signature
        else:
            self.last_signature = None
            self.repeat_count = 0
        return self.repeat_count >= self.loop_repeat_limit

    def advance(self) -> None:
        """Finish a tool round: stop forcing, bump the index, maybe clear."""
        self.force_tool_use = False
        self.round_index += 1
        if self.dedup_clear_interval > 0 and self.round_index % self.dedup_clear_interval == 0:
            self.clear_signatures()
