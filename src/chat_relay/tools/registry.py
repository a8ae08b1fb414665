"""Registry of function descriptors."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Iterator

from chat_relay.tools.base import FunctionDescriptor

_logger = logging.getLogger(__name__)


class FunctionRegistry:
    """Name-indexed collection of :class:`FunctionDescriptor` objects."""

    def __init__(self, descriptors: Iterable[FunctionDescriptor] = ()) -> None:
        self._functions: dict[str, FunctionDescriptor] = {}
        for d in descriptors:
            self.register(d)

    def register(self, descriptor: FunctionDescriptor) -> None:
        """Register a descriptor; a later one with the same name wins."""
        if descriptor.name in self._functions:
            _logger.warning("Replacing function descriptor: %s", descriptor.name)
        self._functions[descriptor.name] = descriptor

    def get(self, name: str) -> FunctionDescriptor | None:
        return self._functions.get(name)

    def descriptors(self) -> list[FunctionDescriptor]:
        return list(self._functions.values())

    def names(self) -> list[str]:
        return list(self._functions.keys())

    def declarations(self) -> list[dict[str, Any]]:
        return [d.to_declaration() for d in self._functions.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._functions

    def __iter__(self) -> Iterator[FunctionDescriptor]:
        return iter(self._functions.values())

    def __len__(self) -> int:
        return len(self._functions)
