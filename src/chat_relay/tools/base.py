"""Function descriptors supplied by the application."""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import Any, Callable

from pydantic import BaseModel


@dataclass
class FunctionParameter:
    """Definition of one function parameter."""

    name: str
    type: str  # string, integer, number, boolean, array, object
    description: str = ""
    required: bool = True
    default: Any = None
    enum: list[str] | None = None


def build_input_schema(parameters: list[FunctionParameter]) -> dict[str, Any]:
    """Convert a parameter list to a JSON-schema object."""
    properties: dict[str, Any] = {}
    required: list[str] = []
    for p in parameters:
        prop: dict[str, Any] = {"type": p.type}
        if p.description:
            prop["description"] = p.description
        if p.enum:
            prop["enum"] = p.enum
        if p.default is not None:
            prop["default"] = p.default
        properties[p.name] = prop
        if p.required:
            required.append(p.name)
    return {"type": "object", "properties": properties, "required": required}


@dataclass
class FunctionDescriptor:
    """A function the model may call.

    ``execute`` receives the validated arguments and may be sync or async.
    ``validate_args`` receives the parsed argument object and returns the
    value handed to ``execute``; when absent the parsed object is passed
    through unchanged.
    """

    name: str
    description: str
    execute: Callable[[Any], Any]
    input_schema: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )
    output_schema: dict[str, Any] | None = None
    validate_args: Callable[[dict[str, Any]], Any] | None = None

    @classmethod
    def from_parameters(
        cls,
        name: str,
        description: str,
        parameters: list[FunctionParameter],
        execute: Callable[[Any], Any],
        **kwargs: Any,
    ) -> FunctionDescriptor:
        return cls(
            name=name,
            description=description,
            execute=execute,
            input_schema=build_input_schema(parameters),
            **kwargs,
        )

    @classmethod
    def from_model(
        cls,
        name: str,
        description: str,
        model: type[BaseModel],
        execute: Callable[[Any], Any],
        output_schema: dict[str, Any] | None = None,
    ) -> FunctionDescriptor:
        """Derive schema and validator from a pydantic model.

        ``execute`` receives the validated model instance.
        """
        schema = model.model_json_schema()
        schema.pop("title", None)
        return cls(
            name=name,
            description=description,
            execute=execute,
            input_schema=schema,
            output_schema=output_schema,
            validate_args=model.model_validate,
        )

    def validate(self, arguments: dict[str, Any]) -> Any:
        if self.validate_args is None:
            return arguments
        return self.validate_args(arguments)

    async def invoke(self, validated: Any) -> Any:
        result = self.execute(validated)
        if inspect.isawaitable(result):
            result = await result
        return result

    def to_declaration(self) -> dict[str, Any]:
        """Provider-neutral declaration: name, description, parameters."""
        schema = dict(self.input_schema or {})
        schema.setdefault("type", "object")
        schema.setdefault("properties", {})
        return {
            "name": self.name,
            "description": self.description,
            "parameters": schema,
        }
