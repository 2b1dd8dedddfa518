"""
Tool Registry
=============

Static table of tool descriptors shared by the HTTP gateway and the MCP
stdio transport, plus argument validation against each input schema.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Mapping

from contracts import ToolNotFoundError, ValidationError

Handler = Callable[..., Awaitable[Any]]

_JSON_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list, tuple),
    "object": (dict,),
}


@dataclass(frozen=True)
class ToolDescriptor:
    """One callable tool."""

    name: str
    title: str
    description: str
    input_schema: Mapping[str, Any]
    handler: Handler = field(repr=False, compare=False)

    def to_listing(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "title": self.title,
            "description": self.description,
            "inputSchema": dict(self.input_schema),
        }


def _type_matches(value: Any, json_type: str) -> bool:
    expected = _JSON_TYPES.get(json_type)
    if expected is None:
        return True
    if isinstance(value, bool) and json_type in ("integer", "number"):
        return False
    return isinstance(value, expected)


def validate_arguments(schema: Mapping[str, Any], arguments: Any) -> dict[str, Any]:
    """
    Check arguments against an object schema.

    Required keys, JSON types, integer bounds and unknown keys are checked.
    Schema defaults fill missing optional keys.

    Raises ValidationError.
    """
    if arguments is None:
        arguments = {}
    if not isinstance(arguments, dict):
        raise ValidationError("arguments must be an object")

    properties: Mapping[str, Any] = schema.get("properties", {})
    missing = [key for key in schema.get("required", []) if key not in arguments]
    if missing:
        raise ValidationError(f"Missing required argument(s): {', '.join(missing)}")

    if not schema.get("additionalProperties", False):
        unknown = sorted(set(arguments) - set(properties))
        if unknown:
            raise ValidationError(f"Unknown argument(s): {', '.join(unknown)}")

    validated: dict[str, Any] = {}
    for key, prop in properties.items():
        if key not in arguments:
            if "default" in prop:
                validated[key] = prop["default"]
            continue
        value = arguments[key]
        json_type = prop.get("type")
        if json_type and not _type_matches(value, json_type):
            raise ValidationError(f"Argument '{key}' must be of type {json_type}")
        if json_type == "array" and "items" in prop:
            item_type = prop["items"].get("type")
            if item_type and not all(_type_matches(item, item_type) for item in value):
                raise ValidationError(f"Argument '{key}' items must be of type {item_type}")
        if json_type == "integer":
            if "minimum" in prop and value < prop["minimum"]:
                raise ValidationError(f"Argument '{key}' must be >= {prop['minimum']}")
            if "maximum" in prop and value > prop["maximum"]:
                raise ValidationError(f"Argument '{key}' must be <= {prop['maximum']}")
        validated[key] = value
    return validated


class ToolRegistry:
    """Name-indexed tool table."""

    def __init__(self, descriptors: Iterable[ToolDescriptor] = ()) -> None:
        self._tools: dict[str, ToolDescriptor] = {}
        for descriptor in descriptors:
            self.register(descriptor)

    def register(self, descriptor: ToolDescriptor) -> None:
        if descriptor.name in self._tools:
            raise ValueError(f"Tool already registered: {descriptor.name}")
        self._tools[descriptor.name] = descriptor

    def get(self, name: str) -> ToolDescriptor:
        try:
            return self._tools[name]
        except KeyError:
            raise ToolNotFoundError(f"Unknown tool: {name}") from None

    def names(self) -> list[str]:
        return list(self._tools)

    def listing(self) -> list[dict[str, Any]]:
        return [descriptor.to_listing() for descriptor in self._tools.values()]

    async def call(self, name: str, arguments: Any) -> Any:
        """Validate and invoke. ToolNotFoundError / ValidationError propagate."""
        descriptor = self.get(name)
        validated = validate_arguments(descriptor.input_schema, arguments)
        return await descriptor.handler(**validated)
