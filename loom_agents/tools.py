"""Local tool definitions and JSON-schema helpers.

A ``Tool`` pairs a name and description with a callback and a parameter
description. The parameter description may be any of:

- an object exposing ``to_schema()`` (schema-builder helpers)
- a pydantic model class
- a complete JSON-schema object (``{"type": "object", "properties": ...}``)
- a flat ``{param_name: property}`` map, every key of which becomes required

Usage:
    from loom_agents import Agent, Tool, callable_to_tool

    async def search(query: str, limit: int = 10) -> str:
        '''Search for entities.'''
        ...

    agent = Agent(
        name="Researcher",
        purpose="Answer questions using search",
        tools=[callable_to_tool(search)],
    )
"""

from __future__ import annotations

import inspect
import json as _json
import logging
import re
import types
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Callable, Union, get_args, get_origin, get_type_hints

from pydantic import BaseModel

logger = logging.getLogger(__name__)

_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_-]")

# Python type → JSON Schema type
_TYPE_MAP: dict[type, str] = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
}


@dataclass(frozen=True)
class Tool:
    """A locally invocable capability.

    Attributes:
        name: Tool name shown to the model. Characters outside
            ``[a-zA-Z0-9_-]`` are replaced with ``_`` when registered.
        description: What the tool does, shown to the model.
        callback: Sync or async callable, invoked with the decoded
            arguments as keyword arguments.
        parameters: Parameter description (see module docstring).
        timeout_s: Optional per-invocation timeout in seconds.
    """

    name: str
    description: str
    callback: Callable[..., Any]
    parameters: Any = None
    timeout_s: float | None = None


def normalize_tool_name(name: str) -> str:
    """Replace characters providers reject in function names with ``_``."""
    return _INVALID_NAME_CHARS.sub("_", name)


def strip_tool_name(name: str) -> str:
    """Drop characters providers reject in function names."""
    return _INVALID_NAME_CHARS.sub("", name)


def _strict_json_schema(schema: dict[str, Any]) -> dict[str, Any]:
    """Add additionalProperties: false to all objects for OpenAI strict mode.

    Pydantic's model_json_schema() doesn't include this by default.
    """
    if schema.get("type") == "object":
        schema["additionalProperties"] = False
        for prop in schema.get("properties", {}).values():
            if isinstance(prop, dict):
                _strict_json_schema(prop)
    if isinstance(schema.get("items"), dict):
        _strict_json_schema(schema["items"])
    for defn in schema.get("$defs", {}).values():
        _strict_json_schema(defn)
    return schema


def is_strict_compatible(schema: Mapping[str, Any]) -> bool:
    """True when the top-level object schema satisfies strict function calling."""
    if schema.get("type") != "object" or schema.get("additionalProperties") is not False:
        return False
    properties = schema.get("properties") or {}
    required = set(schema.get("required") or [])
    return set(properties) <= required


def resolve_parameters_schema(parameters: Any) -> dict[str, Any]:
    """Turn any supported parameter description into a JSON-schema object."""
    if parameters is None:
        return {"type": "object", "properties": {}, "required": [], "additionalProperties": False}

    to_schema = getattr(parameters, "to_schema", None)
    if callable(to_schema):
        schema = to_schema()
        if not isinstance(schema, Mapping):
            raise TypeError(f"to_schema() must return a mapping, got {type(schema).__name__}")
        return dict(schema)

    if isinstance(parameters, type) and issubclass(parameters, BaseModel):
        return _strict_json_schema(parameters.model_json_schema())

    if not isinstance(parameters, Mapping):
        raise TypeError(
            f"Unsupported tool parameters {parameters!r}: expected to_schema(), "
            "a pydantic model class, or a mapping."
        )

    if parameters.get("type") == "object" and isinstance(parameters.get("properties"), Mapping):
        return dict(parameters)

    properties: dict[str, Any] = {}
    for key, value in parameters.items():
        if isinstance(value, Mapping):
            properties[key] = dict(value)
        else:
            properties[key] = {"type": "string", "description": str(value)}
    return {
        "type": "object",
        "properties": properties,
        "required": list(properties),
        "additionalProperties": False,
    }


def _type_to_json_schema(tp: Any) -> dict[str, Any]:
    """Convert a Python type annotation to a JSON Schema fragment.

    Supports: str, int, float, bool, list[X], dict, Optional[X].
    Raises ValueError for unsupported types.
    """
    origin = get_origin(tp)
    args = get_args(tp)

    # Optional[X] → unwrap to X
    if origin is Union or origin is types.UnionType:
        non_none = [a for a in args if a is not type(None)]
        if len(non_none) == 1:
            return _type_to_json_schema(non_none[0])

    if origin is list:
        schema: dict[str, Any] = {"type": "array"}
        if args:
            schema["items"] = _type_to_json_schema(args[0])
        return schema

    if origin is dict or tp is dict:
        return {"type": "object"}

    if tp in _TYPE_MAP:
        return {"type": _TYPE_MAP[tp]}

    raise ValueError(
        f"Unsupported type annotation: {tp!r}. "
        f"Supported: str, int, float, bool, list[X], dict, Optional[X]."
    )


def callable_to_tool(
    fn: Callable[..., Any],
    *,
    name: str | None = None,
    description: str | None = None,
    timeout_s: float | None = None,
) -> Tool:
    """Build a Tool from a typed Python callable.

    Inspects the function's name, type hints, and docstring. Every parameter
    must have a type annotation (raises ValueError otherwise).
    """
    sig = inspect.signature(fn)
    try:
        hints = get_type_hints(fn)
    except Exception:
        hints = {}

    properties: dict[str, Any] = {}
    required: list[str] = []

    for param_name, param in sig.parameters.items():
        if param_name in ("self", "cls"):
            continue
        if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            continue

        if param_name not in hints:
            raise ValueError(
                f"Parameter {param_name!r} of {fn.__name__!r} has no type annotation. "
                f"All parameters must be typed for schema generation."
            )

        prop = _type_to_json_schema(hints[param_name])
        if param.default is not inspect.Parameter.empty:
            prop["default"] = param.default
        else:
            required.append(param_name)
        properties[param_name] = prop

    if description is None:
        description = ""
        if fn.__doc__:
            description = fn.__doc__.strip().split("\n")[0].strip()

    return Tool(
        name=name or fn.__name__,
        description=description,
        callback=fn,
        parameters={
            "type": "object",
            "properties": properties,
            "required": required,
            "additionalProperties": False,
        },
        timeout_s=timeout_s,
    )


def stringify_result(value: Any) -> str:
    """Serialize a tool return value: str passed through, anything else as JSON."""
    if isinstance(value, str):
        return value
    if isinstance(value, BaseModel):
        return value.model_dump_json()
    try:
        return _json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        logger.debug("Tool result not JSON serializable (%s); using str()", exc)
        return str(value)


async def call_maybe_async(fn: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Any:
    """Call ``fn`` and await the result when it is awaitable."""
    result = fn(*args, **kwargs)
    if inspect.isawaitable(result):
        result = await result
    return result
