"""Per-agent capability table.

Three sources are merged into one flat name → entry mapping:

- local tools (``Tool``), invoked in-process
- remote tools discovered from MCP servers (see ``loom_agents.mcp``)
- the ``CallSubAgent`` entry, synthesized when an agent has sub-agents

Every entry exposes the same ``invoke(arguments, call)`` coroutine, so the
runtime dispatch loop never branches on name patterns. Name collisions
between any two entries raise ``ToolNameConflictError`` at build time.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Iterator, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Literal, Protocol

import jsonschema

from loom_agents.errors import ToolInvocationError, ToolNameConflictError, ToolNotFoundError
from loom_agents.messages import Conversation, user_turn
from loom_agents.tools import (
    Tool,
    call_maybe_async,
    is_strict_compatible,
    normalize_tool_name,
    resolve_parameters_schema,
    stringify_result,
)

if TYPE_CHECKING:
    from loom_agents.runtime import AgentResponse, TurnBudget
    from loom_agents.trace import TraceSession

logger = logging.getLogger(__name__)

CALL_SUB_AGENT = "CallSubAgent"

ToolKind = Literal["local", "remote", "sub_agent"]

_TRACE_NAMES: dict[str, str] = {
    "local": "tool_call",
    "remote": "mcp_tool_call",
    "sub_agent": "call_sub_agent",
}


@dataclass(frozen=True)
class InvocationContext:
    """What a capability may see of the run that invokes it."""

    conversation: Conversation = ()
    trace: TraceSession | None = None
    budget: TurnBudget | None = None


Invoker = Callable[[Any, InvocationContext], Awaitable[str]]


@dataclass(frozen=True)
class ToolEntry:
    """One invocable capability, already resolved to a uniform shape."""

    name: str
    description: str
    parameters: dict[str, Any]
    kind: ToolKind
    invoke: Invoker = field(repr=False)
    source: str = ""

    @property
    def strict(self) -> bool:
        return is_strict_compatible(self.parameters)

    @property
    def trace_name(self) -> str:
        return _TRACE_NAMES[self.kind]

    def spec(self) -> dict[str, Any]:
        """Provider-neutral function spec."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
            "strict": self.strict,
        }


class ToolRegistry:
    """Flat name → ToolEntry table for one agent."""

    def __init__(self, entries: Sequence[ToolEntry] = ()) -> None:
        self._entries: dict[str, ToolEntry] = {}
        for entry in entries:
            self.add(entry)

    def add(self, entry: ToolEntry) -> None:
        existing = self._entries.get(entry.name)
        if existing is not None:
            raise ToolNameConflictError(
                entry.name,
                existing.source or existing.kind,
                entry.source or entry.kind,
            )
        self._entries[entry.name] = entry

    def extend(self, entries: Sequence[ToolEntry]) -> None:
        """Add every entry or none of them."""
        staged = dict(self._entries)
        for entry in entries:
            existing = staged.get(entry.name)
            if existing is not None:
                raise ToolNameConflictError(
                    entry.name,
                    existing.source or existing.kind,
                    entry.source or entry.kind,
                )
            staged[entry.name] = entry
        self._entries = staged

    def get(self, name: str) -> ToolEntry | None:
        return self._entries.get(name)

    def names(self) -> list[str]:
        return list(self._entries)

    def specs(self) -> list[dict[str, Any]]:
        return [entry.spec() for entry in self._entries.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __iter__(self) -> Iterator[ToolEntry]:
        return iter(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)


# ---------------------------------------------------------------------------
# Local tools
# ---------------------------------------------------------------------------


def _validate_arguments(name: str, schema: dict[str, Any], arguments: Any) -> None:
    try:
        jsonschema.validate(arguments, schema)
    except jsonschema.ValidationError as exc:
        raise ToolInvocationError(f"Invalid arguments for {name}: {exc.message}") from exc
    except jsonschema.SchemaError as exc:
        logger.warning("Tool %s declares an invalid parameter schema (%s); skipping validation", name, exc.message)


def local_tool_entry(tool: Tool) -> ToolEntry:
    """Resolve a local Tool into a registry entry."""
    name = normalize_tool_name(tool.name)
    schema = resolve_parameters_schema(tool.parameters)

    async def invoke(arguments: Any, call: InvocationContext) -> str:
        if arguments is None:
            arguments = {}
        _validate_arguments(name, schema, arguments)
        if not isinstance(arguments, dict):
            raise ToolInvocationError(f"Arguments for {name} must be an object")
        pending = call_maybe_async(tool.callback, **arguments)
        if tool.timeout_s is None:
            return stringify_result(await pending)
        try:
            result = await asyncio.wait_for(pending, timeout=tool.timeout_s)
        except asyncio.TimeoutError:
            raise ToolInvocationError(f"{name} timed out after {tool.timeout_s}s") from None
        return stringify_result(result)

    return ToolEntry(
        name=name,
        description=tool.description,
        parameters=schema,
        kind="local",
        invoke=invoke,
        source=f"tool:{tool.name}",
    )


# ---------------------------------------------------------------------------
# Sub-agent delegation
# ---------------------------------------------------------------------------


class SubAgent(Protocol):
    """What delegation needs from an agent."""

    @property
    def name(self) -> str: ...

    async def run(
        self,
        input: Any,
        *,
        trace: TraceSession | None = None,
        budget: TurnBudget | None = None,
    ) -> AgentResponse: ...


def sub_agent_entry(sub_agents: Sequence[SubAgent]) -> ToolEntry:
    """Synthesize the single ``CallSubAgent`` entry routing to ``sub_agents``.

    Routing is an exact match on the configured names, which are also the
    only values the schema's ``sub_agent`` enum admits.
    """
    routes = {agent.name: agent for agent in sub_agents}

    async def invoke(arguments: Any, call: InvocationContext) -> str:
        if not isinstance(arguments, dict):
            raise ToolInvocationError(f"Arguments for {CALL_SUB_AGENT} must be an object")
        target = arguments.get("sub_agent")
        agent = routes.get(target) if isinstance(target, str) else None
        if agent is None:
            raise ToolNotFoundError(str(target), tag="Sub Agent Error", what="Sub Agent")
        request = arguments.get("request")
        if not isinstance(request, str):
            request = stringify_result(request)
        logger.debug("Delegating to sub-agent %s", agent.name)
        result = await agent.run(
            {"context": (*call.conversation, user_turn(request))},
            trace=call.trace,
            budget=call.budget,
        )
        return result.final_message

    return ToolEntry(
        name=CALL_SUB_AGENT,
        description=(
            "Call a SubAgent with a given request. The sub agent will be called "
            "with the request and the context."
        ),
        parameters={
            "type": "object",
            "properties": {
                "sub_agent": {
                    "type": "string",
                    "description": "The name of the sub agent to call",
                    "enum": list(routes),
                },
                "request": {
                    "type": "string",
                    "description": "The request to send to the sub agent",
                },
            },
            "required": ["sub_agent", "request"],
            "additionalProperties": False,
        },
        kind="sub_agent",
        invoke=invoke,
        source="sub_agents",
    )


def build_registry(
    tools: Sequence[Tool] = (),
    sub_agents: Sequence[SubAgent] = (),
) -> ToolRegistry:
    """Build the construction-time part of an agent's registry.

    Remote tools are discovered asynchronously and added by ``Agent.prepare()``.
    """
    registry = ToolRegistry()
    for tool in tools:
        registry.add(local_tool_entry(tool))
    if sub_agents:
        registry.add(sub_agent_entry(sub_agents))
    return registry
