"""Agent configuration and the public ``Agent`` entry point.

An ``Agent`` is immutable configuration plus a capability registry built
once at construction. Remote tool servers are listed asynchronously, so
their entries join the registry on the first ``prepare()`` (called by
``run()``); collisions surface there as ``ToolNameConflictError``.

Usage::

    from loom_agents import Agent, Tool

    weather = Agent(
        name="Weather",
        purpose="Answer questions about the weather",
        tools=[Tool("lookup", "Look up a forecast", lookup, {"city": "City name"})],
    )
    response = await weather.run("Will it rain in Oslo tomorrow?")
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from loom_agents.bridge import normalize
from loom_agents.config import ApiFlavor, get_config
from loom_agents.errors import AgentConfigurationError
from loom_agents.mcp import RemoteToolServer, remote_tool_entries
from loom_agents.messages import Conversation, user_turn
from loom_agents.prompts import system_prompt
from loom_agents.provider import OutputType, Provider, WebSearchConfig, default_provider
from loom_agents.registry import CALL_SUB_AGENT, ToolEntry, ToolRegistry, build_registry
from loom_agents.runtime import AgentResponse, AgentRuntime, TurnBudget, current_budget
from loom_agents.tools import Tool, strip_tool_name
from loom_agents.trace import TraceSession, current_trace

logger = logging.getLogger(__name__)

AS_TOOL_REQUEST_PREFIX = "You were invoked as a tool with the following request - "

__all__ = ["Agent", "AgentConfig", "AgentResponse"]


@dataclass(frozen=True)
class AgentConfig:
    """Declarative agent configuration.

    ``model``, ``api`` and ``timeout_s`` fall back to the process-wide
    ``LoomConfig`` when left as None; ``provider`` falls back to the
    process-wide default provider.
    """

    name: str
    purpose: str
    model: str | None = None
    tools: Sequence[Tool] = ()
    sub_agents: Sequence[Agent] = ()
    mcp_servers: Sequence[RemoteToolServer] = ()
    web_search: WebSearchConfig | None = None
    output_type: OutputType | None = None
    timeout_s: float | None = None
    request_options: Mapping[str, Any] = field(default_factory=dict)
    api: ApiFlavor | None = None
    provider: Provider | None = None


def _check_config(config: AgentConfig) -> None:
    if not isinstance(config.name, str) or not config.name.strip():
        raise AgentConfigurationError("Name is required")
    if not isinstance(config.purpose, str) or not config.purpose.strip():
        raise AgentConfigurationError("Purpose is required")
    if config.api is not None and config.api not in ("completions", "responses"):
        raise AgentConfigurationError(f"Unsupported api {config.api!r}")

    output_type = config.output_type
    if output_type is not None:
        if output_type.type not in ("text", "json_object", "json_schema"):
            raise AgentConfigurationError(f"Unsupported output_type {output_type.type!r}")
        if output_type.type == "json_schema" and output_type.schema is None:
            raise AgentConfigurationError("output_type json_schema requires a schema")

    seen: set[str] = set()
    for sub_agent in config.sub_agents:
        if sub_agent.name in seen:
            raise AgentConfigurationError(f"Duplicate sub-agent name: {sub_agent.name}")
        seen.add(sub_agent.name)


def _seed_context(input: Any) -> Conversation:
    """Turn the accepted ``run()`` inputs into a canonical context."""
    if isinstance(input, str):
        return (user_turn(input),)
    if isinstance(input, Mapping) and "context" in input:
        return normalize(input["context"])
    if isinstance(input, (list, tuple)):
        return normalize(input)
    raise TypeError(
        f"Agent input must be a string, a {{'context': [...]}} mapping or a message list, "
        f"got {type(input).__name__}"
    )


class Agent:
    """A named, model-backed worker with tools and optional sub-agents."""

    def __init__(self, config: AgentConfig | None = None, /, **kwargs: Any) -> None:
        if config is None:
            config = AgentConfig(**kwargs)
        elif kwargs:
            raise TypeError("Pass either an AgentConfig or keyword fields, not both")
        _check_config(config)

        self.config = config
        self.registry: ToolRegistry = build_registry(config.tools, config.sub_agents)
        self._prepared = not config.mcp_servers
        self._prepare_lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"Agent(name={self.name!r}, tools={self.registry.names()!r})"

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def purpose(self) -> str:
        return self.config.purpose

    @property
    def prepared(self) -> bool:
        return self._prepared

    async def prepare(self) -> ToolRegistry:
        """Add remote tool entries to the registry. Runs once per agent."""
        if self._prepared:
            return self.registry
        async with self._prepare_lock:
            if self._prepared:
                return self.registry
            discovered: list[ToolEntry] = []
            for server in self.config.mcp_servers:
                entries = await remote_tool_entries(server)
                logger.info("Agent %s: %d tools from MCP server %s", self.name, len(entries), server.name)
                discovered.extend(entries)
            # A conflict anywhere leaves the registry untouched.
            self.registry.extend(discovered)
            self._prepared = True
        return self.registry

    def system_prompt(self) -> str:
        sub_agents = [agent.name for agent in self.config.sub_agents] if CALL_SUB_AGENT in self.registry else []
        output_format = self.config.output_type.type if self.config.output_type else "text"
        return system_prompt(self.purpose, sub_agents, output_format)

    def _runtime(self) -> AgentRuntime:
        defaults = get_config()
        return AgentRuntime(
            name=self.name,
            model=self.config.model or defaults.default_model,
            system=self.system_prompt(),
            registry=self.registry,
            provider=self.config.provider or default_provider(),
            api=self.config.api or defaults.api,
            output_type=self.config.output_type,
            web_search=self.config.web_search,
            timeout_s=self.config.timeout_s if self.config.timeout_s is not None else defaults.timeout_s,
            request_options=dict(self.config.request_options),
        )

    async def run(
        self,
        input: Any,
        *,
        trace: TraceSession | None = None,
        budget: TurnBudget | None = None,
        max_turns: int | None = None,
    ) -> AgentResponse:
        """Run the agent to a terminal state.

        Args:
            input: A user request string, ``{"context": messages}``, or a
                message list in either wire encoding (or canonical messages).
            trace: Session to record spans into. Defaults to the active trace.
            budget: Turn budget shared with a calling run. Defaults to the
                budget of the run executing in the current context, so an
                agent invoked as a plain tool draws on its caller's ceiling.
            max_turns: Start a fresh budget with this ceiling instead of joining
                the active one. Ignored when ``budget`` is given.
        """
        context = _seed_context(input)
        await self.prepare()
        if budget is None and max_turns is None:
            budget = current_budget()
        if budget is None:
            budget = TurnBudget(max_turns if max_turns is not None else get_config().max_depth)
        return await self._runtime().run(context, trace=trace or current_trace(), budget=budget)

    def as_tool(self, parameters: Any = None) -> Tool:
        """Expose this agent as a plain tool that sees no caller history."""
        tool_name = strip_tool_name(self.name)
        if parameters is None:
            parameters = {"request": {"type": "string", "description": f"Request to send to the {tool_name} agent"}}

        async def invoke_agent(**arguments: Any) -> str:
            request = AS_TOOL_REQUEST_PREFIX + json.dumps(arguments, ensure_ascii=False, default=str)
            result = await self.run(request)
            return result.final_message

        return Tool(
            name=tool_name,
            description=self.purpose,
            callback=invoke_agent,
            parameters=parameters,
        )
