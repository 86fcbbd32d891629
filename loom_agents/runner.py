"""Top-level run supervisor.

A ``Runner`` owns the turn ceiling and the trace for each top-level run.
Every ``run()`` records into a fresh ``TraceSession``::

    runner.session
    └─ runner.run
       └─ agent.run
          ├─ turn
          ├─ tool_call / mcp_tool_call / call_sub_agent
          │  └─ agent.run   (delegated sub-agent)
          └─ turn

The ceiling is one ``TurnBudget`` shared by the agent and every sub-agent
it delegates to. Provider-signalled errors are terminal and are returned
as-is; they are not retried here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from loom_agents.agent import Agent
from loom_agents.config import get_config
from loom_agents.errors import AgentConfigurationError
from loom_agents.runtime import AgentResponse, TurnBudget
from loom_agents.trace import TraceSession, new_trace_id

logger = logging.getLogger(__name__)


@dataclass
class RunnerResponse(AgentResponse):
    """AgentResponse plus the recorded trace tree (dict form)."""

    trace_tree: dict[str, Any] | None = field(default=None, repr=False)
    turns_used: int = 0


class Runner:
    def __init__(
        self,
        agent: Agent,
        *,
        max_depth: int | None = None,
        name: str = "Runner",
        context: dict[str, Any] | None = None,
    ) -> None:
        if agent is None:
            raise AgentConfigurationError("Agent is required")
        if max_depth is not None and max_depth < 1:
            raise AgentConfigurationError(f"max_depth must be >= 1, got {max_depth}")
        self.agent = agent
        self.name = name
        self.max_depth = max_depth if max_depth is not None else get_config().max_depth
        self.context = dict(context or {})
        self.trace_session: TraceSession | None = None

    async def run(self, input: Any) -> RunnerResponse:
        session = TraceSession()
        self.trace_session = session
        budget = TurnBudget(self.max_depth)

        session.start(
            "runner.session",
            {
                "runner": new_trace_id("runner-session"),
                "config": {"name": self.name, "max_depth": self.max_depth, "context": self.context},
            },
        )
        try:
            with session.span("runner.run", {"input": input if isinstance(input, str) else "<context>"}) as node:
                result = await self.agent.run(input, trace=session, budget=budget)
                node.payload.update(status=result.status, turns=budget.used)
        finally:
            session.end()

        logger.info(
            "%s finished agent %s: status=%s turns=%d/%d",
            self.name,
            self.agent.name,
            result.status,
            budget.used,
            budget.limit,
        )
        return RunnerResponse(
            status=result.status,
            final_message=result.final_message,
            context=result.context,
            trace_tree=session.tree(),
            turns_used=budget.used,
        )

    def render_traces(self) -> str:
        """Render the most recent run's trace tree."""
        if self.trace_session is None:
            return ""
        return self.trace_session.render()
