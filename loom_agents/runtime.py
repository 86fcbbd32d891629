"""Agent execution loop.

One ``AgentRuntime.run()`` drives a single agent from a seed context to a
terminal state:

    AWAITING_MODEL ──provider──▶ MODEL_RESPONDED
        ├─ final text, no calls      → completed
        ├─ filter/length/failure     → error (tagged final_message)
        └─ tool calls                → DISPATCHING_TOOLS → AWAITING_MODEL

The loop is explicit (no host-stack recursion) and strictly sequential:
tool calls in one step are dispatched one at a time in the order the model
listed them. A shared ``TurnBudget`` bounds provider round trips across the
whole top-level run, delegated sub-agents included.

Dispatch never raises: unknown names and callee failures become tagged
``ToolResult`` strings that the model sees on the next step.
"""

from __future__ import annotations

import contextlib
import contextvars
import json
import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any, Literal

from loom_agents.config import DEFAULT_TIMEOUT_S, ApiFlavor, get_config
from loom_agents.errors import ToolNotFoundError
from loom_agents.messages import Conversation, ToolInvocation, ToolResult, Turn, extend
from loom_agents.provider import OutputType, Provider, ProviderRequest, ProviderResponse, WebSearchConfig
from loom_agents.registry import InvocationContext, ToolRegistry
from loom_agents.trace import TraceNode, TraceSession, activate_trace

logger = logging.getLogger(__name__)

MAX_ITERATIONS_MESSAGE = "Maximum iterations reached"

_TERMINAL_TAGS: dict[str, str] = {
    "content_filter": "Content Filter",
    "length": "Length",
    "failed": "Failed",
    "incomplete": "Incomplete",
}


@dataclass
class AgentResponse:
    """Outcome of one agent run.

    ``context`` is the full conversation including everything this run
    appended. It is a tuple and is never modified after being returned.
    """

    status: Literal["completed", "error"]
    final_message: str
    context: Conversation = ()


@dataclass
class TurnBudget:
    """Provider round trips allowed for one top-level run."""

    limit: int
    used: int = 0

    @property
    def remaining(self) -> int:
        return max(self.limit - self.used, 0)

    @property
    def exhausted(self) -> bool:
        return self.used >= self.limit

    def consume(self) -> bool:
        """Take one turn. Returns False (and takes nothing) when none is left."""
        if self.exhausted:
            return False
        self.used += 1
        return True


_active_budget: contextvars.ContextVar[TurnBudget | None] = contextvars.ContextVar(
    "loom_agents_active_budget",
    default=None,
)


def current_budget() -> TurnBudget | None:
    """The turn budget of the run executing in the current context, if any."""
    return _active_budget.get()


@contextlib.contextmanager
def activate_budget(budget: TurnBudget) -> Iterator[TurnBudget]:
    token = _active_budget.set(budget)
    try:
        yield budget
    finally:
        _active_budget.reset(token)


@contextlib.contextmanager
def _span(trace: TraceSession | None, name: str, payload: dict[str, Any]) -> Iterator[TraceNode | None]:
    if trace is None:
        yield None
        return
    with trace.span(name, payload) as node:
        yield node


def terminal_message(response: ProviderResponse) -> str:
    """Tagged final_message for a provider-signalled terminal error."""
    if response.status == "function_call":
        return "[Function Call] Not implemented"
    tag = _TERMINAL_TAGS.get(response.status, "Failed")
    if response.status in ("failed", "incomplete"):
        body = " ".join(part for part in (response.text, response.detail) if part)
    else:
        body = response.text
    return f"[{tag}] {body}".rstrip()


def _new_invocations(context: Conversation, calls: list[ToolInvocation]) -> list[ToolInvocation]:
    seen = {m.call_id for m in context if isinstance(m, ToolInvocation)}
    fresh: list[ToolInvocation] = []
    for call in calls:
        if call.call_id in seen:
            logger.warning("Ignoring tool call reusing call_id %s", call.call_id)
            continue
        seen.add(call.call_id)
        fresh.append(call)
    return fresh


@dataclass
class AgentRuntime:
    """Everything one agent run needs, resolved ahead of the loop."""

    name: str
    model: str
    system: str
    registry: ToolRegistry
    provider: Provider
    api: ApiFlavor = "responses"
    output_type: OutputType | None = None
    web_search: WebSearchConfig | None = None
    timeout_s: float = DEFAULT_TIMEOUT_S
    request_options: dict[str, Any] = field(default_factory=dict)

    def _request(self, context: Conversation) -> ProviderRequest:
        return ProviderRequest(
            model=self.model,
            api=self.api,
            system=self.system,
            context=context,
            tools=self.registry.specs(),
            agent_name=self.name,
            output_type=self.output_type,
            web_search=self.web_search,
            timeout_s=self.timeout_s,
            request_options=dict(self.request_options),
        )

    async def run(
        self,
        context: Conversation,
        *,
        trace: TraceSession | None = None,
        budget: TurnBudget | None = None,
    ) -> AgentResponse:
        if budget is None:
            budget = TurnBudget(get_config().max_depth)

        with (
            activate_trace(trace),
            activate_budget(budget),
            _span(trace, "agent.run", {"agent": self.name, "model": self.model}) as node,
        ):
            result = await self._loop(context, trace, budget)
            if node is not None:
                node.payload["status"] = result.status
            return result

    async def _loop(self, context: Conversation, trace: TraceSession | None, budget: TurnBudget) -> AgentResponse:
        turn_index = 0
        while True:
            if not budget.consume():
                logger.warning(
                    "Agent %s reached the turn ceiling (%d) without a final answer",
                    self.name,
                    budget.limit,
                )
                return AgentResponse("completed", MAX_ITERATIONS_MESSAGE, context)

            with _span(trace, "turn", {"index": turn_index}) as node:
                response = await self.provider.complete(self._request(context))
                if node is not None:
                    node.payload["status"] = response.status
            turn_index += 1

            if response.is_terminal_error:
                message = terminal_message(response)
                logger.warning("Agent %s stopped on provider status %s", self.name, response.status)
                turns = [m for m in response.messages() if isinstance(m, Turn)]
                return AgentResponse("error", message, extend(context, *turns))

            if response.is_final:
                return self._complete(context, response, turn_index)

            calls = _new_invocations(context, response.tool_calls)
            if not calls:
                # Nothing new to dispatch, e.g. every call reused an answered call_id.
                return self._complete(context, response, turn_index)

            # Delegation sees the conversation before this step's unanswered calls.
            base = extend(context, *[m for m in response.messages() if isinstance(m, Turn)])
            results: list[ToolResult] = []
            for call in calls:
                output = await self._dispatch(call, base, trace, budget)
                results.append(ToolResult(call_id=call.call_id, output=output))
            context = extend(base, *calls, *results)

    def _complete(self, context: Conversation, response: ProviderResponse, turns: int) -> AgentResponse:
        if not response.text:
            logger.warning("Agent %s finished with an empty answer", self.name)
        context = extend(context, *[m for m in response.messages() if isinstance(m, Turn)])
        logger.debug("Agent %s completed after %d turns", self.name, turns)
        return AgentResponse("completed", response.text, context)

    async def _dispatch(
        self,
        call: ToolInvocation,
        conversation: Conversation,
        trace: TraceSession | None,
        budget: TurnBudget,
    ) -> str:
        entry = self.registry.get(call.name)
        span_name = entry.trace_name if entry is not None else "tool_call"
        payload = {"call_id": call.call_id, "name": call.name, "arguments": call.arguments}

        with _span(trace, span_name, payload) as node:
            status, output = await self._invoke(call, conversation, trace, budget)
            if node is not None:
                node.payload.update(result=output, status=status)
        return output

    async def _invoke(
        self,
        call: ToolInvocation,
        conversation: Conversation,
        trace: TraceSession | None,
        budget: TurnBudget,
    ) -> tuple[str, str]:
        entry = self.registry.get(call.name)
        if entry is None:
            logger.warning("Agent %s requested unknown tool %s", self.name, call.name)
            return "not_found", str(ToolNotFoundError(call.name))

        try:
            arguments = call.parsed_arguments()
        except json.JSONDecodeError as exc:
            logger.warning("Invalid JSON arguments for %s: %s", call.name, call.arguments[:200])
            return "error", f"[Tool Call Error] {call.name} - Invalid JSON arguments: {exc}"

        logger.debug("Dispatching %s (%s) for agent %s", call.name, entry.kind, self.name)
        try:
            output = await entry.invoke(
                arguments,
                InvocationContext(conversation=conversation, trace=trace, budget=budget),
            )
        except ToolNotFoundError as exc:
            logger.warning("Agent %s: %s", self.name, exc)
            return "not_found", str(exc)
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.warning("Tool %s failed: %s", call.name, message)
            return "error", f"[Tool Call Error] {call.name} - {message}"
        return "ok", output
