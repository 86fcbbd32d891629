"""Tests for loom_agents.runner: per-run trace sessions and the turn ceiling."""

from __future__ import annotations

import pytest

from conftest import ScriptedProvider, calls, final
from loom_agents.agent import Agent
from loom_agents.config import configure
from loom_agents.errors import AgentConfigurationError
from loom_agents.provider import ProviderResponse
from loom_agents.registry import CALL_SUB_AGENT
from loom_agents.runner import Runner, RunnerResponse
from loom_agents.runtime import MAX_ITERATIONS_MESSAGE
from loom_agents.tools import Tool


def _looping_agent(provider: ScriptedProvider) -> Agent:
    return Agent(
        name="Looper",
        purpose="Never stop",
        tools=[Tool("again", "Ask again", lambda: "again")],
        provider=provider,
    )


class TestConstruction:
    def test_agent_required(self) -> None:
        with pytest.raises(AgentConfigurationError, match="Agent is required"):
            Runner(None)  # type: ignore[arg-type]

    def test_max_depth_must_be_positive(self) -> None:
        agent = Agent(name="A", purpose="p", provider=ScriptedProvider(final("x")))
        with pytest.raises(AgentConfigurationError):
            Runner(agent, max_depth=0)

    def test_defaults(self) -> None:
        configure(max_depth=7)
        runner = Runner(Agent(name="A", purpose="p", provider=ScriptedProvider(final("x"))))
        assert runner.max_depth == 7
        assert runner.name == "Runner"
        assert runner.render_traces() == ""


@pytest.mark.asyncio
class TestRun:
    async def test_completed_run(self) -> None:
        provider = ScriptedProvider(final("Hi"))
        runner = Runner(Agent(name="A", purpose="Greet", provider=provider))

        result = await runner.run("hello")

        assert isinstance(result, RunnerResponse)
        assert result.status == "completed"
        assert result.final_message == "Hi"
        assert result.turns_used == 1
        tree = result.trace_tree
        assert tree["name"] == "runner.session"
        assert tree["payload"]["config"]["name"] == "Runner"
        run = tree["children"][0]
        assert run["name"] == "runner.run"
        assert run["payload"]["input"] == "hello"
        assert run["payload"]["status"] == "completed"
        assert run["children"][0]["name"] == "agent.run"
        assert tree["end_time"] is not None

    async def test_turn_ceiling(self) -> None:
        provider = ScriptedProvider(lambda req: calls((f"c{provider.call_count}", "again", {})))
        runner = Runner(_looping_agent(provider), max_depth=10)

        result = await runner.run("loop")

        assert provider.call_count == 10
        assert result.status == "completed"
        assert result.final_message == MAX_ITERATIONS_MESSAGE
        assert result.turns_used == 10

    async def test_ceiling_spans_delegation(self) -> None:
        sub_provider = ScriptedProvider(lambda req: calls((f"s{sub_provider.call_count}", "again", {})))
        sub = Agent(
            name="Sub",
            purpose="Loop",
            tools=[Tool("again", "Again", lambda: "again")],
            provider=sub_provider,
        )
        parent_provider = ScriptedProvider(
            calls(("p1", CALL_SUB_AGENT, {"sub_agent": "Sub", "request": "go"})),
            final("parent done"),
        )
        parent = Agent(name="Parent", purpose="Delegate", sub_agents=[sub], provider=parent_provider)

        result = await Runner(parent, max_depth=4).run("start")

        assert parent_provider.call_count + sub_provider.call_count == 4
        assert sub_provider.call_count == 3
        assert result.final_message == MAX_ITERATIONS_MESSAGE

    async def test_ceiling_spans_agents_used_as_tools(self) -> None:
        inner_provider = ScriptedProvider(lambda req: calls((f"i{inner_provider.call_count}", "loop", {})))
        inner = Agent(
            name="Inner",
            purpose="Loop",
            tools=[Tool("loop", "Loop", lambda: "again")],
            provider=inner_provider,
        )
        outer_provider = ScriptedProvider(
            lambda req: calls((f"o{outer_provider.call_count}", "Inner", {"request": "go"}))
        )
        outer = Agent(name="Outer", purpose="Use Inner", tools=[inner.as_tool()], provider=outer_provider)

        result = await Runner(outer, max_depth=2).run("start")

        assert outer_provider.call_count + inner_provider.call_count == 2
        assert result.turns_used == 2
        assert result.final_message == MAX_ITERATIONS_MESSAGE

    async def test_error_returned_without_retry(self) -> None:
        provider = ScriptedProvider(ProviderResponse(status="content_filter", text="no"), final("never"))
        result = await Runner(Agent(name="A", purpose="p", provider=provider)).run("x")
        assert result.status == "error"
        assert result.final_message == "[Content Filter] no"
        assert provider.call_count == 1

    async def test_fresh_trace_per_run(self) -> None:
        provider = ScriptedProvider(final("ok"))
        runner = Runner(Agent(name="A", purpose="p", provider=provider))

        first = await runner.run("one")
        second = await runner.run("two")

        assert first.trace_tree["id"] != second.trace_tree["id"]
        assert len(runner.trace_session.roots) == 1
        assert first.trace_tree["children"][0]["payload"]["input"] == "one"

    async def test_render_traces(self) -> None:
        provider = ScriptedProvider(calls(("c1", "again", {})), final("done"))
        runner = Runner(_looping_agent(provider))
        await runner.run("go")

        rendered = runner.render_traces()
        lines = rendered.splitlines()
        assert "runner.session" in lines[0]
        assert any("runner.run" in line for line in lines)
        assert any("tool_call" in line and '"status": "ok"' in line for line in lines)
        assert rendered.count("turn (") == 2

    async def test_exception_leaves_sealed_trace(self) -> None:
        def explode(request):
            raise ConnectionError("down")

        runner = Runner(Agent(name="A", purpose="p", provider=ScriptedProvider(explode)))
        with pytest.raises(ConnectionError):
            await runner.run("x")
        assert runner.trace_session.depth == 0
        assert runner.trace_session.root.sealed
