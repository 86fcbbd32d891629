"""Tests for loom_agents.trace: span stack discipline and rendering."""

from __future__ import annotations

import asyncio

import pytest

from loom_agents.errors import TraceStackError
from loom_agents.trace import TraceSession, activate_trace, current_trace


class TestStackDiscipline:
    def test_nested_start_end(self) -> None:
        trace = TraceSession()
        trace.start("x")
        trace.start("y")
        trace.end()
        trace.end()

        assert len(trace.roots) == 1
        root = trace.roots[0]
        assert root.name == "x"
        assert [c.name for c in root.children] == ["y"]
        for node in (root, root.children[0]):
            assert node.sealed
            assert node.end_time >= node.start_time

    def test_end_with_nothing_open_raises(self) -> None:
        trace = TraceSession()
        trace.start("x")
        trace.start("y")
        trace.end()
        trace.end()
        with pytest.raises(TraceStackError):
            trace.end()

    def test_siblings_and_new_roots(self) -> None:
        trace = TraceSession()
        trace.start("root")
        trace.start("a")
        trace.end()
        trace.start("b")
        trace.end()
        trace.end()
        trace.start("second-root")
        trace.end()
        assert [n.name for n in trace.roots] == ["root", "second-root"]
        assert [c.name for c in trace.roots[0].children] == ["a", "b"]

    def test_end_merges_payload(self) -> None:
        trace = TraceSession()
        trace.start("call", {"name": "T"})
        elapsed = trace.end({"status": "ok"})
        assert elapsed >= 0
        assert trace.roots[0].payload == {"name": "T", "status": "ok"}

    def test_unsealed_node_left_open(self) -> None:
        trace = TraceSession()
        trace.start("outer")
        trace.start("inner")
        trace.end()
        assert not trace.roots[0].sealed
        assert trace.roots[0].elapsed_ms is None
        assert trace.depth == 1

    def test_ids_unique(self) -> None:
        trace = TraceSession()
        for _ in range(5):
            trace.start("n")
            trace.end()
        assert len({n.id for n in trace.roots}) == 5


class TestSpan:
    def test_span_seals_on_exception(self) -> None:
        trace = TraceSession()
        with pytest.raises(RuntimeError):
            with trace.span("outer"):
                trace.start("leaked")
                raise RuntimeError("boom")
        assert trace.depth == 0
        outer = trace.roots[0]
        assert outer.sealed
        assert outer.children[0].sealed

    def test_span_tolerates_callee_closing_it(self) -> None:
        trace = TraceSession()
        trace.start("root")
        with trace.span("child"):
            trace.end()
        assert trace.depth == 1
        assert trace.current.name == "root"


class TestRender:
    def test_connectors(self) -> None:
        trace = TraceSession()
        trace.start("root")
        trace.start("a", {"k": 1})
        trace.start("a1")
        trace.end()
        trace.end()
        trace.start("b")
        trace.end()
        trace.end()

        lines = trace.render().splitlines()
        assert len(lines) == 4
        assert "] root (" in lines[0]
        assert lines[1].startswith("├─ [")
        assert lines[1].endswith(' - {"k": 1}')
        assert lines[2].startswith("│   └─ [")
        assert lines[3].startswith("└─ [")

    def test_open_node_has_no_elapsed(self) -> None:
        trace = TraceSession()
        trace.start("running")
        assert trace.render().strip().endswith("running")

    def test_unserializable_payload_renders(self) -> None:
        trace = TraceSession()
        trace.start("x", {"obj": object()})
        trace.end()
        assert "object object" in trace.render()

    def test_tree_dict(self) -> None:
        trace = TraceSession()
        assert trace.tree() is None
        trace.start("x")
        trace.start("y")
        trace.end()
        trace.end()
        tree = trace.tree()
        assert tree["name"] == "x"
        assert tree["children"][0]["name"] == "y"
        assert tree["children"][0]["children"] == []


class TestActiveTrace:
    def test_binds_and_restores(self) -> None:
        assert current_trace() is None
        trace = TraceSession()
        with activate_trace(trace):
            assert current_trace() is trace
        assert current_trace() is None

    @pytest.mark.asyncio
    async def test_visible_to_awaited_coroutines(self) -> None:
        trace = TraceSession()

        async def peek() -> TraceSession | None:
            return current_trace()

        with activate_trace(trace):
            assert await peek() is trace
            assert await asyncio.create_task(peek()) is trace
