"""Hierarchical execution trace for one top-level run.

``TraceSession`` keeps a stack of open nodes. ``start()`` opens a child of
the current node (or a new root when nothing is open) and makes it current;
``end()`` seals the current node and pops it. A node without ``end_time``
was still running, or was abandoned, when the tree was read.

The runtime binds the session it records into as the active trace for the
current context (see ``activate_trace``), so agents invoked as plain tools
nest their spans under the caller's dispatch span.
"""

from __future__ import annotations

import contextvars
import json
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Literal

from loom_agents.errors import TraceStackError

_active_trace: contextvars.ContextVar[TraceSession | None] = contextvars.ContextVar(
    "loom_agents_active_trace",
    default=None,
)


def new_trace_id(kind: str = "tracenode") -> str:
    return f"{kind}-{uuid.uuid4()}"


def _now_ms() -> float:
    return time.time() * 1000.0


@dataclass
class TraceNode:
    """One timed, named span. Times are epoch milliseconds."""

    name: str
    payload: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_trace_id)
    start_time: float = field(default_factory=_now_ms)
    end_time: float | None = None
    children: list[TraceNode] = field(default_factory=list)

    @property
    def sealed(self) -> bool:
        return self.end_time is not None

    @property
    def elapsed_ms(self) -> float | None:
        if self.end_time is None:
            return None
        return self.end_time - self.start_time

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "payload": self.payload,
            "children": [c.to_dict() for c in self.children],
        }


def _payload_text(payload: dict[str, Any]) -> str:
    try:
        return json.dumps(payload, ensure_ascii=False, default=str)
    except (TypeError, ValueError) as exc:
        return f"[Payload: Serialization Error - {exc}]"


class TraceSession:
    """Append-only recorder of nested spans for a single run."""

    def __init__(self) -> None:
        self.roots: list[TraceNode] = []
        self._stack: list[TraceNode] = []

    @property
    def current(self) -> TraceNode | None:
        return self._stack[-1] if self._stack else None

    @property
    def depth(self) -> int:
        return len(self._stack)

    @property
    def root(self) -> TraceNode | None:
        return self.roots[0] if self.roots else None

    def start(self, name: str, payload: dict[str, Any] | None = None) -> TraceNode:
        """Open a child of the current node and descend into it."""
        node = TraceNode(name=name, payload=dict(payload or {}))
        parent = self.current
        if parent is None:
            self.roots.append(node)
        else:
            parent.children.append(node)
        self._stack.append(node)
        return node

    def end(self, payload: dict[str, Any] | None = None) -> float:
        """Seal the current node and pop it. Returns its elapsed milliseconds.

        ``payload`` entries are merged into the node before sealing.

        Raises:
            TraceStackError: If no node is open.
        """
        if not self._stack:
            raise TraceStackError("No active trace node to end")
        node = self._stack.pop()
        if payload:
            node.payload.update(payload)
        node.end_time = max(_now_ms(), node.start_time)
        return node.end_time - node.start_time

    @contextmanager
    def span(self, name: str, payload: dict[str, Any] | None = None) -> Iterator[TraceNode]:
        """Open a node for the duration of a ``with`` block."""
        node = self.start(name, payload)
        try:
            yield node
        finally:
            if any(open_node is node for open_node in self._stack):
                # Unwind anything a failing callee left open above this node.
                while self._stack[-1] is not node:
                    self.end()
                self.end()

    def tree(self) -> dict[str, Any] | None:
        """Dict form of the first root, or None when nothing was recorded."""
        return self.root.to_dict() if self.root else None

    def render(self) -> str:
        """Render every root depth-first with box-drawing connectors."""
        return "".join(_render_node(node, "", True, top=True) for node in self.roots)


def _render_node(node: TraceNode, indent: str, last: bool, *, top: bool = False) -> str:
    connector = "" if top else ("└─ " if last else "├─ ")
    line = f"{indent}{connector}[{node.id}] {node.name}"
    if node.elapsed_ms is not None:
        line += f" ({node.elapsed_ms:.0f} ms)"
    if node.payload:
        line += f" - {_payload_text(node.payload)}"
    output = line + "\n"

    child_indent = indent if top else indent + ("    " if last else "│   ")
    for i, child in enumerate(node.children):
        output += _render_node(child, child_indent, i == len(node.children) - 1)
    return output


def current_trace() -> TraceSession | None:
    """The trace session bound to the current context, if any."""
    return _active_trace.get()


class ActiveTrace:
    """Bind a trace session as the active trace for the current context."""

    def __init__(self, session: TraceSession | None) -> None:
        self.session = session
        self._token: contextvars.Token[TraceSession | None] | None = None

    def __enter__(self) -> TraceSession | None:
        self._token = _active_trace.set(self.session)
        return self.session

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: Any,
    ) -> Literal[False]:
        if self._token is not None:
            _active_trace.reset(self._token)
            self._token = None
        return False


def activate_trace(session: TraceSession | None) -> ActiveTrace:
    return ActiveTrace(session)
