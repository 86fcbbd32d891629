"""Remote tool servers over the Model Context Protocol.

Usage:
    server = MCPServerStdio("files", "python", ["-u", "file_server.py"])
    agent = Agent(name="Librarian", purpose="Answer questions about files",
                  mcp_servers=[server])

    async with server:
        result = await agent.run("List the files in the project")

Connections are opened lazily on first use and closed by ``aclose()`` (or
leaving the ``async with`` block) in the same task that opened them.
Discovered tools are registered under ``mcp_<server>_<tool>`` so they can
never shadow a local tool by accident.
"""

from __future__ import annotations

import abc
import asyncio
import json as _json
import logging
from collections.abc import Mapping
from contextlib import AsyncExitStack
from typing import Any, Protocol, runtime_checkable

from loom_agents.errors import ToolInvocationError
from loom_agents.registry import InvocationContext, ToolEntry
from loom_agents.tools import normalize_tool_name

logger = logging.getLogger(__name__)

DEFAULT_MCP_INIT_TIMEOUT: float = 30.0
"""Seconds to wait for an MCP session to initialize."""

REMOTE_TOOL_PREFIX = "mcp"


@runtime_checkable
class RemoteToolServer(Protocol):
    """Anything that can list and call tools by name."""

    name: str

    async def list_tools(self) -> list[Any]: ...

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> Any: ...


def _import_mcp() -> tuple[Any, ...]:
    """Lazily import mcp client components.

    Returns:
        (ClientSession, stdio_client, StdioServerParameters, sse_client)
    """
    try:
        from mcp import ClientSession
        from mcp.client.sse import sse_client
        from mcp.client.stdio import StdioServerParameters, stdio_client
    except ImportError:
        raise ImportError(
            "mcp package is required for remote tool servers. "
            "Install with: pip install mcp"
        ) from None
    return ClientSession, stdio_client, StdioServerParameters, sse_client


class MCPServerBase(abc.ABC):
    """Lazily connected MCP client session with cached tool discovery."""

    def __init__(self, name: str, init_timeout: float = DEFAULT_MCP_INIT_TIMEOUT) -> None:
        self.name = name
        self.init_timeout = init_timeout
        self._stack: AsyncExitStack | None = None
        self._session: Any = None
        self._tools: list[Any] | None = None

    @abc.abstractmethod
    def _transport(self) -> Any:
        """Return the async context manager yielding (read, write) streams."""

    async def _connect(self) -> Any:
        if self._session is not None:
            return self._session
        ClientSession = _import_mcp()[0]
        stack = AsyncExitStack()
        await stack.__aenter__()
        try:
            streams = await stack.enter_async_context(self._transport())
            read_stream, write_stream = streams[0], streams[1]
            session = await stack.enter_async_context(ClientSession(read_stream, write_stream))
            await asyncio.wait_for(session.initialize(), timeout=self.init_timeout)
        except BaseException:
            await stack.aclose()
            raise
        self._stack = stack
        self._session = session
        logger.info("MCP server %s connected", self.name)
        return session

    async def list_tools(self) -> list[Any]:
        if self._tools is None:
            session = await self._connect()
            result = await session.list_tools()
            self._tools = list(result.tools)
            logger.info("MCP server %s: %d tools", self.name, len(self._tools))
        return self._tools

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> Any:
        session = await self._connect()
        return await session.call_tool(name, arguments)

    async def aclose(self) -> None:
        if self._stack is not None:
            await self._stack.aclose()
        self._stack = None
        self._session = None
        self._tools = None

    async def __aenter__(self) -> "MCPServerBase":
        await self._connect()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()


class MCPServerStdio(MCPServerBase):
    """MCP server launched as a subprocess speaking stdio."""

    def __init__(
        self,
        name: str,
        command: str,
        args: list[str] | None = None,
        *,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
        init_timeout: float = DEFAULT_MCP_INIT_TIMEOUT,
    ) -> None:
        super().__init__(name, init_timeout)
        self.command = command
        self.args = list(args or [])
        self.env = env
        self.cwd = cwd

    def _transport(self) -> Any:
        _, stdio_client, StdioServerParameters, _ = _import_mcp()
        params = StdioServerParameters(
            command=self.command,
            args=self.args,
            env=self.env,
            cwd=self.cwd,
        )
        return stdio_client(params)


class MCPServerSSE(MCPServerBase):
    """MCP server reached over HTTP server-sent events."""

    def __init__(
        self,
        name: str,
        url: str,
        *,
        headers: dict[str, Any] | None = None,
        init_timeout: float = DEFAULT_MCP_INIT_TIMEOUT,
    ) -> None:
        super().__init__(name, init_timeout)
        self.url = url
        self.headers = headers

    def _transport(self) -> Any:
        sse_client = _import_mcp()[3]
        return sse_client(self.url, headers=self.headers)


# ---------------------------------------------------------------------------
# Registry adapters
# ---------------------------------------------------------------------------


def _field(obj: Any, *names: str) -> Any:
    for name in names:
        if isinstance(obj, Mapping):
            if name in obj:
                return obj[name]
        elif hasattr(obj, name):
            return getattr(obj, name)
    return None


def _input_schema(tool: Any) -> dict[str, Any]:
    """Copy an MCP input schema, filling in the object skeleton when absent."""
    raw = _field(tool, "inputSchema", "input_schema")
    parameters = dict(raw) if isinstance(raw, Mapping) else {}
    parameters.setdefault("type", "object")
    properties = parameters.get("properties")
    parameters["properties"] = dict(properties) if isinstance(properties, Mapping) else {}
    required = parameters.get("required")
    parameters["required"] = list(required) if isinstance(required, list) else []
    return parameters


def remote_result_text(result: Any) -> str:
    """Flatten an MCP call result's content items into text."""
    content = _field(result, "content")
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    parts: list[str] = []
    for item in content:
        text = _field(item, "text")
        if isinstance(text, str):
            parts.append(text)
            continue
        dump = getattr(item, "model_dump", None)
        if callable(dump):
            parts.append(_json.dumps(dump(), default=str))
        else:
            parts.append(_json.dumps(item, default=str) if isinstance(item, (dict, list)) else str(item))
    return "\n".join(parts)


def remote_tool_name(server: RemoteToolServer, tool_name: str) -> str:
    return normalize_tool_name(f"{REMOTE_TOOL_PREFIX}_{server.name}_{tool_name}")


async def remote_tool_entries(server: RemoteToolServer) -> list[ToolEntry]:
    """Discover a server's tools and resolve them into registry entries.

    A remote error payload (``isError``) is raised like any other callee
    failure, so the runtime reports both the same way.
    """
    entries: list[ToolEntry] = []
    for tool in await server.list_tools():
        remote_name = _field(tool, "name")
        if not isinstance(remote_name, str) or not remote_name:
            logger.warning("Skipping nameless tool from MCP server %s", server.name)
            continue

        async def invoke(arguments: Any, call: InvocationContext, _remote: str = remote_name) -> str:
            if arguments is None:
                arguments = {}
            if not isinstance(arguments, dict):
                raise ToolInvocationError(f"Arguments for {_remote} must be an object")
            result = await server.call_tool(_remote, arguments)
            text = remote_result_text(result)
            if _field(result, "isError", "is_error"):
                raise ToolInvocationError(f"[MCP Tool Call Error] {_remote} - {text}")
            return text

        entries.append(
            ToolEntry(
                name=remote_tool_name(server, remote_name),
                description=_field(tool, "description") or f"MCP Tool: {remote_name}",
                parameters=_input_schema(tool),
                kind="remote",
                invoke=invoke,
                source=f"mcp:{server.name}/{remote_name}",
            )
        )
    return entries
