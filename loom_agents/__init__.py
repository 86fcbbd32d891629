"""Multi-agent orchestration over litellm.

Agents call a model in a loop, dispatching the tool calls it requests to
local functions, MCP servers, or other agents, until a final answer comes
back. Every step is recorded in a hierarchical trace.

Usage:
    from loom_agents import Agent, Runner, Tool

    math = Agent(name="Math", purpose="Solve arithmetic step by step")
    history = Agent(name="History", purpose="Explain historical events")
    router = Agent(
        name="Router",
        purpose="Direct education questions to the appropriate specialist",
        sub_agents=[math, history],
    )

    runner = Runner(router, max_depth=10)
    result = await runner.run("Who was the first Roman emperor?")
    print(result.final_message)
    print(runner.render_traces())

    # Switch wire encoding / model for every agent without their own setting
    from loom_agents import configure
    configure(api="completions", default_model="gpt-4o-mini")
"""

import logging as _logging
import os as _os
from pathlib import Path as _Path

_DEFAULT_KEYS_FILE = _Path.home() / ".secrets" / "api_keys.env"
_log = _logging.getLogger(__name__)


def _load_api_keys() -> int:
    """Load provider API keys from an env file into os.environ on import.

    Reads from LOOM_KEYS_FILE, or ~/.secrets/api_keys.env. Skips comments,
    empty lines, and keys already set in the environment. Returns the number
    of keys loaded.
    """
    keys_file = _Path(_os.environ.get("LOOM_KEYS_FILE", str(_DEFAULT_KEYS_FILE)))
    if not keys_file.is_file():
        return 0
    loaded = 0
    for line in keys_file.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[7:]
        if "=" not in line:
            continue
        key, _, value = line.partition("=")
        key = key.strip()
        value = value.strip().strip("\"'")
        if key and key not in _os.environ:
            _os.environ[key] = value
            loaded += 1
    if loaded:
        _log.debug("loom_agents: loaded %d API keys from %s", loaded, keys_file)
    return loaded


_load_api_keys()

from loom_agents.errors import (
    AgentConfigurationError,
    LoomError,
    ProviderAuthError,
    ProviderContentFilterError,
    ProviderError,
    ProviderModelNotFoundError,
    ProviderQuotaExhaustedError,
    ProviderRateLimitError,
    ProviderTransientError,
    ToolInvocationError,
    ToolNameConflictError,
    ToolNotFoundError,
    TraceStackError,
    classify_error,
    wrap_error,
)
from loom_agents.config import LoomConfig, configure, get_config, reset_config
from loom_agents.messages import (
    Conversation,
    FilePart,
    ImagePart,
    Message,
    TextPart,
    ToolInvocation,
    ToolResult,
    Turn,
    assistant_turn,
    system_turn,
    user_turn,
)
from loom_agents.bridge import normalize, render, to_completions, to_responses
from loom_agents.trace import TraceNode, TraceSession, current_trace
from loom_agents.tools import Tool, callable_to_tool
from loom_agents.registry import CALL_SUB_AGENT, ToolEntry, ToolRegistry
from loom_agents.mcp import MCPServerSSE, MCPServerStdio
from loom_agents.execution_kernel import RetryPolicy
from loom_agents.provider import (
    Hooks,
    LiteLLMProvider,
    OutputType,
    Provider,
    ProviderRequest,
    ProviderResponse,
    WebSearchConfig,
    set_default_provider,
)
from loom_agents.prompts import render_prompt
from loom_agents.runtime import MAX_ITERATIONS_MESSAGE, AgentResponse, AgentRuntime, TurnBudget
from loom_agents.agent import Agent, AgentConfig
from loom_agents.runner import Runner, RunnerResponse

__all__ = [
    # errors
    "AgentConfigurationError",
    "LoomError",
    "ProviderAuthError",
    "ProviderContentFilterError",
    "ProviderError",
    "ProviderModelNotFoundError",
    "ProviderQuotaExhaustedError",
    "ProviderRateLimitError",
    "ProviderTransientError",
    "ToolInvocationError",
    "ToolNameConflictError",
    "ToolNotFoundError",
    "TraceStackError",
    "classify_error",
    "wrap_error",
    # config
    "LoomConfig",
    "configure",
    "get_config",
    "reset_config",
    # messages
    "Conversation",
    "FilePart",
    "ImagePart",
    "Message",
    "TextPart",
    "ToolInvocation",
    "ToolResult",
    "Turn",
    "assistant_turn",
    "system_turn",
    "user_turn",
    # bridge
    "normalize",
    "render",
    "to_completions",
    "to_responses",
    # trace
    "TraceNode",
    "TraceSession",
    "current_trace",
    # tools
    "CALL_SUB_AGENT",
    "Tool",
    "ToolEntry",
    "ToolRegistry",
    "callable_to_tool",
    "MCPServerSSE",
    "MCPServerStdio",
    # provider
    "Hooks",
    "LiteLLMProvider",
    "OutputType",
    "Provider",
    "ProviderRequest",
    "ProviderResponse",
    "RetryPolicy",
    "WebSearchConfig",
    "set_default_provider",
    "render_prompt",
    # runtime
    "MAX_ITERATIONS_MESSAGE",
    "Agent",
    "AgentConfig",
    "AgentResponse",
    "AgentRuntime",
    "Runner",
    "RunnerResponse",
    "TurnBudget",
]
