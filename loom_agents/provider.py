"""Model-provider boundary for the agent runtime.

The runtime only sees the ``Provider`` protocol: one coroutine taking a
``ProviderRequest`` (system text, canonical context, tool specs) and
returning a ``ProviderResponse`` (status, text, requested tool calls, and
the assistant-side messages to append).

``LiteLLMProvider`` is the default implementation. It renders the context
with the bridge in the encoding of the selected api flavor:

    api="completions" → litellm.acompletion(messages=...)   (turn-oriented)
    api="responses"   → litellm.aresponses(input=...)       (event-oriented)

and maps the provider's finish reason / status onto ``ProviderStatus``.
Timeouts are passed to litellm per call; transient transport failures are
retried with jittered backoff and everything else is raised as a
``ProviderError``.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Callable, Literal, Protocol, runtime_checkable

import litellm

from loom_agents.bridge import normalize, to_completions, to_responses
from loom_agents.config import DEFAULT_TIMEOUT_S, ApiFlavor, get_config
from loom_agents.errors import RETRYABLE_PROVIDER_ERRORS, wrap_error
from loom_agents.execution_kernel import RetryPolicy, run_async_with_retry
from loom_agents.messages import Conversation, Message, ToolInvocation, assistant_turn
from loom_agents.tools import resolve_parameters_schema

logger = logging.getLogger(__name__)

# Silence litellm's noisy default logging
litellm.suppress_debug_info = True

ProviderStatus = Literal[
    "completed",
    "tool_calls",
    "content_filter",
    "length",
    "failed",
    "incomplete",
    "function_call",
]

TERMINAL_ERROR_STATUSES: frozenset[str] = frozenset(
    {"content_filter", "length", "failed", "incomplete", "function_call"}
)


# ---------------------------------------------------------------------------
# Request options
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WebSearchConfig:
    """Provider-hosted web search.

    ``user_location`` takes ``{"type": "approximate", "city": ..., "country": ...,
    "region": ...}``.
    """

    enabled: bool = False
    search_context_size: Literal["low", "medium", "high"] | None = None
    user_location: dict[str, Any] | None = None


@dataclass(frozen=True)
class OutputType:
    """Requested answer format. ``schema`` accepts anything a tool's parameters accept."""

    type: Literal["text", "json_object", "json_schema"] = "text"
    name: str | None = None
    schema: Any = None

    def json_schema(self) -> dict[str, Any] | None:
        if self.schema is None:
            return None
        return resolve_parameters_schema(self.schema)


@dataclass(frozen=True)
class ProviderRequest:
    """Everything one model round trip needs."""

    model: str
    api: ApiFlavor
    system: str
    context: Conversation
    tools: list[dict[str, Any]] = field(default_factory=list)
    agent_name: str = ""
    output_type: OutputType | None = None
    web_search: WebSearchConfig | None = None
    timeout_s: float = DEFAULT_TIMEOUT_S
    request_options: dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderResponse:
    """Result of one model round trip.

    Attributes:
        status: Normalized finish state (see ``ProviderStatus``).
        text: Assistant text, empty when none was produced.
        tool_calls: Requested invocations, in the order the model listed them.
        output: Assistant-side messages to append to the context. When left
            empty, they are derived from ``text`` and ``tool_calls``.
        detail: Provider-supplied reason for error statuses.
        usage: Token counts (prompt_tokens, completion_tokens, total_tokens).
        cost: Cost in USD for this call.
        raw: The raw provider response. Excluded from repr to keep logs clean.
    """

    status: ProviderStatus
    text: str = ""
    tool_calls: list[ToolInvocation] = field(default_factory=list)
    output: Conversation = ()
    detail: str = ""
    usage: dict[str, Any] = field(default_factory=dict)
    cost: float = 0.0
    raw: Any = field(default=None, repr=False)

    @property
    def is_final(self) -> bool:
        return self.status == "completed" and not self.tool_calls

    @property
    def is_terminal_error(self) -> bool:
        return self.status in TERMINAL_ERROR_STATUSES

    def messages(self) -> Conversation:
        """Assistant-side messages to append for this round trip."""
        if self.output:
            return self.output
        derived: list[Message] = []
        if self.text:
            derived.append(assistant_turn(self.text))
        derived.extend(self.tool_calls)
        return tuple(derived)


@runtime_checkable
class Provider(Protocol):
    async def complete(self, request: ProviderRequest) -> ProviderResponse: ...


@dataclass
class Hooks:
    """Observability hooks fired around provider calls.

    Attributes:
        before_call: ``(ProviderRequest) → None``. Fired before each call
            (including retries).
        after_call: ``(ProviderResponse) → None``. Fired after a successful call.
        on_error: ``(error, attempt) → None``. Fired on each failed attempt.
    """

    before_call: Callable[[ProviderRequest], None] | None = None
    after_call: Callable[[ProviderResponse], None] | None = None
    on_error: Callable[[Exception, int], None] | None = None


# ---------------------------------------------------------------------------
# Request building
# ---------------------------------------------------------------------------


def _completions_tools(specs: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {
                "name": spec["name"],
                "description": spec.get("description", ""),
                "parameters": spec["parameters"],
                "strict": spec.get("strict", False),
            },
        }
        for spec in specs
    ]


def _responses_tools(specs: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [
        {
            "type": "function",
            "name": spec["name"],
            "description": spec.get("description", ""),
            "parameters": spec["parameters"],
            "strict": spec.get("strict", False),
        }
        for spec in specs
    ]


def _approximate_location(location: Mapping[str, Any] | None) -> dict[str, Any] | None:
    if not location or location.get("type", "approximate") != "approximate":
        return None
    return {k: location[k] for k in ("city", "country", "region") if location.get(k)}


def _completions_response_format(output_type: OutputType | None) -> dict[str, Any] | None:
    if output_type is None or output_type.type == "text":
        return None
    if output_type.type == "json_object":
        return {"type": "json_object"}
    return {
        "type": "json_schema",
        "json_schema": {
            "name": output_type.name or "response_schema",
            "schema": output_type.json_schema() or {"type": "object"},
            "strict": True,
        },
    }


def _responses_text_format(output_type: OutputType | None) -> dict[str, Any]:
    if output_type is None or output_type.type == "text":
        return {"format": {"type": "text"}}
    if output_type.type == "json_object":
        return {"format": {"type": "json_object"}}
    return {
        "format": {
            "type": "json_schema",
            "name": output_type.name or "response_schema",
            "schema": output_type.json_schema() or {"type": "object"},
            "strict": True,
        }
    }


def build_completions_kwargs(request: ProviderRequest, api_base: str | None = None) -> dict[str, Any]:
    """Build kwargs for litellm.acompletion()."""
    call_kwargs: dict[str, Any] = {
        "model": request.model,
        "messages": [{"role": "system", "content": request.system}, *to_completions(request.context)],
        "timeout": request.timeout_s,
    }
    if request.tools:
        call_kwargs["tools"] = _completions_tools(request.tools)
    response_format = _completions_response_format(request.output_type)
    if response_format is not None:
        call_kwargs["response_format"] = response_format
    if request.web_search is not None and request.web_search.enabled:
        options: dict[str, Any] = {}
        if request.web_search.search_context_size:
            options["search_context_size"] = request.web_search.search_context_size
        location = _approximate_location(request.web_search.user_location)
        if location:
            options["user_location"] = {"type": "approximate", "approximate": location}
        call_kwargs["web_search_options"] = options
    if api_base is not None:
        call_kwargs["api_base"] = api_base
    call_kwargs.update(request.request_options)
    return call_kwargs


def build_responses_kwargs(request: ProviderRequest, api_base: str | None = None) -> dict[str, Any]:
    """Build kwargs for litellm.aresponses()."""
    tools = _responses_tools(request.tools)
    if request.web_search is not None and request.web_search.enabled:
        web_tool: dict[str, Any] = {"type": "web_search_preview"}
        if request.web_search.search_context_size:
            web_tool["search_context_size"] = request.web_search.search_context_size
        location = _approximate_location(request.web_search.user_location)
        if location:
            web_tool["user_location"] = {"type": "approximate", **location}
        tools.append(web_tool)

    resp_kwargs: dict[str, Any] = {
        "model": request.model,
        "input": [{"role": "system", "content": request.system}, *to_responses(request.context)],
        "text": _responses_text_format(request.output_type),
        "timeout": request.timeout_s,
    }
    if tools:
        resp_kwargs["tools"] = tools
    if request.agent_name:
        resp_kwargs["metadata"] = {"loom": "powered", "agent": request.agent_name}
    if api_base is not None:
        resp_kwargs["api_base"] = api_base
    resp_kwargs.update(request.request_options)
    return resp_kwargs


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------


def _get(obj: Any, name: str, default: Any = None) -> Any:
    if isinstance(obj, Mapping):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _extract_usage(response: Any) -> dict[str, Any]:
    """Extract token usage, handling both prompt/completion and input/output naming."""
    usage = _get(response, "usage")
    if usage is None:
        return {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}
    prompt = _get(usage, "prompt_tokens") or _get(usage, "input_tokens") or 0
    completion = _get(usage, "completion_tokens") or _get(usage, "output_tokens") or 0
    total = _get(usage, "total_tokens") or (prompt + completion)
    return {
        "prompt_tokens": int(prompt),
        "completion_tokens": int(completion),
        "total_tokens": int(total),
    }


def _compute_cost(response: Any, usage: dict[str, Any]) -> float:
    """Compute cost via litellm.completion_cost, with fallback."""
    try:
        return float(litellm.completion_cost(completion_response=response))
    except Exception:
        total = usage["total_tokens"]
        fallback = total * 0.000001  # $1 per million tokens as rough floor
        if total > 0:
            logger.warning(
                "completion_cost failed, using fallback: $%.6f for %d tokens",
                fallback,
                total,
            )
        return fallback


def _arguments_text(arguments: Any) -> str:
    if arguments is None:
        return "{}"
    if isinstance(arguments, str):
        return arguments
    return json.dumps(arguments)


def parse_completion(response: Any) -> ProviderResponse:
    """Map a chat-completions response onto ProviderResponse."""
    choice = response.choices[0]
    message = choice.message
    content = _get(message, "content") or ""
    finish_reason = _get(choice, "finish_reason") or ""

    tool_calls: list[dict[str, Any]] = []
    for tc in _get(message, "tool_calls") or []:
        function = _get(tc, "function")
        tool_calls.append({
            "id": _get(tc, "id"),
            "type": "function",
            "function": {
                "name": _get(function, "name"),
                "arguments": _arguments_text(_get(function, "arguments")),
            },
        })

    output = normalize([{"role": "assistant", "content": content or None, "tool_calls": tool_calls}])
    invocations = [m for m in output if isinstance(m, ToolInvocation)]

    status: ProviderStatus
    if finish_reason == "content_filter":
        status = "content_filter"
    elif finish_reason == "length":
        status = "length"
    elif finish_reason == "function_call":
        status = "function_call"
    elif invocations:
        status = "tool_calls"
    else:
        status = "completed"

    usage = _extract_usage(response)
    return ProviderResponse(
        status=status,
        text=content,
        tool_calls=invocations,
        output=output,
        detail=finish_reason,
        usage=usage,
        cost=_compute_cost(response, usage),
        raw=response,
    )


def _responses_output_text(response: Any, items: list[Any]) -> str:
    text = _get(response, "output_text")
    if isinstance(text, str) and text:
        return text
    parts: list[str] = []
    for item in items:
        if _get(item, "type") != "message":
            continue
        for part in _get(item, "content") or []:
            if _get(part, "type") == "output_text" and isinstance(_get(part, "text"), str):
                parts.append(_get(part, "text"))
    return "".join(parts)


def parse_responses(response: Any) -> ProviderResponse:
    """Map a responses-api response onto ProviderResponse."""
    items = list(_get(response, "output") or [])
    output = normalize(items)
    invocations = [m for m in output if isinstance(m, ToolInvocation)]
    text = _responses_output_text(response, items)
    api_status = _get(response, "status") or "completed"

    status: ProviderStatus
    detail = ""
    if api_status == "failed":
        status = "failed"
        detail = str(_get(_get(response, "error"), "message") or "")
    elif api_status == "incomplete":
        reason = str(_get(_get(response, "incomplete_details"), "reason") or "")
        detail = reason
        if "max_output_tokens" in reason:
            status = "length"
        elif "content_filter" in reason:
            status = "content_filter"
        else:
            status = "incomplete"
    elif invocations:
        status = "tool_calls"
    else:
        status = "completed"

    usage = _extract_usage(response)
    return ProviderResponse(
        status=status,
        text=text,
        tool_calls=invocations,
        output=output,
        detail=detail,
        usage=usage,
        cost=_compute_cost(response, usage),
        raw=response,
    )


# ---------------------------------------------------------------------------
# Default provider
# ---------------------------------------------------------------------------


def _is_retryable(error: Exception) -> bool:
    return isinstance(wrap_error(error), RETRYABLE_PROVIDER_ERRORS)


class LiteLLMProvider:
    """Provider backed by litellm (any model string litellm understands)."""

    def __init__(
        self,
        *,
        api_base: str | None = None,
        retry: RetryPolicy | None = None,
        hooks: Hooks | None = None,
    ) -> None:
        config = get_config()
        self.api_base = api_base if api_base is not None else config.api_base
        self.retry = retry or RetryPolicy(max_retries=config.num_retries)
        self.hooks = hooks or Hooks()

    async def complete(self, request: ProviderRequest) -> ProviderResponse:
        if request.api == "completions":
            call_kwargs = build_completions_kwargs(request, self.api_base)
            call = litellm.acompletion
            parse = parse_completion
        else:
            call_kwargs = build_responses_kwargs(request, self.api_base)
            call = litellm.aresponses
            parse = parse_responses

        async def invoke(attempt: int) -> ProviderResponse:
            if self.hooks.before_call:
                self.hooks.before_call(request)
            return parse(await call(**call_kwargs))

        try:
            result = await run_async_with_retry(
                caller=f"LiteLLMProvider.complete[{request.api}]",
                model=request.model,
                policy=self.retry,
                invoke=invoke,
                should_retry=_is_retryable,
                logger=logger,
                on_error=self.hooks.on_error,
            )
        except Exception as exc:
            raise wrap_error(exc) from exc

        logger.debug(
            "LLM call (%s): model=%s tokens=%d cost=$%.6f status=%s",
            request.api,
            request.model,
            result.usage.get("total_tokens", 0),
            result.cost,
            result.status,
        )
        if self.hooks.after_call:
            self.hooks.after_call(result)
        return result


_default_provider: Provider | None = None


def default_provider() -> Provider:
    """Process-wide provider used by agents constructed without one."""
    global _default_provider  # noqa: PLW0603
    if _default_provider is None:
        _default_provider = LiteLLMProvider()
    return _default_provider


def set_default_provider(provider: Provider | None) -> None:
    """Override (or with None, reset) the process-wide default provider."""
    global _default_provider  # noqa: PLW0603
    _default_provider = provider
