"""Structured error types for loom_agents.

Configuration mistakes are raised eagerly and never caught internally:

    from loom_agents.errors import ToolNameConflictError

    try:
        agent = Agent(name="Helper", purpose="...", tools=[a, a])
    except ToolNameConflictError:
        # Two capabilities share a name: fix the agent definition
        ...

Provider transport failures are wrapped into ``ProviderError`` subclasses so
callers can catch them without parsing raw litellm exceptions. Tool and
sub-agent failures never surface as exceptions from ``Agent.run``; the
runtime turns them into tagged tool-result strings.
"""

from __future__ import annotations

from typing import Any

import litellm as _lt


class LoomError(Exception):
    """Base for all loom_agents errors."""

    def __init__(self, message: str, original: Exception | None = None) -> None:
        super().__init__(message)
        self.original = original


class AgentConfigurationError(LoomError, ValueError):
    """Invalid agent definition (missing name/purpose, bad output type, ...)."""


class ToolNameConflictError(AgentConfigurationError):
    """Two capabilities of one agent resolve to the same tool name."""

    def __init__(self, name: str, existing: str, incoming: str) -> None:
        super().__init__(
            f"Tool name conflict: {name}. Agent already has a tool with this name "
            f"(existing={existing}, incoming={incoming})."
        )
        self.name = name
        self.existing = existing
        self.incoming = incoming


class TraceStackError(LoomError, RuntimeError):
    """``end()`` called on a trace with no open node."""


class ToolNotFoundError(LoomError, LookupError):
    """The model requested a capability the registry does not hold."""

    def __init__(self, name: str, tag: str = "Tool Call Error", what: str = "Tool") -> None:
        super().__init__(f"[{tag}] {name} - {what} not found")
        self.name = name


class ToolInvocationError(LoomError):
    """A capability failed while being invoked."""


class ProviderError(LoomError):
    """Base for model-provider transport failures."""


class ProviderRateLimitError(ProviderError):
    """Transient rate limit (429), retried with backoff."""


class ProviderQuotaExhaustedError(ProviderError):
    """Permanent quota/billing exhaustion, not retried."""


class ProviderAuthError(ProviderError):
    """Authentication failed (401/403): API key invalid or forbidden."""


class ProviderContentFilterError(ProviderError):
    """Request rejected by the provider's content policy before generation."""


class ProviderTransientError(ProviderError):
    """Server error (500/502/503), timeout, connection, retried."""


class ProviderModelNotFoundError(ProviderError):
    """Model doesn't exist (404)."""


RETRYABLE_PROVIDER_ERRORS: tuple[type[ProviderError], ...] = (
    ProviderRateLimitError,
    ProviderTransientError,
)

# Patterns that indicate permanent quota exhaustion (not transient rate limit).
_QUOTA_PATTERNS = [
    "quota",
    "billing",
    "insufficient",
    "exceeded your current",
    "plan and billing",
]


def _litellm_error_types(module: Any, names: tuple[str, ...]) -> tuple[type[BaseException], ...]:
    """Resolve optional litellm exception classes without static attribute coupling."""
    out: list[type[BaseException]] = []
    for name in names:
        candidate = getattr(module, name, None)
        if isinstance(candidate, type) and issubclass(candidate, BaseException):
            out.append(candidate)
    return tuple(out)


def classify_error(error: Exception) -> type[ProviderError]:
    """Classify any provider exception into a ProviderError subtype.

    Uses litellm exception types when available, falls back to string matching.
    """
    auth_types = _litellm_error_types(_lt, ("AuthenticationError", "PermissionDeniedError"))
    if auth_types and isinstance(error, auth_types):
        return ProviderAuthError

    not_found_types = _litellm_error_types(_lt, ("NotFoundError",))
    if not_found_types and isinstance(error, not_found_types):
        return ProviderModelNotFoundError

    content_types = _litellm_error_types(_lt, ("ContentPolicyViolationError",))
    if content_types and isinstance(error, content_types):
        return ProviderContentFilterError

    budget_types = _litellm_error_types(_lt, ("BudgetExceededError",))
    if budget_types and isinstance(error, budget_types):
        return ProviderQuotaExhaustedError

    rate_types = _litellm_error_types(_lt, ("RateLimitError",))
    if rate_types and isinstance(error, rate_types):
        error_str = str(error).lower()
        if any(p in error_str for p in _QUOTA_PATTERNS):
            return ProviderQuotaExhaustedError
        return ProviderRateLimitError

    transient_types = _litellm_error_types(
        _lt,
        (
            "InternalServerError",
            "ServiceUnavailableError",
            "APIConnectionError",
            "Timeout",
        ),
    )
    if transient_types and isinstance(error, transient_types):
        return ProviderTransientError

    if isinstance(error, TimeoutError):
        return ProviderTransientError

    error_str = str(error).lower()

    if any(p in error_str for p in _QUOTA_PATTERNS):
        return ProviderQuotaExhaustedError
    if "401" in error_str or "authentication" in error_str or "unauthorized" in error_str:
        return ProviderAuthError
    if "403" in error_str or "forbidden" in error_str:
        return ProviderAuthError
    if "404" in error_str or "does not exist" in error_str:
        return ProviderModelNotFoundError
    if "content" in error_str and ("policy" in error_str or "filter" in error_str):
        return ProviderContentFilterError
    if "rate" in error_str and "limit" in error_str:
        return ProviderRateLimitError
    if any(p in error_str for p in ("timeout", "timed out", "connection", "500", "502", "503", "server error")):
        return ProviderTransientError

    return ProviderError


def wrap_error(error: Exception) -> ProviderError:
    """Wrap a provider exception in the matching ProviderError subclass.

    If the error is already a ProviderError, returns it unchanged.
    """
    if isinstance(error, ProviderError):
        return error
    cls = classify_error(error)
    return cls(str(error) or type(error).__name__, original=error)
