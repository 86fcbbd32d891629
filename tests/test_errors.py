"""Tests for loom_agents.errors: classification, wrapping and tagged messages."""

from __future__ import annotations

from unittest.mock import MagicMock

import litellm

from loom_agents.errors import (
    RETRYABLE_PROVIDER_ERRORS,
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


# ---------------------------------------------------------------------------
# classify_error - litellm exception types
# ---------------------------------------------------------------------------


class TestClassifyLitellmTypes:
    def test_auth_error(self):
        err = litellm.AuthenticationError(
            message="Invalid API key", model="gpt-4o", llm_provider="openai"
        )
        assert classify_error(err) is ProviderAuthError

    def test_permission_denied(self):
        err = litellm.PermissionDeniedError(
            message="Forbidden", model="gpt-4o", llm_provider="openai", response=MagicMock()
        )
        assert classify_error(err) is ProviderAuthError

    def test_not_found(self):
        err = litellm.NotFoundError(message="Model not found", model="gpt-99", llm_provider="openai")
        assert classify_error(err) is ProviderModelNotFoundError

    def test_content_policy(self):
        err = litellm.ContentPolicyViolationError(
            message="Content blocked", model="gpt-4o", llm_provider="openai"
        )
        assert classify_error(err) is ProviderContentFilterError

    def test_rate_limit_transient(self):
        err = litellm.RateLimitError(
            message="Rate limit exceeded, please retry after 1s", model="gpt-4o", llm_provider="openai"
        )
        assert classify_error(err) is ProviderRateLimitError

    def test_rate_limit_quota(self):
        err = litellm.RateLimitError(
            message="You exceeded your current quota, check billing", model="gpt-4o", llm_provider="openai"
        )
        assert classify_error(err) is ProviderQuotaExhaustedError

    def test_service_unavailable(self):
        err = litellm.ServiceUnavailableError(
            message="Service unavailable", model="gpt-4o", llm_provider="openai"
        )
        assert classify_error(err) is ProviderTransientError

    def test_api_connection_error(self):
        err = litellm.APIConnectionError(message="Connection reset", model="gpt-4o", llm_provider="openai")
        assert classify_error(err) is ProviderTransientError


# ---------------------------------------------------------------------------
# classify_error - string fallback
# ---------------------------------------------------------------------------


class TestClassifyStringFallback:
    def test_quota_string(self):
        assert classify_error(Exception("exceeded your current quota")) is ProviderQuotaExhaustedError

    def test_auth_401(self):
        assert classify_error(Exception("Error 401: unauthorized")) is ProviderAuthError

    def test_not_found_404(self):
        assert classify_error(Exception("Error 404: model does not exist")) is ProviderModelNotFoundError

    def test_content_filter(self):
        assert classify_error(Exception("content policy violation")) is ProviderContentFilterError

    def test_rate_limit_string(self):
        assert classify_error(Exception("rate limit exceeded")) is ProviderRateLimitError

    def test_timeout_string(self):
        assert classify_error(Exception("Request timed out after 60s")) is ProviderTransientError

    def test_builtin_timeout(self):
        assert classify_error(TimeoutError()) is ProviderTransientError

    def test_unknown(self):
        assert classify_error(Exception("something completely unexpected")) is ProviderError


# ---------------------------------------------------------------------------
# wrap_error
# ---------------------------------------------------------------------------


class TestWrapError:
    def test_wrap_keeps_original(self):
        original = litellm.AuthenticationError(
            message="Invalid API key", model="gpt-4o", llm_provider="openai"
        )
        wrapped = wrap_error(original)
        assert isinstance(wrapped, ProviderAuthError)
        assert wrapped.original is original
        assert "Invalid API key" in str(wrapped)

    def test_wrap_preserves_provider_error(self):
        original = ProviderRateLimitError("already wrapped")
        assert wrap_error(original) is original

    def test_wrap_blank_timeout_message(self):
        wrapped = wrap_error(TimeoutError())
        assert isinstance(wrapped, ProviderTransientError)
        assert str(wrapped) == "TimeoutError"

    def test_retryable_set(self):
        assert isinstance(wrap_error(Exception("rate limit hit")), RETRYABLE_PROVIDER_ERRORS)
        assert not isinstance(wrap_error(Exception("401 unauthorized")), RETRYABLE_PROVIDER_ERRORS)


# ---------------------------------------------------------------------------
# Runtime error types
# ---------------------------------------------------------------------------


class TestRuntimeErrors:
    def test_tool_not_found_message(self):
        assert str(ToolNotFoundError("Lookup")) == "[Tool Call Error] Lookup - Tool not found"

    def test_sub_agent_not_found_message(self):
        err = ToolNotFoundError("Math", tag="Sub Agent Error", what="Sub Agent")
        assert str(err) == "[Sub Agent Error] Math - Sub Agent not found"
        assert err.name == "Math"

    def test_conflict_names_both_sources(self):
        err = ToolNameConflictError("lookup", "tool:lookup", "mcp:files/lookup")
        assert "Tool name conflict: lookup" in str(err)
        assert "tool:lookup" in str(err) and "mcp:files/lookup" in str(err)

    def test_hierarchy(self):
        for cls in [
            AgentConfigurationError,
            ToolNameConflictError,
            TraceStackError,
            ToolNotFoundError,
            ToolInvocationError,
            ProviderError,
            ProviderTransientError,
        ]:
            assert issubclass(cls, LoomError)
        assert issubclass(ToolNameConflictError, ValueError)
        assert issubclass(TraceStackError, RuntimeError)
