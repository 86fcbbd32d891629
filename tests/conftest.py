"""Shared fixtures. No test in this suite talks to a real model or server."""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import pytest

from loom_agents.config import reset_config
from loom_agents.messages import ToolInvocation
from loom_agents.provider import ProviderRequest, ProviderResponse, set_default_provider


def final(text: str) -> ProviderResponse:
    return ProviderResponse(status="completed", text=text)


def calls(*specs: tuple[str, str, Any], text: str = "") -> ProviderResponse:
    """ProviderResponse requesting ``(call_id, name, arguments)`` invocations."""
    invocations = [
        ToolInvocation(call_id=call_id, name=name, arguments=json.dumps(args))
        for call_id, name, args in specs
    ]
    return ProviderResponse(status="tool_calls", text=text, tool_calls=invocations)


class ScriptedProvider:
    """Provider fake replaying canned responses in order.

    Each script entry is a ``ProviderResponse`` or a callable taking the
    ``ProviderRequest`` and returning one. Once the script runs out, the last
    entry repeats. Every request is kept in ``requests``.
    """

    def __init__(self, *script: ProviderResponse | Callable[[ProviderRequest], ProviderResponse]) -> None:
        self.script = list(script)
        self.requests: list[ProviderRequest] = []

    @property
    def call_count(self) -> int:
        return len(self.requests)

    async def complete(self, request: ProviderRequest) -> ProviderResponse:
        self.requests.append(request)
        index = min(len(self.requests) - 1, len(self.script) - 1)
        entry = self.script[index]
        return entry(request) if callable(entry) else entry


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch: pytest.MonkeyPatch):
    for var in ("LOOM_API", "LOOM_DEFAULT_MODEL", "LOOM_TIMEOUT_S", "LOOM_MAX_DEPTH", "LOOM_NUM_RETRIES", "LOOM_API_BASE"):
        monkeypatch.delenv(var, raising=False)
    reset_config()
    set_default_provider(None)
    yield
    reset_config()
    set_default_provider(None)
