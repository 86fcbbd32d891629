"""Tests for loom_agents.messages: the canonical conversation types."""

from __future__ import annotations

import json

import pydantic
import pytest

from loom_agents.messages import (
    ImagePart,
    TextPart,
    ToolInvocation,
    ToolResult,
    Turn,
    dump_conversation,
    extend,
    system_turn,
    user_turn,
    validate_conversation,
)


class TestTypes:
    def test_turn_text_joins_text_parts(self) -> None:
        turn = Turn(role="user", content=(TextPart(text="a"), ImagePart(url="u"), TextPart(text="b")))
        assert turn.text == "ab"

    def test_messages_are_frozen(self) -> None:
        turn = user_turn("x")
        with pytest.raises(pydantic.ValidationError):
            turn.role = "assistant"  # type: ignore[misc]

    def test_unknown_fields_rejected(self) -> None:
        with pytest.raises(pydantic.ValidationError):
            ToolResult(call_id="c", output="o", extra="nope")  # type: ignore[call-arg]

    def test_parsed_arguments(self) -> None:
        assert ToolInvocation(call_id="c", name="T", arguments='{"a": [1]}').parsed_arguments() == {"a": [1]}
        assert ToolInvocation(call_id="c", name="T", arguments="  ").parsed_arguments() == {}
        with pytest.raises(json.JSONDecodeError):
            ToolInvocation(call_id="c", name="T", arguments="{").parsed_arguments()


class TestConversation:
    def test_extend_returns_new_tuple(self) -> None:
        base = (user_turn("a"),)
        longer = extend(base, user_turn("b"))
        assert base == (user_turn("a"),)
        assert longer == (user_turn("a"), user_turn("b"))

    def test_dump_and_validate(self) -> None:
        conv = (
            system_turn("rules"),
            ToolInvocation(call_id="c1", name="T", arguments="{}"),
            ToolResult(call_id="c1", output="done"),
        )
        dumped = dump_conversation(conv)
        assert dumped[1] == {"type": "tool_call", "call_id": "c1", "name": "T", "arguments": "{}"}
        assert validate_conversation(json.loads(json.dumps(dumped))) == conv
