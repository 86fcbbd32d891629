"""Canonical conversation representation for loom_agents.

Provider-agnostic message types. The bridge converts the two wire encodings
(chat-completions and responses) to and from these; nothing else in the
package reads wire dicts directly.

A conversation is a tuple of messages. Every step of the runtime produces a
new, longer tuple; messages themselves are frozen.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class TextPart(_Frozen):
    """Plain text content."""

    type: Literal["text"] = "text"
    text: str


class ImagePart(_Frozen):
    """Image referenced by URL (http(s) or data URL)."""

    type: Literal["image_url"] = "image_url"
    url: str


class FilePart(_Frozen):
    """Inline file content."""

    type: Literal["file"] = "file"
    filename: str | None = None
    data: str | None = None


ContentPart = Annotated[Union[TextPart, ImagePart, FilePart], Field(discriminator="type")]


class Turn(_Frozen):
    """A system, user or assistant turn made of content parts."""

    type: Literal["turn"] = "turn"
    role: Literal["system", "user", "assistant"]
    content: tuple[ContentPart, ...] = ()

    @property
    def text(self) -> str:
        """Concatenated text of all text parts."""
        return "".join(p.text for p in self.content if isinstance(p, TextPart))


class ToolInvocation(_Frozen):
    """A model-requested call to a named capability.

    ``arguments`` is kept as the raw JSON text the model produced so that
    re-encoding never changes it; use ``parsed_arguments()`` to decode.
    """

    type: Literal["tool_call"] = "tool_call"
    call_id: str
    name: str
    arguments: str = "{}"

    def parsed_arguments(self) -> Any:
        """Decode ``arguments``. Raises ``json.JSONDecodeError`` on bad JSON."""
        if not self.arguments.strip():
            return {}
        return json.loads(self.arguments)


class ToolResult(_Frozen):
    """Output of the invocation with the same ``call_id``."""

    type: Literal["tool_result"] = "tool_result"
    call_id: str
    output: str


Message = Annotated[Union[Turn, ToolInvocation, ToolResult], Field(discriminator="type")]
Conversation = tuple[Message, ...]

_conversation_adapter: TypeAdapter[Conversation] = TypeAdapter(Conversation)


def validate_conversation(data: Any) -> Conversation:
    """Validate dumped IR (e.g. from ``model_dump``) back into messages."""
    return _conversation_adapter.validate_python(data)


def dump_conversation(conversation: Conversation) -> list[dict[str, Any]]:
    return _conversation_adapter.dump_python(conversation, mode="json")


def text_turn(role: Literal["system", "user", "assistant"], text: str) -> Turn:
    return Turn(role=role, content=(TextPart(text=text),))


def user_turn(text: str) -> Turn:
    return text_turn("user", text)


def system_turn(text: str) -> Turn:
    return text_turn("system", text)


def assistant_turn(text: str) -> Turn:
    return text_turn("assistant", text)


def extend(conversation: Conversation, *messages: Message) -> Conversation:
    """Return a new conversation with ``messages`` appended."""
    return (*conversation, *messages)
