"""Conversion between wire message arrays and the canonical conversation.

Two wire encodings are supported:

Chat completions (turn-oriented)::

    [{"role": "user", "content": "What time is it?"},
     {"role": "assistant", "content": None,
      "tool_calls": [{"id": "call_1", "type": "function",
                      "function": {"name": "GetTime", "arguments": "{}"}}]},
     {"role": "tool", "tool_call_id": "call_1", "content": "12:00"}]

Responses (event-oriented)::

    [{"role": "user", "content": [{"type": "input_text", "text": "What time is it?"}]},
     {"type": "function_call", "call_id": "call_1", "name": "GetTime", "arguments": "{}"},
     {"type": "function_call_output", "call_id": "call_1", "output": "12:00"}]

``normalize`` accepts either encoding (or a mix). Tool results whose call id
was never seen as an invocation earlier in the same sequence are orphans and
are dropped, on the way in and again on the way out. Content parts of an
unknown type are dropped as well.
"""

from __future__ import annotations

import json as _json
import logging
from collections.abc import Iterable, Mapping
from typing import Any, Literal

from loom_agents.messages import (
    ContentPart,
    Conversation,
    FilePart,
    ImagePart,
    Message,
    TextPart,
    ToolInvocation,
    ToolResult,
    Turn,
)

logger = logging.getLogger(__name__)

_TEXT_TYPES = frozenset({"text", "input_text", "output_text"})
_IMAGE_TYPES = frozenset({"image_url", "input_image"})
_FILE_TYPES = frozenset({"file", "input_file"})
_ROLE_ALIASES = {"developer": "system"}


# ---------------------------------------------------------------------------
# Wire → canonical
# ---------------------------------------------------------------------------


def _as_dict(item: Any) -> dict[str, Any] | None:
    """Coerce a wire item (dict or SDK object) into a plain dict."""
    if isinstance(item, Mapping):
        return dict(item)
    dump = getattr(item, "model_dump", None)
    if callable(dump):
        dumped = dump()
        if isinstance(dumped, Mapping):
            return dict(dumped)
    return None


def _convert_part(part: Any, default_type: str) -> ContentPart | None:
    if isinstance(part, str):
        return TextPart(text=part)
    data = _as_dict(part)
    if data is None:
        return None
    part_type = data.get("type") or default_type

    if part_type in _TEXT_TYPES:
        text = data.get("text")
        return TextPart(text=text) if isinstance(text, str) else None

    if part_type in _IMAGE_TYPES:
        image = data.get("image_url")
        url = image.get("url") if isinstance(image, Mapping) else image
        url = url or data.get("url")
        return ImagePart(url=url) if isinstance(url, str) and url else None

    if part_type in _FILE_TYPES:
        file_info = data.get("file")
        source = file_info if isinstance(file_info, Mapping) else data
        return FilePart(filename=source.get("filename"), data=source.get("file_data"))

    logger.debug("Dropping unsupported content part type %r", part_type)
    return None


def _expand_content(content: Any, role: str) -> tuple[ContentPart, ...]:
    """Expand wire content (string or part list) into canonical parts."""
    if content is None:
        return ()
    default_type = "output_text" if role == "assistant" else "input_text"
    raw_parts = content if isinstance(content, list) else [content]
    parts = (_convert_part(p, default_type) for p in raw_parts)
    return tuple(p for p in parts if p is not None)


def _arguments_text(arguments: Any) -> str:
    if arguments is None:
        return "{}"
    if isinstance(arguments, str):
        return arguments
    return _json.dumps(arguments)


class _Normalizer:
    """Accumulates canonical messages while tracking call-id pairing."""

    def __init__(self) -> None:
        self.messages: list[Message] = []
        self.invoked: set[str] = set()
        self.answered: set[str] = set()

    def invocation(self, call_id: Any, name: Any, arguments: Any) -> None:
        if not isinstance(call_id, str) or not call_id or not isinstance(name, str):
            logger.debug("Dropping malformed tool call descriptor (call_id=%r, name=%r)", call_id, name)
            return
        if call_id in self.invoked:
            logger.warning("Dropping tool call reusing call_id %s", call_id)
            return
        self.invoked.add(call_id)
        self.messages.append(
            ToolInvocation(call_id=call_id, name=name, arguments=_arguments_text(arguments))
        )

    def result(self, call_id: Any, output: Any) -> None:
        if call_id not in self.invoked:
            logger.debug("Dropping orphan tool result for call_id %r", call_id)
            return
        if call_id in self.answered:
            logger.debug("Dropping duplicate tool result for call_id %r", call_id)
            return
        self.answered.add(call_id)
        self.messages.append(ToolResult(call_id=call_id, output=_output_text(output)))


def _output_text(output: Any) -> str:
    if output is None:
        return ""
    if isinstance(output, str):
        return output
    if isinstance(output, list):
        texts = [p.text for p in _expand_content(output, "tool") if isinstance(p, TextPart)]
        return "".join(texts)
    return _json.dumps(output, default=str)


def normalize(wire_messages: Iterable[Any]) -> Conversation:
    """Convert a wire message array (either encoding) into the canonical IR."""
    acc = _Normalizer()

    for item in wire_messages:
        if isinstance(item, (Turn, ToolInvocation, ToolResult)):
            if isinstance(item, ToolInvocation):
                acc.invocation(item.call_id, item.name, item.arguments)
            elif isinstance(item, ToolResult):
                acc.result(item.call_id, item.output)
            else:
                acc.messages.append(item)
            continue

        msg = _as_dict(item)
        if msg is None:
            logger.debug("Dropping unsupported wire item of type %s", type(item).__name__)
            continue

        role = msg.get("role")
        msg_type = msg.get("type")

        if role == "tool":
            acc.result(msg.get("tool_call_id"), msg.get("content"))
            continue

        if msg_type == "function_call":
            acc.invocation(msg.get("call_id"), msg.get("name"), msg.get("arguments"))
            continue

        if msg_type == "function_call_output":
            acc.result(msg.get("call_id"), msg.get("output"))
            continue

        tool_calls = msg.get("tool_calls") or []

        if role and "content" in msg:
            role = _ROLE_ALIASES.get(role, role)
            if role not in ("system", "user", "assistant"):
                logger.debug("Dropping message with unsupported role %r", role)
            else:
                content = _expand_content(msg.get("content"), role)
                # An assistant message that only carries tool calls has no turn of its own.
                if content or not tool_calls:
                    acc.messages.append(Turn(role=role, content=content))

        for call in tool_calls:
            call_data = _as_dict(call) or {}
            function = _as_dict(call_data.get("function")) or {}
            acc.invocation(call_data.get("id"), function.get("name"), function.get("arguments"))

    return tuple(acc.messages)


# ---------------------------------------------------------------------------
# Canonical → wire
# ---------------------------------------------------------------------------


def _completions_part(part: ContentPart) -> dict[str, Any]:
    if isinstance(part, TextPart):
        return {"type": "text", "text": part.text}
    if isinstance(part, ImagePart):
        return {"type": "image_url", "image_url": {"url": part.url}}
    return {"type": "file", "file": {"filename": part.filename, "file_data": part.data}}


def _responses_part(part: ContentPart, role: str) -> dict[str, Any]:
    if isinstance(part, TextPart):
        return {"type": "output_text" if role == "assistant" else "input_text", "text": part.text}
    if isinstance(part, ImagePart):
        return {"type": "input_image", "image_url": part.url}
    return {"type": "input_file", "filename": part.filename, "file_data": part.data}


def to_completions(conversation: Iterable[Message]) -> list[dict[str, Any]]:
    """Render the IR as a chat-completions message array.

    Consecutive tool invocations are batched into one assistant message. When
    the message just before the batch is an assistant turn with content, the
    batch is attached to it instead of opening a new message.
    """
    out: list[dict[str, Any]] = []
    pending: list[dict[str, Any]] = []
    emitted_calls: set[str] = set()

    def flush() -> None:
        if not pending:
            return
        last = out[-1] if out else None
        if (
            last is not None
            and last.get("role") == "assistant"
            and last.get("content")
            and "tool_calls" not in last
        ):
            last["tool_calls"] = list(pending)
        else:
            out.append({"role": "assistant", "content": None, "tool_calls": list(pending)})
        pending.clear()

    for msg in conversation:
        if isinstance(msg, ToolInvocation):
            emitted_calls.add(msg.call_id)
            pending.append({
                "id": msg.call_id,
                "type": "function",
                "function": {"name": msg.name, "arguments": msg.arguments},
            })
            continue

        flush()
        if isinstance(msg, Turn):
            out.append({
                "role": msg.role,
                "content": [_completions_part(p) for p in msg.content],
            })
        elif isinstance(msg, ToolResult):
            if msg.call_id not in emitted_calls:
                logger.debug("Omitting orphan tool result %s from completions output", msg.call_id)
                continue
            out.append({"role": "tool", "tool_call_id": msg.call_id, "content": msg.output})

    flush()
    return out


def to_responses(conversation: Iterable[Message]) -> list[dict[str, Any]]:
    """Render the IR as a responses input array, one element per message."""
    out: list[dict[str, Any]] = []
    emitted_calls: set[str] = set()

    for msg in conversation:
        if isinstance(msg, Turn):
            out.append({
                "role": msg.role,
                "content": [_responses_part(p, msg.role) for p in msg.content],
            })
        elif isinstance(msg, ToolInvocation):
            emitted_calls.add(msg.call_id)
            out.append({
                "type": "function_call",
                "call_id": msg.call_id,
                "name": msg.name,
                "arguments": msg.arguments,
            })
        elif isinstance(msg, ToolResult):
            if msg.call_id not in emitted_calls:
                logger.debug("Omitting orphan tool result %s from responses output", msg.call_id)
                continue
            out.append({
                "type": "function_call_output",
                "call_id": msg.call_id,
                "output": msg.output,
            })

    return out


def render(conversation: Iterable[Message], api: Literal["completions", "responses"]) -> list[dict[str, Any]]:
    """Render the IR in the encoding used by ``api``."""
    if api == "completions":
        return to_completions(conversation)
    return to_responses(conversation)
