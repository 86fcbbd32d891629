"""System-turn rendering from YAML/Jinja2 templates.

Templates are YAML files holding a ``messages`` list whose ``content``
entries are Jinja2 templates. The agent's system turn is rendered from the
bundled ``templates/system_prompt.yaml``; callers may render their own with
``render_prompt``.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Sequence

import yaml  # type: ignore[import-untyped]
from jinja2 import BaseLoader, Environment, StrictUndefined, TemplateNotFound

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).parent / "templates"
SYSTEM_PROMPT_TEMPLATE = TEMPLATE_DIR / "system_prompt.yaml"


class _YAMLInlineLoader(BaseLoader):
    """Jinja2 loader for inline strings (no filesystem template inheritance)."""

    def get_source(
        self, environment: Environment, template: str
    ) -> tuple[str, str | None, None]:
        raise TemplateNotFound(template)


# StrictUndefined so missing vars fail loud.
_env = Environment(
    loader=_YAMLInlineLoader(),
    undefined=StrictUndefined,
    trim_blocks=True,
    lstrip_blocks=True,
)


def _load_messages(path: Path) -> list[dict[str, Any]]:
    if not path.exists():
        raise FileNotFoundError(f"Prompt template not found: {path}")

    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError(f"Prompt YAML must be a mapping, got {type(raw).__name__}: {path}")

    messages_raw = raw.get("messages")
    if not messages_raw:
        raise ValueError(f"Prompt YAML missing 'messages' key: {path}")
    if not isinstance(messages_raw, list):
        raise ValueError(f"'messages' must be a list, got {type(messages_raw).__name__}: {path}")

    for i, msg in enumerate(messages_raw):
        if not isinstance(msg, dict) or "role" not in msg or "content" not in msg:
            raise ValueError(f"Message {i} must have 'role' and 'content' keys: {path}")
    return messages_raw


def render_prompt(template_path: str | Path, **context: Any) -> list[dict[str, str]]:
    """Load a YAML prompt template and render its Jinja2 placeholders.

    Args:
        template_path: Path to the YAML file (absolute, or relative to cwd).
        **context: Variables to substitute into the templates.

    Returns:
        List of ``{"role": ..., "content": ...}`` dicts.

    Raises:
        FileNotFoundError: If template_path doesn't exist.
        yaml.YAMLError: If YAML is malformed.
        jinja2.UndefinedError: If a template variable is missing from context.
        ValueError: If the YAML structure is invalid.
    """
    path = Path(template_path)
    if not path.is_absolute():
        path = Path.cwd() / path

    messages: list[dict[str, str]] = []
    for msg in _load_messages(path):
        template = _env.from_string(str(msg["content"]))
        messages.append({"role": str(msg["role"]), "content": template.render(**context).strip()})

    logger.debug(
        "Rendered prompt %s (%d messages, %d total chars)",
        path.name,
        len(messages),
        sum(len(m["content"]) for m in messages),
    )
    return messages


def system_prompt(
    purpose: str,
    sub_agents: Sequence[str] = (),
    output_format: str = "text",
) -> str:
    """Render the system turn for an agent."""
    messages = render_prompt(
        SYSTEM_PROMPT_TEMPLATE,
        purpose=purpose,
        sub_agents=list(sub_agents),
        output_format=output_format,
    )
    return "\n".join(m["content"] for m in messages if m["role"] == "system")
