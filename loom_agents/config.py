"""Typed runtime configuration for loom_agents.

One process-wide default is built lazily from the environment. Agents and
runners read it only when they were not handed an explicit value, and tests
override it with ``configure()`` / ``reset_config()`` instead of mutating
shared client objects.
"""

from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass
from typing import Any, Literal

logger = logging.getLogger(__name__)

API_ENV = "LOOM_API"
DEFAULT_MODEL_ENV = "LOOM_DEFAULT_MODEL"
TIMEOUT_ENV = "LOOM_TIMEOUT_S"
MAX_DEPTH_ENV = "LOOM_MAX_DEPTH"
NUM_RETRIES_ENV = "LOOM_NUM_RETRIES"
API_BASE_ENV = "LOOM_API_BASE"

ApiFlavor = Literal["completions", "responses"]

DEFAULT_API: ApiFlavor = "responses"
DEFAULT_MODEL = "gpt-4o"
DEFAULT_TIMEOUT_S = 60.0
DEFAULT_MAX_DEPTH = 10
DEFAULT_NUM_RETRIES = 2


@dataclass(frozen=True)
class LoomConfig:
    """Runtime policy/config resolved once and passed explicitly where needed."""

    api: ApiFlavor = DEFAULT_API
    default_model: str = DEFAULT_MODEL
    timeout_s: float = DEFAULT_TIMEOUT_S
    max_depth: int = DEFAULT_MAX_DEPTH
    num_retries: int = DEFAULT_NUM_RETRIES
    api_base: str | None = None

    @classmethod
    def from_env(cls) -> "LoomConfig":
        """Build typed config from environment variables."""
        api_raw = os.environ.get(API_ENV, DEFAULT_API).strip().lower()
        if api_raw in {"completions", "responses"}:
            api: ApiFlavor = api_raw  # type: ignore[assignment]
        else:
            logger.warning(
                "Invalid %s=%r; expected completions/responses. Defaulting to %s.",
                API_ENV,
                api_raw,
                DEFAULT_API,
            )
            api = DEFAULT_API

        return cls(
            api=api,
            default_model=os.environ.get(DEFAULT_MODEL_ENV, "").strip() or DEFAULT_MODEL,
            timeout_s=_env_number(TIMEOUT_ENV, DEFAULT_TIMEOUT_S, float, minimum=0.0),
            max_depth=_env_number(MAX_DEPTH_ENV, DEFAULT_MAX_DEPTH, int, minimum=1),
            num_retries=_env_number(NUM_RETRIES_ENV, DEFAULT_NUM_RETRIES, int, minimum=0),
            api_base=os.environ.get(API_BASE_ENV) or None,
        )


def _env_number(name: str, default: Any, cast: type, *, minimum: float) -> Any:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = cast(raw.strip())
    except ValueError:
        logger.warning("Invalid %s=%r; expected a number. Defaulting to %s.", name, raw, default)
        return default
    if value < minimum:
        logger.warning("Invalid %s=%r; must be >= %s. Defaulting to %s.", name, raw, minimum, default)
        return default
    return value


_active: LoomConfig | None = None


def get_config() -> LoomConfig:
    """Return the process-wide default config, building it from env on first use."""
    global _active  # noqa: PLW0603
    if _active is None:
        _active = LoomConfig.from_env()
    return _active


def configure(config: LoomConfig | None = None, **overrides: Any) -> LoomConfig:
    """Replace the process-wide default.

    ``configure(api="completions")`` keeps every other field of the current
    default; ``configure(LoomConfig(...))`` installs a whole config.
    """
    global _active  # noqa: PLW0603
    base = config if config is not None else get_config()
    _active = dataclasses.replace(base, **overrides) if overrides else base
    logger.debug("loom_agents config set: %s", _active)
    return _active


def reset_config() -> None:
    """Forget the process-wide default; the next ``get_config()`` rereads env."""
    global _active  # noqa: PLW0603
    _active = None
