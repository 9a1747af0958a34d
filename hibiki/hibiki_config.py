"""
Runtime limits and debug switches for the Hibiki interpreter.
"""
import os
from dataclasses import dataclass


def debug_enabled() -> bool:
    return bool(os.environ.get("HIBIKI_DEBUG"))


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


@dataclass
class RuntimeLimits:
    """Ceilings that guard against runaway handlers and unbounded structures."""
    max_actions: int = 1000
    max_stack: int = 30
    max_array_size: int = 10000
    max_lvalue_depth: int = 5
    max_deref_depth: int = 5
    # above this context depth a failure is no longer turned into an error event
    max_error_stack: int = 20

    @classmethod
    def from_env(cls) -> "RuntimeLimits":
        base = cls()
        return cls(
            max_actions=_env_int("HIBIKI_MAX_ACTIONS", base.max_actions),
            max_stack=_env_int("HIBIKI_MAX_STACK", base.max_stack),
            max_array_size=_env_int("HIBIKI_MAX_ARRAY_SIZE", base.max_array_size),
        )


DEFAULT_LIMITS = RuntimeLimits()
