"""
Exception taxonomy, the ErrorValue runtime value, and the RtContext
diagnostics stack that every error path renders.
"""
from dataclasses import dataclass
from typing import Any, List, Optional

from hibiki.hibiki_datatypes import SpecialValue


class HibikiException(Exception):
    """Base class for all interpreter errors."""


class ConstructionError(HibikiException):
    """A path or action is malformed. Raised at compile time or first use."""


class ResolutionError(HibikiException):
    """A type mismatch or bad root while walking or mutating a path."""


class RuntimeLimitError(HibikiException):
    """The action-count or stack-depth ceiling was exceeded."""


class CycleError(HibikiException):
    def __init__(self, trail: str):
        super().__init__(f"cycle detected: {trail}")
        self.trail = trail


@dataclass
class ContextFrame:
    desc: str
    handler_name: Optional[str] = None
    handler_env: Any = None


class RtContext:
    """
    The call-context stack for one handler chain. Frames are plain
    descriptions plus optional handler metadata; `action_count` is the
    chain-wide counter checked against RuntimeLimits.max_actions.
    """

    def __init__(self):
        self.stack: List[ContextFrame] = []
        self.action_count: int = 0

    def push_context(self, desc: str, handler_name: Optional[str] = None, handler_env: Any = None) -> None:
        self.stack.append(ContextFrame(desc, handler_name, handler_env))

    def replace_context(self, desc: str, handler_name: Optional[str] = None, handler_env: Any = None) -> None:
        self.pop_context()
        self.push_context(desc, handler_name, handler_env)

    def pop_context(self) -> Optional[ContextFrame]:
        if self.stack:
            return self.stack.pop()
        return None

    def revert_to(self, mark: int) -> None:
        del self.stack[mark:]

    def depth(self) -> int:
        return len(self.stack)

    def count_action(self, limit: int) -> None:
        self.action_count += 1
        if self.action_count > limit:
            raise RuntimeLimitError(f"Max action count exceeded ({limit})")

    def get_top_handler_context(self) -> Optional[ContextFrame]:
        for frame in reversed(self.stack):
            if frame.handler_name is not None:
                return frame
        return None

    def is_handler_in_stack(self, env: Any, handler_name: str) -> bool:
        return any(f.handler_env is env and f.handler_name == handler_name for f in self.stack)

    def push_error_context(self, err: Any) -> None:
        msg = err.message if isinstance(err, ErrorValue) else str(err)
        desc = f"throw error: <<{msg}>>"
        if len(desc) > 80:
            desc = desc[:77] + "..."
        self.push_context(desc)

    def copy(self) -> "RtContext":
        rtn = RtContext()
        rtn.stack = list(self.stack)
        rtn.action_count = self.action_count
        return rtn

    def as_string(self, indent: str = "") -> str:
        return "\n".join(f"{indent}{f.desc}" for f in reversed(self.stack))

    def __repr__(self):
        return f"<RtContext depth={len(self.stack)} actions={self.action_count}>"


class ErrorValue(SpecialValue):
    """An error as a runtime value: message, a snapshot of the context stack, optional cause."""

    FIELDS = ("message", "context", "event", "cause")

    def __init__(self, message: str, rtctx: Optional[RtContext] = None, cause: Optional[BaseException] = None,
                 event: Optional[str] = None):
        self.message = message
        self.rtctx = rtctx.copy() if rtctx is not None else RtContext()
        self.cause = cause
        self.event = event

    def get_field(self, key: str) -> Any:
        match key:
            case "message":
                return self.message
            case "context":
                return self.rtctx.as_string()
            case "event":
                return self.event
            case "cause":
                return None if self.cause is None else str(self.cause)
        return None

    def display_string(self) -> str:
        return f"Hibiki Error | {self.message}"

    def __str__(self):
        rtn = f"Hibiki Error | {self.message}\n"
        ctx = self.rtctx.as_string("> ")
        if ctx:
            rtn += ctx + "\n"
        return rtn

    def __repr__(self):
        return f"<ErrorValue {self.message!r}>"


class UserThrownError(HibikiException):
    """Carries an ErrorValue out of a throw action or a library function."""

    def __init__(self, error: ErrorValue):
        super().__init__(error.message)
        self.error = error


def exception_message(exc: BaseException) -> str:
    if isinstance(exc, HibikiException):
        return str(exc)
    text = str(exc)
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__


def make_error_value(exc: BaseException, rtctx: Optional[RtContext] = None, event: Optional[str] = None) -> ErrorValue:
    """Wrap any exception as an ErrorValue, capturing the live context stack."""
    if isinstance(exc, UserThrownError):
        err = exc.error
        if event is not None and err.event is None:
            err.event = event
        return err
    return ErrorValue(exception_message(exc), rtctx, cause=exc, event=event)


__all__ = [
    "HibikiException", "ConstructionError", "ResolutionError", "RuntimeLimitError",
    "UserThrownError", "CycleError", "ContextFrame", "RtContext", "ErrorValue",
    "exception_message", "make_error_value",
]
