"""
LValues: cheap read/write handles over a path, bound either to an
environment or to an independently-rooted ObservableCell.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

from hibiki.hibiki_config import DEFAULT_LIMITS
from hibiki.hibiki_datatypes import ObservableCell, SpecialValue
from hibiki.hibiki_errors import ResolutionError
from hibiki.hibiki_paths import ArrayPart, MapPart, Path, RootPart, string_path

logger = logging.getLogger(__name__)


class LValue(SpecialValue, ABC):
    readonly = False

    @abstractmethod
    def get(self) -> Any: raise NotImplementedError
    @abstractmethod
    def set(self, value: Any) -> None: raise NotImplementedError
    @abstractmethod
    def sub_array_index(self, index: int) -> "LValue": raise NotImplementedError
    @abstractmethod
    def sub_map_key(self, key: str) -> "LValue": raise NotImplementedError

    def path_string(self) -> Optional[str]:
        return None

    def as_readonly(self) -> "LValue":
        return self if self.readonly else ReadOnlyLValue(self)

    def display_string(self) -> str:
        return "[lvalue]"


class BoundLValue(LValue):
    """A path resolved against an environment every time it is read or written."""

    def __init__(self, path: Path, env: Any):
        self.path = path
        self.env = env

    def _resolver(self):
        return self.env.get_evaluator().path_resolver

    def get(self) -> Any:
        return self._resolver().resolve_throw(self.path, self.env)

    def set(self, value: Any) -> None:
        self._resolver().write_throw(self.path, self.env, value, op="set")

    def sub_array_index(self, index: int) -> "BoundLValue":
        return BoundLValue(Path(self.path.parts + (ArrayPart(index),)), self.env)

    def sub_map_key(self, key: str) -> "BoundLValue":
        return BoundLValue(Path(self.path.parts + (MapPart(key),)), self.env)

    def path_string(self) -> str:
        return string_path(self.path)

    def __repr__(self):
        return f"<BoundLValue {string_path(self.path)}>"


class ObjectLValue(LValue):
    """A static path into a container boxed by its own ObservableCell."""

    def __init__(self, root: ObservableCell, path: Optional[Path] = None):
        self.root = root
        self.path = path if path is not None else Path([RootPart("global")])
        if not self.path.is_static():
            raise ResolutionError("ObjectLValue paths must be static")

    def get(self) -> Any:
        from hibiki.hibiki_interpreter import PathResolver
        return PathResolver().resolve_in_container(self.path, self.root.get())

    def set(self, value: Any) -> None:
        from hibiki.hibiki_interpreter import PathResolver
        current = self.root.get()
        updated = PathResolver().write_in_container(self.path, current, value)
        if updated is not current or len(self.path) == 1:
            self.root.set(updated)

    def sub_array_index(self, index: int) -> "ObjectLValue":
        return ObjectLValue(self.root, Path(self.path.parts + (ArrayPart(index),)))

    def sub_map_key(self, key: str) -> "ObjectLValue":
        return ObjectLValue(self.root, Path(self.path.parts + (MapPart(key),)))

    def path_string(self) -> str:
        return string_path(self.path)

    def __repr__(self):
        return f"<ObjectLValue {string_path(self.path)}>"


class ReadOnlyLValue(LValue):
    """Wraps another LValue; writes are silently dropped."""
    readonly = True

    def __init__(self, wrapped: LValue):
        self.wrapped = wrapped

    def get(self) -> Any:
        return self.wrapped.get()

    def set(self, value: Any) -> None:
        logger.debug("ignoring write to read-only lvalue %s", self.path_string())

    def sub_array_index(self, index: int) -> "ReadOnlyLValue":
        return ReadOnlyLValue(self.wrapped.sub_array_index(index))

    def sub_map_key(self, key: str) -> "ReadOnlyLValue":
        return ReadOnlyLValue(self.wrapped.sub_map_key(key))

    def path_string(self) -> Optional[str]:
        return self.wrapped.path_string()

    def __repr__(self):
        return f"<ReadOnlyLValue {self.wrapped!r}>"


def create_readonly_lvalue(value: Any) -> ReadOnlyLValue:
    return ReadOnlyLValue(ObjectLValue(ObservableCell(value)))


def resolve_through(value: Any, max_depth: int = DEFAULT_LIMITS.max_lvalue_depth) -> Any:
    """Follows a chain of LValues to a concrete value, at most `max_depth` hops."""
    depth = 0
    while isinstance(value, LValue):
        if depth >= max_depth:
            raise ResolutionError(f"LValue chain exceeds max depth ({max_depth})")
        value = value.get()
        depth += 1
    return value


__all__ = [
    "LValue", "BoundLValue", "ObjectLValue", "ReadOnlyLValue",
    "create_readonly_lvalue", "resolve_through",
]
