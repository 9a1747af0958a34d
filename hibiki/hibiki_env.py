"""
Data environments, the shared state that owns the data roots, and the
request/event records passed between the interpreter and its host.
"""
import collections.abc
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from hibiki.hibiki_config import RuntimeLimits
from hibiki.hibiki_datatypes import NoAttr, ObservableCell
from hibiki.hibiki_errors import ResolutionError, RtContext


@dataclass
class FunctionDef:
    name: str
    fn: Callable
    # native functions see live store structures; others get resolved deep copies
    native: bool = True


@dataclass
class HandlerPath:
    module: str
    path: str
    method: Optional[str] = None
    pathfrag: Optional[str] = None

    def full_path(self) -> str:
        prefix = f"{self.method} " if self.method else ""
        suffix = f"#{self.pathfrag}" if self.pathfrag else ""
        if self.module == "http":
            return f"{prefix}{self.path}{suffix}"
        return f"{prefix}//@{self.module}{self.path}{suffix}"


_METHOD_RE = re.compile(r'^(GET|POST|PUT|PATCH|DELETE|HEAD|OPTIONS)\s+(\S.*)$', re.IGNORECASE)
_MODULE_RE = re.compile(r'^//@([A-Za-z_][A-Za-z0-9_-]*)([/:].*)?$')


def parse_handler(text: str) -> HandlerPath:
    """`GET //@local/items#frag` -> HandlerPath('local', '/items', 'GET', 'frag')."""
    if not isinstance(text, str) or not text.strip():
        raise ResolutionError(f"Invalid handler path {text!r}")
    text = text.strip()
    method = None
    m = _METHOD_RE.match(text)
    if m:
        method = m.group(1).upper()
        text = m.group(2).strip()
    path, _, frag = text.partition("#")
    m = _MODULE_RE.match(path)
    if m:
        rest = m.group(2) or "/"
        if rest.startswith(":"):
            rest = "/" + rest[1:]
        return HandlerPath(m.group(1), rest, method, frag or None)
    return HandlerPath("http", path, method, frag or None)


@dataclass
class Request:
    """What a call-handler action hands to the host."""
    callpath: HandlerPath
    data: Dict[str, Any] = field(default_factory=dict)
    pure: bool = False
    lib_context: Optional[str] = None
    rt_context: Optional[RtContext] = None
    env: Any = None


@dataclass
class HibikiEvent:
    name: str
    data: Dict[str, Any] = field(default_factory=dict)
    bubble: bool = False
    # "@"-prefixed keys stripped from the data
    meta: Dict[str, Any] = field(default_factory=dict)
    target: Optional[str] = None


class ContextProxy(collections.abc.MutableMapping):
    """The `@` root: reads walk up the environment chain, writes land in this env's specials."""

    def __init__(self, env: "DataEnvironment"):
        self.env = env

    def __getitem__(self, key):
        env = self.env
        while env is not None:
            if key in env.specials:
                return env.specials[key]
            env = env.parent
        raise KeyError(key)

    def __setitem__(self, key, value):
        self.env.specials[key] = value

    def __delitem__(self, key):
        del self.env.specials[key]

    def _squashed(self) -> dict:
        chain = []
        env = self.env
        while env is not None:
            chain.append(env)
            env = env.parent
        out: dict = {}
        for e in reversed(chain):
            out.update(e.specials)
        return out

    def __iter__(self):
        return iter(self._squashed())

    def __len__(self):
        return len(self._squashed())

    def __repr__(self):
        return f"<ContextProxy {list(self._squashed().keys())}>"


def _as_cell(value: Any) -> Optional[ObservableCell]:
    if value is None or isinstance(value, ObservableCell):
        return value
    return ObservableCell(value)


class DataEnvironment:
    """One link in the environment chain: context specials, local data, handlers and per-component roots."""

    def __init__(self, state: "HibikiState", parent: Optional["DataEnvironment"] = None,
                 specials: Optional[dict] = None, handlers: Optional[dict] = None,
                 component_root: Any = None, args_root: Any = None,
                 html_context: Optional[str] = None, lib_context: Optional[str] = None,
                 event_boundary: Optional[str] = None, local_data: Any = NoAttr,
                 block_local_data: bool = False):
        if event_boundary not in (None, "soft", "hard"):
            raise ValueError(f"Invalid event boundary {event_boundary!r}")
        self.state = state
        self.parent = parent
        self.specials: dict = dict(specials or {})
        self.handlers: dict = dict(handlers or {})
        self.component_cell = _as_cell(component_root)
        self.args_cell = _as_cell(args_root)
        self.html_context = html_context
        self.lib_context = lib_context
        self.event_boundary = event_boundary
        self.local_data = local_data
        self.has_local_data = local_data is not NoAttr
        self.block_local_data = block_local_data

    # --- roots ---

    def _caret_env(self, caret: int) -> "DataEnvironment":
        env = self
        for _ in range(caret):
            if env.parent is None:
                break
            env = env.parent
        return env

    def _find_cell(self, attr: str) -> Optional[ObservableCell]:
        env = self
        while env is not None:
            cell = getattr(env, attr)
            if cell is not None:
                return cell
            env = env.parent
        return None

    def _local(self, caret: int) -> Any:
        skip = caret
        env = self
        while env is not None:
            if env.has_local_data:
                if skip == 0:
                    return env.local_data
                skip -= 1
            if env.block_local_data:
                return None
            env = env.parent
        return None

    def resolve_root(self, name: str, caret: int = 0) -> Any:
        match name:
            case "global" | "data":
                return self.state.get_root("global")
            case "state":
                return self.state.get_root("state")
            case "local":
                return self._local(caret)
            case "null":
                return None
            case "context":
                return ContextProxy(self._caret_env(caret))
            case "currentcontext":
                return self._caret_env(caret).specials
            case "component" | "c":
                cell = self._find_cell("component_cell")
                return cell.get() if cell is not None else None
            case "args":
                cell = self._find_cell("args_cell")
                return cell.get() if cell is not None else None
        raise ResolutionError(f"Invalid root path '{name}'")

    def set_root(self, name: str, value: Any, caret: int = 0) -> None:
        match name:
            case "global" | "data":
                self.state.set_root("global", value)
                return
            case "state":
                self.state.set_root("state", value)
                return
            case "component" | "c" | "args":
                attr = "args_cell" if name == "args" else "component_cell"
                cell = self._find_cell(attr)
                if cell is None:
                    raise ResolutionError(f"No '{name}' root is declared in this environment")
                cell.set(value)
                return
        raise ResolutionError(f"Cannot replace root '{name}'")

    # --- chain ---

    def make_child_env(self, specials: Optional[dict] = None, *, html_context: Optional[str] = None,
                       block_local_data: bool = False, local_data: Any = NoAttr,
                       handlers: Optional[dict] = None, event_boundary: Optional[str] = None,
                       component_root: Any = None, args_root: Any = None,
                       lib_context: Optional[str] = None) -> "DataEnvironment":
        return DataEnvironment(
            self.state, parent=self, specials=specials, handlers=handlers,
            component_root=component_root, args_root=args_root,
            html_context=html_context, lib_context=lib_context,
            event_boundary=event_boundary, local_data=local_data,
            block_local_data=block_local_data,
        )

    def resolve_event_handler(self, name: str, rtctx: Optional[RtContext] = None,
                              bubble: bool = False) -> Optional[Tuple[Any, "DataEnvironment"]]:
        """Finds (handler block, defining env). Stops at a hard boundary unless bubbling."""
        env = self
        while env is not None:
            block = env.handlers.get(name)
            if block is not None and not (rtctx is not None and rtctx.is_handler_in_stack(env, name)):
                return block, env
            if env.event_boundary == "hard" and not bubble:
                return None
            env = env.parent
        return None

    def get_lib_context(self) -> Optional[str]:
        env = self
        while env is not None:
            if env.lib_context is not None:
                return env.lib_context
            env = env.parent
        return None

    def get_evaluator(self):
        return self.state.evaluator

    def get_function(self, name: str) -> Optional[FunctionDef]:
        return self.state.get_function(name)

    def get_host(self):
        return self.state.host

    def get_full_html_context(self) -> str:
        parts = []
        env = self
        while env is not None:
            if env.html_context:
                parts.append(env.html_context)
            env = env.parent
        return " | ".join(reversed(parts))

    def print_stack(self) -> List[str]:
        lines = []
        env = self
        depth = 0
        while env is not None:
            desc = f"{depth}: {env.html_context or '<env>'}"
            if env.specials:
                desc += f" specials={sorted(env.specials.keys())}"
            if env.handlers:
                desc += f" handlers={sorted(env.handlers.keys())}"
            if env.has_local_data:
                desc += " local=yes"
            if env.event_boundary:
                desc += f" boundary={env.event_boundary}"
            lines.append(desc)
            env = env.parent
            depth += 1
        return lines

    def __repr__(self):
        return f"<DataEnvironment {self.get_full_html_context() or '<root>'}>"


class HibikiState:
    """
    Owns everything the interpreter core must not hold globally: the global
    and app-state roots, the function registry, the host and the limits.
    """

    def __init__(self, global_data: Any = None, state_data: Any = None, host: Any = None,
                 limits: Optional[RuntimeLimits] = None, builtins: bool = True):
        from hibiki.hibiki_interpreter import Evaluator
        self.limits = limits or RuntimeLimits.from_env()
        self.roots: Dict[str, ObservableCell] = {
            "global": ObservableCell({} if global_data is None else global_data),
            "state": ObservableCell({} if state_data is None else state_data),
        }
        if host is None:
            from hibiki.hibiki_runtime import LocalHost
            host = LocalHost()
        self.host = host
        self.evaluator = Evaluator(self.limits)
        self.functions: Dict[str, FunctionDef] = {}
        if builtins:
            from hibiki.hibiki_runtime import StdLib
            StdLib().register(self)

    def get_root(self, name: str) -> Any:
        cell = self.roots.get(name)
        if cell is None:
            raise ResolutionError(f"Invalid root path '{name}'")
        return cell.get()

    def set_root(self, name: str, value: Any) -> None:
        cell = self.roots.get(name)
        if cell is None:
            raise ResolutionError(f"Invalid root path '{name}'")
        cell.set(value)

    def subscribe(self, name: str, callback: Callable[[Any, Any], None]) -> Callable[[], None]:
        return self.roots[name].subscribe(callback)

    def register_function(self, name: str, fn: Callable, native: bool = True) -> None:
        self.functions[name.lower()] = FunctionDef(name.lower(), fn, native)

    def get_function(self, name: str) -> Optional[FunctionDef]:
        return self.functions.get(name.lower())

    def root_env(self, **kwargs) -> DataEnvironment:
        kwargs.setdefault("html_context", "<root>")
        kwargs.setdefault("lib_context", "main")
        return DataEnvironment(self, **kwargs)


__all__ = [
    "FunctionDef", "HandlerPath", "parse_handler", "Request", "HibikiEvent",
    "ContextProxy", "DataEnvironment", "HibikiState",
]
