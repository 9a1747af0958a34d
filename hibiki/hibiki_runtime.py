import collections.abc
import functools
import inspect
import json
import logging
import math
import re
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Literal, Optional

from hibiki.hibiki_actions import ActionRunner
from hibiki.hibiki_datatypes import (
    Blob, NoAttr, to_boolean, to_display_string, to_number,
)
from hibiki.hibiki_env import DataEnvironment, HibikiEvent, HibikiState, Request
from hibiki.hibiki_errors import (
    ConstructionError, CycleError, ErrorValue, ResolutionError, RtContext, RuntimeLimitError,
    UserThrownError, make_error_value,
)
from hibiki.hibiki_lvalue import LValue, resolve_through
from hibiki.hibiki_serialize import _printf_arg, to_json
from hibiki.hibiki_structural import deep_copy, deep_equal

logger = logging.getLogger(__name__)


# ===================================================================
# 1. Hosts
# ===================================================================

class HibikiHost(ABC):
    """
    The required base class for the object the interpreter talks to for
    everything outside the data model: handler calls, unhandled events and
    errors, invalidation and markup installation.
    """

    @abstractmethod
    async def call_handler(self, request: Request) -> Any: raise NotImplementedError

    def unhandled_event(self, event: HibikiEvent, rtctx: RtContext) -> None:
        logger.warning("unhandled event %s", event.name)

    def unhandled_error(self, err: ErrorValue, rtctx: RtContext) -> None:
        self.report_error(err)

    def report_error(self, err: ErrorValue) -> None:
        logger.error("%s", str(err).rstrip("\n"))

    def invalidate(self, regex: Optional[str]) -> None:
        pass

    def install_markup(self, value: Any, env: DataEnvironment) -> None:
        logger.debug("install_markup ignored (%s)", to_display_string(value))

    def find_node_env(self, node_id: str) -> Optional[DataEnvironment]:
        return None


class LocalHost(HibikiHost):
    """
    An in-process host. `//@local/<name>` calls go to Python callables
    registered with `register_local_handler`; everything the interpreter
    escalates is recorded for inspection.
    """

    def __init__(self):
        self.local_handlers: Dict[str, Callable] = {}
        self.node_envs: Dict[str, DataEnvironment] = {}
        self.unhandled_events: List[HibikiEvent] = []
        self.unhandled_errors: List[ErrorValue] = []
        self.reported_errors: List[ErrorValue] = []
        self.invalidations: List[Optional[str]] = []
        self.markup: List[Any] = []

    def register_local_handler(self, name: str, fn: Callable) -> None:
        """`fn(request)` may be sync or async; its result is handled like any host reply."""
        self.local_handlers[name.strip("/")] = fn

    def register_node_env(self, node_id: str, env: DataEnvironment) -> None:
        self.node_envs[node_id] = env

    async def call_handler(self, request: Request) -> Any:
        callpath = request.callpath
        if callpath.module != "local":
            raise ResolutionError(f"No handler module '{callpath.module}' ({callpath.full_path()})")
        name = callpath.path.strip("/")
        fn = self.local_handlers.get(name)
        if fn is None:
            raise ResolutionError(f"Local handler not found: {callpath.full_path()}")
        result = fn(request)
        if inspect.isawaitable(result):
            result = await result
        return result

    def unhandled_event(self, event: HibikiEvent, rtctx: RtContext) -> None:
        self.unhandled_events.append(event)
        super().unhandled_event(event, rtctx)

    def unhandled_error(self, err: ErrorValue, rtctx: RtContext) -> None:
        self.unhandled_errors.append(err)
        super().unhandled_error(err, rtctx)

    def report_error(self, err: ErrorValue) -> None:
        self.reported_errors.append(err)
        super().report_error(err)

    def invalidate(self, regex: Optional[str]) -> None:
        self.invalidations.append(regex)

    def install_markup(self, value: Any, env: DataEnvironment) -> None:
        self.markup.append(value)

    def find_node_env(self, node_id: str) -> Optional[DataEnvironment]:
        return self.node_envs.get(node_id)


# ===================================================================
# 2. The Standard Library
# ===================================================================

def _resolving(fn: Callable) -> Callable:
    # built-ins see plain values, never references
    @functools.wraps(fn)
    def wrapper(*args):
        resolved = []
        for a in args:
            if isinstance(a, LValue):
                a = resolve_through(a)
            resolved.append(None if a is NoAttr else a)
        return fn(*resolved)
    return wrapper


def _require_blob(fname: str, v: Any) -> Optional[Blob]:
    if v is None:
        return None
    if not isinstance(v, Blob):
        raise ResolutionError(f"fn:{fname} requires a blob argument")
    return v


def _norm_index(i: Any, n: int) -> int:
    i = int(to_number(i))
    if i < 0:
        return max(n + i, 0)
    return min(i, n)


class StdLib:
    """Contains Python implementations for all Hibiki built-in functions."""

    def register(self, state: HibikiState) -> None:
        for name, member in inspect.getmembers(self):
            if name.startswith('_') and not name.startswith('__') and callable(member):
                state.register_function(name[1:].replace('_', ''), _resolving(member), native=True)

    # --- Collections ---
    def _len(self, v):
        if v is None:
            return 0
        if isinstance(v, (str, list)) or isinstance(v, collections.abc.Mapping):
            return len(v)
        if isinstance(v, Blob):
            return v.byte_len()
        return 0

    def _index_of(self, haystack, needle, start=0):
        if isinstance(haystack, str):
            return haystack.find(to_display_string(needle), int(to_number(start)))
        if not isinstance(haystack, list):
            return -1
        for i in range(_norm_index(start, len(haystack)), len(haystack)):
            if deep_equal(haystack[i], needle):
                return i
        return -1

    def _splice(self, arr, start, delete_count=None, *items):
        """Returns a copy of `arr` with `delete_count` items removed at `start` and `items` inserted."""
        if arr is None:
            arr = []
        if not isinstance(arr, list):
            raise ResolutionError("fn:splice requires an array")
        s = _norm_index(start, len(arr))
        count = len(arr) - s if delete_count is None else max(int(to_number(delete_count)), 0)
        return arr[:s] + list(items) + arr[s + count:]

    def _slice(self, v, start=0, end=None):
        if v is None:
            return None
        if not isinstance(v, (str, list)):
            raise ResolutionError("fn:slice requires a string or array")
        s = _norm_index(start, len(v))
        e = len(v) if end is None else _norm_index(end, len(v))
        return v[s:e]

    def _merge(self, *objs):
        rtn = {}
        for o in objs:
            if isinstance(o, collections.abc.Mapping):
                rtn.update(o)
        return rtn

    def _keys(self, obj):
        if isinstance(obj, collections.abc.Mapping):
            return list(obj.keys())
        return []

    def _values(self, obj):
        if isinstance(obj, collections.abc.Mapping):
            return list(obj.values())
        return []

    def _deep_equal(self, a, b): return deep_equal(a, b)
    def _deep_copy(self, v): return deep_copy(v)

    # --- Conversion ---
    def _int(self, v):
        n = to_number(v)
        if math.isnan(n) or math.isinf(n):
            return None
        return int(n)

    def _float(self, v):
        return float(to_number(v))

    def _str(self, v): return to_display_string(v)
    def _bool(self, v): return to_boolean(v)

    def _json_parse(self, s):
        if s is None:
            return None
        return json.loads(to_display_string(s))

    def _json(self, v, pretty=False):
        return to_json(v, pretty=to_boolean(pretty))

    # --- String Utilities ---
    def _split(self, s, sep=None, limit=None):
        if s is None:
            return []
        s = to_display_string(s)
        if sep is None:
            parts = [s]
        elif sep == "":
            parts = list(s)
        else:
            parts = s.split(to_display_string(sep))
        if limit is not None:
            parts = parts[:max(int(to_number(limit)), 0)]
        return parts

    def _substr(self, s, start, length=None):
        if s is None:
            return None
        s = to_display_string(s)
        st = _norm_index(start, len(s))
        if length is None:
            return s[st:]
        return s[st:st + max(int(to_number(length)), 0)]

    def _sprintf(self, fmt, *args):
        return to_display_string(fmt) % tuple(_printf_arg(a) for a in args)

    def _starts_with(self, s, prefix):
        if s is None or prefix is None:
            return False
        return to_display_string(s).startswith(to_display_string(prefix))

    def _ends_with(self, s, suffix):
        if s is None or suffix is None:
            return False
        return to_display_string(s).endswith(to_display_string(suffix))

    def _match(self, s, pattern, flags=None):
        """Regex search; returns [match, group1, ...] or null."""
        if s is None or pattern is None:
            return None
        reflags = 0
        for ch in (flags or ""):
            match ch:
                case "i":
                    reflags |= re.IGNORECASE
                case "m":
                    reflags |= re.MULTILINE
                case "s":
                    reflags |= re.DOTALL
                case "g":
                    pass
                case _:
                    raise ResolutionError(f"fn:match invalid flag '{ch}'")
        m = re.search(to_display_string(pattern), to_display_string(s), reflags)
        if m is None:
            return None
        return [m.group(0)] + list(m.groups())

    # --- Time and ids ---
    def _now(self): return int(time.time() * 1000)
    def _ts(self): return int(time.time() * 1000)
    def _uuid(self): return str(uuid.uuid4())

    # --- Blobs ---
    def _blob_as_text(self, b):
        b = _require_blob("blobastext", b)
        return None if b is None else b.text()

    def _blob_as_base64(self, b):
        b = _require_blob("blobasbase64", b)
        return None if b is None else b.data

    def _blob_mimetype(self, b):
        b = _require_blob("blobmimetype", b)
        return None if b is None else b.mimetype

    def _blob_len(self, b):
        b = _require_blob("bloblen", b)
        return 0 if b is None else b.byte_len()


# ===================================================================
# 3. Handler Execution
# ===================================================================

@dataclass
class ExecutionResult:
    """The structured result of running a handler block or firing an event."""
    status: Literal['success', 'error']
    value: Any = None
    error_message: Optional[str] = None
    error_value: Optional[ErrorValue] = None
    side_effects: List[Dict] = field(default_factory=list)

    def format_error(self) -> str:
        """Formats the error message followed by its context stack, innermost first."""
        if self.status != 'error':
            return ""
        msg = str(self.error_message or "Unknown error")
        if self.error_value is not None:
            ctx = self.error_value.rtctx.as_string("  ")
            if ctx:
                msg = f"{msg}\n{ctx}"
        return msg


class HandlerRunner:
    """Runs handler blocks and events against a HibikiState, never raising.

    Every run gets a fresh ActionRunner and its own side-effect list.
    """

    def __init__(self, state: Optional[HibikiState] = None):
        self.state = state if state is not None else HibikiState()

    @property
    def host(self):
        return self.state.host

    def _format_error(self, e: Exception) -> str:
        match e:
            case RuntimeLimitError():
                return f"RuntimeLimitError: {e}"
            case UserThrownError():
                return f"HibikiError: {e.error.message}"
            case CycleError():
                return f"CycleError: {e}"
            case ResolutionError():
                return f"ResolutionError: {e}"
            case ConstructionError():
                return f"ConstructionError: {e}"
        return f"InternalError: {e}"

    def _error_result(self, e: Exception, rtctx: RtContext, actions: ActionRunner) -> ExecutionResult:
        ctx = getattr(e, "rtctx", None) or rtctx
        err = make_error_value(e, ctx)
        msg = self._format_error(e)
        logger.debug("handler failed: %s", msg)
        self.host.report_error(err)
        actions.side_effects.append({'topics': ['stderr'], 'message': msg})
        return ExecutionResult(
            status='error',
            error_message=msg,
            error_value=err,
            side_effects=actions.side_effects,
        )

    async def run_handler(self, block: Any, env: Optional[DataEnvironment] = None,
                          pure: bool = False) -> ExecutionResult:
        """The main entry point to execute a handler block."""
        actions = ActionRunner(self.state)
        env = env if env is not None else self.state.root_env()
        rtctx = RtContext()
        try:
            value = await actions.execute_handler_block(block, env, rtctx, pure)
        except Exception as e:
            return self._error_result(e, rtctx, actions)
        return ExecutionResult(status='success', value=value, side_effects=actions.side_effects)

    async def fire_event(self, name: str, data: Optional[dict] = None, env: Optional[DataEnvironment] = None,
                         bubble: bool = False, target: Optional[str] = None, pure: bool = False) -> ExecutionResult:
        actions = ActionRunner(self.state)
        env = env if env is not None else self.state.root_env()
        rtctx = RtContext()
        event = HibikiEvent(name, dict(data or {}), bubble, {}, target)
        try:
            value = await actions.fire_event(event, env, rtctx, pure=pure)
        except Exception as e:
            return self._error_result(e, rtctx, actions)
        return ExecutionResult(status='success', value=value, side_effects=actions.side_effects)


__all__ = [
    "HibikiHost", "LocalHost", "StdLib", "ExecutionResult", "HandlerRunner",
]
