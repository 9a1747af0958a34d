"""
The core Hibiki interpreter, containing the PathResolver and the Evaluator.
"""
import logging
import math
import sys
import collections.abc
from typing import Any, List, Optional

from hibiki.hibiki_config import DEFAULT_LIMITS, RuntimeLimits, debug_enabled
from hibiki.hibiki_datatypes import (
    Blob, Lambda, NoAttr, SpecialValue, ValueKind,
    as_array, as_object, classify, is_number, parse_number,
    to_boolean, to_display_string, to_number,
)
from hibiki.hibiki_errors import (
    ConstructionError, CycleError, HibikiException, ResolutionError, exception_message,
)
from hibiki.hibiki_paths import (
    ArrayPart, DerefPart, DynPart, MapPart, Path, RootPart,
    normalize_set_op, parse_path, parse_set_path, string_path,
)
from hibiki.hibiki_lvalue import BoundLValue, LValue, resolve_through
from hibiki.hibiki_ast import (
    ArrayExpr, FilterExpr, FnExpr, InvokeExpr, IsRefExpr, LambdaExpr, Literal,
    MapExpr, OpExpr, PathExpr, RangeExpr, RefExpr, RefInfoExpr,
)

logger = logging.getLogger(__name__)

WRITABLE_ROOTS = frozenset({"global", "data", "state", "args", "component", "c"})
CONTEXT_ROOTS = frozenset({"context", "currentcontext"})
# roots whose whole value may be replaced by a length-1 path
REPLACEABLE_ROOTS = frozenset({"global", "data", "state"})
REF_ROOTS = frozenset({"global", "data", "component", "c"})


def _is_null(v: Any) -> bool:
    return v is None or v is NoAttr


def _loose_str_number(s: str) -> Any:
    return 0 if s.strip() == "" else parse_number(s)


def loose_equals(a: Any, b: Any) -> bool:
    """`==` on resolved values: null and NoAttr match each other, strings and booleans coerce to numbers."""
    if a is b:
        return True
    if _is_null(a) or _is_null(b):
        return _is_null(a) and _is_null(b)
    if isinstance(a, bool) and isinstance(b, bool):
        return a == b
    if isinstance(a, bool):
        return loose_equals(1 if a else 0, b)
    if isinstance(b, bool):
        return loose_equals(a, 1 if b else 0)
    if is_number(a) and is_number(b):
        return a == b
    if isinstance(a, str) and isinstance(b, str):
        return a == b
    if is_number(a) and isinstance(b, str):
        return a == _loose_str_number(b)
    if isinstance(a, str) and is_number(b):
        return _loose_str_number(a) == b
    return False


def _strict_primitive_equals(a: Any, b: Any) -> bool:
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b
    if is_number(a) and is_number(b):
        return a == b
    if isinstance(a, str) and isinstance(b, str):
        return a == b
    return False


def _divide(a: Any, b: Any) -> Any:
    if b == 0:
        if a == 0 or math.isnan(a):
            return math.nan
        return math.inf if a > 0 else -math.inf
    if isinstance(a, int) and isinstance(b, int) and a % b == 0:
        return a // b
    return a / b


def _modulo(a: Any, b: Any) -> Any:
    if b == 0 or math.isnan(a) or math.isnan(b) or math.isinf(a):
        return math.nan
    if isinstance(a, int) and isinstance(b, int):
        r = abs(a) % abs(b)
        return r if a >= 0 else -r
    return math.fmod(a, b)


def _plus(a: Any, b: Any) -> Any:
    if a is None:
        return b
    if b is None:
        return a
    if isinstance(a, str) or isinstance(b, str):
        return to_display_string(a) + to_display_string(b)
    return to_number(a) + to_number(b)


class PathResolver:
    """Handles all path traversal and mutation logic."""

    def __init__(self, evaluator: Optional['Evaluator'] = None, limits: Optional[RuntimeLimits] = None):
        self.evaluator = evaluator
        if limits is None:
            limits = evaluator.limits if evaluator is not None else DEFAULT_LIMITS
        self.limits = limits

    # --- dynamic parts ---

    def _dyn_to_part(self, v: Any):
        if is_number(v) and not (isinstance(v, float) and not v.is_integer()):
            return ArrayPart(int(v))
        return MapPart(to_display_string(v))

    def eval_dynamic_parts(self, path: Path, env: Any, depth: int = 0) -> Path:
        """Replaces dynamic parts with concrete map/array parts and splices dereferenced paths."""
        if path.is_static():
            return path
        if depth > self.limits.max_deref_depth:
            raise ResolutionError(f"Path dereference exceeds max depth ({self.limits.max_deref_depth})")
        if self.evaluator is None:
            raise ResolutionError(f"Cannot evaluate dynamic path {string_path(path)} without an evaluator")
        parts: list = []
        for level, part in enumerate(path.parts):
            match part:
                case DynPart(expr=expr):
                    v = self.evaluator.eval_expr(expr, env, "resolve")
                    parts.append(self._dyn_to_part(v))
                case DerefPart(expr=expr):
                    v = self.evaluator.eval_expr(expr, env, "resolve")
                    if not isinstance(v, str):
                        return Path([RootPart("null")])
                    try:
                        sub = parse_path(v)
                    except ConstructionError as e:
                        raise ResolutionError(f"Cannot dereference '{v}': {e}") from e
                    if level != 0:
                        raise ResolutionError(f"Dereferenced path '{v}' can only appear at the start of a path")
                    parts.extend(self.eval_dynamic_parts(sub, env, depth + 1).parts)
                case _:
                    parts.append(part)
        return Path(parts)

    # --- static resolution ---

    def _resolve_root(self, part: RootPart, env: Any) -> Any:
        match part.key:
            case "expr":
                return part.value
            case "null":
                return None
        if env is None:
            raise ResolutionError(f"Invalid root path '{part.key}' (no environment)")
        return env.resolve_root(part.key, caret=part.caret)

    def _step_array(self, ir: Any, index: int) -> Any:
        if isinstance(ir, LValue):
            ir = resolve_through(ir, self.limits.max_lvalue_depth)
        if _is_null(ir):
            return None
        arr, ok = as_array(ir)
        if not ok:
            if classify(ir) is ValueKind.SPECIAL:
                return None
            raise ResolutionError(f"Cannot resolve array index [{index}] on non-array ({classify(ir).value})")
        if index < 0:
            raise ResolutionError(f"Bad array index: {index}")
        if index >= len(arr):
            return None
        return arr[index]

    def _step_map(self, ir: Any, key: str, args_level: bool = False) -> Any:
        if isinstance(ir, LValue):
            ir = resolve_through(ir, self.limits.max_lvalue_depth)
        if _is_null(ir):
            return NoAttr if args_level else None
        obj, ok = as_object(ir)
        if not ok:
            if isinstance(ir, SpecialValue):
                return ir.get_field(key)
            if classify(ir) is ValueKind.SPECIAL:
                return None
            raise ResolutionError(f"Cannot resolve map key '{key}' on non-object ({classify(ir).value})")
        if key not in obj:
            return NoAttr if args_level else None
        return obj[key]

    def _walk(self, ir: Any, path: Path, args_root: bool = False) -> Any:
        for level, part in enumerate(path.parts[1:], start=1):
            match part:
                case ArrayPart(index=index):
                    ir = self._step_array(ir, index)
                case MapPart(key=key):
                    ir = self._step_map(ir, key, args_root and level == 1)
                case RootPart():
                    raise ConstructionError(f"Root path part is only valid at level 0 ({string_path(path)})")
                case _:
                    raise ConstructionError(f"Unevaluated dynamic part in {string_path(path)}")
        return ir

    def resolve_static(self, path: Path, env: Any) -> Any:
        root = path.parts[0]
        if not isinstance(root, RootPart):
            raise ConstructionError(f"Path must start with a root part ({string_path(path)})")
        ir = self._resolve_root(root, env)
        return self._walk(ir, path, args_root=(root.key == "args"))

    def resolve_in_container(self, path: Path, container: Any) -> Any:
        """Resolves a static path whose `global` root is `container`."""
        root = path.parts[0]
        if not isinstance(root, RootPart) or root.key not in ("global", "data"):
            raise ResolutionError(f"Container paths must be rooted at '$' ({string_path(path)})")
        return self._walk(container, path)

    def resolve_throw(self, path: Path | str, env: Any) -> Any:
        if isinstance(path, str):
            path = parse_path(path)
        concrete = self.eval_dynamic_parts(path, env)
        return self.resolve_static(concrete, env)

    def resolve(self, path: Path | str, env: Any, ctx: Optional[str] = None) -> Any:
        """Resolves a path, logging and returning None on resolution errors."""
        try:
            return self.resolve_throw(path, env)
        except (ResolutionError, CycleError) as e:
            logger.warning("resolve %s failed%s: %s", path if isinstance(path, str) else string_path(path),
                           f" [{ctx}]" if ctx else "", e)
            return None

    # --- mutation ---

    def write_throw(self, path: Path | str, env: Any, value: Any, op: Optional[str] = None,
                    allow_context: bool = False) -> None:
        if isinstance(path, str):
            parsed_op, path = parse_set_path(path)
            if op is None:
                op = parsed_op
        op = normalize_set_op(op)
        concrete = self.eval_dynamic_parts(path, env)
        root = concrete.parts[0]
        if not isinstance(root, RootPart):
            raise ConstructionError(f"Path must start with a root part ({string_path(concrete)})")
        key = root.key
        if key not in WRITABLE_ROOTS and not (allow_context and key in CONTEXT_ROOTS):
            allowed = "global/data, state, args, component" + (", context" if allow_context else "")
            raise ResolutionError(f"Cannot write to {string_path(concrete)}: root '{key}' is not writable ({allowed})")
        if len(concrete) == 1 and key not in REPLACEABLE_ROOTS:
            raise ResolutionError(f"Cannot replace the '{key}' root ({string_path(concrete)})")
        current = env.resolve_root(key, caret=root.caret)
        updated = self._set_step(concrete, 1, current, value, op)
        if updated is not current:
            env.set_root(key, updated, caret=root.caret)

    def write(self, path: Path | str, env: Any, value: Any, op: Optional[str] = None,
              allow_context: bool = False, ctx: Optional[str] = None) -> bool:
        """Writes through a path. Resolution errors are logged and reported as False."""
        try:
            self.write_throw(path, env, value, op, allow_context)
            return True
        except (ResolutionError, CycleError) as e:
            logger.warning("write %s failed%s: %s", path if isinstance(path, str) else string_path(path),
                           f" [{ctx}]" if ctx else "", e)
            return False

    def write_in_container(self, path: Path, container: Any, value: Any, op: str = "set") -> Any:
        """Applies a write to a static `$`-rooted path over `container` and returns the new container."""
        root = path.parts[0]
        if not isinstance(root, RootPart) or root.key not in ("global", "data"):
            raise ResolutionError(f"Container paths must be rooted at '$' ({string_path(path)})")
        return self._set_step(path, 1, container, value, normalize_set_op(op))

    def _set_step(self, path: Path, level: int, cur: Any, value: Any, op: str) -> Any:
        if level >= len(path):
            return self._apply_op(cur, value, op)
        part = path.parts[level]
        lv = None
        if isinstance(cur, LValue):
            if cur.readonly:
                return cur
            lv = cur
            cur = resolve_through(cur, self.limits.max_lvalue_depth)
        original = cur
        match part:
            case ArrayPart(index=index):
                if index < 0 or index >= self.limits.max_array_size:
                    raise ResolutionError(f"SetPath bad array index: {index}")
                if _is_null(cur):
                    cur = []
                arr, ok = as_array(cur)
                if not ok:
                    raise ResolutionError(f"SetPath cannot set array index [{index}] on non-array ({classify(cur).value})")
                if len(arr) <= index:
                    arr.extend([None] * (index + 1 - len(arr)))
                arr[index] = self._set_step(path, level + 1, arr[index], value, op)
            case MapPart(key=key):
                if _is_null(cur):
                    cur = {}
                if not isinstance(cur, collections.abc.MutableMapping):
                    raise ResolutionError(f"SetPath cannot set map key '{key}' on non-object ({classify(cur).value})")
                child = cur.get(key)
                updated = self._set_step(path, level + 1, child, value, op)
                if updated is not child or key not in cur:
                    cur[key] = updated
            case RootPart():
                raise ConstructionError(f"Root path part is only valid at level 0 ({string_path(path)})")
            case _:
                raise ConstructionError(f"Unevaluated dynamic part in {string_path(path)}")
        if lv is not None:
            if cur is not original:
                lv.set(cur)
            return lv
        return cur

    def _store_value(self, value: Any, op: str) -> Any:
        if op == "set-raw":
            return value
        if isinstance(value, LValue):
            value = resolve_through(value, self.limits.max_lvalue_depth)
        return None if value is NoAttr else value

    def _apply_op(self, cur: Any, value: Any, op: str) -> Any:
        if isinstance(cur, LValue):
            if cur.readonly:
                return cur
            if op in ("set", "set-raw"):
                cur.set(self._store_value(value, op))
                return cur
            raise ResolutionError(f"Cannot apply '{op}' to an lvalue target")
        match op:
            case "set" | "set-raw":
                return self._store_value(value, op)
            case "set-unless":
                return self._store_value(value, "set") if _is_null(cur) else cur
            case "append":
                return self._append(cur, self._store_value(value, "set"))
            case "append-array":
                return self._append_array(cur, self._store_value(value, "set"))
            case "blob-extend":
                return self._blob_extend(cur, self._store_value(value, "set"))
        raise ConstructionError(f"Invalid set op '{op}'")

    def _append(self, cur: Any, value: Any) -> Any:
        if _is_null(cur):
            return [value]
        if isinstance(cur, list):
            if len(cur) >= self.limits.max_array_size:
                raise ResolutionError(f"Cannot append, array exceeds max size ({self.limits.max_array_size})")
            cur.append(value)
            return cur
        if isinstance(cur, str) and value is None:
            return cur
        if isinstance(cur, str) and isinstance(value, str):
            return cur + value
        raise ResolutionError(f"Cannot append to {classify(cur).value} value")

    def _append_array(self, cur: Any, value: Any) -> Any:
        if not isinstance(value, list):
            return cur
        if _is_null(cur):
            return value
        if isinstance(cur, list):
            if len(cur) + len(value) > self.limits.max_array_size:
                raise ResolutionError(f"Cannot append, array exceeds max size ({self.limits.max_array_size})")
            cur.extend(value)
            return cur
        raise ResolutionError(f"Cannot append-array to {classify(cur).value} value")

    def _blob_extend(self, cur: Any, value: Any) -> Any:
        if not isinstance(cur, Blob):
            raise ResolutionError("blob-extend requires a blob target")
        if not isinstance(value, str):
            raise ResolutionError("blob-extend requires string data")
        cur.data += value
        return cur


class Evaluator:
    """The Hibiki expression engine. Stateless apart from its limits."""

    def __init__(self, limits: Optional[RuntimeLimits] = None):
        self.limits = limits or DEFAULT_LIMITS
        self.path_resolver = PathResolver(self, self.limits)

    def _dbg(self, *parts):
        if debug_enabled():
            print("[DBG]", *parts, file=sys.stderr)

    def evaluate(self, expr: Any, env: Any, mode: str = "resolve", ctx: Optional[str] = None) -> Any:
        """Public entry point for read-only evaluation. Resolution errors degrade to None."""
        try:
            return self.eval_expr(expr, env, mode)
        except (ResolutionError, CycleError) as e:
            logger.warning("evaluation failed%s: %s", f" [{ctx}]" if ctx else "", e)
            return None

    def eval_expr(self, expr: Any, env: Any, mode: str = "natural") -> Any:
        value = self._eval(expr, env)
        return self._apply_mode(value, mode)

    def _apply_mode(self, value: Any, mode: str) -> Any:
        match mode:
            case "natural" | "raw":
                return value
            case "resolve":
                value = resolve_through(value, self.limits.max_lvalue_depth)
                return None if value is NoAttr else value
        raise ConstructionError(f"Invalid evaluation mode '{mode}'")

    def _resolved(self, expr: Any, env: Any) -> Any:
        return self.eval_expr(expr, env, "resolve")

    def _truthy(self, value: Any) -> bool:
        return to_boolean(resolve_through(value, self.limits.max_lvalue_depth))

    def _eval(self, expr: Any, env: Any) -> Any:
        match expr:
            case Literal(value=value):
                return value
            case PathExpr(path=path):
                return self.path_resolver.resolve_throw(path, env)
            case ArrayExpr(exprs=exprs):
                if len(exprs) > self.limits.max_array_size:
                    raise ResolutionError(f"Array literal exceeds max size ({self.limits.max_array_size})")
                return [self.eval_expr(e, env, "natural") for e in exprs]
            case MapExpr(entries=entries):
                rtn = {}
                for k_expr, v_expr in entries:
                    key = to_display_string(self._resolved(k_expr, env))
                    rtn[key] = self.eval_expr(v_expr, env, "natural")
                return rtn
            case RangeExpr(start=start, end=end):
                return self._eval_range(start, end, env)
            case OpExpr():
                return self._eval_op(expr.op, expr.exprs, env)
            case FnExpr():
                return self._eval_fn(expr, env)
            case FilterExpr():
                return self._eval_filter(expr, env)
            case RefExpr(path=path):
                if path.root_key not in REF_ROOTS:
                    raise ResolutionError(f"ref() requires a global or component path, got {string_path(path)}")
                return BoundLValue(path, env)
            case IsRefExpr(expr=inner):
                return isinstance(self.eval_expr(inner, env, "raw"), LValue)
            case RefInfoExpr(expr=inner):
                v = self.eval_expr(inner, env, "raw")
                return v.path_string() if isinstance(v, LValue) else None
            case InvokeExpr(expr=inner, params=params):
                fn = self._resolved(inner, env)
                if not isinstance(fn, Lambda):
                    return fn
                param_val = self.eval_expr(params, env, "natural") if params is not None else None
                return self.invoke_lambda(fn, env, param_val)
            case LambdaExpr(expr=inner):
                return Lambda(expr=inner, env=env)
        raise ConstructionError(f"Invalid expression node: {type(expr).__name__}")

    def invoke_lambda(self, fn: Lambda, env: Any, params: Any = None) -> Any:
        if fn.native is not None:
            try:
                return fn.native(env, params)
            except HibikiException:
                raise
            except Exception as e:
                raise ResolutionError(f"Error in native lambda: {exception_message(e)}") from e
        base = fn.env if fn.env is not None else env
        if _is_null(params):
            params = {}
        elif not isinstance(params, collections.abc.Mapping):
            params = {"value": params}
        child = base.make_child_env(params, html_context="lambda")
        return self.eval_expr(fn.expr, child, "natural")

    def _eval_range(self, start: Any, end: Any, env: Any) -> List[int]:
        s = to_number(self._resolved(start, env))
        e = to_number(self._resolved(end, env))
        if math.isnan(s) or math.isnan(e):
            return []
        if math.isinf(s) or math.isinf(e):
            raise ResolutionError("Array range bounds must be finite")
        s, e = int(s), int(e)
        if s > e:
            return []
        if e - s + 1 > self.limits.max_array_size:
            raise ResolutionError(f"Array range exceeds max size ({self.limits.max_array_size})")
        return list(range(s, e + 1))

    def _eval_op(self, op: str, exprs: list, env: Any) -> Any:
        match op:
            case "&&":
                v = None
                for e in exprs:
                    v = self.eval_expr(e, env, "natural")
                    if not self._truthy(v):
                        return v
                return v
            case "||":
                v = None
                for e in exprs:
                    v = self.eval_expr(e, env, "natural")
                    if self._truthy(v):
                        return v
                return v
            case "??":
                v = None
                for e in exprs:
                    v = self.eval_expr(e, env, "natural")
                    if not _is_null(resolve_through(v, self.limits.max_lvalue_depth)):
                        return v
                return v
            case "!":
                return not self._truthy(self.eval_expr(exprs[0], env, "natural"))
            case "?:":
                cond = self._resolved(exprs[0], env)
                branch = exprs[1] if to_boolean(cond) else exprs[2]
                return self.eval_expr(branch, env, "natural")
            case "==":
                return self._equals(exprs, env)
            case "!=":
                return not self._equals(exprs, env)
            case "+":
                if len(exprs) == 1:
                    return to_number(self._resolved(exprs[0], env))
                acc = None
                for e in exprs:
                    acc = _plus(acc, self._resolved(e, env))
                return acc
            case "-":
                if len(exprs) == 1:
                    return -to_number(self._resolved(exprs[0], env))
                return to_number(self._resolved(exprs[0], env)) - to_number(self._resolved(exprs[1], env))
            case "*":
                return to_number(self._resolved(exprs[0], env)) * to_number(self._resolved(exprs[1], env))
            case "/":
                return _divide(to_number(self._resolved(exprs[0], env)), to_number(self._resolved(exprs[1], env)))
            case "%":
                return _modulo(to_number(self._resolved(exprs[0], env)), to_number(self._resolved(exprs[1], env)))
            case "<" | "<=" | ">" | ">=":
                return self._compare(op, self._resolved(exprs[0], env), self._resolved(exprs[1], env))
        raise ConstructionError(f"Invalid operator '{op}'")

    def _equals(self, exprs: list, env: Any) -> bool:
        a = self.eval_expr(exprs[0], env, "natural")
        b = self.eval_expr(exprs[1], env, "natural")
        if a is b or _strict_primitive_equals(a, b):
            return True
        a = resolve_through(a, self.limits.max_lvalue_depth)
        b = resolve_through(b, self.limits.max_lvalue_depth)
        return loose_equals(a, b)

    def _compare(self, op: str, a: Any, b: Any) -> bool:
        if isinstance(a, str) and isinstance(b, str):
            x, y = a, b
        else:
            x, y = to_number(a), to_number(b)
            if math.isnan(x) or math.isnan(y):
                return False
        match op:
            case "<":
                return x < y
            case "<=":
                return x <= y
            case ">":
                return x > y
            case ">=":
                return x >= y
        raise ConstructionError(f"Invalid comparison operator '{op}'")

    def _eval_fn(self, node: FnExpr, env: Any) -> Any:
        fdef = env.get_function(node.name)
        if fdef is None:
            raise ResolutionError(f"Invalid function: fn:{node.name}")
        args = [self.eval_expr(e, env, "natural") for e in node.exprs]
        if not fdef.native:
            from hibiki.hibiki_structural import deep_copy
            args = [deep_copy(a) for a in args]
            args = [None if a is NoAttr else a for a in args]
        self._dbg("CALL", node.name, "argc", len(args))
        try:
            return fdef.fn(*args)
        except HibikiException:
            raise
        except Exception as e:
            raise ResolutionError(f"Error in fn:{node.name}: {exception_message(e)}") from e

    def _eval_filter(self, node: FilterExpr, env: Any) -> Any:
        from hibiki.hibiki_serialize import format_value
        if node.name != "format":
            raise ResolutionError(f"Invalid filter '{node.name}'")
        value = self._resolved(node.expr, env)
        fmt = None
        if node.args is not None:
            argv = self._resolved(node.args, env)
            if isinstance(argv, collections.abc.Mapping):
                fmt = argv.get("format")
                positional = argv.get("*args")
                if fmt is None and isinstance(positional, list) and positional:
                    fmt = positional[0]
            elif isinstance(argv, str):
                fmt = argv
        return format_value(value, fmt)


__all__ = ["PathResolver", "Evaluator", "loose_equals"]
