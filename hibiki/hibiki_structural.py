"""
Deep copy, deep equality and cycle detection over the value graph.
"""
import math
from typing import Any, List, Optional

from hibiki.hibiki_datatypes import Blob, ChildrenRef, ValueKind, classify, is_number
from hibiki.hibiki_errors import CycleError
from hibiki.hibiki_lvalue import LValue, resolve_through


def _trail(parts: List[str]) -> str:
    return " -> ".join(parts)


def _key_label(key: Any) -> str:
    return f"[{key}]" if isinstance(key, int) else str(key)


def deep_copy(value: Any, resolve_lvalues: bool = True) -> Any:
    """
    Copies arrays and objects recursively. Mapping-like containers come back
    as plain dicts; LValues are resolved unless `resolve_lvalues` is False.
    Raises CycleError on self-referential structures.
    """
    return _copy(value, resolve_lvalues, set(), ["root"])


def _copy(v: Any, resolve_lvalues: bool, active: set, trail: List[str]) -> Any:
    if isinstance(v, LValue):
        if not resolve_lvalues:
            return v
        v = resolve_through(v)
    match classify(v):
        case ValueKind.NULL | ValueKind.PRIMITIVE:
            return v
        case ValueKind.ARRAY:
            if id(v) in active:
                raise CycleError(_trail(trail))
            active.add(id(v))
            try:
                return [_copy(x, resolve_lvalues, active, trail + [f"[{i}]"]) for i, x in enumerate(v)]
            finally:
                active.discard(id(v))
        case ValueKind.OBJECT:
            if id(v) in active:
                raise CycleError(_trail(trail))
            active.add(id(v))
            try:
                return {k: _copy(v[k], resolve_lvalues, active, trail + [str(k)]) for k in v}
            finally:
                active.discard(id(v))
        case ValueKind.SPECIAL:
            if isinstance(v, Blob):
                return Blob(v.mimetype, v.data, v.name)
            return v


def find_cycle(value: Any, resolve_lvalues: bool = True) -> Optional[str]:
    """Returns the `root -> ...` trail of the first cycle found, or None."""
    return _find(value, resolve_lvalues, set(), ["root"])


def _find(v: Any, resolve_lvalues: bool, active: set, trail: List[str]) -> Optional[str]:
    if isinstance(v, LValue):
        if not resolve_lvalues:
            return None
        v = resolve_through(v)
    kind = classify(v)
    if kind not in (ValueKind.ARRAY, ValueKind.OBJECT):
        return None
    if id(v) in active:
        return _trail(trail)
    active.add(id(v))
    try:
        items = enumerate(v) if kind is ValueKind.ARRAY else ((k, v[k]) for k in v)
        for k, child in items:
            found = _find(child, resolve_lvalues, active, trail + [_key_label(k)])
            if found is not None:
                return found
    finally:
        active.discard(id(v))
    return None


def check_cycle(value: Any, resolve_lvalues: bool = True) -> None:
    trail = find_cycle(value, resolve_lvalues)
    if trail is not None:
        raise CycleError(trail)


def deep_equal(a: Any, b: Any) -> bool:
    """Structural equality. LValues on either side are resolved first; NaN equals NaN."""
    return _equal(a, b, set())


def _equal(a: Any, b: Any, seen: set) -> bool:
    if a is b:
        return True
    if isinstance(a, LValue):
        a = resolve_through(a)
    if isinstance(b, LValue):
        b = resolve_through(b)
    if a is b:
        return True
    if a is None or b is None:
        return False
    if is_number(a) and is_number(b):
        if math.isnan(a) and math.isnan(b):
            return True
        return a == b
    ka, kb = classify(a), classify(b)
    if ka is not kb:
        return False
    pair = (id(a), id(b))
    match ka:
        case ValueKind.PRIMITIVE:
            if isinstance(a, bool) or isinstance(b, bool):
                return isinstance(a, bool) and isinstance(b, bool) and a == b
            return type(a) is type(b) and a == b
        case ValueKind.ARRAY:
            if len(a) != len(b):
                return False
            if pair in seen:
                return True
            seen.add(pair)
            return all(_equal(x, y, seen) for x, y in zip(a, b))
        case ValueKind.OBJECT:
            if len(a) != len(b):
                return False
            if pair in seen:
                return True
            seen.add(pair)
            for k in a:
                if k not in b:
                    return False
                if not _equal(a[k], b[k], seen):
                    return False
            return True
        case ValueKind.SPECIAL:
            if isinstance(a, Blob) and isinstance(b, Blob):
                return a.mimetype == b.mimetype and a.data == b.data
            if isinstance(a, ChildrenRef) and isinstance(b, ChildrenRef):
                return [n.node_id for n in a.nodes] == [n.node_id for n in b.nodes]
            return False
    return False


__all__ = ["deep_copy", "deep_equal", "find_cycle", "check_cycle"]
