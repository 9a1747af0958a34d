"""
Path model: root/map/array/dynamic/deref parts, the StringPath renderer and
a parser for the static string form (`$.a.b[1]`, `@item["weird key"]`, ...).
"""
import json
import re
from dataclasses import dataclass
from typing import Any, Iterable, Tuple

from hibiki.hibiki_errors import ConstructionError

ROOT_KEYS = frozenset({
    "global", "data", "state", "local", "context", "currentcontext",
    "component", "c", "args", "expr", "null",
})

# `$<name>` spellings accepted by the string parser
_DOLLAR_ROOTS = {
    "data": "data",
    "global": "global",
    "state": "state",
    "local": "local",
    "c": "c",
    "component": "component",
    "args": "args",
    "context": "context",
    "currentcontext": "currentcontext",
}

SET_OPS = {
    "set": "set",
    "setraw": "set-raw",
    "set-raw": "set-raw",
    "setunless": "set-unless",
    "set-unless": "set-unless",
    "append": "append",
    "appendarr": "append-array",
    "append-array": "append-array",
    "blobext": "blob-extend",
    "blob-extend": "blob-extend",
}

_IDENT_RE = re.compile(r'[A-Za-z_][A-Za-z0-9_]*')
_IDENT_FULL_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')
_INDEX_RE = re.compile(r'-?\d+')
_SETPATH_RE = re.compile(r'^([a-z][a-z0-9-]*):(.+)$', re.DOTALL)


@dataclass(frozen=True)
class RootPart:
    key: str
    caret: int = 0
    # literal value for the inline `expr` pseudo-root
    value: Any = None

    def __post_init__(self):
        if self.key not in ROOT_KEYS:
            raise ConstructionError(f"Invalid root path key '{self.key}'")
        if self.caret < 0:
            raise ConstructionError("Root caret must be non-negative")


@dataclass(frozen=True)
class MapPart:
    key: str


@dataclass(frozen=True)
class ArrayPart:
    index: int


@dataclass(frozen=True)
class DynPart:
    """Key computed from `expr` at resolution time."""
    expr: Any


@dataclass(frozen=True)
class DerefPart:
    """`expr` evaluates to a path string that is parsed and spliced in."""
    expr: Any


PathPart = RootPart | MapPart | ArrayPart | DynPart | DerefPart


class Path:
    """An immutable sequence of path parts, rooted at its first part."""

    def __init__(self, parts: Iterable[PathPart]):
        self.parts: Tuple[PathPart, ...] = tuple(parts)
        if not self.parts:
            raise ConstructionError("Path must have at least a root part")
        if not isinstance(self.parts[0], (RootPart, DerefPart)):
            raise ConstructionError("Path must start with a root part")

    @property
    def root(self) -> PathPart:
        return self.parts[0]

    @property
    def root_key(self) -> str | None:
        return self.parts[0].key if isinstance(self.parts[0], RootPart) else None

    def is_static(self) -> bool:
        return not any(isinstance(p, (DynPart, DerefPart)) for p in self.parts)

    def __iter__(self):
        return iter(self.parts)

    def __len__(self):
        return len(self.parts)

    def __getitem__(self, idx):
        return self.parts[idx]

    def __eq__(self, other):
        return isinstance(other, Path) and self.parts == other.parts

    def __hash__(self):
        return hash(self.parts)

    def __str__(self):
        return string_path(self)

    def __repr__(self):
        return f"Path({string_path(self)!r})"


def _root_str(rp: RootPart) -> str:
    match rp.key:
        case "global" | "data":
            rtn = "$"
        case "context":
            rtn = "@"
        case "local":
            rtn = "."
        case "expr":
            rtn = "(expr)"
        case _:
            rtn = "$" + rp.key
    return rtn + "^" * rp.caret


def string_path(path: Path | Iterable[PathPart]) -> str:
    """Renders a path for diagnostics: `$.a[0]`, `@item`, `$state["a b"]`."""
    parts = path.parts if isinstance(path, Path) else tuple(path)
    rtn = ""
    bare_ok = False
    for part in parts:
        match part:
            case RootPart():
                rtn += _root_str(part)
                bare_ok = part.key in ("context", "local")
            case MapPart(key=key):
                if _IDENT_FULL_RE.match(key):
                    rtn += key if bare_ok else "." + key
                else:
                    rtn += "[" + json.dumps(key) + "]"
                bare_ok = False
            case ArrayPart(index=index):
                rtn += f"[{index}]"
                bare_ok = False
            case DynPart():
                rtn += "[dyn]"
                bare_ok = False
            case DerefPart():
                rtn += "$(deref)"
                bare_ok = False
    return rtn


def _parse_quoted(text: str, pos: int) -> Tuple[str, int]:
    quote = text[pos]
    if quote == '"':
        try:
            value, end = json.JSONDecoder().raw_decode(text, pos)
        except json.JSONDecodeError as e:
            raise ConstructionError(f"Bad quoted key in path '{text}': {e.msg}")
        return value, end
    out = []
    i = pos + 1
    while i < len(text):
        ch = text[i]
        if ch == "\\" and i + 1 < len(text):
            out.append(text[i + 1])
            i += 2
            continue
        if ch == quote:
            return "".join(out), i + 1
        out.append(ch)
        i += 1
    raise ConstructionError(f"Unterminated quoted key in path '{text}'")


def parse_path(text: str) -> Path:
    """Parses a static path string. Dynamic and deref parts have no string form."""
    if not isinstance(text, str) or not text:
        raise ConstructionError(f"Invalid path {text!r}")
    n = len(text)
    pos = 0
    bare_ok = False
    if text[0] == "$":
        m = _IDENT_RE.match(text, 1)
        if m:
            key = _DOLLAR_ROOTS.get(m.group(0))
            if key is None:
                raise ConstructionError(f"Invalid root path '${m.group(0)}' in '{text}'")
            pos = m.end()
        else:
            key = "global"
            pos = 1
    elif text[0] == "@":
        key, pos, bare_ok = "context", 1, True
    elif text[0] == ".":
        key, pos, bare_ok = "local", 1, True
    else:
        raise ConstructionError(f"Path must start with '$', '@' or '.': '{text}'")
    caret = 0
    while pos < n and text[pos] == "^":
        caret += 1
        pos += 1
    parts: list = [RootPart(key, caret)]
    if bare_ok:
        m = _IDENT_RE.match(text, pos)
        if m:
            parts.append(MapPart(m.group(0)))
            pos = m.end()
    while pos < n:
        ch = text[pos]
        if ch == ".":
            m = _IDENT_RE.match(text, pos + 1)
            if not m:
                raise ConstructionError(f"Expected identifier after '.' at {pos} in '{text}'")
            parts.append(MapPart(m.group(0)))
            pos = m.end()
        elif ch == "[":
            pos += 1
            if pos < n and text[pos] in "\"'":
                key, pos = _parse_quoted(text, pos)
                parts.append(MapPart(key))
            else:
                m = _INDEX_RE.match(text, pos)
                if not m:
                    raise ConstructionError(f"Expected index or quoted key at {pos} in '{text}'")
                parts.append(ArrayPart(int(m.group(0))))
                pos = m.end()
            if pos >= n or text[pos] != "]":
                raise ConstructionError(f"Expected ']' at {pos} in '{text}'")
            pos += 1
        else:
            raise ConstructionError(f"Unexpected character {ch!r} at {pos} in '{text}'")
    return Path(parts)


def normalize_set_op(op: str | None) -> str:
    if op is None or op == "":
        return "set"
    canon = SET_OPS.get(op)
    if canon is None:
        raise ConstructionError(f"Invalid set op '{op}'")
    return canon


def parse_set_path(text: str) -> Tuple[str, Path]:
    """`append:$.list` -> ("append", Path). The op defaults to `set`."""
    if not isinstance(text, str):
        raise ConstructionError(f"Invalid set path {text!r}")
    m = _SETPATH_RE.match(text)
    if m:
        return normalize_set_op(m.group(1)), parse_path(m.group(2))
    return "set", parse_path(text)


__all__ = [
    "ROOT_KEYS", "SET_OPS", "RootPart", "MapPart", "ArrayPart", "DynPart", "DerefPart",
    "PathPart", "Path", "string_path", "parse_path", "parse_set_path", "normalize_set_op",
]
