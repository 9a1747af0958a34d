"""
The Hibiki value model.

Runtime values are plain Python data (None, str, int, float, bool, list, dict)
plus a small closed set of special values defined here. Every value falls in
exactly one ValueKind; the helpers below are the only place that decides which.
"""
import base64
import collections.abc
import enum
import math
import re
import uuid as _uuid
from typing import Any, Callable, List, Optional, Tuple


class ValueKind(enum.Enum):
    NULL = "null"
    PRIMITIVE = "primitive"
    ARRAY = "array"
    OBJECT = "object"
    SPECIAL = "special"


class SpecialValue:
    """Base class for values that generic array/object traversal treats as opaque."""

    def display_string(self) -> str:
        return f"[{type(self).__name__.lower()}]"

    def get_field(self, key: str) -> Any:
        """Map-part lookup on a special value. Opaque by default."""
        return None

    def __str__(self):
        return self.display_string()


class _NoAttrType(SpecialValue):
    """Marks an attribute/argument that was not supplied at all (distinct from null)."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self):
        return False

    def __repr__(self):
        return "NoAttr"

    def display_string(self) -> str:
        return "[noattr]"

    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self


NoAttr = _NoAttrType()


class Blob(SpecialValue):
    """Binary payload kept as base64 text, with a mime type and optional name."""

    def __init__(self, mimetype: str, data: str = "", name: Optional[str] = None):
        self.mimetype = mimetype
        self.data = data
        self.name = name

    @classmethod
    def from_bytes(cls, raw: bytes, mimetype: str = "application/octet-stream", name: Optional[str] = None) -> "Blob":
        return cls(mimetype, base64.b64encode(raw).decode("ascii"), name)

    @classmethod
    def from_text(cls, text: str, mimetype: str = "text/plain", name: Optional[str] = None) -> "Blob":
        return cls.from_bytes(text.encode("utf-8"), mimetype, name)

    def to_bytes(self) -> bytes:
        return base64.b64decode(self.data)

    def text(self) -> str:
        return self.to_bytes().decode("utf-8", errors="replace")

    def byte_len(self) -> int:
        n = len(self.data)
        if n % 4 == 0:
            return (n * 3) // 4 - self.data[-2:].count("=")
        return math.ceil(n / 4 * 3)

    def data_url(self) -> str:
        return f"data:{self.mimetype};base64,{self.data}"

    def display_string(self) -> str:
        if self.name is not None:
            return f"[hibikiblob type={self.mimetype}, len={self.byte_len()}, name={self.name}]"
        return f"[hibikiblob type={self.mimetype}, len={self.byte_len()}]"

    def __repr__(self):
        return f"<Blob {self.mimetype} len={self.byte_len()}>"


class Lambda(SpecialValue):
    """
    A closure. Either wraps an unevaluated expression (invoked through the
    Evaluator in a child of `env`, or of the invoking env when none was
    captured) or a native callable `native(env, params)`.
    """

    def __init__(self, expr: Any = None, native: Optional[Callable] = None, env: Any = None):
        if expr is None and native is None:
            raise ValueError("Lambda requires an expression or a native function")
        self.expr = expr
        self.native = native
        self.env = env

    def display_string(self) -> str:
        return "[lambda]"

    def __repr__(self):
        kind = "native" if self.native is not None else "expr"
        return f"<Lambda {kind}>"


class NodeBinding:
    """A reference to an externally-owned markup node: its tag, attributes and id."""

    def __init__(self, tag: str, attrs: Optional[dict] = None, node_id: Optional[str] = None):
        self.tag = tag
        self.attrs = attrs or {}
        self.node_id = node_id or str(_uuid.uuid4())

    @property
    def slot(self) -> Optional[str]:
        return self.attrs.get("slot")

    def __repr__(self):
        return f"<NodeBinding {self.tag} {self.node_id[:8]}>"


class ChildrenRef(SpecialValue):
    """An ordered set of node bindings, with derived views reachable by name."""

    VIEWS = ("all", "first", "noslot", "bytag", "byslot", "size")

    def __init__(self, nodes: Optional[List[NodeBinding]] = None):
        self.nodes = list(nodes or [])

    def get_field(self, key: str) -> Any:
        match key:
            case "all":
                return self
            case "first":
                return ChildrenRef(self.nodes[:1])
            case "noslot":
                return ChildrenRef([n for n in self.nodes if n.slot is None])
            case "size":
                return len(self.nodes)
            case "bytag":
                return self._group(lambda n: n.tag)
            case "byslot":
                return self._group(lambda n: n.slot)
        return None

    def _group(self, keyfn) -> dict:
        groups: dict = {}
        for node in self.nodes:
            k = keyfn(node)
            if k is None:
                continue
            groups.setdefault(k, []).append(node)
        return {k: ChildrenRef(v) for k, v in groups.items()}

    def display_string(self) -> str:
        return f"[children len={len(self.nodes)}]"

    def __len__(self):
        return len(self.nodes)

    def __repr__(self):
        return f"<ChildrenRef {[n.tag for n in self.nodes]}>"


class ObservableCell:
    """A boxed value with change subscribers. Roots of the data store live in these."""

    def __init__(self, value: Any = None):
        self._value = value
        self._subscribers: List[Callable[[Any, Any], None]] = []

    def get(self) -> Any:
        return self._value

    def set(self, value: Any) -> None:
        old = self._value
        self._value = value
        for cb in list(self._subscribers):
            cb(value, old)

    def subscribe(self, callback: Callable[[Any, Any], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)
        return unsubscribe

    def __repr__(self):
        return f"<ObservableCell {self._value!r}>"


# ===================================================================
# Classification
# ===================================================================

def is_number(v: Any) -> bool:
    # bool is a subclass of int, so check it first
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def classify(v: Any) -> ValueKind:
    if v is None:
        return ValueKind.NULL
    if isinstance(v, (str, bool, int, float)):
        return ValueKind.PRIMITIVE
    if isinstance(v, list):
        return ValueKind.ARRAY
    if isinstance(v, SpecialValue):
        return ValueKind.SPECIAL
    if isinstance(v, collections.abc.Mapping):
        return ValueKind.OBJECT
    # foreign host objects are opaque
    return ValueKind.SPECIAL


def as_primitive(v: Any) -> Tuple[Any, bool]:
    if classify(v) is ValueKind.PRIMITIVE:
        return v, True
    return None, False


def as_array(v: Any) -> Tuple[Optional[list], bool]:
    if classify(v) is ValueKind.ARRAY:
        return v, True
    return None, False


def as_object(v: Any) -> Tuple[Optional[collections.abc.Mapping], bool]:
    if classify(v) is ValueKind.OBJECT:
        return v, True
    return None, False


def as_special(v: Any) -> Tuple[Any, bool]:
    if classify(v) is ValueKind.SPECIAL:
        return v, True
    return None, False


# ===================================================================
# Coercion
# ===================================================================

_NUMBER_RE = re.compile(r'^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$')
_INT_RE = re.compile(r'^[+-]?\d+$')


def parse_number(s: str) -> Any:
    text = s.strip()
    if _INT_RE.match(text):
        return int(text)
    if _NUMBER_RE.match(text):
        return float(text)
    if text in ("Infinity", "+Infinity"):
        return math.inf
    if text == "-Infinity":
        return -math.inf
    return math.nan


def to_number(v: Any) -> Any:
    match v:
        case None:
            return 0
        case bool():
            return 1 if v else 0
        case int() | float():
            return v
        case str():
            return parse_number(v)
    if v is NoAttr:
        return 0
    return math.nan


def to_boolean(v: Any) -> bool:
    match v:
        case None:
            return False
        case bool():
            return v
        case int() | float():
            return not (v == 0 or math.isnan(v))
        case str():
            return v != ""
    if v is NoAttr:
        return False
    return True


def format_number(n: Any) -> str:
    if isinstance(n, int):
        return str(n)
    if math.isnan(n):
        return "NaN"
    if math.isinf(n):
        return "Infinity" if n > 0 else "-Infinity"
    if n.is_integer() and abs(n) < 1e21:
        return str(int(n))
    return repr(n)


def to_display_string(v: Any) -> str:
    match classify(v):
        case ValueKind.NULL:
            return "null"
        case ValueKind.PRIMITIVE:
            if isinstance(v, bool):
                return "true" if v else "false"
            if isinstance(v, str):
                return v
            return format_number(v)
        case ValueKind.ARRAY:
            return "[array]"
        case ValueKind.OBJECT:
            return "[object]"
        case ValueKind.SPECIAL:
            if isinstance(v, SpecialValue):
                return v.display_string()
            return f"[{type(v).__name__}]"


__all__ = [
    "ValueKind", "SpecialValue", "NoAttr", "Blob", "Lambda", "NodeBinding", "ChildrenRef",
    "ObservableCell", "is_number", "classify", "as_primitive", "as_array", "as_object",
    "as_special", "parse_number", "to_number", "to_boolean", "format_number", "to_display_string",
]
