"""
Compiled expression and action nodes.

These are produced once by the surface-syntax compiler and evaluated many
times. Construction validates what a compiler would guarantee.
"""
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

from hibiki.hibiki_errors import ConstructionError
from hibiki.hibiki_paths import Path, normalize_set_op, parse_path, parse_set_path

OPERATORS = frozenset({
    "&&", "||", "??", "+", "-", "*", "/", "%",
    "<", "<=", ">", ">=", "==", "!=", "!", "?:",
})

FILTERS = frozenset({"format"})


class ExprNode:
    pass


def _as_path(p: Any) -> Path:
    if isinstance(p, Path):
        return p
    if isinstance(p, str):
        return parse_path(p)
    raise ConstructionError(f"Expected a path, got {type(p).__name__}")


# ===================================================================
# Expressions
# ===================================================================

@dataclass(eq=False)
class Literal(ExprNode):
    value: Any


@dataclass(eq=False)
class PathExpr(ExprNode):
    path: Path

    def __post_init__(self):
        self.path = _as_path(self.path)


@dataclass(eq=False)
class ArrayExpr(ExprNode):
    exprs: List[ExprNode] = field(default_factory=list)


@dataclass(eq=False)
class MapExpr(ExprNode):
    entries: List[Tuple[ExprNode, ExprNode]] = field(default_factory=list)


@dataclass(eq=False)
class RangeExpr(ExprNode):
    start: ExprNode
    end: ExprNode


@dataclass(eq=False)
class OpExpr(ExprNode):
    op: str
    exprs: List[ExprNode]

    def __post_init__(self):
        if self.op not in OPERATORS:
            raise ConstructionError(f"Invalid operator '{self.op}'")
        if self.op == "?:" and len(self.exprs) != 3:
            raise ConstructionError("Ternary operator requires 3 operands")


@dataclass(eq=False)
class FnExpr(ExprNode):
    name: str
    exprs: List[ExprNode] = field(default_factory=list)


@dataclass(eq=False)
class FilterExpr(ExprNode):
    name: str
    expr: ExprNode
    args: Optional[ExprNode] = None

    def __post_init__(self):
        if self.name not in FILTERS:
            raise ConstructionError(f"Invalid filter '{self.name}' (only 'format' is supported)")


@dataclass(eq=False)
class RefExpr(ExprNode):
    path: Path

    def __post_init__(self):
        self.path = _as_path(self.path)


@dataclass(eq=False)
class IsRefExpr(ExprNode):
    expr: ExprNode


@dataclass(eq=False)
class RefInfoExpr(ExprNode):
    expr: ExprNode


@dataclass(eq=False)
class InvokeExpr(ExprNode):
    expr: ExprNode
    params: Optional[ExprNode] = None


@dataclass(eq=False)
class LambdaExpr(ExprNode):
    expr: ExprNode


# ===================================================================
# Actions
# ===================================================================

class Action:
    kind = "action"


@dataclass(eq=False)
class SetDataAction(Action):
    target: Path
    data: ExprNode
    op: Optional[str] = None
    kind = "setdata"

    def __post_init__(self):
        if isinstance(self.target, str):
            parsed_op, self.target = parse_set_path(self.target)
            if self.op is None:
                self.op = parsed_op
        self.target = _as_path(self.target)
        self.op = normalize_set_op(self.op)


@dataclass(eq=False)
class IfAction(Action):
    cond: ExprNode
    then_block: List[Action] = field(default_factory=list)
    else_block: Optional[List[Action]] = None
    kind = "ifblock"


@dataclass(eq=False)
class SetReturnAction(Action):
    data: ExprNode
    kind = "setreturn"


@dataclass(eq=False)
class CallHandlerAction(Action):
    callpath: Optional[ExprNode] = None
    data: Optional[ExprNode] = None
    target: Optional[Path] = None
    op: Optional[str] = None
    url: Optional[ExprNode] = None
    method: Optional[ExprNode] = None
    module: Optional[ExprNode] = None
    pure: bool = False
    kind = "callhandler"

    def __post_init__(self):
        if self.callpath is None and self.url is None:
            raise ConstructionError("callhandler requires a callpath or a url")
        if isinstance(self.target, str):
            parsed_op, self.target = parse_set_path(self.target)
            if self.op is None:
                self.op = parsed_op
        self.op = normalize_set_op(self.op)


@dataclass(eq=False)
class InvalidateAction(Action):
    data: Optional[ExprNode] = None
    kind = "invalidate"


@dataclass(eq=False)
class FireEventAction(Action):
    event: ExprNode
    data: Optional[ExprNode] = None
    bubble: bool = False
    target: Optional[ExprNode] = None
    kind = "fireevent"

    def __post_init__(self):
        if isinstance(self.event, str):
            self.event = Literal(self.event)


@dataclass(eq=False)
class LogAction(Action):
    exprs: List[ExprNode] = field(default_factory=list)
    debug: bool = False
    kind = "log"


@dataclass(eq=False)
class ThrowAction(Action):
    data: ExprNode
    kind = "throw"


@dataclass(eq=False)
class NopAction(Action):
    kind = "nop"


@dataclass(eq=False)
class InstallMarkupAction(Action):
    data: ExprNode
    kind = "html"


@dataclass(eq=False)
class HandlerBlock:
    """A compiled action sequence executed as one unit with its own return slot."""
    actions: List[Action] = field(default_factory=list)
    ctx: Optional[str] = None

    def __len__(self):
        return len(self.actions)


__all__ = [
    "OPERATORS", "FILTERS", "ExprNode", "Literal", "PathExpr", "ArrayExpr", "MapExpr",
    "RangeExpr", "OpExpr", "FnExpr", "FilterExpr", "RefExpr", "IsRefExpr", "RefInfoExpr",
    "InvokeExpr", "LambdaExpr", "Action", "SetDataAction", "IfAction", "SetReturnAction",
    "CallHandlerAction", "InvalidateAction", "FireEventAction", "LogAction", "ThrowAction",
    "NopAction", "InstallMarkupAction", "HandlerBlock",
]
