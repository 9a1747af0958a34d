"""
A pretty-printer for Hibiki values, paths, expressions and actions.
"""
import collections.abc
import json
import re

from hibiki.hibiki_ast import (
    ArrayExpr, CallHandlerAction, FilterExpr, FireEventAction, FnExpr, HandlerBlock, IfAction,
    InstallMarkupAction, InvalidateAction, InvokeExpr, IsRefExpr, LambdaExpr, Literal, LogAction,
    MapExpr, NopAction, OpExpr, PathExpr, RangeExpr, RefExpr, RefInfoExpr, SetDataAction,
    SetReturnAction, ThrowAction,
)
from hibiki.hibiki_datatypes import SpecialValue, format_number
from hibiki.hibiki_lvalue import LValue
from hibiki.hibiki_paths import Path, string_path

_IDENT_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


class Printer:
    """Formats Hibiki objects into readable surface-syntax strings."""

    def __init__(self, indent_width=2):
        self._indent_char = " " * indent_width
        self._handlers = self._create_handlers()

    def pformat(self, obj, level=0):
        """Public entry point to format an object."""
        handler = self._get_handler(obj)
        return handler(obj, level)

    def _get_handler(self, obj):
        obj_type = type(obj)
        if obj_type in self._handlers:
            return self._handlers[obj_type]
        if isinstance(obj, LValue): return self._pformat_lvalue
        if isinstance(obj, SpecialValue): return self._pformat_special
        if isinstance(obj, collections.abc.Mapping): return self._pformat_dict
        if isinstance(obj, list): return self._pformat_list
        # Default to Python's repr for unknown types
        return lambda o, l: repr(o)

    def _create_handlers(self):
        return {
            str: self._pformat_str,
            int: self._pformat_number,
            float: self._pformat_number,
            bool: self._pformat_bool,
            type(None): self._pformat_none,
            Path: self._pformat_path,
            Literal: lambda o, l: self.pformat(o.value, l),
            PathExpr: lambda o, l: string_path(o.path),
            ArrayExpr: self._pformat_array_expr,
            MapExpr: self._pformat_map_expr,
            RangeExpr: lambda o, l: f"[{self.pformat(o.start, l)} .. {self.pformat(o.end, l)}]",
            OpExpr: self._pformat_op,
            FnExpr: lambda o, l: f"fn:{o.name}({self._args(o.exprs, l)})",
            FilterExpr: self._pformat_filter,
            RefExpr: lambda o, l: f"ref({string_path(o.path)})",
            IsRefExpr: lambda o, l: f"isref({self.pformat(o.expr, l)})",
            RefInfoExpr: lambda o, l: f"refinfo({self.pformat(o.expr, l)})",
            InvokeExpr: self._pformat_invoke,
            LambdaExpr: lambda o, l: f"lambda({self.pformat(o.expr, l)})",
            SetDataAction: self._pformat_setdata,
            IfAction: self._pformat_if,
            SetReturnAction: lambda o, l: f"return {self.pformat(o.data, l)}",
            CallHandlerAction: self._pformat_callhandler,
            InvalidateAction: lambda o, l: f"invalidate({'' if o.data is None else self.pformat(o.data, l)})",
            FireEventAction: self._pformat_fire,
            LogAction: lambda o, l: f"{'debug' if o.debug else 'log'}({self._args(o.exprs, l)})",
            ThrowAction: lambda o, l: f"throw({self.pformat(o.data, l)})",
            NopAction: lambda o, l: "nop",
            InstallMarkupAction: lambda o, l: f"html({self.pformat(o.data, l)})",
            HandlerBlock: lambda o, l: self._pformat_block(o.actions, l),
        }

    # --- values ---

    def _pformat_str(self, obj, level):
        return json.dumps(obj, ensure_ascii=False)

    def _pformat_number(self, obj, level):
        return format_number(obj)

    def _pformat_bool(self, obj, level):
        return 'true' if obj else 'false'

    def _pformat_none(self, obj, level):
        return 'null'

    def _pformat_key(self, key):
        key = str(key)
        return key if _IDENT_RE.match(key) else json.dumps(key, ensure_ascii=False)

    def _pformat_list(self, obj, level):
        return "[" + ", ".join(self.pformat(x, level) for x in obj) + "]"

    def _pformat_dict(self, obj, level):
        if not obj:
            return "{}"
        items = [f"{self._pformat_key(k)}: {self.pformat(v, level)}" for k, v in obj.items()]
        return "{" + ", ".join(items) + "}"

    def _pformat_lvalue(self, obj, level):
        path = obj.path_string()
        return f"ref({path})" if path else obj.display_string()

    def _pformat_special(self, obj, level):
        return obj.display_string()

    def _pformat_path(self, obj, level):
        return string_path(obj)

    # --- expressions ---

    def _args(self, exprs, level):
        return ", ".join(self.pformat(e, level) for e in exprs)

    def _operand(self, expr, level):
        s = self.pformat(expr, level)
        if isinstance(expr, OpExpr) and len(expr.exprs) > 1:
            return f"({s})"
        return s

    def _pformat_array_expr(self, obj, level):
        return f"[{self._args(obj.exprs, level)}]"

    def _pformat_map_expr(self, obj, level):
        items = []
        for k, v in obj.entries:
            key = self._pformat_key(k.value) if isinstance(k, Literal) else f"({self.pformat(k, level)})"
            items.append(f"{key}: {self.pformat(v, level)}")
        return "{" + ", ".join(items) + "}"

    def _pformat_op(self, obj, level):
        ops = [self._operand(e, level) for e in obj.exprs]
        if obj.op == "?:":
            return f"{ops[0]} ? {ops[1]} : {ops[2]}"
        if len(ops) == 1:
            return f"{obj.op}{ops[0]}"
        return f" {obj.op} ".join(ops)

    def _pformat_filter(self, obj, level):
        inner = self._operand(obj.expr, level)
        if obj.args is None:
            return f"{inner} | {obj.name}"
        return f"{inner} | {obj.name}({self.pformat(obj.args, level)})"

    def _pformat_invoke(self, obj, level):
        if obj.params is None:
            return f"invoke({self.pformat(obj.expr, level)})"
        return f"invoke({self.pformat(obj.expr, level)}, {self.pformat(obj.params, level)})"

    # --- actions ---

    def _target(self, path, op):
        prefix = "" if op == "set" else f"{op}:"
        return prefix + string_path(path)

    def _pformat_setdata(self, obj, level):
        return f"{self._target(obj.target, obj.op)} = {self.pformat(obj.data, level)}"

    def _pformat_callhandler(self, obj, level):
        if obj.callpath is not None:
            call = self.pformat(obj.callpath, level)
        else:
            parts = [self.pformat(obj.url, level)]
            if obj.method is not None:
                parts.insert(0, self.pformat(obj.method, level))
            if obj.module is not None:
                parts.append(f"module={self.pformat(obj.module, level)}")
            call = " ".join(parts)
        data = "" if obj.data is None else f", {self.pformat(obj.data, level)}"
        rtn = f"callhandler({call}{data})"
        if obj.pure:
            rtn = "pure " + rtn
        if obj.target is not None:
            rtn = f"{self._target(obj.target, obj.op)} = {rtn}"
        return rtn

    def _pformat_fire(self, obj, level):
        arrow = "bubble" if obj.bubble else "fire"
        name = obj.event.value if isinstance(obj.event, Literal) else f"({self.pformat(obj.event, level)})"
        target = "" if obj.target is None else f"[{self.pformat(obj.target, level)}]"
        data = "" if obj.data is None else self.pformat(obj.data, level)
        return f"{arrow}->{name}{target}({data})"

    def _pformat_block(self, actions, level):
        if not actions:
            return "{}"
        outer_indent = self._indent_char * level
        inner_indent = self._indent_char * (level + 1)
        lines = []
        for action in actions:
            text = self.pformat(action, level + 1)
            lines.append(inner_indent + text)
        return "{\n" + "\n".join(lines) + f"\n{outer_indent}}}"

    def _pformat_if(self, obj, level):
        rtn = f"if ({self.pformat(obj.cond, level)}) {self._pformat_block(obj.then_block, level)}"
        if obj.else_block is not None:
            rtn += f" else {self._pformat_block(obj.else_block, level)}"
        return rtn
