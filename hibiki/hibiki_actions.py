"""
The action interpreter: executes compiled handler blocks and dispatches events.
"""
import collections.abc
import inspect
import logging
import sys
from typing import Any, Dict, List, Optional, Tuple

from hibiki.hibiki_ast import (
    Action, CallHandlerAction, FireEventAction, HandlerBlock, IfAction, InstallMarkupAction,
    InvalidateAction, LogAction, NopAction, SetDataAction, SetReturnAction, ThrowAction,
)
from hibiki.hibiki_config import debug_enabled
from hibiki.hibiki_datatypes import NoAttr, to_boolean, to_display_string
from hibiki.hibiki_env import HandlerPath, HibikiEvent, Request, parse_handler
from hibiki.hibiki_errors import (
    ConstructionError, ErrorValue, ResolutionError, RtContext, RuntimeLimitError,
    UserThrownError, make_error_value,
)
from hibiki.hibiki_interpreter import CONTEXT_ROOTS
from hibiki.hibiki_lvalue import resolve_through
from hibiki.hibiki_printer import Printer
from hibiki.hibiki_structural import deep_copy

logger = logging.getLogger(__name__)


def split_at_keys(data: Any) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Splits "@"-prefixed meta keys (returned without the "@") from ordinary data keys."""
    rest: Dict[str, Any] = {}
    meta: Dict[str, Any] = {}
    for k, v in data.items():
        if isinstance(k, str) and k.startswith("@"):
            meta[k[1:]] = v
        else:
            rest[k] = v
    return rest, meta


def as_data_object(value: Any) -> Dict[str, Any]:
    if value is None or value is NoAttr:
        return {}
    if isinstance(value, collections.abc.Mapping):
        return dict(value)
    return {"value": value}


class ActionRunner:
    """Runs handler blocks against an environment, one action at a time."""

    def __init__(self, state):
        self.state = state
        self.limits = state.limits
        self.evaluator = state.evaluator
        self.resolver = self.evaluator.path_resolver
        self.printer = Printer()
        self.side_effects: List[Dict] = []

    @property
    def host(self):
        return self.state.host

    def _dbg(self, *parts):
        if debug_enabled():
            print("[DBG]", *parts, file=sys.stderr)

    def _block_actions(self, block: Any) -> List[Action]:
        match block:
            case HandlerBlock(actions=actions):
                return actions
            case list():
                return block
            case collections.abc.Mapping() if "hibikihandler" in block:
                return self._block_actions(block["hibikihandler"])
            case collections.abc.Mapping() if "hibikiactions" in block:
                return list(block["hibikiactions"])
        raise ConstructionError(f"Invalid handler block: {type(block).__name__}")

    async def execute_handler_block(self, block: Any, env: Any, rtctx: RtContext,
                                    pure: bool = False, kind: str = "handler") -> Any:
        """
        Runs each action in order. Returns the value of the last set-return
        action executed directly in this block; nested then/else blocks keep
        their own return.
        """
        if block is None:
            return None
        actions = self._block_actions(block)
        if rtctx.depth() > self.limits.max_stack:
            raise RuntimeLimitError(f"Max stack depth exceeded ({self.limits.max_stack})")
        mark = rtctx.depth()
        rtn = None
        for action in actions:
            rtctx.revert_to(mark)
            rtctx.count_action(self.limits.max_actions)
            value = await self.execute_action(action, env, rtctx, pure)
            if isinstance(action, SetReturnAction):
                rtn = value
        rtctx.revert_to(mark)
        self._dbg("BLOCK done", kind, "actions", len(actions))
        return rtn

    def _describe(self, action: Action) -> str:
        return f"{action.kind} action [{self.printer.pformat(action).splitlines()[0]}]"

    async def execute_action(self, action: Action, env: Any, rtctx: RtContext, pure: bool = False) -> Any:
        rtctx.push_context(self._describe(action))
        match action:
            case SetDataAction():
                value = self.evaluator.eval_expr(action.data, env, "natural")
                self._assign(action.target, action.op, value, env, pure)
                return None
            case IfAction():
                cond = self.evaluator.eval_expr(action.cond, env, "resolve")
                if to_boolean(cond):
                    rtctx.push_context("then clause")
                    await self.execute_handler_block(action.then_block, env, rtctx, pure, kind="block")
                elif action.else_block is not None:
                    rtctx.push_context("else clause")
                    await self.execute_handler_block(action.else_block, env, rtctx, pure, kind="block")
                return None
            case SetReturnAction():
                return self.evaluator.eval_expr(action.data, env, "natural")
            case CallHandlerAction():
                return await self._call_handler(action, env, rtctx, pure)
            case InvalidateAction():
                if not pure:
                    self._invalidate(action, env)
                return None
            case FireEventAction():
                return await self._fire_action(action, env, rtctx, pure)
            case LogAction():
                self._log(action, env, rtctx)
                return None
            case ThrowAction():
                self._throw(action, env, rtctx)
            case NopAction():
                return None
            case InstallMarkupAction():
                markup = self.evaluator.eval_expr(action.data, env, "resolve")
                self.host.install_markup(markup, env)
                return None
        raise ConstructionError(f"Invalid action type: {type(action).__name__}")

    def _assign(self, target, op: str, value: Any, env: Any, pure: bool) -> None:
        concrete = self.resolver.eval_dynamic_parts(target, env)
        if pure and concrete.root_key not in CONTEXT_ROOTS:
            raise ResolutionError(f"Pure handlers may only assign to context paths, not {concrete}")
        self.resolver.write_throw(concrete, env, value, op=op, allow_context=True)

    def _handler_path(self, action: CallHandlerAction, env: Any) -> HandlerPath:
        if action.callpath is not None:
            cp = self.evaluator.eval_expr(action.callpath, env, "resolve")
            if isinstance(cp, HandlerPath):
                return cp
            return parse_handler(to_display_string(cp))
        url = to_display_string(self.evaluator.eval_expr(action.url, env, "resolve"))
        method = self.evaluator.eval_expr(action.method, env, "resolve") if action.method is not None else None
        module = self.evaluator.eval_expr(action.module, env, "resolve") if action.module is not None else None
        return HandlerPath(
            to_display_string(module) if module else "http",
            url,
            to_display_string(method).upper() if method else None,
        )

    def _host_result(self, result: Any) -> Tuple[Any, Any]:
        """Splits a host reply into (block to run, plain return value)."""
        if result is None:
            return None, None
        if isinstance(result, HandlerBlock):
            return result, None
        if isinstance(result, list) and result and all(isinstance(a, Action) for a in result):
            return HandlerBlock(result), None
        if isinstance(result, collections.abc.Mapping):
            if "hibikihandler" in result or "hibikiactions" in result:
                return HandlerBlock(self._block_actions(result)), None
        return None, result

    async def _call_handler(self, action: CallHandlerAction, env: Any, rtctx: RtContext, pure: bool) -> Any:
        callpath = self._handler_path(action, env)
        data = self.evaluator.eval_expr(action.data, env, "natural") if action.data is not None else None
        data = as_data_object(deep_copy(data, resolve_lvalues=False))
        pure = pure or action.pure
        rtctx.replace_context(f"Calling handler {callpath.full_path()}")
        request = Request(callpath, data, pure, env.get_lib_context(), rtctx, env)
        result = self.host.call_handler(request)
        if inspect.isawaitable(result):
            result = await result
        block, rtn_value = self._host_result(result)
        if block is not None:
            handler_env = env.make_child_env(data, html_context=f"handler({callpath.full_path()})",
                                             block_local_data=True)
            rtn_value = await self.execute_handler_block(block, handler_env, rtctx, pure, kind="handler")
        if action.target is not None:
            self._assign(action.target, action.op, rtn_value, env, pure)
        return rtn_value

    def _invalidate(self, action: InvalidateAction, env: Any) -> None:
        value = self.evaluator.eval_expr(action.data, env, "resolve") if action.data is not None else None
        if value is None:
            self.host.invalidate(None)
            return
        for item in (value if isinstance(value, list) else [value]):
            if item is not None:
                self.host.invalidate(to_display_string(item))

    async def _fire_action(self, action: FireEventAction, env: Any, rtctx: RtContext, pure: bool) -> Any:
        name = self.evaluator.eval_expr(action.event, env, "resolve")
        if name is None or name == "":
            return None
        data = self.evaluator.eval_expr(action.data, env, "natural") if action.data is not None else None
        data, meta = split_at_keys(as_data_object(data))
        target = None
        if action.target is not None:
            target = self.evaluator.eval_expr(action.target, env, "resolve")
        event = HibikiEvent(to_display_string(name), data, action.bubble, meta,
                            None if target is None else to_display_string(target))
        return await self.fire_event(event, env, rtctx, pure=pure)

    async def fire_event(self, event: HibikiEvent, env: Any, rtctx: Optional[RtContext] = None,
                         pure: bool = False, throw_errors: bool = True) -> Any:
        """
        Dispatches an event to the nearest handler. Failures inside the handler
        are retried once as an `error` event in the same environment, then
        escalated to the host's unhandled-error sink.
        """
        if rtctx is None:
            rtctx = RtContext()
        start_env = env
        if event.target is not None:
            start_env = self.host.find_node_env(event.target)
        found = start_env.resolve_event_handler(event.name, rtctx, event.bubble) if start_env is not None else None
        if found is None:
            if event.bubble:
                self.host.unhandled_event(event, rtctx)
            return None
        block, handler_env = found
        html_context = f"event{'-bubble' if event.bubble else ''}({event.name})"
        event_env = handler_env.make_child_env(event.data, html_context=html_context)
        mark = rtctx.depth()
        rtctx.push_context(
            f"Running {event.name} handler (in [[{handler_env.get_full_html_context()}]])",
            handler_name=event.name, handler_env=handler_env,
        )
        try:
            return await self.execute_handler_block(block, event_env, rtctx, pure, kind="handler")
        except RuntimeLimitError as e:
            if getattr(e, "rtctx", None) is None:
                e.rtctx = rtctx.copy()
            raise
        except Exception as e:
            err = make_error_value(e, rtctx, event.name)
            self._dbg("EVENT error", event.name, err.message)
            rtctx.revert_to(mark)
            if not throw_errors or event.name == "error" or rtctx.depth() > self.limits.max_error_stack:
                self.host.unhandled_error(err, rtctx)
                return None
            if start_env.resolve_event_handler("error", rtctx, True) is None:
                self.host.unhandled_error(err, rtctx)
                return None
            rtctx.push_error_context(err)
            error_event = HibikiEvent("error", {"error": err, "event": event.name}, bubble=True)
            await self.fire_event(error_event, start_env, rtctx, pure, throw_errors=False)
            return None
        finally:
            rtctx.revert_to(mark)

    def _log_str(self, value: Any) -> str:
        if isinstance(value, str):
            return value
        if isinstance(value, ErrorValue):
            return str(value).rstrip("\n")
        return self.printer.pformat(value)

    def _log(self, action: LogAction, env: Any, rtctx: RtContext) -> None:
        values = [self.evaluator.eval_expr(e, env, "resolve") for e in action.exprs]
        message = " ".join(self._log_str(v) for v in values)
        logger.info("hibiki-log %s", message)
        self.side_effects.append({'topics': ['log'], 'message': message})
        if action.debug:
            lines = ["context:", rtctx.as_string("  "), "environment:"]
            lines.extend("  " + line for line in env.print_stack())
            dump = "\n".join(lines)
            logger.info("hibiki-debug\n%s", dump)
            self.side_effects.append({'topics': ['debug'], 'message': dump})

    def _throw(self, action: ThrowAction, env: Any, rtctx: RtContext) -> None:
        value = resolve_through(self.evaluator.eval_expr(action.data, env, "natural"),
                                self.limits.max_lvalue_depth)
        if isinstance(value, ErrorValue):
            augmented = rtctx.copy()
            augmented.push_error_context(value)
            value.rtctx = augmented
            raise UserThrownError(value)
        raise UserThrownError(ErrorValue(to_display_string(value), rtctx))


__all__ = ["ActionRunner", "split_at_keys", "as_data_object"]
