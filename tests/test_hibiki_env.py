import pytest
from hibiki.hibiki_config import RuntimeLimits, debug_enabled
from hibiki.hibiki_datatypes import NoAttr
from hibiki.hibiki_env import ContextProxy, HandlerPath, HibikiState, parse_handler
from hibiki.hibiki_errors import (
    ErrorValue, ResolutionError, RtContext, RuntimeLimitError, UserThrownError,
    exception_message, make_error_value,
)


@pytest.mark.parametrize(
    "text,expected",
    [
        ("//@local/add", HandlerPath("local", "/add")),
        ("GET //@app/items#frag", HandlerPath("app", "/items", "GET", "frag")),
        ("post /api/save", HandlerPath("http", "/api/save", "POST")),
        ("//@lib:fn", HandlerPath("lib", "/fn")),
        ("//@mod", HandlerPath("mod", "/")),
    ],
)
def test_parse_handler(text, expected):
    assert parse_handler(text) == expected


def test_parse_handler_rejects_empty():
    with pytest.raises(ResolutionError):
        parse_handler("   ")


def test_handler_path_full_path():
    assert HandlerPath("local", "/add").full_path() == "//@local/add"
    assert HandlerPath("http", "/api", "GET").full_path() == "GET /api"
    assert HandlerPath("app", "/x", None, "f").full_path() == "//@app/x#f"


def test_context_proxy_reads_up_and_writes_locally():
    state = HibikiState()
    root = state.root_env(specials={"a": 1, "b": 1})
    child = root.make_child_env({"b": 2})
    ctx = child.resolve_root("context")
    assert isinstance(ctx, ContextProxy)
    assert ctx["a"] == 1
    assert ctx["b"] == 2
    assert "missing" not in ctx
    assert dict(ctx) == {"a": 1, "b": 2}
    ctx["c"] = 3
    assert child.specials == {"b": 2, "c": 3}
    assert "c" not in root.specials
    assert child.resolve_root("context", caret=1)["b"] == 1
    assert child.resolve_root("currentcontext") == {"b": 2, "c": 3}


def test_local_root_with_caret_and_blocking():
    state = HibikiState()
    root = state.root_env(local_data={"level": 0})
    mid = root.make_child_env({}, local_data={"level": 1})
    leaf = mid.make_child_env({})
    assert leaf.resolve_root("local") == {"level": 1}
    assert leaf.resolve_root("local", caret=1) == {"level": 0}
    assert leaf.resolve_root("local", caret=2) is None
    handler_env = mid.make_child_env({}, block_local_data=True)
    assert handler_env.resolve_root("local") is None


def test_component_and_args_roots_are_inherited():
    state = HibikiState()
    comp = state.root_env(component_root={"n": 1}, args_root={"a": 2})
    child = comp.make_child_env({})
    assert child.resolve_root("c") == {"n": 1}
    assert child.resolve_root("args") == {"a": 2}
    child.set_root("component", {"n": 5})
    assert comp.resolve_root("component") == {"n": 5}
    with pytest.raises(ResolutionError):
        state.root_env().set_root("c", {})
    with pytest.raises(ResolutionError):
        child.set_root("local", {})
    with pytest.raises(ResolutionError):
        child.resolve_root("bogus")


def test_invalid_event_boundary():
    with pytest.raises(ValueError):
        HibikiState().root_env(event_boundary="sideways")


def test_html_context_and_print_stack():
    state = HibikiState()
    root = state.root_env(handlers={"click": []})
    child = root.make_child_env({"x": 1}, html_context="div", event_boundary="hard")
    assert child.get_full_html_context() == "<root> | div"
    assert child.get_lib_context() == "main"
    lines = child.print_stack()
    assert lines[0] == "0: div specials=['x'] boundary=hard"
    assert lines[1] == "1: <root> handlers=['click']"


def test_state_roots_and_subscriptions():
    state = HibikiState({"a": 1}, {"mode": "dark"})
    seen = []
    unsubscribe = state.subscribe("state", lambda new, old: seen.append(new))
    state.set_root("state", {"mode": "light"})
    unsubscribe()
    state.set_root("state", {})
    assert seen == [{"mode": "light"}]
    assert state.get_root("global") == {"a": 1}
    with pytest.raises(ResolutionError):
        state.get_root("nope")


def test_rtcontext_renders_innermost_first():
    rtctx = RtContext()
    rtctx.push_context("outer")
    rtctx.push_context("inner")
    assert rtctx.as_string("  ") == "  inner\n  outer"
    mark = rtctx.depth()
    rtctx.push_context("x")
    rtctx.replace_context("y")
    assert rtctx.stack[-1].desc == "y"
    rtctx.revert_to(mark)
    assert rtctx.depth() == 2


def test_rtcontext_error_frame_is_truncated():
    rtctx = RtContext()
    rtctx.push_error_context(ErrorValue("m" * 200))
    desc = rtctx.stack[-1].desc
    assert len(desc) == 80
    assert desc.startswith("throw error: <<mmm")
    assert desc.endswith("...")


def test_rtcontext_action_counter():
    rtctx = RtContext()
    for _ in range(3):
        rtctx.count_action(3)
    with pytest.raises(RuntimeLimitError):
        rtctx.count_action(3)
    assert rtctx.copy().action_count == 4


def test_rtcontext_handler_frames():
    state = HibikiState()
    env = state.root_env()
    rtctx = RtContext()
    rtctx.push_context("Running click handler", handler_name="click", handler_env=env)
    rtctx.push_context("nop action [nop]")
    assert rtctx.get_top_handler_context().handler_name == "click"
    assert rtctx.is_handler_in_stack(env, "click")
    assert not rtctx.is_handler_in_stack(env, "other")


def test_error_value_fields():
    rtctx = RtContext()
    rtctx.push_context("frame")
    cause = KeyError("k")
    err = ErrorValue("went wrong", rtctx, cause=cause, event="click")
    rtctx.push_context("later")
    assert err.get_field("message") == "went wrong"
    assert err.get_field("context") == "frame"
    assert err.get_field("event") == "click"
    assert err.get_field("cause") == str(cause)
    assert err.get_field("other") is None
    assert err.display_string() == "Hibiki Error | went wrong"
    assert str(err) == "Hibiki Error | went wrong\n> frame\n"


def test_make_error_value():
    err = make_error_value(ValueError("bad"), event="load")
    assert err.message == "ValueError: bad"
    assert err.event == "load"
    thrown = ErrorValue("user")
    assert make_error_value(UserThrownError(thrown), event="click") is thrown
    assert thrown.event == "click"
    assert exception_message(ResolutionError("plain")) == "plain"
    assert exception_message(KeyError()) == "KeyError"


def test_runtime_limits_from_env(monkeypatch):
    monkeypatch.setenv("HIBIKI_MAX_ACTIONS", "50")
    monkeypatch.setenv("HIBIKI_MAX_STACK", " ")
    limits = RuntimeLimits.from_env()
    assert limits.max_actions == 50
    assert limits.max_stack == 30
    assert HibikiState().limits.max_actions == 50
    monkeypatch.setenv("HIBIKI_MAX_ARRAY_SIZE", "lots")
    with pytest.raises(ValueError, match="HIBIKI_MAX_ARRAY_SIZE"):
        RuntimeLimits.from_env()


def test_debug_switch(monkeypatch):
    monkeypatch.delenv("HIBIKI_DEBUG", raising=False)
    assert not debug_enabled()
    monkeypatch.setenv("HIBIKI_DEBUG", "1")
    assert debug_enabled()


def test_noattr_local_data_means_absent():
    state = HibikiState()
    env = state.root_env()
    assert env.has_local_data is False
    assert env.make_child_env({}, local_data=None).has_local_data is True
    assert env.make_child_env({}, local_data=NoAttr).has_local_data is False
