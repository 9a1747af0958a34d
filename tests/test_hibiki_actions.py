import asyncio

import pytest
from hibiki.hibiki_actions import as_data_object, split_at_keys
from hibiki.hibiki_ast import (
    CallHandlerAction, FireEventAction, HandlerBlock, IfAction, InstallMarkupAction,
    InvalidateAction, Literal, LogAction, MapExpr, NopAction, OpExpr, PathExpr,
    SetDataAction, SetReturnAction, ThrowAction,
)
from hibiki.hibiki_config import RuntimeLimits
from hibiki.hibiki_datatypes import NoAttr
from hibiki.hibiki_env import HibikiState
from hibiki.hibiki_errors import ErrorValue
from hibiki.hibiki_runtime import HandlerRunner, LocalHost


def make_runner(global_data=None, host=None, limits=None):
    host = host or LocalHost()
    state = HibikiState(global_data=global_data, host=host, limits=limits)
    return HandlerRunner(state), state, host


def kv(**entries):
    return MapExpr([(Literal(k), v) for k, v in entries.items()])


@pytest.mark.asyncio
async def test_set_data_and_return():
    runner, state, _ = make_runner({"n": 1})
    block = HandlerBlock([
        SetDataAction("$.n", OpExpr("+", [PathExpr("$.n"), Literal(1)])),
        SetReturnAction(PathExpr("$.n")),
        SetDataAction("$.after", Literal(True)),
    ])
    res = await runner.run_handler(block)
    assert res.status == 'success', res.format_error()
    assert res.value == 2
    assert state.get_root("global") == {"n": 2, "after": True}


@pytest.mark.asyncio
async def test_last_set_return_wins():
    runner, _, _ = make_runner()
    res = await runner.run_handler([SetReturnAction(Literal(1)), SetReturnAction(Literal(2))])
    assert res.value == 2


@pytest.mark.asyncio
async def test_if_block_branches():
    runner, state, _ = make_runner({"n": 5})
    block = [
        IfAction(
            OpExpr(">", [PathExpr("$.n"), Literal(1)]),
            [SetDataAction("$.r", Literal("big"))],
            [SetDataAction("$.r", Literal("small"))],
        )
    ]
    await runner.run_handler(block)
    assert state.get_root("global")["r"] == "big"
    state.evaluator.path_resolver.write("$.n", state.root_env(), 0)
    await runner.run_handler(block)
    assert state.get_root("global")["r"] == "small"


@pytest.mark.asyncio
async def test_if_block_return_does_not_propagate():
    runner, state, _ = make_runner()
    block = [
        IfAction(Literal(True), [SetReturnAction(Literal(1)), SetDataAction("$.ran", Literal(True))]),
    ]
    res = await runner.run_handler(block)
    assert res.value is None
    # the nested set-return does not stop the sub-block
    assert state.get_root("global")["ran"] is True


@pytest.mark.asyncio
async def test_action_count_ceiling():
    runner, _, _ = make_runner()
    res = await runner.run_handler([NopAction() for _ in range(1001)])
    assert res.status == 'error'
    assert res.error_message.startswith("RuntimeLimitError")
    ok = await runner.run_handler([NopAction() for _ in range(1000)])
    assert ok.status == 'success'


@pytest.mark.asyncio
async def test_stack_depth_ceiling():
    runner, _, host = make_runner()
    host.register_local_handler("rec", lambda req: [CallHandlerAction(callpath=Literal("//@local/rec"))])
    res = await runner.run_handler([CallHandlerAction(callpath=Literal("//@local/rec"))])
    assert res.status == 'error'
    assert "stack depth" in res.error_message


@pytest.mark.asyncio
async def test_custom_limits():
    runner, _, _ = make_runner(limits=RuntimeLimits(max_actions=3))
    res = await runner.run_handler([NopAction()] * 4)
    assert res.status == 'error'


@pytest.mark.asyncio
async def test_pure_mode_restricts_writes_to_context():
    runner, state, host = make_runner({})
    res = await runner.run_handler([SetDataAction("$.x", Literal(1))], pure=True)
    assert res.status == 'error'
    assert "Pure handlers" in res.error_message
    assert state.get_root("global") == {}
    res = await runner.run_handler([SetDataAction("@x", Literal(1)), InvalidateAction()], pure=True)
    assert res.status == 'success', res.format_error()
    assert host.invalidations == []


@pytest.mark.asyncio
async def test_set_data_into_context():
    runner, state, _ = make_runner()
    env = state.root_env()
    await runner.run_handler([SetDataAction("@tmp", Literal(3)), SetDataAction("$.out", PathExpr("@tmp"))], env)
    assert env.specials == {"tmp": 3}
    assert state.get_root("global")["out"] == 3


@pytest.mark.asyncio
async def test_call_local_handler_assigns_result():
    runner, state, host = make_runner({})
    host.register_local_handler("add", lambda req: req.data["a"] + req.data["b"])
    action = CallHandlerAction(callpath=Literal("//@local/add"), data=kv(a=Literal(1), b=Literal(2)), target="$.sum")
    res = await runner.run_handler([action])
    assert res.status == 'success', res.format_error()
    assert state.get_root("global")["sum"] == 3


@pytest.mark.asyncio
async def test_call_handler_runs_returned_block_with_request_data():
    runner, state, host = make_runner({})

    async def handler(req):
        await asyncio.sleep(0)
        return HandlerBlock([SetReturnAction(OpExpr("*", [PathExpr("@x"), Literal(2)]))])

    host.register_local_handler("double", handler)
    action = CallHandlerAction(callpath=Literal("//@local/double"), data=kv(x=Literal(7)), target="append:$.out")
    res = await runner.run_handler([action, SetReturnAction(PathExpr("$.out"))])
    assert res.value == [14]


@pytest.mark.asyncio
async def test_call_handler_request_shape():
    class RecordingHost(LocalHost):
        def __init__(self):
            super().__init__()
            self.requests = []

        async def call_handler(self, request):
            self.requests.append(request)
            return None

    host = RecordingHost()
    runner, _, _ = make_runner(host=host)
    await runner.run_handler([
        CallHandlerAction(url=Literal("/api/items"), method=Literal("post"), data=Literal(5), pure=True),
    ])
    req = host.requests[0]
    assert req.callpath.module == "http"
    assert req.callpath.method == "POST"
    assert req.callpath.path == "/api/items"
    assert req.data == {"value": 5}
    assert req.pure is True
    assert req.lib_context == "main"


@pytest.mark.asyncio
async def test_call_unknown_handler_errors():
    runner, _, _ = make_runner()
    res = await runner.run_handler([CallHandlerAction(callpath=Literal("//@local/missing"))])
    assert res.status == 'error'
    assert "ResolutionError" in res.error_message
    stderr = [e for e in res.side_effects if e['topics'] == ['stderr']]
    assert stderr and stderr[-1]['message'] == res.error_message


@pytest.mark.asyncio
async def test_invalidate():
    runner, _, host = make_runner()
    await runner.run_handler([
        InvalidateAction(),
        InvalidateAction(Literal("items.*")),
        InvalidateAction(Literal(["a", "b"])),
    ])
    assert host.invalidations == [None, "items.*", "a", "b"]


@pytest.mark.asyncio
async def test_log_side_effects():
    runner, _, _ = make_runner({"x": 3})
    res = await runner.run_handler([LogAction([Literal("x ="), PathExpr("$.x")]), LogAction([Literal("d")], debug=True)])
    topics = [e['topics'] for e in res.side_effects]
    assert topics == [['log'], ['log'], ['debug']]
    assert res.side_effects[0]['message'] == "x = 3"
    assert "context:" in res.side_effects[2]['message']


@pytest.mark.asyncio
async def test_throw_reports_context():
    runner, _, host = make_runner()
    res = await runner.run_handler([NopAction(), ThrowAction(Literal("bad"))])
    assert res.status == 'error'
    assert res.error_message == "HibikiError: bad"
    assert isinstance(res.error_value, ErrorValue)
    assert host.reported_errors == [res.error_value]
    assert 'throw action [throw("bad")]' in res.format_error()


@pytest.mark.asyncio
async def test_install_markup_delegates_to_host():
    runner, _, host = make_runner()
    await runner.run_handler([InstallMarkupAction(Literal("<div/>"))])
    assert host.markup == ["<div/>"]


@pytest.mark.asyncio
async def test_fire_event_runs_handler_with_event_data():
    runner, state, _ = make_runner({})
    env = state.root_env(handlers={
        "click": HandlerBlock([SetDataAction("$.got", PathExpr("@v")), SetReturnAction(Literal("done"))]),
    })
    res = await runner.fire_event("click", {"v": 2}, env=env)
    assert res.status == 'success'
    assert res.value == "done"
    assert state.get_root("global")["got"] == 2


@pytest.mark.asyncio
async def test_fire_event_action_strips_meta_keys():
    runner, state, _ = make_runner({})
    env = state.root_env(handlers={
        "select": [SetDataAction("$.v", PathExpr("@v")), SetDataAction("$.meta", PathExpr("@meta"))],
    })
    fire = FireEventAction("select", MapExpr([(Literal("@meta"), Literal(1)), (Literal("v"), Literal(2))]))
    await runner.run_handler([fire], env)
    assert state.get_root("global") == {"v": 2, "meta": None}


@pytest.mark.asyncio
async def test_unhandled_events():
    runner, state, host = make_runner()
    res = await runner.fire_event("nothing")
    assert res.status == 'success'
    assert res.side_effects == []
    assert host.unhandled_events == []
    await runner.fire_event("nothing", bubble=True)
    assert [e.name for e in host.unhandled_events] == ["nothing"]


@pytest.mark.asyncio
async def test_handler_lookup_walks_up_and_respects_hard_boundary():
    runner, state, host = make_runner({})
    root = state.root_env(handlers={"ping": [SetDataAction("append:$.hits", Literal(1))]})
    soft = root.make_child_env({}, event_boundary="soft")
    hard = soft.make_child_env({}, event_boundary="hard")
    await runner.fire_event("ping", env=soft)
    await runner.fire_event("ping", env=hard)
    assert state.get_root("global")["hits"] == [1]
    await runner.fire_event("ping", env=hard, bubble=True)
    assert state.get_root("global")["hits"] == [1, 1]
    assert host.unhandled_events == []


@pytest.mark.asyncio
async def test_handler_does_not_recurse_into_itself():
    runner, state, host = make_runner({})
    env = state.root_env(handlers={
        "tick": [SetDataAction("append:$.ticks", Literal(1)), FireEventAction("tick")],
    })
    res = await runner.fire_event("tick", env=env)
    assert res.status == 'success'
    assert state.get_root("global")["ticks"] == [1]


@pytest.mark.asyncio
async def test_targeted_event_uses_node_env():
    runner, state, host = make_runner({})
    node_env = state.root_env(handlers={"ping": [SetDataAction("$.node", Literal(True))]})
    host.register_node_env("n1", node_env)
    await runner.run_handler([
        FireEventAction("ping", target=Literal("n1")),
        FireEventAction("ping", target=Literal("unknown")),
    ])
    assert state.get_root("global") == {"node": True}


@pytest.mark.asyncio
async def test_error_event_receives_error_and_event_name():
    runner, state, host = make_runner({})
    env = state.root_env(handlers={
        "click": [ThrowAction(Literal("boom"))],
        "error": [SetDataAction("$.msg", PathExpr("@error.message")), SetDataAction("$.from", PathExpr("@event"))],
    })
    res = await runner.fire_event("click", env=env)
    assert res.status == 'success'
    assert state.get_root("global") == {"msg": "boom", "from": "click"}
    assert host.unhandled_errors == []


@pytest.mark.asyncio
async def test_error_without_error_handler_goes_to_host():
    runner, state, host = make_runner({})
    env = state.root_env(handlers={"click": [SetDataAction("$.x", PathExpr("$.a[0].b")), NopAction()]})
    state.evaluator.path_resolver.write("$.a", env, {"not": "array"})
    await runner.fire_event("click", env=env)
    assert len(host.unhandled_errors) == 1
    assert host.reported_errors == host.unhandled_errors
    assert "non-array" in host.unhandled_errors[0].message


@pytest.mark.asyncio
async def test_error_inside_error_handler_escalates_once():
    runner, state, host = make_runner({})
    env = state.root_env(handlers={
        "click": [ThrowAction(Literal("boom"))],
        "error": [ThrowAction(Literal("again"))],
    })
    await runner.fire_event("click", env=env)
    assert [e.message for e in host.unhandled_errors] == ["again"]
    host.unhandled_errors.clear()
    await runner.fire_event("error", {"error": None}, env=env)
    assert [e.message for e in host.unhandled_errors] == ["again"]


@pytest.mark.asyncio
async def test_runtime_limit_inside_event_aborts_chain():
    runner, state, host = make_runner({})
    env = state.root_env(handlers={
        "spin": [NopAction()] * 1001,
        "error": [SetDataAction("$.caught", Literal(True))],
    })
    res = await runner.fire_event("spin", env=env)
    assert res.status == 'error'
    assert res.error_message.startswith("RuntimeLimitError")
    assert "Running spin handler" in res.format_error()
    assert state.get_root("global") == {}
    assert host.unhandled_errors == []


@pytest.mark.asyncio
async def test_concurrent_event_chains_interleave():
    runner, state, host = make_runner({})

    async def slow(req):
        await asyncio.sleep(0)
        return req.data["n"]

    host.register_local_handler("slow", slow)
    env = state.root_env(handlers={
        "go": [CallHandlerAction(callpath=Literal("//@local/slow"), data=kv(n=PathExpr("@n")), target="append:$.out")],
    })
    await asyncio.gather(
        HandlerRunner(state).fire_event("go", {"n": 1}, env=env),
        HandlerRunner(state).fire_event("go", {"n": 2}, env=env),
    )
    assert sorted(state.get_root("global")["out"]) == [1, 2]


@pytest.mark.asyncio
async def test_interleaved_runs_keep_their_own_side_effects():
    runner, state, host = make_runner({})
    gate = asyncio.Event()

    async def slow(req):
        await gate.wait()
        return None

    def release(req):
        gate.set()
        return None

    host.register_local_handler("slow", slow)
    host.register_local_handler("release", release)
    run_a = runner.run_handler([
        LogAction([Literal("A1")]),
        CallHandlerAction(callpath=Literal("//@local/slow")),
        LogAction([Literal("A2")]),
    ])
    run_b = runner.run_handler([
        LogAction([Literal("B1")]),
        CallHandlerAction(callpath=Literal("//@local/release")),
    ])
    res_a, res_b = await asyncio.gather(run_a, run_b)
    assert res_a.status == 'success', res_a.format_error()
    assert res_b.status == 'success', res_b.format_error()
    assert [e['message'] for e in res_a.side_effects] == ["A1", "A2"]
    assert [e['message'] for e in res_b.side_effects] == ["B1"]


def test_split_at_keys_and_data_object():
    rest, meta = split_at_keys({"@a": 1, "b": 2})
    assert rest == {"b": 2}
    assert meta == {"a": 1}
    assert as_data_object(None) == {}
    assert as_data_object(NoAttr) == {}
    assert as_data_object(5) == {"value": 5}
    assert as_data_object({"k": 1}) == {"k": 1}
