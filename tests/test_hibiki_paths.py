import pytest
from hibiki.hibiki_ast import Literal
from hibiki.hibiki_errors import ConstructionError
from hibiki.hibiki_paths import (
    ArrayPart, DerefPart, DynPart, MapPart, Path, RootPart,
    normalize_set_op, parse_path, parse_set_path, string_path,
)


def test_parse_global_path():
    p = parse_path("$.a.b[1]")
    assert p.parts == (RootPart("global"), MapPart("a"), MapPart("b"), ArrayPart(1))
    assert p.root_key == "global"
    assert p.is_static()


@pytest.mark.parametrize(
    "text,root",
    [
        ("$", RootPart("global")),
        ("$data", RootPart("data")),
        ("$state", RootPart("state")),
        ("$c", RootPart("c")),
        ("$component", RootPart("component")),
        ("$args", RootPart("args")),
        ("$currentcontext", RootPart("currentcontext")),
        ("@", RootPart("context")),
        (".", RootPart("local")),
        ("$local", RootPart("local")),
        ("@^^", RootPart("context", 2)),
    ],
)
def test_parse_roots(text, root):
    assert parse_path(text).parts == (root,)


def test_parse_bare_identifier_after_context_and_local():
    assert parse_path("@item.name").parts == (RootPart("context"), MapPart("item"), MapPart("name"))
    assert parse_path(".v").parts == (RootPart("local"), MapPart("v"))
    assert parse_path(".^v").parts == (RootPart("local", 1), MapPart("v"))


def test_parse_quoted_keys():
    assert parse_path('$["a b"]').parts[1] == MapPart("a b")
    assert parse_path("$['it\\'s']").parts[1] == MapPart("it's")
    assert parse_path('$["x\\"y"][2]').parts[1:] == (MapPart('x"y'), ArrayPart(2))


@pytest.mark.parametrize("text", ["", "a.b", "$.", "$.a[", "$.a[x]", "$nope", "$.a b", '$["unterminated'])
def test_parse_errors(text):
    with pytest.raises(ConstructionError):
        parse_path(text)


@pytest.mark.parametrize(
    "text",
    ["$", "$.a.b[1]", '$.a["b c"][0]', "@item.name", ".v", "$state.x", "$args.y", "@^^x", "$c.z"],
)
def test_string_path_renders_parsed_form(text):
    assert string_path(parse_path(text)) == text


def test_string_path_dynamic_parts():
    p = Path([DerefPart(Literal("$.x")), MapPart("k"), DynPart(Literal(1))])
    assert not p.is_static()
    assert string_path(p) == "$(deref).k[dyn]"
    assert string_path(Path([RootPart("expr", value=1), MapPart("a")])) == "(expr).a"
    assert string_path(Path([RootPart("data")])) == "$"


def test_path_requires_root_first():
    with pytest.raises(ConstructionError):
        Path([MapPart("a")])
    with pytest.raises(ConstructionError):
        Path([])
    with pytest.raises(ConstructionError):
        RootPart("bogus")


def test_path_equality_and_hash():
    assert parse_path("$.a") == parse_path("$.a")
    assert hash(parse_path("$.a")) == hash(parse_path("$.a"))
    assert parse_path("$.a") != parse_path("$.b")


def test_parse_set_path():
    assert parse_set_path("$.x") == ("set", parse_path("$.x"))
    assert parse_set_path("append:$.list") == ("append", parse_path("$.list"))
    assert parse_set_path("appendarr:$.list")[0] == "append-array"
    with pytest.raises(ConstructionError):
        parse_set_path("explode:$.x")


def test_normalize_set_op():
    assert normalize_set_op(None) == "set"
    assert normalize_set_op("setraw") == "set-raw"
    assert normalize_set_op("setunless") == "set-unless"
    assert normalize_set_op("blobext") == "blob-extend"
    with pytest.raises(ConstructionError):
        normalize_set_op("nope")
