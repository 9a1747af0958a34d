import math

import pytest
from hibiki.hibiki_datatypes import Blob, ObservableCell
from hibiki.hibiki_errors import CycleError
from hibiki.hibiki_lvalue import ObjectLValue
from hibiki.hibiki_serialize import to_json
from hibiki.hibiki_structural import check_cycle, deep_copy, deep_equal, find_cycle


def test_deep_copy_is_independent_and_idempotent():
    original = {"a": [1, {"b": 2}], "c": None}
    copy = deep_copy(original)
    assert copy == original
    assert copy is not original
    assert copy["a"][1] is not original["a"][1]
    assert deep_copy(copy) == copy


def test_deep_copy_resolves_lvalues_unless_asked_not_to():
    ref = ObjectLValue(ObservableCell({"x": 1}))
    assert deep_copy({"r": ref}) == {"r": {"x": 1}}
    assert deep_copy({"r": ref}, resolve_lvalues=False)["r"] is ref


def test_deep_copy_copies_blobs():
    blob = Blob("text/plain", "aGk=", "hi.txt")
    copy = deep_copy([blob])[0]
    assert copy is not blob
    assert deep_equal(copy, blob)


def test_shared_substructure_is_not_a_cycle():
    shared = [1]
    assert deep_copy({"a": shared, "b": shared}) == {"a": [1], "b": [1]}
    assert find_cycle({"a": shared, "b": shared}) is None


def test_cycle_trails():
    obj = {}
    obj["self"] = obj
    assert find_cycle(obj) == "root -> self"
    arr = []
    arr.append(arr)
    assert find_cycle(arr) == "root -> [0]"
    nested = {"list": [0, {}]}
    nested["list"][1]["back"] = nested
    assert find_cycle(nested) == "root -> list -> [1] -> back"


def test_cycles_raise():
    obj = {}
    obj["self"] = obj
    with pytest.raises(CycleError, match="root -> self"):
        deep_copy(obj)
    with pytest.raises(CycleError):
        check_cycle(obj)
    with pytest.raises(CycleError):
        to_json(obj)
    check_cycle({"fine": [1, 2]})


@pytest.mark.parametrize(
    "a,b,expected",
    [
        (1, 1.0, True),
        (math.nan, math.nan, True),
        (True, 1, False),
        ("1", 1, False),
        (None, None, True),
        (None, 0, False),
        ([1, [2]], [1, [2]], True),
        ([1], [1, 2], False),
        ({"a": 1}, {"a": 1}, True),
        ({"a": 1}, {"b": 1}, False),
        ({"a": 1}, [1], False),
    ],
)
def test_deep_equal(a, b, expected):
    assert deep_equal(a, b) is expected


def test_deep_equal_resolves_lvalues_and_compares_blobs():
    ref = ObjectLValue(ObservableCell([1, 2]))
    assert deep_equal(ref, [1, 2])
    assert deep_equal(Blob("text/plain", "aGk="), Blob("text/plain", "aGk="))
    assert not deep_equal(Blob("text/plain", "aGk="), Blob("text/html", "aGk="))
