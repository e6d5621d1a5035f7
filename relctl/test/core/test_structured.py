from __future__ import annotations

from relctl.core.structured import (
    as_str_dict,
    get_bool,
    get_int,
    get_str,
    get_str_list,
    get_table,
    is_str_dict,
)


def test_is_str_dict() -> None:
    assert is_str_dict({"a": 1})
    assert not is_str_dict({1: "a"})
    assert not is_str_dict(["a"])
    assert as_str_dict("x") is None


def test_get_str_strips_and_rejects_blank() -> None:
    table = {"name": "  develop ", "blank": "   ", "num": 3}

    assert get_str(table, "name") == "develop"
    assert get_str(table, "blank") is None
    assert get_str(table, "num") is None
    assert get_str(table, "missing") is None


def test_get_int_rejects_bool() -> None:
    table = {"count": 2, "flag": True, "text": "2"}

    assert get_int(table, "count") == 2
    assert get_int(table, "flag") is None
    assert get_int(table, "text") is None


def test_get_bool_and_table() -> None:
    table = {"on": False, "sub": {"k": "v"}, "bad": {1: 2}}

    assert get_bool(table, "on") is False
    assert get_bool(table, "sub") is None
    assert get_table(table, "sub") == {"k": "v"}
    assert get_table(table, "bad") is None


def test_get_str_list() -> None:
    assert get_str_list({"xs": [" a ", "", "b"]}, "xs") == ["a", "b"]
    assert get_str_list({"xs": ["a", 1]}, "xs") is None
    assert get_str_list({"xs": "a"}, "xs") is None
