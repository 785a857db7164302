"""Tests for local record evaluation."""

from dataclasses import dataclass

import pytest

from dashdata.query import Filter, FilterBuilder, OrderBy
from dashdata.records import (
    apply_query,
    get_field,
    like_pattern,
    matches_filter,
    matches_filters,
    prepend_record,
    project,
    remove_record,
    replace_record,
    sort_records,
)

ROW = {"id": "1", "name": "Alice", "age": 30, "tag": None, "active": True}


@dataclass
class Item:
    id: str
    name: str


@pytest.mark.unit
@pytest.mark.parametrize(
    ("flt", "expected"),
    [
        (Filter("name", "eq", "Alice"), True),
        (Filter("name", "eq", "alice"), False),
        (Filter("name", "neq", "Bob"), True),
        (Filter("age", "gt", 29), True),
        (Filter("age", "gt", 30), False),
        (Filter("age", "gte", 30), True),
        (Filter("age", "lt", 31), True),
        (Filter("age", "lte", 29), False),
        (Filter("name", "like", "Al%"), True),
        (Filter("name", "like", "al%"), False),
        (Filter("name", "ilike", "al%"), True),
        (Filter("name", "like", "A_ice"), True),
        (Filter("name", "in", ["Alice", "Bob"]), True),
        (Filter("name", "in", ["Bob"]), False),
        (Filter("tag", "is", None), True),
        (Filter("active", "is", True), True),
        (Filter("name", "is", None), False),
        (Filter("tag", "not", None), False),
        (Filter("name", "not", None), True),
        (Filter("name", "not", "Bob"), True),
        (Filter("name", "not", ["Alice"]), False),
        (Filter("missing", "eq", 1), False),
        (Filter("tag", "gt", 1), False),
    ],
)
def test_operator_semantics(flt: Filter, expected: bool) -> None:
    assert matches_filter(ROW, flt) is expected


@pytest.mark.unit
def test_filters_combine_with_and() -> None:
    both = FilterBuilder().eq("name", "Alice").gte("age", 18)
    one_fails = both.eq("active", False)
    assert matches_filters(ROW, both)
    assert not matches_filters(ROW, one_fails)
    assert matches_filters(ROW, [])


def test_like_pattern_escapes_regex_characters() -> None:
    assert like_pattern("a.b%").fullmatch("a.bcd")
    assert not like_pattern("a.b%").fullmatch("axbcd")


def test_get_field_reads_attributes() -> None:
    item = Item("1", "x")
    assert get_field(item, "name") == "x"
    assert get_field(item, "missing", "d") == "d"


def test_sort_records_multi_column_with_nulls_last() -> None:
    rows = [
        {"id": 1, "group": "b", "rank": 2},
        {"id": 2, "group": "a", "rank": None},
        {"id": 3, "group": "a", "rank": 1},
        {"id": 4, "group": "b", "rank": 1},
    ]
    ordered = sort_records(rows, [OrderBy("group"), OrderBy("rank")])
    assert [r["id"] for r in ordered] == [3, 2, 4, 1]

    descending = sort_records(rows, [OrderBy("rank", ascending=False)])
    assert descending[0]["id"] == 2


def test_apply_query_filters_orders_and_limits() -> None:
    rows = [{"id": i, "even": i % 2 == 0} for i in range(10)]
    result = apply_query(
        rows,
        [Filter("even", "eq", True)],
        [OrderBy("id", ascending=False)],
        limit=3,
    )
    assert [r["id"] for r in result] == [8, 6, 4]


def test_apply_query_offset() -> None:
    rows = [{"id": i} for i in range(5)]
    assert [r["id"] for r in apply_query(rows, limit=2, offset=2)] == [2, 3]
    assert [r["id"] for r in apply_query(rows, offset=4)] == [4]
    assert apply_query(rows, limit=2, offset=10) == []


def test_project() -> None:
    assert project(ROW, "id,name") == {"id": "1", "name": "Alice"}
    assert project(ROW, "*") == ROW
    assert project(ROW, None) == ROW


def test_list_patching_helpers_do_not_mutate() -> None:
    rows = [{"id": "1", "v": 1}, {"id": "2", "v": 2}]

    assert prepend_record(rows, {"id": "0"})[0] == {"id": "0"}
    assert replace_record(rows, {"id": "2", "v": 20})[1] == {"id": "2", "v": 20}
    assert remove_record(rows, "1") == [{"id": "2", "v": 2}]
    assert rows == [{"id": "1", "v": 1}, {"id": "2", "v": 2}]
