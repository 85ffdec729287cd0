from __future__ import annotations

import base64
import json

import pytest

from dynarecord.query import FilterCondition, FilterGroup, Page, SortKeyCondition, decode_cursor, encode_cursor


def test_cursor_round_trip_with_binary_and_nested_values() -> None:
    key = {
        "PK": {"S": "A"},
        "n": {"N": "12"},
        "blob": {"B": b"\x00hi"},
        "bs": {"BS": [b"x", b"y"]},
        "nested": {"M": {"x": {"B": b"bye"}, "flag": {"BOOL": True}}},
        "list": {"L": [{"B": b"x"}, {"NULL": True}, {"SS": ["a"]}]},
    }

    decoded = decode_cursor(encode_cursor(key, index="by-customer", sort="DESC"))

    assert decoded.last_key == key
    assert decoded.index == "by-customer"
    assert decoded.sort == "DESC"


def test_cursor_payload_is_url_safe_json() -> None:
    cursor = encode_cursor({"PK": {"B": b"\xff\xfe"}})
    assert "+" not in cursor and "/" not in cursor

    payload = json.loads(base64.urlsafe_b64decode(cursor))
    assert payload == {"lastKey": {"PK": {"B": base64.b64encode(b"\xff\xfe").decode("ascii")}}}


def test_decode_tolerates_stripped_padding_and_drops_unknown_sort() -> None:
    raw = json.dumps({"lastKey": {"PK": {"S": "A"}}, "sort": "SIDEWAYS"}).encode()
    cursor = base64.urlsafe_b64encode(raw).decode().rstrip("=")

    decoded = decode_cursor(cursor)
    assert decoded.last_key == {"PK": {"S": "A"}}
    assert decoded.sort is None


def test_cursor_errors() -> None:
    assert encode_cursor({}) == ""
    assert encode_cursor(None) == ""

    with pytest.raises(ValueError, match="empty"):
        decode_cursor("   ")
    with pytest.raises(ValueError, match="unsupported attribute value type"):
        encode_cursor({"PK": {"X": "1"}})
    with pytest.raises(ValueError, match="single-key"):
        encode_cursor({"PK": {"S": "a", "N": "1"}})

    not_an_object = base64.urlsafe_b64encode(b"[1, 2]").decode()
    with pytest.raises(ValueError, match="object"):
        decode_cursor(not_an_object)


def test_condition_helpers() -> None:
    assert SortKeyCondition.between(1, 2) == SortKeyCondition(op="between", values=(1, 2))
    assert FilterCondition.in_("f", ["a"]).values == (["a"],)
    assert FilterCondition.exists("f").values == ()
    assert FilterGroup.or_(FilterCondition.eq("a", 1)).op == "OR"

    page = Page(items=[1, 2], next_cursor=None)
    assert list(page) == [1, 2]
    assert len(page) == 2
    assert not page.has_more
