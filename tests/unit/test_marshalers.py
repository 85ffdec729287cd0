from __future__ import annotations

from datetime import UTC, date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from dynarecord.errors import ModelDefinitionError, ValidationError
from dynarecord.marshalers import (
    BooleanMarshaler,
    DateMarshaler,
    DateTimeMarshaler,
    EpochTimeMarshaler,
    FloatMarshaler,
    IntegerMarshaler,
    ListMarshaler,
    MapMarshaler,
    NumericSetMarshaler,
    StringMarshaler,
    StringSetMarshaler,
    marshaler_for_annotation,
    to_storage_numbers,
)


def test_string_marshaler_drops_empty_strings() -> None:
    m = StringMarshaler()
    assert m.dynamodb_type == "S"
    assert m.type_cast(5) == "5"
    assert m.type_cast(None) is None
    assert m.type_cast("") == ""
    assert m.serialize("") is None
    assert m.serialize("x") == "x"


def test_integer_marshaler_coerces_storage_and_user_values() -> None:
    m = IntegerMarshaler()
    assert m.type_cast(Decimal("3")) == 3
    assert m.type_cast("4") == 4
    assert m.type_cast("") is None
    assert m.serialize(7) == 7

    with pytest.raises(ValidationError, match="integer"):
        m.type_cast("seven")


def test_float_marshaler_serializes_to_decimal() -> None:
    m = FloatMarshaler()
    assert m.type_cast(Decimal("1.25")) == 1.25
    assert m.serialize(1.5) == Decimal("1.5")
    assert m.serialize(None) is None


def test_boolean_marshaler_treats_false_like_values_as_false() -> None:
    m = BooleanMarshaler()
    assert m.type_cast("false") is False
    assert m.type_cast("0") is False
    assert m.type_cast(0) is False
    assert m.type_cast(False) is False
    assert m.type_cast("yes") is True
    assert m.type_cast(1) is True
    assert m.type_cast("") is None


def test_date_marshaler_parses_and_formats() -> None:
    m = DateMarshaler()
    assert m.type_cast("2024-03-05") == date(2024, 3, 5)
    assert m.type_cast(datetime(2024, 3, 5, 10, tzinfo=UTC)) == date(2024, 3, 5)
    assert m.serialize(date(2024, 3, 5)) == "2024-03-05"

    with pytest.raises(ValidationError):
        m.type_cast("not a date")


def test_datetime_marshaler_reads_naive_values_as_utc() -> None:
    m = DateTimeMarshaler()
    assert m.serialize(datetime(2024, 1, 1, 12)) == "2024-01-01T12:00:00+00:00"

    plus_two = timezone(timedelta(hours=2))
    assert m.serialize(datetime(2024, 1, 1, 12, tzinfo=plus_two)) == "2024-01-01T10:00:00+00:00"

    parsed = m.type_cast("2024-01-01T10:00:00+00:00")
    assert parsed == datetime(2024, 1, 1, 10, tzinfo=UTC)
    assert parsed.tzinfo is not None


def test_datetime_marshaler_keeps_offset_with_local_time() -> None:
    plus_two = timezone(timedelta(hours=2))
    m = DateTimeMarshaler(use_local_time=True)
    out = m.type_cast(datetime(2024, 1, 1, 12, tzinfo=plus_two))
    assert out.utcoffset() == timedelta(hours=2)


def test_epoch_time_marshaler_round_trips_seconds() -> None:
    m = EpochTimeMarshaler()
    assert m.dynamodb_type == "N"
    assert m.serialize(datetime(1970, 1, 1, 0, 1, tzinfo=UTC)) == 60
    assert m.type_cast(Decimal("60")) == datetime(1970, 1, 1, 0, 1, tzinfo=UTC)


def test_list_and_map_marshalers_convert_nested_floats() -> None:
    assert ListMarshaler().serialize((1, 2.5)) == [1, Decimal("2.5")]
    assert MapMarshaler().serialize({"a": 1.5, "b": [0.5]}) == {"a": Decimal("1.5"), "b": [Decimal("0.5")]}

    with pytest.raises(ValidationError):
        ListMarshaler().type_cast("abc")
    with pytest.raises(ValidationError):
        MapMarshaler().type_cast([1, 2])


def test_set_marshalers_store_nothing_for_empty_sets() -> None:
    ss = StringSetMarshaler()
    assert ss.type_cast(None) == set()
    assert ss.type_cast(["a", 1]) == {"a", "1"}
    assert ss.serialize(set()) is None

    ns = NumericSetMarshaler()
    assert ns.type_cast(["1", 2]) == {Decimal("1"), 2}
    assert ns.serialize([]) is None

    with pytest.raises(ValidationError):
        ns.type_cast(["x"])


def test_to_storage_numbers_rejects_non_finite_floats() -> None:
    assert to_storage_numbers({"x": [1.5, True]}) == {"x": [Decimal("1.5"), True]}
    with pytest.raises(ValidationError, match="non-finite"):
        to_storage_numbers(float("nan"))


def test_marshaler_for_annotation_resolves_types_and_strings() -> None:
    assert isinstance(marshaler_for_annotation(int | None), IntegerMarshaler)
    assert isinstance(marshaler_for_annotation(set[str]), StringSetMarshaler)
    assert isinstance(marshaler_for_annotation(set[int]), NumericSetMarshaler)
    assert isinstance(marshaler_for_annotation(dict[str, int]), MapMarshaler)
    assert isinstance(marshaler_for_annotation(datetime), DateTimeMarshaler)
    assert isinstance(marshaler_for_annotation("list[str]"), ListMarshaler)
    assert isinstance(marshaler_for_annotation("Optional[int]"), IntegerMarshaler)
    assert isinstance(marshaler_for_annotation("str | None"), StringMarshaler)

    with pytest.raises(ModelDefinitionError, match="no marshaler"):
        marshaler_for_annotation(bytes)
