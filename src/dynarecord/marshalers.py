from __future__ import annotations

import math
import re
import types
from collections.abc import Iterable, Mapping
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol, Union, get_args, get_origin

from .errors import ModelDefinitionError, ValidationError


class Marshaler(Protocol):
    dynamodb_type: str

    def type_cast(self, value: Any) -> Any: ...

    def serialize(self, value: Any) -> Any: ...


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value == "")


def to_storage_numbers(value: Any) -> Any:
    """Recursively replace floats with Decimal; the SDK serializer rejects floats."""
    if isinstance(value, bool):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValidationError(f"non-finite number cannot be stored: {value!r}")
        return Decimal(str(value))
    if isinstance(value, Mapping):
        return {k: to_storage_numbers(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_storage_numbers(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return {to_storage_numbers(v) for v in value}
    return value


def _parse_decimal(value: Any, *, kind: str) -> Decimal:
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as err:
        raise ValidationError(f"cannot convert {value!r} to {kind}") from err
    if not parsed.is_finite():
        raise ValidationError(f"cannot convert {value!r} to {kind}")
    return parsed


class StringMarshaler:
    dynamodb_type = "S"

    def type_cast(self, value: Any) -> str | None:
        if value is None:
            return None
        if isinstance(value, str):
            return value
        return str(value)

    def serialize(self, value: Any) -> str | None:
        cast = self.type_cast(value)
        if not cast:
            return None
        return cast


class IntegerMarshaler:
    dynamodb_type = "N"

    def type_cast(self, value: Any) -> int | None:
        if _blank(value):
            return None
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, bool):
            return int(value)
        return int(_parse_decimal(value, kind="integer"))

    def serialize(self, value: Any) -> int | None:
        return self.type_cast(value)


class FloatMarshaler:
    dynamodb_type = "N"

    def type_cast(self, value: Any) -> float | None:
        if _blank(value):
            return None
        if isinstance(value, float):
            return value
        return float(_parse_decimal(value, kind="float"))

    def serialize(self, value: Any) -> Decimal | None:
        cast = self.type_cast(value)
        if cast is None:
            return None
        return to_storage_numbers(cast)


class BooleanMarshaler:
    dynamodb_type = "BOOL"

    def type_cast(self, value: Any) -> bool | None:
        if _blank(value):
            return None
        if value is False or value in ("false", "0") or (not isinstance(value, str) and value == 0):
            return False
        return True

    def serialize(self, value: Any) -> bool | None:
        return self.type_cast(value)


def _timestamp_to_datetime(value: Any, *, use_local_time: bool) -> datetime:
    seconds = float(_parse_decimal(value, kind="timestamp"))
    if use_local_time:
        return datetime.fromtimestamp(seconds).astimezone()
    return datetime.fromtimestamp(seconds, tz=UTC)


def _parse_datetime(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value.strip())
    except ValueError as err:
        raise ValidationError(f"cannot parse datetime: {value!r}") from err


class DateMarshaler:
    dynamodb_type = "S"

    def type_cast(self, value: Any) -> date | None:
        if _blank(value):
            return None
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
            return _timestamp_to_datetime(value, use_local_time=False).date()
        return _parse_datetime(str(value)).date()

    def serialize(self, value: Any) -> str | None:
        cast = self.type_cast(value)
        if cast is None:
            return None
        return cast.strftime("%Y-%m-%d")


class _TimeMarshaler:
    def __init__(self, *, use_local_time: bool = False) -> None:
        self.use_local_time = use_local_time

    def type_cast(self, value: Any) -> datetime | None:
        if _blank(value):
            return None
        if isinstance(value, datetime):
            out = value
        elif isinstance(value, date):
            out = datetime(value.year, value.month, value.day)
        elif isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
            out = _timestamp_to_datetime(value, use_local_time=self.use_local_time)
        else:
            out = _parse_datetime(str(value))

        # Naive values are read as UTC.
        if out.tzinfo is None:
            out = out.replace(tzinfo=UTC)
        if not self.use_local_time:
            out = out.astimezone(UTC)
        return out


class DateTimeMarshaler(_TimeMarshaler):
    dynamodb_type = "S"

    def serialize(self, value: Any) -> str | None:
        cast = self.type_cast(value)
        if cast is None:
            return None
        return cast.isoformat()


class EpochTimeMarshaler(_TimeMarshaler):
    dynamodb_type = "N"

    def serialize(self, value: Any) -> int | None:
        cast = self.type_cast(value)
        if cast is None:
            return None
        return int(cast.timestamp())


def _is_collection(value: Any) -> bool:
    return isinstance(value, Iterable) and not isinstance(value, (str, bytes, bytearray, Mapping))


class ListMarshaler:
    dynamodb_type = "L"

    def type_cast(self, value: Any) -> list[Any] | None:
        if _blank(value):
            return None
        if isinstance(value, list):
            return value
        if _is_collection(value):
            return list(value)
        raise ValidationError(f"cannot convert {type(value).__name__} into a list")

    def serialize(self, value: Any) -> list[Any] | None:
        cast = self.type_cast(value)
        if cast is None:
            return None
        return to_storage_numbers(cast)


class MapMarshaler:
    dynamodb_type = "M"

    def type_cast(self, value: Any) -> dict[Any, Any] | None:
        if _blank(value):
            return None
        if isinstance(value, dict):
            return value
        if isinstance(value, Mapping):
            return dict(value)
        raise ValidationError(f"cannot convert {type(value).__name__} into a map")

    def serialize(self, value: Any) -> dict[Any, Any] | None:
        cast = self.type_cast(value)
        if cast is None:
            return None
        return to_storage_numbers(cast)


class StringSetMarshaler:
    dynamodb_type = "SS"

    def type_cast(self, value: Any) -> set[str]:
        if _blank(value):
            return set()
        if not _is_collection(value):
            raise ValidationError(f"cannot convert {type(value).__name__} into a string set")
        if isinstance(value, set) and all(isinstance(v, str) for v in value):
            return value
        return {v if isinstance(v, str) else str(v) for v in value}

    def serialize(self, value: Any) -> set[str] | None:
        cast = self.type_cast(value)
        if not cast:
            return None
        return cast


class NumericSetMarshaler:
    dynamodb_type = "NS"

    def type_cast(self, value: Any) -> set[int | Decimal]:
        if _blank(value):
            return set()
        if not _is_collection(value):
            raise ValidationError(f"cannot convert {type(value).__name__} into a numeric set")
        if isinstance(value, set) and all(_is_set_number(v) for v in value):
            return value
        return {v if _is_set_number(v) else _parse_decimal(v, kind="number") for v in value}

    def serialize(self, value: Any) -> set[int | Decimal] | None:
        cast = self.type_cast(value)
        if not cast:
            return None
        return cast


def _is_set_number(value: Any) -> bool:
    return isinstance(value, (int, Decimal)) and not isinstance(value, bool)


def _unwrap_optional(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is Union or origin is types.UnionType:
        non_none = [a for a in get_args(annotation) if a is not type(None)]  # noqa: E721
        if len(non_none) == 1:
            return non_none[0]
    return annotation


_OPTIONAL_NAME = re.compile(r"^(?:Optional\[(?P<inner>.+)\]|(?P<left>.+?)\s*\|\s*None|None\s*\|\s*(?P<right>.+))$")

_NAMED_MARSHALERS: dict[str, type[Any]] = {
    "str": StringMarshaler,
    "int": IntegerMarshaler,
    "float": FloatMarshaler,
    "bool": BooleanMarshaler,
    "date": DateMarshaler,
    "datetime": DateTimeMarshaler,
    "datetime.date": DateMarshaler,
    "datetime.datetime": DateTimeMarshaler,
}

_NUMERIC_ELEMENTS = {"int", "float", "Decimal", "decimal.Decimal"}


def _marshaler_for_name(name: str) -> Marshaler:
    name = name.strip()
    match = _OPTIONAL_NAME.match(name)
    if match:
        name = (match.group("inner") or match.group("left") or match.group("right")).strip()

    if name in _NAMED_MARSHALERS:
        return _NAMED_MARSHALERS[name]()

    base, _, rest = name.partition("[")
    elem = rest.rstrip("]").strip()
    if base in {"list", "List", "Sequence", "tuple"}:
        return ListMarshaler()
    if base in {"dict", "Dict", "Mapping"}:
        return MapMarshaler()
    if base in {"set", "Set", "frozenset"}:
        if elem == "str":
            return StringSetMarshaler()
        if elem in _NUMERIC_ELEMENTS:
            return NumericSetMarshaler()

    raise ModelDefinitionError(f"no marshaler for annotation: {name}")


def marshaler_for_annotation(annotation: Any) -> Marshaler:
    annotation = _unwrap_optional(annotation)
    if isinstance(annotation, str):
        return _marshaler_for_name(annotation)

    if annotation is bool:
        return BooleanMarshaler()
    if annotation is str:
        return StringMarshaler()
    if annotation is int:
        return IntegerMarshaler()
    if annotation is float:
        return FloatMarshaler()
    if annotation is datetime:
        return DateTimeMarshaler()
    if annotation is date:
        return DateMarshaler()

    origin = get_origin(annotation) or annotation
    if origin in {list, tuple}:
        return ListMarshaler()
    if origin is dict:
        return MapMarshaler()
    if origin in {set, frozenset}:
        (elem,) = get_args(annotation) or (None,)
        if elem is str:
            return StringSetMarshaler()
        if elem in {int, float, Decimal}:
            return NumericSetMarshaler()

    raise ModelDefinitionError(f"no marshaler for annotation: {annotation!r}")
