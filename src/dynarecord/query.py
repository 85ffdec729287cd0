from __future__ import annotations

import base64
import json
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any, Literal


@dataclass(frozen=True)
class SortKeyCondition:
    op: str
    values: tuple[Any, ...]

    @staticmethod
    def eq(value: Any) -> SortKeyCondition:
        return SortKeyCondition(op="=", values=(value,))

    @staticmethod
    def lt(value: Any) -> SortKeyCondition:
        return SortKeyCondition(op="<", values=(value,))

    @staticmethod
    def lte(value: Any) -> SortKeyCondition:
        return SortKeyCondition(op="<=", values=(value,))

    @staticmethod
    def gt(value: Any) -> SortKeyCondition:
        return SortKeyCondition(op=">", values=(value,))

    @staticmethod
    def gte(value: Any) -> SortKeyCondition:
        return SortKeyCondition(op=">=", values=(value,))

    @staticmethod
    def between(low: Any, high: Any) -> SortKeyCondition:
        return SortKeyCondition(op="between", values=(low, high))

    @staticmethod
    def begins_with(prefix: Any) -> SortKeyCondition:
        return SortKeyCondition(op="begins_with", values=(prefix,))


@dataclass(frozen=True)
class Page[T]:
    items: list[T]
    next_cursor: str | None

    def __iter__(self) -> Iterator[T]:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)

    @property
    def has_more(self) -> bool:
        return bool(self.next_cursor)


type LogicalOp = Literal["AND", "OR"]


@dataclass(frozen=True)
class FilterCondition:
    field: str
    op: str
    values: tuple[Any, ...] = ()

    @staticmethod
    def eq(field: str, value: Any) -> FilterCondition:
        return FilterCondition(field=field, op="=", values=(value,))

    @staticmethod
    def ne(field: str, value: Any) -> FilterCondition:
        return FilterCondition(field=field, op="!=", values=(value,))

    @staticmethod
    def lt(field: str, value: Any) -> FilterCondition:
        return FilterCondition(field=field, op="<", values=(value,))

    @staticmethod
    def lte(field: str, value: Any) -> FilterCondition:
        return FilterCondition(field=field, op="<=", values=(value,))

    @staticmethod
    def gt(field: str, value: Any) -> FilterCondition:
        return FilterCondition(field=field, op=">", values=(value,))

    @staticmethod
    def gte(field: str, value: Any) -> FilterCondition:
        return FilterCondition(field=field, op=">=", values=(value,))

    @staticmethod
    def between(field: str, low: Any, high: Any) -> FilterCondition:
        return FilterCondition(field=field, op="between", values=(low, high))

    @staticmethod
    def begins_with(field: str, prefix: Any) -> FilterCondition:
        return FilterCondition(field=field, op="begins_with", values=(prefix,))

    @staticmethod
    def contains(field: str, value: Any) -> FilterCondition:
        return FilterCondition(field=field, op="contains", values=(value,))

    @staticmethod
    def in_(field: str, values: list[Any]) -> FilterCondition:
        return FilterCondition(field=field, op="in", values=(list(values),))

    @staticmethod
    def exists(field: str) -> FilterCondition:
        return FilterCondition(field=field, op="exists")

    @staticmethod
    def not_exists(field: str) -> FilterCondition:
        return FilterCondition(field=field, op="not_exists")


@dataclass(frozen=True)
class FilterGroup:
    op: LogicalOp
    filters: tuple[FilterExpression, ...]

    @staticmethod
    def and_(*filters: FilterExpression) -> FilterGroup:
        return FilterGroup(op="AND", filters=tuple(filters))

    @staticmethod
    def or_(*filters: FilterExpression) -> FilterGroup:
        return FilterGroup(op="OR", filters=tuple(filters))


type FilterExpression = FilterCondition | FilterGroup


@dataclass(frozen=True)
class Cursor:
    last_key: dict[str, Any]
    index: str | None = None
    sort: str | None = None


def _ensure_single_key_map(value: Any) -> tuple[str, Any]:
    if not isinstance(value, dict) or len(value) != 1:
        raise ValueError("attribute value must be a single-key map")
    (key, inner), *_ = value.items()
    return str(key), inner


def _b64(value: Any) -> str:
    if not isinstance(value, (bytes, bytearray)):
        raise ValueError("binary value must be bytes")
    return base64.b64encode(bytes(value)).decode("ascii")


def _unb64(value: Any) -> bytes:
    if not isinstance(value, str):
        raise ValueError("binary value must be a base64 string")
    return base64.b64decode(value)


def _strings(kind: str, value: Any) -> list[str]:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValueError(f"{kind} value must be a list of strings")
    return value


def _convert(av: Any, *, encode: bool) -> dict[str, Any]:
    """Map an attribute value to its JSON-safe cursor form (or back).

    Only binary payloads change shape; everything else is validated and
    copied, recursing through L and M.
    """
    kind, value = _ensure_single_key_map(av)

    if kind in {"S", "N"}:
        if not isinstance(value, str):
            raise ValueError(f"{kind} value must be a string")
        return {kind: value}
    if kind == "BOOL":
        if not isinstance(value, bool):
            raise ValueError("BOOL value must be a boolean")
        return {"BOOL": value}
    if kind == "NULL":
        if value is not True:
            raise ValueError("NULL value must be true")
        return {"NULL": True}
    if kind in {"SS", "NS"}:
        return {kind: _strings(kind, value)}
    if kind == "B":
        return {"B": _b64(value) if encode else _unb64(value)}
    if kind == "BS":
        if not isinstance(value, list):
            raise ValueError("BS value must be a list")
        return {"BS": [_b64(v) if encode else _unb64(v) for v in value]}
    if kind == "L":
        if not isinstance(value, list):
            raise ValueError("L value must be a list")
        return {"L": [_convert(v, encode=encode) for v in value]}
    if kind == "M":
        if not isinstance(value, dict):
            raise ValueError("M value must be a map")
        return {"M": {str(k): _convert(value[k], encode=encode) for k in sorted(value)}}

    raise ValueError(f"unsupported attribute value type: {kind}")


def encode_cursor(last_key: Any, *, index: str | None = None, sort: str | None = None) -> str:
    if not last_key:
        return ""
    if not isinstance(last_key, dict):
        raise ValueError("last_key must be a map")

    payload: dict[str, Any] = {"lastKey": {str(k): _convert(last_key[k], encode=True) for k in sorted(last_key)}}
    if index is not None:
        payload["index"] = index
    if sort is not None:
        payload["sort"] = sort

    raw = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_cursor(cursor: str) -> Cursor:
    raw = str(cursor or "").strip()
    if not raw:
        raise ValueError("cursor is empty")

    padding = "=" * (-len(raw) % 4)
    parsed = json.loads(base64.urlsafe_b64decode(raw + padding).decode("utf-8"))
    if not isinstance(parsed, dict):
        raise ValueError("cursor must decode to an object")

    last_key_raw = parsed.get("lastKey")
    if not isinstance(last_key_raw, dict):
        raise ValueError("cursor lastKey is invalid")

    index = parsed.get("index")
    sort = parsed.get("sort")
    return Cursor(
        last_key={str(k): _convert(last_key_raw[k], encode=False) for k in sorted(last_key_raw)},
        index=index if isinstance(index, str) else None,
        sort=sort if sort in {"ASC", "DESC"} else None,
    )
