from __future__ import annotations

import copy
import logging
import re
from collections.abc import Iterator
from typing import TYPE_CHECKING, Any, Literal

from botocore.exceptions import ClientError

from .aws_errors import map_client_error
from .errors import ValidationError
from .marshalers import to_storage_numbers

if TYPE_CHECKING:
    from .table import Table

log = logging.getLogger(__name__)

type SearchOperation = Literal["query", "scan"]

_FIELD_TOKEN = re.compile(r":(\w+)")
_VALUE_TOKEN = re.compile(r"\?")


class ItemCollection[T]:
    """Lazily pages through a query or scan request.

    Each iteration starts over from the first page; nothing is cached.
    """

    def __init__(self, table: Table[T], operation: SearchOperation, request: dict[str, Any]) -> None:
        self._table = table
        self._operation = operation
        self._request = request
        self.last_evaluated_key: dict[str, Any] | None = None

    @property
    def request(self) -> dict[str, Any]:
        return copy.deepcopy(self._request)

    def _raw_pages(self) -> Iterator[list[dict[str, Any]]]:
        call = getattr(self._table.client, self._operation)
        req = dict(self._request)
        while True:
            try:
                resp = call(**req)
            except ClientError as err:
                raise map_client_error(err) from err

            last = resp.get("LastEvaluatedKey") or None
            self.last_evaluated_key = last
            yield list(resp.get("Items") or [])
            if not last:
                return
            req = dict(self._request, ExclusiveStartKey=last)

    def pages(self) -> Iterator[list[T]]:
        for raw in self._raw_pages():
            yield [self._table._from_item(item) for item in raw]

    def __iter__(self) -> Iterator[T]:
        for page in self.pages():
            yield from page

    def is_empty(self) -> bool:
        for raw in self._raw_pages():
            if raw:
                return False
        return True

    def first(self) -> T | None:
        for item in self:
            return item
        return None


def _succ(token: str) -> str:
    # Alphabetic successor with carry: A -> B, Z -> AA, BUILDERZ -> BUILDESA.
    chars = list(token)
    i = len(chars) - 1
    while i >= 0:
        c = chars[i]
        if c == "Z":
            chars[i] = "A"
        elif c == "z":
            chars[i] = "a"
        else:
            chars[i] = chr(ord(c) + 1)
            return "".join(chars)
        i -= 1
    return ("A" if token[0].isupper() else "a") + "".join(chars)


class SearchBuilder[T]:
    def __init__(self, table: Table[T], operation: SearchOperation) -> None:
        if operation not in ("query", "scan"):
            raise ValidationError(f"unsupported operation: {operation}")
        self._table = table
        self._operation = operation
        self._params: dict[str, Any] = {}
        self._next_name = "BUILDERA"
        self._next_value = "buildera"

    def on_index(self, index_name: str) -> SearchBuilder[T]:
        if not any(idx.name == index_name for idx in self._table.model.indexes):
            raise ValidationError(f"unknown index: {index_name}")
        self._params["IndexName"] = index_name
        return self

    def key_expr(self, statement: str, *values: Any) -> SearchBuilder[T]:
        if self._operation != "query":
            raise ValidationError("key_expr is only supported for queries")
        self._params["KeyConditionExpression"] = self._substitute(statement, values)
        return self

    def filter_expr(self, statement: str, *values: Any) -> SearchBuilder[T]:
        self._params["FilterExpression"] = self._substitute(statement, values)
        return self

    def limit(self, size: int) -> SearchBuilder[T]:
        if size <= 0:
            raise ValidationError("limit must be > 0")
        self._params["Limit"] = size
        return self

    def scan_ascending(self, ascending: bool) -> SearchBuilder[T]:
        if self._operation != "query":
            raise ValidationError("scan_ascending is only supported for queries")
        self._params["ScanIndexForward"] = ascending
        return self

    def consistent_read(self, consistent: bool) -> SearchBuilder[T]:
        self._params["ConsistentRead"] = consistent
        return self

    def projection(self, *fields: str) -> SearchBuilder[T]:
        names = self._params.setdefault("ExpressionAttributeNames", {})
        self._params["ProjectionExpression"] = ", ".join(self._name_ref(f, names) for f in fields)
        return self

    def parallel_scan(self, *, segment: int, total_segments: int) -> SearchBuilder[T]:
        if self._operation != "scan":
            raise ValidationError("parallel_scan is only supported for scans")
        if segment < 0 or total_segments <= 0 or segment >= total_segments:
            raise ValidationError("invalid segment/total_segments")
        self._params["Segment"] = segment
        self._params["TotalSegments"] = total_segments
        return self

    def complete(self) -> dict[str, Any]:
        req: dict[str, Any] = {"TableName": self._table.table_name}
        req.update(copy.deepcopy(self._params))
        if self._operation == "query" and "KeyConditionExpression" not in req:
            raise ValidationError("a query requires key_expr")
        for key in ("ExpressionAttributeNames", "ExpressionAttributeValues"):
            if key in req and not req[key]:
                del req[key]
        return req

    def run(self) -> ItemCollection[T]:
        req = self.complete()
        log.debug("%s on %s: %r", self._operation, self._table.table_name, req)
        return ItemCollection(self._table, self._operation, req)

    def _name_ref(self, field_name: str, names: dict[str, str]) -> str:
        model = self._table.model
        if field_name not in model.attributes:
            raise ValidationError(f"no such attribute: {field_name}")
        ref = "#" + self._next_name
        self._next_name = _succ(self._next_name)
        if ref in names:
            raise ValidationError(f"substitution collision: {ref}")
        names[ref] = model.storage_name_for(field_name)
        return ref

    def _substitute(self, statement: str, values: tuple[Any, ...]) -> str:
        names = self._params.setdefault("ExpressionAttributeNames", {})
        expr_values = self._params.setdefault("ExpressionAttributeValues", {})

        out = _FIELD_TOKEN.sub(lambda m: self._name_ref(m.group(1), names), statement)

        count = 0

        def value_ref(_: re.Match[str]) -> str:
            nonlocal count
            ref = ":" + self._next_value
            self._next_value = _succ(self._next_value)
            if ref in expr_values:
                raise ValidationError(f"substitution collision: {ref}")
            if count >= len(values):
                raise ValidationError(
                    f"expected {count + 1} or more values in the substitution set, found {len(values)}"
                )
            expr_values[ref] = self._table._serializer.serialize(to_storage_numbers(values[count]))
            count += 1
            return ref

        out = _VALUE_TOKEN.sub(value_ref, out)
        if count != len(values):
            raise ValidationError(
                f"expected {count} values in the substitution set, but found {len(values)}"
            )
        return out
