"""A scripted DynamoDB client for unit tests.

Tests queue the calls they expect with `FakeDynamoDBClient.expect()`. Each
call made through the fake pops the next scripted call, checks the operation
name and request, then returns the scripted response or raises the scripted
error.
"""

from __future__ import annotations

import copy
from collections import deque
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from typing import Any

from botocore.exceptions import ClientError

type RequestCheck = Mapping[str, Any] | Callable[[Mapping[str, Any]], None]


class _Wildcard:
    def __repr__(self) -> str:  # pragma: no cover
        return "ANY"


# Matches any value at its position in an expected request.
ANY: Any = _Wildcard()


def _mismatches(expected: Any, actual: Any, path: str) -> Iterator[str]:
    """Yield every difference; mapping keys absent from `expected` are not checked."""
    if expected is ANY:
        return

    if isinstance(expected, Mapping):
        if not isinstance(actual, Mapping):
            yield f"{path}: expected a mapping, got {type(actual).__name__}"
            return
        for key, want in expected.items():
            if key in actual:
                yield from _mismatches(want, actual[key], f"{path}.{key}")
            else:
                yield f"{path}: missing key {key!r}"
    elif isinstance(expected, list):
        if not isinstance(actual, list):
            yield f"{path}: expected a list, got {type(actual).__name__}"
        elif len(expected) != len(actual):
            yield f"{path}: expected {len(expected)} items, got {len(actual)}"
        else:
            for i, (want, got) in enumerate(zip(expected, actual, strict=True)):
                yield from _mismatches(want, got, f"{path}[{i}]")
    elif expected != actual:
        yield f"{path}: expected {expected!r}, got {actual!r}"


@dataclass(frozen=True)
class ScriptedCall:
    operation: str
    request: RequestCheck | None = None
    response: Mapping[str, Any] | None = None
    error: Exception | None = None

    def verify(self, operation: str, request: Mapping[str, Any]) -> None:
        if operation != self.operation:
            raise AssertionError(f"expected {self.operation}, got {operation}")
        if self.request is None:
            return
        if callable(self.request):
            self.request(request)
            return
        problems = list(_mismatches(self.request, request, operation))
        if problems:
            raise AssertionError("; ".join(problems))

    def reply(self) -> dict[str, Any]:
        if self.error is not None:
            raise self.error
        return copy.deepcopy(dict(self.response or {}))


class FakeDynamoDBClient:
    """Stand-in for a boto3 `dynamodb` client.

    Requests are deep-copied into `calls`, so later mutation by the caller does
    not rewrite what was recorded.
    """

    def __init__(self) -> None:
        self._script: deque[ScriptedCall] = deque()
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def expect(
        self,
        method: str,
        expected: RequestCheck | None = None,
        *,
        response: Mapping[str, Any] | None = None,
        error: Exception | None = None,
    ) -> None:
        self._script.append(ScriptedCall(method, expected, response, error))

    @property
    def pending(self) -> int:
        return len(self._script)

    def assert_no_pending(self) -> None:
        if self._script:
            raise AssertionError(f"pending expected calls: {list(self._script)!r}")

    def calls_for(self, method: str) -> list[dict[str, Any]]:
        return [request for name, request in self.calls if name == method]

    def _dispatch(self, operation: str, request: dict[str, Any]) -> dict[str, Any]:
        self.calls.append((operation, copy.deepcopy(request)))
        if not self._script:
            raise AssertionError(f"unexpected call: {operation}")
        scripted = self._script.popleft()
        scripted.verify(operation, request)
        return scripted.reply()


_OPERATIONS = (
    "get_item",
    "put_item",
    "update_item",
    "delete_item",
    "query",
    "scan",
    "batch_get_item",
    "batch_write_item",
    "transact_get_items",
    "transact_write_items",
    "create_table",
    "describe_table",
    "update_table",
    "delete_table",
)


def _operation(name: str) -> Callable[..., dict[str, Any]]:
    def call(self: FakeDynamoDBClient, **kwargs: Any) -> dict[str, Any]:
        return self._dispatch(name, kwargs)

    call.__name__ = name
    call.__qualname__ = f"FakeDynamoDBClient.{name}"
    return call


for _name in _OPERATIONS:
    setattr(FakeDynamoDBClient, _name, _operation(_name))
del _name


def client_error(code: str, message: str = "", operation: str = "Operation", **extra: Any) -> ClientError:
    """A botocore ClientError carrying `code`; `extra` lands at the top of the error response."""
    response: dict[str, Any] = {"Error": {"Code": code, "Message": message}, **extra}
    return ClientError(response, operation)  # type: ignore[arg-type]
