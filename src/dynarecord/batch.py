from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from boto3.dynamodb.types import TypeDeserializer
from botocore.exceptions import ClientError

from . import tracking
from .aws_errors import map_client_error
from .errors import BatchRetryExceededError, ValidationError
from .table import _backoff_seconds

if TYPE_CHECKING:
    from .table import Table

log = logging.getLogger(__name__)

BATCH_GET_ITEM_LIMIT = 100
BATCH_WRITE_ITEM_LIMIT = 25


_deserializer = TypeDeserializer()


def _contains_key(item: Mapping[str, Any], key: Mapping[str, Any]) -> bool:
    # Compare decoded values: {"N": "2.0"} and {"N": "2"} name the same key.
    for name, value in key.items():
        stored = item.get(name)
        if stored is None or _deserializer.deserialize(stored) != _deserializer.deserialize(value):
            return False
    return True


@dataclass(frozen=True)
class _QueuedKey:
    table: Table[Any]
    key: dict[str, Any]


class BatchRead:
    def __init__(self, *, client: Any | None = None) -> None:
        self._client = client
        self._queue: list[_QueuedKey] = []
        self._requested: dict[str, list[_QueuedKey]] = {}
        self.items: list[Any] = []
        self.last_unprocessed_count = 0

    def find(self, table: Table[Any], pk: Any, sk: Any | None = None) -> None:
        queued = _QueuedKey(table=table, key=table._to_key(pk, sk))
        for existing in self._requested.get(table.table_name, []):
            if existing.key == queued.key and existing.table.model.model_type is not table.model.model_type:
                raise ValidationError("provided item keys are a duplicate request for another model")
        self._requested.setdefault(table.table_name, []).append(queued)
        self._queue.append(queued)

    @property
    def complete(self) -> bool:
        return not self._queue

    @property
    def pending(self) -> int:
        return len(self._queue)

    def _target_client(self) -> Any:
        if self._client is not None:
            return self._client
        if not self._requested:
            raise ValidationError("no keys queued")
        first = next(iter(self._requested.values()))[0]
        return first.table.client

    def execute(self) -> BatchRead:
        if not self._queue:
            return self

        chunk = self._queue[:BATCH_GET_ITEM_LIMIT]
        self._queue = self._queue[BATCH_GET_ITEM_LIMIT:]

        request: dict[str, dict[str, Any]] = {}
        for queued in chunk:
            request.setdefault(queued.table.table_name, {"Keys": []})["Keys"].append(queued.key)

        try:
            resp = self._target_client().batch_get_item(RequestItems=request)
        except ClientError as err:
            raise map_client_error(err) from err

        for table_name, raw_items in (resp.get("Responses") or {}).items():
            for raw in raw_items:
                owner = self._owner_of(table_name, raw)
                if owner is None:
                    log.warning(
                        "unexpected item in batch_get_item response for %s; skipping: %r",
                        table_name,
                        raw,
                    )
                    continue
                self.items.append(owner._from_item(raw))

        unprocessed = 0
        for table_name, entry in (resp.get("UnprocessedKeys") or {}).items():
            for key in entry.get("Keys") or []:
                owner = self._owner_of(table_name, key)
                if owner is None:
                    log.warning("unprocessed key for unknown request on %s: %r", table_name, key)
                    continue
                self._queue.append(_QueuedKey(table=owner, key=dict(key)))
                unprocessed += 1

        self.last_unprocessed_count = unprocessed
        if unprocessed:
            log.info("batch_get_item left %d unprocessed keys", unprocessed)
        return self

    def _owner_of(self, table_name: str, item: Mapping[str, Any]) -> Table[Any] | None:
        for queued in self._requested.get(table_name, []):
            if _contains_key(item, queued.key):
                return queued.table
        return None


@dataclass(frozen=True)
class _QueuedWrite:
    table_name: str
    request: dict[str, Any]
    on_done: Callable[[], None] | None = None


class BatchWrite:
    def __init__(self, *, client: Any | None = None) -> None:
        self._client = client
        self._queue: list[_QueuedWrite] = []
        self._first_table: Table[Any] | None = None
        self.last_unprocessed_count = 0

    def put(self, table: Table[Any], item: Any) -> None:
        self._remember(table)
        self._queue.append(
            _QueuedWrite(
                table_name=table.table_name,
                request={"PutRequest": {"Item": table._to_item(item)}},
                on_done=lambda: tracking.mark_persisted(item, table.model),
            )
        )

    def delete(self, table: Table[Any], item: Any) -> None:
        self._remember(table)
        self._queue.append(
            _QueuedWrite(
                table_name=table.table_name,
                request={"DeleteRequest": {"Key": table.key_values(item)}},
                on_done=lambda: tracking.mark_destroyed(item, table.model),
            )
        )

    def _remember(self, table: Table[Any]) -> None:
        if self._first_table is None:
            self._first_table = table

    @property
    def complete(self) -> bool:
        return not self._queue

    @property
    def unprocessed_items(self) -> dict[str, list[dict[str, Any]]]:
        out: dict[str, list[dict[str, Any]]] = {}
        for queued in self._queue:
            out.setdefault(queued.table_name, []).append(queued.request)
        return out

    def execute(self) -> BatchWrite:
        if not self._queue:
            return self

        chunk = self._queue[:BATCH_WRITE_ITEM_LIMIT]
        self._queue = self._queue[BATCH_WRITE_ITEM_LIMIT:]

        request: dict[str, list[dict[str, Any]]] = {}
        for queued in chunk:
            request.setdefault(queued.table_name, []).append(queued.request)

        client = self._client or (self._first_table.client if self._first_table is not None else None)
        if client is None:
            raise ValidationError("no writes queued")
        try:
            resp = client.batch_write_item(RequestItems=request)
        except ClientError as err:
            raise map_client_error(err) from err

        leftover: list[_QueuedWrite] = []
        for table_name, requests in (resp.get("UnprocessedItems") or {}).items():
            for req in requests:
                match = next(
                    (q for q in chunk if q.table_name == table_name and q.request == req and q not in leftover),
                    None,
                )
                leftover.append(match or _QueuedWrite(table_name=table_name, request=req))

        for queued in chunk:
            if queued not in leftover and queued.on_done is not None:
                queued.on_done()

        self._queue = leftover + self._queue
        self.last_unprocessed_count = len(leftover)
        if leftover:
            log.info("batch_write_item left %d unprocessed items", len(leftover))
        return self


def _drain[B: (BatchRead, BatchWrite)](
    batch: B,
    *,
    operation: str,
    max_retries: int,
    sleep: Callable[[float], None] | None,
    unprocessed: Callable[[B], list[Any]],
) -> B:
    if max_retries < 0:
        raise ValidationError("max_retries must be >= 0")

    attempts = 0
    while not batch.complete:
        batch.execute()
        if batch.last_unprocessed_count == 0:
            attempts = 0
            continue
        if attempts >= max_retries:
            raise BatchRetryExceededError(operation=operation, unprocessed=unprocessed(batch))
        attempts += 1
        log.info("%s retry %d after %d unprocessed", operation, attempts, batch.last_unprocessed_count)
        if sleep is not None:
            sleep(_backoff_seconds(attempts))
    return batch


def batch_read(
    build: Callable[[BatchRead], None],
    *,
    client: Any | None = None,
    max_retries: int = 5,
    sleep: Callable[[float], None] | None = time.sleep,
) -> BatchRead:
    batch = BatchRead(client=client)
    build(batch)
    return _drain(
        batch,
        operation="batch_read",
        max_retries=max_retries,
        sleep=sleep,
        unprocessed=lambda b: [q.key for q in b._queue],
    )


def batch_write(
    build: Callable[[BatchWrite], None],
    *,
    client: Any | None = None,
    max_retries: int = 5,
    sleep: Callable[[float], None] | None = time.sleep,
) -> BatchWrite:
    batch = BatchWrite(client=client)
    build(batch)
    return _drain(
        batch,
        operation="batch_write",
        max_retries=max_retries,
        sleep=sleep,
        unprocessed=lambda b: [q.request for q in b._queue],
    )
