from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, fields, is_dataclass
from typing import TYPE_CHECKING, Any, Literal, cast

from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.exceptions import ClientError

from . import tracking
from .aws_errors import map_client_error as _map_client_error
from .client import default_client
from .errors import (
    BatchRetryExceededError,
    ConditionFailedError,
    ItemAlreadyExistsError,
    KeyMissingError,
    NotFoundError,
    ValidationError,
)
from .marshalers import to_storage_numbers
from .model import AttributeDefinition, ModelDefinition
from .query import (
    FilterCondition,
    FilterExpression,
    FilterGroup,
    Page,
    SortKeyCondition,
    decode_cursor,
    encode_cursor,
)

if TYPE_CHECKING:
    from .search import SearchBuilder
    from .transaction import TransactWriteAction
    from .update_builder import UpdateBuilder

log = logging.getLogger(__name__)

_COLLECTION_TYPES = frozenset({"L", "M", "SS", "NS"})


def _backoff_seconds(attempt: int) -> float:
    seconds = 0.05 * (2.0 ** (attempt - 1))
    if seconds > 1.0:
        return 1.0
    return seconds


def _chunked[T](items: Sequence[T], size: int) -> Sequence[Sequence[T]]:
    if size <= 0:
        raise ValueError("size must be > 0")
    return [items[i : i + size] for i in range(0, len(items), size)]


@dataclass(frozen=True)
class _IndexKeys:
    partition: str
    sort: str | None
    type: Literal["TABLE", "GSI", "LSI"]


class Table[T]:
    def __init__(
        self,
        model: ModelDefinition[T],
        *,
        client: Any | None = None,
        table_name: str | None = None,
    ) -> None:
        if table_name is None:
            table_name = model.table_name
        if not table_name:
            raise ValueError("table_name is required (or set ModelDefinition.table_name)")

        self._model = model
        self._table_name = table_name
        self._client: Any = client or default_client()
        self._serializer = TypeSerializer()
        self._deserializer = TypeDeserializer()

    @property
    def model(self) -> ModelDefinition[T]:
        return self._model

    @property
    def table_name(self) -> str:
        return self._table_name

    @property
    def client(self) -> Any:
        return self._client

    # Item lifecycle and dirty tracking.

    def is_dirty(self, item: T) -> bool:
        return tracking.is_dirty(item, self._model)

    def dirty_fields(self, item: T) -> list[str]:
        return tracking.dirty_fields(item, self._model)

    def attribute_dirty(self, item: T, field_name: str) -> bool:
        return tracking.attribute_dirty(item, field_name, self._model)

    def attribute_was(self, item: T, field_name: str) -> Any:
        return tracking.attribute_was(item, field_name, self._model)

    def mark_dirty(self, item: T, field_name: str) -> None:
        tracking.mark_dirty(item, field_name, self._model)

    def clean(self, item: T) -> None:
        tracking.clean(item, self._model)

    def rollback(self, item: T, fields: Iterable[str] | None = None) -> None:
        tracking.rollback(item, fields, self._model)

    def assign(self, item: T, **values: Any) -> None:
        tracking.assign(item, self._model, **values)

    def is_new_record(self, item: T) -> bool:
        return tracking.item_data(item, self._model).new_record

    def is_persisted(self, item: T) -> bool:
        return tracking.item_data(item, self._model).persisted

    def is_destroyed(self, item: T) -> bool:
        return tracking.item_data(item, self._model).destroyed

    def key_values(self, item: T) -> dict[str, Any]:
        self._require_model_instance(item)
        missing = [name for name in self._model.key_fields() if getattr(item, name) is None]
        if missing:
            raise KeyMissingError(f"missing required key(s): {', '.join(missing)}")
        sk = getattr(item, self._model.sk.python_name) if self._model.sk is not None else None
        return self._to_key(getattr(item, self._model.pk.python_name), sk)

    # Reads.

    def get(self, pk: Any, sk: Any | None = None, *, consistent_read: bool = False) -> T:
        item = self.find(pk, sk, consistent_read=consistent_read)
        if item is None:
            raise NotFoundError("item not found")
        return item

    def find(self, pk: Any, sk: Any | None = None, *, consistent_read: bool = False) -> T | None:
        key = self._to_key(pk, sk)
        try:
            resp = self._client.get_item(TableName=self._table_name, Key=key, ConsistentRead=consistent_read)
        except ClientError as err:  # pragma: no cover
            raise _map_client_error(err) from err

        item = resp.get("Item")
        if not item:
            return None
        return self._from_item(item)

    def reload(self, item: T) -> T:
        key = self.key_values(item)
        try:
            resp = self._client.get_item(TableName=self._table_name, Key=key, ConsistentRead=True)
        except ClientError as err:  # pragma: no cover
            raise _map_client_error(err) from err

        raw = resp.get("Item")
        if not raw:
            raise NotFoundError(f"cannot reload item, not found in {self._table_name}")

        for name, value in self._field_values(raw).items():
            setattr(item, name, value)
        tracking.mark_persisted(item, self._model)
        return item

    def query(
        self,
        partition: Any,
        *,
        sort: SortKeyCondition | None = None,
        index_name: str | None = None,
        limit: int | None = None,
        cursor: str | None = None,
        scan_forward: bool = True,
        consistent_read: bool = False,
        projection: list[str] | None = None,
        filter: FilterExpression | None = None,
    ) -> Page[T]:
        index = self._resolve_index(index_name)
        if index.type == "GSI" and consistent_read:
            raise ValidationError("consistent_read is not supported for GSIs")

        if partition is None:
            raise ValidationError("partition is required")

        if limit is not None and limit <= 0:
            raise ValidationError("limit must be > 0")

        names: dict[str, str] = {"#pk": index.partition}
        values: dict[str, Any] = {":pk": self._key_attribute_value(index.partition, partition)}

        key_expr = "#pk = :pk"
        if sort is not None:
            if index.sort is None:
                raise ValidationError("model/index does not define a sort key")
            names["#sk"] = index.sort
            key_expr = self._apply_sort_condition(key_expr, index.sort, sort, values)

        req: dict[str, Any] = {
            "TableName": self._table_name,
            "KeyConditionExpression": key_expr,
            "ExpressionAttributeNames": names,
            "ExpressionAttributeValues": values,
            "ScanIndexForward": scan_forward,
            "ConsistentRead": consistent_read,
        }
        if index_name is not None:
            req["IndexName"] = index_name
        if limit is not None:
            req["Limit"] = limit
        if cursor is not None:
            try:
                decoded = decode_cursor(cursor)
            except Exception as err:
                raise ValidationError("invalid cursor") from err
            if decoded.index is not None and decoded.index != index_name:
                raise ValidationError("cursor index does not match query")
            expected_sort = "ASC" if scan_forward else "DESC"
            if decoded.sort is not None and decoded.sort != expected_sort:
                raise ValidationError("cursor sort does not match query")
            req["ExclusiveStartKey"] = decoded.last_key
        if projection is not None:
            req["ProjectionExpression"] = self._projection_expression(projection, names)
        if filter is not None:
            req["FilterExpression"] = self._filter_expression(filter, names, values)

        try:
            resp = self._client.query(**req)
        except ClientError as err:  # pragma: no cover
            raise _map_client_error(err) from err

        items = [self._from_item(item) for item in resp.get("Items", [])]
        last = resp.get("LastEvaluatedKey")
        return Page(
            items=items,
            next_cursor=(
                encode_cursor(last, index=index_name, sort="ASC" if scan_forward else "DESC")
                if last
                else None
            ),
        )

    def query_with_retry(
        self,
        partition: Any,
        *,
        sort: SortKeyCondition | None = None,
        index_name: str | None = None,
        limit: int | None = None,
        cursor: str | None = None,
        scan_forward: bool = True,
        consistent_read: bool = False,
        projection: list[str] | None = None,
        filter: FilterExpression | None = None,
        max_retries: int = 5,
        initial_delay_seconds: float = 0.1,
        max_delay_seconds: float = 5.0,
        backoff_factor: float = 2.0,
        retry_on_empty: bool = True,
        retry_on_error: bool = True,
        verify: Callable[[Page[T]], bool] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> Page[T]:
        def attempt() -> Page[T]:
            return self.query(
                partition,
                sort=sort,
                index_name=index_name,
                limit=limit,
                cursor=cursor,
                scan_forward=scan_forward,
                consistent_read=consistent_read,
                projection=projection,
                filter=filter,
            )

        return _retry_read(
            attempt,
            max_retries=max_retries,
            initial_delay_seconds=initial_delay_seconds,
            max_delay_seconds=max_delay_seconds,
            backoff_factor=backoff_factor,
            retry_on_empty=retry_on_empty,
            retry_on_error=retry_on_error,
            verify=verify,
            sleep=sleep,
        )

    def query_all(
        self,
        partition: Any,
        *,
        sort: SortKeyCondition | None = None,
        index_name: str | None = None,
        limit: int | None = None,
        cursor: str | None = None,
        scan_forward: bool = True,
        consistent_read: bool = False,
        projection: list[str] | None = None,
        filter: FilterExpression | None = None,
    ) -> list[T]:
        out: list[T] = []
        next_cursor: str | None = cursor

        while True:
            page = self.query(
                partition,
                sort=sort,
                index_name=index_name,
                limit=limit,
                cursor=next_cursor,
                scan_forward=scan_forward,
                consistent_read=consistent_read,
                projection=projection,
                filter=filter,
            )
            out.extend(page.items)
            if page.next_cursor is None:
                break
            next_cursor = page.next_cursor

        return out

    def scan(
        self,
        *,
        index_name: str | None = None,
        limit: int | None = None,
        cursor: str | None = None,
        consistent_read: bool = False,
        projection: list[str] | None = None,
        filter: FilterExpression | None = None,
        segment: int | None = None,
        total_segments: int | None = None,
    ) -> Page[T]:
        index = self._resolve_index(index_name)
        if index.type == "GSI" and consistent_read:
            raise ValidationError("consistent_read is not supported for GSIs")

        if limit is not None and limit <= 0:
            raise ValidationError("limit must be > 0")

        req: dict[str, Any] = {"TableName": self._table_name, "ConsistentRead": consistent_read}
        names: dict[str, str] = {}
        values: dict[str, Any] = {}
        if index_name is not None:
            req["IndexName"] = index_name
        if limit is not None:
            req["Limit"] = limit
        if cursor is not None:
            try:
                decoded = decode_cursor(cursor)
            except Exception as err:
                raise ValidationError("invalid cursor") from err
            if decoded.index is not None and decoded.index != index_name:
                raise ValidationError("cursor index does not match scan")
            req["ExclusiveStartKey"] = decoded.last_key
        if projection is not None:
            req["ProjectionExpression"] = self._projection_expression(projection, names)
        if filter is not None:
            req["FilterExpression"] = self._filter_expression(filter, names, values)

        if (segment is None) != (total_segments is None):
            raise ValidationError("segment and total_segments must be provided together")
        if segment is not None and total_segments is not None:
            if segment < 0 or total_segments <= 0 or segment >= total_segments:
                raise ValidationError("invalid segment/total_segments")
            req["Segment"] = segment
            req["TotalSegments"] = total_segments

        if names:
            req["ExpressionAttributeNames"] = names
        if values:
            req["ExpressionAttributeValues"] = values

        try:
            resp = self._client.scan(**req)
        except ClientError as err:  # pragma: no cover
            raise _map_client_error(err) from err

        items = [self._from_item(item) for item in resp.get("Items", [])]
        last = resp.get("LastEvaluatedKey")
        return Page(items=items, next_cursor=encode_cursor(last, index=index_name) if last else None)

    def scan_all(
        self,
        *,
        index_name: str | None = None,
        limit: int | None = None,
        cursor: str | None = None,
        consistent_read: bool = False,
        projection: list[str] | None = None,
        filter: FilterExpression | None = None,
        segment: int | None = None,
        total_segments: int | None = None,
    ) -> list[T]:
        out: list[T] = []
        next_cursor: str | None = cursor

        while True:
            page = self.scan(
                index_name=index_name,
                limit=limit,
                cursor=next_cursor,
                consistent_read=consistent_read,
                projection=projection,
                filter=filter,
                segment=segment,
                total_segments=total_segments,
            )
            out.extend(page.items)
            if page.next_cursor is None:
                break
            next_cursor = page.next_cursor

        return out

    def scan_with_retry(
        self,
        *,
        index_name: str | None = None,
        limit: int | None = None,
        cursor: str | None = None,
        consistent_read: bool = False,
        projection: list[str] | None = None,
        filter: FilterExpression | None = None,
        segment: int | None = None,
        total_segments: int | None = None,
        max_retries: int = 5,
        initial_delay_seconds: float = 0.1,
        max_delay_seconds: float = 5.0,
        backoff_factor: float = 2.0,
        retry_on_empty: bool = True,
        retry_on_error: bool = True,
        verify: Callable[[Page[T]], bool] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> Page[T]:
        def attempt() -> Page[T]:
            return self.scan(
                index_name=index_name,
                limit=limit,
                cursor=cursor,
                consistent_read=consistent_read,
                projection=projection,
                filter=filter,
                segment=segment,
                total_segments=total_segments,
            )

        return _retry_read(
            attempt,
            max_retries=max_retries,
            initial_delay_seconds=initial_delay_seconds,
            max_delay_seconds=max_delay_seconds,
            backoff_factor=backoff_factor,
            retry_on_empty=retry_on_empty,
            retry_on_error=retry_on_error,
            verify=verify,
            sleep=sleep,
        )

    def scan_all_segments(
        self,
        *,
        total_segments: int,
        index_name: str | None = None,
        limit: int | None = None,
        consistent_read: bool = False,
        projection: list[str] | None = None,
        filter: FilterExpression | None = None,
        max_workers: int | None = None,
    ) -> list[T]:
        if total_segments <= 0:
            raise ValidationError("total_segments must be > 0")

        if max_workers is None:
            max_workers = total_segments
        if max_workers <= 0:
            raise ValidationError("max_workers must be > 0")

        def scan_segment(segment: int) -> list[T]:
            return self.scan_all(
                index_name=index_name,
                limit=limit,
                consistent_read=consistent_read,
                projection=projection,
                filter=filter,
                segment=segment,
                total_segments=total_segments,
            )

        results: list[list[T]] = [[] for _ in range(total_segments)]
        with ThreadPoolExecutor(max_workers=max_workers) as ex:
            futures = {ex.submit(scan_segment, seg): seg for seg in range(total_segments)}
            for fut, seg in futures.items():
                results[seg] = fut.result()

        out: list[T] = []
        for seg_items in results:
            out.extend(seg_items)
        return out

    def build_query(self) -> SearchBuilder[T]:
        from .search import SearchBuilder

        return SearchBuilder(self, "query")

    def build_scan(self) -> SearchBuilder[T]:
        from .search import SearchBuilder

        return SearchBuilder(self, "scan")

    def batch_get(
        self,
        keys: Sequence[Any],
        *,
        consistent_read: bool = False,
        projection: list[str] | None = None,
        max_retries: int = 5,
        sleep: Callable[[float], None] | None = time.sleep,
    ) -> list[T]:
        if max_retries < 0:
            raise ValidationError("max_retries must be >= 0")

        if not keys:
            return []

        normalized = [self._normalize_key(key) for key in keys]

        out: list[T] = []
        base_req: dict[str, Any] = {"ConsistentRead": consistent_read}
        if projection is not None:
            names: dict[str, str] = {}
            base_req["ExpressionAttributeNames"] = names
            base_req["ProjectionExpression"] = self._projection_expression(projection, names)

        for chunk in _chunked(normalized, 100):
            pending_keys = [self._to_key(pk, sk) for pk, sk in chunk]
            attempts = 0

            while pending_keys:
                req = {self._table_name: dict(base_req, Keys=pending_keys)}
                try:
                    resp = self._client.batch_get_item(RequestItems=req)
                except ClientError as err:  # pragma: no cover
                    raise _map_client_error(err) from err

                for item in resp.get("Responses", {}).get(self._table_name, []):
                    out.append(self._from_item(item))

                pending_keys = resp.get("UnprocessedKeys", {}).get(self._table_name, {}).get("Keys") or []
                if pending_keys:
                    if attempts >= max_retries:
                        raise BatchRetryExceededError(operation="batch_get", unprocessed=pending_keys)
                    attempts += 1
                    log.info(
                        "batch_get on %s: %d unprocessed keys, retry %d",
                        self._table_name,
                        len(pending_keys),
                        attempts,
                    )
                    if sleep is not None:
                        sleep(_backoff_seconds(attempts))

        return out

    # Writes.

    def batch_write(
        self,
        *,
        puts: Sequence[T] = (),
        deletes: Sequence[Any] = (),
        max_retries: int = 5,
        sleep: Callable[[float], None] | None = time.sleep,
    ) -> None:
        if max_retries < 0:
            raise ValidationError("max_retries must be >= 0")

        # Each request is paired with the item it writes, or None for deletes.
        requests: list[tuple[dict[str, Any], T | None]] = []
        for item in puts:
            requests.append(({"PutRequest": {"Item": self._to_item(item)}}, item))

        for key in deletes:
            pk, sk = self._normalize_key(key)
            requests.append(({"DeleteRequest": {"Key": self._to_key(pk, sk)}}, None))

        for chunk in _chunked(requests, 25):
            pending = [request for request, _ in chunk]
            attempts = 0

            while pending:
                try:
                    resp = self._client.batch_write_item(RequestItems={self._table_name: pending})
                except ClientError as err:  # pragma: no cover
                    raise _map_client_error(err) from err

                pending = resp.get("UnprocessedItems", {}).get(self._table_name, []) or []
                if pending:
                    if attempts >= max_retries:
                        raise BatchRetryExceededError(operation="batch_write", unprocessed=pending)
                    attempts += 1
                    log.info(
                        "batch_write on %s: %d unprocessed items, retry %d",
                        self._table_name,
                        len(pending),
                        attempts,
                    )
                    if sleep is not None:
                        sleep(_backoff_seconds(attempts))

            for _, written in chunk:
                if written is not None:
                    tracking.mark_persisted(written, self._model)

    def transact_write(self, actions: Sequence[TransactWriteAction[T]]) -> None:
        from .transaction import transact_write

        transact_write([(self, action) for action in actions], client=self._client)

    def put(
        self,
        item: T,
        *,
        condition_expression: str | None = None,
        expression_attribute_names: Mapping[str, str] | None = None,
        expression_attribute_values: Mapping[str, Any] | None = None,
    ) -> None:
        req: dict[str, Any] = {"TableName": self._table_name, "Item": self._to_item(item)}
        if condition_expression:
            req["ConditionExpression"] = condition_expression
        if expression_attribute_names:
            req["ExpressionAttributeNames"] = dict(expression_attribute_names)
        if expression_attribute_values:
            req["ExpressionAttributeValues"] = self._serialize_values(expression_attribute_values)

        try:
            self._client.put_item(**req)
        except ClientError as err:
            raise _map_client_error(err) from err

        tracking.mark_persisted(item, self._model)

    def save(self, item: T, *, force: bool = False) -> T:
        self.key_values(item)
        data = tracking.item_data(item, self._model)

        if force:
            log.debug("saving %s to %s with unconditional put", type(item).__name__, self._table_name)
            self.put(item)
            return item

        if not data.persisted:
            req = self.safe_put_request(item)
            log.debug("saving new %s to %s", type(item).__name__, self._table_name)
            try:
                self._client.put_item(**req)
            except ClientError as err:
                mapped = _map_client_error(err)
                if isinstance(mapped, ConditionFailedError):
                    raise ItemAlreadyExistsError(
                        f"conditional save failed: an item with this key already exists in {self._table_name}"
                    ) from err
                raise mapped from err
            tracking.mark_persisted(item, self._model)
            return item

        req = self.dirty_update_request(item)
        if req is None:
            log.debug("%s is clean; nothing to save", type(item).__name__)
            return item

        log.debug("updating %s in %s: %s", type(item).__name__, self._table_name, req["UpdateExpression"])
        try:
            self._client.update_item(**req)
        except ClientError as err:
            raise _map_client_error(err) from err
        tracking.mark_persisted(item, self._model)
        return item

    def safe_put_request(self, item: T) -> dict[str, Any]:
        names = {"#pk": self._model.pk.attribute_name}
        condition = "attribute_not_exists(#pk)"
        if self._model.sk is not None:
            names["#sk"] = self._model.sk.attribute_name
            condition += " AND attribute_not_exists(#sk)"
        return {
            "TableName": self._table_name,
            "Item": self._to_item(item),
            "ConditionExpression": condition,
            "ExpressionAttributeNames": names,
        }

    def dirty_update_request(self, item: T) -> dict[str, Any] | None:
        key = self.key_values(item)
        changed = tracking.dirty_fields(item, self._model)
        key_fields = set(self._model.key_fields())
        moved = key_fields.intersection(changed)
        if moved:
            raise ValidationError(
                f"cannot change key field(s) of a persisted item: {', '.join(sorted(moved))}"
            )
        if not changed:
            return None

        names: dict[str, str] = {}
        values: dict[str, Any] = {}
        set_parts: list[str] = []
        remove_parts: list[str] = []
        for field_name in changed:
            attr_def = self._model.attributes[field_name]
            name_ref = f"#d_{field_name}"
            names[name_ref] = attr_def.attribute_name

            marshaled = attr_def.serialize(getattr(item, field_name))
            if marshaled is None and not attr_def.persist_nil:
                remove_parts.append(name_ref)
                continue
            value_ref = f":d_{field_name}"
            values[value_ref] = self._serializer.serialize(marshaled)
            set_parts.append(f"{name_ref} = {value_ref}")

        expr_parts: list[str] = []
        if set_parts:
            expr_parts.append("SET " + ", ".join(set_parts))
        if remove_parts:
            expr_parts.append("REMOVE " + ", ".join(remove_parts))

        req: dict[str, Any] = {
            "TableName": self._table_name,
            "Key": key,
            "UpdateExpression": " ".join(expr_parts),
            "ExpressionAttributeNames": names,
        }
        if values:
            req["ExpressionAttributeValues"] = values
        return req

    def delete(
        self,
        pk: Any,
        sk: Any | None = None,
        *,
        condition_expression: str | None = None,
        expression_attribute_names: Mapping[str, str] | None = None,
        expression_attribute_values: Mapping[str, Any] | None = None,
    ) -> None:
        key = self._to_key(pk, sk)
        self._delete_key(
            key,
            condition_expression=condition_expression,
            expression_attribute_names=expression_attribute_names,
            expression_attribute_values=expression_attribute_values,
        )

    def delete_item(
        self,
        item: T,
        *,
        condition_expression: str | None = None,
        expression_attribute_names: Mapping[str, str] | None = None,
        expression_attribute_values: Mapping[str, Any] | None = None,
    ) -> None:
        self._delete_key(
            self.key_values(item),
            condition_expression=condition_expression,
            expression_attribute_names=expression_attribute_names,
            expression_attribute_values=expression_attribute_values,
        )
        tracking.mark_destroyed(item, self._model)

    def _delete_key(
        self,
        key: dict[str, Any],
        *,
        condition_expression: str | None,
        expression_attribute_names: Mapping[str, str] | None,
        expression_attribute_values: Mapping[str, Any] | None,
    ) -> None:
        req: dict[str, Any] = {"TableName": self._table_name, "Key": key}
        if condition_expression:
            req["ConditionExpression"] = condition_expression
        if expression_attribute_names:
            req["ExpressionAttributeNames"] = dict(expression_attribute_names)
        if expression_attribute_values:
            req["ExpressionAttributeValues"] = self._serialize_values(expression_attribute_values)

        try:
            self._client.delete_item(**req)
        except ClientError as err:
            raise _map_client_error(err) from err

    def update(
        self,
        pk: Any,
        sk: Any | None,
        updates: Mapping[str, Any],
        *,
        condition_expression: str | None = None,
        expression_attribute_names: Mapping[str, str] | None = None,
        expression_attribute_values: Mapping[str, Any] | None = None,
    ) -> T:
        req = self._build_update_request(
            pk,
            sk,
            updates,
            condition_expression=condition_expression,
            expression_attribute_names=expression_attribute_names,
            expression_attribute_values=expression_attribute_values,
            return_values="ALL_NEW",
        )

        try:
            resp = self._client.update_item(**req)
        except ClientError as err:
            raise _map_client_error(err) from err

        attrs = resp.get("Attributes")
        if not attrs:
            raise ValidationError("update did not return Attributes")
        return self._from_item(attrs)

    def update_builder(self, pk: Any, sk: Any | None = None) -> UpdateBuilder[T]:
        from .update_builder import UpdateBuilder

        return UpdateBuilder(self, pk, sk)

    def _build_update_request(
        self,
        pk: Any,
        sk: Any | None,
        updates: Mapping[str, Any],
        *,
        condition_expression: str | None = None,
        expression_attribute_names: Mapping[str, str] | None = None,
        expression_attribute_values: Mapping[str, Any] | None = None,
        return_values: str | None = None,
    ) -> dict[str, Any]:
        key = self._to_key(pk, sk)

        update_names: dict[str, str] = {}
        update_values: dict[str, Any] = {}
        set_parts: list[str] = []
        remove_parts: list[str] = []

        for field_name, value in updates.items():
            if field_name not in self._model.attributes:
                raise ValidationError(f"unknown field: {field_name}")
            if field_name in self._model.key_fields():
                raise ValidationError(f"cannot update key field: {field_name}")

            attr_def = self._model.attributes[field_name]
            name_ref = f"#d_{field_name}"
            update_names[name_ref] = attr_def.attribute_name

            marshaled = attr_def.serialize(value)
            if marshaled is None and not attr_def.persist_nil:
                remove_parts.append(name_ref)
                continue

            value_ref = f":d_{field_name}"
            update_values[value_ref] = self._serializer.serialize(marshaled)
            set_parts.append(f"{name_ref} = {value_ref}")

        expr_parts: list[str] = []
        if set_parts:
            expr_parts.append("SET " + ", ".join(set_parts))
        if remove_parts:
            expr_parts.append("REMOVE " + ", ".join(remove_parts))
        if not expr_parts:
            raise ValidationError("no updates provided")

        req: dict[str, Any] = {
            "TableName": self._table_name,
            "Key": key,
            "UpdateExpression": " ".join(expr_parts),
            "ExpressionAttributeNames": update_names,
        }
        if update_values:
            req["ExpressionAttributeValues"] = update_values
        if return_values is not None:
            req["ReturnValues"] = return_values
        if condition_expression:
            req["ConditionExpression"] = condition_expression

        merge_expression_attributes(
            req,
            names=expression_attribute_names,
            values=self._serialize_values(expression_attribute_values or {}),
        )
        return req

    # Serialization.

    def _serialize_values(self, values: Mapping[str, Any]) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for k, v in values.items():
            out[k] = self._serializer.serialize(to_storage_numbers(v))
        return out

    def _serialize_attr_value(self, attr_def: AttributeDefinition, value: Any) -> Any:
        return self._serializer.serialize(attr_def.serialize(value))

    def _condition_value(self, attr_def: AttributeDefinition, value: Any) -> Any:
        # Operands like contains() take a single element, not the whole collection.
        if attr_def.dynamodb_type in _COLLECTION_TYPES:
            return self._serializer.serialize(to_storage_numbers(value))
        return self._serialize_attr_value(attr_def, value)

    def _partial_value(self, attr_def: AttributeDefinition | None, value: Any) -> Any:
        """Operand for begins_with()/contains(): a prefix or substring is sent as given."""
        if isinstance(value, (str, bytes, bytearray)) or attr_def is None:
            return self._serializer.serialize(to_storage_numbers(value))
        return self._condition_value(attr_def, value)

    def _key_attribute_value(self, attribute_name: str, value: Any) -> Any:
        field_name = self._model.field_for_storage_name(attribute_name)
        if field_name is None:
            return self._serializer.serialize(to_storage_numbers(value))
        return self._serialize_attr_value(self._model.attributes[field_name], value)

    def _require_model_instance(self, item: Any) -> None:
        if not is_dataclass(item) or not isinstance(item, self._model.model_type):
            raise ValidationError(f"item must be a {self._model.model_type.__name__} instance")

    def _to_item(self, item: T) -> dict[str, Any]:
        self._require_model_instance(item)

        out: dict[str, Any] = {}
        for field_name, attr_def in self._model.attributes.items():
            marshaled = attr_def.serialize(getattr(item, field_name))
            if marshaled is None:
                if attr_def.persist_nil:
                    out[attr_def.attribute_name] = self._serializer.serialize(None)
                continue
            out[attr_def.attribute_name] = self._serializer.serialize(marshaled)

        missing = [
            attr.python_name
            for attr in (self._model.pk, self._model.sk)
            if attr is not None and attr.attribute_name not in out
        ]
        if missing:
            raise KeyMissingError(f"missing required key(s): {', '.join(missing)}")

        return out

    def _normalize_key(self, key: Any) -> tuple[Any, Any | None]:
        if self._model.sk is None:
            if isinstance(key, tuple):
                if len(key) != 2:
                    raise ValidationError("expected key tuple (pk, None) for pk-only models")
                pk, sk = key
                if sk is not None:
                    raise ValidationError("sk must be None for pk-only models")
                return pk, None
            return key, None

        if not isinstance(key, tuple) or len(key) != 2:
            raise ValidationError("expected key tuple (pk, sk)")
        return key[0], key[1]

    def _to_key(self, pk: Any, sk: Any | None) -> dict[str, Any]:
        if self._model.sk is None and sk is not None:
            raise ValidationError("model does not define sk")

        pk_value = self._model.pk.serialize(pk)
        if pk_value is None:
            raise KeyMissingError(f"missing required key: {self._model.pk.python_name}")
        key: dict[str, Any] = {self._model.pk.attribute_name: self._serializer.serialize(pk_value)}

        if self._model.sk is not None:
            sk_value = self._model.sk.serialize(sk)
            if sk_value is None:
                raise KeyMissingError(f"missing required key: {self._model.sk.python_name}")
            key[self._model.sk.attribute_name] = self._serializer.serialize(sk_value)
        return key

    def _field_values(self, item: Mapping[str, Any]) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for field_name, attr_def in self._model.attributes.items():
            raw = item.get(attr_def.attribute_name)
            value = self._deserializer.deserialize(raw) if raw is not None else None
            out[field_name] = attr_def.type_cast(value)
        return out

    def _from_item(self, item: Mapping[str, Any]) -> T:
        model_cls = cast(Any, self._model.model_type)
        values = self._field_values(item)

        kwargs: dict[str, Any] = {}
        late: dict[str, Any] = {}
        for dc_field in fields(model_cls):
            if dc_field.name not in values:
                continue
            if dc_field.init:
                kwargs[dc_field.name] = values[dc_field.name]
            else:
                late[dc_field.name] = values[dc_field.name]

        try:
            out = cast(T, model_cls(**kwargs))
        except TypeError as err:
            raise ValidationError(str(err)) from err
        for name, value in late.items():
            setattr(out, name, value)

        tracking.mark_persisted(out, self._model)
        return out

    def _resolve_index(self, index_name: str | None) -> _IndexKeys:
        if index_name is None:
            return _IndexKeys(
                partition=self._model.pk.attribute_name,
                sort=self._model.sk.attribute_name if self._model.sk else None,
                type="TABLE",
            )

        for idx in self._model.indexes:
            if idx.name == index_name:
                return _IndexKeys(
                    partition=idx.partition,
                    sort=idx.sort,
                    type=cast(Literal["GSI", "LSI"], idx.type),
                )

        raise ValidationError(f"unknown index: {index_name}")

    def _apply_sort_condition(
        self,
        prefix: str,
        sort_attribute: str,
        cond: SortKeyCondition,
        values: dict[str, Any],
    ) -> str:
        op = cond.op
        if op in {"=", "<", "<=", ">", ">="}:
            if len(cond.values) != 1:
                raise ValidationError("invalid sort key condition")
            values[":sk"] = self._key_attribute_value(sort_attribute, cond.values[0])
            return f"{prefix} AND #sk {op} :sk"
        if op == "between":
            if len(cond.values) != 2:
                raise ValidationError("invalid sort key condition")
            values[":sk1"] = self._key_attribute_value(sort_attribute, cond.values[0])
            values[":sk2"] = self._key_attribute_value(sort_attribute, cond.values[1])
            return f"{prefix} AND #sk BETWEEN :sk1 AND :sk2"
        if op == "begins_with":
            if len(cond.values) != 1:
                raise ValidationError("invalid sort key condition")
            field_name = self._model.field_for_storage_name(sort_attribute)
            attr_def = self._model.attributes[field_name] if field_name is not None else None
            values[":sk"] = self._partial_value(attr_def, cond.values[0])
            return f"{prefix} AND begins_with(#sk, :sk)"
        raise ValidationError(f"unsupported sort key operator: {op}")

    def _filter_expression(
        self,
        expr: FilterExpression,
        names: dict[str, str],
        values: dict[str, Any],
    ) -> str:
        counter = 0

        def name_ref(field_name: str) -> tuple[str, AttributeDefinition]:
            if field_name not in self._model.attributes:
                raise ValidationError(f"unknown field: {field_name}")

            attr_def = self._model.attributes[field_name]
            ref = f"#f_{field_name}"
            existing = names.get(ref)
            if existing is not None and existing != attr_def.attribute_name:
                raise ValidationError(f"expression attribute name collision: {ref}")
            names[ref] = attr_def.attribute_name
            return ref, attr_def

        def value_ref(attr_def: AttributeDefinition, value: Any, *, partial: bool = False) -> str:
            nonlocal counter
            counter += 1
            ref = f":f{counter}"
            if ref in values:
                raise ValidationError(f"expression attribute value collision: {ref}")
            if partial:
                values[ref] = self._partial_value(attr_def, value)
            else:
                values[ref] = self._condition_value(attr_def, value)
            return ref

        def single(node: FilterCondition) -> Any:
            if len(node.values) != 1:
                raise ValidationError(f"{node.op} requires one value")
            return node.values[0]

        comparisons = {
            "=": "=",
            "EQ": "=",
            "!=": "<>",
            "<>": "<>",
            "NE": "<>",
            "<": "<",
            "LT": "<",
            "<=": "<=",
            "LE": "<=",
            ">": ">",
            "GT": ">",
            ">=": ">=",
            "GE": ">=",
        }

        def build(node: FilterExpression) -> str:
            if isinstance(node, FilterGroup):
                parts = [build(f) for f in node.filters]
                parts = [p for p in parts if p]
                if not parts:
                    return ""
                return "(" + f" {node.op} ".join(parts) + ")"

            if not isinstance(node, FilterCondition):
                raise ValidationError("invalid filter expression")

            name, attr_def = name_ref(node.field)
            op = node.op.upper()
            vals = node.values

            if op in comparisons:
                return f"{name} {comparisons[op]} {value_ref(attr_def, single(node))}"

            if op == "BETWEEN":
                if len(vals) != 2:
                    raise ValidationError("BETWEEN requires two values")
                left = value_ref(attr_def, vals[0])
                right = value_ref(attr_def, vals[1])
                return f"{name} BETWEEN {left} AND {right}"

            if op == "IN":
                in_values = single(node)
                if not isinstance(in_values, Sequence) or isinstance(
                    in_values, (str, bytes, bytearray, dict)
                ):
                    raise ValidationError("IN requires a sequence of values")
                if len(in_values) > 100:
                    raise ValidationError("IN supports maximum 100 values")
                refs = [value_ref(attr_def, v) for v in in_values]
                return f"{name} IN (" + ", ".join(refs) + ")"

            if op == "BEGINS_WITH":
                return f"begins_with({name}, {value_ref(attr_def, single(node), partial=True)})"

            if op == "CONTAINS":
                return f"contains({name}, {value_ref(attr_def, single(node), partial=True)})"

            if op in {"EXISTS", "ATTRIBUTE_EXISTS"}:
                if vals:
                    raise ValidationError("EXISTS does not take a value")
                return f"attribute_exists({name})"

            if op in {"NOT_EXISTS", "ATTRIBUTE_NOT_EXISTS"}:
                if vals:
                    raise ValidationError("NOT_EXISTS does not take a value")
                return f"attribute_not_exists({name})"

            raise ValidationError(f"unsupported filter operator: {node.op}")

        return build(expr)

    def _projection_expression(self, projection: Sequence[str], names: dict[str, str]) -> str:
        missing = set(self._model.key_fields()).difference(projection)
        if missing:
            raise ValidationError(f"projection is missing key fields: {sorted(missing)}")

        refs: list[str] = []
        for field_name in projection:
            if field_name not in self._model.attributes:
                raise ValidationError(f"unknown field: {field_name}")
            ref = f"#p_{field_name}"
            names[ref] = self._model.attributes[field_name].attribute_name
            refs.append(ref)
        return ", ".join(refs)


def merge_expression_attributes(
    req: dict[str, Any],
    *,
    names: Mapping[str, str] | None,
    values: Mapping[str, Any] | None,
) -> None:
    """Merge caller-supplied placeholders into a request, rejecting collisions."""
    if names:
        req_names = req.setdefault("ExpressionAttributeNames", {})
        for k, v in names.items():
            if k in req_names:
                raise ValidationError(f"expression attribute name collision: {k}")
            req_names[k] = v

    if values:
        req_values = req.setdefault("ExpressionAttributeValues", {})
        for k, v in values.items():
            if k in req_values:
                raise ValidationError(f"expression attribute value collision: {k}")
            req_values[k] = v


def _retry_read[P](
    attempt: Callable[[], Page[P]],
    *,
    max_retries: int,
    initial_delay_seconds: float,
    max_delay_seconds: float,
    backoff_factor: float,
    retry_on_empty: bool,
    retry_on_error: bool,
    verify: Callable[[Page[P]], bool] | None,
    sleep: Callable[[float], None],
) -> Page[P]:
    if max_retries < 0:
        raise ValidationError("max_retries must be >= 0")

    delay = initial_delay_seconds
    last_page: Page[P] | None = None

    for n in range(max_retries + 1):
        try:
            page = attempt()
            last_page = page

            if verify is not None:
                if verify(page):
                    return page
            elif not retry_on_empty or page.items:
                return page
        except Exception:
            if not retry_on_error or n == max_retries:
                raise
            log.debug("read attempt %d failed; retrying", n + 1, exc_info=True)

        if n < max_retries:
            if delay > 0:
                sleep(delay)
            delay = min(max_delay_seconds, delay * backoff_factor)

    if last_page is None:
        raise ValidationError("retry exhausted without results")
    return last_page
