from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from botocore.exceptions import ClientError

from . import tracking
from .aws_errors import map_transaction_error
from .errors import TransactionalSaveConditionCollisionError, ValidationError

if TYPE_CHECKING:
    from .table import Table

log = logging.getLogger(__name__)

MAX_TRANSACTION_ACTIONS = 100


@dataclass(frozen=True)
class TransactPut[T]:
    item: T
    condition_expression: str | None = None
    expression_attribute_names: Mapping[str, str] | None = None
    expression_attribute_values: Mapping[str, Any] | None = None


@dataclass(frozen=True)
class TransactSave[T]:
    """Safe put for new items, dirty-field update for persisted ones."""

    item: T
    condition_expression: str | None = None
    expression_attribute_names: Mapping[str, str] | None = None
    expression_attribute_values: Mapping[str, Any] | None = None


@dataclass(frozen=True)
class TransactDelete:
    pk: Any
    sk: Any | None = None
    condition_expression: str | None = None
    expression_attribute_names: Mapping[str, str] | None = None
    expression_attribute_values: Mapping[str, Any] | None = None


@dataclass(frozen=True)
class TransactDeleteItem[T]:
    item: T
    condition_expression: str | None = None
    expression_attribute_names: Mapping[str, str] | None = None
    expression_attribute_values: Mapping[str, Any] | None = None


@dataclass(frozen=True)
class TransactUpdate:
    pk: Any
    sk: Any | None
    updates: Mapping[str, Any]
    condition_expression: str | None = None
    expression_attribute_names: Mapping[str, str] | None = None
    expression_attribute_values: Mapping[str, Any] | None = None


@dataclass(frozen=True)
class TransactConditionCheck:
    pk: Any
    sk: Any | None
    condition_expression: str
    expression_attribute_names: Mapping[str, str] | None = None
    expression_attribute_values: Mapping[str, Any] | None = None


type TransactWriteAction[T] = (
    TransactPut[T]
    | TransactSave[T]
    | TransactDelete
    | TransactDeleteItem[T]
    | TransactUpdate
    | TransactConditionCheck
)


@dataclass(frozen=True)
class TransactFindResult:
    items: list[Any]
    missing: list[tuple[Table[Any], dict[str, Any]]] = field(default_factory=list)


def _with_condition(
    table: Table[Any],
    req: dict[str, Any],
    action: Any,
) -> dict[str, Any]:
    if action.condition_expression:
        req["ConditionExpression"] = action.condition_expression
    if action.expression_attribute_names:
        req["ExpressionAttributeNames"] = dict(action.expression_attribute_names)
    if action.expression_attribute_values:
        req["ExpressionAttributeValues"] = table._serialize_values(action.expression_attribute_values)
    return req


def _save_request(table: Table[Any], action: TransactSave[Any]) -> tuple[str, dict[str, Any]] | None:
    from .table import merge_expression_attributes

    table.key_values(action.item)
    if not table.is_persisted(action.item):
        if action.condition_expression:
            raise TransactionalSaveConditionCollisionError(
                "a transactional save of a new item cannot carry its own condition_expression; "
                "use TransactPut for a custom condition"
            )
        req = table.safe_put_request(action.item)
        merge_expression_attributes(req, names=action.expression_attribute_names, values=None)
        return "Put", req

    req = table.dirty_update_request(action.item)
    if req is None:
        return None
    if action.condition_expression:
        req["ConditionExpression"] = action.condition_expression
    merge_expression_attributes(
        req,
        names=action.expression_attribute_names,
        values=table._serialize_values(action.expression_attribute_values or {}),
    )
    return "Update", req


def _write_item(
    table: Table[Any], action: TransactWriteAction[Any]
) -> tuple[dict[str, Any] | None, Callable[[], None] | None]:
    if isinstance(action, TransactPut):
        req = {"TableName": table.table_name, "Item": table._to_item(action.item)}
        req = _with_condition(table, req, action)
        return {"Put": req}, lambda: tracking.mark_persisted(action.item, table.model)

    if isinstance(action, TransactSave):
        built = _save_request(table, action)
        if built is None:
            log.debug("transactional save of clean %s skipped", type(action.item).__name__)
            return None, None
        kind, req = built
        return {kind: req}, lambda: tracking.mark_persisted(action.item, table.model)

    if isinstance(action, TransactDelete):
        req = {"TableName": table.table_name, "Key": table._to_key(action.pk, action.sk)}
        req = _with_condition(table, req, action)
        return {"Delete": req}, None

    if isinstance(action, TransactDeleteItem):
        req = {"TableName": table.table_name, "Key": table.key_values(action.item)}
        req = _with_condition(table, req, action)
        return {"Delete": req}, lambda: tracking.mark_destroyed(action.item, table.model)

    if isinstance(action, TransactUpdate):
        req = table._build_update_request(
            action.pk,
            action.sk,
            action.updates,
            condition_expression=action.condition_expression,
            expression_attribute_names=action.expression_attribute_names,
            expression_attribute_values=action.expression_attribute_values,
        )
        return {"Update": req}, None

    if isinstance(action, TransactConditionCheck):
        req = {
            "TableName": table.table_name,
            "Key": table._to_key(action.pk, action.sk),
            "ConditionExpression": action.condition_expression,
        }
        if action.expression_attribute_names:
            req["ExpressionAttributeNames"] = dict(action.expression_attribute_names)
        if action.expression_attribute_values:
            req["ExpressionAttributeValues"] = table._serialize_values(action.expression_attribute_values)
        return {"ConditionCheck": req}, None

    raise ValidationError(f"unsupported transaction action: {type(action).__name__}")


def transact_write(
    actions: Sequence[tuple[Table[Any], TransactWriteAction[Any]]],
    *,
    client: Any | None = None,
) -> None:
    if not actions:
        raise ValidationError("actions is required")
    if len(actions) > MAX_TRANSACTION_ACTIONS:
        raise ValidationError(f"a transaction supports at most {MAX_TRANSACTION_ACTIONS} actions")

    transact_items: list[dict[str, Any]] = []
    on_commit: list[Callable[[], None]] = []
    for table, action in actions:
        item, after = _write_item(table, action)
        if item is not None:
            transact_items.append(item)
        if after is not None:
            on_commit.append(after)

    if not transact_items:
        log.debug("transaction has nothing to write")
        for after in on_commit:
            after()
        return

    target = client or actions[0][0].client
    try:
        target.transact_write_items(TransactItems=transact_items)
    except ClientError as err:
        raise map_transaction_error(err) from err

    for after in on_commit:
        after()


def transact_find(
    requests: Sequence[tuple[Table[Any], Any, Any | None]],
    *,
    client: Any | None = None,
) -> TransactFindResult:
    if not requests:
        raise ValidationError("requests is required")
    if len(requests) > MAX_TRANSACTION_ACTIONS:
        raise ValidationError(f"a transaction supports at most {MAX_TRANSACTION_ACTIONS} reads")

    keys = [(table, table._to_key(pk, sk)) for table, pk, sk in requests]
    transact_items = [{"Get": {"TableName": table.table_name, "Key": key}} for table, key in keys]

    target = client or requests[0][0].client
    try:
        resp = target.transact_get_items(TransactItems=transact_items)
    except ClientError as err:
        raise map_transaction_error(err) from err

    responses = resp.get("Responses") or []
    items: list[Any] = []
    missing: list[tuple[Table[Any], dict[str, Any]]] = []
    for i, (table, key) in enumerate(keys):
        raw = responses[i].get("Item") if i < len(responses) else None
        if not raw:
            items.append(None)
            missing.append((table, key))
            continue
        items.append(table._from_item(raw))

    return TransactFindResult(items=items, missing=missing)
