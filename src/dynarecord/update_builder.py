from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from botocore.exceptions import ClientError

from .aws_errors import map_client_error as _map_client_error
from .errors import ValidationError
from .marshalers import to_storage_numbers
from .model import AttributeDefinition

if TYPE_CHECKING:
    from .table import Table

log = logging.getLogger(__name__)

_SET_TYPES = frozenset({"SS", "NS"})

_RETURN_VALUES = frozenset({"NONE", "ALL_OLD", "UPDATED_OLD", "ALL_NEW", "UPDATED_NEW"})


class _Placeholders:
    """Allocates `#<prefix>_<field>` names and `:<prefix>N` values for one request."""

    def __init__(self, table: Table[Any], names: dict[str, str]) -> None:
        self._table = table
        self.names = names
        self.values: dict[str, Any] = {}
        self._counter = 0

    def name(self, prefix: str, attr_def: AttributeDefinition) -> str:
        ref = f"#{prefix}_{attr_def.python_name}"
        self.names.setdefault(ref, attr_def.attribute_name)
        return ref

    def _next(self, prefix: str) -> str:
        self._counter += 1
        return f":{prefix}{self._counter}"

    def marshaled(self, prefix: str, attr_def: AttributeDefinition, value: Any) -> str:
        ref = self._next(prefix)
        self.values[ref] = self._table._serialize_attr_value(attr_def, value)
        return ref

    def operand(self, prefix: str, attr_def: AttributeDefinition, value: Any) -> str:
        ref = self._next(prefix)
        self.values[ref] = self._table._condition_value(attr_def, value)
        return ref

    def partial(self, prefix: str, attr_def: AttributeDefinition, value: Any) -> str:
        ref = self._next(prefix)
        self.values[ref] = self._table._partial_value(attr_def, value)
        return ref

    def raw(self, prefix: str, value: Any) -> str:
        ref = self._next(prefix)
        self.values[ref] = self._table._serializer.serialize(to_storage_numbers(value))
        return ref


class UpdateBuilder[T]:
    def __init__(self, table: Table[T], pk: Any, sk: Any | None) -> None:
        self._table = table
        self._pk = pk
        self._sk = sk
        self._return_values: str = "NONE"
        self._updates: list[tuple[str, tuple[Any, ...]]] = []
        self._conditions: list[tuple[str, str, str, Any]] = []

    def set(self, field: str, value: Any) -> UpdateBuilder[T]:
        self._updates.append(("SET", (field, value)))
        return self

    def set_if_not_exists(self, field: str, value: Any) -> UpdateBuilder[T]:
        self._updates.append(("SET_IF_NOT_EXISTS", (field, value)))
        return self

    def add(self, field: str, value: Any) -> UpdateBuilder[T]:
        self._updates.append(("ADD", (field, value)))
        return self

    def increment(self, field: str, by: int = 1) -> UpdateBuilder[T]:
        return self.add(field, by)

    def decrement(self, field: str, by: int = 1) -> UpdateBuilder[T]:
        return self.add(field, -by)

    def remove(self, field: str) -> UpdateBuilder[T]:
        self._updates.append(("REMOVE", (field,)))
        return self

    def delete(self, field: str, value: Any) -> UpdateBuilder[T]:
        self._updates.append(("DELETE", (field, value)))
        return self

    def append_to_list(self, field: str, values: list[Any]) -> UpdateBuilder[T]:
        self._updates.append(("APPEND_LIST", (field, list(values))))
        return self

    def prepend_to_list(self, field: str, values: list[Any]) -> UpdateBuilder[T]:
        self._updates.append(("PREPEND_LIST", (field, list(values))))
        return self

    def remove_from_list_at(self, field: str, index: int) -> UpdateBuilder[T]:
        self._updates.append(("REMOVE_LIST_AT", (field, index)))
        return self

    def set_list_element(self, field: str, index: int, value: Any) -> UpdateBuilder[T]:
        self._updates.append(("SET_LIST_ELEMENT", (field, index, value)))
        return self

    def condition(self, field: str, operator: str, value: Any = None) -> UpdateBuilder[T]:
        self._conditions.append(("AND", field, operator, value))
        return self

    def or_condition(self, field: str, operator: str, value: Any = None) -> UpdateBuilder[T]:
        self._conditions.append(("OR", field, operator, value))
        return self

    def condition_exists(self, field: str) -> UpdateBuilder[T]:
        return self.condition(field, "attribute_exists", None)

    def condition_not_exists(self, field: str) -> UpdateBuilder[T]:
        return self.condition(field, "attribute_not_exists", None)

    def condition_version(self, current_version: int) -> UpdateBuilder[T]:
        model = self._table.model
        version_field = next((name for name, attr in model.attributes.items() if "version" in attr.roles), None)
        if version_field is None:
            raise ValidationError("model does not define a version field")
        return self.condition(version_field, "=", current_version)

    def return_values(self, option: str) -> UpdateBuilder[T]:
        normalized = option.strip().upper()
        if normalized not in _RETURN_VALUES:
            raise ValidationError(f"unsupported return_values option: {option}")
        self._return_values = normalized
        return self

    def execute(self) -> T | None:
        req = self.build_request()
        log.debug("update %s: %s", self._table.table_name, req["UpdateExpression"])

        try:
            resp = self._table.client.update_item(**req)
        except ClientError as err:
            raise _map_client_error(err) from err

        attrs = resp.get("Attributes")
        if not attrs:
            return None
        return self._table._from_item(attrs)

    def _attribute(self, field_name: str, *, for_update: bool) -> AttributeDefinition:
        model = self._table.model
        if field_name not in model.attributes:
            raise ValidationError(f"unknown field: {field_name}")
        if for_update and field_name in model.key_fields():
            raise ValidationError(f"cannot update key field: {field_name}")
        return model.attributes[field_name]

    def build_request(self) -> dict[str, Any]:
        if not self._updates:
            raise ValidationError("no updates provided")

        key = self._table._to_key(self._pk, self._sk)

        names: dict[str, str] = {}
        updates = _Placeholders(self._table, names)
        conditions = _Placeholders(self._table, names)
        clauses: dict[str, list[str]] = {"SET": [], "REMOVE": [], "ADD": [], "DELETE": []}

        for kind, args in self._updates:
            attr_def = self._attribute(str(args[0]), for_update=True)
            ref = updates.name("u", attr_def)

            if kind == "SET":
                clauses["SET"].append(f"{ref} = {updates.marshaled('u', attr_def, args[1])}")
            elif kind == "SET_IF_NOT_EXISTS":
                default = updates.marshaled("u", attr_def, args[1])
                clauses["SET"].append(f"{ref} = if_not_exists({ref}, {default})")
            elif kind == "REMOVE":
                clauses["REMOVE"].append(ref)
            elif kind == "ADD":
                value = args[1]
                if attr_def.dynamodb_type in _SET_TYPES:
                    clauses["ADD"].append(f"{ref} {updates.marshaled('u', attr_def, _as_set(value))}")
                elif attr_def.dynamodb_type == "N":
                    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
                        raise ValidationError("ADD requires a numeric value for non-set fields")
                    clauses["ADD"].append(f"{ref} {updates.raw('u', value)}")
                else:
                    raise ValidationError(f"ADD requires a number or set field: {attr_def.python_name}")
            elif kind == "DELETE":
                if attr_def.dynamodb_type not in _SET_TYPES:
                    raise ValidationError("DELETE requires a set field")
                clauses["DELETE"].append(f"{ref} {updates.marshaled('u', attr_def, _as_set(args[1]))}")
            elif kind in {"APPEND_LIST", "PREPEND_LIST"}:
                _require_list(attr_def)
                vref = updates.raw("u", args[1])
                if kind == "APPEND_LIST":
                    clauses["SET"].append(f"{ref} = list_append({ref}, {vref})")
                else:
                    clauses["SET"].append(f"{ref} = list_append({vref}, {ref})")
            elif kind == "REMOVE_LIST_AT":
                _require_list(attr_def)
                clauses["REMOVE"].append(f"{ref}[{_list_index(args[1])}]")
            elif kind == "SET_LIST_ELEMENT":
                _require_list(attr_def)
                clauses["SET"].append(f"{ref}[{_list_index(args[1])}] = {updates.raw('u', args[2])}")
            else:
                raise ValidationError(f"unsupported update operation: {kind}")

        update_expr = " ".join(f"{verb} " + ", ".join(parts) for verb, parts in clauses.items() if parts)

        condition_expr: str | None = None
        for logic, field_name, operator, value in self._conditions:
            attr_def = self._attribute(field_name, for_update=False)
            term = _build_condition_term(
                conditions.name("c", attr_def),
                attr_def,
                operator,
                value,
                lambda a, v: conditions.operand("c", a, v),
                lambda a, v: conditions.partial("c", a, v),
            )
            condition_expr = term if condition_expr is None else f"{condition_expr} {logic} {term}"

        req: dict[str, Any] = {
            "TableName": self._table.table_name,
            "Key": key,
            "UpdateExpression": update_expr,
            "ExpressionAttributeNames": names,
            "ReturnValues": self._return_values,
        }
        merged_values = {**updates.values, **conditions.values}
        if merged_values:
            req["ExpressionAttributeValues"] = merged_values
        if condition_expr is not None:
            req["ConditionExpression"] = condition_expr

        return req


def _as_set(value: Any) -> set[Any]:
    if isinstance(value, (set, frozenset)):
        return set(value)
    if isinstance(value, (list, tuple)):
        return set(value)
    return {value}


def _require_list(attr_def: AttributeDefinition) -> None:
    if attr_def.dynamodb_type != "L":
        raise ValidationError(f"list operations require a list attribute: {attr_def.python_name}")


def _list_index(index: Any) -> int:
    if isinstance(index, bool) or not isinstance(index, int) or index < 0:
        raise ValidationError("list index must be a non-negative integer")
    return index


def _build_condition_term(
    name_ref: str,
    attr_def: AttributeDefinition,
    operator: str,
    value: Any,
    value_ref: Callable[[AttributeDefinition, Any], str],
    partial_ref: Callable[[AttributeDefinition, Any], str],
) -> str:
    op = str(operator or "").strip().upper()

    def require_value() -> Any:
        if value is None:
            raise ValidationError(f"{operator} requires one value")
        return value

    if op in {"ATTRIBUTE_EXISTS", "EXISTS"}:
        if value is not None:
            raise ValidationError("EXISTS does not take a value")
        return f"attribute_exists({name_ref})"

    if op in {"ATTRIBUTE_NOT_EXISTS", "NOT_EXISTS"}:
        if value is not None:
            raise ValidationError("NOT_EXISTS does not take a value")
        return f"attribute_not_exists({name_ref})"

    comparisons = {"=": "=", "EQ": "=", "!=": "<>", "<>": "<>", "NE": "<>", "<": "<", "LT": "<"}
    comparisons.update({"<=": "<=", "LE": "<=", ">": ">", "GT": ">", ">=": ">=", "GE": ">="})
    if op in comparisons:
        return f"{name_ref} {comparisons[op]} {value_ref(attr_def, require_value())}"

    if op == "BETWEEN":
        if not isinstance(value, (list, tuple)) or len(value) != 2:
            raise ValidationError("BETWEEN requires two values")
        left = value_ref(attr_def, value[0])
        right = value_ref(attr_def, value[1])
        return f"{name_ref} BETWEEN {left} AND {right}"
    if op == "IN":
        if not isinstance(value, Sequence) or isinstance(value, (str, bytes, bytearray, dict)):
            raise ValidationError("IN requires a sequence of values")
        if len(value) > 100:
            raise ValidationError("IN supports maximum 100 values")
        refs = [value_ref(attr_def, v) for v in value]
        return f"{name_ref} IN (" + ", ".join(refs) + ")"
    if op == "BEGINS_WITH":
        return f"begins_with({name_ref}, {partial_ref(attr_def, require_value())})"
    if op == "CONTAINS":
        return f"contains({name_ref}, {partial_ref(attr_def, require_value())})"

    raise ValidationError(f"unsupported condition operator: {operator}")
