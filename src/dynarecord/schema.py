from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import is_dataclass
from typing import Any

from botocore.exceptions import ClientError

from .aws_errors import error_code, map_table_error
from .client import default_client
from .errors import TableDoesNotExistError, ValidationError
from .model import IndexDefinition, ModelDefinition

log = logging.getLogger(__name__)

type BillingMode = str  # "PAY_PER_REQUEST" | "PROVISIONED"
type Throughput = Mapping[str, int]


def _resolve_table(model: ModelDefinition[Any], table_name: str | None) -> str:
    resolved = table_name or model.table_name
    if not resolved:
        raise ValueError("table_name is required (or set ModelDefinition.table_name)")
    return resolved


def create_table(
    model: ModelDefinition[Any],
    *,
    client: Any | None = None,
    table_name: str | None = None,
    billing_mode: BillingMode = "PAY_PER_REQUEST",
    provisioned_throughput: Throughput | None = None,
    gsi_throughput: Mapping[str, Throughput] | None = None,
    wait_for_active: bool = True,
    wait_timeout_seconds: float = 300.0,
    poll_interval_seconds: float = 0.25,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    client = client or default_client()

    req = build_create_table_request(
        model,
        table_name=table_name,
        billing_mode=billing_mode,
        provisioned_throughput=provisioned_throughput,
        gsi_throughput=gsi_throughput,
    )

    log.info("creating table %s (%s)", req["TableName"], req["BillingMode"])
    try:
        client.create_table(**req)
    except ClientError as err:
        if error_code(err) != "ResourceInUseException":
            raise map_table_error(err) from err
        log.debug("table %s already exists", req["TableName"])

    if wait_for_active:
        _wait_for_table_active(
            client,
            req["TableName"],
            timeout_seconds=wait_timeout_seconds,
            poll_interval_seconds=poll_interval_seconds,
            sleep=sleep,
        )


def ensure_table(
    model: ModelDefinition[Any],
    *,
    client: Any | None = None,
    table_name: str | None = None,
    billing_mode: BillingMode = "PAY_PER_REQUEST",
    provisioned_throughput: Throughput | None = None,
    gsi_throughput: Mapping[str, Throughput] | None = None,
    wait_for_active: bool = True,
    wait_timeout_seconds: float = 300.0,
    poll_interval_seconds: float = 0.25,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    client = client or default_client()
    resolved_table = _resolve_table(model, table_name)

    try:
        client.describe_table(TableName=resolved_table)
    except ClientError as err:
        if error_code(err) != "ResourceNotFoundException":
            raise map_table_error(err) from err
        create_table(
            model,
            client=client,
            table_name=resolved_table,
            billing_mode=billing_mode,
            provisioned_throughput=provisioned_throughput,
            gsi_throughput=gsi_throughput,
            wait_for_active=wait_for_active,
            wait_timeout_seconds=wait_timeout_seconds,
            poll_interval_seconds=poll_interval_seconds,
            sleep=sleep,
        )
        return

    if wait_for_active:
        _wait_for_table_active(
            client,
            resolved_table,
            timeout_seconds=wait_timeout_seconds,
            poll_interval_seconds=poll_interval_seconds,
            sleep=sleep,
        )


def delete_table(
    model: ModelDefinition[Any],
    *,
    client: Any | None = None,
    table_name: str | None = None,
    wait_for_delete: bool = True,
    wait_timeout_seconds: float = 300.0,
    poll_interval_seconds: float = 0.25,
    ignore_missing: bool = False,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    client = client or default_client()
    resolved_table = _resolve_table(model, table_name)

    log.info("deleting table %s", resolved_table)
    try:
        client.delete_table(TableName=resolved_table)
    except ClientError as err:
        if ignore_missing and error_code(err) == "ResourceNotFoundException":
            return
        raise map_table_error(err) from err

    if wait_for_delete:
        _wait_for_table_deleted(
            client,
            resolved_table,
            timeout_seconds=wait_timeout_seconds,
            poll_interval_seconds=poll_interval_seconds,
            sleep=sleep,
        )


def describe_table(
    model: ModelDefinition[Any],
    *,
    client: Any | None = None,
    table_name: str | None = None,
) -> dict[str, Any]:
    client = client or default_client()
    resolved_table = _resolve_table(model, table_name)

    try:
        return dict(client.describe_table(TableName=resolved_table))
    except ClientError as err:
        raise map_table_error(err) from err


def update_table(
    model: ModelDefinition[Any],
    *,
    client: Any | None = None,
    table_name: str | None = None,
    wait_for_active: bool = True,
    wait_timeout_seconds: float = 300.0,
    poll_interval_seconds: float = 0.25,
    sleep: Callable[[float], None] = time.sleep,
    **changes: Any,
) -> dict[str, Any]:
    """Send an UpdateTable request; `changes` are raw UpdateTable parameters."""
    if not changes:
        raise ValidationError("update_table requires at least one change")

    client = client or default_client()
    resolved_table = _resolve_table(model, table_name)

    log.info("updating table %s: %s", resolved_table, ", ".join(sorted(changes)))
    try:
        resp = dict(client.update_table(TableName=resolved_table, **changes))
    except ClientError as err:
        raise map_table_error(err) from err

    if wait_for_active:
        _wait_for_table_active(
            client,
            resolved_table,
            timeout_seconds=wait_timeout_seconds,
            poll_interval_seconds=poll_interval_seconds,
            sleep=sleep,
        )
    return resp


def table_exists(
    model: ModelDefinition[Any],
    *,
    client: Any | None = None,
    table_name: str | None = None,
) -> bool:
    try:
        resp = describe_table(model, client=client, table_name=table_name)
    except TableDoesNotExistError:
        return False
    return str(resp.get("Table", {}).get("TableStatus", "")) == "ACTIVE"


def provisioned_throughput(
    model: ModelDefinition[Any],
    *,
    client: Any | None = None,
    table_name: str | None = None,
) -> dict[str, int]:
    table = describe_table(model, client=client, table_name=table_name).get("Table", {})
    throughput = table.get("ProvisionedThroughput") or {}
    return {
        "ReadCapacityUnits": int(throughput.get("ReadCapacityUnits", 0)),
        "WriteCapacityUnits": int(throughput.get("WriteCapacityUnits", 0)),
    }


def _key_type(model: ModelDefinition[Any], attribute_name: str) -> str:
    field_name = model.field_for_storage_name(attribute_name)
    if field_name is None:
        raise ValidationError(f"unknown attribute: {attribute_name}")

    dynamodb_type = model.attributes[field_name].dynamodb_type
    if dynamodb_type not in {"S", "N", "B"}:
        raise ValidationError(f"key attribute must be S/N/B: {attribute_name} (got {dynamodb_type})")
    return dynamodb_type


def attribute_definitions(
    model: ModelDefinition[Any],
    indexes: tuple[IndexDefinition, ...] | None = None,
) -> list[dict[str, str]]:
    """Attribute definitions for the table keys plus the keys of `indexes` (all indexes by default)."""
    names = [model.pk.attribute_name]
    if model.sk is not None:
        names.append(model.sk.attribute_name)
    for idx in model.indexes if indexes is None else indexes:
        names.append(idx.partition)
        if idx.sort is not None:
            names.append(idx.sort)

    return [{"AttributeName": name, "AttributeType": _key_type(model, name)} for name in sorted(set(names))]


def gsi_request(idx: IndexDefinition, throughput: Throughput | None) -> dict[str, Any]:
    out: dict[str, Any] = {
        "IndexName": idx.name,
        "KeySchema": idx.key_schema(),
        "Projection": idx.projection_request(),
    }
    if throughput is not None:
        out["ProvisionedThroughput"] = dict(throughput)
    return out


def build_create_table_request(
    model: ModelDefinition[Any],
    *,
    table_name: str | None = None,
    billing_mode: BillingMode = "PAY_PER_REQUEST",
    provisioned_throughput: Throughput | None = None,
    gsi_throughput: Mapping[str, Throughput] | None = None,
) -> dict[str, Any]:
    if not is_dataclass(model.model_type):
        raise ValidationError("model_type must be a dataclass")

    resolved_table = _resolve_table(model, table_name)

    billing_mode = (billing_mode or "PAY_PER_REQUEST").strip() or "PAY_PER_REQUEST"
    if billing_mode not in {"PAY_PER_REQUEST", "PROVISIONED"}:
        raise ValidationError(f"unsupported billing_mode: {billing_mode}")

    resolved_throughput: Throughput | None = None
    if billing_mode == "PROVISIONED":
        if provisioned_throughput is None:
            raise ValidationError("provisioned_throughput is required when billing_mode=PROVISIONED")
        resolved_throughput = provisioned_throughput

    gsi_throughput = gsi_throughput or {}
    unknown = set(gsi_throughput) - {idx.name for idx in model.global_secondary_indexes()}
    if unknown:
        raise ValidationError(f"gsi_throughput names unknown indexes: {sorted(unknown)}")

    gsis = [
        gsi_request(idx, gsi_throughput.get(idx.name, resolved_throughput) if resolved_throughput else None)
        for idx in model.global_secondary_indexes()
    ]
    lsis = [
        {"IndexName": idx.name, "KeySchema": idx.key_schema(), "Projection": idx.projection_request()}
        for idx in model.local_secondary_indexes()
    ]

    req: dict[str, Any] = {
        "TableName": resolved_table,
        "BillingMode": billing_mode,
        "KeySchema": model.key_schema(),
        "AttributeDefinitions": attribute_definitions(model),
    }
    if resolved_throughput is not None:
        req["ProvisionedThroughput"] = dict(resolved_throughput)
    if gsis:
        req["GlobalSecondaryIndexes"] = gsis
    if lsis:
        req["LocalSecondaryIndexes"] = lsis

    return req


def _table_status(client: Any, table_name: str) -> str | None:
    try:
        resp = client.describe_table(TableName=table_name)
    except ClientError as err:
        if error_code(err) != "ResourceNotFoundException":
            raise map_table_error(err) from err
        return None
    table = resp.get("Table", {})
    status = str(table.get("TableStatus", ""))
    # A table with a GSI still backfilling is not ready for the next change.
    if status == "ACTIVE" and any(
        str(g.get("IndexStatus", "ACTIVE")) != "ACTIVE" for g in table.get("GlobalSecondaryIndexes") or []
    ):
        return "UPDATING"
    return status


def _wait_for_table_active(
    client: Any,
    table_name: str,
    *,
    timeout_seconds: float,
    poll_interval_seconds: float,
    sleep: Callable[[float], None],
) -> None:
    deadline = time.monotonic() + timeout_seconds
    while time.monotonic() < deadline:
        if _table_status(client, table_name) == "ACTIVE":
            return
        sleep(poll_interval_seconds)

    raise ValidationError(f"timed out waiting for table ACTIVE: {table_name}")


def _wait_for_table_deleted(
    client: Any,
    table_name: str,
    *,
    timeout_seconds: float,
    poll_interval_seconds: float,
    sleep: Callable[[float], None],
) -> None:
    deadline = time.monotonic() + timeout_seconds
    while time.monotonic() < deadline:
        if _table_status(client, table_name) is None:
            return
        sleep(poll_interval_seconds)

    raise ValidationError(f"timed out waiting for table deletion: {table_name}")


class TableMigration:
    def __init__(
        self,
        model: ModelDefinition[Any],
        *,
        client: Any | None = None,
        table_name: str | None = None,
        wait_timeout_seconds: float = 300.0,
        poll_interval_seconds: float = 0.25,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.model = model
        self.client = client or default_client()
        self.table_name = _resolve_table(model, table_name)
        self._wait_timeout_seconds = wait_timeout_seconds
        self._poll_interval_seconds = poll_interval_seconds
        self._sleep = sleep

    def create(
        self,
        *,
        billing_mode: BillingMode = "PROVISIONED",
        provisioned_throughput: Throughput | None = None,
        gsi_throughput: Mapping[str, Throughput] | None = None,
    ) -> None:
        req = build_create_table_request(
            self.model,
            table_name=self.table_name,
            billing_mode=billing_mode,
            provisioned_throughput=provisioned_throughput,
            gsi_throughput=gsi_throughput,
        )
        log.info("creating table %s", self.table_name)
        try:
            self.client.create_table(**req)
        except ClientError as err:
            raise map_table_error(err) from err

    def update(self, **changes: Any) -> dict[str, Any]:
        return update_table(
            self.model,
            client=self.client,
            table_name=self.table_name,
            wait_for_active=False,
            **changes,
        )

    def delete(self) -> None:
        delete_table(self.model, client=self.client, table_name=self.table_name, wait_for_delete=False)

    def wait_until_available(self) -> None:
        _wait_for_table_active(
            self.client,
            self.table_name,
            timeout_seconds=self._wait_timeout_seconds,
            poll_interval_seconds=self._poll_interval_seconds,
            sleep=self._sleep,
        )
