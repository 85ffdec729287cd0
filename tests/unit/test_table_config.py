from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any

import pytest

from dynarecord import (
    GsiConfig,
    MissingRequiredConfigurationError,
    ModelDefinition,
    TableConfig,
    ValidationError,
    gsi,
    record_field,
)
from dynarecord.mocks import FakeDynamoDBClient, client_error
from dynarecord.testkit import no_sleep


@dataclass
class Order:
    pk: str = record_field(name="PK", roles=["pk"])
    sk: str = record_field(name="SK", roles=["sk"])
    customer: str | None = record_field(default=None)


MODEL = ModelDefinition.from_dataclass(Order, table_name="orders", indexes=[gsi("by-customer", partition="customer")])

INDEX = {
    "IndexName": "by-customer",
    "IndexStatus": "ACTIVE",
    "KeySchema": [{"AttributeName": "customer", "KeyType": "HASH"}],
    "Projection": {"ProjectionType": "ALL"},
    "ProvisionedThroughput": {"ReadCapacityUnits": 1, "WriteCapacityUnits": 1},
}

REMOTE: dict[str, Any] = {
    "TableName": "orders",
    "TableStatus": "ACTIVE",
    "KeySchema": [
        {"AttributeName": "SK", "KeyType": "RANGE"},
        {"AttributeName": "PK", "KeyType": "HASH"},
    ],
    "AttributeDefinitions": [
        {"AttributeName": "customer", "AttributeType": "S"},
        {"AttributeName": "PK", "AttributeType": "S"},
        {"AttributeName": "SK", "AttributeType": "S"},
    ],
    "ProvisionedThroughput": {"ReadCapacityUnits": 5, "WriteCapacityUnits": 2, "NumberOfDecreasesToday": 0},
    "GlobalSecondaryIndexes": [INDEX],
}


def _remote(**overrides: Any) -> dict[str, Any]:
    table = copy.deepcopy(REMOTE)
    table.update(overrides)
    return {"Table": table}


def _config(client: FakeDynamoDBClient, **kwargs: Any) -> TableConfig:
    settings: dict[str, Any] = {
        "read_capacity_units": 5,
        "write_capacity_units": 2,
        "global_secondary_indexes": {"by-customer": GsiConfig(1, 1)},
    }
    settings.update(kwargs)
    return TableConfig(model=MODEL, client=client, sleep=no_sleep, **settings)


def test_validate_lists_every_missing_setting() -> None:
    with pytest.raises(MissingRequiredConfigurationError) as excinfo:
        TableConfig(model=MODEL).validate()
    assert str(excinfo.value) == (
        "missing: read_capacity_units, write_capacity_units, global_secondary_indexes[by-customer]"
    )

    with pytest.raises(MissingRequiredConfigurationError, match="missing: model"):
        TableConfig(model=None, billing_mode="PAY_PER_REQUEST").validate()
    with pytest.raises(ValidationError, match="billing_mode"):
        TableConfig(model=MODEL, billing_mode="SOMETIMES").validate()

    TableConfig(model=MODEL, billing_mode="PAY_PER_REQUEST").validate()


def test_migrate_creates_missing_table() -> None:
    client = FakeDynamoDBClient()
    client.expect("describe_table", error=client_error("ResourceNotFoundException"))
    client.expect(
        "create_table",
        {
            "TableName": "orders",
            "BillingMode": "PROVISIONED",
            "ProvisionedThroughput": {"ReadCapacityUnits": 5, "WriteCapacityUnits": 2},
            "GlobalSecondaryIndexes": [
                {
                    "IndexName": "by-customer",
                    "ProvisionedThroughput": {"ReadCapacityUnits": 1, "WriteCapacityUnits": 1},
                }
            ],
        },
    )
    client.expect("describe_table", response=_remote())

    _config(client).migrate()
    client.assert_no_pending()


def test_migrate_leaves_compatible_table_alone() -> None:
    client = FakeDynamoDBClient()
    client.expect("describe_table", response=_remote())

    _config(client).migrate()
    assert [name for name, _ in client.calls] == ["describe_table"]


def test_migrate_updates_throughput() -> None:
    client = FakeDynamoDBClient()
    client.expect(
        "describe_table",
        response=_remote(ProvisionedThroughput={"ReadCapacityUnits": 1, "WriteCapacityUnits": 1}),
    )
    client.expect(
        "update_table",
        {
            "TableName": "orders",
            "BillingMode": "PROVISIONED",
            "ProvisionedThroughput": {"ReadCapacityUnits": 5, "WriteCapacityUnits": 2},
        },
    )
    client.expect("describe_table", response=_remote())

    _config(client).migrate()
    client.assert_no_pending()


def test_migrate_creates_missing_index_with_its_attribute_definitions() -> None:
    client = FakeDynamoDBClient()
    client.expect(
        "describe_table",
        response=_remote(
            GlobalSecondaryIndexes=[],
            AttributeDefinitions=[
                {"AttributeName": "PK", "AttributeType": "S"},
                {"AttributeName": "SK", "AttributeType": "S"},
            ],
        ),
    )
    client.expect(
        "update_table",
        {
            "TableName": "orders",
            "AttributeDefinitions": [
                {"AttributeName": "PK", "AttributeType": "S"},
                {"AttributeName": "SK", "AttributeType": "S"},
                {"AttributeName": "customer", "AttributeType": "S"},
            ],
            "GlobalSecondaryIndexUpdates": [
                {
                    "Create": {
                        "IndexName": "by-customer",
                        "KeySchema": [{"AttributeName": "customer", "KeyType": "HASH"}],
                        "Projection": {"ProjectionType": "ALL"},
                        "ProvisionedThroughput": {"ReadCapacityUnits": 1, "WriteCapacityUnits": 1},
                    }
                }
            ],
        },
    )
    client.expect("describe_table", response=_remote())

    _config(client).migrate()
    client.assert_no_pending()


def test_exact_match_versus_compatible() -> None:
    client = FakeDynamoDBClient()
    config = _config(client)

    client.expect("describe_table", response=_remote())
    assert config.is_exact_match()

    extra = dict(INDEX, IndexName="by-status")
    client.expect("describe_table", response=_remote(GlobalSecondaryIndexes=[INDEX, extra]))
    client.expect("describe_table", response=_remote(GlobalSecondaryIndexes=[INDEX, extra]))
    assert config.is_compatible()
    assert not config.is_exact_match()

    client.expect("describe_table", error=client_error("ResourceNotFoundException"))
    assert not config.is_compatible()


def test_on_demand_tables_ignore_capacity() -> None:
    client = FakeDynamoDBClient()
    config = TableConfig(model=MODEL, billing_mode="PAY_PER_REQUEST", client=client, sleep=no_sleep)
    index = {k: v for k, v in INDEX.items() if k != "ProvisionedThroughput"}

    client.expect(
        "describe_table",
        response=_remote(BillingModeSummary={"BillingMode": "PAY_PER_REQUEST"}, GlobalSecondaryIndexes=[index]),
    )
    assert config.is_compatible()

    client.expect("describe_table", response=_remote())
    client.expect("update_table", {"TableName": "orders", "BillingMode": "PAY_PER_REQUEST"})
    client.expect("describe_table", response=_remote())
    config.migrate()
    client.assert_no_pending()


def test_from_document_reads_yaml() -> None:
    doc = """
tables:
  Order:
    read_capacity_units: 5
    write_capacity_units: 2
    global_secondary_indexes:
      by-customer: {read_capacity_units: 1, write_capacity_units: 1}
"""
    configs = TableConfig.from_document(doc, models={"Order": MODEL})

    config = configs["Order"]
    assert config.model is MODEL
    assert config.read_capacity_units == 5
    assert config.global_secondary_indexes["by-customer"] == GsiConfig(1, 1)


def test_from_document_errors() -> None:
    with pytest.raises(ValidationError, match="'tables' mapping"):
        TableConfig.from_document("orders: {}", models={"Order": MODEL})
    with pytest.raises(ValidationError, match="unknown model"):
        TableConfig.from_document({"tables": {"Invoice": {}}}, models={"Order": MODEL})
    with pytest.raises(MissingRequiredConfigurationError, match="global_secondary_indexes"):
        TableConfig.from_document(
            {"tables": {"Order": {"read_capacity_units": 1, "write_capacity_units": 1}}},
            models={"Order": MODEL},
        )

    on_demand = TableConfig.from_document(
        {"tables": {"Order": {"billing_mode": "PAY_PER_REQUEST"}}}, models={"Order": MODEL}
    )
    assert on_demand["Order"].billing_mode == "PAY_PER_REQUEST"
