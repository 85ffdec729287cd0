from __future__ import annotations

from dataclasses import dataclass

import pytest

from dynarecord import (
    ConditionFailedError,
    ModelDefinition,
    Table,
    TransactConditionCheck,
    TransactDelete,
    TransactDeleteItem,
    TransactionalSaveConditionCollisionError,
    TransactionCanceledError,
    TransactPut,
    TransactSave,
    TransactUpdate,
    ValidationError,
    record_field,
    transact_find,
    transact_write,
)
from dynarecord.mocks import FakeDynamoDBClient, client_error
from dynarecord.tracking import mark_persisted


@dataclass
class Wallet:
    id: str = record_field(roles=["pk"])
    balance: int = record_field(default=0)
    owner: str | None = record_field(default=None)


@dataclass
class Entry:
    wallet: str = record_field(roles=["pk"])
    seq: int = record_field(roles=["sk"])
    amount: int = record_field(default=0)


WALLETS = ModelDefinition.from_dataclass(Wallet, table_name="wallets")
ENTRIES = ModelDefinition.from_dataclass(Entry, table_name="entries")


def _persisted(balance: int = 0) -> Wallet:
    wallet = Wallet(id="w1", balance=balance)
    mark_persisted(wallet, WALLETS)
    return wallet


def test_transact_write_builds_each_action_shape() -> None:
    client = FakeDynamoDBClient()
    table = Table(WALLETS, client=client)
    client.expect(
        "transact_write_items",
        {
            "TransactItems": [
                {
                    "Put": {
                        "TableName": "wallets",
                        "Item": {"id": {"S": "w1"}, "balance": {"N": "5"}},
                        "ConditionExpression": "attribute_not_exists(#id)",
                        "ExpressionAttributeNames": {"#id": "id"},
                    }
                },
                {"Delete": {"TableName": "wallets", "Key": {"id": {"S": "w2"}}}},
                {
                    "Update": {
                        "TableName": "wallets",
                        "Key": {"id": {"S": "w3"}},
                        "UpdateExpression": "SET #d_balance = :d_balance",
                        "ExpressionAttributeValues": {":d_balance": {"N": "7"}},
                    }
                },
                {
                    "ConditionCheck": {
                        "TableName": "wallets",
                        "Key": {"id": {"S": "w4"}},
                        "ConditionExpression": "#b >= :min",
                        "ExpressionAttributeNames": {"#b": "balance"},
                        "ExpressionAttributeValues": {":min": {"N": "1"}},
                    }
                },
            ]
        },
    )

    wallet = Wallet(id="w1", balance=5)
    table.transact_write(
        [
            TransactPut(
                wallet,
                condition_expression="attribute_not_exists(#id)",
                expression_attribute_names={"#id": "id"},
            ),
            TransactDelete("w2"),
            TransactUpdate("w3", None, {"balance": 7}),
            TransactConditionCheck(
                "w4",
                None,
                "#b >= :min",
                expression_attribute_names={"#b": "balance"},
                expression_attribute_values={":min": 1},
            ),
        ]
    )

    client.assert_no_pending()
    assert table.is_persisted(wallet)


def test_transact_save_new_item_is_a_safe_put() -> None:
    client = FakeDynamoDBClient()
    table = Table(WALLETS, client=client)
    client.expect(
        "transact_write_items",
        {
            "TransactItems": [
                {
                    "Put": {
                        "ConditionExpression": "attribute_not_exists(#pk)",
                        "ExpressionAttributeNames": {"#pk": "id"},
                    }
                }
            ]
        },
    )

    wallet = Wallet(id="w1")
    table.transact_write([TransactSave(wallet)])
    assert table.is_persisted(wallet)


def test_transact_save_new_item_rejects_custom_condition() -> None:
    client = FakeDynamoDBClient()
    table = Table(WALLETS, client=client)

    with pytest.raises(TransactionalSaveConditionCollisionError):
        table.transact_write([TransactSave(Wallet(id="w1"), condition_expression="attribute_exists(id)")])
    assert client.calls == []


def test_transact_save_persisted_item_updates_dirty_fields() -> None:
    client = FakeDynamoDBClient()
    table = Table(WALLETS, client=client)
    client.expect(
        "transact_write_items",
        {
            "TransactItems": [
                {
                    "Update": {
                        "TableName": "wallets",
                        "Key": {"id": {"S": "w1"}},
                        "UpdateExpression": "SET #d_balance = :d_balance",
                        "ConditionExpression": "#d_balance = :old",
                        "ExpressionAttributeNames": {"#d_balance": "balance"},
                        "ExpressionAttributeValues": {":d_balance": {"N": "9"}, ":old": {"N": "3"}},
                    }
                }
            ]
        },
    )

    wallet = _persisted(balance=3)
    wallet.balance = 9
    table.transact_write(
        [TransactSave(wallet, condition_expression="#d_balance = :old", expression_attribute_values={":old": 3})]
    )
    assert not table.is_dirty(wallet)

    wallet.balance = 10
    with pytest.raises(ValidationError, match="collision"):
        table.transact_write(
            [TransactSave(wallet, condition_expression="#d_balance > 0", expression_attribute_names={"#d_balance": "x"})]
        )


def test_transact_save_of_clean_item_sends_nothing() -> None:
    client = FakeDynamoDBClient()
    table = Table(WALLETS, client=client)

    table.transact_write([TransactSave(_persisted())])
    assert client.calls == []


def test_transact_write_across_tables_and_delete_item() -> None:
    client = FakeDynamoDBClient()
    wallets = Table(WALLETS, client=client)
    entries = Table(ENTRIES, client=client)
    client.expect(
        "transact_write_items",
        {
            "TransactItems": [
                {"Delete": {"TableName": "wallets", "Key": {"id": {"S": "w1"}}}},
                {"Put": {"TableName": "entries", "Item": {"wallet": {"S": "w1"}, "seq": {"N": "1"}}}},
            ]
        },
    )

    wallet = _persisted()
    entry = Entry(wallet="w1", seq=1)
    transact_write([(wallets, TransactDeleteItem(wallet)), (entries, TransactPut(entry))])

    assert wallets.is_destroyed(wallet)
    assert entries.is_persisted(entry)


def test_transact_write_action_limits() -> None:
    table = Table(WALLETS, client=FakeDynamoDBClient())
    with pytest.raises(ValidationError, match="required"):
        transact_write([])
    with pytest.raises(ValidationError, match="at most 100"):
        table.transact_write([TransactDelete(f"w{i}") for i in range(101)])


def test_transaction_cancellation_mapping() -> None:
    client = FakeDynamoDBClient()
    table = Table(WALLETS, client=client)

    client.expect(
        "transact_write_items",
        error=client_error(
            "TransactionCanceledException",
            "Transaction cancelled",
            CancellationReasons=[{"Code": "None"}, {"Code": "ConditionalCheckFailed"}],
        ),
    )
    wallet = Wallet(id="w1")
    with pytest.raises(ConditionFailedError):
        table.transact_write([TransactPut(wallet), TransactDelete("w2")])
    assert table.is_new_record(wallet)

    client.expect(
        "transact_write_items",
        error=client_error(
            "TransactionCanceledException",
            "Transaction cancelled",
            CancellationReasons=[{"Code": "ThrottlingError"}],
        ),
    )
    with pytest.raises(TransactionCanceledError) as excinfo:
        table.transact_write([TransactDelete("w2")])
    assert excinfo.value.reason_codes == ("ThrottlingError",)


def test_transact_find_reports_missing_keys() -> None:
    client = FakeDynamoDBClient()
    wallets = Table(WALLETS, client=client)
    entries = Table(ENTRIES, client=client)
    client.expect(
        "transact_get_items",
        {
            "TransactItems": [
                {"Get": {"TableName": "wallets", "Key": {"id": {"S": "w1"}}}},
                {"Get": {"TableName": "entries", "Key": {"wallet": {"S": "w1"}, "seq": {"N": "2"}}}},
            ]
        },
        response={"Responses": [{"Item": {"id": {"S": "w1"}, "balance": {"N": "4"}}}, {}]},
    )

    result = transact_find([(wallets, "w1", None), (entries, "w1", 2)])

    found, absent = result.items
    assert isinstance(found, Wallet) and found.balance == 4
    assert wallets.is_persisted(found)
    assert absent is None
    assert result.missing == [(entries, {"wallet": {"S": "w1"}, "seq": {"N": "2"}})]

    with pytest.raises(ValidationError):
        transact_find([])
