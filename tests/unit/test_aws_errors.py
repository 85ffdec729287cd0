from __future__ import annotations

import pytest

from dynarecord import (
    AwsError,
    ConditionFailedError,
    NotFoundError,
    TableDoesNotExistError,
    TransactionCanceledError,
    ValidationError,
)
from dynarecord.aws_errors import error_code, map_client_error, map_table_error, map_transaction_error
from dynarecord.mocks import client_error


@pytest.mark.parametrize(
    ("code", "expected"),
    [
        ("ConditionalCheckFailedException", ConditionFailedError),
        ("ValidationException", ValidationError),
        ("ResourceNotFoundException", NotFoundError),
    ],
)
def test_map_client_error_known_codes(code: str, expected: type[Exception]) -> None:
    mapped = map_client_error(client_error(code, "boom"))
    assert type(mapped) is expected
    assert str(mapped) == "boom"


def test_map_client_error_falls_back_to_aws_error() -> None:
    mapped = map_client_error(client_error("ProvisionedThroughputExceededException", "slow down"))

    assert isinstance(mapped, AwsError)
    assert mapped.code == "ProvisionedThroughputExceededException"
    assert str(mapped) == "ProvisionedThroughputExceededException: slow down"

    unknown = map_client_error(client_error("", ""))
    assert isinstance(unknown, AwsError)
    assert unknown.code == "UnknownError"


def test_map_table_error_treats_missing_resource_as_missing_table() -> None:
    mapped = map_table_error(client_error("ResourceNotFoundException"))
    assert isinstance(mapped, TableDoesNotExistError)
    assert isinstance(mapped, NotFoundError)
    assert isinstance(map_table_error(client_error("ValidationException")), ValidationError)


def test_map_transaction_error() -> None:
    canceled = client_error(
        "TransactionCanceledException",
        "Transaction cancelled",
        CancellationReasons=[{"Code": "None"}, {"Code": "TransactionConflict"}, {"Message": "no code"}],
    )
    mapped = map_transaction_error(canceled)
    assert isinstance(mapped, TransactionCanceledError)
    assert mapped.reason_codes == ("None", "TransactionConflict")

    by_message = client_error(
        "TransactionCanceledException", "Transaction cancelled [ConditionalCheckFailed, None]"
    )
    assert isinstance(map_transaction_error(by_message), ConditionFailedError)

    assert isinstance(map_transaction_error(client_error("ValidationException")), ValidationError)
    assert error_code(canceled) == "TransactionCanceledException"
