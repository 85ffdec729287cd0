from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import pytest

from dynarecord import BatchRetryExceededError, ModelDefinition, Table, ValidationError, record_field
from dynarecord.mocks import FakeDynamoDBClient
from dynarecord.table import _backoff_seconds
from dynarecord.testkit import no_sleep, recording_sleep


@dataclass
class Note:
    pk: str = record_field(roles=["pk"])
    sk: str = record_field(roles=["sk"])
    value: int = record_field(default=0)


MODEL = ModelDefinition.from_dataclass(Note, table_name="notes")


def _raw(pk: str, sk: str, value: int = 0) -> dict[str, Any]:
    return {"pk": {"S": pk}, "sk": {"S": sk}, "value": {"N": str(value)}}


def test_backoff_doubles_and_caps() -> None:
    assert _backoff_seconds(1) == 0.05
    assert _backoff_seconds(2) == 0.1
    assert _backoff_seconds(3) == 0.2
    assert _backoff_seconds(10) == 1.0


def test_batch_get_chunks_by_one_hundred() -> None:
    client = FakeDynamoDBClient()
    table = Table(MODEL, client=client)

    def keys_sent(n: int):
        def check(req: Mapping[str, Any]) -> None:
            assert len(req["RequestItems"]["notes"]["Keys"]) == n

        return check

    client.expect("batch_get_item", keys_sent(100), response={"Responses": {"notes": [_raw("A", "0")]}})
    client.expect("batch_get_item", keys_sent(50), response={"Responses": {"notes": [_raw("A", "1")]}})

    got = table.batch_get([("A", str(i)) for i in range(150)], sleep=no_sleep)
    assert [n.sk for n in got] == ["0", "1"]
    assert all(table.is_persisted(n) for n in got)
    client.assert_no_pending()


def test_batch_get_retries_unprocessed_keys_with_backoff() -> None:
    client = FakeDynamoDBClient()
    table = Table(MODEL, client=client)
    pending = {"pk": {"S": "B"}, "sk": {"S": "2"}}

    client.expect(
        "batch_get_item",
        {"RequestItems": {"notes": {"ConsistentRead": True}}},
        response={
            "Responses": {"notes": [_raw("A", "1", 1)]},
            "UnprocessedKeys": {"notes": {"Keys": [pending]}},
        },
    )
    client.expect(
        "batch_get_item",
        {"RequestItems": {"notes": {"Keys": [pending]}}},
        response={"Responses": {"notes": [_raw("B", "2", 2)]}},
    )

    delays, sleep = recording_sleep()
    got = table.batch_get([("A", "1"), ("B", "2")], consistent_read=True, sleep=sleep)

    assert [n.value for n in got] == [1, 2]
    assert delays == [0.05]


def test_batch_get_raises_when_retries_exhausted() -> None:
    client = FakeDynamoDBClient()
    table = Table(MODEL, client=client)
    pending = {"pk": {"S": "A"}, "sk": {"S": "1"}}
    for _ in range(2):
        client.expect("batch_get_item", response={"UnprocessedKeys": {"notes": {"Keys": [pending]}}})

    delays, sleep = recording_sleep()
    with pytest.raises(BatchRetryExceededError) as excinfo:
        table.batch_get([("A", "1")], max_retries=1, sleep=sleep)

    assert excinfo.value.unprocessed_count == 1
    assert excinfo.value.unprocessed == [pending]
    assert delays == [0.05]


def test_batch_get_validates_keys() -> None:
    table = Table(MODEL, client=FakeDynamoDBClient())
    assert table.batch_get([]) == []
    with pytest.raises(ValidationError, match="key tuple"):
        table.batch_get(["A"])
    with pytest.raises(ValidationError, match="max_retries"):
        table.batch_get([("A", "1")], max_retries=-1)


def test_batch_write_chunks_and_marks_puts_persisted() -> None:
    client = FakeDynamoDBClient()
    table = Table(MODEL, client=client)

    def requests_sent(n: int):
        def check(req: Mapping[str, Any]) -> None:
            assert len(req["RequestItems"]["notes"]) == n

        return check

    client.expect("batch_write_item", requests_sent(25), response={})
    client.expect("batch_write_item", requests_sent(6), response={})

    notes = [Note(pk="A", sk=str(i)) for i in range(30)]
    table.batch_write(puts=notes, deletes=[("B", "1")], sleep=no_sleep)

    client.assert_no_pending()
    assert all(table.is_persisted(n) for n in notes)
    assert client.calls_for("batch_write_item")[1]["RequestItems"]["notes"][-1] == {
        "DeleteRequest": {"Key": {"pk": {"S": "B"}, "sk": {"S": "1"}}}
    }


def test_batch_write_retries_then_gives_up() -> None:
    client = FakeDynamoDBClient()
    table = Table(MODEL, client=client)
    put = {"PutRequest": {"Item": _raw("A", "1")}}
    for _ in range(3):
        client.expect("batch_write_item", response={"UnprocessedItems": {"notes": [put]}})

    delays, sleep = recording_sleep()
    note = Note(pk="A", sk="1")
    with pytest.raises(BatchRetryExceededError, match="batch_write"):
        table.batch_write(puts=[note], max_retries=2, sleep=sleep)

    assert delays == [0.05, 0.1]
    assert table.is_new_record(note)


def test_batch_write_failure_keeps_earlier_chunks_persisted() -> None:
    client = FakeDynamoDBClient()
    table = Table(MODEL, client=client)
    notes = [Note(pk="A", sk=str(i)) for i in range(30)]
    stuck = {"PutRequest": {"Item": _raw("A", "29")}}
    client.expect("batch_write_item", response={})
    client.expect("batch_write_item", response={"UnprocessedItems": {"notes": [stuck]}})

    with pytest.raises(BatchRetryExceededError):
        table.batch_write(puts=notes, max_retries=0, sleep=no_sleep)

    assert all(table.is_persisted(n) for n in notes[:25])
    assert all(table.is_new_record(n) for n in notes[25:])
