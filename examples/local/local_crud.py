from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass

import boto3

from dynarecord import (
    ModelDefinition,
    SortKeyCondition,
    Table,
    create_table,
    delete_table,
    record_field,
)


@dataclass
class Note:
    pk: str = record_field(roles=["pk"])
    sk: str = record_field(roles=["sk"])
    value: int = record_field(default=0)


def _client():
    return boto3.client(
        "dynamodb",
        endpoint_url=os.environ.get("DYNAMODB_ENDPOINT", "http://localhost:8000"),
        region_name=os.environ.get("AWS_REGION", "us-east-1"),
        aws_access_key_id=os.environ.get("AWS_ACCESS_KEY_ID", "dummy"),
        aws_secret_access_key=os.environ.get("AWS_SECRET_ACCESS_KEY", "dummy"),
    )


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    client = _client()
    model = ModelDefinition.from_dataclass(Note, table_name=f"dynarecord_example_{uuid.uuid4().hex[:12]}")
    create_table(model, client=client)

    try:
        table = Table(model, client=client)

        for sk, value in (("001", 1), ("010", 10), ("100", 100)):
            table.save(Note(pk="A", sk=sk, value=value))

        note = table.get("A", "010")
        note.value += 1
        print("dirty:", table.dirty_fields(note))
        table.save(note)

        page = table.query("A", sort=SortKeyCondition.begins_with("0"))
        print("query begins_with('0'):", page.items)
    finally:
        delete_table(model, client=client)


if __name__ == "__main__":
    main()
