from __future__ import annotations

import os
import uuid
from dataclasses import dataclass

import boto3

from ctdynamo_py import ModelDefinition, Table, dynamo_field


@dataclass(frozen=True)
class Note:
    pk: str = dynamo_field(roles=["pk"])
    sk: str = dynamo_field(roles=["sk"])
    value: int = dynamo_field(default=0)


def _client():
    return boto3.client(
        "dynamodb",
        endpoint_url=os.environ.get("DYNAMODB_ENDPOINT", "http://localhost:8000"),
        region_name=os.environ.get("AWS_REGION", "us-east-1"),
        aws_access_key_id=os.environ.get("AWS_ACCESS_KEY_ID", "dummy"),
        aws_secret_access_key=os.environ.get("AWS_SECRET_ACCESS_KEY", "dummy"),
    )


def main() -> None:
    client = _client()
    table_name = f"ctdynamo_py_example_{uuid.uuid4().hex[:12]}"

    client.create_table(
        TableName=table_name,
        KeySchema=[{"AttributeName": "pk", "KeyType": "HASH"}, {"AttributeName": "sk", "KeyType": "RANGE"}],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
        ],
        BillingMode="PAY_PER_REQUEST",
    )
    client.get_waiter("table_exists").wait(TableName=table_name)

    try:
        model = ModelDefinition.from_dataclass(Note, table_name=table_name)
        table = Table.for_model(model, client=client)

        table.put_batch([Note(pk="A", sk=f"{i:03d}", value=i) for i in range(40)])
        print("get:", table.get_item("A", "010"))

        page = table.query("A").sort_prefix("00").limit(5).invoke()
        print("first five:", [n.sk for n in page])
        print("resume token:", page.next_token())
        print("capacity:", page.capacity.total_units)
    finally:
        client.delete_table(TableName=table_name)


if __name__ == "__main__":
    main()
