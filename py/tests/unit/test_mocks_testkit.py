from __future__ import annotations

from dataclasses import dataclass

import pytest
from botocore.exceptions import ClientError

from ctdynamo_py import ModelDefinition, Table, dynamo_field
from ctdynamo_py.mocks import ANY, FakeDynamoDBClient, InMemoryDynamoDBClient, client_error
from ctdynamo_py.testkit import in_memory_client, unprocessed_when


@dataclass(frozen=True)
class Note:
    pk: str = dynamo_field(roles=["pk"])
    sk: str = dynamo_field(roles=["sk"])
    value: int = dynamo_field(default=0)


NOTES = ModelDefinition.from_dataclass(Note, table_name="notes")


def test_fake_dynamodb_client_records_and_matches_put_item() -> None:
    client = FakeDynamoDBClient()
    client.expect("put_item", {"TableName": "notes", "Item": ANY})

    table = Table.for_model(NOTES, client=client)
    table.put_item(Note(pk="A", sk="B", value=1))

    client.assert_no_pending()
    assert client.calls[0][0] == "put_item"
    assert client.calls[0][1]["Item"]["value"] == {"N": "1"}


def test_fake_dynamodb_client_reports_mismatches() -> None:
    client = FakeDynamoDBClient()
    client.expect("get_item", {"TableName": "other"})
    with pytest.raises(AssertionError, match="get_item.TableName"):
        client.get_item(TableName="notes", Key={})

    client.expect("get_item")
    with pytest.raises(AssertionError, match="expected get_item, got put_item"):
        client.put_item(TableName="notes", Item={})

    with pytest.raises(AssertionError, match="unexpected call"):
        client.scan(TableName="notes")

    client.expect("query", lambda req: None)
    with pytest.raises(AssertionError, match="pending"):
        client.assert_no_pending()


def test_client_error_shape() -> None:
    err = client_error("ConditionalCheckFailedException", "nope", "PutItem")
    assert isinstance(err, ClientError)
    assert err.response["Error"]["Code"] == "ConditionalCheckFailedException"
    assert err.operation_name == "PutItem"


def test_in_memory_client_rejects_unknown_tables() -> None:
    client = InMemoryDynamoDBClient()
    with pytest.raises(ClientError) as exc:
        client.get_item(TableName="missing", Key={"pk": {"S": "A"}})
    assert exc.value.response["Error"]["Code"] == "ResourceNotFoundException"

    client.add_table("notes", partition_attribute="pk", sort_attribute="sk")
    with pytest.raises(ClientError) as exc:
        client.query(
            TableName="notes",
            IndexName="nope",
            KeyConditionExpression="#p = :p",
            ExpressionAttributeNames={"#p": "pk"},
            ExpressionAttributeValues={":p": {"S": "A"}},
        )
    assert exc.value.response["Error"]["Code"] == "ValidationException"


def test_in_memory_client_enforces_batch_limits() -> None:
    client = in_memory_client(NOTES)
    puts = [{"PutRequest": {"Item": {"pk": {"S": "A"}, "sk": {"S": str(i)}}}} for i in range(26)]
    with pytest.raises(ClientError):
        client.batch_write_item(RequestItems={"notes": puts})
    keys = [{"pk": {"S": "A"}, "sk": {"S": str(i)}} for i in range(101)]
    with pytest.raises(ClientError):
        client.batch_get_item(RequestItems={"notes": {"Keys": keys}})


def test_in_memory_client_omits_capacity_unless_requested() -> None:
    client = in_memory_client(NOTES)
    out = client.put_item(TableName="notes", Item={"pk": {"S": "A"}, "sk": {"S": "1"}})
    assert "ConsumedCapacity" not in out

    out = client.get_item(TableName="notes", Key={"pk": {"S": "A"}, "sk": {"S": "1"}}, ReturnConsumedCapacity="TOTAL")
    assert out["ConsumedCapacity"] == {"TableName": "notes", "CapacityUnits": 0.5, "ReadCapacityUnits": 0.5}


def test_in_memory_client_evaluates_expressions() -> None:
    client = in_memory_client(NOTES)
    for i in range(5):
        client.put_item(TableName="notes", Item={"pk": {"S": "A"}, "sk": {"S": f"{i}"}, "value": {"N": str(i)}})

    out = client.query(
        TableName="notes",
        KeyConditionExpression="#p = :p AND #s BETWEEN :lo AND :hi",
        FilterExpression="#v <> :one OR attribute_not_exists(#v)",
        ExpressionAttributeNames={"#p": "pk", "#s": "sk", "#v": "value"},
        ExpressionAttributeValues={":p": {"S": "A"}, ":lo": {"S": "1"}, ":hi": {"S": "3"}, ":one": {"N": "1"}},
    )
    assert [item["sk"]["S"] for item in out["Items"]] == ["2", "3"]
    assert out["Count"] == 2
    assert out["ScannedCount"] == 3

    out = client.scan(
        TableName="notes",
        FilterExpression="(#v = :one OR contains(#s, :three)) AND attribute_exists(#v)",
        ExpressionAttributeNames={"#s": "sk", "#v": "value"},
        ExpressionAttributeValues={":one": {"N": "1"}, ":three": {"S": "3"}},
    )
    assert [item["sk"]["S"] for item in out["Items"]] == ["1", "3"]


def test_unprocessed_when_matches_string_and_number_values() -> None:
    predicate = unprocessed_when("id", ["a", 7])
    assert predicate("t", {"id": {"S": "a"}})
    assert predicate("t", {"id": {"N": "7"}})
    assert not predicate("t", {"id": {"S": "b"}})
    assert not predicate("t", {})


def test_in_memory_client_requires_keyed_models() -> None:
    @dataclass(frozen=True)
    class Loose:
        value: int = dynamo_field(default=0)

    with pytest.raises(ValueError):
        in_memory_client(ModelDefinition.from_dataclass(Loose, key_required=False))
    with pytest.raises(ValueError):
        in_memory_client(ModelDefinition.from_dataclass(Note))
