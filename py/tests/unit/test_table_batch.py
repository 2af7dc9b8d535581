from __future__ import annotations

import math
from dataclasses import dataclass

import pytest

from ctdynamo_py import EncodingError, Key, ModelDefinition, Table, UsageError, dynamo_field
from ctdynamo_py.mocks import ANY, FakeDynamoDBClient
from ctdynamo_py.testkit import in_memory_client, unprocessed_when


@dataclass(frozen=True)
class Row:
    pk: str = dynamo_field(name="PK", roles=["pk"])
    sk: str = dynamo_field(name="SK", roles=["sk"])
    n: int = dynamo_field(default=0)


ROWS = ModelDefinition.from_dataclass(Row, table_name="rows")


def _rows(count: int, partition: str = "A") -> list[Row]:
    return [Row(pk=partition, sk=f"{i:03d}", n=i) for i in range(count)]


def _sorted(rows: list[Row]) -> list[Row]:
    return sorted(rows, key=lambda r: (r.pk, r.sk))


@pytest.mark.parametrize("count", range(76))
def test_batches_are_chunked_and_every_item_is_read_back_once(count: int) -> None:
    client = in_memory_client(ROWS)
    table = Table.for_model(ROWS, client=client)
    rows = _rows(count)

    table.put_batch(rows)
    assert len(client.calls_to("batch_write_item")) == math.ceil(count / 25)
    assert all(len(req["RequestItems"]["rows"]) <= 25 for req in client.calls_to("batch_write_item"))

    assert _sorted(table.get_batch_by_item(rows)) == rows
    assert len(client.calls_to("batch_get_item")) == math.ceil(count / 25)


def test_thirty_keys_split_into_twenty_five_and_five() -> None:
    client = in_memory_client(ROWS)
    table = Table.for_model(ROWS, client=client)
    rows = _rows(30)
    table.put_batch(rows)

    result = table.get_batch_by_key_extended([Key(r.pk, r.sk) for r in rows])
    sizes = sorted(len(req["RequestItems"]["rows"]["Keys"]) for req in client.calls_to("batch_get_item"))
    assert sizes == [5, 25]
    assert _sorted(result.items) == rows
    assert result.unprocessed_values == []
    assert result.capacity.total_read == 15.0


def test_batch_write_capacity_is_summed_across_chunks() -> None:
    table = Table.for_model(ROWS, client=in_memory_client(ROWS))

    put = table.put_batch_extended(_rows(30))
    assert put.capacity.total_write == 30.0
    assert put.capacity.table_write == 30.0

    deleted = table.delete_batch_by_item_extended(_rows(30))
    assert deleted.capacity.total_write == 30.0
    assert deleted.items == []


def test_missing_keys_are_simply_absent() -> None:
    table = Table.for_model(ROWS, client=in_memory_client(ROWS))
    table.put_batch(_rows(3))

    found = table.get_batch_by_key([("A", "000"), ("A", "002"), ("A", "999"), ("B", "000")])
    assert _sorted(found) == [Row(pk="A", sk="000", n=0), Row(pk="A", sk="002", n=2)]


def test_unprocessed_entries_are_reported_not_retried() -> None:
    client = in_memory_client(ROWS, unprocessed=unprocessed_when("SK", ["003", "007"]))
    table = Table.for_model(ROWS, client=client)
    rows = _rows(10)

    put = table.put_batch_extended(rows)
    assert _sorted(put.unprocessed_values) == [rows[3], rows[7]]
    assert len(client.records("rows")) == 8
    assert len(client.calls_to("batch_write_item")) == 1

    got = table.get_batch_by_item_extended(rows)
    assert sorted(got.unprocessed_values, key=lambda k: k.sort) == [Key("A", "003"), Key("A", "007")]
    assert len(got.items) == 8

    deleted = table.delete_batch_by_key_extended([(r.pk, r.sk) for r in rows])
    assert sorted(deleted.unprocessed_values, key=lambda k: k.sort) == [Key("A", "003"), Key("A", "007")]
    assert client.records("rows") == []


def test_delete_batch_removes_rows() -> None:
    client = in_memory_client(ROWS)
    table = Table.for_model(ROWS, client=client)
    rows = _rows(40)
    table.put_batch(rows)

    table.delete_batch_by_item(rows[:30])
    table.delete_batch_by_key([Key("A", "035")])
    remaining = sorted(r["SK"]["S"] for r in client.records("rows"))
    assert remaining == [f"{i:03d}" for i in range(30, 40) if i != 35]


def test_bad_entry_fails_the_whole_batch_before_any_request() -> None:
    client = FakeDynamoDBClient()
    table = Table.for_model(ROWS, client=client)
    rows = _rows(30)

    with pytest.raises(EncodingError):
        table.put_batch([*rows, Row(pk=None, sk="x")])  # type: ignore[arg-type]
    with pytest.raises(UsageError):
        table.get_batch_by_key([Key("A", "000"), Key("A")])
    with pytest.raises(UsageError):
        table.delete_batch_by_key([("A", "000"), ("A", "001", "extra")])
    assert client.calls == []


def test_batch_request_shape() -> None:
    client = FakeDynamoDBClient()
    client.expect(
        "batch_get_item",
        {
            "RequestItems": {
                "rows": {
                    "Keys": [{"PK": {"S": "A"}, "SK": {"S": "000"}}],
                    "ConsistentRead": True,
                }
            },
            "ReturnConsumedCapacity": "INDEXES",
        },
        response={
            "Responses": {"rows": [{"PK": {"S": "A"}, "SK": {"S": "000"}, "n": {"N": "0"}}]},
            "UnprocessedKeys": {},
        },
    )
    client.expect(
        "batch_write_item",
        {"RequestItems": {"rows": [{"DeleteRequest": {"Key": {"PK": {"S": "A"}, "SK": {"S": "000"}}}}]}},
        response={"UnprocessedItems": {}},
    )
    client.expect("batch_write_item", ANY, response={})

    table = Table.for_model(ROWS, client=client)
    assert table.get_batch_by_key([("A", "000")], consistent_read=True) == [Row(pk="A", sk="000")]
    table.delete_batch_by_key([Key("A", "000")])
    table.put_batch([Row(pk="A", sk="001")])
    client.assert_no_pending()
