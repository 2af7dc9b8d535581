from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime

import pytest

from ctdynamo_py import (
    FilterCondition,
    FilterGroup,
    IsoDatetimeConverter,
    Key,
    ModelDefinition,
    SortKeyCondition,
    Table,
    UsageError,
    dynamo_field,
    gsi,
)
from ctdynamo_py.testkit import in_memory_client


@dataclass(frozen=True)
class Event:
    pk: str = dynamo_field(name="PK", roles=["pk"])
    sk: str = dynamo_field(name="SK", roles=["sk"])
    n: int = dynamo_field(default=0)
    owner: str | None = dynamo_field(default=None)
    created: str | None = dynamo_field(default=None)


@dataclass(frozen=True)
class Flag:
    name: str = dynamo_field(roles=["pk"])


@dataclass(frozen=True)
class Stamp:
    pk: str = dynamo_field(name="PK", roles=["pk"])
    at: datetime = dynamo_field(name="SK", roles=["sk"], converter=IsoDatetimeConverter())


EVENTS = ModelDefinition.from_dataclass(
    Event, table_name="events", indexes=[gsi("by-owner", partition="owner", sort="created")]
)
FLAGS = ModelDefinition.from_dataclass(Flag, table_name="flags")
STAMPS = ModelDefinition.from_dataclass(Stamp, table_name="stamps")


def _event(i: int) -> Event:
    return Event(
        pk="A",
        sk=f"{i:03d}",
        n=i,
        owner="ann" if i % 2 == 0 else "bob",
        created=f"2024-01-{i + 1:02d}",
    )


@pytest.fixture()
def client():
    client = in_memory_client(EVENTS, FLAGS)
    table = Table.for_model(EVENTS, client=client)
    table.put_batch([_event(i) for i in range(12)])
    table.put_item(Event(pk="B", sk="000"))
    return client


@pytest.fixture()
def table(client):
    return Table.for_model(EVENTS, client=client)


def _sks(events) -> list[str]:
    return [e.sk for e in events]


def test_limit_and_resume_visit_every_row_once(table, client) -> None:
    seen: list[Event] = []
    cursor = None
    pages = 0
    while True:
        result = table.query("A").limit(5).start_key(cursor).invoke()
        page = list(result)
        assert len(page) <= 5
        assert result.items_returned == len(page)
        seen.extend(page)
        pages += 1
        cursor = result.exclusive_start
        if cursor is None:
            break

    assert pages == 3
    assert seen == [_event(i) for i in range(12)]
    assert all(req["Limit"] == 5 for req in client.calls_to("query"))


def test_overshooting_page_is_cut_and_cursor_points_at_last_kept_item(table, client) -> None:
    result = table.query("A").page_size(4).limit(6).invoke()
    items = list(result)

    assert _sks(items) == ["000", "001", "002", "003", "004", "005"]
    assert result.items_returned == 6
    assert result.items_found == 8
    assert result.items_scanned == 8
    assert len(client.calls_to("query")) == 2
    assert result.exclusive_start == {"PK": {"S": "A"}, "SK": {"S": "005"}}

    rest = list(table.query("A").start_key(result.exclusive_start).invoke())
    assert _sks(rest) == [f"{i:03d}" for i in range(6, 12)]


def _stamps(*sort_values: str):
    client = in_memory_client(STAMPS)
    for value in sort_values:
        client.put_item(TableName="stamps", Item={"PK": {"S": "A"}, "SK": {"S": value}})
    return client


def test_cut_page_cursor_keeps_the_stored_key_text() -> None:
    client = _stamps(*(f"2024-01-{day:02d}T00:00:00Z" for day in range(1, 6)))
    table = Table.for_model(STAMPS, client=client)

    first = table.query("A").limit(2).page_size(3).invoke()
    days = [s.at.day for s in first]
    assert first.exclusive_start == {"PK": {"S": "A"}, "SK": {"S": "2024-01-02T00:00:00Z"}}

    rest = table.query("A").start_key(first.exclusive_start).invoke()
    days.extend(s.at.day for s in rest)
    assert days == [1, 2, 3, 4, 5]


def test_records_past_the_cut_are_not_decoded() -> None:
    client = _stamps("2024-01-01T00:00:00Z", "2024-01-02T00:00:00Z", "not-a-date")
    table = Table.for_model(STAMPS, client=client)

    result = table.query("A").limit(2).page_size(3).invoke()
    assert [s.at for s in result] == [
        datetime(2024, 1, 1, tzinfo=UTC),
        datetime(2024, 1, 2, tzinfo=UTC),
    ]
    assert result.items_found == 3
    assert result.exclusive_start == {"PK": {"S": "A"}, "SK": {"S": "2024-01-02T00:00:00Z"}}


def test_limit_zero_makes_no_request_and_keeps_the_start_key(table, client) -> None:
    start = {"PK": {"S": "A"}, "SK": {"S": "003"}}
    calls_before = len(client.calls_to("query"))

    result = table.query("A").limit(0).start_key(start).invoke()
    assert list(result) == []
    assert result.exclusive_start == start
    assert len(client.calls_to("query")) == calls_before


def test_exhausted_read_has_no_cursor(table) -> None:
    result = table.query("A").invoke()
    assert len(list(result)) == 12
    assert result.exclusive_start is None
    assert result.next_token() is None
    assert result.partition_value == "A"
    assert not result.has_next()


def test_exclusive_start_is_unavailable_mid_read(table) -> None:
    result = table.query("A").page_size(5).invoke()
    with pytest.raises(UsageError):
        _ = result.exclusive_start
    next(iter(result))
    with pytest.raises(UsageError):
        _ = result.exclusive_start
    assert len(list(result)) == 11


def test_sort_key_predicates(table) -> None:
    assert _sks(table.query("A").sort_between("003", "005").invoke()) == ["003", "004", "005"]
    assert _sks(table.query("A").sort_above("009").invoke()) == ["009", "010", "011"]
    assert _sks(table.query("A").sort_above("009", inclusive=False).invoke()) == ["010", "011"]
    assert _sks(table.query("A").sort_below("001").invoke()) == ["000", "001"]
    assert _sks(table.query("A").sort_below("001", inclusive=False).invoke()) == ["000"]
    assert len(list(table.query("A").sort_prefix("00").invoke())) == 10
    assert _sks(table.query("A").sort(SortKeyCondition.eq("007")).invoke()) == ["007"]
    assert _sks(table.query("A").sort_above(Key("A", "010")).invoke()) == ["010", "011"]
    assert list(table.query("nobody").invoke()) == []


def test_reverse_order_with_resume(table) -> None:
    first = table.query("A").scan_forward(False).limit(3).invoke()
    assert _sks(first) == ["011", "010", "009"]

    second = table.query("A").scan_forward(False).limit(3).start_key(first.exclusive_start).invoke()
    assert _sks(second) == ["008", "007", "006"]


def test_scan_with_limit_returns_exactly_limit_and_cursor_waits_for_exhaustion(table) -> None:
    result = table.scan().limit(5).invoke()
    it = iter(result)
    for _ in range(4):
        next(it)
    with pytest.raises(UsageError):
        _ = result.exclusive_start

    assert len(list(it)) == 1
    assert result.items_returned == 5
    assert result.items_found >= 5
    assert result.exclusive_start is not None


def test_second_sort_predicate_is_rejected_immediately(table) -> None:
    query = table.query("A").sort_between("001", "004")
    with pytest.raises(UsageError):
        query.sort_above("002")
    with pytest.raises(UsageError):
        table.query("A").sort_above("001").sort_below("005")


def test_sort_predicate_errors(client) -> None:
    flags = Table.for_model(FLAGS, client=client)
    with pytest.raises(UsageError):
        flags.query("x").sort_prefix("a")

    events = Table.for_model(EVENTS, client=client)
    with pytest.raises(UsageError):
        events.query("A").sort_above(Key("B", "001"))
    with pytest.raises(UsageError):
        events.query("A").sort_above(Key("A"))
    with pytest.raises(UsageError):
        events.query(None)
    with pytest.raises(UsageError):
        events.query("A").limit(-1)
    with pytest.raises(UsageError):
        events.query("A").page_size(0)


def test_filter_counts_scanned_separately_from_found(table) -> None:
    result = table.query("A").filter(FilterCondition.gte("n", 6)).invoke()
    assert _sks(result) == [f"{i:03d}" for i in range(6, 12)]
    assert result.items_found == 6
    assert result.items_scanned == 12


def test_filter_groups_reuse_attribute_placeholders(table) -> None:
    query = table.query("A").filter(
        FilterGroup.or_(FilterCondition.eq("n", 1), FilterCondition.in_("n", [3, 5]))
    )
    request = query.build_request()
    assert request["FilterExpression"] == "(#f1 = :f1 OR #f1 IN (:f2, :f3))"
    assert request["ExpressionAttributeNames"] == {"#p": "PK", "#f1": "n"}
    assert request["ExpressionAttributeValues"][":f3"] == {"N": "5"}
    assert _sks(query.invoke()) == ["001", "003", "005"]

    assert _sks(table.query("A").filter(FilterCondition.begins_with("created", "2024-01-1")).invoke()) == [
        "009",
        "010",
        "011",
    ]
    assert len(list(table.scan().filter(FilterCondition.not_exists("owner")).invoke())) == 1


def test_invalid_filters_are_usage_errors(table) -> None:
    with pytest.raises(UsageError):
        table.query("A").filter(FilterCondition("n", "bogus", (1,))).build_request()
    with pytest.raises(UsageError):
        table.query("A").filter(FilterCondition.in_("n", [])).build_request()
    with pytest.raises(UsageError):
        table.query("A").filter(FilterCondition("n", "between", (1,))).build_request()


def test_tokens_round_trip_and_are_checked(table) -> None:
    first = table.query("A").limit(5).invoke()
    list(first)
    token = first.next_token()
    assert token

    rest = list(table.query("A").start_token(token).invoke())
    assert _sks(rest) == [f"{i:03d}" for i in range(5, 12)]

    with pytest.raises(UsageError):
        table.query("A").scan_forward(False).start_token(token)
    with pytest.raises(UsageError):
        table.index("by-owner").query("ann").start_token(token)
    with pytest.raises(UsageError):
        table.query("A").start_token("not a cursor")

    owner_page = table.index("by-owner").query("ann").limit(1).invoke()
    list(owner_page)
    with pytest.raises(UsageError):
        table.query("A").start_token(owner_page.next_token())


def test_index_reads_carry_base_table_keys_and_index_capacity(table) -> None:
    by_owner = table.index("by-owner")

    exact = by_owner.query("ann").limit(2).invoke()
    assert [e.n for e in exact] == [0, 2]
    assert set(exact.exclusive_start) == {"owner", "created", "PK", "SK"}

    cut = by_owner.query("ann").page_size(3).limit(2).invoke()
    assert [e.n for e in cut] == [0, 2]
    assert cut.exclusive_start == {
        "owner": {"S": "ann"},
        "created": {"S": "2024-01-03"},
        "PK": {"S": "A"},
        "SK": {"S": "002"},
    }
    resumed = by_owner.query("ann").start_key(cut.exclusive_start).invoke()
    assert [e.n for e in resumed] == [4, 6, 8, 10]

    assert cut.capacity.indexes["by-owner"].read > 0
    assert cut.capacity.table_units == 0.0


def test_index_query_request_shape(table) -> None:
    request = (
        table.index("by-owner")
        .query("ann")
        .sort_prefix("2024-01")
        .scan_forward(False)
        .page_size(3)
        .consistent_read()
        .build_request()
    )
    assert request == {
        "TableName": "events",
        "ConsistentRead": True,
        "ReturnConsumedCapacity": "INDEXES",
        "IndexName": "by-owner",
        "Limit": 3,
        "KeyConditionExpression": "#p = :p AND begins_with(#s, :s1)",
        "ScanIndexForward": False,
        "ExpressionAttributeNames": {"#p": "owner", "#s": "created"},
        "ExpressionAttributeValues": {":p": {"S": "ann"}, ":s1": {"S": "2024-01"}},
    }


def test_scan_segments(table) -> None:
    assert table.scan(1, 4).build_request() == {
        "TableName": "events",
        "ConsistentRead": False,
        "ReturnConsumedCapacity": "INDEXES",
        "Segment": 1,
        "TotalSegments": 4,
    }
    assert "Segment" not in table.scan().build_request()

    with pytest.raises(UsageError):
        table.scan(4, 4)
    with pytest.raises(UsageError):
        table.scan(0, 0)

    seen = []
    for segment in range(3):
        result = table.scan(segment, 3).invoke()
        assert result.segment == segment
        seen.extend((e.pk, e.sk) for e in result)
    assert sorted(seen) == sorted([("A", f"{i:03d}") for i in range(12)] + [("B", "000")])


def test_index_scan_skips_rows_without_index_keys(table) -> None:
    assert len(list(table.index("by-owner").scan().invoke())) == 12
    assert len(list(table.scan().invoke())) == 13


def test_results_reject_the_wrong_iteration_mode(table) -> None:
    blocking = table.query("A").invoke()
    with pytest.raises(UsageError):
        blocking.__aiter__()
    list(blocking)

    async def run() -> list[Event]:
        result = await table.query("A").invoke_async()
        with pytest.raises(UsageError):
            iter(result)
        with pytest.raises(UsageError):
            result.has_next()
        return [e async for e in result]

    assert len(asyncio.run(run())) == 12
