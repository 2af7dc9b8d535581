from __future__ import annotations

import asyncio
import re
import threading
import zlib
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from botocore.exceptions import ClientError


class _AnySentinel:
    def __repr__(self) -> str:  # pragma: no cover
        return "ANY"


ANY: Any = _AnySentinel()


def _assert_match(expected: Any, actual: Any, *, path: str) -> None:
    if expected is ANY:
        return

    if isinstance(expected, dict):
        if not isinstance(actual, dict):
            raise AssertionError(f"{path}: expected dict, got {type(actual).__name__}")
        for k, v in expected.items():
            if k not in actual:
                raise AssertionError(f"{path}: missing key {k!r}")
            _assert_match(v, actual[k], path=f"{path}.{k}")
        return

    if isinstance(expected, list):
        if not isinstance(actual, list):
            raise AssertionError(f"{path}: expected list, got {type(actual).__name__}")
        if len(expected) != len(actual):
            raise AssertionError(f"{path}: expected {len(expected)} items, got {len(actual)}")
        for i, (e, a) in enumerate(zip(expected, actual, strict=True)):
            _assert_match(e, a, path=f"{path}[{i}]")
        return

    if expected != actual:
        raise AssertionError(f"{path}: expected {expected!r}, got {actual!r}")


@dataclass(frozen=True)
class ExpectedCall:
    method: str
    expected: Mapping[str, Any] | Callable[[Mapping[str, Any]], None] | None = None
    response: Mapping[str, Any] | None = None
    error: Exception | None = None


class FakeDynamoDBClient:
    """Replays scripted responses and checks each request against an expectation.

    Calls are matched in the order they were expected; requests issued concurrently (batch
    chunks) should use ``ANY`` or a callable expectation.
    """

    def __init__(self) -> None:
        self._expected: list[ExpectedCall] = []
        self._lock = threading.Lock()
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def expect(
        self,
        method: str,
        expected: Mapping[str, Any] | Callable[[Mapping[str, Any]], None] | None = None,
        *,
        response: Mapping[str, Any] | None = None,
        error: Exception | None = None,
    ) -> None:
        self._expected.append(ExpectedCall(method=method, expected=expected, response=response, error=error))

    def assert_no_pending(self) -> None:
        if self._expected:
            raise AssertionError(f"pending expected calls: {self._expected!r}")

    def _handle(self, method: str, req: dict[str, Any]) -> Mapping[str, Any]:
        with self._lock:
            self.calls.append((method, dict(req)))
            if not self._expected:
                raise AssertionError(f"unexpected call: {method}")
            call = self._expected.pop(0)

        if call.method != method:
            raise AssertionError(f"expected {call.method}, got {method}")

        if callable(call.expected):
            call.expected(req)
        elif call.expected is not None:
            _assert_match(dict(call.expected), req, path=method)

        if call.error is not None:
            raise call.error

        return dict(call.response or {})

    def put_item(self, **kwargs: Any) -> Mapping[str, Any]:
        return self._handle("put_item", kwargs)

    def get_item(self, **kwargs: Any) -> Mapping[str, Any]:
        return self._handle("get_item", kwargs)

    def delete_item(self, **kwargs: Any) -> Mapping[str, Any]:
        return self._handle("delete_item", kwargs)

    def query(self, **kwargs: Any) -> Mapping[str, Any]:
        return self._handle("query", kwargs)

    def scan(self, **kwargs: Any) -> Mapping[str, Any]:
        return self._handle("scan", kwargs)

    def batch_get_item(self, **kwargs: Any) -> Mapping[str, Any]:
        return self._handle("batch_get_item", kwargs)

    def batch_write_item(self, **kwargs: Any) -> Mapping[str, Any]:
        return self._handle("batch_write_item", kwargs)


def client_error(code: str, message: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


type Record = dict[str, dict[str, Any]]
type Predicate = Callable[[Record], bool]


def _scalar(av: Mapping[str, Any] | None) -> tuple[str, Any] | None:
    if not av or len(av) != 1:
        return None
    ((kind, value),) = av.items()
    if kind == "N":
        return kind, Decimal(str(value))
    if kind == "S":
        return kind, value
    if kind == "B":
        return kind, bytes(value)
    return None


def _compare(op: str, actual: Mapping[str, Any] | None, expected: Mapping[str, Any]) -> bool:
    if actual is None:
        return op == "<>"
    left, right = _scalar(actual), _scalar(expected)
    if op in {"=", "<>"}:
        same = left == right if left is not None and right is not None else dict(actual) == dict(expected)
        return same if op == "=" else not same
    if left is None or right is None or left[0] != right[0]:
        return False
    a, b = left[1], right[1]
    return {"<": a < b, "<=": a <= b, ">": a > b, ">=": a >= b}[op]


def _begins_with(actual: Mapping[str, Any] | None, prefix: Mapping[str, Any]) -> bool:
    left, right = _scalar(actual), _scalar(prefix)
    if left is None or right is None or left[0] != right[0] or left[0] == "N":
        return False
    return bool(left[1].startswith(right[1]))


def _contains(actual: Mapping[str, Any] | None, operand: Mapping[str, Any]) -> bool:
    if not actual:
        return False
    ((kind, value),) = actual.items()
    if kind == "S":
        right = _scalar(operand)
        return right is not None and right[0] == "S" and right[1] in value
    if kind in {"SS", "NS", "BS"}:
        ((_, member),) = operand.items()
        return member in value
    if kind == "L":
        return dict(operand) in [dict(v) for v in value]
    return False


_TOKEN = re.compile(r"\s*(<>|<=|>=|[=<>(),]|[#:][A-Za-z0-9_]+|[A-Za-z_][A-Za-z0-9_]*)")
_COMPARATORS = {"=", "<>", "<", "<=", ">", ">="}


class _ExpressionParser:
    """Parses the condition syntax the table layer emits into a record predicate."""

    def __init__(self, expr: str, names: Mapping[str, str], values: Mapping[str, Any]) -> None:
        self._tokens = self._tokenize(expr)
        self._pos = 0
        self._names = names
        self._values = values

    @staticmethod
    def _tokenize(expr: str) -> list[str]:
        text = expr.strip()
        out: list[str] = []
        pos = 0
        while pos < len(text):
            m = _TOKEN.match(text, pos)
            if m is None:
                raise ValueError(f"cannot parse expression at {text[pos:]!r}")
            out.append(m.group(1))
            pos = m.end()
        return out

    def parse(self) -> Predicate:
        pred = self._or()
        if self._pos != len(self._tokens):
            raise ValueError(f"unexpected token {self._tokens[self._pos]!r}")
        return pred

    def _peek(self) -> str:
        return self._tokens[self._pos] if self._pos < len(self._tokens) else ""

    def _take(self, expected: str | None = None) -> str:
        tok = self._peek()
        if not tok or (expected is not None and tok.upper() != expected):
            raise ValueError(f"expected {expected or 'a token'}, got {tok!r}")
        self._pos += 1
        return tok

    def _name(self) -> str:
        tok = self._take()
        if not tok.startswith("#"):
            raise ValueError(f"expected attribute name placeholder, got {tok!r}")
        return self._names[tok]

    def _value(self) -> Mapping[str, Any]:
        tok = self._take()
        if not tok.startswith(":"):
            raise ValueError(f"expected value placeholder, got {tok!r}")
        return self._values[tok]

    def _or(self) -> Predicate:
        preds = [self._and()]
        while self._peek().upper() == "OR":
            self._take()
            preds.append(self._and())
        if len(preds) == 1:
            return preds[0]
        return lambda r: any(p(r) for p in preds)

    def _and(self) -> Predicate:
        preds = [self._factor()]
        while self._peek().upper() == "AND":
            self._take()
            preds.append(self._factor())
        if len(preds) == 1:
            return preds[0]
        return lambda r: all(p(r) for p in preds)

    def _factor(self) -> Predicate:
        tok = self._peek()
        if tok == "(":
            self._take()
            inner = self._or()
            self._take(")")
            return inner

        func = tok.lower()
        if func in {"begins_with", "contains", "attribute_exists", "attribute_not_exists"}:
            self._take()
            self._take("(")
            name = self._name()
            if func in {"attribute_exists", "attribute_not_exists"}:
                self._take(")")
                present = func == "attribute_exists"
                return lambda r: (name in r) == present
            self._take(",")
            operand = self._value()
            self._take(")")
            if func == "begins_with":
                return lambda r: _begins_with(r.get(name), operand)
            return lambda r: _contains(r.get(name), operand)

        name = self._name()
        op = self._take().upper()
        if op == "BETWEEN":
            low = self._value()
            self._take("AND")
            high = self._value()
            return lambda r: _compare(">=", r.get(name), low) and _compare("<=", r.get(name), high)
        if op == "IN":
            self._take("(")
            options = [self._value()]
            while self._peek() == ",":
                self._take()
                options.append(self._value())
            self._take(")")
            return lambda r: any(_compare("=", r.get(name), o) for o in options)
        if op in _COMPARATORS:
            operand = self._value()
            return lambda r: _compare(op, r.get(name), operand)
        raise ValueError(f"unsupported operator {op!r}")


def _order_token(record: Mapping[str, Any], attributes: tuple[str, ...]) -> tuple[Any, ...]:
    out: list[Any] = []
    for attribute in attributes:
        scalar = _scalar(record.get(attribute))
        out.append(scalar if scalar is not None else ("", ""))
    return tuple(out)


@dataclass
class _TableState:
    partition: str
    sort: str | None
    indexes: dict[str, tuple[str, str | None]]
    records: dict[tuple[Any, ...], Record] = field(default_factory=dict)

    @property
    def key_attributes(self) -> tuple[str, ...]:
        return (self.partition,) if self.sort is None else (self.partition, self.sort)

    def key_of(self, record: Mapping[str, Any]) -> tuple[Any, ...]:
        for attribute in self.key_attributes:
            if _scalar(record.get(attribute)) is None:
                raise ValueError(f"missing or invalid key attribute {attribute}")
        return _order_token(record, self.key_attributes)

    def keyspace(self, index_name: str | None) -> tuple[str, str | None]:
        if index_name is None:
            return self.partition, self.sort
        if index_name not in self.indexes:
            raise KeyError(index_name)
        return self.indexes[index_name]


class InMemoryDynamoDBClient:
    """A functional stand-in for a blocking ``dynamodb`` client.

    Tables are registered with ``add_table``. Key conditions, filter expressions,
    ``Limit``/``ExclusiveStartKey`` paging, parallel scan segments and consumed capacity
    behave like the service. ``unprocessed`` decides which batch entries are left
    unprocessed, so partial failure can be exercised.
    """

    def __init__(self, *, unprocessed: Callable[[str, Mapping[str, Any]], bool] | None = None) -> None:
        self._tables: dict[str, _TableState] = {}
        self._lock = threading.RLock()
        self.unprocessed = unprocessed
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def add_table(
        self,
        table_name: str,
        *,
        partition_attribute: str,
        sort_attribute: str | None = None,
        indexes: Mapping[str, tuple[str, str | None]] | None = None,
    ) -> None:
        self._tables[table_name] = _TableState(
            partition=partition_attribute,
            sort=sort_attribute,
            indexes=dict(indexes or {}),
        )

    def records(self, table_name: str) -> list[Record]:
        with self._lock:
            return [dict(r) for r in self._table("scan", table_name).records.values()]

    def calls_to(self, method: str) -> list[dict[str, Any]]:
        return [req for name, req in self.calls if name == method]

    def _record_call(self, method: str, req: dict[str, Any]) -> None:
        self.calls.append((method, dict(req)))

    def _table(self, operation: str, table_name: str) -> _TableState:
        state = self._tables.get(table_name)
        if state is None:
            raise client_error("ResourceNotFoundException", f"table not found: {table_name}", operation)
        return state

    @staticmethod
    def _capacity(
        table_name: str,
        units: float,
        *,
        write: bool,
        index_name: str | None = None,
        mode: str | None = "INDEXES",
    ) -> dict[str, Any] | None:
        if mode in (None, "NONE"):
            return None
        split = {"CapacityUnits": units, ("WriteCapacityUnits" if write else "ReadCapacityUnits"): units}
        out: dict[str, Any] = {"TableName": table_name, **split}
        if mode == "INDEXES":
            if index_name is None:
                out["Table"] = dict(split)
            else:
                out["Table"] = {"CapacityUnits": 0.0}
                out["GlobalSecondaryIndexes"] = {index_name: dict(split)}
        return out

    def get_item(self, **kwargs: Any) -> dict[str, Any]:
        with self._lock:
            self._record_call("get_item", kwargs)
            state = self._table("GetItem", kwargs["TableName"])
            found = state.records.get(state.key_of(kwargs["Key"]))
            units = 1.0 if kwargs.get("ConsistentRead") else 0.5
            out: dict[str, Any] = {}
            if found is not None:
                out["Item"] = dict(found)
            capacity = self._capacity(
                kwargs["TableName"], units, write=False, mode=kwargs.get("ReturnConsumedCapacity")
            )
            if capacity:
                out["ConsumedCapacity"] = capacity
            return out

    def _write(self, operation: str, kwargs: dict[str, Any], new: Record | None, key: Mapping[str, Any]) -> dict[str, Any]:
        state = self._table(operation, kwargs["TableName"])
        k = state.key_of(key)
        old = state.records.pop(k, None)
        if new is not None:
            state.records[k] = dict(new)
        out: dict[str, Any] = {}
        if old is not None and kwargs.get("ReturnValues") == "ALL_OLD":
            out["Attributes"] = old
        capacity = self._capacity(kwargs["TableName"], 1.0, write=True, mode=kwargs.get("ReturnConsumedCapacity"))
        if capacity:
            out["ConsumedCapacity"] = capacity
        return out

    def put_item(self, **kwargs: Any) -> dict[str, Any]:
        with self._lock:
            self._record_call("put_item", kwargs)
            return self._write("PutItem", kwargs, kwargs["Item"], kwargs["Item"])

    def delete_item(self, **kwargs: Any) -> dict[str, Any]:
        with self._lock:
            self._record_call("delete_item", kwargs)
            return self._write("DeleteItem", kwargs, None, kwargs["Key"])

    def batch_get_item(self, **kwargs: Any) -> dict[str, Any]:
        with self._lock:
            self._record_call("batch_get_item", kwargs)
            responses: dict[str, list[Record]] = {}
            unprocessed: dict[str, Any] = {}
            capacity: list[dict[str, Any]] = []
            for table_name, spec in kwargs["RequestItems"].items():
                state = self._table("BatchGetItem", table_name)
                keys = spec.get("Keys") or []
                if len(keys) > 100:
                    raise client_error("ValidationException", "too many items requested", "BatchGetItem")
                found: list[Record] = []
                skipped: list[Record] = []
                for key in keys:
                    if self.unprocessed is not None and self.unprocessed(table_name, key):
                        skipped.append(dict(key))
                        continue
                    record = state.records.get(state.key_of(key))
                    if record is not None:
                        found.append(dict(record))
                responses[table_name] = found
                if skipped:
                    unprocessed[table_name] = {**spec, "Keys": skipped}
                units = 0.5 * max(1, len(keys) - len(skipped))
                cap = self._capacity(table_name, units, write=False, mode=kwargs.get("ReturnConsumedCapacity"))
                if cap:
                    capacity.append(cap)
            out: dict[str, Any] = {"Responses": responses, "UnprocessedKeys": unprocessed}
            if capacity:
                out["ConsumedCapacity"] = capacity
            return out

    def batch_write_item(self, **kwargs: Any) -> dict[str, Any]:
        with self._lock:
            self._record_call("batch_write_item", kwargs)
            unprocessed: dict[str, list[dict[str, Any]]] = {}
            capacity: list[dict[str, Any]] = []
            for table_name, requests in kwargs["RequestItems"].items():
                state = self._table("BatchWriteItem", table_name)
                if len(requests) > 25:
                    raise client_error("ValidationException", "too many items requested", "BatchWriteItem")
                skipped: list[dict[str, Any]] = []
                for request in requests:
                    if "PutRequest" in request:
                        record = request["PutRequest"]["Item"]
                        if self.unprocessed is not None and self.unprocessed(table_name, record):
                            skipped.append(request)
                            continue
                        state.records[state.key_of(record)] = dict(record)
                    else:
                        key = request["DeleteRequest"]["Key"]
                        if self.unprocessed is not None and self.unprocessed(table_name, key):
                            skipped.append(request)
                            continue
                        state.records.pop(state.key_of(key), None)
                if skipped:
                    unprocessed[table_name] = skipped
                units = 1.0 * max(1, len(requests) - len(skipped))
                cap = self._capacity(table_name, units, write=True, mode=kwargs.get("ReturnConsumedCapacity"))
                if cap:
                    capacity.append(cap)
            out: dict[str, Any] = {"UnprocessedItems": unprocessed}
            if capacity:
                out["ConsumedCapacity"] = capacity
            return out

    def _read(self, operation: str, kwargs: dict[str, Any], key_condition: Predicate | None) -> dict[str, Any]:
        table_name = kwargs["TableName"]
        state = self._table(operation, table_name)
        index_name = kwargs.get("IndexName")
        try:
            partition, sort = state.keyspace(index_name)
        except KeyError:
            raise client_error("ValidationException", f"unknown index: {index_name}", operation) from None

        names = kwargs.get("ExpressionAttributeNames") or {}
        values = kwargs.get("ExpressionAttributeValues") or {}
        order = tuple(a for a in (partition, sort) if a is not None)
        order += tuple(a for a in state.key_attributes if a not in order)

        candidates = [r for r in state.records.values() if all(_scalar(r.get(a)) is not None for a in order)]
        if key_condition is not None:
            candidates = [r for r in candidates if key_condition(r)]
        if operation == "Scan" and int(kwargs.get("TotalSegments", 1)) > 1:
            total = int(kwargs["TotalSegments"])
            segment = int(kwargs["Segment"])
            candidates = [
                r for r in candidates if zlib.crc32(repr(_scalar(r.get(state.partition))).encode()) % total == segment
            ]

        forward = bool(kwargs.get("ScanIndexForward", True))
        candidates.sort(key=lambda r: _order_token(r, order), reverse=not forward)

        start = kwargs.get("ExclusiveStartKey")
        if start:
            boundary = _order_token(start, order)
            if forward:
                candidates = [r for r in candidates if _order_token(r, order) > boundary]
            else:
                candidates = [r for r in candidates if _order_token(r, order) < boundary]

        limit = kwargs.get("Limit")
        evaluated = candidates if limit is None else candidates[: int(limit)]
        more = len(evaluated) < len(candidates)

        row_filter = None
        if kwargs.get("FilterExpression"):
            row_filter = _ExpressionParser(kwargs["FilterExpression"], names, values).parse()
        items = [dict(r) for r in evaluated if row_filter is None or row_filter(r)]

        out: dict[str, Any] = {"Items": items, "Count": len(items), "ScannedCount": len(evaluated)}
        if more and evaluated:
            out["LastEvaluatedKey"] = {a: evaluated[-1][a] for a in order}
        units = 0.5 * max(1, len(evaluated))
        capacity = self._capacity(
            table_name, units, write=False, index_name=index_name, mode=kwargs.get("ReturnConsumedCapacity")
        )
        if capacity:
            out["ConsumedCapacity"] = capacity
        return out

    def query(self, **kwargs: Any) -> dict[str, Any]:
        with self._lock:
            self._record_call("query", kwargs)
            key_condition = _ExpressionParser(
                kwargs["KeyConditionExpression"],
                kwargs.get("ExpressionAttributeNames") or {},
                kwargs.get("ExpressionAttributeValues") or {},
            ).parse()
            return self._read("Query", kwargs, key_condition)

    def scan(self, **kwargs: Any) -> dict[str, Any]:
        with self._lock:
            self._record_call("scan", kwargs)
            return self._read("Scan", kwargs, None)


class AsyncClientAdapter:
    """Coroutine facade over a blocking client, shaped like an aiobotocore client.

    ``delay`` suspends every call before it runs, so concurrent requests interleave.
    """

    def __init__(self, client: Any, *, delay: float = 0.0) -> None:
        self._client = client
        self._delay = delay

    async def __aenter__(self) -> AsyncClientAdapter:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        return None

    def __getattr__(self, name: str) -> Any:
        method = getattr(self._client, name)
        if name.startswith("_") or not callable(method):
            return method

        async def call(**kwargs: Any) -> Any:
            if self._delay:
                await asyncio.sleep(self._delay)
            return method(**kwargs)

        return call
