from __future__ import annotations

import base64
import json
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal, Self

import structlog

from .codec import AttributeValue, ItemCodec, WireRecord
from .errors import UsageError
from .key import Key

if TYPE_CHECKING:
    from .index import Index
    from .paging import QueryResult, ScanResult

logger = structlog.get_logger()


@dataclass(frozen=True)
class SortKeyCondition:
    op: str
    values: tuple[Any, ...]

    @staticmethod
    def eq(value: Any) -> SortKeyCondition:
        return SortKeyCondition(op="=", values=(value,))

    @staticmethod
    def lt(value: Any) -> SortKeyCondition:
        return SortKeyCondition(op="<", values=(value,))

    @staticmethod
    def lte(value: Any) -> SortKeyCondition:
        return SortKeyCondition(op="<=", values=(value,))

    @staticmethod
    def gt(value: Any) -> SortKeyCondition:
        return SortKeyCondition(op=">", values=(value,))

    @staticmethod
    def gte(value: Any) -> SortKeyCondition:
        return SortKeyCondition(op=">=", values=(value,))

    @staticmethod
    def between(low: Any, high: Any) -> SortKeyCondition:
        return SortKeyCondition(op="between", values=(low, high))

    @staticmethod
    def begins_with(prefix: Any) -> SortKeyCondition:
        return SortKeyCondition(op="begins_with", values=(prefix,))


type LogicalOp = Literal["AND", "OR"]


@dataclass(frozen=True)
class FilterCondition:
    """One predicate on a wire attribute name."""

    attribute: str
    op: str
    values: tuple[Any, ...] = ()

    @staticmethod
    def eq(attribute: str, value: Any) -> FilterCondition:
        return FilterCondition(attribute=attribute, op="=", values=(value,))

    @staticmethod
    def ne(attribute: str, value: Any) -> FilterCondition:
        return FilterCondition(attribute=attribute, op="<>", values=(value,))

    @staticmethod
    def lt(attribute: str, value: Any) -> FilterCondition:
        return FilterCondition(attribute=attribute, op="<", values=(value,))

    @staticmethod
    def lte(attribute: str, value: Any) -> FilterCondition:
        return FilterCondition(attribute=attribute, op="<=", values=(value,))

    @staticmethod
    def gt(attribute: str, value: Any) -> FilterCondition:
        return FilterCondition(attribute=attribute, op=">", values=(value,))

    @staticmethod
    def gte(attribute: str, value: Any) -> FilterCondition:
        return FilterCondition(attribute=attribute, op=">=", values=(value,))

    @staticmethod
    def between(attribute: str, low: Any, high: Any) -> FilterCondition:
        return FilterCondition(attribute=attribute, op="between", values=(low, high))

    @staticmethod
    def begins_with(attribute: str, prefix: Any) -> FilterCondition:
        return FilterCondition(attribute=attribute, op="begins_with", values=(prefix,))

    @staticmethod
    def contains(attribute: str, value: Any) -> FilterCondition:
        return FilterCondition(attribute=attribute, op="contains", values=(value,))

    @staticmethod
    def in_(attribute: str, values: Sequence[Any]) -> FilterCondition:
        return FilterCondition(attribute=attribute, op="in", values=(list(values),))

    @staticmethod
    def exists(attribute: str) -> FilterCondition:
        return FilterCondition(attribute=attribute, op="exists")

    @staticmethod
    def not_exists(attribute: str) -> FilterCondition:
        return FilterCondition(attribute=attribute, op="not_exists")


@dataclass(frozen=True)
class FilterGroup:
    op: LogicalOp
    filters: tuple[FilterExpression, ...]

    @staticmethod
    def and_(*filters: FilterExpression) -> FilterGroup:
        return FilterGroup(op="AND", filters=tuple(filters))

    @staticmethod
    def or_(*filters: FilterExpression) -> FilterGroup:
        return FilterGroup(op="OR", filters=tuple(filters))


type FilterExpression = FilterCondition | FilterGroup

_COMPARISONS = {"=": "=", "<>": "<>", "!=": "<>", "<": "<", "<=": "<=", ">": ">", ">=": ">="}
_FUNCTIONS = {"BEGINS_WITH": "begins_with", "CONTAINS": "contains"}
_PRESENCE = {"EXISTS": "attribute_exists", "NOT_EXISTS": "attribute_not_exists"}


def build_filter_expression(
    expr: FilterExpression,
    codec: ItemCodec[Any],
    names: dict[str, str],
    values: dict[str, AttributeValue],
) -> str:
    """Renders a filter tree into ``FilterExpression`` syntax, adding its placeholders.

    Values are encoded through the codec for the attribute they are compared against.
    """
    counter = 0

    def name_ref(attribute: str) -> str:
        for ref, existing in names.items():
            if existing == attribute:
                return ref
        ref = f"#f{len(names)}"
        names[ref] = attribute
        return ref

    def value_ref(attribute: str, value: Any) -> str:
        nonlocal counter
        counter += 1
        ref = f":f{counter}"
        values[ref] = codec.encode_attribute(attribute, value)
        return ref

    def expect(node: FilterCondition, count: int) -> None:
        if len(node.values) != count:
            raise UsageError(f"filter {node.op} on {node.attribute} takes {count} value(s)")

    def build(node: FilterExpression) -> str:
        if isinstance(node, FilterGroup):
            parts = [p for p in (build(f) for f in node.filters) if p]
            if not parts:
                return ""
            return "(" + f" {node.op} ".join(parts) + ")"

        if not isinstance(node, FilterCondition):
            raise UsageError("invalid filter expression")

        name = name_ref(node.attribute)
        op = node.op.upper()

        if op in _COMPARISONS:
            expect(node, 1)
            return f"{name} {_COMPARISONS[op]} {value_ref(node.attribute, node.values[0])}"

        if op == "BETWEEN":
            expect(node, 2)
            low = value_ref(node.attribute, node.values[0])
            high = value_ref(node.attribute, node.values[1])
            return f"{name} BETWEEN {low} AND {high}"

        if op == "IN":
            expect(node, 1)
            in_values = node.values[0]
            if isinstance(in_values, (str, bytes, dict)) or not isinstance(in_values, Sequence):
                raise UsageError("IN requires a sequence of values")
            if not in_values or len(in_values) > 100:
                raise UsageError("IN takes between 1 and 100 values")
            refs = [value_ref(node.attribute, v) for v in in_values]
            return f"{name} IN (" + ", ".join(refs) + ")"

        if op in _FUNCTIONS:
            expect(node, 1)
            return f"{_FUNCTIONS[op]}({name}, {value_ref(node.attribute, node.values[0])})"

        if op in _PRESENCE:
            expect(node, 0)
            return f"{_PRESENCE[op]}({name})"

        raise UsageError(f"unsupported filter operator: {node.op}")

    return build(expr)


@dataclass(frozen=True)
class Cursor:
    last_key: WireRecord
    index: str | None = None
    sort: str | None = None


def _one_entry(value: Any) -> tuple[str, Any]:
    if not isinstance(value, dict) or len(value) != 1:
        raise ValueError("attribute value must be a single-key map")
    ((kind, inner),) = value.items()
    return str(kind), inner


def _av_to_json(av: Any) -> dict[str, Any]:
    kind, value = _one_entry(av)
    if kind in {"S", "N", "BOOL", "NULL", "SS", "NS"}:
        return {kind: value}
    if kind == "B":
        return {"B": base64.b64encode(bytes(value)).decode("ascii")}
    if kind == "BS":
        return {"BS": [base64.b64encode(bytes(v)).decode("ascii") for v in value]}
    if kind == "L":
        return {"L": [_av_to_json(v) for v in value]}
    if kind == "M":
        return {"M": {str(k): _av_to_json(value[k]) for k in sorted(value)}}
    raise ValueError(f"unsupported attribute value type: {kind}")


def _av_from_json(enc: Any) -> AttributeValue:
    kind, value = _one_entry(enc)
    if kind in {"S", "N"} and isinstance(value, str):
        return {kind: value}
    if kind == "BOOL" and isinstance(value, bool):
        return {"BOOL": value}
    if kind == "NULL" and value is True:
        return {"NULL": True}
    if kind in {"SS", "NS"} and isinstance(value, list):
        return {kind: [str(v) for v in value]}
    if kind == "B" and isinstance(value, str):
        return {"B": base64.b64decode(value)}
    if kind == "BS" and isinstance(value, list):
        return {"BS": [base64.b64decode(v) for v in value]}
    if kind == "L" and isinstance(value, list):
        return {"L": [_av_from_json(v) for v in value]}
    if kind == "M" and isinstance(value, dict):
        return {"M": {str(k): _av_from_json(value[k]) for k in sorted(value)}}
    raise ValueError(f"invalid {kind} attribute value in cursor")


def encode_cursor(last_key: WireRecord | None, *, index: str | None = None, sort: str | None = None) -> str:
    """URL-safe base64 JSON of ``{"lastKey": ..., "index": ..., "sort": ...}``."""
    if not last_key:
        return ""

    payload: dict[str, Any] = {"lastKey": {str(k): _av_to_json(last_key[k]) for k in sorted(last_key)}}
    if index is not None:
        payload["index"] = index
    if sort is not None:
        payload["sort"] = sort

    raw = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_cursor(cursor: str) -> Cursor:
    raw = str(cursor or "").strip()
    if not raw:
        raise ValueError("cursor is empty")

    padding = "=" * (-len(raw) % 4)
    parsed = json.loads(base64.urlsafe_b64decode(raw + padding).decode("utf-8"))
    if not isinstance(parsed, dict):
        raise ValueError("cursor must decode to an object")

    last_key_raw = parsed.get("lastKey")
    if not isinstance(last_key_raw, dict) or not last_key_raw:
        raise ValueError("cursor lastKey is invalid")

    index = parsed.get("index")
    sort = parsed.get("sort")
    return Cursor(
        last_key={str(k): _av_from_json(last_key_raw[k]) for k in sorted(last_key_raw)},
        index=index if isinstance(index, str) else None,
        sort=sort if sort in {"ASC", "DESC"} else None,
    )


class _ReadBuilder[T]:
    """Options shared by ``Query`` and ``Scan``; nothing runs until ``invoke``."""

    _operation: str = ""

    def __init__(self, index: Index[T]) -> None:
        self._index = index
        self._limit = -1
        self._page_size: int | None = None
        self._start_key: WireRecord | None = None
        self._consistent_read = False
        self._filter: FilterExpression | None = None

    def limit(self, n: int) -> Self:
        if n < 0:
            raise UsageError(f"limit must be >= 0, got {n}")
        self._limit = n
        return self

    def page_size(self, n: int) -> Self:
        if n <= 0:
            raise UsageError(f"page_size must be > 0, got {n}")
        self._page_size = n
        return self

    def start_key(self, record: WireRecord | None) -> Self:
        self._start_key = dict(record) if record else None
        return self

    def start_token(self, token: str | None) -> Self:
        if not token:
            self._start_key = None
            return self
        try:
            decoded = decode_cursor(token)
        except ValueError as err:
            raise UsageError("invalid cursor token") from err
        if decoded.index != self._index.index_name:
            raise UsageError("cursor token belongs to a different index")
        self._check_token_direction(decoded)
        self._start_key = decoded.last_key
        return self

    def consistent_read(self, enabled: bool = True) -> Self:
        self._consistent_read = enabled
        return self

    def filter(self, expr: FilterExpression) -> Self:
        self._filter = expr
        return self

    def _check_token_direction(self, decoded: Cursor) -> None:
        return None

    def _token_sort(self) -> str | None:
        return None

    def _wire_limit(self) -> int | None:
        if self._page_size is not None:
            return self._page_size
        if self._limit >= 0:
            return self._limit
        return None

    def _base_request(self) -> tuple[dict[str, Any], dict[str, str], dict[str, AttributeValue]]:
        req: dict[str, Any] = {
            "TableName": self._index.table_name,
            "ConsistentRead": self._consistent_read,
            "ReturnConsumedCapacity": "INDEXES",
        }
        if self._index.index_name is not None:
            req["IndexName"] = self._index.index_name
        wire_limit = self._wire_limit()
        if wire_limit is not None:
            req["Limit"] = wire_limit
        return req, {}, {}

    def _finish_request(
        self,
        req: dict[str, Any],
        names: dict[str, str],
        values: dict[str, AttributeValue],
    ) -> dict[str, Any]:
        if self._filter is not None:
            expr = build_filter_expression(self._filter, self._index.codec, names, values)
            if expr:
                req["FilterExpression"] = expr
        if names:
            req["ExpressionAttributeNames"] = names
        if values:
            req["ExpressionAttributeValues"] = values
        return req

    def build_request(self) -> dict[str, Any]:
        raise NotImplementedError

    def _fetcher(self, request: dict[str, Any], *, blocking: bool) -> Callable[[WireRecord | None], Any]:
        transport = self._index.transport(blocking=blocking)
        operation = self._operation
        table_name = self._index.table_name
        index_name = self._index.index_name

        async def fetch(start_key: WireRecord | None) -> dict[str, Any]:
            req = dict(request)
            if start_key:
                req["ExclusiveStartKey"] = start_key
            resp = await transport.call(operation, **req)
            logger.debug(
                "page_fetched",
                operation=operation,
                table=table_name,
                index=index_name,
                count=resp.get("Count"),
                scanned_count=resp.get("ScannedCount"),
                has_more=bool(resp.get("LastEvaluatedKey")),
            )
            return resp

        return fetch


class Query[T](_ReadBuilder[T]):
    """Equality on the partition plus at most one sort-key predicate."""

    _operation = "query"

    def __init__(self, index: Index[T], partition_value: Any) -> None:
        super().__init__(index)
        if partition_value is None:
            raise UsageError("query partition value is required")
        self._partition_value = partition_value
        self._sort: SortKeyCondition | None = None
        self._scan_forward = True

    @property
    def partition_value(self) -> Any:
        return self._partition_value

    def _bound(self, value: Any) -> Any:
        if not isinstance(value, Key):
            return value
        if value.partition != self._partition_value:
            raise UsageError(f"sort bound {value!r} belongs to a different partition")
        if value.sort is None:
            raise UsageError(f"sort bound {value!r} has no sort value")
        return value.sort

    def sort(self, cond: SortKeyCondition) -> Query[T]:
        if self._sort is not None:
            raise UsageError("a sort key predicate is already set on this query")
        if self._index.sort_attribute is None:
            raise UsageError(f"{self._index.describe()} has no sort key")
        self._sort = SortKeyCondition(op=cond.op, values=tuple(self._bound(v) for v in cond.values))
        return self

    def sort_between(self, low: Any, high: Any) -> Query[T]:
        return self.sort(SortKeyCondition.between(low, high))

    def sort_above(self, bound: Any, inclusive: bool = True) -> Query[T]:
        return self.sort(SortKeyCondition.gte(bound) if inclusive else SortKeyCondition.gt(bound))

    def sort_below(self, bound: Any, inclusive: bool = True) -> Query[T]:
        return self.sort(SortKeyCondition.lte(bound) if inclusive else SortKeyCondition.lt(bound))

    def sort_prefix(self, prefix: Any) -> Query[T]:
        return self.sort(SortKeyCondition.begins_with(prefix))

    def scan_forward(self, forward: bool = True) -> Query[T]:
        self._scan_forward = forward
        return self

    def _token_sort(self) -> str | None:
        return "ASC" if self._scan_forward else "DESC"

    def _check_token_direction(self, decoded: Cursor) -> None:
        if decoded.sort is not None and decoded.sort != self._token_sort():
            raise UsageError("cursor token was issued for the opposite direction")

    def _key_condition(self, names: dict[str, str], values: dict[str, AttributeValue]) -> str:
        names["#p"] = self._index.partition_attribute
        values[":p"] = self._index.partition_key_to_wire(self._partition_value)
        expr = "#p = :p"

        cond = self._sort
        if cond is None:
            return expr

        names["#s"] = self._index.sort_attribute or ""
        op = cond.op
        if op == "between":
            values[":s1"] = self._index.sort_key_to_wire(cond.values[0])
            values[":s2"] = self._index.sort_key_to_wire(cond.values[1])
            return f"{expr} AND #s BETWEEN :s1 AND :s2"

        values[":s1"] = self._index.sort_key_to_wire(cond.values[0])
        if op == "begins_with":
            return f"{expr} AND begins_with(#s, :s1)"
        if op in {"=", "<", "<=", ">", ">="}:
            return f"{expr} AND #s {op} :s1"
        raise UsageError(f"unsupported sort key operator: {op}")

    def build_request(self) -> dict[str, Any]:
        req, names, values = self._base_request()
        req["KeyConditionExpression"] = self._key_condition(names, values)
        req["ScanIndexForward"] = self._scan_forward
        return self._finish_request(req, names, values)

    def invoke(self) -> QueryResult[T]:
        from .paging import QueryResult

        request = self.build_request()
        logger.debug(
            "query_started",
            table=self._index.table_name,
            index=self._index.index_name,
            limit=self._limit,
            page_size=self._page_size,
        )
        return QueryResult(
            self._index,
            fetch=self._fetcher(request, blocking=True),
            limit=self._limit,
            start_key=self._start_key,
            token_sort=self._token_sort(),
            blocking=True,
            partition_value=self._partition_value,
        )

    go = invoke

    async def invoke_async(self) -> QueryResult[T]:
        from .paging import QueryResult

        request = self.build_request()
        logger.debug(
            "query_started",
            table=self._index.table_name,
            index=self._index.index_name,
            limit=self._limit,
            page_size=self._page_size,
        )
        return QueryResult(
            self._index,
            fetch=self._fetcher(request, blocking=False),
            limit=self._limit,
            start_key=self._start_key,
            token_sort=self._token_sort(),
            blocking=False,
            partition_value=self._partition_value,
        )


class Scan[T](_ReadBuilder[T]):
    """Unconditioned traversal of a keyspace, optionally one segment of a parallel scan."""

    _operation = "scan"

    def __init__(self, index: Index[T], segment: int = 0, total_segments: int = 1) -> None:
        super().__init__(index)
        if total_segments < 1:
            raise UsageError(f"total_segments must be >= 1, got {total_segments}")
        if segment < 0 or segment >= total_segments:
            raise UsageError(f"segment must be in [0, {total_segments}), got {segment}")
        self._segment = segment
        self._total_segments = total_segments

    def build_request(self) -> dict[str, Any]:
        req, names, values = self._base_request()
        if self._total_segments > 1:
            req["Segment"] = self._segment
            req["TotalSegments"] = self._total_segments
        return self._finish_request(req, names, values)

    def invoke(self) -> ScanResult[T]:
        from .paging import ScanResult

        request = self.build_request()
        logger.debug(
            "scan_started",
            table=self._index.table_name,
            index=self._index.index_name,
            segment=self._segment,
            total_segments=self._total_segments,
            limit=self._limit,
        )
        return ScanResult(
            self._index,
            fetch=self._fetcher(request, blocking=True),
            limit=self._limit,
            start_key=self._start_key,
            blocking=True,
            segment=self._segment,
        )

    go = invoke

    async def invoke_async(self) -> ScanResult[T]:
        from .paging import ScanResult

        request = self.build_request()
        logger.debug(
            "scan_started",
            table=self._index.table_name,
            index=self._index.index_name,
            segment=self._segment,
            total_segments=self._total_segments,
            limit=self._limit,
        )
        return ScanResult(
            self._index,
            fetch=self._fetcher(request, blocking=False),
            limit=self._limit,
            start_key=self._start_key,
            blocking=False,
            segment=self._segment,
        )
