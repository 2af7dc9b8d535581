from __future__ import annotations

import concurrent.futures
from collections.abc import Coroutine, Mapping, Sequence
from typing import Any

from .codec import AttributeValue, ItemCodec, WireRecord
from .errors import ConfigurationError, EncodingError, UsageError
from .key import Key
from .query import Query, Scan
from .transport import (
    BackgroundLoop,
    BlockingRunner,
    ClientLoop,
    Transport,
    background_loop,
    running_loop,
    select_transports,
)
from .validation import validate_attribute_name, validate_index_name, validate_table_name


class Index[T]:
    """Read access to one keyspace: a table, or one of its secondary indexes.

    Holds only immutable configuration, so one instance can be shared by any number of
    concurrent callers. ``client`` is a boto3 ``dynamodb`` client and ``async_client`` an
    aiobotocore one; at least one is required and each execution mode bridges to the other
    when its own handle is missing. A blocking-only Index bridges through ``executor`` (the
    shared pool by default). An async-only Index built inside a running event loop sends its
    blocking calls to that loop, which must keep running on another thread; otherwise they
    run on the background loop.
    """

    def __init__(
        self,
        codec: ItemCodec[T],
        *,
        table_name: str,
        partition_attribute: str,
        sort_attribute: str | None = None,
        index_name: str | None = None,
        table_key_attributes: Sequence[str] = (),
        client: Any | None = None,
        async_client: Any | None = None,
        executor: concurrent.futures.Executor | None = None,
        loop: BackgroundLoop | None = None,
    ) -> None:
        validate_table_name(table_name)
        validate_index_name(index_name)
        if not partition_attribute:
            raise ConfigurationError("partition_attribute is required")
        validate_attribute_name(partition_attribute)
        if sort_attribute is not None:
            validate_attribute_name(sort_attribute)

        self._codec = codec
        self._table_name = table_name
        self._index_name = index_name
        self._partition_attribute = partition_attribute
        self._sort_attribute = sort_attribute
        self._client = client
        self._async_client = async_client
        self._executor = executor
        self._loop = loop or background_loop()
        self._blocking, self._nonblocking = select_transports(client, async_client, executor)

        self._runner: BlockingRunner = self._loop
        if client is None and async_client is not None:
            owner = running_loop()
            if owner is not None:
                self._runner = ClientLoop(owner)

        key_attributes = [partition_attribute]
        if sort_attribute is not None:
            key_attributes.append(sort_attribute)
        for attribute in table_key_attributes:
            if attribute not in key_attributes:
                key_attributes.append(attribute)
        self._key_attributes = tuple(key_attributes)

    @property
    def codec(self) -> ItemCodec[T]:
        return self._codec

    @property
    def table_name(self) -> str:
        return self._table_name

    @property
    def index_name(self) -> str | None:
        return self._index_name

    @property
    def partition_attribute(self) -> str:
        return self._partition_attribute

    @property
    def sort_attribute(self) -> str | None:
        return self._sort_attribute

    @property
    def key_attributes(self) -> tuple[str, ...]:
        return self._key_attributes

    @property
    def background_loop(self) -> BackgroundLoop:
        return self._loop

    def describe(self) -> str:
        if self._index_name is None:
            return f"table {self._table_name}"
        return f"index {self._index_name} of table {self._table_name}"

    def transport(self, *, blocking: bool) -> Transport:
        return self._blocking if blocking else self._nonblocking

    def submit_blocking[R](self, coro: Coroutine[Any, Any, R]) -> concurrent.futures.Future[R]:
        return self._runner.submit(coro)

    def _run[R](self, coro: Coroutine[Any, Any, R]) -> R:
        return self._runner.run(coro)

    def partition_key_to_wire(self, value: Any) -> AttributeValue:
        if value is None:
            raise EncodingError("null partition key value", attribute=self._partition_attribute)
        return self._codec.encode_attribute(self._partition_attribute, value)

    def sort_key_to_wire(self, value: Any) -> AttributeValue:
        if self._sort_attribute is None:
            raise UsageError(f"{self.describe()} has no sort key")
        if value is None:
            raise EncodingError("null sort key value", attribute=self._sort_attribute)
        return self._codec.encode_attribute(self._sort_attribute, value)

    def decode(self, record: Mapping[str, AttributeValue]) -> T:
        return self._codec.decode(record)

    def get_partition_key(self, item: T) -> Any:
        value = self._codec.attribute_value(item, self._partition_attribute)
        if value is None:
            raise EncodingError("item has no partition key value", attribute=self._partition_attribute)
        return value

    def get_sort_key(self, item: T) -> Any:
        if self._sort_attribute is None:
            return None
        value = self._codec.attribute_value(item, self._sort_attribute)
        if value is None:
            raise EncodingError("item has no sort key value", attribute=self._sort_attribute)
        return value

    def key_of(self, item: T) -> Key[Any, Any]:
        return Key(self.get_partition_key(item), self.get_sort_key(item))

    def key_from_record(self, record: Mapping[str, AttributeValue]) -> Key[Any, Any]:
        partition = self._codec.decode_attribute(self._partition_attribute, record[self._partition_attribute])
        sort = None
        if self._sort_attribute is not None:
            sort = self._codec.decode_attribute(self._sort_attribute, record[self._sort_attribute])
        return Key(partition, sort)

    def get_exclusive_start(self, item: T) -> WireRecord:
        """Key-only record that resumes a read right after ``item``.

        For a secondary index this carries the base table's key attributes as well, which
        the service requires to position inside an index partition.
        """
        out: WireRecord = {}
        for attribute in self._key_attributes:
            value = self._codec.attribute_value(item, attribute)
            if value is None:
                raise EncodingError("item has no value for key attribute", attribute=attribute)
            out[attribute] = self._codec.encode_attribute(attribute, value)
        return out

    def query(self, partition_value: Any) -> Query[T]:
        return Query(self, partition_value)

    def scan(self, segment: int = 0, total_segments: int = 1) -> Scan[T]:
        return Scan(self, segment, total_segments)
