from __future__ import annotations

import asyncio
import concurrent.futures
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any

import structlog

from .capacity import CapacityUsed
from .codec import AttributeValue, ItemCodec, WireRecord
from .errors import ConfigurationError, UsageError
from .index import Index
from .key import Key
from .model import IndexSpec, ModelDefinition
from .results import ExtendedBatchResult, ExtendedItemResult
from .transport import BackgroundLoop, Transport

logger = structlog.get_logger()

MAX_ITEMS_PER_BATCH = 25

type BatchChunk[V] = list[tuple[V, dict[str, Any]]]


def _chunked[V](items: Sequence[V], size: int = MAX_ITEMS_PER_BATCH) -> list[Sequence[V]]:
    if size <= 0:
        raise ValueError("size must be > 0")
    return [items[i : i + size] for i in range(0, len(items), size)]


class Table[T](Index[T]):
    """A base table: everything ``Index`` reads, plus single-item and batched writes.

    Every operation exists as a blocking method and an ``*_async`` coroutine sharing one
    async implementation, and as an ``*_extended`` form that also reports consumed capacity.
    Batches are split into requests of at most ``MAX_ITEMS_PER_BATCH`` entries, sent
    concurrently, and merged. Entries the service leaves unprocessed are reported, never
    retried.
    """

    def __init__(
        self,
        codec: ItemCodec[T],
        *,
        table_name: str,
        partition_attribute: str,
        sort_attribute: str | None = None,
        indexes: Sequence[IndexSpec] = (),
        client: Any | None = None,
        async_client: Any | None = None,
        executor: concurrent.futures.Executor | None = None,
        loop: BackgroundLoop | None = None,
    ) -> None:
        super().__init__(
            codec,
            table_name=table_name,
            partition_attribute=partition_attribute,
            sort_attribute=sort_attribute,
            client=client,
            async_client=async_client,
            executor=executor,
            loop=loop,
        )

        self._indexes: dict[str, Index[T]] = {}
        for definition in indexes:
            if definition.name in self._indexes:
                raise ConfigurationError(f"duplicate index name: {definition.name}")
            self._indexes[definition.name] = Index(
                codec,
                table_name=table_name,
                partition_attribute=definition.partition,
                sort_attribute=definition.sort,
                index_name=definition.name,
                table_key_attributes=self.key_attributes,
                client=client,
                async_client=async_client,
                executor=executor,
                loop=loop,
            )

    @classmethod
    def for_model(
        cls,
        model: ModelDefinition[T],
        *,
        client: Any | None = None,
        async_client: Any | None = None,
        table_name: str | None = None,
        executor: concurrent.futures.Executor | None = None,
        loop: BackgroundLoop | None = None,
    ) -> Table[T]:
        table_name = table_name or model.table_name
        if not table_name:
            raise ConfigurationError("table_name is required (or set ModelDefinition.table_name)")
        if model.pk is None:
            raise ConfigurationError(f"model {model.model_type.__name__} has no pk field")

        return cls(
            model,
            table_name=table_name,
            partition_attribute=model.pk.attribute_name,
            sort_attribute=model.sk.attribute_name if model.sk else None,
            indexes=model.indexes,
            client=client,
            async_client=async_client,
            executor=executor,
            loop=loop,
        )

    def index(self, name: str) -> Index[T]:
        found = self._indexes.get(name)
        if found is None:
            raise ConfigurationError(f"{self.describe()} has no index named {name!r}")
        return found

    @property
    def indexes(self) -> Mapping[str, Index[T]]:
        return dict(self._indexes)

    def _to_key(self, target: Any, sort: Any | None = None) -> Key[Any, Any]:
        if isinstance(target, Key):
            if sort is not None:
                raise UsageError("sort value given alongside a Key")
            return target
        if self.codec.is_item(target):
            if sort is not None:
                raise UsageError("sort value given alongside an item")
            return self.key_of(target)
        if isinstance(target, tuple) and sort is None:
            if len(target) != 2:
                raise UsageError("expected key tuple (partition, sort)")
            return Key(target[0], target[1])
        return Key(target, sort)

    def _key_record(self, key: Key[Any, Any]) -> WireRecord:
        record: WireRecord = {self.partition_attribute: self.partition_key_to_wire(key.partition)}
        if self.sort_attribute is None:
            if key.sort is not None:
                raise UsageError(f"{self.describe()} has no sort key; got {key!r}")
            return record
        if key.sort is None:
            raise UsageError(f"{self.describe()} needs a sort value; got {key!r}")
        record[self.sort_attribute] = self.sort_key_to_wire(key.sort)
        return record

    def _decode_optional(self, record: Mapping[str, AttributeValue] | None) -> T | None:
        return self.decode(record) if record else None

    # single item

    async def _get_item(self, transport: Transport, key: WireRecord, consistent_read: bool) -> ExtendedItemResult[T]:
        resp = await transport.call(
            "get_item",
            TableName=self.table_name,
            Key=key,
            ConsistentRead=consistent_read,
            ReturnConsumedCapacity="INDEXES",
        )
        return ExtendedItemResult(
            item=self._decode_optional(resp.get("Item")),
            capacity=CapacityUsed.from_raw(resp.get("ConsumedCapacity")),
        )

    async def _put_item(self, transport: Transport, record: WireRecord, return_old: bool) -> ExtendedItemResult[T]:
        resp = await transport.call(
            "put_item",
            TableName=self.table_name,
            Item=record,
            ReturnValues="ALL_OLD" if return_old else "NONE",
            ReturnConsumedCapacity="INDEXES",
        )
        return ExtendedItemResult(
            item=self._decode_optional(resp.get("Attributes")),
            capacity=CapacityUsed.from_raw(resp.get("ConsumedCapacity")),
        )

    async def _delete_item(self, transport: Transport, key: WireRecord, return_old: bool) -> ExtendedItemResult[T]:
        resp = await transport.call(
            "delete_item",
            TableName=self.table_name,
            Key=key,
            ReturnValues="ALL_OLD" if return_old else "NONE",
            ReturnConsumedCapacity="INDEXES",
        )
        return ExtendedItemResult(
            item=self._decode_optional(resp.get("Attributes")),
            capacity=CapacityUsed.from_raw(resp.get("ConsumedCapacity")),
        )

    def get_item_extended(
        self, target: Any, sort: Any | None = None, *, consistent_read: bool = False
    ) -> ExtendedItemResult[T]:
        key = self._key_record(self._to_key(target, sort))
        return self._run(self._get_item(self._blocking, key, consistent_read))

    def get_item(self, target: Any, sort: Any | None = None, *, consistent_read: bool = False) -> T | None:
        """Fetches one item by ``(partition, sort)``, ``Key`` or item; None when absent."""
        return self.get_item_extended(target, sort, consistent_read=consistent_read).item

    async def get_item_extended_async(
        self, target: Any, sort: Any | None = None, *, consistent_read: bool = False
    ) -> ExtendedItemResult[T]:
        key = self._key_record(self._to_key(target, sort))
        return await self._get_item(self._nonblocking, key, consistent_read)

    async def get_item_async(
        self, target: Any, sort: Any | None = None, *, consistent_read: bool = False
    ) -> T | None:
        return (await self.get_item_extended_async(target, sort, consistent_read=consistent_read)).item

    def put_item_extended(self, item: T, *, return_old: bool = False) -> ExtendedItemResult[T]:
        record = self.codec.encode(item)
        return self._run(self._put_item(self._blocking, record, return_old))

    def put_item(self, item: T, *, return_old: bool = False) -> T | None:
        """Writes ``item``; returns the value it replaced only when ``return_old`` is set."""
        return self.put_item_extended(item, return_old=return_old).item

    async def put_item_extended_async(self, item: T, *, return_old: bool = False) -> ExtendedItemResult[T]:
        record = self.codec.encode(item)
        return await self._put_item(self._nonblocking, record, return_old)

    async def put_item_async(self, item: T, *, return_old: bool = False) -> T | None:
        return (await self.put_item_extended_async(item, return_old=return_old)).item

    def delete_item_extended(
        self, target: Any, sort: Any | None = None, *, return_old: bool = True
    ) -> ExtendedItemResult[T]:
        key = self._key_record(self._to_key(target, sort))
        return self._run(self._delete_item(self._blocking, key, return_old))

    def delete_item(self, target: Any, sort: Any | None = None, *, return_old: bool = True) -> T | None:
        """Deletes one item; returns what was deleted, or None if nothing was there."""
        return self.delete_item_extended(target, sort, return_old=return_old).item

    async def delete_item_extended_async(
        self, target: Any, sort: Any | None = None, *, return_old: bool = True
    ) -> ExtendedItemResult[T]:
        key = self._key_record(self._to_key(target, sort))
        return await self._delete_item(self._nonblocking, key, return_old)

    async def delete_item_async(self, target: Any, sort: Any | None = None, *, return_old: bool = True) -> T | None:
        return (await self.delete_item_extended_async(target, sort, return_old=return_old)).item

    # batches

    def _key_chunks(self, keys: Iterable[Any]) -> list[BatchChunk[Key[Any, Any]]]:
        normalized = [self._to_key(k) for k in keys]
        return [[(key, self._key_record(key)) for key in chunk] for chunk in _chunked(normalized)]

    def _item_key_chunks(self, items: Iterable[T]) -> list[BatchChunk[Key[Any, Any]]]:
        return self._key_chunks([self.key_of(item) for item in items])

    def _put_chunks(self, values: Iterable[T]) -> list[BatchChunk[T]]:
        return [[(item, self.codec.encode(item)) for item in chunk] for chunk in _chunked(list(values))]

    async def _gather_chunks[V, U](
        self,
        operation: str,
        chunks: list[BatchChunk[V]],
        send: Callable[[BatchChunk[V]], Any],
    ) -> ExtendedBatchResult[T, U]:
        logger.debug(
            "batch_chunks_prepared",
            operation=operation,
            table=self.table_name,
            items=sum(len(c) for c in chunks),
            chunks=len(chunks),
        )
        merged: ExtendedBatchResult[T, U] = ExtendedBatchResult()
        for partial in await asyncio.gather(*(send(chunk) for chunk in chunks)):
            merged.merge(partial)
        return merged

    def _note_unprocessed(self, operation: str, count: int) -> None:
        if count:
            logger.debug("batch_chunk_unprocessed", operation=operation, table=self.table_name, count=count)

    async def _get_chunk(
        self, transport: Transport, chunk: BatchChunk[Key[Any, Any]], consistent_read: bool
    ) -> ExtendedBatchResult[T, Key[Any, Any]]:
        resp = await transport.call(
            "batch_get_item",
            RequestItems={
                self.table_name: {"Keys": [record for _, record in chunk], "ConsistentRead": consistent_read}
            },
            ReturnConsumedCapacity="INDEXES",
        )
        records = (resp.get("Responses") or {}).get(self.table_name) or []
        unprocessed = ((resp.get("UnprocessedKeys") or {}).get(self.table_name) or {}).get("Keys") or []
        self._note_unprocessed("batch_get_item", len(unprocessed))
        return ExtendedBatchResult(
            items=[self.decode(r) for r in records],
            unprocessed_values=[self.key_from_record(r) for r in unprocessed],
            capacity=CapacityUsed().add_all(resp.get("ConsumedCapacity")),
        )

    async def _write_chunk[V, U](
        self,
        transport: Transport,
        requests: list[dict[str, Any]],
        unprocessed_value: Callable[[dict[str, Any]], U],
    ) -> ExtendedBatchResult[T, U]:
        resp = await transport.call(
            "batch_write_item",
            RequestItems={self.table_name: requests},
            ReturnConsumedCapacity="INDEXES",
        )
        unprocessed = (resp.get("UnprocessedItems") or {}).get(self.table_name) or []
        self._note_unprocessed("batch_write_item", len(unprocessed))
        return ExtendedBatchResult(
            items=[],
            unprocessed_values=[unprocessed_value(request) for request in unprocessed],
            capacity=CapacityUsed().add_all(resp.get("ConsumedCapacity")),
        )

    async def _batch_get(
        self, transport: Transport, chunks: list[BatchChunk[Key[Any, Any]]], consistent_read: bool
    ) -> ExtendedBatchResult[T, Key[Any, Any]]:
        return await self._gather_chunks(
            "batch_get_item", chunks, lambda chunk: self._get_chunk(transport, chunk, consistent_read)
        )

    async def _batch_put(self, transport: Transport, chunks: list[BatchChunk[T]]) -> ExtendedBatchResult[T, T]:
        def send(chunk: BatchChunk[T]) -> Any:
            requests = [{"PutRequest": {"Item": record}} for _, record in chunk]
            return self._write_chunk(transport, requests, lambda r: self.decode(r["PutRequest"]["Item"]))

        return await self._gather_chunks("batch_write_item", chunks, send)

    async def _batch_delete(
        self, transport: Transport, chunks: list[BatchChunk[Key[Any, Any]]]
    ) -> ExtendedBatchResult[T, Key[Any, Any]]:
        def send(chunk: BatchChunk[Key[Any, Any]]) -> Any:
            requests = [{"DeleteRequest": {"Key": record}} for _, record in chunk]
            return self._write_chunk(transport, requests, lambda r: self.key_from_record(r["DeleteRequest"]["Key"]))

        return await self._gather_chunks("batch_write_item", chunks, send)

    def get_batch_by_key_extended(
        self, keys: Iterable[Any], *, consistent_read: bool = False
    ) -> ExtendedBatchResult[T, Key[Any, Any]]:
        chunks = self._key_chunks(keys)
        return self._run(self._batch_get(self._blocking, chunks, consistent_read))

    def get_batch_by_key(self, keys: Iterable[Any], *, consistent_read: bool = False) -> list[T]:
        return self.get_batch_by_key_extended(keys, consistent_read=consistent_read).items

    async def get_batch_by_key_extended_async(
        self, keys: Iterable[Any], *, consistent_read: bool = False
    ) -> ExtendedBatchResult[T, Key[Any, Any]]:
        chunks = self._key_chunks(keys)
        return await self._batch_get(self._nonblocking, chunks, consistent_read)

    async def get_batch_by_key_async(self, keys: Iterable[Any], *, consistent_read: bool = False) -> list[T]:
        return (await self.get_batch_by_key_extended_async(keys, consistent_read=consistent_read)).items

    def get_batch_by_item_extended(
        self, items: Iterable[T], *, consistent_read: bool = False
    ) -> ExtendedBatchResult[T, Key[Any, Any]]:
        chunks = self._item_key_chunks(items)
        return self._run(self._batch_get(self._blocking, chunks, consistent_read))

    def get_batch_by_item(self, items: Iterable[T], *, consistent_read: bool = False) -> list[T]:
        return self.get_batch_by_item_extended(items, consistent_read=consistent_read).items

    async def get_batch_by_item_extended_async(
        self, items: Iterable[T], *, consistent_read: bool = False
    ) -> ExtendedBatchResult[T, Key[Any, Any]]:
        chunks = self._item_key_chunks(items)
        return await self._batch_get(self._nonblocking, chunks, consistent_read)

    async def get_batch_by_item_async(self, items: Iterable[T], *, consistent_read: bool = False) -> list[T]:
        return (await self.get_batch_by_item_extended_async(items, consistent_read=consistent_read)).items

    def put_batch_extended(self, values: Iterable[T]) -> ExtendedBatchResult[T, T]:
        chunks = self._put_chunks(values)
        return self._run(self._batch_put(self._blocking, chunks))

    def put_batch(self, values: Iterable[T]) -> None:
        self.put_batch_extended(values)

    async def put_batch_extended_async(self, values: Iterable[T]) -> ExtendedBatchResult[T, T]:
        chunks = self._put_chunks(values)
        return await self._batch_put(self._nonblocking, chunks)

    async def put_batch_async(self, values: Iterable[T]) -> None:
        await self.put_batch_extended_async(values)

    def delete_batch_by_key_extended(self, keys: Iterable[Any]) -> ExtendedBatchResult[T, Key[Any, Any]]:
        chunks = self._key_chunks(keys)
        return self._run(self._batch_delete(self._blocking, chunks))

    def delete_batch_by_key(self, keys: Iterable[Any]) -> None:
        self.delete_batch_by_key_extended(keys)

    async def delete_batch_by_key_extended_async(self, keys: Iterable[Any]) -> ExtendedBatchResult[T, Key[Any, Any]]:
        chunks = self._key_chunks(keys)
        return await self._batch_delete(self._nonblocking, chunks)

    async def delete_batch_by_key_async(self, keys: Iterable[Any]) -> None:
        await self.delete_batch_by_key_extended_async(keys)

    def delete_batch_by_item_extended(self, items: Iterable[T]) -> ExtendedBatchResult[T, Key[Any, Any]]:
        chunks = self._item_key_chunks(items)
        return self._run(self._batch_delete(self._blocking, chunks))

    def delete_batch_by_item(self, items: Iterable[T]) -> None:
        self.delete_batch_by_item_extended(items)

    async def delete_batch_by_item_extended_async(self, items: Iterable[T]) -> ExtendedBatchResult[T, Key[Any, Any]]:
        chunks = self._item_key_chunks(items)
        return await self._batch_delete(self._nonblocking, chunks)

    async def delete_batch_by_item_async(self, items: Iterable[T]) -> None:
        await self.delete_batch_by_item_extended_async(items)
