from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from typing import Any

from .mocks import ANY, AsyncClientAdapter, FakeDynamoDBClient, InMemoryDynamoDBClient, client_error
from .model import ModelDefinition


def in_memory_client(
    *models: ModelDefinition[Any],
    unprocessed: Callable[[str, Mapping[str, Any]], bool] | None = None,
) -> InMemoryDynamoDBClient:
    """An ``InMemoryDynamoDBClient`` with one table registered per model (and its indexes)."""
    client = InMemoryDynamoDBClient(unprocessed=unprocessed)
    for model in models:
        if not model.table_name or model.pk is None:
            raise ValueError(f"model {model.model_type.__name__} needs a table_name and a pk field")
        client.add_table(
            model.table_name,
            partition_attribute=model.pk.attribute_name,
            sort_attribute=model.sk.attribute_name if model.sk else None,
            indexes={idx.name: (idx.partition, idx.sort) for idx in model.indexes},
        )
    return client


def unprocessed_when(attribute: str, values: Iterable[str]) -> Callable[[str, Mapping[str, Any]], bool]:
    """Batch entries whose ``attribute`` holds one of ``values`` (S or N) are left unprocessed."""
    wanted = {str(v) for v in values}

    def predicate(_table: str, record: Mapping[str, Any]) -> bool:
        av = record.get(attribute) or {}
        raw = av.get("S", av.get("N"))
        return raw is not None and str(raw) in wanted

    return predicate


__all__ = [
    "ANY",
    "AsyncClientAdapter",
    "FakeDynamoDBClient",
    "InMemoryDynamoDBClient",
    "client_error",
    "in_memory_client",
    "unprocessed_when",
]
