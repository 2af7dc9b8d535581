from __future__ import annotations

import json
import re
from importlib.resources import files
from typing import TYPE_CHECKING, Any

from .capacity import CapacityUsed, ReadWrite
from .codec import AttributeConverter, ItemCodec
from .errors import ConfigurationError, CtdynamoPyError, EncodingError, UsageError
from .key import Key
from .model import (
    IndexSpec,
    IsoDatetimeConverter,
    ModelDefinition,
    ModelDefinitionError,
    dynamo_field,
    gsi,
    lsi,
    nested,
)
from .query import FilterCondition, FilterGroup, SortKeyCondition, decode_cursor, encode_cursor
from .results import ExtendedBatchResult, ExtendedItemResult

if TYPE_CHECKING:
    from .config import RuntimeSettings
    from .index import Index
    from .paging import IterableResult, QueryResult, ScanResult
    from .runtime import AwsCallMetric, create_async_dynamodb_client, get_dynamodb_client, instrument_client
    from .table import MAX_ITEMS_PER_BATCH, Table
    from .transport import BackgroundLoop
    from .validation import validate_attribute_name, validate_index_name, validate_table_name


def _read_repo_version() -> str:
    try:
        data = json.loads(files(__package__).joinpath("version.json").read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return "0.0.0"

    version = data.get("version")
    return version if isinstance(version, str) and version else "0.0.0"


def _normalize_repo_version(repo_version: str) -> str:
    match = re.match(r"^(\d+\.\d+\.\d+)-rc\.?([0-9]+)$", repo_version)
    if match:
        return f"{match.group(1)}rc{match.group(2)}"
    return repo_version


__repo_version__ = _read_repo_version()
__version__ = _normalize_repo_version(__repo_version__)


def __getattr__(name: str) -> Any:
    if name in {"Table", "MAX_ITEMS_PER_BATCH"}:
        from . import table

        return getattr(table, name)
    if name == "Index":
        from .index import Index

        return Index
    if name in {"IterableResult", "QueryResult", "ScanResult"}:
        from . import paging

        return getattr(paging, name)
    if name == "RuntimeSettings":
        from .config import RuntimeSettings

        return RuntimeSettings
    if name in {"AwsCallMetric", "create_async_dynamodb_client", "get_dynamodb_client", "instrument_client"}:
        from . import runtime

        return getattr(runtime, name)
    if name == "BackgroundLoop":
        from .transport import BackgroundLoop

        return BackgroundLoop
    if name in {"validate_attribute_name", "validate_index_name", "validate_table_name"}:
        from . import validation

        return getattr(validation, name)
    raise AttributeError(name)


__all__ = [
    "AttributeConverter",
    "AwsCallMetric",
    "BackgroundLoop",
    "CapacityUsed",
    "ConfigurationError",
    "CtdynamoPyError",
    "EncodingError",
    "ExtendedBatchResult",
    "ExtendedItemResult",
    "FilterCondition",
    "FilterGroup",
    "Index",
    "IndexSpec",
    "IsoDatetimeConverter",
    "ItemCodec",
    "IterableResult",
    "Key",
    "MAX_ITEMS_PER_BATCH",
    "ModelDefinition",
    "ModelDefinitionError",
    "QueryResult",
    "ReadWrite",
    "RuntimeSettings",
    "ScanResult",
    "SortKeyCondition",
    "Table",
    "UsageError",
    "__repo_version__",
    "__version__",
    "create_async_dynamodb_client",
    "decode_cursor",
    "dynamo_field",
    "encode_cursor",
    "get_dynamodb_client",
    "gsi",
    "instrument_client",
    "lsi",
    "nested",
    "validate_attribute_name",
    "validate_index_name",
    "validate_table_name",
]
