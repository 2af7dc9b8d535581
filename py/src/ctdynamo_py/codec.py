from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol

type AttributeValue = dict[str, Any]
type WireRecord = dict[str, AttributeValue]


class AttributeConverter(Protocol):
    def to_dynamodb(self, value: Any) -> Any: ...

    def from_dynamodb(self, value: Any) -> Any: ...


class ItemCodec[T](Protocol):
    """Mapping between one application type and its wire record.

    Index and Table only ever reach item contents through this interface.
    """

    def encode(self, item: T) -> WireRecord: ...

    def decode(self, record: Mapping[str, AttributeValue]) -> T: ...

    def is_item(self, value: Any) -> bool: ...

    def attribute_value(self, item: T, attribute: str) -> Any: ...

    def encode_attribute(self, attribute: str, value: Any) -> AttributeValue: ...

    def decode_attribute(self, attribute: str, av: Mapping[str, Any]) -> Any: ...
