from __future__ import annotations

import json
import types
from collections.abc import Mapping, Sequence
from dataclasses import MISSING, dataclass, field, fields, is_dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Union, cast, get_args, get_origin, get_type_hints, overload

from boto3.dynamodb.types import Binary, TypeDeserializer, TypeSerializer

from .codec import AttributeConverter, AttributeValue, WireRecord
from .errors import ConfigurationError, EncodingError

_serializer = TypeSerializer()
_deserializer = TypeDeserializer()


class ModelDefinitionError(ConfigurationError):
    pass


@dataclass(frozen=True)
class AttributeDefinition:
    python_name: str
    attribute_name: str
    roles: tuple[str, ...]
    set: bool
    json: bool
    annotation: Any = Any
    converter: AttributeConverter | None = None


@dataclass(frozen=True)
class IndexSpec:
    """A secondary index. Declared with model field names; ``ModelDefinition.indexes`` holds
    the same shape resolved to stored attribute names."""

    name: str
    type: str
    partition: str
    sort: str | None = None


@overload
def dynamo_field(
    *,
    name: str | None = None,
    roles: Sequence[str] | None = None,
    set_: bool = False,
    json: bool = False,
    converter: AttributeConverter | None = None,
    ignore: bool = False,
) -> Any: ...


@overload
def dynamo_field(
    *,
    name: str | None = None,
    roles: Sequence[str] | None = None,
    set_: bool = False,
    json: bool = False,
    converter: AttributeConverter | None = None,
    ignore: bool = False,
    default: Any,
) -> Any: ...


@overload
def dynamo_field(
    *,
    name: str | None = None,
    roles: Sequence[str] | None = None,
    set_: bool = False,
    json: bool = False,
    converter: AttributeConverter | None = None,
    ignore: bool = False,
    default_factory: Any,
) -> Any: ...


def dynamo_field(
    *,
    name: str | None = None,
    roles: Sequence[str] | None = None,
    set_: bool = False,
    json: bool = False,
    converter: AttributeConverter | None = None,
    ignore: bool = False,
    default: Any = MISSING,
    default_factory: Any = MISSING,
) -> Any:
    if default is not MISSING and default_factory is not MISSING:
        raise ValueError("dynamo_field: cannot set both default and default_factory")

    opts: dict[str, Any] = {
        "set": set_,
        "json": json,
        "converter": converter,
        "ignore": ignore,
    }
    if name is not None:
        opts["name"] = name
    if roles is not None:
        opts["roles"] = list(roles)

    return field(default=default, default_factory=default_factory, metadata={"ctdynamo": opts})


def gsi(name: str, *, partition: str, sort: str | None = None) -> IndexSpec:
    return IndexSpec(name=name, type="GSI", partition=partition, sort=sort)


def lsi(name: str, *, sort: str) -> IndexSpec:
    return IndexSpec(name=name, type="LSI", partition="__TABLE_PK__", sort=sort)


class IsoDatetimeConverter:
    """Stores a ``datetime`` as its ISO-8601 string."""

    def to_dynamodb(self, value: Any) -> Any:
        if not isinstance(value, datetime):
            raise EncodingError(f"expected datetime, got {type(value).__name__}")
        return value.isoformat()

    def from_dynamodb(self, value: Any) -> Any:
        return datetime.fromisoformat(str(value))


class NestedConverter:
    """Stores a dataclass value (or a list of them) as a nested map using its own model."""

    def __init__(self, model: ModelDefinition[Any], *, many: bool = False) -> None:
        self._model = model
        self._many = many

    def to_dynamodb(self, value: Any) -> Any:
        if self._many:
            return [self._model.to_python(v) for v in value]
        return self._model.to_python(value)

    def from_dynamodb(self, value: Any) -> Any:
        if self._many:
            return [self._model.from_python(v) for v in value]
        return self._model.from_python(value)


def nested(model: ModelDefinition[Any] | type[Any], *, many: bool = False) -> NestedConverter:
    """Converter for a nested record; a bare dataclass type gets a keyless model of its own."""
    if not isinstance(model, ModelDefinition):
        model = ModelDefinition.from_dataclass(model, key_required=False)
    return NestedConverter(model, many=many)


def _normalize(value: Any) -> Any:
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return {_normalize(v) for v in value}
    if isinstance(value, Mapping):
        return {str(k): _normalize(v) for k, v in value.items()}
    return value


def _coerce_value(value: Any, annotation: Any) -> Any:
    if value is None:
        return None

    origin = get_origin(annotation)
    if origin in (Union, types.UnionType):
        candidates = [a for a in get_args(annotation) if a is not type(None)]
        if len(candidates) == 1:
            return _coerce_value(value, candidates[0])
        return value

    if annotation is int and isinstance(value, Decimal):
        return int(value)
    if annotation is float and isinstance(value, Decimal):
        return float(value)
    if annotation is bytes and isinstance(value, Binary):
        return bytes(value.value)

    if origin in (set, frozenset) and isinstance(value, set):
        (elem_type,) = get_args(annotation) or (Any,)
        return origin(_coerce_value(v, elem_type) for v in value)
    if origin is list and isinstance(value, list):
        (elem_type,) = get_args(annotation) or (Any,)
        return [_coerce_value(v, elem_type) for v in value]
    if origin is tuple and isinstance(value, list):
        return tuple(value)

    return value


def _type_hints(model_type: type[Any]) -> dict[str, Any]:
    try:
        return get_type_hints(model_type)
    except (NameError, TypeError):
        return dict(getattr(model_type, "__annotations__", {}))


@dataclass(frozen=True)
class ModelDefinition[T]:
    """Codec for one frozen dataclass type, declared with ``dynamo_field``.

    With ``ignore_nulls`` (the default) a None non-key field is left out of the wire
    record; otherwise it is written as an explicit NULL marker. A None key field can never
    be encoded.
    """

    model_type: type[T]
    table_name: str | None
    pk: AttributeDefinition | None
    sk: AttributeDefinition | None
    attributes: Mapping[str, AttributeDefinition]
    indexes: tuple[IndexSpec, ...]
    ignore_nulls: bool = True
    by_attribute: Mapping[str, AttributeDefinition] = field(default_factory=dict)

    @classmethod
    def from_dataclass(
        cls,
        model_type: type[T],
        *,
        table_name: str | None = None,
        indexes: Sequence[IndexSpec] = (),
        ignore_nulls: bool = True,
        key_required: bool = True,
    ) -> ModelDefinition[T]:
        if not is_dataclass(model_type):
            raise ModelDefinitionError("model_type must be a dataclass")

        hints = _type_hints(model_type)
        attributes: dict[str, AttributeDefinition] = {}
        by_attribute: dict[str, AttributeDefinition] = {}
        pk_fields: list[str] = []
        sk_fields: list[str] = []

        for dc_field in fields(model_type):
            opts = cast(dict[str, Any], dc_field.metadata.get("ctdynamo", {}))
            if bool(opts.get("ignore", False)):
                continue

            roles = tuple(cast(list[str], opts.get("roles", [])))
            if "pk" in roles:
                pk_fields.append(dc_field.name)
            if "sk" in roles:
                sk_fields.append(dc_field.name)

            attribute_name = cast(str, opts.get("name", dc_field.name))
            if attribute_name in by_attribute:
                raise ModelDefinitionError(f"duplicate attribute name: {attribute_name}")

            attr_def = AttributeDefinition(
                python_name=dc_field.name,
                attribute_name=attribute_name,
                roles=roles,
                set=bool(opts.get("set", False)),
                json=bool(opts.get("json", False)),
                annotation=hints.get(dc_field.name, Any),
                converter=cast(AttributeConverter | None, opts.get("converter")),
            )
            attributes[dc_field.name] = attr_def
            by_attribute[attribute_name] = attr_def

        if len(pk_fields) > 1 or (key_required and len(pk_fields) != 1):
            raise ModelDefinitionError(f"model must define exactly one pk field (found {len(pk_fields)})")

        if len(sk_fields) > 1:
            raise ModelDefinitionError(f"model must define at most one sk field (found {len(sk_fields)})")

        if sk_fields and not pk_fields:
            raise ModelDefinitionError("model defines an sk field without a pk field")

        pk = attributes[pk_fields[0]] if pk_fields else None
        sk = attributes[sk_fields[0]] if sk_fields else None
        if indexes and pk is None:
            raise ModelDefinitionError("indexes require a pk field")

        resolved_indexes: list[IndexSpec] = []
        seen_index_names: set[str] = set()

        table_pk = cast(AttributeDefinition, pk)
        for spec in indexes:
            if spec.name in seen_index_names:
                raise ModelDefinitionError(f"duplicate index name: {spec.name}")
            seen_index_names.add(spec.name)

            if spec.type not in {"GSI", "LSI"}:
                raise ModelDefinitionError(f"unsupported index type: {spec.type}")

            partition_field = (
                table_pk.python_name if spec.type == "LSI" and spec.partition == "__TABLE_PK__" else spec.partition
            )
            if partition_field not in attributes:
                raise ModelDefinitionError(f"index {spec.name}: unknown partition field: {partition_field}")

            if spec.type == "LSI" and partition_field != table_pk.python_name:
                raise ModelDefinitionError(
                    f"index {spec.name}: LSI partition must be the table pk ({table_pk.python_name})"
                )

            sort_attr: str | None = None
            if spec.sort is not None:
                if spec.sort not in attributes:
                    raise ModelDefinitionError(f"index {spec.name}: unknown sort field: {spec.sort}")
                sort_attr = attributes[spec.sort].attribute_name

            resolved_indexes.append(
                IndexSpec(
                    name=spec.name,
                    type=spec.type,
                    partition=attributes[partition_field].attribute_name,
                    sort=sort_attr,
                )
            )

        return cls(
            model_type=model_type,
            table_name=table_name,
            pk=pk,
            sk=sk,
            attributes=attributes,
            indexes=tuple(resolved_indexes),
            ignore_nulls=ignore_nulls,
            by_attribute=by_attribute,
        )

    def is_item(self, value: Any) -> bool:
        return isinstance(value, self.model_type)

    def encode(self, item: T) -> WireRecord:
        out: WireRecord = {}
        for attribute_name, value in self.to_python(item).items():
            out[attribute_name] = self._serialize(attribute_name, value)
        return out

    def decode(self, record: Mapping[str, AttributeValue]) -> T:
        raw = {name: _deserializer.deserialize(av) for name, av in record.items()}
        return self.from_python(raw)

    def to_python(self, item: T) -> dict[str, Any]:
        if not self.is_item(item):
            raise EncodingError(f"expected {self.model_type.__name__}, got {type(item).__name__}")

        out: dict[str, Any] = {}
        for field_name, attr_def in self.attributes.items():
            value = getattr(item, field_name)
            if value is None and (attr_def is self.pk or attr_def is self.sk):
                role = "partition" if attr_def is self.pk else "sort"
                raise EncodingError(f"null primary {role} key", attribute=attr_def.attribute_name)

            converted = None if value is None else self._to_python_value(attr_def, value)
            if converted is None:
                if not self.ignore_nulls:
                    out[attr_def.attribute_name] = None
                continue
            out[attr_def.attribute_name] = converted
        return out

    def from_python(self, raw: Mapping[str, Any]) -> T:
        kwargs: dict[str, Any] = {}
        for field_name, attr_def in self.attributes.items():
            if attr_def.attribute_name not in raw:
                continue
            kwargs[field_name] = self._from_python_value(attr_def, raw[attr_def.attribute_name])

        try:
            return self.model_type(**kwargs)
        except TypeError as err:
            raise EncodingError(str(err)) from err

    def attribute_value(self, item: T, attribute: str) -> Any:
        attr_def = self.by_attribute.get(attribute)
        if attr_def is None:
            raise EncodingError("unknown attribute", attribute=attribute)
        return getattr(item, attr_def.python_name)

    def encode_attribute(self, attribute: str, value: Any) -> AttributeValue:
        if value is None:
            raise EncodingError("null key value", attribute=attribute)
        attr_def = self.by_attribute.get(attribute)
        if attr_def is not None:
            value = self._to_python_value(attr_def, value)
        else:
            value = _normalize(value)
        return self._serialize(attribute, value)

    def decode_attribute(self, attribute: str, av: Mapping[str, Any]) -> Any:
        raw = _deserializer.deserialize(cast(Any, av))
        attr_def = self.by_attribute.get(attribute)
        if attr_def is None:
            return raw
        return self._from_python_value(attr_def, raw)

    def _to_python_value(self, attr_def: AttributeDefinition, value: Any) -> Any:
        if attr_def.converter is not None:
            value = attr_def.converter.to_dynamodb(value)
        if attr_def.json:
            value = json.dumps(value, separators=(",", ":"), sort_keys=True)
        if attr_def.set and isinstance(value, (set, frozenset)) and len(value) == 0:
            return None
        return _normalize(value)

    def _from_python_value(self, attr_def: AttributeDefinition, raw: Any) -> Any:
        if raw is None:
            return None
        if attr_def.json and isinstance(raw, str):
            raw = json.loads(raw)
        if attr_def.converter is not None:
            return attr_def.converter.from_dynamodb(raw)
        return _coerce_value(raw, attr_def.annotation)

    def _serialize(self, attribute: str, value: Any) -> AttributeValue:
        try:
            return cast(AttributeValue, _serializer.serialize(value))
        except TypeError as err:
            raise EncodingError(str(err), attribute=attribute) from err
