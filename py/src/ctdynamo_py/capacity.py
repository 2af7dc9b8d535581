from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any


def _units(raw: Mapping[str, Any] | None, name: str) -> float:
    if not raw:
        return 0.0
    value = raw.get(name)
    return 0.0 if value is None else float(value)


@dataclass
class ReadWrite:
    units: float = 0.0
    read: float = 0.0
    write: float = 0.0

    def add(self, raw: Mapping[str, Any] | None) -> None:
        self.units += _units(raw, "CapacityUnits")
        self.read += _units(raw, "ReadCapacityUnits")
        self.write += _units(raw, "WriteCapacityUnits")


@dataclass
class CapacityUsed:
    """Running total of the capacity consumed by one logical operation.

    ``add`` takes the raw ``ConsumedCapacity`` mapping returned by the service. The service
    often reports only ``CapacityUnits``, so the undifferentiated unit count is tracked next
    to the read/write split. Index entries are created the first time an index is seen.
    """

    total_units: float = 0.0
    total_read: float = 0.0
    total_write: float = 0.0
    table_units: float = 0.0
    table_read: float = 0.0
    table_write: float = 0.0
    indexes: dict[str, ReadWrite] = field(default_factory=dict)

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any] | None) -> CapacityUsed:
        out = cls()
        out.add(raw)
        return out

    def add(self, raw: Mapping[str, Any] | None) -> CapacityUsed:
        if not raw:
            return self

        self.total_units += _units(raw, "CapacityUnits")
        self.total_read += _units(raw, "ReadCapacityUnits")
        self.total_write += _units(raw, "WriteCapacityUnits")

        table = raw.get("Table")
        if table:
            self.table_units += _units(table, "CapacityUnits")
            self.table_read += _units(table, "ReadCapacityUnits")
            self.table_write += _units(table, "WriteCapacityUnits")

        for section in ("GlobalSecondaryIndexes", "LocalSecondaryIndexes"):
            for index_name, index_raw in (raw.get(section) or {}).items():
                self.indexes.setdefault(str(index_name), ReadWrite()).add(index_raw)
        return self

    def add_all(self, raws: Iterable[Mapping[str, Any]] | None) -> CapacityUsed:
        for raw in raws or ():
            self.add(raw)
        return self

    def merge(self, other: CapacityUsed) -> CapacityUsed:
        self.total_units += other.total_units
        self.total_read += other.total_read
        self.total_write += other.total_write
        self.table_units += other.table_units
        self.table_read += other.table_read
        self.table_write += other.table_write
        for index_name, rw in other.indexes.items():
            mine = self.indexes.setdefault(index_name, ReadWrite())
            mine.units += rw.units
            mine.read += rw.read
            mine.write += rw.write
        return self
