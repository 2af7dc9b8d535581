from __future__ import annotations

from dataclasses import dataclass, field

from .capacity import CapacityUsed


@dataclass(frozen=True)
class ExtendedItemResult[T]:
    item: T | None
    capacity: CapacityUsed = field(default_factory=CapacityUsed)


@dataclass
class ExtendedBatchResult[T, U]:
    """Accumulated outcome of every chunk of one batch call.

    ``unprocessed_values`` holds what the service declined in this pass: keys for batch
    get and batch delete, items for batch put. The caller resubmits them.
    """

    items: list[T] = field(default_factory=list)
    unprocessed_values: list[U] = field(default_factory=list)
    capacity: CapacityUsed = field(default_factory=CapacityUsed)

    def merge(self, other: ExtendedBatchResult[T, U]) -> ExtendedBatchResult[T, U]:
        self.items.extend(other.items)
        self.unprocessed_values.extend(other.unprocessed_values)
        self.capacity.merge(other.capacity)
        return self
