from __future__ import annotations

from dataclasses import dataclass

from .errors import UsageError


@dataclass(frozen=True)
class Key[P, S]:
    """Identity of one row: a partition value plus the sort value, if the keyspace has one.

    Used to address batch requests and single-item reads or deletes.
    """

    partition: P
    sort: S | None = None

    def __post_init__(self) -> None:
        if self.partition is None:
            raise UsageError("key partition value is required")

    def __repr__(self) -> str:
        return f"Key[{self.partition!r}, {self.sort!r}]"
