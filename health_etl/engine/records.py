"""Record model shared by every pipeline stage."""

from __future__ import annotations

from dataclasses import dataclass, field, fields as dataclass_fields
from datetime import date
from threading import Lock
from typing import Any, Mapping, Union

Scalar = Union[str, int, float, bool, date, None]


@dataclass(frozen=True, slots=True)
class Record:
    """One extracted unit of data.

    ``seq`` is the arrival sequence number. Markup sources use the byte
    offset of the element, so arrival order equals document order no matter
    how many workers produced the records.
    """

    grouping_key: str
    fields: Mapping[str, Scalar]
    sort_key: Any = None
    seq: int = 0

    def __post_init__(self) -> None:
        if not self.grouping_key:
            raise ValueError("Record grouping_key must be non-empty")

    def ordering(self) -> tuple:
        # Records without a sort key go after every keyed record of the group.
        if self.sort_key is None:
            return (1, 0, self.seq)
        return (0, self.sort_key, self.seq)


@dataclass(slots=True)
class Group:
    """All records observed for one grouping key, in final order."""

    key: str
    records: list[Record]

    def __len__(self) -> int:
        return len(self.records)

    @property
    def has_sort_keys(self) -> bool:
        return any(record.sort_key is not None for record in self.records)


@dataclass(frozen=True, slots=True)
class PipelineCounters:
    """Snapshot of the per-stage accumulators taken at shutdown."""

    records_extracted: int = 0
    records_skipped: int = 0
    records_grouped: int = 0
    groups_emitted: int = 0
    entries_written: int = 0
    bytes_read: int = 0
    rows_padded: int = 0
    extra_fields_ignored: int = 0

    def as_dict(self) -> dict[str, int]:
        return {item.name: getattr(self, item.name) for item in dataclass_fields(self)}


@dataclass
class StageCounter:
    """Lock-guarded accumulator owned by one stage.

    Workers count locally and merge once per unit of work.
    """

    values: dict[str, int] = field(default_factory=dict)
    _lock: Lock = field(default_factory=Lock, repr=False)

    def add(self, **increments: int) -> None:
        with self._lock:
            for name, amount in increments.items():
                self.values[name] = self.values.get(name, 0) + amount

    def get(self, name: str) -> int:
        with self._lock:
            return self.values.get(name, 0)

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self.values)


def merge_counters(*stages: StageCounter) -> PipelineCounters:
    """Merge stage accumulators into one immutable snapshot."""

    merged: dict[str, int] = {}
    known = {item.name for item in dataclass_fields(PipelineCounters)}
    for stage in stages:
        for name, value in stage.snapshot().items():
            if name in known:
                merged[name] = merged.get(name, 0) + value
    return PipelineCounters(**merged)


__all__ = [
    "Group",
    "PipelineCounters",
    "Record",
    "Scalar",
    "StageCounter",
    "merge_counters",
]
