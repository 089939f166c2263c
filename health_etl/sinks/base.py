"""Sink Service Provider Interface."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable

from ..engine.records import Group

DEFAULT_ENTRY_PREFIXES = (
    "HKQuantityTypeIdentifier",
    "HKCategoryTypeIdentifier",
    "HKCharacteristicTypeIdentifier",
    "HKWorkoutActivityType",
)

_UNSAFE = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


@dataclass(frozen=True, slots=True)
class RenderedEntry:
    """One serialized group, ready to be appended to the destination."""

    key: str
    name: str
    payload: bytes
    rows: int
    rows_padded: int = 0
    extra_fields_ignored: int = 0


def sanitize_entry_stem(key: str, prefixes: Iterable[str] = DEFAULT_ENTRY_PREFIXES) -> str:
    stem = key
    for prefix in prefixes:
        if stem.startswith(prefix):
            stem = stem[len(prefix):]
            break
    stem = _UNSAFE.sub("_", stem).strip().strip("_")
    return stem or "group"


class BaseSink(ABC):
    """Uniform destination contract enabling plug-and-play outputs.

    ``render`` may run concurrently on the load pool; ``entry_name`` and
    ``write`` are only ever called from one thread, in key order.
    """

    extension = ""

    def __init__(self, prefixes: Iterable[str] = DEFAULT_ENTRY_PREFIXES) -> None:
        self.prefixes = tuple(prefixes)
        self._used_names: set[str] = set()
        self.entries_written = 0

    def entry_name(self, key: str) -> str:
        """Return a unique, filename-safe entry name for ``key``."""

        stem = sanitize_entry_stem(key, self.prefixes)
        name = f"{stem}{self.extension}"
        suffix = 2
        while name in self._used_names:
            name = f"{stem}-{suffix}{self.extension}"
            suffix += 1
        self._used_names.add(name)
        return name

    @abstractmethod
    def render(self, group: Group, name: str) -> RenderedEntry:
        """Serialize ``group`` into an entry payload."""

    @abstractmethod
    def write(self, entry: RenderedEntry) -> None:
        """Append a rendered entry to the destination."""

    def accept_group(self, group: Group) -> RenderedEntry:
        entry = self.render(group, self.entry_name(group.key))
        self.write(entry)
        return entry

    @abstractmethod
    def close(self) -> None:
        """Finish the destination and make it visible at its final path."""

    @abstractmethod
    def abort(self) -> None:
        """Discard everything written so far."""


__all__ = ["BaseSink", "DEFAULT_ENTRY_PREFIXES", "RenderedEntry", "sanitize_entry_stem"]
