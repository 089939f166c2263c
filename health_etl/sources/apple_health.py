"""Apple Health export mapping (``export.xml`` or ``export.zip``)."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from ..engine.extraction import MarkupElement
from ..engine.records import Record
from .markup import MarkupExtractor

# First attribute present wins.
SORT_KEY_ATTRIBUTES = (
    "startDate",
    "date",
    "dateComponents",
    "creationDate",
    "endDate",
    "dateIssued",
    "receivedDate",
)


def map_health_element(element: MarkupElement) -> Record | None:
    """Turn one export element into a record; attribute-less elements are ignored.

    ``Record`` elements are grouped by their ``type`` attribute, everything
    else (``Workout``, ``ActivitySummary``, ``Me``...) by element name.
    """

    attributes = element.attributes
    if not attributes:
        return None
    key = attributes.get("type") if element.name == "Record" else None
    sort_key = None
    for name in SORT_KEY_ATTRIBUTES:
        if name in attributes:
            sort_key = attributes[name]
            break
    return Record(
        grouping_key=key or element.name,
        fields=attributes,
        sort_key=sort_key,
        seq=element.offset,
    )


class AppleHealthExtractor(MarkupExtractor):
    def __init__(self, path: Path, **options: Any) -> None:
        super().__init__(path, map_health_element, **options)


__all__ = ["AppleHealthExtractor", "SORT_KEY_ATTRIBUTES", "map_health_element"]
