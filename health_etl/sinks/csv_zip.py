"""CSV-per-group sink packaged into a single ZIP archive."""

from __future__ import annotations

import csv
import io
import os
import zipfile
from contextlib import suppress
from datetime import date, datetime
from pathlib import Path
from typing import Iterable, Sequence

import structlog

from ..engine.records import Group, Record, Scalar
from ..errors import ConfigurationError, EncodingError, EtlIOError
from .base import DEFAULT_ENTRY_PREFIXES, BaseSink, RenderedEntry

COMPRESSION_METHODS = {
    "deflated": zipfile.ZIP_DEFLATED,
    "stored": zipfile.ZIP_STORED,
    "bzip2": zipfile.ZIP_BZIP2,
    "lzma": zipfile.ZIP_LZMA,
}
HEADER_POLICIES = ("first_record", "union")
MISMATCH_POLICIES = ("pad", "reject")

# Fixed metadata so identical input yields a byte-identical archive.
_ENTRY_TIMESTAMP = (1980, 1, 1, 0, 0, 0)
_ENTRY_MODE = 0o644 << 16
_UNIX = 3

logger = structlog.get_logger("health_etl.sinks.csv_zip")


def build_header(group: Group, policy: str = "first_record") -> list[str]:
    if not group.records:
        return []
    if policy == "union":
        names: set[str] = set()
        for record in group.records:
            names.update(record.fields)
        return sorted(names)
    return list(group.records[0].fields)


def format_value(value: Scalar) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


class CsvZipSink(BaseSink):
    """Write one CSV table per group into ``path`` (via ``<path>.partial``)."""

    extension = ".csv"

    def __init__(
        self,
        path: Path,
        *,
        header_policy: str = "first_record",
        field_mismatch: str = "pad",
        compression: str = "deflated",
        compress_level: int | None = None,
        prefixes: Iterable[str] = DEFAULT_ENTRY_PREFIXES,
    ) -> None:
        super().__init__(prefixes)
        if header_policy not in HEADER_POLICIES:
            raise ConfigurationError(f"Unknown header policy: {header_policy}")
        if field_mismatch not in MISMATCH_POLICIES:
            raise ConfigurationError(f"Unknown field mismatch policy: {field_mismatch}")
        if compression not in COMPRESSION_METHODS:
            raise ConfigurationError(f"Unknown compression: {compression}")
        self.path = Path(path)
        self.partial_path = self.path.with_name(self.path.name + ".partial")
        self.header_policy = header_policy
        self.field_mismatch = field_mismatch
        self.compression = COMPRESSION_METHODS[compression]
        self.compress_level = compress_level
        try:
            self._archive: zipfile.ZipFile | None = zipfile.ZipFile(
                self.partial_path, "w", compression=self.compression
            )
        except OSError as exc:
            raise EtlIOError(f"Cannot create {self.partial_path}: {exc}") from exc

    def render(self, group: Group, name: str) -> RenderedEntry:
        header = build_header(group, self.header_policy)
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(header)
        padded = extra = 0
        for record in group.records:
            row, missing, unexpected = self._row(record, header)
            if missing or unexpected:
                if self.field_mismatch == "reject":
                    raise EncodingError(
                        group.key,
                        record.seq,
                        f"{missing} missing and {unexpected} unexpected fields for header {header}",
                    )
                if missing:
                    padded += 1
                extra += unexpected
            writer.writerow(row)
        return RenderedEntry(
            key=group.key,
            name=name,
            payload=buffer.getvalue().encode("utf-8"),
            rows=len(group.records),
            rows_padded=padded,
            extra_fields_ignored=extra,
        )

    @staticmethod
    def _row(record: Record, header: Sequence[str]) -> tuple[list[str], int, int]:
        fields = record.fields
        row = []
        present = 0
        for column in header:
            if column in fields:
                present += 1
                row.append(format_value(fields[column]))
            else:
                row.append("")
        return row, len(header) - present, len(fields) - present

    def write(self, entry: RenderedEntry) -> None:
        if self._archive is None:
            raise RuntimeError("write on a closed sink")
        info = zipfile.ZipInfo(entry.name, date_time=_ENTRY_TIMESTAMP)
        info.compress_type = self.compression
        info.create_system = _UNIX
        info.external_attr = _ENTRY_MODE
        try:
            self._archive.writestr(info, entry.payload, compresslevel=self.compress_level)
        except OSError as exc:
            raise EtlIOError(f"Cannot write entry {entry.name}: {exc}") from exc
        self.entries_written += 1
        logger.debug("entry_written", entry=entry.name, rows=entry.rows, size=len(entry.payload))

    def close(self) -> None:
        if self._archive is None:
            return
        try:
            self._archive.close()
            self._archive = None
            os.replace(self.partial_path, self.path)
        except OSError as exc:
            raise EtlIOError(f"Cannot finalize {self.path}: {exc}") from exc
        logger.info("archive_written", path=str(self.path), entries=self.entries_written)

    def abort(self) -> None:
        if self._archive is not None:
            with suppress(OSError):
                self._archive.close()
            self._archive = None
        self.partial_path.unlink(missing_ok=True)
        logger.warning("archive_discarded", path=str(self.partial_path), entries=self.entries_written)


__all__ = [
    "COMPRESSION_METHODS",
    "CsvZipSink",
    "HEADER_POLICIES",
    "MISMATCH_POLICIES",
    "build_header",
    "format_value",
]
