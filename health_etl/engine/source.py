"""Zero-copy byte access over a bare markup file or one ZIP entry."""

from __future__ import annotations

import mmap
import shutil
import struct
import tempfile
import zipfile
from pathlib import Path
from typing import BinaryIO

import structlog

from ..errors import EtlIOError, InputNotFoundError, SourceRangeError, UnreadableFormatError

_COPY_BUFFER = 1024 * 1024
_BOM = b"\xef\xbb\xbf"

logger = structlog.get_logger("health_etl.source")


class ByteSource:
    """Read-only view over the raw input bytes.

    ``buffer`` is the memoryview the extraction workers scan; it is shared by
    all of them and never mutated.
    """

    def __init__(
        self,
        view: memoryview,
        *,
        description: str,
        mapping: mmap.mmap | None = None,
        backing: BinaryIO | None = None,
    ) -> None:
        self._view = view
        self._mapping = mapping
        self._backing = backing
        self.description = description

    @classmethod
    def from_bytes(cls, data: bytes, description: str = "<memory>") -> "ByteSource":
        return cls(memoryview(data), description=description)

    @property
    def buffer(self) -> memoryview:
        return self._view

    @property
    def length(self) -> int:
        return len(self._view)

    def __len__(self) -> int:
        return len(self._view)

    def slice(self, offset: int, length: int) -> memoryview:
        if offset < 0 or length < 0 or offset + length > len(self._view):
            raise SourceRangeError(
                f"window [{offset}, {offset + length}) exceeds source length {len(self._view)}"
            )
        return self._view[offset : offset + length]

    def close(self) -> None:
        self._view.release()
        if self._mapping is not None:
            self._mapping.close()
            self._mapping = None
        if self._backing is not None:
            self._backing.close()
            self._backing = None

    def __enter__(self) -> "ByteSource":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def open_source(path: Path | str, entry_name: str = "export.xml") -> ByteSource:
    """Open ``path`` as a bare markup file or a ZIP holding one markup entry."""

    path = Path(path)
    if not path.is_file():
        raise InputNotFoundError(f"Input not found: {path}")
    try:
        if zipfile.is_zipfile(path):
            return _open_zip_entry(path, entry_name)
        return _open_bare_file(path)
    except OSError as exc:
        raise EtlIOError(f"Cannot read {path}: {exc}") from exc


def _open_bare_file(path: Path) -> ByteSource:
    if path.stat().st_size == 0:
        raise UnreadableFormatError(f"Input is empty: {path}")
    with path.open("rb") as stream:
        mapping = mmap.mmap(stream.fileno(), 0, access=mmap.ACCESS_READ)
    view = memoryview(mapping)
    if not _looks_like_markup(view):
        view.release()
        mapping.close()
        raise UnreadableFormatError(f"Input is neither markup nor a ZIP container: {path}")
    logger.debug("source_mapped", path=str(path), size=len(view))
    return ByteSource(view, description=str(path), mapping=mapping)


def _open_zip_entry(path: Path, entry_name: str) -> ByteSource:
    try:
        archive = zipfile.ZipFile(path)
    except zipfile.BadZipFile as exc:
        raise UnreadableFormatError(f"Unreadable ZIP container {path}: {exc}") from exc
    with archive:
        info = select_entry(archive, entry_name)
        if info.flag_bits & 0x1:
            raise UnreadableFormatError(f"Entry {info.filename} in {path} is encrypted")
        if info.file_size == 0:
            raise UnreadableFormatError(f"Entry {info.filename} in {path} is empty")
        if info.compress_type == zipfile.ZIP_STORED:
            return _map_stored_entry(path, info)
        return _materialize_entry(archive, info, path)


def select_entry(archive: zipfile.ZipFile, entry_name: str) -> zipfile.ZipInfo:
    """Pick the markup entry by well-known name, else the sole ``.xml`` entry."""

    entries = [info for info in archive.infolist() if not info.is_dir()]
    for info in entries:
        if info.filename == entry_name or info.filename.endswith("/" + entry_name):
            return info
    candidates = [info for info in entries if info.filename.lower().endswith(".xml")]
    if len(candidates) == 1:
        return candidates[0]
    raise UnreadableFormatError(
        f"Expected '{entry_name}' or exactly one .xml entry, found {len(candidates)}"
    )


def _map_stored_entry(path: Path, info: zipfile.ZipInfo) -> ByteSource:
    with path.open("rb") as stream:
        stream.seek(info.header_offset)
        header = stream.read(zipfile.sizeFileHeader)
        mapping = mmap.mmap(stream.fileno(), 0, access=mmap.ACCESS_READ)
    if len(header) != zipfile.sizeFileHeader:
        mapping.close()
        raise UnreadableFormatError(f"Truncated local header for {info.filename}")
    fields = struct.unpack(zipfile.structFileHeader, header)
    if fields[0] != zipfile.stringFileHeader:
        mapping.close()
        raise UnreadableFormatError(f"Bad local header signature for {info.filename}")
    name_length, extra_length = fields[-2], fields[-1]
    start = info.header_offset + zipfile.sizeFileHeader + name_length + extra_length
    end = start + info.file_size
    if end > len(mapping):
        mapping.close()
        raise UnreadableFormatError(f"Entry {info.filename} extends past end of archive")
    view = memoryview(mapping)[start:end]
    if not _looks_like_markup(view):
        view.release()
        mapping.close()
        raise UnreadableFormatError(f"Entry {info.filename} is not markup")
    logger.debug("zip_entry_mapped", path=str(path), entry=info.filename, size=len(view))
    return ByteSource(view, description=f"{path}!{info.filename}", mapping=mapping)


def _materialize_entry(archive: zipfile.ZipFile, info: zipfile.ZipInfo, path: Path) -> ByteSource:
    # Compressed entries are inflated once into a disk-backed temporary file.
    backing = tempfile.TemporaryFile(prefix="health-etl-")
    with archive.open(info) as entry:
        shutil.copyfileobj(entry, backing, _COPY_BUFFER)
    backing.flush()
    mapping = mmap.mmap(backing.fileno(), 0, access=mmap.ACCESS_READ)
    view = memoryview(mapping)
    if not _looks_like_markup(view):
        view.release()
        mapping.close()
        backing.close()
        raise UnreadableFormatError(f"Entry {info.filename} is not markup")
    logger.info(
        "zip_entry_materialized",
        path=str(path),
        entry=info.filename,
        compressed_size=info.compress_size,
        size=len(view),
    )
    return ByteSource(view, description=f"{path}!{info.filename}", mapping=mapping, backing=backing)


def _looks_like_markup(view: memoryview) -> bool:
    head = bytes(view[:1024])
    if head.startswith(_BOM):
        head = head[len(_BOM):]
    head = head.lstrip()
    return head.startswith(b"<")


__all__ = ["ByteSource", "open_source", "select_entry"]
