"""Parallel tokenizer turning a markup byte source into record batches.

The byte range is split into contiguous chunks aligned on element starts.
Each chunk is scanned by one worker; tags that start inside a chunk belong
to it. Every start or empty-element tag becomes a ``MarkupElement`` which the
extractor's mapper turns into a ``Record``.

Nesting is validated exactly: each chunk reports the closing tags it could
not match and the elements it left open, and the engine replays them in
chunk order once every worker has finished.
"""

from __future__ import annotations

import re
from concurrent.futures import Executor, wait
from dataclasses import dataclass, field
from html import unescape
from threading import Event
from typing import Callable, Optional, Sequence

import structlog

from ..errors import PipelineCancelled, RecordParseError, SourceCorruptError
from .channel import CountdownLatch
from .records import Record, StageCounter
from .source import ByteSource
from .thread_pool import raise_first_failure

_NAME = rb"[A-Za-z_:\x80-\xff][-\w.:\x80-\xff]*"

TOKEN = re.compile(
    rb"""
    <(?:
        (?P<comment>!--.*?-->)
      | (?P<cdata>!\[CDATA\[.*?\]\]>)
      | (?P<pi>\?.*?\?>)
      | (?P<decl>![A-Za-z][^\[>]*(?:\[.*?\]\s*)?>)
      | /(?P<end>NAME)\s*>
      | (?P<start>NAME)(?P<body>(?:[^<>"']|"[^"]*"|'[^']*')*)>
      | (?P<bad>)
    )
    """.replace(b"NAME", _NAME),
    re.DOTALL | re.VERBOSE,
)

_ATTRIBUTE = re.compile(rb"""\s+([^\s=<>"'/]+)\s*=\s*(?:"([^"]*)"|'([^']*)')""")
_ATTRIBUTES = re.compile(rb"""(?:\s+[^\s=<>"'/]+\s*=\s*(?:"[^"]*"|'[^']*'))*\s*""")
_BOUNDARY = re.compile(rb">\s*<[A-Za-z_:\x80-\xff]")
# Spans whose content is not markup; a chunk must never start inside one.
_OPAQUE = re.compile(rb"<!--.*?-->|<!\[CDATA\[.*?\]\]>|<\?.*?\?>", re.DOTALL)

_CANCEL_CHECK_EVERY = 4096

logger = structlog.get_logger("health_etl.extraction")


@dataclass(slots=True)
class MarkupElement:
    """A start or empty-element tag with its decoded attributes."""

    name: str
    attributes: dict[str, str]
    offset: int


ElementMapper = Callable[[MarkupElement], Optional[Record]]
BatchEmitter = Callable[[list[Record]], None]


@dataclass(slots=True)
class ChunkResult:
    index: int
    start: int
    end: int
    records: int = 0
    skipped: int = 0
    unmatched_closes: list[tuple[bytes, int]] = field(default_factory=list)
    unmatched_opens: list[tuple[bytes, int]] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class ExtractionSummary:
    chunks: int
    records_extracted: int
    records_skipped: int
    bytes_read: int
    root: str


def decode_name(raw: bytes, offset: int) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise RecordParseError(offset, f"invalid UTF-8 in element name: {exc.reason}") from exc


def _display(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace")


def parse_attributes(body: bytes, offset: int) -> dict[str, str]:
    """Decode the attribute section of a tag; raise ``RecordParseError`` if garbled."""

    if _ATTRIBUTES.fullmatch(body) is None:
        raise RecordParseError(offset, "malformed attribute list")
    attributes: dict[str, str] = {}
    for raw_name, double_quoted, single_quoted in _ATTRIBUTE.findall(body):
        raw_value = double_quoted or single_quoted
        try:
            name = raw_name.decode("utf-8")
            value = raw_value.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise RecordParseError(offset, f"invalid UTF-8 in attribute: {exc.reason}") from exc
        if name in attributes:
            raise RecordParseError(offset, f"duplicate attribute '{name}'")
        if "&" in value:
            value = unescape(value)
        attributes[name] = value
    return attributes


def scan_prolog(buffer: memoryview | bytes, length: int) -> tuple[str, int]:
    """Return the root element name and the offset just past its start tag."""

    pos = 0
    while True:
        match = TOKEN.search(buffer, pos, length)
        if match is None:
            raise SourceCorruptError(length, "no root element")
        kind = match.lastgroup
        if kind == "body":
            return _display(match.group("start")), match.end()
        if kind == "bad":
            raise SourceCorruptError(match.start(), "unterminated or invalid markup")
        if kind == "end":
            raise SourceCorruptError(match.start(), "closing tag before root element")
        pos = match.end()


def find_chunk_boundaries(
    buffer: memoryview | bytes,
    body_start: int,
    length: int,
    parts: int,
    min_chunk_size: int = 1,
) -> list[int]:
    """Split ``[0, length)`` into at most ``parts`` chunks starting on element starts.

    Chunk 0 always starts at 0 and covers the prolog. Each later boundary is
    the first ``<name`` that follows a ``>`` at or after the tentative split
    and lies outside comments, CDATA sections and processing instructions.
    Those spans are walked once, left to right, across all boundaries.
    """

    span = max(length - body_start, 0)
    parts = max(1, min(parts, span // max(min_chunk_size, 1)))
    boundaries = [0]
    opaque = _OPAQUE.finditer(buffer, body_start, length) if parts > 1 else iter(())
    current = next(opaque, None)
    for part in range(1, parts):
        target = max(body_start + span * part // parts, boundaries[-1])
        cut = None
        while cut is None:
            match = _BOUNDARY.search(buffer, target, length)
            if match is None:
                break
            candidate = match.end() - 2
            while current is not None and current.end() <= candidate:
                current = next(opaque, None)
            if current is not None and current.start() < candidate:
                target = current.end() - 1
            else:
                cut = candidate
        if cut is None:
            break
        if cut > boundaries[-1]:
            boundaries.append(cut)
    if boundaries[-1] != length:
        boundaries.append(length)
    return boundaries


class ExtractionEngine:
    """Run one tokenizer worker per chunk over a shared byte source."""

    def __init__(
        self,
        mapper: ElementMapper,
        *,
        workers: int = 1,
        batch_size: int = 1024,
        min_chunk_size: int = 64 * 1024,
        counter: StageCounter | None = None,
        on_progress: Callable[[int], None] | None = None,
    ) -> None:
        if workers < 1:
            raise ValueError("Extraction needs at least one worker")
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.mapper = mapper
        self.workers = workers
        self.batch_size = batch_size
        self.min_chunk_size = min_chunk_size
        self.counter = counter or StageCounter()
        self.on_progress = on_progress

    def extract(
        self,
        source: ByteSource,
        emit_batch: BatchEmitter,
        executor: Executor,
        cancel: Event | None = None,
    ) -> ExtractionSummary:
        """Extract every record of ``source``; blocks until all chunks are done."""

        cancel = cancel or Event()
        buffer = source.buffer
        length = source.length
        root, body_start = scan_prolog(buffer, length)
        boundaries = find_chunk_boundaries(
            buffer, body_start, length, self.workers, self.min_chunk_size
        )
        chunk_count = len(boundaries) - 1
        logger.info("extraction_started", source=source.description, size=length, chunks=chunk_count, root=root)

        latch = CountdownLatch(chunk_count)
        futures = [
            executor.submit(
                self._run_chunk, buffer, index, boundaries[index], boundaries[index + 1],
                length, emit_batch, cancel, latch,
            )
            for index in range(chunk_count)
        ]
        try:
            latch.wait(cancel)
        except PipelineCancelled:
            wait(futures)
            raise_first_failure(futures)
            raise
        wait(futures)
        raise_first_failure(futures)
        results = [future.result() for future in futures]

        _check_nesting(results, length)
        summary = ExtractionSummary(
            chunks=chunk_count,
            records_extracted=sum(result.records for result in results),
            records_skipped=sum(result.skipped for result in results),
            bytes_read=length,
            root=root,
        )
        logger.info(
            "extraction_completed",
            records=summary.records_extracted,
            skipped=summary.records_skipped,
            bytes=summary.bytes_read,
        )
        return summary

    def _run_chunk(
        self,
        buffer: memoryview | bytes,
        index: int,
        start: int,
        end: int,
        length: int,
        emit_batch: BatchEmitter,
        cancel: Event,
        latch: CountdownLatch,
    ) -> ChunkResult:
        try:
            result = self.scan_chunk(buffer, index, start, end, length, emit_batch, cancel)
        except PipelineCancelled:
            raise
        except Exception:
            cancel.set()
            raise
        finally:
            latch.count_down()
        self.counter.add(
            records_extracted=result.records,
            records_skipped=result.skipped,
            bytes_read=end - start,
        )
        logger.debug(
            "chunk_extracted",
            chunk=index,
            start=start,
            end=end,
            records=result.records,
            skipped=result.skipped,
        )
        return result

    def scan_chunk(
        self,
        buffer: memoryview | bytes,
        index: int,
        start: int,
        end: int,
        length: int,
        emit_batch: BatchEmitter,
        cancel: Event,
    ) -> ChunkResult:
        """Tokenize the tags starting in ``[start, end)`` and emit their records."""

        result = ChunkResult(index=index, start=start, end=end)
        search = TOKEN.search
        mapper = self.mapper
        batch_size = self.batch_size
        stack: list[tuple[bytes, int]] = []
        batch: list[Record] = []
        reported = start
        tokens = 0
        pos = start

        while True:
            match = search(buffer, pos, length)
            if match is None or match.start() >= end:
                break
            pos = match.end()
            kind = match.lastgroup
            tokens += 1
            if tokens % _CANCEL_CHECK_EVERY == 0 and cancel.is_set():
                raise PipelineCancelled("extraction cancelled")

            if kind == "body":
                name = match.group("start")
                body = match.group("body")
                offset = match.start()
                if body.endswith(b"/"):
                    body = body[:-1]
                else:
                    stack.append((name, offset))
                try:
                    element = MarkupElement(decode_name(name, offset), parse_attributes(body, offset), offset)
                    record = mapper(element)
                except RecordParseError as exc:
                    result.skipped += 1
                    logger.warning("record_skipped", offset=exc.offset, reason=exc.reason)
                    continue
                if record is None:
                    continue
                batch.append(record)
                result.records += 1
                if len(batch) >= batch_size:
                    emit_batch(batch)
                    batch = []
                    if self.on_progress is not None:
                        self.on_progress(pos - reported)
                        reported = pos
            elif kind == "end":
                name = match.group("end")
                if stack:
                    open_name, open_offset = stack.pop()
                    if open_name != name:
                        raise SourceCorruptError(
                            match.start(),
                            f"closing tag </{_display(name)}> does not match "
                            f"<{_display(open_name)}> opened at {open_offset}",
                        )
                else:
                    result.unmatched_closes.append((name, match.start()))
            elif kind == "bad":
                raise SourceCorruptError(match.start(), "unterminated or invalid markup")

        if batch:
            emit_batch(batch)
        if self.on_progress is not None:
            self.on_progress(end - reported)
        result.unmatched_opens = stack
        return result


def _check_nesting(results: Sequence[ChunkResult], length: int) -> None:
    stack: list[tuple[bytes, int]] = []
    for result in results:
        for name, offset in result.unmatched_closes:
            if not stack:
                raise SourceCorruptError(offset, f"stray closing tag </{_display(name)}>")
            open_name, open_offset = stack.pop()
            if open_name != name:
                raise SourceCorruptError(
                    offset,
                    f"closing tag </{_display(name)}> does not match <{_display(open_name)}> opened at {open_offset}",
                )
        stack.extend(result.unmatched_opens)
    if stack:
        name, offset = stack[0]
        raise SourceCorruptError(length, f"unterminated element <{_display(name)}> opened at {offset}")


__all__ = [
    "BatchEmitter",
    "ChunkResult",
    "ElementMapper",
    "ExtractionEngine",
    "ExtractionSummary",
    "MarkupElement",
    "TOKEN",
    "decode_name",
    "find_chunk_boundaries",
    "parse_attributes",
    "scan_prolog",
]
