"""Extractor running the parallel tokenizer over a markup byte source."""

from __future__ import annotations

from concurrent.futures import Executor
from pathlib import Path
from threading import Event
from typing import Callable

from ..engine.extraction import BatchEmitter, ElementMapper, ExtractionEngine, ExtractionSummary
from ..engine.records import StageCounter
from ..engine.source import ByteSource, open_source
from .base import BaseExtractor


class MarkupExtractor(BaseExtractor):
    """Open ``path`` (bare file or ZIP entry) and map its elements to records."""

    def __init__(
        self,
        path: Path,
        mapper: ElementMapper,
        *,
        entry_name: str = "export.xml",
        workers: int = 1,
        batch_size: int = 1024,
        min_chunk_size: int = 64 * 1024,
        counter: StageCounter | None = None,
        on_progress: Callable[[int], None] | None = None,
    ) -> None:
        self.path = Path(path)
        self.entry_name = entry_name
        self.engine = ExtractionEngine(
            mapper,
            workers=workers,
            batch_size=batch_size,
            min_chunk_size=min_chunk_size,
            counter=counter,
            on_progress=on_progress,
        )
        self._source: ByteSource | None = None

    def open(self) -> ByteSource:
        if self._source is None:
            self._source = open_source(self.path, self.entry_name)
        return self._source

    @property
    def size(self) -> int | None:
        return self.open().length

    def stream_records(
        self,
        emit_batch: BatchEmitter,
        cancel: Event,
        executor: Executor,
    ) -> ExtractionSummary:
        return self.engine.extract(self.open(), emit_batch, executor, cancel)

    def finish(self) -> None:
        if self._source is not None:
            self._source.close()
            self._source = None


__all__ = ["MarkupExtractor"]
