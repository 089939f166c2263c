"""Extractor Service Provider Interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from concurrent.futures import Executor
from threading import Event

from ..engine.extraction import BatchEmitter, ExtractionSummary


class BaseExtractor(ABC):
    """Uniform source contract enabling plug-and-play inputs."""

    @abstractmethod
    def stream_records(
        self,
        emit_batch: BatchEmitter,
        cancel: Event,
        executor: Executor,
    ) -> ExtractionSummary:
        """Emit every record of the source in batches; return once all are sent."""

    @property
    def size(self) -> int | None:
        """Total number of input bytes when known up front."""

        return None

    def finish(self) -> None:
        """Release underlying resources."""


__all__ = ["BaseExtractor"]
