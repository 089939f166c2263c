"""Render finalized groups in parallel and write them serially in key order."""

from __future__ import annotations

from concurrent.futures import Executor, wait
from dataclasses import dataclass
from threading import Event
from typing import Callable, Collection, Iterable

import structlog

from ..errors import PipelineCancelled
from ..sinks.base import BaseSink, RenderedEntry
from .channel import BoundedChannel, OrderedHandoff
from .records import Group, StageCounter
from .thread_pool import raise_first_failure

logger = structlog.get_logger("health_etl.loading")


@dataclass(frozen=True, slots=True)
class LoadResult:
    key: str
    name: str
    rows: int
    size: int


@dataclass(frozen=True, slots=True)
class LoadSummary:
    entries_written: int
    rows_written: int
    rows_padded: int
    extra_fields_ignored: int
    entries: tuple[str, ...]


class LoadEngine:
    """Drive a sink: names and writes are serial, rendering is parallel."""

    def __init__(
        self,
        sink: BaseSink,
        *,
        workers: int = 1,
        reorder_window: int = 64,
        channel_capacity: int = 64,
        counter: StageCounter | None = None,
        on_progress: Callable[[int], None] | None = None,
    ) -> None:
        if workers < 1:
            raise ValueError("Loading needs at least one worker")
        self.sink = sink
        self.workers = workers
        self.reorder_window = reorder_window
        self.channel_capacity = channel_capacity
        self.counter = counter or StageCounter()
        self.on_progress = on_progress
        self._results: list[LoadResult] = []

    def load(self, group: Group) -> LoadResult:
        """Render and write a single group on the calling thread."""

        return self._record(self.sink.accept_group(group))

    def _record(self, entry: RenderedEntry) -> LoadResult:
        self.counter.add(
            entries_written=1,
            rows_padded=entry.rows_padded,
            extra_fields_ignored=entry.extra_fields_ignored,
        )
        result = LoadResult(key=entry.key, name=entry.name, rows=entry.rows, size=len(entry.payload))
        self._results.append(result)
        if entry.rows_padded or entry.extra_fields_ignored:
            logger.info(
                "entry_schema_mismatch",
                entry=entry.name,
                rows_padded=entry.rows_padded,
                extra_fields_ignored=entry.extra_fields_ignored,
            )
        if self.on_progress is not None:
            self.on_progress(1)
        return result

    def run(
        self,
        groups: Collection[Group],
        feeder: Executor,
        executor: Executor,
        cancel: Event | None = None,
    ) -> LoadSummary:
        """Load every group of ``groups`` (which must support ``len``).

        ``feeder`` runs the producer filling the group channel; ``executor``
        runs the render workers. Writes happen on the calling thread.
        """

        cancel = cancel or Event()
        total = len(groups)
        channel: BoundedChannel[tuple[int, str, Group]] = BoundedChannel(
            self.channel_capacity, cancel, name="group-channel"
        )
        handoff: OrderedHandoff[RenderedEntry] = OrderedHandoff(total, self.reorder_window, cancel)
        futures = [feeder.submit(self._feed, groups, channel, cancel)]
        futures += [
            executor.submit(self._render, channel, handoff, cancel) for _ in range(self.workers)
        ]
        logger.info("loading_started", groups=total, workers=self.workers)
        try:
            for entry in handoff:
                self.sink.write(entry)
                self._record(entry)
        except PipelineCancelled:
            wait(futures)
            raise_first_failure(futures)
            raise
        except Exception:
            cancel.set()
            wait(futures)
            raise
        wait(futures)
        raise_first_failure(futures)
        return self.summary()

    def _feed(self, groups: Iterable[Group], channel: BoundedChannel, cancel: Event) -> None:
        try:
            for index, group in enumerate(groups):
                channel.send((index, self.sink.entry_name(group.key), group))
        except PipelineCancelled:
            raise
        except Exception:
            cancel.set()
            raise
        finally:
            channel.close()

    def _render(self, channel: BoundedChannel, handoff: OrderedHandoff, cancel: Event) -> None:
        try:
            for index, name, group in channel:
                handoff.put(index, self.sink.render(group, name))
        except PipelineCancelled:
            raise
        except Exception:
            cancel.set()
            raise

    def summary(self) -> LoadSummary:
        return LoadSummary(
            entries_written=len(self._results),
            rows_written=sum(result.rows for result in self._results),
            rows_padded=self.counter.get("rows_padded"),
            extra_fields_ignored=self.counter.get("extra_fields_ignored"),
            entries=tuple(result.name for result in self._results),
        )


__all__ = ["LoadEngine", "LoadResult", "LoadSummary"]
