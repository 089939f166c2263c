"""Concurrent key-based grouping of the record stream."""

from __future__ import annotations

from collections import defaultdict
from concurrent.futures import Executor, Future, wait
from threading import Event, Lock
from typing import Iterable, Iterator, Sequence

import structlog

from ..errors import PipelineCancelled
from .channel import BoundedChannel
from .records import Group, Record, StageCounter
from .thread_pool import raise_first_failure

logger = structlog.get_logger("health_etl.grouping")


class _Shard:
    __slots__ = ("lock", "buffers")

    def __init__(self) -> None:
        self.lock = Lock()
        self.buffers: dict[str, list[Record]] = {}


class ShardedGroupMap:
    """Hash-partitioned ``key -> records`` map with one lock per shard."""

    def __init__(self, shards: int = 16) -> None:
        if shards < 1:
            raise ValueError("Grouping map needs at least one shard")
        self._shards = [_Shard() for _ in range(shards)]

    def _shard_for(self, key: str) -> _Shard:
        return self._shards[hash(key) % len(self._shards)]

    def append(self, key: str, records: Sequence[Record]) -> None:
        shard = self._shard_for(key)
        with shard.lock:
            buffer = shard.buffers.get(key)
            if buffer is None:
                shard.buffers[key] = list(records)
            else:
                buffer.extend(records)

    def __len__(self) -> int:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.buffers)
        return total

    def drain(self) -> dict[str, list[Record]]:
        """Move every buffer out of the map, leaving it empty."""

        drained: dict[str, list[Record]] = {}
        for shard in self._shards:
            with shard.lock:
                drained.update(shard.buffers)
                shard.buffers = {}
        return drained


class FinalizedGroups:
    """Ordered groups handed over by ``GroupingEngine.finalize``."""

    def __init__(self, buffers: dict[str, list[Record]], counter: StageCounter) -> None:
        self._buffers = buffers
        self._counter = counter
        self.keys = sorted(buffers)

    def __len__(self) -> int:
        return len(self.keys)

    def __iter__(self) -> Iterator[Group]:
        for key in self.keys:
            records = self._buffers.pop(key)
            records.sort(key=Record.ordering)
            self._counter.add(groups_emitted=1)
            yield Group(key=key, records=records)


class GroupingEngine:
    """Buffer records per grouping key until the extraction barrier is passed."""

    def __init__(self, shards: int = 16, counter: StageCounter | None = None) -> None:
        self._map = ShardedGroupMap(shards)
        self.counter = counter or StageCounter()
        self._state_lock = Lock()
        self._active_consumers = 0
        self._extraction_done = False
        self._finalized = False

    def insert(self, record: Record) -> None:
        self._map.append(record.grouping_key, (record,))
        self.counter.add(records_grouped=1)

    def insert_batch(self, records: Iterable[Record]) -> int:
        local: dict[str, list[Record]] = defaultdict(list)
        count = 0
        for record in records:
            local[record.grouping_key].append(record)
            count += 1
        for key, bucket in local.items():
            self._map.append(key, bucket)
        self.counter.add(records_grouped=count)
        return count

    def consume(
        self,
        channel: BoundedChannel[list[Record]],
        workers: int,
        executor: Executor,
        cancel: Event | None = None,
    ) -> list[Future]:
        """Start ``workers`` consumers draining ``channel`` into the map."""

        if workers < 1:
            raise ValueError("Grouping needs at least one consumer")
        cancel = cancel or Event()
        with self._state_lock:
            self._active_consumers += workers
        return [executor.submit(self._consume, channel, cancel, index) for index in range(workers)]

    def _consume(self, channel: BoundedChannel[list[Record]], cancel: Event, index: int) -> int:
        grouped = 0
        try:
            for batch in channel:
                grouped += self.insert_batch(batch)
        except PipelineCancelled:
            raise
        except Exception:
            cancel.set()
            raise
        finally:
            with self._state_lock:
                self._active_consumers -= 1
        logger.debug("consumer_drained", consumer=index, records=grouped)
        return grouped

    def join(self, futures: Sequence[Future]) -> int:
        """Wait for the consumers; re-raise the first real failure."""

        wait(futures)
        raise_first_failure(futures)
        return sum(future.result() for future in futures)

    def mark_extraction_done(self) -> None:
        with self._state_lock:
            self._extraction_done = True

    def finalize(self) -> FinalizedGroups:
        """Move all buffers out and return the groups in key order."""

        with self._state_lock:
            if not self._extraction_done:
                raise RuntimeError("finalize() called before the extraction barrier")
            if self._active_consumers:
                raise RuntimeError(f"finalize() called with {self._active_consumers} consumers running")
            if self._finalized:
                raise RuntimeError("finalize() already called")
            self._finalized = True
        groups = FinalizedGroups(self._map.drain(), self.counter)
        logger.info("grouping_finalized", groups=len(groups), records=self.counter.get("records_grouped"))
        return groups


__all__ = ["FinalizedGroups", "GroupingEngine", "ShardedGroupMap"]
