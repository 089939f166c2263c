"""Thread pool abstraction giving every pipeline stage its own executor."""

from __future__ import annotations

import os
from concurrent.futures import Future, ThreadPoolExecutor
from threading import Lock
from typing import Dict, Iterable

from ..errors import PipelineCancelled

STAGES = ("extract", "transform", "load")


def cpu_workers() -> int:
    return os.cpu_count() or 1


def raise_first_failure(futures: Iterable[Future]) -> None:
    """Re-raise the first real failure among finished ``futures``, in submission order.

    A cancellation is only re-raised when nothing else went wrong.
    """

    cancelled = None
    for future in futures:
        exc = future.exception()
        if exc is None:
            continue
        if isinstance(exc, PipelineCancelled):
            cancelled = cancelled or exc
            continue
        raise exc
    if cancelled is not None:
        raise cancelled


class ThreadPoolManager:
    """Manage one independently sized pool per stage."""

    def __init__(self, default_workers: int | None = None) -> None:
        self.default_workers = default_workers or cpu_workers()
        self._executors: Dict[str, ThreadPoolExecutor] = {}
        self._sizes: Dict[str, int] = {}
        self._lock = Lock()

    def get(self, stage: str, max_workers: int | None = None) -> ThreadPoolExecutor:
        with self._lock:
            if stage not in self._executors:
                workers = max_workers or self.default_workers
                if workers < 1:
                    raise ValueError(f"Pool '{stage}' needs at least one worker")
                self._executors[stage] = ThreadPoolExecutor(
                    max_workers=workers, thread_name_prefix=f"etl-{stage}"
                )
                self._sizes[stage] = workers
            return self._executors[stage]

    def size(self, stage: str) -> int:
        with self._lock:
            return self._sizes.get(stage, 0)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            for executor in self._executors.values():
                executor.shutdown(wait=wait, cancel_futures=not wait)
            self._executors.clear()
            self._sizes.clear()

    def __enter__(self) -> "ThreadPoolManager":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown(wait=exc_type is None)


__all__ = ["STAGES", "ThreadPoolManager", "cpu_workers", "raise_first_failure"]
