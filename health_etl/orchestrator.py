"""Engine orchestrator wiring extraction, grouping, loading and progress."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from threading import Event, Lock
from typing import Callable

from .config import PipelineConfig, SinkFormat, SourceFormat
from .engine import (
    BoundedChannel,
    GroupingEngine,
    LoadEngine,
    PipelineCounters,
    StageCounter,
    ThreadPoolManager,
    merge_counters,
)
from .errors import ConfigurationError, InputNotFoundError, PipelineCancelled, PipelineError
from .logging_conf import configure_logging
from .sinks import BaseSink, CsvZipSink
from .sources import AppleHealthExtractor, BaseExtractor
from .ui import StageProgress


class PipelineState(str, Enum):
    IDLE = "idle"
    EXTRACTING = "extracting"
    GROUPING = "grouping"
    LOADING = "loading"
    DONE = "done"
    FAILED = "failed"


_TRANSITIONS = {
    PipelineState.IDLE: {PipelineState.EXTRACTING},
    PipelineState.EXTRACTING: {PipelineState.GROUPING},
    PipelineState.GROUPING: {PipelineState.LOADING},
    PipelineState.LOADING: {PipelineState.DONE},
    PipelineState.DONE: set(),
    PipelineState.FAILED: set(),
}


@dataclass(frozen=True, slots=True)
class RunSummary:
    """Outcome of a successful run."""

    state: PipelineState
    counters: PipelineCounters
    output: Path
    elapsed: float
    timings: dict[str, float] = field(default_factory=dict)
    entries: tuple[str, ...] = ()

    @property
    def throughput(self) -> float:
        if self.elapsed <= 0:
            return 0.0
        return self.counters.records_extracted / self.elapsed


def create_extractor(
    config: PipelineConfig,
    input_path: Path,
    *,
    counter: StageCounter | None = None,
    on_progress: Callable[[int], None] | None = None,
) -> BaseExtractor:
    if config.source_format is SourceFormat.APPLE_HEALTH:
        return AppleHealthExtractor(
            input_path,
            entry_name=config.input_entry_name,
            workers=config.resolved_threads("extract"),
            batch_size=config.batch_size,
            min_chunk_size=config.min_chunk_size,
            counter=counter,
            on_progress=on_progress,
        )
    raise ConfigurationError(f"Unsupported source format: {config.source_format}")


def create_sink(config: PipelineConfig, output_path: Path) -> BaseSink:
    if config.sink_format is SinkFormat.CSV_ZIP:
        return CsvZipSink(
            output_path,
            header_policy=config.header_policy.value,
            field_mismatch=config.field_mismatch.value,
            compression=config.compression.value,
            compress_level=config.compress_level,
            prefixes=config.entry_name_prefixes,
        )
    raise ConfigurationError(f"Unsupported sink format: {config.sink_format}")


class EngineOrchestrator:
    """Central coordinator managing the lifecycle of one conversion."""

    def __init__(
        self,
        config: PipelineConfig | None = None,
        *,
        progress: StageProgress | None = None,
        verbose: bool = False,
    ) -> None:
        self.config = config or PipelineConfig()
        self.progress = progress or StageProgress(enabled=False)
        self.logger = configure_logging(verbose).bind(component="orchestrator")
        self.cancel_event = Event()
        self._state = PipelineState.IDLE
        self._state_lock = Lock()
        self._timings: dict[str, float] = {}
        self._entries: tuple[str, ...] = ()

    @property
    def state(self) -> PipelineState:
        with self._state_lock:
            return self._state

    def _transition(self, target: PipelineState) -> None:
        with self._state_lock:
            current = self._state
            if target is not PipelineState.FAILED and target not in _TRANSITIONS[current]:
                raise RuntimeError(f"Illegal transition {current.value} -> {target.value}")
            self._state = target
        self.logger.info("state_changed", source_state=current.value, target_state=target.value)

    def cancel(self) -> None:
        """Request cancellation of a running pipeline."""

        self.cancel_event.set()

    # ------------------------------------------------------------------
    def run(self, input_path: Path | str, output_path: Path | str) -> RunSummary:
        """Convert ``input_path`` into ``output_path``; raise ``PipelineError`` on failure."""

        if self.state is not PipelineState.IDLE:
            raise RuntimeError("An orchestrator runs exactly once")
        input_path, output_path = Path(input_path), Path(output_path)
        check_paths(input_path, output_path)

        counters = {stage: StageCounter() for stage in ("extract", "group", "load")}
        pools = ThreadPoolManager()
        extractor: BaseExtractor | None = None
        sink: BaseSink | None = None
        failure: BaseException | None = None
        failed_stage = PipelineState.IDLE
        started = time.perf_counter()
        self.logger.info("run_started", input=str(input_path), output=str(output_path))

        self.progress.start()
        try:
            self._transition(PipelineState.EXTRACTING)
            extractor = create_extractor(
                self.config,
                input_path,
                counter=counters["extract"],
                on_progress=lambda amount: self.progress.advance("extract", amount),
            )
            sink = self._execute(extractor, pools, counters, output_path)
            sink.close()
            self._transition(PipelineState.DONE)
        except BaseException as exc:
            failure = exc
            failed_stage = self.state
            self.cancel_event.set()
        finally:
            pools.shutdown(wait=True)
            if extractor is not None:
                extractor.finish()
            self.progress.stop()

        elapsed = time.perf_counter() - started
        merged = merge_counters(*counters.values())
        if failure is not None:
            self._transition(PipelineState.FAILED)
            if sink is not None:
                sink.abort()
            self.logger.error(
                "run_failed",
                stage=failed_stage.value,
                error=str(failure),
                error_type=type(failure).__name__,
                **merged.as_dict(),
            )
            if not isinstance(failure, Exception):
                raise failure
            raise PipelineError(failed_stage.value, failure) from failure

        summary = RunSummary(
            state=PipelineState.DONE,
            counters=merged,
            output=output_path,
            elapsed=elapsed,
            timings=dict(self._timings),
            entries=self._entries,
        )
        self.logger.info(
            "run_completed",
            elapsed=round(elapsed, 3),
            throughput=round(summary.throughput, 1),
            **merged.as_dict(),
        )
        return summary

    def _execute(
        self,
        extractor: BaseExtractor,
        pools: ThreadPoolManager,
        counters: dict[str, StageCounter],
        output_path: Path,
    ) -> BaseSink:
        config = self.config
        cancel = self.cancel_event
        stage_started = time.perf_counter()
        self.progress.add_stage("extract", extractor.size, unit="B")

        channel: BoundedChannel = BoundedChannel(config.channel_capacity, cancel, name="record-channel")
        grouping = GroupingEngine(config.group_shards, counter=counters["group"])
        transform_pool = pools.get("transform", config.resolved_threads("transform"))
        consumers = grouping.consume(channel, config.resolved_threads("transform"), transform_pool, cancel)
        try:
            extraction = extractor.stream_records(
                channel.send, cancel, pools.get("extract", config.resolved_threads("extract"))
            )
        except PipelineCancelled:
            # A failing consumer cancels extraction; surface its error instead.
            grouping.join(consumers)
            raise
        finally:
            channel.close()
        grouping.mark_extraction_done()
        self.progress.complete("extract")
        self._timings["extract"] = time.perf_counter() - stage_started
        self.logger.info("stage_completed", stage="extract", chunks=extraction.chunks, root=extraction.root)

        self._transition(PipelineState.GROUPING)
        stage_started = time.perf_counter()
        grouping.join(consumers)
        groups = grouping.finalize()
        self._timings["group"] = time.perf_counter() - stage_started

        self._transition(PipelineState.LOADING)
        stage_started = time.perf_counter()
        self.progress.add_stage("load", len(groups), unit="grp")
        sink = create_sink(config, output_path)
        loader = LoadEngine(
            sink,
            workers=config.resolved_threads("load"),
            reorder_window=config.reorder_window,
            channel_capacity=config.channel_capacity,
            counter=counters["load"],
            on_progress=lambda amount: self.progress.advance("load", amount),
        )
        try:
            result = loader.run(groups, transform_pool, pools.get("load", config.resolved_threads("load")), cancel)
        except BaseException:
            sink.abort()
            raise
        self._entries = result.entries
        self._timings["load"] = time.perf_counter() - stage_started
        return sink


def check_paths(input_path: Path, output_path: Path) -> None:
    """Validate the run arguments before any work starts."""

    if not input_path.is_file():
        raise InputNotFoundError(f"Input not found: {input_path}")
    if not output_path.parent.is_dir():
        raise ConfigurationError(f"Output directory does not exist: {output_path.parent}")
    if output_path.resolve() == input_path.resolve():
        raise ConfigurationError("Output path must differ from the input path")


__all__ = [
    "EngineOrchestrator",
    "PipelineState",
    "RunSummary",
    "check_paths",
    "create_extractor",
    "create_sink",
]
