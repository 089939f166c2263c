"""Typer CLI entrypoint for health-etl."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import typer
from rich import box
from rich.console import Console
from rich.table import Table

from .config import (
    Compression,
    ConfigRepository,
    FieldMismatch,
    HeaderPolicy,
    PipelineConfig,
    apply_overrides,
)
from .errors import ConfigurationError, EtlError, PipelineError
from .logging_conf import available_logs, configure_logging, tail_log
from .orchestrator import EngineOrchestrator, RunSummary
from .ui import StageProgress

EXIT_FAILURE = 1
EXIT_USAGE = 2

app = typer.Typer(
    help="Convert an Apple Health export into one CSV table per record type.",
    no_args_is_help=True,
    rich_markup_mode=None,
)
log_app = typer.Typer(
    name="log",
    help="Inspect the JSON log files.",
    no_args_is_help=True,
    rich_markup_mode=None,
)

console = Console()

OrchestratorFactory = Callable[[PipelineConfig, StageProgress, bool], EngineOrchestrator]


def _default_orchestrator(config: PipelineConfig, progress: StageProgress, verbose: bool) -> EngineOrchestrator:
    return EngineOrchestrator(config, progress=progress, verbose=verbose)


@dataclass
class AppState:
    repository: ConfigRepository
    orchestrator_factory: OrchestratorFactory = _default_orchestrator
    verbose: bool = False


def build_state(verbose: bool) -> AppState:
    repository = ConfigRepository()
    configure_logging(verbose=verbose)
    return AppState(repository=repository, verbose=verbose)


def _get_state(ctx: typer.Context) -> AppState:
    state = ctx.obj
    if state is None:
        state = build_state(verbose=False)
        ctx.obj = state
    return state


def _render_summary_table(summary: RunSummary) -> Table:
    counters = summary.counters
    table = Table(title="Conversion summary", box=box.SIMPLE_HEAD)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green", justify="right")
    table.add_row("Records extracted", f"{counters.records_extracted:,}")
    table.add_row("Records skipped", f"{counters.records_skipped:,}")
    table.add_row("Groups emitted", f"{counters.groups_emitted:,}")
    table.add_row("Entries written", f"{counters.entries_written:,}")
    table.add_row("Bytes read", f"{counters.bytes_read:,}")
    table.add_row("Rows padded", f"{counters.rows_padded:,}")
    table.add_row("Extra fields ignored", f"{counters.extra_fields_ignored:,}")
    table.add_row("Elapsed (s)", f"{summary.elapsed:.2f}")
    table.add_row("Records/s", f"{summary.throughput:,.0f}")
    return table


app.add_typer(log_app, name="log", help="List or show log files")


@app.callback()
def main(
    ctx: typer.Context, verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging", is_flag=True)
) -> None:
    ctx.obj = build_state(verbose)


@app.command("convert", help="Convert INPUT (export.xml or export.zip) into the OUTPUT ZIP archive.")
def convert(
    ctx: typer.Context,
    input_path: Path = typer.Argument(..., metavar="INPUT", help="export.xml or a ZIP holding it."),
    output_path: Path = typer.Argument(..., metavar="OUTPUT", help="ZIP archive to create."),
    extract_threads: Optional[int] = typer.Option(None, "--extract-threads", min=1, help="Extraction workers."),
    transform_threads: Optional[int] = typer.Option(None, "--transform-threads", min=1, help="Grouping workers."),
    load_threads: Optional[int] = typer.Option(None, "--load-threads", min=1, help="Rendering workers."),
    config_path: Optional[Path] = typer.Option(None, "--config", help="YAML or JSON pipeline configuration."),
    header_policy: Optional[HeaderPolicy] = typer.Option(None, "--header-policy", help="CSV header selection."),
    on_mismatch: Optional[FieldMismatch] = typer.Option(None, "--on-mismatch", help="Records not matching the header."),
    compression: Optional[Compression] = typer.Option(None, "--compression", help="ZIP entry compression."),
    verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging", is_flag=True),
    no_metrics: bool = typer.Option(False, "--no-metrics", help="Only print the skipped-record count.", is_flag=True),
    no_progress: bool = typer.Option(False, "--no-progress", help="Disable the progress display.", is_flag=True),
) -> None:
    state = _get_state(ctx)
    verbose = verbose or state.verbose
    if verbose:
        configure_logging(verbose=True)
    try:
        config = state.repository.load_config(config_path)
        config = apply_overrides(
            config,
            extract_threads=extract_threads,
            transform_threads=transform_threads,
            load_threads=load_threads,
            header_policy=header_policy,
            field_mismatch=on_mismatch,
            compression=compression,
        )
    except ConfigurationError as exc:
        console.print(f"Configuration error: {exc}", style="red", markup=False)
        raise typer.Exit(code=EXIT_USAGE)

    progress = StageProgress(enabled=config.enable_progress_bar and not no_progress)
    orchestrator = state.orchestrator_factory(config, progress, verbose)
    try:
        summary = orchestrator.run(input_path, output_path)
    except ConfigurationError as exc:
        console.print(f"Invalid arguments: {exc}", style="red", markup=False)
        raise typer.Exit(code=EXIT_USAGE)
    except PipelineError as exc:
        cause = exc.cause
        console.print(f"Conversion failed during {exc.stage}: {cause}", style="red", markup=False)
        if isinstance(cause, ConfigurationError):
            raise typer.Exit(code=EXIT_USAGE)
        raise typer.Exit(code=EXIT_FAILURE)
    except EtlError as exc:
        console.print(f"Conversion failed: {exc}", style="red", markup=False)
        raise typer.Exit(code=EXIT_FAILURE)

    if no_metrics or not config.show_metrics:
        console.print(f"Skipped records: {summary.counters.records_skipped}")
        return
    console.print(_render_summary_table(summary))
    console.print(f"Wrote {summary.counters.entries_written} entries to {summary.output}", style="green")


@log_app.command("list", help="List the available log files.")
def log_list() -> None:
    logs = list(available_logs())
    if not logs:
        console.print("No log files yet.", style="dim")
        return
    table = Table(box=box.SIMPLE_HEAD)
    table.add_column("File", style="green")
    table.add_column("Size", justify="right")
    for path in logs:
        table.add_row(path.name, str(path.stat().st_size))
    console.print(table)


@log_app.command("show", help="Show the last lines of a log file.")
def log_show(
    name: str = typer.Argument("etl", help="Log name, e.g. etl or error."),
    lines: int = typer.Option(100, "--lines", "-n", min=1, help="Number of lines to show."),
) -> None:
    filename = name if name.endswith(".log") else f"{name}.log"
    matches = [path for path in available_logs() if path.name == filename]
    if not matches:
        console.print(f"Unknown log: {name}", style="red", markup=False)
        raise typer.Exit(code=EXIT_FAILURE)
    content = tail_log(matches[0], lines)
    if not content:
        console.print("Log is empty.", style="dim")
        return
    console.print(f"{filename} · last {len(content)} lines", style="cyan")
    console.print("".join(content), markup=False, highlight=False)


def cli() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    cli()
