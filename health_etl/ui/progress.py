"""Terminal progress helpers with Rich-based rendering."""

from __future__ import annotations

from threading import Lock

from rich.console import Console
from rich.errors import LiveError
from rich.progress import (
    BarColumn,
    Progress,
    ProgressColumn,
    SpinnerColumn,
    Task,
    TaskID,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
    filesize,
)
from rich.text import Text


class RateColumn(ProgressColumn):
    """Render the per-second throughput of a task using its ``unit`` field."""

    def render(self, task: Task) -> Text:
        speed = task.finished_speed or task.speed
        if speed is None:
            return Text("", style="progress.percentage")
        unit_label = task.fields.get("unit", "")
        if unit_label == "B":
            return Text(f"{filesize.decimal(int(speed))}/s", style="progress.percentage")
        if speed < 1000:
            return Text(f"{speed:.1f} {unit_label}/s", style="progress.percentage")
        unit, suffix = filesize.pick_unit_and_suffix(int(speed), ["", "K", "M", "G", "T"], 1000)
        return Text(f"{speed / unit:.1f}{suffix} {unit_label}/s", style="progress.percentage")


class StageProgress:
    """One progress row per pipeline stage.

    Silently disabled when stdout is not a terminal; every method is then a
    no-op, so callers never need to check ``enabled``.
    """

    def __init__(self, enabled: bool = True, console: Console | None = None) -> None:
        self.enabled = enabled
        self._console = console
        self._progress: Progress | None = None
        self._tasks: dict[str, TaskID] = {}
        self._lock = Lock()

    def start(self) -> None:
        if not self.enabled:
            return
        if self._console is None:
            self._console = Console()
        if not self._console.is_terminal:
            self.enabled = False
            return
        self._progress = Progress(
            SpinnerColumn(style="cyan"),
            TextColumn("[bold blue]{task.description:<12}", justify="left"),
            BarColumn(bar_width=None, complete_style="green", finished_style="green", pulse_style="cyan"),
            TaskProgressColumn(show_speed=False),
            TimeElapsedColumn(),
            RateColumn(),
            refresh_per_second=8,
            expand=True,
            transient=True,
            console=self._console,
        )
        try:
            self._progress.__enter__()
        except LiveError:
            # Another live display owns the console.
            self.enabled = False
            self._progress = None

    def add_stage(self, stage: str, total: int | None, unit: str = "") -> None:
        if self._progress is None:
            return
        with self._lock:
            self._tasks[stage] = self._progress.add_task(stage, total=total, unit=unit)

    def advance(self, stage: str, amount: int = 1) -> None:
        if self._progress is None:
            return
        task_id = self._tasks.get(stage)
        if task_id is not None:
            self._progress.advance(task_id, amount)

    def complete(self, stage: str) -> None:
        if self._progress is None:
            return
        task_id = self._tasks.get(stage)
        if task_id is None:
            return
        task = self._progress.tasks[task_id]
        self._progress.update(task_id, total=task.completed or 1, completed=task.completed or 1)

    def stop(self) -> None:
        if self._progress is not None:
            self._progress.__exit__(None, None, None)
            self._progress = None
        self._tasks.clear()

    def __enter__(self) -> "StageProgress":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()


__all__ = ["RateColumn", "StageProgress"]
