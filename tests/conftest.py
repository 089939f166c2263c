"""Pytest configuration providing snapshot management and shared fixtures."""

from __future__ import annotations

import json
import os
import tempfile
import zipfile
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping

import pytest

from export_builders import HEART_RATE, STEPS, build_export, record
from health_etl.config import ConfigLocator, ConfigRepository, PipelineConfig

DEFAULT_SNAPSHOT_SET = "baseline"


class SnapshotPlugin:
    """Expose snapshot bookkeeping for the ``snapshot`` fixture."""

    def __init__(self, config: pytest.Config) -> None:
        self.config = config
        self.update_snapshots = config.getoption("--snapshot-update")
        self.snapshot_set = (
            config.getoption("--snapshot-set")
            or os.environ.get("SNAPSHOT_SET")
            or DEFAULT_SNAPSHOT_SET
        )
        self.snapshots_root = Path(config.rootpath) / "tests" / "snapshots"
        self.snapshot_changes: list[str] = []

    def register_snapshot_change(self, path: Path, test_key: str, action: str) -> None:
        relative = path.relative_to(self.config.rootpath)
        self.snapshot_changes.append(f"{action}: {relative}::{test_key}")

    def pytest_terminal_summary(self, terminalreporter) -> None:  # pragma: no cover
        for line in self.snapshot_changes:
            terminalreporter.write_line(line)


def pytest_addoption(parser: pytest.Parser) -> None:  # pragma: no cover
    parser.addoption(
        "--snapshot-update",
        action="store_true",
        default=False,
        help="Update stored snapshots.",
    )
    parser.addoption(
        "--snapshot-set",
        action="store",
        default=None,
        help="Name of the snapshot file to compare against.",
    )


def pytest_configure(config: pytest.Config) -> None:  # pragma: no cover
    plugin = SnapshotPlugin(config)
    config.pluginmanager.register(plugin, "snapshot-plugin")
    config._snapshot_plugin = plugin  # type: ignore[attr-defined]

    # Keep log files out of the working tree.
    os.environ["HEALTH_ETL_HOME"] = tempfile.mkdtemp(prefix="health-etl-tests-")
    from health_etl.logging_conf import configure_logging

    configure_logging()


def pytest_unconfigure(config: pytest.Config) -> None:  # pragma: no cover
    plugin = getattr(config, "_snapshot_plugin", None)
    if plugin is not None:
        config.pluginmanager.unregister(plugin)
        delattr(config, "_snapshot_plugin")


class SnapshotManager:
    """Assert helper storing expectations in one JSON file per test directory."""

    def __init__(self, request: pytest.FixtureRequest, plugin: SnapshotPlugin) -> None:
        self.request = request
        self.plugin = plugin

    def assert_match(self, data: Any, *, key: str | None = None) -> None:
        normalized = json.loads(json.dumps(data, default=str))
        module_name = self.request.path.parent.name
        snapshot_path = self.plugin.snapshots_root / module_name / f"{self.plugin.snapshot_set}.json"
        if snapshot_path.exists():
            stored = json.loads(snapshot_path.read_text(encoding="utf-8"))
        else:
            stored = {}
        test_key = key or self.request.node.name
        current = stored.get(test_key)
        if current == normalized:
            return
        if self.plugin.update_snapshots:
            action = "updated" if test_key in stored else "created"
            stored[test_key] = normalized
            snapshot_path.parent.mkdir(parents=True, exist_ok=True)
            snapshot_path.write_text(
                json.dumps(stored, ensure_ascii=False, indent=2, sort_keys=True) + "\n",
                encoding="utf-8",
            )
            self.plugin.register_snapshot_change(snapshot_path, test_key, action)
        else:
            expected = json.dumps(current, ensure_ascii=False, indent=2, sort_keys=True)
            actual = json.dumps(normalized, ensure_ascii=False, indent=2, sort_keys=True)
            raise AssertionError(
                f"Snapshot mismatch for {test_key}\nExpected:\n{expected}\nActual:\n{actual}"
            )


@pytest.fixture
def snapshot(request: pytest.FixtureRequest) -> SnapshotManager:
    plugin = request.config._snapshot_plugin  # type: ignore[attr-defined]
    return SnapshotManager(request, plugin)


@pytest.fixture
def write_export(tmp_path: Path) -> Callable[..., Path]:
    def _write(payload: bytes, name: str = "export.xml") -> Path:
        path = tmp_path / name
        path.write_bytes(payload)
        return path

    return _write


@pytest.fixture
def zip_export(tmp_path: Path) -> Callable[..., Path]:
    def _write(
        payload: bytes,
        *,
        entry: str = "apple_health_export/export.xml",
        compression: int = zipfile.ZIP_DEFLATED,
        name: str = "export.zip",
        extra_entries: Mapping[str, bytes] | None = None,
    ) -> Path:
        path = tmp_path / name
        with zipfile.ZipFile(path, "w", compression=compression) as archive:
            for extra_name, extra_payload in (extra_entries or {}).items():
                archive.writestr(extra_name, extra_payload)
            archive.writestr(entry, payload)
        return path

    return _write


@pytest.fixture
def steps_and_heart_rate() -> bytes:
    return build_export(
        record(STEPS, "2024-01-01 10:00:00 +0000", 10),
        record(STEPS, "2024-01-01 09:00:00 +0000", 5),
        record(HEART_RATE, "2024-01-01 10:00:00 +0000", 70),
    )


@pytest.fixture
def pipeline_config() -> Callable[..., PipelineConfig]:
    def _builder(**overrides: Any) -> PipelineConfig:
        base: dict[str, Any] = {
            "extract_threads": 2,
            "transform_threads": 2,
            "load_threads": 2,
            "min_chunk_size": 64,
            "batch_size": 16,
            "channel_capacity": 4,
            "enable_progress_bar": False,
        }
        base.update(overrides)
        return PipelineConfig(**base)

    return _builder


@pytest.fixture
def temp_config_repository(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterable[ConfigRepository]:
    monkeypatch.setenv("HEALTH_ETL_HOME", str(tmp_path))
    locator = ConfigLocator(project_root=tmp_path)
    repository = ConfigRepository(locator)
    yield repository
