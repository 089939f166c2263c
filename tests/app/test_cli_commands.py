from __future__ import annotations

from pathlib import Path

import pytest
from typer.testing import CliRunner

from export_builders import PROLOG, many_records
from health_etl.app import AppState, app
from health_etl.config import ConfigLocator, ConfigRepository
from health_etl.errors import ConfigurationError, EtlIOError, PipelineError
from health_etl.logging_conf import configure_logging

runner = CliRunner()


class StubOrchestrator:
    def __init__(self, error: Exception) -> None:
        self.error = error
        self.calls: list[tuple[Path, Path]] = []

    def run(self, input_path: Path, output_path: Path):
        self.calls.append((input_path, output_path))
        raise self.error


@pytest.fixture
def cli_state(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    def _install(factory=None) -> AppState:
        repository = ConfigRepository(ConfigLocator(project_root=tmp_path))
        state = AppState(repository=repository)
        if factory is not None:
            state.orchestrator_factory = factory
        monkeypatch.setattr("health_etl.app.build_state", lambda verbose: state)
        return state

    return _install


def test_convert_writes_archive(cli_state, write_export, steps_and_heart_rate, tmp_path: Path) -> None:
    cli_state()
    output = tmp_path / "out.zip"
    result = runner.invoke(
        app,
        ["convert", str(write_export(steps_and_heart_rate)), str(output), "--extract-threads", "2", "--no-progress"],
    )
    assert result.exit_code == 0, result.output
    assert output.exists()
    assert "Conversion summary" in result.output
    assert "Wrote 4 entries" in result.output


def test_convert_no_metrics_prints_skipped_count(cli_state, write_export, tmp_path: Path) -> None:
    cli_state()
    elements = many_records(50)
    elements[10] = ' <Record type="HKQuantityTypeIdentifierMetric0" value="1" value="2"/>\n'
    payload = (PROLOG + "".join(elements) + "</HealthData>\n").encode("utf-8")
    result = runner.invoke(
        app, ["convert", str(write_export(payload)), str(tmp_path / "out.zip"), "--no-metrics"]
    )
    assert result.exit_code == 0, result.output
    assert "Skipped records: 1" in result.output
    assert "Conversion summary" not in result.output


def test_convert_missing_input_exits_with_failure(cli_state, tmp_path: Path) -> None:
    cli_state()
    result = runner.invoke(app, ["convert", str(tmp_path / "absent.xml"), str(tmp_path / "out.zip")])
    assert result.exit_code == 1
    assert "Input not found" in result.output


def test_convert_missing_output_directory_is_usage_error(
    cli_state, write_export, steps_and_heart_rate, tmp_path: Path
) -> None:
    cli_state()
    result = runner.invoke(
        app, ["convert", str(write_export(steps_and_heart_rate)), str(tmp_path / "nope" / "out.zip")]
    )
    assert result.exit_code == 2


def test_convert_corrupt_input_exits_with_failure(cli_state, write_export, tmp_path: Path) -> None:
    cli_state()
    payload = (PROLOG + "".join(many_records(20))).encode("utf-8")
    output = tmp_path / "out.zip"
    result = runner.invoke(app, ["convert", str(write_export(payload)), str(output)])
    assert result.exit_code == 1
    assert "Conversion failed during extracting" in result.output
    assert not output.exists()


@pytest.mark.parametrize(
    "option",
    [["--extract-threads", "0"], ["--header-policy", "everything"], ["--compression", "zstd"]],
)
def test_invalid_option_values_are_usage_errors(cli_state, tmp_path: Path, option: list[str]) -> None:
    cli_state()
    result = runner.invoke(app, ["convert", str(tmp_path / "in.xml"), str(tmp_path / "out.zip"), *option])
    assert result.exit_code == 2


def test_broken_config_file_is_usage_error(cli_state, write_export, steps_and_heart_rate, tmp_path: Path) -> None:
    cli_state()
    config_path = tmp_path / "pipeline.yaml"
    config_path.write_text("batch_size: 0\n", encoding="utf-8")
    result = runner.invoke(
        app,
        ["convert", str(write_export(steps_and_heart_rate)), str(tmp_path / "out.zip"), "--config", str(config_path)],
    )
    assert result.exit_code == 2
    assert "Configuration error" in result.output


@pytest.mark.parametrize(
    ("error", "code"),
    [
        (PipelineError("loading", EtlIOError("disk full")), 1),
        (PipelineError("extracting", ConfigurationError("bad pool")), 2),
        (EtlIOError("cannot read"), 1),
    ],
)
def test_pipeline_errors_map_to_exit_codes(cli_state, tmp_path: Path, error: Exception, code: int) -> None:
    stub = StubOrchestrator(error)
    cli_state(factory=lambda config, progress, verbose: stub)
    result = runner.invoke(app, ["convert", str(tmp_path / "in.xml"), str(tmp_path / "out.zip")])
    assert result.exit_code == code
    assert len(stub.calls) == 1


def test_thread_options_override_config(cli_state, tmp_path: Path) -> None:
    seen = {}

    def _factory(config, progress, verbose):
        seen["config"] = config
        seen["progress"] = progress
        return StubOrchestrator(EtlIOError("stop"))

    cli_state(factory=_factory)
    runner.invoke(
        app,
        [
            "convert",
            str(tmp_path / "in.xml"),
            str(tmp_path / "out.zip"),
            "--extract-threads",
            "3",
            "--load-threads",
            "5",
            "--header-policy",
            "union",
            "--no-progress",
        ],
    )
    config = seen["config"]
    assert (config.extract_threads, config.transform_threads, config.load_threads) == (3, None, 5)
    assert config.header_policy.value == "union"
    assert seen["progress"].enabled is False


def test_log_show_and_list() -> None:
    configure_logging().info("cli_test_marker")

    listed = runner.invoke(app, ["log", "list"])
    assert listed.exit_code == 0
    assert "etl.log" in listed.output

    shown = runner.invoke(app, ["log", "show", "etl", "--lines", "50"])
    assert shown.exit_code == 0
    assert "cli_test_marker" in shown.output

    missing = runner.invoke(app, ["log", "show", "nope"])
    assert missing.exit_code == 1
