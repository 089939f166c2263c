from __future__ import annotations

import zipfile
from pathlib import Path

import pytest

from export_builders import EPILOG, HEART_RATE, PROLOG, STEPS, build_export, column, many_records, read_archive, record
from health_etl.errors import (
    ConfigurationError,
    EncodingError,
    InputNotFoundError,
    PipelineError,
    SourceCorruptError,
    UnreadableFormatError,
)
from health_etl.orchestrator import EngineOrchestrator, PipelineState, check_paths


def _run(config, input_path: Path, output_path: Path):
    orchestrator = EngineOrchestrator(config)
    summary = orchestrator.run(input_path, output_path)
    assert orchestrator.state is PipelineState.DONE
    return summary


def test_steps_and_heart_rate_export(
    write_export, steps_and_heart_rate, pipeline_config, tmp_path: Path, snapshot
) -> None:
    output = tmp_path / "out.zip"
    summary = _run(pipeline_config(), write_export(steps_and_heart_rate), output)

    tables = read_archive(output)
    snapshot.assert_match({"entries": list(summary.entries), "tables": tables}, key="steps_and_heart_rate")
    assert column(tables["StepCount.csv"], "value") == ["5", "10"]
    assert summary.counters.records_skipped == 0
    assert summary.counters.entries_written == 4
    assert summary.state is PipelineState.DONE
    assert set(summary.timings) == {"extract", "group", "load"}


def test_malformed_record_is_skipped(write_export, pipeline_config, tmp_path: Path) -> None:
    elements = many_records(10_000)
    elements[5_000] = ' <Record type="HKQuantityTypeIdentifierMetric0" value="1" value="2"/>\n'
    source = write_export(build_export(*elements))
    output = tmp_path / "out.zip"
    summary = _run(
        pipeline_config(extract_threads=4, batch_size=256, min_chunk_size=4096),
        source,
        output,
    )

    tables = read_archive(output)
    data_rows = sum(len(rows) - 1 for name, rows in tables.items() if name.startswith("Metric"))
    assert data_rows == 9_999
    assert summary.counters.records_skipped == 1
    counters = summary.counters
    # root + ExportDate + metrics
    assert counters.records_extracted == 2 + 9_999
    assert counters.records_grouped == counters.records_extracted
    assert counters.groups_emitted == counters.entries_written == len(tables)
    assert counters.bytes_read == source.stat().st_size


def test_records_are_sorted_within_each_group(write_export, pipeline_config, tmp_path: Path) -> None:
    output = tmp_path / "out.zip"
    _run(pipeline_config(extract_threads=3, min_chunk_size=512), write_export(build_export(*many_records(2_000))), output)
    for name, table in read_archive(output).items():
        if name.startswith("Metric"):
            dates = column(table, "startDate")
            assert dates == sorted(dates)


def test_output_is_deterministic_across_thread_counts(write_export, pipeline_config, tmp_path: Path) -> None:
    source = write_export(build_export(*many_records(3_000)))
    archives = []
    for index, threads in enumerate((1, 2, 5)):
        output = tmp_path / f"out-{index}.zip"
        config = pipeline_config(
            extract_threads=threads,
            transform_threads=threads,
            load_threads=threads,
            min_chunk_size=1024,
        )
        _run(config, source, output)
        archives.append(output.read_bytes())
    assert archives[0] == archives[1] == archives[2]


def test_zip_inputs_match_bare_markup(
    write_export, zip_export, steps_and_heart_rate, pipeline_config, tmp_path: Path
) -> None:
    outputs = {}
    inputs = {
        "bare": write_export(steps_and_heart_rate),
        "deflated": zip_export(steps_and_heart_rate, name="deflated.zip"),
        "stored": zip_export(steps_and_heart_rate, name="stored.zip", compression=zipfile.ZIP_STORED),
    }
    for label, path in inputs.items():
        output = tmp_path / f"{label}-out.zip"
        _run(pipeline_config(), path, output)
        outputs[label] = output.read_bytes()
    assert outputs["bare"] == outputs["deflated"] == outputs["stored"]


def test_records_without_sort_key_go_last(write_export, pipeline_config, tmp_path: Path) -> None:
    payload = build_export(
        record(STEPS, None, "late-1"),
        record(STEPS, "2024-01-02", "b"),
        record(STEPS, "2024-01-01", "a"),
        record(STEPS, None, "late-2"),
    )
    output = tmp_path / "out.zip"
    _run(pipeline_config(), write_export(payload), output)
    table = read_archive(output)["StepCount.csv"]
    assert column(table, "value") == ["a", "b", "late-1", "late-2"]
    assert column(table, "startDate") == ["2024-01-01", "2024-01-02", "", ""]


def test_truncated_input_fails_without_output(write_export, pipeline_config, tmp_path: Path) -> None:
    payload = (PROLOG + "".join(many_records(500))).encode("utf-8")
    output = tmp_path / "out.zip"
    orchestrator = EngineOrchestrator(pipeline_config())
    with pytest.raises(PipelineError) as excinfo:
        orchestrator.run(write_export(payload[:-7]), output)

    assert excinfo.value.stage == "extracting"
    assert isinstance(excinfo.value.cause, SourceCorruptError)
    assert isinstance(excinfo.value.__cause__, SourceCorruptError)
    assert orchestrator.state is PipelineState.FAILED
    assert not output.exists()
    assert not output.with_name("out.zip.partial").exists()


def test_reject_policy_fails_during_loading(write_export, pipeline_config, tmp_path: Path) -> None:
    payload = build_export(record(STEPS, "2024-01-01", 1), record(STEPS, "2024-01-02", 2, device="Watch"))
    output = tmp_path / "out.zip"
    with pytest.raises(PipelineError) as excinfo:
        EngineOrchestrator(pipeline_config(field_mismatch="reject")).run(write_export(payload), output)
    assert excinfo.value.stage == "loading"
    assert isinstance(excinfo.value.cause, EncodingError)
    assert list(tmp_path.glob("out.zip*")) == []


def test_non_markup_input_is_unreadable(write_export, pipeline_config, tmp_path: Path) -> None:
    with pytest.raises(PipelineError) as excinfo:
        EngineOrchestrator(pipeline_config()).run(write_export(b"\x00\x01binary", "blob.bin"), tmp_path / "out.zip")
    assert isinstance(excinfo.value.cause, UnreadableFormatError)


def test_path_checks(write_export, tmp_path: Path) -> None:
    source = write_export(build_export(record(HEART_RATE, "2024", 60)))
    with pytest.raises(InputNotFoundError):
        check_paths(tmp_path / "absent.xml", tmp_path / "out.zip")
    with pytest.raises(ConfigurationError):
        check_paths(source, tmp_path / "missing-dir" / "out.zip")
    with pytest.raises(ConfigurationError):
        check_paths(source, source)
    check_paths(source, tmp_path / "out.zip")


def test_orchestrator_runs_once(write_export, steps_and_heart_rate, pipeline_config, tmp_path: Path) -> None:
    orchestrator = EngineOrchestrator(pipeline_config())
    orchestrator.run(write_export(steps_and_heart_rate), tmp_path / "out.zip")
    with pytest.raises(RuntimeError):
        orchestrator.run(write_export(steps_and_heart_rate), tmp_path / "again.zip")


def test_empty_root_produces_only_metadata_entries(write_export, pipeline_config, tmp_path: Path) -> None:
    output = tmp_path / "out.zip"
    summary = _run(pipeline_config(), write_export((PROLOG + EPILOG).encode("utf-8")), output)
    assert sorted(read_archive(output)) == ["ExportDate.csv", "HealthData.csv"]
    assert summary.counters.records_extracted == 2


def test_every_record_lands_in_its_group_exactly_once(write_export, pipeline_config, tmp_path: Path) -> None:
    count, types = 1_500, 7
    output = tmp_path / "out.zip"
    _run(pipeline_config(extract_threads=4, min_chunk_size=2048), write_export(build_export(*many_records(count, types))), output)

    tables = read_archive(output)
    for metric in range(types):
        values = sorted(int(value) for value in column(tables[f"Metric{metric}.csv"], "value"))
        assert values == [index for index in range(count) if index % types == metric]
