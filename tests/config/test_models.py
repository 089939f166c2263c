from __future__ import annotations

import pytest
from pydantic import ValidationError

from health_etl.config import Compression, FieldMismatch, HeaderPolicy, PipelineConfig
from health_etl.engine.thread_pool import cpu_workers


def test_pipeline_config_defaults(snapshot) -> None:
    snapshot.assert_match(PipelineConfig().model_dump(mode="json"), key="pipeline_config_defaults")


def test_unset_thread_counts_resolve_to_cpu_count() -> None:
    config = PipelineConfig(extract_threads=3)
    assert config.resolved_threads("extract") == 3
    assert config.resolved_threads("transform") == cpu_workers()
    with pytest.raises(ValueError):
        config.resolved_threads("publish")


@pytest.mark.parametrize(
    "field",
    ["extract_threads", "transform_threads", "load_threads", "channel_capacity", "batch_size", "reorder_window"],
)
def test_sizes_must_be_positive(field: str) -> None:
    with pytest.raises(ValidationError):
        PipelineConfig(**{field: 0})


def test_policies_are_parsed_from_strings() -> None:
    config = PipelineConfig(header_policy="union", field_mismatch="reject", compression="stored")
    assert config.header_policy is HeaderPolicy.UNION
    assert config.field_mismatch is FieldMismatch.REJECT
    assert config.compression is Compression.STORED
    with pytest.raises(ValidationError):
        PipelineConfig(header_policy="everything")


def test_compress_level_is_checked_against_method() -> None:
    assert PipelineConfig(compress_level=9).compress_level == 9
    with pytest.raises(ValidationError):
        PipelineConfig(compress_level=11)
    with pytest.raises(ValidationError):
        PipelineConfig(compression="bzip2", compress_level=0)


def test_entry_name_prefixes_accept_a_single_string() -> None:
    assert PipelineConfig(entry_name_prefixes="HK").entry_name_prefixes == ("HK",)
    with pytest.raises(ValidationError):
        PipelineConfig(input_entry_name="  ")


def test_config_is_frozen() -> None:
    config = PipelineConfig()
    with pytest.raises(ValidationError):
        config.batch_size = 5  # type: ignore[misc]
