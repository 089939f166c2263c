"""Pydantic models describing a pipeline run."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..engine.thread_pool import STAGES, cpu_workers
from ..sinks.base import DEFAULT_ENTRY_PREFIXES


class SourceFormat(str, Enum):
    """Supported input formats."""

    APPLE_HEALTH = "apple_health"


class SinkFormat(str, Enum):
    """Supported output formats."""

    CSV_ZIP = "csv_zip"


class HeaderPolicy(str, Enum):
    """How a group's CSV header is chosen."""

    FIRST_RECORD = "first_record"
    UNION = "union"


class FieldMismatch(str, Enum):
    """What to do with records that do not fit their group's header."""

    PAD = "pad"
    REJECT = "reject"


class Compression(str, Enum):
    DEFLATED = "deflated"
    STORED = "stored"
    BZIP2 = "bzip2"
    LZMA = "lzma"


class PipelineConfig(BaseModel):
    """Pool sizing, buffering and output controls for one conversion."""

    model_config = ConfigDict(frozen=True)

    extract_threads: int | None = Field(default=None, ge=1)
    transform_threads: int | None = Field(default=None, ge=1)
    load_threads: int | None = Field(default=None, ge=1)
    channel_capacity: int = Field(default=64, ge=1, description="Channel depth, counted in batches.")
    batch_size: int = Field(default=1024, ge=1)
    min_chunk_size: int = Field(default=256 * 1024, ge=1)
    group_shards: int = Field(default=32, ge=1)
    reorder_window: int = Field(default=64, ge=1)
    input_entry_name: str = "export.xml"
    source_format: SourceFormat = SourceFormat.APPLE_HEALTH
    sink_format: SinkFormat = SinkFormat.CSV_ZIP
    header_policy: HeaderPolicy = HeaderPolicy.FIRST_RECORD
    field_mismatch: FieldMismatch = FieldMismatch.PAD
    compression: Compression = Compression.DEFLATED
    compress_level: int | None = None
    entry_name_prefixes: tuple[str, ...] = DEFAULT_ENTRY_PREFIXES
    enable_progress_bar: bool = True
    show_metrics: bool = True

    @field_validator("entry_name_prefixes", mode="before")
    @classmethod
    def _coerce_prefixes(cls, value: Any) -> tuple[str, ...]:
        if isinstance(value, str):
            return (value,)
        return tuple(value)

    @field_validator("input_entry_name")
    @classmethod
    def _validate_entry_name(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("input_entry_name must not be empty")
        return value

    @model_validator(mode="after")
    def _validate_compress_level(self) -> "PipelineConfig":
        if self.compress_level is None:
            return self
        if self.compression is Compression.DEFLATED and not 0 <= self.compress_level <= 9:
            raise ValueError("compress_level for deflated must be within 0..9")
        if self.compression is Compression.BZIP2 and not 1 <= self.compress_level <= 9:
            raise ValueError("compress_level for bzip2 must be within 1..9")
        return self

    def resolved_threads(self, stage: str) -> int:
        """Worker count for ``stage``; unset values fall back to the CPU count."""

        if stage not in STAGES:
            raise ValueError(f"Unknown stage: {stage}")
        value = getattr(self, f"{stage}_threads")
        return value or cpu_workers()


__all__ = [
    "Compression",
    "FieldMismatch",
    "HeaderPolicy",
    "PipelineConfig",
    "SinkFormat",
    "SourceFormat",
]
