"""Configuration package exports."""

from .loader import ConfigLocator, ConfigRepository, apply_overrides
from .models import (
    Compression,
    FieldMismatch,
    HeaderPolicy,
    PipelineConfig,
    SinkFormat,
    SourceFormat,
)

__all__ = [
    "Compression",
    "ConfigLocator",
    "ConfigRepository",
    "FieldMismatch",
    "HeaderPolicy",
    "PipelineConfig",
    "SinkFormat",
    "SourceFormat",
    "apply_overrides",
]
