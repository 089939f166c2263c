"""Exception hierarchy for the ETL pipeline.

Every stage raises its own error type so the orchestrator can name the
failing stage. Only ``RecordParseError`` is recovered locally; the rest
terminate the run.
"""

from __future__ import annotations


class EtlError(Exception):
    """Base exception for all pipeline failures."""


class ConfigurationError(EtlError):
    """Raised for invalid pool sizing, policies or path arguments."""


class InputNotFoundError(EtlError):
    """Raised when the input path does not exist."""


class UnreadableFormatError(EtlError):
    """Raised when the input is neither a markup file nor a usable container."""


class SourceRangeError(EtlError, IndexError):
    """Raised when a byte window exceeds the source length."""


class EtlIOError(EtlError):
    """Raised for read/write failures against the source or destination."""


class SourceCorruptError(EtlError):
    """Raised for structural corruption that makes the whole input unusable."""

    def __init__(self, offset: int, reason: str) -> None:
        self.offset = offset
        self.reason = reason
        super().__init__(f"corrupt source at offset {offset}: {reason}")


class RecordParseError(EtlError):
    """Raised for a single malformed record; callers skip it and continue."""

    def __init__(self, offset: int, reason: str) -> None:
        self.offset = offset
        self.reason = reason
        super().__init__(f"malformed record at offset {offset}: {reason}")


class EncodingError(EtlError):
    """Raised when a record cannot be rendered into its group's row schema."""

    def __init__(self, key: str, seq: int, reason: str) -> None:
        self.key = key
        self.seq = seq
        self.reason = reason
        super().__init__(f"cannot encode record {seq} of group '{key}': {reason}")


class PipelineCancelled(EtlError):
    """Raised inside workers once the run-wide cancellation signal is set."""


class PipelineError(EtlError):
    """Single top-level failure surfaced by the orchestrator.

    The originating exception is chained as ``__cause__``.
    """

    def __init__(self, stage: str, cause: BaseException) -> None:
        self.stage = stage
        self.cause = cause
        super().__init__(f"pipeline failed during {stage}: {cause}")


__all__ = [
    "ConfigurationError",
    "EncodingError",
    "EtlError",
    "EtlIOError",
    "InputNotFoundError",
    "PipelineCancelled",
    "PipelineError",
    "RecordParseError",
    "SourceCorruptError",
    "SourceRangeError",
    "UnreadableFormatError",
]
