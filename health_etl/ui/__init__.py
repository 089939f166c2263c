"""User interaction helpers."""

from .progress import RateColumn, StageProgress

__all__ = ["RateColumn", "StageProgress"]
