"""Sink SPI and implementations."""

from .base import BaseSink, RenderedEntry
from .csv_zip import CsvZipSink

__all__ = ["BaseSink", "CsvZipSink", "RenderedEntry"]
