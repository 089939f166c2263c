"""Extractor SPI and implementations."""

from .apple_health import AppleHealthExtractor, map_health_element
from .base import BaseExtractor
from .markup import MarkupExtractor

__all__ = ["AppleHealthExtractor", "BaseExtractor", "MarkupExtractor", "map_health_element"]
