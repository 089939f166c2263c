"""Engine components orchestrating extract → group → load."""

from .channel import BoundedChannel, ChannelClosed, CountdownLatch, OrderedHandoff
from .extraction import ExtractionEngine, ExtractionSummary, MarkupElement
from .grouping import FinalizedGroups, GroupingEngine, ShardedGroupMap
from .loading import LoadEngine, LoadResult, LoadSummary
from .records import Group, PipelineCounters, Record, StageCounter, merge_counters
from .source import ByteSource, open_source
from .thread_pool import ThreadPoolManager

__all__ = [
    "BoundedChannel",
    "ByteSource",
    "ChannelClosed",
    "CountdownLatch",
    "ExtractionEngine",
    "ExtractionSummary",
    "FinalizedGroups",
    "Group",
    "GroupingEngine",
    "LoadEngine",
    "LoadResult",
    "LoadSummary",
    "MarkupElement",
    "OrderedHandoff",
    "PipelineCounters",
    "Record",
    "ShardedGroupMap",
    "StageCounter",
    "ThreadPoolManager",
    "merge_counters",
    "open_source",
]
