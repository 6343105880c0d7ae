"""Position history storage."""

from pyfleettrack.storage.partitions import PartitionRange, add_months, month_start
from pyfleettrack.storage.store import InMemoryPositionStore, PositionStore

__all__ = [
    "InMemoryPositionStore",
    "PartitionRange",
    "PositionStore",
    "add_months",
    "month_start",
]
