"""Calendar-month partition arithmetic for position history."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime

from pyfleettrack.models._base import parse_timestamp

DEFAULT_TABLE = "position_history"


def month_start(value: datetime) -> datetime:
    """First instant of the UTC calendar month containing *value*."""
    ts = parse_timestamp(value)
    if ts is None:
        raise ValueError("timestamp is required")
    return datetime(ts.year, ts.month, 1, tzinfo=UTC)


def add_months(value: datetime, months: int) -> datetime:
    """Shift a month start by *months* (may be negative)."""
    start = month_start(value)
    index = start.year * 12 + (start.month - 1) + months
    return datetime(index // 12, index % 12 + 1, 1, tzinfo=UTC)


@dataclass(frozen=True, order=True)
class PartitionRange:
    """Half-open month range ``[start, end)``."""

    start: datetime
    end: datetime

    @classmethod
    def for_instant(cls, value: datetime) -> PartitionRange:
        start = month_start(value)
        return cls(start, add_months(start, 1))

    def contains(self, value: datetime) -> bool:
        return self.start <= value < self.end

    def overlaps(self, start: datetime, end: datetime) -> bool:
        """True when the closed window ``[start, end]`` intersects this range."""
        return start < self.end and end >= self.start

    def next(self) -> PartitionRange:
        return PartitionRange(self.end, add_months(self.end, 1))

    def previous(self) -> PartitionRange:
        return PartitionRange(add_months(self.start, -1), self.start)

    def name(self, table: str = DEFAULT_TABLE) -> str:
        """Physical partition name, e.g. ``position_history_y2026m10``."""
        return f"{table}_y{self.start.year:04d}m{self.start.month:02d}"


def months_between(first: PartitionRange, last: PartitionRange) -> list[PartitionRange]:
    """Contiguous ranges from *first* through *last* inclusive."""
    ranges: list[PartitionRange] = []
    current = first
    while current.start <= last.start:
        ranges.append(current)
        current = current.next()
    return ranges
