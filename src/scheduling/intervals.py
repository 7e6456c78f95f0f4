"""Half-open minute intervals on the UTC epoch-minute timeline."""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from src.utils import from_utc_minutes, to_utc_minutes


@dataclass(frozen=True, order=True)
class Interval:
    """``[start, end)`` in whole UTC epoch minutes.

    Back-to-back intervals do not overlap: ``[9:00, 10:00)`` and
    ``[10:00, 11:00)`` are compatible.
    """

    start: int
    end: int

    def __post_init__(self) -> None:
        if self.end <= self.start:
            raise ValueError(f"Interval end ({self.end}) must be after start ({self.start})")

    @classmethod
    def from_datetimes(cls, start: datetime, end: datetime) -> "Interval":
        return cls(to_utc_minutes(start), to_utc_minutes(end))

    @property
    def duration(self) -> int:
        return self.end - self.start

    def overlaps(self, other: "Interval") -> bool:
        return self.start < other.end and self.end > other.start

    def contains(self, other: "Interval") -> bool:
        return self.start <= other.start and other.end <= self.end

    def start_datetime(self) -> datetime:
        return from_utc_minutes(self.start)

    def end_datetime(self) -> datetime:
        return from_utc_minutes(self.end)


def merge_intervals(intervals: Iterable[Interval]) -> list[Interval]:
    """Union overlapping or touching intervals into a sorted, disjoint list."""
    merged: list[Interval] = []
    for current in sorted(intervals):
        if merged and current.start <= merged[-1].end:
            last = merged[-1]
            merged[-1] = Interval(last.start, max(last.end, current.end))
        else:
            merged.append(current)
    return merged


def peak_overlap(intervals: Iterable[tuple[Interval, int]], window: Interval) -> int:
    """Highest summed weight of ``intervals`` active at any instant inside ``window``."""
    events: list[tuple[int, int]] = []
    for interval, weight in intervals:
        if not interval.overlaps(window):
            continue
        events.append((max(interval.start, window.start), weight))
        events.append((min(interval.end, window.end), -weight))
    # Ends sort before starts at the same minute (half-open).
    events.sort(key=lambda e: (e[0], e[1]))
    peak = current = 0
    for _, delta in events:
        current += delta
        peak = max(peak, current)
    return peak
