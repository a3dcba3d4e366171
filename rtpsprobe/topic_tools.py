"""Helpers for the topic echo and delay commands: raw dumps and delay statistics."""

from __future__ import annotations

import math
from collections import deque
from collections.abc import Iterator
from dataclasses import dataclass


def hex_bytes(data: bytes) -> str:
    """Render raw bytes as contiguous lower-case hex digits."""
    return bytes(data).hex()


@dataclass(frozen=True)
class DelayStats:
    """Summary of the delays held in a window, in seconds."""

    average_seconds: float
    min_seconds: float
    max_seconds: float
    std_dev_seconds: float
    window: int


class DelayWindow:
    """Sliding window of the most recent ``capacity`` delay samples."""

    def __init__(self, capacity: int) -> None:
        if capacity < 0:
            raise ValueError(f"window capacity must not be negative, got {capacity}")
        self.capacity = capacity
        self._values: deque[float] = deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._values)

    def __iter__(self) -> Iterator[float]:
        return iter(self._values)

    def push(self, value: float) -> None:
        """Add a sample, dropping the oldest ones beyond the capacity."""
        self._values.append(float(value))

    def stats(self) -> DelayStats | None:
        """Mean, extremes and population standard deviation; None when empty."""
        if not self._values:
            return None
        window = len(self._values)
        average = math.fsum(self._values) / window
        variance = math.fsum((value - average) ** 2 for value in self._values) / window
        return DelayStats(
            average_seconds=average,
            min_seconds=min(self._values),
            max_seconds=max(self._values),
            std_dev_seconds=math.sqrt(variance),
            window=window,
        )


def format_delay_stats(stats: DelayStats) -> str:
    """The two report lines printed for a delay window."""
    return (
        f"average delay: {stats.average_seconds:.3f}\n"
        f"\tmin: {stats.min_seconds:.3f}s max: {stats.max_seconds:.3f}s "
        f"std dev: {stats.std_dev_seconds:.5f}s window: {stats.window}"
    )