# access_tracker.py
"""Access tracking for SleepMe API requests.

This module provides the AccessTracker class that tracks:
- Request counts per priority per minute and per hour
- Last request timestamp per priority
- Total request counts

The figures show how the scarce request budget is actually spent, e.g.
how much of it goes to background polling versus user commands.
"""

import logging
import time
from collections import deque

from pydantic import BaseModel, Field

_LOGGER = logging.getLogger(__name__)


class AccessStats(BaseModel):
    """Request statistics of one priority class.

    Attributes:
        access_timestamps: FIFO queue of request timestamps (monotonic time).
        total_count: Total number of requests since creation.
        last_access_time: Timestamp of most recent request.

    Example:
        >>> stats = AccessStats()
        >>> stats.record_access(time.monotonic())
        >>> stats.total_count
        1
    """

    model_config = {"validate_assignment": True, "arbitrary_types_allowed": True}

    access_timestamps: deque[float] = Field(
        default_factory=deque,
        description="FIFO queue of request timestamps (monotonic time)",
    )
    total_count: int = Field(default=0, ge=0, description="Total number of requests since creation")
    last_access_time: float = Field(default=0.0, ge=0.0, description="Timestamp of most recent request")

    def record_access(self, timestamp: float) -> None:
        """Record a new request.

        Args:
            timestamp: Monotonic timestamp of the request.
        """
        self.access_timestamps.append(timestamp)
        self.total_count += 1
        self.last_access_time = timestamp

    def cleanup_old_entries(self, cutoff: float) -> int:
        """Remove entries older than cutoff.

        Returns:
            Number of entries removed.
        """
        removed = 0
        while self.access_timestamps and self.access_timestamps[0] < cutoff:
            self.access_timestamps.popleft()
            removed += 1
        return removed

    def count_since(self, cutoff: float) -> int:
        """Count requests at or after cutoff."""
        return sum(1 for ts in self.access_timestamps if ts >= cutoff)


class AccessTracker:
    """Tracks API requests grouped by a label such as the priority name."""

    MINUTE_WINDOW = 60.0  # seconds
    HOUR_WINDOW = 3600.0  # seconds

    def __init__(self):
        self._stats: dict[str, AccessStats] = {}

    def _get_current_time(self) -> float:
        """Get current monotonic time."""
        return time.monotonic()

    def record_access(self, label: str) -> None:
        """Record a request for a label.

        Args:
            label: Group of the request, e.g. "critical".
        """
        current_time = self._get_current_time()
        stats = self._stats.setdefault(label, AccessStats())
        stats.record_access(current_time)
        stats.cleanup_old_entries(current_time - self.HOUR_WINDOW)
        _LOGGER.debug("Recorded %s request, total=%d", label, stats.total_count)

    def get_accesses_per_minute(self, label: str) -> int:
        """Get the number of requests in the last minute for a label."""
        stats = self._stats.get(label)
        if stats is None:
            return 0
        return stats.count_since(self._get_current_time() - self.MINUTE_WINDOW)

    def get_accesses_per_hour(self, label: str) -> int:
        """Get the number of requests in the last hour for a label."""
        stats = self._stats.get(label)
        if stats is None:
            return 0
        return stats.count_since(self._get_current_time() - self.HOUR_WINDOW)

    def get_total_accesses(self, label: str) -> int:
        """Get the total number of requests for a label since startup."""
        stats = self._stats.get(label)
        return stats.total_count if stats is not None else 0

    def get_total_accesses_per_minute(self) -> int:
        """Get requests in the last minute across all labels."""
        return sum(self.get_accesses_per_minute(label) for label in self._stats)

    def get_summary(self) -> dict:
        """Get per-label request statistics.

        Returns:
            Dictionary mapping labels to per_minute, per_hour and total counts.
        """
        return {
            label: {
                "per_minute": self.get_accesses_per_minute(label),
                "per_hour": self.get_accesses_per_hour(label),
                "total": self.get_total_accesses(label),
            }
            for label in self._stats
        }
