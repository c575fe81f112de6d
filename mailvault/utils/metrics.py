"""
Metrics Collection Module
Tracks sync throughput, cycle durations and error counts
"""

from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Deque


@dataclass
class SyncMetrics:
    """
    Operational counters for the sync service.

    Shared by every account the process syncs; all updates happen on the
    event loop thread, so no locking is needed.

    INDUSTRY CONTEXT: These numbers are what a dashboard would plot. The
    status command prints get_summary(), and the same dict can be shipped to
    Prometheus or CloudWatch by an exporter.
    """

    # Messages newly stored since startup
    messages_synced: int = 0

    # Messages skipped before download because they exceeded the size ceiling
    messages_skipped: int = 0

    # Attachments not written (oversized or unwritable)
    attachments_skipped: int = 0

    # Completed account cycles, split by outcome
    cycles: Counter = field(default_factory=Counter)

    # SECURITY STORY: bounded deque so a long-running process cannot grow
    # this without limit
    cycle_seconds: Deque[float] = field(default_factory=lambda: deque(maxlen=1000))

    # Count of errors by type
    errors_count: Counter = field(default_factory=Counter)

    # When metrics collection started
    start_time: datetime = field(default_factory=datetime.now)

    def record_messages_synced(self, count: int = 1):
        self.messages_synced += count

    def record_message_skipped(self):
        self.messages_skipped += 1

    def record_attachment_skipped(self, count: int = 1):
        self.attachments_skipped += count

    def record_cycle(self, elapsed_seconds: float, succeeded: bool):
        """
        Record one finished account cycle.

        Args:
            elapsed_seconds: Wall time of the cycle
            succeeded: Whether the cycle ended with an empty error list
        """
        self.cycles["succeeded" if succeeded else "failed"] += 1
        self.cycle_seconds.append(elapsed_seconds)

    def record_error(self, error_type: str):
        """
        Record that an error occurred.

        Args:
            error_type: Type of error (e.g., "connection", "parse", "persistence")
        """
        self.errors_count[error_type] += 1

    def get_summary(self) -> Dict:
        """
        Get a summary of all metrics.

        Returns:
            Dictionary suitable for logging or export
        """
        stats = {}
        if self.cycle_seconds:
            sorted_times = sorted(self.cycle_seconds)
            n = len(sorted_times)
            stats = {
                "avg_s": sum(sorted_times) / n,
                "min_s": sorted_times[0],
                "max_s": sorted_times[-1],
                "p50_s": sorted_times[n // 2],
                "p95_s": sorted_times[int(n * 0.95)] if n > 1 else sorted_times[0],
            }

        return {
            "uptime_seconds": (datetime.now() - self.start_time).total_seconds(),
            "messages_synced": self.messages_synced,
            "messages_skipped": self.messages_skipped,
            "attachments_skipped": self.attachments_skipped,
            "cycles": dict(self.cycles),
            "cycle_time_stats": stats,
            "errors": dict(self.errors_count),
        }

    def reset(self):
        """Reset all metrics to initial state."""
        self.messages_synced = 0
        self.messages_skipped = 0
        self.attachments_skipped = 0
        self.cycles.clear()
        self.cycle_seconds.clear()
        self.errors_count.clear()
        self.start_time = datetime.now()
