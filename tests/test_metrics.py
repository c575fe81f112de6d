"""
Tests for metrics collection functionality
"""

import unittest
from datetime import datetime

from mailvault.utils.metrics import SyncMetrics


class TestSyncMetrics(unittest.TestCase):
    """Test cases for SyncMetrics class"""

    def setUp(self):
        """Set up test fixtures"""
        self.metrics = SyncMetrics()

    def test_initialization(self):
        """Test that metrics are initialized correctly"""
        self.assertEqual(self.metrics.messages_synced, 0)
        self.assertEqual(len(self.metrics.cycles), 0)
        self.assertEqual(len(self.metrics.cycle_seconds), 0)
        self.assertEqual(len(self.metrics.errors_count), 0)
        self.assertIsInstance(self.metrics.start_time, datetime)

    def test_record_messages_synced(self):
        self.metrics.record_messages_synced(3)
        self.metrics.record_messages_synced()

        self.assertEqual(self.metrics.messages_synced, 4)

    def test_record_skips(self):
        self.metrics.record_message_skipped()
        self.metrics.record_attachment_skipped(2)

        self.assertEqual(self.metrics.messages_skipped, 1)
        self.assertEqual(self.metrics.attachments_skipped, 2)

    def test_record_cycle(self):
        self.metrics.record_cycle(1.5, True)
        self.metrics.record_cycle(4.0, False)
        self.metrics.record_cycle(2.0, True)

        self.assertEqual(self.metrics.cycles["succeeded"], 2)
        self.assertEqual(self.metrics.cycles["failed"], 1)

    def test_cycle_times_are_bounded(self):
        """Only the most recent 1000 durations are kept"""
        for i in range(1500):
            self.metrics.record_cycle(float(i), True)

        self.assertEqual(len(self.metrics.cycle_seconds), 1000)
        self.assertEqual(self.metrics.cycle_seconds[0], 500.0)

    def test_record_error(self):
        self.metrics.record_error("connection")
        self.metrics.record_error("connection")
        self.metrics.record_error("parse")

        self.assertEqual(self.metrics.errors_count["connection"], 2)
        self.assertEqual(self.metrics.errors_count["parse"], 1)

    def test_get_summary(self):
        self.metrics.record_messages_synced(5)
        self.metrics.record_cycle(1.0, True)
        self.metrics.record_cycle(3.0, False)
        self.metrics.record_error("parse")

        summary = self.metrics.get_summary()

        self.assertEqual(summary["messages_synced"], 5)
        self.assertEqual(summary["cycles"], {"succeeded": 1, "failed": 1})
        self.assertEqual(summary["cycle_time_stats"]["avg_s"], 2.0)
        self.assertEqual(summary["cycle_time_stats"]["min_s"], 1.0)
        self.assertEqual(summary["cycle_time_stats"]["max_s"], 3.0)
        self.assertEqual(summary["errors"], {"parse": 1})
        self.assertGreaterEqual(summary["uptime_seconds"], 0)

    def test_summary_without_cycles(self):
        self.assertEqual(self.metrics.get_summary()["cycle_time_stats"], {})

    def test_reset(self):
        self.metrics.record_messages_synced(5)
        self.metrics.record_cycle(1.0, True)
        self.metrics.record_error("parse")

        self.metrics.reset()

        self.assertEqual(self.metrics.messages_synced, 0)
        self.assertEqual(len(self.metrics.cycles), 0)
        self.assertEqual(len(self.metrics.cycle_seconds), 0)
        self.assertEqual(len(self.metrics.errors_count), 0)


if __name__ == '__main__':
    unittest.main()
