import unittest
from unittest.mock import AsyncMock

from mailvault.modules.exceptions import SyncConnectionError
from mailvault.modules.retry_policy import ReconnectPolicy


class TestReconnectPolicy(unittest.IsolatedAsyncioTestCase):

    def test_fixed_delay_by_default(self):
        policy = ReconnectPolicy(delay_seconds=5)

        self.assertEqual([policy.delay_for(n) for n in (1, 2, 3)], [5, 5, 5])

    def test_backoff_is_capped(self):
        policy = ReconnectPolicy(delay_seconds=2, backoff_multiplier=3, max_delay=10)

        self.assertEqual([policy.delay_for(n) for n in (1, 2, 3)], [2, 6, 10])

    def test_invalid_settings(self):
        with self.assertRaises(ValueError):
            ReconnectPolicy(max_attempts=0)
        with self.assertRaises(ValueError):
            ReconnectPolicy(delay_seconds=-1)

    async def test_waits_before_every_attempt(self):
        sleep = AsyncMock()
        operation = AsyncMock(side_effect=[SyncConnectionError("reset"), "ok"])

        result = await ReconnectPolicy(max_attempts=3, delay_seconds=5).run(operation, sleep=sleep)

        self.assertEqual(result, "ok")
        self.assertEqual(operation.await_count, 2)
        self.assertEqual([c.args[0] for c in sleep.await_args_list], [5, 5])

    async def test_gives_up_after_max_attempts(self):
        sleep = AsyncMock()
        operation = AsyncMock(side_effect=SyncConnectionError("reset"))

        with self.assertRaises(SyncConnectionError) as ctx:
            await ReconnectPolicy(max_attempts=3, delay_seconds=0).run(operation, "Reconnect", sleep=sleep)

        self.assertEqual(operation.await_count, 3)
        self.assertIn("Reconnect failed after 3 attempts", str(ctx.exception))
        self.assertFalse(ctx.exception.retryable)
        self.assertIsInstance(ctx.exception.__cause__, SyncConnectionError)

    async def test_each_failed_attempt_is_logged(self):
        operation = AsyncMock(side_effect=[SyncConnectionError("reset"), "ok"])

        with self.assertLogs("mailvault.modules.retry_policy", level="WARNING") as logs:
            await ReconnectPolicy(max_attempts=3, delay_seconds=0).run(operation, "Reconnect", sleep=AsyncMock())

        self.assertEqual(len(logs.records), 1)
        self.assertEqual(logs.records[0].getMessage(), "Reconnect attempt 1/3 failed: reset")

    async def test_non_retryable_error_is_raised_immediately(self):
        operation = AsyncMock(side_effect=SyncConnectionError("bad password", retryable=False))

        with self.assertRaises(SyncConnectionError) as ctx:
            await ReconnectPolicy(max_attempts=3).run(operation, sleep=AsyncMock())

        self.assertEqual(operation.await_count, 1)
        self.assertIn("bad password", str(ctx.exception))

    async def test_other_errors_are_not_retried(self):
        operation = AsyncMock(side_effect=ValueError("bug"))

        with self.assertRaises(ValueError):
            await ReconnectPolicy(max_attempts=3).run(operation, sleep=AsyncMock())

        self.assertEqual(operation.await_count, 1)


if __name__ == "__main__":
    unittest.main()
