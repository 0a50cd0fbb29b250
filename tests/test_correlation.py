"""
╔══════════════════════════════════════════╗
║  MAILBRIDGE — Test Suite: Correlation    ║
╚══════════════════════════════════════════╝

Tests pending-request resolution, per-entry deadlines,
late responses, cancellation cleanup and connection
abandonment.
"""

import asyncio
import os
import sys
import unittest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
from relay.correlation import CorrelationTable
from relay.errors import RequestTimeout, WorkerDisconnected


def _run_async(coro):
    """Run an async function synchronously for testing."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


class TestResolve(unittest.TestCase):

    def test_resolve_completes_future_and_removes_entry(self):
        async def scenario():
            table = CorrelationTable()
            future = table.register("r1", "list_accounts", 5)
            self.assertIn("r1", table)
            self.assertTrue(table.resolve("r1", {"success": True}))
            self.assertNotIn("r1", table)
            return await future

        self.assertEqual(_run_async(scenario()), {"success": True})

    def test_get_exposes_pending_details(self):
        async def scenario():
            table = CorrelationTable()
            table.register("r1", "read_email", 5, connection_id="c1")
            pending = table.get("r1")
            self.assertEqual(pending.command_type, "read_email")
            self.assertEqual(pending.connection_id, "c1")
            table.resolve("r1", {})
            self.assertIsNone(table.get("r1"))

        _run_async(scenario())

    def test_responses_pair_by_id_not_order(self):
        async def scenario():
            table = CorrelationTable()
            first = table.register("a", "list_accounts", 5)
            second = table.register("b", "list_folders", 5)
            table.resolve("b", "for-b")
            table.resolve("a", "for-a")
            return await first, await second

        self.assertEqual(_run_async(scenario()), ("for-a", "for-b"))

    def test_duplicate_id_rejected(self):
        async def scenario():
            table = CorrelationTable()
            table.register("dup", "x", 5)
            with self.assertRaises(ValueError):
                table.register("dup", "x", 5)
            self.assertEqual(len(table), 1)
            table.discard("dup")

        _run_async(scenario())

    def test_unknown_id_is_noop(self):
        async def scenario():
            table = CorrelationTable()
            self.assertFalse(table.resolve("missing", {}))
            self.assertFalse(table.reject("missing", RuntimeError()))
            self.assertFalse(table.discard("missing"))

        _run_async(scenario())


class TestTimeout(unittest.TestCase):

    def test_entry_expires_with_request_timeout(self):
        async def scenario():
            table = CorrelationTable()
            future = table.register("slow", "search_emails", 0.05)
            with self.assertRaises(RequestTimeout) as ctx:
                await future
            self.assertNotIn("slow", table)
            return ctx.exception

        exc = _run_async(scenario())
        self.assertEqual(exc.request_id, "slow")
        self.assertIn("Request timeout", str(exc))

    def test_late_response_after_timeout_is_dropped(self):
        async def scenario():
            table = CorrelationTable()
            future = table.register("late", "read_email", 0.05)
            with self.assertRaises(RequestTimeout):
                await future
            return table.resolve("late", {"success": True})

        self.assertFalse(_run_async(scenario()))

    def test_resolve_cancels_deadline(self):
        async def scenario():
            table = CorrelationTable()
            future = table.register("fast", "list_accounts", 0.05)
            table.resolve("fast", "ok")
            await asyncio.sleep(0.1)
            return future.result()

        self.assertEqual(_run_async(scenario()), "ok")


class TestCleanup(unittest.TestCase):

    def test_cancelled_waiter_releases_entry(self):
        async def scenario():
            table = CorrelationTable()
            future = table.register("gone", "list_accounts", 5)
            future.cancel()
            await asyncio.sleep(0)
            return len(table)

        self.assertEqual(_run_async(scenario()), 0)

    def test_abandon_connection_rejects_only_its_entries(self):
        async def scenario():
            table = CorrelationTable()
            mine = table.register("m", "list_accounts", 5, connection_id="c1")
            other = table.register("o", "list_accounts", 5, connection_id="c2")
            count = table.abandon_connection("c1", lambda rid: WorkerDisconnected(rid))
            with self.assertRaises(WorkerDisconnected):
                await mine
            self.assertFalse(other.done())
            self.assertIn("o", table)
            table.discard("o")
            return count

        self.assertEqual(_run_async(scenario()), 1)


if __name__ == "__main__":
    unittest.main()
