"""
Tests for multiplexer.py - ordering, coalescing and supersede policies.

A FakeWire stands in for the worker: it records what was written and
tracks how many requests are outstanding, so the tests can assert that
the multiplexer never puts a second request on the wire.
"""

import asyncio
import unittest

from tgsdaemon.core.errors import ProcessExited, Superseded, WriteFailed
from tgsdaemon.daemon.multiplexer import (
    FifoMultiplexer,
    PendingRequest,
    RequestMultiplexer,
    SingleSlotMultiplexer,
    create_multiplexer,
)
from tgsdaemon.daemon.protocol import ResultEnvelope


async def spin(times=10):
    """Let scheduled dispatch tasks run."""
    for _ in range(times):
        await asyncio.sleep(0)


class FakeWire:
    """Records requests and answers them in order."""

    def __init__(self):
        self.sent = []
        self.answered = 0
        self.outstanding = 0
        self.max_outstanding = 0
        self.failures = {}

    async def send(self, request):
        if request.key in self.failures:
            raise self.failures[request.key]
        self.sent.append((request.key, request.payload))
        self.outstanding += 1
        self.max_outstanding = max(self.max_outstanding, self.outstanding)

    def reply(self, multiplexer, **fields):
        key, _ = self.sent[self.answered]
        self.answered += 1
        self.outstanding -= 1
        multiplexer.on_response(ResultEnvelope(success=True, file=key, **fields))


class TestFifoMultiplexer(unittest.IsolatedAsyncioTestCase):
    """Test cases for the default FIFO policy."""

    def setUp(self):
        self.wire = FakeWire()
        self.mux = FifoMultiplexer(self.wire.send)

    async def test_only_one_request_on_the_wire(self):
        tasks = [asyncio.create_task(self.mux.submit(f"f{i}.tgs", f"content {i}")) for i in range(5)]
        await spin()
        self.assertEqual(len(self.wire.sent), 1)
        self.assertEqual(self.mux.pending_count, 5)

        for _ in range(5):
            self.wire.reply(self.mux)
            await spin()

        results = await asyncio.gather(*tasks)
        self.assertEqual([r.file for r in results], [f"f{i}.tgs" for i in range(5)])
        self.assertEqual(self.wire.max_outstanding, 1)
        self.assertEqual(self.mux.counters.requests_sent, 5)
        self.assertEqual(self.mux.counters.responses_received, 5)

    async def test_results_complete_in_submission_order(self):
        completed = []
        tasks = []
        for name in ("c.tgs", "a.tgs", "b.tgs"):
            task = asyncio.create_task(self.mux.submit(name, "x"))
            task.add_done_callback(lambda t, name=name: completed.append(name))
            tasks.append(task)
        await spin()

        for _ in range(3):
            self.wire.reply(self.mux)
            await spin()

        await asyncio.gather(*tasks)
        self.assertEqual(completed, ["c.tgs", "a.tgs", "b.tgs"])
        self.assertEqual([key for key, _ in self.wire.sent], ["c.tgs", "a.tgs", "b.tgs"])

    async def test_queued_requests_for_same_key_coalesce(self):
        first = asyncio.create_task(self.mux.submit("x.tgs", "x"))
        a1 = asyncio.create_task(self.mux.submit("a.tgs", "v1"))
        a2 = asyncio.create_task(self.mux.submit("a.tgs", "v2"))
        await spin()
        self.assertEqual(self.wire.sent, [("x.tgs", "x")])

        self.wire.reply(self.mux)
        await spin()
        # The queued entry carries the newest content
        self.assertEqual(self.wire.sent[1], ("a.tgs", "v2"))

        self.wire.reply(self.mux, schemas=3)
        await spin()

        self.assertEqual((await first).file, "x.tgs")
        result1, result2 = await a1, await a2
        self.assertIs(result1, result2)
        self.assertEqual(result1.schemas, 3)
        self.assertEqual(len(self.wire.sent), 2)
        self.assertEqual(self.mux.counters.requests_coalesced, 1)

    async def test_identical_request_joins_in_flight_entry(self):
        a1 = asyncio.create_task(self.mux.submit("a.tgs", "same"))
        await spin()
        a2 = asyncio.create_task(self.mux.submit("a.tgs", "same"))
        await spin()
        self.assertEqual(self.mux.in_flight_key, "a.tgs")

        self.wire.reply(self.mux)
        await spin()

        self.assertIs(await a1, await a2)
        self.assertEqual(len(self.wire.sent), 1)

    async def test_changed_content_is_not_answered_with_stale_result(self):
        old = asyncio.create_task(self.mux.submit("a.tgs", "v1"))
        await spin()
        new = asyncio.create_task(self.mux.submit("a.tgs", "v2"))
        await spin()
        self.assertEqual(self.mux.pending_count, 1)

        self.wire.reply(self.mux, schemas=1)
        await spin()
        self.assertFalse(old.done())
        self.assertEqual(self.wire.sent[1], ("a.tgs", "v2"))

        self.wire.reply(self.mux, schemas=2)
        await spin()
        self.assertEqual((await old).schemas, 2)
        self.assertEqual((await new).schemas, 2)
        self.assertEqual(self.wire.max_outstanding, 1)

    async def test_resent_entry_keeps_its_place(self):
        a_old = asyncio.create_task(self.mux.submit("a.tgs", "v1"))
        await spin()
        b = asyncio.create_task(self.mux.submit("b.tgs", "x"))
        a_new = asyncio.create_task(self.mux.submit("a.tgs", "v2"))
        await spin()

        for _ in range(3):
            self.wire.reply(self.mux)
            await spin()

        self.assertEqual(
            self.wire.sent,
            [("a.tgs", "v1"), ("a.tgs", "v2"), ("b.tgs", "x")],
        )
        self.assertIs(await a_old, await a_new)
        self.assertEqual((await b).file, "b.tgs")

    async def test_write_failure_rejects_only_that_request(self):
        self.wire.failures["bad.tgs"] = WriteFailed("bad.tgs", "stdin closed")
        bad = asyncio.create_task(self.mux.submit("bad.tgs", "x"))
        good = asyncio.create_task(self.mux.submit("good.tgs", "y"))
        await spin()

        with self.assertRaises(WriteFailed):
            await bad
        self.assertEqual(self.wire.sent, [("good.tgs", "y")])

        self.wire.reply(self.mux)
        await spin()
        self.assertEqual((await good).file, "good.tgs")
        self.assertEqual(self.mux.counters.requests_failed, 1)

    async def test_os_error_on_send_becomes_write_failed(self):
        self.wire.failures["a.tgs"] = BrokenPipeError("Broken pipe")
        task = asyncio.create_task(self.mux.submit("a.tgs", "x"))
        await spin()

        with self.assertRaises(WriteFailed) as ctx:
            await task
        self.assertEqual(ctx.exception.key, "a.tgs")
        self.assertIsNone(self.mux.in_flight_key)

    async def test_fail_all_rejects_in_flight_and_queued(self):
        tasks = [asyncio.create_task(self.mux.submit(f"f{i}.tgs", "x")) for i in range(3)]
        await spin()

        self.mux.fail_all(ProcessExited(1))
        for task in tasks:
            with self.assertRaises(ProcessExited):
                await task
        self.assertEqual(self.mux.pending_count, 0)
        self.assertIsNone(self.mux.in_flight_key)
        self.assertEqual(self.mux.counters.requests_failed, 3)

    async def test_late_response_after_fail_all_is_dropped(self):
        task = asyncio.create_task(self.mux.submit("a.tgs", "x"))
        await spin()
        self.mux.fail_all(ProcessExited(None))
        with self.assertRaises(ProcessExited):
            await task

        with self.assertLogs("tgsdaemon.daemon.multiplexer", level="WARNING") as logs:
            self.wire.reply(self.mux)
        self.assertIn("unsolicited", logs.output[0])

    async def test_cancelling_one_caller_keeps_the_other(self):
        first = asyncio.create_task(self.mux.submit("x.tgs", "x"))
        a1 = asyncio.create_task(self.mux.submit("a.tgs", "v"))
        a2 = asyncio.create_task(self.mux.submit("a.tgs", "v"))
        await spin()

        a1.cancel()
        await spin()
        self.wire.reply(self.mux)
        await spin()
        self.wire.reply(self.mux)
        await spin()

        await first
        self.assertTrue(a1.cancelled())
        self.assertEqual((await a2).file, "a.tgs")

    async def test_abandoned_request_is_never_sent(self):
        first = asyncio.create_task(self.mux.submit("x.tgs", "x"))
        dropped = asyncio.create_task(self.mux.submit("b.tgs", "y"))
        later = asyncio.create_task(self.mux.submit("c.tgs", "z"))
        await spin()

        dropped.cancel()
        await spin()
        self.wire.reply(self.mux)
        await spin()

        self.assertEqual([key for key, _ in self.wire.sent], ["x.tgs", "c.tgs"])
        self.wire.reply(self.mux)
        await spin()
        await first
        self.assertEqual((await later).file, "c.tgs")


class TestSingleSlotMultiplexer(unittest.IsolatedAsyncioTestCase):
    """Test cases for the single-slot supersede policy."""

    def setUp(self):
        self.wire = FakeWire()
        self.mux = SingleSlotMultiplexer(self.wire.send)

    async def test_newer_request_supersedes_older_ones(self):
        a = asyncio.create_task(self.mux.submit("a.tgs", "a"))
        await spin()
        b = asyncio.create_task(self.mux.submit("b.tgs", "b"))
        await spin()
        c = asyncio.create_task(self.mux.submit("c.tgs", "c"))
        await spin()

        with self.assertRaises(Superseded):
            await a
        with self.assertRaises(Superseded) as ctx:
            await b
        self.assertEqual(ctx.exception.key, "b.tgs")
        self.assertEqual(self.wire.sent, [("a.tgs", "a")])

        # The reply to the superseded in-flight request is read and discarded
        self.wire.reply(self.mux)
        await spin()
        self.assertFalse(c.done())
        self.assertEqual(self.wire.sent[1], ("c.tgs", "c"))

        self.wire.reply(self.mux)
        await spin()
        self.assertEqual((await c).file, "c.tgs")
        self.assertEqual(self.wire.max_outstanding, 1)

    async def test_pending_count(self):
        a = asyncio.create_task(self.mux.submit("a.tgs", "a"))
        await spin()
        self.assertEqual(self.mux.pending_count, 1)
        b = asyncio.create_task(self.mux.submit("b.tgs", "b"))
        await spin()
        # a was superseded but its reply is still owed
        self.assertEqual(self.mux.pending_count, 1)
        self.assertEqual(self.mux.in_flight_key, "a.tgs")

        self.mux.fail_all(ProcessExited(0))
        with self.assertRaises(Superseded):
            await a
        with self.assertRaises(ProcessExited):
            await b
        self.assertEqual(self.mux.pending_count, 0)


class TestPendingRequest(unittest.TestCase):
    """Test cases for PendingRequest settlement."""

    def test_settles_exactly_once(self):
        request = PendingRequest(key="a.tgs", payload=None)
        request.resolve(ResultEnvelope(success=True))
        with self.assertRaises(RuntimeError):
            request.reject(ProcessExited(1))

    def test_not_abandoned_without_waiters(self):
        self.assertFalse(PendingRequest(key="a.tgs", payload=None).abandoned)


class TestCreateMultiplexer(unittest.IsolatedAsyncioTestCase):
    """Test cases for policy selection."""

    async def test_policies(self):
        wire = FakeWire()
        self.assertIsInstance(create_multiplexer("fifo", wire.send), FifoMultiplexer)
        self.assertIsInstance(create_multiplexer("single-slot", wire.send), SingleSlotMultiplexer)

    async def test_unknown_policy(self):
        with self.assertRaises(ValueError):
            create_multiplexer("lifo", FakeWire().send)

    async def test_base_class_is_abstract(self):
        with self.assertRaises(TypeError):
            RequestMultiplexer(FakeWire().send)

    async def test_subclass_must_implement_policy_hooks(self):
        class NoQueue(RequestMultiplexer):
            policy = "none"

            def _accept(self, key, payload):
                raise AssertionError("not called")

        with self.assertRaises(TypeError):
            NoQueue(FakeWire().send)


if __name__ == "__main__":
    unittest.main()
