"""
Unit tests for LineStream.

Tests cover:
- Ordered delivery and draining after the producer finishes
- Producer errors re-raised after buffered items
- Backpressure on a full buffer
- Early close: callbacks, producer cancellation, idempotence
- Blocking iterators pumped from a worker thread
"""

import asyncio
import threading

import pytest

from utils.line_stream import LineStream, next_item
from tests.conftest import make_stream


@pytest.mark.asyncio
class TestDelivery:

    async def test_items_in_order(self):
        stream = make_stream(["a", "b", "c"])

        assert await stream.collect() == ["a", "b", "c"]

    async def test_empty_producer(self):
        assert await make_stream([]).collect() == []

    async def test_error_after_drain(self):
        stream = make_stream(["a", "b"], error=ValueError("producer broke"))
        seen = []

        with pytest.raises(ValueError, match="producer broke"):
            async for item in stream:
                seen.append(item)

        assert seen == ["a", "b"]

    async def test_error_raised_once(self):
        stream = make_stream([], error=RuntimeError("once"))

        with pytest.raises(RuntimeError):
            await stream.collect()
        assert await stream.collect() == []

    async def test_backpressure_blocks_producer(self):
        stream = LineStream(capacity=2, name="bounded")
        produced = []

        async def _produce(s):
            for i in range(5):
                await s.put(i)
                produced.append(i)

        stream.start(_produce)
        await asyncio.sleep(0.05)
        assert produced == [0, 1]

        assert await stream.collect() == [0, 1, 2, 3, 4]
        assert produced == [0, 1, 2, 3, 4]


@pytest.mark.asyncio
class TestNextItem:

    async def test_returns_none_when_finished_and_empty(self):
        queue = asyncio.Queue()
        finished = asyncio.Event()
        finished.set()

        assert await next_item(queue, finished) is None

    async def test_item_put_before_finish_is_not_lost(self):
        queue = asyncio.Queue()
        finished = asyncio.Event()

        async def _late():
            await asyncio.sleep(0.01)
            queue.put_nowait("last")
            finished.set()

        task = asyncio.create_task(_late())
        assert await next_item(queue, finished) == "last"
        await task


@pytest.mark.asyncio
class TestClose:

    async def test_close_cancels_blocked_producer_and_runs_callbacks(self):
        stream = LineStream(capacity=1, name="closing")
        released = []
        cancelled = asyncio.Event()

        async def _produce(s):
            try:
                while True:
                    await s.put("x")
            except asyncio.CancelledError:
                cancelled.set()
                raise

        stream.on_close(lambda: released.append("sync"))

        async def _async_release():
            released.append("async")

        stream.on_close(_async_release)
        stream.start(_produce)
        assert await stream.__anext__() == "x"

        await stream.close()

        assert released == ["sync", "async"]
        assert cancelled.is_set()
        assert stream.finished
        assert await stream.collect() == []

    async def test_close_is_idempotent(self):
        calls = []
        stream = make_stream(["a"])
        stream.on_close(lambda: calls.append(1))

        await stream.close()
        await stream.close()

        assert calls == [1]

    async def test_failing_callback_does_not_stop_close(self):
        stream = make_stream(["a"])

        def _broken():
            raise OSError("socket already closed")

        stream.on_close(_broken)
        await stream.close()

        assert stream.finished

    async def test_context_manager_closes(self):
        stream = make_stream(["a", "b", "c"])

        async with stream:
            first = await stream.__anext__()

        assert first == "a"
        assert stream.finished

    async def test_error_suppressed_after_close(self):
        stream = make_stream([], error=RuntimeError("ignored"))
        await asyncio.sleep(0.01)

        await stream.close()

        assert await stream.collect() == []


@pytest.mark.asyncio
class TestBlockingIterator:

    async def test_pumps_iterator_with_transform(self):
        stream = LineStream.from_blocking_iterator(
            lambda: iter([b"one", b"", b"two"]),
            transform=lambda raw: raw.decode() or None,
            name="blocking",
        )

        assert await stream.collect() == ["one", "two"]

    async def test_runs_in_worker_thread(self):
        threads = []

        def _factory():
            threads.append(threading.current_thread())
            return iter([1])

        await LineStream.from_blocking_iterator(_factory).collect()

        assert threads[0] is not threading.main_thread()

    async def test_iterator_error_propagates(self):
        def _factory():
            yield "first"
            raise ConnectionError("engine went away")

        stream = LineStream.from_blocking_iterator(_factory)

        with pytest.raises(ConnectionError):
            await stream.collect()

    async def test_close_closes_sdk_stream(self):
        class FakeSdkStream:
            def __init__(self):
                self.closed = threading.Event()

            def __iter__(self):
                yield "chunk"
                self.closed.wait(timeout=5)

            def close(self):
                self.closed.set()

        sdk_stream = FakeSdkStream()
        stream = LineStream.from_blocking_iterator(lambda: sdk_stream, name="sdk")

        assert await stream.__anext__() == "chunk"
        await asyncio.wait_for(stream.close(), timeout=5)

        assert sdk_stream.closed.is_set()
