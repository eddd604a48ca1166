"""
Bounded producer/consumer stream.

A LineStream owns one producer (an async task, or a blocking iterator pumped
from a worker thread) feeding a bounded asyncio.Queue. The consumer iterates
with ``async for``. Shutdown order is always:

    producer finishes -> stream marked finished -> consumer drains the
    remaining buffered items -> iteration ends

If the producer failed, the consumer receives the producer's exception after
draining. ``close()`` lets the consumer stop early: it runs the registered
close callbacks (closing the engine stream or killing the subprocess),
unblocks a producer waiting on a full queue and cancels the producer task.
"""

import asyncio
import inspect
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Iterator, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 256


async def next_item(queue: asyncio.Queue, finished: asyncio.Event) -> Any:
    """
    Wait for the next queued item, or return None once the producer has
    finished and the queue is drained.

    Args:
        queue: Queue fed by the producer
        finished: Event set by the producer when it will not put anything else

    Returns:
        The next item, or None when the stream is exhausted
    """
    while True:
        try:
            return queue.get_nowait()
        except asyncio.QueueEmpty:
            pass

        if finished.is_set():
            # Producer may have put a last item between the two checks
            try:
                return queue.get_nowait()
            except asyncio.QueueEmpty:
                return None

        getter = asyncio.ensure_future(queue.get())
        waiter = asyncio.ensure_future(finished.wait())
        try:
            await asyncio.wait({getter, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not getter.done():
                getter.cancel()

        if getter.done() and not getter.cancelled():
            return getter.result()


class LineStream:
    """Bounded, ordered stream of items from a single producer."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY, name: str = "stream"):
        self.name = name
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=capacity)
        self._finished = asyncio.Event()
        self._producer: Optional[asyncio.Task] = None
        self._error: Optional[BaseException] = None
        self._close_callbacks: List[Callable[[], Any]] = []
        self._closed = False

    # ---- producer side ----

    async def put(self, item: Any) -> None:
        """Queue an item, waiting while the buffer is full. Dropped after close()."""
        if self._closed:
            return
        await self._queue.put(item)

    def finish(self, error: Optional[BaseException] = None) -> None:
        """Mark the producer as done. Idempotent; the first error wins."""
        if error is not None and self._error is None:
            self._error = error
        self._finished.set()

    def on_close(self, callback: Callable[[], Any]) -> None:
        """Register a callback that releases the producer's resource on close()."""
        self._close_callbacks.append(callback)

    def start(self, producer: Callable[["LineStream"], Awaitable[None]]) -> "LineStream":
        """
        Run an async producer as a task owned by this stream.

        The producer receives the stream and calls ``put()``; the stream is
        finished when the producer returns or raises.
        """
        async def _run():
            try:
                await producer(self)
            except asyncio.CancelledError:
                self.finish()
                raise
            except Exception as e:
                self.finish(e)
            else:
                self.finish()

        self._producer = asyncio.create_task(_run(), name=f"{self.name}-producer")
        return self

    @classmethod
    def from_blocking_iterator(
        cls,
        factory: Callable[[], Iterator[Any]],
        transform: Optional[Callable[[Any], Any]] = None,
        capacity: int = DEFAULT_CAPACITY,
        name: str = "stream",
    ) -> "LineStream":
        """
        Pump a blocking iterator (e.g. a Docker SDK stream) from a worker thread.

        Args:
            factory: Called in the worker thread to open the iterator
            transform: Optional mapping applied to each raw item; returning
                None skips the item
            capacity: Queue capacity
            name: Name used in logs

        Returns:
            Started LineStream
        """
        stream = cls(capacity=capacity, name=name)
        loop = asyncio.get_running_loop()

        def _pump():
            iterator = factory()
            # Closing an SDK stream from the loop thread unblocks a pending read.
            # Generators cannot be closed while another thread is running them.
            close = None if inspect.isgenerator(iterator) else getattr(iterator, "close", None)
            if close is not None:
                stream.on_close(close)
            try:
                for raw in iterator:
                    if stream._closed:
                        break
                    item = transform(raw) if transform else raw
                    if item is None:
                        continue
                    asyncio.run_coroutine_threadsafe(stream.put(item), loop).result()
            finally:
                if close is not None and not stream._closed:
                    close()

        async def _produce(_stream):
            await asyncio.to_thread(_pump)

        return stream.start(_produce)

    # ---- consumer side ----

    def __aiter__(self) -> AsyncIterator[Any]:
        return self

    async def __anext__(self) -> Any:
        item = await next_item(self._queue, self._finished)
        if item is None:
            if self._error is not None and not self._closed:
                error, self._error = self._error, None
                raise error
            raise StopAsyncIteration
        return item

    async def collect(self) -> List[Any]:
        """Consume the whole stream into a list."""
        return [item async for item in self]

    @property
    def finished(self) -> bool:
        return self._finished.is_set()

    async def close(self) -> None:
        """Stop consuming early and release the producer's resources. Idempotent."""
        if self._closed:
            return
        self._closed = True

        for callback in self._close_callbacks:
            try:
                result = callback()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning(f"Error releasing {self.name}: {e}")

        # Unblock a producer waiting on a full queue
        while not self._queue.empty():
            self._queue.get_nowait()

        if self._producer and not self._producer.done():
            self._producer.cancel()
            try:
                await self._producer
            except asyncio.CancelledError:
                pass
        self._finished.set()

    async def __aenter__(self) -> "LineStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
