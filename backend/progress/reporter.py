"""
Progress Reporter.

One-way, strictly ordered sink of progress events between a workflow
(producer) and a streaming connection (consumer):

- The queue is bounded. One extra slot is reserved so the terminal
  CompleteEvent can always be queued.
- emit() never waits longer than ``send_timeout``. Output lines are dropped
  first when the buffer is full; a step event waits for room, and if none
  frees up in time it is dropped and the reporter switches to lagging mode
  (no more waiting) until the consumer catches up.
- A consumer that fails to send detaches; later events are discarded and the
  workflow carries on.
- Dropping never reorders: the consumer always sees a subsequence of the
  emission order, and CompleteEvent is always last.
"""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import WebSocket

from progress.events import CompleteEvent, OutputEvent, ProgressEvent, StepEvent
from utils.line_stream import next_item
from websocket.connection import DateTimeEncoder

logger = logging.getLogger(__name__)


class ProgressReporter:
    """Bounded, ordered progress channel for one workflow."""

    def __init__(self, capacity: int = 256, send_timeout: float = 5.0, name: str = "progress"):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.name = name
        self.capacity = capacity
        self.send_timeout = send_timeout
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=capacity + 1)
        self._finished = asyncio.Event()
        self._room = asyncio.Event()
        self._closed = False
        self._completed = False
        self._detached = False
        self._lagging = False
        self.dropped = 0
        self.final_event: Optional[CompleteEvent] = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def detached(self) -> bool:
        return self._detached

    def _has_room(self) -> bool:
        return self._queue.qsize() < self.capacity

    async def _wait_for_room(self) -> None:
        while not self._has_room():
            self._room.clear()
            await self._room.wait()

    def _drop(self, event: ProgressEvent) -> bool:
        self.dropped += 1
        if self.dropped == 1 or self.dropped % 100 == 0:
            logger.warning(f"{self.name}: dropped {self.dropped} progress event(s), last step '{event.step}'")
        return False

    async def emit(self, event: ProgressEvent) -> bool:
        """
        Queue an event for the consumer.

        Args:
            event: StepEvent, OutputEvent or CompleteEvent

        Returns:
            True if the event was queued, False if it was dropped
        """
        if self._closed:
            return False
        if isinstance(event, CompleteEvent):
            # Reserved slot: never blocks, never fails
            self._queue.put_nowait(event)
            return True
        if self._detached:
            self.dropped += 1
            return False
        if self._has_room():
            self._queue.put_nowait(event)
            return True
        if event.droppable or self._lagging:
            return self._drop(event)

        try:
            await asyncio.wait_for(self._wait_for_room(), timeout=self.send_timeout)
        except asyncio.TimeoutError:
            self._lagging = True
            logger.warning(f"{self.name}: consumer is not keeping up, no longer waiting for it")
            return self._drop(event)
        if self._detached or self._closed:
            return self._drop(event)
        self._queue.put_nowait(event)
        return True

    async def step(self, step: str, message: str, progress: Optional[int] = None, error: bool = False,
                   **extra: Any) -> bool:
        return await self.emit(StepEvent(step=step, message=message, error=error, progress=progress, extra=extra))

    async def output(self, step: str, line: str) -> bool:
        return await self.emit(OutputEvent(step=step, line=line))

    async def complete(
        self,
        success: bool,
        message: str = "",
        error: Optional[str] = None,
        step: Optional[str] = None,
        warnings: Optional[List[str]] = None,
        **result: Any,
    ) -> None:
        """Emit the terminal event (at most once) and close the reporter."""
        if self._completed:
            return
        self._completed = True
        self.final_event = CompleteEvent(
            success=success,
            message=message,
            error=error,
            step=step,
            warnings=list(warnings or []),
            result=result,
        )
        await self.emit(self.final_event)
        self.close()

    def close(self) -> None:
        """No more events will be produced. Idempotent."""
        self._closed = True
        self._finished.set()

    def detach(self) -> None:
        """Consumer went away: discard buffered and future events."""
        if self._detached:
            return
        self._detached = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self._room.set()
        logger.info(f"{self.name}: consumer detached, workflow continues in background")

    # ---- consumer side ----

    async def events(self) -> AsyncIterator[ProgressEvent]:
        """Yield events in order until the reporter is closed and drained."""
        while True:
            event = await next_item(self._queue, self._finished)
            self._room.set()
            if event is None:
                return
            if self._queue.empty():
                self._lagging = False
            yield event

    async def relay(self, websocket: WebSocket) -> bool:
        """
        Forward every event to a websocket as JSON.

        Returns:
            True if everything up to and including the terminal event was
            sent, False if the connection failed and the reporter detached
        """
        async for event in self.events():
            try:
                await websocket.send_text(json.dumps(event.to_message(), cls=DateTimeEncoder))
            except Exception as e:
                logger.info(f"{self.name}: failed to send progress ({e})")
                self.detach()
                return False
        return True

    async def collect(self) -> List[Dict[str, Any]]:
        """Drain all events as messages (used when no transport is attached)."""
        return [event.to_message() async for event in self.events()]
