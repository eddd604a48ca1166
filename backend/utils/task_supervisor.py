"""
Background task supervision.

Long workflows (updates, deploys) run as supervised tasks rather than inside
the websocket handler, so a dropped connection does not cancel them. Each
task has its own timeout; its outcome is logged. On shutdown in-flight
tasks get a grace period before they are cancelled.
"""

import asyncio
import logging
from typing import Any, Coroutine, Optional, Set

logger = logging.getLogger(__name__)


class TaskSupervisor:
    """Owns background workflow tasks."""

    def __init__(self, shutdown_grace: float = 60.0):
        self.shutdown_grace = shutdown_grace
        self._tasks: Set[asyncio.Task] = set()
        self._closing = False

    @property
    def active(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str, timeout: Optional[float] = None) -> asyncio.Task:
        """
        Run ``coro`` in the background.

        Args:
            coro: Workflow coroutine
            name: Task name used in logs
            timeout: Seconds before the workflow is cancelled (None for no limit)

        Returns:
            The task; awaiting it yields the workflow's result or raises its error

        Raises:
            RuntimeError: If the supervisor is shutting down
        """
        if self._closing:
            coro.close()
            raise RuntimeError("Server is shutting down")

        async def _run():
            try:
                if timeout is not None:
                    result = await asyncio.wait_for(coro, timeout=timeout)
                else:
                    result = await coro
                logger.info(f"Task {name} finished")
                return result
            except asyncio.TimeoutError:
                logger.error(f"Task {name} timed out after {timeout:g}s")
                raise
            except asyncio.CancelledError:
                logger.warning(f"Task {name} cancelled")
                raise
            except Exception as e:
                logger.error(f"Task {name} failed: {e}", exc_info=True)
                raise

        task = asyncio.create_task(_run(), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        # Mark the exception retrieved; it was logged in _run
        if not task.cancelled():
            task.exception()

    async def shutdown(self) -> None:
        """Wait up to the grace period for in-flight tasks, then cancel the rest."""
        self._closing = True
        if not self._tasks:
            return
        pending = set(self._tasks)
        logger.info(f"Waiting up to {self.shutdown_grace:g}s for {len(pending)} background task(s)")
        _, still_running = await asyncio.wait(pending, timeout=self.shutdown_grace)
        for task in still_running:
            logger.warning(f"Cancelling background task {task.get_name()}")
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
