"""
Per-container operation locks.

Updates and deploys that target the same container name are mutually
exclusive. A second operation on a name that is already busy is rejected
immediately instead of queueing behind the first.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

from engine.errors import ConflictError

logger = logging.getLogger(__name__)


class ContainerLockRegistry:
    """Tracks which container names have an operation in flight."""

    def __init__(self):
        self._held: Dict[str, str] = {}
        self._guard = asyncio.Lock()

    @asynccontextmanager
    async def acquire(self, name: str, operation: str = "update") -> AsyncIterator[None]:
        """
        Hold the lock for ``name`` for the duration of the block.

        Raises:
            ConflictError: If another operation holds the lock
        """
        async with self._guard:
            current = self._held.get(name)
            if current is not None:
                raise ConflictError(
                    f"Container {name} is busy",
                    detail=f"a {current} is already in progress",
                )
            self._held[name] = operation
        logger.debug(f"Acquired {operation} lock for {name}")
        try:
            yield
        finally:
            self._held.pop(name, None)
            logger.debug(f"Released {operation} lock for {name}")
