"""
Async wrappers for the blocking Docker SDK.

The Docker SDK performs synchronous HTTP requests against the engine socket.
Every call made from the event loop goes through ``async_docker_call`` so it
runs in a worker thread, optionally bounded by a timeout.
"""

import asyncio
import functools
import logging
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


async def async_docker_call(func: Callable[..., Any], *args, timeout: Optional[float] = None, **kwargs) -> Any:
    """
    Run a blocking Docker SDK call in a worker thread.

    Args:
        func: SDK callable (e.g. ``client.containers.get``)
        *args: Positional arguments for ``func``
        timeout: Optional time budget in seconds
        **kwargs: Keyword arguments for ``func``

    Returns:
        Whatever ``func`` returns

    Raises:
        asyncio.TimeoutError: If the call exceeds ``timeout``. The worker
            thread cannot be interrupted and finishes in the background.
    """
    call = functools.partial(func, *args, **kwargs)
    if timeout is None:
        return await asyncio.to_thread(call)
    return await asyncio.wait_for(asyncio.to_thread(call), timeout=timeout)

