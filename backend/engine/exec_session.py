"""
Interactive exec sessions.

Wraps a Docker exec instance started with a TTY and a hijacked socket. Output
is delivered through a LineStream of raw byte chunks read by a worker thread;
input is written straight to the socket. Closing the session closes the
socket, which ends the shell's stdin and releases the exec instance and its
pseudo-terminal.
"""

import asyncio
import logging
from typing import Optional

from utils.async_docker import async_docker_call
from utils.line_stream import LineStream

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096


def _raw_socket(sock):
    """docker-py returns a SocketIO wrapper on unix sockets; the raw socket is underneath."""
    return getattr(sock, "_sock", sock)


class ExecSession:
    """A running interactive exec attached to a container."""

    def __init__(self, api_client, exec_id: str, sock, container_ref: str, capacity: int = 256):
        self.api = api_client
        self.exec_id = exec_id
        self.container_ref = container_ref
        self._sock = sock
        self._raw = _raw_socket(sock)
        self._closed = False
        self.output = LineStream.from_blocking_iterator(
            self._read_chunks,
            capacity=capacity,
            name=f"exec-{exec_id[:12]}",
        )
        self.output.on_close(self._close_socket)

    def _read_chunks(self):
        while not self._closed:
            try:
                data = self._raw.recv(READ_CHUNK_SIZE)
            except OSError:
                # Socket closed from the loop thread
                break
            if not data:
                break
            yield data

    async def write(self, data) -> None:
        """Send caller input to the process."""
        if self._closed:
            return
        if isinstance(data, str):
            data = data.encode()
        await asyncio.to_thread(self._raw.sendall, data)

    async def resize(self, rows: int, cols: int) -> None:
        """Resize the session's pseudo-terminal."""
        if self._closed:
            return
        try:
            await async_docker_call(self.api.exec_resize, self.exec_id, height=rows, width=cols, timeout=5)
        except Exception as e:
            logger.debug(f"Failed to resize exec {self.exec_id[:12]}: {e}")

    async def exit_code(self) -> Optional[int]:
        """Exit code of the process, or None while it is still running."""
        info = await async_docker_call(self.api.exec_inspect, self.exec_id, timeout=5)
        if info.get("Running"):
            return None
        return info.get("ExitCode")

    def _close_socket(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._sock.close()
        except OSError as e:
            logger.debug(f"Error closing exec socket {self.exec_id[:12]}: {e}")

    async def close(self) -> None:
        """Close both directions and release the exec resources. Idempotent."""
        await self.output.close()
        self._close_socket()
        logger.info(f"Closed exec session {self.exec_id[:12]} on {self.container_ref}")
