"""
External command execution.

run_command() captures a short-lived command's output in one go (tool version
checks). stream_command() runs a long command (compose
up/pull) as a LineStream producer: stdout and stderr are merged and delivered
line by line, and closing the stream kills the process.
"""

import asyncio
import logging
import os
import subprocess
from collections import deque
from dataclasses import dataclass
from typing import Dict, List, Optional

from utils.line_stream import DEFAULT_CAPACITY, LineStream

logger = logging.getLogger(__name__)

# Lines of output kept for the error message of a failed command
OUTPUT_TAIL_LINES = 50


class CommandFailedError(Exception):
    """Command exited with a non-zero status."""

    def __init__(self, args: List[str], returncode: int, output: str):
        super().__init__(f"{args[0]} exited with status {returncode}")
        self.args_list = args
        self.returncode = returncode
        self.output = output


@dataclass
class CommandResult:
    returncode: int
    output: str


def _merged_env(env: Optional[Dict[str, str]]) -> Dict[str, str]:
    full_env = dict(os.environ)
    if env:
        full_env.update(env)
    return full_env


async def run_command(args: List[str], cwd: Optional[str] = None, env: Optional[Dict[str, str]] = None,
                      timeout: float = 60) -> CommandResult:
    """
    Run a command to completion and capture combined output.

    Raises:
        FileNotFoundError: If the executable does not exist
        subprocess.TimeoutExpired: If the command exceeds ``timeout``
    """
    result = await asyncio.to_thread(
        subprocess.run,
        args,
        cwd=cwd,
        env=_merged_env(env),
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        timeout=timeout,
    )
    return CommandResult(returncode=result.returncode, output=result.stdout or "")


def stream_command(
    args: List[str],
    cwd: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    timeout: Optional[float] = None,
    capacity: int = DEFAULT_CAPACITY,
    name: Optional[str] = None,
) -> LineStream:
    """
    Start a command and stream its output lines.

    The stream ends normally when the command exits with status 0. Otherwise
    the consumer gets, after the last line, ``CommandFailedError`` (non-zero
    exit), ``asyncio.TimeoutError`` (``timeout`` exceeded, process killed) or
    ``FileNotFoundError`` (executable missing).
    """
    stream = LineStream(capacity=capacity, name=name or os.path.basename(args[0]))
    process_holder: Dict[str, asyncio.subprocess.Process] = {}

    def _kill():
        process = process_holder.get("process")
        if process is not None and process.returncode is None:
            logger.info(f"Killing {args[0]} (pid {process.pid})")
            process.kill()

    stream.on_close(_kill)

    async def _produce(s: LineStream):
        process = await asyncio.create_subprocess_exec(
            *args,
            cwd=cwd,
            env=_merged_env(env),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        process_holder["process"] = process
        tail: deque = deque(maxlen=OUTPUT_TAIL_LINES)

        async def _read():
            while True:
                raw = await process.stdout.readline()
                if not raw:
                    break
                line = raw.decode("utf-8", errors="replace").rstrip()
                if not line:
                    continue
                tail.append(line)
                await s.put(line)
            return await process.wait()

        try:
            if timeout is not None:
                returncode = await asyncio.wait_for(_read(), timeout=timeout)
            else:
                returncode = await _read()
        except BaseException:
            _kill()
            raise

        if returncode != 0:
            raise CommandFailedError(args, returncode, "\n".join(tail))

    return stream.start(_produce)
