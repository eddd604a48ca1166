"""
Stack Driver - runs the engine's compose tool against a stack directory.

Every lifecycle command is streamed: the caller iterates the returned
LineStream for output lines and gets StackCommandError (with the tool's
output tail verbatim) after the last line if the command failed.
"""

import asyncio
import logging
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from engine.adapter import EngineAdapter
from engine.errors import EngineTimeoutError, EngineUnavailableError, StackCommandError
from engine.types import COMPOSE_PROJECT_LABEL, COMPOSE_SERVICE_LABEL, ContainerInfo, ContainerStatus
from stacks.stack_storage import COMPOSE_FILENAME, ENV_FILENAME
from utils.line_stream import LineStream
from utils.subprocess_runner import CommandFailedError, run_command, stream_command

logger = logging.getLogger(__name__)

# Stack status values
STATUS_STOPPED = "stopped"
STATUS_ACTIVE = "active"
STATUS_PARTIAL = "partial"
STATUS_DEPLOYING = "deploying"
STATUS_ERROR = "error"


@dataclass
class StackContainer:
    """A container belonging to a compose project."""
    container: ContainerInfo
    service: Optional[str]

    def to_dict(self) -> Dict:
        data = self.container.to_dict()
        data["service"] = self.service
        return data


def reduce_stack_status(states: Iterable[ContainerStatus]) -> str:
    """
    Aggregate per-container states into a stack status.

    No containers or none running -> stopped; all running -> active;
    otherwise partial.
    """
    states = list(states)
    if not states:
        return STATUS_STOPPED
    running = sum(1 for s in states if s == ContainerStatus.RUNNING)
    if running == len(states):
        return STATUS_ACTIVE
    if running > 0:
        return STATUS_PARTIAL
    return STATUS_STOPPED


class StackDriver:
    """
    Compose tool wrapper.

    Args:
        engine: Engine Adapter used to list the project's containers
        compose_command: Compose invocation, e.g. ``docker compose`` or ``podman-compose``
        timeout: Budget for one compose command
        capacity: Output line buffer size
    """

    def __init__(self, engine: EngineAdapter, compose_command: str = "docker compose",
                 timeout: float = 1800, capacity: int = 256):
        self.engine = engine
        self.compose_command = shlex.split(compose_command)
        self.timeout = timeout
        self.capacity = capacity

    def build_command(self, stack_dir: str, name: str, operation: List[str]) -> List[str]:
        """Full argv for ``<compose> -f <dir>/docker-compose.yml -p <name> [--env-file] <op>``."""
        directory = Path(stack_dir)
        args = list(self.compose_command)
        args += ["-f", str(directory / COMPOSE_FILENAME), "-p", name]
        env_file = directory / ENV_FILENAME
        if env_file.exists():
            args += ["--env-file", str(env_file)]
        return args + operation

    def _run(self, stack_dir: str, name: str, operation: List[str]) -> LineStream:
        args = self.build_command(stack_dir, name, operation)
        step = operation[0]
        logger.info(f"Running compose {step} for stack '{name}'")
        raw = stream_command(args, cwd=stack_dir, timeout=self.timeout, capacity=self.capacity,
                             name=f"compose-{step}-{name}")

        # Relay lines, translating the runner's failures into engine errors
        async def _produce(stream: LineStream):
            try:
                async for line in raw:
                    await stream.put(line)
            except CommandFailedError as e:
                logger.error(f"Compose {step} for stack '{name}' exited with status {e.returncode}")
                raise StackCommandError(
                    f"Compose {step} failed for stack '{name}' (exit code {e.returncode})",
                    exit_code=e.returncode,
                    output=e.output,
                    step=step,
                )
            except FileNotFoundError:
                raise EngineUnavailableError(
                    f"Compose tool not found: {' '.join(self.compose_command)}", step=step)
            except asyncio.TimeoutError:
                raise EngineTimeoutError(
                    f"Compose {step} for stack '{name}' timed out after {self.timeout:g}s", step=step)
            finally:
                await raw.close()

        return LineStream(capacity=self.capacity, name=f"stack-{step}-{name}").start(_produce)

    def up(self, stack_dir: str, name: str) -> LineStream:
        return self._run(stack_dir, name, ["up", "-d", "--remove-orphans"])

    def down(self, stack_dir: str, name: str, remove_volumes: bool = False) -> LineStream:
        operation = ["down"]
        if remove_volumes:
            operation.append("-v")
        return self._run(stack_dir, name, operation)

    def stop(self, stack_dir: str, name: str) -> LineStream:
        return self._run(stack_dir, name, ["stop"])

    def start(self, stack_dir: str, name: str) -> LineStream:
        return self._run(stack_dir, name, ["start"])

    def restart(self, stack_dir: str, name: str) -> LineStream:
        return self._run(stack_dir, name, ["restart"])

    def pull(self, stack_dir: str, name: str) -> LineStream:
        return self._run(stack_dir, name, ["pull"])

    async def list_stack_containers(self, name: str) -> List[StackContainer]:
        containers = await self.engine.list_containers(all=True, labels={COMPOSE_PROJECT_LABEL: name})
        return [StackContainer(container=c, service=c.labels.get(COMPOSE_SERVICE_LABEL)) for c in containers]

    async def compute_status(self, name: str) -> str:
        containers = await self.list_stack_containers(name)
        return reduce_stack_status(c.container.status for c in containers)

    async def tool_version(self) -> Optional[str]:
        """Version reported by the compose tool, or None if it cannot be run."""
        args = self.compose_command + ["version", "--short"]
        try:
            result = await run_command(args, timeout=15)
        except (FileNotFoundError, subprocess.TimeoutExpired) as e:
            logger.warning(f"Compose tool '{' '.join(self.compose_command)}' is not usable: {e}")
            return None
        if result.returncode != 0:
            logger.warning(f"Compose tool '{' '.join(self.compose_command)}' exited with status "
                           f"{result.returncode}: {result.output.strip()}")
            return None
        return result.output.strip()
