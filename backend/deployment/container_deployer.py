"""
Single container deployment.

Handles the deployment workflow for individual containers:
validate -> pull image -> prepare volume directories -> create -> start.

Every step is reported through a ProgressReporter when one is attached.
The ContainerRecord is written as soon as the engine has created the
container, so a container that fails to start is still tracked.
"""

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from database import ContainerRecord, DatabaseManager
from engine.adapter import EngineAdapter, parse_volume
from engine.errors import ConflictError, EngineError, StardeckError, ValidationFailedError
from engine.types import ContainerSpec, ContainerStatus, stardeck_labels
from progress.reporter import ProgressReporter
from updates.locks import ContainerLockRegistry

logger = logging.getLogger(__name__)


@dataclass
class DeployRequest:
    """A container to create, plus the Stardeck metadata kept about it."""
    name: str
    image: str
    ports: List[str] = field(default_factory=list)
    volumes: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    restart_policy: str = "no"
    network_mode: Optional[str] = None
    hostname: Optional[str] = None
    user: Optional[str] = None
    workdir: Optional[str] = None
    entrypoint: Optional[List[str]] = None
    command: Optional[List[str]] = None
    cpus: Optional[float] = None
    memory: Optional[str] = None
    has_web_ui: bool = False
    web_ui_port: Optional[int] = None
    web_ui_path: Optional[str] = None
    icon: Optional[str] = None
    auto_start: bool = True
    pull: bool = False  # Pull even if the image is present locally

    def to_spec(self) -> ContainerSpec:
        labels = dict(self.labels)
        labels.update(stardeck_labels(self.has_web_ui, self.web_ui_port, self.web_ui_path, self.icon))
        return ContainerSpec(
            name=self.name,
            image=self.image,
            ports=list(self.ports),
            volumes=list(self.volumes),
            env=dict(self.env),
            labels=labels,
            restart_policy=self.restart_policy or "no",
            network_mode=self.network_mode,
            hostname=self.hostname,
            user=self.user,
            workdir=self.workdir,
            entrypoint=self.entrypoint,
            command=self.command,
            cpus=self.cpus,
            memory=self.memory,
        )


def host_directories(volumes: List[str]) -> List[str]:
    """Absolute host paths among bind mount sources (named volumes excluded)."""
    directories = []
    for volume in volumes:
        source, _target, _mode = parse_volume(volume)
        if os.path.isabs(source):
            directories.append(source)
    return directories


class ContainerDeployer:
    """
    Deploys single containers.

    Args:
        engine: Engine Adapter
        db: Metadata store for ContainerRecords
        locks: Per-container lock registry shared with the update orchestrator
    """

    def __init__(self, engine: EngineAdapter, db: DatabaseManager, locks: ContainerLockRegistry):
        self.engine = engine
        self.db = db
        self.locks = locks

    async def deploy(self, request: DeployRequest, reporter: Optional[ProgressReporter] = None,
                     created_by: Optional[int] = None) -> ContainerRecord:
        """
        Create (and by default start) a container.

        Returns:
            The new ContainerRecord

        Raises:
            ValidationFailedError: Missing image/name or malformed ports/volumes
            ConflictError: Name already in use or busy with another operation
            StardeckError: Any engine failure, after it has been reported
        """
        step = "validate"
        try:
            if not request.name:
                raise ValidationFailedError("Container name is required")
            async with self.locks.acquire(request.name, "deploy"):
                return await self._deploy(request, reporter, created_by)
        except StardeckError as e:
            failed_step = e.step or step
            logger.error(f"Deploy of {request.name or request.image} failed at {failed_step}: {e}")
            if reporter is not None:
                await reporter.step(failed_step, str(e), error=True)
                await reporter.complete(False, message=f"Deploy of {request.name} failed",
                                        error=str(e), step=failed_step)
            raise

    async def _step(self, reporter: Optional[ProgressReporter], step: str, message: str,
                    progress: Optional[int] = None, **extra) -> None:
        if reporter is not None:
            await reporter.step(step, message, progress=progress, **extra)

    async def _deploy(self, request: DeployRequest, reporter: Optional[ProgressReporter],
                      created_by: Optional[int]) -> ContainerRecord:
        name = request.name

        # Validate
        await self._step(reporter, "validate", "Validating configuration", progress=5)
        if not request.image or not request.image.strip():
            raise ValidationFailedError("No image specified", step="validate")
        spec = request.to_spec()
        directories = host_directories(request.volumes)
        if await self.engine.container_exists(name):
            raise ConflictError(f"Container name '{name}' already exists", step="validate")
        await self._step(reporter, "validate", "Configuration validated", progress=10)

        # Pull
        await self._step(reporter, "pull", f"Checking for image {request.image}", progress=15)
        if request.pull or not await self.engine.image_exists(request.image):
            await self._pull(request.image, reporter)
        else:
            await self._step(reporter, "pull", "Image found locally", progress=50)

        # Volumes
        if directories:
            await self._step(reporter, "volumes", "Creating volume directories", progress=55)
            for directory in directories:
                try:
                    await asyncio.to_thread(os.makedirs, directory, 0o755, True)
                except OSError as e:
                    raise EngineError(f"Failed to create directory '{directory}'", detail=str(e), step="volumes")
            await self._step(reporter, "volumes", "Volume directories ready", progress=60)

        # Create
        await self._step(reporter, "create", "Creating container", progress=65)
        try:
            engine_id = await self.engine.create_container(spec)
        except StardeckError as e:
            e.step = e.step or "create"
            raise
        await self._step(reporter, "create", "Container created", progress=75, engine_id=engine_id)

        record = self.db.add_container_record({
            'engine_id': engine_id,
            'name': name,
            'image': request.image,
            'status': ContainerStatus.CREATED.value,
            'has_web_ui': request.has_web_ui,
            'web_ui_port': request.web_ui_port,
            'web_ui_path': request.web_ui_path,
            'icon': request.icon,
            'auto_start': request.auto_start,
            'created_by': created_by,
            'labels': request.labels or None,
        })

        # Start
        if request.auto_start:
            await self._step(reporter, "start", "Starting container", progress=85)
            try:
                await self.engine.start_container(engine_id)
            except StardeckError as e:
                e.step = e.step or "start"
                raise
            record = self.db.update_container_record(record.id, {'status': ContainerStatus.RUNNING.value})
            await self._step(reporter, "start", "Container started", progress=95)

        logger.info(f"Deployed container {name} ({engine_id[:12]}) from {request.image}")
        if reporter is not None:
            await reporter.complete(True, message="Container deployed successfully", step="complete",
                                    container_id=record.id, engine_id=engine_id, container_name=name)
        return record

    async def _pull(self, image: str, reporter: Optional[ProgressReporter]) -> None:
        await self._step(reporter, "pull", f"Pulling {image}", progress=20)
        try:
            stream = await self.engine.pull_image(image)
            async with stream:
                async for snapshot in stream:
                    await self._step(reporter, "pull", snapshot.summary(), progress=20 + snapshot.percent * 30 // 100)
        except StardeckError as e:
            e.step = e.step or "pull"
            raise
        await self._step(reporter, "pull", "Image pulled successfully", progress=50)
