"""
Engine Adapter for Stardeck.

Thin, stateless facade over the container engine. Talks to Docker or to
Podman's Docker-compatible API socket through the Docker SDK. Every method
is bounded by a timeout and fails with one of the exceptions from
engine.errors; Docker SDK objects and exceptions never leave this module.

create_container() is NOT idempotent: callers must check container_exists()
before retrying a create under the same name.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import docker
import docker.errors
import requests.exceptions
from docker.types import IPAMConfig, IPAMPool
from docker.utils import parse_repository_tag
from packaging import version

from engine.errors import (
    ConflictError,
    EngineError,
    EngineTimeoutError,
    EngineUnavailableError,
    NotFoundError,
    StardeckError,
    ValidationFailedError,
)
from engine.exec_session import ExecSession
from engine.pull_progress import PullTracker
from engine.types import (
    SYSTEM_LABEL_PREFIXES,
    ContainerConfig,
    ContainerInfo,
    ContainerSpec,
    ContainerStats,
    ContainerStatus,
    ImageInfo,
    ImageUpdateCheck,
    MountInfo,
    NetworkInfo,
    PortMapping,
    VolumeInfo,
)
from utils.async_docker import async_docker_call
from utils.line_stream import LineStream

logger = logging.getLogger(__name__)

DEFAULT_SHELL_COMMAND = ["/bin/sh", "-c", "exec /bin/bash 2>/dev/null || exec /bin/sh"]

# Network modes that are not user-defined networks
BUILTIN_NETWORK_MODES = ("bridge", "host", "none", "default")

MEMORY_UNITS = {"b": 1, "k": 1024, "m": 1024 ** 2, "g": 1024 ** 3}


# ==================== Pure helpers ====================

def normalize_image_name(image: str) -> str:
    """
    Qualify an image reference with the default registry.

    Names without a registry component get ``docker.io/`` so Podman (which
    has no implicit default registry) and Docker resolve them the same way.
    """
    image = image.strip()
    if not image:
        raise ValidationFailedError("Image name is required")
    first = image.split("/", 1)[0]
    if "/" in image and ("." in first or ":" in first or first == "localhost"):
        return image
    return f"docker.io/{image}"


def parse_memory(value: Optional[str]) -> Optional[int]:
    """Parse ``512m``/``1g``/``1048576`` into bytes."""
    if value is None or value == "":
        return None
    text = str(value).strip().lower()
    if text.endswith("b") and len(text) > 1 and text[-2] in MEMORY_UNITS:
        text = text[:-1]
    unit = text[-1]
    try:
        if unit in MEMORY_UNITS:
            return int(float(text[:-1]) * MEMORY_UNITS[unit])
        return int(text)
    except ValueError:
        raise ValidationFailedError(f"Invalid memory limit: {value}")


def parse_port(spec: str) -> Tuple[str, Any]:
    """
    Parse ``[ip:]host:container[/proto]`` into a Docker SDK port binding.

    Returns:
        Tuple of (``"<container>/<proto>"``, host binding) where the host
        binding is a port string, an ``(ip, port)`` tuple, or None to let
        the engine pick a host port.
    """
    text = spec.strip()
    protocol = "tcp"
    if "/" in text:
        text, protocol = text.rsplit("/", 1)
    parts = text.split(":")
    if len(parts) == 1:
        container_port, binding = parts[0], None
    elif len(parts) == 2:
        binding, container_port = parts
    elif len(parts) == 3:
        binding, container_port = (parts[0], parts[1]), parts[2]
    else:
        raise ValidationFailedError(f"Invalid port mapping: {spec}")
    if not container_port.isdigit():
        raise ValidationFailedError(f"Invalid port mapping: {spec}")
    return f"{container_port}/{protocol}", binding


def parse_volume(spec: str) -> Tuple[str, str, str]:
    """Parse ``src:target[:ro|rw]`` into (source, target, mode)."""
    parts = spec.split(":")
    if len(parts) == 2:
        source, target, mode = parts[0], parts[1], "rw"
    elif len(parts) == 3 and parts[2] in ("ro", "rw", "z", "Z"):
        source, target, mode = parts
    else:
        raise ValidationFailedError(f"Invalid volume mapping: {spec}")
    if not source or not target.startswith("/"):
        raise ValidationFailedError(f"Invalid volume mapping: {spec}")
    return source, target, mode


def parse_restart_policy(policy: Optional[str]) -> Optional[Dict[str, Any]]:
    if not policy or policy == "no":
        return None
    name, _, retries = policy.partition(":")
    if name not in ("always", "unless-stopped", "on-failure"):
        raise ValidationFailedError(f"Invalid restart policy: {policy}")
    result: Dict[str, Any] = {"Name": name}
    if name == "on-failure" and retries:
        result["MaximumRetryCount"] = int(retries)
    return result


def format_restart_policy(policy: Optional[Dict[str, Any]]) -> str:
    if not policy or not policy.get("Name") or policy["Name"] == "no":
        return "no"
    if policy["Name"] == "on-failure" and policy.get("MaximumRetryCount"):
        return f"on-failure:{policy['MaximumRetryCount']}"
    return policy["Name"]


def _parse_created(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    try:
        return datetime.strptime(str(value)[:19], "%Y-%m-%dT%H:%M:%S").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def _port_mappings(port_bindings: Optional[Dict[str, Any]]) -> List[PortMapping]:
    """
    Convert engine port bindings into PortMappings, dropping IPv6 duplicates.

    An empty HostPort (``-p 80``) is kept: the engine picks the host port.
    """
    mappings: List[PortMapping] = []
    seen = set()
    for container_port, bindings in (port_bindings or {}).items():
        port, _, protocol = container_port.partition("/")
        for binding in bindings or []:
            host_port = binding.get("HostPort") or ""
            host_ip = binding.get("HostIp") or ""
            if host_ip in ("0.0.0.0", "::"):
                host_ip = ""
            key = (host_ip, host_port, port, protocol or "tcp")
            if key in seen:
                continue
            seen.add(key)
            mappings.append(PortMapping(host_port=host_port, container_port=port,
                                        protocol=protocol or "tcp", host_ip=host_ip))
    return sorted(mappings, key=lambda m: (int(m.container_port), m.protocol, m.host_port))


def _mounts(raw_mounts: Optional[List[Dict[str, Any]]]) -> List[MountInfo]:
    mounts = [
        MountInfo(
            type=m.get("Type", "bind"),
            source=m.get("Source", ""),
            target=m.get("Destination", ""),
            read_only=not m.get("RW", True),
            name=m.get("Name"),
        )
        for m in raw_mounts or []
    ]
    return sorted(mounts, key=lambda m: m.target)


def _error_text(e: Exception) -> str:
    explanation = getattr(e, "explanation", None)
    if explanation:
        return explanation.decode() if isinstance(explanation, bytes) else str(explanation)
    return str(e)


def translate_engine_error(e: Exception, what: str) -> StardeckError:
    """Map a Docker SDK / transport exception onto the Stardeck taxonomy."""
    if isinstance(e, StardeckError):
        return e
    if isinstance(e, docker.errors.NotFound):
        return NotFoundError(f"{what}: not found", detail=_error_text(e))
    if isinstance(e, docker.errors.APIError):
        if e.status_code == 409:
            return ConflictError(f"{what}: conflict", detail=_error_text(e))
        return EngineError(f"{what} failed", detail=_error_text(e))
    if isinstance(e, requests.exceptions.ConnectionError):
        return EngineUnavailableError("Container engine is unavailable", detail=str(e))
    if isinstance(e, (asyncio.TimeoutError, TimeoutError, requests.exceptions.Timeout)):
        return EngineTimeoutError(f"{what} timed out", detail=str(e) or None)
    if isinstance(e, docker.errors.DockerException):
        return EngineError(f"{what} failed", detail=str(e))
    return EngineError(f"{what} failed", detail=str(e))


# ==================== Adapter ====================

class EngineAdapter:
    """
    Stateless facade over container engine operations.

    Args:
        docker_host: Engine socket URL (None uses the SDK's environment defaults)
        inspect_timeout: Budget for read-only calls
        operation_timeout: Budget for start/stop/rename/remove and similar
        create_timeout: Budget for container/volume/network creation
        pull_timeout: Budget for a whole image pull
        client: Pre-built DockerClient (tests inject a mock)
    """

    def __init__(
        self,
        docker_host: Optional[str] = None,
        inspect_timeout: float = 5.0,
        operation_timeout: float = 30.0,
        create_timeout: float = 120.0,
        pull_timeout: float = 600.0,
        client: Optional[docker.DockerClient] = None,
    ):
        self.docker_host = docker_host
        self.inspect_timeout = inspect_timeout
        self.operation_timeout = operation_timeout
        self.create_timeout = create_timeout
        self.pull_timeout = pull_timeout
        self._client = client

    @classmethod
    def from_config(cls, config) -> "EngineAdapter":
        return cls(
            docker_host=config.DOCKER_HOST,
            inspect_timeout=config.INSPECT_TIMEOUT,
            operation_timeout=config.OPERATION_TIMEOUT,
            create_timeout=config.CREATE_TIMEOUT,
            pull_timeout=config.PULL_TIMEOUT,
        )

    @property
    def client(self) -> docker.DockerClient:
        """Docker client, connected on first use."""
        if self._client is None:
            try:
                if self.docker_host:
                    self._client = docker.DockerClient(base_url=self.docker_host, timeout=int(self.pull_timeout))
                else:
                    self._client = docker.from_env(timeout=int(self.pull_timeout))
            except docker.errors.DockerException as e:
                raise EngineUnavailableError("Container engine is unavailable", detail=str(e))
            logger.info(f"Connected to container engine at {self.docker_host or 'default socket'}")
        return self._client

    def close(self) -> None:
        if self._client is not None:
            try:
                self._client.close()
            except Exception as e:
                logger.debug(f"Error closing engine client: {e}")
            self._client = None

    async def _call(self, func: Callable[..., Any], *args, what: str, timeout: Optional[float] = None, **kwargs) -> Any:
        """Run an SDK call in a worker thread and translate its failures."""
        budget = timeout if timeout is not None else self.operation_timeout
        try:
            return await async_docker_call(func, *args, timeout=budget, **kwargs)
        except asyncio.TimeoutError:
            raise EngineTimeoutError(f"{what} timed out after {budget:g}s")
        except Exception as e:
            raise translate_engine_error(e, what) from e

    async def _get(self, ref: str):
        return await self._call(self.client.containers.get, ref, what=f"Container {ref}", timeout=self.inspect_timeout)

    # ---------- engine ----------

    async def ping(self) -> bool:
        return await self._call(self.client.ping, what="Engine ping", timeout=self.inspect_timeout)

    async def version(self) -> Dict[str, Any]:
        return await self._call(self.client.version, what="Engine version", timeout=self.inspect_timeout)

    # ---------- containers: read ----------

    def _to_info(self, container) -> ContainerInfo:
        attrs = container.attrs or {}
        state = attrs.get("State", {})
        state_str = state.get("Status", "") if isinstance(state, dict) else str(state or "")
        config = attrs.get("Config") or {}
        network_settings = attrs.get("NetworkSettings") or {}
        return ContainerInfo(
            id=container.id,
            name=(attrs.get("Name") or container.name or "").lstrip("/"),
            image=config.get("Image") or "",
            status=ContainerStatus.from_engine(state_str),
            state=state_str,
            created=_parse_created(attrs.get("Created")),
            ports=_port_mappings(network_settings.get("Ports")),
            labels=config.get("Labels") or {},
        )

    async def list_containers(self, all: bool = True, labels: Optional[Dict[str, str]] = None) -> List[ContainerInfo]:
        """
        List containers.

        Args:
            all: Include stopped containers
            labels: Only containers carrying all of these label values

        Returns:
            ContainerInfo list sorted by name
        """
        filters = {}
        if labels:
            filters["label"] = [f"{k}={v}" for k, v in labels.items()]
        containers = await self._call(
            self.client.containers.list, all=all, filters=filters, ignore_removed=True,
            what="List containers", timeout=self.inspect_timeout,
        )
        return sorted((self._to_info(c) for c in containers), key=lambda c: c.name)

    async def get_container(self, ref: str) -> ContainerInfo:
        return self._to_info(await self._get(ref))

    async def inspect_container(self, ref: str) -> Dict[str, Any]:
        """Raw engine inspect output."""
        container = await self._get(ref)
        return container.attrs

    async def container_exists(self, name: str) -> bool:
        try:
            await self._get(name)
            return True
        except NotFoundError:
            return False

    async def get_mounts(self, ref: str) -> List[MountInfo]:
        container = await self._get(ref)
        return _mounts(container.attrs.get("Mounts"))

    async def read_container_config(self, ref: str) -> ContainerConfig:
        """
        Read everything needed to recreate a container.

        Environment variables and labels that the container merely inherited
        from its image are dropped, so a replacement built from a newer image
        picks up the new image's defaults instead of pinning the old ones.
        """
        container = await self._get(ref)
        attrs = container.attrs
        config = attrs.get("Config") or {}
        host_config = attrs.get("HostConfig") or {}

        image_env: List[str] = []
        image_labels: Dict[str, str] = {}
        image_id = attrs.get("Image")
        if image_id:
            try:
                image = await self._call(self.client.images.get, image_id,
                                         what=f"Image {image_id[:19]}", timeout=self.inspect_timeout)
                image_config = image.attrs.get("Config") or {}
                image_env = image_config.get("Env") or []
                image_labels = image_config.get("Labels") or {}
            except NotFoundError:
                logger.debug(f"Image {image_id[:19]} of {ref} no longer present; keeping full env/labels")

        env: Dict[str, str] = {}
        for entry in config.get("Env") or []:
            if entry in image_env:
                continue
            key, _, value = entry.partition("=")
            env[key] = value

        labels = {
            k: v for k, v in (config.get("Labels") or {}).items()
            if not k.startswith(SYSTEM_LABEL_PREFIXES) and image_labels.get(k) != v
        }

        hostname = config.get("Hostname") or None
        # The engine defaults hostname to the short container id
        if hostname and attrs.get("Id", "").startswith(hostname):
            hostname = None

        nano_cpus = host_config.get("NanoCpus") or 0
        network_mode = host_config.get("NetworkMode") or None
        if network_mode == "default":
            network_mode = None

        return ContainerConfig(
            name=(attrs.get("Name") or "").lstrip("/"),
            image=config.get("Image") or "",
            ports=_port_mappings(host_config.get("PortBindings")),
            mounts=_mounts(attrs.get("Mounts")),
            env=dict(sorted(env.items())),
            labels=dict(sorted(labels.items())),
            restart_policy=format_restart_policy(host_config.get("RestartPolicy")),
            network_mode=network_mode,
            hostname=hostname,
            user=config.get("User") or None,
            workdir=config.get("WorkingDir") or None,
            entrypoint=config.get("Entrypoint") or None,
            command=config.get("Cmd") or None,
            cpus=nano_cpus / 1e9 if nano_cpus else None,
            memory_bytes=host_config.get("Memory") or None,
        )

    # ---------- containers: lifecycle ----------

    async def create_container(self, spec: ContainerSpec) -> str:
        """
        Create (but do not start) a container.

        Args:
            spec: Container definition

        Returns:
            Engine id of the new container

        Raises:
            ConflictError: If the name is already in use
            NotFoundError: If the image is not present locally
            ValidationFailedError: If ports/volumes/limits are malformed
        """
        api = self.client.api
        image = normalize_image_name(spec.image)

        port_bindings: Dict[str, Any] = {}
        for port in spec.ports:
            key, binding = parse_port(port)
            if key in port_bindings:
                existing = port_bindings[key]
                port_bindings[key] = (existing if isinstance(existing, list) else [existing]) + [binding]
            else:
                port_bindings[key] = binding
        binds = []
        targets = []
        for volume in spec.volumes:
            source, target, mode = parse_volume(volume)
            binds.append(f"{source}:{target}:{mode}")
            targets.append(target)

        network_mode = spec.network_mode or None
        host_config = api.create_host_config(
            port_bindings=port_bindings or None,
            binds=binds or None,
            restart_policy=parse_restart_policy(spec.restart_policy),
            network_mode=network_mode,
            nano_cpus=int(spec.cpus * 1e9) if spec.cpus else None,
            mem_limit=parse_memory(spec.memory),
        )

        # User-defined networks attach at creation on API >= 1.44, after creation otherwise
        networking_config = None
        connect_after: Optional[str] = None
        shares_namespace = bool(network_mode and network_mode.startswith("container:"))
        if network_mode and network_mode not in BUILTIN_NETWORK_MODES and not shares_namespace:
            api_version = version.parse(api.api_version)
            if api_version >= version.parse("1.44"):
                networking_config = api.create_networking_config({network_mode: api.create_endpoint_config()})
            else:
                connect_after = network_mode

        response = await self._call(
            api.create_container,
            image=image,
            name=spec.name,
            hostname=None if shares_namespace else spec.hostname,
            user=spec.user,
            environment=[f"{k}={v}" for k, v in spec.env.items()] or None,
            command=spec.command or None,
            entrypoint=spec.entrypoint or None,
            working_dir=spec.workdir,
            labels=spec.labels or None,
            ports=[tuple(key.split("/", 1)) for key in port_bindings] or None,
            volumes=targets or None,
            host_config=host_config,
            networking_config=networking_config,
            what=f"Create container {spec.name}",
            timeout=self.create_timeout,
        )
        container_id = response["Id"]

        if connect_after:
            try:
                await self._call(api.connect_container_to_network, container_id, connect_after,
                                 what=f"Connect {spec.name} to {connect_after}")
            except StardeckError:
                # Never leave a half-configured container behind under the name
                await self.remove_container(container_id, force=True)
                raise

        for warning in response.get("Warnings") or []:
            logger.warning(f"Engine warning creating {spec.name}: {warning}")
        logger.info(f"Created container {spec.name} ({container_id[:12]}) from {image}")
        return container_id

    async def start_container(self, ref: str) -> None:
        container = await self._get(ref)
        await self._call(container.start, what=f"Start container {ref}")
        logger.info(f"Started container {ref}")

    async def stop_container(self, ref: str, timeout: int = 10) -> None:
        """Stop a container, giving it ``timeout`` seconds before SIGKILL."""
        container = await self._get(ref)
        budget = max(self.operation_timeout, timeout + 5)
        await self._call(_bind(container.stop, timeout=timeout), what=f"Stop container {ref}", timeout=budget)
        logger.info(f"Stopped container {ref}")

    async def restart_container(self, ref: str, timeout: int = 10) -> None:
        container = await self._get(ref)
        budget = max(self.operation_timeout, timeout + 5)
        await self._call(_bind(container.restart, timeout=timeout), what=f"Restart container {ref}", timeout=budget)
        logger.info(f"Restarted container {ref}")

    async def pause_container(self, ref: str) -> None:
        container = await self._get(ref)
        await self._call(container.pause, what=f"Pause container {ref}")

    async def unpause_container(self, ref: str) -> None:
        container = await self._get(ref)
        await self._call(container.unpause, what=f"Unpause container {ref}")

    async def rename_container(self, ref: str, new_name: str) -> None:
        container = await self._get(ref)
        await self._call(container.rename, new_name, what=f"Rename container {ref} to {new_name}")
        logger.info(f"Renamed container {ref} to {new_name}")

    async def remove_container(self, ref: str, force: bool = False, volumes: bool = False) -> None:
        container = await self._get(ref)
        await self._call(container.remove, force=force, v=volumes, what=f"Remove container {ref}")
        logger.info(f"Removed container {ref}")

    # ---------- containers: observability ----------

    async def get_container_stats(self, ref: str) -> ContainerStats:
        container = await self._get(ref)
        raw = await self._call(container.stats, stream=False, what=f"Stats for {ref}",
                               timeout=max(self.inspect_timeout, 10))
        return calculate_stats(raw)

    async def get_logs(self, ref: str, tail: int = 100, timestamps: bool = False) -> List[str]:
        container = await self._get(ref)
        output = await self._call(container.logs, tail=tail, timestamps=timestamps, stdout=True, stderr=True,
                                  what=f"Logs for {ref}", timeout=self.operation_timeout)
        return output.decode("utf-8", errors="replace").splitlines()

    async def stream_logs(self, ref: str, tail: int = 100, capacity: int = 256) -> LineStream:
        """
        Follow a container's logs.

        Returns:
            LineStream of ``{"timestamp", "line"}`` dicts; close() stops following
        """
        container = await self._get(ref)

        def _open():
            return container.logs(stream=True, follow=True, tail=tail, timestamps=True, stdout=True, stderr=True)

        return LineStream.from_blocking_iterator(_open, transform=parse_log_line, capacity=capacity,
                                                 name=f"logs-{ref}")

    async def exec_interactive(self, ref: str, command: Optional[List[str]] = None) -> ExecSession:
        """
        Start an interactive TTY process inside a running container.

        Returns:
            ExecSession; closing it releases the process and its TTY
        """
        container = await self._get(ref)
        if container.status != "running":
            raise ConflictError(f"Container {ref} is not running")
        api = self.client.api
        created = await self._call(
            api.exec_create, container.id, command or DEFAULT_SHELL_COMMAND,
            stdin=True, tty=True, stdout=True, stderr=True,
            environment=["TERM=xterm-256color"],
            what=f"Exec in {ref}",
        )
        exec_id = created["Id"]
        sock = await self._call(api.exec_start, exec_id, socket=True, tty=True, what=f"Exec in {ref}")
        logger.info(f"Started exec session {exec_id[:12]} in {ref}")
        return ExecSession(api, exec_id, sock, container_ref=ref)

    # ---------- images ----------

    async def image_exists(self, name: str) -> bool:
        try:
            await self._call(self.client.images.get, normalize_image_name(name),
                             what=f"Image {name}", timeout=self.inspect_timeout)
            return True
        except NotFoundError:
            return False

    async def pull_image(self, name: str, capacity: int = 256) -> LineStream:
        """
        Pull an image, streaming PullProgress snapshots.

        The last item has ``done=True``. Failures (unknown image, registry
        errors, timeout) surface when the stream is consumed.
        """
        image = normalize_image_name(name)
        repository, tag = parse_repository_tag(image)
        tracker = PullTracker(image)
        deadline = time.monotonic() + self.pull_timeout
        api = self.client.api

        def _events() -> Iterator[Any]:
            try:
                for line in api.pull(repository, tag=tag or "latest", stream=True, decode=True):
                    if time.monotonic() > deadline:
                        raise EngineTimeoutError(f"Pull {image} timed out after {self.pull_timeout:g}s")
                    snapshot = tracker.update(line)
                    if snapshot is not None:
                        yield snapshot
                self._verify_image_present(image)
            except Exception as e:
                raise translate_engine_error(e, f"Pull {image}") from e
            yield tracker.finish()

        return LineStream.from_blocking_iterator(_events, capacity=capacity, name=f"pull-{image}")

    def _verify_image_present(self, image: str, attempts: int = 5) -> None:
        """The pull stream can end before the image is committed to the store."""
        delay = 0.5
        for attempt in range(attempts):
            try:
                self.client.images.get(image)
                return
            except docker.errors.ImageNotFound:
                if attempt == attempts - 1:
                    raise EngineError(f"Image {image} pull completed but image is not available")
                logger.warning(f"Image {image} not yet in image store (attempt {attempt + 1}/{attempts})")
                time.sleep(delay)
                delay *= 2

    async def list_images(self) -> List[ImageInfo]:
        images = await self._call(self.client.images.list, what="List images", timeout=self.inspect_timeout)
        return [
            ImageInfo(
                id=img.id,
                tags=img.tags,
                size=img.attrs.get("Size", 0),
                created=img.attrs.get("Created"),
                digests=img.attrs.get("RepoDigests") or [],
            )
            for img in images
        ]

    async def inspect_image(self, name: str) -> Dict[str, Any]:
        image = await self._call(self.client.images.get, name, what=f"Image {name}", timeout=self.inspect_timeout)
        return image.attrs

    async def remove_image(self, name: str, force: bool = False) -> None:
        await self._call(self.client.images.remove, name, force=force, what=f"Remove image {name}")
        logger.info(f"Removed image {name}")

    async def get_image_digest(self, name: str) -> Optional[str]:
        """Repository digest (``sha256:...``) of a local image, if it came from a registry."""
        attrs = await self.inspect_image(name)
        digests = attrs.get("RepoDigests") or []
        if not digests:
            return None
        return digests[0].split("@", 1)[1]

    async def check_image_update(self, name: str) -> ImageUpdateCheck:
        """Compare the local digest with the registry's current digest."""
        image = normalize_image_name(name)
        local_digest = await self.get_image_digest(image)
        registry_data = await self._call(self.client.images.get_registry_data, image,
                                         what=f"Registry lookup {image}", timeout=self.operation_timeout)
        return ImageUpdateCheck(image=image, local_digest=local_digest, remote_digest=registry_data.id)

    # ---------- volumes ----------

    async def list_volumes(self) -> List[VolumeInfo]:
        volumes = await self._call(self.client.volumes.list, what="List volumes", timeout=self.inspect_timeout)
        return [
            VolumeInfo(
                name=v.name,
                driver=v.attrs.get("Driver", "local"),
                mountpoint=v.attrs.get("Mountpoint", ""),
                labels=v.attrs.get("Labels") or {},
                created=v.attrs.get("CreatedAt"),
            )
            for v in volumes
        ]

    async def create_volume(self, name: str, driver: str = "local", labels: Optional[Dict[str, str]] = None) -> VolumeInfo:
        volume = await self._call(self.client.volumes.create, name=name, driver=driver, labels=labels or {},
                                  what=f"Create volume {name}", timeout=self.create_timeout)
        logger.info(f"Created volume {name}")
        return VolumeInfo(name=volume.name, driver=volume.attrs.get("Driver", driver),
                          mountpoint=volume.attrs.get("Mountpoint", ""), labels=volume.attrs.get("Labels") or {},
                          created=volume.attrs.get("CreatedAt"))

    async def remove_volume(self, name: str, force: bool = False) -> None:
        volume = await self._call(self.client.volumes.get, name, what=f"Volume {name}", timeout=self.inspect_timeout)
        await self._call(volume.remove, force=force, what=f"Remove volume {name}")
        logger.info(f"Removed volume {name}")

    # ---------- networks ----------

    def _to_network(self, network) -> NetworkInfo:
        attrs = network.attrs
        ipam_configs = (attrs.get("IPAM") or {}).get("Config") or []
        first = ipam_configs[0] if ipam_configs else {}
        return NetworkInfo(
            id=network.id,
            name=network.name,
            driver=attrs.get("Driver", ""),
            scope=attrs.get("Scope", "local"),
            subnet=first.get("Subnet"),
            gateway=first.get("Gateway"),
            labels=attrs.get("Labels") or {},
        )

    async def list_networks(self) -> List[NetworkInfo]:
        networks = await self._call(self.client.networks.list, what="List networks", timeout=self.inspect_timeout)
        return [self._to_network(n) for n in networks]

    async def create_network(
        self,
        name: str,
        driver: str = "bridge",
        subnet: Optional[str] = None,
        gateway: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> NetworkInfo:
        ipam = None
        if subnet:
            ipam = IPAMConfig(pool_configs=[IPAMPool(subnet=subnet, gateway=gateway)])
        network = await self._call(self.client.networks.create, name, driver=driver, ipam=ipam, labels=labels or {},
                                   check_duplicate=True, what=f"Create network {name}", timeout=self.create_timeout)
        logger.info(f"Created network {name}")
        return self._to_network(network)

    async def remove_network(self, name: str) -> None:
        network = await self._call(self.client.networks.get, name, what=f"Network {name}", timeout=self.inspect_timeout)
        await self._call(network.remove, what=f"Remove network {name}")
        logger.info(f"Removed network {name}")


def _bind(func: Callable[..., Any], **kwargs) -> Callable[[], Any]:
    """Bind kwargs that clash with async_docker_call's own ``timeout`` parameter."""
    def _call():
        return func(**kwargs)
    return _call


def parse_log_line(raw: bytes) -> Optional[Dict[str, Optional[str]]]:
    """Split a timestamped log line into ``{"timestamp", "line"}``."""
    text = raw.decode("utf-8", errors="replace").rstrip("\n")
    if not text:
        return None
    timestamp, sep, line = text.partition(" ")
    if sep and len(timestamp) >= 20 and timestamp[4] == "-" and "T" in timestamp:
        return {"timestamp": timestamp, "line": line}
    return {"timestamp": None, "line": text}


def calculate_stats(raw: Dict[str, Any]) -> ContainerStats:
    """Compute CLI-style percentages from a raw engine stats sample."""
    cpu_stats = raw.get("cpu_stats") or {}
    precpu_stats = raw.get("precpu_stats") or {}
    cpu_delta = (cpu_stats.get("cpu_usage", {}).get("total_usage", 0)
                 - precpu_stats.get("cpu_usage", {}).get("total_usage", 0))
    system_delta = cpu_stats.get("system_cpu_usage", 0) - precpu_stats.get("system_cpu_usage", 0)
    online_cpus = (cpu_stats.get("online_cpus")
                   or len(cpu_stats.get("cpu_usage", {}).get("percpu_usage") or [])
                   or 1)
    cpu_percent = 0.0
    if cpu_delta > 0 and system_delta > 0:
        cpu_percent = round(cpu_delta / system_delta * online_cpus * 100.0, 2)

    memory_stats = raw.get("memory_stats") or {}
    usage = memory_stats.get("usage", 0)
    mem_detail = memory_stats.get("stats") or {}
    # Page cache is reclaimable; cgroup v1 reports "cache", v2 "inactive_file"
    usage -= mem_detail.get("inactive_file", mem_detail.get("cache", 0))
    usage = max(usage, 0)
    limit = memory_stats.get("limit", 0)
    memory_percent = round(usage / limit * 100.0, 2) if limit else 0.0

    network_rx = sum(n.get("rx_bytes", 0) for n in (raw.get("networks") or {}).values())
    network_tx = sum(n.get("tx_bytes", 0) for n in (raw.get("networks") or {}).values())

    block_read = block_write = 0
    for entry in (raw.get("blkio_stats") or {}).get("io_service_bytes_recursive") or []:
        op = (entry.get("op") or "").lower()
        if op == "read":
            block_read += entry.get("value", 0)
        elif op == "write":
            block_write += entry.get("value", 0)

    return ContainerStats(
        cpu_percent=cpu_percent,
        memory_usage=usage,
        memory_limit=limit,
        memory_percent=memory_percent,
        network_rx=network_rx,
        network_tx=network_tx,
        block_read=block_read,
        block_write=block_write,
        pids=(raw.get("pids_stats") or {}).get("current", 0),
    )
