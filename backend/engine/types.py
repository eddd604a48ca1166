"""
Type definitions for the Engine Adapter.

Plain dataclasses describing what the container engine reports and what
callers ask it to create. Docker SDK objects never leave the adapter.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


STARDECK_LABEL_WEBUI = "stardeck.webui"
STARDECK_LABEL_WEBUI_PORT = "stardeck.webui.port"
STARDECK_LABEL_WEBUI_PATH = "stardeck.webui.path"
STARDECK_LABEL_ICON = "stardeck.icon"

COMPOSE_PROJECT_LABEL = "com.docker.compose.project"
COMPOSE_SERVICE_LABEL = "com.docker.compose.service"

# Labels injected by the engine or image build tooling, not user configuration
SYSTEM_LABEL_PREFIXES = ("io.podman.", "org.opencontainers.")


def stardeck_labels(has_web_ui: bool = False, web_ui_port: Optional[int] = None,
                    web_ui_path: Optional[str] = None, icon: Optional[str] = None) -> Dict[str, str]:
    """Labels recording Stardeck's web UI and icon metadata on the container itself."""
    labels: Dict[str, str] = {}
    if has_web_ui:
        labels[STARDECK_LABEL_WEBUI] = "true"
        if web_ui_port:
            labels[STARDECK_LABEL_WEBUI_PORT] = str(web_ui_port)
        if web_ui_path:
            labels[STARDECK_LABEL_WEBUI_PATH] = web_ui_path
    if icon:
        labels[STARDECK_LABEL_ICON] = icon
    return labels


class ContainerStatus(str, Enum):
    """Container state as tracked by Stardeck."""
    CREATED = "created"
    RUNNING = "running"
    EXITED = "exited"
    PAUSED = "paused"
    UNKNOWN = "unknown"

    @classmethod
    def from_engine(cls, state: Optional[str]) -> "ContainerStatus":
        """
        Map an engine state string onto the Stardeck status enum.

        Engine states without a Stardeck counterpart (restarting, removing,
        dead, stopping) map to UNKNOWN.
        """
        if not state:
            return cls.UNKNOWN
        state = state.lower()
        if state == "stopped":
            return cls.EXITED
        try:
            return cls(state)
        except ValueError:
            return cls.UNKNOWN


@dataclass
class PortMapping:
    host_port: str
    container_port: str
    protocol: str = "tcp"
    host_ip: str = ""

    def to_string(self) -> str:
        """Render as ``[ip:]host:container[/proto]``, or ``container[/proto]`` when the host port is engine-assigned"""
        suffix = f"/{self.protocol}" if self.protocol and self.protocol != "tcp" else ""
        if not self.host_port and not self.host_ip:
            return f"{self.container_port}{suffix}"
        prefix = f"{self.host_ip}:" if self.host_ip else ""
        return f"{prefix}{self.host_port}:{self.container_port}{suffix}"


@dataclass
class MountInfo:
    """A mount attached to a container."""
    type: str  # bind, volume, tmpfs
    source: str
    target: str
    read_only: bool = False
    name: Optional[str] = None  # named volumes only

    @property
    def is_bind(self) -> bool:
        return self.type == "bind"

    def to_volume_string(self) -> str:
        """Render as ``src:target[:ro]`` (volume name for named volumes)"""
        source = self.name if self.type == "volume" and self.name else self.source
        suffix = ":ro" if self.read_only else ""
        return f"{source}:{self.target}{suffix}"


@dataclass
class ContainerSpec:
    """Everything needed to create a container."""
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


@dataclass
class ContainerConfig:
    """
    Live configuration of an existing container, as needed to recreate it.

    ``labels`` excludes engine/system labels so that recreating from this
    config does not copy them onto the replacement.
    """
    name: str
    image: str
    ports: List[PortMapping] = field(default_factory=list)
    mounts: List[MountInfo] = field(default_factory=list)
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
    memory_bytes: Optional[int] = None

    @property
    def bind_mounts(self) -> List[MountInfo]:
        return [m for m in self.mounts if m.is_bind]

    def to_spec(self, name: Optional[str] = None, image: Optional[str] = None) -> ContainerSpec:
        """Build a ContainerSpec that recreates this container, optionally with a new name/image."""
        return ContainerSpec(
            name=name or self.name,
            image=image or self.image,
            ports=[p.to_string() for p in self.ports],
            volumes=[m.to_volume_string() for m in self.mounts if m.type in ("bind", "volume")],
            env=dict(self.env),
            labels=dict(self.labels),
            restart_policy=self.restart_policy,
            network_mode=self.network_mode,
            hostname=self.hostname,
            user=self.user,
            workdir=self.workdir,
            entrypoint=list(self.entrypoint) if self.entrypoint else None,
            command=list(self.command) if self.command else None,
            cpus=self.cpus,
            memory=str(self.memory_bytes) if self.memory_bytes else None,
        )


@dataclass
class ContainerInfo:
    """Summary of a container as listed by the engine."""
    id: str
    name: str
    image: str
    status: ContainerStatus
    state: str
    created: Optional[datetime] = None
    ports: List[PortMapping] = field(default_factory=list)
    labels: Dict[str, str] = field(default_factory=dict)

    @property
    def short_id(self) -> str:
        return self.id[:12]

    @property
    def is_running(self) -> bool:
        return self.status == ContainerStatus.RUNNING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "short_id": self.short_id,
            "name": self.name,
            "image": self.image,
            "status": self.status.value,
            "state": self.state,
            "created": self.created,
            "ports": [p.to_string() for p in self.ports],
            "labels": self.labels,
        }


@dataclass
class ContainerStats:
    """Point-in-time resource usage for one container."""
    cpu_percent: float = 0.0
    memory_usage: int = 0
    memory_limit: int = 0
    memory_percent: float = 0.0
    network_rx: int = 0
    network_tx: int = 0
    block_read: int = 0
    block_write: int = 0
    pids: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class ImageInfo:
    id: str
    tags: List[str]
    size: int
    created: Optional[str] = None
    digests: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "short_id": self.id.replace("sha256:", "")[:12],
            "tags": self.tags,
            "size": self.size,
            "created": self.created,
            "digests": self.digests,
        }


@dataclass
class ImageUpdateCheck:
    image: str
    local_digest: Optional[str]
    remote_digest: Optional[str]

    @property
    def update_available(self) -> bool:
        return bool(self.local_digest and self.remote_digest and self.local_digest != self.remote_digest)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "image": self.image,
            "local_digest": self.local_digest,
            "remote_digest": self.remote_digest,
            "update_available": self.update_available,
        }


@dataclass
class VolumeInfo:
    name: str
    driver: str
    mountpoint: str
    labels: Dict[str, str] = field(default_factory=dict)
    created: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class NetworkInfo:
    id: str
    name: str
    driver: str
    scope: str = "local"
    subnet: Optional[str] = None
    gateway: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class PullProgress:
    """Aggregated progress of one image pull."""
    image: str
    layers: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    status: str = ""
    done: bool = False

    @property
    def percent(self) -> int:
        if self.done:
            return 100
        total = sum(layer["total"] for layer in self.layers.values() if layer["total"] > 0)
        if total > 0:
            current = sum(min(layer["current"], layer["total"]) for layer in self.layers.values() if layer["total"] > 0)
            return min(99, int(current * 100 / total))
        if not self.layers:
            return 0
        completed = sum(1 for layer in self.layers.values() if _layer_finished(layer["status"]))
        return min(99, int(completed * 100 / len(self.layers)))

    def summary(self) -> str:
        total_layers = len(self.layers)
        if self.done:
            return f"Pull complete ({total_layers} layers)" if total_layers else "Pull complete"
        downloading = sum(1 for layer in self.layers.values() if layer["status"] == "Downloading")
        extracting = sum(1 for layer in self.layers.values() if layer["status"] == "Extracting")
        if downloading:
            return f"Downloading {downloading} of {total_layers} layers ({self.percent}%)"
        if extracting:
            return f"Extracting {extracting} of {total_layers} layers ({self.percent}%)"
        return self.status or f"Pulling {self.image}"


def _layer_finished(status: str) -> bool:
    return "complete" in status.lower() or status == "Already exists"
