"""
Shared types for container updates.

UpdateRequest comes in from the API, UpdateSession is the orchestrator's
private working state for one call, UpdateResult goes back out.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class UpdatePhase(str, Enum):
    """Phases of a rename-swap update, in execution order."""
    PENDING = "pending"
    CONFIG = "config"
    BACKUP = "backup"
    PULL = "pull"
    STOP = "stop"
    RENAME = "rename"
    CREATE = "create"
    START = "start"
    METADATA = "metadata"
    CLEANUP = "cleanup"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


@dataclass
class UpdateRequest:
    """
    Parameters of one update call.

    ``container_ref`` is a ContainerRecord id, an engine id or a container name.
    Without ``new_image`` the current image tag is re-pulled.
    """
    container_ref: str
    new_image: Optional[str] = None
    create_backup: bool = False
    overwrite_backup: bool = False
    remove_old: bool = False
    stop_timeout: int = 30


@dataclass
class UpdateSession:
    """Working state of one update. Never shared between calls."""
    container_name: str
    old_engine_id: str
    old_image: str
    target_image: str
    was_running: bool
    record_id: Optional[str] = None
    new_engine_id: Optional[str] = None
    backup_container_name: Optional[str] = None
    backup_record_id: Optional[str] = None
    phase: UpdatePhase = UpdatePhase.PENDING
    committed: bool = False
    compensated: bool = False
    warnings: List[str] = field(default_factory=list)

    @property
    def id(self) -> str:
        return f"{self.container_name} ({self.old_engine_id[:12]})"


@dataclass
class UpdateResult:
    """
    Outcome of an update.

    A successful update may still carry warnings (metadata or cleanup
    failures); the replacement container is running in that case.
    """
    success: bool
    container_name: Optional[str] = None
    new_engine_id: Optional[str] = None
    new_image: Optional[str] = None
    backup_container_name: Optional[str] = None
    backup_record_id: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None
    failed_step: Optional[str] = None
    rolled_back: bool = False
