"""
Engine Adapter package.

Stateless access to the container engine (Docker, or Podman through its
Docker-compatible API), plus the Stardeck error taxonomy.
"""

from .adapter import EngineAdapter, normalize_image_name
from .errors import (
    ConflictError,
    EngineError,
    EngineTimeoutError,
    EngineUnavailableError,
    NotFoundError,
    StackCommandError,
    StardeckError,
    ValidationFailedError,
)
from .types import ContainerConfig, ContainerInfo, ContainerSpec, ContainerStatus, MountInfo

__all__ = [
    'EngineAdapter',
    'normalize_image_name',
    'ConflictError',
    'EngineError',
    'EngineTimeoutError',
    'EngineUnavailableError',
    'NotFoundError',
    'StackCommandError',
    'StardeckError',
    'ValidationFailedError',
    'ContainerConfig',
    'ContainerInfo',
    'ContainerSpec',
    'ContainerStatus',
    'MountInfo',
]
