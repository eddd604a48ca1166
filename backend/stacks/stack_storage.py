"""
Filesystem storage for stacks.

Simple file I/O - no database interaction. Each stack lives in its own
directory under the stacks root:

    <stacks_dir>/<name>/docker-compose.yml
    <stacks_dir>/<name>/.env            (optional)

All public methods are async to avoid blocking the event loop on slow storage
(NFS, etc.). Uses asyncio.to_thread() for synchronous filesystem operations.
"""
import asyncio
import logging
import os
import re
import shutil
import tempfile
from pathlib import Path
from typing import List, Optional, Tuple

import aiofiles

from engine.errors import ConflictError, NotFoundError, ValidationFailedError

logger = logging.getLogger(__name__)

COMPOSE_FILENAME = "docker-compose.yml"
ENV_FILENAME = ".env"

# Valid stack name pattern: lowercase alphanumeric, hyphens, underscores
# Must start with alphanumeric
VALID_NAME_PATTERN = re.compile(r'^[a-z0-9][a-z0-9_-]*$')


def validate_stack_name(name: str) -> None:
    """
    Validate stack name is filesystem-safe.

    Args:
        name: Stack name to validate

    Raises:
        ValidationFailedError: If name is invalid
    """
    if not name or len(name) > 100:
        raise ValidationFailedError("Stack name must be 1-100 characters")
    if not VALID_NAME_PATTERN.match(name):
        raise ValidationFailedError(
            "Stack name must be lowercase alphanumeric, hyphens, underscores, "
            "and start with a letter or number"
        )


async def _atomic_write_file(target_path: Path, content: str) -> None:
    """Write content atomically using temp file + rename pattern."""
    fd, temp_path = tempfile.mkstemp(dir=target_path.parent, suffix='.tmp')
    try:
        async with aiofiles.open(fd, 'w', closefd=True) as f:
            await f.write(content)
        await asyncio.to_thread(Path(temp_path).rename, target_path)
    except Exception:
        await asyncio.to_thread(Path(temp_path).unlink, True)  # missing_ok=True
        raise


class StackStorage:
    """Compose and env files for every stack under one root directory."""

    def __init__(self, stacks_dir: str):
        self.root = Path(stacks_dir)

    def validate_path_safety(self, path: Path) -> None:
        """
        Ensure path is within the stacks root and not a symlink escape.

        Raises:
            ValidationFailedError: If path escapes stacks directory or is a symlink
        """
        if path.is_symlink():
            raise ValidationFailedError("Symlinks not allowed in stacks directory")

        resolved = path.resolve()
        root_resolved = self.root.resolve()
        if not str(resolved).startswith(str(root_resolved) + os.sep) and resolved != root_resolved:
            raise ValidationFailedError("Path escapes stacks directory")

    def get_stack_path(self, name: str) -> Path:
        path = self.root / name
        self.validate_path_safety(path)
        return path

    def compose_path(self, name: str) -> Path:
        return self.get_stack_path(name) / COMPOSE_FILENAME

    def env_path(self, name: str) -> Path:
        return self.get_stack_path(name) / ENV_FILENAME

    async def stack_exists(self, name: str) -> bool:
        """True if the stack directory contains a compose file."""
        def _check():
            try:
                return self.compose_path(name).exists()
            except ValidationFailedError:
                return False

        return await asyncio.to_thread(_check)

    async def has_env_file(self, name: str) -> bool:
        return await asyncio.to_thread(self.env_path(name).exists)

    async def read_stack(self, name: str) -> Tuple[str, Optional[str]]:
        """
        Read the compose file and .env for a stack.

        Returns:
            Tuple of (compose_yaml, env_content or None)

        Raises:
            NotFoundError: If the compose file is missing
        """
        compose_path = self.compose_path(name)
        env_path = self.env_path(name)

        def _check_exists():
            return compose_path.exists(), env_path.exists()

        compose_exists, env_exists = await asyncio.to_thread(_check_exists)
        if not compose_exists:
            raise NotFoundError(f"Stack '{name}' not found (missing {COMPOSE_FILENAME})")

        async with aiofiles.open(compose_path, 'r') as f:
            compose_yaml = await f.read()

        env_content = None
        if env_exists:
            async with aiofiles.open(env_path, 'r') as f:
                env_content = await f.read()

        return compose_yaml, env_content

    async def write_stack(
        self,
        name: str,
        compose_yaml: str,
        env_content: Optional[str] = None,
        create_only: bool = False,
    ) -> Path:
        """
        Write the compose file and .env for a stack.

        Creates the directory if needed. Uses atomic write pattern.

        Args:
            name: Stack name (validated)
            compose_yaml: Compose file content
            env_content: Optional .env content; empty removes an existing .env
            create_only: Fail if the stack directory already exists

        Returns:
            Stack directory

        Raises:
            ValidationFailedError: If name is invalid
            ConflictError: If the stack exists and create_only is set
        """
        validate_stack_name(name)
        stack_path = self.get_stack_path(name)

        if create_only:
            try:
                await asyncio.to_thread(stack_path.mkdir, parents=True, exist_ok=False)
            except FileExistsError:
                raise ConflictError(f"Stack '{name}' already exists")
        else:
            await asyncio.to_thread(stack_path.mkdir, parents=True, exist_ok=True)

        await _atomic_write_file(stack_path / COMPOSE_FILENAME, compose_yaml)

        env_path = stack_path / ENV_FILENAME
        if env_content and env_content.strip():
            await _atomic_write_file(env_path, env_content)
        else:
            def _remove_env_if_exists():
                if env_path.exists():
                    env_path.unlink()
            await asyncio.to_thread(_remove_env_if_exists)

        logger.debug(f"Wrote stack '{name}' to {stack_path}")
        return stack_path

    async def delete_stack_files(self, name: str) -> None:
        """Delete a stack directory and all contents. Missing directories are ignored."""
        stack_path = self.get_stack_path(name)

        def _delete():
            if stack_path.exists():
                shutil.rmtree(stack_path)
                logger.info(f"Deleted stack '{name}' from {stack_path}")

        await asyncio.to_thread(_delete)

    async def list_stacks(self) -> List[str]:
        """Sorted names of directories containing a compose file."""
        def _list():
            if not self.root.exists():
                return []
            return sorted(
                d.name for d in self.root.iterdir()
                if d.is_dir() and (d / COMPOSE_FILENAME).exists()
            )

        return await asyncio.to_thread(_list)
