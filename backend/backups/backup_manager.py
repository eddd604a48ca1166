"""
Backup Manager for Stardeck.

Archives the bind-mounted host paths of a container into a per-backup folder
under the backups root:

    <root>/<container>_<YYYYmmdd-HHMMSS>/
        mount_0.tar.gz
        mount_1.tar.gz
        backup.json          # manifest

Bind mounts of single files are archived under their basename and the
manifest records each mount's kind, so a restore puts back a file or a
directory as it found it. Named volumes and tmpfs mounts are skipped.

A BackupRecord is written only after every archive and the manifest were
written successfully; on any failure the partial folder is removed.

Backups and restores run as a producer task feeding a LineStream of
human-readable progress lines. The consumer iterates the lines and then
reads ``job.record`` (the stream re-raises the producer's error after the
buffered lines have been drained).
"""

import asyncio
import json
import logging
import os
import re
import shutil
import tarfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import aiofiles

from database import BackupRecord, DatabaseManager, new_id
from engine.adapter import EngineAdapter
from engine.errors import ConflictError, NotFoundError, ValidationFailedError
from engine.types import MountInfo
from utils.line_stream import LineStream

logger = logging.getLogger(__name__)

MANIFEST_NAME = "backup.json"
MOUNT_KIND_DIRECTORY = "directory"
MOUNT_KIND_FILE = "file"
TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"
_TIMESTAMP_RE = re.compile(r"^\d{8}-\d{6}$")


def format_size(size_bytes: int) -> str:
    value = float(size_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.1f} {unit}" if unit != "B" else f"{int(value)} B"
        value /= 1024
    return f"{value:.1f} TB"


def directory_size(path: str) -> int:
    """Total size of regular files under ``path`` (symlinks not followed)."""
    if os.path.isfile(path):
        return os.lstat(path).st_size
    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            try:
                st = os.lstat(os.path.join(root, name))
            except OSError:
                continue
            if not os.path.islink(os.path.join(root, name)):
                total += st.st_size
    return total


def _archive(source: str, archive_path: str) -> Tuple[str, str, int]:
    """
    Write ``source`` into a gzip tarball.

    A directory is archived as its contents (member ``.``), a single file
    under its basename.

    Returns:
        (kind, member, size_bytes) where kind is ``directory`` or ``file``
    """
    if os.path.isdir(source):
        kind, member = MOUNT_KIND_DIRECTORY, "."
    else:
        kind, member = MOUNT_KIND_FILE, os.path.basename(source.rstrip("/"))
    with tarfile.open(archive_path, "w:gz") as tar:
        tar.add(source, arcname=member)
    return kind, member, directory_size(source)


@dataclass
class BackupJob:
    """A running backup or restore: progress lines plus the eventual record."""
    lines: LineStream
    record: Optional[BackupRecord] = None
    warnings: List[str] = field(default_factory=list)

    async def wait(self) -> Optional[BackupRecord]:
        """Drain the progress lines and return the record (raises on failure)."""
        async for _ in self.lines:
            pass
        return self.record


class BackupManager:
    """
    Creates, lists, restores and deletes bind mount backups.

    Args:
        engine: Engine Adapter used to read container mounts
        db: Metadata store for BackupRecords
        backups_dir: Root directory holding one folder per backup
        capacity: Progress line buffer size
    """

    def __init__(self, engine: EngineAdapter, db: DatabaseManager, backups_dir: str, capacity: int = 256):
        self.engine = engine
        self.db = db
        self.root = Path(backups_dir)
        self.capacity = capacity

    # ---------- naming ----------

    def _existing_backup_dirs(self, container_name: str) -> List[Path]:
        """Backup folders derived from this container's name."""
        if not self.root.exists():
            return []
        prefix = f"{container_name}_"
        return sorted(
            d for d in self.root.iterdir()
            if d.is_dir() and d.name.startswith(prefix) and _TIMESTAMP_RE.match(d.name[len(prefix):])
        )

    def _is_inside_root(self, path: Path) -> bool:
        try:
            path.resolve().relative_to(self.root.resolve())
            return True
        except ValueError:
            return False

    # ---------- backup ----------

    def start_backup(
        self,
        container_ref: str,
        overwrite: bool = False,
        container_record_id: Optional[str] = None,
    ) -> BackupJob:
        """
        Start backing up a container's bind mounts.

        Args:
            container_ref: Engine id or name of the (running) container
            overwrite: Replace existing backups of this container instead of failing
            container_record_id: Owning ContainerRecord, if the container is managed

        Returns:
            BackupJob whose lines stream progress and whose record is set on success
        """
        job = BackupJob(lines=LineStream(capacity=self.capacity, name=f"backup-{container_ref}"))

        async def _produce(stream: LineStream):
            job.record = await self._run_backup(container_ref, overwrite, container_record_id, stream, job)

        job.lines.start(_produce)
        return job

    async def backup_container(
        self,
        container_ref: str,
        overwrite: bool = False,
        container_record_id: Optional[str] = None,
    ) -> BackupRecord:
        """Back up a container and wait for the result."""
        return await self.start_backup(container_ref, overwrite, container_record_id).wait()

    async def _run_backup(
        self,
        container_ref: str,
        overwrite: bool,
        container_record_id: Optional[str],
        stream: LineStream,
        job: BackupJob,
    ) -> BackupRecord:
        container = await self.engine.get_container(container_ref)
        mounts = await self.engine.get_mounts(container_ref)
        binds: List[MountInfo] = [m for m in mounts if m.is_bind]
        if not binds:
            raise ValidationFailedError(f"Container {container.name} has no bind mounts to back up")

        existing = await asyncio.to_thread(self._existing_backup_dirs, container.name)
        if existing and not overwrite:
            raise ConflictError(
                f"A backup of {container.name} already exists",
                detail=f"{existing[-1]} (enable overwrite to replace it)",
            )

        created_at = datetime.now(timezone.utc)
        backup_dir = self.root / f"{container.name}_{created_at.strftime(TIMESTAMP_FORMAT)}"
        if backup_dir in existing:
            # Same second as the backup being replaced
            await asyncio.to_thread(shutil.rmtree, backup_dir)
            existing.remove(backup_dir)

        await stream.put(f"Backing up {len(binds)} bind mount(s) of {container.name} to {backup_dir}")

        try:
            await asyncio.to_thread(backup_dir.mkdir, parents=True, exist_ok=False)
        except FileExistsError:
            raise ConflictError(f"Backup directory {backup_dir} already exists")

        record_id = new_id()
        try:
            mount_entries: List[Dict[str, Any]] = []
            total_size = 0
            for index, mount in enumerate(binds):
                if not await asyncio.to_thread(os.path.exists, mount.source):
                    raise ValidationFailedError(f"Bind mount source {mount.source} does not exist")
                archive_name = f"mount_{index}.tar.gz"
                await stream.put(f"Archiving {mount.source} ({mount.target})")
                kind, member, size = await asyncio.to_thread(_archive, mount.source, str(backup_dir / archive_name))
                total_size += size
                mount_entries.append({
                    "index": index,
                    "type": "bind",
                    "kind": kind,
                    "member": member,
                    "source": mount.source,
                    "target": mount.target,
                    "read_only": mount.read_only,
                    "archive": archive_name,
                    "size_bytes": size,
                })
                await stream.put(f"Archived {mount.source} ({format_size(size)})")

            manifest = {
                "id": record_id,
                "container_id": container.id,
                "container_record_id": container_record_id,
                "container_name": container.name,
                "image": container.image,
                "backup_path": str(backup_dir),
                "backup_type": "bind",
                "mounts": mount_entries,
                "size_bytes": total_size,
                "created_at": created_at.isoformat().replace("+00:00", "Z"),
            }
            async with aiofiles.open(backup_dir / MANIFEST_NAME, "w") as f:
                await f.write(json.dumps(manifest, indent=2))

            record = self.db.add_backup_record({
                "id": record_id,
                "container_id": container_record_id,
                "container_name": container.name,
                "backup_path": str(backup_dir),
                "size_bytes": total_size,
                "created_at": created_at,
            })
        except BaseException:
            logger.warning(f"Backup of {container.name} failed; removing partial backup {backup_dir}")
            await asyncio.to_thread(shutil.rmtree, backup_dir, True)
            raise

        # Replaced backups go only once the new one is safely registered
        for old_dir in existing:
            try:
                await self._remove_backup_dir(old_dir)
                await stream.put(f"Removed previous backup {old_dir.name}")
            except Exception as e:
                warning = f"Failed to remove previous backup {old_dir}: {e}"
                logger.warning(warning)
                job.warnings.append(warning)

        await stream.put(f"Backup complete: {backup_dir} ({format_size(total_size)})")
        logger.info(f"Backed up {len(binds)} bind mount(s) of {container.name} to {backup_dir}")
        return record

    async def _remove_backup_dir(self, backup_dir: Path) -> None:
        old_record = self.db.get_backup_record_by_path(str(backup_dir))
        await asyncio.to_thread(shutil.rmtree, backup_dir)
        if old_record:
            self.db.delete_backup_record(old_record.id)

    # ---------- queries ----------

    def list_backups(self, container_name: Optional[str] = None) -> List[BackupRecord]:
        return self.db.list_backup_records(container_name)

    def get_backup(self, backup_id: str) -> BackupRecord:
        record = self.db.get_backup_record(backup_id)
        if not record:
            raise NotFoundError(f"Backup {backup_id} not found")
        return record

    async def read_manifest(self, backup_id: str) -> Dict[str, Any]:
        record = self.get_backup(backup_id)
        manifest_path = Path(record.backup_path) / MANIFEST_NAME
        try:
            async with aiofiles.open(manifest_path, "r") as f:
                return json.loads(await f.read())
        except FileNotFoundError:
            raise NotFoundError(f"Manifest for backup {backup_id} is missing", detail=str(manifest_path))

    # ---------- restore ----------

    def start_restore(self, backup_id: str) -> BackupJob:
        """
        Restore every archived mount to its original host path.

        The container must not be running. Each source directory is swapped
        atomically: extracted next to the original, then renamed into place.
        """
        record = self.get_backup(backup_id)
        job = BackupJob(lines=LineStream(capacity=self.capacity, name=f"restore-{backup_id[:8]}"), record=record)

        async def _produce(stream: LineStream):
            await self._run_restore(record, stream)

        job.lines.start(_produce)
        return job

    async def _run_restore(self, record: BackupRecord, stream: LineStream) -> None:
        manifest = await self.read_manifest(record.id)

        try:
            container = await self.engine.get_container(record.container_name)
        except NotFoundError:
            container = None
        if container is not None and container.is_running:
            raise ConflictError(f"Stop container {record.container_name} before restoring its backup")

        backup_dir = Path(record.backup_path)
        stamp = datetime.now(timezone.utc).strftime(TIMESTAMP_FORMAT)
        for mount in manifest.get("mounts", []):
            source = mount["source"]
            archive_path = backup_dir / mount["archive"]
            await stream.put(f"Restoring {source} from {mount['archive']}")
            await asyncio.to_thread(_restore_archive, str(archive_path), source, stamp,
                                    mount.get("kind", MOUNT_KIND_DIRECTORY), mount.get("member", "."))
            await stream.put(f"Restored {source}")

        await stream.put(f"Restore of {record.container_name} complete")
        logger.info(f"Restored backup {record.id[:8]} of {record.container_name}")

    async def restore_backup(self, backup_id: str) -> None:
        await self.start_restore(backup_id).wait()

    # ---------- delete ----------

    async def delete_backup(self, backup_id: str) -> None:
        """Remove a backup's folder and record (operator action only)."""
        record = self.get_backup(backup_id)
        backup_dir = Path(record.backup_path)
        if not self._is_inside_root(backup_dir):
            raise ValidationFailedError(f"Refusing to delete {backup_dir}: outside backups directory")
        await asyncio.to_thread(shutil.rmtree, backup_dir, True)
        self.db.delete_backup_record(backup_id)
        logger.info(f"Deleted backup {backup_id[:8]} ({backup_dir})")


def _remove_path(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path, ignore_errors=True)
    elif path.exists() or path.is_symlink():
        path.unlink()


def _restore_archive(archive_path: str, source: str, stamp: str,
                     kind: str = MOUNT_KIND_DIRECTORY, member: str = ".") -> None:
    """
    Swap ``source`` for the archived copy.

    The archive is extracted into a staging directory next to ``source``;
    the restored directory (or the single restored file) is then renamed
    into place and the previous content removed.
    """
    target = Path(source)
    staging = target.with_name(f".{target.name}.stardeck-restore-{stamp}")
    aside = target.with_name(f".{target.name}.stardeck-previous-{stamp}")
    if kind == MOUNT_KIND_FILE and (not member or member in (".", "..") or "/" in member):
        raise ValidationFailedError(f"Invalid archive member {member!r} for {source}")

    staging.mkdir(parents=True, exist_ok=False)
    try:
        with tarfile.open(archive_path, "r:gz") as tar:
            tar.extractall(staging, filter="tar")
        restored = staging if kind == MOUNT_KIND_DIRECTORY else staging / member
        if not restored.exists():
            raise ValidationFailedError(f"Archive {archive_path} does not contain {member}")

        if target.exists() or target.is_symlink():
            target.rename(aside)
        try:
            restored.rename(target)
        except OSError:
            if aside.exists() or aside.is_symlink():
                aside.rename(target)
            raise
    finally:
        if staging.exists():
            shutil.rmtree(staging, ignore_errors=True)
    _remove_path(aside)
