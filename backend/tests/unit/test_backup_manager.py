"""
Unit tests for bind mount backups.

Uses real temporary directories for the mounts and the backups root; the
engine is mocked.

Tests cover:
- Archive layout, manifest and BackupRecord
- Collision handling (reject vs overwrite)
- Partial backups are cleaned up on failure
- Restore swaps directories (or single files) and refuses while the container runs
- Delete removes folder and record
"""

import json
import tarfile

import pytest

from backups.backup_manager import BackupManager, MANIFEST_NAME, format_size
from engine.errors import ConflictError, NotFoundError, ValidationFailedError
from engine.types import ContainerStatus, MountInfo
from tests.conftest import create_container_info


@pytest.fixture
def data_dir(tmp_path):
    source = tmp_path / "srv" / "web"
    source.mkdir(parents=True)
    (source / "index.html").write_text("<h1>v1</h1>")
    (source / "conf").mkdir()
    (source / "conf" / "site.conf").write_text("listen 80;")
    return source


@pytest.fixture
def engine(mock_engine, data_dir):
    mock_engine.get_container.return_value = create_container_info("web")
    mock_engine.get_mounts.return_value = [
        MountInfo(type="bind", source=str(data_dir), target="/usr/share/nginx/html"),
        MountInfo(type="volume", source="/var/lib/docker/volumes/cache/_data", target="/cache", name="cache"),
    ]
    return mock_engine


@pytest.fixture
def manager(engine, db_manager, tmp_path):
    return BackupManager(engine, db_manager, str(tmp_path / "backups"), capacity=16)


class TestFormatSize:

    def test_bytes(self):
        assert format_size(512) == "512 B"

    def test_megabytes(self):
        assert format_size(5 * 1024 * 1024) == "5.0 MB"


@pytest.mark.asyncio
class TestBackup:
    """Test creating backups"""

    async def test_backup_writes_archives_and_manifest(self, manager, db_manager, data_dir):
        job = manager.start_backup("web")
        lines = [line async for line in job.lines]

        record = job.record
        assert record is not None
        assert record.container_name == "web"
        assert db_manager.get_backup_record(record.id) is not None
        assert any("Backup complete" in line for line in lines)

        backup_dir = manager.root / record.backup_path.rsplit("/", 1)[-1]
        manifest = json.loads((backup_dir / MANIFEST_NAME).read_text())
        assert manifest["container_name"] == "web"
        assert len(manifest["mounts"]) == 1  # named volume skipped
        assert manifest["mounts"][0]["source"] == str(data_dir)

        with tarfile.open(backup_dir / "mount_0.tar.gz") as tar:
            names = tar.getnames()
        assert "./index.html" in names
        assert "./conf/site.conf" in names
        assert manifest["mounts"][0]["kind"] == "directory"

    async def test_file_mount_archived_under_basename(self, manager, engine, data_dir):
        config_file = data_dir.parent / "app.conf"
        config_file.write_text("workers = 4")
        engine.get_mounts.return_value = [MountInfo(type="bind", source=str(config_file), target="/etc/app.conf")]

        record = await manager.backup_container("web")

        manifest = await manager.read_manifest(record.id)
        assert manifest["mounts"][0]["kind"] == "file"
        assert manifest["mounts"][0]["member"] == "app.conf"
        with tarfile.open(manager.root / record.backup_path.rsplit("/", 1)[-1] / "mount_0.tar.gz") as tar:
            assert tar.getnames() == ["app.conf"]

    async def test_backup_dir_named_after_container_and_time(self, manager):
        record = await manager.backup_container("web")
        name = record.backup_path.rsplit("/", 1)[-1]
        assert name.startswith("web_")
        assert len(name) == len("web_20240101-120000")

    async def test_no_bind_mounts_rejected(self, manager, engine):
        engine.get_mounts.return_value = [MountInfo(type="volume", source="/x", target="/data", name="data")]

        with pytest.raises(ValidationFailedError, match="no bind mounts"):
            await manager.backup_container("web")

    async def test_existing_backup_rejected_without_overwrite(self, manager):
        await manager.backup_container("web")

        with pytest.raises(ConflictError, match="already exists"):
            await manager.backup_container("web")

    async def test_overwrite_replaces_previous_backup(self, manager, db_manager):
        (manager.root / "web_20200101-000000").mkdir(parents=True)
        old = db_manager.add_backup_record({
            "container_name": "web",
            "backup_path": str(manager.root / "web_20200101-000000"),
        })

        record = await manager.backup_container("web", overwrite=True)

        assert db_manager.get_backup_record(old.id) is None
        assert not (manager.root / "web_20200101-000000").exists()
        assert [b.id for b in manager.list_backups("web")] == [record.id]

    async def test_other_container_prefix_is_not_a_collision(self, manager):
        (manager.root / "web_frontend_20200101-000000").mkdir(parents=True)

        record = await manager.backup_container("web")

        assert record is not None

    async def test_missing_source_removes_partial_backup(self, manager, engine, data_dir, db_manager):
        engine.get_mounts.return_value = [
            MountInfo(type="bind", source=str(data_dir), target="/a"),
            MountInfo(type="bind", source=str(data_dir.parent / "missing"), target="/b"),
        ]

        job = manager.start_backup("web")
        with pytest.raises(ValidationFailedError, match="does not exist"):
            async for _ in job.lines:
                pass

        assert job.record is None
        assert list(manager.root.iterdir()) == []
        assert db_manager.list_backup_records() == []


@pytest.mark.asyncio
class TestRestoreAndDelete:
    """Test restoring and deleting backups"""

    async def test_restore_replaces_directory_contents(self, manager, engine, data_dir):
        record = await manager.backup_container("web")
        (data_dir / "index.html").write_text("<h1>broken</h1>")
        (data_dir / "junk.tmp").write_text("junk")
        engine.get_container.return_value = create_container_info("web", status=ContainerStatus.EXITED)

        await manager.restore_backup(record.id)

        assert (data_dir / "index.html").read_text() == "<h1>v1</h1>"
        assert not (data_dir / "junk.tmp").exists()
        assert (data_dir / "conf" / "site.conf").exists()
        leftovers = [p.name for p in data_dir.parent.iterdir() if "stardeck" in p.name]
        assert leftovers == []

    async def test_restore_file_mount(self, manager, engine, data_dir):
        config_file = data_dir.parent / "app.conf"
        config_file.write_text("workers = 4")
        engine.get_mounts.return_value = [MountInfo(type="bind", source=str(config_file), target="/etc/app.conf")]
        record = await manager.backup_container("web")
        config_file.write_text("workers = broken")
        engine.get_container.return_value = create_container_info("web", status=ContainerStatus.EXITED)

        await manager.restore_backup(record.id)

        assert config_file.is_file()
        assert config_file.read_text() == "workers = 4"
        leftovers = [p.name for p in config_file.parent.iterdir() if "stardeck" in p.name]
        assert leftovers == []

    async def test_restore_file_mount_that_was_deleted(self, manager, engine, data_dir):
        config_file = data_dir.parent / "app.conf"
        config_file.write_text("workers = 4")
        engine.get_mounts.return_value = [MountInfo(type="bind", source=str(config_file), target="/etc/app.conf")]
        record = await manager.backup_container("web")
        config_file.unlink()
        engine.get_container.side_effect = NotFoundError("Container web: not found")

        await manager.restore_backup(record.id)

        assert config_file.read_text() == "workers = 4"

    async def test_restore_refused_while_running(self, manager, data_dir):
        record = await manager.backup_container("web")

        with pytest.raises(ConflictError, match="Stop container"):
            await manager.restore_backup(record.id)
        assert (data_dir / "index.html").read_text() == "<h1>v1</h1>"

    async def test_restore_when_container_is_gone(self, manager, engine, data_dir):
        record = await manager.backup_container("web")
        engine.get_container.side_effect = NotFoundError("Container web: not found")
        (data_dir / "index.html").unlink()

        await manager.restore_backup(record.id)

        assert (data_dir / "index.html").exists()

    async def test_delete_removes_folder_and_record(self, manager, db_manager):
        record = await manager.backup_container("web")

        await manager.delete_backup(record.id)

        assert db_manager.get_backup_record(record.id) is None
        assert list(manager.root.iterdir()) == []

    async def test_unknown_backup(self, manager):
        with pytest.raises(NotFoundError):
            await manager.delete_backup("does-not-exist")

    async def test_delete_refuses_paths_outside_root(self, manager, db_manager, tmp_path):
        outside = tmp_path / "elsewhere"
        outside.mkdir()
        record = db_manager.add_backup_record({"container_name": "web", "backup_path": str(outside)})

        with pytest.raises(ValidationFailedError):
            await manager.delete_backup(record.id)
        assert outside.exists()
