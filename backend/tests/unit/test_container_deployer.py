"""
Unit tests for single container deployment.

Tests cover:
- Step order and terminal event on success
- Image pull only when missing (or forced)
- Host directories created for bind mounts
- ContainerRecord written once the container exists
- Failure reporting names the failed step
- Concurrent deploys of the same name are rejected
"""

import asyncio

import pytest

from deployment.container_deployer import ContainerDeployer, DeployRequest, host_directories
from engine.errors import ConflictError, EngineError, NotFoundError, ValidationFailedError
from engine.types import STARDECK_LABEL_ICON, STARDECK_LABEL_WEBUI, STARDECK_LABEL_WEBUI_PORT, PullProgress
from updates.locks import ContainerLockRegistry
from tests.conftest import event_steps, make_stream, pulled

ENGINE_ID = "b" * 64


@pytest.fixture
def engine(mock_engine):
    mock_engine.create_container.return_value = ENGINE_ID
    mock_engine.pull_image.side_effect = lambda image: make_stream([
        PullProgress(image=image, status="Downloading",
                     layers={"l1": {"status": "Downloading", "current": 5, "total": 10}}),
        pulled(image),
    ])
    return mock_engine


@pytest.fixture
def deployer(engine, db_manager):
    return ContainerDeployer(engine, db_manager, ContainerLockRegistry())


class TestDeployRequest:

    def test_spec_carries_metadata_labels(self):
        request = DeployRequest(name="web", image="nginx", labels={"app": "web"},
                                has_web_ui=True, web_ui_port=8080, icon="nginx.png")

        spec = request.to_spec()

        assert spec.labels["app"] == "web"
        assert spec.labels[STARDECK_LABEL_WEBUI] == "true"
        assert spec.labels[STARDECK_LABEL_WEBUI_PORT] == "8080"
        assert spec.labels[STARDECK_LABEL_ICON] == "nginx.png"
        assert request.labels == {"app": "web"}

    def test_empty_restart_policy_becomes_no(self):
        assert DeployRequest(name="web", image="nginx", restart_policy="").to_spec().restart_policy == "no"

    def test_host_directories_skips_named_volumes(self):
        assert host_directories(["/srv/web:/data", "cache:/cache", "/srv/conf:/etc/app:ro"]) == [
            "/srv/web", "/srv/conf",
        ]


@pytest.mark.asyncio
class TestDeploySuccess:

    async def test_local_image_is_not_pulled(self, deployer, engine, reporter, db_manager):
        record = await deployer.deploy(DeployRequest(name="web", image="nginx:1.25"), reporter)
        messages = await reporter.collect()

        engine.pull_image.assert_not_called()
        engine.start_container.assert_awaited_once_with(ENGINE_ID)
        assert event_steps(messages) == ["validate", "pull", "create", "start", "complete"]
        assert messages[-1]["success"] is True
        assert messages[-1]["container_id"] == record.id
        assert messages[-1]["engine_id"] == ENGINE_ID
        stored = db_manager.get_container_record_by_name("web")
        assert stored.status == "running"
        assert stored.engine_id == ENGINE_ID

    async def test_missing_image_is_pulled(self, deployer, engine, reporter):
        engine.image_exists.return_value = False

        await deployer.deploy(DeployRequest(name="web", image="nginx:1.25"), reporter)
        messages = await reporter.collect()

        engine.pull_image.assert_awaited_once_with("nginx:1.25")
        pull_messages = [m["message"] for m in messages if m["step"] == "pull"]
        assert "Downloading 1 of 1 layers (50%)" in pull_messages
        assert "Image pulled successfully" in pull_messages

    async def test_pull_flag_forces_pull(self, deployer, engine):
        await deployer.deploy(DeployRequest(name="web", image="nginx:1.25", pull=True))

        engine.pull_image.assert_awaited_once()

    async def test_auto_start_false_leaves_container_created(self, deployer, engine, db_manager):
        record = await deployer.deploy(DeployRequest(name="web", image="nginx", auto_start=False))

        engine.start_container.assert_not_called()
        assert record.status == "created"

    async def test_bind_mount_directories_created(self, deployer, engine, tmp_path):
        data = tmp_path / "srv" / "web"

        await deployer.deploy(DeployRequest(name="web", image="nginx", volumes=[f"{data}:/data", "cache:/cache"]))

        assert data.is_dir()
        spec = engine.create_container.call_args.args[0]
        assert spec.volumes == [f"{data}:/data", "cache:/cache"]

    async def test_without_reporter(self, deployer):
        record = await deployer.deploy(DeployRequest(name="web", image="nginx"))

        assert record.name == "web"


@pytest.mark.asyncio
class TestDeployFailures:

    async def test_missing_name(self, deployer, reporter):
        with pytest.raises(ValidationFailedError):
            await deployer.deploy(DeployRequest(name="", image="nginx"), reporter)
        messages = await reporter.collect()

        assert messages[-1]["success"] is False
        assert messages[-1]["step"] == "validate"

    async def test_missing_image(self, deployer):
        with pytest.raises(ValidationFailedError, match="No image"):
            await deployer.deploy(DeployRequest(name="web", image="  "))

    async def test_name_in_use(self, deployer, engine, reporter):
        engine.container_exists.return_value = True

        with pytest.raises(ConflictError, match="already exists"):
            await deployer.deploy(DeployRequest(name="web", image="nginx"), reporter)
        messages = await reporter.collect()

        engine.create_container.assert_not_called()
        assert messages[-1]["step"] == "validate"

    async def test_pull_failure_reports_pull_step(self, deployer, engine, reporter, db_manager):
        engine.image_exists.return_value = False
        engine.pull_image.side_effect = lambda image: make_stream(
            [], error=NotFoundError("Image nginx:nope not found"))

        with pytest.raises(NotFoundError):
            await deployer.deploy(DeployRequest(name="web", image="nginx:nope"), reporter)
        messages = await reporter.collect()

        assert messages[-1]["step"] == "pull"
        assert "not found" in messages[-1]["error"]
        assert db_manager.get_container_record_by_name("web") is None

    async def test_create_failure_reports_create_step(self, deployer, engine, reporter, db_manager):
        engine.create_container.side_effect = EngineError("Create failed", detail="port is already allocated")

        with pytest.raises(EngineError):
            await deployer.deploy(DeployRequest(name="web", image="nginx"), reporter)
        messages = await reporter.collect()

        assert messages[-1]["step"] == "create"
        assert "port is already allocated" in messages[-1]["error"]
        assert db_manager.get_container_record_by_name("web") is None

    async def test_start_failure_keeps_record(self, deployer, engine, reporter, db_manager):
        engine.start_container.side_effect = EngineError("Start failed", detail="bind: address already in use")

        with pytest.raises(EngineError):
            await deployer.deploy(DeployRequest(name="web", image="nginx"), reporter)
        messages = await reporter.collect()

        assert messages[-1]["step"] == "start"
        record = db_manager.get_container_record_by_name("web")
        assert record is not None
        assert record.status == "created"

    async def test_concurrent_deploy_same_name_rejected(self, deployer, engine):
        gate = asyncio.Event()

        async def _slow_create(spec):
            await gate.wait()
            return ENGINE_ID

        engine.create_container.side_effect = _slow_create
        first = asyncio.create_task(deployer.deploy(DeployRequest(name="web", image="nginx")))
        await asyncio.sleep(0.01)

        with pytest.raises(ConflictError, match="busy"):
            await deployer.deploy(DeployRequest(name="web", image="nginx"))

        gate.set()
        record = await first
        assert record.name == "web"
