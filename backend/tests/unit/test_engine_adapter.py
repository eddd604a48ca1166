"""
Unit tests for the Engine Adapter.

The Docker SDK client is a MagicMock; no engine is contacted.

Tests cover:
- Pure parsing helpers (image names, ports, volumes, memory, restart policy)
- SDK exception translation
- Container info and recreate-config extraction
- create_container argument building and network attach
- Image pull progress and failures
- Log line parsing and stats calculation
"""

from unittest.mock import MagicMock

import docker.errors
import pytest
import requests.exceptions

from engine.adapter import (
    EngineAdapter,
    calculate_stats,
    format_restart_policy,
    normalize_image_name,
    parse_log_line,
    parse_memory,
    parse_port,
    parse_restart_policy,
    parse_volume,
    translate_engine_error,
)
from engine.errors import (
    ConflictError,
    EngineError,
    EngineTimeoutError,
    EngineUnavailableError,
    NotFoundError,
    ValidationFailedError,
)
from engine.pull_progress import PullTracker
from engine.types import ContainerSpec, ContainerStatus, PortMapping


def api_error(status_code: int, explanation: str) -> docker.errors.APIError:
    response = MagicMock(status_code=status_code)
    return docker.errors.APIError("engine error", response=response, explanation=explanation)


def fake_container(attrs: dict, status: str = "running"):
    container = MagicMock()
    container.id = attrs.get("Id", "c" * 64)
    container.name = attrs.get("Name", "/web").lstrip("/")
    container.attrs = attrs
    container.status = status
    return container


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def adapter(client):
    return EngineAdapter(client=client)


class TestParsingHelpers:

    @pytest.mark.parametrize("image,expected", [
        ("nginx", "docker.io/nginx"),
        ("nginx:1.25", "docker.io/nginx:1.25"),
        ("library/nginx:1.25", "docker.io/library/nginx:1.25"),
        ("ghcr.io/org/app:v1", "ghcr.io/org/app:v1"),
        ("localhost/app", "localhost/app"),
        ("registry:5000/app", "registry:5000/app"),
    ])
    def test_normalize_image_name(self, image, expected):
        assert normalize_image_name(image) == expected

    def test_normalize_empty_image(self):
        with pytest.raises(ValidationFailedError):
            normalize_image_name("  ")

    @pytest.mark.parametrize("value,expected", [
        ("512m", 512 * 1024 ** 2),
        ("1g", 1024 ** 3),
        ("1gb", 1024 ** 3),
        ("1048576", 1048576),
        (None, None),
        ("", None),
    ])
    def test_parse_memory(self, value, expected):
        assert parse_memory(value) == expected

    def test_parse_memory_invalid(self):
        with pytest.raises(ValidationFailedError):
            parse_memory("lots")

    def test_parse_port_variants(self):
        assert parse_port("8080:80") == ("80/tcp", "8080")
        assert parse_port("127.0.0.1:53:53/udp") == ("53/udp", ("127.0.0.1", "53"))
        assert parse_port("80") == ("80/tcp", None)

    @pytest.mark.parametrize("spec", ["8080:http", "1:2:3:4"])
    def test_parse_port_invalid(self, spec):
        with pytest.raises(ValidationFailedError):
            parse_port(spec)

    def test_parse_volume_variants(self):
        assert parse_volume("/srv/web:/data") == ("/srv/web", "/data", "rw")
        assert parse_volume("cache:/cache:ro") == ("cache", "/cache", "ro")

    @pytest.mark.parametrize("spec", ["/srv/web", "/srv/web:data", "/a:/b:bogus", ":/data"])
    def test_parse_volume_invalid(self, spec):
        with pytest.raises(ValidationFailedError):
            parse_volume(spec)

    def test_restart_policy(self):
        assert parse_restart_policy("no") is None
        assert parse_restart_policy("unless-stopped") == {"Name": "unless-stopped"}
        assert parse_restart_policy("on-failure:3") == {"Name": "on-failure", "MaximumRetryCount": 3}
        assert format_restart_policy({"Name": "on-failure", "MaximumRetryCount": 3}) == "on-failure:3"
        assert format_restart_policy({"Name": "", "MaximumRetryCount": 0}) == "no"
        assert format_restart_policy(None) == "no"

    def test_restart_policy_invalid(self):
        with pytest.raises(ValidationFailedError):
            parse_restart_policy("sometimes")

    @pytest.mark.parametrize("state,expected", [
        ("running", ContainerStatus.RUNNING),
        ("Exited", ContainerStatus.EXITED),
        ("stopped", ContainerStatus.EXITED),
        ("paused", ContainerStatus.PAUSED),
        ("restarting", ContainerStatus.UNKNOWN),
        ("dead", ContainerStatus.UNKNOWN),
        (None, ContainerStatus.UNKNOWN),
    ])
    def test_status_from_engine(self, state, expected):
        assert ContainerStatus.from_engine(state) == expected


class TestErrorTranslation:

    def test_not_found(self):
        error = translate_engine_error(docker.errors.NotFound("No such container: web"), "Container web")

        assert isinstance(error, NotFoundError)

    def test_conflict_keeps_engine_text(self):
        error = translate_engine_error(api_error(409, "name is already in use"), "Create container web")

        assert isinstance(error, ConflictError)
        assert error.detail == "name is already in use"

    def test_other_api_error(self):
        error = translate_engine_error(api_error(500, "port is already allocated"), "Start container web")

        assert isinstance(error, EngineError)
        assert "port is already allocated" in str(error)

    def test_connection_error(self):
        error = translate_engine_error(requests.exceptions.ConnectionError("refused"), "List containers")

        assert isinstance(error, EngineUnavailableError)

    def test_timeout(self):
        error = translate_engine_error(requests.exceptions.ReadTimeout("read timed out"), "Stop container web")

        assert isinstance(error, EngineTimeoutError)


class TestLogsAndStats:

    def test_timestamped_log_line(self):
        assert parse_log_line(b"2024-05-01T12:00:00.123456789Z GET / 200\n") == {
            "timestamp": "2024-05-01T12:00:00.123456789Z",
            "line": "GET / 200",
        }

    def test_plain_log_line(self):
        assert parse_log_line(b"starting worker") == {"timestamp": None, "line": "starting worker"}

    def test_empty_log_line_skipped(self):
        assert parse_log_line(b"\n") is None

    def test_calculate_stats(self):
        stats = calculate_stats({
            "cpu_stats": {"cpu_usage": {"total_usage": 300}, "system_cpu_usage": 2000, "online_cpus": 2},
            "precpu_stats": {"cpu_usage": {"total_usage": 100}, "system_cpu_usage": 1000},
            "memory_stats": {"usage": 300, "limit": 1000, "stats": {"inactive_file": 100}},
            "networks": {"eth0": {"rx_bytes": 10, "tx_bytes": 20}, "eth1": {"rx_bytes": 5, "tx_bytes": 5}},
            "blkio_stats": {"io_service_bytes_recursive": [
                {"op": "Read", "value": 7}, {"op": "Write", "value": 9},
            ]},
            "pids_stats": {"current": 4},
        })

        assert stats.cpu_percent == 40.0
        assert stats.memory_usage == 200
        assert stats.memory_percent == 20.0
        assert (stats.network_rx, stats.network_tx) == (15, 25)
        assert (stats.block_read, stats.block_write) == (7, 9)

    def test_calculate_stats_first_sample(self):
        stats = calculate_stats({"cpu_stats": {}, "precpu_stats": {}, "memory_stats": {}})

        assert stats.cpu_percent == 0.0
        assert stats.memory_percent == 0.0


class TestPullTracker:

    def test_error_line_raises(self):
        tracker = PullTracker("docker.io/nginx:nope")

        with pytest.raises(EngineError, match="manifest unknown"):
            tracker.update({"error": "failed", "errorDetail": {"message": "manifest unknown"}})

    def test_layers_aggregate(self):
        clock = iter([10.0, 10.1, 10.2])
        tracker = PullTracker("docker.io/nginx:1.25", clock=lambda: next(clock))

        assert tracker.update({"status": "Pulling from library/nginx", "id": "1.25"}) is None
        first = tracker.update({"status": "Downloading", "id": "l1", "progressDetail": {"current": 2, "total": 10}})
        tracker.update({"status": "Downloading", "id": "l2", "progressDetail": {"current": 0, "total": 10}})
        done = tracker.update({"status": "Pull complete", "id": "l1"})

        assert first.percent == 20
        assert done is not None
        assert done.layers["l1"]["current"] == 10
        assert done.percent == 50
        final = tracker.finish()
        assert final.done and final.percent == 100
        assert final.summary() == "Pull complete (2 layers)"


@pytest.mark.asyncio
class TestAdapterContainers:

    async def test_get_container_not_found(self, adapter, client):
        client.containers.get.side_effect = docker.errors.NotFound("No such container: ghost")

        with pytest.raises(NotFoundError):
            await adapter.get_container("ghost")
        assert await adapter.container_exists("ghost") is False

    async def test_list_containers_builds_label_filter(self, adapter, client):
        client.containers.list.return_value = [
            fake_container({"Name": "/b", "State": {"Status": "exited"}, "Config": {"Image": "redis"}}),
            fake_container({"Name": "/a", "State": {"Status": "running"}, "Config": {"Image": "nginx"},
                            "NetworkSettings": {"Ports": {"80/tcp": [{"HostIp": "0.0.0.0", "HostPort": "8080"},
                                                                     {"HostIp": "::", "HostPort": "8080"}]}}}),
        ]

        containers = await adapter.list_containers(labels={"com.docker.compose.project": "web"})

        kwargs = client.containers.list.call_args.kwargs
        assert kwargs["filters"] == {"label": ["com.docker.compose.project=web"]}
        assert [c.name for c in containers] == ["a", "b"]
        assert containers[0].status == ContainerStatus.RUNNING
        assert containers[0].ports == [PortMapping(host_port="8080", container_port="80")]
        assert containers[1].status == ContainerStatus.EXITED

    async def test_read_container_config_drops_image_defaults(self, adapter, client):
        client.containers.get.return_value = fake_container({
            "Id": "abcdef123456" + "0" * 52,
            "Name": "/web",
            "Image": "sha256:feed",
            "Config": {
                "Image": "nginx:1.25",
                "Env": ["PATH=/usr/bin", "TZ=UTC"],
                "Labels": {"maintainer": "NGINX", "app": "web", "org.opencontainers.image.version": "1.25"},
                "Hostname": "abcdef123456",
                "Cmd": ["nginx", "-g", "daemon off;"],
            },
            "HostConfig": {
                "PortBindings": {"80/tcp": [{"HostIp": "", "HostPort": "8080"}]},
                "RestartPolicy": {"Name": "unless-stopped", "MaximumRetryCount": 0},
                "NetworkMode": "default",
                "NanoCpus": 1500000000,
                "Memory": 536870912,
            },
            "Mounts": [{"Type": "bind", "Source": "/srv/web", "Destination": "/data", "RW": True}],
        })
        image = MagicMock()
        image.attrs = {"Config": {"Env": ["PATH=/usr/bin"], "Labels": {"maintainer": "NGINX"}}}
        client.images.get.return_value = image

        config = await adapter.read_container_config("web")

        assert config.name == "web"
        assert config.env == {"TZ": "UTC"}
        assert config.labels == {"app": "web"}
        assert config.hostname is None
        assert config.network_mode is None
        assert config.cpus == 1.5
        assert config.memory_bytes == 536870912
        assert config.restart_policy == "unless-stopped"
        assert config.ports == [PortMapping(host_port="8080", container_port="80")]
        spec = config.to_spec(name="web_new", image="nginx:1.26")
        assert spec.volumes == ["/srv/web:/data"]
        assert spec.memory == "536870912"
        again = await adapter.read_container_config("web")
        assert again == config
        assert again.to_spec(name="web_new", image="nginx:1.26") == spec

    async def test_read_container_config_keeps_engine_assigned_ports(self, adapter, client):
        client.containers.get.return_value = fake_container({
            "Name": "/web",
            "Config": {"Image": "nginx:1.25"},
            "HostConfig": {"PortBindings": {
                "80/tcp": [{"HostIp": "", "HostPort": ""}],
                "53/udp": [{"HostIp": "127.0.0.1", "HostPort": ""}],
            }},
        })

        config = await adapter.read_container_config("web")

        assert config.to_spec().ports == ["127.0.0.1::53/udp", "80"]
        assert await adapter.read_container_config("web") == config

    async def test_create_publishes_engine_assigned_and_repeated_ports(self, adapter, client):
        api = client.api
        api.api_version = "1.45"
        api.create_container.return_value = {"Id": "d" * 64}

        await adapter.create_container(ContainerSpec(name="web", image="nginx", ports=["80", "8080:443", "8443:443"]))

        assert api.create_host_config.call_args.kwargs["port_bindings"] == {
            "80/tcp": None, "443/tcp": ["8080", "8443"],
        }
        assert api.create_container.call_args.kwargs["ports"] == [("80", "tcp"), ("443", "tcp")]

    async def test_create_container_arguments(self, adapter, client):
        api = client.api
        api.api_version = "1.45"
        api.create_container.return_value = {"Id": "d" * 64, "Warnings": []}

        engine_id = await adapter.create_container(ContainerSpec(
            name="web", image="nginx:1.25", ports=["8080:80"], volumes=["/srv/web:/data:ro"],
            env={"TZ": "UTC"}, labels={"app": "web"}, restart_policy="always",
            network_mode="backend", memory="256m",
        ))

        assert engine_id == "d" * 64
        host_kwargs = api.create_host_config.call_args.kwargs
        assert host_kwargs["port_bindings"] == {"80/tcp": "8080"}
        assert api.create_container.call_args.kwargs["ports"] == [("80", "tcp")]
        assert host_kwargs["binds"] == ["/srv/web:/data:ro"]
        assert host_kwargs["restart_policy"] == {"Name": "always"}
        assert host_kwargs["mem_limit"] == 256 * 1024 ** 2
        create_kwargs = api.create_container.call_args.kwargs
        assert create_kwargs["image"] == "docker.io/nginx:1.25"
        assert create_kwargs["environment"] == ["TZ=UTC"]
        assert create_kwargs["networking_config"] is not None
        api.connect_container_to_network.assert_not_called()

    async def test_old_api_connects_network_after_create(self, adapter, client):
        api = client.api
        api.api_version = "1.41"
        api.create_container.return_value = {"Id": "d" * 64}

        await adapter.create_container(ContainerSpec(name="web", image="nginx", network_mode="backend"))

        assert api.create_container.call_args.kwargs["networking_config"] is None
        api.connect_container_to_network.assert_called_once_with("d" * 64, "backend")

    async def test_create_name_conflict(self, adapter, client):
        client.api.api_version = "1.45"
        client.api.create_container.side_effect = api_error(409, 'Conflict. The container name "/web" is already in use')

        with pytest.raises(ConflictError):
            await adapter.create_container(ContainerSpec(name="web", image="nginx"))

    async def test_stop_passes_grace_period(self, adapter, client):
        container = fake_container({"Name": "/web"})
        client.containers.get.return_value = container

        await adapter.stop_container("web", timeout=30)

        container.stop.assert_called_once_with(timeout=30)

    async def test_exec_requires_running_container(self, adapter, client):
        client.containers.get.return_value = fake_container({"Name": "/web"}, status="exited")

        with pytest.raises(ConflictError, match="not running"):
            await adapter.exec_interactive("web")


@pytest.mark.asyncio
class TestAdapterImages:

    async def test_pull_streams_snapshots(self, adapter, client):
        client.api.pull.return_value = iter([
            {"status": "Pulling from library/nginx", "id": "1.25"},
            {"status": "Downloading", "id": "l1", "progressDetail": {"current": 5, "total": 10}},
            {"status": "Pull complete", "id": "l1"},
            {"status": "Status: Downloaded newer image for nginx:1.25"},
        ])

        stream = await adapter.pull_image("nginx:1.25")
        snapshots = await stream.collect()

        client.api.pull.assert_called_once_with("docker.io/nginx", tag="1.25", stream=True, decode=True)
        assert snapshots[0].percent == 50
        assert snapshots[-1].done is True
        assert snapshots[-1].percent == 100

    async def test_pull_error_surfaces_on_consume(self, adapter, client):
        client.api.pull.return_value = iter([
            {"error": "pull failed", "errorDetail": {"message": "manifest for nginx:nope not found"}},
        ])

        stream = await adapter.pull_image("nginx:nope")

        with pytest.raises(EngineError, match="manifest for nginx:nope not found"):
            await stream.collect()

    async def test_image_exists(self, adapter, client):
        client.images.get.side_effect = docker.errors.ImageNotFound("missing")

        assert await adapter.image_exists("nginx:nope") is False

    async def test_check_image_update(self, adapter, client):
        image = MagicMock()
        image.attrs = {"RepoDigests": ["nginx@sha256:old"]}
        client.images.get.return_value = image
        client.images.get_registry_data.return_value = MagicMock(id="sha256:new")

        check = await adapter.check_image_update("nginx:1.25")

        assert check.local_digest == "sha256:old"
        assert check.remote_digest == "sha256:new"
        assert check.update_available is True
