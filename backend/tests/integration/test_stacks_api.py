"""
Integration tests for the stack endpoints.

The compose tool is mocked; stack files are written to a temporary
stacks directory.
"""

import os

import pytest

from engine.errors import StackCommandError
from tests.conftest import make_stream

COMPOSE = "services:\n  web:\n    image: nginx:1.25\n"


@pytest.fixture
def stack(client, auth_headers):
    response = client.post("/api/stacks", headers=auth_headers,
                           json={"name": "blog", "compose_content": COMPOSE, "env_content": "TZ=UTC\n"})
    assert response.status_code == 201
    return response.json()


@pytest.mark.integration
class TestStackCrud:

    def test_create_writes_files(self, stack, test_config):
        assert stack["name"] == "blog"
        assert stack["status"] == "stopped"
        assert os.path.exists(os.path.join(test_config.STACKS_DIR, "blog", "docker-compose.yml"))
        assert os.path.exists(os.path.join(test_config.STACKS_DIR, "blog", ".env"))

    def test_list_omits_content(self, client, auth_headers, stack):
        stacks = client.get("/api/stacks", headers=auth_headers).json()

        assert [s["name"] for s in stacks] == ["blog"]
        assert "compose_content" not in stacks[0]

    def test_get_includes_content(self, client, auth_headers, stack):
        body = client.get(f"/api/stacks/{stack['id']}", headers=auth_headers).json()

        assert body["compose_content"] == COMPOSE
        assert body["env_content"] == "TZ=UTC\n"

    def test_duplicate_name_conflicts(self, client, auth_headers, stack):
        response = client.post("/api/stacks", headers=auth_headers,
                               json={"name": "blog", "compose_content": COMPOSE})

        assert response.status_code == 409

    def test_invalid_compose_rejected(self, client, auth_headers):
        response = client.post("/api/stacks", headers=auth_headers,
                               json={"name": "broken", "compose_content": "services: [unclosed"})

        assert response.status_code == 400
        assert response.json()["category"] == "validation"

    def test_invalid_name_rejected(self, client, auth_headers):
        response = client.post("/api/stacks", headers=auth_headers,
                               json={"name": "../escape", "compose_content": COMPOSE})

        assert response.status_code == 400

    def test_update_replaces_content(self, client, auth_headers, stack, test_config):
        new_compose = "services:\n  web:\n    image: nginx:1.27\n"

        body = client.put(f"/api/stacks/{stack['id']}", headers=auth_headers,
                          json={"compose_content": new_compose}).json()

        assert body["compose_content"] == new_compose
        assert body["env_content"] is None
        assert not os.path.exists(os.path.join(test_config.STACKS_DIR, "blog", ".env"))

    def test_unknown_stack(self, client, auth_headers):
        response = client.get("/api/stacks/missing", headers=auth_headers)

        assert response.status_code == 404

    def test_delete_takes_running_stack_down(self, client, auth_headers, stack, stack_driver, test_config):
        stack_driver.list_stack_containers.return_value = [object()]

        response = client.delete(f"/api/stacks/{stack['id']}?remove_volumes=true", headers=auth_headers)

        assert response.status_code == 200
        stack_driver.down.assert_called_once()
        assert stack_driver.down.call_args.args[2] is True
        assert not os.path.exists(os.path.join(test_config.STACKS_DIR, "blog"))
        assert client.get(f"/api/stacks/{stack['id']}", headers=auth_headers).status_code == 404


@pytest.mark.integration
class TestStackActions:

    def test_up_returns_output_and_status(self, client, auth_headers, stack, db_manager):
        response = client.post(f"/api/stacks/{stack['id']}/up", headers=auth_headers)

        assert response.json() == {"success": True, "status": "active",
                                   "output": ["Container blog-web-1 Started"]}
        assert db_manager.get_audit_entries(entity_type="stack")[0].action == "stack.deploy"

    @pytest.mark.parametrize("action", ["stop", "start", "restart", "down"])
    def test_lifecycle_actions(self, client, auth_headers, stack, stack_driver, action):
        response = client.post(f"/api/stacks/{stack['id']}/{action}", headers=auth_headers)

        assert response.json()["success"] is True
        getattr(stack_driver, action).assert_called_once()

    def test_failed_up_reports_command_output(self, client, auth_headers, stack, stack_driver, db_manager):
        stack_driver.up.side_effect = lambda path, name: make_stream(
            ["pull access denied"],
            StackCommandError("Compose command failed with exit code 1", exit_code=1,
                              output="pull access denied", step="up"),
        )

        response = client.post(f"/api/stacks/{stack['id']}/up", headers=auth_headers)

        assert response.status_code == 500
        body = response.json()
        assert body["category"] == "engine"
        assert body["exit_code"] == 1
        assert body["output"] == "pull access denied"
        assert db_manager.get_stack_record(stack["id"]).status == "error"

    def test_refresh_status(self, client, auth_headers, stack, stack_driver):
        stack_driver.compute_status.return_value = "partial"

        body = client.post(f"/api/stacks/{stack['id']}/status", headers=auth_headers).json()

        assert body == {"id": stack["id"], "name": "blog", "status": "partial"}
