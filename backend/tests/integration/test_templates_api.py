"""
Integration tests for the template endpoints.

Deploying a template goes through the stack service with the compose
tool mocked.
"""

import os

import pytest

COMPOSE = "services:\n  web:\n    image: nginx:1.25\n"


@pytest.fixture
def template(client, auth_headers):
    response = client.post("/api/templates", headers=auth_headers, json={
        "name": "Web Server",
        "compose_content": COMPOSE,
        "env_defaults": {"TZ": "UTC"},
        "volume_hints": [{"name": "html", "suggested_path": "/srv/html", "required": True}],
        "tags": ["web"],
    })
    assert response.status_code == 201
    return response.json()


@pytest.mark.integration
class TestTemplateCrud:

    def test_create_records_author(self, template, test_user):
        assert template["author"] == test_user.username
        assert template["volume_hints"] == [
            {"name": "html", "suggested_path": "/srv/html", "description": None, "required": True}
        ]
        assert template["usage_count"] == 0

    def test_list_and_get(self, client, auth_headers, template):
        listed = client.get("/api/templates", headers=auth_headers).json()
        fetched = client.get(f"/api/templates/{template['id']}", headers=auth_headers).json()

        assert [t["name"] for t in listed] == ["Web Server"]
        assert fetched["compose_content"] == COMPOSE

    def test_invalid_compose_rejected(self, client, auth_headers):
        response = client.post("/api/templates", headers=auth_headers,
                               json={"name": "broken", "compose_content": "services: [unclosed"})

        assert response.status_code == 400

    def test_partial_update(self, client, auth_headers, template):
        body = client.put(f"/api/templates/{template['id']}", headers=auth_headers,
                          json={"description": "static site"}).json()

        assert body["description"] == "static site"
        assert body["tags"] == ["web"]

    def test_delete(self, client, auth_headers, template):
        response = client.delete(f"/api/templates/{template['id']}", headers=auth_headers)

        assert response.status_code == 200
        assert client.get(f"/api/templates/{template['id']}", headers=auth_headers).status_code == 404

    def test_requires_auth(self, client):
        assert client.get("/api/templates").status_code == 401


@pytest.mark.integration
class TestTemplateDeploy:

    def test_deploy_creates_stack(self, client, auth_headers, template, test_config):
        response = client.post(f"/api/templates/{template['id']}/deploy", headers=auth_headers,
                               json={"project_name": "site", "environment": {"DEBUG": "1"}})

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "created"
        assert body["stack_status"] == "stopped"
        stack = client.get(f"/api/stacks/{body['stack_id']}", headers=auth_headers).json()
        assert stack["env_content"] == "DEBUG=1\nTZ=UTC\n"
        assert os.path.exists(os.path.join(test_config.STACKS_DIR, "site", "docker-compose.yml"))

        usage = client.get(f"/api/templates/{template['id']}", headers=auth_headers).json()["usage_count"]
        assert usage == 1

    def test_deploy_and_start(self, client, auth_headers, template, stack_driver):
        body = client.post(f"/api/templates/{template['id']}/deploy", headers=auth_headers,
                           json={"project_name": "site", "start": True}).json()

        assert body["stack_status"] == "active"
        assert body["output"] == ["Container site-web-1 Started"]
        stack_driver.up.assert_called_once()

    def test_deploy_name_conflict(self, client, auth_headers, template):
        client.post(f"/api/templates/{template['id']}/deploy", headers=auth_headers, json={"project_name": "site"})

        response = client.post(f"/api/templates/{template['id']}/deploy", headers=auth_headers,
                               json={"project_name": "site"})

        assert response.status_code == 409

    def test_deploy_is_audited(self, client, auth_headers, template, db_manager):
        client.post(f"/api/templates/{template['id']}/deploy", headers=auth_headers, json={"project_name": "site"})

        entries = db_manager.get_audit_entries(entity_type="template")
        assert entries[0].action == "template.deploy"


@pytest.mark.integration
class TestTemplateExportImport:

    def test_export_is_an_attachment(self, client, auth_headers, template):
        response = client.get(f"/api/templates/{template['id']}/export", headers=auth_headers)

        assert response.status_code == 200
        assert response.headers["content-disposition"] == 'attachment; filename="Web Server.json"'
        assert response.json()["env_defaults"] == {"TZ": "UTC"}

    def test_import_exported_document(self, client, auth_headers, template):
        document = client.get(f"/api/templates/{template['id']}/export", headers=auth_headers).json()

        response = client.post("/api/templates/import", headers=auth_headers, json=document)

        assert response.status_code == 201
        assert response.json()["id"] != template["id"]
        assert len(client.get("/api/templates", headers=auth_headers).json()) == 2

    def test_import_requires_compose(self, client, auth_headers):
        response = client.post("/api/templates/import", headers=auth_headers, json={"name": "empty"})

        assert response.status_code == 422
