"""
Unit tests for stack templates.

Templates are stored in a temporary database and deployed through a real
StackService whose compose driver is mocked.

Tests cover:
- Default project names and .env rendering
- Create/update/delete with compose validation
- Deploy: merged environment, usage count, optional start
- Export/import
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from engine.errors import ConflictError, NotFoundError, ValidationFailedError
from stacks.stack_driver import STATUS_ACTIVE, STATUS_STOPPED, StackDriver
from stacks.stack_service import StackService
from stacks.stack_storage import StackStorage, validate_stack_name
from stacks.template_service import TemplateService, default_project_name, render_env
from tests.conftest import make_stream

COMPOSE = "services:\n  web:\n    image: nginx:1.25\n    environment:\n      - TZ=${TZ}\n"


@pytest.fixture
def driver():
    mock = MagicMock(spec=StackDriver)
    mock.up.side_effect = lambda path, name: make_stream([f"Container {name}-web-1 Started"])
    mock.list_stack_containers.return_value = []
    mock.compute_status.return_value = STATUS_ACTIVE
    return mock


@pytest.fixture
def stacks(db_manager, driver, tmp_path):
    return StackService(db_manager, StackStorage(str(tmp_path / "stacks")), driver)


@pytest.fixture
def templates(db_manager, stacks):
    return TemplateService(db_manager, stacks)


@pytest.fixture
def template(templates):
    return templates.create_template(
        name="Web Server",
        compose_content=COMPOSE,
        description="nginx",
        env_defaults={"TZ": "UTC", "PORT": "8080"},
        volume_hints=[{"name": "html", "suggested_path": "/srv/html", "description": None, "required": True}],
        tags=["web"],
        author="admin",
    )


class TestHelpers:

    def test_default_project_name_is_a_valid_stack_name(self):
        name = default_project_name("My App (Beta)", now=datetime(2026, 3, 1, 12, 30, 5, tzinfo=timezone.utc))

        assert name == "my-app-beta-20260301-123005"
        validate_stack_name(name)

    def test_default_project_name_for_unusable_name(self):
        name = default_project_name("!!!", now=datetime(2026, 3, 1, tzinfo=timezone.utc))

        assert name == "stack-20260301-000000"

    def test_default_project_name_truncated(self):
        assert len(default_project_name("x" * 200)) == 100

    def test_render_env_sorted(self):
        assert render_env({"B": "2", "A": "1"}) == "A=1\nB=2\n"

    def test_render_env_empty(self):
        assert render_env({}) is None


class TestTemplateCrud:

    def test_create_stores_fields(self, templates, template):
        stored = templates.get_template(template.id)

        assert stored.name == "Web Server"
        assert stored.author == "admin"
        assert stored.get_env_defaults() == {"TZ": "UTC", "PORT": "8080"}
        assert stored.get_volume_hints()[0]["suggested_path"] == "/srv/html"
        assert stored.get_tags() == ["web"]
        assert stored.usage_count == 0

    def test_invalid_compose_rejected(self, templates):
        with pytest.raises(ValidationFailedError):
            templates.create_template(name="broken", compose_content="services: [unclosed")

        assert templates.list_templates() == []

    def test_update_changes_only_given_fields(self, templates, template):
        updated = templates.update_template(template.id, description="static site", tags=None)

        assert updated.description == "static site"
        assert updated.get_tags() == ["web"]
        assert updated.compose_content == COMPOSE

    def test_update_validates_compose(self, templates, template):
        with pytest.raises(ValidationFailedError):
            templates.update_template(template.id, compose_content="services: [unclosed")

        assert templates.get_template(template.id).compose_content == COMPOSE

    def test_delete(self, templates, template):
        templates.delete_template(template.id)

        with pytest.raises(NotFoundError):
            templates.get_template(template.id)

    def test_unknown_template(self, templates):
        with pytest.raises(NotFoundError):
            templates.update_template("missing", description="x")


@pytest.mark.asyncio
class TestDeployTemplate:

    async def test_creates_stopped_stack_with_merged_env(self, templates, template, driver, tmp_path):
        stack, output = await templates.deploy_template(template.id, project_name="site",
                                                        environment={"TZ": "Europe/Paris", "DEBUG": "1"})

        assert stack.name == "site"
        assert stack.status == STATUS_STOPPED
        assert stack.compose_content == COMPOSE
        assert stack.env_content == "DEBUG=1\nPORT=8080\nTZ=Europe/Paris\n"
        assert (tmp_path / "stacks" / "site" / ".env").read_text() == stack.env_content
        assert output == []
        driver.up.assert_not_called()

    async def test_increments_usage(self, templates, template):
        await templates.deploy_template(template.id, project_name="one")
        await templates.deploy_template(template.id, project_name="two")

        assert templates.get_template(template.id).usage_count == 2

    async def test_default_project_name(self, templates, template):
        stack, _ = await templates.deploy_template(template.id)

        assert stack.name.startswith("web-server-")
        validate_stack_name(stack.name)

    async def test_start_brings_stack_up(self, templates, template, driver):
        stack, output = await templates.deploy_template(template.id, project_name="site", start=True)

        assert stack.status == STATUS_ACTIVE
        assert output == ["Container site-web-1 Started"]
        driver.up.assert_called_once()

    async def test_existing_stack_name_conflicts(self, templates, template):
        await templates.deploy_template(template.id, project_name="site")

        with pytest.raises(ConflictError):
            await templates.deploy_template(template.id, project_name="site")

        assert templates.get_template(template.id).usage_count == 1

    async def test_invalid_override_rejected(self, templates, template, stacks):
        with pytest.raises(ValidationFailedError):
            await templates.deploy_template(template.id, project_name="site", environment={"BAD KEY": "1"})

        assert stacks.list_stacks() == []


class TestExportImport:

    def test_export_fields(self, templates, template):
        document = templates.export_template(template.id)

        assert set(document) == {"id", "name", "description", "author", "version", "compose_content",
                                  "env_defaults", "volume_hints", "tags", "created_at"}
        assert document["env_defaults"] == {"TZ": "UTC", "PORT": "8080"}

    def test_import_creates_new_template(self, templates, template):
        document = templates.export_template(template.id)

        imported = templates.import_template(document, author="operator")

        assert imported.id != template.id
        assert imported.author == "operator"
        assert imported.compose_content == COMPOSE
        assert imported.get_volume_hints() == template.get_volume_hints()
        assert len(templates.list_templates()) == 2

    def test_import_requires_compose(self, templates):
        with pytest.raises(ValidationFailedError, match="compose_content"):
            templates.import_template({"name": "empty"})
