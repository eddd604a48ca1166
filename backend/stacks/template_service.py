"""
Stack templates.

A template is a stored compose definition with default environment values,
volume hints and tags. Deploying a template creates a regular stack from it
(compose content plus a rendered .env of the merged defaults and overrides)
and can bring that stack up straight away. Templates export to and import
from a portable JSON document.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from database import DatabaseManager, StackRecord, StackTemplate
from engine.errors import NotFoundError, ValidationFailedError
from stacks.compose_validator import ComposeValidationError
from stacks.stack_service import StackService

logger = logging.getLogger(__name__)

PROJECT_TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"
_UNSAFE_NAME_CHARS = re.compile(r"[^a-z0-9_-]+")

# Fields a template update may change; None means unchanged
TEMPLATE_FIELDS = ("name", "description", "version", "compose_content", "env_defaults", "volume_hints", "tags")


def default_project_name(template_name: str, now: Optional[datetime] = None) -> str:
    """Stack name for a template deployed without one: ``<slug>-<timestamp>``."""
    now = now or datetime.now(timezone.utc)
    slug = _UNSAFE_NAME_CHARS.sub("-", template_name.lower()).strip("-_") or "stack"
    suffix = now.strftime(PROJECT_TIMESTAMP_FORMAT)
    return f"{slug[:100 - len(suffix) - 1]}-{suffix}"


def render_env(values: Dict[str, str]) -> Optional[str]:
    """Render KEY=VALUE lines, sorted by key (None when empty)."""
    if not values:
        return None
    return "".join(f"{key}={value}\n" for key, value in sorted(values.items()))


class TemplateService:
    """Template CRUD, export/import and deploy-as-stack."""

    def __init__(self, db: DatabaseManager, stacks: StackService):
        self.db = db
        self.stacks = stacks

    def _validate_compose(self, compose_content: str) -> None:
        try:
            self.stacks.validator.parse(compose_content)
        except ComposeValidationError as e:
            raise ValidationFailedError(str(e))

    def list_templates(self) -> List[StackTemplate]:
        return self.db.list_templates()

    def get_template(self, template_id: str) -> StackTemplate:
        template = self.db.get_template(template_id)
        if not template:
            raise NotFoundError(f"Template {template_id} not found")
        return template

    def create_template(
        self,
        name: str,
        compose_content: str,
        description: Optional[str] = None,
        version: Optional[str] = None,
        env_defaults: Optional[Dict[str, str]] = None,
        volume_hints: Optional[List[Dict[str, Any]]] = None,
        tags: Optional[List[str]] = None,
        author: Optional[str] = None,
    ) -> StackTemplate:
        """
        Store a new template.

        Raises:
            ValidationFailedError: If the compose content is not a usable compose document
        """
        self._validate_compose(compose_content)
        template = self.db.add_template({
            'name': name,
            'description': description,
            'version': version,
            'compose_content': compose_content,
            'env_defaults': env_defaults or {},
            'volume_hints': volume_hints or [],
            'tags': tags or [],
            'author': author,
        })
        logger.info(f"Created template '{name}' ({template.id[:8]})")
        return template

    def update_template(self, template_id: str, **changes: Any) -> StackTemplate:
        """Apply the given fields; fields passed as None are left unchanged."""
        self.get_template(template_id)
        updates = {key: value for key, value in changes.items() if key in TEMPLATE_FIELDS and value is not None}
        if 'compose_content' in updates:
            self._validate_compose(updates['compose_content'])
        template = self.db.update_template(template_id, updates)
        logger.info(f"Updated template '{template.name}' ({', '.join(sorted(updates)) or 'no changes'})")
        return template

    def delete_template(self, template_id: str) -> StackTemplate:
        """Delete a template. Stacks already created from it are unaffected."""
        template = self.get_template(template_id)
        self.db.delete_template(template_id)
        return template

    async def deploy_template(
        self,
        template_id: str,
        project_name: Optional[str] = None,
        environment: Optional[Dict[str, str]] = None,
        start: bool = False,
        created_by: Optional[int] = None,
    ) -> Tuple[StackRecord, List[str]]:
        """
        Create a stack from a template and optionally bring it up.

        Request environment values override the template's defaults.

        Returns:
            The new stack record and the compose output (empty unless started)
        """
        template = self.get_template(template_id)
        name = project_name or default_project_name(template.name)
        env = {**template.get_env_defaults(), **(environment or {})}

        stack = await self.stacks.create_stack(name, template.compose_content, render_env(env),
                                               created_by=created_by)
        self.db.increment_template_usage(template_id)
        logger.info(f"Created stack '{stack.name}' from template '{template.name}'")

        output: List[str] = []
        if start:
            stack, output = await self.stacks.run_action(stack.id, "up")
        return stack, output

    def export_template(self, template_id: str) -> Dict[str, Any]:
        """Portable JSON form of a template (importable with import_template)."""
        data = self.get_template(template_id).to_dict()
        return {key: data[key] for key in ("id", "name", "description", "author", "version", "compose_content",
                                            "env_defaults", "volume_hints", "tags", "created_at")}

    def import_template(self, data: Dict[str, Any], author: Optional[str] = None) -> StackTemplate:
        """Create a template from an exported document; its id, author and timestamps are not kept."""
        if not data.get("name") or not data.get("compose_content"):
            raise ValidationFailedError("Name and compose_content are required")
        return self.create_template(
            name=data["name"],
            compose_content=data["compose_content"],
            description=data.get("description"),
            version=data.get("version"),
            env_defaults=data.get("env_defaults"),
            volume_hints=data.get("volume_hints"),
            tags=data.get("tags"),
            author=author,
        )
