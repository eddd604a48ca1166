"""
Stack template API routes for Stardeck.

Templates are reusable compose definitions. Deploying one creates a regular
stack (see api/stacks.py) and can bring it up in the same request.
"""

import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from audit import AuditAction, AuditEntityType, record_action
from auth.api_key_auth import get_current_user
from database import StackTemplate
from services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/templates", tags=["templates"])


class VolumeHint(BaseModel):
    """Suggested host path for one of the template's volumes"""
    name: str = Field(..., min_length=1)
    suggested_path: Optional[str] = None
    description: Optional[str] = None
    required: bool = False


class TemplateCreate(BaseModel):
    """Create template request (also the import document; unknown fields are ignored)"""
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    version: Optional[str] = None
    compose_content: str = Field(..., min_length=1, description="docker-compose.yml content")
    env_defaults: Dict[str, str] = Field(default_factory=dict)
    volume_hints: List[VolumeHint] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)


class TemplateUpdate(BaseModel):
    """Update template request; omitted fields are left unchanged"""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    version: Optional[str] = None
    compose_content: Optional[str] = Field(None, min_length=1)
    env_defaults: Optional[Dict[str, str]] = None
    volume_hints: Optional[List[VolumeHint]] = None
    tags: Optional[List[str]] = None


class TemplateDeploy(BaseModel):
    """Deploy template request"""
    project_name: Optional[str] = Field(None, description="Stack name (defaults to <template>-<timestamp>)",
                                        min_length=1, max_length=100)
    environment: Dict[str, str] = Field(default_factory=dict, description="Overrides for the template's env defaults")
    start: bool = Field(False, description="Bring the stack up after creating it")


def _audit(services: Services, user: dict, action: AuditAction, template: StackTemplate,
           request: Request, details: Optional[dict] = None) -> None:
    record_action(services.db, user, action, AuditEntityType.TEMPLATE,
                  entity_id=template.id, entity_name=template.name, details=details, connection=request)


@router.get("")
async def list_templates(user=Depends(get_current_user), services: Services = Depends(get_services)):
    return [t.to_dict() for t in services.templates.list_templates()]


@router.get("/{template_id}")
async def get_template(template_id: str, user=Depends(get_current_user),
                       services: Services = Depends(get_services)):
    return services.templates.get_template(template_id).to_dict()


@router.post("", status_code=201)
async def create_template(
    body: TemplateCreate,
    request: Request,
    user=Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Create a template. The compose content is validated first."""
    template = services.templates.create_template(
        name=body.name,
        compose_content=body.compose_content,
        description=body.description,
        version=body.version,
        env_defaults=body.env_defaults,
        volume_hints=[h.model_dump() for h in body.volume_hints],
        tags=body.tags,
        author=user.get("username"),
    )
    _audit(services, user, AuditAction.TEMPLATE_CREATE, template, request)
    logger.info(f"User {user['username']} created template '{template.name}'")
    return template.to_dict()


@router.put("/{template_id}")
async def update_template(
    template_id: str,
    body: TemplateUpdate,
    request: Request,
    user=Depends(get_current_user),
    services: Services = Depends(get_services),
):
    changes = body.model_dump(exclude_none=True)
    template = services.templates.update_template(template_id, **changes)
    _audit(services, user, AuditAction.TEMPLATE_UPDATE, template, request, details={"fields": sorted(changes)})
    return template.to_dict()


@router.delete("/{template_id}")
async def delete_template(template_id: str, request: Request, user=Depends(get_current_user),
                          services: Services = Depends(get_services)):
    template = services.templates.delete_template(template_id)
    _audit(services, user, AuditAction.TEMPLATE_DELETE, template, request)
    logger.info(f"User {user['username']} deleted template '{template.name}'")
    return {"success": True, "message": f"Template '{template.name}' deleted"}


@router.post("/{template_id}/deploy", status_code=201)
async def deploy_template(
    template_id: str,
    body: TemplateDeploy,
    request: Request,
    user=Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """
    Create a stack from a template.

    The stack's .env holds the template's env defaults overlaid with the
    request's environment. With ``start`` the stack is brought up as well
    and the compose output is returned.
    """
    template = services.templates.get_template(template_id)
    stack, output = await services.templates.deploy_template(
        template_id,
        project_name=body.project_name,
        environment=body.environment,
        start=body.start,
        created_by=user.get("user_id"),
    )
    _audit(services, user, AuditAction.TEMPLATE_DEPLOY, template, request,
           details={"stack_id": stack.id, "stack_name": stack.name, "started": body.start})
    logger.info(f"User {user['username']} deployed template '{template.name}' as stack '{stack.name}'")
    return {
        "status": "created",
        "stack_id": stack.id,
        "stack_name": stack.name,
        "stack_status": stack.status,
        "output": output,
        "message": f"Stack '{stack.name}' created from template '{template.name}'",
    }


@router.get("/{template_id}/export")
async def export_template(template_id: str, user=Depends(get_current_user),
                          services: Services = Depends(get_services)):
    """Download a template as a JSON document that /import accepts."""
    document = services.templates.export_template(template_id)
    filename = f"{document['name']}.json".replace('"', "")
    return JSONResponse(
        content=document,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/import", status_code=201)
async def import_template(
    body: TemplateCreate,
    request: Request,
    user=Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Create a template from an exported document. Its id and author are not kept."""
    data = body.model_dump()
    template = services.templates.import_template(data, author=user.get("username"))
    _audit(services, user, AuditAction.TEMPLATE_CREATE, template, request, details={"imported": True})
    logger.info(f"User {user['username']} imported template '{template.name}'")
    return template.to_dict()

