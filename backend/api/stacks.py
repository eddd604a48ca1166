"""
Stack API routes for Stardeck.

Stacks are stored in the database and rendered to the stacks directory
before every compose run. Lifecycle endpoints here run to completion and
return the command output; streaming deploy and pull live in api/streams.py.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from audit import AuditAction, AuditEntityType, record_action
from auth.api_key_auth import get_current_user
from database import StackRecord
from services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/stacks", tags=["stacks"])

ACTION_AUDIT = {
    "up": AuditAction.STACK_DEPLOY,
    "down": AuditAction.STACK_DOWN,
    "stop": AuditAction.STACK_STOP,
    "start": AuditAction.STACK_START,
    "restart": AuditAction.STACK_RESTART,
}


class StackCreate(BaseModel):
    """Create stack request"""
    name: str = Field(..., description="Stack name (lowercase alphanumeric, hyphens, underscores)",
                      min_length=1, max_length=100)
    compose_content: str = Field(..., description="docker-compose.yml content")
    env_content: Optional[str] = Field(None, description=".env file content")


class StackUpdate(BaseModel):
    """Update stack content request"""
    compose_content: str = Field(..., description="docker-compose.yml content")
    env_content: Optional[str] = Field(None, description=".env file content")


class StackDeployOptions(BaseModel):
    """Deploy websocket request"""
    pull: bool = Field(False, description="Pull images before bringing the stack up")


def _audit(services: Services, user: dict, action: AuditAction, stack: StackRecord,
           request: Request, details: Optional[dict] = None) -> None:
    record_action(services.db, user, action, AuditEntityType.STACK,
                  entity_id=stack.id, entity_name=stack.name, details=details, connection=request)


@router.get("")
async def list_stacks(user=Depends(get_current_user), services: Services = Depends(get_services)):
    """List all stacks (without file content)."""
    return [s.to_dict(include_content=False) for s in services.stacks.list_stacks()]


@router.get("/{stack_id}")
async def get_stack(stack_id: str, user=Depends(get_current_user), services: Services = Depends(get_services)):
    """Get a stack including its compose and env content."""
    return services.stacks.get_stack(stack_id).to_dict()


@router.post("", status_code=201)
async def create_stack(
    body: StackCreate,
    request: Request,
    user=Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """
    Create a new stack.

    The compose content is validated before anything is written. Nothing is
    deployed until the stack is brought up.
    """
    stack = await services.stacks.create_stack(
        body.name, body.compose_content, body.env_content, created_by=user.get("user_id"),
    )
    _audit(services, user, AuditAction.STACK_CREATE, stack, request)
    logger.info(f"User {user['username']} created stack '{stack.name}'")
    return stack.to_dict()


@router.put("/{stack_id}")
async def update_stack(
    stack_id: str,
    body: StackUpdate,
    request: Request,
    user=Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Replace a stack's content. Running containers change on the next deploy."""
    stack = await services.stacks.update_stack(stack_id, body.compose_content, body.env_content)
    _audit(services, user, AuditAction.STACK_UPDATE, stack, request)
    logger.info(f"User {user['username']} updated stack '{stack.name}'")
    return stack.to_dict()


@router.delete("/{stack_id}")
async def delete_stack(
    stack_id: str,
    request: Request,
    remove_volumes: bool = Query(False, description="Also remove the stack's named volumes"),
    user=Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Take a stack down and delete its files and record."""
    stack = services.stacks.get_stack(stack_id)
    await services.stacks.delete_stack(stack_id, remove_volumes=remove_volumes)
    _audit(services, user, AuditAction.STACK_DELETE, stack, request, details={"remove_volumes": remove_volumes})
    logger.info(f"User {user['username']} deleted stack '{stack.name}'")
    return {"success": True, "message": f"Stack '{stack.name}' deleted"}


async def _run_action(stack_id: str, action: str, request: Request, user: dict, services: Services,
                      remove_volumes: bool = False) -> dict:
    stack, output = await services.stacks.run_action(stack_id, action, remove_volumes=remove_volumes)
    _audit(services, user, ACTION_AUDIT[action], stack, request)
    logger.info(f"User {user['username']} ran '{action}' on stack '{stack.name}'")
    return {"success": True, "status": stack.status, "output": output}


@router.post("/{stack_id}/up")
async def stack_up(stack_id: str, request: Request, user=Depends(get_current_user),
                   services: Services = Depends(get_services)):
    return await _run_action(stack_id, "up", request, user, services)


@router.post("/{stack_id}/down")
async def stack_down(
    stack_id: str,
    request: Request,
    remove_volumes: bool = Query(False),
    user=Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await _run_action(stack_id, "down", request, user, services, remove_volumes=remove_volumes)


@router.post("/{stack_id}/stop")
async def stack_stop(stack_id: str, request: Request, user=Depends(get_current_user),
                     services: Services = Depends(get_services)):
    return await _run_action(stack_id, "stop", request, user, services)


@router.post("/{stack_id}/start")
async def stack_start(stack_id: str, request: Request, user=Depends(get_current_user),
                      services: Services = Depends(get_services)):
    return await _run_action(stack_id, "start", request, user, services)


@router.post("/{stack_id}/restart")
async def stack_restart(stack_id: str, request: Request, user=Depends(get_current_user),
                        services: Services = Depends(get_services)):
    return await _run_action(stack_id, "restart", request, user, services)


@router.get("/{stack_id}/containers")
async def list_stack_containers(stack_id: str, user=Depends(get_current_user),
                                services: Services = Depends(get_services)):
    containers = await services.stacks.list_containers(stack_id)
    return [c.to_dict() for c in containers]


@router.post("/{stack_id}/status")
async def refresh_stack_status(stack_id: str, user=Depends(get_current_user),
                               services: Services = Depends(get_services)):
    """Recompute the stack status from its containers."""
    stack = await services.stacks.refresh_status(stack_id)
    return {"id": stack.id, "name": stack.name, "status": stack.status}
