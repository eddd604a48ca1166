"""
Volume API routes for Stardeck.
"""

import logging
from typing import Dict

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from audit import AuditAction, AuditEntityType, record_action
from auth.api_key_auth import get_current_user
from services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/volumes", tags=["volumes"])


class VolumeCreate(BaseModel):
    name: str = Field(..., description="Volume name", min_length=1, max_length=255)
    driver: str = Field("local", description="Volume driver")
    labels: Dict[str, str] = Field(default_factory=dict)


@router.get("")
async def list_volumes(user=Depends(get_current_user), services: Services = Depends(get_services)):
    return [volume.to_dict() for volume in await services.engine.list_volumes()]


@router.post("", status_code=201)
async def create_volume(body: VolumeCreate, request: Request, user=Depends(get_current_user),
                        services: Services = Depends(get_services)):
    volume = await services.engine.create_volume(body.name, driver=body.driver, labels=body.labels)
    record_action(services.db, user, AuditAction.VOLUME_CREATE, AuditEntityType.VOLUME,
                  entity_id=volume.name, entity_name=volume.name, details={"driver": body.driver},
                  connection=request)
    logger.info(f"User {user['username']} created volume {volume.name}")
    return volume.to_dict()


@router.delete("/{name}")
async def remove_volume(
    name: str,
    request: Request,
    force: bool = Query(False),
    user=Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await services.engine.remove_volume(name, force=force)
    record_action(services.db, user, AuditAction.VOLUME_REMOVE, AuditEntityType.VOLUME,
                  entity_id=name, entity_name=name, connection=request)
    logger.info(f"User {user['username']} removed volume {name}")
    return {"success": True, "message": f"Volume {name} removed"}
