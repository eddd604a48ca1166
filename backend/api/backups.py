"""
Backup API routes for Stardeck.

Backups are only ever created by the update workflow; these endpoints
inspect, restore and delete them.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from audit import AuditAction, AuditEntityType, record_action
from auth.api_key_auth import get_current_user
from services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/backups", tags=["backups"])


@router.get("")
async def list_backups(
    container_name: Optional[str] = Query(None, description="Only backups of this container"),
    user=Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return [b.to_dict() for b in services.backups.list_backups(container_name)]


@router.get("/{backup_id}")
async def get_backup(backup_id: str, user=Depends(get_current_user), services: Services = Depends(get_services)):
    """Backup record plus its manifest."""
    record = services.backups.get_backup(backup_id)
    data = record.to_dict()
    data["manifest"] = await services.backups.read_manifest(backup_id)
    return data


@router.post("/{backup_id}/restore")
async def restore_backup(backup_id: str, request: Request, user=Depends(get_current_user),
                         services: Services = Depends(get_services)):
    """Restore every archived mount to its host path. The container must be stopped."""
    job = services.backups.start_restore(backup_id)
    output = [line async for line in job.lines]
    record_action(services.db, user, AuditAction.BACKUP_RESTORE, AuditEntityType.BACKUP,
                  entity_id=backup_id, entity_name=job.record.container_name, connection=request)
    logger.info(f"User {user['username']} restored backup {backup_id[:8]} of {job.record.container_name}")
    return {"success": True, "output": output}


@router.delete("/{backup_id}")
async def delete_backup(backup_id: str, request: Request, user=Depends(get_current_user),
                        services: Services = Depends(get_services)):
    record = services.backups.get_backup(backup_id)
    await services.backups.delete_backup(backup_id)
    record_action(services.db, user, AuditAction.BACKUP_DELETE, AuditEntityType.BACKUP,
                  entity_id=backup_id, entity_name=record.container_name, connection=request)
    logger.info(f"User {user['username']} deleted backup {backup_id[:8]}")
    return {"success": True, "message": "Backup deleted"}
