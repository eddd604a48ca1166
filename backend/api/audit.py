"""
Audit log API routes for Stardeck.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from auth.api_key_auth import get_current_user
from services import Services, get_services

router = APIRouter(prefix="/api/audit", tags=["audit"])


@router.get("")
async def list_audit_entries(
    limit: int = Query(100, ge=1, le=1000),
    entity_type: Optional[str] = Query(None, description="container, image, volume, network, stack or backup"),
    entity_id: Optional[str] = Query(None),
    user=Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Most recent audit entries first."""
    entries = services.db.get_audit_entries(limit=limit, entity_type=entity_type, entity_id=entity_id)
    return [entry.to_dict() for entry in entries]
