"""
Network API routes for Stardeck.
"""

import logging
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from audit import AuditAction, AuditEntityType, record_action
from auth.api_key_auth import get_current_user
from services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/networks", tags=["networks"])


class NetworkCreate(BaseModel):
    name: str = Field(..., description="Network name", min_length=1, max_length=255)
    driver: str = Field("bridge", description="Network driver")
    subnet: Optional[str] = Field(None, description="CIDR subnet, e.g. 172.28.0.0/16")
    gateway: Optional[str] = Field(None, description="Gateway address inside the subnet")
    labels: Dict[str, str] = Field(default_factory=dict)


@router.get("")
async def list_networks(user=Depends(get_current_user), services: Services = Depends(get_services)):
    return [network.to_dict() for network in await services.engine.list_networks()]


@router.post("", status_code=201)
async def create_network(body: NetworkCreate, request: Request, user=Depends(get_current_user),
                         services: Services = Depends(get_services)):
    network = await services.engine.create_network(
        body.name, driver=body.driver, subnet=body.subnet, gateway=body.gateway, labels=body.labels,
    )
    record_action(services.db, user, AuditAction.NETWORK_CREATE, AuditEntityType.NETWORK,
                  entity_id=network.id, entity_name=network.name,
                  details={"driver": body.driver, "subnet": body.subnet}, connection=request)
    logger.info(f"User {user['username']} created network {network.name}")
    return network.to_dict()


@router.delete("/{name}")
async def remove_network(name: str, request: Request, user=Depends(get_current_user),
                         services: Services = Depends(get_services)):
    await services.engine.remove_network(name)
    record_action(services.db, user, AuditAction.NETWORK_REMOVE, AuditEntityType.NETWORK,
                  entity_id=name, entity_name=name, connection=request)
    logger.info(f"User {user['username']} removed network {name}")
    return {"success": True, "message": f"Network {name} removed"}
