"""
Image API routes for Stardeck.
"""

import logging

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from audit import AuditAction, AuditEntityType, record_action
from auth.api_key_auth import get_current_user
from services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/images", tags=["images"])


class ImagePullRequest(BaseModel):
    image: str = Field(..., description="Image reference, e.g. nginx:1.25", min_length=1)


@router.get("")
async def list_images(user=Depends(get_current_user), services: Services = Depends(get_services)):
    return [image.to_dict() for image in await services.engine.list_images()]


@router.post("/pull")
async def pull_image(body: ImagePullRequest, request: Request, user=Depends(get_current_user),
                     services: Services = Depends(get_services)):
    """Pull an image and wait for it to complete."""
    stream = await services.engine.pull_image(body.image, capacity=services.config.PROGRESS_QUEUE_SIZE)
    final = None
    async for snapshot in stream:
        final = snapshot
    record_action(services.db, user, AuditAction.IMAGE_PULL, AuditEntityType.IMAGE,
                  entity_id=body.image, entity_name=body.image, connection=request)
    logger.info(f"User {user['username']} pulled image {body.image}")
    return {
        "success": True,
        "image": final.image if final else body.image,
        "layers": len(final.layers) if final else 0,
        "message": final.summary() if final else "Pull complete",
    }


@router.get("/{name:path}/inspect")
async def inspect_image(name: str, user=Depends(get_current_user), services: Services = Depends(get_services)):
    return await services.engine.inspect_image(name)


@router.delete("/{name:path}")
async def remove_image(
    name: str,
    request: Request,
    force: bool = Query(False, description="Remove even if tagged by several references or in use"),
    user=Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await services.engine.remove_image(name, force=force)
    record_action(services.db, user, AuditAction.IMAGE_REMOVE, AuditEntityType.IMAGE,
                  entity_id=name, entity_name=name, details={"force": force}, connection=request)
    logger.info(f"User {user['username']} removed image {name}")
    return {"success": True, "message": f"Image {name} removed"}
