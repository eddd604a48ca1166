"""
Container API routes for Stardeck.

Lifecycle operations act on the engine directly and keep the matching
ContainerRecord (if the container is managed) in step. Containers can be
managed either by deploying them through Stardeck or by adopting an
existing one; releasing a container forgets the record without touching
the container.
"""

import logging
from dataclasses import asdict
from typing import Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from audit import AuditAction, AuditEntityType, record_action
from auth.api_key_auth import get_current_user
from database import ContainerRecord
from deployment.container_deployer import DeployRequest
from engine.errors import ConflictError, NotFoundError, StardeckError
from engine.types import ContainerInfo
from services import Services, get_services
from updates.types import UpdateRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/containers", tags=["containers"])


# ==================== Request Models ====================

class DeployContainerRequest(BaseModel):
    """Create container request (REST and the deploy websocket)."""
    name: str = Field(..., description="Container name", min_length=1, max_length=255)
    image: str = Field(..., description="Image reference, e.g. nginx:latest", min_length=1)
    ports: List[str] = Field(default_factory=list, description="Port mappings host:container[/proto]")
    volumes: List[str] = Field(default_factory=list, description="Volume mappings src:target[:ro]")
    env: Dict[str, str] = Field(default_factory=dict, description="Environment variables")
    labels: Dict[str, str] = Field(default_factory=dict, description="Container labels")
    restart_policy: str = Field("no", description="no, always, on-failure[:N], unless-stopped")
    network_mode: Optional[str] = Field(None, description="bridge, host, none, container:<id> or a network name")
    hostname: Optional[str] = None
    user: Optional[str] = None
    workdir: Optional[str] = None
    entrypoint: Optional[List[str]] = None
    command: Optional[List[str]] = None
    cpus: Optional[float] = Field(None, description="CPU limit in cores", gt=0)
    memory: Optional[str] = Field(None, description="Memory limit, e.g. 512m or 1g")
    has_web_ui: bool = False
    web_ui_port: Optional[int] = Field(None, ge=1, le=65535)
    web_ui_path: Optional[str] = None
    icon: Optional[str] = None
    auto_start: bool = Field(True, description="Start the container after creating it")
    pull: bool = Field(False, description="Pull the image even if it is present locally")

    def to_deploy_request(self) -> DeployRequest:
        return DeployRequest(**self.model_dump())


class UpdateContainerRequest(BaseModel):
    """Update websocket request. Cleanup of the parked original is opt-in."""
    container_id: str = Field(..., description="Record id, engine id or container name", min_length=1)
    new_image: Optional[str] = Field(None, description="Target image; the current tag is re-pulled when omitted")
    create_backup: bool = False
    overwrite_backup: bool = False
    remove_old: bool = Field(False, description="Remove the parked original after a successful update")
    stop_timeout: Optional[int] = Field(None, ge=0, le=3600)

    def to_update_request(self, default_stop_timeout: int) -> UpdateRequest:
        return UpdateRequest(
            container_ref=self.container_id,
            new_image=self.new_image or None,
            create_backup=self.create_backup,
            overwrite_backup=self.overwrite_backup,
            remove_old=self.remove_old,
            stop_timeout=default_stop_timeout if self.stop_timeout is None else self.stop_timeout,
        )


class ContainerMetadataUpdate(BaseModel):
    """Stardeck metadata of a managed container. Omitted fields are unchanged."""
    has_web_ui: Optional[bool] = None
    web_ui_port: Optional[int] = Field(None, ge=1, le=65535)
    web_ui_path: Optional[str] = None
    icon: Optional[str] = None
    auto_start: Optional[bool] = None
    labels: Optional[Dict[str, str]] = None


class AdoptContainerRequest(BaseModel):
    has_web_ui: bool = False
    web_ui_port: Optional[int] = Field(None, ge=1, le=65535)
    web_ui_path: Optional[str] = None
    icon: Optional[str] = None
    auto_start: bool = False


class StopContainerRequest(BaseModel):
    timeout: int = Field(30, description="Seconds before the container is killed", ge=0, le=3600)


# ==================== Helpers ====================

def _resolve(services: Services, ref: str) -> Tuple[Optional[ContainerRecord], str]:
    """Map a record id, engine id or name onto (record, engine reference)."""
    record = services.db.find_container_record(ref)
    if record and record.engine_id:
        return record, record.engine_id
    return record, ref


async def _refresh_status(services: Services, record: Optional[ContainerRecord], engine_ref: str) -> Optional[ContainerInfo]:
    """Copy the engine's current state onto the record."""
    try:
        info = await services.engine.get_container(engine_ref)
    except NotFoundError:
        return None
    if record and record.status != info.status.value:
        services.db.update_container_record(record.id, {'status': info.status.value})
    return info


def _describe(info: Optional[ContainerInfo], record: Optional[ContainerRecord]) -> dict:
    data = info.to_dict() if info else {}
    data["managed"] = record is not None
    data["record"] = record.to_dict() if record else None
    return data


def _audit(services: Services, user: dict, action: AuditAction, record: Optional[ContainerRecord],
           engine_ref: str, request: Request, details: Optional[dict] = None) -> None:
    record_action(
        services.db, user, action, AuditEntityType.CONTAINER,
        entity_id=record.id if record else engine_ref,
        entity_name=record.name if record else engine_ref,
        details=details,
        connection=request,
    )


# ==================== Endpoints ====================

@router.get("")
async def list_containers(
    all: bool = Query(True, description="Include stopped containers"),
    managed_only: bool = Query(False, description="Only containers with a Stardeck record"),
    user=Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """List engine containers, each annotated with its Stardeck record if managed."""
    containers = await services.engine.list_containers(all=all)
    records = {r.engine_id: r for r in services.db.list_container_records() if r.engine_id}
    result = []
    for info in containers:
        record = records.get(info.id)
        if managed_only and record is None:
            continue
        result.append(_describe(info, record))
    return result


@router.post("", status_code=201)
async def create_container(
    body: DeployContainerRequest,
    request: Request,
    user=Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Create (and by default start) a container without progress streaming."""
    record = await services.deployer.deploy(body.to_deploy_request(), created_by=user.get("user_id"))
    _audit(services, user, AuditAction.CONTAINER_CREATE, record, record.engine_id, request,
           details={"image": body.image})
    logger.info(f"User {user['username']} created container '{record.name}'")
    return record.to_dict()


@router.get("/{ref}")
async def get_container(ref: str, user=Depends(get_current_user), services: Services = Depends(get_services)):
    """Record plus live engine state."""
    record, engine_ref = _resolve(services, ref)
    info = await _refresh_status(services, record, engine_ref)
    if info is None and record is None:
        raise NotFoundError(f"Container {ref} not found")
    if record:
        record = services.db.get_container_record(record.id)
    return _describe(info, record)


@router.post("/{ref}/start")
async def start_container(ref: str, request: Request, user=Depends(get_current_user),
                          services: Services = Depends(get_services)):
    record, engine_ref = _resolve(services, ref)
    await services.engine.start_container(engine_ref)
    info = await _refresh_status(services, record, engine_ref)
    _audit(services, user, AuditAction.CONTAINER_START, record, engine_ref, request)
    return {"status": "success", "state": info.status.value if info else None}


@router.post("/{ref}/stop")
async def stop_container(ref: str, request: Request, body: Optional[StopContainerRequest] = None,
                         user=Depends(get_current_user), services: Services = Depends(get_services)):
    record, engine_ref = _resolve(services, ref)
    timeout = body.timeout if body else services.config.DEFAULT_STOP_TIMEOUT
    await services.engine.stop_container(engine_ref, timeout=timeout)
    info = await _refresh_status(services, record, engine_ref)
    _audit(services, user, AuditAction.CONTAINER_STOP, record, engine_ref, request)
    return {"status": "success", "state": info.status.value if info else None}


@router.post("/{ref}/restart")
async def restart_container(ref: str, request: Request, body: Optional[StopContainerRequest] = None,
                            user=Depends(get_current_user), services: Services = Depends(get_services)):
    record, engine_ref = _resolve(services, ref)
    timeout = body.timeout if body else services.config.DEFAULT_STOP_TIMEOUT
    await services.engine.restart_container(engine_ref, timeout=timeout)
    info = await _refresh_status(services, record, engine_ref)
    _audit(services, user, AuditAction.CONTAINER_RESTART, record, engine_ref, request)
    return {"status": "success", "state": info.status.value if info else None}


@router.post("/{ref}/pause")
async def pause_container(ref: str, request: Request, user=Depends(get_current_user),
                          services: Services = Depends(get_services)):
    record, engine_ref = _resolve(services, ref)
    await services.engine.pause_container(engine_ref)
    info = await _refresh_status(services, record, engine_ref)
    _audit(services, user, AuditAction.CONTAINER_PAUSE, record, engine_ref, request)
    return {"status": "success", "state": info.status.value if info else None}


@router.post("/{ref}/unpause")
async def unpause_container(ref: str, request: Request, user=Depends(get_current_user),
                            services: Services = Depends(get_services)):
    record, engine_ref = _resolve(services, ref)
    await services.engine.unpause_container(engine_ref)
    info = await _refresh_status(services, record, engine_ref)
    _audit(services, user, AuditAction.CONTAINER_UNPAUSE, record, engine_ref, request)
    return {"status": "success", "state": info.status.value if info else None}


@router.delete("/{ref}")
async def remove_container(
    ref: str,
    request: Request,
    force: bool = Query(False, description="Kill the container if it is running"),
    volumes: bool = Query(False, description="Also remove anonymous volumes"),
    user=Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Remove a container from the engine and forget its record."""
    record, engine_ref = _resolve(services, ref)
    try:
        await services.engine.remove_container(engine_ref, force=force, volumes=volumes)
    except NotFoundError:
        if record is None:
            raise
        logger.info(f"Container {engine_ref} already gone from engine, removing record")
    if record:
        services.db.delete_container_record(record.id)
    _audit(services, user, AuditAction.CONTAINER_REMOVE, record, engine_ref, request,
           details={"force": force, "volumes": volumes})
    logger.info(f"User {user['username']} removed container {record.name if record else engine_ref}")
    return {"success": True, "message": "Container removed"}


@router.post("/{ref}/adopt", status_code=201)
async def adopt_container(ref: str, request: Request, body: Optional[AdoptContainerRequest] = None,
                          user=Depends(get_current_user), services: Services = Depends(get_services)):
    """Start managing an existing container."""
    body = body or AdoptContainerRequest()
    info = await services.engine.get_container(ref)
    if services.db.get_container_record_by_engine_id(info.id):
        raise ConflictError(f"Container {info.name} is already managed")
    record = services.db.add_container_record({
        'engine_id': info.id,
        'name': info.name,
        'image': info.image,
        'status': info.status.value,
        'has_web_ui': body.has_web_ui,
        'web_ui_port': body.web_ui_port,
        'web_ui_path': body.web_ui_path,
        'icon': body.icon,
        'auto_start': body.auto_start,
        'created_by': user.get("user_id"),
    })
    _audit(services, user, AuditAction.CONTAINER_ADOPT, record, info.id, request)
    logger.info(f"User {user['username']} adopted container {info.name}")
    return record.to_dict()


@router.post("/{ref}/release")
async def release_container(ref: str, request: Request, user=Depends(get_current_user),
                            services: Services = Depends(get_services)):
    """Stop managing a container. The container itself is left alone."""
    record = services.db.find_container_record(ref)
    if record is None:
        raise NotFoundError(f"Container {ref} is not managed")
    services.db.delete_container_record(record.id)
    _audit(services, user, AuditAction.CONTAINER_RELEASE, record, record.engine_id, request)
    return {"success": True, "message": f"Container {record.name} released"}


@router.patch("/{ref}/metadata")
async def update_container_metadata(ref: str, body: ContainerMetadataUpdate, request: Request,
                                    user=Depends(get_current_user), services: Services = Depends(get_services)):
    """Edit web UI, icon, auto start and label metadata. Applied to the container on its next update."""
    record = services.db.find_container_record(ref)
    if record is None:
        raise NotFoundError(f"Container {ref} is not managed")
    updates = body.model_dump(exclude_unset=True)
    if updates:
        record = services.db.update_container_record(record.id, updates)
    _audit(services, user, AuditAction.CONTAINER_EDIT, record, record.engine_id, request, details=updates)
    return record.to_dict()


@router.get("/{ref}/config")
async def get_container_config(ref: str, user=Depends(get_current_user), services: Services = Depends(get_services)):
    _, engine_ref = _resolve(services, ref)
    return asdict(await services.engine.read_container_config(engine_ref))


@router.get("/{ref}/stats")
async def get_container_stats(ref: str, user=Depends(get_current_user), services: Services = Depends(get_services)):
    _, engine_ref = _resolve(services, ref)
    return asdict(await services.engine.get_container_stats(engine_ref))


@router.get("/{ref}/logs")
async def get_container_logs(
    ref: str,
    tail: int = Query(100, ge=1, le=10000),
    timestamps: bool = Query(False),
    user=Depends(get_current_user),
    services: Services = Depends(get_services),
):
    _, engine_ref = _resolve(services, ref)
    return {"logs": await services.engine.get_logs(engine_ref, tail=tail, timestamps=timestamps)}


@router.get("/{ref}/inspect")
async def inspect_container(ref: str, user=Depends(get_current_user), services: Services = Depends(get_services)):
    _, engine_ref = _resolve(services, ref)
    return await services.engine.inspect_container(engine_ref)


@router.post("/{ref}/check-update")
async def check_container_update(ref: str, user=Depends(get_current_user),
                                 services: Services = Depends(get_services)):
    """Compare the container's image digest with the registry."""
    _, engine_ref = _resolve(services, ref)
    info = await services.engine.get_container(engine_ref)
    logger.info(f"User {user.get('username')} triggered update check for {info.name}")
    try:
        check = await services.engine.check_image_update(info.image)
    except StardeckError as e:
        logger.warning(f"Update check for {info.name} failed: {e}")
        raise
    return {
        "container": info.name,
        "image": check.image,
        "update_available": check.update_available,
        "local_digest": check.local_digest,
        "remote_digest": check.remote_digest,
    }
