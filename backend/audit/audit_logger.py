"""
Audit logging helper functions for Stardeck.

Records mutating user actions to the audit_log table.
"""

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, Union

from fastapi.requests import HTTPConnection
from sqlalchemy.orm import Session

from database import AuditLog, DatabaseManager

logger = logging.getLogger(__name__)


class AuditAction(str, Enum):
    """Audit action types"""
    # Container operations
    CONTAINER_CREATE = 'container.create'
    CONTAINER_START = 'container.start'
    CONTAINER_STOP = 'container.stop'
    CONTAINER_RESTART = 'container.restart'
    CONTAINER_PAUSE = 'container.pause'
    CONTAINER_UNPAUSE = 'container.unpause'
    CONTAINER_REMOVE = 'container.remove'
    CONTAINER_UPDATE = 'container.update'
    CONTAINER_ADOPT = 'container.adopt'
    CONTAINER_RELEASE = 'container.release'
    CONTAINER_EDIT = 'container.edit'
    CONTAINER_EXEC = 'container.exec'

    # Images
    IMAGE_PULL = 'image.pull'
    IMAGE_REMOVE = 'image.remove'

    # Volumes and networks
    VOLUME_CREATE = 'volume.create'
    VOLUME_REMOVE = 'volume.remove'
    NETWORK_CREATE = 'network.create'
    NETWORK_REMOVE = 'network.remove'

    # Stack operations
    STACK_CREATE = 'stack.create'
    STACK_UPDATE = 'stack.update'
    STACK_DELETE = 'stack.delete'
    STACK_DEPLOY = 'stack.deploy'
    STACK_STOP = 'stack.stop'
    STACK_START = 'stack.start'
    STACK_RESTART = 'stack.restart'
    STACK_PULL = 'stack.pull'
    STACK_DOWN = 'stack.down'

    # Templates
    TEMPLATE_CREATE = 'template.create'
    TEMPLATE_UPDATE = 'template.update'
    TEMPLATE_DELETE = 'template.delete'
    TEMPLATE_DEPLOY = 'template.deploy'

    # Backups
    BACKUP_RESTORE = 'backup.restore'
    BACKUP_DELETE = 'backup.delete'


class AuditEntityType(str, Enum):
    """Audit entity types"""
    CONTAINER = 'container'
    IMAGE = 'image'
    VOLUME = 'volume'
    NETWORK = 'network'
    STACK = 'stack'
    TEMPLATE = 'template'
    BACKUP = 'backup'


def get_client_info(connection: Optional[HTTPConnection]) -> Dict[str, Optional[str]]:
    """
    Extract client information from a request or websocket.

    Args:
        connection: FastAPI Request or WebSocket

    Returns:
        Dict with ip_address and user_agent
    """
    if connection is None:
        return {'ip_address': None, 'user_agent': None}

    # Check X-Forwarded-For for reverse proxy setups
    ip_address = connection.headers.get('X-Forwarded-For')
    if ip_address:
        # Take first IP if multiple (client -> proxies)
        ip_address = ip_address.split(',')[0].strip()
    else:
        ip_address = connection.client.host if connection.client else None

    return {
        'ip_address': ip_address,
        'user_agent': connection.headers.get('User-Agent'),
    }


def _enum_value(value: Union[Enum, str]) -> str:
    return value.value if isinstance(value, Enum) else value


def add_audit_entry(
    session: Session,
    user: Dict[str, Any],
    action: Union[AuditAction, str],
    entity_type: Union[AuditEntityType, str],
    entity_id: Optional[str] = None,
    entity_name: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    client: Optional[Dict[str, Optional[str]]] = None,
) -> AuditLog:
    """
    Stage an audit entry on an open session. The caller commits.

    The username is copied onto the row so entries outlive the user.
    """
    client = client or {}
    entry = AuditLog(
        user_id=user.get('user_id'),
        username=user.get('username', 'unknown'),
        action=_enum_value(action),
        entity_type=_enum_value(entity_type),
        entity_id=entity_id,
        entity_name=entity_name,
        details=json.dumps(details, default=str) if details else None,
        ip_address=client.get('ip_address'),
        user_agent=client.get('user_agent'),
        created_at=datetime.now(timezone.utc),
    )
    session.add(entry)
    return entry


def record_action(
    db_manager: DatabaseManager,
    user: Dict[str, Any],
    action: Union[AuditAction, str],
    entity_type: Union[AuditEntityType, str],
    entity_id: Optional[str] = None,
    entity_name: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    connection: Optional[HTTPConnection] = None,
) -> None:
    """
    Record one user action in its own transaction.

    Audit write failures are logged and do not fail the operation that was
    already performed against the engine.

    Args:
        db_manager: Metadata store
        user: Authenticated user context (user_id, username)
        action: Action performed
        entity_type: Type of entity acted upon
        entity_id: ID of the entity (optional)
        entity_name: Name of the entity (optional)
        details: Additional context (optional)
        connection: Request or WebSocket for client IP / user agent (optional)
    """
    try:
        with db_manager.get_session() as session:
            entry = add_audit_entry(session, user, action, entity_type, entity_id=entity_id,
                                    entity_name=entity_name, details=details,
                                    client=get_client_info(connection))
            session.commit()
            target = f"{entry.entity_type}:{entity_id}" if entity_id else entry.entity_type
            logger.debug(f"Audit: {entry.username} {entry.action} {target}")
    except Exception as e:
        logger.error(f"Failed to record audit event {action} on {entity_type}:{entity_id}: {e}", exc_info=True)
