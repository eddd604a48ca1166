"""
API Key Authentication for Stardeck

Resolves the bearer token presented by a caller to the user it was issued
to. Keys are issued by the identity subsystem; Stardeck only stores and
compares their SHA256 hashes.

REST requests send ``Authorization: Bearer <key>``. Browsers cannot set
headers on websocket upgrades, so streaming endpoints take ``?token=<key>``.

SECURITY FEATURES:
- SHA256 key hashing (never stores plaintext)
- Revocation and optional expiration
- Usage tracking
"""

import hashlib
import logging
import secrets
from datetime import datetime, timezone
from typing import Optional, Tuple

from fastapi import Depends, Header, HTTPException, Request, WebSocket

from database import ApiKey, DatabaseManager, User
from services import Services, get_services

logger = logging.getLogger(__name__)

KEY_PREFIX = "stardeck_"

# Websocket close code for failed authentication (policy violation)
WS_POLICY_VIOLATION = 1008


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode()).hexdigest()


def generate_api_key() -> Tuple[str, str, str]:
    """
    Generate cryptographically secure API key.

    Format: stardeck_<base64url>

    Returns:
        Tuple of (plaintext_key, key_hash, key_prefix)
    """
    plaintext_key = f"{KEY_PREFIX}{secrets.token_urlsafe(32)}"
    return plaintext_key, hash_api_key(plaintext_key), plaintext_key[:20]


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _rejection_reason(record: Optional[ApiKey], now: datetime) -> Optional[str]:
    if record is None:
        return "unknown key"
    if record.revoked_at is not None:
        return f"revoked key '{record.name}'"
    if record.expires_at is not None and now > _as_utc(record.expires_at):
        return f"expired key '{record.name}'"
    return None


def validate_api_key(api_key: str, client_ip: Optional[str], db: DatabaseManager) -> Optional[dict]:
    """
    Resolve a plaintext key to the user it was issued to.

    A successful lookup stamps ``last_used_at`` on the key.

    Args:
        api_key: Plaintext API key
        client_ip: Caller address, only used for logging
        db: Database manager

    Returns:
        Dict with user_id, username, api_key_id and auth_type, or None if
        the key is malformed, unknown, revoked or expired
    """
    if not api_key or not api_key.startswith(KEY_PREFIX):
        logger.warning(f"Malformed API key from {client_ip}")
        return None

    now = datetime.now(timezone.utc)
    with db.get_session() as session:
        record = session.query(ApiKey).filter(ApiKey.key_hash == hash_api_key(api_key)).first()
        reason = _rejection_reason(record, now)
        if reason:
            logger.warning(f"Rejected {reason} from {client_ip}")
            return None

        owner = session.get(User, record.user_id)
        if owner is None:
            logger.error(f"API key {record.id} belongs to missing user {record.user_id}")
            return None

        record.last_used_at = now
        session.commit()
        logger.debug(f"Authenticated {owner.username} with key '{record.name}'")
        return {
            "user_id": owner.id,
            "username": owner.username,
            "api_key_id": record.id,
            "auth_type": "api_key",
        }


def _client_ip(connection) -> Optional[str]:
    return connection.client.host if connection.client else None


async def get_current_user(
    request: Request,
    authorization: str = Header(None),
    services: Services = Depends(get_services),
) -> dict:
    """
    Authentication dependency for REST endpoints.

    Raises:
        HTTPException: 401 if no valid bearer key was presented
    """
    client_ip = _client_ip(request)
    if authorization:
        if authorization.startswith("Bearer "):
            user = validate_api_key(authorization[7:], client_ip, services.db)
            if user:
                return user
        else:
            logger.warning(f"Invalid Authorization header format from {client_ip}")

    logger.warning(f"Authentication failed from {client_ip}")
    raise HTTPException(status_code=401, detail="Not authenticated - provide an API key")


async def authenticate_websocket(websocket: WebSocket, services: Services) -> Optional[dict]:
    """
    Authenticate a websocket from its ``token`` query parameter.

    Must be called after accept(). On failure the socket is closed with a
    policy-violation code and None is returned.
    """
    token = websocket.query_params.get("token")
    user = validate_api_key(token, _client_ip(websocket), services.db) if token else None
    if user is None:
        logger.warning(f"Websocket authentication failed from {_client_ip(websocket)}")
        await websocket.close(code=WS_POLICY_VIOLATION, reason="Not authenticated")
        return None
    return user
