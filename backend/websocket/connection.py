"""
WebSocket helpers for Stardeck
JSON encoding and request handling shared by the streaming endpoints
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import WebSocket, WebSocketDisconnect


logger = logging.getLogger(__name__)


class DateTimeEncoder(json.JSONEncoder):
    """Custom JSON encoder for datetime objects"""
    def default(self, obj):
        if isinstance(obj, datetime):
            if obj.tzinfo is None:
                return obj.isoformat() + 'Z'
            return obj.isoformat()
        return super().default(obj)


async def send_json(websocket: WebSocket, message: Dict[str, Any]) -> bool:
    """
    Send one JSON message.

    Returns:
        False if the connection is gone
    """
    try:
        await websocket.send_text(json.dumps(message, cls=DateTimeEncoder))
        return True
    except Exception as e:
        logger.debug(f"Error sending websocket message: {e}")
        return False


async def receive_request(websocket: WebSocket) -> Optional[Dict[str, Any]]:
    """
    Read the single inbound message that starts an operation.

    Returns:
        Parsed JSON object, or None if the client disconnected or sent
        something that is not a JSON object (an error is sent back first)
    """
    try:
        raw = await websocket.receive_text()
    except WebSocketDisconnect:
        return None
    try:
        data = json.loads(raw) if raw.strip() else {}
    except json.JSONDecodeError:
        data = None
    if not isinstance(data, dict):
        await send_json(websocket, {"complete": True, "success": False, "step": "request",
                                    "error": "Request must be a JSON object"})
        try:
            await websocket.close()
        except RuntimeError:
            # Already closed by the client
            pass
        return None
    return data
