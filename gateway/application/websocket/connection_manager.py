from typing import Any, Dict, Optional
from fastapi import WebSocket
import asyncio
from datetime import datetime, timezone
import structlog

from .schema.events import BaseEvent, ConnectionEvent, ErrorEvent

logger = structlog.get_logger(__name__)


class ConnectionManager:
    """Manages WebSocket connections and message routing"""

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}
        self.connection_metadata: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, connection_id: str, hostname: str, client_ip: Optional[str] = None):
        """Register an accepted WebSocket connection"""

        async with self._lock:
            self.active_connections[connection_id] = websocket
            now = datetime.now(timezone.utc)
            self.connection_metadata[connection_id] = {
                "hostname": hostname,
                "ip": client_ip,
                "connected_at": now,
                "last_activity": now
            }

        await self.send_event(connection_id, ConnectionEvent(status="connected", connection_id=connection_id))
        logger.info("WebSocket connected", connection_id=connection_id, hostname=hostname, ip=client_ip)

    async def disconnect(self, connection_id: str):
        """Forget a connection; the socket itself is closed by its endpoint"""

        async with self._lock:
            self.active_connections.pop(connection_id, None)
            metadata = self.connection_metadata.pop(connection_id, None)

        if metadata is not None:
            logger.info("WebSocket disconnected", connection_id=connection_id, hostname=metadata.get("hostname"))

    async def send_json(self, connection_id: str, data: Dict[str, Any]) -> bool:
        websocket = self.active_connections.get(connection_id)
        if websocket is None:
            logger.warning("Attempted to send to disconnected client", connection_id=connection_id)
            return False

        try:
            await websocket.send_json(data)
        except Exception as e:
            logger.error("Failed to send event", connection_id=connection_id, error=str(e))
            await self.disconnect(connection_id)
            return False

        metadata = self.connection_metadata.get(connection_id)
        if metadata is not None:
            metadata["last_activity"] = datetime.now(timezone.utc)
        return True

    async def send_event(self, connection_id: str, event: BaseEvent) -> bool:
        """Send an event to a specific connection"""

        return await self.send_json(connection_id, event.model_dump(mode="json", exclude_none=True))

    async def send_error(self, connection_id: str, message: str, session_id: Optional[str] = None):
        await self.send_event(connection_id, ErrorEvent(message=message, session_id=session_id))

    def list_clients(self):
        """Connected clients, for the admin surface"""
        return [
            {
                "connection_id": connection_id,
                "hostname": metadata.get("hostname"),
                "ip": metadata.get("ip"),
                "connected_at": metadata["connected_at"].isoformat()
            }
            for connection_id, metadata in self.connection_metadata.items()
        ]
