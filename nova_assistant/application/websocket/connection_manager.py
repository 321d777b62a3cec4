from typing import Dict, Set, Optional
from fastapi import WebSocket
import asyncio
from datetime import datetime
import structlog

from .schema.events import BaseEvent, ConnectionEvent, ErrorEvent

logger = structlog.get_logger(__name__)

STALE_AFTER_SECONDS = 300


class ConnectionManager:
    """Manages WebSocket connections and message routing"""

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}
        self.session_metadata: Dict[str, Dict] = {}
        self._send_locks: Dict[str, asyncio.Lock] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, session_id: str):
        """Accept a new WebSocket connection"""
        await websocket.accept()

        async with self._lock:
            self.active_connections[session_id] = websocket
            self._send_locks[session_id] = asyncio.Lock()
            self.session_metadata[session_id] = {
                "connected_at": datetime.utcnow(),
                "last_activity": datetime.utcnow()
            }

        await self.send_event(
            session_id,
            ConnectionEvent(
                status="connected",
                session_id=session_id
            )
        )

        logger.info("WebSocket connected", session_id=session_id)

    async def disconnect(self, session_id: str):
        """Disconnect a WebSocket connection"""
        async with self._lock:
            ws = self.active_connections.pop(session_id, None)
            self.session_metadata.pop(session_id, None)
            self._send_locks.pop(session_id, None)

        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug("Error closing WebSocket", session_id=session_id, error=str(e))

            logger.info("WebSocket disconnected", session_id=session_id)

    async def send_event(self, session_id: str, event: BaseEvent) -> bool:
        """Send an event to a specific session; sends to one socket never interleave"""
        websocket = self.active_connections.get(session_id)
        send_lock = self._send_locks.get(session_id)
        if websocket is None or send_lock is None:
            logger.warning("Attempted to send to disconnected session", session_id=session_id)
            return False

        if event.session_id is None:
            event.session_id = session_id

        try:
            async with send_lock:
                await websocket.send_json(event.model_dump(mode="json"))

            if session_id in self.session_metadata:
                self.session_metadata[session_id]["last_activity"] = datetime.utcnow()

            return True

        except Exception as e:
            logger.error("Failed to send event", session_id=session_id, error=str(e))
            await self.disconnect(session_id)
            return False

    async def send_error(self, session_id: str, error_message: str, error_code: Optional[str] = None):
        """Send an error event to a session"""
        error_event = ErrorEvent(
            payload={"message": error_message},
            error_code=error_code,
            session_id=session_id
        )
        await self.send_event(session_id, error_event)

    def touch(self, session_id: str):
        """Record inbound activity"""
        if session_id in self.session_metadata:
            self.session_metadata[session_id]["last_activity"] = datetime.utcnow()

    def get_active_sessions(self) -> Set[str]:
        return set(self.active_connections.keys())

    async def health_check(self):
        """Periodic health check to clean up stale connections"""
        while True:
            try:
                current_time = datetime.utcnow()
                stale_sessions = [
                    session_id
                    for session_id, metadata in list(self.session_metadata.items())
                    if (current_time - metadata["last_activity"]).total_seconds() > STALE_AFTER_SECONDS
                ]

                for session_id in stale_sessions:
                    logger.warning("Disconnecting stale session", session_id=session_id)
                    await self.disconnect(session_id)

            except Exception as e:
                logger.error("Health check error", error=str(e))

            await asyncio.sleep(60)
