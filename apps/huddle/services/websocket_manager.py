"""
WebSocket connection manager for real-time message delivery.

Manages active WebSocket connections per user and pushes new messages,
read receipts and alert events to them.
"""

import asyncio
import json
import logging
from typing import Dict, Set, Optional
from datetime import datetime, timedelta
from fastapi import WebSocket
from huddle.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

# Timeout for WebSocket connections (30 seconds of inactivity)
WEBSOCKET_TIMEOUT_SECONDS = 30


class WebSocketManager:
    """Manages WebSocket connections for real-time messaging."""

    def __init__(self):
        """Initialize the WebSocket manager."""
        # Dictionary mapping user_id to set of active WebSocket connections
        self.active_connections: Dict[str, Set[WebSocket]] = {}
        # Dictionary mapping WebSocket to last activity timestamp
        self.connection_timestamps: Dict[WebSocket, datetime] = {}
        # Lock for safe access to connections dict
        self._lock = asyncio.Lock()

    async def connect(self, user_id: str, websocket: WebSocket):
        """
        Register a WebSocket connection for a user.

        Args:
            user_id: ID of the user
            websocket: WebSocket connection object
        """
        async with self._lock:
            if user_id not in self.active_connections:
                self.active_connections[user_id] = set()
            self.active_connections[user_id].add(websocket)
            self.connection_timestamps[websocket] = utcnow()
            logger.info(f"WebSocket connected for user {user_id} (total connections: {len(self.active_connections[user_id])})")

    async def disconnect(self, user_id: str, websocket: WebSocket):
        """
        Remove a WebSocket connection for a user.

        Args:
            user_id: ID of the user
            websocket: WebSocket connection object
        """
        async with self._lock:
            if user_id in self.active_connections:
                self.active_connections[user_id].discard(websocket)
                # Clean up empty sets
                if not self.active_connections[user_id]:
                    del self.active_connections[user_id]
            if websocket in self.connection_timestamps:
                del self.connection_timestamps[websocket]
            logger.info(f"WebSocket disconnected for user {user_id}")

    async def send_to_user(self, user_id: str, message: dict) -> bool:
        """
        Send a message to all active WebSocket connections for a user.

        Args:
            user_id: ID of the user
            message: Message dict to send (will be serialized to JSON)

        Returns:
            True if message was sent to at least one connection, False otherwise
        """
        async with self._lock:
            if user_id not in self.active_connections:
                return False

            connections = self.active_connections[user_id].copy()

        # Send to all connections (outside lock to avoid blocking)
        sent = False
        disconnected_connections = []
        message_json = json.dumps(message)

        for websocket in connections:
            try:
                async with self._lock:
                    self.connection_timestamps[websocket] = utcnow()

                await websocket.send_text(message_json)
                sent = True
            except Exception as e:
                logger.warning(f"Error sending WebSocket message to user {user_id}: {e}")
                disconnected_connections.append(websocket)

        if disconnected_connections:
            await self._drop_connections(user_id, disconnected_connections)

        return sent

    async def broadcast(self, message: dict, exclude_user_id: Optional[str] = None) -> int:
        """
        Send a message to every connected user.

        Args:
            message: Message dict to send (will be serialized to JSON)
            exclude_user_id: Optional user to skip (usually the sender)

        Returns:
            Number of users the message reached
        """
        async with self._lock:
            user_ids = [uid for uid in self.active_connections if uid != exclude_user_id]

        reached = 0
        for user_id in user_ids:
            if await self.send_to_user(user_id, message):
                reached += 1
        return reached

    async def _drop_connections(self, user_id: str, websockets: list):
        """Forget connections that failed to send."""
        async with self._lock:
            if user_id in self.active_connections:
                for ws in websockets:
                    self.active_connections[user_id].discard(ws)
                if not self.active_connections[user_id]:
                    del self.active_connections[user_id]
            for ws in websockets:
                self.connection_timestamps.pop(ws, None)

    async def get_connection_count(self, user_id: str) -> int:
        """
        Get the number of active connections for a user.

        Args:
            user_id: ID of the user

        Returns:
            Number of active connections
        """
        async with self._lock:
            if user_id not in self.active_connections:
                return 0
            return len(self.active_connections[user_id])

    async def update_activity(self, websocket: WebSocket):
        """
        Update the last activity timestamp for a WebSocket connection.
        Called when receiving ping or other messages from client.
        """
        async with self._lock:
            if websocket in self.connection_timestamps:
                self.connection_timestamps[websocket] = utcnow()

    async def cleanup_stale_connections(self):
        """
        Remove connections that haven't had activity within the timeout period.
        """
        timeout_threshold = utcnow() - timedelta(seconds=WEBSOCKET_TIMEOUT_SECONDS)

        stale = []
        async with self._lock:
            for user_id, conn_set in self.active_connections.items():
                for websocket in conn_set:
                    last_activity = self.connection_timestamps.get(websocket)
                    if last_activity is None or last_activity < timeout_threshold:
                        stale.append((user_id, websocket))

        for user_id, websocket in stale:
            try:
                await self.disconnect(user_id, websocket)
                logger.info(f"Cleaned up stale WebSocket connection for user {user_id}")
            except Exception as e:
                logger.warning(f"Error cleaning up stale connection: {e}")


# Global WebSocket manager instance
_websocket_manager: Optional[WebSocketManager] = None


def get_websocket_manager() -> WebSocketManager:
    """
    Get the global WebSocket manager instance.

    Returns:
        WebSocketManager instance
    """
    global _websocket_manager
    if _websocket_manager is None:
        _websocket_manager = WebSocketManager()
    return _websocket_manager
