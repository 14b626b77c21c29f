"""Relay state: workspace rooms, live sockets, and the in-memory backlog.

A socket authenticates once, then joins and leaves workspace rooms at will.
Events published to a room fan out to every socket currently in it.

Key features:
    - Any number of workspace rooms with isolated state
    - Concurrent broadcasting with asyncio.gather()
    - Automatic dead connection cleanup
    - Bounded per-room message backlog (oldest dropped first)
    - Paginated history with a timestamp cursor

Thread Safety:
    Designed for a single event loop. It is NOT thread-safe.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from fastapi import WebSocket

from teamchat.schemas import Event, Identity, Message

logger = logging.getLogger(__name__)

# Default page size for message history pagination
DEFAULT_PAGE_SIZE = 50

# Maximum page size to prevent abuse
MAX_PAGE_SIZE = 100

# Backlog bound per workspace room
DEFAULT_MAX_MESSAGES = 5000


def make_frame(event: Event, data: Any) -> dict:
    """Build a JSON-serializable transport frame."""
    return {"event": event.value, "data": data}


class RelayManager:
    """Tracks authenticated sockets, their room memberships and room backlogs.

    Note:
        A module-level instance (``relay``) is shared by all WebSocket
        handlers so every socket sees the same rooms.
    """

    def __init__(self, max_messages_per_room: int = DEFAULT_MAX_MESSAGES) -> None:
        self.max_messages_per_room = max_messages_per_room

        # workspace_id -> list of sockets currently in the room
        self.room_connections: Dict[str, List[WebSocket]] = {}

        # socket -> set of workspace_ids it joined
        self.socket_rooms: Dict[WebSocket, Set[str]] = {}

        # socket -> authenticated identity
        self.identities: Dict[WebSocket, Identity] = {}

        # workspace_id -> messages, oldest first
        self.message_history: Dict[str, List[Message]] = {}

    # =========================================================================
    # Sockets and rooms
    # =========================================================================

    def register(self, websocket: WebSocket, identity: Identity) -> None:
        """Record an authenticated socket."""
        self.identities[websocket] = identity
        self.socket_rooms.setdefault(websocket, set())

    def get_identity(self, websocket: WebSocket) -> Optional[Identity]:
        return self.identities.get(websocket)

    def join(self, websocket: WebSocket, workspace_id: str) -> bool:
        """Add a socket to a workspace room.

        Returns:
            True if the socket was added, False if it was already a member.
        """
        connections = self.room_connections.setdefault(workspace_id, [])
        if websocket in connections:
            return False
        connections.append(websocket)
        self.socket_rooms.setdefault(websocket, set()).add(workspace_id)
        return True

    def leave(self, websocket: WebSocket, workspace_id: str) -> bool:
        """Remove a socket from a workspace room.

        Returns:
            True if the socket was a member, False otherwise.
        """
        connections = self.room_connections.get(workspace_id)
        if not connections or websocket not in connections:
            return False
        connections.remove(websocket)
        if not connections:
            del self.room_connections[workspace_id]
        self.socket_rooms.get(websocket, set()).discard(workspace_id)
        return True

    def is_member(self, websocket: WebSocket, workspace_id: str) -> bool:
        return websocket in self.room_connections.get(workspace_id, [])

    def disconnect(self, websocket: WebSocket) -> Set[str]:
        """Forget a socket and remove it from every room it joined.

        Returns:
            The workspace_ids the socket was still a member of.
        """
        rooms = set(self.socket_rooms.pop(websocket, set()))
        for workspace_id in rooms:
            connections = self.room_connections.get(workspace_id)
            if connections and websocket in connections:
                connections.remove(websocket)
                if not connections:
                    del self.room_connections[workspace_id]
        self.identities.pop(websocket, None)
        return rooms

    def get_room_size(self, workspace_id: str) -> int:
        """Get the number of sockets in a room."""
        return len(self.room_connections.get(workspace_id, []))

    # =========================================================================
    # Backlog
    # =========================================================================

    def add_message(self, workspace_id: str, message: Message) -> Message:
        """Append a message to the room backlog, dropping the oldest past the bound."""
        history = self.message_history.setdefault(workspace_id, [])
        history.append(message)
        overflow = len(history) - self.max_messages_per_room
        if overflow > 0:
            del history[:overflow]
        return message

    def get_history(self, workspace_id: str) -> List[Message]:
        return self.message_history.get(workspace_id, [])

    def get_paginated_history(
        self,
        workspace_id: str,
        before: Optional[datetime] = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> List[Message]:
        """Get a page of history, oldest first.

        Args:
            workspace_id: The workspace room.
            before: Cursor. Only messages strictly older than this are returned.
                    If None, returns the most recent messages.
            limit: Maximum number of messages to return.

        Returns:
            Up to ``limit`` messages immediately preceding the cursor.
        """
        limit = min(limit, MAX_PAGE_SIZE)
        messages = self.message_history.get(workspace_id, [])

        if before is not None:
            messages = [msg for msg in messages if msg.timestamp < before]

        return messages[-limit:] if messages else []

    def clear_room(self, workspace_id: str) -> None:
        """Drop a room's sockets and backlog."""
        for websocket in self.room_connections.pop(workspace_id, []):
            self.socket_rooms.get(websocket, set()).discard(workspace_id)
        self.message_history.pop(workspace_id, None)

    # =========================================================================
    # Broadcasting
    # =========================================================================

    async def broadcast(self, frame: dict, workspace_id: str) -> None:
        """Send a frame to every socket in a room concurrently.

        Sockets that fail to receive are removed from the room.
        """
        connections = list(self.room_connections.get(workspace_id, []))
        if not connections:
            return
        await self._send_all(frame, workspace_id, connections)

    async def broadcast_except(
        self, frame: dict, workspace_id: str, exclude_websocket: WebSocket
    ) -> None:
        """Send a frame to every socket in a room except one.

        Used for typing indicators, which the sender must not receive.
        """
        connections = [
            conn for conn in self.room_connections.get(workspace_id, [])
            if conn != exclude_websocket
        ]
        if not connections:
            return
        await self._send_all(frame, workspace_id, connections)

    async def _send_all(
        self, frame: dict, workspace_id: str, connections: List[WebSocket]
    ) -> None:
        results = await asyncio.gather(
            *[self._safe_send(conn, frame) for conn in connections],
            return_exceptions=True
        )
        failed_connections = [
            conn for conn, success in zip(connections, results)
            if success is not True
        ]
        self._cleanup_connections(workspace_id, failed_connections)

    async def _safe_send(self, connection: WebSocket, frame: dict) -> bool:
        """Send a frame, reporting failure instead of raising."""
        try:
            await connection.send_json(frame)
            return True
        except Exception as e:
            logger.debug(f"[Relay] Failed to send to connection: {e}")
            return False

    def _cleanup_connections(
        self, workspace_id: str, failed_connections: List[WebSocket]
    ) -> None:
        for conn in failed_connections:
            if self.leave(conn, workspace_id):
                logger.debug(f"[Relay] Removed dead connection from room {workspace_id}")


# Global instance shared by all relay handlers
relay = RelayManager()
