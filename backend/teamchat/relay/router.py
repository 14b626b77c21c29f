"""Relay router providing the event WebSocket and the history endpoint.

This module provides:
    - WebSocket /ws: authenticated event stream for workspace rooms
    - GET /workspaces/{workspace_id}/messages: paginated message backlog

Protocol Flow:
    1. Client connects with ``Authorization: Bearer <token>``
       (or ``?token=<token>``).
       → Invalid token: socket closed with code 4401
       → Server sends: {event: "connected", data: {userId, userName}}
    2. Client sends: {event: "join-workspace", data: "<workspaceId>"}
    3. Client sends: {event: "send-message", data: {workspaceId, message, type}}
       → Server broadcasts to the whole room, sender included:
         {event: "new-message", data: Message}
    4. Client sends: {event: "typing-start", data: {workspaceId}}
       → Server broadcasts to the room except the sender:
         {event: "user-typing", data: {userId, userName}}
    5. Client sends: {event: "typing-stop", data: {workspaceId}}
       → {event: "user-stopped-typing", data: {userId}}
    6. Client sends: {event: "leave-workspace", data: "<workspaceId>"}
    7. On leave or disconnect the rest of the room receives
       "user-stopped-typing" for the departing user.

Rejected frames are answered with {event: "message-error", data: {error}}
and the socket stays open.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import ValidationError

from teamchat.auth import extract_bearer, verify_token
from teamchat.errors import AuthError
from teamchat.schemas import (
    MAX_CONTENT_LENGTH,
    Event,
    HistoryResponse,
    Identity,
    Message,
    SendMessagePayload,
)

from .manager import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, make_frame, relay

logger = logging.getLogger(__name__)

router = APIRouter(tags=["relay"])

# Close code sent when the bearer token is rejected
AUTH_FAILED_CLOSE_CODE = 4401

bearer_scheme = HTTPBearer(auto_error=False)


def require_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Identity:
    """FastAPI dependency resolving the caller's identity from the bearer token."""
    token = credentials.credentials if credentials else None
    try:
        return verify_token(token)
    except AuthError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.message,
            headers={"WWW-Authenticate": "Bearer"},
        )


@router.get("/workspaces/{workspace_id}/messages", response_model=HistoryResponse)
async def get_workspace_messages(
    workspace_id: str,
    before: Optional[datetime] = Query(None, description="Cursor: only messages older than this"),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE, description="Number of messages to return"),
    identity: Identity = Depends(require_identity),
) -> HistoryResponse:
    """Get the message backlog of a workspace room, oldest first.

    Clients call this once on room entry. Older pages are fetched by passing
    the timestamp of the oldest message held as ``before``.

    Example:
        GET /workspaces/abc123/messages?limit=50
        GET /workspaces/abc123/messages?before=2024-05-01T10:00:00Z&limit=50
    """
    if before is not None and before.tzinfo is None:
        before = before.replace(tzinfo=timezone.utc)
    messages = relay.get_paginated_history(workspace_id, before, limit)

    has_more = False
    if messages:
        older = relay.get_paginated_history(workspace_id, messages[0].timestamp, 1)
        has_more = len(older) > 0

    logger.debug(
        "[Relay] History for %s requested by %s: %d messages", workspace_id, identity.userId, len(messages)
    )
    return HistoryResponse(messages=messages, hasMore=has_more)


def _workspace_id_from(data: Any) -> Optional[str]:
    """Accept both the bare id and the ``{workspaceId}`` object form."""
    if isinstance(data, str):
        return data or None
    if isinstance(data, dict):
        value = data.get("workspaceId")
        return str(value) if value else None
    return None


async def _send_error(websocket: WebSocket, error: str) -> None:
    await websocket.send_json(make_frame(Event.MESSAGE_ERROR, {"error": error}))


async def _announce_stopped_typing(websocket: WebSocket, identity: Identity, workspace_id: str) -> None:
    await relay.broadcast_except(
        make_frame(Event.USER_STOPPED_TYPING, {"userId": identity.userId}),
        workspace_id,
        exclude_websocket=websocket,
    )


async def _drop_socket(websocket: WebSocket, identity: Identity) -> None:
    """Forget a closed socket and tell its rooms the user stopped typing."""
    rooms = relay.disconnect(websocket)
    logger.info(f"[Relay] User {identity.userName or identity.userId} disconnected")
    for workspace_id in rooms:
        await _announce_stopped_typing(websocket, identity, workspace_id)


@router.websocket("/ws")
async def relay_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="Bearer token fallback for clients that cannot set headers"),
) -> None:
    """WebSocket endpoint carrying all room events for one client.

    Args:
        websocket: The WebSocket connection.
        token: Optional bearer token when no Authorization header is sent.
    """
    await websocket.accept()

    try:
        identity = verify_token(extract_bearer(websocket.headers.get("authorization")) or token)
    except AuthError as e:
        logger.warning(f"[Relay] Rejected connection: {e.message}")
        await websocket.close(code=AUTH_FAILED_CLOSE_CODE, reason="Authentication error")
        return

    relay.register(websocket, identity)
    logger.info(f"[Relay] User {identity.userName or identity.userId} connected")

    try:
        await websocket.send_json(make_frame(Event.CONNECTED, identity.model_dump()))

        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
                event = frame["event"]
                data = frame.get("data")
            except (ValueError, KeyError, TypeError, AttributeError):
                await _send_error(websocket, "Invalid frame format")
                continue

            logger.debug("[Relay] %s sent: event=%s", identity.userId, event)

            # --- Room membership ---
            if event in (Event.JOIN_WORKSPACE.value, Event.LEAVE_WORKSPACE.value):
                workspace_id = _workspace_id_from(data)
                if not workspace_id:
                    await _send_error(websocket, "workspaceId is required")
                    continue
                if event == Event.JOIN_WORKSPACE.value:
                    relay.join(websocket, workspace_id)
                    logger.info(f"[Relay] User {identity.userId} joined workspace {workspace_id}")
                elif relay.leave(websocket, workspace_id):
                    logger.info(f"[Relay] User {identity.userId} left workspace {workspace_id}")
                    await _announce_stopped_typing(websocket, identity, workspace_id)
                continue

            # --- Chat message ---
            if event == Event.SEND_MESSAGE.value:
                try:
                    payload = SendMessagePayload.model_validate(data)
                except ValidationError:
                    await _send_error(websocket, "Invalid message format")
                    continue

                content = payload.message.strip()
                if not content:
                    await _send_error(websocket, "Message content is required")
                    continue
                if len(content) > MAX_CONTENT_LENGTH:
                    await _send_error(
                        websocket, f"Message content cannot exceed {MAX_CONTENT_LENGTH} characters"
                    )
                    continue
                if not relay.is_member(websocket, payload.workspaceId):
                    await _send_error(websocket, "Join the workspace before sending messages")
                    continue

                message = relay.add_message(payload.workspaceId, Message(
                    workspaceId=payload.workspaceId,
                    senderId=identity.userId,
                    senderName=identity.userName,
                    content=content,
                    type=payload.type,
                ))
                await relay.broadcast(
                    make_frame(Event.NEW_MESSAGE, message.model_dump(mode="json")),
                    payload.workspaceId,
                )
                continue

            # --- Typing indicators ---
            if event in (Event.TYPING_START.value, Event.TYPING_STOP.value):
                workspace_id = _workspace_id_from(data)
                if not workspace_id or not relay.is_member(websocket, workspace_id):
                    continue
                if event == Event.TYPING_START.value:
                    await relay.broadcast_except(
                        make_frame(Event.USER_TYPING, {
                            "userId": identity.userId,
                            "userName": identity.userName,
                        }),
                        workspace_id,
                        exclude_websocket=websocket,
                    )
                else:
                    await _announce_stopped_typing(websocket, identity, workspace_id)
                continue

            await _send_error(websocket, f"Unknown event: {event}")

    except WebSocketDisconnect:
        pass
    finally:
        await _drop_socket(websocket, identity)
