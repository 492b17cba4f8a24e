"""Message, read receipt and WebSocket route handlers."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, WebSocket, WebSocketDisconnect
from sqlalchemy.ext.asyncio import AsyncSession

from huddle.database.db import get_db_session
from huddle.database.models import MessageType
from huddle.services import message_service, read_receipt_service
from huddle.services.errors import ValidationError, NotFoundError
from huddle.services.websocket_manager import get_websocket_manager, WEBSOCKET_TIMEOUT_SECONDS
from huddle.api.auth_dependencies import get_current_user, require_user, require_coach, ROLE_COACH
from huddle.api.routes import limiter, MESSAGE_RATE_LIMIT
from huddle.models.schemas import (
    MessageCreate,
    MessageResponse,
    MessageListResponse,
    MarkReadRequest,
    MessageReadResponse,
    UnreadCountResponse,
    UnreadByPlayerResponse,
    MarkAllReadResponse,
)
from huddle.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/api/messages", response_model=MessageResponse)
@limiter.limit(MESSAGE_RATE_LIMIT)
async def create_message(
    request: Request,
    payload: MessageCreate,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """
    Send a message.

    Coaches may broadcast; anyone may send direct messages. Alert messages
    are only created by the alert engine.
    """
    try:
        if payload.type == MessageType.ALERT.value:
            raise HTTPException(status_code=403, detail="Alert messages are sent by the system")
        if payload.type == MessageType.BROADCAST.value and user["role"] != ROLE_COACH:
            raise HTTPException(status_code=403, detail="Only coaches can send broadcast messages")

        message = await message_service.send_message(
            session,
            sender_id=user["id"],
            type=payload.type,
            recipient_id=payload.recipient_id,
            content=payload.content,
            priority=payload.priority,
            metadata=payload.metadata,
            expires_at=payload.expires_at,
        )
        return message
    except HTTPException:
        raise
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error sending message: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Error sending message: {str(e)}")


@router.get("/api/messages", response_model=MessageListResponse)
async def get_messages(
    limit: int = 50,
    offset: int = 0,
    type: Optional[str] = None,
    priority: Optional[str] = None,
    status: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """
    Get the caller's visible messages (newest first) with pagination.

    Optional filters: type, priority, status, and a created_at range
    (since/until, inclusive).
    """
    try:
        now = utcnow()
        filters = {"type": type, "priority": priority, "status": status, "since": since, "until": until}
        messages = await message_service.list_messages_for_user(
            session, user["id"], now=now, limit=limit, offset=offset, **filters
        )
        total_count = await message_service.count_messages_for_user(
            session, user["id"], now=now, **filters
        )
        return {
            "messages": messages,
            "total_count": total_count,
            "has_more": offset + len(messages) < total_count,
        }
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error fetching messages: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Error fetching messages: {str(e)}")


@router.get("/api/messages/unread-count", response_model=UnreadCountResponse)
async def get_unread_count(
    user: dict = Depends(require_user), session: AsyncSession = Depends(get_db_session)
):
    """Get unread message count for the caller."""
    try:
        count = await read_receipt_service.get_unread_count(session, user["id"])
        return {"count": count}
    except Exception as e:
        logger.error(f"Error fetching unread count: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Error fetching unread count: {str(e)}")


@router.get("/api/messages/unread-by-player", response_model=UnreadByPlayerResponse)
async def get_unread_by_player(
    user: dict = Depends(require_coach), session: AsyncSession = Depends(get_db_session)
):
    """Get, per player, how many of the coach's direct messages are still unread."""
    try:
        counts = await read_receipt_service.get_unread_counts_by_player(session, user["id"])
        return {"counts": counts, "total": sum(counts.values())}
    except Exception as e:
        logger.error(f"Error fetching unread counts by player: {str(e)}")
        raise HTTPException(
            status_code=500, detail=f"Error fetching unread counts by player: {str(e)}"
        )


@router.put("/api/messages/mark-all-read", response_model=MarkAllReadResponse)
async def mark_all_messages_as_read(
    user: dict = Depends(require_user), session: AsyncSession = Depends(get_db_session)
):
    """Mark all of the caller's visible messages as read."""
    try:
        count = await read_receipt_service.mark_all_read(session, user["id"])
        return {"success": True, "count": count}
    except Exception as e:
        logger.error(f"Error marking all messages as read: {str(e)}")
        raise HTTPException(
            status_code=500, detail=f"Error marking all messages as read: {str(e)}"
        )


@router.get("/api/messages/{message_id}", response_model=MessageResponse)
async def get_message(
    message_id: int,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Get a single message visible to the caller."""
    try:
        return await message_service.get_message_for_user(session, message_id, user["id"])
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Error fetching message: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Error fetching message: {str(e)}")


@router.put("/api/messages/{message_id}/read", response_model=MessageReadResponse)
async def mark_message_as_read(
    message_id: int,
    payload: Optional[MarkReadRequest] = None,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Mark a single message as read. Repeating the call just refreshes read_at."""
    try:
        device_info = payload.device_info if payload else None
        # Only messages the caller can see may be marked read
        await message_service.get_message_for_user(session, message_id, user["id"])
        receipt = await read_receipt_service.mark_read(
            session, message_id, user["id"], device_info=device_info
        )
        return receipt
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error marking message as read: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Error marking message as read: {str(e)}")


@router.get("/api/messages/{message_id}/reads", response_model=List[MessageReadResponse])
async def get_message_reads(
    message_id: int,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """List read receipts for a message. Only its sender may see them."""
    try:
        message = await message_service.get_message(session, message_id)
        if message["sender_id"] != user["id"]:
            raise HTTPException(status_code=403, detail="Only the sender can view read receipts")
        return await read_receipt_service.get_read_receipts(session, message_id)
    except HTTPException:
        raise
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Error fetching read receipts: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Error fetching read receipts: {str(e)}")


@router.websocket("/api/ws/messages")
async def websocket_messages(websocket: WebSocket):
    """
    WebSocket endpoint for real-time message delivery.

    Identity comes from the gateway headers (X-User-Id, X-User-Role), same
    as the REST routes. Connections without a valid identity are closed
    with 1008.

    Events pushed to the client:
        {"type": "new_message", "message": {...}}
        {"type": "read_receipt", "receipt": {...}}
    """
    await websocket.accept()

    try:
        user = await get_current_user(
            websocket.headers.get("x-user-id"), websocket.headers.get("x-user-role")
        )
    except HTTPException as e:
        await websocket.close(code=1008, reason=str(e.detail))
        return
    user_id = user["id"]

    # Register connection
    manager = get_websocket_manager()
    await manager.connect(user_id, websocket)

    try:
        # Keep connection alive and handle ping/pong with timeout
        last_activity = utcnow()

        while True:
            try:
                data = await asyncio.wait_for(
                    websocket.receive_text(), timeout=WEBSOCKET_TIMEOUT_SECONDS
                )

                last_activity = utcnow()
                await manager.update_activity(websocket)

                # Client sends "ping", server responds "pong"
                if data == "ping":
                    await websocket.send_text("pong")
            except asyncio.TimeoutError:
                if utcnow() - last_activity > timedelta(seconds=WEBSOCKET_TIMEOUT_SECONDS):
                    logger.info(f"WebSocket timeout for user {user_id}, closing connection")
                    await websocket.close(code=1000, reason="Connection timeout")
                    break
                try:
                    await websocket.send_text("ping")
                except Exception:
                    # Connection is dead
                    break
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected for user {user_id}")
    except Exception as e:
        logger.error(f"WebSocket error for user {user_id}: {e}")
    finally:
        await manager.disconnect(user_id, websocket)
