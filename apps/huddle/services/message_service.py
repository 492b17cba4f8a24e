"""
Message service: creation and retrieval of coach/player messages.

Enforces the type/recipient invariant at creation time (broadcasts have no
recipient, direct messages have exactly one) and computes which messages are
visible to a user. Authoritative read state lives in message_reads; see
read_receipt_service.
"""

from typing import List, Dict, Optional
from datetime import datetime
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, and_, or_
from huddle.database.models import Message, MessageRead, MessageType, MessagePriority, MessageStatus
from huddle.services.errors import ValidationError, NotFoundError
from huddle.services.websocket_manager import get_websocket_manager
from huddle.utils.constants import MAX_CONTENT_LENGTH
from huddle.utils.datetime_utils import utcnow, ensure_utc, isoformat_or_none
import logging

logger = logging.getLogger(__name__)

MESSAGE_TYPES = {t.value for t in MessageType}
MESSAGE_PRIORITIES = {p.value for p in MessagePriority}


def message_to_dict(message: Message, include_read_state: bool = False, read_at: Optional[datetime] = None) -> Dict:
    """Serialize a Message row to an API dict."""
    message_dict = {
        "id": message.id,
        "type": message.type,
        "sender_id": message.sender_id,
        "recipient_id": message.recipient_id,
        "content": message.content,
        "priority": message.priority,
        "metadata": message.message_metadata or {},
        "status": message.status,
        "expires_at": isoformat_or_none(message.expires_at),
        "created_at": isoformat_or_none(message.created_at),
        "updated_at": isoformat_or_none(message.updated_at),
    }
    if include_read_state:
        message_dict["is_read"] = read_at is not None
        message_dict["read_at"] = isoformat_or_none(read_at)
    return message_dict


def visible_to_user(user_id: str, now: datetime):
    """
    SQL condition for messages a user can see at ``now``.

    A message is visible when it is addressed to the user or is a broadcast,
    and it has not expired (expires_at <= now counts as expired).
    """
    return and_(
        or_(Message.recipient_id == user_id, Message.type == MessageType.BROADCAST.value),
        or_(Message.expires_at.is_(None), Message.expires_at > now),
    )


def not_expired(now: datetime):
    """SQL condition for messages that have not expired at ``now``."""
    return or_(Message.expires_at.is_(None), Message.expires_at > now)


def message_filters(
    type: Optional[str] = None,
    priority: Optional[str] = None,
    status: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
) -> List:
    """
    Build optional listing filters, ANDed with visibility by the callers.

    since/until bound created_at inclusively.

    Raises:
        ValidationError: If an enum filter has an unknown value or since > until
    """
    conditions = []
    for field, value, enum_cls, column in (
        ("type", type, MessageType, Message.type),
        ("priority", priority, MessagePriority, Message.priority),
        ("status", status, MessageStatus, Message.status),
    ):
        if value is None:
            continue
        allowed = [member.value for member in enum_cls]
        if value not in allowed:
            raise ValidationError(field, f"{field} must be one of {allowed}")
        conditions.append(column == value)

    since = ensure_utc(since)
    until = ensure_utc(until)
    if since is not None and until is not None and since > until:
        raise ValidationError("since", "since must be before until")
    if since is not None:
        conditions.append(Message.created_at >= since)
    if until is not None:
        conditions.append(Message.created_at <= until)
    return conditions


def validate_message(
    sender_id: Optional[str],
    type: Optional[str],
    recipient_id: Optional[str],
    content: Optional[str],
    priority: Optional[str],
    metadata: Optional[Dict],
    expires_at: Optional[datetime],
    now: datetime,
) -> str:
    """
    Check a new message against the message invariants.

    Returns:
        The trimmed content

    Raises:
        ValidationError: Naming the first violated field
    """
    if not sender_id:
        raise ValidationError("sender_id", "sender_id is required")
    if type not in MESSAGE_TYPES:
        raise ValidationError("type", f"type must be one of {sorted(MESSAGE_TYPES)}")
    if type == MessageType.DIRECT.value and not recipient_id:
        raise ValidationError("recipient_id", "recipient_id is required for direct messages")
    if type == MessageType.BROADCAST.value and recipient_id is not None:
        raise ValidationError("recipient_id", "recipient_id must be empty for broadcast messages")

    trimmed = (content or "").strip()
    if not trimmed:
        raise ValidationError("content", "content is required")
    max_length = MAX_CONTENT_LENGTH[type]
    if len(trimmed) > max_length:
        raise ValidationError("content", f"content too long (max {max_length} characters)")

    if priority not in MESSAGE_PRIORITIES:
        raise ValidationError("priority", f"priority must be one of {sorted(MESSAGE_PRIORITIES)}")
    if metadata is not None and not isinstance(metadata, dict):
        raise ValidationError("metadata", "metadata must be an object")
    if expires_at is not None and ensure_utc(expires_at) <= now:
        raise ValidationError("expires_at", "expires_at must be in the future")

    return trimmed


async def send_message(
    session: AsyncSession,
    sender_id: str,
    type: str,
    recipient_id: Optional[str],
    content: str,
    priority: str = MessagePriority.NORMAL.value,
    metadata: Optional[Dict] = None,
    expires_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> Dict:
    """
    Create a message.

    Args:
        session: Database session
        sender_id: ID of the sending user ("system" for alert messages)
        type: MessageType enum value
        recipient_id: Recipient user ID (required for direct, must be None for broadcast)
        content: Message text (trimmed before storing)
        priority: MessagePriority enum value (default: normal)
        metadata: Optional JSON metadata
        expires_at: Optional expiry; expired messages stay stored but are hidden
        now: Creation timestamp (default: current UTC time)

    Returns:
        Dict containing the created message data

    Raises:
        ValidationError: If the message violates an invariant
    """
    now = ensure_utc(now) if now is not None else utcnow()
    trimmed = validate_message(
        sender_id, type, recipient_id, content, priority, metadata, expires_at, now
    )

    message = Message(
        type=type,
        sender_id=sender_id,
        recipient_id=recipient_id,
        content=trimmed,
        priority=priority,
        message_metadata=metadata or {},
        status=MessageStatus.SENT.value,
        expires_at=ensure_utc(expires_at),
        created_at=now,
        updated_at=now,
    )

    session.add(message)
    await session.flush()
    await session.refresh(message)

    message_dict = message_to_dict(message)

    # Push via WebSocket (non-blocking - errors won't fail the send)
    try:
        manager = get_websocket_manager()
        event = {"type": "new_message", "message": message_dict}
        if type == MessageType.BROADCAST.value:
            await manager.broadcast(event, exclude_user_id=sender_id)
        elif await manager.send_to_user(recipient_id, event):
            message.status = MessageStatus.DELIVERED.value
            await session.flush()
            message_dict["status"] = message.status
    except Exception as e:
        logger.warning(f"Failed to push message {message.id} via WebSocket: {e}")

    return message_dict


async def get_message(session: AsyncSession, message_id: int) -> Dict:
    """
    Fetch a single message.

    Raises:
        NotFoundError: If the message does not exist
    """
    message = await session.get(Message, message_id)
    if message is None:
        raise NotFoundError("Message", message_id)
    return message_to_dict(message)


async def list_messages_for_user(
    session: AsyncSession,
    user_id: str,
    now: Optional[datetime] = None,
    limit: Optional[int] = None,
    offset: int = 0,
    **filters,
) -> List[Dict]:
    """
    List the messages visible to a user, most recent first.

    Includes direct and alert messages addressed to the user plus all
    broadcasts, excluding expired ones. Ties on created_at keep insertion
    order. Each entry carries the user's own read state.

    Args:
        session: Database session
        user_id: ID of the user
        now: Reference time for expiry (default: current UTC time)
        limit: Optional maximum number of messages
        offset: Number of messages to skip
        **filters: Optional type, priority, status, since, until (see message_filters)

    Returns:
        List of message dicts with is_read/read_at

    Raises:
        ValidationError: If a filter value is invalid
    """
    now = ensure_utc(now) if now is not None else utcnow()
    conditions = message_filters(**filters)

    query = (
        select(Message, MessageRead.read_at)
        .outerjoin(
            MessageRead,
            and_(MessageRead.message_id == Message.id, MessageRead.user_id == user_id),
        )
        .where(and_(visible_to_user(user_id, now), *conditions))
        .order_by(Message.created_at.desc(), Message.id.asc())
        .offset(offset)
    )
    if limit is not None:
        query = query.limit(limit)

    result = await session.execute(query)
    return [
        message_to_dict(message, include_read_state=True, read_at=read_at)
        for message, read_at in result.all()
    ]


async def get_message_for_user(
    session: AsyncSession,
    message_id: int,
    user_id: str,
    now: Optional[datetime] = None,
) -> Dict:
    """
    Fetch a message as seen by a user, with the user's read state.

    Senders can always see their own messages; everyone else only sees
    messages visible to them (addressed to them or broadcast, not expired).

    Raises:
        NotFoundError: If the message does not exist or is not visible to the user
    """
    now = ensure_utc(now) if now is not None else utcnow()

    result = await session.execute(
        select(Message, MessageRead.read_at)
        .outerjoin(
            MessageRead,
            and_(MessageRead.message_id == Message.id, MessageRead.user_id == user_id),
        )
        .where(
            and_(
                Message.id == message_id,
                or_(Message.sender_id == user_id, visible_to_user(user_id, now)),
            )
        )
    )
    row = result.first()
    if row is None:
        raise NotFoundError("Message", message_id)
    message, read_at = row
    return message_to_dict(message, include_read_state=True, read_at=read_at)


async def count_messages_for_user(
    session: AsyncSession, user_id: str, now: Optional[datetime] = None, **filters
) -> int:
    """Count the messages visible to a user matching the same filters as the listing."""
    now = ensure_utc(now) if now is not None else utcnow()
    conditions = message_filters(**filters)
    result = await session.execute(
        select(func.count())
        .select_from(Message)
        .where(and_(visible_to_user(user_id, now), *conditions))
    )
    return result.scalar_one() or 0
