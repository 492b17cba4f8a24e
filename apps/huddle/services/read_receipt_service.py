"""
Read receipt service: idempotent per-user read tracking and unread counts.

A read receipt is one message_reads row per (message, user). Writes are a
single INSERT ... ON CONFLICT DO UPDATE so concurrent reads of the same
message from several devices can't race each other.
"""

from typing import List, Dict, Optional
from datetime import datetime
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, func, and_
from huddle.database.db import get_insert
from huddle.database.models import Message, MessageRead, MessageType, MessageStatus
from huddle.services.errors import ValidationError, NotFoundError
from huddle.services.message_service import visible_to_user, not_expired
from huddle.services.websocket_manager import get_websocket_manager
from huddle.utils.datetime_utils import utcnow, ensure_utc, isoformat_or_none
import logging

logger = logging.getLogger(__name__)


def read_receipt_to_dict(receipt: MessageRead) -> Dict:
    """Serialize a MessageRead row to an API dict."""
    return {
        "message_id": receipt.message_id,
        "user_id": receipt.user_id,
        "read_at": isoformat_or_none(receipt.read_at),
        "device_info": receipt.device_info or {},
    }


async def _upsert_receipts(session: AsyncSession, rows: List[Dict]) -> None:
    """Insert read receipts, overwriting read_at/device_info on existing pairs."""
    insert = get_insert(session)
    stmt = insert(MessageRead).values(rows)
    stmt = stmt.on_conflict_do_update(
        index_elements=["message_id", "user_id"],
        set_={
            "read_at": stmt.excluded.read_at,
            "device_info": stmt.excluded.device_info,
        },
    )
    await session.execute(stmt)


async def mark_read(
    session: AsyncSession,
    message_id: int,
    user_id: str,
    device_info: Optional[Dict] = None,
    now: Optional[datetime] = None,
) -> Dict:
    """
    Record that a user read a message.

    Creates the receipt on first read; later reads by the same user overwrite
    read_at and device_info. Calling this repeatedly is safe and never errors.

    Args:
        session: Database session
        message_id: ID of the message
        user_id: ID of the reading user
        device_info: Optional device metadata (JSON object)
        now: Read timestamp (default: current UTC time)

    Returns:
        Dict containing the read receipt

    Raises:
        NotFoundError: If the message does not exist
        ValidationError: If device_info is not an object
    """
    if not user_id:
        raise ValidationError("user_id", "user_id is required")
    if device_info is not None and not isinstance(device_info, dict):
        raise ValidationError("device_info", "device_info must be an object")
    now = ensure_utc(now) if now is not None else utcnow()

    message = await session.get(Message, message_id)
    if message is None:
        raise NotFoundError("Message", message_id)

    await _upsert_receipts(
        session,
        [{"message_id": message_id, "user_id": user_id, "read_at": now, "device_info": device_info or {}}],
    )

    # Status is a display hint; only a direct message read by its recipient flips it
    if message.type == MessageType.DIRECT.value and message.recipient_id == user_id:
        await session.execute(
            update(Message)
            .where(and_(Message.id == message_id, Message.status != MessageStatus.READ.value))
            .values(status=MessageStatus.READ.value, updated_at=now)
        )

    result = await session.execute(
        select(MessageRead)
        .where(and_(MessageRead.message_id == message_id, MessageRead.user_id == user_id))
        .execution_options(populate_existing=True)
    )
    receipt_dict = read_receipt_to_dict(result.scalar_one())

    # Notify the sender (non-blocking)
    if message.sender_id != user_id:
        try:
            manager = get_websocket_manager()
            await manager.send_to_user(
                message.sender_id,
                {"type": "read_receipt", "receipt": receipt_dict},
            )
        except Exception as e:
            logger.warning(f"Failed to push read receipt for message {message_id}: {e}")

    return receipt_dict


async def mark_all_read(
    session: AsyncSession,
    user_id: str,
    device_info: Optional[Dict] = None,
    now: Optional[datetime] = None,
) -> int:
    """
    Mark every currently unread, visible message as read for a user.

    Args:
        session: Database session
        user_id: ID of the user
        device_info: Optional device metadata stored on each receipt
        now: Read timestamp (default: current UTC time)

    Returns:
        Count of messages newly marked as read
    """
    now = ensure_utc(now) if now is not None else utcnow()

    result = await session.execute(
        select(Message.id)
        .outerjoin(
            MessageRead,
            and_(MessageRead.message_id == Message.id, MessageRead.user_id == user_id),
        )
        .where(and_(visible_to_user(user_id, now), MessageRead.message_id.is_(None)))
    )
    unread_ids = result.scalars().all()
    if not unread_ids:
        return 0

    await _upsert_receipts(
        session,
        [
            {"message_id": message_id, "user_id": user_id, "read_at": now, "device_info": device_info or {}}
            for message_id in unread_ids
        ],
    )
    await session.execute(
        update(Message)
        .where(
            and_(
                Message.id.in_(unread_ids),
                Message.type == MessageType.DIRECT.value,
                Message.recipient_id == user_id,
            )
        )
        .values(status=MessageStatus.READ.value, updated_at=now)
    )

    return len(unread_ids)


async def get_unread_count(session: AsyncSession, user_id: str, now: Optional[datetime] = None) -> int:
    """
    Count messages visible to a user that the user has not read.

    Left anti-join: a visible, non-expired message is unread iff there is no
    receipt for (message, user_id).

    Args:
        session: Database session
        user_id: ID of the user
        now: Reference time for expiry (default: current UTC time)

    Returns:
        Integer count of unread messages
    """
    now = ensure_utc(now) if now is not None else utcnow()

    result = await session.execute(
        select(func.count())
        .select_from(Message)
        .outerjoin(
            MessageRead,
            and_(MessageRead.message_id == Message.id, MessageRead.user_id == user_id),
        )
        .where(and_(visible_to_user(user_id, now), MessageRead.message_id.is_(None)))
    )
    return result.scalar_one() or 0


async def get_unread_counts_by_player(
    session: AsyncSession,
    coach_id: str,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """
    Count a coach's direct messages that each recipient has not read yet.

    Only non-expired direct messages sent by the coach count. Players with
    nothing outstanding are omitted from the mapping.

    Args:
        session: Database session
        coach_id: ID of the sending coach
        now: Reference time for expiry (default: current UTC time)

    Returns:
        Mapping of player_id to unread count
    """
    now = ensure_utc(now) if now is not None else utcnow()

    result = await session.execute(
        select(Message.recipient_id, func.count())
        .outerjoin(
            MessageRead,
            and_(
                MessageRead.message_id == Message.id,
                MessageRead.user_id == Message.recipient_id,
            ),
        )
        .where(
            and_(
                Message.sender_id == coach_id,
                Message.type == MessageType.DIRECT.value,
                MessageRead.message_id.is_(None),
                not_expired(now),
            )
        )
        .group_by(Message.recipient_id)
    )
    return {player_id: count for player_id, count in result.all()}


async def get_read_receipts(session: AsyncSession, message_id: int) -> List[Dict]:
    """
    List who has read a message, most recent first.

    Raises:
        NotFoundError: If the message does not exist
    """
    message = await session.get(Message, message_id)
    if message is None:
        raise NotFoundError("Message", message_id)

    result = await session.execute(
        select(MessageRead)
        .where(MessageRead.message_id == message_id)
        .order_by(MessageRead.read_at.desc())
        .execution_options(populate_existing=True)
    )
    return [read_receipt_to_dict(receipt) for receipt in result.scalars().all()]
