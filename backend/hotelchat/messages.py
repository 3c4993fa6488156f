import logging
from datetime import datetime
from typing import Any

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import joinedload

from .config import settings
from .directory import as_id, is_participant
from .errors import Forbidden, InvalidArgument, NotFound
from .models import ChatRoom, Message, MessageStatus, User, UserRole

logger = logging.getLogger(__name__)


async def append_message(
    db: AsyncSession,
    chat_id: Any,
    sender_id: Any,
    text: Any,
    created_at: datetime | None = None,
) -> Message:
    """Persist a new message with status SEND and return it with its sender loaded."""
    chat_id = as_id(chat_id, "chatId")
    sender_id = as_id(sender_id, "senderId")
    text = text.strip() if isinstance(text, str) else ""
    if not text:
        raise InvalidArgument("Message content cannot be empty")
    if len(text) > settings.message_max_length:
        raise InvalidArgument(f"Message content exceeds {settings.message_max_length} characters")

    sender = await db.get(User, sender_id)
    if sender is None:
        raise InvalidArgument(f"Sender not found: ID {sender_id}")
    if await db.get(ChatRoom, chat_id) is None:
        raise NotFound(f"Chat not found: ID {chat_id}")

    m = Message(chat_id=chat_id, sender_id=sender_id, content=text, status=MessageStatus.SEND.value)
    if created_at is not None:
        m.created_at = created_at
    m.sender = sender
    db.add(m)
    await db.commit()
    logger.debug("Stored message %s in chat %s from user %s", m.id, chat_id, sender_id)
    return m


async def list_messages(db: AsyncSession, chat_id: Any, take: Any = None, cursor: Any = None) -> list[Message]:
    """Messages of a chat, oldest first; with ``cursor`` resume strictly after that message."""
    chat_id = as_id(chat_id, "chatId")
    take = settings.history_default_take if take is None else as_id(take, "take")
    take = max(1, min(take, settings.history_max_take))

    stmt = select(Message).options(joinedload(Message.sender)).where(Message.chat_id == chat_id)
    if cursor is not None and cursor != "":
        cursor = as_id(cursor, "cursor")
        anchor = await db.get(Message, cursor)
        if anchor is None or anchor.chat_id != chat_id:
            return []
        stmt = stmt.where(
            or_(
                Message.created_at > anchor.created_at,
                and_(Message.created_at == anchor.created_at, Message.id > anchor.id),
            )
        )
    stmt = stmt.order_by(Message.created_at.asc(), Message.id.asc()).limit(take)
    res = await db.execute(stmt)
    return list(res.scalars().all())


async def delete_message(db: AsyncSession, message_id: Any, requester: User) -> Message:
    """Delete a message the requester owns; SUPPORT members may delete any message in their chats."""
    message_id = as_id(message_id, "messageId")
    m = await db.get(Message, message_id)
    if m is None:
        raise NotFound(f"Message not found: ID {message_id}")
    if not await is_participant(db, requester.id, m.chat_id):
        raise Forbidden("You are not a participant of this chat")
    if m.sender_id != requester.id and UserRole(requester.role) != UserRole.SUPPORT:
        raise Forbidden("You can only delete your own messages")
    await db.delete(m)
    await db.commit()
    logger.info("User %s deleted message %s in chat %s", requester.id, message_id, m.chat_id)
    return m
