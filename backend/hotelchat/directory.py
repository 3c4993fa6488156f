"""Direct-chat directory: one room per unordered pair of users.

Room creation is guarded by the unique ``pair_key`` column rather than by an
application lock, so concurrent handlers (or processes) sharing a database
still end up with a single room per pair. The loser of a creation race sees an
``IntegrityError``, rolls back and reads the winner's room.
"""
import logging
import re
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import Conflict, InvalidArgument, InvalidOperation, NotFound
from .models import ChatParticipant, ChatRoom, User, UserRole, pair_key

logger = logging.getLogger(__name__)


def as_id(value: Any, name: str) -> int:
    """Coerce an id coming off the wire, rejecting anything that is not an integer."""
    if isinstance(value, bool):
        raise InvalidArgument(f"Invalid {name}")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and re.fullmatch(r"-?\d+", value.strip()):
        return int(value.strip())
    raise InvalidArgument(f"Invalid {name}")


async def find_direct_chat(db: AsyncSession, user_a: int, user_b: int) -> ChatRoom | None:
    res = await db.execute(select(ChatRoom).where(ChatRoom.pair_key == pair_key(user_a, user_b)))
    return res.scalar_one_or_none()


async def resolve_or_create_direct_chat(db: AsyncSession, user_a: Any, user_b: Any) -> tuple[ChatRoom, bool]:
    """Return the direct chat between two users, creating it on first use.

    Returns ``(room, created)``. Raises ``InvalidOperation`` for a self-chat and
    ``NotFound`` naming the first missing user id.
    """
    user_a = as_id(user_a, "user id")
    user_b = as_id(user_b, "targetUserId")
    if user_a == user_b:
        raise InvalidOperation("Cannot start a chat with yourself")

    existing = await find_direct_chat(db, user_a, user_b)
    if existing:
        return existing, False

    for user_id in (user_a, user_b):
        if await db.get(User, user_id) is None:
            raise NotFound(f"User not found: ID {user_id}")

    room = ChatRoom(pair_key=pair_key(user_a, user_b))
    room.participants = [ChatParticipant(user_id=user_a), ChatParticipant(user_id=user_b)]
    db.add(room)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.info("Direct chat for %s/%s created concurrently, reusing it", user_a, user_b)
        existing = await find_direct_chat(db, user_a, user_b)
        if existing is None:
            raise Conflict("Direct chat creation conflicted and no room was found")
        return existing, False

    logger.info("Created direct chat %s for users %s and %s", room.id, user_a, user_b)
    return room, True


async def is_participant(db: AsyncSession, user_id: Any, chat_id: Any) -> bool:
    user_id = as_id(user_id, "user id")
    chat_id = as_id(chat_id, "chatId")
    res = await db.execute(
        select(ChatParticipant.id).where(ChatParticipant.chat_id == chat_id, ChatParticipant.user_id == user_id)
    )
    return res.first() is not None


async def participant_ids(db: AsyncSession, chat_id: int) -> list[int]:
    res = await db.execute(
        select(ChatParticipant.user_id).where(ChatParticipant.chat_id == chat_id).order_by(ChatParticipant.user_id)
    )
    return list(res.scalars().all())


async def counterpart_ids(db: AsyncSession, chat_id: Any, requester_id: Any) -> list[int]:
    chat_id = as_id(chat_id, "chatId")
    requester_id = as_id(requester_id, "user id")
    return [uid for uid in await participant_ids(db, chat_id) if uid != requester_id]


async def participant_roles(db: AsyncSession, chat_id: int) -> dict[int, UserRole]:
    res = await db.execute(
        select(User.id, User.role)
        .join(ChatParticipant, ChatParticipant.user_id == User.id)
        .where(ChatParticipant.chat_id == chat_id)
    )
    return {user_id: UserRole(role) for user_id, role in res.all()}
