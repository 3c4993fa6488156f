import logging
from typing import Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from .directory import is_participant, participant_roles
from .errors import Forbidden
from .models import User, UserRole

logger = logging.getLogger(__name__)

# sender role -> roles it may message
ALLOWED_COUNTERPARTS: dict[UserRole, frozenset[UserRole]] = {
    UserRole.CUSTOMER: frozenset({UserRole.SUPPORT, UserRole.HOTEL_OWNER}),
    UserRole.HOTEL_OWNER: frozenset({UserRole.CUSTOMER, UserRole.SUPPORT}),
    UserRole.SUPPORT: frozenset({UserRole.CUSTOMER, UserRole.HOTEL_OWNER}),
}


def can_message(sender_role: UserRole | str, other_roles: Iterable[UserRole | str]) -> bool:
    """True only if every other participant's role is an allowed counterpart."""
    try:
        allowed = ALLOWED_COUNTERPARTS[UserRole(sender_role)]
        return all(UserRole(role) in allowed for role in other_roles)
    except ValueError:
        return False


async def ensure_can_message(db: AsyncSession, sender: User, chat_id: int) -> None:
    """Membership plus role check shared by the WebSocket and HTTP send paths."""
    if not await is_participant(db, sender.id, chat_id):
        raise Forbidden("You are not a participant of this chat")
    roles = await participant_roles(db, chat_id)
    others = [role for user_id, role in roles.items() if user_id != sender.id]
    if not can_message(sender.role, others):
        logger.info("Denied message from user %s (%s) into chat %s", sender.id, sender.role, chat_id)
        raise Forbidden("You are not allowed to message this user")
