"""In-process presence: live chat sessions and which room each one has joined.

Membership lives only as long as the connection; nothing here is persisted,
and a reconnecting client rebuilds it by joining again.
"""
import asyncio
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Optional, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class ChatSession:
    ws: WebSocket
    user_id: int
    role: str
    display_name: str
    chat_id: Optional[int] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def state(self) -> str:
        return "authenticated" if self.chat_id is None else "joined"


class RoomPresence:
    def __init__(self) -> None:
        self.sessions: Dict[str, ChatSession] = {}
        self.rooms: Dict[int, Set[str]] = defaultdict(set)
        self._locks: Dict[int, asyncio.Lock] = {}

    def add(self, session: ChatSession) -> None:
        self.sessions[session.id] = session

    def remove(self, session: ChatSession) -> None:
        self.leave(session)
        self.sessions.pop(session.id, None)

    def join(self, session: ChatSession, chat_id: int) -> None:
        """Move a session into ``chat_id``, replacing any previous membership."""
        if session.chat_id == chat_id:
            return
        self.leave(session)
        session.chat_id = chat_id
        self.rooms[chat_id].add(session.id)

    def leave(self, session: ChatSession) -> None:
        if session.chat_id is None:
            return
        members = self.rooms.get(session.chat_id)
        if members is not None:
            members.discard(session.id)
            if not members:
                self.rooms.pop(session.chat_id, None)
        session.chat_id = None

    def members(self, chat_id: int) -> list[ChatSession]:
        return [self.sessions[sid] for sid in self.rooms.get(chat_id, ()) if sid in self.sessions]

    def member_user_ids(self, chat_id: int) -> set[int]:
        return {s.user_id for s in self.members(chat_id)}

    def sessions_for_user(self, user_id: int) -> list[ChatSession]:
        return [s for s in self.sessions.values() if s.user_id == user_id]

    def room_lock(self, chat_id: int) -> asyncio.Lock:
        # held across persist + fan-out so broadcast order follows persistence order
        lock = self._locks.get(chat_id)
        if lock is None:
            lock = self._locks[chat_id] = asyncio.Lock()
        return lock

    async def send(self, session: ChatSession, frame: dict) -> bool:
        try:
            await session.ws.send_json(frame)
            return True
        except Exception as e:
            logger.debug("Failed to send to session %s: %s", session.id, e)
            return False

    async def broadcast(self, chat_id: int, frame: dict, exclude: Optional[ChatSession] = None) -> None:
        targets = [s for s in self.members(chat_id) if s is not exclude]
        await self.deliver(targets, frame)

    async def deliver(self, targets: list[ChatSession], frame: dict) -> None:
        if not targets:
            return
        results = await asyncio.gather(*[self.send(s, frame) for s in targets], return_exceptions=True)
        for s, ok in zip(targets, results):
            if ok is not True:
                logger.info("Dropping dead session %s of user %s", s.id, s.user_id)
                self.remove(s)
                await self.close(s)

    async def close(self, session: ChatSession, code: int = 1011) -> None:
        """Close a session's socket so its receive loop ends too."""
        try:
            await session.ws.close(code=code)
        except Exception as e:
            logger.debug("Failed to close session %s: %s", session.id, e)

    def clear(self) -> None:
        self.sessions.clear()
        self.rooms.clear()
        self._locks.clear()


presence = RoomPresence()
