"""Event-channel request handling for authenticated chat sessions.

A session starts *authenticated* (the WebSocket endpoint only accepts sockets
whose bearer token resolved to a user), becomes *joined* after a successful
``chat:join`` and may re-join another room at any time. Requests from one
session are handled one at a time by the endpoint's receive loop, so a
session's sends are persisted and fanned out in the order they arrived.

Failures never escape ``handle``: they are turned into ``{ok: false}`` acks
(or ``error`` frames for requests without a ``ref``) and the session state is
left untouched.
"""
import logging
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import events
from .db import SessionLocal
from .directory import participant_ids, resolve_or_create_direct_chat
from .errors import ChatError, Forbidden, Internal, InvalidArgument, InvalidOperation, Unauthorized
from .messages import append_message
from .models import Message, User
from .permissions import ensure_can_message
from .rooms import ChatSession, RoomPresence, presence
from .schemas import JoinPayload, MessageOut, NotificationEvent, SendPayload, TypingEvent, TypingPayload

logger = logging.getLogger(__name__)

Handler = Callable[[ChatSession, dict], Awaitable[Optional[dict]]]

PREVIEW_LENGTH = 80


def _parse(model: type[BaseModel], data: dict) -> BaseModel:
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
        raise InvalidArgument(f"Malformed payload: {fields}")


class ChatGateway:
    def __init__(
        self,
        room_presence: RoomPresence,
        session_factory: async_sessionmaker[AsyncSession] = SessionLocal,
    ) -> None:
        self.presence = room_presence
        self.session_factory = session_factory
        self._handlers: dict[str, Handler] = {
            events.CHAT_JOIN: self.on_join,
            events.MESSAGE_SEND: self.on_send,
            events.TYPING: self.on_typing,
        }

    async def handle(self, session: ChatSession, raw: str) -> None:
        ref = None
        try:
            try:
                msg = events.decode(raw)
            except ValueError:
                raise InvalidArgument("Malformed frame")
            if isinstance(msg.get("ref"), int) and not isinstance(msg.get("ref"), bool):
                ref = msg["ref"]
            handler = self._handlers.get(msg["event"])
            if handler is None:
                raise InvalidArgument(f"Unknown event: {msg['event']}")
            data = msg.get("data") or {}
            if not isinstance(data, dict):
                raise InvalidArgument("Malformed payload")
            reply = await handler(session, data)
        except ChatError as exc:
            logger.info("[WS] %s from user %s rejected: %s", exc.code, session.user_id, exc.message)
            reply = exc.to_payload()
        except Exception:
            logger.exception("[WS] Unhandled error for user %s", session.user_id)
            reply = Internal().to_payload()

        if reply is None:
            return
        if ref is not None:
            await self.presence.send(session, events.frame(events.ACK, reply, ref=ref))
        elif not reply.get("ok", True):
            await self.presence.send(session, events.frame(events.ERROR, reply))

    # ---------------------- HANDLERS ----------------------
    async def on_join(self, session: ChatSession, data: dict) -> dict:
        payload = _parse(JoinPayload, data)
        async with self.session_factory() as db:
            room, created = await resolve_or_create_direct_chat(db, session.user_id, payload.targetUserId)
        self.presence.join(session, room.id)
        logger.info("[WS] User %s joined chat %s%s", session.user_id, room.id, " (new)" if created else "")
        return {"ok": True, "chatId": room.id}

    async def on_send(self, session: ChatSession, data: dict) -> dict:
        payload = _parse(SendPayload, data)
        if session.chat_id is None:
            raise InvalidOperation("Join a chat before sending messages")
        if payload.chatId != session.chat_id:
            raise Forbidden(f"Not joined to chat {payload.chatId}")

        async with self.presence.room_lock(payload.chatId):
            async with self.session_factory() as db:
                sender = await db.get(User, session.user_id)
                if sender is None:
                    raise Unauthorized("Unknown user")
                await ensure_can_message(db, sender, payload.chatId)
                m = await append_message(db, payload.chatId, sender.id, payload.content)
                participants = await participant_ids(db, payload.chatId)
            out = await self.publish(m, participants)
        return {"ok": True, "message": out}

    async def on_typing(self, session: ChatSession, data: dict) -> None:
        payload = _parse(TypingPayload, data)
        if session.chat_id is None:
            raise InvalidOperation("Join a chat before sending typing indicators")
        if payload.chatId != session.chat_id:
            raise Forbidden(f"Not joined to chat {payload.chatId}")
        event = TypingEvent(
            userId=session.user_id,
            chatId=payload.chatId,
            typing=payload.typing,
            userName=session.display_name,
        )
        await self.presence.broadcast(
            payload.chatId, events.frame(events.TYPING_INDICATOR, event.model_dump()), exclude=session
        )
        return None

    # ---------------------- FAN-OUT ----------------------
    async def publish(self, message: Message, participants: list[int]) -> dict:
        """Broadcast a persisted message to its room and notify absent participants."""
        out = MessageOut.model_validate(message).model_dump(mode="json")
        chat_id = message.chat_id
        await self.presence.broadcast(chat_id, events.frame(events.MESSAGE_NEW, out))

        joined = self.presence.member_user_ids(chat_id)
        absent = [
            s
            for user_id in participants
            if user_id not in joined
            for s in self.presence.sessions_for_user(user_id)
        ]
        if absent:
            sender_name = message.sender.display_name if message.sender else "Someone"
            preview = message.content if len(message.content) <= PREVIEW_LENGTH else message.content[:PREVIEW_LENGTH] + "..."
            note = NotificationEvent(
                title=f"New message from {sender_name}",
                message=preview,
                chatId=chat_id,
                fromUserId=message.sender_id,
                messageId=message.id,
            )
            await self.presence.deliver(absent, events.frame(events.NOTIFY_NEW_MESSAGE, note.model_dump()))
        logger.info(
            "[WS] Message %s fanned out to %d joined session(s), %d notified",
            message.id, len(self.presence.members(chat_id)), len(absent),
        )
        return out


gateway = ChatGateway(presence)
