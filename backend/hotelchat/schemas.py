from pydantic import BaseModel, EmailStr, field_validator
from datetime import datetime, timezone
from typing import Optional
from .models import UserRole, MessageStatus


def _as_utc(value: datetime) -> datetime:
    # sqlite hands timestamps back without tzinfo
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"

class UserCreate(BaseModel):
    email: EmailStr
    password: str
    display_name: str
    role: UserRole = UserRole.CUSTOMER

class UserOut(BaseModel):
    id: int
    email: EmailStr
    display_name: str
    role: UserRole
    class Config:
        from_attributes = True

class LoginIn(BaseModel):
    email: EmailStr
    password: str

class SenderOut(BaseModel):
    id: int
    display_name: str
    role: UserRole
    class Config:
        from_attributes = True

class MessageOut(BaseModel):
    id: int
    chat_id: int
    sender_id: int
    content: str
    status: MessageStatus = MessageStatus.SEND
    created_at: datetime
    sender: Optional[SenderOut] = None
    class Config:
        from_attributes = True

    @field_validator("created_at")
    @classmethod
    def _tz(cls, value: datetime) -> datetime:
        return _as_utc(value)

class MessageList(BaseModel):
    ok: bool = True
    messages: list[MessageOut]

class MessageCreate(BaseModel):
    content: str

class ChatOut(BaseModel):
    id: int
    created_at: datetime
    class Config:
        from_attributes = True

    @field_validator("created_at")
    @classmethod
    def _tz(cls, value: datetime) -> datetime:
        return _as_utc(value)

class StartChatIn(BaseModel):
    targetUserId: int

class StartChatOut(BaseModel):
    ok: bool = True
    chat: ChatOut

class VerifyOut(BaseModel):
    ok: bool = True
    allowed: bool

class CounterpartsOut(BaseModel):
    ok: bool = True
    counterparts: list[int]

# ---------------------- EVENT PAYLOADS ----------------------
class JoinPayload(BaseModel):
    targetUserId: int

class SendPayload(BaseModel):
    chatId: int
    content: str

class TypingPayload(BaseModel):
    chatId: int
    typing: bool

class TypingEvent(BaseModel):
    userId: int
    chatId: int
    typing: bool
    userName: Optional[str] = None

class NotificationEvent(BaseModel):
    type: str = "new-message"
    title: str
    message: str
    chatId: Optional[int] = None
    fromUserId: Optional[int] = None
    messageId: Optional[int] = None
