import logging
from fastapi import FastAPI, Depends, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.websockets import WebSocketState
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from .config import settings
from .db import SessionLocal, get_db, init_db
from .models import User
from .schemas import (
    UserCreate, UserOut, LoginIn, Token, MessageOut, MessageList, MessageCreate,
    StartChatIn, StartChatOut, ChatOut, VerifyOut, CounterpartsOut,
)
from .auth import get_password_hash, verify_password, create_access_token, get_current_user, authenticate_token, bearer_token
from .directory import resolve_or_create_direct_chat, is_participant, counterpart_ids, participant_ids
from .errors import ChatError, Forbidden, InvalidArgument, Unauthorized, register_error_handlers
from .messages import append_message, list_messages, delete_message
from .permissions import ensure_can_message
from .rooms import ChatSession, presence
from .gateway import gateway
from . import events

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Hotel Support Chat Backend")

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.cors_origins.split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
register_error_handlers(app)

@app.on_event("startup")
async def on_startup():
    await init_db()

@app.get("/health")
async def health():
    return {"status": "ok"}

# ---------------------- AUTH ----------------------
@app.post("/auth/register", response_model=UserOut)
async def register(payload: UserCreate, db: AsyncSession = Depends(get_db)):
    user = User(
        email=payload.email,
        password_hash=get_password_hash(payload.password),
        display_name=payload.display_name,
        role=payload.role.value,
    )
    db.add(user)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise InvalidArgument("Email already registered")
    await db.refresh(user)
    return user

@app.post("/auth/login", response_model=Token)
async def login(payload: LoginIn, db: AsyncSession = Depends(get_db)):
    res = await db.execute(select(User).where(User.email == payload.email))
    user = res.scalar_one_or_none()
    if not user or not verify_password(payload.password, user.password_hash):
        raise Unauthorized("Invalid credentials")
    token = create_access_token(str(user.id))
    return Token(access_token=token)

@app.get("/me", response_model=UserOut)
async def me(user: User = Depends(get_current_user)):
    return UserOut.model_validate(user)

# ---------------------- CHATS ----------------------
@app.post("/chats/start", response_model=StartChatOut)
async def start_direct_chat(body: StartChatIn, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    room, _ = await resolve_or_create_direct_chat(db, user.id, body.targetUserId)
    return StartChatOut(chat=ChatOut.model_validate(room))

@app.get("/chats/{chat_id}/verify", response_model=VerifyOut)
async def verify_participation(chat_id: int, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    return VerifyOut(allowed=await is_participant(db, user.id, chat_id))

@app.get("/chats/{chat_id}/counterparts", response_model=CounterpartsOut)
async def get_counterparts(chat_id: int, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    if not await is_participant(db, user.id, chat_id):
        raise Forbidden("You are not a participant of this chat")
    return CounterpartsOut(counterparts=await counterpart_ids(db, chat_id, user.id))

# ---------------------- MESSAGES ----------------------
@app.get("/messages/{chat_id}", response_model=MessageList)
async def get_chat_messages(
    chat_id: int,
    cursor: int | None = Query(None),
    take: int | None = Query(None, ge=1),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    if not await is_participant(db, user.id, chat_id):
        raise Forbidden("You are not allowed to read this chat")
    rows = await list_messages(db, chat_id, take=take, cursor=cursor)
    return MessageList(messages=[MessageOut.model_validate(m) for m in rows])

@app.post("/messages/{chat_id}", response_model=MessageOut)
async def post_message(chat_id: int, body: MessageCreate, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    # locks exist only for rooms the caller may post to
    await ensure_can_message(db, user, chat_id)
    async with presence.room_lock(chat_id):
        m = await append_message(db, chat_id, user.id, body.content)
        await gateway.publish(m, await participant_ids(db, chat_id))
    return MessageOut.model_validate(m)

@app.delete("/messages/{message_id}")
async def remove_message(message_id: int, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    m = await delete_message(db, message_id, user)
    return {"ok": True, "deleted": MessageOut.model_validate(m).model_dump(mode="json")}

# ---------------------- WEBSOCKETS ----------------------
# Chat WS: one connection per client; rooms are joined with `chat:join` frames.
@app.websocket("/ws/chat")
async def ws_chat(ws: WebSocket):
    token = bearer_token(ws.headers.get("authorization")) or ws.query_params.get("token")
    try:
        async with SessionLocal() as db:
            user = await authenticate_token(db, token)
    except ChatError as exc:
        logger.info("[WS] Rejected connection: %s", exc.message)
        await ws.close(code=events.WS_UNAUTHORIZED, reason="unauthorized")
        return

    await ws.accept()
    session = ChatSession(ws=ws, user_id=user.id, role=user.role, display_name=user.display_name)
    presence.add(session)
    logger.info("[WS] User %s connected (session %s)", user.id, session.id)

    try:
        # presence closes sockets it could not deliver to
        while ws.application_state == WebSocketState.CONNECTED:
            raw = await ws.receive_text()
            await gateway.handle(session, raw)
    except WebSocketDisconnect:
        pass
    finally:
        presence.remove(session)
        logger.info("[WS] User %s disconnected (session %s)", user.id, session.id)
