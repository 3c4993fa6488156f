"""Asyncio chat client: connection state machine and local message reconciliation.

Connection status moves ``disconnected -> connecting -> connected`` and back
to ``disconnected`` (or to the terminal ``error``). Losing the connection for
any reason other than a local ``disconnect()`` schedules a reconnect with
exponential backoff through a single timer; ``reconnect_attempts`` is reset
only when a connection is actually established. Once the attempt budget is
spent the client stays in ``error`` until ``connect()`` is called again.

Sent messages are shown immediately as optimistic local entries (negative
temporary ids) and are never removed because the server did not confirm
them. Each one moves ``sending -> sent-optimistic`` and then either to
``confirmed`` (swapped for the server copy) or to ``unconfirmed-stale`` (kept,
failure logged). Messages arriving over the channel are de-duplicated by id
and kept sorted by creation time.

All listeners are registered on the instance with ``on(event, callback)``:
``status``, ``message``, ``joined``, ``typing``, ``notification``,
``reconnect_scheduled`` and ``error``.
"""
import asyncio
import itertools
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import httpx
from pydantic import ValidationError

from . import events
from .channel import ChannelClosed, ChannelError, ChannelFactory, ChannelRejected, websocket_channel_factory
from .config import ClientSettings
from .credentials import CredentialStore
from .errors import (
    ChannelUnavailable,
    ChatError,
    InvalidArgument,
    InvalidOperation,
    NotFound,
    Unauthenticated,
    Unauthorized,
    error_from_payload,
)
from .models import MessageStatus
from .schemas import MessageOut, TypingEvent
from .typing_state import TypingTracker

logger = logging.getLogger(__name__)


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class DeliveryState(str, Enum):
    SENDING = "sending"
    SENT_OPTIMISTIC = "sent-optimistic"
    CONFIRMED = "confirmed"
    UNCONFIRMED_STALE = "unconfirmed-stale"


@dataclass(eq=False)
class ChatMessage:
    """A message as held in the client's ordered list."""

    id: int
    chat_id: int
    sender_id: int
    content: str
    created_at: datetime
    status: MessageStatus = MessageStatus.SEND
    sender_name: str = ""
    delivery: DeliveryState = DeliveryState.CONFIRMED

    @property
    def is_local(self) -> bool:
        return self.id < 0

    @classmethod
    def from_server(cls, out: MessageOut) -> "ChatMessage":
        return cls(
            id=out.id,
            chat_id=out.chat_id,
            sender_id=out.sender_id,
            content=out.content,
            created_at=out.created_at,
            status=out.status,
            sender_name=out.sender.display_name if out.sender else "",
        )

    def adopt(self, out: MessageOut) -> None:
        self.id = out.id
        self.chat_id = out.chat_id
        self.sender_id = out.sender_id
        self.content = out.content
        self.created_at = out.created_at
        self.status = out.status
        if out.sender:
            self.sender_name = out.sender.display_name


class HistoryClient:
    """Reads room history through the ``GET /messages/{chat_id}`` query endpoint."""

    def __init__(
        self,
        base_url: str,
        credentials: CredentialStore,
        take: int = 100,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
    ) -> None:
        self.base_url = base_url
        self.credentials = credentials
        self.take = take
        self._transport = transport
        self._timeout = timeout

    async def fetch(self, chat_id: int, cursor: Optional[int] = None) -> List[MessageOut]:
        if not self.credentials.token:
            raise Unauthenticated()
        params: Dict[str, Any] = {"take": self.take}
        if cursor is not None:
            params["cursor"] = cursor
        headers = {"Authorization": f"Bearer {self.credentials.token}"}
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, transport=self._transport, timeout=self._timeout
            ) as http:
                resp = await http.get(f"/messages/{chat_id}", params=params, headers=headers)
        except httpx.HTTPError as exc:
            raise ChannelUnavailable(f"History request failed: {exc}")
        body = resp.json() if resp.content else {}
        if resp.status_code != 200:
            raise error_from_payload(body)
        return [MessageOut.model_validate(m) for m in body.get("messages", [])]


class ChatClient:
    def __init__(
        self,
        credentials: CredentialStore,
        channel_factory: Optional[ChannelFactory] = None,
        history: Optional[HistoryClient] = None,
        settings: Optional[ClientSettings] = None,
        auto_connect: bool = False,
    ) -> None:
        self.settings = settings or ClientSettings()
        self.credentials = credentials
        self.history = history or HistoryClient(self.settings.api_url, credentials, take=self.settings.history_take)
        self.auto_connect = auto_connect
        self._channel_factory = channel_factory or websocket_channel_factory(self.settings.server_url)

        self.status = ConnectionStatus.DISCONNECTED
        self.error: Optional[str] = None
        self.reconnect_attempts = 0
        self.last_connected_at: Optional[datetime] = None

        self.current_chat_id: Optional[int] = None
        self.messages: List[ChatMessage] = []
        self.is_loading = False
        self.chat_error: Optional[str] = None
        self.input_text = ""
        self.typing = TypingTracker(self.settings.typing_quiet_period)

        self._channel = None
        self._reader: Optional[asyncio.Task] = None
        self._pending: Dict[int, asyncio.Future] = {}
        self._refs = itertools.count(1)
        self._temp_ids = itertools.count(-1, -1)
        self._reconnect_timer: Optional[asyncio.TimerHandle] = None
        self._typing_timer: Optional[asyncio.TimerHandle] = None
        self._typing_active = False
        self._closing = False
        self._target_user_id: Optional[int] = None
        self._tasks: set = set()
        self._listeners: Dict[str, List[Callable[..., None]]] = defaultdict(list)
        self._unsubscribe_auth = credentials.subscribe(self._on_auth_event)

    # ---------------------- LISTENERS ----------------------
    def on(self, event: str, callback: Callable[..., None]) -> Callable[[], None]:
        self._listeners[event].append(callback)
        return lambda: self.off(event, callback)

    def off(self, event: str, callback: Callable[..., None]) -> None:
        if callback in self._listeners.get(event, []):
            self._listeners[event].remove(callback)

    def _emit(self, event: str, *args: Any) -> None:
        for callback in list(self._listeners.get(event, [])):
            try:
                callback(*args)
            except Exception:
                logger.exception("Listener for %r failed", event)

    def _set_status(self, status: ConnectionStatus, error: Optional[str] = None) -> None:
        self.status = status
        self.error = error
        logger.info("Chat connection %s%s", status.value, f" ({error})" if error else "")
        self._emit("status", status)

    # ---------------------- CONNECTION ----------------------
    @property
    def is_connected(self) -> bool:
        return self.status is ConnectionStatus.CONNECTED and self._channel is not None

    async def connect(self) -> None:
        if self.status in (ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED):
            return
        token = self.credentials.token
        if not token:
            raise Unauthenticated()
        self._cancel_reconnect()
        self._closing = False
        try:
            await self._open(token)
        except ChannelRejected:
            self._set_status(ConnectionStatus.ERROR, "unauthorized")
            raise Unauthorized("Server rejected the credential")
        except ChannelError as exc:
            # a failed first connect is retried like a dropped connection
            logger.warning("Connecting to chat failed: %s", exc)
            self._set_status(ConnectionStatus.DISCONNECTED, f"Connection failed: {exc}")
            self._schedule_reconnect()
            raise ChannelUnavailable(str(exc))

    async def disconnect(self) -> None:
        """Close the channel on purpose; no reconnect follows."""
        self._closing = True
        self._cancel_reconnect()
        self._cancel_typing_timer()
        self._typing_active = False
        channel, self._channel = self._channel, None
        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        if channel is not None:
            try:
                await channel.close()
            except ChannelError as exc:
                logger.debug("Error while closing channel: %s", exc)
        self._fail_pending(ChannelClosed(1000, "client disconnect"))
        self.reconnect_attempts = 0
        self._set_status(ConnectionStatus.DISCONNECTED)

    async def close(self) -> None:
        await self.disconnect()
        self._unsubscribe_auth()
        for task in list(self._tasks):
            task.cancel()

    async def _open(self, token: str) -> None:
        self._set_status(ConnectionStatus.CONNECTING)
        try:
            channel = await self._channel_factory(token)
        except ChannelError:
            raise
        except Exception as exc:
            raise ChannelError(str(exc) or exc.__class__.__name__) from exc
        self._channel = channel
        self.reconnect_attempts = 0
        self.last_connected_at = datetime.now(timezone.utc)
        self._set_status(ConnectionStatus.CONNECTED)
        self._reader = asyncio.get_running_loop().create_task(self._read_loop(channel))

    async def _read_loop(self, channel) -> None:
        code, reason = None, "connection lost"
        try:
            while True:
                try:
                    frame = await channel.recv()
                except ValueError:
                    logger.warning("Ignoring malformed frame from server")
                    continue
                self._dispatch(frame)
        except ChannelClosed as exc:
            code, reason = exc.code, exc.reason or reason
        except ChannelError as exc:
            reason = str(exc) or reason
        except Exception:
            logger.exception("Chat reader stopped unexpectedly")
        self._on_channel_lost(channel, code, reason)

    def _on_channel_lost(self, channel, code: Optional[int], reason: str) -> None:
        if channel is not self._channel:
            return
        self._channel = None
        self._reader = None
        self._fail_pending(ChannelClosed(code, reason))
        if self._closing:
            return
        if code == events.WS_UNAUTHORIZED:
            self._set_status(ConnectionStatus.ERROR, "unauthorized")
            return
        logger.warning("Chat connection lost: %s", reason)
        self._set_status(ConnectionStatus.DISCONNECTED, reason)
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._reconnect_timer is not None:
            return
        max_attempts = self.settings.reconnect_max_attempts
        if self.reconnect_attempts >= max_attempts:
            message = f"Connection could not be established after {max_attempts} attempts"
            self._set_status(ConnectionStatus.ERROR, message)
            self._emit("error", message)
            return
        delay = min(
            self.settings.reconnect_base_delay * (2 ** self.reconnect_attempts),
            self.settings.reconnect_max_delay,
        )
        logger.info("Reconnecting in %.2fs (%d/%d)", delay, self.reconnect_attempts + 1, max_attempts)
        self._reconnect_timer = asyncio.get_running_loop().call_later(delay, self._fire_reconnect)
        self._emit("reconnect_scheduled", self.reconnect_attempts + 1, delay)

    def _fire_reconnect(self) -> None:
        self._reconnect_timer = None
        self._spawn(self._reconnect())

    def _cancel_reconnect(self) -> None:
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

    async def _reconnect(self) -> None:
        if self._closing or self.status in (ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED):
            return
        self.reconnect_attempts += 1
        token = self.credentials.token
        if not token:
            self._set_status(ConnectionStatus.ERROR, "Not logged in")
            return
        try:
            await self._open(token)
        except ChannelRejected:
            self._set_status(ConnectionStatus.ERROR, "unauthorized")
            return
        except ChannelError as exc:
            logger.warning("Reconnect attempt %d failed: %s", self.reconnect_attempts, exc)
            self._set_status(ConnectionStatus.DISCONNECTED, str(exc))
            self._schedule_reconnect()
            return
        # server-side membership does not survive the old connection
        if self._target_user_id is not None:
            try:
                await self.join_chat(self._target_user_id)
            except ChatError as exc:
                logger.warning("Re-joining chat after reconnect failed: %s", exc.message)

    def _on_auth_event(self, event: str, store: CredentialStore) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        if event == "logout":
            self._spawn(self.disconnect())
        elif event == "login" and self.auto_connect:
            self._spawn(self.connect())

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            exc = task.exception()
            logger.warning("Background chat task failed: %s", exc)

    # ---------------------- REQUESTS ----------------------
    async def _request(self, event: str, data: dict) -> dict:
        channel = self._channel
        if channel is None or self.status is not ConnectionStatus.CONNECTED:
            raise ChannelUnavailable()
        ref = next(self._refs)
        future = asyncio.get_running_loop().create_future()
        self._pending[ref] = future
        try:
            await channel.send(events.frame(event, data, ref=ref))
            return await asyncio.wait_for(future, self.settings.ack_timeout)
        finally:
            self._pending.pop(ref, None)

    def _fail_pending(self, exc: Exception) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(exc)

    def _dispatch(self, frame: dict) -> None:
        event = frame.get("event")
        data = frame.get("data") or {}
        if event == events.ACK:
            future = self._pending.get(frame.get("ref"))
            if future is not None and not future.done():
                future.set_result(data)
        elif event == events.MESSAGE_NEW:
            self._receive_message(data)
        elif event == events.TYPING_INDICATOR:
            self._receive_typing(data)
        elif event == events.NOTIFY_NEW_MESSAGE:
            self._emit("notification", data)
        elif event == events.ERROR:
            logger.warning("Server reported: %s", data.get("error"))
            self._emit("error", data.get("error"))
        else:
            logger.debug("Ignoring unknown event %r", event)

    # ---------------------- CHAT ----------------------
    async def join_chat(self, target_user_id: int) -> int:
        if not self.is_connected:
            raise ChannelUnavailable("Not connected; connect first")
        if self.credentials.user is None:
            raise NotFound("Current user missing; log in first")

        self.is_loading = True
        self.chat_error = None
        try:
            reply = await self._request(events.CHAT_JOIN, {"targetUserId": target_user_id})
            if not reply.get("ok"):
                raise error_from_payload(reply)
            chat_id = int(reply["chatId"])
            if chat_id != self.current_chat_id:
                if self.current_chat_id is not None:
                    self.typing.clear(self.current_chat_id)
                self.messages = [m for m in self.messages if m.chat_id == chat_id]
            self.current_chat_id = chat_id
            self._target_user_id = target_user_id
            history = await self.history.fetch(chat_id)
        except (ChatError, ChannelError, asyncio.TimeoutError) as exc:
            message = exc.message if isinstance(exc, ChatError) else (str(exc) or "Request timed out")
            self.is_loading = False
            self.chat_error = message
            logger.warning("Joining chat with user %s failed: %s", target_user_id, message)
            if isinstance(exc, ChatError):
                raise
            raise ChannelUnavailable(message) from exc

        # keep whatever arrived meanwhile plus local optimistic entries
        fetched = [ChatMessage.from_server(out) for out in history]
        known = {m.id for m in fetched}
        self.messages = fetched + [m for m in self.messages if m.id not in known]
        self._sort()
        self.is_loading = False
        self._emit("joined", chat_id)
        return chat_id

    def leave_chat(self) -> None:
        if self.current_chat_id is not None:
            self.typing.clear(self.current_chat_id)
        self.current_chat_id = None
        self._target_user_id = None
        self.messages = []
        self.chat_error = None
        self.input_text = ""
        self._typing_active = False
        self._cancel_typing_timer()

    async def send_message(self, content: str) -> ChatMessage:
        text = (content or "").strip()
        if not text:
            raise InvalidArgument("Message content cannot be empty")
        chat_id = self.current_chat_id
        if chat_id is None:
            raise InvalidOperation("No active chat")

        user = self.credentials.user
        local = ChatMessage(
            id=next(self._temp_ids),
            chat_id=chat_id,
            sender_id=user.id if user else 0,
            content=text,
            created_at=datetime.now(timezone.utc),
            sender_name=user.display_name if user else "",
            delivery=DeliveryState.SENDING,
        )
        self.messages.append(local)
        self._sort()
        local.delivery = DeliveryState.SENT_OPTIMISTIC
        self._emit("message", local)

        self.input_text = ""
        await self._set_typing(False)

        try:
            reply = await self._request(events.MESSAGE_SEND, {"chatId": chat_id, "content": text})
        except (ChatError, ChannelError, asyncio.TimeoutError) as exc:
            return self._mark_stale(local, exc)
        if not reply.get("ok"):
            return self._mark_stale(local, error_from_payload(reply))
        try:
            server_copy = MessageOut.model_validate(reply.get("message"))
        except ValidationError as exc:
            return self._mark_stale(local, exc)
        return self._confirm(local, server_copy)

    def _confirm(self, local: ChatMessage, out: MessageOut) -> ChatMessage:
        existing = self._find(out.id)
        if existing is not None:
            # the broadcast copy got here first
            self.messages = [m for m in self.messages if m is not local]
            confirmed = existing
        else:
            local.adopt(out)
            confirmed = local
        confirmed.delivery = DeliveryState.CONFIRMED
        self._sort()
        self._emit("message", confirmed)
        return confirmed

    def _mark_stale(self, local: ChatMessage, exc: Exception) -> ChatMessage:
        local.delivery = DeliveryState.UNCONFIRMED_STALE
        reason = exc.message if isinstance(exc, ChatError) else (str(exc) or exc.__class__.__name__)
        logger.warning("Message %s to chat %s was not confirmed: %s", local.id, local.chat_id, reason)
        self._emit("message", local)
        return local

    def _receive_message(self, data: dict) -> None:
        try:
            out = MessageOut.model_validate(data)
        except ValidationError:
            logger.warning("Ignoring malformed message event")
            return
        if out.chat_id != self.current_chat_id:
            logger.debug("Message %s for chat %s ignored (not open)", out.id, out.chat_id)
            return
        if self._find(out.id) is not None:
            return
        message = ChatMessage.from_server(out)
        self.messages.append(message)
        self._sort()
        self._emit("message", message)

    def _find(self, message_id: int) -> Optional[ChatMessage]:
        for m in self.messages:
            if m.id == message_id:
                return m
        return None

    def _sort(self) -> None:
        # same timestamp: server copies by id, then local entries in send order
        self.messages.sort(key=lambda m: (m.created_at, m.is_local, abs(m.id)))

    # ---------------------- TYPING ----------------------
    async def update_input(self, content: str) -> None:
        """Track the input buffer and drive the outgoing typing indicator."""
        self.input_text = content
        if content:
            if not self._typing_active:
                await self._set_typing(True)
            self._restart_typing_timer()
        else:
            await self._set_typing(False)

    async def blur(self) -> None:
        await self._set_typing(False)

    async def _set_typing(self, typing: bool) -> None:
        if not typing:
            self._cancel_typing_timer()
        if typing == self._typing_active:
            return
        self._typing_active = typing
        channel, chat_id = self._channel, self.current_chat_id
        if channel is None or chat_id is None or self.status is not ConnectionStatus.CONNECTED:
            return
        try:
            await channel.send(events.frame(events.TYPING, {"chatId": chat_id, "typing": typing}))
        except ChannelError as exc:
            logger.debug("Typing indicator not sent: %s", exc)

    def _restart_typing_timer(self) -> None:
        self._cancel_typing_timer()
        self._typing_timer = asyncio.get_running_loop().call_later(
            self.settings.typing_idle_timeout, self._typing_idle
        )

    def _typing_idle(self) -> None:
        self._typing_timer = None
        self._spawn(self._set_typing(False))

    def _cancel_typing_timer(self) -> None:
        if self._typing_timer is not None:
            self._typing_timer.cancel()
            self._typing_timer = None

    def _receive_typing(self, data: dict) -> None:
        try:
            event = TypingEvent.model_validate(data)
        except ValidationError:
            logger.warning("Ignoring malformed typing event")
            return
        self.typing.update(event.chatId, event.userId, event.typing, event.userName)
        if event.chatId == self.current_chat_id:
            self._emit("typing", self.typing_display_text)

    # ---------------------- DERIVED ----------------------
    @property
    def typing_display_text(self) -> str:
        if self.current_chat_id is None:
            return ""
        return self.typing.display_text(self.current_chat_id)

    @property
    def can_send(self) -> bool:
        return bool(
            self.is_connected
            and self.current_chat_id is not None
            and self.input_text.strip()
            and not self.is_loading
        )
