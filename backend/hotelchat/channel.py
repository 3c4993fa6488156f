"""Client transport for the chat event channel, built on ``websockets``."""
import asyncio
import json
import logging
from typing import Awaitable, Callable, Optional, Protocol

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidStatus, InvalidURI

from . import events

logger = logging.getLogger(__name__)


class ChannelError(Exception):
    """The channel could not be opened or used."""


class ChannelRejected(ChannelError):
    """The server refused the handshake credential."""


class ChannelClosed(ChannelError):
    def __init__(self, code: Optional[int] = None, reason: str = "") -> None:
        self.code = code
        self.reason = reason
        super().__init__(f"channel closed ({code}): {reason}" if code else "channel closed")


class Channel(Protocol):
    async def send(self, frame: dict) -> None: ...

    async def recv(self) -> dict: ...

    async def close(self) -> None: ...


ChannelFactory = Callable[[str], Awaitable[Channel]]


class WebSocketChannel:
    def __init__(self, conn: ClientConnection) -> None:
        self._conn = conn

    async def send(self, frame: dict) -> None:
        try:
            await self._conn.send(json.dumps(frame))
        except ConnectionClosed as exc:
            raise _closed(exc)

    async def recv(self) -> dict:
        try:
            raw = await self._conn.recv()
        except ConnectionClosed as exc:
            raise _closed(exc)
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return events.decode(raw)

    async def close(self) -> None:
        await self._conn.close()


def _closed(exc: ConnectionClosed) -> ChannelClosed:
    if exc.rcvd is not None:
        return ChannelClosed(exc.rcvd.code, exc.rcvd.reason)
    return ChannelClosed(None, "connection lost")


def websocket_channel_factory(url: str, open_timeout: float = 10.0) -> ChannelFactory:
    """Factory opening a ``WebSocketChannel`` to ``url`` with a bearer credential."""

    async def open_channel(token: str) -> Channel:
        try:
            conn = await connect(
                url,
                additional_headers={"Authorization": f"Bearer {token}"},
                open_timeout=open_timeout,
            )
        except InvalidStatus as exc:
            status = exc.response.status_code
            if status in (401, 403):
                raise ChannelRejected("unauthorized")
            raise ChannelError(f"handshake failed with HTTP {status}")
        except (InvalidURI, InvalidHandshake, OSError, TimeoutError, asyncio.TimeoutError) as exc:
            raise ChannelError(str(exc) or exc.__class__.__name__)
        logger.debug("Opened chat channel to %s", url)
        return WebSocketChannel(conn)

    return open_channel
