"""Event names and frame helpers shared by the server gateway and the client."""
import json
from typing import Any, Optional

# Client -> server
CHAT_JOIN = "chat:join"
MESSAGE_SEND = "message:send"
TYPING = "typing"

# Server -> client
ACK = "ack"
ERROR = "error"
MESSAGE_NEW = "message:new"
TYPING_INDICATOR = "typing"
NOTIFY_NEW_MESSAGE = "notify:new-message"

# Close code used when the handshake credential is rejected
WS_UNAUTHORIZED = 4401


def frame(event: str, data: Any = None, ref: Optional[int] = None) -> dict:
    out: dict = {"event": event, "data": data if data is not None else {}}
    if ref is not None:
        out["ref"] = ref
    return out


def decode(raw: str) -> dict:
    """Parse a text frame; raises ValueError for anything that is not a frame object."""
    msg = json.loads(raw)
    if not isinstance(msg, dict) or not isinstance(msg.get("event"), str):
        raise ValueError("frame must be an object with an 'event' name")
    return msg
