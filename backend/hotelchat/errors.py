"""Error taxonomy shared by the HTTP routes, the WebSocket gateway and the client.

Every failure the chat core can report is a ``ChatError`` subclass carrying a
stable ``code`` (sent over the wire) and the HTTP status used by the routes.
The client maps received codes back onto the same classes with
``error_from_payload``.
"""
import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ChatError(Exception):
    code = "INTERNAL"
    status_code = 500
    default_message = "Internal error"

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_payload(self) -> Dict[str, Any]:
        return {"ok": False, "error": self.message, "code": self.code}


class Unauthorized(ChatError):
    code = "UNAUTHORIZED"
    status_code = 401
    default_message = "Invalid or missing credentials"


class Unauthenticated(Unauthorized):
    """Raised on the client when no local credential is available."""

    code = "UNAUTHENTICATED"
    default_message = "Not logged in"


class InvalidArgument(ChatError):
    code = "INVALID_ARGUMENT"
    status_code = 400
    default_message = "Invalid argument"


class InvalidOperation(ChatError):
    code = "INVALID_OPERATION"
    status_code = 400
    default_message = "Invalid operation"


class NotFound(ChatError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "Not found"


class Forbidden(ChatError):
    code = "FORBIDDEN"
    status_code = 403
    default_message = "Operation not permitted"


class Conflict(ChatError):
    code = "CONFLICT"
    status_code = 409
    default_message = "Conflicting update"


class Internal(ChatError):
    pass


class ChannelUnavailable(ChatError):
    """Raised on the client when a request needs a live connection."""

    code = "CHANNEL_UNAVAILABLE"
    status_code = 503
    default_message = "Not connected"


_BY_CODE = {
    cls.code: cls
    for cls in (
        Unauthorized,
        Unauthenticated,
        InvalidArgument,
        InvalidOperation,
        NotFound,
        Forbidden,
        Conflict,
        Internal,
        ChannelUnavailable,
    )
}


def error_from_payload(payload: Optional[dict]) -> ChatError:
    payload = payload or {}
    cls = _BY_CODE.get(payload.get("code") or "", Internal)
    return cls(payload.get("error") or None)


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        fields = ", ".join(".".join(str(p) for p in err.get("loc", ())) for err in exc.errors())
        payload = InvalidArgument(f"Invalid request: {fields}").to_payload()
        payload["errors"] = jsonable_encoder(exc.errors())
        return JSONResponse(status_code=InvalidArgument.status_code, content=payload)
