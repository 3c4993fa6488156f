import logging
import time
import jwt
from passlib.context import CryptContext
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from .config import settings
from .db import get_db
from .errors import Unauthorized
from .models import User

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
security = HTTPBearer(auto_error=False)

def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)

def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)

def create_access_token(sub: str, expires_minutes: int | None = None) -> str:
    if expires_minutes is None:
        expires_minutes = settings.access_token_expire_minutes
    payload = {
        "sub": sub,
        "iat": int(time.time()),
        "exp": int(time.time()) + 60 * expires_minutes,
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)

def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Token expired")
    except jwt.InvalidTokenError:
        raise Unauthorized("Invalid token")

def bearer_token(header: str | None) -> str | None:
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()

async def authenticate_token(db: AsyncSession, token: str | None) -> User:
    """Resolve a presented bearer token to an active user, or raise Unauthorized."""
    if not token:
        raise Unauthorized("Not authenticated")
    data = decode_token(token)
    try:
        user_id = int(data["sub"])
    except (KeyError, TypeError, ValueError):
        raise Unauthorized("Invalid token subject")
    user = await db.get(User, user_id)
    if user is None or not user.is_active:
        logger.info("Token subject %s does not resolve to an active user", user_id)
        raise Unauthorized("Unknown user")
    return user

async def get_current_user(
    creds: HTTPAuthorizationCredentials | None = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> User:
    return await authenticate_token(db, creds.credentials if creds else None)
