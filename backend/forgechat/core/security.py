"""Password hashing, JWT issuance and the current-user dependency."""

from datetime import datetime, timedelta, timezone

from fastapi import Depends, Query, Request
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from forgechat.core.config import settings
from forgechat.core.database import get_db
from forgechat.core.errors import AppError, ErrorCode
from forgechat.models.user import User

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def _create_token(user_id: str, token_type: str, expires_delta: timedelta) -> str:
    to_encode = {
        "sub": user_id,
        "type": token_type,
        "exp": datetime.now(timezone.utc) + expires_delta,
    }
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def create_access_token(user_id: str, expires_delta: timedelta | None = None) -> str:
    return _create_token(
        user_id,
        "access",
        expires_delta or timedelta(minutes=settings.access_token_expire_minutes),
    )


def create_refresh_token(user_id: str) -> str:
    return _create_token(user_id, "refresh", timedelta(days=settings.refresh_token_expire_days))


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except ExpiredSignatureError:
        raise AppError(401, ErrorCode.TOKEN_EXPIRED, "Token has expired")
    except JWTError:
        raise AppError(401, ErrorCode.INVALID_TOKEN, "Invalid authentication token")


def _extract_token(request: Request, query_token: str | None) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    scheme, _, credentials = auth_header.partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials.strip()
    # EventSource clients cannot set headers, so SSE routes accept ?token=
    return query_token or None


async def get_current_user(
    request: Request,
    token: str | None = Query(None, include_in_schema=False),
    db: AsyncSession = Depends(get_db),
) -> User:
    raw_token = _extract_token(request, token)
    if not raw_token:
        raise AppError(401, ErrorCode.UNAUTHORIZED, "Missing authentication token")

    payload = decode_token(raw_token)
    if payload.get("type") != "access":
        raise AppError(401, ErrorCode.INVALID_TOKEN, "Invalid token type")

    result = await db.execute(select(User).where(User.id == payload.get("sub")))
    user = result.scalar_one_or_none()
    if not user or not user.is_active:
        raise AppError(401, ErrorCode.USER_NOT_FOUND, "User not found or inactive")
    return user
