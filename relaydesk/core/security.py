from __future__ import annotations

from typing import Annotated

import bcrypt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from relaydesk.core.config import get_settings
from relaydesk.core.db import get_session
from relaydesk.models import User

BCRYPT_MAX_PASSWORD_BYTES = 72

APPROVED = "approved"
ADMIN_ROLE = "admin"

_basic_auth = HTTPBasic(auto_error=False)


class PasswordTooLongError(ValueError):
    """Raised when attempting to hash a password that exceeds bcrypt's limits."""


def _ensure_password_size(password: str) -> None:
    if len(password.encode("utf-8")) > BCRYPT_MAX_PASSWORD_BYTES:
        raise PasswordTooLongError(
            f"Password exceeds bcrypt's maximum supported size of {BCRYPT_MAX_PASSWORD_BYTES} bytes when encoded in UTF-8."
        )


def hash_password(password: str) -> str:
    _ensure_password_size(password)
    rounds = get_settings().bcrypt_rounds
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds))
    return hashed.decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    try:
        _ensure_password_size(password)
    except PasswordTooLongError:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))
    except ValueError:
        return False


async def authenticate(session: AsyncSession, email: str, password: str) -> User | None:
    result = await session.execute(select(User).where(User.email == email))
    user = result.scalar_one_or_none()
    if user is None or not verify_password(password, user.hashed_password):
        return None
    return user


async def get_current_user(
    credentials: Annotated[HTTPBasicCredentials | None, Depends(_basic_auth)],
    session: AsyncSession = Depends(get_session),
) -> User:
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Basic"},
        )
    user = await authenticate(session, credentials.username, credentials.password)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )
    return user


async def require_approved_user(user: User = Depends(get_current_user)) -> User:
    if user.approval_status != APPROVED:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is awaiting approval",
        )
    return user


async def require_admin(user: User = Depends(require_approved_user)) -> User:
    if user.role != ADMIN_ROLE:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user
