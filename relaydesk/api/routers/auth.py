from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from relaydesk.core.db import get_session
from relaydesk.core.security import PasswordTooLongError, authenticate, hash_password
from relaydesk.models import User
from relaydesk.schemas import ApprovalStatus, LoginRequest, UserCreate, UserRead, UserRole

router = APIRouter(prefix="/auth", tags=["Authentication"])


@router.post("/register", response_model=UserRead, status_code=status.HTTP_201_CREATED)
async def register_user(user_in: UserCreate, session: AsyncSession = Depends(get_session)) -> UserRead:
    existing = await session.execute(select(User.id).where(User.email == user_in.email))
    if existing.scalar_one_or_none() is not None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Email is already registered")

    result = await session.execute(select(func.count()).select_from(User))
    is_first_user = result.scalar_one() == 0

    try:
        hashed = hash_password(user_in.password)
    except PasswordTooLongError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    # The first account bootstraps the desk; everyone after waits for an admin.
    user = User(
        email=user_in.email,
        full_name=user_in.full_name,
        hashed_password=hashed,
        role=(UserRole.ADMIN if is_first_user else UserRole.VIEWER).value,
        approval_status=(ApprovalStatus.APPROVED if is_first_user else ApprovalStatus.PENDING).value,
    )
    session.add(user)
    await session.commit()
    await session.refresh(user)
    return UserRead.model_validate(user)


@router.post("/login", response_model=UserRead)
async def login_user(payload: LoginRequest, session: AsyncSession = Depends(get_session)) -> UserRead:
    user = await authenticate(session, payload.email, payload.password)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
    if user.approval_status == ApprovalStatus.REJECTED.value:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account has been rejected")
    return UserRead.model_validate(user)
