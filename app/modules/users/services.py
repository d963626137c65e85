from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, or_, func
from fastapi import HTTPException, status
from typing import Optional, Dict, Iterable
from dataclasses import dataclass
import logging

from app.core.security import (
    get_password_hash,
    verify_password,
    create_access_token,
    create_refresh_token,
    decode_token,
    token_ttl_seconds,
    validate_password_strength
)
from app.core.config import settings
from app.core.database import get_redis
from app.modules.users.models import User
from app.modules.users import schemas

logger = logging.getLogger(__name__)

UNKNOWN_NAME = "Unknown user"
UNKNOWN_HANDLE = "unknown"


@dataclass(frozen=True)
class DisplayProfile:
    """Best-effort display identity of a user"""
    user_id: int
    name: str
    handle: str
    avatar_url: Optional[str] = None
    is_placeholder: bool = False

    @classmethod
    def placeholder(cls, user_id: int) -> "DisplayProfile":
        return cls(user_id=user_id, name=UNKNOWN_NAME, handle=UNKNOWN_HANDLE, is_placeholder=True)

    @classmethod
    def from_user(cls, user: User) -> "DisplayProfile":
        return cls(
            user_id=user.id,
            name=user.full_name or UNKNOWN_NAME,
            handle=user.username or UNKNOWN_HANDLE,
            avatar_url=user.avatar_url,
        )


class UserService:
    """Service layer for user identity operations"""

    @staticmethod
    async def register_user(db: AsyncSession, user_data: schemas.UserRegistrationRequest) -> User:
        """Register a new user"""

        is_valid, error_msg = validate_password_strength(user_data.password)
        if not is_valid:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=error_msg
            )

        result = await db.execute(select(User).where(User.email == user_data.email))
        if result.scalar_one_or_none():
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Email already registered"
            )

        result = await db.execute(select(User).where(User.username == user_data.username))
        if result.scalar_one_or_none():
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Username already taken"
            )

        user = User(
            email=user_data.email,
            hashed_password=get_password_hash(user_data.password),
            username=user_data.username,
            full_name=user_data.full_name,
            avatar_url=user_data.avatar_url,
            is_active=True
        )
        db.add(user)
        await db.commit()
        await db.refresh(user)

        logger.info(f"Registered user {user.id} (@{user.username})")
        return user

    @staticmethod
    async def authenticate_user(db: AsyncSession, email_or_username: str, password: str) -> Optional[User]:
        """Authenticate user with email/username and password"""
        identifier = email_or_username.strip()
        result = await db.execute(
            select(User).where(
                or_(
                    User.email == identifier,
                    User.username == identifier.lstrip("@").lower()
                )
            )
        )
        user = result.scalar_one_or_none()

        if not user or not verify_password(password, user.hashed_password):
            return None

        if not user.is_active:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Account is disabled"
            )

        return user

    @staticmethod
    async def create_tokens(user_id: int) -> dict:
        """Create access and refresh tokens"""
        access_token = create_access_token(data={"sub": str(user_id)})
        refresh_token = create_refresh_token(data={"sub": str(user_id)})

        return {
            "access_token": access_token,
            "refresh_token": refresh_token,
            "token_type": "bearer",
            "expires_in": settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60
        }

    @staticmethod
    async def logout_user(token: str):
        """Logout user by blacklisting token until it would have expired"""
        redis = await get_redis()
        ttl = token_ttl_seconds(decode_token(token))
        await redis.setex(f"blacklist:{token}", ttl, "1")

    @staticmethod
    async def get_user(db: AsyncSession, user_id: int) -> Optional[User]:
        result = await db.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    @staticmethod
    async def find_by_username(db: AsyncSession, username: str) -> Optional[User]:
        """Look up a user by public handle (case-insensitive, leading @ ignored)"""
        if not username or not username.strip():
            return None
        handle = username.strip().lstrip("@").lower()
        result = await db.execute(select(User).where(func.lower(User.username) == handle))
        return result.scalar_one_or_none()

    @staticmethod
    async def update_payment_methods(db: AsyncSession, user: User, data: schemas.PaymentMethodsUpdate) -> User:
        """Update payment handles (blank values clear the handle)"""
        update_data = data.model_dump(exclude_unset=True)
        for field, value in update_data.items():
            if isinstance(value, str):
                value = value.strip() or None
            setattr(user, field, value)

        await db.commit()
        await db.refresh(user)
        return user

    @staticmethod
    async def resolve_display_profiles(db: AsyncSession, user_ids: Iterable[int]) -> Dict[int, DisplayProfile]:
        """
        Resolve display identities for a set of user ids.

        Never raises for missing users: unknown ids map to a placeholder
        profile so that read views keep rendering.
        """
        ids = {uid for uid in user_ids if uid is not None}
        if not ids:
            return {}

        profiles = {uid: DisplayProfile.placeholder(uid) for uid in ids}
        try:
            result = await db.execute(select(User).where(User.id.in_(ids)))
            for user in result.scalars().all():
                profiles[user.id] = DisplayProfile.from_user(user)
        except Exception as e:
            logger.warning(f"Profile lookup failed, using placeholders: {str(e)}")
        return profiles

    @staticmethod
    async def resolve_display_profile(db: AsyncSession, user_id: int) -> DisplayProfile:
        profiles = await UserService.resolve_display_profiles(db, [user_id])
        return profiles.get(user_id, DisplayProfile.placeholder(user_id))
