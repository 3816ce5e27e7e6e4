from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tubely.core.config import get_settings
from tubely.core.security import create_access_token, get_password_hash, verify_password
from tubely.models import User


class AuthenticationError(Exception):
    """Raised when user authentication fails."""


class UserExistsError(Exception):
    """Raised when registering an email that is already taken."""


def _normalize_email(email: str) -> str:
    return email.strip().lower()


async def get_user_by_email(session: AsyncSession, email: str) -> User | None:
    stmt = select(User).where(User.email == _normalize_email(email))
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def create_user(session: AsyncSession, email: str, password: str) -> User:
    if await get_user_by_email(session, email):
        raise UserExistsError("User with this email already exists")

    user = User(email=_normalize_email(email), password_hash=get_password_hash(password))
    session.add(user)
    await session.commit()
    await session.refresh(user)
    return user


async def authenticate_user(session: AsyncSession, email: str, password: str) -> User:
    user = await get_user_by_email(session, email)
    if not user or not verify_password(password, user.password_hash):
        raise AuthenticationError("Invalid credentials")
    return user


def create_token_for_user(user: User) -> str:
    settings = get_settings()
    return create_access_token(
        user.id,
        expires_delta=timedelta(minutes=settings.access_token_expire_minutes),
    )
