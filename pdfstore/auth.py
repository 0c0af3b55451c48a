import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from werkzeug.security import check_password_hash, generate_password_hash

from .errors import AuthenticationError, ValidationError
from .helpers import is_valid_email, normalize_email
from .model.db import User

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8


@dataclass
class SessionUser:
    id: Optional[str]
    email: str
    role: str = "customer"

    def as_session(self) -> dict:
        return {"id": self.id, "email": self.email, "role": self.role}


async def get_user_by_email(db: AsyncSession, email: str) -> Optional[User]:
    result = await db.execute(
        select(User).where(User.email == normalize_email(email))
    )
    return result.scalars().first()


async def register_user(
    db: AsyncSession, email: str, password: str, name: str = ""
) -> User:
    email = normalize_email(email)
    if not is_valid_email(email):
        raise ValidationError("A valid email is required")
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"Password must have at least {MIN_PASSWORD_LENGTH} characters"
        )
    if await get_user_by_email(db, email) is not None:
        raise ValidationError("Email already registered")
    user = User(
        email=email,
        name=(name or "").strip(),
        password_hash=generate_password_hash(password),
    )
    db.add(user)
    await db.commit()
    logger.info("registered user %s", user.id)
    return user


async def authenticate(db: AsyncSession, email: str, password: str) -> User:
    user = await get_user_by_email(db, email)
    if user is None or not check_password_hash(
        user.password_hash, password or ""
    ):
        raise AuthenticationError("Invalid email or password")
    return user


def login_session(request: Request, user: User) -> SessionUser:
    su = SessionUser(id=user.id, email=user.email, role=user.role)
    request.session["user"] = su.as_session()
    return su


def session_user(request: Request) -> Optional[SessionUser]:
    data = request.session.get("user")
    if not data or not data.get("id"):
        return None
    return SessionUser(
        id=data["id"], email=data.get("email", ""),
        role=data.get("role", "customer"),
    )
