"""Account helpers: password hashing, registration and credential checks."""

from __future__ import annotations

from datetime import timedelta
from typing import Optional

from passlib.context import CryptContext
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from logbook.db.models import Profile, Role, User, UserStats
from logbook.time_utils import ensure_utc, utc_now

# Password hashing context using bcrypt
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

LOCKOUT_THRESHOLD = 5
LOCKOUT_DURATION = timedelta(minutes=15)


class DuplicateEmailError(ValueError):
    """Raised when registering an email that already has an account."""


def hash_password(password: str) -> str:
    """Hash a plaintext password using a secure algorithm."""

    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    """Verify a plaintext password against a stored hash."""

    try:
        return pwd_context.verify(password, hashed)
    except (ValueError, TypeError):
        return False


def normalise_email(email: str) -> str:
    return email.strip().lower()


def find_user_by_email(session: Session, email: str) -> Optional[User]:
    return session.execute(
        select(User).where(func.lower(User.email) == normalise_email(email))
    ).scalar_one_or_none()


def register_user(
    session: Session,
    email: str,
    password: str,
    role: str = Role.STUDENT.value,
    *,
    full_name: Optional[str] = None,
) -> User:
    """Create a user with an empty profile and zeroed stats.

    Raises:
        DuplicateEmailError: when *email* is already registered.
    """

    resolved_email = normalise_email(email)
    if find_user_by_email(session, resolved_email) is not None:
        raise DuplicateEmailError(resolved_email)
    user = User(
        email=resolved_email,
        password_hash=hash_password(password),
        full_name=full_name or resolved_email.split("@", 1)[0],
        role=role,
    )
    session.add(user)
    session.flush()
    session.add(Profile(user_id=user.id))
    session.add(UserStats(user_id=user.id))
    session.flush()
    return user


def authenticate_user(session: Session, email: str, password: str) -> Optional[User]:
    """Validate credentials, tracking failures and temporary lockouts.

    Returns the user when the credentials are valid, otherwise ``None``.
    """

    user = find_user_by_email(session, email)
    if user is None:
        return None

    now = utc_now()
    if user.account_locked_until and ensure_utc(user.account_locked_until) > now:
        return None

    if verify_password(password, user.password_hash):
        user.failed_login_attempts = 0
        user.account_locked_until = None
        user.last_login = now
        session.flush()
        return user

    attempts = (user.failed_login_attempts or 0) + 1
    user.failed_login_attempts = attempts
    if attempts >= LOCKOUT_THRESHOLD:
        user.account_locked_until = now + LOCKOUT_DURATION
    session.flush()
    return None


def validate_password_strength(password: str) -> None:
    if len(password) < 8:
        raise ValueError("Password must be at least 8 characters long")
    if not any(ch.isalpha() for ch in password):
        raise ValueError("Password must include a letter")
    if not any(ch.isdigit() for ch in password):
        raise ValueError("Password must include a number")


__all__ = [
    "DuplicateEmailError",
    "LOCKOUT_THRESHOLD",
    "authenticate_user",
    "find_user_by_email",
    "hash_password",
    "normalise_email",
    "register_user",
    "validate_password_strength",
    "verify_password",
]
