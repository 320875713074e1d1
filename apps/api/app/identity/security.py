"""Credential primitives: password hashing and the two JWT kinds.

Access tokens authenticate every protected request. Refresh tokens are signed
with their own secret and can only mint a new access token.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.identity.models import User

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(12)).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))
    except ValueError:
        return False


def _encode(user: User, token_type: str, secret: str, expires_delta: timedelta) -> str:
    settings = get_settings()
    issued_at = datetime.now(timezone.utc)
    payload: dict[str, Any] = {
        "sub": str(user.id),
        "role": user.role,
        "type": token_type,
        "iat": issued_at,
        "exp": issued_at + expires_delta,
    }
    return jwt.encode(payload, secret, algorithm=settings.jwt_algorithm)


def create_access_token(user: User) -> str:
    settings = get_settings()
    return _encode(
        user,
        ACCESS_TOKEN_TYPE,
        settings.jwt_secret,
        timedelta(minutes=settings.access_token_expire_minutes),
    )


def create_refresh_token(user: User) -> str:
    settings = get_settings()
    return _encode(
        user,
        REFRESH_TOKEN_TYPE,
        settings.jwt_refresh_secret,
        timedelta(days=settings.refresh_token_expire_days),
    )


@dataclass(frozen=True)
class CredentialOutcome:
    """Result of resolving a bearer credential to an active user."""

    user: User | None
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.user is not None


def resolve_token(session: Session, token: str | None, token_type: str = ACCESS_TOKEN_TYPE) -> CredentialOutcome:
    if not token:
        return CredentialOutcome(user=None, reason="missing_token")

    settings = get_settings()
    secret = settings.jwt_refresh_secret if token_type == REFRESH_TOKEN_TYPE else settings.jwt_secret
    try:
        payload = jwt.decode(token, secret, algorithms=[settings.jwt_algorithm])
    except ExpiredSignatureError:
        return CredentialOutcome(user=None, reason="expired_token")
    except JWTError:
        return CredentialOutcome(user=None, reason="invalid_token")

    if payload.get("type") != token_type:
        return CredentialOutcome(user=None, reason="wrong_token_type")

    try:
        user_id = uuid.UUID(str(payload.get("sub")))
    except ValueError:
        return CredentialOutcome(user=None, reason="invalid_subject")

    user = session.scalar(select(User).where(User.id == user_id))
    if user is None:
        return CredentialOutcome(user=None, reason="user_not_found")
    if not user.is_active:
        return CredentialOutcome(user=None, reason="user_inactive")
    return CredentialOutcome(user=user)
