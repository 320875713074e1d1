from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from fastapi import HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.identity.models import User
from app.identity.schemas import (
    AccessTokenRead,
    LoginRequest,
    ProfileUpdate,
    RefreshRequest,
    TokenPairRead,
    UserCreate,
    UserRead,
    UserSummary,
    UserUpdate,
)
from app.identity.security import (
    REFRESH_TOKEN_TYPE,
    create_access_token,
    create_refresh_token,
    hash_password,
    resolve_token,
    verify_password,
)
from app.metrics import observe_auth_failure
from app.platform.security.context import AuthContext
from app.services.activity import record_activity


logger = logging.getLogger("app.security")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _email_taken(session: Session, email: str, exclude_id: uuid.UUID | None = None) -> bool:
    stmt = select(User.id).where(func.lower(User.email) == email.lower())
    if exclude_id is not None:
        stmt = stmt.where(User.id != exclude_id)
    return session.scalar(stmt.limit(1)) is not None


class AuthService:
    def login(
        self,
        session: Session,
        dto: LoginRequest,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> TokenPairRead:
        user = session.scalar(select(User).where(User.email == dto.email))
        if user is None or not verify_password(dto.password, user.password_hash):
            observe_auth_failure("invalid_credentials")
            logger.info("auth.login_failed", extra={"reason": "invalid_credentials"})
            raise _unauthorized("invalid email or password")
        if not user.is_active:
            observe_auth_failure("user_inactive")
            logger.info("auth.login_failed", extra={"reason": "user_inactive", "user_id": str(user.id)})
            raise _unauthorized("account is deactivated")

        user.last_login_at = utcnow()
        session.commit()

        actor = AuthContext(
            user_id=user.id,
            role=user.role,
            correlation_id=get_correlation_id(),
            ip_address=ip_address,
            user_agent=user_agent,
        )
        record_activity(
            session,
            action="User logged in",
            entity_type="User",
            entity_id=user.id,
            actor=actor,
            details={"email": user.email},
        )
        return TokenPairRead(
            user=UserRead.model_validate(user),
            access_token=create_access_token(user),
            refresh_token=create_refresh_token(user),
        )

    def refresh(self, session: Session, dto: RefreshRequest) -> AccessTokenRead:
        outcome = resolve_token(session, dto.refresh_token, REFRESH_TOKEN_TYPE)
        if not outcome.ok or outcome.user is None:
            observe_auth_failure(outcome.reason or "unknown")
            logger.info("auth.refresh_rejected", extra={"reason": outcome.reason})
            raise _unauthorized("invalid refresh token")
        return AccessTokenRead(user=UserRead.model_validate(outcome.user), access_token=create_access_token(outcome.user))

    def logout(self, session: Session, actor: AuthContext) -> None:
        # Tokens are stateless; logout only leaves a trail entry.
        record_activity(
            session,
            action="User logged out",
            entity_type="User",
            entity_id=actor.user_id,
            actor=actor,
        )

    def me(self, session: Session, actor: AuthContext) -> UserRead:
        user = session.scalar(select(User).where(User.id == actor.user_id))
        if user is None:
            raise _unauthorized("not authenticated")
        return UserRead.model_validate(user)

    def update_profile(self, session: Session, actor: AuthContext, dto: ProfileUpdate) -> UserRead:
        user = session.scalar(select(User).where(User.id == actor.user_id))
        if user is None:
            raise _unauthorized("not authenticated")
        payload = dto.model_dump(exclude_unset=True, exclude_none=True)
        if "email" in payload and _email_taken(session, payload["email"], user.id):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="email already in use")

        for field_name, value in payload.items():
            setattr(user, field_name, value.strip() if field_name == "name" else value)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="email already in use")

        record_activity(
            session,
            action="User profile updated",
            entity_type="User",
            entity_id=user.id,
            actor=actor,
            details={"fields": sorted(payload)},
        )
        return UserRead.model_validate(user)


class UserAdminService:
    def _get(self, session: Session, user_id: uuid.UUID) -> User:
        user = session.scalar(select(User).where(User.id == user_id))
        if user is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="user not found")
        return user

    def create_user(self, session: Session, actor: AuthContext, dto: UserCreate) -> UserRead:
        if _email_taken(session, dto.email):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="user already exists")
        user = User(name=dto.name, email=dto.email, password_hash=hash_password(dto.password), role=dto.role)
        session.add(user)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="user already exists")

        record_activity(
            session,
            action="User created",
            entity_type="User",
            entity_id=user.id,
            actor=actor,
            details={"email": user.email, "role": user.role},
        )
        return UserRead.model_validate(user)

    def list_users(self, session: Session, role: str | None = None, is_active: bool | None = None) -> list[UserRead]:
        stmt = select(User)
        if role is not None:
            stmt = stmt.where(User.role == role)
        if is_active is not None:
            stmt = stmt.where(User.is_active.is_(is_active))
        rows = session.scalars(stmt.order_by(User.name.asc(), User.id.asc())).all()
        return [UserRead.model_validate(row) for row in rows]

    def get_user(self, session: Session, user_id: uuid.UUID) -> UserRead:
        return UserRead.model_validate(self._get(session, user_id))

    def update_user(self, session: Session, actor: AuthContext, user_id: uuid.UUID, dto: UserUpdate) -> UserRead:
        user = self._get(session, user_id)
        payload = dto.model_dump(exclude_unset=True, exclude_none=True)
        if "email" in payload and _email_taken(session, payload["email"], user.id):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="user already exists")
        if user.id == actor.user_id and (payload.get("role", "admin") != "admin" or payload.get("is_active") is False):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="cannot demote or deactivate yourself")

        password = payload.pop("password", None)
        if password is not None:
            user.password_hash = hash_password(password)
        for field_name, value in payload.items():
            setattr(user, field_name, value.strip() if field_name == "name" else value)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="user already exists")

        fields = sorted(payload) + (["password"] if password is not None else [])
        record_activity(
            session,
            action="User updated",
            entity_type="User",
            entity_id=user.id,
            actor=actor,
            details={"fields": fields},
        )
        return UserRead.model_validate(user)

    def deactivate_user(self, session: Session, actor: AuthContext, user_id: uuid.UUID) -> UserRead:
        user = self._get(session, user_id)
        if user.id == actor.user_id:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="cannot demote or deactivate yourself")
        user.is_active = False
        session.commit()

        record_activity(
            session,
            action="User deactivated",
            entity_type="User",
            entity_id=user.id,
            actor=actor,
            details={"email": user.email},
        )
        return UserRead.model_validate(user)

    def list_agents(self, session: Session) -> list[UserSummary]:
        rows = session.scalars(
            select(User).where(User.role == "agent", User.is_active.is_(True)).order_by(User.name.asc(), User.id.asc())
        ).all()
        return [UserSummary.model_validate(row) for row in rows]


auth_service = AuthService()
user_admin_service = UserAdminService()
