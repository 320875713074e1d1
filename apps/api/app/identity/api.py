from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from app.core.auth import get_current_actor
from app.core.database import get_db
from app.core.rbac import require_admin
from app.identity.schemas import (
    AccessTokenRead,
    LoginRequest,
    MessageRead,
    ProfileUpdate,
    RefreshRequest,
    TokenPairRead,
    UserCreate,
    UserRead,
    UserRole,
    UserSummary,
    UserUpdate,
)
from app.identity.service import auth_service, user_admin_service
from app.platform.security.context import AuthContext


auth_router = APIRouter(prefix="/api/auth", tags=["auth"])
users_router = APIRouter(prefix="/api/users", tags=["admin.users"])
agents_router = APIRouter(prefix="/api/agents", tags=["agents"])


@auth_router.post("/login", response_model=TokenPairRead)
def login(request: Request, dto: LoginRequest, db: Session = Depends(get_db)) -> TokenPairRead:
    context = getattr(request.state, "context", None)
    return auth_service.login(
        db,
        dto,
        ip_address=getattr(context, "ip_address", None),
        user_agent=getattr(context, "user_agent", None),
    )


@auth_router.post("/refresh", response_model=AccessTokenRead)
def refresh(dto: RefreshRequest, db: Session = Depends(get_db)) -> AccessTokenRead:
    return auth_service.refresh(db, dto)


@auth_router.post("/logout", response_model=MessageRead)
def logout(db: Session = Depends(get_db), actor: AuthContext = Depends(get_current_actor)) -> MessageRead:
    auth_service.logout(db, actor)
    return MessageRead(message="Logged out successfully")


@auth_router.get("/me", response_model=UserRead)
def me(db: Session = Depends(get_db), actor: AuthContext = Depends(get_current_actor)) -> UserRead:
    return auth_service.me(db, actor)


@auth_router.put("/profile", response_model=UserRead)
def update_profile(
    dto: ProfileUpdate,
    db: Session = Depends(get_db),
    actor: AuthContext = Depends(get_current_actor),
) -> UserRead:
    return auth_service.update_profile(db, actor, dto)


@auth_router.post("/register", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def register(
    dto: UserCreate,
    db: Session = Depends(get_db),
    actor: AuthContext = Depends(require_admin),
) -> UserRead:
    return user_admin_service.create_user(db, actor, dto)


@users_router.get("", response_model=list[UserRead])
def list_users(
    role: UserRole | None = Query(default=None),
    is_active: bool | None = Query(default=None),
    db: Session = Depends(get_db),
    _actor: AuthContext = Depends(require_admin),
) -> list[UserRead]:
    return user_admin_service.list_users(db, role=role, is_active=is_active)


@users_router.post("", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def create_user(
    dto: UserCreate,
    db: Session = Depends(get_db),
    actor: AuthContext = Depends(require_admin),
) -> UserRead:
    return user_admin_service.create_user(db, actor, dto)


@users_router.get("/{user_id}", response_model=UserRead)
def get_user(
    user_id: uuid.UUID,
    db: Session = Depends(get_db),
    _actor: AuthContext = Depends(require_admin),
) -> UserRead:
    return user_admin_service.get_user(db, user_id)


@users_router.put("/{user_id}", response_model=UserRead)
@users_router.patch("/{user_id}", response_model=UserRead)
def update_user(
    user_id: uuid.UUID,
    dto: UserUpdate,
    db: Session = Depends(get_db),
    actor: AuthContext = Depends(require_admin),
) -> UserRead:
    return user_admin_service.update_user(db, actor, user_id, dto)


@users_router.patch("/{user_id}/deactivate", response_model=UserRead)
def deactivate_user(
    user_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: AuthContext = Depends(require_admin),
) -> UserRead:
    return user_admin_service.deactivate_user(db, actor, user_id)


@agents_router.get("", response_model=list[UserSummary])
def list_agents(
    db: Session = Depends(get_db),
    _actor: AuthContext = Depends(get_current_actor),
) -> list[UserSummary]:
    return user_admin_service.list_agents(db)
