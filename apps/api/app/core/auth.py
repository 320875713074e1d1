import logging
import uuid
from dataclasses import dataclass

from fastapi import Depends, HTTPException, status
from sqlalchemy.orm import Session
from starlette.requests import Request

from app.context import get_correlation_id
from app.core.database import get_db
from app.identity.security import ACCESS_TOKEN_TYPE, resolve_token
from app.metrics import observe_auth_failure
from app.platform.security.context import AuthContext

logger = logging.getLogger("app.security")


@dataclass
class AuthUser:
    sub: str
    role: str
    name: str
    email: str


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header.replace("Bearer ", "", 1).strip() if auth_header.startswith("Bearer ") else ""


def get_current_user(request: Request, db: Session = Depends(get_db)) -> AuthUser:
    outcome = resolve_token(db, _bearer_token(request), ACCESS_TOKEN_TYPE)
    if not outcome.ok or outcome.user is None:
        observe_auth_failure(outcome.reason or "unknown")
        logger.info("auth.rejected", extra={"reason": outcome.reason})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = outcome.user
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = str(user.id)
    return AuthUser(sub=str(user.id), role=user.role, name=user.name, email=user.email)


def get_current_actor(request: Request, user: AuthUser = Depends(get_current_user)) -> AuthContext:
    context = getattr(request.state, "context", None)
    return AuthContext(
        user_id=uuid.UUID(user.sub),
        role=user.role,
        correlation_id=get_correlation_id() or getattr(context, "correlation_id", None),
        ip_address=getattr(context, "ip_address", None),
        user_agent=getattr(context, "user_agent", None),
    )
