from collections.abc import Callable

from fastapi import Depends, HTTPException, status

from app.core.auth import get_current_actor
from app.platform.security.context import AuthContext


def ensure_roles(actor: AuthContext, *roles: str) -> None:
    if actor.role not in roles:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Role '{actor.role}' is not allowed to perform this action",
        )


def require_roles(*roles: str) -> Callable[[AuthContext], AuthContext]:
    def checker(actor: AuthContext = Depends(get_current_actor)) -> AuthContext:
        ensure_roles(actor, *roles)
        return actor

    return checker


require_admin = require_roles("admin")
