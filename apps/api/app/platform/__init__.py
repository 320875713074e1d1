from app.platform.security import (
    AuthContext,
    AuthorizationError,
    BaseRepository,
    ForbiddenFieldError,
    OwnershipCheck,
    apply_ownership_filter,
    check_single_ownership,
    resolve_ownership_filter,
    validate_field_write,
)

__all__ = [
    "AuthContext",
    "AuthorizationError",
    "BaseRepository",
    "ForbiddenFieldError",
    "OwnershipCheck",
    "apply_ownership_filter",
    "check_single_ownership",
    "resolve_ownership_filter",
    "validate_field_write",
]
