from app.platform.security.context import AuthContext
from app.platform.security.errors import AuthorizationError, ForbiddenFieldError, UnknownFieldError
from app.platform.security.fields import WRITABLE_FIELDS, validate_field_write
from app.platform.security.ownership import (
    OWNERSHIP_RULES,
    OwnershipCheck,
    OwnershipRule,
    apply_ownership_filter,
    check_single_ownership,
    resolve_ownership_filter,
)
from app.platform.security.repository import BaseRepository

__all__ = [
    "AuthContext",
    "AuthorizationError",
    "ForbiddenFieldError",
    "UnknownFieldError",
    "WRITABLE_FIELDS",
    "validate_field_write",
    "OWNERSHIP_RULES",
    "OwnershipCheck",
    "OwnershipRule",
    "apply_ownership_filter",
    "check_single_ownership",
    "resolve_ownership_filter",
    "BaseRepository",
]
