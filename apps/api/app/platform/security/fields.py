from __future__ import annotations

from typing import Any

from app.metrics import observe_field_write_denied
from app.platform.security.context import AuthContext
from app.platform.security.errors import ForbiddenFieldError, UnknownFieldError
from app.platform.security.ownership import get_ownership_rule


WRITABLE_FIELDS: dict[str, frozenset[str]] = {
    "lead": frozenset({"name", "email", "phone", "status", "source", "notes"}),
    "customer": frozenset({"name", "email", "phone", "company", "tags", "status", "agent_id"}),
    "task": frozenset(
        {"title", "description", "due_date", "status", "priority", "related_to", "related_id", "agent_id"}
    ),
}


def validate_field_write(resource: str, payload: dict[str, Any], ctx: AuthContext) -> None:
    """Reject fields outside the allow-list, and owner reassignment by non-admins."""

    admin_only = set(get_ownership_rule(resource).admin_only_fields)
    allowed = WRITABLE_FIELDS[resource] | admin_only

    unknown = [field_name for field_name in payload if field_name not in allowed]
    if unknown:
        raise UnknownFieldError(resource=resource, fields=unknown)

    if ctx.is_admin:
        return

    denied = [field_name for field_name in payload if field_name in admin_only]
    if denied:
        observe_field_write_denied(resource, len(denied))
        raise ForbiddenFieldError(resource=resource, fields=denied)
