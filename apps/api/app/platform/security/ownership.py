"""Role-scoped record visibility.

Every owned entity type is described once in ``OWNERSHIP_RULES``. List queries,
single-record checks and the field allow-list all read from that table, so an
entity never needs its own branch.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy import ColumnElement, and_, or_, select, true
from sqlalchemy.orm import Session
from sqlalchemy.sql import Select

from app.metrics import observe_ownership_denied
from app.platform.security.context import AuthContext

logger = logging.getLogger("app.security")


@dataclass(frozen=True)
class OwnershipRule:
    fields: tuple[str, ...]
    admin_only_fields: tuple[str, ...] = ()


OWNERSHIP_RULES: dict[str, OwnershipRule] = {
    "lead": OwnershipRule(fields=("assigned_agent_id",), admin_only_fields=("assigned_agent_id",)),
    "customer": OwnershipRule(fields=("owner_id", "agent_id"), admin_only_fields=("owner_id",)),
    "task": OwnershipRule(fields=("assigned_to_id", "agent_id"), admin_only_fields=("assigned_to_id",)),
}


def get_ownership_rule(entity_type: str) -> OwnershipRule:
    try:
        return OWNERSHIP_RULES[entity_type]
    except KeyError:
        raise ValueError(f"no ownership rule for entity type '{entity_type}'") from None


def resolve_ownership_filter(model: Any, entity_type: str, ctx: AuthContext) -> ColumnElement[bool]:
    """Return the visibility predicate for ``ctx``: unconditional for admins, an OR over owner columns otherwise."""

    if ctx.is_admin:
        return true()
    rule = get_ownership_rule(entity_type)
    return or_(*(getattr(model, field_name) == ctx.user_id for field_name in rule.fields))


def apply_ownership_filter(
    query: Select[Any],
    model: Any,
    entity_type: str,
    ctx: AuthContext,
    search: ColumnElement[bool] | None = None,
) -> Select[Any]:
    """Scope ``query`` to the caller, keeping the ownership and search groups separate.

    The two predicates are joined as ``(owner OR ...) AND (search OR ...)``; a single
    flattened OR would return unowned rows that match the search text.
    """

    ownership = resolve_ownership_filter(model, entity_type, ctx)
    if search is None:
        return query.where(ownership)
    return query.where(and_(ownership.self_group(), search.self_group()))


def owns_record(record: Any, entity_type: str, ctx: AuthContext) -> bool:
    rule = get_ownership_rule(entity_type)
    return any(getattr(record, field_name) == ctx.user_id for field_name in rule.fields)


@dataclass(frozen=True)
class OwnershipCheck:
    allowed: bool
    record: Any = None
    reason: str | None = None


def check_single_ownership(
    session: Session,
    model: Any,
    entity_type: str,
    entity_id: uuid.UUID,
    ctx: AuthContext,
    *criteria: ColumnElement[bool],
) -> OwnershipCheck:
    """Load one record and test it against the caller.

    Admins always pass, with ``record`` left as ``None`` when the id does not
    resolve. Everyone else fails closed: a missing record and somebody else's
    record produce the same denial.
    """

    record = session.scalar(select(model).where(model.id == entity_id, *criteria))
    if ctx.is_admin:
        return OwnershipCheck(allowed=True, record=record, reason=None if record is not None else "not_found")

    if record is None:
        reason = "not_found"
    elif owns_record(record, entity_type, ctx):
        return OwnershipCheck(allowed=True, record=record)
    else:
        reason = "not_owner"

    observe_ownership_denied(entity_type=entity_type, reason=reason)
    logger.info(
        "ownership.denied",
        extra={
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "user_id": str(ctx.user_id),
            "reason": reason,
        },
    )
    return OwnershipCheck(allowed=False, record=None, reason=reason)
