from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import ColumnElement, or_
from sqlalchemy.orm import Session
from sqlalchemy.sql import Select

from app.platform.security.context import AuthContext
from app.platform.security.fields import validate_field_write
from app.platform.security.ownership import OwnershipCheck, apply_ownership_filter, check_single_ownership

LIKE_ESCAPE = "\\"


def contains_pattern(term: str) -> str:
    """Wrap ``term`` for a substring ``ilike`` with its wildcards taken literally."""
    escaped = term.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2).replace("%", LIKE_ESCAPE + "%").replace("_", LIKE_ESCAPE + "_")
    return f"%{escaped}%"


class BaseRepository:
    resource = ""
    model: Any = None
    search_fields: tuple[str, ...] = ()
    # (relationship, column on the related row) pairs matched per element
    related_search_fields: tuple[tuple[str, str], ...] = ()

    def build_search(self, term: str | None) -> ColumnElement[bool] | None:
        if term is None or not term.strip():
            return None
        pattern = contains_pattern(term.strip())
        clauses = [
            getattr(self.model, field_name).ilike(pattern, escape=LIKE_ESCAPE) for field_name in self.search_fields
        ]
        for relation_name, column_name in self.related_search_fields:
            relation = getattr(self.model, relation_name)
            target = relation.property.mapper.class_
            clauses.append(relation.any(getattr(target, column_name).ilike(pattern, escape=LIKE_ESCAPE)))
        return or_(*clauses)

    def apply_scope_query(self, query: Select[Any], ctx: AuthContext, search: str | None = None) -> Select[Any]:
        return apply_ownership_filter(query, self.model, self.resource, ctx, self.build_search(search))

    def check_ownership(
        self,
        session: Session,
        entity_id: uuid.UUID,
        ctx: AuthContext,
        *criteria: ColumnElement[bool],
    ) -> OwnershipCheck:
        return check_single_ownership(session, self.model, self.resource, entity_id, ctx, *criteria)

    def validate_write_security(self, payload: dict[str, Any], ctx: AuthContext) -> None:
        validate_field_write(self.resource, payload, ctx)
