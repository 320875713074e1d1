"""Activity trail: best-effort writes and role-scoped reads.

Recording always happens after the operation it describes has committed, in
its own transaction. A failed write is logged and counted, never raised.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import Select, func, select
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.metrics import observe_activity_record
from app.models.activity import ACTIVITY_ENTITY_TYPES, Activity
from app.platform.security.context import AuthContext
from app.platform.security.repository import LIKE_ESCAPE, contains_pattern


logger = logging.getLogger("app.activity")


@dataclass(frozen=True)
class RecordOutcome:
    recorded: bool
    activity_id: uuid.UUID | None = None
    error: str | None = None


def _build_activity(
    action: str,
    entity_type: str,
    entity_id: uuid.UUID | str,
    actor: AuthContext,
    details: dict[str, Any] | None,
) -> Activity:
    if entity_type not in ACTIVITY_ENTITY_TYPES:
        raise ValueError(f"unsupported activity entity type '{entity_type}'")
    return Activity(
        action=action[:100],
        entity_type=entity_type,
        entity_id=str(entity_id),
        performed_by_id=actor.user_id,
        details=details or {},
        ip_address=actor.ip_address,
        user_agent=(actor.user_agent or "")[:255] or None,
        correlation_id=actor.correlation_id or get_correlation_id(),
    )


def record_activity(
    session: Session,
    *,
    action: str,
    entity_type: str,
    entity_id: uuid.UUID | str,
    actor: AuthContext,
    details: dict[str, Any] | None = None,
) -> RecordOutcome:
    try:
        activity = _build_activity(action, entity_type, entity_id, actor, details)
        session.add(activity)
        session.commit()
    except Exception as exc:
        session.rollback()
        observe_activity_record(entity_type, recorded=False)
        logger.exception(
            "activity.record_failed",
            extra={
                "action": action,
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "user_id": str(actor.user_id),
                "error": str(exc),
            },
        )
        return RecordOutcome(recorded=False, error=str(exc)[:500])

    observe_activity_record(entity_type, recorded=True)
    return RecordOutcome(recorded=True, activity_id=activity.id)


class ActivityService:
    def _scoped(self, stmt: Select[Any], actor: AuthContext) -> Select[Any]:
        if actor.is_admin:
            return stmt
        return stmt.where(Activity.performed_by_id == actor.user_id)

    def list_activity(
        self,
        session: Session,
        actor: AuthContext,
        filters: dict[str, Any],
        page: int,
        limit: int,
    ) -> tuple[list[Activity], int]:
        stmt: Select[tuple[Activity]] = select(Activity)
        if filters.get("entity_type"):
            stmt = stmt.where(Activity.entity_type == filters["entity_type"])
        if filters.get("action"):
            stmt = stmt.where(Activity.action.ilike(contains_pattern(filters["action"]), escape=LIKE_ESCAPE))
        if filters.get("user_id") and actor.is_admin:
            stmt = stmt.where(Activity.performed_by_id == filters["user_id"])
        stmt = self._scoped(stmt, actor)

        total = session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        rows = session.scalars(
            stmt.order_by(Activity.created_at.desc(), Activity.id.desc()).offset((page - 1) * limit).limit(limit)
        ).all()
        return list(rows), int(total)

    def recent_activity(self, session: Session, actor: AuthContext, limit: int = 10) -> list[Activity]:
        stmt = self._scoped(select(Activity), actor)
        return list(session.scalars(stmt.order_by(Activity.created_at.desc(), Activity.id.desc()).limit(limit)).all())

    def entity_activity(
        self,
        session: Session,
        actor: AuthContext,
        entity_type: str,
        entity_id: str,
        limit: int = 50,
    ) -> list[Activity]:
        if entity_type not in ACTIVITY_ENTITY_TYPES:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid entity type")
        stmt = self._scoped(
            select(Activity).where(Activity.entity_type == entity_type, Activity.entity_id == entity_id),
            actor,
        )
        return list(session.scalars(stmt.order_by(Activity.created_at.desc(), Activity.id.desc()).limit(limit)).all())

    def log_manual(
        self,
        session: Session,
        actor: AuthContext,
        *,
        action: str,
        entity_type: str,
        entity_id: str,
        details: dict[str, Any],
    ) -> Activity:
        # A manual entry is the operation itself, so a failed write is reported.
        outcome = record_activity(
            session,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            actor=actor,
            details=details,
        )
        activity = session.get(Activity, outcome.activity_id) if outcome.recorded else None
        if activity is None:
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="failed to record activity")
        return activity


activity_service = ActivityService()
