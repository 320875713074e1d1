from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import ColumnElement, func, select
from sqlalchemy.orm import Session

from app.crm.models import LEAD_STATUSES, Customer, Lead, Task
from app.crm.schemas import (
    ActivityRead,
    CountBucket,
    DashboardCharts,
    DashboardOverview,
    DashboardRead,
    DashboardRecent,
    DashboardStats,
    DailyCount,
    LeadRead,
    LeadsAnalyticsRead,
    QuickStatsRead,
    TaskRead,
)
from app.platform.security.context import AuthContext
from app.platform.security.ownership import resolve_ownership_filter
from app.services.activity import activity_service


logger = logging.getLogger("app.crm.dashboard")

RANGE_DAYS = {"week": 7, "month": 30, "quarter": 90}
DEFAULT_RANGE = "week"
OPEN_TASK_STATUSES = ("Open", "In Progress")
TOP_SOURCES = 5
ANALYTICS_TOP_SOURCES = 8
ANALYTICS_MAX_DAYS = 14


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_range(time_range: str | None) -> str:
    if time_range in RANGE_DAYS:
        return time_range
    return DEFAULT_RANGE


class DashboardService:
    """Role-scoped counts, breakdowns and feeds for the landing page.

    ``time_range`` only labels the summary; the counts cover every record the
    caller can see. ``leads_analytics`` is the one view bounded by the range.
    """

    def _lead_scope(self, actor: AuthContext) -> list[ColumnElement[bool]]:
        return [Lead.is_archived.is_(False), resolve_ownership_filter(Lead, "lead", actor)]

    def _count(self, session: Session, column: ColumnElement, *criteria: ColumnElement[bool]) -> int:
        return int(session.scalar(select(func.count(column)).where(*criteria)) or 0)

    def _status_buckets(self, session: Session, *criteria: ColumnElement[bool]) -> list[CountBucket]:
        rows = session.execute(select(Lead.status, func.count(Lead.id)).where(*criteria).group_by(Lead.status)).all()
        counts = {row[0]: int(row[1]) for row in rows}
        return [CountBucket(name=name, value=counts.get(name, 0)) for name in LEAD_STATUSES]

    def _source_buckets(self, session: Session, limit: int, *criteria: ColumnElement[bool]) -> list[CountBucket]:
        count_column = func.count(Lead.id)
        rows = session.execute(
            select(Lead.source, count_column)
            .where(*criteria)
            .group_by(Lead.source)
            .order_by(count_column.desc(), Lead.source.asc())
            .limit(limit)
        ).all()
        return [CountBucket(name=row[0] or "Unknown", value=int(row[1])) for row in rows]

    def quick_stats(self, session: Session, actor: AuthContext) -> QuickStatsRead:
        now = utcnow()
        task_scope = resolve_ownership_filter(Task, "task", actor)
        return QuickStatsRead(
            total_leads=self._count(session, Lead.id, *self._lead_scope(actor)),
            total_customers=self._count(session, Customer.id, resolve_ownership_filter(Customer, "customer", actor)),
            open_tasks=self._count(session, Task.id, task_scope, Task.status.in_(OPEN_TASK_STATUSES)),
            overdue_tasks=self._count(
                session,
                Task.id,
                task_scope,
                Task.status.in_(OPEN_TASK_STATUSES),
                Task.due_date < now,
            ),
        )

    def summarize(self, session: Session, actor: AuthContext, time_range: str | None = None) -> DashboardRead:
        selected = normalize_range(time_range)
        lead_scope = self._lead_scope(actor)
        task_scope = resolve_ownership_filter(Task, "task", actor)

        counts = self.quick_stats(session, actor)
        closed_won = self._count(session, Lead.id, *lead_scope, Lead.status == "Closed Won")
        conversion_rate = round(closed_won / counts.total_leads * 100) if counts.total_leads else 0

        recent_leads = session.scalars(
            select(Lead).where(*lead_scope).order_by(Lead.created_at.desc(), Lead.id.desc()).limit(5)
        ).all()
        upcoming_tasks = session.scalars(
            select(Task)
            .where(task_scope)
            .order_by(Task.due_date.asc(), Task.id.asc())
            .limit(5)
        ).all()
        recent_activity = activity_service.recent_activity(session, actor, limit=10)

        logger.debug("dashboard.summarized", extra={"user_id": str(actor.user_id), "action": selected})
        return DashboardRead(
            stats=DashboardStats(
                total_leads=counts.total_leads,
                total_customers=counts.total_customers,
                open_tasks=counts.open_tasks,
                overdue_tasks=counts.overdue_tasks,
                closed_won_leads=closed_won,
                conversion_rate=conversion_rate,
            ),
            charts=DashboardCharts(
                lead_status=self._status_buckets(session, *lead_scope),
                leads_by_source=self._source_buckets(session, TOP_SOURCES, *lead_scope),
            ),
            recent=DashboardRecent(
                leads=[LeadRead.model_validate(row) for row in recent_leads],
                tasks=[TaskRead.model_validate(row) for row in upcoming_tasks],
                activity=[ActivityRead.model_validate(row) for row in recent_activity],
            ),
            overview=DashboardOverview(
                time_range=selected,
                range_days=RANGE_DAYS[selected],
                generated_at=utcnow(),
                user_role=actor.role,
            ),
        )

    def leads_analytics(self, session: Session, actor: AuthContext, time_range: str | None = None) -> LeadsAnalyticsRead:
        selected = normalize_range(time_range)
        since = utcnow() - timedelta(days=RANGE_DAYS[selected])
        criteria = [*self._lead_scope(actor), Lead.created_at >= since]

        day = func.date(Lead.created_at)
        rows = session.execute(
            select(day, func.count(Lead.id)).where(*criteria).group_by(day).order_by(day.desc()).limit(ANALYTICS_MAX_DAYS)
        ).all()
        by_date = [DailyCount(date=str(row[0]), count=int(row[1])) for row in reversed(rows)]

        return LeadsAnalyticsRead(
            time_range=selected,
            leads_by_date=by_date,
            leads_by_status=self._status_buckets(session, *criteria),
            leads_by_source=self._source_buckets(session, ANALYTICS_TOP_SOURCES, *criteria),
        )


dashboard_service = DashboardService()
