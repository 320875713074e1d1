from __future__ import annotations

from typing import Any

from sqlalchemy import ColumnElement, Select, func, select
from sqlalchemy.orm import Session

from app.crm.models import Customer, Lead, Task
from app.platform.security.context import AuthContext
from app.platform.security.repository import BaseRepository


class ListingRepository(BaseRepository):
    """Adds sorting and page slicing on top of the ownership-scoped query."""

    sort_fields: tuple[str, ...] = ("created_at",)
    default_sort: tuple[str, str] = ("created_at", "desc")

    def base_query(self) -> Select[Any]:
        return select(self.model)

    def resolve_sort(self, sort_by: str | None, sort_order: str | None) -> tuple[str, str]:
        field_name = sort_by or self.default_sort[0]
        if field_name not in self.sort_fields:
            raise ValueError(f"cannot sort by '{field_name}'")
        direction = sort_order or self.default_sort[1]
        return field_name, direction

    def page(
        self,
        session: Session,
        ctx: AuthContext,
        *,
        page: int,
        limit: int,
        search: str | None = None,
        sort_by: str | None = None,
        sort_order: str | None = None,
        criteria: list[ColumnElement[bool]] | None = None,
    ) -> tuple[list[Any], int]:
        field_name, direction = self.resolve_sort(sort_by, sort_order)
        stmt = self.apply_scope_query(self.base_query(), ctx, search)
        if criteria:
            stmt = stmt.where(*criteria)

        total = session.scalar(select(func.count()).select_from(stmt.order_by(None).subquery())) or 0
        column = getattr(self.model, field_name)
        ordering = column.asc() if direction == "asc" else column.desc()
        rows = session.scalars(
            stmt.order_by(ordering, self.model.id.asc()).offset((page - 1) * limit).limit(limit)
        ).all()
        return list(rows), int(total)


class LeadRepository(ListingRepository):
    resource = "lead"
    model = Lead
    search_fields = ("name", "email", "phone", "source")
    sort_fields = ("name", "email", "status", "source", "created_at", "updated_at")
    default_sort = ("created_at", "desc")

    def base_query(self) -> Select[Any]:
        return select(Lead).where(Lead.is_archived.is_(False))


class CustomerRepository(ListingRepository):
    resource = "customer"
    model = Customer
    search_fields = ("name", "email", "company")
    related_search_fields = (("tag_entries", "value"),)
    sort_fields = ("name", "email", "company", "status", "created_at", "updated_at")
    default_sort = ("created_at", "desc")


class TaskRepository(ListingRepository):
    resource = "task"
    model = Task
    search_fields = ("title", "description")
    sort_fields = ("title", "due_date", "status", "priority", "created_at", "updated_at")
    default_sort = ("due_date", "asc")


lead_repository = LeadRepository()
customer_repository = CustomerRepository()
task_repository = TaskRepository()
