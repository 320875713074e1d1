from __future__ import annotations

import logging
import math
import uuid
from datetime import datetime, timezone
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import ColumnElement, case, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.crm.models import LEAD_STATUSES, Customer, CustomerNote, Lead, Task
from app.crm.repositories import (
    ListingRepository,
    customer_repository,
    lead_repository,
    task_repository,
)
from app.crm.schemas import (
    CountBucket,
    CustomerCreate,
    CustomerListRead,
    CustomerNoteCreate,
    CustomerNoteRead,
    CustomerRead,
    CustomerUpdate,
    LeadCreate,
    LeadListRead,
    LeadRead,
    LeadStatusStats,
    LeadUpdate,
    ListParams,
    RelatedEntityRead,
    TaskCreate,
    TaskListRead,
    TaskRead,
    TaskStats,
    TaskUpdate,
)
from app.identity.models import User
from app.platform.security.context import AuthContext
from app.platform.security.errors import ForbiddenFieldError, UnknownFieldError
from app.platform.security.ownership import OwnershipCheck, resolve_ownership_filter
from app.services.activity import record_activity


logger = logging.getLogger("app.crm")

OPEN_TASK_STATUSES = ("Open", "In Progress")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def page_payload(items: list[Any], total: int, page: int, limit: int) -> dict[str, Any]:
    return {
        "items": items,
        "current_page": page,
        "total_pages": math.ceil(total / limit) if limit else 0,
        "total_count": total,
    }


def require_owned(check: OwnershipCheck, label: str) -> Any:
    if not check.allowed:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"not authorized to access this {label}")
    if check.record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{label} not found")
    return check.record


def enforce_field_security(repository: ListingRepository, payload: dict[str, Any], actor: AuthContext) -> None:
    try:
        repository.validate_write_security(payload, actor)
    except ForbiddenFieldError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except UnknownFieldError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


def reject_nulls(payload: dict[str, Any], fields: tuple[str, ...]) -> None:
    nulls = [name for name in fields if name in payload and payload[name] is None]
    if nulls:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"fields cannot be null: {', '.join(sorted(nulls))}",
        )


def ensure_active_user(session: Session, user_id: uuid.UUID, label: str) -> User:
    user = session.scalar(select(User).where(User.id == user_id))
    if user is None or not user.is_active:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"{label} not found or inactive")
    return user


def resolve_assignee(session: Session, actor: AuthContext, requested: uuid.UUID | None, field_name: str) -> uuid.UUID:
    """Agents always own what they create; admins may hand it to another active user."""

    if requested is None or requested == actor.user_id:
        return actor.user_id
    if not actor.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"only admins can set {field_name}",
        )
    ensure_active_user(session, requested, field_name)
    return requested


def commit_or_conflict(session: Session, detail: str) -> None:
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)


class LeadService:
    entity_type = "Lead"
    repository = lead_repository

    def _email_taken(self, session: Session, email: str, exclude_id: uuid.UUID | None = None) -> bool:
        stmt = select(Lead.id).where(Lead.email == email, Lead.is_archived.is_(False))
        if exclude_id is not None:
            stmt = stmt.where(Lead.id != exclude_id)
        return session.scalar(stmt.limit(1)) is not None

    def _load(self, session: Session, actor: AuthContext, lead_id: uuid.UUID) -> Lead:
        check = self.repository.check_ownership(session, lead_id, actor, Lead.is_archived.is_(False))
        return require_owned(check, "lead")

    def create_lead(self, session: Session, actor: AuthContext, dto: LeadCreate) -> LeadRead:
        assigned_agent_id = resolve_assignee(session, actor, dto.assigned_agent_id, "assigned_agent_id")
        if self._email_taken(session, dto.email):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="a lead with this email already exists")

        lead = Lead(
            name=dto.name,
            email=dto.email,
            phone=dto.phone,
            status=dto.status,
            source=dto.source,
            notes=dto.notes,
            assigned_agent_id=assigned_agent_id,
        )
        session.add(lead)
        commit_or_conflict(session, "a lead with this email already exists")

        record_activity(
            session,
            action="Lead created",
            entity_type=self.entity_type,
            entity_id=lead.id,
            actor=actor,
            details={"name": lead.name, "email": lead.email, "status": lead.status},
        )
        return LeadRead.model_validate(lead)

    def list_leads(
        self,
        session: Session,
        actor: AuthContext,
        params: ListParams,
        filters: dict[str, Any],
    ) -> LeadListRead:
        criteria: list[ColumnElement[bool]] = []
        status_filter = filters.get("status")
        if status_filter and status_filter != "All":
            if status_filter not in LEAD_STATUSES:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid lead status")
            criteria.append(Lead.status == status_filter)
        if filters.get("source"):
            criteria.append(Lead.source == filters["source"])

        try:
            rows, total = self.repository.page(
                session,
                actor,
                page=params.page,
                limit=params.limit,
                search=params.search,
                sort_by=params.sort_by,
                sort_order=params.sort_order,
                criteria=criteria,
            )
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        items = [LeadRead.model_validate(row) for row in rows]
        return LeadListRead(**page_payload(items, total, params.page, params.limit))

    def get_lead(self, session: Session, actor: AuthContext, lead_id: uuid.UUID) -> LeadRead:
        return LeadRead.model_validate(self._load(session, actor, lead_id))

    def update_lead(self, session: Session, actor: AuthContext, lead_id: uuid.UUID, dto: LeadUpdate) -> LeadRead:
        lead = self._load(session, actor, lead_id)
        payload = dto.model_dump(exclude_unset=True)
        enforce_field_security(self.repository, payload, actor)
        reject_nulls(payload, ("name", "email", "status", "assigned_agent_id"))
        if not payload:
            return LeadRead.model_validate(lead)

        if "email" in payload and payload["email"] != lead.email and self._email_taken(session, payload["email"], lead.id):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="a lead with this email already exists")
        if "assigned_agent_id" in payload:
            ensure_active_user(session, payload["assigned_agent_id"], "assigned_agent_id")

        previous_status = lead.status
        for field_name, value in payload.items():
            setattr(lead, field_name, value)
        commit_or_conflict(session, "a lead with this email already exists")

        details: dict[str, Any] = {"fields": sorted(payload)}
        if lead.status != previous_status:
            details["status"] = {"from": previous_status, "to": lead.status}
        record_activity(
            session,
            action="Lead updated",
            entity_type=self.entity_type,
            entity_id=lead.id,
            actor=actor,
            details=details,
        )
        return LeadRead.model_validate(lead)

    def archive_lead(self, session: Session, actor: AuthContext, lead_id: uuid.UUID) -> None:
        lead = self._load(session, actor, lead_id)
        lead.is_archived = True
        session.commit()

        record_activity(
            session,
            action="Lead archived",
            entity_type=self.entity_type,
            entity_id=lead.id,
            actor=actor,
            details={"name": lead.name, "email": lead.email},
        )

    def status_stats(self, session: Session, actor: AuthContext) -> LeadStatusStats:
        scope = resolve_ownership_filter(Lead, "lead", actor)
        rows = session.execute(
            select(Lead.status, func.count(Lead.id))
            .where(Lead.is_archived.is_(False), scope)
            .group_by(Lead.status)
        ).all()
        counts = {row[0]: int(row[1]) for row in rows}
        return LeadStatusStats(
            new=counts.get("New", 0),
            in_progress=counts.get("In Progress", 0),
            closed_won=counts.get("Closed Won", 0),
            closed_lost=counts.get("Closed Lost", 0),
            total=sum(counts.values()),
        )

    def source_stats(self, session: Session, actor: AuthContext) -> list[CountBucket]:
        scope = resolve_ownership_filter(Lead, "lead", actor)
        count_column = func.count(Lead.id)
        rows = session.execute(
            select(Lead.source, count_column)
            .where(Lead.is_archived.is_(False), scope)
            .group_by(Lead.source)
            .order_by(count_column.desc(), Lead.source.asc())
        ).all()
        return [CountBucket(name=row[0] or "Unknown", value=int(row[1])) for row in rows]


class CustomerService:
    entity_type = "Customer"
    repository = customer_repository

    def _email_taken(self, session: Session, email: str, exclude_id: uuid.UUID | None = None) -> bool:
        stmt = select(Customer.id).where(Customer.email == email)
        if exclude_id is not None:
            stmt = stmt.where(Customer.id != exclude_id)
        return session.scalar(stmt.limit(1)) is not None

    def _load(self, session: Session, actor: AuthContext, customer_id: uuid.UUID) -> Customer:
        return require_owned(self.repository.check_ownership(session, customer_id, actor), "customer")

    def create_customer(self, session: Session, actor: AuthContext, dto: CustomerCreate) -> CustomerRead:
        owner_id = resolve_assignee(session, actor, dto.owner_id, "owner_id")
        if dto.agent_id is not None:
            ensure_active_user(session, dto.agent_id, "agent_id")
        if self._email_taken(session, dto.email):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="a customer with this email already exists")

        customer = Customer(
            name=dto.name.strip(),
            email=dto.email,
            phone=dto.phone,
            company=dto.company,
            tags=list(dto.tags),
            status=dto.status,
            owner_id=owner_id,
            agent_id=dto.agent_id,
        )
        if dto.notes and dto.notes.strip():
            customer.notes.append(CustomerNote(content=dto.notes.strip(), created_by_id=actor.user_id))
        session.add(customer)
        commit_or_conflict(session, "a customer with this email already exists")

        record_activity(
            session,
            action="Customer created",
            entity_type=self.entity_type,
            entity_id=customer.id,
            actor=actor,
            details={"name": customer.name, "email": customer.email, "agent_id": str(customer.agent_id) if customer.agent_id else None},
        )
        return CustomerRead.model_validate(customer)

    def list_customers(
        self,
        session: Session,
        actor: AuthContext,
        params: ListParams,
        filters: dict[str, Any],
    ) -> CustomerListRead:
        criteria: list[ColumnElement[bool]] = []
        if filters.get("agent"):
            criteria.append(Customer.agent_id == filters["agent"])
        if filters.get("status"):
            criteria.append(Customer.status == filters["status"])

        try:
            rows, total = self.repository.page(
                session,
                actor,
                page=params.page,
                limit=params.limit,
                search=params.search,
                sort_by=params.sort_by,
                sort_order=params.sort_order,
                criteria=criteria,
            )
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        items = [CustomerRead.model_validate(row) for row in rows]
        return CustomerListRead(**page_payload(items, total, params.page, params.limit))

    def get_customer(self, session: Session, actor: AuthContext, customer_id: uuid.UUID) -> CustomerRead:
        return CustomerRead.model_validate(self._load(session, actor, customer_id))

    def update_customer(
        self,
        session: Session,
        actor: AuthContext,
        customer_id: uuid.UUID,
        dto: CustomerUpdate,
    ) -> CustomerRead:
        customer = self._load(session, actor, customer_id)
        payload = dto.model_dump(exclude_unset=True)
        enforce_field_security(self.repository, payload, actor)
        reject_nulls(payload, ("name", "email", "status", "owner_id"))
        if not payload:
            return CustomerRead.model_validate(customer)

        if "email" in payload and payload["email"] != customer.email and self._email_taken(
            session, payload["email"], customer.id
        ):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="a customer with this email already exists")
        if "owner_id" in payload:
            ensure_active_user(session, payload["owner_id"], "owner_id")
        if payload.get("agent_id") is not None:
            ensure_active_user(session, payload["agent_id"], "agent_id")
        if "tags" in payload and payload["tags"] is None:
            payload["tags"] = []

        for field_name, value in payload.items():
            setattr(customer, field_name, value)
        commit_or_conflict(session, "a customer with this email already exists")

        record_activity(
            session,
            action="Customer updated",
            entity_type=self.entity_type,
            entity_id=customer.id,
            actor=actor,
            details={"fields": sorted(payload)},
        )
        return CustomerRead.model_validate(customer)

    def delete_customer(self, session: Session, actor: AuthContext, customer_id: uuid.UUID) -> None:
        customer = self._load(session, actor, customer_id)
        snapshot = {"name": customer.name, "email": customer.email}
        deleted_id = customer.id
        session.delete(customer)
        session.commit()

        record_activity(
            session,
            action="Customer deleted",
            entity_type=self.entity_type,
            entity_id=deleted_id,
            actor=actor,
            details=snapshot,
        )

    def add_note(
        self,
        session: Session,
        actor: AuthContext,
        customer_id: uuid.UUID,
        dto: CustomerNoteCreate,
    ) -> list[CustomerNoteRead]:
        customer = self._load(session, actor, customer_id)
        customer.notes.append(CustomerNote(content=dto.content, created_by_id=actor.user_id))
        session.commit()

        record_activity(
            session,
            action="Note added to customer",
            entity_type=self.entity_type,
            entity_id=customer.id,
            actor=actor,
            details={"note": dto.content[:100]},
        )
        return [CustomerNoteRead.model_validate(note) for note in customer.notes]

    def list_notes(self, session: Session, actor: AuthContext, customer_id: uuid.UUID) -> list[CustomerNoteRead]:
        customer = self._load(session, actor, customer_id)
        return [CustomerNoteRead.model_validate(note) for note in customer.notes]


class TaskService:
    entity_type = "Task"
    repository = task_repository

    def _load(self, session: Session, actor: AuthContext, task_id: uuid.UUID) -> Task:
        return require_owned(self.repository.check_ownership(session, task_id, actor), "task")

    def _scope(self, actor: AuthContext) -> ColumnElement[bool]:
        return resolve_ownership_filter(Task, "task", actor)

    def create_task(self, session: Session, actor: AuthContext, dto: TaskCreate) -> TaskRead:
        if dto.due_date <= utcnow():
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="due date must be in the future")
        assigned_to_id = resolve_assignee(session, actor, dto.assigned_to_id, "assigned_to_id")
        if dto.agent_id is not None:
            ensure_active_user(session, dto.agent_id, "agent_id")

        task = Task(
            title=dto.title.strip(),
            description=dto.description,
            due_date=dto.due_date,
            priority=dto.priority,
            related_to=dto.related_to,
            related_id=dto.related_id.strip(),
            owner_id=actor.user_id,
            assigned_to_id=assigned_to_id,
            agent_id=dto.agent_id,
            created_by_id=actor.user_id,
        )
        task.apply_status(dto.status)
        session.add(task)
        session.commit()

        record_activity(
            session,
            action="Task created",
            entity_type=self.entity_type,
            entity_id=task.id,
            actor=actor,
            details={"title": task.title, "assigned_to_id": str(task.assigned_to_id), "due_date": task.due_date.isoformat()},
        )
        return TaskRead.model_validate(task)

    def list_tasks(
        self,
        session: Session,
        actor: AuthContext,
        params: ListParams,
        filters: dict[str, Any],
    ) -> TaskListRead:
        criteria: list[ColumnElement[bool]] = []
        if filters.get("status") and filters["status"] != "All":
            criteria.append(Task.status == filters["status"])
        if filters.get("priority") and filters["priority"] != "All":
            criteria.append(Task.priority == filters["priority"])
        if filters.get("agent"):
            agent_id = filters["agent"]
            criteria.append(or_(Task.assigned_to_id == agent_id, Task.agent_id == agent_id))

        try:
            rows, total = self.repository.page(
                session,
                actor,
                page=params.page,
                limit=params.limit,
                search=params.search,
                sort_by=params.sort_by,
                sort_order=params.sort_order,
                criteria=criteria,
            )
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        items = [TaskRead.model_validate(row) for row in rows]
        return TaskListRead(**page_payload(items, total, params.page, params.limit))

    def get_task(self, session: Session, actor: AuthContext, task_id: uuid.UUID) -> TaskRead:
        return TaskRead.model_validate(self._load(session, actor, task_id))

    def update_task(self, session: Session, actor: AuthContext, task_id: uuid.UUID, dto: TaskUpdate) -> TaskRead:
        task = self._load(session, actor, task_id)
        payload = dto.model_dump(exclude_unset=True)
        enforce_field_security(self.repository, payload, actor)
        reject_nulls(payload, ("title", "due_date", "status", "priority", "related_to", "related_id", "assigned_to_id"))
        if not payload:
            return TaskRead.model_validate(task)

        # due_date is only checked against "now" at creation; existing tasks may age past it.
        if "assigned_to_id" in payload:
            ensure_active_user(session, payload["assigned_to_id"], "assigned_to_id")
        if payload.get("agent_id") is not None:
            ensure_active_user(session, payload["agent_id"], "agent_id")

        previous_status = task.status
        new_status = payload.pop("status", None)
        for field_name, value in payload.items():
            setattr(task, field_name, value)
        if new_status is not None:
            task.apply_status(new_status)
        session.commit()

        record_activity(
            session,
            action=self._status_action(previous_status, task.status) or "Task updated",
            entity_type=self.entity_type,
            entity_id=task.id,
            actor=actor,
            details={"fields": sorted(set(payload) | ({"status"} if new_status is not None else set()))},
        )
        return TaskRead.model_validate(task)

    def update_status(self, session: Session, actor: AuthContext, task_id: uuid.UUID, new_status: str) -> TaskRead:
        task = self._load(session, actor, task_id)
        previous_status = task.status
        task.apply_status(new_status)
        session.commit()

        record_activity(
            session,
            action=self._status_action(previous_status, task.status) or "Task status unchanged",
            entity_type=self.entity_type,
            entity_id=task.id,
            actor=actor,
            details={"from": previous_status, "to": task.status},
        )
        return TaskRead.model_validate(task)

    @staticmethod
    def _status_action(previous_status: str, new_status: str) -> str | None:
        if previous_status == new_status:
            return None
        if new_status == "Done":
            return "Task marked as Done"
        return f"Task status changed to {new_status}"

    def delete_task(self, session: Session, actor: AuthContext, task_id: uuid.UUID) -> None:
        task = self._load(session, actor, task_id)
        snapshot = {"title": task.title}
        deleted_id = task.id
        session.delete(task)
        session.commit()

        record_activity(
            session,
            action="Task deleted",
            entity_type=self.entity_type,
            entity_id=deleted_id,
            actor=actor,
            details=snapshot,
        )

    def my_tasks(self, session: Session, actor: AuthContext) -> list[TaskRead]:
        priority_rank = case((Task.priority == "High", 0), (Task.priority == "Medium", 1), else_=2)
        rows = session.scalars(
            select(Task).where(self._scope(actor)).order_by(Task.due_date.asc(), priority_rank, Task.id.asc())
        ).all()
        return [TaskRead.model_validate(row) for row in rows]

    def overdue_tasks(self, session: Session, actor: AuthContext) -> list[TaskRead]:
        rows = session.scalars(
            select(Task)
            .where(self._scope(actor), Task.due_date < utcnow(), Task.status.in_(OPEN_TASK_STATUSES))
            .order_by(Task.due_date.asc(), Task.id.asc())
        ).all()
        return [TaskRead.model_validate(row) for row in rows]

    def stats(self, session: Session, actor: AuthContext) -> TaskStats:
        scope = self._scope(actor)
        rows = session.execute(select(Task.status, func.count(Task.id)).where(scope).group_by(Task.status)).all()
        counts = {row[0]: int(row[1]) for row in rows}
        overdue = session.scalar(
            select(func.count(Task.id)).where(scope, Task.due_date < utcnow(), Task.status.in_(OPEN_TASK_STATUSES))
        )
        return TaskStats(
            open=counts.get("Open", 0),
            in_progress=counts.get("In Progress", 0),
            done=counts.get("Done", 0),
            overdue=int(overdue or 0),
            total=sum(counts.values()),
        )

    def related_entity(
        self,
        session: Session,
        actor: AuthContext,
        related_to: str,
        related_id: str,
    ) -> RelatedEntityRead:
        """Resolve a task's free-form ``related_id`` to a display name when it names a visible record."""

        name: str | None = None
        try:
            entity_id = uuid.UUID(related_id)
        except ValueError:
            entity_id = None

        if entity_id is not None:
            model: Any = Lead if related_to == "Lead" else Customer
            entity_key = "lead" if related_to == "Lead" else "customer"
            name = session.scalar(
                select(model.name).where(model.id == entity_id, resolve_ownership_filter(model, entity_key, actor))
            )
        return RelatedEntityRead(related_to=related_to, related_id=related_id, name=name, exists=name is not None)


lead_service = LeadService()
customer_service = CustomerService()
task_service = TaskService()
