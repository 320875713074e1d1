from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    event,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base
from app.identity.models import User


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


LEAD_STATUSES = ("New", "In Progress", "Closed Won", "Closed Lost")
CUSTOMER_STATUSES = ("Active", "Inactive", "Prospect", "At Risk", "Churned")
TASK_STATUSES = ("Open", "In Progress", "Done")
TASK_PRIORITIES = ("Low", "Medium", "High")
TASK_RELATED_TO = ("Lead", "Customer")


class Lead(Base):
    __tablename__ = "crm_lead"
    __table_args__ = (
        Index(
            "uq_crm_lead_active_email",
            "email",
            unique=True,
            postgresql_where=text("is_archived = false"),
            sqlite_where=text("is_archived = 0"),
        ),
        Index("ix_crm_lead_agent_status", "assigned_agent_id", "status", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="New", server_default="New")
    source: Mapped[str | None] = mapped_column(String(50), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    assigned_agent_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("app_user.id"),
        nullable=False,
    )
    is_archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    converted_customer_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    assigned_agent: Mapped[User] = relationship("User", foreign_keys=[assigned_agent_id], lazy="selectin")


class Customer(Base):
    __tablename__ = "crm_customer"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    company: Mapped[str | None] = mapped_column(String(100), nullable=True)
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="Active", server_default="Active")
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("app_user.id"), nullable=False)
    agent_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), ForeignKey("app_user.id"), nullable=True)
    converted_from_lead_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_lead.id"),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    owner: Mapped[User] = relationship("User", foreign_keys=[owner_id], lazy="selectin")
    agent: Mapped[User | None] = relationship("User", foreign_keys=[agent_id], lazy="selectin")
    notes: Mapped[list[CustomerNote]] = relationship(
        "CustomerNote",
        back_populates="customer",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="CustomerNote.id",
        lazy="selectin",
    )
    tag_entries: Mapped[list[CustomerTag]] = relationship(
        "CustomerTag",
        cascade="all, delete-orphan",
        order_by="CustomerTag.position",
    )


class CustomerNote(Base):
    __tablename__ = "crm_customer_note"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    customer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_customer.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_by_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("app_user.id"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    customer: Mapped[Customer] = relationship("Customer", back_populates="notes")


class CustomerTag(Base):
    """One row per tag so searches match whole tag values, not the serialized list."""

    __tablename__ = "crm_customer_tag"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    customer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_customer.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    value: Mapped[str] = mapped_column(String(30), nullable=False, index=True)


@event.listens_for(Customer.tags, "set")
def _sync_tag_entries(target: Customer, value: list[str] | None, oldvalue: object, initiator: object) -> None:
    target.tag_entries = [CustomerTag(position=index, value=tag) for index, tag in enumerate(value or [])]


class Task(Base):
    __tablename__ = "crm_task"
    __table_args__ = (
        Index("ix_crm_task_assignee_status_due", "assigned_to_id", "status", "due_date"),
        Index("ix_crm_task_related", "related_to", "related_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    due_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="Open", server_default="Open")
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="Medium", server_default="Medium")
    related_to: Mapped[str] = mapped_column(String(16), nullable=False)
    related_id: Mapped[str] = mapped_column(String(64), nullable=False)
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("app_user.id"), nullable=False)
    assigned_to_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("app_user.id"), nullable=False)
    agent_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), ForeignKey("app_user.id"), nullable=True)
    created_by_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("app_user.id"), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    assigned_to: Mapped[User] = relationship("User", foreign_keys=[assigned_to_id], lazy="selectin")
    agent: Mapped[User | None] = relationship("User", foreign_keys=[agent_id], lazy="selectin")

    def apply_status(self, new_status: str) -> None:
        """Set ``status`` and keep ``completed_at`` in step with it."""

        was_done = self.status == "Done"
        self.status = new_status
        if new_status == "Done" and not was_done:
            self.completed_at = utcnow()
        elif new_status != "Done":
            self.completed_at = None
