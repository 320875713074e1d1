from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from app.identity.schemas import UserSummary


LeadStatus = Literal["New", "In Progress", "Closed Won", "Closed Lost"]
CustomerStatus = Literal["Active", "Inactive", "Prospect", "At Risk", "Churned"]
TaskStatus = Literal["Open", "In Progress", "Done"]
TaskPriority = Literal["Low", "Medium", "High"]
RelatedTo = Literal["Lead", "Customer"]
ActivityEntityType = Literal["Lead", "Customer", "Task", "User"]
SortOrder = Literal["asc", "desc"]
DashboardRange = Literal["week", "month", "quarter"]

MAX_TAG_LENGTH = 30


def _lower(value: str | None) -> str | None:
    return str(value).strip().lower() if value is not None else None


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


def split_tags(value: Any) -> list[str]:
    """Accept a list or a comma-joined string; trim each tag, drop empties, keep order."""

    if value is None:
        return []
    if isinstance(value, str):
        pieces = value.split(",")
    elif isinstance(value, (list, tuple)):
        pieces = [str(item) for item in value]
    else:
        raise ValueError("tags must be a list or a comma-separated string")

    tags = [piece.strip() for piece in pieces if piece.strip()]
    too_long = [tag for tag in tags if len(tag) > MAX_TAG_LENGTH]
    if too_long:
        raise ValueError(f"tags cannot exceed {MAX_TAG_LENGTH} characters")
    return tags


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ListParams(BaseModel):
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=10, ge=1, le=100)
    search: str | None = None
    sort_by: str | None = None
    sort_order: SortOrder | None = None


class LeadCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    email: EmailStr
    phone: str | None = Field(default=None, max_length=20)
    status: LeadStatus = "New"
    source: str | None = Field(default=None, max_length=50)
    notes: str | None = Field(default=None, max_length=500)
    assigned_agent_id: UUID | None = None

    @field_validator("email")
    @classmethod
    def lower_email(cls, value: str) -> str:
        return _lower(value) or value

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        return value.strip()


class LeadUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1, max_length=100)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, max_length=20)
    status: LeadStatus | None = None
    source: str | None = Field(default=None, max_length=50)
    notes: str | None = Field(default=None, max_length=500)
    assigned_agent_id: UUID | None = None

    @field_validator("email")
    @classmethod
    def lower_email(cls, value: str | None) -> str | None:
        return _lower(value)


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    email: str
    phone: str | None
    status: LeadStatus
    source: str | None
    notes: str | None
    assigned_agent_id: UUID
    assigned_agent: UserSummary | None = None
    is_archived: bool
    converted_customer_id: UUID | None
    created_at: datetime
    updated_at: datetime


class LeadListRead(BaseModel):
    items: list[LeadRead]
    current_page: int
    total_pages: int
    total_count: int


class LeadStatusStats(BaseModel):
    new: int = 0
    in_progress: int = 0
    closed_won: int = 0
    closed_lost: int = 0
    total: int = 0


class CountBucket(BaseModel):
    name: str
    value: int


class CustomerNoteCreate(BaseModel):
    content: str = Field(min_length=1, max_length=1000)

    @field_validator("content")
    @classmethod
    def strip_content(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("note content is required")
        return value


class CustomerNoteRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    content: str
    created_by_id: UUID
    created_at: datetime


class CustomerCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    email: EmailStr
    phone: str | None = Field(default=None, max_length=20)
    company: str | None = Field(default=None, max_length=100)
    tags: list[str] = Field(default_factory=list)
    notes: str | None = Field(default=None, max_length=1000)
    status: CustomerStatus = "Active"
    owner_id: UUID | None = None
    agent_id: UUID | None = None

    @field_validator("email")
    @classmethod
    def lower_email(cls, value: str) -> str:
        return _lower(value) or value

    @field_validator("tags", mode="before")
    @classmethod
    def parse_tags(cls, value: Any) -> list[str]:
        return split_tags(value)

    @field_validator("agent_id", mode="before")
    @classmethod
    def blank_agent(cls, value: Any) -> Any:
        return _blank_to_none(value)


class CustomerUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1, max_length=100)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, max_length=20)
    company: str | None = Field(default=None, max_length=100)
    tags: list[str] | None = None
    status: CustomerStatus | None = None
    owner_id: UUID | None = None
    agent_id: UUID | None = None

    @field_validator("email")
    @classmethod
    def lower_email(cls, value: str | None) -> str | None:
        return _lower(value)

    @field_validator("tags", mode="before")
    @classmethod
    def parse_tags(cls, value: Any) -> list[str] | None:
        if value is None:
            return None
        return split_tags(value)

    @field_validator("agent_id", mode="before")
    @classmethod
    def blank_agent(cls, value: Any) -> Any:
        return _blank_to_none(value)


class CustomerRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    email: str
    phone: str | None
    company: str | None
    tags: list[str]
    status: CustomerStatus
    owner_id: UUID
    owner: UserSummary | None = None
    agent_id: UUID | None
    agent: UserSummary | None = None
    converted_from_lead_id: UUID | None
    notes: list[CustomerNoteRead] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class CustomerListRead(BaseModel):
    items: list[CustomerRead]
    current_page: int
    total_pages: int
    total_count: int


class TaskCreate(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=1000)
    due_date: datetime
    status: TaskStatus = "Open"
    priority: TaskPriority = "Medium"
    related_to: RelatedTo
    related_id: str = Field(min_length=1, max_length=64)
    assigned_to_id: UUID | None = None
    agent_id: UUID | None = None

    @field_validator("due_date")
    @classmethod
    def normalize_due_date(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @field_validator("agent_id", mode="before")
    @classmethod
    def blank_agent(cls, value: Any) -> Any:
        return _blank_to_none(value)


class TaskUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=1000)
    due_date: datetime | None = None
    status: TaskStatus | None = None
    priority: TaskPriority | None = None
    related_to: RelatedTo | None = None
    related_id: str | None = Field(default=None, min_length=1, max_length=64)
    assigned_to_id: UUID | None = None
    agent_id: UUID | None = None

    @field_validator("due_date")
    @classmethod
    def normalize_due_date(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value) if value is not None else None

    @field_validator("agent_id", mode="before")
    @classmethod
    def blank_agent(cls, value: Any) -> Any:
        return _blank_to_none(value)


class TaskStatusUpdate(BaseModel):
    status: TaskStatus


class TaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    description: str | None
    due_date: datetime
    status: TaskStatus
    priority: TaskPriority
    related_to: RelatedTo
    related_id: str
    owner_id: UUID
    assigned_to_id: UUID
    assigned_to: UserSummary | None = None
    agent_id: UUID | None
    agent: UserSummary | None = None
    created_by_id: UUID
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime


class TaskListRead(BaseModel):
    items: list[TaskRead]
    current_page: int
    total_pages: int
    total_count: int


class TaskStats(BaseModel):
    open: int = 0
    in_progress: int = 0
    done: int = 0
    overdue: int = 0
    total: int = 0


class RelatedEntityRead(BaseModel):
    related_to: RelatedTo
    related_id: str
    name: str | None
    exists: bool


class LeadConversionRead(BaseModel):
    message: str
    lead_id: UUID
    customer: CustomerRead


class ReconciliationRead(BaseModel):
    repaired_lead_ids: list[UUID]
    count: int


class ActivityCreate(BaseModel):
    action: str = Field(min_length=1, max_length=100)
    entity_type: ActivityEntityType
    entity_id: str = Field(min_length=1, max_length=64)
    details: dict[str, Any] = Field(default_factory=dict)


class ActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    action: str
    entity_type: ActivityEntityType
    entity_id: str
    performed_by_id: UUID
    performed_by: UserSummary | None = None
    details: dict[str, Any]
    ip_address: str | None
    user_agent: str | None
    correlation_id: str | None
    created_at: datetime


class ActivityListRead(BaseModel):
    items: list[ActivityRead]
    current_page: int
    total_pages: int
    total_count: int


class DashboardStats(BaseModel):
    total_leads: int
    total_customers: int
    open_tasks: int
    overdue_tasks: int
    closed_won_leads: int
    conversion_rate: int


class DashboardCharts(BaseModel):
    lead_status: list[CountBucket]
    leads_by_source: list[CountBucket]


class DashboardRecent(BaseModel):
    leads: list[LeadRead]
    tasks: list[TaskRead]
    activity: list[ActivityRead]


class DashboardOverview(BaseModel):
    time_range: DashboardRange
    range_days: int
    generated_at: datetime
    user_role: str


class DashboardRead(BaseModel):
    stats: DashboardStats
    charts: DashboardCharts
    recent: DashboardRecent
    overview: DashboardOverview


class QuickStatsRead(BaseModel):
    total_leads: int
    total_customers: int
    open_tasks: int
    overdue_tasks: int


class DailyCount(BaseModel):
    date: str
    count: int


class LeadsAnalyticsRead(BaseModel):
    time_range: DashboardRange
    leads_by_date: list[DailyCount]
    leads_by_status: list[CountBucket]
    leads_by_source: list[CountBucket]
