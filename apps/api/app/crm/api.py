from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.errors import error_response
from app.core.auth import get_current_actor
from app.core.database import get_db
from app.core.rbac import ensure_roles
from app.crm.conversion import lead_conversion_service
from app.crm.dashboard import dashboard_service
from app.crm.schemas import (
    ActivityCreate,
    ActivityEntityType,
    ActivityListRead,
    ActivityRead,
    CountBucket,
    CustomerCreate,
    CustomerListRead,
    CustomerNoteCreate,
    CustomerNoteRead,
    CustomerRead,
    CustomerUpdate,
    DashboardRead,
    LeadConversionRead,
    LeadCreate,
    LeadListRead,
    LeadRead,
    LeadsAnalyticsRead,
    LeadStatusStats,
    LeadUpdate,
    ListParams,
    QuickStatsRead,
    ReconciliationRead,
    RelatedTo,
    RelatedEntityRead,
    SortOrder,
    TaskCreate,
    TaskListRead,
    TaskRead,
    TaskStats,
    TaskStatusUpdate,
    TaskUpdate,
)
from app.crm.service import customer_service, lead_service, page_payload, task_service
from app.identity.schemas import MessageRead
from app.platform.security.context import AuthContext
from app.services.activity import activity_service

leads_router = APIRouter(prefix="/api/leads", tags=["crm.leads"])
customers_router = APIRouter(prefix="/api/customers", tags=["crm.customers"])
tasks_router = APIRouter(prefix="/api/tasks", tags=["crm.tasks"])
activity_router = APIRouter(prefix="/api/activity", tags=["crm.activity"])
dashboard_router = APIRouter(prefix="/api/dashboard", tags=["crm.dashboard"])


def list_params(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    search: str | None = Query(default=None, max_length=200),
    sort_by: str | None = Query(default=None),
    sort_order: SortOrder | None = Query(default=None),
) -> ListParams:
    return ListParams(page=page, limit=limit, search=search, sort_by=sort_by, sort_order=sort_order)


def _failed(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


@leads_router.get("", response_model=LeadListRead)
def list_leads(
    request: Request,
    params: ListParams = Depends(list_params),
    status_filter: str | None = Query(default=None, alias="status"),
    source: str | None = Query(default=None),
    db: Session = Depends(get_db),
    actor: AuthContext = Depends(get_current_actor),
) -> LeadListRead | JSONResponse:
    try:
        return lead_service.list_leads(db, actor, params, filters={"status": status_filter, "source": source})
    except HTTPException as exc:
        return _failed(request, exc, "crm_lead_list_failed")


@leads_router.post("", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    actor: AuthContext = Depends(get_current_actor),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.create_lead(db, actor, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_lead_create_failed")


@leads_router.get("/stats/status", response_model=LeadStatusStats)
def lead_status_stats(
    db: Session = Depends(get_db),
    actor: AuthContext = Depends(get_current_actor),
) -> LeadStatusStats:
    return lead_service.status_stats(db, actor)


@leads_router.get("/stats/source", response_model=list[CountBucket])
def lead_source_stats(
    db: Session = Depends(get_db),
    actor: AuthContext = Depends(get_current_actor),
) -> list[CountBucket]:
    return lead_service.source_stats(db, actor)


@leads_router.post("/reconcile-conversions", response_model=ReconciliationRead)
def reconcile_conversions(
    request: Request,
    db: Session = Depends(get_db),
    actor: AuthContext = Depends(get_current_actor),
) -> ReconciliationRead | JSONResponse:
    try:
        ensure_roles(actor, "admin")
        return lead_conversion_service.reconcile_conversions(db, actor)
    except HTTPException as exc:
        return _failed(request, exc, "crm_lead_reconcile_failed")


@leads_router.get("/{lead_id}", response_model=LeadRead)
def get_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: AuthContext = Depends(get_current_actor),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.get_lead(db, actor, lead_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_lead_get_failed")


@leads_router.put("/{lead_id}", response_model=LeadRead)
@leads_router.patch("/{lead_id}", response_model=LeadRead)
def update_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadUpdate,
    db: Session = Depends(get_db),
    actor: AuthContext = Depends(get_current_actor),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.update_lead(db, actor, lead_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_lead_update_failed")


@leads_router.delete("/{lead_id}", response_model=MessageRead)
def archive_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: AuthContext = Depends(get_current_actor),
) -> MessageRead | JSONResponse:
    try:
        ensure_roles(actor, "admin")
        lead_service.archive_lead(db, actor, lead_id)
        return MessageRead(message="Lead archived successfully")
    except HTTPException as exc:
        return _failed(request, exc, "crm_lead_delete_failed")


@leads_router.post("/{lead_id}/convert", response_model=LeadConversionRead, status_code=status.HTTP_201_CREATED)
def convert_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: AuthContext = Depends(get_current_actor),
) -> LeadConversionRead | JSONResponse:
    try:
        return lead_conversion_service.convert_lead(db, actor, lead_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_lead_convert_failed")


@customers_router.get("", response_model=CustomerListRead)
def list_customers(
    request: Request,
    params: ListParams = Depends(list_params),
    agent: uuid.UUID | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    actor: AuthContext = Depends(get_current_actor),
) -> CustomerListRead | JSONResponse:
    try:
        return customer_service.list_customers(db, actor, params, filters={"agent": agent, "status": status_filter})
    except HTTPException as exc:
        return _failed(request, exc, "crm_customer_list_failed")


@customers_router.post("", response_model=CustomerRead, status_code=status.HTTP_201_CREATED)
def create_customer(
    request: Request,
    dto: CustomerCreate,
    db: Session = Depends(get_db),
    actor: AuthContext = Depends(get_current_actor),
) -> CustomerRead | JSONResponse:
    try:
        return customer_service.create_customer(db, actor, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_customer_create_failed")


@customers_router.get("/{customer_id}", response_model=CustomerRead)
def get_customer(
    request: Request,
    customer_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: AuthContext = Depends(get_current_actor),
) -> CustomerRead | JSONResponse:
    try:
        return customer_service.get_customer(db, actor, customer_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_customer_get_failed")


@customers_router.put("/{customer_id}", response_model=CustomerRead)
@customers_router.patch("/{customer_id}", response_model=CustomerRead)
def update_customer(
    request: Request,
    customer_id: uuid.UUID,
    dto: CustomerUpdate,
    db: Session = Depends(get_db),
    actor: AuthContext = Depends(get_current_actor),
) -> CustomerRead | JSONResponse:
    try:
        return customer_service.update_customer(db, actor, customer_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_customer_update_failed")


@customers_router.delete("/{customer_id}", response_model=MessageRead)
def delete_customer(
    request: Request,
    customer_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: AuthContext = Depends(get_current_actor),
) -> MessageRead | JSONResponse:
    try:
        customer_service.delete_customer(db, actor, customer_id)
        return MessageRead(message="Customer deleted successfully")
    except HTTPException as exc:
        return _failed(request, exc, "crm_customer_delete_failed")


@customers_router.get("/{customer_id}/notes", response_model=list[CustomerNoteRead])
def list_customer_notes(
    request: Request,
    customer_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: AuthContext = Depends(get_current_actor),
) -> list[CustomerNoteRead] | JSONResponse:
    try:
        return customer_service.list_notes(db, actor, customer_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_customer_notes_failed")


@customers_router.post(
    "/{customer_id}/notes",
    response_model=list[CustomerNoteRead],
    status_code=status.HTTP_201_CREATED,
)
def add_customer_note(
    request: Request,
    customer_id: uuid.UUID,
    dto: CustomerNoteCreate,
    db: Session = Depends(get_db),
    actor: AuthContext = Depends(get_current_actor),
) -> list[CustomerNoteRead] | JSONResponse:
    try:
        return customer_service.add_note(db, actor, customer_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_customer_note_create_failed")


@tasks_router.get("", response_model=TaskListRead)
def list_tasks(
    request: Request,
    params: ListParams = Depends(list_params),
    status_filter: str | None = Query(default=None, alias="status"),
    priority: str | None = Query(default=None),
    agent: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    actor: AuthContext = Depends(get_current_actor),
) -> TaskListRead | JSONResponse:
    try:
        return task_service.list_tasks(
            db,
            actor,
            params,
            filters={"status": status_filter, "priority": priority, "agent": agent},
        )
    except HTTPException as exc:
        return _failed(request, exc, "crm_task_list_failed")


@tasks_router.post("", response_model=TaskRead, status_code=status.HTTP_201_CREATED)
def create_task(
    request: Request,
    dto: TaskCreate,
    db: Session = Depends(get_db),
    actor: AuthContext = Depends(get_current_actor),
) -> TaskRead | JSONResponse:
    try:
        return task_service.create_task(db, actor, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_task_create_failed")


@tasks_router.get("/my-tasks", response_model=list[TaskRead])
def my_tasks(
    db: Session = Depends(get_db),
    actor: AuthContext = Depends(get_current_actor),
) -> list[TaskRead]:
    return task_service.my_tasks(db, actor)


@tasks_router.get("/overdue", response_model=list[TaskRead])
def overdue_tasks(
    db: Session = Depends(get_db),
    actor: AuthContext = Depends(get_current_actor),
) -> list[TaskRead]:
    return task_service.overdue_tasks(db, actor)


@tasks_router.get("/stats", response_model=TaskStats)
def task_stats(
    db: Session = Depends(get_db),
    actor: AuthContext = Depends(get_current_actor),
) -> TaskStats:
    return task_service.stats(db, actor)


@tasks_router.get("/related/{related_to}/{related_id}", response_model=RelatedEntityRead)
def related_entity(
    related_to: RelatedTo,
    related_id: str,
    db: Session = Depends(get_db),
    actor: AuthContext = Depends(get_current_actor),
) -> RelatedEntityRead:
    return task_service.related_entity(db, actor, related_to, related_id)


@tasks_router.get("/{task_id}", response_model=TaskRead)
def get_task(
    request: Request,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: AuthContext = Depends(get_current_actor),
) -> TaskRead | JSONResponse:
    try:
        return task_service.get_task(db, actor, task_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_task_get_failed")


@tasks_router.put("/{task_id}", response_model=TaskRead)
@tasks_router.patch("/{task_id}", response_model=TaskRead)
def update_task(
    request: Request,
    task_id: uuid.UUID,
    dto: TaskUpdate,
    db: Session = Depends(get_db),
    actor: AuthContext = Depends(get_current_actor),
) -> TaskRead | JSONResponse:
    try:
        return task_service.update_task(db, actor, task_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_task_update_failed")


@tasks_router.patch("/{task_id}/status", response_model=TaskRead)
def update_task_status(
    request: Request,
    task_id: uuid.UUID,
    dto: TaskStatusUpdate,
    db: Session = Depends(get_db),
    actor: AuthContext = Depends(get_current_actor),
) -> TaskRead | JSONResponse:
    try:
        return task_service.update_status(db, actor, task_id, dto.status)
    except HTTPException as exc:
        return _failed(request, exc, "crm_task_status_failed")


@tasks_router.delete("/{task_id}", response_model=MessageRead)
def delete_task(
    request: Request,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: AuthContext = Depends(get_current_actor),
) -> MessageRead | JSONResponse:
    try:
        ensure_roles(actor, "admin")
        task_service.delete_task(db, actor, task_id)
        return MessageRead(message="Task deleted successfully")
    except HTTPException as exc:
        return _failed(request, exc, "crm_task_delete_failed")


@activity_router.get("", response_model=ActivityListRead)
def list_activity(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    entity_type: ActivityEntityType | None = Query(default=None),
    action: str | None = Query(default=None, max_length=100),
    user_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    actor: AuthContext = Depends(get_current_actor),
) -> ActivityListRead:
    rows, total = activity_service.list_activity(
        db,
        actor,
        filters={"entity_type": entity_type, "action": action, "user_id": user_id},
        page=page,
        limit=limit,
    )
    items = [ActivityRead.model_validate(row) for row in rows]
    return ActivityListRead(**page_payload(items, total, page, limit))


@activity_router.post("", response_model=ActivityRead, status_code=status.HTTP_201_CREATED)
def create_activity(
    request: Request,
    dto: ActivityCreate,
    db: Session = Depends(get_db),
    actor: AuthContext = Depends(get_current_actor),
) -> ActivityRead | JSONResponse:
    try:
        ensure_roles(actor, "admin")
        activity = activity_service.log_manual(
            db,
            actor,
            action=dto.action,
            entity_type=dto.entity_type,
            entity_id=dto.entity_id,
            details=dto.details,
        )
        return ActivityRead.model_validate(activity)
    except HTTPException as exc:
        return _failed(request, exc, "crm_activity_create_failed")


@activity_router.get("/recent", response_model=list[ActivityRead])
def recent_activity(
    limit: int = Query(default=10, ge=1, le=50),
    db: Session = Depends(get_db),
    actor: AuthContext = Depends(get_current_actor),
) -> list[ActivityRead]:
    return [ActivityRead.model_validate(row) for row in activity_service.recent_activity(db, actor, limit=limit)]


@activity_router.get("/{entity_type}/{entity_id}", response_model=list[ActivityRead])
def entity_activity(
    request: Request,
    entity_type: str,
    entity_id: str,
    db: Session = Depends(get_db),
    actor: AuthContext = Depends(get_current_actor),
) -> list[ActivityRead] | JSONResponse:
    try:
        rows = activity_service.entity_activity(db, actor, entity_type, entity_id)
        return [ActivityRead.model_validate(row) for row in rows]
    except HTTPException as exc:
        return _failed(request, exc, "crm_activity_list_failed")


@dashboard_router.get("", response_model=DashboardRead)
def dashboard(
    time_range: str | None = Query(default="week", alias="range"),
    db: Session = Depends(get_db),
    actor: AuthContext = Depends(get_current_actor),
) -> DashboardRead:
    return dashboard_service.summarize(db, actor, time_range)


@dashboard_router.get("/quick-stats", response_model=QuickStatsRead)
def quick_stats(
    db: Session = Depends(get_db),
    actor: AuthContext = Depends(get_current_actor),
) -> QuickStatsRead:
    return dashboard_service.quick_stats(db, actor)


@dashboard_router.get("/leads-analytics", response_model=LeadsAnalyticsRead)
def leads_analytics(
    time_range: str | None = Query(default="week", alias="range"),
    db: Session = Depends(get_db),
    actor: AuthContext = Depends(get_current_actor),
) -> LeadsAnalyticsRead:
    return dashboard_service.leads_analytics(db, actor, time_range)
