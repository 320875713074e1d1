"""Lead to customer conversion.

The customer insert and the lead archive share one transaction. Stores written
before that guarantee existed can hold a customer whose source lead was never
archived; ``reconcile_conversions`` finds and repairs those pairs.
"""

from __future__ import annotations

import logging
import time
import uuid

from fastapi import HTTPException, status
from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.config import get_settings
from app.crm.models import Customer, Lead
from app.crm.repositories import lead_repository
from app.crm.schemas import CustomerRead, LeadConversionRead, ReconciliationRead
from app.crm.service import require_owned
from app.metrics import observe_lead_conversion
from app.platform.security.context import AuthContext
from app.services.activity import record_activity


logger = logging.getLogger("app.crm.conversion")
tracer = trace.get_tracer("app.crm.conversion")

CONVERTED_TAG = "converted-lead"
CLOSED_STATUSES = ("Closed Won", "Closed Lost")


class LeadConversionService:
    def convert_lead(self, session: Session, actor: AuthContext, lead_id: uuid.UUID) -> LeadConversionRead:
        started = time.perf_counter()
        with tracer.start_as_current_span("crm.lead.convert") as span:
            span.set_attribute("lead_id", str(lead_id))
            span.set_attribute("correlation_id", get_correlation_id())
            try:
                lead, customer = self._convert(session, actor, lead_id)
            except HTTPException as exc:
                span.set_attribute("outcome", "rejected")
                observe_lead_conversion("rejected")
                logger.info(
                    "conversion.rejected",
                    extra={
                        "entity_type": "Lead",
                        "entity_id": str(lead_id),
                        "user_id": str(actor.user_id),
                        "reason": str(exc.detail),
                    },
                )
                raise
            except Exception:
                span.set_attribute("outcome", "failed")
                observe_lead_conversion("failed")
                raise
            span.set_attribute("customer_id", str(customer.id))
            span.set_attribute("outcome", "converted")

        observe_lead_conversion("converted", time.perf_counter() - started)
        logger.info(
            "conversion.completed",
            extra={
                "entity_type": "Lead",
                "entity_id": str(lead.id),
                "user_id": str(actor.user_id),
                "action": "convert",
            },
        )

        record_activity(
            session,
            action="Lead converted to customer",
            entity_type="Lead",
            entity_id=lead.id,
            actor=actor,
            details={"lead_name": lead.name, "customer_id": str(customer.id)},
        )
        record_activity(
            session,
            action="Customer created from lead",
            entity_type="Customer",
            entity_id=customer.id,
            actor=actor,
            details={"lead_id": str(lead.id), "customer_name": customer.name},
        )
        return LeadConversionRead(
            message="Lead converted to customer successfully",
            lead_id=lead.id,
            customer=CustomerRead.model_validate(customer),
        )

    def _convert(self, session: Session, actor: AuthContext, lead_id: uuid.UUID) -> tuple[Lead, Customer]:
        lead: Lead = require_owned(lead_repository.check_ownership(session, lead_id, actor), "lead")

        existing = session.scalar(select(Customer.id).where(Customer.email == lead.email).limit(1))
        if existing is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="a customer with this email already exists")
        if lead.is_archived:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="lead is archived")
        if get_settings().block_closed_lead_conversion and lead.status in CLOSED_STATUSES:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"lead in status '{lead.status}' cannot be converted",
            )

        customer = Customer(
            name=lead.name,
            email=lead.email,
            phone=lead.phone,
            company=lead.source or "Not specified",
            tags=[CONVERTED_TAG],
            status="Active",
            owner_id=lead.assigned_agent_id,
            converted_from_lead_id=lead.id,
        )
        try:
            session.add(customer)
            session.flush()
            lead.is_archived = True
            lead.status = "Closed Won"
            lead.converted_customer_id = customer.id
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="a customer with this email already exists")
        except Exception:
            session.rollback()
            raise
        return lead, customer

    def reconcile_conversions(self, session: Session, actor: AuthContext) -> ReconciliationRead:
        """Archive leads that already produced a customer but were left active."""

        with tracer.start_as_current_span("crm.lead.reconcile") as span:
            rows = session.execute(
                select(Lead, Customer.id)
                .join(Customer, Customer.converted_from_lead_id == Lead.id)
                .where(Lead.is_archived.is_(False))
                .order_by(Lead.created_at.asc(), Lead.id.asc())
            ).all()

            repaired: list[uuid.UUID] = []
            for lead, customer_id in rows:
                lead.is_archived = True
                lead.status = "Closed Won"
                lead.converted_customer_id = customer_id
                repaired.append(lead.id)
            if repaired:
                session.commit()
            span.set_attribute("repaired_count", len(repaired))

        for lead_id in repaired:
            logger.warning(
                "conversion.reconciled",
                extra={"entity_type": "Lead", "entity_id": str(lead_id), "user_id": str(actor.user_id)},
            )
            record_activity(
                session,
                action="Lead archived by conversion reconciliation",
                entity_type="Lead",
                entity_id=lead_id,
                actor=actor,
                details={},
            )
        return ReconciliationRead(repaired_lead_ids=repaired, count=len(repaired))


lead_conversion_service = LeadConversionService()
