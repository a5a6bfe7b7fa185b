from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from leadflow.core.database import transaction_scope
from leadflow.crm.errors import DuplicateEmailError, LeadValidationError, NotFoundError, PersistenceError
from leadflow.crm.models import CRMLead, LeadStatus
from leadflow.crm.pagination import build_pagination_meta, normalize_page
from leadflow.crm.repositories import LeadRepository
from leadflow.crm.schemas import (
    BulkUpdateResult,
    LeadCreate,
    LeadPage,
    LeadRead,
    LeadSearchParams,
    LeadUpdate,
)
from leadflow.crm.state_machine import ensure_can_delete
from leadflow.metrics import observe_lead_bulk_update


logger = logging.getLogger("leadflow.crm.leads")

RECENT_LEADS_DEFAULT_LIMIT = 10


@contextmanager
def unit_of_work(session: Session, *, email: str | None = None) -> Iterator[Session]:
    """Run writes in one transaction and map driver failures onto CRM errors."""
    try:
        with transaction_scope(session):
            yield session
    except IntegrityError as exc:
        if email is not None:
            raise DuplicateEmailError(email) from exc
        raise PersistenceError("database integrity violation", details={"error": str(exc.orig)}) from exc
    except SQLAlchemyError as exc:
        raise PersistenceError("database operation failed", details={"error": str(exc)}) from exc


def lead_to_read(lead: CRMLead) -> LeadRead:
    return LeadRead.model_validate(lead)


@dataclass(slots=True)
class LeadService:
    lead_repository: LeadRepository

    def create_lead(
        self,
        session: Session,
        dto: LeadCreate,
        created_by_id: uuid.UUID,
        organization_id: uuid.UUID,
    ) -> LeadRead:
        payload = dto.model_dump(mode="json", exclude={"tags"})
        if self.lead_repository.find_by_email(session, dto.email, organization_id) is not None:
            logger.info("crm.lead.duplicate_email", extra={"organization_id": str(organization_id)})
            raise DuplicateEmailError(dto.email)

        lead = CRMLead(
            first_name=dto.first_name,
            last_name=dto.last_name,
            email=dto.email,
            phone=dto.phone,
            company=dto.company,
            job_title=dto.job_title,
            status=LeadStatus.NEW.value,
            source=dto.source,
            score=dto.score if dto.score is not None else 0,
            assigned_to_id=dto.assigned_to_id,
            notes=dto.notes,
            custom_fields=payload["custom_fields"],
            created_by_id=created_by_id,
            organization_id=organization_id,
        )
        lead.set_tags(dto.tags)

        with unit_of_work(session, email=dto.email):
            self.lead_repository.add(session, lead)

        logger.info(
            "crm.lead.created",
            extra={"lead_id": str(lead.id), "organization_id": str(organization_id)},
        )
        return lead_to_read(lead)

    def update_lead(
        self,
        session: Session,
        lead_id: uuid.UUID,
        dto: LeadUpdate,
        organization_id: uuid.UUID,
    ) -> LeadRead:
        lead = self._require_lead(session, lead_id, organization_id)
        changes = dto.model_dump(exclude_unset=True)

        email = changes.get("email")
        if email is not None and email != lead.email:
            if self.lead_repository.find_by_email(session, email, organization_id, exclude_id=lead.id) is not None:
                raise DuplicateEmailError(email)

        if "tags" in changes:
            lead.set_tags(changes.pop("tags") or [])
        if "custom_fields" in changes:
            changes["custom_fields"] = dto.model_dump(mode="json", include={"custom_fields"})["custom_fields"] or {}
        if changes.get("status") is not None:
            changes["status"] = LeadStatus(changes["status"]).value

        for field_name, value in changes.items():
            if value is None and field_name in {"first_name", "last_name", "email", "source", "status"}:
                continue
            setattr(lead, field_name, value)

        with unit_of_work(session, email=email):
            session.flush()

        logger.info("crm.lead.updated", extra={"lead_id": str(lead.id), "status": lead.status})
        return lead_to_read(lead)

    def get_lead(self, session: Session, lead_id: uuid.UUID, organization_id: uuid.UUID) -> LeadRead | None:
        lead = self.lead_repository.get(session, lead_id, organization_id)
        return lead_to_read(lead) if lead is not None else None

    def get_leads_by_ids(
        self,
        session: Session,
        lead_ids: list[uuid.UUID],
        organization_id: uuid.UUID,
    ) -> list[LeadRead]:
        return [lead_to_read(lead) for lead in self.lead_repository.get_many(session, lead_ids, organization_id)]

    def search_leads(self, session: Session, params: LeadSearchParams, organization_id: uuid.UUID) -> LeadPage:
        page = normalize_page(params.page, params.limit)
        leads, total = self.lead_repository.search(session, params, page, organization_id)
        return LeadPage(
            data=[lead_to_read(lead) for lead in leads],
            pagination=build_pagination_meta(page.page, page.limit, total),
        )

    def delete_lead(self, session: Session, lead_id: uuid.UUID, organization_id: uuid.UUID) -> None:
        lead = self._require_lead(session, lead_id, organization_id)
        ensure_can_delete(lead)
        with unit_of_work(session):
            self.lead_repository.delete(session, lead)
        logger.info("crm.lead.deleted", extra={"lead_id": str(lead_id), "organization_id": str(organization_id)})

    def assign_lead(
        self,
        session: Session,
        lead_id: uuid.UUID,
        assigned_to_id: uuid.UUID,
        organization_id: uuid.UUID,
    ) -> LeadRead:
        lead = self._require_lead(session, lead_id, organization_id)
        lead.assigned_to_id = assigned_to_id
        with unit_of_work(session):
            session.flush()
        logger.info("crm.lead.assigned", extra={"lead_id": str(lead.id)})
        return lead_to_read(lead)

    def bulk_assign_leads(
        self,
        session: Session,
        lead_ids: list[uuid.UUID],
        assigned_to_id: uuid.UUID,
        organization_id: uuid.UUID,
    ) -> BulkUpdateResult:
        return self._bulk_update(session, "assign", lead_ids, organization_id, {"assigned_to_id": assigned_to_id})

    def bulk_update_status(
        self,
        session: Session,
        lead_ids: list[uuid.UUID],
        status: LeadStatus,
        organization_id: uuid.UUID,
    ) -> BulkUpdateResult:
        return self._bulk_update(session, "status", lead_ids, organization_id, {"status": LeadStatus(status).value})

    def update_lead_score(
        self,
        session: Session,
        lead_id: uuid.UUID,
        score: int,
        organization_id: uuid.UUID,
    ) -> LeadRead:
        if score < 0 or score > 100:
            raise LeadValidationError("Score must be between 0 and 100", details={"score": score})
        lead = self._require_lead(session, lead_id, organization_id)
        lead.score = score
        with unit_of_work(session):
            session.flush()
        return lead_to_read(lead)

    def get_leads_by_assignee(
        self,
        session: Session,
        assigned_to_id: uuid.UUID,
        organization_id: uuid.UUID,
    ) -> list[LeadRead]:
        leads = self.lead_repository.list_by_assignee(session, assigned_to_id, organization_id)
        return [lead_to_read(lead) for lead in leads]

    def get_recent_leads(
        self,
        session: Session,
        organization_id: uuid.UUID,
        limit: int = RECENT_LEADS_DEFAULT_LIMIT,
    ) -> list[LeadRead]:
        leads = self.lead_repository.list_recent(session, organization_id, max(1, limit))
        return [lead_to_read(lead) for lead in leads]

    def get_lead_sources(self, session: Session, organization_id: uuid.UUID) -> list[str]:
        return self.lead_repository.distinct_sources(session, organization_id)

    def _require_lead(self, session: Session, lead_id: uuid.UUID, organization_id: uuid.UUID) -> CRMLead:
        lead = self.lead_repository.get(session, lead_id, organization_id)
        if lead is None:
            raise NotFoundError("Lead", lead_id)
        return lead

    def _bulk_update(
        self,
        session: Session,
        operation: str,
        lead_ids: list[uuid.UUID],
        organization_id: uuid.UUID,
        values: dict[str, Any],
    ) -> BulkUpdateResult:
        unique_ids = list(dict.fromkeys(lead_ids))
        with unit_of_work(session):
            updated = self.lead_repository.bulk_update(session, unique_ids, organization_id, values)

        observe_lead_bulk_update(operation, updated)
        logger.info(
            "crm.lead.bulk_updated",
            extra={"organization_id": str(organization_id), "count": updated, "status": operation},
        )
        return BulkUpdateResult(requested=len(unique_ids), updated=updated)
