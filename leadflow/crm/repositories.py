from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Generic, TypeVar

from sqlalchemy import Select, func, or_, select, update
from sqlalchemy.orm import Session

from leadflow.crm.models import CRMAccount, CRMContact, CRMLead, CRMLeadTag, CRMOpportunity
from leadflow.crm.pagination import PageRequest
from leadflow.crm.schemas import LeadSearchParams


ModelT = TypeVar("ModelT", CRMLead, CRMAccount, CRMContact, CRMOpportunity)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

LEAD_SORT_COLUMNS = {
    "created_at": CRMLead.created_at,
    "updated_at": CRMLead.updated_at,
    "score": CRMLead.score,
    "last_name": CRMLead.last_name,
    "company": CRMLead.company,
    "email": CRMLead.email,
}


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TenantRepository(Generic[ModelT]):
    """Data access for one CRM table; every statement is filtered by organization_id."""

    model: type[ModelT]
    resource = ""

    def scoped(self, stmt: Select[Any], organization_id: uuid.UUID) -> Select[Any]:
        return stmt.where(self.model.organization_id == organization_id)

    def get(
        self,
        session: Session,
        entity_id: uuid.UUID,
        organization_id: uuid.UUID,
        *,
        for_update: bool = False,
    ) -> ModelT | None:
        stmt = self.scoped(select(self.model).where(self.model.id == entity_id), organization_id)
        if for_update:
            stmt = stmt.with_for_update()
        return session.scalar(stmt)

    def get_many(self, session: Session, ids: list[uuid.UUID], organization_id: uuid.UUID) -> list[ModelT]:
        if not ids:
            return []
        stmt = self.scoped(select(self.model).where(self.model.id.in_(ids)), organization_id)
        return list(session.scalars(stmt).all())

    def add(self, session: Session, entity: ModelT) -> ModelT:
        session.add(entity)
        session.flush()
        return entity

    def delete(self, session: Session, entity: ModelT) -> None:
        session.delete(entity)
        session.flush()


class AccountRepository(TenantRepository[CRMAccount]):
    model = CRMAccount
    resource = "crm.account"


class ContactRepository(TenantRepository[CRMContact]):
    model = CRMContact
    resource = "crm.contact"


class OpportunityRepository(TenantRepository[CRMOpportunity]):
    model = CRMOpportunity
    resource = "crm.opportunity"


class LeadRepository(TenantRepository[CRMLead]):
    model = CRMLead
    resource = "crm.lead"

    def find_by_email(
        self,
        session: Session,
        email: str,
        organization_id: uuid.UUID,
        *,
        exclude_id: uuid.UUID | None = None,
    ) -> CRMLead | None:
        stmt = self.scoped(select(CRMLead).where(CRMLead.email == email), organization_id)
        if exclude_id is not None:
            stmt = stmt.where(CRMLead.id != exclude_id)
        return session.scalar(stmt.limit(1))

    def apply_filters(self, stmt: Select[Any], params: LeadSearchParams) -> Select[Any]:
        if params.search:
            pattern = f"%{params.search}%"
            stmt = stmt.where(
                or_(
                    CRMLead.first_name.ilike(pattern),
                    CRMLead.last_name.ilike(pattern),
                    CRMLead.email.ilike(pattern),
                    CRMLead.company.ilike(pattern),
                )
            )
        if params.status:
            stmt = stmt.where(CRMLead.status.in_([item.value for item in params.status]))
        if params.assigned_to_id:
            stmt = stmt.where(CRMLead.assigned_to_id.in_(params.assigned_to_id))
        if params.source:
            stmt = stmt.where(CRMLead.source.in_(params.source))
        if params.score_min is not None or params.score_max is not None:
            score_min = params.score_min if params.score_min is not None else 0
            score_max = params.score_max if params.score_max is not None else 100
            stmt = stmt.where(CRMLead.score.between(score_min, score_max))
        if params.created_from is not None or params.created_to is not None:
            created_from = as_utc(params.created_from) if params.created_from else EPOCH
            created_to = as_utc(params.created_to) if params.created_to else datetime.now(timezone.utc)
            stmt = stmt.where(CRMLead.created_at.between(created_from, created_to))
        if params.tags:
            stmt = stmt.where(CRMLead.id.in_(select(CRMLeadTag.lead_id).where(CRMLeadTag.tag.in_(params.tags))))
        if params.company:
            stmt = stmt.where(CRMLead.company.ilike(f"%{params.company}%"))
        if params.is_converted is not None:
            stmt = stmt.where(CRMLead.is_converted == params.is_converted)
        return stmt

    def search(
        self,
        session: Session,
        params: LeadSearchParams,
        page: PageRequest,
        organization_id: uuid.UUID,
    ) -> tuple[list[CRMLead], int]:
        stmt = self.apply_filters(self.scoped(select(CRMLead), organization_id), params)
        total = session.scalar(select(func.count()).select_from(stmt.subquery())) or 0

        column = LEAD_SORT_COLUMNS[params.sort_by]
        ordering = column.asc() if params.sort_order == "asc" else column.desc()
        rows = session.scalars(stmt.order_by(ordering, CRMLead.id.asc()).offset(page.offset).limit(page.limit)).all()
        return list(rows), int(total)

    def list_by_assignee(self, session: Session, assigned_to_id: uuid.UUID, organization_id: uuid.UUID) -> list[CRMLead]:
        stmt = self.scoped(select(CRMLead).where(CRMLead.assigned_to_id == assigned_to_id), organization_id)
        return list(session.scalars(stmt.order_by(CRMLead.created_at.desc())).all())

    def list_recent(self, session: Session, organization_id: uuid.UUID, limit: int) -> list[CRMLead]:
        stmt = self.scoped(select(CRMLead), organization_id).order_by(CRMLead.created_at.desc()).limit(limit)
        return list(session.scalars(stmt).all())

    def bulk_update(
        self,
        session: Session,
        ids: list[uuid.UUID],
        organization_id: uuid.UUID,
        values: dict[str, Any],
    ) -> int:
        if not ids:
            return 0
        stmt = (
            update(CRMLead)
            .where(CRMLead.organization_id == organization_id, CRMLead.id.in_(ids))
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        result = session.execute(stmt)
        return int(result.rowcount or 0)

    def distinct_sources(self, session: Session, organization_id: uuid.UUID) -> list[str]:
        stmt = (
            self.scoped(select(CRMLead.source).distinct(), organization_id)
            .where(CRMLead.source.is_not(None), CRMLead.source != "")
            .order_by(CRMLead.source.asc())
        )
        return [source for source in session.scalars(stmt).all() if source]
