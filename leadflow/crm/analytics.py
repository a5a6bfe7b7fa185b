from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import Integer, Select, case, func, select
from sqlalchemy.orm import Session

from leadflow.core.config import get_settings
from leadflow.crm.models import CRMLead
from leadflow.crm.repositories import EPOCH, LeadRepository, as_utc
from leadflow.crm.schemas import LeadAnalytics, SourcePerformance


def _percentage(part: int, whole: int) -> float:
    if whole <= 0:
        return 0.0
    return part * 100 / whole


@dataclass(slots=True)
class LeadAnalyticsService:
    lead_repository: LeadRepository

    def get_lead_analytics(
        self,
        session: Session,
        organization_id: uuid.UUID,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> LeadAnalytics:
        """Funnel statistics over the organization's leads, optionally limited to a creation window.

        ``new_leads`` counts the trailing window from ``lead_analytics_new_window_days``
        and is still intersected with the requested range. Status and source buckets
        only contain values present in the data.
        """
        base = self._base_query(organization_id, start_date, end_date)

        total_leads = self._count(session, base)
        new_since = datetime.now(timezone.utc) - timedelta(days=get_settings().lead_analytics_new_window_days)
        new_leads = self._count(session, base.where(CRMLead.created_at >= new_since))
        converted_leads = self._count(session, base.where(CRMLead.is_converted.is_(True)))

        scope = base.subquery()
        leads_by_status = {
            status: int(count)
            for status, count in session.execute(
                select(scope.c.status, func.count()).group_by(scope.c.status)
            ).all()
        }
        leads_by_source = {
            source: int(count)
            for source, count in session.execute(
                select(scope.c.source, func.count()).group_by(scope.c.source)
            ).all()
        }
        average_score = session.scalar(select(func.avg(scope.c.score)))

        return LeadAnalytics(
            total_leads=total_leads,
            new_leads=new_leads,
            converted_leads=converted_leads,
            conversion_rate=_percentage(converted_leads, total_leads),
            leads_by_status=leads_by_status,
            leads_by_source=leads_by_source,
            average_score=float(average_score) if average_score is not None else 0.0,
            top_performing_sources=self._top_sources(session, scope),
        )

    def _base_query(
        self,
        organization_id: uuid.UUID,
        start_date: datetime | None,
        end_date: datetime | None,
    ) -> Select[Any]:
        stmt = self.lead_repository.scoped(select(CRMLead), organization_id)
        if start_date is not None or end_date is not None:
            lower = as_utc(start_date) if start_date else EPOCH
            upper = as_utc(end_date) if end_date else datetime.now(timezone.utc)
            stmt = stmt.where(CRMLead.created_at.between(lower, upper))
        return stmt

    @staticmethod
    def _count(session: Session, stmt: Select[Any]) -> int:
        return int(session.scalar(select(func.count()).select_from(stmt.subquery())) or 0)

    @staticmethod
    def _top_sources(session: Session, scope: Any) -> list[SourcePerformance]:
        converted = func.sum(case((scope.c.is_converted.is_(True), 1), else_=0)).cast(Integer)
        rows = session.execute(
            select(scope.c.source, func.count().label("total"), converted.label("converted")).group_by(scope.c.source)
        ).all()
        performances = [
            SourcePerformance(
                source=source,
                count=int(total),
                conversion_rate=_percentage(int(converted_count or 0), int(total)),
            )
            for source, total, converted_count in rows
        ]
        performances.sort(key=lambda item: (-item.conversion_rate, -item.count, item.source))
        return performances
