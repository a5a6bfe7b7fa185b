from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadflow.core.database import Base
from leadflow.crm.errors import DuplicateEmailError, InvalidStateError, LeadValidationError, NotFoundError
from leadflow.crm.models import CRMLead, CRMLeadTag, LeadStatus
from leadflow.crm.repositories import LeadRepository
from leadflow.crm.schemas import LeadCreate, LeadSearchParams, LeadUpdate
from leadflow.crm.service import LeadService


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def service() -> LeadService:
    return LeadService(lead_repository=LeadRepository())


ORG_ID = uuid.uuid4()
OTHER_ORG_ID = uuid.uuid4()
USER_ID = uuid.uuid4()


def _create(service: LeadService, session: Session, email: str, organization_id: uuid.UUID = ORG_ID, **fields):
    payload = {"first_name": "Ada", "last_name": "Lovelace", "email": email, "source": "Web"}
    payload.update(fields)
    return service.create_lead(session, LeadCreate(**payload), created_by_id=USER_ID, organization_id=organization_id)


def test_create_lead_applies_defaults(service: LeadService, db_session: Session) -> None:
    lead = _create(service, db_session, "ada@example.com", tags=[" vip ", "vip", "inbound"])

    assert lead.status == LeadStatus.NEW
    assert lead.score == 0
    assert lead.is_converted is False
    assert lead.full_name == "Ada Lovelace"
    assert lead.tags == ["inbound", "vip"]
    assert lead.created_by_id == USER_ID
    assert lead.organization_id == ORG_ID
    assert lead.days_since_created == 1


def test_create_lead_rejects_duplicate_email_in_same_organization(service: LeadService, db_session: Session) -> None:
    _create(service, db_session, "ada@example.com")

    with pytest.raises(DuplicateEmailError) as exc_info:
        _create(service, db_session, "ada@example.com")

    assert exc_info.value.to_details() == {"reason": "duplicate_email", "email": "ada@example.com"}
    _create(service, db_session, "ada@example.com", organization_id=OTHER_ORG_ID)
    assert db_session.scalar(select(func.count()).select_from(CRMLead)) == 2


def test_update_lead_replaces_tags_and_custom_fields(service: LeadService, db_session: Session) -> None:
    lead = _create(service, db_session, "ada@example.com", tags=["a", "b"], custom_fields={"tier": "gold"})
    contacted_at = datetime(2026, 1, 5, 9, 30, tzinfo=timezone.utc)

    updated = service.update_lead(
        db_session,
        lead.id,
        LeadUpdate(
            tags=["b", "c"],
            custom_fields={"renewal": datetime(2026, 3, 1).date(), "seats": 40},
            status=LeadStatus.CONTACTED,
            last_contacted_at=contacted_at,
            first_name=None,
        ),
        ORG_ID,
    )

    assert updated.tags == ["b", "c"]
    assert updated.custom_fields == {"renewal": "2026-03-01", "seats": 40}
    assert updated.status == LeadStatus.CONTACTED
    assert updated.first_name == "Ada"
    assert db_session.scalar(select(func.count()).select_from(CRMLeadTag)) == 2


def test_update_lead_is_scoped_to_organization(service: LeadService, db_session: Session) -> None:
    lead = _create(service, db_session, "ada@example.com")

    with pytest.raises(NotFoundError):
        service.update_lead(db_session, lead.id, LeadUpdate(company="Other"), OTHER_ORG_ID)


def test_update_lead_rejects_email_owned_by_another_lead(service: LeadService, db_session: Session) -> None:
    lead = _create(service, db_session, "ada@example.com")
    _create(service, db_session, "grace@example.com")

    with pytest.raises(DuplicateEmailError):
        service.update_lead(db_session, lead.id, LeadUpdate(email="grace@example.com"), ORG_ID)

    same_email = service.update_lead(db_session, lead.id, LeadUpdate(email="ada@example.com"), ORG_ID)
    assert same_email.email == "ada@example.com"


def test_delete_lead_removes_tag_rows(service: LeadService, db_session: Session) -> None:
    lead = _create(service, db_session, "ada@example.com", tags=["x", "y"])

    service.delete_lead(db_session, lead.id, ORG_ID)

    assert service.get_lead(db_session, lead.id, ORG_ID) is None
    assert db_session.scalar(select(func.count()).select_from(CRMLeadTag)) == 0


def test_delete_converted_lead_is_rejected(service: LeadService, db_session: Session) -> None:
    lead = _create(service, db_session, "ada@example.com")
    row = db_session.get(CRMLead, lead.id)
    row.status = LeadStatus.CONVERTED.value
    row.converted_at = datetime.now(timezone.utc)
    row.converted_contact_id = uuid.uuid4()
    db_session.commit()

    with pytest.raises(InvalidStateError):
        service.delete_lead(db_session, lead.id, ORG_ID)


def test_search_leads_sorts_and_reports_pagination(service: LeadService, db_session: Session) -> None:
    for index, last_name in enumerate(["Carter", "Abbott", "Bishop"]):
        _create(service, db_session, f"lead{index}@example.com", last_name=last_name, score=index * 10)

    page = service.search_leads(
        db_session,
        LeadSearchParams(sort_by="last_name", sort_order="asc", page=2, limit=2),
        ORG_ID,
    )

    assert [lead.last_name for lead in page.data] == ["Carter"]
    assert page.pagination.total == 3
    assert page.pagination.total_pages == 2
    assert page.pagination.has_next is False
    assert page.pagination.has_prev is True


def test_search_leads_created_range_defaults_open_bounds(service: LeadService, db_session: Session) -> None:
    _create(service, db_session, "ada@example.com")

    future = service.search_leads(
        db_session,
        LeadSearchParams(created_from=datetime.now(timezone.utc) + timedelta(days=1)),
        ORG_ID,
    )
    past = service.search_leads(
        db_session,
        LeadSearchParams(created_to=datetime.now(timezone.utc) + timedelta(minutes=1)),
        ORG_ID,
    )

    assert future.pagination.total == 0
    assert past.pagination.total == 1


def test_search_leads_filters_by_status_and_conversion(service: LeadService, db_session: Session) -> None:
    qualified = _create(service, db_session, "q@example.com")
    _create(service, db_session, "n@example.com")
    service.update_lead(db_session, qualified.id, LeadUpdate(status=LeadStatus.QUALIFIED), ORG_ID)

    by_status = service.search_leads(db_session, LeadSearchParams(status=[LeadStatus.QUALIFIED]), ORG_ID)
    unconverted = service.search_leads(db_session, LeadSearchParams(is_converted=False), ORG_ID)

    assert [lead.email for lead in by_status.data] == ["q@example.com"]
    assert unconverted.pagination.total == 2


def test_bulk_updates_ignore_foreign_and_unknown_ids(service: LeadService, db_session: Session) -> None:
    mine = _create(service, db_session, "mine@example.com")
    foreign = _create(service, db_session, "foreign@example.com", organization_id=OTHER_ORG_ID)
    owner = uuid.uuid4()

    result = service.bulk_assign_leads(db_session, [mine.id, mine.id, foreign.id, uuid.uuid4()], owner, ORG_ID)

    assert result.requested == 3
    assert result.updated == 1
    assert service.get_lead(db_session, mine.id, ORG_ID).assigned_to_id == owner
    assert service.get_lead(db_session, foreign.id, OTHER_ORG_ID).assigned_to_id is None

    status_result = service.bulk_update_status(db_session, [mine.id], LeadStatus.LOST, ORG_ID)
    assert status_result.updated == 1
    assert service.get_lead(db_session, mine.id, ORG_ID).status == LeadStatus.LOST


def test_update_lead_score_validates_range(service: LeadService, db_session: Session) -> None:
    lead = _create(service, db_session, "ada@example.com")

    with pytest.raises(LeadValidationError):
        service.update_lead_score(db_session, lead.id, -1, ORG_ID)
    with pytest.raises(NotFoundError):
        service.update_lead_score(db_session, uuid.uuid4(), 50, ORG_ID)

    updated = service.update_lead_score(db_session, lead.id, 55, ORG_ID)
    assert updated.score == 55
    assert updated.score_level == "medium"


def test_lookup_helpers(service: LeadService, db_session: Session) -> None:
    owner = uuid.uuid4()
    first = _create(service, db_session, "one@example.com", source="Referral", assigned_to_id=owner)
    second = _create(service, db_session, "two@example.com", source="Web")
    _create(service, db_session, "three@example.com", source="Event", organization_id=OTHER_ORG_ID)

    assert service.get_lead_sources(db_session, ORG_ID) == ["Referral", "Web"]
    assert [lead.id for lead in service.get_leads_by_assignee(db_session, owner, ORG_ID)] == [first.id]
    assert {lead.id for lead in service.get_leads_by_ids(db_session, [first.id, second.id], ORG_ID)} == {
        first.id,
        second.id,
    }
    assert service.get_leads_by_ids(db_session, [], ORG_ID) == []
    assert len(service.get_recent_leads(db_session, ORG_ID)) == 2
