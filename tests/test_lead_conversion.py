from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadflow.core.database import Base
from leadflow.crm.conversion import LeadConversionService
from leadflow.crm.errors import InvalidStateError, NotFoundError, PersistenceError
from leadflow.crm.models import CRMAccount, CRMContact, CRMLead, CRMOpportunity, LeadStatus
from leadflow.crm.repositories import AccountRepository, ContactRepository, LeadRepository, OpportunityRepository
from leadflow.crm.schemas import LeadConvertRequest, LeadCreate, LeadUpdate
from leadflow.crm.service import LeadService


ORG_ID = uuid.uuid4()
USER_ID = uuid.uuid4()


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
def lead_service() -> LeadService:
    return LeadService(lead_repository=LeadRepository())


@pytest.fixture()
def conversion_service() -> LeadConversionService:
    return LeadConversionService(
        lead_repository=LeadRepository(),
        account_repository=AccountRepository(),
        contact_repository=ContactRepository(),
        opportunity_repository=OpportunityRepository(),
    )


def _qualified_lead(lead_service: LeadService, session: Session, **fields):
    payload = {
        "first_name": "Grace",
        "last_name": "Hopper",
        "email": "grace@example.com",
        "phone": "555-0199",
        "company": "Navy Labs",
        "source": "Conference",
        "tags": ["compilers"],
        "custom_fields": {"fleet": 7},
    }
    payload.update(fields)
    lead = lead_service.create_lead(session, LeadCreate(**payload), created_by_id=USER_ID, organization_id=ORG_ID)
    return lead_service.update_lead(session, lead.id, LeadUpdate(status=LeadStatus.QUALIFIED), ORG_ID)


def _count(session: Session, model: type) -> int:
    return session.scalar(select(func.count()).select_from(model))


def test_convert_creates_all_records_and_links_lead(
    lead_service: LeadService,
    conversion_service: LeadConversionService,
    db_session: Session,
) -> None:
    owner = uuid.uuid4()
    lead = _qualified_lead(lead_service, db_session, assigned_to_id=owner)

    result = conversion_service.convert_lead(
        db_session,
        lead.id,
        LeadConvertRequest(
            create_account=True,
            account_name="Navy Labs",
            create_contact=True,
            create_opportunity=True,
            opportunity_name="Compiler rollout",
            opportunity_amount=1999.99,
        ),
        converted_by_id=USER_ID,
        organization_id=ORG_ID,
    )

    assert result.account.owner_id == owner
    assert result.account.email == "grace@example.com"
    assert result.contact.tags == ["compilers"]
    assert result.contact.custom_fields == {"fleet": 7}
    assert result.opportunity.contact_id == result.contact.id
    assert result.opportunity.currency == "USD"
    assert result.opportunity.expected_close_date == date.today() + timedelta(days=90)
    assert result.opportunity.weighted_amount == 500.0
    assert result.lead.status == LeadStatus.CONVERTED
    assert result.lead.is_converted is True
    assert result.lead.converted_at is not None

    opportunity = db_session.get(CRMOpportunity, result.opportunity.id)
    assert opportunity.amount == Decimal("1999.99")
    assert opportunity.owner_id == owner
    assert opportunity.previous_stage is None
    assert opportunity.last_stage_change_at is not None
    stored_lead = db_session.get(CRMLead, result.lead.id)
    assert opportunity.last_stage_change_at.replace(tzinfo=None) == stored_lead.converted_at.replace(tzinfo=None)


def test_convert_without_assignee_uses_converting_user(
    lead_service: LeadService,
    conversion_service: LeadConversionService,
    db_session: Session,
) -> None:
    lead = _qualified_lead(lead_service, db_session)

    result = conversion_service.convert_lead(
        db_session,
        lead.id,
        LeadConvertRequest(create_account=True, account_name="Navy Labs"),
        converted_by_id=USER_ID,
        organization_id=ORG_ID,
    )

    assert result.account.owner_id == USER_ID
    assert result.contact is None
    assert result.opportunity is None
    assert result.lead.converted_account_id == result.account.id


def test_contact_only_conversion_has_no_account(
    lead_service: LeadService,
    conversion_service: LeadConversionService,
    db_session: Session,
) -> None:
    lead = _qualified_lead(lead_service, db_session)

    result = conversion_service.convert_lead(
        db_session,
        lead.id,
        LeadConvertRequest(create_account=True, account_name="   ", create_contact=True),
        converted_by_id=USER_ID,
        organization_id=ORG_ID,
    )

    assert result.account is None
    assert result.contact.account_id is None
    assert _count(db_session, CRMAccount) == 0


def test_opportunity_without_account_rolls_back(
    lead_service: LeadService,
    conversion_service: LeadConversionService,
    db_session: Session,
) -> None:
    lead = _qualified_lead(lead_service, db_session)

    with pytest.raises(InvalidStateError) as exc_info:
        conversion_service.convert_lead(
            db_session,
            lead.id,
            LeadConvertRequest(create_contact=True, create_opportunity=True, opportunity_name="Deal"),
            converted_by_id=USER_ID,
            organization_id=ORG_ID,
        )

    assert exc_info.value.message == "Cannot create opportunity without an account"
    assert _count(db_session, CRMContact) == 0
    stored = db_session.get(CRMLead, lead.id)
    assert stored.status == LeadStatus.QUALIFIED
    assert stored.converted_at is None


def test_convert_rejects_unqualified_and_missing_leads(
    lead_service: LeadService,
    conversion_service: LeadConversionService,
    db_session: Session,
) -> None:
    lead = lead_service.create_lead(
        db_session,
        LeadCreate(first_name="New", last_name="Lead", email="new@example.com", source="Web"),
        created_by_id=USER_ID,
        organization_id=ORG_ID,
    )

    with pytest.raises(InvalidStateError) as exc_info:
        conversion_service.convert_lead(
            db_session, lead.id, LeadConvertRequest(create_contact=True), USER_ID, ORG_ID
        )
    assert exc_info.value.to_details()["status"] == "new"

    with pytest.raises(NotFoundError):
        conversion_service.convert_lead(
            db_session, uuid.uuid4(), LeadConvertRequest(create_contact=True), USER_ID, ORG_ID
        )
    with pytest.raises(NotFoundError):
        conversion_service.convert_lead(
            db_session, lead.id, LeadConvertRequest(create_contact=True), USER_ID, uuid.uuid4()
        )


def test_second_conversion_is_rejected(
    lead_service: LeadService,
    conversion_service: LeadConversionService,
    db_session: Session,
) -> None:
    lead = _qualified_lead(lead_service, db_session)
    conversion_service.convert_lead(db_session, lead.id, LeadConvertRequest(create_contact=True), USER_ID, ORG_ID)

    with pytest.raises(InvalidStateError) as exc_info:
        conversion_service.convert_lead(db_session, lead.id, LeadConvertRequest(create_contact=True), USER_ID, ORG_ID)

    assert exc_info.value.message == "Lead is already converted"
    assert _count(db_session, CRMContact) == 1


def test_storage_failure_mid_conversion_leaves_no_partial_records(
    lead_service: LeadService,
    conversion_service: LeadConversionService,
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    lead = _qualified_lead(lead_service, db_session)

    def failing_add(session: Session, entity: CRMOpportunity) -> CRMOpportunity:
        raise SQLAlchemyError("disk full")

    monkeypatch.setattr(conversion_service.opportunity_repository, "add", failing_add)

    with pytest.raises(PersistenceError):
        conversion_service.convert_lead(
            db_session,
            lead.id,
            LeadConvertRequest(
                create_account=True,
                account_name="Navy Labs",
                create_contact=True,
                create_opportunity=True,
                opportunity_name="Deal",
            ),
            USER_ID,
            ORG_ID,
        )

    assert _count(db_session, CRMAccount) == 0
    assert _count(db_session, CRMContact) == 0
    assert _count(db_session, CRMOpportunity) == 0
    stored = db_session.get(CRMLead, lead.id)
    assert stored.status == LeadStatus.QUALIFIED
    assert stored.is_converted is False
