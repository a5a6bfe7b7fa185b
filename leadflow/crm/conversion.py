from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy.orm import Session

from leadflow.core.config import get_settings
from leadflow.crm.errors import CRMError, InvalidStateError, NotFoundError
from leadflow.crm.models import (
    AccountType,
    CRMAccount,
    CRMContact,
    CRMLead,
    CRMOpportunity,
    LeadStatus,
    OpportunityStage,
)
from leadflow.crm.repositories import AccountRepository, ContactRepository, LeadRepository, OpportunityRepository
from leadflow.crm.schemas import (
    AccountRead,
    ContactRead,
    LeadConversionResult,
    LeadConvertRequest,
    OpportunityRead,
)
from leadflow.crm.service import lead_to_read, unit_of_work
from leadflow.crm.state_machine import ensure_can_convert
from leadflow.metrics import observe_lead_conversion
from leadflow.otel import get_tracer, traced


logger = logging.getLogger("leadflow.crm.conversion")
tracer = get_tracer("leadflow.crm.conversion")

OPPORTUNITY_WITHOUT_ACCOUNT_MESSAGE = "Cannot create opportunity without an account"
DEFAULT_OPPORTUNITY_CURRENCY = "USD"


def _origin_description(lead: CRMLead) -> str:
    return f"Converted from lead: {lead.first_name} {lead.last_name}"


@dataclass(slots=True)
class LeadConversionService:
    lead_repository: LeadRepository
    account_repository: AccountRepository
    contact_repository: ContactRepository
    opportunity_repository: OpportunityRepository

    def convert_lead(
        self,
        session: Session,
        lead_id: uuid.UUID,
        options: LeadConvertRequest,
        converted_by_id: uuid.UUID,
        organization_id: uuid.UUID,
    ) -> LeadConversionResult:
        """Turn a qualified lead into an account, contact and opportunity in one transaction.

        Each record is optional: the account needs ``create_account`` and a name, the
        opportunity needs ``create_opportunity``, a name and an account from the same call.
        The lead row is locked for the duration so concurrent conversions serialize on it.
        Any failure rolls back every write made by the call.
        """
        started = time.perf_counter()
        with traced(tracer, "crm.lead.convert", lead_id=lead_id, organization_id=organization_id):
            try:
                with unit_of_work(session):
                    account, contact, opportunity, lead = self._convert(
                        session, lead_id, options, converted_by_id, organization_id
                    )
            except CRMError as exc:
                outcome = "failed" if exc.status_code >= 500 else "rejected"
                observe_lead_conversion(outcome, time.perf_counter() - started)
                logger.warning(
                    "crm.lead.convert_failed",
                    extra={"lead_id": str(lead_id), "organization_id": str(organization_id), "error": exc.message},
                )
                raise

            observe_lead_conversion("converted", time.perf_counter() - started)
            logger.info(
                "crm.lead.converted",
                extra={
                    "lead_id": str(lead_id),
                    "organization_id": str(organization_id),
                    "account_id": str(account.id) if account else None,
                    "contact_id": str(contact.id) if contact else None,
                    "opportunity_id": str(opportunity.id) if opportunity else None,
                },
            )
            return LeadConversionResult(
                lead=lead_to_read(lead),
                account=AccountRead.model_validate(account) if account else None,
                contact=ContactRead.model_validate(contact) if contact else None,
                opportunity=OpportunityRead.model_validate(opportunity) if opportunity else None,
            )

    def _convert(
        self,
        session: Session,
        lead_id: uuid.UUID,
        options: LeadConvertRequest,
        converted_by_id: uuid.UUID,
        organization_id: uuid.UUID,
    ) -> tuple[CRMAccount | None, CRMContact | None, CRMOpportunity | None, CRMLead]:
        lead = self.lead_repository.get(session, lead_id, organization_id, for_update=True)
        if lead is None:
            raise NotFoundError("Lead", lead_id)
        ensure_can_convert(lead)

        owner_id = lead.assigned_to_id or converted_by_id
        converted_at = datetime.now(timezone.utc)
        account: CRMAccount | None = None
        contact: CRMContact | None = None
        opportunity: CRMOpportunity | None = None

        if options.create_account and options.account_name:
            account = self.account_repository.add(
                session,
                CRMAccount(
                    name=options.account_name,
                    type=AccountType.PROSPECT.value,
                    email=lead.email,
                    phone=lead.phone,
                    description=_origin_description(lead),
                    owner_id=owner_id,
                    created_by_id=converted_by_id,
                    organization_id=organization_id,
                ),
            )

        if options.create_contact:
            contact = self.contact_repository.add(
                session,
                CRMContact(
                    first_name=lead.first_name,
                    last_name=lead.last_name,
                    email=lead.email,
                    phone=lead.phone,
                    job_title=lead.job_title,
                    account_id=account.id if account else None,
                    is_primary=True,
                    notes=lead.notes,
                    tags=list(lead.tags),
                    custom_fields=dict(lead.custom_fields or {}),
                    created_by_id=converted_by_id,
                    organization_id=organization_id,
                ),
            )

        if options.create_opportunity:
            if account is None:
                raise InvalidStateError(OPPORTUNITY_WITHOUT_ACCOUNT_MESSAGE, details={"lead_id": str(lead_id)})
            if options.opportunity_name:
                opportunity = self.opportunity_repository.add(
                    session,
                    self._build_opportunity(lead, options, account, contact, owner_id, converted_by_id, converted_at),
                )

        lead.status = LeadStatus.CONVERTED.value
        lead.converted_at = converted_at
        lead.converted_account_id = account.id if account else None
        lead.converted_contact_id = contact.id if contact else None
        lead.converted_opportunity_id = opportunity.id if opportunity else None
        session.flush()
        return account, contact, opportunity, lead

    def _build_opportunity(
        self,
        lead: CRMLead,
        options: LeadConvertRequest,
        account: CRMAccount,
        contact: CRMContact | None,
        owner_id: uuid.UUID,
        converted_by_id: uuid.UUID,
        opened_at: datetime,
    ) -> CRMOpportunity:
        settings = get_settings()
        close_date = options.expected_close_date or (
            date.today() + timedelta(days=settings.lead_conversion_close_window_days)
        )
        return CRMOpportunity(
            name=options.opportunity_name,
            description=_origin_description(lead),
            account_id=account.id,
            contact_id=contact.id if contact else None,
            owner_id=owner_id,
            stage=(options.opportunity_stage or OpportunityStage.PROSPECTING).value,
            amount=Decimal(str(options.opportunity_amount or 0)),
            currency=DEFAULT_OPPORTUNITY_CURRENCY,
            probability=settings.lead_conversion_default_probability,
            expected_close_date=close_date,
            last_stage_change_at=opened_at,
            source=lead.source,
            tags=list(lead.tags),
            custom_fields=dict(lead.custom_fields or {}),
            created_by_id=converted_by_id,
            organization_id=lead.organization_id,
        )
