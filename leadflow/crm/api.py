from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from leadflow.context import get_correlation_id
from leadflow.core.auth import AuthUser, get_current_user as get_auth_user
from leadflow.core.database import get_db
from leadflow.crm.analytics import LeadAnalyticsService
from leadflow.crm.conversion import LeadConversionService
from leadflow.crm.errors import CRMError, NotFoundError
from leadflow.crm.models import LeadStatus
from leadflow.crm.repositories import AccountRepository, ContactRepository, LeadRepository, OpportunityRepository
from leadflow.crm.schemas import (
    AccountRead,
    AssignRequest,
    BulkAssignRequest,
    BulkStatusRequest,
    BulkUpdateResult,
    ContactRead,
    LeadAnalytics,
    LeadConversionResult,
    LeadConvertRequest,
    LeadCreate,
    LeadPage,
    LeadRead,
    LeadSearchParams,
    LeadSortField,
    LeadUpdate,
    OpportunityRead,
    ScoreRequest,
    SortOrder,
)
from leadflow.crm.service import LeadService


logger = logging.getLogger("leadflow.crm.api")

leads_router = APIRouter(prefix="/api/crm", tags=["crm.leads"])
accounts_router = APIRouter(prefix="/api/crm", tags=["crm.accounts"])
contacts_router = APIRouter(prefix="/api/crm", tags=["crm.contacts"])
opportunities_router = APIRouter(prefix="/api/crm", tags=["crm.opportunities"])

lead_repository = LeadRepository()
account_repository = AccountRepository()
contact_repository = ContactRepository()
opportunity_repository = OpportunityRepository()

lead_service = LeadService(lead_repository=lead_repository)
conversion_service = LeadConversionService(
    lead_repository=lead_repository,
    account_repository=account_repository,
    contact_repository=contact_repository,
    opportunity_repository=opportunity_repository,
)
analytics_service = LeadAnalyticsService(lead_repository=lead_repository)


@dataclass
class ActorUser:
    user_id: uuid.UUID | None
    organization_id: uuid.UUID | None
    permissions: set[str] = field(default_factory=set)
    correlation_id: str | None = None


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _parse_uuid(raw: str | None) -> uuid.UUID | None:
    if not raw:
        return None
    try:
        return uuid.UUID(raw)
    except ValueError:
        return None


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    organization_id = _parse_uuid(request.headers.get("x-organization-id")) or _parse_uuid(auth_user.organization_id)
    return ActorUser(
        user_id=_parse_uuid(auth_user.sub),
        organization_id=organization_id,
        permissions=set(auth_user.roles),
        correlation_id=correlation_id,
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


def require_tenant(user: ActorUser) -> tuple[uuid.UUID, uuid.UUID]:
    if user.user_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="authenticated user id required")
    if user.organization_id is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="organization could not be resolved")
    return user.user_id, user.organization_id


def failure_response(
    request: Request,
    exc: HTTPException | CRMError,
    *,
    code: str,
    lead_id: uuid.UUID | None = None,
) -> JSONResponse:
    if isinstance(exc, HTTPException):
        return error_response(
            request,
            status_code=exc.status_code,
            code=code,
            message=str(exc.detail),
            details=exc.detail,
        )
    log = logger.error if exc.status_code >= 500 else logger.info
    log(code, extra={"lead_id": str(lead_id) if lead_id else None, "error": exc.message})
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=exc.message,
        details=exc.to_details(),
    )


@leads_router.post("/leads", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.write")
        user_id, organization_id = require_tenant(user)
        return lead_service.create_lead(db, dto, created_by_id=user_id, organization_id=organization_id)
    except (HTTPException, CRMError) as exc:
        return failure_response(request, exc, code="crm_lead_create_failed")


@leads_router.get("/leads", response_model=LeadPage)
def search_leads(
    request: Request,
    search: str | None = Query(default=None),
    status_filter: list[LeadStatus] | None = Query(default=None, alias="status"),
    assigned_to_id: list[uuid.UUID] | None = Query(default=None),
    source: list[str] | None = Query(default=None),
    score_min: int | None = Query(default=None, ge=0, le=100),
    score_max: int | None = Query(default=None, ge=0, le=100),
    created_from: datetime | None = Query(default=None),
    created_to: datetime | None = Query(default=None),
    tags: list[str] | None = Query(default=None),
    company: str | None = Query(default=None),
    is_converted: bool | None = Query(default=None),
    page: int = Query(default=1),
    limit: int | None = Query(default=None),
    sort_by: LeadSortField = Query(default="created_at"),
    sort_order: SortOrder = Query(default="desc"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadPage | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        _, organization_id = require_tenant(user)
        params = LeadSearchParams(
            search=search,
            status=status_filter or [],
            assigned_to_id=assigned_to_id or [],
            source=source or [],
            score_min=score_min,
            score_max=score_max,
            created_from=created_from,
            created_to=created_to,
            tags=tags or [],
            company=company,
            is_converted=is_converted,
            page=page,
            limit=limit,
            sort_by=sort_by,
            sort_order=sort_order,
        )
        return lead_service.search_leads(db, params, organization_id)
    except (HTTPException, CRMError) as exc:
        return failure_response(request, exc, code="crm_lead_search_failed")


@leads_router.get("/leads/analytics", response_model=LeadAnalytics)
def get_lead_analytics(
    request: Request,
    start_date: datetime | None = Query(default=None),
    end_date: datetime | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadAnalytics | JSONResponse:
    try:
        require_permission(user, "crm.leads.analytics")
        _, organization_id = require_tenant(user)
        return analytics_service.get_lead_analytics(db, organization_id, start_date=start_date, end_date=end_date)
    except (HTTPException, CRMError) as exc:
        return failure_response(request, exc, code="crm_lead_analytics_failed")


@leads_router.get("/leads/sources", response_model=list[str])
def get_lead_sources(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[str] | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        _, organization_id = require_tenant(user)
        return lead_service.get_lead_sources(db, organization_id)
    except (HTTPException, CRMError) as exc:
        return failure_response(request, exc, code="crm_lead_sources_failed")


@leads_router.get("/leads/recent", response_model=list[LeadRead])
def get_recent_leads(
    request: Request,
    limit: int = Query(default=10, ge=1, le=100),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadRead] | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        _, organization_id = require_tenant(user)
        return lead_service.get_recent_leads(db, organization_id, limit=limit)
    except (HTTPException, CRMError) as exc:
        return failure_response(request, exc, code="crm_lead_recent_failed")


@leads_router.get("/leads/assignee/{assigned_to_id}", response_model=list[LeadRead])
def get_leads_by_assignee(
    request: Request,
    assigned_to_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadRead] | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        _, organization_id = require_tenant(user)
        return lead_service.get_leads_by_assignee(db, assigned_to_id, organization_id)
    except (HTTPException, CRMError) as exc:
        return failure_response(request, exc, code="crm_lead_assignee_list_failed")


@leads_router.post("/leads/bulk-assign", response_model=BulkUpdateResult)
def bulk_assign_leads(
    request: Request,
    dto: BulkAssignRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> BulkUpdateResult | JSONResponse:
    try:
        require_permission(user, "crm.leads.assign")
        _, organization_id = require_tenant(user)
        return lead_service.bulk_assign_leads(db, dto.lead_ids, dto.assigned_to_id, organization_id)
    except (HTTPException, CRMError) as exc:
        return failure_response(request, exc, code="crm_lead_bulk_assign_failed")


@leads_router.post("/leads/bulk-status", response_model=BulkUpdateResult)
def bulk_update_lead_status(
    request: Request,
    dto: BulkStatusRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> BulkUpdateResult | JSONResponse:
    try:
        require_permission(user, "crm.leads.write")
        _, organization_id = require_tenant(user)
        return lead_service.bulk_update_status(db, dto.lead_ids, dto.status, organization_id)
    except (HTTPException, CRMError) as exc:
        return failure_response(request, exc, code="crm_lead_bulk_status_failed")


@leads_router.get("/leads/{lead_id}", response_model=LeadRead | None)
def get_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | None | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        _, organization_id = require_tenant(user)
        return lead_service.get_lead(db, lead_id, organization_id)
    except (HTTPException, CRMError) as exc:
        return failure_response(request, exc, code="crm_lead_get_failed", lead_id=lead_id)


@leads_router.put("/leads/{lead_id}", response_model=LeadRead)
def update_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.write")
        _, organization_id = require_tenant(user)
        return lead_service.update_lead(db, lead_id, dto, organization_id)
    except (HTTPException, CRMError) as exc:
        return failure_response(request, exc, code="crm_lead_update_failed", lead_id=lead_id)


@leads_router.delete("/leads/{lead_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "crm.leads.delete")
        _, organization_id = require_tenant(user)
        lead_service.delete_lead(db, lead_id, organization_id)
        return {"status": "deleted"}
    except (HTTPException, CRMError) as exc:
        return failure_response(request, exc, code="crm_lead_delete_failed", lead_id=lead_id)


@leads_router.post("/leads/{lead_id}/convert", response_model=LeadConversionResult)
def convert_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadConvertRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadConversionResult | JSONResponse:
    try:
        require_permission(user, "crm.leads.convert")
        user_id, organization_id = require_tenant(user)
        return conversion_service.convert_lead(
            db,
            lead_id,
            dto,
            converted_by_id=user_id,
            organization_id=organization_id,
        )
    except (HTTPException, CRMError) as exc:
        return failure_response(request, exc, code="crm_lead_convert_failed", lead_id=lead_id)


@leads_router.put("/leads/{lead_id}/assign", response_model=LeadRead)
def assign_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: AssignRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.assign")
        _, organization_id = require_tenant(user)
        return lead_service.assign_lead(db, lead_id, dto.assigned_to_id, organization_id)
    except (HTTPException, CRMError) as exc:
        return failure_response(request, exc, code="crm_lead_assign_failed", lead_id=lead_id)


@leads_router.put("/leads/{lead_id}/score", response_model=LeadRead)
def update_lead_score(
    request: Request,
    lead_id: uuid.UUID,
    dto: ScoreRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.write")
        _, organization_id = require_tenant(user)
        return lead_service.update_lead_score(db, lead_id, dto.score, organization_id)
    except (HTTPException, CRMError) as exc:
        return failure_response(request, exc, code="crm_lead_score_failed", lead_id=lead_id)


@accounts_router.get("/accounts/{account_id}", response_model=AccountRead)
def get_account(
    request: Request,
    account_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AccountRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        _, organization_id = require_tenant(user)
        account = account_repository.get(db, account_id, organization_id)
        if account is None:
            raise NotFoundError("Account", account_id)
        return AccountRead.model_validate(account)
    except (HTTPException, CRMError) as exc:
        return failure_response(request, exc, code="crm_account_get_failed")


@contacts_router.get("/contacts/{contact_id}", response_model=ContactRead)
def get_contact(
    request: Request,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        _, organization_id = require_tenant(user)
        contact = contact_repository.get(db, contact_id, organization_id)
        if contact is None:
            raise NotFoundError("Contact", contact_id)
        return ContactRead.model_validate(contact)
    except (HTTPException, CRMError) as exc:
        return failure_response(request, exc, code="crm_contact_get_failed")


@opportunities_router.get("/opportunities/{opportunity_id}", response_model=OpportunityRead)
def get_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        _, organization_id = require_tenant(user)
        opportunity = opportunity_repository.get(db, opportunity_id, organization_id)
        if opportunity is None:
            raise NotFoundError("Opportunity", opportunity_id)
        return OpportunityRead.model_validate(opportunity)
    except (HTTPException, CRMError) as exc:
        return failure_response(request, exc, code="crm_opportunity_get_failed")
