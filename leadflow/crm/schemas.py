from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, StrictBool, StrictInt, field_validator, model_validator

from leadflow.crm.models import AccountType, LeadStatus, OpportunityStage


CustomFieldValue = StrictBool | StrictInt | float | date | str
LeadSortField = Literal["created_at", "updated_at", "score", "last_name", "company", "email"]
SortOrder = Literal["asc", "desc"]


def _normalize_tags(value: list[str] | None) -> list[str] | None:
    if value is None:
        return None
    cleaned = [tag.strip() for tag in value if tag and tag.strip()]
    return list(dict.fromkeys(cleaned))


class LeadCreate(BaseModel):
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    email: EmailStr
    phone: str | None = Field(default=None, max_length=20)
    company: str | None = Field(default=None, max_length=255)
    job_title: str | None = Field(default=None, max_length=100)
    source: str = Field(min_length=1, max_length=100)
    score: int | None = Field(default=None, ge=0, le=100)
    assigned_to_id: UUID | None = None
    tags: list[str] = Field(default_factory=list)
    notes: str | None = None
    custom_fields: dict[str, CustomFieldValue] = Field(default_factory=dict)

    @field_validator("tags")
    @classmethod
    def dedupe_tags(cls, value: list[str] | None) -> list[str] | None:
        return _normalize_tags(value)


class LeadUpdate(BaseModel):
    first_name: str | None = Field(default=None, min_length=1, max_length=100)
    last_name: str | None = Field(default=None, min_length=1, max_length=100)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, max_length=20)
    company: str | None = Field(default=None, max_length=255)
    job_title: str | None = Field(default=None, max_length=100)
    status: LeadStatus | None = None
    source: str | None = Field(default=None, min_length=1, max_length=100)
    score: int | None = Field(default=None, ge=0, le=100)
    assigned_to_id: UUID | None = None
    last_contacted_at: datetime | None = None
    tags: list[str] | None = None
    notes: str | None = None
    custom_fields: dict[str, CustomFieldValue] | None = None

    @field_validator("tags")
    @classmethod
    def dedupe_tags(cls, value: list[str] | None) -> list[str] | None:
        return _normalize_tags(value)


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    first_name: str
    last_name: str
    full_name: str | None
    email: str
    phone: str | None
    company: str | None
    job_title: str | None
    status: LeadStatus
    source: str
    score: int | None
    score_level: str
    assigned_to_id: UUID | None
    converted_account_id: UUID | None
    converted_contact_id: UUID | None
    converted_opportunity_id: UUID | None
    converted_at: datetime | None
    is_converted: bool
    last_contacted_at: datetime | None
    tags: list[str] = Field(default_factory=list)
    notes: str | None
    custom_fields: dict[str, CustomFieldValue] = Field(default_factory=dict)
    days_since_created: int
    created_at: datetime
    updated_at: datetime
    created_by_id: UUID
    organization_id: UUID


class LeadSearchParams(BaseModel):
    search: str | None = None
    status: list[LeadStatus] = Field(default_factory=list)
    assigned_to_id: list[UUID] = Field(default_factory=list)
    source: list[str] = Field(default_factory=list)
    score_min: int | None = Field(default=None, ge=0, le=100)
    score_max: int | None = Field(default=None, ge=0, le=100)
    created_from: datetime | None = None
    created_to: datetime | None = None
    tags: list[str] = Field(default_factory=list)
    company: str | None = None
    is_converted: bool | None = None
    page: int = 1
    limit: int | None = None
    sort_by: LeadSortField = "created_at"
    sort_order: SortOrder = "desc"


class PaginationMeta(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool


class LeadPage(BaseModel):
    data: list[LeadRead]
    pagination: PaginationMeta


class AssignRequest(BaseModel):
    assigned_to_id: UUID


class ScoreRequest(BaseModel):
    score: int


class BulkAssignRequest(BaseModel):
    lead_ids: list[UUID] = Field(min_length=1)
    assigned_to_id: UUID


class BulkStatusRequest(BaseModel):
    lead_ids: list[UUID] = Field(min_length=1)
    status: LeadStatus


class BulkUpdateResult(BaseModel):
    requested: int
    updated: int


class LeadConvertRequest(BaseModel):
    create_account: bool = False
    account_name: str | None = Field(default=None, max_length=255)
    create_contact: bool = False
    create_opportunity: bool = False
    opportunity_name: str | None = Field(default=None, max_length=255)
    opportunity_amount: float | None = Field(default=None, ge=0)
    opportunity_stage: OpportunityStage | None = None
    expected_close_date: date | None = None

    @model_validator(mode="after")
    def strip_blank_names(self) -> "LeadConvertRequest":
        if self.account_name is not None and not self.account_name.strip():
            self.account_name = None
        if self.opportunity_name is not None and not self.opportunity_name.strip():
            self.opportunity_name = None
        return self


class AccountRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    type: AccountType
    industry: str | None
    website: str | None
    phone: str | None
    email: str | None
    billing_address: dict[str, Any] | None
    shipping_address: dict[str, Any] | None
    description: str | None
    revenue: float | None
    employee_count: int | None
    parent_account_id: UUID | None
    owner_id: UUID
    account_size: str
    revenue_range: str
    tags: list[str] = Field(default_factory=list)
    custom_fields: dict[str, CustomFieldValue] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    created_by_id: UUID
    organization_id: UUID


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    first_name: str
    last_name: str
    full_name: str | None
    email: str
    phone: str | None
    mobile: str | None
    job_title: str | None
    department: str | None
    account_id: UUID | None
    is_primary: bool
    do_not_call: bool
    do_not_email: bool
    can_be_contacted: bool
    can_be_emailed: bool
    preferred_contact_method: str | None
    tags: list[str] = Field(default_factory=list)
    notes: str | None
    custom_fields: dict[str, CustomFieldValue] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    created_by_id: UUID
    organization_id: UUID


class OpportunityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str | None
    account_id: UUID
    contact_id: UUID | None
    owner_id: UUID
    stage: OpportunityStage
    amount: float
    currency: str
    probability: int
    weighted_amount: float | None
    expected_close_date: date
    actual_close_date: date | None
    source: str
    is_won: bool
    is_lost: bool
    is_closed: bool
    is_overdue: bool
    stage_progress: int
    next_stage: str | None
    tags: list[str] = Field(default_factory=list)
    custom_fields: dict[str, CustomFieldValue] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    created_by_id: UUID
    organization_id: UUID


class LeadConversionResult(BaseModel):
    lead: LeadRead
    account: AccountRead | None = None
    contact: ContactRead | None = None
    opportunity: OpportunityRead | None = None


class SourcePerformance(BaseModel):
    source: str
    count: int
    conversion_rate: float


class LeadAnalytics(BaseModel):
    total_leads: int
    new_leads: int
    converted_leads: int
    conversion_rate: float
    leads_by_status: dict[str, int]
    leads_by_source: dict[str, int]
    average_score: float
    top_performing_sources: list[SourcePerformance]
